"""
Gated auto-publishing of deals.

Flips ``approved`` on deals that would pass the public quality filter and
the sponsored discount-sanity threshold, but only when the site's
``auto_publish_enabled`` gate is open.  Deals whose product comes from a
provider outside the site's ``affiliate_priorities`` are "unaffiliated" and
additionally need ``unaffiliated_auto_publish_enabled``.

``approved`` is one flag per deal, so approving makes the deal public on
every site its product is tagged for.  Those gates must be open for every
``site:`` tag on the product, not only for the site being published.

A closed gate is a no-op, reported as ``skipped``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from deal_lifecycle import utcnow
from errors import GateClosed
from gate import (
    is_auto_publish_enabled,
    is_unaffiliated_auto_publish_enabled,
    require_auto_publish_enabled,
)
from quality_filter import is_deal_public, meets_sponsored_quality_threshold
from site_router import SITE_TAG_PREFIX

logger = logging.getLogger("publisher")

DEFAULT_SCAN_LIMIT = 5000
_PAGE_SIZE = 200


def is_affiliated(product: dict[str, Any], site: dict[str, Any]) -> bool:
    provider = product.get("provider")
    return bool(provider) and provider in (site.get("affiliate_priorities") or [])


def _blocking_site(
    store: Any,
    product: dict[str, Any],
    sites_by_key: dict[str, dict[str, Any]],
    gates: dict[str, tuple[bool, bool]],
) -> tuple[str, str] | None:
    """First (site_key, capability) among the product's sites whose gate is closed."""
    for tag in product.get("tags") or []:
        if not tag.startswith(SITE_TAG_PREFIX):
            continue
        key = tag[len(SITE_TAG_PREFIX):]
        if key not in gates:
            gates[key] = (
                is_auto_publish_enabled(store, key),
                is_unaffiliated_auto_publish_enabled(store, key),
            )
        auto_ok, unaffiliated_ok = gates[key]
        if not auto_ok:
            return key, "auto_publish"
        if not is_affiliated(product, sites_by_key.get(key) or {}) and not unaffiliated_ok:
            return key, "unaffiliated"
    return None


def auto_publish_deals(
    store: Any,
    site_key: str,
    sites: list[dict[str, Any]],
    *,
    now: datetime | None = None,
    limit: int = DEFAULT_SCAN_LIMIT,
) -> dict[str, Any]:
    """Approve eligible candidates for *site_key*, scanning up to *limit* rows."""
    now = now or utcnow()
    counts: dict[str, Any] = {
        "skipped": False,
        "scanned": 0,
        "approved": 0,
        "ineligible": 0,
        "unaffiliated_blocked": 0,
        "cross_site_blocked": 0,
    }

    try:
        require_auto_publish_enabled(store, site_key)
    except GateClosed:
        logger.info("[%s] Auto-publish gate closed — nothing approved", site_key)
        counts["skipped"] = True
        return counts

    sites_by_key = {s["key"]: s for s in sites}
    site = sites_by_key.get(site_key)
    if site is None or not site.get("enabled"):
        logger.warning("[%s] Site unknown or disabled — nothing approved", site_key)
        counts["skipped"] = True
        return counts

    gates: dict[str, tuple[bool, bool]] = {}

    # Approved rows leave the candidate set, so only rows left behind
    # advance the offset.
    offset = 0
    while counts["scanned"] < limit:
        page_size = min(_PAGE_SIZE, limit - counts["scanned"])
        page = store.list_publish_candidates(site_key, limit=page_size, offset=offset)
        if not page:
            break
        approved_in_page = 0
        for row in page:
            counts["scanned"] += 1
            product = row.get("product") or {}

            # Judge the deal as it would look once approved.
            if not is_deal_public({**row, "approved": True}, product, site_key, now):
                counts["ineligible"] += 1
                continue
            if not meets_sponsored_quality_threshold(row):
                counts["ineligible"] += 1
                continue

            blocking = _blocking_site(store, product, sites_by_key, gates)
            if blocking == (site_key, "unaffiliated"):
                counts["unaffiliated_blocked"] += 1
                continue
            if blocking is not None:
                logger.debug("Deal %s held back: %s gate closed on %s", row["id"], blocking[1], blocking[0])
                counts["cross_site_blocked"] += 1
                continue

            if store.approve_deal(row["id"]):
                counts["approved"] += 1
                approved_in_page += 1
        if len(page) < page_size:
            break
        offset += len(page) - approved_in_page

    logger.info(
        "[%s] Auto-publish: scanned=%d approved=%d ineligible=%d "
        "unaffiliated_blocked=%d cross_site_blocked=%d",
        site_key, counts["scanned"], counts["approved"], counts["ineligible"],
        counts["unaffiliated_blocked"], counts["cross_site_blocked"],
    )
    return counts
