"""
Site router — assigns ``site:<key>`` tags to products.

A product is routed to every *enabled* site whose ``default_categories``
is empty (catch-all) or contains the product's effective category
(``category_override``, whenever present, wins over ``category``).

This module is the only writer of ``site:``-prefixed tags.  Non-site tags
(admin / enrichment owned) are carried through untouched.  Writes are
compare-and-swap on ``tags_version``: if another writer changed the tag
set since we read it, the product is re-read and recomputed rather than
overwritten.
"""

from __future__ import annotations

import logging
from typing import Any

from config.sites import site_tag

logger = logging.getLogger("site_router")

SITE_TAG_PREFIX = "site:"

DEFAULT_BATCH_LIMIT = 5000
_PAGE_SIZE = 500
_MAX_CAS_ATTEMPTS = 3


def effective_category(product: dict[str, Any]) -> str | None:
    override = product.get("category_override")
    if override is not None:
        return override
    return product.get("category")


def matches_site(site: dict[str, Any], category: str | None) -> bool:
    if not site.get("enabled"):
        return False
    categories = site.get("default_categories") or []
    if not categories:
        return True  # catch-all site
    if not category:
        return False
    return category in categories


def desired_site_tags(product: dict[str, Any], sites: list[dict[str, Any]]) -> list[str]:
    category = effective_category(product)
    return [site_tag(s["key"]) for s in sites if matches_site(s, category)]


def merge_site_tags(tags: list[str] | None, desired: list[str]) -> list[str]:
    """Strip every ``site:`` tag, then append *desired*; order kept, deduped."""
    non_site = [t for t in tags or [] if not t.startswith(SITE_TAG_PREFIX)]
    return list(dict.fromkeys(non_site + desired))


def _needs_write(current: list[str] | None, next_tags: list[str]) -> bool:
    current = current or []
    return set(current) != set(next_tags) or len(current) != len(next_tags)


def _route_product(store: Any, product: dict[str, Any], sites: list[dict[str, Any]]) -> bool:
    """Apply routing to one product; ``True`` if a write landed."""
    for attempt in range(1, _MAX_CAS_ATTEMPTS + 1):
        next_tags = merge_site_tags(product.get("tags"), desired_site_tags(product, sites))
        if not _needs_write(product.get("tags"), next_tags):
            return False
        version = product.get("tags_version") or 0
        if store.update_product_tags(product["id"], next_tags, expected_version=version):
            return True

        logger.info(
            "Tag version conflict on product %s (attempt %d) — re-reading",
            product["id"], attempt,
        )
        product = store.get_product(product["id"])
        if product is None:
            return False

    logger.warning(
        "Gave up routing product %s after %d conflicting writes",
        product["id"], _MAX_CAS_ATTEMPTS,
    )
    return False


def recompute_product_site_tags(
    store: Any,
    sites: list[dict[str, Any]],
    *,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> dict[str, int]:
    """Recompute site tags for up to *limit* products, paged in id order."""
    enabled = [s for s in sites if s.get("enabled")]
    scanned = 0
    updated = 0

    offset = 0
    while scanned < limit:
        page_size = min(_PAGE_SIZE, limit - scanned)
        page = store.list_products(limit=page_size, offset=offset)
        if not page:
            break
        for product in page:
            scanned += 1
            if _route_product(store, product, enabled):
                updated += 1
        if len(page) < page_size:
            break
        offset += page_size

    logger.info(
        "Site routing: %d products scanned, %d updated (%d enabled sites)",
        scanned, updated, len(enabled),
    )
    return {"products_scanned": scanned, "products_updated": updated}
