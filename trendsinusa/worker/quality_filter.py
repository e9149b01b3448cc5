"""
Read-time quality / trust filter.

Every read path that serves deals re-validates each deal here, independent
of what the ingestion pipeline wrote.  If a bug or a stale write leaves the
store inconsistent, nothing renders unless it passes these checks.

Public eligibility (``is_deal_public``):
  1. **Manual gates** — approved, not suppressed, product not blocked.
  2. **Lifecycle** — status in the non-expired tiers AND expiry still in
     the future at *now* (a stale status never wins over the clock).
  3. **Price sanity** — current price > 0; a reference price, if present,
     must be a real markdown (strictly above current).
  4. **Routing** — product carries ``site:<site_key>``.
  5. **Freshness** — non-empty title; source data fetched within the last
     ``SOURCE_STALE_HOURS``.  Missing freshness data fails closed.

Sponsored placements additionally require ``meets_sponsored_quality_threshold``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from config.sites import site_tag
from deal_lifecycle import NON_EXPIRED_STATUSES, compute_discount_percent, parse_timestamp

SOURCE_STALE_HOURS = 72

SPONSORED_MIN_DISCOUNT_PERCENT = 5
SPONSORED_MAX_DISCOUNT_PERCENT = 95


def _cents(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def is_price_sane(deal: dict[str, Any]) -> bool:
    """Current price positive; reference price (if any) not below it."""
    current = _cents(deal.get("current_price_cents"))
    if current <= 0:
        return False
    old = deal.get("old_price_cents")
    if old is None:
        return True
    return _cents(old) >= current


def _has_real_markdown(deal: dict[str, Any]) -> bool:
    old = deal.get("old_price_cents")
    return old is not None and _cents(old) > _cents(deal.get("current_price_cents"))


def is_source_fresh(product: dict[str, Any], now: datetime) -> bool:
    fetched = parse_timestamp(product.get("source_fetched_at"))
    if fetched is None:
        return False
    return fetched > now - timedelta(hours=SOURCE_STALE_HOURS)


def is_deal_public(
    deal: dict[str, Any],
    product: dict[str, Any],
    site_key: str,
    now: datetime,
) -> bool:
    """Return ``True`` only if *deal* may be shown on *site_key* at *now*."""
    if deal.get("approved") is not True or deal.get("suppressed") is not False:
        return False
    if deal.get("status") not in NON_EXPIRED_STATUSES:
        return False

    expires_at = parse_timestamp(deal.get("expires_at"))
    if expires_at is None or expires_at <= now:
        return False

    if _cents(deal.get("current_price_cents")) <= 0:
        return False
    if deal.get("old_price_cents") is not None and not _has_real_markdown(deal):
        return False

    if site_tag(site_key) not in (product.get("tags") or []):
        return False
    if product.get("blocked") is not False:
        return False
    if not (product.get("title") or "").strip():
        return False
    return is_source_fresh(product, now)


def meets_sponsored_quality_threshold(deal: dict[str, Any]) -> bool:
    """Stricter check for paid placement slots.

    Requires a real markdown and a discount within 5–95% inclusive; the
    stored ``discount_percent`` is used when present, else derived.
    """
    current = _cents(deal.get("current_price_cents"))
    if current <= 0 or not _has_real_markdown(deal):
        return False
    discount = deal.get("discount_percent")
    if discount is None:
        discount = compute_discount_percent(current, _cents(deal.get("old_price_cents")))
    if discount is None:
        return False
    return SPONSORED_MIN_DISCOUNT_PERCENT <= discount <= SPONSORED_MAX_DISCOUNT_PERCENT


def filter_public_deals(
    rows: list[dict[str, Any]],
    site_key: str,
    now: datetime,
    *,
    sponsored: bool = False,
) -> list[dict[str, Any]]:
    """Keep deal rows (with an embedded ``product``) that may be served."""
    kept = []
    for row in rows:
        product = row.get("product") or {}
        if not is_deal_public(row, product, site_key, now):
            continue
        if sponsored and not meets_sponsored_quality_threshold(row):
            continue
        kept.append(row)
    return kept
