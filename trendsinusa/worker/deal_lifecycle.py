"""
Deal lifecycle engine — time-derived status tiers and the periodic sweep.

A deal's ``status`` is a pure function of wall-clock time and its
``expires_at`` (plus an optional ``starts_at``):

    SCHEDULED -> ACTIVE -> EXPIRING_24H -> EXPIRING_6H -> EXPIRING_1H -> EXPIRED

Tier bounds are inclusive at the upper end: a deal expiring in exactly
60 minutes is ``EXPIRING_1H``.  Manual flags (``suppressed``, ``approved``)
live in their own columns and never feed into the status.

``compute_status`` runs synchronously during ingestion; ``sweep_deal_statuses``
runs on its own schedule so deals expire without new ingestion activity.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger("lifecycle")

# =====================================================================
# Status tiers
# =====================================================================

SCHEDULED = "SCHEDULED"
ACTIVE = "ACTIVE"
EXPIRING_24H = "EXPIRING_24H"
EXPIRING_6H = "EXPIRING_6H"
EXPIRING_1H = "EXPIRING_1H"
EXPIRED = "EXPIRED"

STATUS_ORDER: tuple[str, ...] = (
    SCHEDULED,
    ACTIVE,
    EXPIRING_24H,
    EXPIRING_6H,
    EXPIRING_1H,
    EXPIRED,
)

NON_EXPIRED_STATUSES: frozenset[str] = frozenset(
    {ACTIVE, EXPIRING_24H, EXPIRING_6H, EXPIRING_1H}
)

# (upper bound, status), smallest window first
_EXPIRY_TIERS: list[tuple[timedelta, str]] = [
    (timedelta(hours=1), EXPIRING_1H),
    (timedelta(hours=6), EXPIRING_6H),
    (timedelta(hours=24), EXPIRING_24H),
]


def status_rank(status: str) -> int:
    """Position of *status* in the forward lifecycle ordering."""
    return STATUS_ORDER.index(status)


# =====================================================================
# Time helpers
# =====================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime).

    Returns ``None`` for empty/unparseable input.  Naive values are
    rejected — every timestamp in the store is UTC-aware.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return None
    return dt


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _require_aware(name: str, dt: datetime) -> None:
    if dt.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


def compute_status(
    now: datetime,
    expires_at: datetime,
    starts_at: datetime | None = None,
) -> str:
    """Return the lifecycle tier for a deal at time *now*."""
    _require_aware("now", now)
    _require_aware("expires_at", expires_at)

    remaining = expires_at - now
    if remaining <= timedelta(0):
        return EXPIRED
    for bound, status in _EXPIRY_TIERS:
        if remaining <= bound:
            return status

    if starts_at is not None:
        _require_aware("starts_at", starts_at)
        if starts_at > now:
            return SCHEDULED
    return ACTIVE


# =====================================================================
# Price helpers
# =====================================================================


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def compute_discount_percent(
    current_price_cents: int, old_price_cents: int | None
) -> int | None:
    """Whole-number markdown percent, or ``None`` without a real markdown."""
    if not old_price_cents or old_price_cents <= 0:
        return None
    if current_price_cents <= 0 or old_price_cents <= current_price_cents:
        return None
    return int(round((old_price_cents - current_price_cents) / old_price_cents * 100))


def build_dedup_key(
    source: str,
    external_product_id: str,
    current_price_cents: int,
    expires_at: datetime,
) -> str:
    """Stable identity for "the same deal" across repeated ingestions."""
    return f"{source}:{external_product_id}:{current_price_cents}:{to_iso(expires_at)}"


def build_rolling_dedup_key(source: str, external_product_id: str) -> str:
    """Identity for a deal whose expiry is a rolling window from fetch time.

    One live deal per product and source: a re-poll refreshes price and
    window on the same row instead of inserting another.
    """
    return f"{source}:{external_product_id}:rolling"


# =====================================================================
# Periodic sweep
# =====================================================================


def sweep_deal_statuses(store: Any, now: datetime | None = None) -> dict[str, int]:
    """Expire overdue deals and re-tier the rest against wall-clock time.

    Every write is conditional on the stored status still being the one
    we read, so the sweep is safe to interleave with ingestion.
    """
    now = now or utcnow()
    counts: dict[str, int] = {status: 0 for status in STATUS_ORDER}
    counts["scanned"] = 0

    counts[EXPIRED] = store.expire_overdue_deals(now)

    for deal in store.list_open_deals():
        counts["scanned"] += 1
        expires_at = parse_timestamp(deal.get("expires_at"))
        if expires_at is None:
            logger.warning("Deal %s has no usable expires_at — skipped", deal.get("id"))
            continue
        desired = compute_status(now, expires_at, parse_timestamp(deal.get("starts_at")))
        current = deal.get("status")
        if desired == current:
            continue
        if store.update_deal_status(deal["id"], desired, expected_status=current, now=now):
            counts[desired] += 1

    logger.info(
        "Lifecycle sweep: scanned=%d expired=%d 1h=%d 6h=%d 24h=%d active=%d scheduled=%d",
        counts["scanned"], counts[EXPIRED], counts[EXPIRING_1H],
        counts[EXPIRING_6H], counts[EXPIRING_24H], counts[ACTIVE], counts[SCHEDULED],
    )
    return counts
