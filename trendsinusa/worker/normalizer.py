"""
Provider payload normalization.

Turns a provider-specific payload into a canonical batch:

    {
        "products": [ {external_id, title, image_url, category, product_url, provider}, ... ],
        "deals":    [ {external_product_id, price_cents, old_price_cents,
                       currency, expires_at, starts_at, rolling_window}, ... ],
        "dropped":  {"products": n, "deals": n},
        "reasons":  Counter({"missing_external_id": n, ...}),
    }

Malformed records (missing id, non-positive price, unparseable expiry)
are dropped and counted — one bad record never aborts the batch.

Supported providers:
  - ``canonical`` — the shared wire shape (camelCase keys, decimal prices,
    ISO timestamps), used by the seed source and generic JSON feeds.
  - ``amazon`` — Product Advertising API ``Items`` (``ASIN``, ``ItemInfo``,
    ``Offers.Listings``).  Without a promotion end time the deal window
    is 24 hours from *now* and the deal is flagged ``rolling_window``:
    its expiry moves on every poll, so it cannot be part of the deal's
    identity.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable

from deal_lifecycle import parse_timestamp, to_cents, utcnow
from errors import ValidationSkip

logger = logging.getLogger("normalizer")

DEFAULT_CURRENCY = "USD"
DEFAULT_PROMOTION_HOURS = 24

# Storefront button text that leaks into scraped titles; only stripped at
# either end of the title, as whole words.
_TITLE_JUNK = r"(?:add to (?:cart|bag)|view details|out of stock|sold out|in stock|sale!|new!)"
_RE_LEADING_JUNK = re.compile(rf"^\s*{_TITLE_JUNK}(?!\w)\s*[:|\-]?\s*", re.IGNORECASE)
_RE_TRAILING_JUNK = re.compile(rf"(?:^|\s+)[:|\-]?\s*{_TITLE_JUNK}\s*$", re.IGNORECASE)
_RE_QTY_TAIL = re.compile(r"\s+(?:qty|quantity)\s*[:x]?\s*\d+\s*$", re.IGNORECASE)


def _deduplicate_title(title: str) -> str:
    """Remove a repeated leading word sequence.

    Example: "Sony Headphones Sony Headphones Black"
           → "Sony Headphones Black"
    """
    words = title.split()
    if len(words) < 4:
        return title

    for chunk_size in range(len(words) // 2, 1, -1):
        first_chunk = " ".join(words[:chunk_size])
        remaining = " ".join(words[chunk_size:])
        if remaining.startswith(first_chunk):
            unique_trailing = remaining[len(first_chunk):].strip()
            return f"{first_chunk} {unique_trailing}".strip() if unique_trailing else first_chunk
        if first_chunk.endswith(remaining) and len(remaining) > 8:
            return first_chunk

    return title


def clean_title(title: Any) -> str:
    """Strip storefront junk, surrounding quotes and extra whitespace."""
    if not isinstance(title, str):
        return ""
    cleaned = title
    previous = None
    while cleaned != previous:
        previous = cleaned
        cleaned = _RE_LEADING_JUNK.sub("", cleaned)
        cleaned = _RE_TRAILING_JUNK.sub("", cleaned)
        cleaned = _RE_QTY_TAIL.sub("", cleaned)
    cleaned = re.sub(r'^["\']+(.*?)["\']+$', r"\1", cleaned.strip())
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return _deduplicate_title(cleaned)


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"\s+", " ", value).strip()
    return cleaned or None


def _clean_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _price_cents(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return to_cents(amount)


# =====================================================================
# Record validators (raise ValidationSkip)
# =====================================================================


def _product_record(
    external_id: Any,
    title: Any,
    *,
    image_url: Any = None,
    category: Any = None,
    product_url: Any = None,
    provider: str | None = None,
) -> dict[str, Any]:
    ext = _clean_id(external_id)
    if not ext:
        raise ValidationSkip("missing_external_id")
    cleaned = clean_title(title)
    if not cleaned:
        raise ValidationSkip("missing_title")
    return {
        "external_id": ext,
        "title": cleaned,
        "image_url": _clean_text(image_url),
        "category": _clean_text(category),
        "product_url": _clean_text(product_url),
        "provider": provider,
    }


def _deal_record(
    external_product_id: Any,
    price: Any,
    *,
    original_price: Any = None,
    currency: Any = None,
    expires_at: Any = None,
    starts_at: Any = None,
    rolling_window: bool = False,
) -> dict[str, Any]:
    ext = _clean_id(external_product_id)
    if not ext:
        raise ValidationSkip("missing_external_product_id")

    price_cents = _price_cents(price)
    if price_cents is None or price_cents <= 0:
        raise ValidationSkip("non_positive_price")

    expires = parse_timestamp(expires_at)
    if expires is None:
        raise ValidationSkip("invalid_expires_at")

    old_price_cents = _price_cents(original_price)
    if old_price_cents is not None and old_price_cents < price_cents:
        # A "was" price below the current price is not a markdown; keep the
        # deal, drop the reference price.
        old_price_cents = None

    cur = _clean_text(currency)
    return {
        "external_product_id": ext,
        "price_cents": price_cents,
        "old_price_cents": old_price_cents,
        "currency": cur.upper() if cur else DEFAULT_CURRENCY,
        "expires_at": expires,
        "starts_at": parse_timestamp(starts_at),
        "rolling_window": rolling_window,
    }


# =====================================================================
# Providers
# =====================================================================


def _canonical_products(payload: dict[str, Any], now: datetime) -> list[Callable[[], dict[str, Any]]]:
    return [
        (lambda p=p: _product_record(
            p.get("externalId"),
            p.get("title"),
            image_url=p.get("imageUrl"),
            category=p.get("category"),
            product_url=p.get("productUrl"),
            provider=_clean_text(p.get("provider")),
        ))
        for p in payload.get("products") or []
        if isinstance(p, dict)
    ]


def _canonical_deals(payload: dict[str, Any], now: datetime) -> list[Callable[[], dict[str, Any]]]:
    return [
        (lambda d=d: _deal_record(
            d.get("externalProductId"),
            d.get("price"),
            original_price=d.get("originalPrice"),
            currency=d.get("currency"),
            expires_at=d.get("expiresAt"),
            starts_at=d.get("startsAt"),
        ))
        for d in payload.get("deals") or []
        if isinstance(d, dict)
    ]


def _dig(obj: Any, *path: Any) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def _amazon_items(payload: dict[str, Any]) -> list[dict[str, Any]]:
    items = payload.get("Items")
    if items is None:
        items = _dig(payload, "ItemsResult", "Items") or _dig(payload, "SearchResult", "Items")
    return [i for i in items or [] if isinstance(i, dict)]


def _amazon_products(payload: dict[str, Any], now: datetime) -> list[Callable[[], dict[str, Any]]]:
    return [
        (lambda item=item: _product_record(
            str(item.get("ASIN") or "").upper(),
            _dig(item, "ItemInfo", "Title", "DisplayValue"),
            image_url=_dig(item, "Images", "Primary", "Large", "URL")
            or _dig(item, "Images", "Primary", "Medium", "URL"),
            category=_dig(item, "BrowseNodeInfo", "BrowseNodes", 0, "DisplayName"),
            product_url=item.get("DetailPageURL"),
            provider="AMAZON",
        ))
        for item in _amazon_items(payload)
    ]


def _amazon_promotion_end(listing: Any, now: datetime) -> datetime | None:
    ends = []
    for promo in _dig(listing, "Promotions") or []:
        end = parse_timestamp(_dig(promo, "EndTime") or _dig(promo, "EndsAt"))
        if end is not None and end > now:
            ends.append(end)
    return min(ends) if ends else None


def _amazon_deals(payload: dict[str, Any], now: datetime) -> list[Callable[[], dict[str, Any]]]:
    factories = []
    for item in _amazon_items(payload):
        listing = _dig(item, "Offers", "Listings", 0)
        if listing is None:
            # No offer at all is not a deal; not an error either.
            continue
        factories.append(
            lambda item=item, listing=listing, end=_amazon_promotion_end(listing, now): _deal_record(
                str(item.get("ASIN") or "").upper(),
                _dig(listing, "Price", "Amount"),
                original_price=_dig(listing, "SavingBasis", "Amount"),
                currency=_dig(listing, "Price", "Currency"),
                expires_at=end or now + timedelta(hours=DEFAULT_PROMOTION_HOURS),
                rolling_window=end is None,
            )
        )
    return factories


PROVIDERS: dict[str, tuple[Callable, Callable]] = {
    "canonical": (_canonical_products, _canonical_deals),
    "amazon": (_amazon_products, _amazon_deals),
}


# =====================================================================
# Public entry point
# =====================================================================


def _collect(
    factories: list[Callable[[], dict[str, Any]]],
    kind: str,
    reasons: Counter,
) -> tuple[list[dict[str, Any]], int]:
    records: list[dict[str, Any]] = []
    dropped = 0
    for build in factories:
        try:
            records.append(build())
        except ValidationSkip as skip:
            dropped += 1
            reasons[skip.reason] += 1
            logger.debug("[FILTERED] %s dropped: %s", kind, skip.reason)
    return records, dropped


def normalize_payload(
    payload: dict[str, Any],
    provider: str = "canonical",
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Normalize *payload* for *provider* into a canonical batch."""
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider {provider!r} (expected one of {sorted(PROVIDERS)})")
    now = now or utcnow()
    payload = payload or {}
    product_factories, deal_factories = PROVIDERS[provider]

    reasons: Counter = Counter()
    products, dropped_products = _collect(product_factories(payload, now), "product", reasons)
    deals, dropped_deals = _collect(deal_factories(payload, now), "deal", reasons)

    # Later entries win.
    original_count = len(products)
    deduped: dict[str, dict[str, Any]] = {}
    for product in products:
        deduped[product["external_id"]] = product
    products = list(deduped.values())
    if len(products) < original_count:
        logger.info("Deduped %d → %d products", original_count, len(products))

    if dropped_products or dropped_deals:
        logger.info(
            "[%s] Dropped %d products / %d deals: %s",
            provider, dropped_products, dropped_deals, dict(reasons),
        )

    return {
        "products": products,
        "deals": deals,
        "dropped": {"products": dropped_products, "deals": dropped_deals},
        "reasons": reasons,
    }


def is_normalized(payload: Any) -> bool:
    """True when *payload* is already a batch from ``normalize_payload``."""
    return isinstance(payload, dict) and "dropped" in payload and "reasons" in payload
