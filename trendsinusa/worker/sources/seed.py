"""
Seed source: a deterministic sample payload that exercises every deal tier.

Not tied to any retailer — real feeds produce the same canonical shape.
Expiries are relative to *now*: 1h, 6h, 24h and one already expired.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from deal_lifecycle import to_iso, utcnow


def _iso_in(now: datetime, hours: float) -> str:
    return to_iso(now + timedelta(hours=hours))


def fetch_seed_payload(now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    products = [
        {
            "externalId": "seed-001",
            "title": "Seed Product A (Headphones)",
            "imageUrl": "https://example.com/seed-a.jpg",
            "category": "Electronics",
            "productUrl": "https://example.com/products/seed-001",
            "provider": "AMAZON",
        },
        {
            "externalId": "seed-002",
            "title": "Seed Product B (Coffee Maker)",
            "imageUrl": "https://example.com/seed-b.jpg",
            "category": "Home",
            "productUrl": "https://example.com/products/seed-002",
            "provider": "AMAZON",
        },
        {
            "externalId": "seed-003",
            "title": "Seed Product C (Running Shoes)",
            "imageUrl": "https://example.com/seed-c.jpg",
            "category": "Sports",
            "productUrl": "https://example.com/products/seed-003",
            "provider": "AMAZON",
        },
    ]
    deals = [
        {
            "externalProductId": "seed-001",
            "price": 59.99,
            "originalPrice": 99.99,
            "currency": "USD",
            "expiresAt": _iso_in(now, 1),  # EXPIRING_1H
        },
        {
            "externalProductId": "seed-002",
            "price": 79.0,
            "originalPrice": 129.0,
            "currency": "USD",
            "expiresAt": _iso_in(now, 6),  # EXPIRING_6H
        },
        {
            "externalProductId": "seed-003",
            "price": 49.5,
            "originalPrice": 89.5,
            "currency": "USD",
            "expiresAt": _iso_in(now, 24),  # EXPIRING_24H
        },
        {
            "externalProductId": "seed-003",
            "price": 44.0,
            "originalPrice": 89.5,
            "currency": "USD",
            "expiresAt": _iso_in(now, -2),  # already EXPIRED
        },
    ]
    return {"products": products, "deals": deals}
