"""Shared fixtures for the trends worker test suite."""

from __future__ import annotations

import copy
import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the worker modules are importable from tests/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from deal_lifecycle import EXPIRED, parse_timestamp, to_iso
from errors import StoreUnavailable


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory stand-in for ``SupabaseStore`` with the same method names.

    ``fail_on`` holds method names that raise ``StoreUnavailable``.
    ``concurrent_tags`` simulates another writer: each pending entry is
    appended to the product's tags (bumping ``tags_version``) right before
    a tag CAS, which then loses the race.
    """

    def __init__(self, gates=None):
        self.gates = {g["site_key"]: g for g in (gates or [])}
        self.products = {}
        self.deals = {}
        self.runs = {}
        self.fail_on = set()
        self.concurrent_tags = []
        self.tag_writes = 0
        self._ids = itertools.count(1)

    def _check(self, name):
        if name in self.fail_on:
            raise StoreUnavailable(f"{name} unavailable")

    def _next_id(self, prefix):
        return f"{prefix}{next(self._ids):04d}"

    # seeding helpers -------------------------------------------------

    def add_product(self, product):
        self.products[product["id"]] = copy.deepcopy(product)
        return product

    def add_deal(self, deal):
        self.deals[deal["id"]] = copy.deepcopy(deal)
        return deal

    def add_run(self, run):
        self.runs[run["id"]] = copy.deepcopy(run)
        return run

    # gates -----------------------------------------------------------

    def get_gate(self, site_key):
        self._check("get_gate")
        row = self.gates.get(site_key)
        return dict(row) if row else None

    # runs ------------------------------------------------------------

    def create_run(self, source, site_key, started_at):
        self._check("create_run")
        run = {
            "id": self._next_id("run-"),
            "source": source,
            "site_key": site_key,
            "status": "STARTED",
            "started_at": to_iso(started_at),
        }
        self.runs[run["id"]] = run
        return dict(run)

    def complete_run(self, run_id, *, status, finished_at, error=None,
                     products_processed=0, deals_processed=0, metadata=None):
        self._check("complete_run")
        self.runs[run_id].update({
            "status": status,
            "finished_at": to_iso(finished_at),
            "error": error,
            "products_processed": products_processed,
            "deals_processed": deals_processed,
            "metadata": metadata or {},
        })
        return dict(self.runs[run_id])

    def list_runs(self, *, since=None, status=None, limit=50):
        self._check("list_runs")
        rows = list(self.runs.values())
        if since is not None:
            rows = [r for r in rows if parse_timestamp(r["started_at"]) >= since]
        if status is not None:
            rows = [r for r in rows if r["status"] == status]
        rows.sort(key=lambda r: r["started_at"], reverse=True)
        return [dict(r) for r in rows[:limit]]

    # products --------------------------------------------------------

    def upsert_products(self, rows):
        self._check("upsert_products")
        by_external = {p["external_id"]: p for p in self.products.values()}
        result = []
        for row in rows:
            existing = by_external.get(row["external_id"])
            if existing is None:
                existing = {
                    "id": self._next_id("p"),
                    "tags": [],
                    "tags_version": 0,
                    "blocked": False,
                    "category_override": None,
                }
                self.products[existing["id"]] = existing
                by_external[row["external_id"]] = existing
            existing.update(row)
            result.append(copy.deepcopy(existing))
        return result

    def get_products_by_external_ids(self, external_ids):
        self._check("get_products_by_external_ids")
        wanted = set(external_ids)
        return {
            p["external_id"]: {"id": p["id"], "external_id": p["external_id"]}
            for p in self.products.values()
            if p["external_id"] in wanted
        }

    def get_product(self, product_id):
        self._check("get_product")
        product = self.products.get(product_id)
        return copy.deepcopy(product) if product else None

    def list_products(self, *, limit, offset=0):
        self._check("list_products")
        ordered = sorted(self.products.values(), key=lambda p: p["id"])
        return [copy.deepcopy(p) for p in ordered[offset:offset + limit]]

    def update_product_tags(self, product_id, tags, *, expected_version):
        self._check("update_product_tags")
        product = self.products[product_id]
        if self.concurrent_tags:
            product["tags"] = list(product.get("tags") or []) + [self.concurrent_tags.pop(0)]
            product["tags_version"] = (product.get("tags_version") or 0) + 1
        if (product.get("tags_version") or 0) != expected_version:
            return False
        product["tags"] = list(tags)
        product["tags_version"] = expected_version + 1
        self.tag_writes += 1
        return True

    # deals -----------------------------------------------------------

    def upsert_deals(self, rows):
        self._check("upsert_deals")
        by_key = {(d["source"], d["external_key"]): d for d in self.deals.values()}
        result = []
        for row in rows:
            existing = by_key.get((row["source"], row["external_key"]))
            if existing is None:
                existing = {"id": self._next_id("d"), "suppressed": False, "approved": False}
                self.deals[existing["id"]] = existing
                by_key[(row["source"], row["external_key"])] = existing
            existing.update(row)
            result.append(dict(existing))
        return result

    def list_open_deals(self, *, limit=5000):
        self._check("list_open_deals")
        rows = [dict(d) for d in self.deals.values() if d["status"] != EXPIRED]
        return rows[:limit]

    def update_deal_status(self, deal_id, status, *, expected_status, now):
        self._check("update_deal_status")
        deal = self.deals[deal_id]
        if expected_status is not None and deal["status"] != expected_status:
            return False
        deal["status"] = status
        deal["last_evaluated_at"] = to_iso(now)
        return True

    def expire_overdue_deals(self, now, *, source=None):
        self._check("expire_overdue_deals")
        count = 0
        for deal in self.deals.values():
            if deal["status"] == EXPIRED:
                continue
            if source is not None and deal.get("source") != source:
                continue
            if parse_timestamp(deal["expires_at"]) <= now:
                deal["status"] = EXPIRED
                deal["last_evaluated_at"] = to_iso(now)
                count += 1
        return count

    def list_publish_candidates(self, site_key, *, limit=200, offset=0):
        self._check("list_publish_candidates")
        rows = []
        for deal in self.deals.values():
            if deal.get("approved") or deal.get("suppressed") or deal["status"] == EXPIRED:
                continue
            product = self.products.get(deal["product_id"])
            if product is None or product.get("blocked") is not False:
                continue
            if f"site:{site_key}" not in (product.get("tags") or []):
                continue
            row = dict(deal)
            row["product"] = copy.deepcopy(product)
            rows.append(row)
        rows.sort(key=lambda r: (r["expires_at"], r["id"]))
        return rows[offset:offset + limit]

    def approve_deal(self, deal_id):
        self._check("approve_deal")
        deal = self.deals[deal_id]
        if deal.get("approved"):
            return False
        deal["approved"] = True
        return True

    # convenience -----------------------------------------------------

    def deal_for(self, external_product_id):
        """All stored deals for a product's external id."""
        product_ids = {
            p["id"] for p in self.products.values() if p["external_id"] == external_product_id
        }
        return [d for d in self.deals.values() if d["product_id"] in product_ids]


@pytest.fixture
def now():
    """Fixed, timezone-aware wall clock for deterministic tiers."""
    return FIXED_NOW


@pytest.fixture
def open_gate():
    return {
        "site_key": "trendsinusa",
        "ingestion_enabled": True,
        "auto_publish_enabled": True,
        "unaffiliated_auto_publish_enabled": False,
    }


@pytest.fixture
def make_store():
    """Factory for a fresh ``FakeStore``; pass gate rows to open gates."""

    def _make(*gates):
        return FakeStore(gates=gates)

    return _make


@pytest.fixture
def store(make_store, open_gate):
    """Store with every trendsinusa gate except unaffiliated publishing open."""
    return make_store(open_gate)


@pytest.fixture
def make_product(now):
    """Factory that builds stored product rows with sensible defaults.

    The default product is routed to trendsinusa, fresh, and unblocked,
    so it passes the public quality filter.  Any keyword overrides it.
    """

    def _make(
        *,
        id="p0001",
        external_id="ext-1",
        title="Test Product",
        category="Electronics",
        category_override=None,
        tags=None,
        tags_version=0,
        blocked=False,
        provider="AMAZON",
        source_fetched_at=None,
        **overrides,
    ):
        product = {
            "id": id,
            "external_id": external_id,
            "source": "MANUAL",
            "title": title,
            "category": category,
            "category_override": category_override,
            "tags": ["site:trendsinusa"] if tags is None else tags,
            "tags_version": tags_version,
            "blocked": blocked,
            "provider": provider,
            "source_fetched_at": source_fetched_at or to_iso(now - timedelta(hours=1)),
        }
        product.update(overrides)
        return product

    return _make


@pytest.fixture
def make_deal(now):
    """Factory that builds stored deal rows; the default is publicly eligible."""

    def _make(
        *,
        id="d0001",
        product_id="p0001",
        status="ACTIVE",
        current_price_cents=5999,
        old_price_cents=9999,
        discount_percent=40,
        expires_at=None,
        approved=True,
        suppressed=False,
        **overrides,
    ):
        deal = {
            "id": id,
            "source": "MANUAL",
            "external_key": f"MANUAL:{product_id}:{current_price_cents}",
            "product_id": product_id,
            "status": status,
            "current_price_cents": current_price_cents,
            "old_price_cents": old_price_cents,
            "discount_percent": discount_percent,
            "currency": "USD",
            "starts_at": None,
            "expires_at": expires_at or to_iso(now + timedelta(hours=48)),
            "approved": approved,
            "suppressed": suppressed,
        }
        deal.update(overrides)
        return deal

    return _make
