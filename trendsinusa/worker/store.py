"""
Canonical store backed by Supabase.

Wraps the Supabase client behind the handful of operations the worker
needs: upsert-by-key for products and deals, filtered reads, conditional
updates, and append-only writes for ingestion runs.  Every client error
is re-raised as ``StoreUnavailable`` so callers can mark a run failed.

Tables:
    products          unique (external_id)
    deals             unique (source, external_key)
    ingestion_runs    append-only audit rows
    automation_gates  one row per site_key

``dry_run=True`` keeps all reads live but logs and skips every write,
returning placeholder rows so downstream steps still log sensibly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from config.sites import site_tag
from deal_lifecycle import EXPIRED, to_iso
from errors import StoreUnavailable

logger = logging.getLogger("store")

_UPSERT_CHUNK_SIZE = 500  # max rows per Supabase upsert call
_IN_FILTER_BATCH = 50     # PostgREST .in_() lists get long fast

PRODUCT_ROUTING_COLUMNS = "id, external_id, category, category_override, tags, tags_version"


class SupabaseStore:
    """Thin repository over a ``supabase.Client``."""

    def __init__(self, db: Any, *, dry_run: bool = False) -> None:
        self.db = db
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _execute(self, query: Any, what: str) -> Any:
        try:
            return query.execute()
        except Exception as exc:
            raise StoreUnavailable(f"{what} failed: {exc}") from exc

    @staticmethod
    def _chunks(rows: list[dict[str, Any]], size: int = _UPSERT_CHUNK_SIZE) -> Iterable[list[dict[str, Any]]]:
        for i in range(0, len(rows), size):
            yield rows[i : i + size]

    # ------------------------------------------------------------------
    # automation gates
    # ------------------------------------------------------------------

    def get_gate(self, site_key: str) -> dict[str, Any] | None:
        result = self._execute(
            self.db.table("automation_gates").select("*").eq("site_key", site_key).limit(1),
            "read automation_gates",
        )
        return result.data[0] if result.data else None

    # ------------------------------------------------------------------
    # ingestion runs
    # ------------------------------------------------------------------

    def create_run(self, source: str, site_key: str, started_at: datetime) -> dict[str, Any]:
        row = {
            "source": source,
            "site_key": site_key,
            "status": "STARTED",
            "started_at": to_iso(started_at),
        }
        if self.dry_run:
            logger.info("[DRY RUN] Would create ingestion_runs entry for %s", source)
            return {"id": "dry-run", **row}
        result = self._execute(self.db.table("ingestion_runs").insert(row), "create ingestion run")
        return result.data[0]

    def complete_run(
        self,
        run_id: str,
        *,
        status: str,
        finished_at: datetime,
        error: str | None = None,
        products_processed: int = 0,
        deals_processed: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        update = {
            "status": status,
            "finished_at": to_iso(finished_at),
            "error": error,
            "products_processed": products_processed,
            "deals_processed": deals_processed,
            "metadata": metadata or {},
        }
        if self.dry_run:
            logger.info(
                "[DRY RUN] Would update run — status=%s, products=%d, deals=%d",
                status, products_processed, deals_processed,
            )
            return {"id": run_id, **update}
        result = self._execute(
            self.db.table("ingestion_runs").update(update).eq("id", run_id),
            "complete ingestion run",
        )
        return result.data[0] if result.data else {"id": run_id, **update}

    def list_runs(
        self,
        *,
        since: datetime | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        query = self.db.table("ingestion_runs").select("*")
        if since is not None:
            query = query.gte("started_at", to_iso(since))
        if status is not None:
            query = query.eq("status", status)
        query = query.order("started_at", desc=True).limit(limit)
        return self._execute(query, "list ingestion runs").data or []

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------

    def upsert_products(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Upsert on ``external_id``.  Rows must never carry ``tags``."""
        if not rows:
            return []
        if self.dry_run:
            logger.info("[DRY RUN] Would upsert %d products", len(rows))
            return [{"id": f"dry-{i}", **r} for i, r in enumerate(rows)]

        all_results: list[dict[str, Any]] = []
        for chunk in self._chunks(rows):
            result = self._execute(
                self.db.table("products").upsert(chunk, on_conflict="external_id"),
                "upsert products",
            )
            all_results.extend(result.data or [])
        return all_results

    def get_products_by_external_ids(self, external_ids: list[str]) -> dict[str, dict[str, Any]]:
        found: dict[str, dict[str, Any]] = {}
        ids = sorted(set(external_ids))
        for i in range(0, len(ids), _IN_FILTER_BATCH):
            batch = ids[i : i + _IN_FILTER_BATCH]
            result = self._execute(
                self.db.table("products").select("id, external_id").in_("external_id", batch),
                "read products by external_id",
            )
            for row in result.data or []:
                found[row["external_id"]] = row
        return found

    def get_product(self, product_id: str) -> dict[str, Any] | None:
        result = self._execute(
            self.db.table("products").select(PRODUCT_ROUTING_COLUMNS).eq("id", product_id).limit(1),
            "read product",
        )
        return result.data[0] if result.data else None

    def list_products(self, *, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        query = (
            self.db.table("products")
            .select(PRODUCT_ROUTING_COLUMNS)
            .order("id")
            .range(offset, offset + limit - 1)
        )
        return self._execute(query, "list products").data or []

    def update_product_tags(
        self, product_id: str, tags: list[str], *, expected_version: int
    ) -> bool:
        """Compare-and-swap the tag set; ``False`` if another writer won."""
        if self.dry_run:
            logger.info("[DRY RUN] Would set tags on product %s: %s", product_id, tags)
            return True
        result = self._execute(
            self.db.table("products")
            .update({"tags": tags, "tags_version": expected_version + 1})
            .eq("id", product_id)
            .eq("tags_version", expected_version),
            "update product tags",
        )
        return bool(result.data)

    # ------------------------------------------------------------------
    # deals
    # ------------------------------------------------------------------

    def upsert_deals(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Upsert on ``(source, external_key)``.

        ``suppressed`` / ``approved`` are left out of the payload so a
        refresh never clobbers a manual override; inserts take the
        column defaults (false).
        """
        if not rows:
            return []
        if self.dry_run:
            logger.info("[DRY RUN] Would upsert %d deals", len(rows))
            return [{"id": f"dry-deal-{i}", **r} for i, r in enumerate(rows)]

        all_results: list[dict[str, Any]] = []
        for chunk in self._chunks(rows):
            result = self._execute(
                self.db.table("deals").upsert(chunk, on_conflict="source,external_key"),
                "upsert deals",
            )
            all_results.extend(result.data or [])
        return all_results

    def list_open_deals(self, *, limit: int = 5000) -> list[dict[str, Any]]:
        query = (
            self.db.table("deals")
            .select("id, status, starts_at, expires_at")
            .neq("status", EXPIRED)
            .order("expires_at")
            .limit(limit)
        )
        return self._execute(query, "list open deals").data or []

    def update_deal_status(
        self, deal_id: str, status: str, *, expected_status: str | None, now: datetime
    ) -> bool:
        if self.dry_run:
            logger.info("[DRY RUN] Would move deal %s %s -> %s", deal_id, expected_status, status)
            return True
        query = (
            self.db.table("deals")
            .update({"status": status, "last_evaluated_at": to_iso(now)})
            .eq("id", deal_id)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status)
        return bool(self._execute(query, "update deal status").data)

    def expire_overdue_deals(self, now: datetime, *, source: str | None = None) -> int:
        if self.dry_run:
            logger.info("[DRY RUN] Would expire overdue deals (source=%s)", source or "all")
            return 0
        query = (
            self.db.table("deals")
            .update({"status": EXPIRED, "last_evaluated_at": to_iso(now)})
            .lte("expires_at", to_iso(now))
            .neq("status", EXPIRED)
        )
        if source is not None:
            query = query.eq("source", source)
        result = self._execute(query, "expire overdue deals")
        return len(result.data) if result.data else 0

    def list_publish_candidates(
        self, site_key: str, *, limit: int = 200, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Unapproved, unsuppressed, non-expired deals routed to *site_key*.

        The product is embedded (inner join) and must carry ``site:<key>``
        and not be blocked.  Ordered by expiry, then id, for stable paging.
        """
        query = (
            self.db.table("deals")
            .select("*, product:products!inner(*)")
            .eq("approved", False)
            .eq("suppressed", False)
            .neq("status", EXPIRED)
            .contains("product.tags", [site_tag(site_key)])
            .eq("product.blocked", False)
            .order("expires_at")
            .order("id")
            .range(offset, offset + limit - 1)
        )
        return self._execute(query, "list publish candidates").data or []

    def approve_deal(self, deal_id: str) -> bool:
        if self.dry_run:
            logger.info("[DRY RUN] Would approve deal %s", deal_id)
            return True
        result = self._execute(
            self.db.table("deals").update({"approved": True}).eq("id", deal_id).eq("approved", False),
            "approve deal",
        )
        return bool(result.data)
