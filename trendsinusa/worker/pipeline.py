"""
Ingestion pipeline: canonical batch -> products + deals, audited per run.

Order of operations for one ``run_ingestion`` call:

  1. Normalize the payload fully in memory (no writes before this).
  2. Open an ``ingestion_runs`` row with status STARTED.
  3. Check the site's ingestion gate.  Closed -> the run ends SUCCESS with
     ``metadata.skipped = true`` and nothing else is written.  An
     unreadable gate row fails the run instead.
  4. Upsert products by ``external_id`` (scalar fields only, never tags).
  5. Resolve each deal to a product id (this batch first, then the store),
     compute its lifecycle status, and upsert it by dedup key.  Deals
     with a rolling expiry window are keyed per product, not per expiry.
  6. Expire this source's deals whose expiry has passed.
  7. Close the run SUCCESS with counts, or FAILURE with the error message.

Every write is an idempotent upsert keyed by a stable key, so re-running
the same payload is safe.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from deal_lifecycle import (
    build_dedup_key,
    build_rolling_dedup_key,
    compute_discount_percent,
    compute_status,
    to_iso,
    utcnow,
)
from errors import GateClosed, PipelineError, StoreUnavailable, UnresolvedReference
from gate import check_ingestion_enabled
from normalizer import is_normalized, normalize_payload

logger = logging.getLogger("pipeline")

RUN_STARTED = "STARTED"
RUN_SUCCESS = "SUCCESS"
RUN_FAILURE = "FAILURE"


def _product_rows(products: list[dict[str, Any]], source: str, now: datetime) -> list[dict[str, Any]]:
    return [
        {
            "external_id": p["external_id"],
            "source": source,
            "provider": p.get("provider"),
            "title": p["title"],
            "image_url": p.get("image_url"),
            "category": p.get("category"),
            "product_url": p.get("product_url"),
            "source_fetched_at": to_iso(now),
        }
        for p in products
    ]


def _resolve_product_ids(
    store: Any,
    deals: list[dict[str, Any]],
    upserted: list[dict[str, Any]],
) -> dict[str, str]:
    """Map external product id -> internal id, batch first, then the store."""
    product_ids = {row["external_id"]: row["id"] for row in upserted if row.get("id")}
    missing = sorted({d["external_product_id"] for d in deals} - product_ids.keys())
    if missing:
        for ext_id, row in store.get_products_by_external_ids(missing).items():
            product_ids[ext_id] = row["id"]
    return product_ids


def _product_id_for(product_ids: dict[str, str], external_product_id: str) -> str:
    product_id = product_ids.get(external_product_id)
    if not product_id:
        raise UnresolvedReference(external_product_id)
    return product_id


def _deal_rows(
    deals: list[dict[str, Any]],
    product_ids: dict[str, str],
    source: str,
    now: datetime,
) -> tuple[list[dict[str, Any]], int]:
    rows: dict[str, dict[str, Any]] = {}
    unresolved = 0
    for d in deals:
        try:
            product_id = _product_id_for(product_ids, d["external_product_id"])
        except UnresolvedReference as exc:
            logger.warning("No product match for deal: %s", exc)
            unresolved += 1
            continue

        if d.get("rolling_window"):
            key = build_rolling_dedup_key(source, d["external_product_id"])
        else:
            key = build_dedup_key(source, d["external_product_id"], d["price_cents"], d["expires_at"])
        # Same key twice in one batch: later entry wins (a single upsert
        # statement cannot touch the same conflict key twice).
        rows[key] = {
            "source": source,
            "external_key": key,
            "product_id": product_id,
            "status": compute_status(now, d["expires_at"], d.get("starts_at")),
            "current_price_cents": d["price_cents"],
            "old_price_cents": d.get("old_price_cents"),
            "discount_percent": compute_discount_percent(d["price_cents"], d.get("old_price_cents")),
            "currency": d["currency"],
            "starts_at": to_iso(d["starts_at"]) if d.get("starts_at") else None,
            "expires_at": to_iso(d["expires_at"]),
            "last_evaluated_at": to_iso(now),
        }
    return list(rows.values()), unresolved


def _fail_run(store: Any, run_id: str, exc: Exception) -> None:
    message = str(exc) or exc.__class__.__name__
    logger.error("Ingestion run %s failed: %s", run_id, message)
    try:
        store.complete_run(
            run_id,
            status=RUN_FAILURE,
            finished_at=utcnow(),
            error=message,
        )
    except PipelineError as close_exc:
        # Leaves a STARTED row behind; run_health flags it as stale.
        logger.error("Could not mark run %s failed: %s", run_id, close_exc)


def run_ingestion(
    store: Any,
    source: str,
    payload: dict[str, Any],
    *,
    site_key: str,
    enabled_sites: list[dict[str, Any]] | None = None,
    provider: str = "canonical",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Ingest one payload for *site_key* and return the terminal run row."""
    now = now or utcnow()
    batch = payload if is_normalized(payload) else normalize_payload(payload, provider, now=now)

    run = store.create_run(source, site_key, now)
    run_id = run["id"]
    logger.info("Ingestion run started: %s (source=%s, site=%s)", run_id, source, site_key)

    try:
        check_ingestion_enabled(store, site_key)
    except GateClosed as closed:
        logger.info("[%s] Ingestion gate closed — skipping run %s", site_key, run_id)
        return store.complete_run(
            run_id,
            status=RUN_SUCCESS,
            finished_at=utcnow(),
            metadata={"skipped": True, "reason": str(closed)},
        )
    except StoreUnavailable as exc:
        _fail_run(store, run_id, exc)
        raise

    try:
        if enabled_sites is not None and not enabled_sites:
            raise PipelineError("No enabled site configured. Enable at least one site before ingesting.")

        upserted = store.upsert_products(_product_rows(batch["products"], source, now))

        product_ids = _resolve_product_ids(store, batch["deals"], upserted)
        deal_rows, unresolved = _deal_rows(batch["deals"], product_ids, source, now)
        if unresolved:
            logger.warning("[%s] %d deals skipped (no product match)", source, unresolved)
        upserted_deals = store.upsert_deals(deal_rows)

        expired = store.expire_overdue_deals(now, source=source)

        metadata = {
            "dropped_products": batch["dropped"]["products"],
            "dropped_deals": batch["dropped"]["deals"],
            "drop_reasons": dict(batch["reasons"]),
            "unresolved_deals": unresolved,
            "expired": expired,
        }
        finished = store.complete_run(
            run_id,
            status=RUN_SUCCESS,
            finished_at=utcnow(),
            products_processed=len(upserted),
            deals_processed=len(upserted_deals),
            metadata=metadata,
        )
    except Exception as exc:
        _fail_run(store, run_id, exc)
        raise

    logger.info("=" * 60)
    logger.info("INGESTION COMPLETE")
    logger.info("  Run:        %s", run_id)
    logger.info("  Source:     %s", source)
    logger.info("  Products:   %d", len(upserted))
    logger.info("  Deals:      %d", len(upserted_deals))
    logger.info("  Dropped:    %d products / %d deals",
                metadata["dropped_products"], metadata["dropped_deals"])
    logger.info("  Unresolved: %d", unresolved)
    logger.info("  Expired:    %d", expired)
    logger.info("=" * 60)
    return finished
