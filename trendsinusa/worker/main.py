"""
Trends deal worker — scheduled job entry point.

Fetches a provider feed (or the seed payload), runs it through the
ingestion pipeline, routes products to sites, keeps deal lifecycle tiers
current, and optionally auto-publishes.  Every ingestion attempt is
tracked in ingestion_runs.

Usage:
    python main.py                # hourly: ingest + route
    python main.py ingest         # ingestion only
    python main.py sweep          # lifecycle sweep (expire / re-tier deals)
    python main.py route          # recompute site:<key> product tags
    python main.py publish        # gated auto-publish for SITE_KEY
    python main.py health         # report run health / stale STARTED rows

Environment variables:
    SUPABASE_URL, SUPABASE_SERVICE_KEY   required
    DRY_RUN=true              # read-only: skip all DB writes
    SITE_KEY=trendsinusa      # site whose gates guard this worker
    SITES_CONFIG_PATH=...     # sites.json (defaults to built-in sites)
    INGEST_SOURCE=MANUAL      # source label stored on runs/products/deals
    INGEST_FEED_URL=...       # JSON feed; seed payload when unset
    INGEST_PROVIDER=canonical # payload shape: canonical | amazon
    ROUTER_BATCH_LIMIT=5000   # max products scanned per routing pass
    STALE_RUN_MINUTES=60      # STARTED runs older than this are flagged
"""

from __future__ import annotations

import logging
import os
import sys
import time
from typing import Any

from dotenv import load_dotenv
from supabase import create_client, Client

from config.sites import SiteConfigSource
from deal_lifecycle import sweep_deal_statuses
from errors import PipelineError, UpstreamFetchFailure
from pipeline import run_ingestion
from publisher import auto_publish_deals
from run_health import collect_run_health
from site_router import recompute_product_site_tags
from sources import fetch_feed, fetch_seed_payload
from store import SupabaseStore

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("orchestrator")

# ---------------------------------------------------------------------------
# Configuration from environment
# ---------------------------------------------------------------------------

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_KEY", "")

DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
SITE_KEY = os.getenv("SITE_KEY", "trendsinusa")
INGEST_SOURCE = os.getenv("INGEST_SOURCE", "MANUAL")
INGEST_FEED_URL = os.getenv("INGEST_FEED_URL", "")
INGEST_PROVIDER = os.getenv("INGEST_PROVIDER", "canonical").lower()
ROUTER_BATCH_LIMIT = int(os.getenv("ROUTER_BATCH_LIMIT", "5000"))
STALE_RUN_MINUTES = int(os.getenv("STALE_RUN_MINUTES", "60"))

if not SUPABASE_URL or not SUPABASE_KEY:
    logger.error("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    sys.exit(1)

db: Client = create_client(SUPABASE_URL, SUPABASE_KEY)
store = SupabaseStore(db, dry_run=DRY_RUN)
sites = SiteConfigSource(os.getenv("SITES_CONFIG_PATH") or None)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def _fetch_payload() -> dict[str, Any]:
    if INGEST_FEED_URL:
        return fetch_feed(INGEST_FEED_URL)
    logger.info("No INGEST_FEED_URL set — using seed payload")
    return fetch_seed_payload()


def job_ingest() -> dict[str, Any]:
    # Fetch before any run row exists: a failed fetch writes nothing.
    payload = _fetch_payload()
    return run_ingestion(
        store,
        INGEST_SOURCE,
        payload,
        site_key=SITE_KEY,
        enabled_sites=sites.enabled_sites(),
        provider=INGEST_PROVIDER,
    )


def job_route() -> dict[str, int]:
    return recompute_product_site_tags(store, sites.get_sites(), limit=ROUTER_BATCH_LIMIT)


def job_sweep() -> dict[str, int]:
    return sweep_deal_statuses(store)


def job_publish() -> dict[str, Any]:
    return auto_publish_deals(store, SITE_KEY, sites.get_sites())


def job_health() -> dict[str, Any]:
    return collect_run_health(store, stale_after_minutes=STALE_RUN_MINUTES)


def job_hourly() -> dict[str, Any]:
    run = job_ingest()
    routing = job_route()
    return {"run": run, "routing": routing}


JOBS = {
    "hourly": job_hourly,
    "ingest": job_ingest,
    "route": job_route,
    "sweep": job_sweep,
    "publish": job_publish,
    "health": job_health,
}


def run(job_name: str) -> int:
    """Run one job and return a process exit code."""
    job = JOBS.get(job_name)
    if job is None:
        logger.error("Unknown job '%s' (expected one of: %s)", job_name, ", ".join(JOBS))
        return 2

    start = time.time()
    logger.info("=" * 60)
    logger.info("Trends Worker Starting")
    logger.info("  JOB:        %s", job_name)
    logger.info("  DRY_RUN:    %s", DRY_RUN)
    logger.info("  SITE_KEY:   %s", SITE_KEY)
    logger.info("  SOURCE:     %s", INGEST_SOURCE)
    logger.info("  FEED:       %s", INGEST_FEED_URL or "(seed)")
    logger.info("=" * 60)

    try:
        result = job()
    except UpstreamFetchFailure as exc:
        logger.error("Upstream fetch failed, ingestion not started: %s", exc)
        return 1
    except PipelineError as exc:
        logger.error("Job %s failed: %s", job_name, exc)
        return 1

    logger.info("Job %s finished in %.1fs: %s", job_name, time.time() - start, result)
    if job_name == "health" and not result.get("healthy"):
        return 1
    return 0


if __name__ == "__main__":
    job_arg = sys.argv[1] if len(sys.argv) > 1 else "hourly"
    sys.exit(run(job_arg))
