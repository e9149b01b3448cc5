"""
Read-only pre-flight check for the worker's Supabase project.

Reports row counts for the canonical tables, the automation gate state of
every enabled site, and the most recent ingestion run.  Nothing is
written: ``ingestion_runs`` is an append-only audit trail.

Usage:
    python check_connection.py

Exit code 0 = all good, 1 = something is broken.
"""

from __future__ import annotations

import os
import sys

from dotenv import load_dotenv
from supabase import create_client

from config.sites import SiteConfigSource
from errors import StoreUnavailable
from gate import CAPABILITIES
from store import SupabaseStore

COUNTED_TABLES = ("products", "deals", "ingestion_runs")


def log(icon: str, msg: str) -> None:
    print(f"{icon}  {msg}", flush=True)


def _count_rows(db, table: str) -> int:
    result = db.table(table).select("id", count="exact").limit(1).execute()
    return result.count or 0


def main() -> int:
    load_dotenv()
    url = os.getenv("SUPABASE_URL", "")
    key = os.getenv("SUPABASE_SERVICE_KEY", "")
    if not url or not key:
        log("X", "Missing SUPABASE_URL or SUPABASE_SERVICE_KEY")
        return 1

    try:
        db = create_client(url, key)
    except Exception as e:
        log("X", f"Failed to create Supabase client: {e}")
        return 1
    log("OK", f"Client created for {url[:40]}...")

    for table in COUNTED_TABLES:
        try:
            log("OK", f"{table}: {_count_rows(db, table)} rows")
        except Exception as e:
            log("X", f"Failed to read {table}: {e}")
            return 1

    store = SupabaseStore(db, dry_run=True)
    sites = SiteConfigSource(os.getenv("SITES_CONFIG_PATH") or None)
    try:
        enabled = sites.enabled_sites()
    except (OSError, ValueError) as e:
        log("X", f"Site config invalid: {e}")
        return 1
    log("OK", f"{len(enabled)} enabled sites (config: {sites.loaded_from})")

    try:
        for site in enabled:
            gate = store.get_gate(site["key"])
            if gate is None:
                # Not fatal: every capability simply stays off for this site.
                log("!", f"{site['key']}: no automation_gates row, all capabilities closed")
                continue
            flags = ", ".join(f"{cap}={gate.get(cap) is True}" for cap in CAPABILITIES)
            log("OK", f"{site['key']}: {flags}")

        latest = store.list_runs(limit=1)
    except StoreUnavailable as e:
        log("X", str(e))
        return 1

    if latest:
        run = latest[0]
        log("OK", f"Last run {run.get('id')} ({run.get('source')}): "
                  f"{run.get('status')} at {run.get('started_at')}")
    else:
        log("!", "No ingestion runs recorded yet")

    print()
    log("OK", "All checks passed. Worker is ready to run.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
