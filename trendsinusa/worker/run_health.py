"""
Ingestion run health — recent outcomes and stale STARTED rows.

A run that crashes mid-flight (process killed, container evicted) leaves
its ``ingestion_runs`` row in STARTED forever.  This collector flags such
rows once they are older than ``stale_after_minutes`` so an operator (or
an alerting job) can notice.  It never rewrites runs; the audit trail
stays untouched.

Usage from main.py:
    from run_health import collect_run_health
    health = collect_run_health(store, stale_after_minutes=60)
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from deal_lifecycle import parse_timestamp, utcnow
from errors import StoreUnavailable

logger = logging.getLogger("run_health")

DEFAULT_STALE_AFTER_MINUTES = 60
DEFAULT_WINDOW_HOURS = 24


def collect_run_health(
    store: Any,
    *,
    now: datetime | None = None,
    stale_after_minutes: int = DEFAULT_STALE_AFTER_MINUTES,
    window_hours: int = DEFAULT_WINDOW_HOURS,
) -> dict[str, Any]:
    """Summarize ingestion runs in the last *window_hours*.

    Returns the health dict regardless of store errors (``error`` is set
    and ``healthy`` is False when the runs table could not be read).
    """
    now = now or utcnow()
    since = now - timedelta(hours=window_hours)
    stale_cutoff = now - timedelta(minutes=stale_after_minutes)

    health: dict[str, Any] = {
        "window_hours": window_hours,
        "runs": 0,
        "success": 0,
        "failure": 0,
        "started": 0,
        "skipped": 0,
        "last_run": None,
        "last_error": None,
        "stale_runs": [],
        "healthy": False,
        "error": None,
    }

    try:
        runs = store.list_runs(since=since, limit=500)
        # Stale rows can predate the window; look them up directly.
        started = store.list_runs(status="STARTED", limit=500)
    except StoreUnavailable as exc:
        logger.warning("Failed to read ingestion runs: %s", exc)
        health["error"] = str(exc)
        return health

    statuses = Counter(r.get("status") for r in runs)
    health["runs"] = len(runs)
    health["success"] = statuses.get("SUCCESS", 0)
    health["failure"] = statuses.get("FAILURE", 0)
    health["started"] = statuses.get("STARTED", 0)
    health["skipped"] = sum(1 for r in runs if (r.get("metadata") or {}).get("skipped"))

    if runs:
        latest = max(runs, key=lambda r: parse_timestamp(r.get("started_at")) or since)
        health["last_run"] = {
            "id": latest.get("id"),
            "source": latest.get("source"),
            "status": latest.get("status"),
            "started_at": latest.get("started_at"),
            "finished_at": latest.get("finished_at"),
        }
    failures = [r for r in runs if r.get("status") == "FAILURE"]
    if failures:
        newest_failure = max(failures, key=lambda r: parse_timestamp(r.get("started_at")) or since)
        health["last_error"] = newest_failure.get("error")

    for r in started:
        started_at = parse_timestamp(r.get("started_at"))
        if started_at is not None and started_at <= stale_cutoff:
            health["stale_runs"].append(
                {"id": r.get("id"), "source": r.get("source"), "started_at": r.get("started_at")}
            )

    health["healthy"] = not health["stale_runs"] and health["failure"] == 0

    logger.info(
        "Run health (%dh): %d runs | success=%d failure=%d started=%d skipped=%d | stale=%d",
        window_hours, health["runs"], health["success"], health["failure"],
        health["started"], health["skipped"], len(health["stale_runs"]),
    )
    for stale in health["stale_runs"]:
        logger.warning(
            "Run %s (%s) stuck in STARTED since %s",
            stale["id"], stale["source"], stale["started_at"],
        )
    if health["last_error"]:
        logger.info("Most recent failure: %s", health["last_error"])

    return health
