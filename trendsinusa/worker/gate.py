"""
Automation gates — per-site, per-capability kill switches.

Default is FAIL-CLOSED:
  - no ``automation_gates`` row for the site  -> every capability disabled
  - gate row unreadable (store error)        -> disabled; the ingestion
    check re-raises it so the run fails visibly instead of skipping
  - only an explicit ``true`` opens a gate

Gates are read fresh from the store at the start of every gated write
path; there is no process-level cache to go stale.
"""

from __future__ import annotations

import logging
from typing import Any

from errors import GateClosed, StoreUnavailable

logger = logging.getLogger("gate")

INGESTION = "ingestion_enabled"
AUTO_PUBLISH = "auto_publish_enabled"
UNAFFILIATED_AUTO_PUBLISH = "unaffiliated_auto_publish_enabled"

CAPABILITIES = (INGESTION, AUTO_PUBLISH, UNAFFILIATED_AUTO_PUBLISH)


def _is_open(row: dict[str, Any] | None, capability: str) -> bool:
    return bool(row) and row.get(capability) is True


def _gate_flag(store: Any, site_key: str, capability: str) -> bool:
    try:
        row = store.get_gate(site_key)
    except StoreUnavailable as exc:
        logger.warning("[%s] Gate read failed, treating %s as closed: %s", site_key, capability, exc)
        return False
    return _is_open(row, capability)


def is_ingestion_enabled(store: Any, site_key: str) -> bool:
    return _gate_flag(store, site_key, INGESTION)


def check_ingestion_enabled(store: Any, site_key: str) -> None:
    """Raise ``GateClosed`` unless ingestion is explicitly enabled.

    A store error while reading the gate propagates as ``StoreUnavailable``
    so the run is recorded as a failure rather than a skip.
    """
    if not _is_open(store.get_gate(site_key), INGESTION):
        raise GateClosed(site_key, INGESTION)


def is_auto_publish_enabled(store: Any, site_key: str) -> bool:
    return _gate_flag(store, site_key, AUTO_PUBLISH)


def require_auto_publish_enabled(store: Any, site_key: str) -> None:
    if not is_auto_publish_enabled(store, site_key):
        raise GateClosed(site_key, AUTO_PUBLISH)


def is_unaffiliated_auto_publish_enabled(store: Any, site_key: str) -> bool:
    return _gate_flag(store, site_key, UNAFFILIATED_AUTO_PUBLISH)


def require_unaffiliated_auto_publish_enabled(store: Any, site_key: str) -> None:
    if not is_unaffiliated_auto_publish_enabled(store, site_key):
        raise GateClosed(site_key, UNAFFILIATED_AUTO_PUBLISH)
