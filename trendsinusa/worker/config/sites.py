"""
White-label site configuration and host-based site resolution.

Each site is a storefront with its own domain and category rules:

  - key:                  stable slug, used in ``site:<key>`` product tags
  - domain:               apex domain, matched against request hosts
  - enabled:              disabled sites receive no routing and no traffic
  - default_categories:   empty list = catch-all (accepts every category)
  - affiliate_priorities: ordered provider allowlist (e.g. ["AMAZON"])

Configuration comes from a ``sites.json`` file (``{"version": 1, "sites":
[...]}``) located via ``SITES_CONFIG_PATH`` or the usual candidate paths.
When no file exists the built-in ``DEFAULT_SITES`` are used.

``SiteConfigSource`` caches the parsed list per process; call
``invalidate()`` after an admin edit to force a re-read.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("sites")

SITES_FILE_VERSION = 1
DEFAULT_AFFILIATE_PRIORITIES = ["AMAZON"]

# ---------------------------------------------------------------------------
# Built-in network (used when no sites.json is deployed)
# ---------------------------------------------------------------------------

DEFAULT_SITES: list[dict[str, Any]] = [
    {
        "key": "trendsinusa",
        "name": "Trends in USA",
        "domain": "trendsinusa.com",
        "enabled": True,
        "default_categories": [],
        "affiliate_priorities": ["AMAZON", "WALMART", "TARGET"],
    },
    {
        "key": "trendsincanada",
        "name": "Trends in Canada",
        "domain": "trendsincanada.com",
        "enabled": False,
        "default_categories": [],
        "affiliate_priorities": ["AMAZON"],
    },
    {
        "key": "trendsinuk",
        "name": "Trends in UK",
        "domain": "trendsinuk.co.uk",
        "enabled": False,
        "default_categories": [],
        "affiliate_priorities": ["AMAZON"],
    },
    {
        "key": "trendsinaustralia",
        "name": "Trends in Australia",
        "domain": "trendsinaustralia.com.au",
        "enabled": False,
        "default_categories": [],
        "affiliate_priorities": ["AMAZON"],
    },
]


def site_tag(key: str) -> str:
    return f"site:{key}"


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------


def _string_list(value: Any, field: str, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"site {key!r}: {field} must be a list of strings")
    # ordered set
    return list(dict.fromkeys(v.strip() for v in value if v.strip()))


def parse_site(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate one site entry and fill defaults.

    Accepts both snake_case and the camelCase keys used by the admin
    app's ``sites.json``.
    """
    if not isinstance(raw, dict):
        raise ValueError("site entry must be an object")
    key = raw.get("key")
    domain = raw.get("domain")
    if not isinstance(key, str) or not key.strip():
        raise ValueError("site entry is missing 'key'")
    if not isinstance(domain, str) or not domain.strip():
        raise ValueError(f"site {key!r} is missing 'domain'")
    key = key.strip()

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValueError(f"site {key!r}: enabled must be a boolean")

    categories = raw.get("default_categories", raw.get("defaultCategories"))
    priorities = raw.get("affiliate_priorities", raw.get("affiliatePriorities"))
    affiliate_priorities = _string_list(priorities, "affiliate_priorities", key)

    return {
        "key": key,
        "name": raw.get("name") or key,
        "domain": domain.strip().lower(),
        "enabled": enabled,
        "default_categories": _string_list(categories, "default_categories", key),
        "affiliate_priorities": affiliate_priorities
        if priorities is not None else list(DEFAULT_AFFILIATE_PRIORITIES),
    }


def parse_sites_file(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, dict) or data.get("version") != SITES_FILE_VERSION:
        raise ValueError(f"sites config must be an object with version={SITES_FILE_VERSION}")
    sites = [parse_site(s) for s in data.get("sites") or []]
    keys = [s["key"] for s in sites]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise ValueError(f"duplicate site keys: {', '.join(duplicates)}")
    return sites


def candidate_site_paths(cwd: Path | None = None) -> list[Path]:
    cwd = cwd or Path.cwd()
    candidates = []
    env_path = os.getenv("SITES_CONFIG_PATH")
    if env_path:
        candidates.append(Path(env_path))
    candidates += [
        cwd / "config" / "sites.json",
        cwd.parent / "config" / "sites.json",
        cwd.parent.parent / "config" / "sites.json",
    ]
    return candidates


# ---------------------------------------------------------------------------
# Cached configuration source
# ---------------------------------------------------------------------------


class SiteConfigSource:
    """Read-only site configuration, cached until ``invalidate()``."""

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        defaults: list[dict[str, Any]] | None = None,
    ) -> None:
        self.path = Path(path) if path else None
        self.defaults = DEFAULT_SITES if defaults is None else defaults
        self._sites: list[dict[str, Any]] | None = None
        self.loaded_from: str | None = None

    def _load(self) -> list[dict[str, Any]]:
        if self.path is not None:
            # An explicit path that fails to load is a deployment error.
            with self.path.open(encoding="utf-8") as fh:
                sites = parse_sites_file(json.load(fh))
            self.loaded_from = str(self.path)
            return sites

        for candidate in candidate_site_paths():
            if not candidate.is_file():
                continue
            with candidate.open(encoding="utf-8") as fh:
                sites = parse_sites_file(json.load(fh))
            self.loaded_from = str(candidate)
            return sites

        self.loaded_from = "defaults"
        return [parse_site(s) for s in self.defaults]

    def get_sites(self) -> list[dict[str, Any]]:
        if self._sites is None:
            self._sites = self._load()
            logger.info(
                "Loaded %d sites (%d enabled) from %s",
                len(self._sites),
                sum(1 for s in self._sites if s["enabled"]),
                self.loaded_from,
            )
        return self._sites

    def enabled_sites(self) -> list[dict[str, Any]]:
        return [s for s in self.get_sites() if s["enabled"]]

    def get_site(self, key: str) -> dict[str, Any] | None:
        for s in self.get_sites():
            if s["key"] == key:
                return s
        return None

    def invalidate(self) -> None:
        self._sites = None
        self.loaded_from = None


# ---------------------------------------------------------------------------
# Host resolution
# ---------------------------------------------------------------------------


def _strip_port(host: str) -> str:
    h = host.strip().lower()
    idx = h.find(":")
    return h if idx == -1 else h[:idx]


def resolve_site_key_for_host(
    host: str | None,
    sites: list[dict[str, Any]],
    default: str | None = None,
) -> str | None:
    """Map a request host to a site key by longest matching domain.

    ``shop.trendsinusa.com`` and ``trendsinusa.com:443`` both resolve to the
    site whose domain is ``trendsinusa.com``.  Disabled sites never match.
    """
    if not host:
        return default
    h = _strip_port(host)
    candidates = [
        s for s in sites
        if s.get("enabled") and (h == s["domain"].lower() or h.endswith("." + s["domain"].lower()))
    ]
    if not candidates:
        return default
    candidates.sort(key=lambda s: len(s["domain"]), reverse=True)
    return candidates[0]["key"]
