"""
Upstream JSON feed fetch.

Downloads a provider payload over HTTP(S) and returns the decoded JSON.
All network work happens here, before any ingestion run is opened, so a
failed fetch leaves nothing half-written.  Retries use exponential
backoff on network errors, 429s and 5xx responses; anything else raises
``UpstreamFetchFailure`` immediately.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any

from errors import UpstreamFetchFailure

logger = logging.getLogger("json_feed")

DEFAULT_TIMEOUT_SEC = 30
DEFAULT_RETRIES = 3
USER_AGENT = "trendsinusa-worker/1.0"


def _retryable_http(code: int) -> bool:
    return code == 429 or 500 <= code < 600


def fetch_feed(
    url: str,
    *,
    timeout: int = DEFAULT_TIMEOUT_SEC,
    retries: int = DEFAULT_RETRIES,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """GET *url* and return the JSON object body."""
    if not url:
        raise UpstreamFetchFailure("No feed URL configured")

    req = urllib.request.Request(
        url,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT, **(headers or {})},
        method="GET",
    )

    last_error = "unknown error"
    for attempt in range(retries + 1):
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                body = resp.read().decode("utf-8", errors="replace")
            break
        except urllib.error.HTTPError as e:
            last_error = f"HTTP {e.code}"
            if not _retryable_http(e.code) or attempt >= retries:
                raise UpstreamFetchFailure(f"Feed fetch failed for {url}: {last_error}") from e
        except (urllib.error.URLError, OSError) as e:
            last_error = str(e)
            if attempt >= retries:
                raise UpstreamFetchFailure(
                    f"Feed fetch failed for {url} after {retries + 1} attempts: {last_error}"
                ) from e
        wait = 2 ** (attempt + 1)
        logger.warning("Feed fetch error (%s) — retrying in %ds...", last_error, wait)
        time.sleep(wait)

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise UpstreamFetchFailure(f"Feed at {url} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamFetchFailure(f"Feed at {url} must be a JSON object")

    logger.info("Fetched feed %s (%d bytes)", url, len(body))
    return data
