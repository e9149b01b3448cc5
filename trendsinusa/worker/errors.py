"""
Error taxonomy for the ingestion worker.

Per-record errors (``ValidationSkip``, ``UnresolvedReference``) are caught
inside a run and aggregated into the run's metadata.  Per-run errors
(``StoreUnavailable``) mark the run ``FAILURE`` and propagate.
``GateClosed`` is an expected outcome, never logged as an error.
``UpstreamFetchFailure`` is raised before any run row exists.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the worker."""


class GateClosed(PipelineError):
    """An automation gate for a site is disabled (or has no row)."""

    def __init__(self, site_key: str, capability: str) -> None:
        self.site_key = site_key
        self.capability = capability
        super().__init__(
            f"{capability}_disabled: AutomationGate.{capability}=false (site={site_key})"
        )


class ValidationSkip(PipelineError):
    """A single malformed source record; dropped and counted."""

    def __init__(self, reason: str, record: object = None) -> None:
        self.reason = reason
        self.record = record
        super().__init__(reason)


class UnresolvedReference(PipelineError):
    """A deal references a product that is neither in the batch nor the store."""

    def __init__(self, external_product_id: str) -> None:
        self.external_product_id = external_product_id
        super().__init__(f"No product for external id {external_product_id!r}")


class StoreUnavailable(PipelineError):
    """The canonical store rejected or failed a request."""


class UpstreamFetchFailure(PipelineError):
    """Fetching a provider payload failed; nothing was written."""
