"""Static configuration for the ingestion worker."""
