"""Square webhook hub: at-most-once ingestion, enrichment and fan-out."""

__version__ = "1.0.0"
