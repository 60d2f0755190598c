"""Event capture service: concurrent-safe ingestion, session-keyed retrieval."""

__version__ = "0.1.0"
