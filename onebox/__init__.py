"""Onebox: multi-account email ingestion, classification and search."""

__version__ = "0.3.0"
