"""Listing Ingest -- app listing metadata ingestion and validation pipeline."""

__version__ = "0.1.0"
