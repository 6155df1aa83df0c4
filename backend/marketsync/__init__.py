# backend/marketsync/__init__.py
"""Market data sync: asset registry and daily price ingestion service."""

__version__ = "0.1.0"
