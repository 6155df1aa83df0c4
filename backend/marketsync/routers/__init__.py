# backend/marketsync/routers/__init__.py
"""
API routers.

- assets: registry admin, search, price history, freshness
- ingestion: cron/forced triggers and scheduler status
"""

from marketsync.routers import assets, ingestion

__all__ = ["assets", "ingestion"]
