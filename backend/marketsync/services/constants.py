# backend/marketsync/services/constants.py
"""
Centralized constants for the market data sync services.

Usage:
    from marketsync.services.constants import (
        SEARCH_MIN_QUERY_LENGTH,
        PRICE_HISTORY_MAX_ROWS,
    )
"""


# =============================================================================
# SEARCH
# =============================================================================

# Queries shorter than this (after stripping) return no results
SEARCH_MIN_QUERY_LENGTH: int = 2

# Maximum number of assets returned by a search
SEARCH_MAX_RESULTS: int = 10


# =============================================================================
# PRICE HISTORY
# =============================================================================

# Maximum rows returned by the price history endpoint (about one year of days)
PRICE_HISTORY_MAX_ROWS: int = 365

# Decimal places kept when converting provider floats
PRICE_QUANTIZE_PLACES: int = 8


# =============================================================================
# FRESHNESS REPORT
# =============================================================================

# Days since the last stored price for each freshness status
FRESHNESS_CURRENT_DAYS: int = 0
FRESHNESS_RECENT_DAYS: int = 1


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

# Consecutive transient provider failures before the breaker opens
CIRCUIT_FAILURE_THRESHOLD: int = 5

# Seconds the breaker stays open before allowing a probe request
CIRCUIT_RECOVERY_TIMEOUT: float = 60.0


# =============================================================================
# RATE LIMITING (HTTP)
# =============================================================================

# Default rate limit for read endpoints (GET requests)
RATE_LIMIT_DEFAULT: str = "100/minute"

# Rate limit for write endpoints (asset create, update, deactivate)
RATE_LIMIT_WRITE: str = "30/minute"

# Ingestion triggers hit Yahoo Finance for every registered asset
RATE_LIMIT_INGESTION: str = "5/minute"

# Search is called on every keystroke by the asset picker
RATE_LIMIT_SEARCH: str = "60/minute"

# Higher limit for monitoring tools that poll frequently
RATE_LIMIT_HEALTH: str = "300/minute"
