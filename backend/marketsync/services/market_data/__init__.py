# backend/marketsync/services/market_data/__init__.py
"""
Market data providers.

Usage:
    from marketsync.services.market_data import YahooFinanceProvider, PriceSample
"""

from marketsync.services.market_data.base import MarketDataProvider, PriceSample, provider_breaker
from marketsync.services.market_data.throttle import RequestThrottle
from marketsync.services.market_data.yahoo import YahooFinanceProvider

__all__ = [
    "MarketDataProvider",
    "PriceSample",
    "provider_breaker",
    "RequestThrottle",
    "YahooFinanceProvider",
]
