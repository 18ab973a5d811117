"""Polymarket API clients: CLOB (exchange), Data API (holdings), Gamma (metadata)."""

from copytrade.api.clob_client import ClobClient
from copytrade.api.data_client import DataClient
from copytrade.api.gamma_client import GammaClient
from copytrade.api.throttle import RateLimiter, retry_async

__all__ = [
    "ClobClient",
    "DataClient",
    "GammaClient",
    "RateLimiter",
    "retry_async",
]
