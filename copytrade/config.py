"""Copy-trading configuration loaded from environment variables."""

import logging
import os
import sys

from pythonjsonlogger import jsonlogger


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# ClickHouse connection (persistent store)
# ---------------------------------------------------------------------------
CLICKHOUSE_HOST = os.environ.get("CLICKHOUSE_HOST", "")
CLICKHOUSE_PORT = int(os.environ.get("CLICKHOUSE_PORT", "8443"))
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "copytrade")
CLICKHOUSE_SECURE = _env_bool("CLICKHOUSE_SECURE", "true")

STORAGE_MAX_RETRIES = 3
STORAGE_BASE_BACKOFF = 1.0       # Seconds, doubles per retry

# ---------------------------------------------------------------------------
# Polymarket API base URLs
# ---------------------------------------------------------------------------
GAMMA_API_URL = "https://gamma-api.polymarket.com"
CLOB_API_URL = "https://clob.polymarket.com"
DATA_API_URL = "https://data-api.polymarket.com"

HTTP_TIMEOUT = 30.0              # httpx timeout in seconds
MARKET_CACHE_TTL = 300.0         # Gamma market metadata cache, seconds

# ---------------------------------------------------------------------------
# Rate limits (requests per second, shared per API family)
# ---------------------------------------------------------------------------
CLOB_RATE_LIMIT = float(os.environ.get("CLOB_RATE_LIMIT", "10"))
DATA_RATE_LIMIT = float(os.environ.get("DATA_RATE_LIMIT", "5"))
GAMMA_RATE_LIMIT = float(os.environ.get("GAMMA_RATE_LIMIT", "5"))

# In-place retry for individual exchange calls
API_MAX_ATTEMPTS = 3
API_BASE_BACKOFF = 1.0           # Seconds, doubles per retry
API_MAX_BACKOFF = 30.0

# ---------------------------------------------------------------------------
# Polling intervals (seconds)
# ---------------------------------------------------------------------------
MONITOR_INTERVAL = float(os.environ.get("MONITOR_INTERVAL", "2"))
DRAWDOWN_INTERVAL = float(os.environ.get("DRAWDOWN_INTERVAL", "30"))
SLTP_INTERVAL = float(os.environ.get("SLTP_INTERVAL", "5"))
RETRY_SWEEP_INTERVAL = 60.0

# ---------------------------------------------------------------------------
# Failed-trade retries
# ---------------------------------------------------------------------------
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 5.0           # Seconds
RETRY_BACKOFF_MULTIPLIER = 2.0
RETRY_MAX_DELAY = 300.0          # 5 minutes
RETRY_LOAD_LIMIT = 100           # Failed trades loaded on startup
RETRY_SWEEP_LIMIT = 10           # Stale retries picked up per sweep

# ---------------------------------------------------------------------------
# Global risk limits (per-trader settings override some of these)
# ---------------------------------------------------------------------------
RISK_MAX_POSITION_SIZE = 1000.0        # USDC per (market, token)
RISK_MAX_DRAWDOWN_PCT = 20.0           # Percent from peak equity
RISK_DAILY_LOSS_LIMIT = 500.0          # USDC
RISK_MAX_OPEN_POSITIONS = 10
RISK_MAX_SLIPPAGE_PCT = 5.0            # Percent
RISK_MIN_TRADE_AMOUNT = 1.0            # USDC

RISK_BALANCE_BUFFER = 5.0              # Low-balance warning band, USDC
RISK_MIN_POSITION_HEADROOM = 1.0       # Below this, position limit rejects
SIZING_BALANCE_BUFFER = 1.0            # Sizing never spends the last dollar

# Drawdown alert bands as fractions of the trader's max drawdown
DRAWDOWN_WARN_RATIO = 0.7
DRAWDOWN_CRITICAL_RATIO = 0.9

# Default trader settings on registration
TRADER_DEFAULT_ALLOCATION_PCT = 10.0
TRADER_DEFAULT_COPY_PCT = 100.0
TRADER_DEFAULT_SLIPPAGE_PCT = 2.0
SLTP_DEFAULT_TRAILING_PCT = float(os.environ.get("SLTP_DEFAULT_TRAILING_PCT", "0")) or None

# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
EXECUTION_DRY_RUN = _env_bool("EXECUTION_DRY_RUN", "true")
EXECUTION_PRIVATE_KEY = os.environ.get("EXECUTION_PRIVATE_KEY", "")
EXECUTION_FUNDER_ADDRESS = os.environ.get("EXECUTION_FUNDER_ADDRESS", "")
EXECUTION_CHAIN_ID = int(os.environ.get("EXECUTION_CHAIN_ID", "137"))
EXECUTION_SIGNATURE_TYPE = int(os.environ.get("EXECUTION_SIGNATURE_TYPE", "0"))
EXECUTION_PAPER_BALANCE = float(os.environ.get("EXECUTION_PAPER_BALANCE", "1000"))
EXECUTION_TRADE_RETRY_LIMIT = RETRY_MAX_ATTEMPTS

# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
HEALTH_CHECK_PORT = int(os.environ.get("HEALTH_CHECK_PORT", "8080"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
