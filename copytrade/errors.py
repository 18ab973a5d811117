"""Typed error model for the copy-trading pipeline.

Three kinds of failure flow through the system:

- REJECTED: a risk or sizing gate said no. These are expected outcomes and
  travel as result objects, never as exceptions.
- TRANSIENT: network errors, rate limiting, temporary price or liquidity
  failures. Retried in place by the API clients and later by the retry
  scheduler.
- FATAL: data-layer failures and invalid requests. These propagate to the
  caller because trade-state integrity must not be guessed at.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to operators and logs."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    TRADER_NOT_FOUND = "TRADER_NOT_FOUND"
    TRADER_ALREADY_EXISTS = "TRADER_ALREADY_EXISTS"
    INVALID_WALLET_ADDRESS = "INVALID_WALLET_ADDRESS"
    TRADE_NOT_FOUND = "TRADE_NOT_FOUND"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    RETRY_NOT_ALLOWED = "RETRY_NOT_ALLOWED"
    WALLET_NOT_CONFIGURED = "WALLET_NOT_CONFIGURED"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    STORAGE_ERROR = "STORAGE_ERROR"


class FailureKind(str, Enum):
    """Classification of a failed operation."""

    REJECTED = "rejected"
    TRANSIENT = "transient"
    FATAL = "fatal"


class CopyTradeError(Exception):
    """Base error carrying an error code and a failure kind."""

    kind: FailureKind = FailureKind.FATAL

    def __init__(self, code: ErrorCode, message: Optional[str] = None) -> None:
        self.code = code
        self.message = message or code.value.replace("_", " ").capitalize()
        super().__init__(self.message)


class ValidationError(CopyTradeError):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.VALIDATION_ERROR) -> None:
        super().__init__(code, message)


class NotFoundError(CopyTradeError):
    def __init__(self, code: ErrorCode, message: Optional[str] = None) -> None:
        super().__init__(code, message)


class RetryNotAllowed(CopyTradeError):
    """Terminal: the trade is not eligible for another attempt."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.RETRY_NOT_ALLOWED, message)


class StorageError(CopyTradeError):
    """Persistence failed after in-place retries."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.STORAGE_ERROR, message)


class ExchangeError(CopyTradeError):
    """Exchange or market-data call failed."""

    kind = FailureKind.TRANSIENT

    def __init__(self, message: str, code: ErrorCode = ErrorCode.EXCHANGE_ERROR) -> None:
        super().__init__(code, message)


class ExchangeNotConnected(ExchangeError):
    def __init__(self, message: str = "Trading client not connected") -> None:
        super().__init__(message, ErrorCode.WALLET_NOT_CONFIGURED)


_RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection",
    "socket",
    "rate limit",
    "429",
    "500",
    "502",
    "503",
)


def is_retryable(exc: BaseException) -> bool:
    """True for errors worth retrying in place (network, 429, 5xx)."""
    if isinstance(exc, ExchangeNotConnected):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def failure_kind(exc: BaseException) -> FailureKind:
    """Classify an arbitrary exception."""
    if isinstance(exc, CopyTradeError):
        return exc.kind
    if is_retryable(exc):
        return FailureKind.TRANSIENT
    return FailureKind.FATAL
