"""
Error taxonomy.

Every failure the bot reasons about is reduced to an ErrorKind. Fatal kinds
are never retried; the others are retried with backoff, except
replacement-underpriced, which has its own gas-bump path.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import requests
from web3.exceptions import TimeExhausted


class ErrorKind(str, Enum):
    FATAL = "FATAL"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK = "NETWORK"
    REPLACEMENT_UNDERPRICED = "REPLACEMENT_UNDERPRICED"
    TIMEOUT = "TIMEOUT"


FATAL_KINDS = frozenset({ErrorKind.FATAL, ErrorKind.INSUFFICIENT_FUNDS})


class BotError(Exception):
    """Base exception carrying an error kind and optional context."""

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str, kind: Optional[ErrorKind] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.context = context or {}

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.NETWORK, ErrorKind.TIMEOUT)


class ConfigurationError(BotError):
    """Missing or malformed configuration."""
    kind = ErrorKind.FATAL


class InvalidParamsError(BotError):
    kind = ErrorKind.FATAL


class WalletNotFoundError(BotError):
    kind = ErrorKind.FATAL


class StateCorruptedError(BotError):
    """A persisted state file could not be parsed."""
    kind = ErrorKind.FATAL


class InsufficientFundsError(BotError):
    """Custom exception for insufficient funds."""
    kind = ErrorKind.INSUFFICIENT_FUNDS


class AddressNotWhitelistedError(BotError):
    """Exchange refused a withdrawal to an address missing from its whitelist."""
    kind = ErrorKind.FATAL


class MinimumAmountError(BotError):
    kind = ErrorKind.FATAL


class RateLimitedError(BotError):
    kind = ErrorKind.RATE_LIMITED


class NetworkError(BotError):
    kind = ErrorKind.NETWORK


class TransactionError(BotError):
    """Custom exception for transaction failures."""
    kind = ErrorKind.NETWORK


class ReplacementUnderpricedError(BotError):
    kind = ErrorKind.REPLACEMENT_UNDERPRICED


class OperationTimeoutError(BotError):
    """A bounded wait (bridge delivery, receipt, hub funding) ran out."""
    kind = ErrorKind.TIMEOUT


class RetryExhaustedError(BotError):
    """Raised once every retry attempt has failed."""

    def __init__(self, last_error: BaseException, attempts: int, total_delay: float,
                 label: str = "operation"):
        super().__init__(
            f"{label} failed after {attempts} attempts ({total_delay:.1f}s of backoff): {last_error}",
            kind=classify_error(last_error),
            context={"attempts": attempts, "total_delay": total_delay},
        )
        self.last_error = last_error
        self.attempts = attempts
        self.total_delay = total_delay


class DistributionError(BotError):
    """A hub distribution aborted; `result` holds the confirmed partial progress."""

    def __init__(self, message: str, result: Any = None, kind: Optional[ErrorKind] = None):
        super().__init__(message, kind=kind)
        self.result = result


def is_replacement_underpriced(exc: BaseException) -> bool:
    if isinstance(exc, ReplacementUnderpricedError):
        return True
    message = str(exc).lower()
    return "replacement" in message and "underpriced" in message


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception, ours or third-party, onto an ErrorKind."""
    if isinstance(exc, BotError):
        return exc.kind
    if isinstance(exc, (TimeExhausted, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.exceptions.HTTPError):
        response = exc.response
        if response is not None and response.status_code == 429:
            return ErrorKind.RATE_LIMITED
        return ErrorKind.NETWORK
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return ErrorKind.NETWORK

    message = str(exc).lower()
    if "insufficient funds" in message:
        return ErrorKind.INSUFFICIENT_FUNDS
    if is_replacement_underpriced(exc):
        return ErrorKind.REPLACEMENT_UNDERPRICED
    if "rate limit" in message or "too many requests" in message:
        return ErrorKind.RATE_LIMITED
    if "nonce too low" in message:
        return ErrorKind.NETWORK
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorKind.FATAL
    return ErrorKind.NETWORK


def is_fatal(exc: BaseException) -> bool:
    return classify_error(exc) in FATAL_KINDS
