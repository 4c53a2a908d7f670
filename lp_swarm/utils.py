"""
Utility Module

Logging setup, log redaction and formatting helpers shared by every component.
"""

import os
import re
import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3
from rich.console import Console
from rich.logging import RichHandler


console = Console()

LOGGER_NAME = "lp_swarm"
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# 64-hex values are treated as keys unless labelled as a tx hash
REDACTIONS = [
    (re.compile(r"(?<!tx )(?<!tx_hash=)(?<!'tx_hash': ')0x[a-fA-F0-9]{64}(?![a-fA-F0-9])"), '[PRIVATE_KEY_REDACTED]'),
    (re.compile(r'(mnemonic|seed(?:_phrase)?)["\']?\s*[:=]\s*["\']?[a-z]+(?: [a-z]+){11,23}', re.IGNORECASE),
     r'\1=[REDACTED]'),
    (re.compile(r'(password|passphrase)["\']?\s*[:=]\s*["\']?[^\s"\',]+["\']?', re.IGNORECASE), r'\1=[REDACTED]'),
    (re.compile(r'(api[_-]?(?:key|secret)|x-lifi-api-key|0x-api-key)["\']?\s*[:=]\s*["\']?[A-Za-z0-9_\-]{8,}["\']?',
                re.IGNORECASE), r'\1=[REDACTED]'),
]


def redact(text: str) -> str:
    """Strip keys, seed phrases, passwords and API credentials from `text`."""
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class SecureLogger:
    """
    Wraps a logging.Logger so nothing sensitive reaches a handler.

    Messages are redacted after %-formatting, so secrets passed as args are
    caught too.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log(self, level: int, msg, args, exc_info=None, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        text = str(msg) % args if args else str(msg)
        self._logger.log(level, redact(text), exc_info=exc_info, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self._log(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._log(logging.INFO, msg, args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._log(logging.WARNING, msg, args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._log(logging.ERROR, msg, args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._log(logging.ERROR, msg, args, exc_info=True, **kwargs)


def _attach(base: logging.Logger, handler: logging.Handler, level: int, fmt: str, datefmt: Optional[str] = None):
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    base.addHandler(handler)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = "./lp_swarm.log") -> SecureLogger:
    """
    Route the lp_swarm logger to the rich console and, if `log_file` is set,
    to a plain-text file. Calling it again replaces the previous handlers.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    base = logging.getLogger(LOGGER_NAME)
    base.setLevel(level)
    for handler in list(base.handlers):
        base.removeHandler(handler)
        handler.close()
    base.propagate = False

    _attach(base, RichHandler(console=console, show_path=False, rich_tracebacks=True), level, "%(message)s")
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        _attach(base, logging.FileHandler(log_file), level, FILE_LOG_FORMAT, "%Y-%m-%d %H:%M:%S")

    return SecureLogger(base)


# Handlers are attached by setup_logging()
logger = SecureLogger(logging.getLogger(LOGGER_NAME))


# Formatting

def format_wei(wei_amount: int, decimals: int = 18) -> str:
    if wei_amount == 0:
        return "0"
    value = Decimal(wei_amount) / (Decimal(10) ** decimals)
    if value < Decimal("0.0001"):
        return f"{value:.8f}"
    if value < 1:
        return f"{value:.6f}"
    if value < 1000:
        return f"{value:.4f}"
    return f"{value:,.2f}"


def format_eth(wei_amount: int) -> str:
    return f"{format_wei(wei_amount)} ETH"


def format_duration(seconds: float) -> str:
    """90 -> '1m 30s', 7200 -> '2h'."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    if minutes:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    return f"{secs}s"


def format_address(address: str, length: int = 6) -> str:
    """Shorten an address to 0xabcdef...123456 for log lines."""
    if not address or len(address) <= length * 2 + 2:
        return address
    return f"{address[:length + 2]}...{address[-length:]}"


def format_tx_hash(tx_hash: str, length: int = 8) -> str:
    if not tx_hash or len(tx_hash) <= length * 2:
        return tx_hash
    return f"{tx_hash[:length]}...{tx_hash[-length:]}"


def validate_address(address: str) -> bool:
    return isinstance(address, str) and Web3.is_address(address)


def sanitize_error_message(error: object, max_length: int = 300) -> str:
    """Redacted, truncated error text suitable for a persisted result record."""
    text = redact(str(error) or error.__class__.__name__)
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text
