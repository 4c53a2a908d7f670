"""
lp-swarm: multi-wallet bridge / swap / LP automation

A hub wallet funded from an exchange spreads ETH across BIP44-derived
satellite wallets. Each satellite then bridges to the destination chain,
swaps, opens a concentrated-liquidity position and collects fees, with
per-wallet state persisted so interrupted runs resume where they stopped.

Usage:
    from lp_swarm import Config, WalletRegistry, WalletOrchestrator

    # See `lp-swarm --help` for the command line
"""

__version__ = "1.0.0"

from .config import Config, ConfigManager
from .distributor import HubDistributor, plan_distribution
from .errors import BotError, ErrorKind, classify_error
from .mutex import Mutex, WalletMutexManager
from .nonce import NonceManager
from .orchestrator import WalletOrchestrator, WalletRunResult
from .retry import RetryPolicy, retry_async
from .runner import BatchResult, MultiWalletRunner
from .state import OrchestratorState, StateStore
from .utils import logger, setup_logging
from .wallets import WalletRecord, WalletRegistry

__all__ = [
    "Config",
    "ConfigManager",
    "HubDistributor",
    "plan_distribution",
    "BotError",
    "ErrorKind",
    "classify_error",
    "Mutex",
    "WalletMutexManager",
    "NonceManager",
    "WalletOrchestrator",
    "WalletRunResult",
    "RetryPolicy",
    "retry_async",
    "BatchResult",
    "MultiWalletRunner",
    "OrchestratorState",
    "StateStore",
    "logger",
    "setup_logging",
    "WalletRecord",
    "WalletRegistry",
]
