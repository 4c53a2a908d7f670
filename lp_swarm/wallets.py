"""
Wallet Registry
===============
Derives the hub and satellite wallets from one seed phrase (BIP44 path
m/44'/60'/0'/0/<index>) and owns one NonceManager per derived address.

The same (seed, index) pair always yields the same wallet, so re-running
the bot reconstructs the exact wallet set it worked with before.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from eth_account import Account

from .errors import ConfigurationError, WalletNotFoundError
from .mutex import WalletMutexManager
from .nonce import NonceManager
from .utils import logger, format_address

Account.enable_unaudited_hdwallet_features()

DERIVATION_PATH = "m/44'/60'/0'/0/{index}"


@dataclass(frozen=True)
class WalletRecord:
    """A derived wallet. Immutable once created."""
    label: str
    address: str
    index: int
    private_key: str = field(repr=False)

    def to_public_dict(self) -> Dict[str, object]:
        return {"label": self.label, "address": self.address, "index": self.index}


def derive_wallet(seed_phrase: str, index: int, label: Optional[str] = None) -> WalletRecord:
    """Derive the wallet at `index`. Pure function of its inputs."""
    if index < 0:
        raise ConfigurationError(f"Wallet index must be >= 0, got {index}")
    try:
        account = Account.from_mnemonic(seed_phrase, account_path=DERIVATION_PATH.format(index=index))
    except Exception as e:
        raise ConfigurationError(f"Invalid seed phrase: {e.__class__.__name__}") from e
    return WalletRecord(
        label=label or f"wallet-{index}",
        address=account.address,
        index=index,
        private_key="0x" + bytes(account.key).hex(),
    )


class WalletRegistry:
    """Derived wallets keyed by address, each with its own nonce manager."""

    def __init__(self, mutexes: Optional[WalletMutexManager] = None):
        self._mutexes = mutexes or WalletMutexManager()
        self._wallets: Dict[str, WalletRecord] = {}
        self._by_index: Dict[tuple, WalletRecord] = {}
        self._nonces: Dict[str, NonceManager] = {}

    def create_or_load_wallet(self, seed_phrase: str, index: int, label: Optional[str] = None) -> WalletRecord:
        key = (seed_phrase, index)
        wallet = self._by_index.get(key)
        if wallet is None:
            wallet = derive_wallet(seed_phrase, index, label)
            self._by_index[key] = wallet
            self._wallets[wallet.address.lower()] = wallet
            self._nonces[wallet.address.lower()] = NonceManager(
                wallet.address, mutex=self._mutexes.get_mutex(f"nonce:{wallet.address}")
            )
            logger.debug(f"Derived {wallet.label} at index {index}: {format_address(wallet.address)}")
        return wallet

    def create_multiple_wallets(self, seed_phrase: str, count: int, start_index: int = 0) -> List[WalletRecord]:
        if count < 0:
            raise ConfigurationError(f"Wallet count must be >= 0, got {count}")
        return [
            self.create_or_load_wallet(seed_phrase, i)
            for i in range(start_index, start_index + count)
        ]

    def get_wallet(self, address: str) -> WalletRecord:
        wallet = self._wallets.get(address.lower())
        if wallet is None:
            raise WalletNotFoundError(f"Unknown wallet {address}")
        return wallet

    def wallets(self) -> List[WalletRecord]:
        return sorted(self._wallets.values(), key=lambda w: w.index)

    def nonce_manager(self, address: str) -> NonceManager:
        manager = self._nonces.get(address.lower())
        if manager is None:
            raise WalletNotFoundError(f"No nonce manager for {address}")
        return manager

    async def get_nonce(self, address: str) -> int:
        return await self.nonce_manager(address).get_next_nonce()

    async def mark_nonce_used(self, address: str, nonce: int) -> None:
        await self.nonce_manager(address).mark_nonce_used(nonce)

    async def mark_nonce_failed(self, address: str, nonce: int) -> None:
        await self.nonce_manager(address).mark_nonce_failed(nonce)

    async def reset_nonce(self, address: str, new_nonce: int) -> None:
        await self.nonce_manager(address).reset(new_nonce)

    def __len__(self) -> int:
        return len(self._wallets)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._wallets
