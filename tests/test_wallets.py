"""
Tests for deterministic wallet derivation and the registry.
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from lp_swarm.errors import ConfigurationError, WalletNotFoundError
from lp_swarm.wallets import WalletRegistry, derive_wallet
from fakes import TEST_MNEMONIC

# Well-known accounts for the standard development mnemonic
ACCOUNT_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
ACCOUNT_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


class TestDeriveWallet:
    def test_known_addresses(self):
        """Derivation follows m/44'/60'/0'/0/<index>."""
        wallet = derive_wallet(TEST_MNEMONIC, 0)
        assert wallet.address == ACCOUNT_0
        assert wallet.private_key == KEY_0
        assert derive_wallet(TEST_MNEMONIC, 1).address == ACCOUNT_1

    def test_default_label(self):
        assert derive_wallet(TEST_MNEMONIC, 3).label == "wallet-3"
        assert derive_wallet(TEST_MNEMONIC, 0, label="hub").label == "hub"

    def test_private_key_not_in_repr(self):
        wallet = derive_wallet(TEST_MNEMONIC, 0)
        assert KEY_0[2:] not in repr(wallet)
        assert "private_key" not in wallet.to_public_dict()

    def test_invalid_seed(self):
        with pytest.raises(ConfigurationError):
            derive_wallet("not a real mnemonic", 0)

    def test_negative_index(self):
        with pytest.raises(ConfigurationError):
            derive_wallet(TEST_MNEMONIC, -1)


class TestWalletRegistry:
    def test_create_or_load_is_idempotent_for_first_hundred_indices(self):
        """Independent registries rebuild exactly the same wallets."""
        first = WalletRegistry()
        second = WalletRegistry()
        for index in range(100):
            a = first.create_or_load_wallet(TEST_MNEMONIC, index)
            b = second.create_or_load_wallet(TEST_MNEMONIC, index)
            assert a.address == b.address
            assert first.create_or_load_wallet(TEST_MNEMONIC, index) is a
        assert len(first) == 100

    def test_create_multiple_wallets(self):
        registry = WalletRegistry()
        wallets = registry.create_multiple_wallets(TEST_MNEMONIC, 3, start_index=1)
        assert [w.index for w in wallets] == [1, 2, 3]
        assert wallets[0].address == ACCOUNT_1
        assert len({w.address for w in wallets}) == 3

    def test_get_wallet_is_case_insensitive(self):
        registry = WalletRegistry()
        wallet = registry.create_or_load_wallet(TEST_MNEMONIC, 0)
        assert registry.get_wallet(ACCOUNT_0.lower()) is wallet
        assert ACCOUNT_0.lower() in registry

    def test_unknown_wallet(self):
        registry = WalletRegistry()
        with pytest.raises(WalletNotFoundError):
            registry.get_wallet(ACCOUNT_1)
        with pytest.raises(WalletNotFoundError):
            registry.nonce_manager(ACCOUNT_1)

    def test_each_wallet_has_its_own_nonce_sequence(self):
        async def scenario():
            registry = WalletRegistry()
            hub, satellite = registry.create_multiple_wallets(TEST_MNEMONIC, 2)
            await registry.reset_nonce(hub.address, 5)
            return (
                await registry.get_nonce(hub.address),
                await registry.get_nonce(hub.address),
                await registry.get_nonce(satellite.address),
            )

        assert asyncio.run(scenario()) == (5, 6, 0)

    def test_failed_nonce_is_reissued_through_registry(self):
        async def scenario():
            registry = WalletRegistry()
            wallet = registry.create_or_load_wallet(TEST_MNEMONIC, 0)
            nonce = await registry.get_nonce(wallet.address)
            await registry.mark_nonce_failed(wallet.address, nonce)
            again = await registry.get_nonce(wallet.address)
            await registry.mark_nonce_used(wallet.address, again)
            return nonce, again, registry.nonce_manager(wallet.address).pending_nonces

        assert asyncio.run(scenario()) == (0, 0, set())
