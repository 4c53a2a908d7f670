"""
Chain access and transaction submission.

Web3Chain wraps AsyncWeb3 for the handful of RPC calls the bot needs.
TransactionSender signs and submits transactions for derived wallets,
drawing nonces from each wallet's NonceManager and bumping the gas price
when a stuck transaction already occupies the nonce slot.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_abi import encode, decode
from web3 import AsyncWeb3, Web3
from eth_account import Account

from .errors import (
    InsufficientFundsError, OperationTimeoutError, ReplacementUnderpricedError, TransactionError,
    classify_error, ErrorKind, is_replacement_underpriced,
)
from .nonce import NonceManager
from .retry import retry_async, RPC_READ_POLICY
from .utils import logger, format_address, format_tx_hash, format_wei

DRY_RUN_TX_HASH = "0xDRYRUN"
TRANSFER_GAS_LIMIT = 21000
GAS_BUMP_BPS = 1500
MAX_GAS_BUMPS = 3


def bump_gas_price(gas_price: int, bump_bps: int = GAS_BUMP_BPS) -> int:
    """Raise a gas price by bump_bps basis points, by at least 1 wei."""
    bumped = gas_price * (10000 + bump_bps) // 10000
    return max(bumped, gas_price + 1)


class Web3Chain:
    """ChainClient backed by an AsyncWeb3 HTTP provider."""

    def __init__(self, rpc_url: str, chain_id: int, name: str = ""):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.name = name or str(chain_id)
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    async def _read(self, label: str, fn):
        return await retry_async(fn, RPC_READ_POLICY, label=f"{self.name}:{label}")

    async def get_balance(self, address: str) -> int:
        return int(await self._read(
            "get_balance", lambda: self.w3.eth.get_balance(Web3.to_checksum_address(address))
        ))

    async def get_gas_price(self) -> int:
        async def fetch():
            return await self.w3.eth.gas_price
        return int(await self._read("gas_price", fetch))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self._read(
            "get_transaction_count",
            lambda: self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), block),
        ))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self.w3.eth.estimate_gas(tx))

    async def send_raw_transaction(self, raw: bytes) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(raw)
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        return dict(receipt)

    async def call(self, tx: Dict[str, Any]) -> bytes:
        return bytes(await self._read("call", lambda: self.w3.eth.call(tx)))


@dataclass
class TxRequest:
    to: str
    value: int = 0
    data: str = "0x"
    gas_limit: Optional[int] = None
    description: str = "transaction"
    spend_cap: Optional[int] = None


@dataclass
class TxOutcome:
    tx_hash: str
    nonce: Optional[int]
    gas_price: int
    gas_used: int = 0
    block_number: Optional[int] = None
    logs: tuple = ()
    dry_run: bool = False
    value: int = 0


class TransactionSender:
    """
    Builds, signs and submits transactions for derived wallets.

    Nonces come from the wallet's NonceManager: marked used once the node
    accepts the transaction, failed when it never left this process.
    """

    def __init__(
        self,
        chain,
        nonce_lookup: Callable[[str], NonceManager],
        gas_price_override: Optional[int] = None,
        gas_limit_buffer: float = 1.2,
        receipt_timeout: float = 120,
        max_gas_bumps: int = MAX_GAS_BUMPS,
        bump_bps: int = GAS_BUMP_BPS,
    ):
        self.chain = chain
        self.nonce_lookup = nonce_lookup
        self.gas_price_override = gas_price_override
        self.gas_limit_buffer = gas_limit_buffer
        self.receipt_timeout = receipt_timeout
        self.max_gas_bumps = max_gas_bumps
        self.bump_bps = bump_bps

    async def current_gas_price(self) -> int:
        if self.gas_price_override:
            return self.gas_price_override
        return await self.chain.get_gas_price()

    async def _nonce_manager(self, address: str) -> NonceManager:
        manager = self.nonce_lookup(address)
        if not manager.synced:
            chain_nonce = await self.chain.get_transaction_count(address, "pending")
            await manager.sync(chain_nonce)
        return manager

    async def _gas_limit(self, wallet, tx: TxRequest) -> int:
        if tx.gas_limit:
            return tx.gas_limit
        estimate = await self.chain.estimate_gas({
            "from": wallet.address,
            "to": Web3.to_checksum_address(tx.to),
            "value": tx.value,
            "data": tx.data,
        })
        return int(estimate * self.gas_limit_buffer)

    async def send(self, wallet, tx: TxRequest, dry_run: bool = False,
                   gas_price: Optional[int] = None,
                   on_submitted: Optional[Callable[[str], Awaitable[None]]] = None) -> TxOutcome:
        """
        Sign and submit `tx` from `wallet`, then wait for its receipt.

        Replacement-underpriced rejections are resubmitted on the same nonce
        at a bumped gas price, up to max_gas_bumps times. With a spend_cap the
        value shrinks on each bump so value plus gas never exceeds the cap.

        `on_submitted(tx_hash)` runs once the node has accepted the
        transaction and before the receipt wait, so callers can record the
        hash and later wait on it with wait_for_transaction instead of
        sending again.
        """
        gas_price = gas_price or await self.current_gas_price()

        if dry_run:
            value = self._capped_value(tx, tx.gas_limit or TRANSFER_GAS_LIMIT, gas_price)
            logger.info(
                f"[DRY RUN] Would send {tx.description} from {format_address(wallet.address)} "
                f"to {format_address(tx.to)} value={format_wei(value)} ETH"
            )
            return TxOutcome(tx_hash=DRY_RUN_TX_HASH, nonce=None, gas_price=gas_price,
                             value=value, dry_run=True)

        gas_limit = await self._gas_limit(wallet, tx)
        manager = await self._nonce_manager(wallet.address)
        nonce = await manager.get_next_nonce()

        tx_hash = None
        value = tx.value
        for bump in range(self.max_gas_bumps + 1):
            try:
                value = self._capped_value(tx, gas_limit, gas_price)
                signed = Account.sign_transaction({
                    "to": Web3.to_checksum_address(tx.to),
                    "value": value,
                    "data": tx.data,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "nonce": nonce,
                    "chainId": self.chain.chain_id,
                }, wallet.private_key)
                tx_hash = await self.chain.send_raw_transaction(signed.raw_transaction)
                break
            except Exception as e:
                if is_replacement_underpriced(e) and bump < self.max_gas_bumps:
                    new_price = bump_gas_price(gas_price, self.bump_bps)
                    logger.warning(
                        f"Replacement underpriced for nonce {nonce} of {format_address(wallet.address)}, "
                        f"bumping gas {gas_price} -> {new_price} wei ({bump + 1}/{self.max_gas_bumps})"
                    )
                    gas_price = new_price
                    continue
                await manager.mark_nonce_failed(nonce)
                if is_replacement_underpriced(e):
                    raise ReplacementUnderpricedError(
                        f"{tx.description}: still underpriced after {self.max_gas_bumps} gas bumps",
                        context={"nonce": nonce, "gas_price": gas_price},
                    ) from e
                raise

        # The transaction is in the mempool and owns this nonce from here on
        await manager.mark_nonce_used(nonce)
        logger.info(f"Sent {tx.description}: {format_tx_hash(tx_hash)} (nonce {nonce})")
        if on_submitted is not None:
            await on_submitted(tx_hash)

        return await self.wait_for_transaction(
            tx_hash, tx.description, nonce=nonce, gas_price=gas_price, value=value,
        )

    async def wait_for_transaction(self, tx_hash: str, description: str = "transaction",
                                   nonce: Optional[int] = None, gas_price: int = 0,
                                   value: int = 0) -> TxOutcome:
        """Wait for an already submitted transaction; raise if it times out or reverts."""
        try:
            receipt = await self.chain.wait_for_receipt(tx_hash, self.receipt_timeout)
        except Exception as e:
            if classify_error(e) == ErrorKind.TIMEOUT:
                raise OperationTimeoutError(
                    f"{description} tx {tx_hash} not mined within {self.receipt_timeout}s",
                    context={"tx_hash": tx_hash},
                ) from e
            raise

        if receipt.get("status") != 1:
            raise TransactionError(
                f"{description} reverted: tx {tx_hash}",
                context={"tx_hash": tx_hash, "nonce": nonce},
            )

        return TxOutcome(
            tx_hash=tx_hash,
            nonce=nonce,
            gas_price=gas_price,
            gas_used=int(receipt.get("gasUsed", 0)),
            block_number=receipt.get("blockNumber"),
            logs=tuple(receipt.get("logs", ())),
            value=value,
        )

    def _capped_value(self, tx: TxRequest, gas_limit: int, gas_price: int) -> int:
        if tx.spend_cap is None:
            return tx.value
        value = min(tx.value, tx.spend_cap - gas_limit * gas_price)
        if value <= 0:
            raise InsufficientFundsError(
                f"{tx.description}: {format_wei(tx.spend_cap)} ETH cannot cover gas at {gas_price} wei",
                context={"spend_cap": tx.spend_cap, "gas_price": gas_price},
            )
        return value

    async def transfer(self, wallet, to: str, amount_wei: int, dry_run: bool = False,
                       gas_price: Optional[int] = None, spend_cap: Optional[int] = None) -> TxOutcome:
        """
        Plain native-token transfer.

        `spend_cap` bounds value plus gas, typically the sender's balance; the
        value actually sent is on the returned outcome.
        """
        return await self.send(
            wallet,
            TxRequest(to=to, value=amount_wei, gas_limit=TRANSFER_GAS_LIMIT, spend_cap=spend_cap,
                      description=f"transfer {format_wei(amount_wei)} ETH"),
            dry_run=dry_run,
            gas_price=gas_price,
        )


# ERC20 helpers

NATIVE_TOKENS = {
    "0x0000000000000000000000000000000000000000",
    "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
}
ALLOWANCE_SELECTOR = "0xdd62ed3e"
APPROVE_SELECTOR = "0x095ea7b3"
BALANCE_OF_SELECTOR = "0x70a08231"


def is_native_token(token: str) -> bool:
    return token.lower() in NATIVE_TOKENS


def encode_approve(spender: str, amount: int) -> str:
    return APPROVE_SELECTOR + encode(["address", "uint256"], [Web3.to_checksum_address(spender), amount]).hex()


async def token_balance(chain, token: str, owner: str) -> int:
    if is_native_token(token):
        return await chain.get_balance(owner)
    data = BALANCE_OF_SELECTOR + encode(["address"], [Web3.to_checksum_address(owner)]).hex()
    raw = await chain.call({"to": Web3.to_checksum_address(token), "data": data})
    return decode(["uint256"], raw)[0]


async def ensure_allowance(sender: TransactionSender, wallet, token: str, spender: str,
                           amount: int, dry_run: bool = False) -> Optional[TxOutcome]:
    """Approve `spender` for `amount` of `token` unless the allowance already covers it."""
    if is_native_token(token):
        return None
    data = ALLOWANCE_SELECTOR + encode(
        ["address", "address"],
        [Web3.to_checksum_address(wallet.address), Web3.to_checksum_address(spender)],
    ).hex()
    raw = await sender.chain.call({"to": Web3.to_checksum_address(token), "data": data})
    current = decode(["uint256"], raw)[0]
    if current >= amount:
        return None
    logger.info(f"Approving {format_address(spender)} to spend {token} for {format_address(wallet.address)}")
    return await sender.send(
        wallet,
        TxRequest(to=token, data=encode_approve(spender, amount), description="approve"),
        dry_run=dry_run,
    )
