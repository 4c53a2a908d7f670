"""
In-memory collaborators for the test suite.
"""

import itertools
from typing import Dict, List, Optional

from lp_swarm.chain import DRY_RUN_TX_HASH, TxOutcome, TxRequest
from lp_swarm.interfaces import (
    BridgeQuote, CollectAmounts, MintResult, PoolPrice, SwapQuote, WithdrawalResult,
)
from lp_swarm.orchestrator import WorkflowParams
from lp_swarm.retry import RetryPolicy

TEST_MNEMONIC = "test test test test test test test test test test test junk"
NATIVE = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
TOKEN0 = "0x4200000000000000000000000000000000000006"
TOKEN1 = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
ROUTER = "0x1111111254EEB25477B68fb85Ed929f73A960582"


async def no_sleep(_seconds):
    return None


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeChain:
    """Balances, nonces and receipts held in dicts."""

    def __init__(self, chain_id: int = 8453, gas_price: int = 20_000_000_000, default_balance: int = 10 ** 18):
        self.chain_id = chain_id
        self.name = str(chain_id)
        self.gas_price = gas_price
        self.balances: Dict[str, int] = {}
        self.default_balance = default_balance
        self.nonces: Dict[str, int] = {}
        self.sent: List[bytes] = []
        self.send_errors: List[Exception] = []
        self.receipt_errors: List[Exception] = []
        self.receipt_waits: List[str] = []
        self.receipt_status = 1
        self.call_result = 0
        self._hashes = itertools.count(1)

    def set_balance(self, address: str, amount: int):
        self.balances[address.lower()] = amount

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), self.default_balance)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return self.nonces.get(address.lower(), 0)

    async def estimate_gas(self, tx) -> int:
        return 100_000

    async def send_raw_transaction(self, raw: bytes) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(raw)
        return "0x%064x" % next(self._hashes)

    async def wait_for_receipt(self, tx_hash: str, timeout: float):
        self.receipt_waits.append(tx_hash)
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return {"status": self.receipt_status, "gasUsed": 21000, "blockNumber": 1, "logs": []}

    async def call(self, tx) -> bytes:
        return self.call_result.to_bytes(32, "big")


class FakeSender:
    """Stands in for TransactionSender; records every request and moves balances on transfer."""

    def __init__(self, chain: Optional[FakeChain] = None, fail_with: Optional[Exception] = None):
        self.chain = chain or FakeChain()
        self.requests = []
        self.fail_with = fail_with
        self.waited: List[str] = []
        self._hashes = itertools.count(1)

    async def current_gas_price(self) -> int:
        return self.chain.gas_price

    async def send(self, wallet, tx, dry_run: bool = False, gas_price: Optional[int] = None,
                   on_submitted=None) -> TxOutcome:
        gas_price = gas_price or self.chain.gas_price
        value = tx.value if tx.spend_cap is None else min(tx.value, tx.spend_cap - 21000 * gas_price)
        if dry_run:
            return TxOutcome(tx_hash=DRY_RUN_TX_HASH, nonce=None, gas_price=gas_price, dry_run=True, value=value)
        if self.fail_with is not None:
            raise self.fail_with
        self.requests.append((wallet.address, tx))
        tx_hash = "0x%064x" % next(self._hashes)
        if on_submitted is not None:
            await on_submitted(tx_hash)
        return TxOutcome(tx_hash=tx_hash, nonce=len(self.requests) - 1, gas_price=gas_price, value=value)

    async def wait_for_transaction(self, tx_hash: str, description: str = "transaction",
                                   nonce: Optional[int] = None, gas_price: int = 0, value: int = 0) -> TxOutcome:
        self.waited.append(tx_hash)
        return TxOutcome(tx_hash=tx_hash, nonce=nonce, gas_price=gas_price, value=value)

    async def transfer(self, wallet, to: str, amount_wei: int, dry_run: bool = False,
                       gas_price: Optional[int] = None, spend_cap: Optional[int] = None) -> TxOutcome:
        outcome = await self.send(wallet, TxRequest(to=to, value=amount_wei, gas_limit=21000, spend_cap=spend_cap),
                                  dry_run=dry_run, gas_price=gas_price)
        if not dry_run:
            sender = wallet.address.lower()
            fee = 21000 * outcome.gas_price
            self.chain.balances[sender] = await self.chain.get_balance(sender) - outcome.value - fee
            self.chain.balances[to.lower()] = await self.chain.get_balance(to) + outcome.value
        return outcome


class FakeBridge:
    def __init__(self, status: str = "DONE"):
        self.status = status
        self.quotes = []
        self.waits = []
        self.quote_error: Optional[Exception] = None
        self.wait_error: Optional[Exception] = None

    async def fetch_quote(self, request) -> BridgeQuote:
        self.quotes.append(request)
        if self.quote_error is not None:
            raise self.quote_error
        return BridgeQuote(
            route_id="route-1", tx_target=ROUTER, tx_data="0xabcdef",
            tx_value_wei=request.amount_wei, min_amount_out_wei=request.amount_wei * 99 // 100,
            to_amount_wei=request.amount_wei * 995 // 1000,
        )

    async def wait_until_received(self, route_id: str, tx_hash: str, timeout: float) -> str:
        self.waits.append((route_id, tx_hash))
        if self.wait_error is not None:
            raise self.wait_error
        return self.status


class FakeSwap:
    def __init__(self):
        self.quotes = []
        self.error: Optional[Exception] = None

    async def fetch_quote(self, request) -> SwapQuote:
        self.quotes.append(request)
        if self.error is not None:
            raise self.error
        return SwapQuote(target=ROUTER, calldata="0x1234", value_wei=request.amount_wei,
                         min_amount_out_wei=2_500_000)


class FakePool:
    def __init__(self, tick: int = 0, tick_spacing: int = 60, sqrt_price_x96: int = 2 ** 96):
        self.price = PoolPrice(tick=tick, tick_spacing=tick_spacing, sqrt_price_x96=sqrt_price_x96)
        self.fees = CollectAmounts(0, 0)
        self.mints = []
        self.finished = []
        self.mint_wait_error: Optional[Exception] = None
        self.collects = []
        self.closed = []
        self._token_ids = itertools.count(100)

    async def get_current_price(self) -> PoolPrice:
        return self.price

    async def mint(self, wallet, params, dry_run: bool = False, on_submitted=None) -> MintResult:
        self.mints.append(params)
        if dry_run:
            return MintResult(token_id=None, liquidity=0, amount0=params.amount0_desired,
                              amount1=params.amount1_desired, tx_hash=DRY_RUN_TX_HASH)
        if on_submitted is not None:
            await on_submitted("0xmint")
        if self.mint_wait_error is not None:
            error, self.mint_wait_error = self.mint_wait_error, None
            raise error
        return await self.finish_mint(wallet, "0xmint")

    async def finish_mint(self, wallet, tx_hash: str) -> MintResult:
        self.finished.append(tx_hash)
        params = self.mints[-1]
        return MintResult(token_id=next(self._token_ids), liquidity=10 ** 12,
                          amount0=params.amount0_desired, amount1=params.amount1_desired,
                          tx_hash=tx_hash)

    async def collect(self, wallet, token_id, dry_run: bool = False) -> CollectAmounts:
        self.collects.append(token_id)
        return CollectAmounts(amount0=1_000, amount1=2_000, tx_hash=DRY_RUN_TX_HASH if dry_run else "0xcollect")

    async def get_accrued_fees(self, wallet, token_id) -> CollectAmounts:
        return self.fees

    async def close_position(self, wallet, token_id, liquidity, dry_run: bool = False) -> CollectAmounts:
        self.closed.append((token_id, liquidity))
        return CollectAmounts(amount0=5_000, amount1=7_000, tx_hash="0xclose")


class FakeExchange:
    """Looks like a ccxt async exchange."""

    def __init__(self, balance: float = 1.0):
        self.balance = balance
        self.withdrawals = []
        self.closed = False

    async def fetch_balance(self):
        return {"free": {"ETH": self.balance}}

    async def withdraw(self, code, amount, address, tag=None, params=None):
        self.withdrawals.append((code, amount, address, params))
        return {"id": "wd-1", "status": "pending", "txid": None}

    async def close(self):
        self.closed = True


class FakeExchangeClient:
    def __init__(self, balance: float = 1.0):
        self.balance = balance
        self.requests = []

    async def get_balance(self, token: str) -> float:
        return self.balance

    async def withdraw(self, request, dry_run: bool = False) -> WithdrawalResult:
        self.requests.append((request, dry_run))
        return WithdrawalResult(withdrawal_id="dry-run" if dry_run else "wd-1", status="ok")


FAST_RETRY = RetryPolicy(max_retries=2, base_delay=0, jitter=False)


def workflow(**overrides) -> WorkflowParams:
    """Native-token bridge and swap into a TOKEN0/TOKEN1 pool."""
    params = dict(
        source_chain_id=8453,
        dest_chain_id=2741,
        bridge_from_token=NATIVE,
        bridge_to_token=NATIVE,
        bridge_amount_wei=10 ** 16,
        swap_token_in=NATIVE,
        swap_token_out=TOKEN1,
        swap_amount_wei=10 ** 15,
        pool_token0=TOKEN0,
        pool_token1=TOKEN1,
        lp_amount0_wei=10 ** 15,
        lp_amount1_wei=2_000_000,
        collect_delay_seconds=600,
    )
    params.update(overrides)
    return WorkflowParams(**params)
