"""
Collaborator interfaces consumed by the orchestrator and distributor.

Concrete implementations live in lp_swarm.chain and lp_swarm.clients; tests
substitute in-memory fakes.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


# Exchange

@dataclass(frozen=True)
class WithdrawalRequest:
    token: str
    amount: float
    address: str
    network: str


@dataclass(frozen=True)
class WithdrawalResult:
    withdrawal_id: str
    status: str
    tx_hash: Optional[str] = None


class ExchangeClient(Protocol):
    async def withdraw(self, request: WithdrawalRequest, dry_run: bool = False) -> WithdrawalResult: ...

    async def get_balance(self, token: str) -> float: ...


# Bridge

@dataclass(frozen=True)
class BridgeQuoteRequest:
    from_chain: int
    to_chain: int
    from_token: str
    to_token: str
    amount_wei: int
    slippage_bps: int
    from_address: str
    to_address: str


@dataclass(frozen=True)
class BridgeQuote:
    route_id: str
    tx_target: str
    tx_data: str
    tx_value_wei: int
    min_amount_out_wei: int
    to_amount_wei: int = 0
    gas_limit: Optional[int] = None


class BridgeClient(Protocol):
    async def fetch_quote(self, request: BridgeQuoteRequest) -> BridgeQuote: ...

    async def wait_until_received(self, route_id: str, tx_hash: str, timeout: float) -> str: ...


# Swap

@dataclass(frozen=True)
class SwapQuoteRequest:
    token_in: str
    token_out: str
    amount_wei: int
    slippage_bps: int
    taker: str


@dataclass(frozen=True)
class SwapQuote:
    target: str
    calldata: str
    value_wei: int
    min_amount_out_wei: int
    allowance_target: Optional[str] = None
    gas_limit: Optional[int] = None


class SwapClient(Protocol):
    async def fetch_quote(self, request: SwapQuoteRequest) -> SwapQuote: ...


# Pool

@dataclass(frozen=True)
class PoolPrice:
    tick: int
    tick_spacing: int
    sqrt_price_x96: int


@dataclass(frozen=True)
class MintParams:
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    amount0_desired: int
    amount1_desired: int
    recipient: str
    slippage_bps: int = 100


@dataclass(frozen=True)
class MintResult:
    token_id: Optional[int]
    liquidity: int
    amount0: int
    amount1: int
    tx_hash: str


@dataclass(frozen=True)
class CollectAmounts:
    amount0: int
    amount1: int
    tx_hash: str = ""


class PoolClient(Protocol):
    """Signing calls take the WalletRecord whose funds they move."""

    async def get_current_price(self) -> PoolPrice: ...

    async def mint(self, wallet: Any, params: MintParams, dry_run: bool = False,
                   on_submitted: Optional[Callable[[str], Awaitable[None]]] = None) -> MintResult: ...

    async def finish_mint(self, wallet: Any, tx_hash: str) -> MintResult: ...

    async def collect(self, wallet: Any, token_id: Optional[int], dry_run: bool = False) -> CollectAmounts: ...

    async def get_accrued_fees(self, wallet: Any, token_id: int) -> CollectAmounts: ...

    async def close_position(self, wallet: Any, token_id: int, liquidity: int,
                             dry_run: bool = False) -> CollectAmounts: ...


# Chain

class ChainClient(Protocol):
    """Async JSON-RPC surface used for balances and raw transaction submission."""

    chain_id: int

    async def get_balance(self, address: str) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def send_raw_transaction(self, raw: bytes) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]: ...

    async def call(self, tx: Dict[str, Any]) -> bytes: ...
