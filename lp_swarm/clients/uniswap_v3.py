"""
Uniswap V3 pool and NonfungiblePositionManager client.

Calldata is encoded with eth_abi against hand-written signatures; events are
read straight from receipt logs.
"""

import time
from typing import Any, Dict, Iterable, Optional

from eth_abi import decode, encode
from web3 import Web3

from ..chain import DRY_RUN_TX_HASH, TxRequest, ensure_allowance
from ..errors import InvalidParamsError, TransactionError
from ..interfaces import CollectAmounts, MintParams, MintResult, PoolPrice
from ..utils import logger, format_address

MAX_UINT128 = 2 ** 128 - 1
DEADLINE_SECONDS = 600

MINT_TYPES = "(address,address,uint24,int24,int24,uint256,uint256,uint256,uint256,address,uint256)"
COLLECT_TYPES = "(uint256,address,uint128,uint128)"
DECREASE_TYPES = "(uint256,uint128,uint256,uint256,uint256)"


def _selector(signature: str) -> str:
    return "0x" + bytes(Web3.keccak(text=signature))[:4].hex()


def _topic(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))


SLOT0 = _selector("slot0()")
TICK_SPACING = _selector("tickSpacing()")
MINT = _selector(f"mint({MINT_TYPES})")
COLLECT = _selector(f"collect({COLLECT_TYPES})")
DECREASE_LIQUIDITY = _selector(f"decreaseLiquidity({DECREASE_TYPES})")
BURN = _selector("burn(uint256)")

INCREASE_LIQUIDITY_TOPIC = _topic("IncreaseLiquidity(uint256,uint128,uint256,uint256)")
COLLECT_TOPIC = _topic("Collect(uint256,address,uint256,uint256)")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def _find_log(logs: Iterable[Dict[str, Any]], topic: bytes, emitter: str) -> Optional[Dict[str, Any]]:
    for log in logs:
        topics = log.get("topics") or []
        if not topics or _as_bytes(topics[0]) != topic:
            continue
        if str(log.get("address", emitter)).lower() != emitter.lower():
            continue
        return log
    return None


class UniswapV3PoolClient:
    """Reads one pool's price and manages positions through the position manager."""

    def __init__(self, chain, sender, pool_address: str, position_manager_address: str):
        self.chain = chain
        self.sender = sender
        self.pool_address = Web3.to_checksum_address(pool_address)
        self.position_manager = Web3.to_checksum_address(position_manager_address)

    async def get_current_price(self) -> PoolPrice:
        raw = await self.chain.call({"to": self.pool_address, "data": SLOT0})
        sqrt_price_x96, tick = decode(["uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool"], raw)[:2]
        spacing_raw = await self.chain.call({"to": self.pool_address, "data": TICK_SPACING})
        (tick_spacing,) = decode(["int24"], spacing_raw)
        return PoolPrice(tick=tick, tick_spacing=tick_spacing, sqrt_price_x96=sqrt_price_x96)

    def _deadline(self) -> int:
        return int(time.time()) + DEADLINE_SECONDS

    def _collect_calldata(self, token_id: int, recipient: str) -> str:
        args = (token_id, Web3.to_checksum_address(recipient), MAX_UINT128, MAX_UINT128)
        return COLLECT + encode([COLLECT_TYPES], [args]).hex()

    async def mint(self, wallet, params: MintParams, dry_run: bool = False,
                   on_submitted=None) -> MintResult:
        if params.tick_lower >= params.tick_upper:
            raise InvalidParamsError(f"Invalid tick range [{params.tick_lower}, {params.tick_upper}]")

        for token, amount in ((params.token0, params.amount0_desired), (params.token1, params.amount1_desired)):
            if amount > 0:
                await ensure_allowance(self.sender, wallet, token, self.position_manager, amount, dry_run=dry_run)

        # Amounts actually pulled depend on where the price sits in the range
        args = (
            Web3.to_checksum_address(params.token0),
            Web3.to_checksum_address(params.token1),
            params.fee,
            params.tick_lower,
            params.tick_upper,
            params.amount0_desired,
            params.amount1_desired,
            0,
            0,
            Web3.to_checksum_address(params.recipient),
            self._deadline(),
        )
        outcome = await self.sender.send(wallet, TxRequest(
            to=self.position_manager,
            data=MINT + encode([MINT_TYPES], [args]).hex(),
            description="lp mint",
        ), dry_run=dry_run, on_submitted=on_submitted)

        if outcome.dry_run:
            return MintResult(token_id=None, liquidity=0, amount0=params.amount0_desired,
                              amount1=params.amount1_desired, tx_hash=DRY_RUN_TX_HASH)
        return self._minted(wallet, outcome)

    async def finish_mint(self, wallet, tx_hash: str) -> MintResult:
        """Wait for a mint that was already submitted and read the position it opened."""
        outcome = await self.sender.wait_for_transaction(tx_hash, "lp mint")
        return self._minted(wallet, outcome)

    def _minted(self, wallet, outcome) -> MintResult:
        log = _find_log(outcome.logs, INCREASE_LIQUIDITY_TOPIC, self.position_manager)
        if log is None:
            raise TransactionError(f"Mint tx {outcome.tx_hash} emitted no IncreaseLiquidity event")
        token_id = int.from_bytes(_as_bytes(log["topics"][1]), "big")
        liquidity, amount0, amount1 = decode(["uint128", "uint256", "uint256"], _as_bytes(log["data"]))
        logger.info(f"Minted position {token_id} for {format_address(wallet.address)} (liquidity {liquidity})")
        return MintResult(token_id=token_id, liquidity=liquidity, amount0=amount0,
                          amount1=amount1, tx_hash=outcome.tx_hash)

    async def get_accrued_fees(self, wallet, token_id: int) -> CollectAmounts:
        """Static-call collect() to read what a collect would pay out right now."""
        raw = await self.chain.call({
            "from": Web3.to_checksum_address(wallet.address),
            "to": self.position_manager,
            "data": self._collect_calldata(token_id, wallet.address),
        })
        amount0, amount1 = decode(["uint256", "uint256"], raw)
        return CollectAmounts(amount0=amount0, amount1=amount1)

    async def collect(self, wallet, token_id: Optional[int], dry_run: bool = False) -> CollectAmounts:
        if token_id is None:
            if dry_run:
                return CollectAmounts(0, 0, DRY_RUN_TX_HASH)
            raise InvalidParamsError(f"No position token id to collect for {wallet.address}")

        if dry_run:
            fees = await self.get_accrued_fees(wallet, token_id)
            logger.info(f"[DRY RUN] Would collect {fees.amount0}/{fees.amount1} from position {token_id}")
            return CollectAmounts(fees.amount0, fees.amount1, DRY_RUN_TX_HASH)

        outcome = await self.sender.send(wallet, TxRequest(
            to=self.position_manager,
            data=self._collect_calldata(token_id, wallet.address),
            description="lp collect",
        ))
        log = _find_log(outcome.logs, COLLECT_TOPIC, self.position_manager)
        if log is None:
            return CollectAmounts(0, 0, outcome.tx_hash)
        _, amount0, amount1 = decode(["address", "uint256", "uint256"], _as_bytes(log["data"]))
        return CollectAmounts(amount0, amount1, outcome.tx_hash)

    async def close_position(self, wallet, token_id: int, liquidity: int,
                             dry_run: bool = False) -> CollectAmounts:
        """Withdraw all liquidity, collect principal plus fees, burn the NFT."""
        if liquidity > 0:
            args = (token_id, liquidity, 0, 0, self._deadline())
            await self.sender.send(wallet, TxRequest(
                to=self.position_manager,
                data=DECREASE_LIQUIDITY + encode([DECREASE_TYPES], [args]).hex(),
                description="lp decrease liquidity",
            ), dry_run=dry_run)

        collected = await self.collect(wallet, token_id, dry_run=dry_run)

        await self.sender.send(wallet, TxRequest(
            to=self.position_manager,
            data=BURN + encode(["uint256"], [token_id]).hex(),
            description="lp burn",
        ), dry_run=dry_run)
        logger.info(f"Closed position {token_id} for {format_address(wallet.address)}")
        return collected
