"""
Orchestrator
============
Drives one satellite wallet through bridge -> swap -> lp -> collect.

State is persisted after every transition. On resume every step whose
completion is recorded (a successful result, an executed operation ID, or a
later current_step) is skipped, so a wallet that already reached swap_done
only runs lp and collect. A transaction the node accepted is recorded
before its receipt wait, and a retry or resume waits on that hash rather
than sending again. Step failures are caught here and turned into the
wallet's WalletRunResult; they never escape to sibling wallets.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .chain import TxRequest, ensure_allowance, is_native_token
from .errors import (
    ErrorKind, InsufficientFundsError, InvalidParamsError, TransactionError, classify_error,
)
from .interfaces import (
    BridgeQuoteRequest, CollectAmounts, MintParams, SwapQuoteRequest,
)
from .liquidity import (
    LiquidityPosition, RebalanceDecision, RebalancePolicy, derive_tick_range,
    evaluate_rebalance, price_scaled_from_sqrt,
)
from .retry import RetryPolicy, TX_SUBMIT_POLICY, retry_async
from .state import (
    BridgeResult, CollectResult, LpResult, OperationIntent, OrchestratorState,
    OrchestratorStep, PendingTx, RESULT_FIELDS, StateStore, SwapResult, operation_id,
)
from .utils import logger, format_address, format_duration, format_eth, format_tx_hash, sanitize_error_message

STEP_ORDER = ("bridge", "swap", "lp", "collect")

PENDING_STEP = {
    "bridge": OrchestratorStep.BRIDGE_PENDING,
    "swap": OrchestratorStep.SWAP_PENDING,
    "lp": OrchestratorStep.LP_PENDING,
    "collect": OrchestratorStep.COLLECT_PENDING,
}
DONE_STEP = {
    "bridge": OrchestratorStep.BRIDGE_DONE,
    "swap": OrchestratorStep.SWAP_DONE,
    "lp": OrchestratorStep.LP_DONE,
    "collect": OrchestratorStep.COLLECT_DONE,
}
STEP_INTENT = {
    "bridge": OperationIntent.BRIDGE,
    "swap": OperationIntent.SWAP,
    "lp": OperationIntent.LP_CREATE,
    "collect": OperationIntent.LP_COLLECT,
}

# Number of steps a current_step value implies are finished
COMPLETED_BY_STEP = {
    OrchestratorStep.IDLE: 0,
    OrchestratorStep.BRIDGE_PENDING: 0,
    OrchestratorStep.BRIDGE_DONE: 1,
    OrchestratorStep.SWAP_PENDING: 1,
    OrchestratorStep.SWAP_DONE: 2,
    OrchestratorStep.LP_PENDING: 2,
    OrchestratorStep.LP_DONE: 3,
    OrchestratorStep.COLLECT_PENDING: 3,
    OrchestratorStep.COLLECT_DONE: 4,
    OrchestratorStep.ERROR: 0,
}

BRIDGE_SUCCESS_STATUSES = ("DONE", "RECEIVED")

# Gas for decreaseLiquidity + collect + burn + mint
REBALANCE_GAS_ESTIMATE = 900_000


@dataclass
class WorkflowParams:
    """What each step moves. Amounts are in the token's smallest unit."""
    source_chain_id: int
    dest_chain_id: int
    bridge_from_token: str
    bridge_to_token: str
    bridge_amount_wei: int
    swap_token_in: str
    swap_token_out: str
    swap_amount_wei: int
    pool_token0: str
    pool_token1: str
    pool_fee: int = 3000
    lp_amount0_wei: int = 0
    lp_amount1_wei: int = 0
    lp_range_percent: float = 5.0
    bridge_slippage_bps: int = 50
    swap_slippage_bps: int = 100
    lp_slippage_bps: int = 100
    bridge_timeout: float = 600
    collect_delay_seconds: float = 600
    min_native_balance_wei: int = 0

    def step_params(self, step: str) -> Dict[str, Any]:
        if step == "bridge":
            return {"from": self.source_chain_id, "to": self.dest_chain_id,
                    "token": self.bridge_from_token, "amount": self.bridge_amount_wei}
        if step == "swap":
            return {"in": self.swap_token_in, "out": self.swap_token_out, "amount": self.swap_amount_wei}
        if step == "lp":
            return {"token0": self.pool_token0, "token1": self.pool_token1, "fee": self.pool_fee,
                    "amount0": self.lp_amount0_wei, "amount1": self.lp_amount1_wei}
        return {"token0": self.pool_token0, "token1": self.pool_token1, "fee": self.pool_fee}


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class WalletRunResult:
    wallet: str
    status: RunStatus
    steps: List[str] = field(default_factory=list)
    state: Optional[OrchestratorState] = None
    error_code: Optional[ErrorKind] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
    index: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS


@dataclass
class RebalanceOutcome:
    decision: RebalanceDecision
    position: Optional[LiquidityPosition] = None
    executed: bool = False


def _failed_result(step: str, error: str, previous=None):
    if step == "bridge":
        # Funds already in flight stay PENDING so the next run waits instead of resending
        if previous is not None and previous.tx_hash and previous.status == "PENDING":
            previous.error = error
            return previous
        return BridgeResult(route_id="", tx_hash="", from_amount=0, to_amount=0,
                            status="FAILED", success=False, error=error)
    if step == "swap":
        return SwapResult(token_in="", token_out="", amount_in=0, amount_out=0,
                          tx_hash="", success=False, error=error)
    if step == "lp":
        return LpResult(token0="", token1="", tick_lower=0, tick_upper=0, liquidity=0,
                        amount0=0, amount1=0, tx_hash="", success=False, error=error)
    return CollectResult(amount0=0, amount1=0, tx_hash="", success=False, error=error)


class WalletOrchestrator:
    """Runs the step sequence for one wallet at a time; safe to share across wallets."""

    def __init__(
        self,
        store: StateStore,
        bridge,
        swap,
        pool,
        source_sender,
        dest_sender,
        params: WorkflowParams,
        rebalance_policy: RebalancePolicy = RebalancePolicy(),
        step_policy: RetryPolicy = TX_SUBMIT_POLICY,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.bridge = bridge
        self.swap = swap
        self.pool = pool
        self.source_sender = source_sender
        self.dest_sender = dest_sender
        self.params = params
        self.rebalance_policy = rebalance_policy
        self.step_policy = step_policy
        self.sleep = sleep

    # State handling

    def _prepare_state(self, address: str, resume: bool, fresh: bool, persist: bool) -> OrchestratorState:
        if fresh:
            if persist:
                self.store.delete_state(address)
            logger.info(f"Starting fresh for {format_address(address)}")
            return self.store.create_state(address, persist=persist)

        existing = self.store.load_state(address)
        if existing is None:
            return self.store.create_state(address, persist=persist)
        if not resume:
            raise InvalidParamsError(
                f"State already exists for {address} (step {existing.current_step.value}); "
                f"resume it or start fresh"
            )
        logger.info(f"Resuming {format_address(address)} from {existing.current_step.value}")
        return existing

    def _op_id(self, address: str, step: str) -> str:
        return operation_id(address, STEP_INTENT[step], self.params.step_params(step))

    def is_step_complete(self, state: OrchestratorState, step: str) -> bool:
        result = state.result_for(step)
        if result is not None and result.success:
            return True
        if state.is_operation_executed(self._op_id(state.wallet, step)):
            return True
        return STEP_ORDER.index(step) < COMPLETED_BY_STEP[state.current_step]

    # Entry points

    async def run(self, wallet, resume: bool = True, fresh: bool = False,
                  dry_run: bool = False) -> WalletRunResult:
        """Execute every incomplete step for `wallet`. Never raises."""
        started = time.monotonic()
        persist = not dry_run
        executed: List[str] = []
        state: Optional[OrchestratorState] = None
        current = None

        try:
            state = self._prepare_state(wallet.address, resume, fresh, persist)
            for step in STEP_ORDER:
                if self.is_step_complete(state, step):
                    logger.debug(f"{format_address(wallet.address)}: {step} already done, skipping")
                    continue
                current = step
                await self._run_step(step, wallet, state, persist, dry_run)
                executed.append(step)
                current = None
        except Exception as e:
            kind = classify_error(e)
            message = sanitize_error_message(e)
            logger.error(
                f"{format_address(wallet.address)} failed"
                f"{' at ' + current if current else ''} [{kind.value}]: {message}"
            )
            if state is not None:
                updates: Dict[str, Any] = {"current_step": OrchestratorStep.ERROR}
                if current:
                    attr = RESULT_FIELDS[current][0]
                    updates[attr] = _failed_result(current, message, getattr(state, attr))
                self.store.update_state(state, persist=persist, **updates)
            return WalletRunResult(
                wallet=wallet.address,
                status=RunStatus.PARTIAL if executed else RunStatus.FAILED,
                steps=executed,
                state=state,
                error_code=kind,
                error=message,
                duration_seconds=time.monotonic() - started,
            )

        logger.info(
            f"{format_address(wallet.address)} complete "
            f"({', '.join(executed) if executed else 'nothing to do'})"
        )
        return WalletRunResult(
            wallet=wallet.address,
            status=RunStatus.SUCCESS,
            steps=executed,
            state=state,
            duration_seconds=time.monotonic() - started,
        )

    async def _run_step(self, step: str, wallet, state: OrchestratorState, persist: bool, dry_run: bool) -> None:
        logger.info(f"{format_address(wallet.address)}: executing {step}")
        self.store.update_state(state, persist=persist, current_step=PENDING_STEP[step])

        if step == "collect":
            await self._wait_before_collect(dry_run)

        execute = getattr(self, f"_execute_{step}")
        result, extra = await retry_async(
            lambda: execute(wallet, state, persist, dry_run),
            self.step_policy,
            label=f"{step} {format_address(wallet.address)}",
            sleep=self.sleep,
        )

        if not dry_run:
            state.mark_operation_executed(self._op_id(wallet.address, step))
        self.store.update_state(
            state, persist=persist,
            current_step=DONE_STEP[step],
            pending_tx=None,
            **{RESULT_FIELDS[step][0]: result},
            **extra,
        )

    # Steps

    def _record_submitted(self, state: OrchestratorState, persist: bool, step: str, **data):
        """on_submitted hook persisting the hash before the receipt wait."""
        async def record(tx_hash: str) -> None:
            self.store.update_state(state, persist=persist, pending_tx=PendingTx(
                step=step, tx_hash=tx_hash, data={k: str(v) for k, v in data.items()},
            ))
        return record

    def _pending(self, state: OrchestratorState, step: str, dry_run: bool) -> Optional[PendingTx]:
        pending = state.pending_tx
        if dry_run or pending is None or pending.step != step:
            return None
        logger.info(f"{step} tx {format_tx_hash(pending.tx_hash)} already sent, waiting for its receipt")
        return pending

    async def _until_mined(self, state: OrchestratorState, persist: bool, waiting):
        try:
            return await waiting
        except TransactionError:
            # A reverted tx no longer blocks a new submission
            self.store.update_state(state, persist=persist, pending_tx=None)
            raise

    async def _require_native(self, chain, address: str, needed: int, where: str) -> None:
        balance = await chain.get_balance(address)
        if balance < needed:
            raise InsufficientFundsError(
                f"{format_address(address)} has {format_eth(balance)} on {where}, needs {format_eth(needed)}",
                context={"balance": balance, "needed": needed},
            )

    async def _execute_bridge(self, wallet, state: OrchestratorState, persist: bool, dry_run: bool):
        p = self.params
        if p.bridge_amount_wei == 0:
            logger.info(f"{format_address(wallet.address)}: bridge amount is 0, skipping to swap")
            return BridgeResult(route_id="", tx_hash="skipped", from_amount=0, to_amount=0,
                                status="SKIPPED", success=True), {}

        previous = state.bridge_result
        if previous is not None and previous.tx_hash and previous.status == "PENDING" and not dry_run:
            logger.info(f"Bridge {format_tx_hash(previous.tx_hash)} already sent, waiting for delivery")
            route_id, tx_hash = previous.route_id, previous.tx_hash
            from_amount, to_amount = previous.from_amount, previous.to_amount
            try:
                await self.source_sender.wait_for_transaction(tx_hash, "bridge")
            except TransactionError as e:
                previous.status = "FAILED"
                previous.error = sanitize_error_message(e)
                self.store.update_state(state, persist=persist, bridge_result=previous)
                raise
        else:
            quote = await self.bridge.fetch_quote(BridgeQuoteRequest(
                from_chain=p.source_chain_id,
                to_chain=p.dest_chain_id,
                from_token=p.bridge_from_token,
                to_token=p.bridge_to_token,
                amount_wei=p.bridge_amount_wei,
                slippage_bps=p.bridge_slippage_bps,
                from_address=wallet.address,
                to_address=wallet.address,
            ))
            await self._require_native(
                self.source_sender.chain, wallet.address,
                quote.tx_value_wei + p.min_native_balance_wei, "source chain",
            )
            if not is_native_token(p.bridge_from_token):
                await ensure_allowance(self.source_sender, wallet, p.bridge_from_token,
                                       quote.tx_target, p.bridge_amount_wei, dry_run=dry_run)
            route_id = quote.route_id
            from_amount, to_amount = p.bridge_amount_wei, quote.to_amount_wei or quote.min_amount_out_wei

            async def record_in_flight(submitted_hash: str) -> None:
                # Written before the receipt wait so a retry or resume never sends twice
                self.store.update_state(state, persist=persist, bridge_result=BridgeResult(
                    route_id=route_id, tx_hash=submitted_hash, from_amount=from_amount,
                    to_amount=to_amount, status="PENDING", success=False,
                ))

            outcome = await self.source_sender.send(wallet, TxRequest(
                to=quote.tx_target, value=quote.tx_value_wei, data=quote.tx_data,
                gas_limit=quote.gas_limit, description="bridge",
            ), dry_run=dry_run, on_submitted=record_in_flight)
            tx_hash = outcome.tx_hash

            if dry_run:
                return BridgeResult(route_id=route_id, tx_hash=tx_hash, from_amount=from_amount,
                                    to_amount=to_amount, status="DRY_RUN", success=True), {}

        status = await self.bridge.wait_until_received(route_id, tx_hash, p.bridge_timeout)
        if status not in BRIDGE_SUCCESS_STATUSES:
            raise TransactionError(f"Bridge tx {tx_hash} finished with status {status}")
        logger.info(f"Bridge delivered for {format_address(wallet.address)} ({format_tx_hash(tx_hash)})")
        return BridgeResult(route_id=route_id, tx_hash=tx_hash, from_amount=from_amount,
                            to_amount=to_amount, status=status, success=True), {}

    async def _execute_swap(self, wallet, state: OrchestratorState, persist: bool, dry_run: bool):
        p = self.params
        pending = self._pending(state, "swap", dry_run)
        if pending is not None:
            outcome = await self._until_mined(
                state, persist, self.dest_sender.wait_for_transaction(pending.tx_hash, "swap"),
            )
            amount_out, target = int(pending.data["amount_out"]), pending.data["target"]
        else:
            quote = await self.swap.fetch_quote(SwapQuoteRequest(
                token_in=p.swap_token_in,
                token_out=p.swap_token_out,
                amount_wei=p.swap_amount_wei,
                slippage_bps=p.swap_slippage_bps,
                taker=wallet.address,
            ))
            await self._require_native(
                self.dest_sender.chain, wallet.address,
                quote.value_wei + p.min_native_balance_wei, "destination chain",
            )
            if not is_native_token(p.swap_token_in):
                await ensure_allowance(self.dest_sender, wallet, p.swap_token_in,
                                       quote.allowance_target or quote.target, p.swap_amount_wei, dry_run=dry_run)
            amount_out, target = quote.min_amount_out_wei, quote.target
            outcome = await self._until_mined(state, persist, self.dest_sender.send(wallet, TxRequest(
                to=quote.target, value=quote.value_wei, data=quote.calldata,
                gas_limit=quote.gas_limit, description="swap",
            ), dry_run=dry_run, on_submitted=self._record_submitted(
                state, persist, "swap", amount_out=amount_out, target=target,
            )))
        return SwapResult(
            token_in=p.swap_token_in, token_out=p.swap_token_out,
            amount_in=p.swap_amount_wei, amount_out=amount_out,
            tx_hash=outcome.tx_hash, success=True, target=target,
        ), {}

    async def _execute_lp(self, wallet, state: OrchestratorState, persist: bool, dry_run: bool):
        p = self.params
        pending = self._pending(state, "lp", dry_run)
        if pending is not None:
            lower, upper = int(pending.data["tick_lower"]), int(pending.data["tick_upper"])
            entry_price = int(pending.data["price"])
            minted = await self._until_mined(state, persist, self.pool.finish_mint(wallet, pending.tx_hash))
        else:
            price = await self.pool.get_current_price()
            lower, upper = derive_tick_range(price.tick, price.tick_spacing, p.lp_range_percent)
            entry_price = price_scaled_from_sqrt(price.sqrt_price_x96)
            logger.info(f"Opening range [{lower}, {upper}] around tick {price.tick}")

            minted = await self._until_mined(state, persist, self.pool.mint(wallet, MintParams(
                token0=p.pool_token0, token1=p.pool_token1, fee=p.pool_fee,
                tick_lower=lower, tick_upper=upper,
                amount0_desired=p.lp_amount0_wei, amount1_desired=p.lp_amount1_wei,
                recipient=wallet.address, slippage_bps=p.lp_slippage_bps,
            ), dry_run=dry_run, on_submitted=self._record_submitted(
                state, persist, "lp", tick_lower=lower, tick_upper=upper, price=entry_price,
            )))

        position = LiquidityPosition(
            lower_tick=lower, upper_tick=upper, liquidity=minted.liquidity,
            token_id=minted.token_id, deposited_token0=minted.amount0,
            deposited_token1=minted.amount1, last_rebalance_price=entry_price,
        )
        result = LpResult(
            token0=p.pool_token0, token1=p.pool_token1, tick_lower=lower, tick_upper=upper,
            liquidity=minted.liquidity, amount0=minted.amount0, amount1=minted.amount1,
            tx_hash=minted.tx_hash, success=True, token_id=minted.token_id,
        )
        return result, {"position": position}

    async def _wait_before_collect(self, dry_run: bool) -> None:
        delay = self.params.collect_delay_seconds
        if dry_run or delay <= 0:
            return
        logger.info(f"Waiting {format_duration(delay)} for fees to accrue before collecting")
        await self.sleep(delay)

    async def _execute_collect(self, wallet, state: OrchestratorState, persist: bool, dry_run: bool):
        token_id = state.position_result.token_id if state.position_result else None
        if token_id is None and state.position is not None:
            token_id = state.position.token_id

        amounts = await self.pool.collect(wallet, token_id, dry_run=dry_run)
        extra: Dict[str, Any] = {}
        if state.position is not None:
            state.position.last_collected_fees0 = amounts.amount0
            state.position.last_collected_fees1 = amounts.amount1
            extra["position"] = state.position
        return CollectResult(
            amount0=amounts.amount0, amount1=amounts.amount1,
            tx_hash=amounts.tx_hash, success=True, token_id=token_id,
        ), extra

    # Position management

    async def rebalance_position(self, wallet, dry_run: bool = False) -> RebalanceOutcome:
        """
        Close and reopen the wallet's LP position when the rebalance
        decision says so.
        """
        state = self.store.load_state(wallet.address)
        if state is None or state.position is None or state.position.token_id is None:
            raise InvalidParamsError(f"No open position recorded for {wallet.address}")
        position = state.position

        price = await self.pool.get_current_price()
        fees = await self.pool.get_accrued_fees(wallet, position.token_id)
        gas_cost = await self.dest_sender.current_gas_price() * REBALANCE_GAS_ESTIMATE
        current_price = price_scaled_from_sqrt(price.sqrt_price_x96)

        decision = evaluate_rebalance(
            position, price.tick, current_price, fees.amount0, fees.amount1,
            gas_cost, self.rebalance_policy,
        )
        logger.info(
            f"{format_address(wallet.address)} rebalance check: "
            f"{decision.reason.value if decision.reason else 'HOLD'} ({decision.detail})"
        )
        if not decision.should_rebalance:
            return RebalanceOutcome(decision, position)
        if dry_run:
            logger.info(f"[DRY RUN] Would close position {position.token_id} and reopen around tick {price.tick}")
            return RebalanceOutcome(decision, position)

        closed: CollectAmounts = await self.pool.close_position(wallet, position.token_id, position.liquidity)
        lower, upper = derive_tick_range(price.tick, price.tick_spacing, self.params.lp_range_percent)
        minted = await self.pool.mint(wallet, MintParams(
            token0=self.params.pool_token0, token1=self.params.pool_token1, fee=self.params.pool_fee,
            tick_lower=lower, tick_upper=upper,
            amount0_desired=closed.amount0, amount1_desired=closed.amount1,
            recipient=wallet.address, slippage_bps=self.params.lp_slippage_bps,
        ))

        new_position = LiquidityPosition(
            lower_tick=lower, upper_tick=upper, liquidity=minted.liquidity,
            token_id=minted.token_id, deposited_token0=minted.amount0,
            deposited_token1=minted.amount1, last_rebalance_price=current_price,
        )
        self.store.update_state(
            state,
            position=new_position,
            position_result=LpResult(
                token0=self.params.pool_token0, token1=self.params.pool_token1,
                tick_lower=lower, tick_upper=upper, liquidity=minted.liquidity,
                amount0=minted.amount0, amount1=minted.amount1,
                tx_hash=minted.tx_hash, success=True, token_id=minted.token_id,
            ),
        )
        logger.info(f"Rebalanced {format_address(wallet.address)} into [{lower}, {upper}] (token {minted.token_id})")
        return RebalanceOutcome(decision, new_position, executed=True)
