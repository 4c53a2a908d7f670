"""
Hub Distributor
===============
Splits the hub wallet's balance across satellite wallets and sends the
transfers.

Allocation is pure integer arithmetic: reserve gas per funded transfer, fund
as many satellites as can each get at least the minimum transfer, give each
funded satellite the minimum plus a randomly weighted share of the rest.
Satellites that cannot be funded get zero.

Execution is strictly sequential because every transfer spends from the
same hub nonce sequence.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from web3 import Web3

from .chain import TRANSFER_GAS_LIMIT
from .errors import DistributionError, InsufficientFundsError, OperationTimeoutError, classify_error
from .mutex import WalletMutexManager
from .utils import logger, format_address, format_eth, format_tx_hash, sanitize_error_message

MIN_TRANSFER_WEI = Web3.to_wei(Decimal("0.0002"), "ether")
VARIANCE_SCALE = 1_000_000
DEFAULT_VARIANCE = (0.85, 1.15)


@dataclass(frozen=True)
class Allocation:
    recipient: str
    amount_wei: int


@dataclass
class DistributionPlan:
    allocations: List[Allocation]
    gas_price_wei: int
    gas_reserve_per_tx: int
    min_transfer_wei: int
    funded_count: int

    @property
    def total_wei(self) -> int:
        return sum(a.amount_wei for a in self.allocations)

    @property
    def reserved_gas_wei(self) -> int:
        return self.gas_reserve_per_tx * self.funded_count

    def is_empty(self) -> bool:
        return self.funded_count == 0


@dataclass
class DistributionResult:
    funded_count: int = 0
    total_sent_wei: int = 0
    tx_hashes: List[str] = field(default_factory=list)
    gas_price_wei: int = 0
    dry_run: bool = False
    failures: List[Tuple[str, str]] = field(default_factory=list)


def _scaled(factor: float) -> int:
    return int(Decimal(str(factor)) * VARIANCE_SCALE)


def plan_distribution(
    balance_wei: int,
    satellites: Sequence[str],
    gas_price_wei: int,
    min_transfer_wei: int = MIN_TRANSFER_WEI,
    variance: Tuple[float, float] = DEFAULT_VARIANCE,
    gas_limit: int = TRANSFER_GAS_LIMIT,
    rng=None,
) -> DistributionPlan:
    """
    Compute a spending plan for `balance_wei` over `satellites`.

    Every satellite appears exactly once, in order. The funded ones come
    first and each receives at least the minimum transfer; the plan total
    plus the gas reserved for the funded transfers equals the balance.
    """
    min_factor, max_factor = variance
    if not 0 < min_factor < max_factor:
        raise ValueError(f"Invalid variance band {variance}")
    if gas_price_wei < 0 or balance_wei < 0:
        raise ValueError("Balance and gas price must be non-negative")

    rng = rng or secrets.SystemRandom()
    gas_reserve = gas_price_wei * gas_limit
    min_transfer = max(min_transfer_wei, 2 * gas_reserve)
    count = len(satellites)

    funded = 0
    if count and balance_wei > 0:
        funded = min(count, balance_wei // (gas_reserve + min_transfer))
        while funded > 0 and balance_wei - gas_reserve * funded < min_transfer * funded:
            funded -= 1

    amounts = [0] * count
    if funded:
        distributable = balance_wei - gas_reserve * funded
        extra = distributable - min_transfer * funded

        low, high = _scaled(min_factor), _scaled(max_factor)
        factors = [rng.randint(low, high) for _ in range(funded)]
        total_factor = sum(factors)

        extras = [extra * f // total_factor for f in factors]
        remainder = extra - sum(extras)
        for i in range(remainder):
            extras[i % funded] += 1

        for i in range(funded):
            amounts[i] = min_transfer + extras[i]

    return DistributionPlan(
        allocations=[Allocation(addr, amt) for addr, amt in zip(satellites, amounts)],
        gas_price_wei=gas_price_wei,
        gas_reserve_per_tx=gas_reserve,
        min_transfer_wei=min_transfer,
        funded_count=funded,
    )


class HubDistributor:
    """Funds satellites from the hub and sweeps their leftovers back."""

    def __init__(
        self,
        chain,
        sender,
        hub_wallet,
        min_transfer_wei: int = MIN_TRANSFER_WEI,
        variance: Tuple[float, float] = DEFAULT_VARIANCE,
        gas_limit: int = TRANSFER_GAS_LIMIT,
        mutexes: Optional[WalletMutexManager] = None,
        rng=None,
    ):
        self.chain = chain
        self.sender = sender
        self.hub = hub_wallet
        self.min_transfer_wei = min_transfer_wei
        self.variance = variance
        self.gas_limit = gas_limit
        self.mutexes = mutexes or WalletMutexManager()
        self.rng = rng

    async def create_plan(self, satellites: Sequence[str]) -> DistributionPlan:
        balance = await self.chain.get_balance(self.hub.address)
        gas_price = await self.sender.current_gas_price()
        plan = plan_distribution(
            balance, satellites, gas_price,
            min_transfer_wei=self.min_transfer_wei,
            variance=self.variance,
            gas_limit=self.gas_limit,
            rng=self.rng,
        )
        logger.info(
            f"Hub {format_address(self.hub.address)} balance {format_eth(balance)}: "
            f"funding {plan.funded_count}/{len(satellites)} satellites, "
            f"{format_eth(plan.total_wei)} total"
        )
        return plan

    async def execute_distribution(self, plan: DistributionPlan, dry_run: bool = False) -> DistributionResult:
        """
        Send every non-zero allocation in order.

        Any transfer that still fails after the gas bumps aborts the call with
        DistributionError; confirmed transfers stay confirmed.
        """
        async def run() -> DistributionResult:
            result = DistributionResult(gas_price_wei=plan.gas_price_wei, dry_run=dry_run)
            gas_price = plan.gas_price_wei

            for allocation in plan.allocations:
                if allocation.amount_wei <= 0:
                    continue

                gas_reserve = gas_price * self.gas_limit
                balance = await self.chain.get_balance(self.hub.address)
                available = balance - gas_reserve
                amount = allocation.amount_wei
                if available <= 0:
                    raise DistributionError(
                        f"Hub balance {format_eth(balance)} cannot cover gas for "
                        f"{format_address(allocation.recipient)}",
                        result=result, kind=InsufficientFundsError.kind,
                    )
                if amount > available:
                    logger.warning(
                        f"Clamping transfer to {format_address(allocation.recipient)} "
                        f"from {format_eth(amount)} to {format_eth(available)}"
                    )
                    amount = available

                try:
                    # spend_cap shrinks the value if a gas bump raises the fee
                    outcome = await self.sender.transfer(
                        self.hub, allocation.recipient, amount, dry_run=dry_run,
                        gas_price=gas_price, spend_cap=balance,
                    )
                except Exception as e:
                    logger.error(
                        f"Transfer to {format_address(allocation.recipient)} failed: "
                        f"{sanitize_error_message(e)}"
                    )
                    raise DistributionError(
                        f"Distribution aborted at {allocation.recipient} after "
                        f"{result.funded_count} transfers: {sanitize_error_message(e)}",
                        result=result, kind=classify_error(e),
                    ) from e

                gas_price = outcome.gas_price
                result.gas_price_wei = gas_price
                result.funded_count += 1
                result.total_sent_wei += outcome.value
                result.tx_hashes.append(outcome.tx_hash)
                logger.info(
                    f"Funded {format_address(allocation.recipient)} with {format_eth(outcome.value)} "
                    f"({format_tx_hash(outcome.tx_hash)})"
                )

            return result

        return await self.mutexes.run_exclusive(f"hub:{self.hub.address}", run)

    async def distribute(self, satellites: Sequence[str], dry_run: bool = False) -> DistributionResult:
        plan = await self.create_plan(satellites)
        if plan.is_empty():
            logger.warning("Hub balance too low to fund any satellite")
            return DistributionResult(gas_price_wei=plan.gas_price_wei, dry_run=dry_run)
        return await self.execute_distribution(plan, dry_run=dry_run)

    async def wait_for_hub_funding(self, min_balance_wei: int, timeout: float = 600,
                                   poll_interval: float = 30, sleep=asyncio.sleep) -> int:
        """Poll until the hub holds at least min_balance_wei; returns the balance."""
        deadline = time.monotonic() + timeout
        while True:
            balance = await self.chain.get_balance(self.hub.address)
            if balance >= min_balance_wei:
                logger.info(f"Hub funded: {format_eth(balance)}")
                return balance
            if time.monotonic() >= deadline:
                raise OperationTimeoutError(
                    f"Hub balance {format_eth(balance)} still below {format_eth(min_balance_wei)} "
                    f"after {timeout}s",
                )
            logger.info(f"Waiting for hub funding: {format_eth(balance)} / {format_eth(min_balance_wei)}")
            await sleep(poll_interval)

    async def sweep_to_hub(self, satellites, keep_wei: int = 0, dry_run: bool = False) -> DistributionResult:
        """
        Send each satellite's native balance, minus gas and keep_wei, back to the hub.

        A failed sweep is recorded and the remaining satellites are still swept.
        """
        gas_price = await self.sender.current_gas_price()
        result = DistributionResult(gas_price_wei=gas_price, dry_run=dry_run)
        gas_reserve = gas_price * self.gas_limit

        for wallet in satellites:
            balance = await self.chain.get_balance(wallet.address)
            amount = balance - gas_reserve - keep_wei
            if amount <= 0:
                logger.debug(f"Nothing to sweep from {format_address(wallet.address)}")
                continue
            try:
                outcome = await self.sender.transfer(
                    wallet, self.hub.address, amount, dry_run=dry_run,
                    gas_price=gas_price, spend_cap=balance - keep_wei,
                )
            except Exception as e:
                message = sanitize_error_message(e)
                logger.error(f"Sweep from {format_address(wallet.address)} failed: {message}")
                result.failures.append((wallet.address, message))
                continue
            result.funded_count += 1
            result.total_sent_wei += outcome.value
            result.tx_hashes.append(outcome.tx_hash)

        logger.info(f"Swept {format_eth(result.total_sent_wei)} from {result.funded_count} satellites")
        return result

    async def top_up_satellites(self, satellites: Sequence[str], min_balance_wei: int,
                                target_wei: int, dry_run: bool = False) -> DistributionResult:
        """Bring every satellite below min_balance_wei back up to target_wei."""
        if target_wei < min_balance_wei:
            raise ValueError("target_wei must be >= min_balance_wei")

        gas_price = await self.sender.current_gas_price()
        allocations = []
        for address in satellites:
            balance = await self.chain.get_balance(address)
            shortfall = target_wei - balance if balance < min_balance_wei else 0
            allocations.append(Allocation(address, shortfall))

        needing = sum(1 for a in allocations if a.amount_wei > 0)
        if not needing:
            logger.info("All satellites above the gas top-up threshold")
            return DistributionResult(gas_price_wei=gas_price, dry_run=dry_run)

        logger.info(f"Topping up {needing} satellites to {format_eth(target_wei)}")
        plan = DistributionPlan(
            allocations=allocations,
            gas_price_wei=gas_price,
            gas_reserve_per_tx=gas_price * self.gas_limit,
            min_transfer_wei=0,
            funded_count=needing,
        )
        return await self.execute_distribution(plan, dry_run=dry_run)
