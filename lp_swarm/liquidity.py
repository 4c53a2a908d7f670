"""
Concentrated-liquidity helpers: position record, tick-range derivation and
the rebalance decision.
"""

import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

MIN_TICK = -887272
MAX_TICK = 887272

# 1.0001 is the price ratio between adjacent ticks
TICK_BASE = 1.0001

# Prices are compared as integers scaled by this factor
PRICE_SCALE = 10 ** 6

Q192 = 2 ** 192


@dataclass
class LiquidityPosition:
    """An open LP position. lower_tick < upper_tick, both multiples of tick spacing."""
    lower_tick: int
    upper_tick: int
    liquidity: int = 0
    token_id: Optional[int] = None
    deposited_token0: int = 0
    deposited_token1: int = 0
    last_rebalance_price: int = 0
    last_collected_fees0: int = 0
    last_collected_fees1: int = 0

    INT_FIELDS = ("liquidity", "token_id", "deposited_token0", "deposited_token1",
                  "last_rebalance_price", "last_collected_fees0", "last_collected_fees1")

    def __post_init__(self):
        if self.lower_tick >= self.upper_tick:
            raise ValueError(f"lower_tick ({self.lower_tick}) must be below upper_tick ({self.upper_tick})")

    def in_range(self, tick: int) -> bool:
        return self.lower_tick < tick < self.upper_tick

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in self.INT_FIELDS:
            if data[name] is not None:
                data[name] = str(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiquidityPosition":
        valid = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name in cls.INT_FIELDS:
            if valid.get(name) is not None:
                valid[name] = int(valid[name])
        return cls(**valid)


class RebalanceReason(str, Enum):
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
    FEES_HIGH = "FEES_HIGH"
    SIGNIFICANT_MOVE = "SIGNIFICANT_MOVE"


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    reason: Optional[RebalanceReason] = None
    detail: str = ""


@dataclass(frozen=True)
class RebalancePolicy:
    price_threshold_percent: float = 5.0
    gas_multiplier: float = 2.0


def derive_tick_range(current_tick: int, tick_spacing: int, range_percent: float):
    """
    Centre a range of +/- range_percent (in price terms) on current_tick.

    Both bounds are aligned to tick_spacing and clamped to the usable tick
    range; the range always spans at least one spacing.
    """
    if tick_spacing <= 0:
        raise ValueError(f"tick_spacing must be positive, got {tick_spacing}")
    if range_percent <= 0:
        raise ValueError(f"range_percent must be positive, got {range_percent}")

    ratio = range_percent / 100
    ticks_up = math.log(1 + ratio) / math.log(TICK_BASE)
    ticks_down = -math.log(max(1 - ratio, 1e-9)) / math.log(TICK_BASE)

    lower = math.floor((current_tick - ticks_down) / tick_spacing) * tick_spacing
    upper = math.ceil((current_tick + ticks_up) / tick_spacing) * tick_spacing

    min_usable = math.ceil(MIN_TICK / tick_spacing) * tick_spacing
    max_usable = math.floor(MAX_TICK / tick_spacing) * tick_spacing
    lower = max(lower, min_usable)
    upper = min(upper, max_usable)

    if lower >= upper:
        if upper + tick_spacing <= max_usable:
            upper = lower + tick_spacing
        else:
            lower = upper - tick_spacing
    return lower, upper


def price_scaled_from_sqrt(sqrt_price_x96: int) -> int:
    """token1/token0 price from a Q64.96 sqrt price, as an integer scaled by PRICE_SCALE."""
    return sqrt_price_x96 * sqrt_price_x96 * PRICE_SCALE // Q192


def difference_percent(a: int, b: int) -> float:
    """Relative move of a against b, in percent with two decimals."""
    if b == 0:
        return 100.0
    return (abs(a - b) * 10000 // abs(b)) / 100


def evaluate_rebalance(
    position: LiquidityPosition,
    current_tick: int,
    current_price: int,
    fees0: int,
    fees1: int,
    gas_cost_wei: int,
    policy: RebalancePolicy,
) -> RebalanceDecision:
    """
    Decide whether to close and reopen a position.

    Checked in priority order: out of range, then fees worth harvesting,
    then a large price move since the last rebalance.
    """
    if current_tick <= position.lower_tick or current_tick >= position.upper_tick:
        return RebalanceDecision(
            True, RebalanceReason.PRICE_OUT_OF_RANGE,
            f"tick {current_tick} outside [{position.lower_tick}, {position.upper_tick}]",
        )

    total_fees = fees0 + fees1
    fee_threshold = int(gas_cost_wei * policy.gas_multiplier)
    if total_fees > fee_threshold:
        return RebalanceDecision(
            True, RebalanceReason.FEES_HIGH,
            f"fees {total_fees} > gas {gas_cost_wei} x {policy.gas_multiplier}",
        )

    move = difference_percent(current_price, position.last_rebalance_price)
    if move > policy.price_threshold_percent:
        return RebalanceDecision(
            True, RebalanceReason.SIGNIFICANT_MOVE,
            f"price moved {move:.2f}% (threshold {policy.price_threshold_percent}%)",
        )

    return RebalanceDecision(False, None, f"in range, price moved {move:.2f}%")
