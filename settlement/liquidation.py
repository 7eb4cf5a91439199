"""
Swap planning for the rebalance cycle.

Two planners, both pure functions of a snapshot:

* ``plan_liquidation`` raises liquid reserve to cover queued liabilities.
  It sells the most over-weight assets down toward target first (largest
  positive drift first), then spreads any remainder with a value waterfall
  that levels the largest holdings down together.
* ``plan_drift_rebalance`` moves a fraction of every non-liquid asset's
  excess (or deficit) against the liquid asset.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN
from typing import Dict, Iterable, List, Optional, Set
import logging

from settlement.models import BPS, AssetValuation, BasketSnapshot, quantum

logger = logging.getLogger(__name__)

LIQUIDATION = "liquidation"
REBALANCE = "rebalance"


@dataclass(frozen=True)
class SwapLeg:
    purpose: str
    asset_in: str
    asset_out: str
    amount_in: int
    value: Decimal
    expected_out: int
    min_amount_out: int

    def to_dict(self) -> dict:
        return {
            "purpose": self.purpose,
            "assetIn": self.asset_in,
            "assetOut": self.asset_out,
            "amountIn": str(self.amount_in),
            "value": str(self.value),
            "expectedOut": str(self.expected_out),
            "minAmountOut": str(self.min_amount_out),
        }


@dataclass(frozen=True)
class LiquidationPlan:
    legs: List[SwapLeg]
    target_raise: Decimal
    uncovered: Decimal


def min_out(expected_out: int, slippage_bps: int) -> int:
    """Slippage guard: the least output accepted for an oracle-priced expectation."""
    return expected_out * (BPS - slippage_bps) // BPS


def target_value(entry: AssetValuation, snapshot: BasketSnapshot) -> Decimal:
    """Value the asset would hold at its target weight, over active targets only."""
    total_target = snapshot.total_target_bps
    if total_target <= 0:
        return Decimal(0)
    return snapshot.total_value * entry.target_weight_bps / total_target


def _native_to_sell(entry: AssetValuation, value: Decimal) -> int:
    """Native units worth ``value``, rounded up so the sale raises enough."""
    if entry.value <= 0:
        return 0
    native = (Decimal(entry.balance) * value / entry.value).to_integral_value(rounding=ROUND_CEILING)
    return min(int(native), entry.balance)


def waterfall(values: Dict[str, Decimal], needed: Decimal, step: Decimal) -> Dict[str, Decimal]:
    """
    Split ``needed`` across holdings by levelling the largest ones down.

    Returns the value to sell per key. Never sells more than a holding.
    """
    remaining_values = dict(values)
    sold = {key: Decimal(0) for key in values}
    remaining = needed

    while remaining > 0:
        max_value = max(remaining_values.values(), default=Decimal(0))
        if max_value <= 0:
            break
        top = [k for k, v in remaining_values.items() if v == max_value]
        next_value = max((v for v in remaining_values.values() if v < max_value), default=Decimal(0))
        drop = max_value - next_value

        if drop * len(top) <= remaining:
            for key in top:
                sold[key] += drop
                remaining_values[key] = next_value
                remaining -= drop
            continue

        share = (remaining / len(top)).quantize(step, rounding=ROUND_DOWN)
        leftover = remaining - share * len(top)
        for i, key in enumerate(top):
            amount = share + (leftover if i == 0 else Decimal(0))
            amount = min(amount, remaining_values[key])
            sold[key] += amount
            remaining_values[key] -= amount
            remaining -= amount
        break

    return sold


def _sellable(snapshot: BasketSnapshot, liquid_key: str, excluded: Iterable[str]) -> List[AssetValuation]:
    skip: Set[str] = set(excluded)
    return sorted(
        (a for a in snapshot.assets
         if a.key != liquid_key and a.key not in skip and a.balance > 0 and a.value > 0),
        key=lambda a: a.key,
    )


def plan_liquidation(
    snapshot: BasketSnapshot,
    liquid_key: str,
    liability: Decimal,
    reserve: Decimal,
    slippage_bps: int = 150,
    rounding_bps: int = 10,
    min_leg_value: Decimal = Decimal(0),
    excluded: Iterable[str] = (),
) -> Optional[LiquidationPlan]:
    """
    Plan sales into the liquid asset so ``reserve`` covers ``liability``.

    The raise is the larger of the plain shortfall and the amount that leaves
    the liquid asset at its target weight once the liability is paid, grown
    by ``rounding_bps`` to absorb integer rounding in the swaps.

    Returns None when the reserve already covers the liability.
    """
    liquid = snapshot.asset(liquid_key)
    if liquid is None:
        logger.error("Liquid asset %s missing from snapshot; cannot plan liquidation", liquid_key)
        return None

    shortfall = liability - reserve
    if shortfall <= 0:
        return None

    step = quantum(snapshot.reference_decimals)
    total_target = snapshot.total_target_bps
    post_total = max(snapshot.total_value - liability, Decimal(0))
    liquid_target_after = (
        post_total * liquid.target_weight_bps / total_target if total_target > 0 else Decimal(0)
    )
    buffer_deficit = max(liability + liquid_target_after - liquid.value, Decimal(0))
    needed = max(shortfall, buffer_deficit)
    needed = (needed + needed * rounding_bps / BPS).quantize(step, rounding=ROUND_CEILING)

    logger.info(
        "Liquidation sizing: shortfall=%s with_target_buffer=%s to_raise=%s",
        shortfall, buffer_deficit, needed,
    )

    assets = _sellable(snapshot, liquid_key, excluded)
    sells: Dict[str, Decimal] = {a.key: Decimal(0) for a in assets}
    remaining = needed

    # over-weight assets first, largest excess first
    by_excess = sorted(assets, key=lambda a: a.value - target_value(a, snapshot), reverse=True)
    for entry in by_excess:
        if remaining <= 0:
            break
        excess = (entry.value - target_value(entry, snapshot)).quantize(step, rounding=ROUND_DOWN)
        if excess <= 0:
            break
        amount = min(excess, remaining, entry.value)
        sells[entry.key] += amount
        remaining -= amount

    if remaining > 0:
        left = {a.key: a.value - sells[a.key] for a in assets}
        for key, amount in waterfall(left, remaining, step).items():
            sells[key] += amount
            remaining -= amount

    legs: List[SwapLeg] = []
    for entry in assets:
        value = sells[entry.key]
        if value <= 0:
            continue
        if value < min_leg_value:
            logger.debug("Dropping %s leg of %s below minimum", entry.key, value)
            remaining += value
            continue
        expected = liquid.to_native(value)
        legs.append(SwapLeg(
            purpose=LIQUIDATION,
            asset_in=entry.key,
            asset_out=liquid_key,
            amount_in=_native_to_sell(entry, value),
            value=value,
            expected_out=expected,
            min_amount_out=min_out(expected, slippage_bps),
        ))

    uncovered = max(remaining, Decimal(0))
    if uncovered > 0:
        logger.warning("Insufficient sellable assets; %s of the raise uncovered", uncovered)
    return LiquidationPlan(legs=legs, target_raise=needed, uncovered=uncovered)


def plan_drift_rebalance(
    snapshot: BasketSnapshot,
    liquid_key: str,
    step_bps: int = 5000,
    slippage_bps: int = 150,
    min_leg_value: Decimal = Decimal(0),
    excluded: Iterable[str] = (),
) -> List[SwapLeg]:
    """
    Proportional rebalance against the liquid asset.

    Over-weight assets sell ``step_bps`` of their excess; under-weight assets
    buy ``step_bps`` of their deficit, funded by the liquid balance plus the
    proceeds of the sells in the same plan.
    """
    liquid = snapshot.asset(liquid_key)
    if liquid is None or snapshot.total_value <= 0:
        return []

    step = quantum(snapshot.reference_decimals)
    skip = set(excluded)
    sells: List[SwapLeg] = []
    buys: List[SwapLeg] = []
    funding = liquid.value

    candidates = [a for a in snapshot.assets if a.key != liquid_key and a.key not in skip]
    for entry in sorted(candidates, key=lambda a: a.excess_bps, reverse=True):
        gap = entry.value - target_value(entry, snapshot)
        value = (abs(gap) * step_bps / BPS).quantize(step, rounding=ROUND_DOWN)
        if value <= 0 or value < min_leg_value:
            continue
        if gap > 0:
            value = min(value, entry.value)
            expected = liquid.to_native(value)
            sells.append(SwapLeg(
                purpose=REBALANCE,
                asset_in=entry.key,
                asset_out=liquid_key,
                amount_in=_native_to_sell(entry, value),
                value=value,
                expected_out=expected,
                min_amount_out=min_out(expected, slippage_bps),
            ))
            funding += value

    for entry in sorted(candidates, key=lambda a: a.excess_bps):
        gap = target_value(entry, snapshot) - entry.value
        if gap <= 0:
            continue
        value = min((gap * step_bps / BPS).quantize(step, rounding=ROUND_DOWN), funding)
        if value <= 0 or value < min_leg_value:
            continue
        expected = entry.to_native(value)
        buys.append(SwapLeg(
            purpose=REBALANCE,
            asset_in=liquid_key,
            asset_out=entry.key,
            amount_in=liquid.to_native(value),
            value=value,
            expected_out=expected,
            min_amount_out=min_out(expected, slippage_bps),
        ))
        funding -= value

    return sells + buys
