"""
Basket valuation: ledger balances and oracle prices to a BasketSnapshot.

All weight arithmetic is integer basis points and all value arithmetic is
``Decimal`` fixed point at the reference currency precision. A snapshot is
either complete or not produced at all.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional
from datetime import datetime
import logging

from settlement.adapters.ledger import LedgerAdapter
from settlement.adapters.oracle import PriceOracle
from settlement.errors import OracleStale, SettlementError, ValuationFailed
from settlement.models import BPS, AssetEntry, AssetValuation, BasketSnapshot, quantum, utc_now

logger = logging.getLogger(__name__)


def weight_bps(value: Decimal, total: Decimal) -> int:
    """Share of ``total`` in basis points, rounded half up; 0 for an empty basket."""
    if total <= 0:
        return 0
    return int((value * BPS / total).to_integral_value(rounding=ROUND_HALF_UP))


def asset_value(balance: int, price: Decimal, decimals: int, reference_decimals: int) -> Decimal:
    """balance * price / 10**decimals, truncated to the reference precision."""
    value = Decimal(balance).scaleb(-decimals) * price
    return value.quantize(quantum(reference_decimals), rounding=ROUND_DOWN)


class ValuationEngine:
    """Produces immutable basket snapshots from the ledger and the oracle."""

    def __init__(
        self,
        ledger: LedgerAdapter,
        oracle: PriceOracle,
        reference_decimals: int = 6,
        share_decimals: int = 18,
        max_staleness_seconds: float = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.reference_decimals = reference_decimals
        self.share_decimals = share_decimals
        self.max_staleness_seconds = max_staleness_seconds
        self.clock = clock

    def snapshot(self) -> BasketSnapshot:
        """
        Take a complete basket snapshot.

        Raises:
            OracleStale: a price is older than the configured maximum
            ValuationFailed: any ledger or oracle read failed
        """
        try:
            config = self.ledger.get_asset_config()
            balances = self.ledger.get_asset_balances()
            circulating = int(self.ledger.get_circulating_shares())
            prices = self._read_prices([a for a in config if a.active])
        except ValuationFailed:
            raise
        except (SettlementError, RuntimeError, KeyError, ValueError, ArithmeticError, OSError) as exc:
            logger.warning("Snapshot failed: %s", exc)
            raise ValuationFailed(f"Snapshot failed: {exc}") from exc

        return self._build(config, balances, circulating, prices)

    def _read_prices(self, active: List[AssetEntry]) -> Dict[str, Decimal]:
        prices: Dict[str, Decimal] = {}
        for entry in active:
            price, staleness = self.oracle.get_price(entry.key)
            if staleness > self.max_staleness_seconds:
                logger.warning("Stale price for %s: %.0fs", entry.key, staleness)
                raise OracleStale(entry.key, staleness, self.max_staleness_seconds)
            if price < 0:
                raise ValuationFailed(f"Negative price for {entry.key}: {price}")
            prices[entry.key] = Decimal(price)
        return prices

    def _build(
        self,
        config: List[AssetEntry],
        balances: Dict[str, int],
        circulating: int,
        prices: Dict[str, Decimal],
    ) -> BasketSnapshot:
        active = [a for a in config if a.active]
        values = {
            a.key: asset_value(int(balances.get(a.key, 0)), prices[a.key], a.decimals, self.reference_decimals)
            for a in active
        }
        total = sum(values.values(), Decimal(0))

        rows = []
        for entry in active:
            actual = weight_bps(values[entry.key], total)
            rows.append(AssetValuation(
                key=entry.key,
                token_ref=entry.token_ref,
                decimals=entry.decimals,
                balance=int(balances.get(entry.key, 0)),
                price=prices[entry.key],
                value=values[entry.key],
                target_weight_bps=entry.target_weight_bps,
                actual_weight_bps=actual,
                drift_bps=abs(actual - entry.target_weight_bps),
            ))
            logger.debug(
                "Valued %s value=%s actual=%dbps target=%dbps",
                entry.key, values[entry.key], actual, entry.target_weight_bps,
            )

        return BasketSnapshot(
            assets=tuple(rows),
            total_value=total,
            price_per_share=self.price_per_share(total, circulating),
            circulating_shares=circulating,
            taken_at=self.clock(),
            reference_decimals=self.reference_decimals,
            share_decimals=self.share_decimals,
        )

    def price_per_share(self, total: Decimal, circulating: int) -> Optional[Decimal]:
        """Reference value of one whole share; None while no shares circulate."""
        if circulating <= 0:
            return None
        pps = total * Decimal(10) ** self.share_decimals / Decimal(circulating)
        return pps.quantize(quantum(self.reference_decimals), rounding=ROUND_DOWN)
