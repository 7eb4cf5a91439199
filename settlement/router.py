"""Redemption routing: instant payout from the liquid reserve or the queue."""
from __future__ import annotations

from decimal import Decimal, ROUND_DOWN
import logging

from settlement.errors import LedgerError, RedemptionAlreadyPending, ValuationFailed
from settlement.models import (
    BPS,
    ActionKind,
    Availability,
    BasketSnapshot,
    RouteDecision,
    RouteMode,
    quantum,
)
from settlement.redemption_queue import RedemptionQueue
from settlement.supervisor import CooldownSupervisor
from settlement.valuation import ValuationEngine

logger = logging.getLogger(__name__)


def liquid_reserve(
    snapshot: BasketSnapshot,
    liquid_asset_key: str,
    buffer_bps: int = 0,
    committed: Decimal = Decimal(0),
) -> Decimal:
    """
    Reference value immediately spendable on redemptions.

    The liquid asset's value less the safety buffer and less ``committed``
    (liability already owed to queued requests), floored at zero.
    """
    entry = snapshot.asset(liquid_asset_key)
    if entry is None:
        return Decimal(0)
    reserve = (entry.value * (BPS - buffer_bps) / BPS).quantize(
        quantum(snapshot.reference_decimals), rounding=ROUND_DOWN
    )
    return max(reserve - committed, Decimal(0))


class RedemptionRouter:
    """Read-only decision maker; calling it never changes any state."""

    def __init__(
        self,
        valuation: ValuationEngine,
        queue: RedemptionQueue,
        supervisor: CooldownSupervisor,
        liquid_asset_key: str = "STABLE",
        liquid_buffer_bps: int = 0,
    ):
        self.valuation = valuation
        self.queue = queue
        self.supervisor = supervisor
        self.liquid_asset_key = liquid_asset_key
        self.liquid_buffer_bps = liquid_buffer_bps

    def route_redemption(self, account: str, shares_requested: int) -> RouteDecision:
        """
        Decide INSTANT or QUEUED for burning ``shares_requested``.

        Raises:
            Paused, CooldownActive, RedemptionAlreadyPending: guard failures
            ValuationFailed: no trustworthy snapshot or undefined share price
        """
        if shares_requested <= 0:
            raise ValueError("shares_requested must be positive")

        self.supervisor.check_pause()
        self.supervisor.check_cooldown(account, ActionKind.REDEEM)
        existing = self.queue.get_pending_for_account(account)
        if existing is not None:
            raise RedemptionAlreadyPending(account, existing.id)

        snapshot = self.valuation.snapshot()
        if snapshot.price_per_share is None:
            raise ValuationFailed("Price per share undefined: no circulating shares")
        if shares_requested > snapshot.circulating_shares:
            raise ValueError(
                f"Cannot redeem {shares_requested} shares; only {snapshot.circulating_shares} circulate"
            )
        owed = snapshot.value_of_shares(shares_requested)

        reserve = liquid_reserve(
            snapshot,
            self.liquid_asset_key,
            self.liquid_buffer_bps,
            committed=self.queue.total_pending_owed(),
        )

        if owed <= reserve:
            decision = RouteDecision(mode=RouteMode.INSTANT, reference_owed=owed, liquid_reserve=reserve)
        else:
            decision = RouteDecision(
                mode=RouteMode.QUEUED,
                reference_owed=owed,
                liquid_reserve=reserve,
                shortfall=owed - reserve,
            )
        logger.debug(
            "Routed %s shares for %s: %s owed=%s reserve=%s",
            shares_requested, account, decision.mode.value, owed, reserve,
        )
        return decision

    def check_availability(self, account: str, shares_requested: int) -> Availability:
        """
        Client-facing availability check.

        When valuation or the ledger cannot answer, the result falls back to
        an instant attempt (``degraded=True``) instead of blocking the user.
        """
        try:
            decision = self.route_redemption(account, shares_requested)
        except (ValuationFailed, LedgerError) as exc:
            logger.warning(
                "Availability check degraded for %s (%s shares): %s; defaulting to instant attempt",
                account, shares_requested, exc,
            )
            return Availability(can_redeem_instantly=True, shortfall=None, degraded=True)

        return Availability(
            can_redeem_instantly=decision.instant,
            shortfall=decision.shortfall,
            reference_owed=decision.reference_owed,
            liquid_reserve=decision.liquid_reserve,
        )
