"""
Settlement service: the operations exposed to users and operators.

``build_service`` wires ledger, oracle and swap venue adapters (HTTP or
in-memory mocks) with the queue and guard stores (in-memory or PostgreSQL).
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Callable, List, Optional
import logging

from settlement import config
from settlement.adapters import (
    HttpLedgerAdapter,
    HttpPriceOracle,
    HttpSwapVenue,
    LedgerAdapter,
    MockLedger,
    MockPriceOracle,
    MockSwapVenue,
)
from settlement.config import SettlementSettings
from settlement.errors import InsufficientLiquidity, RedemptionRoutedInstant
from settlement.models import (
    ActionKind,
    AssetEntry,
    Availability,
    BasketSnapshot,
    CooldownState,
    NavPoint,
    RedemptionRequest,
    RouteDecision,
    utc_now,
)
from settlement.nav import NavHistoryBuffer, nav_stats
from settlement.rebalance import CycleReport, RebalanceTrigger
from settlement.redemption_queue import (
    InMemoryRedemptionQueue,
    PostgresRedemptionQueue,
    RedemptionQueue,
)
from settlement.router import RedemptionRouter
from settlement.supervisor import CooldownSupervisor, InMemoryGuardStore, PostgresGuardStore
from settlement.valuation import ValuationEngine

logger = logging.getLogger(__name__)


class SettlementService:

    def __init__(
        self,
        valuation: ValuationEngine,
        router: RedemptionRouter,
        queue: RedemptionQueue,
        supervisor: CooldownSupervisor,
        ledger: LedgerAdapter,
        trigger: Optional[RebalanceTrigger] = None,
        nav_buffer: Optional[NavHistoryBuffer] = None,
        settings: Optional[SettlementSettings] = None,
        persistent: bool = False,
    ):
        self.valuation = valuation
        self.router = router
        self.queue = queue
        self.supervisor = supervisor
        self.ledger = ledger
        self.trigger = trigger
        self.nav_buffer = nav_buffer or NavHistoryBuffer()
        self.settings = settings or SettlementSettings()
        self.persistent = persistent
        self._redeem_lock = Lock()

    # -------------------------
    # Redemptions
    # -------------------------
    def check_availability(self, account: str, shares: int) -> Availability:
        return self.router.check_availability(account, shares)

    def route(self, account: str, shares: int) -> RouteDecision:
        return self.router.route_redemption(account, shares)

    def enroll(self, account: str, shares: int) -> RedemptionRequest:
        """
        Queue a redemption the liquid reserve cannot cover right now.

        ``reference_owed`` is fixed here at the current price per share and is
        what the rebalance cycle later pays out.

        Raises:
            RedemptionRoutedInstant: the reserve covers it; redeem instantly
        """
        with self._redeem_lock:
            decision = self.router.route_redemption(account, shares)
            if decision.instant:
                raise RedemptionRoutedInstant(
                    f"Reserve {decision.liquid_reserve} covers {decision.reference_owed}; redeem instantly"
                )
            request = self.queue.enroll(account, shares, decision.reference_owed)
            self.supervisor.record_action(account, ActionKind.REDEEM)
        logger.info(
            "Queued redemption %d for %s: owed=%s shortfall=%s",
            request.id, account, request.reference_owed, decision.shortfall,
        )
        return request

    def redeem_instant(self, account: str, shares: int) -> Decimal:
        """Burn shares and pay from the liquid reserve; returns the amount paid."""
        with self._redeem_lock:
            decision = self.router.route_redemption(account, shares)
            if not decision.instant:
                raise InsufficientLiquidity(decision.shortfall)
            paid = self.ledger.burn(account, shares)
            self.supervisor.record_action(account, ActionKind.REDEEM)
        logger.info("Instant redemption for %s: %s shares paid %s", account, shares, paid)
        return paid

    def get_request(self, request_id: int) -> RedemptionRequest:
        return self.queue.get(request_id)

    def pending_for_account(self, account: str) -> Optional[RedemptionRequest]:
        return self.queue.get_pending_for_account(account)

    def list_pending(self) -> dict:
        pending = self.queue.list_pending()
        total = sum((r.reference_owed for r in pending), Decimal(0))
        return {
            "count": len(pending),
            "totalOwed": str(total),
            "requests": [r.to_dict() for r in pending],
        }

    def cancel(self, request_id: int) -> RedemptionRequest:
        """Operator cancel; waits for any running cycle so a payout cannot race it."""
        if self.trigger is None:
            return self.queue.cancel(request_id)
        with self.trigger.exclusive():
            return self.queue.cancel(request_id)

    # -------------------------
    # Guards
    # -------------------------
    def authorize_deposit(self, account: str) -> datetime:
        """Deposit-path guard: pause and deposit cooldown, then start the window."""
        self.supervisor.check_pause()
        self.supervisor.check_cooldown(account, ActionKind.DEPOSIT)
        return self.supervisor.record_action(account, ActionKind.DEPOSIT)

    def cooldown(self, account: str) -> CooldownState:
        return self.supervisor.cooldown_state(account)

    def set_paused(self, paused: bool) -> bool:
        self.supervisor.set_paused(paused)
        return self.supervisor.is_paused()

    def is_paused(self) -> bool:
        return self.supervisor.is_paused()

    # -------------------------
    # Basket, NAV and rebalancing
    # -------------------------
    def basket(self) -> BasketSnapshot:
        return self.valuation.snapshot()

    def nav_history(self, limit: Optional[int] = None) -> List[NavPoint]:
        return self.nav_buffer.history(limit)

    def nav_stats(self, limit: Optional[int] = None) -> Optional[dict]:
        return nav_stats(self.nav_buffer.history(limit))

    def trigger_now(self) -> CycleReport:
        if self.trigger is None:
            raise RuntimeError("Rebalance trigger not configured")
        return self.trigger.run_cycle()

    def start(self) -> None:
        if self.trigger is not None:
            self.trigger.start()

    def stop(self) -> None:
        if self.trigger is not None:
            self.trigger.stop()

    def close(self) -> None:
        """Release storage; the PostgreSQL pool is closed when this service opened it."""
        if self.persistent:
            from settlement.db import close_pool

            close_pool()


# -------------------------
# Wiring
# -------------------------
def mock_world(settings: Optional[SettlementSettings] = None):
    """
    In-memory ledger, oracle and venue holding a three-asset basket.

    STABLE 40% / WETH 35% / WBTC 25% target, currently 1,000,000 / 1,750,000 /
    1,200,000 in value with 3,950,000 shares outstanding.
    """
    settings = settings or SettlementSettings()
    liquid = settings.liquid_asset_key
    assets = [
        AssetEntry(key=liquid, token_ref="0xstable", decimals=6, target_weight_bps=4000),
        AssetEntry(key="WETH", token_ref="0xweth", decimals=18, target_weight_bps=3500),
        AssetEntry(key="WBTC", token_ref="0xwbtc", decimals=8, target_weight_bps=2500),
    ]
    oracle = MockPriceOracle({liquid: "1", "WETH": "2500", "WBTC": "60000"})
    ledger = MockLedger(
        assets,
        balances={
            liquid: 1_000_000 * 10 ** 6,
            "WETH": 700 * 10 ** 18,
            "WBTC": 20 * 10 ** 8,
        },
        circulating_shares=3_950_000 * 10 ** settings.share_decimals,
        liquid_asset_key=liquid,
        price_lookup=oracle.price_of,
        reference_decimals=settings.reference_decimals,
    )
    venue = MockSwapVenue(ledger, oracle)
    return ledger, oracle, venue


def build_service(
    settings: Optional[SettlementSettings] = None,
    storage_backend: str = config.STORAGE_BACKEND,
    mock_externals: bool = config.MOCK_EXTERNALS,
    clock: Callable[[], datetime] = utc_now,
) -> SettlementService:
    settings = settings or SettlementSettings()

    if mock_externals:
        ledger, oracle, venue = mock_world(settings)
        logger.info("Using in-memory ledger, oracle and swap venue")
    else:
        ledger = HttpLedgerAdapter(config.LEDGER_URL, timeout=config.HTTP_TIMEOUT_SECONDS)
        oracle = HttpPriceOracle(config.ORACLE_URL, timeout=config.HTTP_TIMEOUT_SECONDS)
        venue = HttpSwapVenue(config.SWAP_VENUE_URL, timeout=settings.swap_timeout_seconds)

    persist = storage_backend == "postgres"
    if persist:
        from settlement.db import init_pool

        init_pool(**config.DB_CONFIG, minconn=config.DB_MIN_CONNECTIONS, maxconn=config.DB_MAX_CONNECTIONS)
        queue: RedemptionQueue = PostgresRedemptionQueue(clock=clock)
        store = PostgresGuardStore()
    else:
        queue = InMemoryRedemptionQueue(clock=clock)
        store = InMemoryGuardStore()
    logger.info("Settlement storage backend: %s", storage_backend)

    supervisor = CooldownSupervisor(
        store,
        deposit_window_seconds=settings.deposit_cooldown_seconds,
        redeem_window_seconds=settings.redeem_cooldown_seconds,
        clock=clock,
    )
    valuation = ValuationEngine(
        ledger,
        oracle,
        reference_decimals=settings.reference_decimals,
        share_decimals=settings.share_decimals,
        max_staleness_seconds=settings.oracle_max_staleness_seconds,
        clock=clock,
    )
    router = RedemptionRouter(
        valuation,
        queue,
        supervisor,
        liquid_asset_key=settings.liquid_asset_key,
        liquid_buffer_bps=settings.liquid_buffer_bps,
    )
    nav_buffer = NavHistoryBuffer(maxlen=settings.nav_history_maxlen, persist=persist)
    if persist:
        nav_buffer.load_persisted()
    trigger = RebalanceTrigger(
        valuation,
        queue,
        ledger,
        venue,
        settings=settings,
        nav_buffer=nav_buffer,
        clock=clock,
        persist_legs=persist,
        supervisor=supervisor,
    )
    return SettlementService(
        valuation=valuation,
        router=router,
        queue=queue,
        supervisor=supervisor,
        ledger=ledger,
        trigger=trigger,
        nav_buffer=nav_buffer,
        settings=settings,
        persistent=persist,
    )
