from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from settlement.adapters import MockLedger, MockPriceOracle, MockSwapVenue
from settlement.config import SettlementSettings
from settlement.models import AssetEntry
from settlement.nav import NavHistoryBuffer
from settlement.rebalance import RebalanceTrigger
from settlement.redemption_queue import InMemoryRedemptionQueue
from settlement.router import RedemptionRouter
from settlement.service import SettlementService
from settlement.supervisor import CooldownSupervisor, InMemoryGuardStore
from settlement.valuation import ValuationEngine

SHARE = 10 ** 18
STABLE_UNIT = 10 ** 6
ETH_UNIT = 10 ** 18
BTC_UNIT = 10 ** 8

# 4,000,000 total at target weights 40/35/25
BALANCED = {
    "STABLE": 1_600_000 * STABLE_UNIT,
    "ETH": 700 * ETH_UNIT,
    "BTC": 20 * BTC_UNIT,
}

# Same total with only 1,000,000 in the liquid asset
LIQUID_SHORT = {
    "STABLE": 1_000_000 * STABLE_UNIT,
    "ETH": 875 * ETH_UNIT,
    "BTC": 25 * BTC_UNIT,
}


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides) -> SettlementSettings:
    base = dict(
        liquid_asset_key="STABLE",
        reference_decimals=6,
        share_decimals=18,
        oracle_max_staleness_seconds=3600,
        liquid_buffer_bps=0,
        deposit_cooldown_seconds=0,
        redeem_cooldown_seconds=0,
        rebalance_interval_seconds=60,
        drift_threshold_bps=500,
        rebalance_step_bps=5000,
        swap_slippage_bps=150,
        swap_timeout_seconds=5.0,
        swap_settle_seconds=0.0,
        liquidation_rounding_bps=10,
        min_leg_value=Decimal("1"),
        dry_run=False,
        vault_address="vault",
        admin_token="secret",
        nav_history_maxlen=100,
    )
    base.update(overrides)
    return SettlementSettings(**base)


def build_world(balances=None, circulating=4_000_000 * SHARE, clock=None, **setting_overrides):
    clock = clock or FakeClock()
    settings = make_settings(**setting_overrides)
    assets = [
        AssetEntry(key="STABLE", token_ref="0xstable", decimals=6, target_weight_bps=4000),
        AssetEntry(key="ETH", token_ref="0xeth", decimals=18, target_weight_bps=3500),
        AssetEntry(key="BTC", token_ref="0xbtc", decimals=8, target_weight_bps=2500),
    ]
    oracle = MockPriceOracle({"STABLE": "1", "ETH": "2000", "BTC": "50000"})
    ledger = MockLedger(
        assets,
        balances=dict(balances or BALANCED),
        circulating_shares=circulating,
        liquid_asset_key="STABLE",
        price_lookup=oracle.price_of,
    )
    venue = MockSwapVenue(ledger, oracle)
    queue = InMemoryRedemptionQueue(clock=clock)
    supervisor = CooldownSupervisor(
        InMemoryGuardStore(),
        deposit_window_seconds=settings.deposit_cooldown_seconds,
        redeem_window_seconds=settings.redeem_cooldown_seconds,
        clock=clock,
    )
    valuation = ValuationEngine(ledger, oracle, clock=clock)
    router = RedemptionRouter(valuation, queue, supervisor, "STABLE", settings.liquid_buffer_bps)
    nav = NavHistoryBuffer(maxlen=settings.nav_history_maxlen)
    trigger = RebalanceTrigger(
        valuation, queue, ledger, venue,
        settings=settings, nav_buffer=nav, clock=clock, supervisor=supervisor,
    )
    service = SettlementService(
        valuation=valuation,
        router=router,
        queue=queue,
        supervisor=supervisor,
        ledger=ledger,
        trigger=trigger,
        nav_buffer=nav,
        settings=settings,
    )
    return SimpleNamespace(
        clock=clock,
        settings=settings,
        ledger=ledger,
        oracle=oracle,
        venue=venue,
        queue=queue,
        supervisor=supervisor,
        valuation=valuation,
        router=router,
        nav=nav,
        trigger=trigger,
        service=service,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def world(clock):
    w = build_world(clock=clock)
    yield w
    w.trigger._executor.shutdown(wait=True)


@pytest.fixture
def short_world(clock):
    w = build_world(balances=LIQUID_SHORT, clock=clock)
    yield w
    w.trigger._executor.shutdown(wait=True)
