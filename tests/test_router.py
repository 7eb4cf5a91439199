from decimal import Decimal

import pytest

from conftest import SHARE, build_world
from settlement.errors import CooldownActive, Paused, RedemptionAlreadyPending, ValuationFailed
from settlement.models import ActionKind, RouteMode
from settlement.router import liquid_reserve


def test_small_redemption_is_instant(world):
    decision = world.router.route_redemption("alice", 100_000 * SHARE)
    assert decision.mode is RouteMode.INSTANT
    assert decision.reference_owed == Decimal("100000")
    assert decision.liquid_reserve == Decimal("1600000")
    assert decision.shortfall is None


def test_large_redemption_queued_with_shortfall(short_world):
    decision = short_world.router.route_redemption("alice", 1_200_000 * SHARE)
    assert decision.mode is RouteMode.QUEUED
    assert decision.reference_owed == Decimal("1200000")
    assert decision.liquid_reserve == Decimal("1000000")
    assert decision.shortfall == Decimal("200000")


def test_routing_is_idempotent_and_side_effect_free(short_world):
    first = short_world.router.route_redemption("alice", 1_200_000 * SHARE)
    second = short_world.router.route_redemption("alice", 1_200_000 * SHARE)

    assert first == second
    assert short_world.queue.list_pending() == []
    assert short_world.supervisor.cooldown_state("alice").next_redeem_allowed_at is None
    assert short_world.ledger.transfers == []
    assert short_world.ledger.burns == []


def test_pending_liability_reduces_reserve(world):
    world.queue.enroll("bob", 700_000 * SHARE, Decimal("700000"))

    decision = world.router.route_redemption("alice", 1_000_000 * SHARE)
    assert decision.mode is RouteMode.QUEUED
    assert decision.liquid_reserve == Decimal("900000")
    assert decision.shortfall == Decimal("100000")


def test_liquid_buffer_is_held_back():
    w = build_world(liquid_buffer_bps=1000)
    snap = w.valuation.snapshot()
    assert liquid_reserve(snap, "STABLE", 1000) == Decimal("1440000")
    assert w.router.route_redemption("alice", 1_500_000 * SHARE).shortfall == Decimal("60000")


def test_guards_checked_in_order(world):
    world.supervisor.set_paused(True)
    with pytest.raises(Paused):
        world.router.route_redemption("alice", SHARE)
    world.supervisor.set_paused(False)

    world.supervisor.windows[ActionKind.REDEEM] = 60
    world.supervisor.record_action("alice", ActionKind.REDEEM)
    with pytest.raises(CooldownActive):
        world.router.route_redemption("alice", SHARE)

    world.queue.enroll("bob", SHARE, Decimal(1))
    with pytest.raises(RedemptionAlreadyPending):
        world.router.route_redemption("bob", SHARE)


def test_invalid_share_amounts(world):
    with pytest.raises(ValueError):
        world.router.route_redemption("alice", 0)
    with pytest.raises(ValueError):
        world.router.route_redemption("alice", 5_000_000 * SHARE)


def test_genesis_cannot_be_routed():
    w = build_world(circulating=0)
    with pytest.raises(ValuationFailed):
        w.router.route_redemption("alice", SHARE)


def test_availability_reports_shortfall(short_world):
    availability = short_world.router.check_availability("alice", 1_200_000 * SHARE)
    assert availability.can_redeem_instantly is False
    assert availability.shortfall == Decimal("200000")
    assert availability.degraded is False
    assert availability.to_dict()["shortfall"] == "200000.000000"


def test_availability_degrades_to_instant_when_oracle_down(world):
    world.oracle.outage = True
    availability = world.router.check_availability("alice", 1_000 * SHARE)
    assert availability.can_redeem_instantly is True
    assert availability.shortfall is None
    assert availability.degraded is True
