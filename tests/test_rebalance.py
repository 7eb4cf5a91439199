from decimal import Decimal
import time

from conftest import LIQUID_SHORT, SHARE, STABLE_UNIT, build_world
from settlement.models import RedemptionStatus
from settlement.rebalance import DRY_RUN, EXECUTED, FAILED, TIMED_OUT


def _quiet_world(**overrides):
    """Balanced basket with drift rebalancing effectively off."""
    overrides.setdefault("drift_threshold_bps", 10000)
    return build_world(**overrides)


def test_queued_redemption_paid_after_liquidation(short_world):
    request = short_world.service.enroll("alice", 1_200_000 * SHARE)
    assert request.reference_owed == Decimal("1200000")

    report = short_world.trigger.run_cycle()

    assert report.action == "liquidate"
    assert [r.status for r in report.legs] == [EXECUTED, EXECUTED]
    assert report.fulfilled == [request.id]
    assert short_world.ledger.transfers == [("STABLE", 1_200_000 * STABLE_UNIT, "alice")]
    assert short_world.queue.get(request.id).status is RedemptionStatus.FULFILLED

    # liquid asset left at (about) its target weight after the payout
    after = short_world.valuation.snapshot()
    assert abs(after.asset("STABLE").actual_weight_bps - 4000) <= 10


def test_payout_is_enrollment_time_amount(short_world):
    request = short_world.service.enroll("alice", 1_200_000 * SHARE)
    short_world.oracle.set_price("ETH", "2400")

    short_world.trigger.run_cycle()

    assert short_world.queue.get(request.id).is_pending is False
    assert short_world.ledger.transfers == [("STABLE", 1_200_000 * STABLE_UNIT, "alice")]


def test_fulfills_in_created_order(clock):
    w = _quiet_world(clock=clock)
    for account, owed in (("bob", "300000"), ("alice", "200000"), ("carol", "100000")):
        w.queue.enroll(account, 1, Decimal(owed))
        clock.advance(10)

    report = w.trigger.run_cycle()

    assert report.legs == []
    assert [to for _, _, to in w.ledger.transfers] == ["bob", "alice", "carol"]
    assert report.fulfilled == [1, 2, 3]
    assert w.trigger.stats.redemptions_fulfilled == 3


def test_head_of_line_blocks_later_requests(clock):
    w = _quiet_world(clock=clock)
    w.venue.failing_assets = {"ETH", "BTC"}
    w.queue.enroll("bob", 1, Decimal("2000000"))
    clock.advance(1)
    w.queue.enroll("alice", 1, Decimal("100"))

    report = w.trigger.run_cycle()

    assert report.action == "liquidate"
    assert all(r.status == FAILED for r in report.legs)
    assert report.fulfilled == []
    assert w.ledger.transfers == []
    assert w.trigger.stats.legs_failed == len(report.legs)


def test_failed_leg_does_not_stop_other_legs(short_world):
    short_world.venue.failing_assets = {"ETH"}
    request = short_world.service.enroll("alice", 1_200_000 * SHARE)

    report = short_world.trigger.run_cycle()

    statuses = {r.leg.asset_in: r.status for r in report.legs}
    assert statuses == {"ETH": FAILED, "BTC": EXECUTED}
    # BTC proceeds alone lift the reserve to 1,410,660
    assert report.fulfilled == [request.id]
    assert short_world.trigger.stats.legs_executed == 1
    assert short_world.trigger.stats.legs_failed == 1


def test_no_second_transfer_for_fulfilled_request(short_world):
    short_world.service.enroll("alice", 1_200_000 * SHARE)

    short_world.trigger.run_cycle()
    short_world.clock.advance(60)
    second = short_world.trigger.run_cycle()

    assert second.fulfilled == []
    assert len(short_world.ledger.transfers) == 1


def test_overlapping_cycle_is_skipped(world):
    with world.trigger.exclusive():
        report = world.trigger.run_cycle()

    assert report.skipped is True
    assert report.reason == "cycle_in_progress"
    assert world.trigger.stats.cycles_skipped == 1
    assert world.trigger.stats.cycles_run == 0


def test_valuation_failure_aborts_without_mutation(short_world):
    short_world.service.enroll("alice", 1_200_000 * SHARE)
    short_world.oracle.outage = True

    report = short_world.trigger.run_cycle()

    assert report.reason == "valuation_failed"
    assert report.legs == []
    assert short_world.venue.calls == []
    assert short_world.ledger.transfers == []
    assert short_world.trigger.stats.last_error


def test_drift_rebalance_runs_without_liability():
    w = build_world(balances=LIQUID_SHORT)
    report = w.trigger.run_cycle()

    assert report.action == "rebalance"
    assert report.max_drift_bps == 1500
    assert [r.status for r in report.legs] == [EXECUTED, EXECUTED]
    assert w.valuation.snapshot().max_drift_bps < 1500
    w.trigger._executor.shutdown(wait=True)


def test_dry_run_plans_without_acting():
    w = build_world(balances=LIQUID_SHORT, dry_run=True)
    request = w.service.enroll("alice", 1_200_000 * SHARE)

    report = w.trigger.run_cycle()

    assert report.legs and all(r.status == DRY_RUN for r in report.legs)
    assert w.venue.calls == []
    assert w.ledger.transfers == []
    assert w.queue.get(request.id).is_pending


def test_timed_out_leg_is_excluded_until_resolved(clock):
    w = build_world(balances=LIQUID_SHORT, clock=clock, swap_timeout_seconds=0.05, swap_settle_seconds=0.0)
    w.venue.delay_seconds = 1.0
    w.service.enroll("alice", 1_200_000 * SHARE)

    report = w.trigger.run_cycle()
    assert {r.status for r in report.legs} == {TIMED_OUT}
    assert set(w.trigger._inflight) == {"ETH", "BTC", "STABLE"}

    clock.advance(60)
    blocked = w.trigger.run_cycle()
    assert blocked.legs == []

    w.trigger._await_inflight(5.0)
    assert w.trigger._inflight == {}
    w.trigger._executor.shutdown(wait=True)


def test_cycle_records_nav_point(world):
    world.trigger.run_cycle()
    world.clock.advance(60)
    world.trigger.run_cycle()

    assert world.nav.size() == 2
    assert world.nav.latest().price_per_share == Decimal("1.000000")
    assert len(world.trigger.history) == 2


def test_paused_vault_skips_cycle(short_world):
    request = short_world.service.enroll("alice", 1_200_000 * SHARE)
    short_world.service.set_paused(True)

    report = short_world.trigger.run_cycle()

    assert report.skipped is True
    assert report.reason == "paused"
    assert short_world.venue.calls == []
    assert short_world.ledger.transfers == []
    assert short_world.queue.get(request.id).is_pending
    assert short_world.trigger.stats.cycles_skipped == 1
    assert short_world.trigger.stats.cycles_run == 0

    short_world.service.set_paused(False)
    short_world.clock.advance(60)
    resumed = short_world.trigger.run_cycle()
    assert resumed.fulfilled == [request.id]


def _wait_for_cycles(trigger, count, timeout=5.0):
    deadline = time.monotonic() + timeout
    while trigger.stats.cycles_run < count and time.monotonic() < deadline:
        time.sleep(0.01)
    assert trigger.stats.cycles_run >= count


def test_restarted_trigger_still_executes_legs():
    w = _quiet_world(balances=LIQUID_SHORT)
    w.trigger.start()
    _wait_for_cycles(w.trigger, 1)
    w.trigger.stop()

    w.trigger.start()
    _wait_for_cycles(w.trigger, 2)
    try:
        w.service.enroll("alice", 1_200_000 * SHARE)
        report = w.trigger.run_cycle()
    finally:
        w.trigger.stop()

    assert [r.status for r in report.legs] == [EXECUTED, EXECUTED]
    assert report.fulfilled == [1]
