"""
Periodic rebalance cycle: source liquidity, restore weights, pay the queue.

Only one cycle runs at a time. A swap leg that fails or times out is skipped
for the cycle; other legs and the fulfillment pass still run. Legs are never
cancelled once submitted: a timed-out leg keeps running, the cycle waits a
bounded settle period for it, and its assets are left out of later plans
until it resolves.
"""
from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional
import logging

from settlement.adapters.ledger import LedgerAdapter
from settlement.adapters.swap import SwapVenue
from settlement.config import SettlementSettings
from settlement.errors import (
    InvalidTransition,
    LedgerError,
    NotFound,
    SlippageExceeded,
    ValuationFailed,
)
from settlement.liquidation import SwapLeg, plan_drift_rebalance, plan_liquidation
from settlement.models import BasketSnapshot, NavPoint, RedemptionRequest, sort_fifo, utc_now
from settlement.nav import NavHistoryBuffer
from settlement.redemption_queue import RedemptionQueue
from settlement.router import liquid_reserve
from settlement.supervisor import CooldownSupervisor
from settlement.valuation import ValuationEngine

logger = logging.getLogger(__name__)

EXECUTED = "executed"
FAILED = "failed"
SLIPPAGE = "slippage_exceeded"
TIMED_OUT = "timed_out"
DRY_RUN = "dry_run"


def _leg_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=4, thread_name_prefix="swap-leg")


@dataclass
class LegResult:
    leg: SwapLeg
    status: str
    amount_out: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = self.leg.to_dict()
        data.update({
            "status": self.status,
            "amountOut": str(self.amount_out) if self.amount_out is not None else None,
            "error": self.error,
        })
        return data


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    reason: Optional[str] = None
    action: str = "none"
    max_drift_bps: int = 0
    queued_liability: Decimal = Decimal(0)
    legs: List[LegResult] = field(default_factory=list)
    fulfilled: List[int] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "reason": self.reason,
            "action": self.action,
            "maxDriftBps": self.max_drift_bps,
            "queuedLiability": str(self.queued_liability),
            "legs": [leg.to_dict() for leg in self.legs],
            "fulfilled": list(self.fulfilled),
            "error": self.error,
        }


@dataclass
class TriggerStats:
    is_running: bool = False
    started_at: Optional[datetime] = None
    cycles_run: int = 0
    cycles_skipped: int = 0
    legs_executed: int = 0
    legs_failed: int = 0
    redemptions_fulfilled: int = 0
    fulfillments_failed: int = 0
    last_error: Optional[str] = None
    last_cycle_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "isRunning": self.is_running,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "cyclesRun": self.cycles_run,
            "cyclesSkipped": self.cycles_skipped,
            "legsExecuted": self.legs_executed,
            "legsFailed": self.legs_failed,
            "redemptionsFulfilled": self.redemptions_fulfilled,
            "fulfillmentsFailed": self.fulfillments_failed,
            "lastError": self.last_error,
            "lastCycleAt": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class RebalanceTrigger:
    """Runs rebalance cycles on a fixed interval in a background thread."""

    def __init__(
        self,
        valuation: ValuationEngine,
        queue: RedemptionQueue,
        ledger: LedgerAdapter,
        swap_venue: SwapVenue,
        settings: Optional[SettlementSettings] = None,
        nav_buffer: Optional[NavHistoryBuffer] = None,
        clock: Callable[[], datetime] = utc_now,
        persist_legs: bool = False,
        history_size: int = 100,
        supervisor: Optional[CooldownSupervisor] = None,
    ):
        self.valuation = valuation
        self.queue = queue
        self.ledger = ledger
        self.swap_venue = swap_venue
        self.settings = settings or SettlementSettings()
        self.nav_buffer = nav_buffer
        self.clock = clock
        self.persist_legs = persist_legs
        self.supervisor = supervisor

        self.stats = TriggerStats()
        self.history: deque[CycleReport] = deque(maxlen=history_size)

        self._cycle_lock = Lock()
        self._stats_lock = Lock()
        self._executor = _leg_executor()
        self._executor_closed = False
        self._inflight: Dict[str, Future] = {}
        self._stop = Event()
        self._thread: Optional[Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background loop (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        if self._executor_closed:
            self._executor = _leg_executor()
            self._executor_closed = False
        self._thread = Thread(target=self._loop, name="rebalance-trigger", daemon=True)
        with self._stats_lock:
            self.stats.is_running = True
            self.stats.started_at = self.clock()
        self._thread.start()
        logger.info(
            "Rebalance trigger started (interval=%.1fs, drift_threshold=%dbps, dry_run=%s)",
            self.settings.rebalance_interval_seconds,
            self.settings.drift_threshold_bps,
            self.settings.dry_run,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._executor.shutdown(wait=False)
        self._executor_closed = True
        with self._stats_lock:
            self.stats.is_running = False
        logger.info("Rebalance trigger stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as exc:  # pragma: no cover - resilience path
                logger.error("Rebalance cycle crashed: %s", exc, exc_info=True)
                self._record_error(str(exc))
            self._stop.wait(self.settings.rebalance_interval_seconds)

    @contextmanager
    def exclusive(self, timeout: float = 30.0):
        """Hold the cycle lock, e.g. while an operator cancels a request."""
        if not self._cycle_lock.acquire(timeout=timeout):
            raise TimeoutError("Rebalance cycle still running")
        try:
            yield
        finally:
            self._cycle_lock.release()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def run_cycle(self) -> CycleReport:
        """Run one cycle now; returns a skipped report if one is in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Rebalance cycle already running, skipping")
            with self._stats_lock:
                self.stats.cycles_skipped += 1
            now = self.clock()
            return CycleReport(started_at=now, finished_at=now, skipped=True, reason="cycle_in_progress")
        try:
            return self._run_locked()
        finally:
            self._cycle_lock.release()

    def _run_locked(self) -> CycleReport:
        report = CycleReport(started_at=self.clock())
        if self._paused():
            logger.info("Vault paused, rebalance cycle skipped")
            report.skipped = True
            report.reason = "paused"
            report.finished_at = self.clock()
            with self._stats_lock:
                self.stats.cycles_skipped += 1
            self.history.append(report)
            return report
        self._reap_inflight()

        try:
            snapshot = self.valuation.snapshot()
        except ValuationFailed as exc:
            logger.warning("Rebalance cycle aborted, valuation unavailable: %s", exc)
            report.error = str(exc)
            report.reason = "valuation_failed"
            return self._finish(report)

        if self.nav_buffer is not None:
            self.nav_buffer.append(NavPoint.from_snapshot(snapshot))

        pending = self.queue.list_pending()
        liability = sum((r.reference_owed for r in pending), Decimal(0))
        report.max_drift_bps = snapshot.max_drift_bps
        report.queued_liability = liability

        legs = self._plan(snapshot, liability, report)
        for leg in legs:
            report.legs.append(self._execute_leg(leg))

        if any(r.status == TIMED_OUT for r in report.legs):
            self._await_inflight(self.settings.swap_settle_seconds)

        pending = self.queue.list_pending()
        if pending and self._paused():
            logger.warning("Vault paused mid-cycle; %d pending redemption(s) left unpaid", len(pending))
            report.reason = "paused"
            return self._finish(report)
        if pending:
            try:
                settled = self.valuation.snapshot()
            except ValuationFailed as exc:
                logger.warning("Skipping fulfillment, re-snapshot failed: %s", exc)
                report.error = str(exc)
                return self._finish(report)
            report.fulfilled = self._fulfill(settled, pending)

        return self._finish(report)

    def _paused(self) -> bool:
        return self.supervisor is not None and self.supervisor.is_paused()

    def _plan(self, snapshot: BasketSnapshot, liability: Decimal, report: CycleReport) -> List[SwapLeg]:
        s = self.settings
        excluded = set(self._inflight)
        if excluded:
            logger.info("Assets with unresolved swap legs excluded from planning: %s", sorted(excluded))

        if liability > 0:
            reserve = liquid_reserve(snapshot, s.liquid_asset_key, s.liquid_buffer_bps)
            plan = plan_liquidation(
                snapshot,
                s.liquid_asset_key,
                liability=liability,
                reserve=reserve,
                slippage_bps=s.swap_slippage_bps,
                rounding_bps=s.liquidation_rounding_bps,
                min_leg_value=s.min_leg_value,
                excluded=excluded,
            )
            if plan is None:
                return []
            report.action = "liquidate"
            logger.info(
                "Liquidation planned: liability=%s reserve=%s raise=%s legs=%d",
                liability, reserve, plan.target_raise, len(plan.legs),
            )
            return plan.legs

        if snapshot.max_drift_bps > s.drift_threshold_bps:
            legs = plan_drift_rebalance(
                snapshot,
                s.liquid_asset_key,
                step_bps=s.rebalance_step_bps,
                slippage_bps=s.swap_slippage_bps,
                min_leg_value=s.min_leg_value,
                excluded=excluded,
            )
            report.action = "rebalance"
            logger.info(
                "Drift rebalance planned: max_drift=%dbps threshold=%dbps legs=%d",
                snapshot.max_drift_bps, s.drift_threshold_bps, len(legs),
            )
            return legs

        return []

    def _execute_leg(self, leg: SwapLeg) -> LegResult:
        if self.settings.dry_run:
            logger.info(
                "DRY RUN - would swap %s %s -> %s (min out %s)",
                leg.amount_in, leg.asset_in, leg.asset_out, leg.min_amount_out,
            )
            return LegResult(leg=leg, status=DRY_RUN)

        future = self._executor.submit(
            self.swap_venue.swap,
            leg.asset_in,
            leg.asset_out,
            leg.amount_in,
            leg.min_amount_out,
            self.settings.vault_address,
        )
        try:
            amount_out = future.result(timeout=self.settings.swap_timeout_seconds)
            result = LegResult(leg=leg, status=EXECUTED, amount_out=int(amount_out))
            logger.info(
                "Swap leg executed: %s %s -> %s %s",
                leg.amount_in, leg.asset_in, amount_out, leg.asset_out,
            )
        except FuturesTimeout:
            self._inflight[leg.asset_in] = future
            self._inflight[leg.asset_out] = future
            result = LegResult(leg=leg, status=TIMED_OUT, error="swap timed out")
            logger.warning(
                "Swap leg %s->%s timed out after %.1fs; skipped this cycle",
                leg.asset_in, leg.asset_out, self.settings.swap_timeout_seconds,
            )
        except SlippageExceeded as exc:
            result = LegResult(leg=leg, status=SLIPPAGE, error=str(exc))
            logger.warning("Swap leg %s->%s slippage exceeded: %s", leg.asset_in, leg.asset_out, exc)
        except Exception as exc:
            # a leg failure stays inside its leg
            result = LegResult(leg=leg, status=FAILED, error=str(exc))
            logger.warning("Swap leg %s->%s failed: %s", leg.asset_in, leg.asset_out, exc, exc_info=True)

        with self._stats_lock:
            if result.status == EXECUTED:
                self.stats.legs_executed += 1
            else:
                self.stats.legs_failed += 1
                self.stats.last_error = result.error

        if self.persist_legs:
            self._persist_leg(result)
        return result

    def _persist_leg(self, result: LegResult) -> None:
        from settlement.db.queries import write_rebalance_leg

        write_rebalance_leg({
            'executed_at': self.clock(),
            'purpose': result.leg.purpose,
            'asset_in': result.leg.asset_in,
            'asset_out': result.leg.asset_out,
            'amount_in': result.leg.amount_in,
            'min_amount_out': result.leg.min_amount_out,
            'amount_out': result.amount_out,
            'status': result.status,
            'error': result.error,
        })

    def _await_inflight(self, timeout: float) -> None:
        futures = list(set(self._inflight.values()))
        if not futures:
            return
        logger.info("Waiting up to %.1fs for %d in-flight swap leg(s)", timeout, len(futures))
        wait(futures, timeout=timeout)
        self._reap_inflight()

    def _reap_inflight(self) -> None:
        for key, future in list(self._inflight.items()):
            if not future.done():
                continue
            del self._inflight[key]
            exc = future.exception()
            if exc is not None:
                logger.warning("Late swap leg on %s resolved with error: %s", key, exc)
            else:
                logger.info("Late swap leg on %s resolved: %s out", key, future.result())

    def _fulfill(self, snapshot: BasketSnapshot, pending: List[RedemptionRequest]) -> List[int]:
        """Pay pending requests oldest first while the reserve covers the head."""
        s = self.settings
        liquid = snapshot.asset(s.liquid_asset_key)
        if liquid is None:
            logger.error("Liquid asset %s missing from snapshot; no fulfillment", s.liquid_asset_key)
            return []

        available = liquid_reserve(snapshot, s.liquid_asset_key, s.liquid_buffer_bps)
        fulfilled: List[int] = []

        for request in sort_fifo(pending):
            if request.reference_owed > available:
                logger.info(
                    "Insufficient reserve for redemption %d: need %s, have %s",
                    request.id, request.reference_owed, available,
                )
                break

            if s.dry_run:
                logger.info("DRY RUN - would fulfill redemption %d (%s)", request.id, request.reference_owed)
                available -= request.reference_owed
                continue

            try:
                current = self.queue.get(request.id)
            except NotFound:
                logger.error("Pending redemption %d vanished from the queue", request.id)
                continue
            if not current.is_pending:
                continue

            try:
                self.ledger.transfer_out(
                    s.liquid_asset_key, liquid.to_native(current.reference_owed), current.account
                )
            except LedgerError as exc:
                logger.error("Payout for redemption %d failed: %s", current.id, exc)
                self._record_failed_fulfillment(str(exc))
                break

            try:
                self.queue.mark_fulfilled(current.id)
            except InvalidTransition as exc:
                logger.critical("Redemption %d paid but not markable: %s", current.id, exc)
                self._record_failed_fulfillment(str(exc))
                continue

            available -= current.reference_owed
            fulfilled.append(current.id)

        with self._stats_lock:
            self.stats.redemptions_fulfilled += len(fulfilled)
        if fulfilled:
            logger.info("Fulfilled %d redemption(s): %s", len(fulfilled), fulfilled)
        return fulfilled

    def _record_failed_fulfillment(self, message: str) -> None:
        with self._stats_lock:
            self.stats.fulfillments_failed += 1
            self.stats.last_error = message

    def _record_error(self, message: str) -> None:
        with self._stats_lock:
            self.stats.last_error = message

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at = self.clock()
        with self._stats_lock:
            self.stats.cycles_run += 1
            self.stats.last_cycle_at = report.finished_at
            if report.error:
                self.stats.last_error = report.error
        self.history.append(report)
        logger.info(
            "Rebalance cycle done: action=%s drift=%dbps liability=%s legs=%d fulfilled=%d",
            report.action, report.max_drift_bps, report.queued_liability,
            len(report.legs), len(report.fulfilled),
        )
        return report

    def snapshot_stats(self) -> dict:
        with self._stats_lock:
            data = self.stats.to_dict()
        data["pendingRedemptions"] = len(self.queue.list_pending())
        data["inflightLegs"] = len(set(self._inflight.values()))
        return data
