"""
Durable ordered store of queued redemption requests.

Requests are never deleted; they only move Pending -> Fulfilled or
Pending -> Cancelled. Each account holds at most one Pending request, and
the check-then-write in ``enroll`` is atomic.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, List, Optional
import logging

from settlement.errors import InvalidTransition, NotFound, RedemptionAlreadyPending
from settlement.models import RedemptionRequest, RedemptionStatus, sort_fifo, utc_now

logger = logging.getLogger(__name__)


class RedemptionQueue(ABC):

    @abstractmethod
    def enroll(self, account: str, shares_requested: int, reference_owed: Decimal) -> RedemptionRequest:
        """Create a Pending request; RedemptionAlreadyPending if one exists."""

    @abstractmethod
    def get(self, request_id: int) -> RedemptionRequest:
        """Return the request or raise NotFound."""

    @abstractmethod
    def get_pending_for_account(self, account: str) -> Optional[RedemptionRequest]: ...

    @abstractmethod
    def list_pending(self) -> List[RedemptionRequest]:
        """Pending requests, oldest ``created_at`` first."""

    @abstractmethod
    def mark_fulfilled(self, request_id: int) -> RedemptionRequest: ...

    @abstractmethod
    def cancel(self, request_id: int) -> RedemptionRequest: ...

    def total_pending_owed(self) -> Decimal:
        return sum((r.reference_owed for r in self.list_pending()), Decimal(0))


def _check_enrollment(account: str, shares_requested: int, reference_owed: Decimal) -> None:
    if not account:
        raise ValueError("account is required")
    if shares_requested <= 0:
        raise ValueError("shares_requested must be positive")
    if reference_owed < 0:
        raise ValueError("reference_owed must be non-negative")


class InMemoryRedemptionQueue(RedemptionQueue):
    """Process-local queue; one lock serializes every write."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._requests: Dict[int, RedemptionRequest] = {}
        self._pending_by_account: Dict[str, int] = {}
        self._next_id = 1
        self._lock = Lock()

    def enroll(self, account: str, shares_requested: int, reference_owed: Decimal) -> RedemptionRequest:
        _check_enrollment(account, shares_requested, reference_owed)
        with self._lock:
            existing = self._pending_by_account.get(account)
            if existing is not None:
                raise RedemptionAlreadyPending(account, existing)
            request = RedemptionRequest(
                id=self._next_id,
                account=account,
                shares_requested=int(shares_requested),
                reference_owed=reference_owed,
                created_at=self.clock(),
            )
            self._next_id += 1
            self._requests[request.id] = request
            self._pending_by_account[account] = request.id
        logger.info(
            "Enrolled redemption %d for %s: %s shares, owed %s",
            request.id, account, shares_requested, reference_owed,
        )
        return request

    def get(self, request_id: int) -> RedemptionRequest:
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            raise NotFound(f"Redemption request {request_id} not found")
        return request

    def get_pending_for_account(self, account: str) -> Optional[RedemptionRequest]:
        with self._lock:
            request_id = self._pending_by_account.get(account)
            return self._requests[request_id] if request_id is not None else None

    def list_pending(self) -> List[RedemptionRequest]:
        with self._lock:
            pending = [self._requests[i] for i in self._pending_by_account.values()]
        return sort_fifo(pending)

    def list_all(self) -> List[RedemptionRequest]:
        with self._lock:
            return sort_fifo(list(self._requests.values()))

    def _transition(self, request_id: int, target: RedemptionStatus) -> RedemptionRequest:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise NotFound(f"Redemption request {request_id} not found")
            if not current.is_pending:
                logger.error(
                    "Invalid transition for redemption %d: %s -> %s",
                    request_id, current.status.value, target.value,
                )
                raise InvalidTransition(request_id, current.status.value, target.value)
            now = self.clock()
            if target is RedemptionStatus.FULFILLED:
                updated = replace(current, status=target, fulfilled_at=now)
            else:
                updated = replace(current, status=target, cancelled_at=now)
            self._requests[request_id] = updated
            del self._pending_by_account[current.account]
        return updated

    def mark_fulfilled(self, request_id: int) -> RedemptionRequest:
        updated = self._transition(request_id, RedemptionStatus.FULFILLED)
        logger.info("Redemption %d fulfilled for %s", request_id, updated.account)
        return updated

    def cancel(self, request_id: int) -> RedemptionRequest:
        updated = self._transition(request_id, RedemptionStatus.CANCELLED)
        logger.info("Redemption %d cancelled for %s", request_id, updated.account)
        return updated


def request_from_row(row: dict) -> RedemptionRequest:
    return RedemptionRequest(
        id=int(row["id"]),
        account=row["account"],
        shares_requested=int(row["shares_requested"]),
        reference_owed=Decimal(row["reference_owed"]),
        created_at=row["created_at"],
        status=RedemptionStatus(row["status"]),
        fulfilled_at=row.get("fulfilled_at"),
        cancelled_at=row.get("cancelled_at"),
    )


class PostgresRedemptionQueue(RedemptionQueue):
    """
    Queue stored in ``redemption_requests``.

    A partial unique index on ``account WHERE status = 'pending'`` enforces the
    one-pending invariant across processes; the lock covers this process.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._lock = Lock()

    def enroll(self, account: str, shares_requested: int, reference_owed: Decimal) -> RedemptionRequest:
        from psycopg2 import errors as pg_errors
        from settlement.db import queries

        _check_enrollment(account, shares_requested, reference_owed)
        with self._lock:
            existing = queries.get_pending_redemption_for_account(account)
            if existing is not None:
                raise RedemptionAlreadyPending(account, int(existing["id"]))
            try:
                row = queries.insert_redemption_request({
                    "account": account,
                    "shares_requested": int(shares_requested),
                    "reference_owed": reference_owed,
                    "created_at": self.clock(),
                })
            except pg_errors.UniqueViolation as exc:
                raise RedemptionAlreadyPending(account) from exc
        request = request_from_row(row)
        logger.info(
            "Enrolled redemption %d for %s: %s shares, owed %s",
            request.id, account, shares_requested, reference_owed,
        )
        return request

    def get(self, request_id: int) -> RedemptionRequest:
        from settlement.db import queries

        row = queries.get_redemption_request(request_id)
        if row is None:
            raise NotFound(f"Redemption request {request_id} not found")
        return request_from_row(row)

    def get_pending_for_account(self, account: str) -> Optional[RedemptionRequest]:
        from settlement.db import queries

        row = queries.get_pending_redemption_for_account(account)
        return request_from_row(row) if row else None

    def list_pending(self) -> List[RedemptionRequest]:
        from settlement.db import queries

        return [request_from_row(r) for r in queries.get_pending_redemptions()]

    def _transition(self, request_id: int, target: RedemptionStatus) -> RedemptionRequest:
        from settlement.db import queries

        row = queries.transition_redemption(request_id, target.value, self.clock())
        if row is None:
            current = queries.get_redemption_request(request_id)
            if current is None:
                raise NotFound(f"Redemption request {request_id} not found")
            logger.error(
                "Invalid transition for redemption %d: %s -> %s",
                request_id, current["status"], target.value,
            )
            raise InvalidTransition(request_id, current["status"], target.value)
        return request_from_row(row)

    def mark_fulfilled(self, request_id: int) -> RedemptionRequest:
        updated = self._transition(request_id, RedemptionStatus.FULFILLED)
        logger.info("Redemption %d fulfilled for %s", request_id, updated.account)
        return updated

    def cancel(self, request_id: int) -> RedemptionRequest:
        updated = self._transition(request_id, RedemptionStatus.CANCELLED)
        logger.info("Redemption %d cancelled for %s", request_id, updated.account)
        return updated
