import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from settlement.errors import InvalidTransition, NotFound, RedemptionAlreadyPending
from settlement.models import RedemptionRequest, RedemptionStatus, sort_fifo
from settlement.redemption_queue import InMemoryRedemptionQueue, request_from_row


def test_enroll_assigns_ids_and_pending_status(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    first = queue.enroll("alice", 10, Decimal("10"))
    second = queue.enroll("bob", 5, Decimal("5"))

    assert (first.id, second.id) == (1, 2)
    assert first.status is RedemptionStatus.PENDING
    assert first.created_at == clock.now
    assert queue.get_pending_for_account("alice") == first


def test_second_enroll_for_same_account_fails(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    first = queue.enroll("alice", 10, Decimal("10"))

    with pytest.raises(RedemptionAlreadyPending) as exc_info:
        queue.enroll("alice", 3, Decimal("3"))
    assert exc_info.value.request_id == first.id
    assert len(queue.list_pending()) == 1


def test_concurrent_enroll_leaves_one_pending(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    barrier = threading.Barrier(16)
    results = []
    lock = threading.Lock()

    def attempt(i):
        barrier.wait()
        try:
            queue.enroll("alice", i + 1, Decimal(i + 1))
            outcome = "ok"
        except RedemptionAlreadyPending:
            outcome = "dup"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("dup") == 15
    assert len(queue.list_pending()) == 1


def test_list_pending_is_fifo(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    for account in ("carol", "alice", "bob"):
        queue.enroll(account, 1, Decimal(1))
        clock.advance(5)

    assert [r.account for r in queue.list_pending()] == ["carol", "alice", "bob"]


def test_sort_fifo_orders_by_created_at_then_id():
    t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
    t1 = datetime(2026, 1, 2, tzinfo=timezone.utc)
    reqs = [
        RedemptionRequest(id=3, account="c", shares_requested=1, reference_owed=Decimal(1), created_at=t1),
        RedemptionRequest(id=2, account="b", shares_requested=1, reference_owed=Decimal(1), created_at=t0),
        RedemptionRequest(id=1, account="a", shares_requested=1, reference_owed=Decimal(1), created_at=t0),
    ]
    assert [r.id for r in sort_fifo(reqs)] == [1, 2, 3]


def test_mark_fulfilled_twice_is_invalid(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    request = queue.enroll("alice", 10, Decimal("10"))

    done = queue.mark_fulfilled(request.id)
    assert done.status is RedemptionStatus.FULFILLED
    assert done.fulfilled_at == clock.now
    assert queue.get_pending_for_account("alice") is None

    with pytest.raises(InvalidTransition):
        queue.mark_fulfilled(request.id)
    with pytest.raises(InvalidTransition):
        queue.cancel(request.id)


def test_cancel_frees_the_account(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    request = queue.enroll("alice", 10, Decimal("10"))

    cancelled = queue.cancel(request.id)
    assert cancelled.status is RedemptionStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    again = queue.enroll("alice", 4, Decimal("4"))
    assert again.id == request.id + 1
    assert len(queue.list_all()) == 2


def test_unknown_request_not_found(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    with pytest.raises(NotFound):
        queue.get(42)
    with pytest.raises(NotFound):
        queue.mark_fulfilled(42)


@pytest.mark.parametrize("account,shares,owed", [("", 1, Decimal(1)), ("a", 0, Decimal(1)), ("a", 1, Decimal(-1))])
def test_enroll_validates_input(clock, account, shares, owed):
    queue = InMemoryRedemptionQueue(clock=clock)
    with pytest.raises(ValueError):
        queue.enroll(account, shares, owed)


def test_total_pending_owed(clock):
    queue = InMemoryRedemptionQueue(clock=clock)
    queue.enroll("alice", 1, Decimal("1.5"))
    bob = queue.enroll("bob", 1, Decimal("2.25"))
    queue.mark_fulfilled(bob.id)
    assert queue.total_pending_owed() == Decimal("1.5")


def test_request_from_row():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": 7,
        "account": "alice",
        "shares_requested": Decimal("1000"),
        "reference_owed": Decimal("12.500000"),
        "created_at": now,
        "status": "fulfilled",
        "fulfilled_at": now,
        "cancelled_at": None,
    }
    request = request_from_row(row)
    assert request.id == 7
    assert request.shares_requested == 1000
    assert request.status is RedemptionStatus.FULFILLED
    assert request.to_dict()["fulfilled"] is True
