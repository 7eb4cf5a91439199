import pytest

from settlement.errors import CooldownActive, Paused
from settlement.models import ActionKind
from settlement.supervisor import CooldownSupervisor, InMemoryGuardStore


def _supervisor(clock, deposit=0, redeem=0):
    return CooldownSupervisor(InMemoryGuardStore(), deposit, redeem, clock=clock)


def test_pause_toggle(clock):
    sup = _supervisor(clock)
    sup.check_pause()

    sup.set_paused(True)
    assert sup.is_paused()
    with pytest.raises(Paused):
        sup.check_pause()

    sup.set_paused(False)
    sup.check_pause()


def test_cooldown_reports_remaining_seconds(clock):
    sup = _supervisor(clock, redeem=60)
    sup.record_action("alice", ActionKind.REDEEM)

    clock.advance(15.5)
    with pytest.raises(CooldownActive) as exc_info:
        sup.check_cooldown("alice", ActionKind.REDEEM)
    assert exc_info.value.remaining_seconds == 45
    assert exc_info.value.kind == "redeem"

    clock.advance(45)
    sup.check_cooldown("alice", ActionKind.REDEEM)


def test_deposit_and_redeem_windows_are_independent(clock):
    sup = _supervisor(clock, deposit=30, redeem=60)
    sup.record_action("alice", ActionKind.DEPOSIT)

    sup.check_cooldown("alice", ActionKind.REDEEM)
    sup.check_cooldown("bob", ActionKind.DEPOSIT)
    with pytest.raises(CooldownActive):
        sup.check_cooldown("alice", ActionKind.DEPOSIT)


def test_record_action_window_override(clock):
    sup = _supervisor(clock, redeem=60)
    when = sup.record_action("alice", ActionKind.REDEEM, window=5)

    state = sup.cooldown_state("alice")
    assert state.next_redeem_allowed_at == when
    assert state.next_deposit_allowed_at is None
    assert (when - clock.now).total_seconds() == 5


def test_zero_window_never_blocks(clock):
    sup = _supervisor(clock)
    sup.record_action("alice", ActionKind.REDEEM)
    sup.check_cooldown("alice", ActionKind.REDEEM)
