import pytest
import requests

from settlement.client import RedemptionStatusPoller
from settlement.errors import CooldownActive, NotFound, Paused, RedemptionAlreadyPending


class _Resp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


class _ScriptedSession:
    """Returns (or raises) the scripted items in order, repeating the last."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def test_poller_survives_outage_until_fulfilled():
    session = _ScriptedSession([
        requests.ConnectionError("down"),
        _Resp(503),
        _Resp(200, {"requestId": 1, "status": "pending"}),
        _Resp(200, {"requestId": 1, "status": "fulfilled", "fulfilled": True}),
    ])
    sleeps = []
    poller = RedemptionStatusPoller("http://api/", poll_seconds=2.0, session=session, sleep=sleeps.append)

    status = poller.wait_for_terminal(1)

    assert status["fulfilled"] is True
    assert sleeps == [2.0, 2.0, 2.0]
    assert poller.failures == 2
    assert session.calls[0][0] == "http://api/redemption/1"


def test_poller_stops_on_cancel():
    session = _ScriptedSession([_Resp(200, {"requestId": 3, "status": "cancelled"})])
    poller = RedemptionStatusPoller("http://api", session=session, sleep=lambda s: None)
    assert poller.wait_for_terminal(3)["status"] == "cancelled"


def test_poller_unknown_request():
    session = _ScriptedSession([_Resp(404)])
    poller = RedemptionStatusPoller("http://api", session=session, sleep=lambda s: None)
    with pytest.raises(NotFound):
        poller.wait_for_terminal(9)


def test_poller_max_wait():
    now = [0.0]

    def fake_sleep(seconds):
        now[0] += seconds

    session = _ScriptedSession([requests.Timeout("slow")])
    poller = RedemptionStatusPoller(
        "http://api", poll_seconds=5.0, max_wait=12.0,
        session=session, sleep=fake_sleep, clock=lambda: now[0],
    )
    with pytest.raises(TimeoutError):
        poller.wait_for_terminal(1)
    assert now[0] == 15.0


def test_redeem_check_falls_back_to_instant():
    session = _ScriptedSession([requests.ConnectionError("down")])
    poller = RedemptionStatusPoller("http://api", session=session)

    result = poller.check_redeem("alice", 10)
    assert result == {"canRedeemInstantly": True, "shortfall": None, "degraded": True}
    assert session.calls[0][1] == {"account": "alice", "shares": "10"}


def test_redeem_check_passes_through_answer():
    answer = {"canRedeemInstantly": False, "shortfall": "5", "degraded": False}
    session = _ScriptedSession([_Resp(200, answer)])
    poller = RedemptionStatusPoller("http://api", session=session)
    assert poller.check_redeem("alice", 10) == answer


def test_redeem_check_surfaces_pause():
    session = _ScriptedSession([_Resp(423, {"detail": {"error": "paused", "message": "Vault is paused"}})])
    poller = RedemptionStatusPoller("http://api", session=session)

    with pytest.raises(Paused) as exc_info:
        poller.check_redeem("alice", 10)
    assert exc_info.value.message == "Vault is paused"


def test_redeem_check_surfaces_cooldown_and_pending():
    cooldown = {"detail": {"error": "cooldown_active", "message": "...", "remainingSeconds": 42}}
    pending = {"detail": {"error": "redemption_already_pending", "message": "...", "requestId": 7}}
    session = _ScriptedSession([_Resp(429, cooldown), _Resp(409, pending)])
    poller = RedemptionStatusPoller("http://api", session=session)

    with pytest.raises(CooldownActive) as cooldown_info:
        poller.check_redeem("alice", 10)
    assert cooldown_info.value.remaining_seconds == 42

    with pytest.raises(RedemptionAlreadyPending) as pending_info:
        poller.check_redeem("alice", 10)
    assert pending_info.value.request_id == 7


def test_redeem_check_server_error_falls_back_to_instant():
    session = _ScriptedSession([_Resp(503, {"detail": {"error": "valuation_failed"}})])
    poller = RedemptionStatusPoller("http://api", session=session)
    assert poller.check_redeem("alice", 10)["degraded"] is True
