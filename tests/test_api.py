from fastapi.testclient import TestClient

from app import create_app
from conftest import LIQUID_SHORT, SHARE, build_world

ADMIN = {"X-Admin-Token": "secret"}


def _client(world):
    return TestClient(create_app(world.service, run_trigger=False))


def test_redeem_check_reports_shortfall():
    w = build_world(balances=LIQUID_SHORT)
    with _client(w) as client:
        resp = client.get("/redeem-check", params={"account": "alice", "shares": str(1_200_000 * SHARE)})

    assert resp.status_code == 200
    body = resp.json()
    assert body["canRedeemInstantly"] is False
    assert body["shortfall"] == "200000.000000"
    assert body["degraded"] is False


def test_queue_then_trigger_then_poll():
    w = build_world(balances=LIQUID_SHORT)
    with _client(w) as client:
        resp = client.post("/redemption", json={"account": "alice", "shares": 1_200_000 * SHARE})
        assert resp.status_code == 200
        assert resp.json() == {"requestId": 1, "referenceCurrencyOwed": "1200000.000000"}

        dup = client.post("/redemption", json={"account": "alice", "shares": SHARE})
        assert dup.status_code == 409
        assert dup.json()["detail"]["error"] == "redemption_already_pending"

        pending = client.get("/pending-redemptions").json()
        assert pending["count"] == 1
        assert pending["totalOwed"] == "1200000.000000"
        assert client.get("/user-pending/alice").json()["hasPending"] is True

        report = client.post("/rebalance/trigger", headers=ADMIN)
        assert report.status_code == 200
        assert report.json()["fulfilled"] == [1]

        status = client.get("/redemption/1").json()
        assert status["fulfilled"] is True
        assert status["status"] == "fulfilled"
        assert status["fulfilledAt"] is not None
        assert status["referenceCurrencyOwed"] == "1200000.000000"

        stats = client.get("/rebalance/stats").json()
        assert stats["cyclesRun"] == 1
        assert stats["redemptionsFulfilled"] == 1


def test_enroll_refused_when_reserve_covers_it(world):
    with _client(world) as client:
        resp = client.post("/redemption", json={"account": "alice", "shares": 1_000 * SHARE})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "redemption_routed_instant"


def test_instant_redeem_burns_and_pays(world):
    with _client(world) as client:
        resp = client.post("/redeem", json={"account": "alice", "shares": 1_000 * SHARE})
    assert resp.status_code == 200
    assert resp.json()["referencePaid"] == "1000.000000"
    assert world.ledger.burns[0][:2] == ("alice", 1_000 * SHARE)


def test_redeem_cooldown_returns_429():
    w = build_world(redeem_cooldown_seconds=60)
    with _client(w) as client:
        assert client.post("/redeem", json={"account": "alice", "shares": SHARE}).status_code == 200
        again = client.post("/redeem", json={"account": "alice", "shares": SHARE})
        cooldown = client.get("/cooldown/alice").json()

    assert again.status_code == 429
    assert again.json()["detail"]["remainingSeconds"] == 60
    assert cooldown["nextRedeemAllowedAt"] is not None


def test_unknown_request_404(world):
    with _client(world) as client:
        resp = client.get("/redemption/999")
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


def test_operator_endpoints_require_token(world):
    with _client(world) as client:
        assert client.post("/admin/pause", json={"paused": True}).status_code == 403
        assert client.post("/admin/pause", json={"paused": True},
                           headers={"X-Admin-Token": "wrong"}).status_code == 403

        resp = client.post("/admin/pause", json={"paused": True}, headers=ADMIN)
        assert resp.json() == {"paused": True}

        paused = client.post("/redeem", json={"account": "alice", "shares": SHARE})
        assert paused.status_code == 423
        deposit = client.post("/deposit/authorize", json={"account": "alice"})
        assert deposit.status_code == 423


def test_operator_endpoints_disabled_without_configured_token():
    w = build_world(admin_token="")
    with _client(w) as client:
        resp = client.post("/rebalance/trigger", headers={"X-Admin-Token": ""})
    assert resp.status_code == 403


def test_admin_cancel(short_world):
    with _client(short_world) as client:
        client.post("/redemption", json={"account": "alice", "shares": 1_200_000 * SHARE})
        resp = client.post("/redemption/1/cancel", headers=ADMIN)
        again = client.post("/redemption/1/cancel", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert again.status_code == 409


def test_basket_and_nav(world):
    with _client(world) as client:
        basket = client.get("/basket").json()
        assert client.get("/nav/stats").status_code == 404

        client.post("/rebalance/trigger", headers=ADMIN)
        history = client.get("/nav/history").json()
        stats = client.get("/nav/stats").json()

    assert basket["totalValue"] == "4000000.000000"
    assert [a["key"] for a in basket["assets"]] == ["STABLE", "ETH", "BTC"]
    assert basket["maxDriftBps"] == 0
    assert len(history) == 1
    assert stats["count"] == 1


def test_basket_unavailable_during_outage(world):
    world.oracle.outage = True
    with _client(world) as client:
        resp = client.get("/basket")
        check = client.get("/redeem-check", params={"account": "alice", "shares": SHARE})

    assert resp.status_code == 503
    assert check.status_code == 200
    assert check.json()["degraded"] is True


def test_deposit_authorization_starts_cooldown():
    w = build_world(deposit_cooldown_seconds=30)
    with _client(w) as client:
        first = client.post("/deposit/authorize", json={"account": "alice"})
        second = client.post("/deposit/authorize", json={"account": "alice"})

    assert first.status_code == 200
    assert first.json()["authorized"] is True
    assert second.status_code == 429


def test_genesis_redeem_check_is_degraded_and_redeem_unavailable():
    w = build_world(circulating=0)
    with _client(w) as client:
        check = client.get("/redeem-check", params={"account": "alice", "shares": SHARE})
        redeem = client.post("/redeem", json={"account": "alice", "shares": SHARE})

    assert check.json()["degraded"] is True
    assert redeem.status_code == 503
    assert redeem.json()["detail"]["error"] == "valuation_failed"
