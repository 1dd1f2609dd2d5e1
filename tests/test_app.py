import asyncio
import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from crash_round import app as app_module
from crash_round.engine import RoundStatus


@pytest.fixture
def client():
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture
def user_id():
    return f"player-{uuid.uuid4().hex[:8]}"


def balance_of(client, user_id):
    return client.post("/api/init", json={"user_id": user_id}).json()["balance"]


def test_init_creates_user_with_starting_balance(client, user_id):
    response = client.post("/api/init", json={"user_id": user_id})
    assert response.status_code == 200
    assert response.json() == {"user_id": user_id, "balance": 1000.0}


def test_state_is_waiting_with_hidden_crash_point(client):
    state = client.get("/api/state").json()
    assert state["status"] == "waiting"
    assert state["multiplier"] == 1.0
    assert state["crash_point"] is None
    assert state["start_time"] is None
    assert state["round_id"]


def test_history_starts_empty(client):
    assert client.get("/api/history").json() == []


def test_rounds_endpoint_lists_persisted_rounds(client):
    response = client.get("/api/rounds", params={"limit": 5})
    assert response.status_code == 200
    assert isinstance(response.json(), list)


def test_place_bet_while_waiting_debits_stake(client, user_id):
    response = client.post("/api/place-bet", json={"user_id": user_id, "amount": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "accepted"
    assert body["new_balance"] == 990.0

    bets = client.get("/api/bets").json()
    assert bets["round_id"] == body["round_id"]
    assert {"user_id": user_id, "bet_amount": 10.0, "active": True, "cash_out_at": None, "profit": None} in bets["bets"]


def test_place_bet_rejects_non_positive_amount(client, user_id):
    response = client.post("/api/place-bet", json={"user_id": user_id, "amount": 0})
    assert response.status_code == 422


def test_place_bet_rejects_sub_cent_amount(client, user_id):
    response = client.post("/api/place-bet", json={"user_id": user_id, "amount": 0.004})

    assert response.status_code == 400
    assert all(b["user_id"] != user_id for b in client.get("/api/bets").json()["bets"])
    assert balance_of(client, user_id) == 1000.0


def test_place_bet_insufficient_funds(client, user_id):
    response = client.post("/api/place-bet", json={"user_id": user_id, "amount": 5000})
    assert response.status_code == 402
    assert balance_of(client, user_id) == 1000.0


def test_late_bet_is_refunded(client, user_id):
    app_module.engine.round.status = RoundStatus.FLYING

    response = client.post("/api/place-bet", json={"user_id": user_id, "amount": 25})

    assert response.status_code == 409
    assert "round-not-waiting" in response.json()["detail"]
    assert balance_of(client, user_id) == 1000.0


def test_cashout_while_waiting_is_conflict(client, user_id):
    client.post("/api/place-bet", json={"user_id": user_id, "amount": 10})

    response = client.post("/api/cashout", json={"user_id": user_id})

    assert response.status_code == 409
    assert balance_of(client, user_id) == 990.0


def test_cashout_without_bet_is_bad_request(client, user_id):
    app_module.engine.round.status = RoundStatus.FLYING

    response = client.post("/api/cashout", json={"user_id": user_id})
    assert response.status_code == 400


def test_cashout_credits_stake_plus_profit(client, user_id):
    client.post("/api/place-bet", json={"user_id": user_id, "amount": 100})
    game_round = app_module.engine.round
    game_round.status = RoundStatus.FLYING
    game_round.current_multiplier = 1.8

    response = client.post("/api/cashout", json={"user_id": user_id})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "accepted"
    assert body["payout"] == pytest.approx(180.0)
    assert body["bets"][0]["profit"] == pytest.approx(80.0)
    assert body["bets"][0]["cash_out_at"] == 1.8
    assert body["balance"] == pytest.approx(1080.0)


def test_websocket_sends_snapshot_first(client):
    with client.websocket_connect("/ws") as ws:
        message = ws.receive_json()
    assert message["type"] == "snapshot"
    assert message["data"]["status"] == "waiting"


def test_failed_cashout_credit_is_retried(monkeypatch, user_id):
    real_credit = app_module.credit
    calls = []

    async def flaky_credit(**kwargs):
        calls.append(kwargs["amount"])
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return await real_credit(**kwargs)

    monkeypatch.setattr(app_module, "credit", flaky_credit)
    monkeypatch.setattr(app_module.SettlementRecorder, "PAYOUT_RETRY_DELAY_SEC", 0.0)

    with TestClient(app_module.app) as client:
        client.post("/api/place-bet", json={"user_id": user_id, "amount": 100})
        game_round = app_module.engine.round
        game_round.status = RoundStatus.FLYING
        game_round.current_multiplier = 1.8

        response = client.post("/api/cashout", json={"user_id": user_id})
        assert response.status_code == 200
        body = response.json()
        assert body["payout_pending"] == pytest.approx(180.0)
        assert body["balance"] is None

        # The bet is settled in the engine either way
        assert client.post("/api/cashout", json={"user_id": user_id}).status_code == 400

    # Shutdown waits for queued payouts
    with TestClient(app_module.app) as client:
        assert balance_of(client, user_id) == pytest.approx(1080.0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_reap_logs_why_push_task_died(caplog):
    async def broken_push():
        raise RuntimeError("socket closed mid-frame")

    task = asyncio.create_task(broken_push())
    await asyncio.wait([task])

    with caplog.at_level(logging.WARNING, logger="crash_round.app"):
        app_module._reap(task)

    assert "WebSocket push failed" in caplog.text
    assert "socket closed mid-frame" in caplog.text


@pytest.mark.asyncio
async def test_reap_cancels_running_push_task():
    task = asyncio.create_task(asyncio.sleep(60))

    app_module._reap(task)

    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()
