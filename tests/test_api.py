import pytest

TRADE = {
    "instrument": "ES",
    "action": "buy",
    "market_type": "futures",
    "entry_price": 5000.0,
    "quantity": 2,
    "contract_multiplier": 50,
    "entry_time": "2024-03-04T09:30:00",
    "timezone": "America/New_York",
}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_root(client):
    assert client.get("/").json()["service"] == "tradelens-api"


def test_trade_crud(client, db, user_id):
    resp = client.post("/trades", json=TRADE)
    assert resp.status_code == 201
    trade = resp.json()
    assert trade["status"] == "open"
    # 09:30 New York (EST) is 14:30 UTC
    assert trade["entry_time"] == "2024-03-04T14:30:00+00:00"
    assert db.rows("trades")[0]["user_id"] == user_id

    resp = client.patch(f"/trades/{trade['id']}", json={"exit_price": 5010.0, "notes": "target hit"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "closed"
    assert resp.json()["net_pnl"] == pytest.approx(1000.0)
    assert resp.json()["notes"] == "target hit"

    listed = client.get("/trades").json()
    assert [t["id"] for t in listed] == [trade["id"]]

    assert client.get(f"/trades/{trade['id']}").status_code == 200
    assert client.delete(f"/trades/{trade['id']}").status_code == 204
    assert client.get(f"/trades/{trade['id']}").status_code == 404


def test_create_with_executions(client):
    resp = client.post(
        "/trades",
        json={
            "instrument": "AAPL",
            "executions": [
                {"action": "buy", "quantity": 100, "price": 150.0, "datetime": "2024-03-04T14:30:00Z"},
                {"action": "sell", "quantity": 30, "price": 152.0, "datetime": "2024-03-04T15:00:00Z"},
            ],
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "partially_closed"
    assert body["remaining_quantity"] == 70
    assert body["net_pnl"] == pytest.approx(60.0)


def test_create_rejects_invalid(client):
    resp = client.post("/trades", json={**TRADE, "quantity": 0})
    assert resp.status_code == 400

    resp = client.post(
        "/trades",
        json={
            "instrument": "AAPL",
            "executions": [
                {"action": "buy", "quantity": 10, "price": 150.0, "datetime": "2024-03-04T14:30:00Z"},
                {"action": "sell", "quantity": 11, "price": 152.0, "datetime": "2024-03-04T15:00:00Z"},
            ],
        },
    )
    assert resp.status_code == 400


def test_exit_endpoints(client):
    trade = client.post("/trades", json={**TRADE, "quantity": 4}).json()

    resp = client.post(
        f"/trades/{trade['id']}/exits",
        json={"action": "sell", "quantity": 1, "price": 5004.0, "datetime": "2024-03-04T15:00:00Z"},
    )
    assert resp.status_code == 200
    assert resp.json()["remaining_quantity"] == 3
    assert resp.json()["net_pnl"] == pytest.approx(200.0)

    over = client.post(
        f"/trades/{trade['id']}/exits",
        json={"action": "sell", "quantity": 5, "price": 5004.0, "datetime": "2024-03-04T15:05:00Z"},
    )
    assert over.status_code == 400

    resp = client.delete(f"/trades/{trade['id']}/exits/0")
    assert resp.status_code == 200
    assert resp.json()["status"] == "open"

    assert client.delete(f"/trades/{trade['id']}/exits/0").status_code == 400
    assert client.delete("/trades/missing/exits/0").status_code == 404


def test_export(client):
    client.post("/trades", json={**TRADE, "exit_price": 4990.0})
    resp = client.get("/trades/export")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.strip().splitlines()
    assert len(lines) == 2
    assert "ES" in lines[1]


def test_auth_required(anon_client, db):
    assert anon_client.get("/trades").status_code == 401
    assert anon_client.get("/trades", headers={"Authorization": "Basic abc"}).status_code == 401
    assert anon_client.get("/trades", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_bearer_token_resolves_user(anon_client, db):
    db.auth.tokens["good-token"] = "user-7"
    resp = anon_client.post(
        "/trades",
        json={"instrument": "AAPL", "entry_price": 10, "quantity": 1},
        headers={"Authorization": "Bearer good-token"},
    )
    assert resp.status_code == 201
    assert db.rows("trades")[0]["user_id"] == "user-7"

    other = anon_client.get("/trades", headers={"Authorization": "Bearer good-token"})
    assert len(other.json()) == 1


def test_users_only_see_their_trades(client, db):
    db.seed("trades", {"id": "foreign", "user_id": "someone-else", "instrument": "X"})
    assert client.get("/trades").json() == []
    assert client.get("/trades/foreign").status_code == 404
    assert client.patch("/trades/foreign", json={"notes": "x"}).status_code == 404


def test_patch_keeps_partial_exit_invariants(client, db):
    trade = client.post(
        "/trades",
        json={
            "instrument": "AAPL",
            "executions": [
                {"action": "buy", "quantity": 100, "price": 150.0, "datetime": "2024-03-04T14:30:00Z"},
                {"action": "sell", "quantity": 70, "price": 152.0, "datetime": "2024-03-04T15:00:00Z"},
            ],
        },
    ).json()

    assert client.patch(f"/trades/{trade['id']}", json={"quantity": 10}).status_code == 400
    assert client.patch(f"/trades/{trade['id']}", json={"action": "sell"}).status_code == 400
    assert (
        client.patch(f"/trades/{trade['id']}", json={"entry_price": -5, "quantity": -3}).status_code
        == 400
    )

    stored = client.get(f"/trades/{trade['id']}").json()
    assert stored["quantity"] == 100
    assert stored["remaining_quantity"] == 30


def test_exit_time_uses_request_timezone(client):
    trade = client.post("/trades", json={**TRADE, "quantity": 4}).json()
    resp = client.post(
        f"/trades/{trade['id']}/exits",
        json={
            "action": "sell",
            "quantity": 1,
            "price": 5004.0,
            "datetime": "2024-03-04T10:00:00",
            "timezone": "America/New_York",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["partial_exits"][0]["datetime"] == "2024-03-04T15:00:00+00:00"
    assert resp.json()["trade_duration_minutes"] == 30
