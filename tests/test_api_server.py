from __future__ import annotations

from fastapi.testclient import TestClient

from marketpulse.api.server import create_app
from tests.conftest import default_instruments, make_book, make_globals, make_trade

OPENING = {
    "total_balance": 19000.12,
    "available_balance": 17000.12,
    "in_orders": 2000.0,
    "total_pnl_pct": 2.94,
}


def _seeded_client(make_engine):
    engine = make_engine()
    engine.tickers.replace_all(default_instruments())
    engine.tickers.set_globals(make_globals())
    engine.ledger.recompute(OPENING)
    engine.books.set_book("BTCUSDT", make_book("BTCUSDT"))
    engine.books.prepend_trades("BTCUSDT", [make_trade("BTCUSDT", 1)])
    return engine, TestClient(create_app(engine))


def test_health_and_snapshot(make_engine):
    engine, client = _seeded_client(make_engine)

    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["state"] == "idle"
    assert health["selected_pair"] == "BTCUSDT"

    snap = client.get("/api/snapshot").json()
    assert snap["selected_pair"] == "BTCUSDT"
    assert [i["id"] for i in snap["instruments"]] == ["bitcoin", "ethereum", "solana"]
    assert snap["order_book"]["asks"][0]["price"] == 101.0
    assert snap["trades"][0]["side"] == "buy"
    assert snap["load_outcome"]["status"] == "live"
    assert snap["top_movers"]["gainers"][0]["id"] == "solana"


def test_health_without_engine():
    client = TestClient(create_app(None))
    assert client.get("/api/health").json() == {"status": "initializing"}
    assert client.get("/api/snapshot").status_code == 503


def test_select_pair(make_engine):
    engine, client = _seeded_client(make_engine)

    resp = client.post("/api/pair", json={"pair_id": "ETHUSDT"})
    assert resp.status_code == 200
    assert resp.json() == {"selected_pair": "ETHUSDT", "changed": True}
    assert client.get("/api/snapshot").json()["trades"] == []

    assert client.post("/api/pair", json={"pair_id": "DOGEUSDT"}).status_code == 400


def test_place_and_cancel_order(make_engine):
    engine, client = _seeded_client(make_engine)

    resp = client.post(
        "/api/orders",
        json={"side": "buy", "pair_id": "BTCUSDT", "price": 100.0, "quantity": 2.0},
    )
    assert resp.status_code == 200
    order = resp.json()
    assert order["status"] == "open"
    assert order["notional"] == 200.0
    assert [o["order_id"] for o in client.get("/api/orders").json()] == [order["order_id"]]

    resp = client.delete(f"/api/orders/{order['order_id']}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert client.get("/api/orders").json() == []
    assert client.delete(f"/api/orders/{order['order_id']}").status_code == 404


def test_rejected_orders_map_to_400(make_engine):
    engine, client = _seeded_client(make_engine)

    too_big = client.post(
        "/api/orders",
        json={"side": "buy", "pair_id": "BTCUSDT", "price": 43000.0, "quantity": 10.0},
    )
    assert too_big.status_code == 400
    assert "exceeds available balance" in too_big.json()["detail"]

    bad_qty = client.post(
        "/api/orders",
        json={"side": "sell", "pair_id": "BTCUSDT", "price": 43000.0, "quantity": 0},
    )
    assert bad_qty.status_code == 400

    bad_side = client.post(
        "/api/orders",
        json={"side": "hold", "pair_id": "BTCUSDT", "price": 1.0, "quantity": 1.0},
    )
    assert bad_side.status_code == 422


def test_dismiss_notice(make_engine):
    engine, client = _seeded_client(make_engine)
    engine.scheduler.notice = "simulated"
    assert client.get("/api/snapshot").json()["notice"] == "simulated"
    assert client.post("/api/notice/dismiss").json() == {"notice": None}
    assert client.get("/api/snapshot").json()["notice"] is None
