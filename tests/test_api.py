"""Smoke tests for the HTTP layer.

Each test gets its own runtime and DuckDB file; the matching loop is off and
cycles are driven through POST /api/matching/run.
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from tradearena.config import Settings
from tradearena.main import create_app, stream
from tradearena.runtime import TradingRuntime


def _make_client(tmp_path, **overrides) -> TestClient:
    params = {
        "db_path": tmp_path / "api.duckdb",
        "starting_cash": Decimal("1000"),
        "submit_min_interval_ms": 0,
        "symbols": ["AAPL", "MSFT"],
    }
    params.update(overrides)
    return TestClient(create_app(TradingRuntime(**params), schedule=False))


@pytest.fixture()
def client(tmp_path):
    with _make_client(tmp_path) as c:
        yield c


def _submit(client, **body):
    payload = {"user_id": "alice", "symbol": "AAPL", "side": "buy", "qty": 1}
    payload.update(body)
    return client.post("/api/orders", json=payload)


class TestHealthAndConfig:

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"api": "ok", "db": "open", "matcher": "stopped"}

    def test_config(self, client):
        data = client.get("/api/config").json()
        assert "starting_cash" in data
        assert "symbols" in data
        assert data["order_match_interval_ms"] > 0


class TestOrdersApi:

    def test_submit_and_fill(self, client):
        assert client.post("/api/ticks", json={"symbol": "aapl", "price": "10"}).status_code == 200
        client.post("/api/accounts/alice", json={"starting_cash": "500"})

        resp = _submit(client, qty=3)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["order"]["status"] == "open"
        order_id = body["order_id"]

        run = client.post("/api/matching/run").json()
        assert run["filled"] == 1
        assert run["fills"][0]["order_id"] == order_id

        order = client.get(f"/api/orders/{order_id}").json()
        assert order["status"] == "filled"
        assert Decimal(order["fill_price"]) == Decimal("10")

        portfolio = client.get("/api/portfolio/alice").json()
        assert Decimal(portfolio["cash"]) == Decimal("470")
        assert portfolio["positions"][0]["symbol"] == "AAPL"
        assert portfolio["positions"][0]["shares"] == 3

        trades = client.get("/api/trades", params={"user_id": "alice"}).json()
        assert trades["count"] == 1

    @pytest.mark.parametrize(
        "body",
        [
            {"qty": 0},
            {"qty": 2.5},
            {"side": "hold"},
            {"order_type": "limit"},
            {"symbol": "DOGE"},
            {"qty": 3_000_000_000},
            {"order_type": "limit", "side": "sell", "limit_price": "1e20"},
            {"order_type": "limit", "limit_price": "0.0000001"},
        ],
    )
    def test_invalid_order_is_400(self, client, body):
        resp = _submit(client, **body)
        assert resp.status_code == 400
        assert client.get("/api/orders/open").json()["count"] == 0

    def test_rate_limit_is_429(self, tmp_path):
        with _make_client(tmp_path, submit_min_interval_ms=60_000) as c:
            assert _submit(c).status_code == 200
            resp = _submit(c)
            assert resp.status_code == 429
            assert int(resp.headers["Retry-After"]) >= 1

    def test_cancel(self, client):
        order_id = _submit(client, order_type="limit", limit_price="5").json()["order_id"]

        assert client.post(f"/api/orders/{order_id}/cancel", params={"user_id": "bob"}).status_code == 404
        resp = client.post(f"/api/orders/{order_id}/cancel", params={"user_id": "alice"})
        assert resp.status_code == 200
        assert resp.json()["order"]["status"] == "cancelled"
        assert client.post(f"/api/orders/{order_id}/cancel").status_code == 409
        assert client.post("/api/orders/missing/cancel").status_code == 404

    def test_order_lists(self, client):
        first = _submit(client).json()["order_id"]
        second = _submit(client, side="sell").json()["order_id"]

        open_orders = client.get("/api/orders/open").json()
        assert [o["id"] for o in open_orders["orders"]] == [first, second]

        history = client.get("/api/orders", params={"user_id": "alice"}).json()
        assert [o["id"] for o in history["orders"]] == [second, first]

        assert client.get("/api/orders", params={"status": "bogus"}).status_code == 422
        assert client.get("/api/orders/nope").status_code == 404


class TestPricesAndProgressionApi:

    def test_price_lookup(self, client):
        assert client.get("/api/prices/MSFT").json() == {"symbol": "MSFT", "price": None}
        client.post("/api/ticks", json={"symbol": "MSFT", "price": "312.5"})
        data = client.get("/api/prices/msft").json()
        assert Decimal(data["price"]) == Decimal("312.5")

    @pytest.mark.parametrize("price", ["0", "1e20", "0.0000001"])
    def test_bad_tick_is_400(self, client, price):
        resp = client.post("/api/ticks", json={"symbol": "MSFT", "price": price})
        assert resp.status_code == 400
        assert client.get("/api/prices/MSFT").json()["price"] is None

    def test_profile_and_quest(self, client):
        client.post("/api/ticks", json={"symbol": "AAPL", "price": "10"})
        _submit(client, qty=2)
        client.post("/api/matching/run")

        profile = client.get("/api/profile/alice").json()
        assert profile["xp"] == 2
        assert profile["stats"]["trades_today"] == 1

        quest = client.get("/api/quest/alice").json()["quest"]
        assert quest["done"] is False
        assert Decimal(quest["progress_pnl"]) == Decimal("0")

    def test_negative_starting_cash_is_400(self, client):
        resp = client.post("/api/accounts/alice", json={"starting_cash": "-5"})
        assert resp.status_code == 400

    def test_oversized_starting_cash_is_400(self, client):
        resp = client.post("/api/accounts/alice", json={"starting_cash": "1e20"})
        assert resp.status_code == 400


class TestMatchingApi:

    def test_status_and_history(self, client):
        status = client.get("/api/matching/status").json()
        assert status["is_running"] is False
        assert status["cycles_run"] == 0

        client.post("/api/matching/run")
        history = client.get("/api/matching/history").json()
        assert history["count"] == 1
        assert history["history"][0]["status"] == "success"
        assert client.get("/api/matching/status").json()["cycles_run"] == 1

    def test_stop_when_not_running(self, client):
        assert client.post("/api/matching/stop").json() == {"status": "not_running"}

    def test_events(self, client):
        order_id = _submit(client).json()["order_id"]
        events = client.get("/api/events", params={"user_id": "alice"}).json()
        assert events["count"] == 1
        assert events["events"][0]["event_type"] == "order_submitted"
        assert events["events"][0]["order_id"] == order_id


class TestAdminApi:

    TOKEN = "s3cret"

    @pytest.fixture()
    def admin_client(self, tmp_path):
        cfg = Settings()
        cfg.ADMIN_RESET_TOKEN = self.TOKEN
        with _make_client(tmp_path, config=cfg) as c:
            yield c

    def _reset(self, client, token=TOKEN, **body):
        headers = {"x-admin-token": token} if token is not None else {}
        return client.post("/api/admin/reset-day", json=body, headers=headers)

    def test_missing_or_wrong_token_is_401(self, admin_client):
        admin_client.post("/api/accounts/alice")
        assert self._reset(admin_client, token=None, user_id="alice").status_code == 401
        assert self._reset(admin_client, token="nope", user_id="alice").status_code == 401

    def test_unset_token_disables_reset(self, tmp_path):
        cfg = Settings()
        cfg.ADMIN_RESET_TOKEN = ""
        with _make_client(tmp_path, config=cfg) as c:
            c.post("/api/accounts/alice")
            assert self._reset(c, token="", user_id="alice").status_code == 401

    def test_missing_user_id_rejected(self, admin_client):
        assert self._reset(admin_client).status_code == 422
        assert self._reset(admin_client, user_id="").status_code == 422

    def test_unknown_user_is_404(self, admin_client):
        assert self._reset(admin_client, user_id="ghost").status_code == 404

    def test_reset_day(self, admin_client):
        admin_client.post("/api/ticks", json={"symbol": "AAPL", "price": "10"})
        _submit(admin_client, qty=4)
        admin_client.post("/api/matching/run")
        pending = _submit(admin_client, order_type="limit", limit_price="1").json()["order_id"]

        resp = self._reset(admin_client, user_id="alice", reset_holdings=True)
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["cancelled_orders"] == [pending]
        assert body["profile"]["stats"]["trades_today"] == 0
        assert body["profile"]["xp"] == 2

        portfolio = admin_client.get("/api/portfolio/alice").json()
        assert Decimal(portfolio["cash"]) == Decimal("1000")
        assert portfolio["positions"] == []
        assert admin_client.get(f"/api/orders/{pending}").json()["status"] == "cancelled"


class TestStreamApi:
    """The SSE route, driven directly since TestClient buffers whole responses."""

    class _ConnectedRequest:
        async def is_disconnected(self) -> bool:
            return False

    @pytest.mark.asyncio
    async def test_stream_forwards_only_the_users_events(self, tmp_path):
        rt = TradingRuntime(
            db_path=tmp_path / "sse.duckdb",
            starting_cash=Decimal("1000"),
            submit_min_interval_ms=0,
            symbols=["AAPL"],
        )
        rt.start(schedule=False)
        try:
            response = await stream(request=self._ConnectedRequest(), user_id="alice", rt=rt)
            assert response.media_type == "text/event-stream"
            assert rt.bus.subscriber_count == 1

            rt.order_book.submit("bob", "AAPL", "buy", "market", 1)
            mine = rt.order_book.submit("alice", "AAPL", "buy", "market", 2)

            frames = response.body_iterator
            frame = await asyncio.wait_for(frames.__anext__(), timeout=2)
            assert frame.startswith("data: ")
            assert frame.endswith("\n\n")
            event = json.loads(frame[len("data: "):])
            assert event["type"] == "order_submitted"
            assert event["data"]["id"] == mine.id
            assert event["data"]["user_id"] == "alice"

            await frames.aclose()
            assert rt.bus.subscriber_count == 0
        finally:
            rt.shutdown()
