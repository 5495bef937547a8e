"""Settings and event bus plumbing."""

from __future__ import annotations

import json
from decimal import Decimal

from tradearena.config import Settings, _env_decimal, _parse_symbols
from tradearena.services.event_bus import EventBus


class TestSettings:

    def test_parse_symbols(self):
        assert _parse_symbols(" aapl, msft ,,tsla ") == ["AAPL", "MSFT", "TSLA"]
        assert _parse_symbols("") == []

    def test_env_decimal_falls_back_on_junk(self, monkeypatch):
        monkeypatch.setenv("STARTING_CASH", "not-a-number")
        assert _env_decimal("STARTING_CASH", "1000") == Decimal("1000")
        monkeypatch.setenv("STARTING_CASH", "-5")
        assert _env_decimal("STARTING_CASH", "1000") == Decimal("1000")
        monkeypatch.setenv("STARTING_CASH", "2500.50")
        assert _env_decimal("STARTING_CASH", "1000") == Decimal("2500.50")

    def test_game_config_file_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "game_config.json"
        path.write_text(json.dumps({
            "starting_cash": 5000,
            "quest_goal_pnl": "25",
            "symbols": ["nvda", " amd "],
            "order_match_interval_ms": 750,
        }))
        monkeypatch.setattr(Settings, "GAME_CONFIG_PATH", path)
        cfg = Settings()

        assert cfg.STARTING_CASH == Decimal("5000")
        assert cfg.QUEST_GOAL_PNL == Decimal("25")
        assert cfg.SYMBOLS == ["NVDA", "AMD"]
        assert cfg.ORDER_MATCH_INTERVAL_MS == 750
        assert cfg.get_game_config()["starting_cash"] == "5000"

    def test_corrupt_game_config_is_ignored(self, tmp_path, monkeypatch):
        path = tmp_path / "game_config.json"
        path.write_text("{not json")
        monkeypatch.setattr(Settings, "GAME_CONFIG_PATH", path)
        cfg = Settings()
        assert cfg.get_game_config()["match_batch_limit"] == Settings.MATCH_BATCH_LIMIT


class TestEventBus:

    def test_publish_reaches_subscribers(self):
        bus = EventBus()
        seen = []

        @bus.subscribe
        def on_event(event, payload):
            seen.append((event, payload["id"]))

        bus.publish("order_submitted", {"id": "o1"})
        assert seen == [("order_submitted", "o1")]
        assert bus.subscriber_count == 1

        bus.unsubscribe(on_event)
        bus.publish("order_submitted", {"id": "o2"})
        assert seen == [("order_submitted", "o1")]
        assert bus.subscriber_count == 0

    def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event, payload):
            raise ValueError("nope")

        bus.subscribe(broken)
        bus.subscribe(lambda event, payload: seen.append(event))
        bus.publish("trade_executed", {})
        assert seen == ["trade_executed"]
