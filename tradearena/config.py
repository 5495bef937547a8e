"""Application configuration — environment variables and defaults.

Game tunables (starting cash, quest goal, matching cadence) can also be
persisted in user_config/game_config.json, which overrides the env defaults.
"""

import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

_DEFAULT_SYMBOLS = "AAPL,MSFT,TSLA,NVDA,AMZN,GOOGL"


def _env_decimal(key: str, default: str) -> Decimal:
    """Read a positive decimal from the environment, falling back on junk."""
    try:
        value = Decimal(os.getenv(key, default))
    except InvalidOperation:
        return Decimal(default)
    return value if value > 0 else Decimal(default)


def _parse_symbols(raw: str) -> list[str]:
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


class Settings:
    """Central configuration pulled from environment with safe defaults."""

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_DIR: Path = Path(os.getenv("TRADEARENA_DATA_DIR", str(BASE_DIR / "data")))
    LOGS_DIR: Path = BASE_DIR / "logs"
    USER_CONFIG_DIR: Path = Path(__file__).resolve().parent / "user_config"

    # Database
    DB_PATH: Path = DATA_DIR / "tradearena.duckdb"

    # ── Game economy ───────────────────────────────────────────────
    STARTING_CASH: Decimal = _env_decimal("STARTING_CASH", "1000")
    QUEST_GOAL_PNL: Decimal = _env_decimal("QUEST_GOAL_PNL", "10")

    # Tradable universe; empty means any symbol is accepted
    SYMBOLS: list[str] = _parse_symbols(os.getenv("SYMBOLS", _DEFAULT_SYMBOLS))

    # ── Matching loop ──────────────────────────────────────────────
    ORDER_MATCH_INTERVAL_MS: int = int(os.getenv("ORDER_MATCH_INTERVAL_MS", "2000"))
    # Page size when walking the open orders; every open order is visited each cycle
    MATCH_BATCH_LIMIT: int = int(os.getenv("MATCH_BATCH_LIMIT", "200"))

    # Minimum gap between two order submissions by the same user (0 = off)
    SUBMIT_MIN_INTERVAL_MS: int = int(os.getenv("SUBMIT_MIN_INTERVAL_MS", "500"))

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    # Admin endpoints are disabled while this is empty
    ADMIN_RESET_TOKEN: str = os.getenv("ADMIN_RESET_TOKEN", "")

    # Logging (console level; log files always get DEBUG)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_KEEP_FILES: int = int(os.getenv("LOG_KEEP_FILES", "10"))

    # ── Game config JSON path ─────────────────────────────────────
    GAME_CONFIG_PATH: Path = USER_CONFIG_DIR / "game_config.json"

    def __init__(self) -> None:
        """Ensure runtime directories exist and load persisted game config."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        self.load_game_config()

    # ── Persistent game configuration ─────────────────────────────

    def load_game_config(self) -> None:
        """Load game settings from game_config.json, overriding env-var defaults."""
        if not self.GAME_CONFIG_PATH.exists():
            return
        try:
            data = json.loads(self.GAME_CONFIG_PATH.read_text(encoding="utf-8"))
            self._apply_game_config(data)
        except (json.JSONDecodeError, OSError, InvalidOperation, ValueError):
            pass  # Corrupted file: keep env defaults

    def _apply_game_config(self, data: dict[str, Any]) -> None:
        """Apply a config dict to the running settings instance."""
        if "starting_cash" in data:
            self.STARTING_CASH = Decimal(str(data["starting_cash"]))
        if "quest_goal_pnl" in data:
            self.QUEST_GOAL_PNL = Decimal(str(data["quest_goal_pnl"]))
        if "symbols" in data:
            self.SYMBOLS = [str(s).strip().upper() for s in data["symbols"] if str(s).strip()]
        if "order_match_interval_ms" in data:
            self.ORDER_MATCH_INTERVAL_MS = int(data["order_match_interval_ms"])
        if "match_batch_limit" in data:
            self.MATCH_BATCH_LIMIT = int(data["match_batch_limit"])
        if "submit_min_interval_ms" in data:
            self.SUBMIT_MIN_INTERVAL_MS = int(data["submit_min_interval_ms"])

    def get_game_config(self) -> dict[str, Any]:
        """Return the current game configuration as a JSON-friendly dict."""
        return {
            "starting_cash": str(self.STARTING_CASH),
            "quest_goal_pnl": str(self.QUEST_GOAL_PNL),
            "symbols": list(self.SYMBOLS),
            "order_match_interval_ms": self.ORDER_MATCH_INTERVAL_MS,
            "match_batch_limit": self.MATCH_BATCH_LIMIT,
            "submit_min_interval_ms": self.SUBMIT_MIN_INTERVAL_MS,
        }


settings = Settings()
