"""Runtime — builds and owns every trading-core component.

Constructed once at process start, torn down at shutdown. Nothing in the core
keeps state at module level; the HTTP app and the headless matcher script
both go through a TradingRuntime.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from tradearena.config import Settings, settings as default_settings
from tradearena.database import Database
from tradearena.services.activity_log import ActivityLog
from tradearena.services.event_bus import EventBus
from tradearena.services.ledger import LedgerStore
from tradearena.services.matching_engine import MatchingEngine
from tradearena.services.order_book import OrderBook
from tradearena.services.price_oracle import PriceOracle
from tradearena.services.progression import ProgressionTracker
from tradearena.services.scheduler import MatchingScheduler
from tradearena.utils.logger import logger


class TradingRuntime:
    """Order book, ledger, progression and matcher wired to one database."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        db_path: Path | str | None = None,
        starting_cash: Decimal | None = None,
        submit_min_interval_ms: int | None = None,
        symbols: list[str] | None = None,
    ) -> None:
        cfg = config or default_settings
        self.settings = cfg

        self.db = Database(db_path or cfg.DB_PATH)
        self.bus = EventBus()
        self.activity = ActivityLog(self.db)
        self.oracle = PriceOracle(self.db)
        self.order_book = OrderBook(
            self.db,
            symbols=cfg.SYMBOLS if symbols is None else symbols,
            min_interval_ms=(
                cfg.SUBMIT_MIN_INTERVAL_MS
                if submit_min_interval_ms is None
                else submit_min_interval_ms
            ),
            bus=self.bus,
            activity=self.activity,
        )
        self.ledger = LedgerStore(
            self.db,
            self.oracle,
            starting_cash=starting_cash if starting_cash is not None else cfg.STARTING_CASH,
        )
        self.progression = ProgressionTracker(self.db, goal_pnl=cfg.QUEST_GOAL_PNL)
        self.engine = MatchingEngine(
            self.db,
            self.order_book,
            self.oracle,
            self.ledger,
            self.progression,
            batch_limit=cfg.MATCH_BATCH_LIMIT,
            bus=self.bus,
            activity=self.activity,
        )
        self.scheduler = MatchingScheduler(
            self.engine, self.db, interval_ms=cfg.ORDER_MATCH_INTERVAL_MS,
        )

    def start(self, schedule: bool = True) -> None:
        """Open the database and, if asked, start the matching loop.

        Scheduling needs a running asyncio event loop.
        """
        self.db.connect()
        if schedule:
            self.scheduler.start()
        logger.info("[Runtime] Started (matching loop %s)", "on" if schedule else "off")

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.db.close()
        logger.info("[Runtime] Shut down")

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def reset_day(self, user_id: str, reset_holdings: bool = False) -> dict:
        """Give a user a fresh day: starting cash, zeroed daily counters, new quest.

        XP and titles are kept. With ``reset_holdings`` every position is
        zeroed and the user's OPEN orders are cancelled. Cash, progression and
        order changes commit together. Raises AccountNotFound for unknown users.
        """
        with self.db.transaction() as conn:
            cash = self.ledger.reset_account(conn, user_id, reset_holdings)
            profile = self.progression.reset_day(conn, user_id)
            cancelled = (
                self.order_book.cancel_open_orders(conn, user_id) if reset_holdings else []
            )

        self.order_book.announce_cancelled(cancelled)
        self.activity.log_event(
            "account_reset",
            f"day reset to ${cash}" + (" with holdings cleared" if reset_holdings else ""),
            user_id=user_id,
            metadata={
                "starting_cash": cash,
                "reset_holdings": reset_holdings,
                "cancelled_orders": [o.id for o in cancelled],
            },
        )
        logger.info(
            "[Runtime] Day reset for %s (%d orders cancelled)", user_id, len(cancelled)
        )
        return {
            "ok": True,
            "user_id": user_id,
            "starting_cash": str(cash),
            "holdings_reset": reset_holdings,
            "cancelled_orders": [o.id for o in cancelled],
            "profile": profile.model_dump(mode="json"),
        }
