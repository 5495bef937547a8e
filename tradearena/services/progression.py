"""Progression Tracker — XP, daily profit quest and titles derived from fills.

Rules:
  - XP per fill: 5 for a sell, 2 for a buy, plus 1 per 2 units of positive
    realized profit.
  - Quest: accumulate positive realized PnL for the current UTC day until the
    goal (default 10) is reached; a new day starts a fresh quest.
  - Titles: "Active Trader" at 10 trades in a day, "Closer" at 3 profitable
    sells in a day. Titles are never revoked.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

import duckdb

from tradearena.config import settings
from tradearena.database import Database, utcnow
from tradearena.models.progression import Profile, ProfileStats, QuestState
from tradearena.utils.logger import logger

ACTIVE_TRADER = "Active Trader"
CLOSER = "Closer"

ACTIVE_TRADER_MIN_TRADES = 10
CLOSER_MIN_PROFITABLE_SELLS = 3


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def today_str(now: datetime | None = None) -> str:
    """Calendar day as YYYY-MM-DD in UTC."""
    now = now or _now_utc()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date().isoformat()


def default_quest(goal: Decimal | None = None, now: datetime | None = None) -> QuestState:
    return QuestState(
        day=today_str(now),
        goal_pnl=goal if goal is not None else settings.QUEST_GOAL_PNL,
        progress_pnl=Decimal("0"),
        done=False,
    )


def compute_xp(side: str, realized_pnl: Decimal | float | int) -> int:
    base = 5 if side == "sell" else 2
    bonus = max(0, math.floor(Decimal(str(realized_pnl)) / 2))
    return base + bonus


def update_quest(
    stats: ProfileStats,
    realized_pnl: Decimal | float | int,
    now: datetime | None = None,
    goal: Decimal | None = None,
) -> ProfileStats:
    """Return a copy of ``stats`` with today's quest advanced.

    Losses never reduce progress, and a completed quest stops accumulating.
    """
    day = today_str(now)
    if stats.quest is not None and stats.quest.day == day:
        quest = stats.quest.model_copy()
    else:
        quest = default_quest(goal, now)

    pnl = Decimal(str(realized_pnl))
    if pnl > 0 and not quest.done:
        quest.progress_pnl += pnl
        if quest.progress_pnl >= quest.goal_pnl:
            quest.done = True
    return stats.model_copy(update={"quest": quest})


def assign_titles(stats: ProfileStats) -> list[str]:
    """Earned titles, existing ones first, in earning order."""
    titles = list(stats.titles)
    if stats.trades_today >= ACTIVE_TRADER_MIN_TRADES and ACTIVE_TRADER not in titles:
        titles.append(ACTIVE_TRADER)
    if stats.profitable_sells_today >= CLOSER_MIN_PROFITABLE_SELLS and CLOSER not in titles:
        titles.append(CLOSER)
    return titles


class ProgressionTracker:
    """Persists per-user profiles and applies the rules above on each fill."""

    def __init__(
        self,
        db: Database,
        *,
        goal_pnl: Decimal | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._db = db
        self._goal_pnl = goal_pnl
        self._clock = clock

    @property
    def goal_pnl(self) -> Decimal:
        return self._goal_pnl if self._goal_pnl is not None else settings.QUEST_GOAL_PNL

    def advance(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        side: str,
        realized_pnl: Decimal,
    ) -> Profile:
        """Apply one fill to the user's profile. Runs inside the fill transaction."""
        now = self._clock()
        day = today_str(now)
        row = conn.execute(
            "SELECT xp, stats FROM profiles WHERE user_id = ?", [user_id]
        ).fetchone()
        xp = int(row[0]) if row else 0
        stats = ProfileStats.model_validate_json(row[1]) if row and row[1] else ProfileStats()

        # Daily counters roll with the calendar; titles carry over
        if stats.day != day:
            stats = stats.model_copy(
                update={"day": day, "trades_today": 0, "profitable_sells_today": 0}
            )

        stats.trades_today += 1
        if side == "sell" and realized_pnl > 0:
            stats.profitable_sells_today += 1

        gained = compute_xp(side, realized_pnl)
        stats = update_quest(stats, realized_pnl, now, self.goal_pnl)
        stats.titles = assign_titles(stats)

        updated_at = utcnow()
        if row:
            conn.execute(
                "UPDATE profiles SET xp = ?, stats = ?, updated_at = ? WHERE user_id = ?",
                [xp + gained, stats.model_dump_json(), updated_at, user_id],
            )
        else:
            conn.execute(
                "INSERT INTO profiles (user_id, xp, stats, updated_at) VALUES (?, ?, ?, ?)",
                [user_id, xp + gained, stats.model_dump_json(), updated_at],
            )

        logger.debug(
            "[Progression] %s +%d XP (%s, pnl=%s) quest=%s/%s titles=%s",
            user_id, gained, side, realized_pnl,
            stats.quest.progress_pnl if stats.quest else 0,
            stats.quest.goal_pnl if stats.quest else self.goal_pnl,
            stats.titles,
        )
        return Profile(user_id=user_id, xp=xp + gained, stats=stats, updated_at=updated_at)

    def reset_day(self, conn: duckdb.DuckDBPyConnection, user_id: str) -> Profile:
        """Zero today's counters and start a fresh quest; XP and titles stay.

        Users without a profile are left without one.
        """
        now = self._clock()
        row = conn.execute(
            "SELECT xp, stats FROM profiles WHERE user_id = ?", [user_id]
        ).fetchone()
        if not row:
            return Profile(user_id=user_id)

        stats = ProfileStats.model_validate_json(row[1]) if row[1] else ProfileStats()
        stats = stats.model_copy(
            update={
                "day": today_str(now),
                "trades_today": 0,
                "profitable_sells_today": 0,
                "quest": default_quest(self.goal_pnl, now),
            }
        )
        updated_at = utcnow()
        conn.execute(
            "UPDATE profiles SET stats = ?, updated_at = ? WHERE user_id = ?",
            [stats.model_dump_json(), updated_at, user_id],
        )
        logger.info("[Progression] Day reset for %s", user_id)
        return Profile(user_id=user_id, xp=int(row[0]), stats=stats, updated_at=updated_at)

    def get_profile(self, user_id: str) -> Profile:
        """Stored profile, or an empty one for users who never traded."""
        row = self._db.fetchone(
            "SELECT xp, stats, updated_at FROM profiles WHERE user_id = ?", [user_id]
        )
        if not row:
            return Profile(user_id=user_id)
        stats = ProfileStats.model_validate_json(row[1]) if row[1] else ProfileStats()
        return Profile(user_id=user_id, xp=int(row[0]), stats=stats, updated_at=row[2])

    def get_quest(self, user_id: str) -> QuestState:
        """Today's quest; a fresh default when the stored one is from another day."""
        now = self._clock()
        quest = self.get_profile(user_id).stats.quest
        if quest is not None and quest.day == today_str(now):
            return quest
        return default_quest(self.goal_pnl, now)
