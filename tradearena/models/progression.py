"""Progression models — daily quest, per-user stats blob and profile."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class QuestState(BaseModel):
    """Daily realized-profit quest, keyed by calendar day (YYYY-MM-DD, UTC)."""

    day: str
    goal_pnl: Decimal = Decimal("10")
    progress_pnl: Decimal = Decimal("0")
    done: bool = False


class ProfileStats(BaseModel):
    """Derived counters stored as JSON in ``profiles.stats``."""

    day: str | None = None  # day the *_today counters belong to
    trades_today: int = 0
    profitable_sells_today: int = 0
    quest: QuestState | None = None
    titles: list[str] = Field(default_factory=list)


class Profile(BaseModel):
    user_id: str
    xp: int = 0
    stats: ProfileStats = Field(default_factory=ProfileStats)
    updated_at: datetime | None = None
