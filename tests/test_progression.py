"""Tests for XP, the daily profit quest and titles."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradearena.models.progression import ProfileStats, QuestState
from tradearena.services.progression import (
    ACTIVE_TRADER,
    CLOSER,
    ProgressionTracker,
    assign_titles,
    compute_xp,
    default_quest,
    today_str,
    update_quest,
)

NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
# Pure rules
# ──────────────────────────────────────────────────────────────

class TestXp:

    @pytest.mark.parametrize(
        "side, pnl, expected",
        [
            ("sell", 0, 5),
            ("sell", 4, 7),
            ("sell", 10, 10),
            ("sell", Decimal("5.99"), 7),
            ("sell", -8, 5),
            ("buy", 0, 2),
            ("buy", -3, 2),
        ],
    )
    def test_compute_xp(self, side, pnl, expected) -> None:
        assert compute_xp(side, pnl) == expected


class TestQuest:

    def test_today_str_is_utc(self) -> None:
        late_in_new_york = datetime(2026, 3, 2, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert today_str(late_in_new_york) == "2026-03-03"
        assert today_str(NOON) == "2026-03-02"

    def test_default_quest(self) -> None:
        q = default_quest(Decimal("10"), NOON)
        assert q == QuestState(day="2026-03-02", goal_pnl=Decimal("10"))

    def test_accumulates_until_done(self) -> None:
        stats = update_quest(ProfileStats(), 6, NOON, Decimal("10"))
        assert stats.quest.progress_pnl == Decimal("6")
        assert stats.quest.done is False

        stats = update_quest(stats, 5, NOON, Decimal("10"))
        assert stats.quest.progress_pnl == Decimal("11")
        assert stats.quest.done is True

    def test_completed_quest_stops_accumulating(self) -> None:
        stats = update_quest(ProfileStats(), 12, NOON, Decimal("10"))
        stats = update_quest(stats, 3, NOON, Decimal("10"))
        assert stats.quest.progress_pnl == Decimal("12")

    def test_losses_never_reduce_progress(self) -> None:
        stats = update_quest(ProfileStats(), 4, NOON, Decimal("10"))
        stats = update_quest(stats, -3, NOON, Decimal("10"))
        assert stats.quest.progress_pnl == Decimal("4")

    def test_new_day_resets_quest(self) -> None:
        stats = update_quest(ProfileStats(), 12, NOON, Decimal("10"))
        tomorrow = NOON + timedelta(days=1)
        stats = update_quest(stats, 2, tomorrow, Decimal("10"))
        assert stats.quest.day == "2026-03-03"
        assert stats.quest.progress_pnl == Decimal("2")
        assert stats.quest.done is False

    def test_does_not_mutate_input(self) -> None:
        original = ProfileStats(quest=QuestState(day="2026-03-02"))
        update_quest(original, 5, NOON, Decimal("10"))
        assert original.quest.progress_pnl == Decimal("0")


class TestTitles:

    def test_thresholds(self) -> None:
        assert assign_titles(ProfileStats(trades_today=9, profitable_sells_today=2)) == []
        assert assign_titles(ProfileStats(trades_today=10)) == [ACTIVE_TRADER]
        assert assign_titles(ProfileStats(profitable_sells_today=3)) == [CLOSER]

    def test_existing_titles_kept_without_duplicates(self) -> None:
        stats = ProfileStats(trades_today=12, profitable_sells_today=0, titles=[ACTIVE_TRADER])
        assert assign_titles(stats) == [ACTIVE_TRADER]
        stats = ProfileStats(trades_today=0, titles=[CLOSER])
        assert assign_titles(stats) == [CLOSER]


# ──────────────────────────────────────────────────────────────
# ProgressionTracker (persisted)
# ──────────────────────────────────────────────────────────────

class TestProgressionTracker:

    @pytest.fixture()
    def clock(self):
        now = [NOON]
        return now

    @pytest.fixture()
    def tracker(self, runtime, clock):
        return ProgressionTracker(runtime.db, goal_pnl=Decimal("10"), clock=lambda: clock[0])

    @staticmethod
    def _advance(runtime, tracker, side, pnl):
        with runtime.db.transaction() as conn:
            return tracker.advance(conn, "alice", side, Decimal(str(pnl)))

    def test_unknown_user_has_empty_profile(self, tracker) -> None:
        profile = tracker.get_profile("nobody")
        assert profile.xp == 0
        assert profile.stats.titles == []
        quest = tracker.get_quest("nobody")
        assert quest.day == "2026-03-02"
        assert quest.progress_pnl == Decimal("0")

    def test_advance_persists(self, runtime, tracker) -> None:
        self._advance(runtime, tracker, "buy", 0)
        profile = self._advance(runtime, tracker, "sell", 6)
        assert profile.xp == 2 + 8

        stored = tracker.get_profile("alice")
        assert stored.xp == 10
        assert stored.stats.trades_today == 2
        assert stored.stats.profitable_sells_today == 1
        assert stored.stats.quest.progress_pnl == Decimal("6")
        assert stored.updated_at is not None

    def test_titles_earned(self, runtime, tracker) -> None:
        for _ in range(7):
            self._advance(runtime, tracker, "buy", 0)
        for _ in range(3):
            self._advance(runtime, tracker, "sell", 1)
        titles = tracker.get_profile("alice").stats.titles
        assert titles == [ACTIVE_TRADER, CLOSER]

    def test_losing_sell_is_not_profitable(self, runtime, tracker) -> None:
        self._advance(runtime, tracker, "sell", -4)
        stats = tracker.get_profile("alice").stats
        assert stats.profitable_sells_today == 0
        assert stats.quest.progress_pnl == Decimal("0")

    def test_day_rollover_resets_counters_keeps_titles(self, runtime, tracker, clock) -> None:
        for _ in range(10):
            self._advance(runtime, tracker, "buy", 0)
        self._advance(runtime, tracker, "sell", 12)
        assert tracker.get_quest("alice").done is True

        clock[0] = NOON + timedelta(days=1)
        assert tracker.get_quest("alice").done is False

        self._advance(runtime, tracker, "buy", 0)
        stats = tracker.get_profile("alice").stats
        assert stats.day == "2026-03-03"
        assert stats.trades_today == 1
        assert stats.profitable_sells_today == 0
        assert ACTIVE_TRADER in stats.titles
        assert stats.quest.day == "2026-03-03"
        assert stats.quest.progress_pnl == Decimal("0")

    def test_rollback_discards_progress(self, runtime, tracker) -> None:
        with pytest.raises(RuntimeError):
            with runtime.db.transaction() as conn:
                tracker.advance(conn, "alice", "sell", Decimal("20"))
                raise RuntimeError("fill failed later")
        assert tracker.get_profile("alice").xp == 0

    def test_reset_day_clears_daily_state_keeps_xp_and_titles(self, runtime, tracker) -> None:
        for _ in range(10):
            self._advance(runtime, tracker, "buy", 0)
        self._advance(runtime, tracker, "sell", 12)
        before = tracker.get_profile("alice")
        assert before.stats.quest.done is True

        with runtime.db.transaction() as conn:
            reset = tracker.reset_day(conn, "alice")
        assert reset.xp == before.xp

        stored = tracker.get_profile("alice")
        assert stored.xp == before.xp
        assert stored.stats.titles == [ACTIVE_TRADER]
        assert stored.stats.day == "2026-03-02"
        assert stored.stats.trades_today == 0
        assert stored.stats.profitable_sells_today == 0
        assert stored.stats.quest == default_quest(Decimal("10"), NOON)
        assert tracker.get_quest("alice").done is False

    def test_reset_day_without_profile_creates_nothing(self, runtime, tracker) -> None:
        with runtime.db.transaction() as conn:
            profile = tracker.reset_day(conn, "nobody")
        assert profile.xp == 0
        assert runtime.db.fetchone(
            "SELECT COUNT(*) FROM profiles WHERE user_id = ?", ["nobody"]
        )[0] == 0
