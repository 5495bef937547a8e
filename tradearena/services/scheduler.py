"""Matching Scheduler — APScheduler loop that drives the matching engine.

One interval job runs a matching cycle every ``ORDER_MATCH_INTERVAL_MS``.
``max_instances=1`` plus ``coalesce`` means a slow cycle delays the next one
instead of overlapping it. On-demand runs (admin replay) are recorded in the
``scheduler_runs`` table.
"""

from __future__ import annotations

import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradearena.database import Database, utcnow
from tradearena.services.matching_engine import CycleReport, MatchingEngine
from tradearena.utils.logger import logger

_JOB_ID = "order_matcher"


class MatchingScheduler:
    """Owns the periodic matching job."""

    def __init__(
        self,
        engine: MatchingEngine,
        db: Database,
        interval_ms: int = 2000,
    ) -> None:
        self._engine = engine
        self._db = db
        self.interval_ms = max(50, interval_ms)
        self._scheduler: AsyncIOScheduler | None = None
        self.is_running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> dict:
        """Start the periodic matching loop (needs a running event loop)."""
        if self.is_running:
            return {"status": "already_running"}

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._match_tick,
            IntervalTrigger(seconds=self.interval_ms / 1000),
            id=_JOB_ID,
            name="Order Matcher",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self.is_running = True
        logger.info("[Scheduler] Started order matcher @ %d ms", self.interval_ms)
        return {"status": "started", "interval_ms": self.interval_ms}

    def stop(self) -> dict:
        """Stop the loop; an in-flight cycle finishes on its own."""
        if not self.is_running or not self._scheduler:
            return {"status": "not_running"}

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self.is_running = False
        logger.info("[Scheduler] Stopped order matcher")
        return {"status": "stopped"}

    # ------------------------------------------------------------------
    # Status & History
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        next_run = None
        if self._scheduler and self.is_running:
            job = self._scheduler.get_job(_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()

        last = self._engine.last_report
        return {
            "is_running": self.is_running,
            "interval_ms": self.interval_ms,
            "next_run": next_run,
            "cycles_run": self._engine.cycles_run,
            "last_cycle": last.to_dict() if last else None,
        }

    def get_history(self, limit: int = 20) -> list[dict]:
        """Recent on-demand run history from DB."""
        rows = self._db.fetchall(
            "SELECT id, job_name, started_at, completed_at, status, "
            "summary, error "
            "FROM scheduler_runs "
            "ORDER BY started_at DESC LIMIT ?",
            [limit],
        )
        return [
            {
                "id": r[0],
                "job_name": r[1],
                "started_at": str(r[2]) if r[2] else None,
                "completed_at": str(r[3]) if r[3] else None,
                "status": r[4],
                "summary": r[5],
                "error": r[6],
            }
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Manual trigger
    # ------------------------------------------------------------------

    def run_now(self) -> CycleReport:
        """Run one matching cycle immediately and record it."""
        run_id = self._log_start("manual_match")
        try:
            report = self._engine.run_cycle()
        except Exception as e:
            self._log_end(run_id, "error", error=str(e))
            logger.exception("[Scheduler] Manual matching run failed")
            raise

        summary = (
            f"{report.examined} examined, {report.filled} filled, "
            f"{report.errors} errors"
        )
        self._log_end(run_id, "success", summary)
        return report

    # ------------------------------------------------------------------
    # Job implementation
    # ------------------------------------------------------------------

    async def _match_tick(self) -> None:
        """Every interval: one matching cycle."""
        try:
            self._engine.run_cycle()
        except Exception:
            logger.exception("[Scheduler] Matching cycle failed")

    # ------------------------------------------------------------------
    # DB logging helpers
    # ------------------------------------------------------------------

    def _log_start(self, job_name: str) -> str:
        run_id = str(uuid.uuid4())[:8]
        self._db.execute(
            "INSERT INTO scheduler_runs (id, job_name, started_at, status) "
            "VALUES (?, ?, ?, 'running')",
            [run_id, job_name, utcnow()],
        )
        return run_id

    def _log_end(
        self,
        run_id: str,
        status: str,
        summary: str = "",
        error: str = "",
    ) -> None:
        self._db.execute(
            "UPDATE scheduler_runs "
            "SET completed_at = ?, status = ?, summary = ?, error = ? "
            "WHERE id = ?",
            [utcnow(), status, summary, error, run_id],
        )
