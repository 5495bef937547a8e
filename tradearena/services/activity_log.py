"""Activity Log — persistent audit trail of the order lifecycle.

Every submission, cancellation, fill and failed fill attempt is written to
the ``engine_events`` DuckDB table and served via ``GET /api/events``.
"""

from __future__ import annotations

import json
import uuid

from tradearena.database import Database, utcnow
from tradearena.utils.logger import logger


class ActivityLog:
    """Writes and reads ``engine_events`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def log_event(
        self,
        event_type: str,
        detail: str,
        *,
        order_id: str | None = None,
        user_id: str | None = None,
        symbol: str | None = None,
        metadata: dict | None = None,
        status: str = "success",
    ) -> None:
        """Write one event row to engine_events.

        Parameters
        ----------
        event_type : str
            Short event name: ``order_submitted``, ``order_cancelled``,
            ``order_filled``, ``fill_error`` or ``account_reset``.
        detail : str
            Human-readable summary.
        order_id, user_id, symbol : str | None
            What the event is about (``None`` for system-level events).
        metadata : dict | None
            Arbitrary JSON blob with prices, quantities, error text.
        status : str
            ``success`` | ``error`` | ``warning``.
        """
        try:
            self._db.execute(
                """
                INSERT INTO engine_events
                    (id, timestamp, event_type, order_id, user_id,
                     symbol, detail, metadata, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    uuid.uuid4().hex,
                    utcnow(),
                    event_type,
                    order_id,
                    user_id,
                    symbol,
                    detail,
                    json.dumps(metadata or {}, default=str),
                    status,
                ],
            )
        except Exception as exc:
            # Never let audit failures break order handling
            logger.warning("[ActivityLog] Failed to log event: %s", exc)

    def list_events(
        self,
        limit: int = 200,
        user_id: str | None = None,
        event_type: str | None = None,
    ) -> list[dict]:
        """Newest-first events with optional filtering."""
        conditions: list[str] = []
        params: list = []

        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        rows = self._db.fetchall(
            f"""
            SELECT id, timestamp, event_type, order_id, user_id,
                   symbol, detail, metadata, status
            FROM engine_events
            {where}
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            params,
        )
        return [
            {
                "id": r[0],
                "timestamp": str(r[1]) if r[1] else None,
                "event_type": r[2],
                "order_id": r[3],
                "user_id": r[4],
                "symbol": r[5],
                "detail": r[6],
                "metadata": json.loads(r[7]) if r[7] else {},
                "status": r[8],
            }
            for r in rows
        ]
