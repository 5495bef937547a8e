"""Order Book — durable queue of user orders with FIFO ordering.

Orders are created OPEN and move exactly once to FILLED (matching engine) or
CANCELLED (user/admin). Creation order, ``created_at`` then ``seq``, is the
fairness contract the matching engine walks in.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

import duckdb
from pydantic import ValidationError

from tradearena.database import Database, utcnow
from tradearena.errors import InvalidOrder, NotCancellable, OrderNotFound, RateLimited
from tradearena.models.trading import Order, OrderRequest
from tradearena.services.activity_log import ActivityLog
from tradearena.services.event_bus import EventBus
from tradearena.utils.logger import logger

ORDER_COLUMNS = (
    "id, seq, user_id, symbol, side, order_type, qty, limit_price, "
    "status, fill_price, created_at, filled_at, cancelled_at"
)


def row_to_order(row: tuple) -> Order:
    """Build an Order from a row selected with ORDER_COLUMNS."""
    return Order(
        id=row[0],
        seq=row[1],
        user_id=row[2],
        symbol=row[3],
        side=row[4],
        order_type=row[5],
        qty=row[6],
        limit_price=row[7],
        status=row[8],
        fill_price=row[9],
        created_at=row[10],
        filled_at=row[11],
        cancelled_at=row[12],
    )


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "order"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class OrderBook:
    """Submission, cancellation and FIFO listing of orders."""

    def __init__(
        self,
        db: Database,
        *,
        symbols: Iterable[str] | None = None,
        min_interval_ms: int = 0,
        bus: EventBus | None = None,
        activity: ActivityLog | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._symbols = {s.upper() for s in symbols} if symbols else None
        self._min_interval_ms = max(0, min_interval_ms)
        self._bus = bus
        self._activity = activity
        self._monotonic = monotonic
        # user_id -> monotonic timestamp of the last accepted submission
        self._last_submit: dict[str, float] = {}
        self._last_created: datetime | None = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        user_id: str,
        symbol: str,
        side: str,
        order_type: str,
        qty: int,
        limit_price: Decimal | float | str | None = None,
    ) -> Order:
        """Validate and persist a new OPEN order.

        Raises InvalidOrder for malformed parameters and RateLimited when the
        user submits faster than the configured interval.
        """
        try:
            req = OrderRequest(
                user_id=user_id,
                symbol=symbol,
                side=side,
                order_type=order_type,
                qty=qty,
                limit_price=limit_price,
            )
        except ValidationError as exc:
            logger.info("[OrderBook] Rejected order from %s: %s", user_id, exc.error_count())
            raise InvalidOrder(_describe_validation_error(exc)) from exc

        if self._symbols is not None and req.symbol not in self._symbols:
            raise InvalidOrder(f"symbol: unknown symbol {req.symbol}")

        self._check_rate(req.user_id)

        order_id = uuid.uuid4().hex
        now = self._next_created_at()
        row = self._db.fetchone(
            """
            INSERT INTO orders
                (id, user_id, symbol, side, order_type, qty, limit_price,
                 status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'open', ?)
            RETURNING seq
            """,
            [
                order_id,
                req.user_id,
                req.symbol,
                req.side,
                req.order_type,
                req.qty,
                req.limit_price,
                now,
            ],
        )
        order = Order(
            id=order_id,
            seq=row[0],
            user_id=req.user_id,
            symbol=req.symbol,
            side=req.side,
            order_type=req.order_type,
            qty=req.qty,
            limit_price=req.limit_price,
            status="open",
            created_at=now,
        )
        logger.info(
            "[OrderBook] %s %s %s x%d%s for %s (id=%s)",
            order.order_type.upper(), order.side.upper(), order.symbol, order.qty,
            f" @ {order.limit_price}" if order.limit_price is not None else "",
            order.user_id, order.id,
        )
        self._emit("order_submitted", order, f"{order.side} {order.qty} {order.symbol}")
        return order

    def _next_created_at(self) -> datetime:
        """Wall-clock now, nudged forward so creation times never repeat."""
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    def _check_rate(self, user_id: str) -> None:
        if not self._min_interval_ms:
            return
        now = self._monotonic()
        last = self._last_submit.get(user_id)
        if last is not None:
            elapsed_ms = (now - last) * 1000
            if elapsed_ms < self._min_interval_ms:
                raise RateLimited(user_id, int(self._min_interval_ms - elapsed_ms) + 1)
        self._last_submit[user_id] = now

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, order_id: str, user_id: str | None = None) -> Order:
        """Move an OPEN order to CANCELLED.

        The status check and the update are one statement, so a cancel racing
        a fill can only succeed if the fill has not committed yet.
        """
        params: list = [utcnow(), order_id]
        owner_clause = ""
        if user_id is not None:
            owner_clause = " AND user_id = ?"
            params.append(user_id)

        row = self._db.fetchone(
            f"""
            UPDATE orders SET status = 'cancelled', cancelled_at = ?
            WHERE id = ? AND status = 'open'{owner_clause}
            RETURNING {ORDER_COLUMNS}
            """,
            params,
        )
        if row is None:
            existing = self.get(order_id)
            if existing is None or (user_id is not None and existing.user_id != user_id):
                raise OrderNotFound(order_id)
            raise NotCancellable(order_id, existing.status)

        order = row_to_order(row)
        self.announce_cancelled([order])
        return order

    def cancel_open_orders(
        self, conn: duckdb.DuckDBPyConnection, user_id: str,
    ) -> list[Order]:
        """Cancel every OPEN order of ``user_id`` inside the caller's transaction.

        Nothing is announced; call ``announce_cancelled`` after commit.
        """
        rows = conn.execute(
            f"""
            UPDATE orders SET status = 'cancelled', cancelled_at = ?
            WHERE user_id = ? AND status = 'open'
            RETURNING {ORDER_COLUMNS}
            """,
            [utcnow(), user_id],
        ).fetchall()
        return sorted((row_to_order(r) for r in rows), key=lambda o: (o.created_at, o.seq))

    def announce_cancelled(self, orders: Iterable[Order]) -> None:
        for order in orders:
            logger.info("[OrderBook] Cancelled %s (%s %s)", order.id, order.side, order.symbol)
            self._emit("order_cancelled", order, f"cancelled {order.side} {order.qty} {order.symbol}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Order | None:
        row = self._db.fetchone(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = ?", [order_id]
        )
        return row_to_order(row) if row else None

    def list_open(
        self,
        user_id: str | None = None,
        limit: int | None = None,
        after: tuple[datetime, int] | None = None,
    ) -> list[Order]:
        """OPEN orders, oldest first (created_at, then seq).

        ``after`` is the ``(created_at, seq)`` of the last order of a previous
        page; only orders strictly later in FIFO order are returned.
        """
        sql = f"SELECT {ORDER_COLUMNS} FROM orders WHERE status = 'open'"
        params: list = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if after is not None:
            sql += " AND (created_at > ? OR (created_at = ? AND seq > ?))"
            params.extend([after[0], after[0], after[1]])
        sql += " ORDER BY created_at ASC, seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [row_to_order(r) for r in self._db.fetchall(sql, params)]

    def list_orders(
        self,
        user_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Order]:
        """Order history, newest first."""
        conditions: list[str] = []
        params: list = []
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self._db.fetchall(
            f"SELECT {ORDER_COLUMNS} FROM orders{where} "
            "ORDER BY created_at DESC, seq DESC LIMIT ?",
            params,
        )
        return [row_to_order(r) for r in rows]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, event: str, order: Order, detail: str) -> None:
        if self._activity is not None:
            self._activity.log_event(
                event,
                detail,
                order_id=order.id,
                user_id=order.user_id,
                symbol=order.symbol,
                metadata={"order_type": order.order_type, "limit_price": order.limit_price},
            )
        if self._bus is not None:
            self._bus.publish(event, order.model_dump(mode="json"))
