"""Matching Engine — fills OPEN orders against the latest price ticks.

Each cycle walks the open orders oldest-first. An order fills in full against
the market maker's current quote or waits for a later cycle; there are no
partial fills and no matching between two users' orders.

A fill is one DuckDB transaction: claim the order (OPEN → FILLED), move cash
and shares, append the trade, advance progression. Anything that prevents the
fill rolls the whole transaction back and the order stays OPEN.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from tradearena.database import Database, utcnow
from tradearena.models.trading import Order, Trade
from tradearena.services.activity_log import ActivityLog
from tradearena.services.event_bus import EventBus
from tradearena.services.ledger import LedgerStore
from tradearena.services.order_book import OrderBook
from tradearena.services.price_oracle import PriceOracle
from tradearena.services.progression import ProgressionTracker
from tradearena.utils.logger import logger


class FillOutcome(str, Enum):
    FILLED = "filled"
    PRICE_UNAVAILABLE = "price_unavailable"
    PRICE_NOT_ELIGIBLE = "price_not_eligible"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_SHARES = "insufficient_shares"
    NOT_OPEN = "not_open"
    ERROR = "error"


class _FillRefused(Exception):
    """Internal: aborts the fill transaction with a non-error outcome."""

    def __init__(self, outcome: FillOutcome) -> None:
        super().__init__(outcome.value)
        self.outcome = outcome


@dataclass
class FillRecord:
    order_id: str
    user_id: str
    symbol: str
    side: str
    qty: int
    price: Decimal
    realized_pnl: Decimal
    trade_id: str


@dataclass
class CycleReport:
    """What one matching pass did."""

    started_at: datetime
    finished_at: datetime | None = None
    examined: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    fills: list[FillRecord] = field(default_factory=list)

    def count(self, outcome: FillOutcome) -> None:
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    @property
    def filled(self) -> int:
        return self.outcomes.get(FillOutcome.FILLED.value, 0)

    @property
    def errors(self) -> int:
        return self.outcomes.get(FillOutcome.ERROR.value, 0)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": self.examined,
            "filled": self.filled,
            "errors": self.errors,
            "outcomes": dict(self.outcomes),
            "fills": [
                {
                    "order_id": f.order_id,
                    "user_id": f.user_id,
                    "symbol": f.symbol,
                    "side": f.side,
                    "qty": f.qty,
                    "price": str(f.price),
                    "realized_pnl": str(f.realized_pnl),
                    "trade_id": f.trade_id,
                }
                for f in self.fills
            ],
        }


def is_eligible(order: Order, price: Decimal) -> bool:
    """Market orders always; limit buys at or below, limit sells at or above."""
    if order.order_type == "market":
        return True
    if order.limit_price is None:
        return False
    if order.side == "buy":
        return price <= order.limit_price
    return price >= order.limit_price


class MatchingEngine:
    """Single active driver of fills; everything else is passive storage."""

    def __init__(
        self,
        db: Database,
        order_book: OrderBook,
        oracle: PriceOracle,
        ledger: LedgerStore,
        progression: ProgressionTracker,
        *,
        batch_limit: int = 200,
        bus: EventBus | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self._db = db
        self._book = order_book
        self._oracle = oracle
        self._ledger = ledger
        self._progression = progression
        self._batch_limit = max(1, batch_limit)
        self._bus = bus
        self._activity = activity
        self.last_report: CycleReport | None = None
        self.cycles_run = 0

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        """Evaluate every OPEN order once, oldest first.

        Safe to call on demand: orders already FILLED or CANCELLED are never
        listed, so a replay cannot double-apply a fill.
        """
        report = CycleReport(started_at=utcnow())
        prices: dict[str, Decimal | None] = {}

        # Keyset pages of batch_limit orders, so waiting orders at the head
        # of the queue never hide the ones behind them
        cursor: tuple[datetime, int] | None = None
        while True:
            page = self._book.list_open(limit=self._batch_limit, after=cursor)
            for order in page:
                report.examined += 1
                outcome = self.process_order(order, prices, report)
                report.count(outcome)
            if len(page) < self._batch_limit:
                break
            cursor = (page[-1].created_at, page[-1].seq)

        report.finished_at = utcnow()
        self.last_report = report
        self.cycles_run += 1
        if report.fills or report.errors:
            logger.info(
                "[Matcher] Cycle: %d examined, %d filled, %d errors",
                report.examined, report.filled, report.errors,
            )
        return report

    def process_order(
        self,
        order: Order,
        prices: dict[str, Decimal | None] | None = None,
        report: CycleReport | None = None,
    ) -> FillOutcome:
        """Try to fill one order. Never raises."""
        if not order.is_open:
            return FillOutcome.NOT_OPEN

        if prices is None:
            prices = {}
        if order.symbol not in prices:
            prices[order.symbol] = self._oracle.latest_price(order.symbol)
        price = prices[order.symbol]

        if price is None:
            logger.debug("[Matcher] %s: no price for %s, waiting", order.id, order.symbol)
            return FillOutcome.PRICE_UNAVAILABLE

        if not is_eligible(order, price):
            logger.debug(
                "[Matcher] %s: %s %s limit %s not reached (last %s)",
                order.id, order.side, order.symbol, order.limit_price, price,
            )
            return FillOutcome.PRICE_NOT_ELIGIBLE

        try:
            fill = self._fill(order, price)
        except _FillRefused as refused:
            logger.info(
                "[Matcher] %s: %s %d %s @ %s refused (%s), order stays open",
                order.id, order.side, order.qty, order.symbol, price,
                refused.outcome.value,
            )
            return refused.outcome
        except Exception as exc:
            logger.exception("[Matcher] Error filling order %s", order.id)
            if self._activity is not None:
                self._activity.log_event(
                    "fill_error",
                    f"fill failed: {exc}",
                    order_id=order.id,
                    user_id=order.user_id,
                    symbol=order.symbol,
                    metadata={"price": price, "error": str(exc)},
                    status="error",
                )
            return FillOutcome.ERROR

        if report is not None:
            report.fills.append(fill)
        self._announce(order, fill)
        return FillOutcome.FILLED

    # ------------------------------------------------------------------
    # Fill transaction
    # ------------------------------------------------------------------

    def _fill(self, order: Order, price: Decimal) -> FillRecord:
        """Apply the fill atomically or raise; the transaction rolls back on raise."""
        with self._db.transaction() as conn:
            claimed = conn.execute(
                "UPDATE orders SET status = 'filled', fill_price = ?, filled_at = ? "
                "WHERE id = ? AND status = 'open' RETURNING id",
                [price, utcnow(), order.id],
            ).fetchone()
            if claimed is None:
                # Cancelled (or filled by a replay) since it was listed
                raise _FillRefused(FillOutcome.NOT_OPEN)

            if order.side == "buy":
                bought = self._ledger.apply_buy(conn, order.user_id, order.symbol, order.qty, price)
                if bought is None:
                    raise _FillRefused(FillOutcome.INSUFFICIENT_FUNDS)
                realized = Decimal("0")
                trade = self._ledger.record_trade(
                    conn,
                    order_id=order.id,
                    symbol=order.symbol,
                    price=price,
                    qty=order.qty,
                    buyer_id=order.user_id,
                )
            else:
                sold = self._ledger.apply_sell(conn, order.user_id, order.symbol, order.qty, price)
                if sold is None:
                    raise _FillRefused(FillOutcome.INSUFFICIENT_SHARES)
                realized = sold.realized_pnl
                trade = self._ledger.record_trade(
                    conn,
                    order_id=order.id,
                    symbol=order.symbol,
                    price=price,
                    qty=order.qty,
                    seller_id=order.user_id,
                )

            self._progression.advance(conn, order.user_id, order.side, realized)

        logger.info(
            "[Matcher] FILLED %s %s %d %s @ %s%s",
            order.id, order.side.upper(), order.qty, order.symbol, price,
            f" (P&L={realized})" if order.side == "sell" else "",
        )
        return _fill_record(order, price, realized, trade)

    def _announce(self, order: Order, fill: FillRecord) -> None:
        if self._activity is not None:
            self._activity.log_event(
                "order_filled",
                f"{fill.side} {fill.qty} {fill.symbol} @ {fill.price}",
                order_id=order.id,
                user_id=order.user_id,
                symbol=order.symbol,
                metadata={
                    "price": fill.price,
                    "qty": fill.qty,
                    "realized_pnl": fill.realized_pnl,
                    "trade_id": fill.trade_id,
                },
            )
        if self._bus is not None:
            filled = order.model_copy(
                update={"status": "filled", "fill_price": fill.price}
            )
            self._bus.publish("order_filled", filled.model_dump(mode="json"))
            self._bus.publish(
                "trade_executed",
                {
                    "trade_id": fill.trade_id,
                    "order_id": fill.order_id,
                    "symbol": fill.symbol,
                    "price": str(fill.price),
                    "qty": fill.qty,
                    "buyer_id": fill.user_id if fill.side == "buy" else None,
                    "seller_id": fill.user_id if fill.side == "sell" else None,
                },
            )


def _fill_record(order: Order, price: Decimal, realized: Decimal, trade: Trade) -> FillRecord:
    return FillRecord(
        order_id=order.id,
        user_id=order.user_id,
        symbol=order.symbol,
        side=order.side,
        qty=order.qty,
        price=price,
        realized_pnl=realized,
        trade_id=trade.id,
    )
