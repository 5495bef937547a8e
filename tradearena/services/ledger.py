"""Ledger Store — per-user cash, share positions and the trade record.

Cash and positions change only inside a fill transaction opened by the
matching engine; ``apply_buy`` / ``apply_sell`` / ``record_trade`` take the
transaction's connection explicitly. Read-side queries (portfolio, trades) go
through the shared Database.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

import duckdb

from tradearena.config import settings
from tradearena.database import Database, utcnow
from tradearena.errors import AccountNotFound
from tradearena.models.trading import MAX_AMOUNT, Portfolio, Position, Trade
from tradearena.services.price_oracle import PriceOracle
from tradearena.utils.logger import logger

_AVG_COST_QUANT = Decimal("0.000001")


def _check_cash(cash: Decimal) -> Decimal:
    if cash < 0 or cash > MAX_AMOUNT:
        raise ValueError(f"Cash must be between 0 and {MAX_AMOUNT}, got {cash}")
    return cash


@dataclass(frozen=True)
class BuyResult:
    cost: Decimal
    cash_after: Decimal
    shares_after: int
    avg_cost_after: Decimal


@dataclass(frozen=True)
class SellResult:
    proceeds: Decimal
    cash_after: Decimal
    shares_after: int
    avg_cost: Decimal
    realized_pnl: Decimal


class LedgerStore:
    """Cash and share positions for every user."""

    def __init__(
        self,
        db: Database,
        oracle: PriceOracle | None = None,
        starting_cash: Decimal | None = None,
    ) -> None:
        self._db = db
        self._oracle = oracle
        self._starting_cash = starting_cash

    @property
    def starting_cash(self) -> Decimal:
        if self._starting_cash is not None:
            return self._starting_cash
        return settings.STARTING_CASH

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(self, user_id: str, starting_cash: Decimal | None = None) -> Decimal:
        """Create the user's portfolio if missing; return its cash balance."""
        with self._db.transaction() as conn:
            return self._ensure_portfolio(conn, user_id, starting_cash)

    def _ensure_portfolio(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        starting_cash: Decimal | None = None,
    ) -> Decimal:
        row = conn.execute(
            "SELECT cash FROM portfolios WHERE user_id = ?", [user_id]
        ).fetchone()
        if row:
            return row[0]

        cash = _check_cash(starting_cash if starting_cash is not None else self.starting_cash)
        now = utcnow()
        conn.execute(
            "INSERT INTO portfolios (user_id, cash, created_at, updated_at) "
            "VALUES (?, ?, ?, ?)",
            [user_id, cash, now, now],
        )
        logger.info("[Ledger] Opened account %s with $%s", user_id, cash)
        return Decimal(cash)

    def reset_account(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        reset_holdings: bool = False,
    ) -> Decimal:
        """Put cash back to the starting amount, optionally zeroing every position.

        Caller owns the transaction. Raises AccountNotFound for unknown users.
        """
        row = conn.execute(
            "SELECT cash FROM portfolios WHERE user_id = ?", [user_id]
        ).fetchone()
        if row is None:
            raise AccountNotFound(user_id)

        cash = _check_cash(self.starting_cash)
        now = utcnow()
        conn.execute(
            "UPDATE portfolios SET cash = ?, updated_at = ? WHERE user_id = ?",
            [cash, now, user_id],
        )
        if reset_holdings:
            conn.execute(
                "UPDATE positions SET shares = 0, last_updated = ? "
                "WHERE user_id = ? AND shares > 0",
                [now, user_id],
            )
        logger.info(
            "[Ledger] Reset %s to $%s%s", user_id, cash,
            " (holdings cleared)" if reset_holdings else "",
        )
        return cash

    # ------------------------------------------------------------------
    # Fill mutations (caller owns the transaction)
    # ------------------------------------------------------------------

    def apply_buy(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        symbol: str,
        qty: int,
        price: Decimal,
    ) -> BuyResult | None:
        """Debit cash and add shares. Returns None if cash < qty * price."""
        cash = self._ensure_portfolio(conn, user_id)
        cost = qty * price
        if cash < cost:
            return None

        now = utcnow()
        cash_after = cash - cost
        conn.execute(
            "UPDATE portfolios SET cash = ?, updated_at = ? WHERE user_id = ?",
            [cash_after, now, user_id],
        )

        existing = self._position_row(conn, user_id, symbol)
        if existing:
            old_shares, old_avg = existing
            new_shares = old_shares + qty
            new_avg = ((old_shares * old_avg + cost) / new_shares).quantize(_AVG_COST_QUANT)
            conn.execute(
                """
                UPDATE positions
                SET shares = ?, avg_cost = ?, last_updated = ?
                WHERE user_id = ? AND symbol = ?
                """,
                [new_shares, new_avg, now, user_id, symbol],
            )
        else:
            new_shares = qty
            new_avg = price.quantize(_AVG_COST_QUANT)
            conn.execute(
                """
                INSERT INTO positions
                    (user_id, symbol, shares, avg_cost, opened_at, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [user_id, symbol, new_shares, new_avg, now, now],
            )

        return BuyResult(
            cost=cost,
            cash_after=cash_after,
            shares_after=new_shares,
            avg_cost_after=new_avg,
        )

    def apply_sell(
        self,
        conn: duckdb.DuckDBPyConnection,
        user_id: str,
        symbol: str,
        qty: int,
        price: Decimal,
    ) -> SellResult | None:
        """Remove shares and credit cash. Returns None if shares < qty.

        Average cost is left untouched; only buys move the cost basis.
        """
        existing = self._position_row(conn, user_id, symbol)
        if not existing or existing[0] < qty:
            return None
        shares, avg_cost = existing

        cash = self._ensure_portfolio(conn, user_id)
        now = utcnow()
        shares_after = shares - qty
        conn.execute(
            "UPDATE positions SET shares = ?, last_updated = ? "
            "WHERE user_id = ? AND symbol = ?",
            [shares_after, now, user_id, symbol],
        )

        proceeds = qty * price
        cash_after = _check_cash(cash + proceeds)
        conn.execute(
            "UPDATE portfolios SET cash = ?, updated_at = ? WHERE user_id = ?",
            [cash_after, now, user_id],
        )

        return SellResult(
            proceeds=proceeds,
            cash_after=cash_after,
            shares_after=shares_after,
            avg_cost=avg_cost,
            realized_pnl=(price - avg_cost) * qty,
        )

    def record_trade(
        self,
        conn: duckdb.DuckDBPyConnection,
        *,
        order_id: str,
        symbol: str,
        price: Decimal,
        qty: int,
        buyer_id: str | None = None,
        seller_id: str | None = None,
    ) -> Trade:
        """Append one trade row (the market maker is the other side)."""
        trade = Trade(
            id=uuid.uuid4().hex,
            order_id=order_id,
            symbol=symbol,
            price=price,
            qty=qty,
            buyer_id=buyer_id,
            seller_id=seller_id,
            executed_at=utcnow(),
        )
        conn.execute(
            """
            INSERT INTO trades
                (id, order_id, symbol, price, qty, buyer_id, seller_id, executed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                trade.id,
                trade.order_id,
                trade.symbol,
                trade.price,
                trade.qty,
                trade.buyer_id,
                trade.seller_id,
                trade.executed_at,
            ],
        )
        return trade

    @staticmethod
    def _position_row(
        conn: duckdb.DuckDBPyConnection, user_id: str, symbol: str,
    ) -> tuple[int, Decimal] | None:
        row = conn.execute(
            "SELECT shares, avg_cost FROM positions WHERE user_id = ? AND symbol = ?",
            [user_id, symbol],
        ).fetchone()
        return (row[0], row[1]) if row else None

    # ------------------------------------------------------------------
    # Portfolio queries
    # ------------------------------------------------------------------

    def get_cash(self, user_id: str) -> Decimal | None:
        """Cash balance, or None if the user has no account yet."""
        row = self._db.fetchone(
            "SELECT cash FROM portfolios WHERE user_id = ?", [user_id]
        )
        return row[0] if row else None

    def get_position(self, user_id: str, symbol: str) -> Position | None:
        row = self._db.fetchone(
            "SELECT symbol, shares, avg_cost FROM positions "
            "WHERE user_id = ? AND symbol = ?",
            [user_id, symbol.strip().upper()],
        )
        if not row:
            return None
        return Position(symbol=row[0], shares=row[1], avg_cost=row[2])

    def get_positions(self, user_id: str) -> list[Position]:
        """Positions with shares > 0, alphabetical by symbol."""
        rows = self._db.fetchall(
            "SELECT symbol, shares, avg_cost FROM positions "
            "WHERE user_id = ? AND shares > 0 ORDER BY symbol",
            [user_id],
        )
        return [Position(symbol=r[0], shares=r[1], avg_cost=r[2]) for r in rows]

    def get_portfolio(self, user_id: str) -> Portfolio:
        """Cash, positions marked to the latest tick, and total value.

        Opens the account with starting cash on first access. Positions
        without a price are counted at cost.
        """
        cash = self.open_account(user_id)
        positions = self.get_positions(user_id)
        prices = (
            self._oracle.latest_prices(p.symbol for p in positions)
            if self._oracle is not None and positions
            else {}
        )

        positions_value = Decimal("0")
        for pos in positions:
            price = prices.get(pos.symbol)
            if price is not None:
                pos.current_price = price
                pos.market_value = price * pos.shares
                pos.unrealized_pnl = (price - pos.avg_cost) * pos.shares
                positions_value += pos.market_value
            else:
                positions_value += pos.avg_cost * pos.shares

        return Portfolio(
            user_id=user_id,
            cash=cash,
            positions=positions,
            positions_value=positions_value,
            total_value=cash + positions_value,
        )

    def list_trades(
        self,
        user_id: str | None = None,
        symbol: str | None = None,
        limit: int = 50,
    ) -> list[Trade]:
        """Trade history, newest first."""
        conditions: list[str] = []
        params: list = []
        if user_id is not None:
            conditions.append("(buyer_id = ? OR seller_id = ?)")
            params.extend([user_id, user_id])
        if symbol is not None:
            conditions.append("symbol = ?")
            params.append(symbol.strip().upper())
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self._db.fetchall(
            "SELECT id, order_id, symbol, price, qty, buyer_id, seller_id, executed_at "
            f"FROM trades{where} ORDER BY executed_at DESC LIMIT ?",
            params,
        )
        return [
            Trade(
                id=r[0],
                order_id=r[1],
                symbol=r[2],
                price=r[3],
                qty=r[4],
                buyer_id=r[5],
                seller_id=r[6],
                executed_at=r[7],
            )
            for r in rows
        ]
