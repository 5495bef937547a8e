"""Price Oracle — latest tick price per symbol.

The matching engine only ever reads the newest tick of a symbol. Ticks are
produced elsewhere (a market simulator); ``record_tick`` is the ingestion seam.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal, InvalidOperation

from pydantic import ValidationError

from tradearena.database import Database, utcnow
from tradearena.models.trading import PRICE_QUANT, Tick
from tradearena.utils.logger import logger


class PriceOracle:
    """Read-only view of the most recent price for each symbol."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def latest_price(self, symbol: str) -> Decimal | None:
        """Return the price of the newest tick, or None when there is none.

        A non-positive stored price is treated as unavailable.
        """
        row = self._db.fetchone(
            "SELECT price FROM ticks WHERE symbol = ? "
            "ORDER BY ts DESC, seq DESC LIMIT 1",
            [symbol.strip().upper()],
        )
        if not row or row[0] is None or row[0] <= 0:
            return None
        return row[0]

    def latest_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        """Latest price for each symbol that has one."""
        prices: dict[str, Decimal] = {}
        for symbol in {s.strip().upper() for s in symbols}:
            price = self.latest_price(symbol)
            if price is not None:
                prices[symbol] = price
        return prices

    def record_tick(
        self,
        symbol: str,
        price: Decimal | float | str,
        volume: int = 0,
        ts: datetime | None = None,
    ) -> Tick:
        """Append a tick for ``symbol``.

        The price is rounded to 6 decimal places; a price that rounds to zero
        or does not fit DECIMAL(20, 6) raises ValueError.
        """
        try:
            rounded = Decimal(str(price)).quantize(PRICE_QUANT)
            tick = Tick(
                symbol=symbol.strip().upper(),
                price=rounded,
                volume=volume,
                ts=ts or utcnow(),
            )
        except (InvalidOperation, ValidationError) as exc:
            raise ValueError(f"Invalid tick price {price!r} for {symbol}") from exc
        self._db.execute(
            "INSERT INTO ticks (symbol, price, volume, ts) VALUES (?, ?, ?, ?)",
            [tick.symbol, tick.price, tick.volume, tick.ts],
        )
        logger.debug("[PriceOracle] tick %s @ %s", tick.symbol, tick.price)
        return tick
