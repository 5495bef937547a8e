"""Trading models — Order, Position, Portfolio, Trade, Tick.

Used by the matching core (OrderBook → MatchingEngine → LedgerStore).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Storage ranges: prices and cash are DECIMAL(20, 6), order quantities INTEGER
PRICE_QUANT = Decimal("0.000001")
MAX_AMOUNT = Decimal("99999999999999.999999")
MAX_ORDER_QTY = 2**31 - 1

Price = Annotated[Decimal, Field(gt=0, max_digits=20, decimal_places=6)]

Side = Literal["buy", "sell"]
OrderType = Literal["market", "limit"]
OrderStatus = Literal["open", "filled", "cancelled"]


class OrderRequest(BaseModel):
    """Validated order submission parameters."""

    user_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    side: Side
    order_type: OrderType
    qty: int = Field(gt=0, le=MAX_ORDER_QTY)
    limit_price: Price | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @field_validator("symbol", mode="before")
    @classmethod
    def _normalize_symbol(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("side", "order_type", mode="before")
    @classmethod
    def _lowercase(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("qty", mode="before")
    @classmethod
    def _reject_bool_qty(cls, v: object) -> object:
        if isinstance(v, bool):
            raise ValueError("qty must be an integer")
        return v

    @model_validator(mode="after")
    def _limit_price_iff_limit(self) -> OrderRequest:
        if self.order_type == "limit":
            if self.limit_price is None:
                raise ValueError("limit orders need a positive limit_price")
        elif self.limit_price is not None:
            raise ValueError("market orders must not carry a limit_price")
        return self


class Order(BaseModel):
    """A persisted order and its lifecycle state."""

    id: str
    seq: int
    user_id: str
    symbol: str
    side: Side
    order_type: OrderType
    qty: int
    limit_price: Decimal | None = None
    status: OrderStatus = "open"
    fill_price: Decimal | None = None
    created_at: datetime
    filled_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"


class Position(BaseModel):
    """Share count and cost basis for one (user, symbol) pair."""

    symbol: str
    shares: int = 0
    avg_cost: Decimal = Decimal("0")
    # Filled in by the portfolio view from the latest tick
    current_price: Decimal | None = None
    market_value: Decimal | None = None
    unrealized_pnl: Decimal | None = None


class Portfolio(BaseModel):
    """Cash plus open positions for one user."""

    user_id: str
    cash: Decimal
    positions: list[Position] = Field(default_factory=list)
    positions_value: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")


class Trade(BaseModel):
    """Immutable record of one fill against the market maker."""

    id: str
    order_id: str
    symbol: str
    price: Decimal
    qty: int
    buyer_id: str | None = None
    seller_id: str | None = None
    executed_at: datetime


class Tick(BaseModel):
    """One observed price sample for a symbol."""

    symbol: str
    price: Price
    volume: int = 0
    ts: datetime
