"""Domain exceptions raised synchronously by order submission and cancellation.

Conditions that merely keep an order waiting (no price, limit not reached,
insufficient funds or shares) are not exceptions; see
``tradearena.services.matching_engine.FillOutcome``.
"""

from __future__ import annotations


class TradeArenaError(Exception):
    """Base class for all trading-core errors."""


class InvalidOrder(TradeArenaError):
    """Malformed order parameters; the order never enters the book."""


class OrderNotFound(TradeArenaError):
    """No order with this id (or not owned by the requesting user)."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class NotCancellable(TradeArenaError):
    """Cancel requested for an order that is no longer OPEN."""

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(f"Order {order_id} is {status} and cannot be cancelled")
        self.order_id = order_id
        self.status = status


class RateLimited(TradeArenaError):
    """The user submitted orders faster than the configured minimum interval."""

    def __init__(self, user_id: str, retry_after_ms: int) -> None:
        super().__init__(
            f"Too many orders from {user_id}; retry in {retry_after_ms} ms"
        )
        self.user_id = user_id
        self.retry_after_ms = retry_after_ms


class AccountNotFound(TradeArenaError):
    """The user has no portfolio yet."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No account for {user_id}")
        self.user_id = user_id
