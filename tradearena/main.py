"""FastAPI application — order, portfolio, progression and matcher endpoints.

The core is transport free; this module maps its operations and domain
errors onto HTTP and bridges the event bus to Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import StreamingResponse

from tradearena.errors import (
    AccountNotFound,
    InvalidOrder,
    NotCancellable,
    OrderNotFound,
    RateLimited,
)
from tradearena.runtime import TradingRuntime
from tradearena.utils.logger import logger


# ── Models ──────────────────────────────────────────────────────────
class SubmitOrderRequest(BaseModel):
    user_id: str
    symbol: str
    side: str
    order_type: str = "market"
    qty: int | float
    limit_price: Decimal | None = None


class OpenAccountRequest(BaseModel):
    starting_cash: Decimal | None = None


class TickRequest(BaseModel):
    symbol: str
    price: Decimal
    volume: int = 0


class ResetDayRequest(BaseModel):
    user_id: str = Field(min_length=1)
    reset_holdings: bool = False


# ── Helpers ─────────────────────────────────────────────────────────
def get_runtime(request: Request) -> TradingRuntime:
    return request.app.state.runtime


router = APIRouter(prefix="/api")


# ══════════════════════════════════════════════════════════════════════
# HEALTH & CONFIG
# ══════════════════════════════════════════════════════════════════════


@router.get("/health")
async def health(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return {
        "api": "ok",
        "db": "open" if rt.db.is_open else "closed",
        "matcher": "running" if rt.scheduler.is_running else "stopped",
    }


@router.get("/config")
async def get_config(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return rt.settings.get_game_config()


# ══════════════════════════════════════════════════════════════════════
# ORDERS
# ══════════════════════════════════════════════════════════════════════


@router.post("/orders")
async def submit_order(
    req: SubmitOrderRequest, rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    """Place a market or limit order; it fills asynchronously."""
    try:
        order = rt.order_book.submit(
            user_id=req.user_id,
            symbol=req.symbol,
            side=req.side,
            order_type=req.order_type,
            qty=req.qty,
            limit_price=req.limit_price,
        )
    except InvalidOrder as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except RateLimited as e:
        raise HTTPException(
            status_code=429,
            detail=str(e),
            headers={"Retry-After": str(max(1, -(-e.retry_after_ms // 1000)))},
        ) from e
    return {"success": True, "order_id": order.id, "order": order.model_dump(mode="json")}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user_id: str | None = Query(default=None),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    try:
        order = rt.order_book.cancel(order_id, user_id=user_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except NotCancellable as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"success": True, "order": order.model_dump(mode="json")}


@router.get("/orders/open")
async def get_open_orders(
    user_id: str | None = Query(default=None),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    """OPEN orders in matching (FIFO) order."""
    orders = rt.order_book.list_open(user_id=user_id)
    return {"count": len(orders), "orders": [o.model_dump(mode="json") for o in orders]}


@router.get("/orders")
async def get_orders(
    user_id: str | None = Query(default=None),
    status: str | None = Query(default=None, pattern="^(open|filled|cancelled)$"),
    limit: int = Query(default=50, ge=1, le=500),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    """Order history, newest first."""
    orders = rt.order_book.list_orders(user_id=user_id, status=status, limit=limit)
    return {"count": len(orders), "orders": [o.model_dump(mode="json") for o in orders]}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    order = rt.order_book.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════════════
# PORTFOLIO & TRADES
# ══════════════════════════════════════════════════════════════════════


@router.post("/accounts/{user_id}")
async def open_account(
    user_id: str,
    req: OpenAccountRequest | None = None,
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    """Create the user's portfolio with starting cash (no-op if it exists)."""
    starting = req.starting_cash if req else None
    if starting is not None and starting < 0:
        raise HTTPException(status_code=400, detail="starting_cash cannot be negative")
    try:
        cash = rt.ledger.open_account(user_id, starting_cash=starting)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"user_id": user_id, "cash": str(cash)}


@router.get("/portfolio/{user_id}")
async def get_portfolio(user_id: str, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    """Cash + positions marked to the latest tick + total value."""
    return rt.ledger.get_portfolio(user_id).model_dump(mode="json")


@router.get("/trades")
async def get_trades(
    user_id: str | None = Query(default=None),
    symbol: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    trades = rt.ledger.list_trades(user_id=user_id, symbol=symbol, limit=limit)
    return {"count": len(trades), "trades": [t.model_dump(mode="json") for t in trades]}


# ══════════════════════════════════════════════════════════════════════
# PROGRESSION
# ══════════════════════════════════════════════════════════════════════


@router.get("/profile/{user_id}")
async def get_profile(user_id: str, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return rt.progression.get_profile(user_id).model_dump(mode="json")


@router.get("/quest/{user_id}")
async def get_quest(user_id: str, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return {"quest": rt.progression.get_quest(user_id).model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════════════
# PRICES
# ══════════════════════════════════════════════════════════════════════


@router.get("/prices/{symbol}")
async def get_price(symbol: str, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    price = rt.oracle.latest_price(symbol)
    return {"symbol": symbol.upper().strip(), "price": str(price) if price is not None else None}


@router.post("/ticks")
async def post_tick(req: TickRequest, rt: TradingRuntime = Depends(get_runtime)) -> dict:
    """Ingest one price tick (used by the market simulator)."""
    try:
        tick = rt.oracle.record_tick(req.symbol, req.price, volume=req.volume)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return tick.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════════════
# MATCHING ENGINE CONTROL
# ══════════════════════════════════════════════════════════════════════


@router.post("/matching/run")
async def matching_run(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    """Run one matching cycle now (idempotent replay)."""
    return rt.scheduler.run_now().to_dict()


@router.get("/matching/status")
async def matching_status(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return rt.scheduler.get_status()


@router.get("/matching/history")
async def matching_history(
    limit: int = Query(default=20, ge=1, le=100),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    history = rt.scheduler.get_history(limit=limit)
    return {"count": len(history), "history": history}


@router.post("/matching/start")
async def matching_start(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    return rt.scheduler.start()


@router.post("/matching/stop")
async def matching_stop(rt: TradingRuntime = Depends(get_runtime)) -> dict:
    """Kill switch: stop the matching loop. Open orders simply wait."""
    return rt.scheduler.stop()


# ══════════════════════════════════════════════════════════════════════
# ADMIN
# ══════════════════════════════════════════════════════════════════════


def require_admin_token(
    x_admin_token: str | None = Header(default=None),
    rt: TradingRuntime = Depends(get_runtime),
) -> None:
    expected = rt.settings.ADMIN_RESET_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), expected.encode(),
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/admin/reset-day", dependencies=[Depends(require_admin_token)])
async def admin_reset_day(
    req: ResetDayRequest, rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    """Reset a user's cash and daily progression; titles and XP are kept."""
    try:
        return rt.reset_day(req.user_id, reset_holdings=req.reset_holdings)
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


# ══════════════════════════════════════════════════════════════════════
# ACTIVITY LOG & LIVE STREAM
# ══════════════════════════════════════════════════════════════════════


@router.get("/events")
async def get_events(
    limit: int = Query(default=200, ge=1, le=1000),
    user_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    rt: TradingRuntime = Depends(get_runtime),
) -> dict:
    events = rt.activity.list_events(limit=limit, user_id=user_id, event_type=event_type)
    return {"count": len(events), "events": events}


@router.get("/stream")
async def stream(
    request: Request,
    user_id: str | None = Query(default=None),
    rt: TradingRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """SSE endpoint — pushes order and trade events as they happen."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
    loop = asyncio.get_running_loop()

    def _enqueue(item: dict) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("[Stream] Client queue full, dropping %s", item["type"])

    def _forward(event: str, payload: dict) -> None:
        if user_id is not None and user_id not in (
            payload.get("user_id"), payload.get("buyer_id"), payload.get("seller_id"),
        ):
            return
        loop.call_soon_threadsafe(_enqueue, {"type": event, "data": payload})

    rt.bus.subscribe(_forward)

    async def _event_generator() -> AsyncIterator[str]:
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            rt.bus.unsubscribe(_forward)

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ══════════════════════════════════════════════════════════════════════
# APP FACTORY
# ══════════════════════════════════════════════════════════════════════


def create_app(runtime: TradingRuntime | None = None, *, schedule: bool = True) -> FastAPI:
    """Build the FastAPI app around a runtime that lives as long as the app."""
    rt = runtime or TradingRuntime()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        rt.start(schedule=schedule)
        try:
            yield
        finally:
            rt.shutdown()

    application = FastAPI(
        title="Trade Arena",
        description="Order matching and portfolio accounting for a fantasy trading game",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.state.runtime = rt
    application.include_router(router)
    return application


app = create_app()
