import json
import uuid
import time
import asyncio
import logging
from typing import Dict, Any, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from libs.common.log import setup_logging
from libs.common.models import ORDER_TYPES, OrderEvent
from services.engine.config import load_config
from services.engine.errors import ExternalServiceError
from services.engine.events import EventBus
from services.engine.price_feed import PriceFeed
from services.engine.store import OrderStore

log = logging.getLogger(__name__)

CFG = load_config()
STARTED_AT = time.time()

# ---------------- App & CORS ----------------
app = FastAPI(title="Trigger Orders API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

# ---------------- Globals (posés au startup, remplaçables en test) ----------------
store: Optional[OrderStore] = None
bus: Optional[EventBus] = None
price_lookup = PriceFeed(CFG.price_api_url, CFG.quote_mint, timeout_s=CFG.http_timeout_s)


class CreateOrderReq(BaseModel):
    wallet: Optional[str] = None
    token_address: Optional[str] = None
    token_symbol: Optional[str] = None
    order_type: Optional[str] = None
    target_price: Optional[float] = None
    target_multiplier: Optional[float] = None
    trail_percent: Optional[float] = None
    amount_sol: Optional[float] = None
    slippage: Optional[float] = None
    entry_price: Optional[float] = None


class CancelReq(BaseModel):
    wallet: Optional[str] = None


# ---------------- Helpers ----------------
def _bad(msg: str, **extra) -> JSONResponse:
    return JSONResponse({"error": msg, **extra}, status_code=400)


def validate_order(req: CreateOrderReq) -> Optional[JSONResponse]:
    if not req.wallet or not req.token_address or not req.order_type or not req.amount_sol:
        return _bad("Missing required fields", required=["wallet", "token_address", "order_type", "amount_sol"])
    if req.order_type not in ORDER_TYPES:
        return _bad(f"Invalid order_type. Must be: {', '.join(ORDER_TYPES)}")
    if req.amount_sol < CFG.min_amount_sol:
        return _bad(f"Min order: {CFG.min_amount_sol} SOL")
    if req.amount_sol > CFG.max_amount_sol:
        return _bad(f"Max order: {CFG.max_amount_sol} SOL")
    t = req.order_type
    if t in ("limit_buy", "stop_loss") and not (req.target_price and req.target_price > 0):
        return _bad(f"target_price required for {t}")
    if t == "take_profit" and not (req.target_multiplier and req.target_multiplier > 0
                                   and req.entry_price and req.entry_price > 0):
        return _bad("target_multiplier and entry_price required for take_profit")
    if t == "trailing_stop" and not (req.trail_percent and 0 < req.trail_percent < 100):
        return _bad("trail_percent required for trailing_stop (0-100)")
    if req.slippage is not None and req.slippage < 0:
        return _bad("slippage must be >= 0")
    return None


def is_order_id(value: str) -> bool:
    # les ids sont des UUID : le store refuserait le CAST
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


async def emit(event: OrderEvent):
    try:
        await bus.publish(event)
    except Exception as e:
        log.error("event publish failed: %s", e)


async def command(op: str, **fields):
    # best-effort : la réconciliation de l'engine rattrape si le message se perd
    try:
        await bus.publish_command(op, **fields)
    except Exception as e:
        log.error("engine command %s failed: %s", op, e)


# ---------------- Routes ----------------
@app.get("/api/health")
async def health():
    db_ok = await store.ping()
    try:
        engine = await bus.get_status()
    except Exception:
        engine = None
    return {
        "status": "ok" if db_ok else "degraded",
        "engine": "running" if engine and engine.get("running") else "stopped",
        "orders": (engine or {}).get("orders", 0),
        "tokens": (engine or {}).get("tokens", 0),
        "uptime": int(time.time() - STARTED_AT),
        "db": "connected" if db_ok else "error",
    }


@app.post("/api/orders", status_code=201)
async def create_order(req: CreateOrderReq):
    err = validate_order(req)
    if err is not None:
        return err
    try:
        active = await store.count_active(req.wallet)
        if active >= CFG.max_active_per_wallet:
            return JSONResponse(
                {"error": f"Limit reached: {CFG.max_active_per_wallet} concurrent orders", "active": active},
                status_code=429,
            )
        row = await store.create_order(req.model_dump())
    except Exception as e:
        log.error("create error: %s", e)
        raise HTTPException(500, "Failed to create order")

    order = jsonable_encoder(row)
    await command("add", order=order)
    await emit(OrderEvent(type="order_created", wallet=req.wallet, order_id=str(order["id"]), payload={"order": order}))
    log.info("+ %s | %s...%s | %s SOL", req.order_type, req.wallet[:4], req.wallet[-4:], req.amount_sol)
    return order


@app.get("/api/orders/{wallet}")
async def get_orders(wallet: str, status: Optional[str] = Query(default=None)):
    try:
        orders = await store.get_orders_by_wallet(wallet, status or None)
    except Exception as e:
        log.error("get orders error: %s", e)
        raise HTTPException(500, "Failed to fetch orders")
    return {"orders": jsonable_encoder(orders), "count": len(orders)}


@app.delete("/api/orders/{order_id}")
async def cancel_order(order_id: str, body: CancelReq):
    if not body.wallet:
        return _bad("wallet required in body")
    if not is_order_id(order_id):
        return JSONResponse({"error": "Order not found, not active or already executing"}, status_code=404)
    try:
        row = await store.cancel_order(order_id, body.wallet)
    except Exception as e:
        log.error("cancel error: %s", e)
        raise HTTPException(500, "Failed to cancel order")
    if row is None:
        # inconnu, pas à ce wallet, déjà terminé, ou exécution déjà lancée (elle gagne)
        return JSONResponse({"error": "Order not found, not active or already executing"}, status_code=404)
    await command("remove", id=order_id)
    await emit(OrderEvent(type="order_cancelled", wallet=body.wallet, order_id=order_id))
    log.info("cancelled %s", order_id[:8])
    return jsonable_encoder(row)


@app.get("/api/stats/{wallet}")
async def stats(wallet: str):
    try:
        return await store.get_stats(wallet)
    except Exception as e:
        log.error("stats error: %s", e)
        raise HTTPException(500, "Failed to fetch stats")


@app.get("/api/price/{token}")
async def price(token: str):
    try:
        cached = await bus.cached_price(token)
    except Exception:
        cached = None
    if cached is not None and cached.price:
        return {**cached.model_dump(), "source": "cache"}
    try:
        obs = (await price_lookup.fetch_batch([token]))[token]
    except ExternalServiceError as e:
        log.warning("price lookup failed: %s", e)
        raise HTTPException(502, "Price lookup failed")
    return {**obs.model_dump(), "source": "api"}


# ---------------- WS → wallets ----------------
class ConnectionManager:
    def __init__(self): self.by_wallet: Dict[str, Set[WebSocket]] = {}

    def register(self, wallet: str, ws: WebSocket):
        self.by_wallet.setdefault(wallet, set()).add(ws)

    def disconnect(self, wallet: Optional[str], ws: WebSocket):
        if wallet and wallet in self.by_wallet:
            self.by_wallet[wallet].discard(ws)
            if not self.by_wallet[wallet]:
                del self.by_wallet[wallet]

    async def notify(self, wallet: str, message: Dict[str, Any]) -> int:
        sent = 0
        for ws in list(self.by_wallet.get(wallet, ())):
            try:
                await ws.send_text(json.dumps(message))
                sent += 1
            except Exception:
                self.disconnect(wallet, ws)
        return sent


manager = ConnectionManager()


def event_message(ev: Dict[str, Any]) -> Dict[str, Any]:
    """Event du bus -> message client (clé `type` + payload à plat)."""
    return {"type": ev.get("type"), "orderId": ev.get("order_id"), **(ev.get("payload") or {})}


@app.websocket("/ws")
async def ws_orders(ws: WebSocket):
    await ws.accept()
    wallet: Optional[str] = None
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                continue
            if msg.get("type") == "auth" and msg.get("wallet"):
                manager.disconnect(wallet, ws)
                wallet = str(msg["wallet"])
                manager.register(wallet, ws)
                await ws.send_text(json.dumps({"type": "auth_ok", "wallet": wallet}))
                log.info("ws + %s... connected", wallet[:8])
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(wallet, ws)


async def relay_events_loop():
    """orders:events -> sockets du wallet concerné."""
    while True:
        try:
            async for ev in bus.events():
                wallet = ev.get("wallet")
                if wallet:
                    await manager.notify(wallet, event_message(ev))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("event relay error: %s", e)
            await asyncio.sleep(2.0)


# ---------------- Startup ----------------
@app.on_event("startup")
async def on_startup():
    global store, bus
    setup_logging(CFG.log_level, CFG.log_json)
    store = OrderStore(CFG.database_url)
    await store.ensure_orders_table()
    bus = EventBus.from_url(CFG.redis_url)
    asyncio.create_task(relay_events_loop())
    log.info("api ready")


@app.on_event("shutdown")
async def on_shutdown():
    await price_lookup.stop()
    if bus is not None:
        await bus.close()
    if store is not None:
        await store.close()
