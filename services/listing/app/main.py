"""
Listing Service — FastAPI エントリーポイント

出品 CRUD と購入 (buy) のエンドポイント、ライブ更新用の WebSocket を提供する。

┌────────────┐  order_created   ┌─────────────────────┐
│ Listing    │ ──── Redis ────▶ │ Transaction Service │
│ Service    │  listing_viewed  ├─────────────────────┤
│            │ ──── Redis ────▶ │ Analytics Service   │
│            │ ◀─── Redis ───── │ (item_sold)         │
└─────┬──────┘                  └─────────────────────┘
      │ WebSocket (new_item / item_sold / settlement_confirmed)
      ▼
  ブラウザ
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.errors import InvalidOperation, NotFound, NotOwner
from services.common.eventbus import EventBus, run_subscriber
from services.common.events import ITEM_SOLD

from . import commands, queries
from .auth import current_user_id
from .broadcaster import LiveUpdateBroadcaster
from .schema import create_tables
from .subscriber import make_item_sold_handler

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
broadcaster = LiveUpdateBroadcaster()
event_bus: EventBus | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にテーブルを作成し、item_sold の購読を開始する。"""
    global event_bus
    await create_tables(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    event_bus = EventBus(redis_pool)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            REDIS_URL, ITEM_SOLD, make_item_sold_handler(broadcaster), shutdown_event
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Subscriber task stopped with an error")
    await event_bus.drain()
    await broadcaster.drain()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Listing Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Dependencies ─────────────────────────────────

async def get_session():
    async with async_session() as session:
        yield session


def get_event_bus() -> EventBus:
    if event_bus is None:
        raise HTTPException(503, "Event bus not ready")
    return event_bus


def get_broadcaster() -> LiveUpdateBroadcaster:
    return broadcaster


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(404, str(e))
    if isinstance(e, NotOwner):
        return HTTPException(403, str(e))
    return HTTPException(400, str(e))


# ── Request Models ───────────────────────────────

class CreateListingRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


class UpdateListingRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)


# ── Command Endpoints ────────────────────────────

@app.post("/listings")
async def cmd_create_listing(
    req: CreateListingRequest,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    live: LiveUpdateBroadcaster = Depends(get_broadcaster),
):
    """出品作成 (出品者はトークンのユーザー)"""
    return await commands.create_listing(
        session, live, user_id, req.title, req.description, req.price
    )


@app.patch("/listings/{listing_id}")
async def cmd_update_listing(
    listing_id: int,
    req: UpdateListingRequest,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        return await commands.update_listing(
            session, bus, listing_id, user_id, req.model_dump(exclude_none=True)
        )
    except (NotFound, InvalidOperation) as e:
        raise _to_http(e) from e


@app.delete("/listings/{listing_id}")
async def cmd_delete_listing(
    listing_id: int,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        return await commands.delete_listing(session, bus, listing_id, user_id)
    except (NotFound, InvalidOperation) as e:
        raise _to_http(e) from e


@app.post("/listings/{listing_id}/buy")
async def cmd_buy_listing(
    listing_id: int,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    bus: EventBus = Depends(get_event_bus),
    live: LiveUpdateBroadcaster = Depends(get_broadcaster),
):
    """購入。決済の完了は待たずに返す。"""
    try:
        return await commands.buy_listing(session, bus, live, listing_id, user_id)
    except (NotFound, InvalidOperation) as e:
        raise _to_http(e) from e


# ── Query Endpoints ──────────────────────────────

@app.get("/listings")
async def query_list_listings(session: AsyncSession = Depends(get_session)):
    """未販売の出品一覧"""
    return await queries.list_available_listings(session)


@app.get("/listings/{listing_id}")
async def query_get_listing(
    listing_id: int,
    session: AsyncSession = Depends(get_session),
    bus: EventBus = Depends(get_event_bus),
):
    """出品詳細 (閲覧イベントを発行する)"""
    try:
        return await queries.find_listing(session, bus, listing_id)
    except NotFound as e:
        raise _to_http(e) from e


# ── Live Updates ─────────────────────────────────

@app.websocket("/ws")
async def live_updates(websocket: WebSocket):
    if not await broadcaster.connect(websocket):
        return
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        broadcaster.disconnect(websocket)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "listing-service"}
