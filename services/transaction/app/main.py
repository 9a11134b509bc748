"""
Transaction Service — FastAPI エントリーポイント

order_created を購読して決済を台帳に記録し (バックグラウンド)、
台帳の照会 API を提供する。

┌─────────────┐ order_created ┌──────────────────┐  HTTP  ┌────────────────┐
│ Listing Svc │ ─── Redis ──▶ │ Transaction Svc  │ ─────▶ │ Fee Calculator │
└─────────────┘               │ (Settlement)     │        └────────────────┘
        ▲        item_sold    └────────┬─────────┘
        └────────── Redis ─────────────┤
                                       ▼
                                  Ledger DB
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.eventbus import EventBus, run_subscriber
from services.common.events import ORDER_CREATED

from . import ledger
from .fee_client import FeeCalculatorClient
from .schema import create_tables
from .settlement import SettlementProcessor

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
FEE_SERVICE_URL = os.environ.get("FEE_SERVICE_URL", "http://localhost:3003")
FEE_TIMEOUT_SECONDS = float(os.environ.get("FEE_TIMEOUT_SECONDS", "3.0"))
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に order_created の購読 (決済処理) を開始する。"""
    await create_tables(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    processor = SettlementProcessor(
        async_session,
        EventBus(redis_pool),
        FeeCalculatorClient(FEE_SERVICE_URL, timeout=FEE_TIMEOUT_SECONDS),
    )

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(REDIS_URL, ORDER_CREATED, processor.on_sale_event, shutdown_event)
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
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Transaction Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def get_session():
    async with async_session() as session:
        yield session


# ── Query Endpoints ──────────────────────────────

@app.get("/api/transactions")
async def query_list_transactions(session: AsyncSession = Depends(get_session)):
    """全決済レコード"""
    return await ledger.list_transactions(session)


@app.get("/api/transactions/user/{user_id}")
async def query_user_transactions(
    user_id: int, session: AsyncSession = Depends(get_session)
):
    """指定ユーザーが購入者または出品者の決済レコード"""
    return await ledger.list_user_transactions(session, user_id)


@app.get("/api/transactions/{transaction_id}")
async def query_get_transaction(
    transaction_id: int, session: AsyncSession = Depends(get_session)
):
    record = await ledger.get_transaction(session, transaction_id)
    if not record:
        raise HTTPException(404, "Transaction not found")
    return record


@app.get("/health")
async def health():
    return {"status": "ok", "service": "transaction-service"}
