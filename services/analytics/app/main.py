"""
Analytics Service — FastAPI エントリーポイント

listing_viewed を購読して閲覧数を数え、照会 API を提供する。
DB は持たない (メモリ上の集計のみ)。

┌─────────────┐ listing_viewed ┌───────────────────┐
│ Listing Svc │ ──── Redis ──▶ │ Analytics Service │
└─────────────┘    Pub/Sub     │  (ViewCounter)    │
                               └───────────────────┘
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.common.eventbus import run_subscriber
from services.common.events import LISTING_VIEWED

from .view_counter import ViewCounter

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

logger = logging.getLogger(__name__)

view_counter = ViewCounter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に listing_viewed の購読を開始する。"""
    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            REDIS_URL, LISTING_VIEWED, view_counter.on_view_event, shutdown_event
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


app = FastAPI(title="Analytics Service", lifespan=lifespan)


# ── Query Endpoints ──────────────────────────────

@app.get("/queries/views")
async def query_view_counts():
    """出品ごとの閲覧数 (初回閲覧順)"""
    return [
        {"listing_id": listing_id, "views": views}
        for listing_id, views in view_counter.snapshot().items()
    ]


@app.get("/queries/views/{listing_id}")
async def query_listing_views(listing_id: int):
    return {"listing_id": listing_id, "views": view_counter.count(listing_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "analytics-service"}
