"""
Listing Service — クエリハンドラ (Read 側)

出品は listings テーブルを直接読む。
find_listing だけは「閲覧」として listing_viewed イベントを発行する。
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Numeric, text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import NotFound
from services.common.eventbus import EventBus
from services.common.events import LISTING_VIEWED, ListingViewed

LISTING_TYPES = {
    "price": Numeric(10, 2),
    "is_sold": Boolean,
    "created_at": DateTime(timezone=True),
    "updated_at": DateTime(timezone=True),
}


def row_to_listing(row) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "description": row.description,
        "price": row.price,
        "seller_id": row.seller_id,
        "is_sold": bool(row.is_sold),
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_listing(session: AsyncSession, listing_id: int) -> dict | None:
    """出品を 1 件取得する。副作用なし。"""
    result = await session.execute(
        text("""
            SELECT id, title, description, price, seller_id, is_sold, created_at, updated_at
            FROM listings
            WHERE id = :id
        """).columns(**LISTING_TYPES),
        {"id": listing_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return row_to_listing(row)


async def list_available_listings(session: AsyncSession) -> list[dict]:
    """未販売の出品一覧 (新しい順)"""
    result = await session.execute(
        text("""
            SELECT id, title, description, price, seller_id, is_sold, created_at, updated_at
            FROM listings
            WHERE is_sold = FALSE
            ORDER BY created_at DESC, id DESC
        """).columns(**LISTING_TYPES),
    )
    return [row_to_listing(row) for row in result.fetchall()]


async def find_listing(
    session: AsyncSession,
    bus: EventBus,
    listing_id: int,
) -> dict:
    """
    出品を取得し、閲覧イベントを発行する。

    存在しない場合は NotFound。イベントは emit して待たない
    (閲覧者へのレスポンスを Analytics の都合で遅らせない)。
    """
    listing = await get_listing(session, listing_id)
    if listing is None:
        raise NotFound("Listing", listing_id)

    bus.emit(
        LISTING_VIEWED,
        ListingViewed(listing_id=listing_id, timestamp=datetime.now(timezone.utc)),
    )
    return listing
