"""
Listing Service — コマンドハンドラ (Write 側)

出品の作成・編集・削除と購入 (buy) を処理する。

購入フロー:
  1. 出品を取得 (存在しなければ NotFound)
  2. 自分の出品は買えない (InvalidOperation "self-purchase")
  3. 販売済みは買えない (InvalidOperation "already sold")
  4. is_sold = FALSE を条件に UPDATE (compare-and-set)
  5. コミット直後に order_created を emit して待たない (決済は Transaction Service 側)
  6. ライブ更新の販売済み通知もバックグラウンドで流す

どちらも購入者への応答を待たせない。
5 のイベントが失われても出品は販売済みのまま。補償はしない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import InvalidOperation, NotOwner
from services.common.eventbus import EventBus
from services.common.events import ORDER_CREATED, OrderCreated

from .auth import owns_resource
from .broadcaster import LiveUpdateBroadcaster
from .queries import find_listing, get_listing

logger = logging.getLogger(__name__)

_PRICE = bindparam("price", type_=Numeric(10, 2))
_NOW = bindparam("now", type_=DateTime(timezone=True))


async def create_listing(
    session: AsyncSession,
    broadcaster: LiveUpdateBroadcaster,
    seller_id: int,
    title: str,
    description: str,
    price: Decimal,
) -> dict:
    """出品作成コマンド。保存後に new_item をライブ配信する。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            INSERT INTO listings
                (title, description, price, seller_id, is_sold, created_at, updated_at)
            VALUES
                (:title, :description, :price, :seller_id, FALSE, :now, :now)
            RETURNING id
        """).bindparams(_PRICE, _NOW),
        {
            "title": title,
            "description": description,
            "price": price,
            "seller_id": seller_id,
            "now": now,
        },
    )
    listing_id = result.scalar_one()
    await session.commit()

    listing = await get_listing(session, listing_id)
    logger.info("Listing #%s created by seller %s", listing_id, seller_id)
    broadcaster.schedule(broadcaster.notify_created(listing))
    return listing


async def update_listing(
    session: AsyncSession,
    bus: EventBus,
    listing_id: int,
    user_id: int,
    changes: dict,
) -> dict:
    """出品編集コマンド。出品者本人だけが title / description / price を変更できる。"""
    listing = await find_listing(session, bus, listing_id)
    if not owns_resource(user_id, listing):
        raise NotOwner("You can only edit your own items")

    fields = {k: v for k, v in changes.items() if k in ("title", "description", "price") and v is not None}
    if fields:
        assignments = ", ".join(f"{name} = :{name}" for name in fields)
        await session.execute(
            text(f"UPDATE listings SET {assignments}, updated_at = :now WHERE id = :id")
            .bindparams(*([_PRICE] if "price" in fields else []), _NOW),
            {**fields, "now": datetime.now(timezone.utc), "id": listing_id},
        )
        await session.commit()

    return await get_listing(session, listing_id)


async def delete_listing(
    session: AsyncSession,
    bus: EventBus,
    listing_id: int,
    user_id: int,
) -> dict:
    """出品削除コマンド。出品者本人のみ。"""
    listing = await find_listing(session, bus, listing_id)
    if not owns_resource(user_id, listing):
        raise NotOwner("You can only delete your own items")

    await session.execute(
        text("DELETE FROM listings WHERE id = :id"),
        {"id": listing_id},
    )
    await session.commit()
    return {"deleted": True, "id": listing_id}


async def mark_sold(session: AsyncSession, listing_id: int) -> bool:
    """
    販売済みフラグの compare-and-set。

    is_sold = FALSE の行だけを更新するので、同時に何件購入が来ても
    True を返すのは 1 件だけ。
    """
    result = await session.execute(
        text("""
            UPDATE listings
            SET is_sold = TRUE, updated_at = :now
            WHERE id = :id AND is_sold = FALSE
        """).bindparams(_NOW),
        {"id": listing_id, "now": datetime.now(timezone.utc)},
    )
    return result.rowcount == 1


async def buy_listing(
    session: AsyncSession,
    bus: EventBus,
    broadcaster: LiveUpdateBroadcaster,
    listing_id: int,
    buyer_id: int,
) -> dict:
    """購入コマンド (Purchase Orchestrator)"""
    # find_listing 経由なので購入時の参照も閲覧としてカウントされる
    listing = await find_listing(session, bus, listing_id)

    if owns_resource(buyer_id, listing):
        raise InvalidOperation("self-purchase")
    if listing["is_sold"]:
        raise InvalidOperation("already sold")

    # 価格は更新前に確定させる
    price = listing["price"]

    if not await mark_sold(session, listing_id):
        await session.rollback()
        raise InvalidOperation("already sold")
    await session.commit()

    logger.info("Listing #%s sold to buyer %s", listing_id, buyer_id)

    event = OrderCreated(
        event_id=uuid4(),
        listing_id=listing_id,
        seller_id=listing["seller_id"],
        buyer_id=buyer_id,
        price=price,
        timestamp=datetime.now(timezone.utc),
    )
    bus.emit(ORDER_CREATED, event)
    broadcaster.schedule(broadcaster.notify_sold(listing_id))

    sold = await get_listing(session, listing_id)
    return {"message": "Purchase successful", "listing": sold}
