"""
Transaction Service — 台帳 (Ledger Store)

決済レコードは追記のみ。一度書いたら変更しない。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

_TYPES = {
    "price": Numeric(10, 2),
    "fee": Numeric(10, 2),
    "fee_degraded": Boolean,
    "created_at": DateTime(timezone=True),
}


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "sale_event_id": row.sale_event_id,
        "listing_id": row.listing_id,
        "seller_id": row.seller_id,
        "buyer_id": row.buyer_id,
        "price": row.price,
        "fee": row.fee,
        "fee_degraded": bool(row.fee_degraded),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def record_transaction(
    session: AsyncSession,
    sale_event_id: UUID,
    listing_id: int,
    seller_id: int,
    buyer_id: int,
    price: Decimal,
    fee: Decimal,
    fee_degraded: bool,
    created_at: datetime,
) -> int | None:
    """
    決済レコードを追記し、ID を返す。

    同じ sale_event_id が既にあれば何も書かずに None を返す。
    コミットは呼び出し側で行う。
    """
    result = await session.execute(
        text("""
            INSERT INTO transactions
                (sale_event_id, listing_id, seller_id, buyer_id, price, fee, fee_degraded, created_at)
            VALUES
                (:sale_event_id, :listing_id, :seller_id, :buyer_id, :price, :fee, :fee_degraded, :created_at)
            ON CONFLICT (sale_event_id) DO NOTHING
            RETURNING id
        """).bindparams(
            bindparam("price", type_=Numeric(10, 2)),
            bindparam("fee", type_=Numeric(10, 2)),
            bindparam("fee_degraded", type_=Boolean),
            bindparam("created_at", type_=DateTime(timezone=True)),
        ),
        {
            "sale_event_id": str(sale_event_id),
            "listing_id": listing_id,
            "seller_id": seller_id,
            "buyer_id": buyer_id,
            "price": price,
            "fee": fee,
            "fee_degraded": fee_degraded,
            "created_at": created_at,
        },
    )
    return result.scalar_one_or_none()


async def get_transaction(session: AsyncSession, transaction_id: int) -> dict | None:
    result = await session.execute(
        text("""
            SELECT id, sale_event_id, listing_id, seller_id, buyer_id, price, fee, fee_degraded, created_at
            FROM transactions
            WHERE id = :id
        """).columns(**_TYPES),
        {"id": transaction_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _row_to_dict(row)


async def list_transactions(session: AsyncSession) -> list[dict]:
    """全決済レコード (記録順)"""
    result = await session.execute(
        text("""
            SELECT id, sale_event_id, listing_id, seller_id, buyer_id, price, fee, fee_degraded, created_at
            FROM transactions
            ORDER BY id ASC
        """).columns(**_TYPES),
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def list_user_transactions(session: AsyncSession, user_id: int) -> list[dict]:
    """購入者または出品者として関わった決済レコード"""
    result = await session.execute(
        text("""
            SELECT id, sale_event_id, listing_id, seller_id, buyer_id, price, fee, fee_degraded, created_at
            FROM transactions
            WHERE buyer_id = :user_id OR seller_id = :user_id
            ORDER BY id ASC
        """).columns(**_TYPES),
        {"user_id": user_id},
    )
    return [_row_to_dict(row) for row in result.fetchall()]
