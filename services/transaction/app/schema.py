"""
Transaction Service — テーブル定義

sale_event_id の UNIQUE 制約で、同じ order_created が二度届いても
台帳には 1 行しか残らない。
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    false,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sale_event_id", String(36), nullable=False, unique=True),
    Column("listing_id", Integer, nullable=False),
    Column("seller_id", Integer, nullable=False, index=True),
    Column("buyer_id", Integer, nullable=False, index=True),
    Column("price", Numeric(10, 2), nullable=False),
    Column("fee", Numeric(10, 2), nullable=False),
    Column("fee_degraded", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
