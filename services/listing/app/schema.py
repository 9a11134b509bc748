"""
Listing Service — テーブル定義

DML は commands.py / queries.py で text() を使って書く。
ここでは create_all 用にテーブル構造だけを宣言する
(PostgreSQL と SQLite の両方で同じ定義が使える)。
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
    Text,
    false,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

listings = Table(
    "listings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("price", Numeric(10, 2), nullable=False),
    Column("seller_id", Integer, nullable=False, index=True),
    Column("is_sold", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
