"""End-to-end purchase settlement: listing service → bus → transaction service."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import DateTime, Numeric, bindparam, text

from services.common.events import ITEM_SOLD, ORDER_CREATED, decode_event
from services.listing.app import commands, queries
from services.transaction.app import ledger
from services.transaction.app.settlement import SettlementProcessor


@pytest.fixture
async def listing_5(session):
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO listings (id, title, description, price, seller_id, is_sold, created_at, updated_at)
            VALUES (5, 'Amp', 'Tube amp', :price, 1, FALSE, :now, :now)
        """).bindparams(
            bindparam("price", type_=Numeric(10, 2)),
            bindparam("now", type_=DateTime(timezone=True)),
        ),
        {"price": Decimal("100.00"), "now": now},
    )
    await session.commit()
    return 5


async def _buy_and_take_sale_event(session, bus, broadcaster, redis):
    await commands.buy_listing(session, bus, broadcaster, 5, 2)
    await bus.drain()
    [raw] = [c.args[1] for c in redis.publish.await_args_list if c.args[0] == ORDER_CREATED]
    return decode_event(ORDER_CREATED, raw)


async def test_sale_is_settled_with_fee(
    listing_5, session, session_factory, bus, broadcaster, redis, published, make_fee_calculator
):
    sale = await _buy_and_take_sale_event(session, bus, broadcaster, redis)

    assert (await queries.get_listing(session, 5))["is_sold"] is True
    assert (sale.listing_id, sale.seller_id, sale.buyer_id, sale.price) == (5, 1, 2, Decimal("100.00"))

    processor = SettlementProcessor(session_factory, bus, make_fee_calculator(fee="5.00"))
    transaction_id = await processor.on_sale_event(sale)

    record = await ledger.get_transaction(session, transaction_id)
    assert (record["listing_id"], record["seller_id"], record["buyer_id"]) == (5, 1, 2)
    assert record["price"] == Decimal("105.00")

    [confirmed] = published(ITEM_SOLD)
    assert confirmed["data"]["transaction_id"] == transaction_id


async def test_sale_is_settled_at_list_price_when_fee_service_times_out(
    listing_5, session, session_factory, bus, broadcaster, redis, make_fee_calculator
):
    # buy_listing itself never sees the fee service
    sale = await _buy_and_take_sale_event(session, bus, broadcaster, redis)

    processor = SettlementProcessor(session_factory, bus, make_fee_calculator(timeout=True))
    transaction_id = await processor.on_sale_event(sale)

    record = await ledger.get_transaction(session, transaction_id)
    assert record["price"] == Decimal("100.00")
    assert record["fee_degraded"] is True


async def test_redelivered_sale_event_creates_one_record(
    listing_5, session, session_factory, bus, broadcaster, redis, make_fee_calculator
):
    sale = await _buy_and_take_sale_event(session, bus, broadcaster, redis)
    processor = SettlementProcessor(session_factory, bus, make_fee_calculator())

    await processor.on_sale_event(sale)
    await processor.on_sale_event(sale)

    assert len(await ledger.list_user_transactions(session, 2)) == 1
