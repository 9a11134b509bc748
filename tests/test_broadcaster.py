"""Live update broadcaster: fan-out, dropped sockets, no replay."""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from services.common.events import ItemSold
from services.listing.app.broadcaster import LiveUpdateBroadcaster
from services.listing.app.subscriber import make_item_sold_handler


def _mock_ws(should_fail=False):
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    if should_fail:
        ws.send_text = AsyncMock(side_effect=Exception("Connection closed"))
    else:
        ws.send_text = AsyncMock()
    return ws


def _sent(ws) -> list[dict]:
    return [json.loads(c.args[0]) for c in ws.send_text.await_args_list]


async def test_notify_sold_reaches_every_connection(broadcaster):
    first, second = _mock_ws(), _mock_ws()
    await broadcaster.connect(first)
    await broadcaster.connect(second)

    await broadcaster.notify_sold(5)

    for ws in (first, second):
        assert _sent(ws) == [{"event": "item_sold", "data": {"listing_id": 5}}]


async def test_notify_created_serialises_listing(broadcaster):
    ws = _mock_ws()
    await broadcaster.connect(ws)

    await broadcaster.notify_created({"id": 1, "title": "Guitar", "price": Decimal("10.50")})

    [message] = _sent(ws)
    assert message["event"] == "new_item"
    assert message["data"]["title"] == "Guitar"


async def test_failing_connection_is_dropped(broadcaster):
    healthy, broken = _mock_ws(), _mock_ws(should_fail=True)
    await broadcaster.connect(healthy)
    await broadcaster.connect(broken)

    await broadcaster.notify_sold(1)

    assert broken not in broadcaster.active_connections
    assert healthy in broadcaster.active_connections
    assert len(_sent(healthy)) == 1


async def test_late_joiner_sees_only_new_events(broadcaster):
    early = _mock_ws()
    await broadcaster.connect(early)
    await broadcaster.notify_sold(1)

    late = _mock_ws()
    await broadcaster.connect(late)
    await broadcaster.notify_sold(2)

    assert [m["data"]["listing_id"] for m in _sent(early)] == [1, 2]
    assert [m["data"]["listing_id"] for m in _sent(late)] == [2]


async def test_connection_limit_is_enforced():
    broadcaster = LiveUpdateBroadcaster()
    broadcaster.MAX_CONNECTIONS = 1
    await broadcaster.connect(_mock_ws())

    rejected = _mock_ws()
    assert await broadcaster.connect(rejected) is False
    rejected.close.assert_awaited_once()


async def test_item_sold_event_is_pushed_as_settlement_confirmed(broadcaster):
    ws = _mock_ws()
    await broadcaster.connect(ws)
    handler = make_item_sold_handler(broadcaster)

    await handler(ItemSold(
        listing_id=5, buyer_id=2, seller_id=1, transaction_id=9,
        price=Decimal("105.00"), timestamp=datetime.now(timezone.utc),
    ))

    assert _sent(ws) == [{
        "event": "settlement_confirmed",
        "data": {"listing_id": 5, "buyer_id": 2, "transaction_id": 9},
    }]


async def test_stalled_connection_times_out_and_is_dropped(broadcaster):
    never = asyncio.Event()

    async def hang(message):
        await never.wait()

    healthy, stalled = _mock_ws(), _mock_ws()
    stalled.send_text = AsyncMock(side_effect=hang)
    await broadcaster.connect(healthy)
    await broadcaster.connect(stalled)
    broadcaster.SEND_TIMEOUT = 0.05

    await asyncio.wait_for(broadcaster.notify_sold(3), 1.0)

    assert stalled not in broadcaster.active_connections
    assert _sent(healthy) == [{"event": "item_sold", "data": {"listing_id": 3}}]


async def test_scheduled_notification_runs_in_background(broadcaster):
    ws = _mock_ws()
    await broadcaster.connect(ws)

    broadcaster.schedule(broadcaster.notify_sold(8))
    await broadcaster.drain()

    assert _sent(ws) == [{"event": "item_sold", "data": {"listing_id": 8}}]
