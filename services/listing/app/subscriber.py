"""
Listing Service — item_sold サブスクライバー

Transaction Service が台帳への記録を終えると item_sold が届く。
接続中のクライアントに settlement_confirmed としてライブ配信する。
"""

import logging

from services.common.events import ItemSold

from .broadcaster import LiveUpdateBroadcaster

logger = logging.getLogger(__name__)


def make_item_sold_handler(broadcaster: LiveUpdateBroadcaster):
    async def handle_item_sold(event: ItemSold) -> None:
        logger.info(
            "Settlement #%s confirmed for listing #%s",
            event.transaction_id,
            event.listing_id,
        )
        await broadcaster.notify_settled(
            event.listing_id, event.buyer_id, event.transaction_id
        )

    return handle_item_sold
