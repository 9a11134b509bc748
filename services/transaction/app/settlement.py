"""
Transaction Service — 決済プロセッサー (Settlement Processor)

order_created を受け取り、台帳に決済レコードを記録する。

  1. 手数料計算サービスを呼ぶ
     └─ 失敗 (タイムアウト・非 2xx・不正な値) → 手数料 0 で続行 (degraded)
  2. 最終価格 = 出品価格 + 手数料 で台帳に記録
     └─ 同じ event_id が記録済み → 何もしない (重複配信)
  3. item_sold を発行

手数料サービスの失敗で決済を止めることはない。
台帳への書き込み失敗はそのイベントの処理失敗としてそのまま送出する
(リトライはしない。subscriber がログに残す)。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from services.common.eventbus import EventBus
from services.common.events import ITEM_SOLD, ItemSold, OrderCreated

from . import ledger
from .fee_client import FeeCalculatorClient, FeeQuote, FeeUnavailable

logger = logging.getLogger(__name__)


class SettlementProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        bus: EventBus,
        fee_calculator: FeeCalculatorClient,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.fee_calculator = fee_calculator

    async def _quote_for(self, price: Decimal) -> tuple[FeeQuote, bool]:
        """(見積もり, degraded) を返す。"""
        try:
            quote = await self.fee_calculator.compute_fee(price)
        except FeeUnavailable as e:
            logger.warning("Fee calculator degraded, settling without fee: %s", e)
            return FeeQuote.without_fee(price), True
        return quote, False

    async def on_sale_event(self, event: OrderCreated) -> int | None:
        """決済を記録し、新しい決済レコード ID を返す。重複なら None。"""
        quote, degraded = await self._quote_for(event.price)
        fee, final_price = quote.fee, quote.total

        async with self.session_factory() as session:
            transaction_id = await ledger.record_transaction(
                session,
                sale_event_id=event.event_id,
                listing_id=event.listing_id,
                seller_id=event.seller_id,
                buyer_id=event.buyer_id,
                price=final_price,
                fee=fee,
                fee_degraded=degraded,
                created_at=datetime.now(timezone.utc),
            )
            await session.commit()

        if transaction_id is None:
            logger.info("Duplicate sale event %s ignored", event.event_id)
            return None

        logger.info(
            "Transaction #%s saved: listing #%s, price %s (fee %s)",
            transaction_id, event.listing_id, final_price, fee,
        )

        await self.bus.publish(
            ITEM_SOLD,
            ItemSold(
                listing_id=event.listing_id,
                buyer_id=event.buyer_id,
                seller_id=event.seller_id,
                transaction_id=transaction_id,
                price=final_price,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        return transaction_id
