"""
Common — イベント定義 (トピックごとのスキーマ)

Event Bus 上を流れるイベントはすべて次のエンベロープで送られる:

    {"event_type": "<topic>", "data": {...}}

トピックごとに pydantic モデルを 1 つ持ち、購読側の境界で検証する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

import json
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

LISTING_VIEWED = "listing_viewed"
ORDER_CREATED = "order_created"
ITEM_SOLD = "item_sold"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class ListingViewed(_Event):
    """出品が閲覧された"""
    listing_id: int
    timestamp: datetime


class OrderCreated(_Event):
    """購入が受け付けられた (Sale Event)

    event_id は購入 1 回ごとに一意。決済側の重複排除キーになる。
    price は購入前に確定した出品価格。
    """
    event_id: UUID
    listing_id: int
    seller_id: int
    buyer_id: int
    price: Decimal
    timestamp: datetime


class ItemSold(_Event):
    """決済レコードが台帳に保存された (Settlement-Confirmed Event)"""
    listing_id: int
    buyer_id: int
    seller_id: int
    transaction_id: int
    price: Decimal
    timestamp: datetime


EVENT_SCHEMAS: dict[str, type[_Event]] = {
    LISTING_VIEWED: ListingViewed,
    ORDER_CREATED: OrderCreated,
    ITEM_SOLD: ItemSold,
}


def encode_event(topic: str, event: _Event) -> str:
    """イベントをエンベロープ付き JSON にする。"""
    if not isinstance(event, EVENT_SCHEMAS[topic]):
        raise TypeError(f"{type(event).__name__} cannot be published on {topic!r}")
    return json.dumps({"event_type": topic, "data": event.model_dump(mode="json")})


def decode_event(topic: str, raw: str | bytes) -> _Event:
    """
    受信メッセージを検証してイベントモデルに変換する。

    JSON として壊れている、トピックが一致しない、スキーマに合わない場合は
    ValueError (pydantic の ValidationError を含む) を送出する。
    """
    envelope = json.loads(raw)
    if not isinstance(envelope, dict):
        raise ValueError("event envelope must be an object")
    event_type = envelope.get("event_type")
    if event_type != topic:
        raise ValueError(f"unexpected event_type {event_type!r} on {topic!r}")
    return EVENT_SCHEMAS[topic].model_validate(envelope.get("data", {}))
