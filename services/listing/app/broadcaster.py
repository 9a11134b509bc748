"""
Listing Service — ライブ更新ブロードキャスター (WebSocket)

接続中のクライアント全員に通知を送る。
  - 永続化もリプレイもしない。後から接続したクライアントは
    接続以降のイベントしか受け取らない。
  - 送信に失敗した接続は黙って切り離す (配信保証なし)。
  - 1 接続あたりの送信は SEND_TIMEOUT 秒で打ち切る。詰まったクライアントは
    切り離し、他のクライアントへの配信を待たせない。
  - schedule() で通知をバックグラウンドタスクにすれば、呼び出し元は
    配信の完了を待たない。

送信メッセージ: {"event": "<name>", "data": {...}}
"""

import asyncio
import json
import logging

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

NEW_ITEM = "new_item"
ITEM_SOLD = "item_sold"
SETTLEMENT_CONFIRMED = "settlement_confirmed"


class LiveUpdateBroadcaster:
    MAX_CONNECTIONS = 1000
    SEND_TIMEOUT = 5.0

    def __init__(self) -> None:
        self.active_connections: set[WebSocket] = set()
        self._pending: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> bool:
        if len(self.active_connections) >= self.MAX_CONNECTIONS:
            await websocket.close(code=4029, reason="Too many connections")
            return False
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("WebSocket connected. Total connections: %d", len(self.active_connections))
        return True

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        logger.info("WebSocket disconnected. Total connections: %d", len(self.active_connections))

    async def _send(self, connection: WebSocket, event: str, message: str) -> bool:
        try:
            await asyncio.wait_for(connection.send_text(message), self.SEND_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out sending %s to WebSocket", event)
            return False
        except Exception as e:
            logger.warning("Error sending %s to WebSocket: %s", event, e)
            return False
        return True

    async def broadcast(self, event: str, data: dict) -> None:
        """接続中の全クライアントに並行して送信する。失敗した接続は切り離す。"""
        message = json.dumps({"event": event, "data": jsonable_encoder(data)})
        connections = list(self.active_connections)

        results = await asyncio.gather(
            *(self._send(connection, event, message) for connection in connections)
        )

        for connection, ok in zip(connections, results):
            if not ok:
                self.disconnect(connection)

    def schedule(self, notification) -> asyncio.Task:
        """通知コルーチンをバックグラウンドタスクとして投げ、完了を待たない。"""
        task = asyncio.create_task(notification)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """配信中の通知があれば完了を待つ (シャットダウン時)。"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def notify_created(self, listing: dict) -> None:
        await self.broadcast(NEW_ITEM, listing)

    async def notify_sold(self, listing_id: int) -> None:
        await self.broadcast(ITEM_SOLD, {"listing_id": listing_id})

    async def notify_settled(self, listing_id: int, buyer_id: int, transaction_id: int) -> None:
        await self.broadcast(
            SETTLEMENT_CONFIRMED,
            {
                "listing_id": listing_id,
                "buyer_id": buyer_id,
                "transaction_id": transaction_id,
            },
        )
