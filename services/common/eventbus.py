"""
Common — Event Bus (Redis Pub/Sub)

配信保証は at-most-once:
  - publish は Redis に渡した時点で完了。購読者の受信・処理は待たない。
  - 購読者がダウンしている間に発行されたイベントは失われる。
  - 同じイベントが二度届かない保証もない (購読側で重複排除する)。

emit() は「発行して待たない」ための入口。呼び出し元のレイテンシを
下流サービスから切り離す。publish() は送信結果を待ちたい場合に使う。
"""

import asyncio
import logging
from collections.abc import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import decode_event, encode_event

logger = logging.getLogger(__name__)


class EventBus:
    """Redis 接続をラップした発行側の Event Bus"""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis
        self._pending: set[asyncio.Task] = set()

    async def publish(self, topic: str, event) -> bool:
        """
        イベントを発行する。

        Redis が使えない場合はイベントを失ったことをログに残し False を返す。
        例外は呼び出し元に伝播させない。
        """
        message = encode_event(topic, event)
        try:
            await self.redis.publish(topic, message)
        except (RedisError, OSError):
            logger.warning("Event lost: failed to publish %s", topic, exc_info=True)
            return False
        logger.debug("Published %s: %s", topic, message)
        return True

    def emit(self, topic: str, event) -> asyncio.Task:
        """イベント発行をバックグラウンドタスクとして投げ、完了を待たない。"""
        task = asyncio.create_task(self.publish(topic, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """送信中のイベントがあれば完了を待つ (シャットダウン時)。"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


RESUBSCRIBE_DELAY = 1.0


async def _close_pubsub(pubsub, topic: str) -> None:
    # 接続が切れていると unsubscribe は失敗するが、aclose は必ず呼ぶ
    try:
        await pubsub.unsubscribe(topic)
    except (RedisError, OSError):
        logger.debug("Error unsubscribing from %s", topic, exc_info=True)
    try:
        await pubsub.aclose()
    except (RedisError, OSError):
        logger.debug("Error closing %s subscription", topic, exc_info=True)


async def subscribe(
    redis_url: str,
    topic: str,
    shutdown_event: asyncio.Event,
) -> AsyncIterator:
    """
    トピックを購読し、検証済みのイベントを順に返す。

    shutdown_event がセットされるまで終わらない。
      - スキーマに合わない・デコードできないメッセージはログに残して読み捨てる。
      - Redis との接続が切れたら RESUBSCRIBE_DELAY 秒待って購読し直す。
        切れていた間のイベントは失われる (at-most-once)。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = None

    try:
        while not shutdown_event.is_set():
            if pubsub is None:
                pubsub = redis_conn.pubsub()
                try:
                    await pubsub.subscribe(topic)
                except (RedisError, OSError):
                    logger.warning(
                        "Failed to subscribe to %s, retrying in %.1fs",
                        topic, RESUBSCRIBE_DELAY, exc_info=True,
                    )
                    await _close_pubsub(pubsub, topic)
                    pubsub = None
                    await asyncio.sleep(RESUBSCRIBE_DELAY)
                    continue
                logger.info("Subscribed to %s channel", topic)

            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except (RedisError, OSError):
                logger.warning(
                    "Lost %s subscription, resubscribing in %.1fs",
                    topic, RESUBSCRIBE_DELAY, exc_info=True,
                )
                await _close_pubsub(pubsub, topic)
                pubsub = None
                await asyncio.sleep(RESUBSCRIBE_DELAY)
                continue
            except ValueError:
                # decode_responses=True で UTF-8 として読めないメッセージ
                logger.warning("Dropped undecodable %s message", topic, exc_info=True)
                continue

            if message and message["type"] == "message":
                try:
                    event = decode_event(topic, message["data"])
                except ValueError:
                    logger.warning("Dropped malformed %s message: %r", topic, message["data"])
                    continue
                yield event
            else:
                await asyncio.sleep(0.1)
    finally:
        if pubsub is not None:
            await _close_pubsub(pubsub, topic)
        await redis_conn.aclose()


async def run_subscriber(
    redis_url: str,
    topic: str,
    handler,
    shutdown_event: asyncio.Event,
) -> None:
    """
    subscribe() で受け取ったイベントを handler に渡し続ける。

    ハンドラの失敗はそのイベントだけの失敗として扱い、ループは止めない
    (リトライキューは持たない)。
    """
    async for event in subscribe(redis_url, topic, shutdown_event):
        try:
            await handler(event)
            logger.info("Handled event: %s", topic)
        except Exception:
            logger.exception("Failed to process %s event", topic)
