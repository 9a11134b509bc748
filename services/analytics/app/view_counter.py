"""
Analytics Service — 閲覧数カウンター (View Counter)

listing_viewed を受け取って出品ごとの閲覧数をメモリ上で数える。
永続化しないので、プロセスを再起動すると 0 に戻る。
カウンターは購読タスクだけが更新する (他から直接書き換えない)。
"""

import logging

from services.common.events import ListingViewed

logger = logging.getLogger(__name__)


class ViewCounter:
    def __init__(self) -> None:
        # dict は挿入順を保つので、初めて閲覧された順に並ぶ
        self._counts: dict[int, int] = {}

    async def on_view_event(self, event: ListingViewed) -> None:
        listing_id = event.listing_id
        self._counts[listing_id] = self._counts.get(listing_id, 0) + 1
        logger.info(
            "Listing #%s viewed, total views: %d", listing_id, self._counts[listing_id]
        )

    def count(self, listing_id: int) -> int:
        return self._counts.get(listing_id, 0)

    def snapshot(self) -> dict[int, int]:
        """出品 ID → 閲覧数 (初回閲覧順) のコピー"""
        return dict(self._counts)
