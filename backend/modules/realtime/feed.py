"""실시간 행 변경 피드 모듈.

행이 갱신되면 해당 행을 구독 중인 모든 연결에 전체 행을 전달합니다.
Redis가 초기화되어 있으면 rowchange:{table}:{id} 채널로 발행해 다른 워커에도 전달되고,
없으면 현재 프로세스 안에서만 전달됩니다.

Note:
    - 구독 이전의 변경은 재전송하지 않음 (구독 후 한 번 읽기로 보완)
    - 구독자 큐가 가득 차면 가장 오래된 변경을 버림 (행은 항상 전체 상태를 담음)
"""

import json
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set, Tuple

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "rowchange"

Row = Dict[str, Any]


class RowChangeFeed:
    """행 변경 구독/발행.

    Examples:
        >>> feed = RowChangeFeed()
        >>> queue = feed.subscribe("appointments", "apt-123")
        >>> await feed.publish("appointments", "apt-123", row)
        >>> row = await queue.get()
        >>> feed.unsubscribe("appointments", "apt-123", queue)
    """

    def __init__(self, redis_manager=None, queue_size: int = 16):
        self.redis_manager = redis_manager
        self.queue_size = queue_size

        # (table, row_id) -> 구독자 큐
        self._subscribers: Dict[Tuple[str, str], Set[asyncio.Queue]] = defaultdict(set)
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @staticmethod
    def channel(table: str, row_id: str) -> str:
        return f"{CHANNEL_PREFIX}:{table}:{row_id}"

    @property
    def using_redis(self) -> bool:
        return self._pubsub is not None

    async def start(self) -> None:
        if self.redis_manager is None or not self.redis_manager.is_initialized:
            logger.info("[Realtime] 로컬 전달 모드로 시작")
            return

        self._pubsub = await self.redis_manager.psubscribe(f"{CHANNEL_PREFIX}:*")
        self._listener = asyncio.create_task(self._listen())
        logger.info("[Realtime] Redis pub/sub 전달 모드로 시작")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

        self._subscribers.clear()
        logger.info("[Realtime] 피드 종료")

    def subscribe(self, table: str, row_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[(table, row_id)].add(queue)
        logger.debug(f"[Realtime] 구독: {table}/{row_id} ({self.subscriber_count(table, row_id)})")
        return queue

    def unsubscribe(self, table: str, row_id: str, queue: asyncio.Queue) -> None:
        key = (table, row_id)
        queues = self._subscribers.get(key)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[key]
        logger.debug(f"[Realtime] 구독 해제: {table}/{row_id}")

    def subscriber_count(self, table: str, row_id: str) -> int:
        return len(self._subscribers.get((table, row_id), ()))

    async def publish(self, table: str, row_id: str, row: Row) -> int:
        """변경된 행을 발행합니다.

        Returns:
            int: 로컬 전달 시 전달된 구독자 수 (Redis 경유 시 Redis 수신자 수)
        """
        if self.using_redis:
            try:
                return await self.redis_manager.publish_json(self.channel(table, row_id), row)
            except (RedisError, OSError) as e:
                logger.error(f"[Realtime] Redis 발행 실패, 로컬 전달: {e}")
        return self._fan_out(table, row_id, row)

    def _fan_out(self, table: str, row_id: str, row: Row) -> int:
        queues = self._subscribers.get((table, row_id))
        if not queues:
            return 0

        for queue in queues:
            if queue.full():
                queue.get_nowait()
                logger.warning(f"[Realtime] 구독자 큐 가득 참, 오래된 변경 버림: {table}/{row_id}")
            queue.put_nowait(row)
        return len(queues)

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                try:
                    _, table, row_id = message["channel"].split(":", 2)
                    row = json.loads(message["data"])
                except ValueError as e:
                    logger.warning(f"[Realtime] 잘못된 변경 메시지 무시: {e}")
                    continue
                self._fan_out(table, row_id, row)
        except (RedisError, OSError) as e:
            logger.error(f"[Realtime] Redis 수신 중단, 로컬 전달로 전환: {e}")
        else:
            logger.warning("[Realtime] Redis 수신 종료, 로컬 전달로 전환")

        # 이후 발행은 로컬 전달
        pubsub, self._pubsub = self._pubsub, None
        self._listener = None
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"[Realtime] PubSub 종료 실패: {e}")
