"""행 변경 알림용 Redis 연결 모듈.

서버 워커가 여럿일 때 공유 통화 레코드 변경을 워커 사이에 전달합니다.
Redis가 없으면 서버는 단일 워커 로컬 전달로 동작합니다.

Examples:
    >>> redis_mgr = get_redis_manager()
    >>> if await redis_mgr.initialize():
    ...     pubsub = await redis_mgr.psubscribe("rowchange:*")
    ...     await redis_mgr.publish_json("rowchange:appointments:apt-123", {"id": "apt-123"})
"""

import os
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisManager:
    """프로세스당 하나의 Redis 클라이언트.

    Attributes:
        client: redis.asyncio 클라이언트, 연결 전이나 실패 시 None
    """

    _instance: Optional["RedisManager"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.client = None
        return cls._instance

    @property
    def redis_url(self) -> str:
        return os.getenv("REDIS_URL", "redis://localhost:6379")

    @property
    def is_initialized(self) -> bool:
        return self.client is not None

    async def initialize(self) -> bool:
        """연결 후 PING으로 확인합니다. 실패해도 예외 없이 False."""
        if self.client is not None:
            return True

        client = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"[Redis] 연결 실패 ({self.redis_url}): {e}")
            await client.aclose()
            return False

        self.client = client
        logger.info(f"[Redis] 연결 완료: {self.redis_url}")
        return True

    async def close(self):
        client, self.client = self.client, None
        if client is not None:
            await client.aclose()
            logger.info("[Redis] 연결 종료")

    def _require_client(self):
        if self.client is None:
            raise RuntimeError("Redis not initialized. Call initialize() first.")
        return self.client

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return await self.client.ping()
        except (RedisError, OSError):
            return False

    async def publish_json(self, channel: str, payload: Any) -> int:
        """payload를 JSON으로 발행하고 메시지를 받은 Redis 구독자 수를 반환합니다."""
        return await self._require_client().publish(channel, json.dumps(payload))

    async def psubscribe(self, pattern: str) -> PubSub:
        """pattern을 구독한 새 PubSub을 반환합니다. 닫는 것은 호출자 책임."""
        pubsub = self._require_client().pubsub()
        await pubsub.psubscribe(pattern)
        return pubsub


def get_redis_manager() -> RedisManager:
    return RedisManager()
