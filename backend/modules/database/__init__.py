"""데이터베이스 모듈.

PostgreSQL(asyncpg)과 Redis(redis.asyncio) 연동 모듈입니다.

주요 기능:
    - PostgreSQL Connection Pool 관리
    - Redis pub/sub 연결 관리
    - 예약(공유 통화 레코드) 저장 및 상태 전이
"""

from .connection import DatabaseManager, get_db_manager
from .redis_connection import RedisManager, get_redis_manager
from .appointment_repository import (
    AppointmentRepository,
    RepositoryError,
    InvalidStatusError,
    get_appointment_repository,
    serialize_row,
    WRITABLE_FIELDS,
    STATUSES,
    TRANSITIONS,
)

__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "RedisManager",
    "get_redis_manager",
    "AppointmentRepository",
    "RepositoryError",
    "InvalidStatusError",
    "get_appointment_repository",
    "serialize_row",
    "WRITABLE_FIELDS",
    "STATUSES",
    "TRANSITIONS",
]
