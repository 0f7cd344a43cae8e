"""Backend modules package.

화상 진료 통화 수립 시스템의 핵심 모듈을 포함합니다.

Modules:
    videocall: 통화 수립 흐름 (미디어, 식별자, 시그널링, 협상)
    broker: 네트워크 식별자 브로커 레지스트리
    realtime: 행 변경 실시간 피드
    database: PostgreSQL / Redis 연동, 예약 저장소
"""

from .broker import PeerRegistry
from .realtime import RowChangeFeed
from .database import (
    DatabaseManager,
    get_db_manager,
    RedisManager,
    get_redis_manager,
    AppointmentRepository,
    get_appointment_repository,
)

__all__ = [
    # Broker
    "PeerRegistry",
    # Realtime
    "RowChangeFeed",
    # Database
    "DatabaseManager",
    "get_db_manager",
    "RedisManager",
    "get_redis_manager",
    "AppointmentRepository",
    "get_appointment_repository",
]
