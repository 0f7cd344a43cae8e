"""예약 레포지토리 모듈.

appointments 테이블(공유 통화 레코드)에 대한 조회/수정/상태 전이를 제공합니다.

Classes:
    AppointmentRepository: 예약 CRUD 및 상태 전이
    RepositoryError: DB 사용 불가 또는 쿼리 실패
    InvalidStatusError: 허용되지 않는 상태 전이

Status Lifecycle:
    requested → confirmed → ended
    requested → rejected
"""

import uuid
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from .connection import get_db_manager

logger = logging.getLogger(__name__)

TABLE = "appointments"

# 시그널링 필드만 클라이언트가 직접 쓸 수 있음
WRITABLE_FIELDS = ("doctor_peer_id", "patient_peer_id")

STATUSES = ("requested", "confirmed", "rejected", "ended")

# action -> (현재 상태, 다음 상태)
TRANSITIONS = {
    "confirm": ("requested", "confirmed"),
    "reject": ("requested", "rejected"),
    "end": ("confirmed", "ended"),
}


class RepositoryError(Exception):
    """DB를 사용할 수 없거나 쿼리가 실패한 경우."""


class InvalidStatusError(Exception):
    """현재 상태에서 허용되지 않는 전이."""

    def __init__(self, current_status: str, action: str):
        super().__init__(f"{action} 불가: 현재 상태 {current_status}")
        self.current_status = current_status
        self.action = action


def serialize_row(record) -> Dict[str, Any]:
    """asyncpg 레코드를 JSON 직렬화 가능한 dict로 변환합니다."""
    row = dict(record)
    for key, value in row.items():
        if isinstance(value, datetime):
            row[key] = value.isoformat()
    return row


class AppointmentRepository:
    """예약(공유 통화 레코드) 저장소."""

    def __init__(self):
        self.db = get_db_manager()

    def _ensure_db(self) -> None:
        if not self.db.is_initialized:
            raise RepositoryError("database_unavailable")

    async def get(self, appointment_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_db()
        try:
            record = await self.db.fetchrow(f"SELECT * FROM {TABLE} WHERE id = $1", appointment_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"[DB] 예약 조회 실패 {appointment_id}: {e}")
            raise RepositoryError(str(e)) from e
        return serialize_row(record) if record else None

    async def update_fields(self, appointment_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """시그널링 필드를 갱신합니다. 마지막 쓰기가 이깁니다.

        Raises:
            ValueError: 쓰기 불가 필드가 포함된 경우
            RepositoryError: DB 오류
        """
        invalid = [key for key in fields if key not in WRITABLE_FIELDS]
        if invalid:
            raise ValueError(f"쓰기 불가 필드: {', '.join(invalid)}")
        if not fields:
            raise ValueError("갱신할 필드가 없습니다")

        self._ensure_db()
        columns = list(fields.keys())
        assignments = ", ".join(f"{column} = ${i + 2}" for i, column in enumerate(columns))
        query = f"UPDATE {TABLE} SET {assignments}, updated_at = NOW() WHERE id = $1 RETURNING *"

        try:
            record = await self.db.fetchrow(query, appointment_id, *[fields[c] for c in columns])
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"[DB] 예약 갱신 실패 {appointment_id}: {e}")
            raise RepositoryError(str(e)) from e

        if record is None:
            return None
        logger.info(f"[DB] 예약 갱신: {appointment_id} ({', '.join(columns)})")
        return serialize_row(record)

    async def create(
        self,
        doctor_id: str,
        patient_id: str,
        patient_name: Optional[str] = None,
        notes: Optional[str] = None,
        appointment_type: str = "online",
    ) -> Dict[str, Any]:
        self._ensure_db()
        appointment_id = str(uuid.uuid4())
        try:
            record = await self.db.fetchrow(
                f"""
                INSERT INTO {TABLE} (id, doctor_id, patient_id, patient_name, type, status, notes)
                VALUES ($1, $2, $3, $4, $5, 'requested', $6)
                RETURNING *
                """,
                appointment_id, doctor_id, patient_id, patient_name, appointment_type, notes
            )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"[DB] 예약 생성 실패: {e}")
            raise RepositoryError(str(e)) from e

        logger.info(f"[DB] 예약 생성: {appointment_id} (doctor={doctor_id}, patient={patient_id})")
        return serialize_row(record)

    async def list_for_doctor(self, doctor_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """의사의 온라인 예약 목록 (오래된 순)."""
        self._ensure_db()
        query = f"SELECT * FROM {TABLE} WHERE doctor_id = $1 AND type = 'online'"
        args: List[Any] = [doctor_id]
        if status:
            query += " AND status = $2"
            args.append(status)
        query += " ORDER BY created_at ASC"

        try:
            records = await self.db.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"[DB] 예약 목록 조회 실패 (doctor={doctor_id}): {e}")
            raise RepositoryError(str(e)) from e
        return [serialize_row(r) for r in records]

    async def transition(
        self,
        appointment_id: str,
        action: str,
        appointment_time: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """상태를 전이합니다.

        Args:
            appointment_id: 예약 ID
            action: "confirm", "reject", "end"
            appointment_time: confirm 시 예약 시각 (기본: 현재)

        Returns:
            갱신된 행 또는 예약이 없으면 None

        Raises:
            InvalidStatusError: 현재 상태에서 허용되지 않는 전이
            RepositoryError: DB 오류
        """
        from_status, to_status = TRANSITIONS[action]
        self._ensure_db()

        try:
            async with self.db.transaction() as conn:
                current = await conn.fetchrow(
                    f"SELECT status FROM {TABLE} WHERE id = $1 FOR UPDATE", appointment_id
                )
                if current is None:
                    return None
                if current["status"] != from_status:
                    raise InvalidStatusError(current["status"], action)

                if action == "confirm":
                    record = await conn.fetchrow(
                        f"""
                        UPDATE {TABLE}
                        SET status = $2, appointment_time = COALESCE($3, NOW()), updated_at = NOW()
                        WHERE id = $1
                        RETURNING *
                        """,
                        appointment_id, to_status, appointment_time
                    )
                else:
                    record = await conn.fetchrow(
                        f"UPDATE {TABLE} SET status = $2, updated_at = NOW() WHERE id = $1 RETURNING *",
                        appointment_id, to_status
                    )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"[DB] 예약 상태 전이 실패 {appointment_id} ({action}): {e}")
            raise RepositoryError(str(e)) from e

        logger.info(f"[DB] 예약 상태: {appointment_id} {from_status} → {to_status}")
        return serialize_row(record)


_appointment_repository: Optional[AppointmentRepository] = None


def get_appointment_repository() -> AppointmentRepository:
    """AppointmentRepository 싱글톤 인스턴스를 반환합니다."""
    global _appointment_repository
    if _appointment_repository is None:
        _appointment_repository = AppointmentRepository()
    return _appointment_repository
