"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter

from modules import get_db_manager, get_redis_manager

router = APIRouter(prefix="/api/health", tags=["health"])


async def _db_status() -> str:
    db = get_db_manager()
    if not db.is_initialized:
        return "not_initialized"
    try:
        await db.fetchrow("SELECT 1")
        return "ok"
    except Exception:
        return "error"


async def _redis_status() -> str:
    redis_mgr = get_redis_manager()
    if not redis_mgr.is_initialized:
        return "not_initialized"
    return "ok" if await redis_mgr.ping() else "error"


@router.get("")
async def health_check():
    """전체 서비스 상태를 확인합니다.

    Redis는 선택 사항이므로 DB만 정상이면 ok입니다.

    Returns:
        dict: 서비스별 연결 상태
    """
    db_status = await _db_status()
    redis_status = await _redis_status()

    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "services": {
            "database": db_status,
            "redis": redis_status,
        }
    }


@router.get("/db")
async def db_health_check():
    """PostgreSQL 상태를 확인합니다."""
    status = await _db_status()
    return {"status": status, "connected": status == "ok"}


@router.get("/redis")
async def redis_health_check():
    """Redis 상태를 확인합니다."""
    status = await _redis_status()
    return {"status": status, "connected": status == "ok"}
