"""FastAPI Clinic Video Consultation Signaling Server.

이 모듈은 1:1 화상 진료 통화 수립을 위한 시그널링 서버를 제공합니다.
두 참가자(의사, 환자)는 공유 통화 레코드(예약 행)로 서로의 네트워크 식별자를
교환하고, 식별자 브로커를 통해 직접 통화를 수립합니다.

주요 기능:
    - 예약 행 조회/수정 및 실시간 행 변경 구독 (WebSocket)
    - 화상 진료 예약 상태 전이 (requested → confirmed → ended)
    - 네트워크 식별자 발급 및 offer/answer 중계 (PeerJS 호환 브로커)
    - ICE 서버(STUN/TURN) 설정 제공
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - AppointmentRepository: asyncpg 기반 예약 저장소
    - RowChangeFeed: 행 변경 전달 (Redis pub/sub 또는 로컬)
    - PeerRegistry: 식별자 → WebSocket 연결 관리
"""
import os
import glob
import logging
from datetime import datetime, timedelta
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

# 환경변수 로드 (config/.env)
load_dotenv(Path(__file__).parent / "config" / ".env")

from modules import (  # noqa: E402
    PeerRegistry, RowChangeFeed, get_db_manager, get_redis_manager, get_appointment_repository
)
from modules.videocall.config import ice_config  # noqa: E402
from routes import (  # noqa: E402
    health_router, appointments_router, broker_router,
    init_appointments, init_broker, verify_auth_header
)


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """보관 기간이 지난 server_YYYYMMDD.log 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file)[len("server_"):-len(".log")]
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


# 글로벌 인스턴스
db_manager = get_db_manager()
redis_manager = get_redis_manager()
peer_registry = PeerRegistry()
row_feed = RowChangeFeed(redis_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱 생명주기.

    Note:
        - 시작: 오래된 로그 정리, DB/Redis 연결, 행 변경 피드 시작
        - 종료: 피드 정지, Redis/DB 연결 종료
        - DB가 없으면 예약 API는 503, Redis가 없으면 피드는 로컬 전달
    """
    logger.info("화상 진료 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    if await db_manager.initialize():
        logger.info("데이터베이스 연결 완료")
        if os.getenv("DB_AUTO_SCHEMA", "false").lower() == "true":
            await db_manager.ensure_schema()
    else:
        logger.warning("데이터베이스 사용 불가, 예약 API는 503 응답")

    if await redis_manager.initialize():
        logger.info("Redis 연결 완료")
    else:
        logger.warning("Redis 사용 불가, 행 변경은 이 프로세스 안에서만 전달")

    await row_feed.start()

    yield

    logger.info("서버 종료 중...")

    await row_feed.stop()

    if redis_manager.is_initialized:
        await redis_manager.close()
        logger.info("Redis 연결 종료됨")

    if db_manager.is_initialized:
        await db_manager.close()
        logger.info("데이터베이스 연결 종료됨")


app = FastAPI(title="Clinic Video Consultation Signaling Server", lifespan=lifespan)

# CORS - 개발 환경에서는 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$|^https://.*\.ngrok(-free)?\.(app|dev|io)$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(appointments_router)
app.include_router(broker_router)

init_appointments(get_appointment_repository(), row_feed)
init_broker(peer_registry)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트."""
    return {"status": "ok", "service": "Clinic Video Consultation Signaling Server"}


@app.get("/api/ice-servers")
async def get_ice_servers(_: bool = Depends(verify_auth_header)):
    """클라이언트가 공유할 ICE 서버(STUN/TURN) 설정을 제공합니다.

    Returns:
        list: [{"urls": ...}, {"urls": ..., "username": ..., "credential": ...}]
    """
    servers = ice_config.as_dicts()
    logger.info(f"ICE 서버 제공: {'STUN + TURN' if ice_config.has_turn_server else 'STUN만 (TURN 미설정)'}")
    return servers


@app.get("/api/broker/peers")
async def get_broker_peers(_: bool = Depends(verify_auth_header)):
    """브로커에 접속 중인 식별자 수를 조회합니다."""
    return {"count": peer_registry.count}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
