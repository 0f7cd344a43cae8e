"""FastAPI 라우터 모듈.

app.py에서 분리된 API 엔드포인트들을 제공합니다.
"""

from .health import router as health_router
from .appointments import router as appointments_router, init_appointments
from .broker import router as broker_router, init_broker
from .deps import verify_auth_header, verify_ws_token

__all__ = [
    "health_router",
    "appointments_router",
    "init_appointments",
    "broker_router",
    "init_broker",
    "verify_auth_header",
    "verify_ws_token",
]
