"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 인증 의존성을 정의합니다.
CLINIC_API_TOKEN이 비어 있으면 인증을 하지 않습니다.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException

API_TOKEN = os.getenv("CLINIC_API_TOKEN", "")


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """Authorization: Bearer <token> 헤더를 검증합니다.

    Raises:
        HTTPException: 401 인증 실패
    """
    if not API_TOKEN:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Authorization header required"})
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Invalid authorization format"})
    if parts[1] != API_TOKEN:
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Invalid token"})
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """WebSocket 쿼리 파라미터 토큰을 검증합니다."""
    if not API_TOKEN:
        return True
    return token == API_TOKEN
