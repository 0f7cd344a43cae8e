"""pytest 공통 설정.

사용법:
    cd backend
    uv run pytest test/
"""

import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def no_api_token(monkeypatch):
    """config/.env의 CLINIC_API_TOKEN과 무관하게 인증 없이 시작합니다."""
    import routes.deps as deps
    monkeypatch.setattr(deps, "API_TOKEN", "")
