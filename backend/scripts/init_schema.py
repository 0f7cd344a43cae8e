"""예약(공유 통화 레코드) 테이블 생성 스크립트.

Usage:
    cd backend
    python scripts/init_schema.py
    python scripts/init_schema.py --drop  # 기존 테이블 삭제 후 재생성
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_DIR))
load_dotenv(BACKEND_DIR / "config" / ".env")

from modules.database import get_db_manager  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def init_schema(drop_existing: bool = False) -> int:
    db = get_db_manager()
    if not await db.initialize():
        return 1
    try:
        await db.ensure_schema(drop_existing=drop_existing)
    finally:
        await db.close()
    logger.info("Schema initialization completed")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create the appointments table")
    parser.add_argument("--drop", action="store_true", help="Drop the existing table first")
    args = parser.parse_args()
    sys.exit(asyncio.run(init_schema(drop_existing=args.drop)))


if __name__ == "__main__":
    main()
