"""실시간 행 변경 피드 모듈."""

from .feed import RowChangeFeed, CHANNEL_PREFIX

__all__ = [
    "RowChangeFeed",
    "CHANNEL_PREFIX",
]
