from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime
from collections import defaultdict
import asyncio
import itertools

from models import PointHistory, TransactionType, UserPoint, utc_now
from config import get_settings


class StoreError(Exception):
    """Raised by a store when a read or write cannot be completed."""


class UserPointRepository(ABC):
    @abstractmethod
    async def read(self, user_id: int) -> UserPoint:
        """Get the user's balance, creating a zero balance if none exists."""
        pass

    @abstractmethod
    async def write(self, user_id: int, amount: int) -> UserPoint:
        """Store a new balance and return the post-write snapshot."""
        pass

    @abstractmethod
    async def get_users_count(self) -> int:
        """Get total number of stored balances."""
        pass


class PointHistoryRepository(ABC):
    @abstractmethod
    async def append(
        self,
        user_id: int,
        type: TransactionType,
        amount: int,
        timestamp: Optional[datetime] = None,
    ) -> PointHistory:
        """Append a transaction record for the user."""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: int) -> List[PointHistory]:
        """Get the user's records in insertion order."""
        pass

    @abstractmethod
    async def get_histories_count(self) -> int:
        """Get total number of stored records."""
        pass


class InMemoryUserPointRepository(UserPointRepository):
    def __init__(self, latency_seconds: float = 0.0):
        self.points: Dict[int, UserPoint] = {}
        self.latency_seconds = latency_seconds

    async def read(self, user_id: int) -> UserPoint:
        await asyncio.sleep(self.latency_seconds)
        return self.points.setdefault(user_id, UserPoint.empty(user_id))

    async def write(self, user_id: int, amount: int) -> UserPoint:
        await asyncio.sleep(self.latency_seconds)
        user_point = UserPoint(id=user_id, point=amount, updated_at=utc_now())
        self.points[user_id] = user_point
        return user_point

    async def get_users_count(self) -> int:
        return len(self.points)


class InMemoryPointHistoryRepository(PointHistoryRepository):
    def __init__(self, latency_seconds: float = 0.0):
        self.histories: Dict[int, List[PointHistory]] = defaultdict(list)
        self.latency_seconds = latency_seconds
        self._ids = itertools.count(1)

    async def append(
        self,
        user_id: int,
        type: TransactionType,
        amount: int,
        timestamp: Optional[datetime] = None,
    ) -> PointHistory:
        await asyncio.sleep(self.latency_seconds)
        record = PointHistory(
            id=next(self._ids),
            user_id=user_id,
            type=type,
            amount=amount,
            timestamp=timestamp or utc_now(),
        )
        self.histories[user_id].append(record)
        return record

    async def list_by_user(self, user_id: int) -> List[PointHistory]:
        await asyncio.sleep(self.latency_seconds)
        return list(self.histories.get(user_id, ()))

    async def get_histories_count(self) -> int:
        return sum(len(records) for records in self.histories.values())


def _new_repositories():
    latency = get_settings().store_latency_ms / 1000
    return InMemoryUserPointRepository(latency), InMemoryPointHistoryRepository(latency)


# Singleton instances
_user_point_repo, _point_history_repo = _new_repositories()


def get_user_point_repository() -> UserPointRepository:
    return _user_point_repo


def get_point_history_repository() -> PointHistoryRepository:
    return _point_history_repo


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _user_point_repo, _point_history_repo
    _user_point_repo, _point_history_repo = _new_repositories()
