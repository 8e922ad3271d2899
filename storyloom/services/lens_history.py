"""
Lens History Service for Storyloom
Process-wide, capped FIFO of "archetype:lensId" combos used for anti-repetition.

Writers are not coordinated: two stories assigned at the same time may both
append, and the last write wins on the trimmed list.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

import redis.asyncio as redis

logger = logging.getLogger("storyloom.lens_history")

HISTORY_CAP = 10
RECENT_WINDOW = 5


def combo_key(archetype: str, lens_id: str) -> str:
    return f"{archetype}:{lens_id}"


class LensHistory:
    """In-memory view of the capped combo history."""

    def __init__(
        self,
        entries: Optional[Iterable[str]] = None,
        cap: int = HISTORY_CAP,
        window: int = RECENT_WINDOW,
    ):
        self.cap = cap
        self.window = window
        self._entries: List[str] = list(entries or [])[-cap:]

    def __len__(self) -> int:
        return len(self._entries)

    def record_combo(self, archetype: str, lens_id: str) -> None:
        """Append a combo, dropping the oldest entries beyond the cap."""
        self._entries.append(combo_key(archetype, lens_id))
        if len(self._entries) > self.cap:
            self._entries = self._entries[-self.cap:]

    def get_recent_combos(self, window: Optional[int] = None) -> List[str]:
        """Return the most recent combos, oldest first."""
        size = self.window if window is None else window
        if size <= 0:
            return []
        return self._entries[-size:]

    def is_combo_blocked(self, archetype: str, lens_id: str) -> bool:
        return combo_key(archetype, lens_id) in self.get_recent_combos()

    def to_list(self) -> List[str]:
        return list(self._entries)


class LensHistoryStore(ABC):
    """Persistence for the lens history."""

    @abstractmethod
    async def load(self) -> LensHistory:
        ...

    @abstractmethod
    async def append(self, combos: List[str]) -> None:
        ...


class InMemoryLensHistoryStore(LensHistoryStore):
    """Single-process store, used when no Redis URL is configured."""

    def __init__(self, cap: int = HISTORY_CAP, window: int = RECENT_WINDOW):
        self.cap = cap
        self.window = window
        self._entries: List[str] = []

    async def load(self) -> LensHistory:
        return LensHistory(self._entries, cap=self.cap, window=self.window)

    async def append(self, combos: List[str]) -> None:
        self._entries = (self._entries + list(combos))[-self.cap:]


class RedisLensHistoryStore(LensHistoryStore):
    """Lens history kept in a Redis list, trimmed to the cap on every write."""

    KEY = "storyloom:lens_history"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        cap: int = HISTORY_CAP,
        window: int = RECENT_WINDOW,
    ):
        self.redis_url = redis_url
        self.cap = cap
        self.window = window
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()
        logger.info(f"[connect] Lens history connected to Redis at {self.redis_url}")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def load(self) -> LensHistory:
        entries = await self.client.lrange(self.KEY, -self.cap, -1)
        return LensHistory(entries, cap=self.cap, window=self.window)

    async def append(self, combos: List[str]) -> None:
        if not combos:
            return
        await self.client.rpush(self.KEY, *combos)
        await self.client.ltrim(self.KEY, -self.cap, -1)
