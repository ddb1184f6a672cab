from __future__ import annotations

import asyncio
import threading
import time
from typing import Optional, Set

from formfind.logging import get_logger
from formfind.service.errors import ConflictError
from formfind.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class TurnGate:
    """Per-chat mutual exclusion for turns.

    Backed by a Redis concurrency slot when a cache is configured, so the
    exclusion holds across workers; otherwise a process-local set.
    """

    SLOT_TYPE = "turn"

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        wait_seconds: float = 10.0,
        poll_interval: float = 0.05,
        slot_ttl_seconds: int = 300,
    ) -> None:
        self.cache = cache
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.slot_ttl_seconds = slot_ttl_seconds
        self._held: Set[str] = set()
        self._lock = threading.Lock()

    async def _try_acquire(self, chat_id: str) -> bool:
        if self.cache:
            acquired, _ = await self.cache.acquire_concurrency_slot(
                self.SLOT_TYPE, chat_id, 1, ttl_seconds=self.slot_ttl_seconds
            )
            return acquired
        with self._lock:
            if chat_id in self._held:
                return False
            self._held.add(chat_id)
            return True

    async def acquire(self, chat_id: str) -> None:
        deadline = time.monotonic() + self.wait_seconds
        while not await self._try_acquire(chat_id):
            if time.monotonic() >= deadline:
                logger.warning("turn_gate_busy", chat_id=chat_id, waited_seconds=self.wait_seconds)
                raise ConflictError("Another turn is in progress for this chat")
            await asyncio.sleep(self.poll_interval)

    async def release(self, chat_id: str) -> None:
        if self.cache:
            await self.cache.release_concurrency_slot(self.SLOT_TYPE, chat_id)
            return
        with self._lock:
            self._held.discard(chat_id)

    def is_held(self, chat_id: str) -> bool:
        """Process-local view only."""
        with self._lock:
            return chat_id in self._held

