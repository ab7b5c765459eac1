from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from ...config import LOCK_MODE_QUEUE, LOCK_MODE_REJECT
from ...errors import ConcurrentModification

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SessionLockRegistry:
    """
    Single-flight lock keyed by session id.

    In `queue` mode a second request waits up to `wait_timeout` seconds for
    the running one to finish; in `reject` mode it fails immediately. Either
    way the caller gets ConcurrentModification instead of a second in-flight
    run. Entries are dropped once no request holds or awaits them.
    """

    def __init__(self, *, mode: str = LOCK_MODE_QUEUE, wait_timeout: float = 30.0) -> None:
        if mode not in {LOCK_MODE_QUEUE, LOCK_MODE_REJECT}:
            raise ValueError(f"Unknown lock mode: {mode}")
        self.mode = mode
        self.wait_timeout = wait_timeout
        self._entries: Dict[int, _Entry] = {}

    def is_locked(self, session_id: int) -> bool:
        entry = self._entries.get(session_id)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, session_id: int) -> AsyncIterator[None]:
        entry = self._entries.get(session_id)
        if entry is None:
            entry = self._entries[session_id] = _Entry()
        if self.mode == LOCK_MODE_REJECT and entry.lock.locked():
            logger.info("Rejecting request for busy session %s", session_id)
            raise ConcurrentModification(session_id)

        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.wait_timeout)
            except asyncio.TimeoutError as exc:
                raise ConcurrentModification(
                    session_id, f"still busy after waiting {self.wait_timeout:.1f}s"
                ) from exc
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(session_id) is entry:
                del self._entries[session_id]
