"""One CompletionService per active learner.

The retry queue and its timers belong to a learner's session, never to
the process as a whole.  SessionRegistry hands out the session for a
user, creating and starting it on first use.  Starting a session replays
whatever that user's durable attempt log still holds, which is how a
completion that was pending when the process restarted gets delivered.

Requests hold a session through lease().  When the last lease on a
session is released and the session is idle (nothing queued, nothing
exhausted) it is disposed, so the registry only keeps learners who are
mid-request or still have completions in flight.

dispose_all() cancels every timer on shutdown; the attempts themselves
stay in the durable log for the next start.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from lms_progress.repos.progress_repo import progress_repo
from lms_progress.services.attempt_log import attempt_log
from lms_progress.services.completion_service import CompletionService
from lms_progress.services.progress_service import progress_service

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], CompletionService]


def _default_factory(user_id: str) -> CompletionService:
    return CompletionService(
        user_id,
        repo=progress_repo,
        progress=progress_service,
        attempt_log=attempt_log,
    )


class SessionRegistry:
    def __init__(self, factory: SessionFactory = _default_factory) -> None:
        self._factory = factory
        self._sessions: dict[str, CompletionService] = {}
        self._leases: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def peek(self, user_id: str) -> CompletionService | None:
        return self._sessions.get(user_id)

    async def get(self, user_id: str) -> CompletionService:
        session = self._sessions.get(user_id)
        if session is not None:
            return session
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = self._factory(user_id)
                self._sessions[user_id] = session
                replayed = await session.start()
                logger.info(
                    "Started completion session (%d replayed)",
                    replayed,
                    extra={"user_id": user_id},
                )
        return session

    @asynccontextmanager
    async def lease(self, user_id: str) -> AsyncIterator[CompletionService]:
        """Hold the user's session for the length of a request."""
        # Counted before get() so a concurrent release cannot evict it mid-start.
        self._leases[user_id] = self._leases.get(user_id, 0) + 1
        try:
            yield await self.get(user_id)
        finally:
            remaining = self._leases[user_id] - 1
            if remaining:
                self._leases[user_id] = remaining
            else:
                del self._leases[user_id]
            await self.evict_idle()

    async def evict_idle(self) -> int:
        """Dispose every unleased idle session.  Returns how many went."""
        candidates = list(self._sessions)
        evicted = 0
        for uid in candidates:
            session = self._sessions.get(uid)
            if session is None or self._leases.get(uid) or not session.idle:
                continue
            del self._sessions[uid]
            await session.dispose()
            evicted += 1
            logger.debug("Evicted idle completion session", extra={"user_id": uid})
        return evicted

    async def dispose(self, user_id: str) -> None:
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.dispose()

    async def dispose_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.dispose()
        if sessions:
            logger.info("Disposed %d completion session(s)", len(sessions))


session_registry = SessionRegistry()
