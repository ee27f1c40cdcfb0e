"""Independent sessions keyed by id."""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from embryolens.session.controller import SessionController

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates, looks up, expires and closes ``SessionController`` instances.

    Every lookup counts as activity. Sessions idle for longer than ``ttl``
    seconds are closed by ``expire_idle``; a ``ttl`` of 0 keeps them until
    they are closed explicitly.
    """

    def __init__(
        self,
        controller_factory: Callable[[str], SessionController],
        *,
        ttl: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._controller_factory = controller_factory
        self._ttl = ttl
        self._clock = clock
        self._sessions: dict[str, SessionController] = {}
        self._last_seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def ttl(self) -> float:
        return self._ttl

    def create(self) -> SessionController:
        session_id = uuid.uuid4().hex
        controller = self._controller_factory(session_id)
        self._sessions[session_id] = controller
        self._last_seen[session_id] = self._clock()
        logger.info("Opened session %s", session_id)
        return controller

    def get(self, session_id: str) -> SessionController:
        try:
            controller = self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None
        self._last_seen[session_id] = self._clock()
        return controller

    async def close(self, session_id: str) -> None:
        controller = self._sessions.pop(session_id, None)
        if controller is None:
            raise KeyError(f"Unknown session: {session_id}")
        self._last_seen.pop(session_id, None)
        await controller.close()
        logger.info("Closed session %s", session_id)

    async def expire_idle(self) -> list[str]:
        """Close sessions idle past the TTL; sessions still classifying are kept."""
        if self._ttl <= 0:
            return []
        cutoff = self._clock() - self._ttl
        expired = [
            session_id
            for session_id, seen in self._last_seen.items()
            if seen < cutoff and not self._sessions[session_id].classification_pending
        ]
        for session_id in expired:
            logger.info("Expiring idle session %s", session_id)
            await self.close(session_id)
        return expired

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
