"""
gateway/session_registry.py — Process-wide Session Registry

Maps session_id → Registration (the Session plus its client link and
liveness bookkeeping). Uses asyncio.Lock for safe concurrent insert, remove
and iteration: accept inserts, connection close removes, the health sweep
iterates over a snapshot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol

from termbridge.observability.logger import get_logger

if TYPE_CHECKING:
    from termbridge.session.session import Session

log = get_logger(__name__)


class ClientLink(Protocol):
    """What the gateway needs from a client connection."""

    remote: str

    async def send(self, text: str) -> None: ...

    async def ping(self, on_pong) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def terminate(self) -> None: ...


@dataclass
class Registration:
    session: "Session"
    link: ClientLink
    awaiting_pong: bool = False
    sender: Optional[asyncio.Task] = field(default=None, repr=False)

    def mark_alive(self) -> None:
        self.awaiting_pong = False


class SessionRegistry:
    """Async-safe table of live sessions, one per client connection."""

    def __init__(self) -> None:
        self._entries: dict[str, Registration] = {}
        self._lock = asyncio.Lock()

    async def add(self, registration: Registration, *, limit: Optional[int] = None) -> bool:
        """
        Insert a registration. With a limit, the size check and the insert
        happen under one lock hold; False means the table was already full.
        """
        async with self._lock:
            if limit is not None and len(self._entries) >= limit:
                return False
            self._entries[registration.session.id] = registration
        log.info("registry.added", session_id=registration.session.id,
                 remote=registration.link.remote)
        return True

    async def remove(self, session_id: str) -> Optional[Registration]:
        """Remove and return a registration, or None if it was not present."""
        async with self._lock:
            registration = self._entries.pop(session_id, None)
        if registration is not None:
            log.info("registry.removed", session_id=session_id)
        return registration

    async def snapshot(self) -> list[Registration]:
        """Point-in-time copy, safe to iterate while others add/remove."""
        async with self._lock:
            return list(self._entries.values())

    async def get_count(self) -> int:
        async with self._lock:
            return len(self._entries)
