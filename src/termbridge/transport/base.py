"""
transport/base.py — Transport capability contract

Both drivers (remote shell, local serial port) sit on blocking libraries.
A Transport hides that behind an async surface:

    metadata = await transport.open()       # may take seconds; cancellable
    await transport.write(b"ls\\n")          # runs in a worker thread
    async for event in transport.events():  # DATA / DIAGNOSTIC / ERROR / CLOSED
        ...
    await transport.close()                 # idempotent, best effort

A daemon reader thread polls the underlying handle and hands events to the
event loop through an asyncio.Queue. ERROR and CLOSED are terminal: the
events() iterator ends after yielding one of them.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, ClassVar, Optional, TypeVar

from termbridge.config.settings import NormalizerConfig
from termbridge.exceptions import (
    TransportNotOpenError,
    TransportOpenError,
    TransportRuntimeError,
)
from termbridge.observability.logger import get_logger
from termbridge.transport.normalizer import OutputNormalizer

log = get_logger(__name__)

T = TypeVar("T")


class TransportKind(str, Enum):
    NONE   = "none"
    SHELL  = "shell"
    SERIAL = "serial"


class EventKind(str, Enum):
    DATA       = "data"
    DIAGNOSTIC = "diagnostic"
    ERROR      = "error"
    CLOSED     = "closed"


@dataclass(frozen=True)
class TransportEvent:
    kind: EventKind
    payload: bytes = b""
    message: str = ""

    @property
    def terminal(self) -> bool:
        return self.kind in (EventKind.ERROR, EventKind.CLOSED)

    @classmethod
    def data(cls, payload: bytes) -> "TransportEvent":
        return cls(EventKind.DATA, payload=payload)

    @classmethod
    def diagnostic(cls, payload: bytes) -> "TransportEvent":
        return cls(EventKind.DIAGNOSTIC, payload=payload)

    @classmethod
    def error(cls, message: str) -> "TransportEvent":
        return cls(EventKind.ERROR, message=message)

    @classmethod
    def closed(cls, message: str = "") -> "TransportEvent":
        return cls(EventKind.CLOSED, message=message)


class Transport(ABC):
    """
    Abstract byte-stream transport.

    Subclasses implement the blocking primitives (_poll, _write_blocking,
    _close_blocking) plus the async _open(); this class supplies threading,
    write serialisation and the terminal-event contract.
    """

    kind: ClassVar[TransportKind] = TransportKind.NONE
    line_ending: ClassVar[bytes] = b"\n"
    # Exceptions from the underlying library that mean "the link failed".
    io_errors: ClassVar[tuple[type[BaseException], ...]] = (OSError,)

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._opened = False
        self._closed = False

    # ─────────────────────────────────────────────────────────────────────────
    # Public capability set
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self) -> dict[str, Any]:
        """Establish the link and start reading. Returns status metadata."""
        self._loop = asyncio.get_running_loop()
        metadata = await self._open()
        if self._closed:
            await asyncio.to_thread(self._close_blocking)
            raise TransportOpenError("Transport was closed while opening")
        self._opened = True
        self._reader = threading.Thread(
            target=self._reader_loop,
            name=f"{self.kind.value}-reader",
            daemon=True,
        )
        self._reader.start()
        return {"connectionType": self.kind.value, **metadata}

    async def write(self, data: bytes) -> None:
        """Send bytes downstream without blocking the event loop."""
        if not self.is_open:
            raise TransportNotOpenError()
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._write_blocking, data)
            except self.io_errors as exc:
                raise TransportRuntimeError(
                    f"Write to {self.kind.value} transport failed: {exc}",
                    details={"error": type(exc).__name__},
                ) from exc

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Yield events in arrival order until ERROR or CLOSED."""
        while True:
            event = await self._events.get()
            yield event
            if event.terminal:
                return

    async def close(self) -> None:
        """Release the underlying handle. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        try:
            await asyncio.to_thread(self._close_blocking)
        except Exception as exc:
            log.warning("transport.close_failed", kind=self.kind.value, error=str(exc))

    def build_normalizer(self, config: NormalizerConfig) -> OutputNormalizer:
        return OutputNormalizer(config.prompt_regex)

    # ─────────────────────────────────────────────────────────────────────────
    # Subclass hooks
    # ─────────────────────────────────────────────────────────────────────────

    @abstractmethod
    async def _open(self) -> dict[str, Any]:
        """Establish the link; raise TransportOpenError/DiscoveryError on failure."""

    @abstractmethod
    def _poll(self) -> Optional[TransportEvent]:
        """Block briefly for input. None means nothing arrived yet."""

    @abstractmethod
    def _write_blocking(self, data: bytes) -> None: ...

    @abstractmethod
    def _close_blocking(self) -> None: ...

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_cancellable(
        self,
        fn: Callable[[], T],
        release: Callable[[T], None],
    ) -> T:
        """
        Run a blocking call in the default executor.

        The worker thread cannot be interrupted, so if the awaiting task is
        cancelled the result is handed to `release` once the thread finishes.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, fn)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            def _release_orphan(f: asyncio.Future) -> None:
                if f.cancelled() or f.exception() is not None:
                    return
                try:
                    release(f.result())
                except Exception as exc:
                    log.warning("transport.orphan_release_failed", error=str(exc))
            future.add_done_callback(_release_orphan)
            raise

    def _publish(self, event: TransportEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _reader_loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._poll()
            except Exception as exc:
                if not self._stop.is_set():
                    log.warning("transport.read_failed", kind=self.kind.value, error=str(exc))
                    self._publish(TransportEvent.error(
                        f"{self.kind.value.capitalize()} transport failed: {exc}"
                    ))
                return
            if event is None:
                continue
            if self._stop.is_set():
                return
            self._publish(event)
            if event.terminal:
                return
