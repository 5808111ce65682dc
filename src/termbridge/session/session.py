"""
session/session.py — Per-connection Session state machine

One Session exists per duplex client connection. It owns at most one
Transport, the Output Normalizer for that transport, the outbound id counter
and the bounded set of inbound ids already processed.

    Idle ──connect──▶ Connecting ──open ok──▶ Connected
     ▲                    │                      │
     └──── open failed ───┘                      │
     ▲                                           │
     ├──── transport closed / errored ───────────┤
     └──── Disconnecting ◀──── disconnect ───────┘

Closed is terminal (client connection gone, or an internal fault).

All outbound envelopes go through `outbox`, an asyncio.Queue the gateway
drains in order. A None item asks the gateway to drop the connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import Hashable
from enum import Enum
from typing import Any, Optional

from termbridge.config.settings import NormalizerConfig
from termbridge.exceptions import (
    DiscoveryError,
    InternalFault,
    TransportNotOpenError,
    TransportOpenError,
    TransportRuntimeError,
)
from termbridge.gateway.protocol import (
    Envelope,
    Status,
    make_error,
    make_output,
    make_status,
)
from termbridge.observability.logger import get_logger
from termbridge.session.dedup import SeenIds
from termbridge.transport.base import EventKind, Transport, TransportKind
from termbridge.transport.factory import TransportFactory, parse_kind
from termbridge.transport.normalizer import OutputNormalizer

log = get_logger(__name__)


class SessionState(str, Enum):
    IDLE          = "idle"
    CONNECTING    = "connecting"
    CONNECTED     = "connected"
    DISCONNECTING = "disconnecting"
    CLOSED        = "closed"


class Session:
    """All runtime state for one client connection."""

    def __init__(
        self,
        session_id: str,
        transport_factory: TransportFactory,
        *,
        normalizer_config: Optional[NormalizerConfig] = None,
        dedup_capacity: int = 1000,
    ):
        self.id = session_id
        self.state = SessionState.IDLE
        self.transport_kind = TransportKind.NONE
        self.transport: Optional[Transport] = None
        self.normalizer: Optional[OutputNormalizer] = None
        self.outbound_counter = 0
        self.seen_inbound_ids = SeenIds(dedup_capacity)
        self.outbox: asyncio.Queue[Optional[Envelope]] = asyncio.Queue()

        self._transport_factory = transport_factory
        self._normalizer_config = normalizer_config or NormalizerConfig()
        self._pending: Optional[Transport] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._closing = False

        log.debug("session.created", session_id=session_id)

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def create(cls, transport_factory: TransportFactory, **kwargs: Any) -> "Session":
        return cls(f"sess_{uuid.uuid4().hex[:12]}", transport_factory, **kwargs)

    # ── Outbound ──────────────────────────────────────────────────────────────

    def emit(self, envelope: Envelope) -> Envelope:
        """Stamp the next outbound id and queue the envelope for the client."""
        if self.state is SessionState.CLOSED:
            return envelope
        envelope.id = self.outbound_counter
        self.outbound_counter += 1
        self.outbox.put_nowait(envelope)
        return envelope

    def emit_status(self, status: Status, **metadata: Any) -> None:
        self.emit(make_status(status, **metadata))

    def emit_error(self, message: str, *, debug: Optional[str] = None,
                   details: Optional[dict[str, Any]] = None) -> None:
        self.emit(make_error(message, debug=debug, details=details))

    # ── Inbound dedup ─────────────────────────────────────────────────────────

    def mark_seen(self, envelope_id: Optional[Hashable]) -> bool:
        """
        Record an inbound id. False means it was already processed and the
        envelope must be dropped. Envelopes without an id are never dropped.
        """
        if envelope_id is None:
            return True
        return self.seen_inbound_ids.add(envelope_id)

    # ── State ─────────────────────────────────────────────────────────────────

    def _set_state(self, new: SessionState) -> None:
        if new is self.state:
            return
        log.info("session.state_changed", session_id=self.id,
                 old=self.state.value, new=new.value)
        self.state = new

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # ─────────────────────────────────────────────────────────────────────────
    # Client requests
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, connection_type: Any, fields: dict[str, Any]) -> None:
        """
        Start opening a transport. Returns as soon as the open is scheduled;
        the result arrives later as a `status` or `error` envelope.
        """
        if self.state is not SessionState.IDLE:
            self.emit_status(
                Status.ALREADY_CONNECTED,
                connectionType=self.transport_kind.value,
                message="Session already has an active or pending connection",
            )
            return

        kind = parse_kind(connection_type)
        transport = self._transport_factory(kind, fields)

        self.transport_kind = kind
        self._pending = transport
        self._set_state(SessionState.CONNECTING)
        self._connect_task = asyncio.create_task(
            self._open_transport(transport), name=f"{self.id}-open",
        )

    async def disconnect(self) -> None:
        if self.state is SessionState.CONNECTING:
            self._set_state(SessionState.DISCONNECTING)
            await self._cancel_connect()
        elif self.state is SessionState.CONNECTED:
            self._set_state(SessionState.DISCONNECTING)
            transport, self.transport = self.transport, None
            await self._stop_pump()
            if transport is not None:
                await transport.close()
        elif self.state is SessionState.CLOSED:
            return

        self.normalizer = None
        self.seen_inbound_ids.clear()
        self.transport_kind = TransportKind.NONE
        self._set_state(SessionState.IDLE)
        self.emit_status(Status.DISCONNECTED, message="Connection closed")

    async def send_command(self, command: str) -> None:
        """Send one line to the shell or device, line ending appended."""
        transport = self._require_transport()
        if transport is None:
            return
        await self._write(transport, command.encode("utf-8") + transport.line_ending)

    async def send_pty_data(self, data: str) -> None:
        """Forward raw keystrokes unmodified."""
        transport = self._require_transport()
        if transport is None:
            return
        await self._write(transport, data.encode("utf-8"))

    def report_status(self, status: Any) -> None:
        """
        Answer a client `status` report with the session's actual state.

        Only `connected` reports are answered; other values are ignored.
        """
        if status != Status.CONNECTED.value:
            log.debug("session.status_ignored", session_id=self.id, status=status)
            return
        if self.state is SessionState.CONNECTED:
            self.emit_status(Status.CONNECTED, connectionType=self.transport_kind.value,
                             message="Connection established")
        else:
            self.emit_status(Status.READY, state=self.state.value)

    async def close(self) -> None:
        """Client connection is gone: release everything and become Closed."""
        if self._closing:
            return
        self._closing = True
        await self._cancel_connect()
        await self._stop_pump()
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.close()
        self.normalizer = None
        self._set_state(SessionState.CLOSED)

    async def fail(self, exc: BaseException) -> None:
        """Internal fault: tell the client, close, and ask the gateway to drop us."""
        log.error("session.internal_fault", session_id=self.id,
                  error=str(exc), exc_info=exc)
        if not self.is_closed:
            self.emit_error(f"{InternalFault.default_message}; closing session",
                            debug=f"{type(exc).__name__}: {exc}")
        await self.close()
        self.outbox.put_nowait(None)

    # ─────────────────────────────────────────────────────────────────────────
    # Transport lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def _open_transport(self, transport: Transport) -> None:
        try:
            metadata = await transport.open()
        except asyncio.CancelledError:
            self._pending = None
            await transport.close()
            raise
        except (TransportOpenError, DiscoveryError) as exc:
            self._pending = None
            await transport.close()
            log.warning("session.open_failed", session_id=self.id,
                        kind=transport.kind.value, error=exc.message)
            self.transport_kind = TransportKind.NONE
            self._set_state(SessionState.IDLE)
            self.emit_error(exc.message, details=exc.details)
            return
        except Exception as exc:
            self._pending = None
            await transport.close()
            await self.fail(exc)
            return

        self._pending = None
        self.transport = transport
        self.normalizer = transport.build_normalizer(self._normalizer_config)
        self._set_state(SessionState.CONNECTED)
        self.emit_status(Status.CONNECTED, message="Connection established", **metadata)
        self._pump_task = asyncio.create_task(
            self._pump(transport, self.normalizer), name=f"{self.id}-pump",
        )

    async def _pump(self, transport: Transport, normalizer: OutputNormalizer) -> None:
        """Forward normalized transport output until the transport ends."""
        try:
            async for event in transport.events():
                if event.kind is EventKind.DATA:
                    lines = normalizer.feed(event.payload)
                    if lines:
                        self.emit(make_output("".join(lines)))
                elif event.kind is EventKind.DIAGNOSTIC:
                    self.emit_error(
                        "Remote diagnostic output",
                        details={"stderr": event.payload.decode("utf-8", errors="replace")},
                    )
                elif event.kind is EventKind.ERROR:
                    await self._on_transport_lost(transport, normalizer, error=event.message)
                    return
                else:
                    await self._on_transport_lost(transport, normalizer)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self.fail(exc)

    async def _on_transport_lost(
        self,
        transport: Transport,
        normalizer: OutputNormalizer,
        *,
        error: str = "",
    ) -> None:
        if self.transport is not transport:
            return
        tail = normalizer.flush()
        if tail:
            self.emit(make_output("".join(tail)))

        self.transport = None
        self.normalizer = None
        self._pump_task = None
        await transport.close()

        log.info("session.transport_lost", session_id=self.id,
                 kind=transport.kind.value, error=error or None)
        self.transport_kind = TransportKind.NONE
        self._set_state(SessionState.IDLE)
        if error:
            self.emit_error(error)
        self.emit_status(Status.DISCONNECTED, message="Connection closed")

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _require_transport(self) -> Optional[Transport]:
        if self.state is not SessionState.CONNECTED or self.transport is None:
            self.emit_error('Not connected. Send a "connect" message first.',
                            details={"state": self.state.value})
            return None
        return self.transport

    async def _write(self, transport: Transport, data: bytes) -> None:
        try:
            await transport.write(data)
        except TransportNotOpenError as exc:
            self.emit_error(exc.message)
        except TransportRuntimeError as exc:
            log.warning("session.write_failed", session_id=self.id, error=exc.message)
            self.emit_error(exc.message, details=exc.details)

    async def _cancel_connect(self) -> None:
        task, self._connect_task = self._connect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        # A task cancelled before its first step never reaches its own cleanup.
        pending, self._pending = self._pending, None
        if pending is not None:
            await pending.close()

    async def _stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def __repr__(self) -> str:
        return (f"<Session id={self.id} state={self.state.value} "
                f"transport={self.transport_kind.value}>")
