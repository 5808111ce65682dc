"""
gateway/gateway_server.py — WebSocket Gateway Server

Accepts WebSocket connections, gives each one a Session, routes inbound
envelopes to the Session's state machine and drains the Session's outbox
back to the client. A periodic health sweep pings every client and
terminates the ones that did not answer the previous ping. Uses the
`websockets` library.

Usage:
    server = GatewayServer(registry, session_factory, host="0.0.0.0", port=3002)
    await server.start()          # starts listening + health sweep
    await server.wait_closed()    # blocks until shutdown
"""

from __future__ import annotations

import asyncio
import ssl
from typing import Awaitable, Callable, Optional, Union

import websockets
from websockets.asyncio.server import ServerConnection

from termbridge.exceptions import ProtocolError
from termbridge.gateway.protocol import INBOUND_TYPES, Envelope, MessageType, Status, make_error
from termbridge.gateway.session_registry import ClientLink, Registration, SessionRegistry
from termbridge.observability.logger import bind_session, clear_session, get_logger
from termbridge.session.session import Session

log = get_logger(__name__)

SessionFactory = Callable[[], Session]
RouteHandler = Callable[[Session, Envelope], Awaitable[None]]

# WebSocket close codes
_CLOSE_POLICY = 1008
_CLOSE_INTERNAL = 1011
_CLOSE_TRY_LATER = 1013


class WebSocketLink:
    """ClientLink backed by a websockets ServerConnection."""

    def __init__(self, websocket: ServerConnection):
        self._ws = websocket
        self.remote = str(getattr(websocket, "remote_address", "?"))

    async def send(self, text: str) -> None:
        await self._ws.send(text)

    async def ping(self, on_pong: Callable[[], None]) -> None:
        waiter = await self._ws.ping()

        def _answered(f: asyncio.Future) -> None:
            if not f.cancelled() and f.exception() is None:
                on_pong()

        waiter.add_done_callback(_answered)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code, reason)

    def terminate(self) -> None:
        """Drop the TCP connection without a closing handshake."""
        transport = getattr(self._ws, "transport", None)
        if transport is not None:
            transport.abort()


class GatewayServer:
    """
    WebSocket gateway server.

    One Session per connection; sessions never share state except through
    the SessionRegistry.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_factory: SessionFactory,
        *,
        host: str = "127.0.0.1",
        port: int = 3002,
        path: str = "/ws",
        health_interval: float = 30.0,
        ping_timeout: float = 10.0,
        max_connections: int = 50,
        max_message_bytes: int = 2**20,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self._registry = registry
        self._session_factory = session_factory
        self._host = host
        self._port = port
        self._path = path
        self._health_interval = health_interval
        self._ping_timeout = ping_timeout
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._ssl = ssl_context
        self._server = None
        self._health_task: Optional[asyncio.Task] = None

        self._routes: dict[str, RouteHandler] = {
            MessageType.STATUS.value: self._on_status,
            MessageType.CONNECT.value: self._on_connect,
            MessageType.DISCONNECT.value: self._on_disconnect,
            MessageType.COMMAND.value: self._on_command,
            MessageType.PTY_DATA.value: self._on_pty_data,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the WebSocket server and the health sweep."""
        self._server = await websockets.serve(
            self._handler,
            self._host,
            self._port,
            ssl=self._ssl,
            max_size=self._max_message_bytes,
            ping_interval=None,  # liveness is the health sweep's job
            compression=None,
        )
        self._health_task = asyncio.create_task(self._health_loop(), name="health-sweep")
        log.info(
            "gateway.started",
            host=self._host,
            port=self._port,
            path=self._path,
            tls=self._ssl is not None,
            max_connections=self._max_connections,
        )

    async def wait_closed(self) -> None:
        """Block until the server is closed."""
        if self._server:
            await self._server.wait_closed()

    async def shutdown(self) -> None:
        """Stop the sweep, close every session, then stop listening."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        for registration in await self._registry.snapshot():
            await self.close_session(registration.session.id)

        if self._server:
            self._server.close()
            await self._server.wait_closed()
        log.info("gateway.stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, websocket: ServerConnection) -> None:
        """Handle a single WebSocket connection."""
        request = getattr(websocket, "request", None)
        path = getattr(request, "path", self._path) or self._path
        if path.split("?", 1)[0] != self._path:
            await websocket.close(_CLOSE_POLICY, "Unknown path")
            return

        link = WebSocketLink(websocket)
        session = await self.accept(link)
        if session is None:
            err = make_error("Server at connection limit")
            err.id = 0
            await websocket.send(err.to_json())
            await websocket.close(_CLOSE_TRY_LATER, "Server at connection limit")
            return
        log.info("gateway.client_connected", remote=link.remote)

        try:
            async for raw in websocket:
                await self.dispatch(session, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.close_session(session.id)
            log.info("gateway.client_disconnected", remote=link.remote)
            clear_session()

    async def accept(self, link: ClientLink) -> Optional[Session]:
        """
        Create and register an Idle session, then greet the client.

        Returns None, registering nothing, when the server is at its
        connection limit.
        """
        session = self._session_factory()
        registration = Registration(session=session, link=link)
        if not await self._registry.add(registration, limit=self._max_connections):
            log.warning("gateway.connection_limit", remote=link.remote,
                        max_connections=self._max_connections)
            return None
        # The sender task copies this context, so bind first.
        bind_session(session.id, link.remote)
        registration.sender = asyncio.create_task(
            self._drain(registration), name=f"{session.id}-sender",
        )
        session.emit_status(Status.READY, sessionId=session.id)
        return session

    async def close_session(self, session_id: str) -> None:
        """Connection is gone: unregister, close the session, stop its sender."""
        registration = await self._registry.remove(session_id)
        if registration is None:
            return
        await registration.session.close()
        sender = registration.sender
        if sender is not None and not sender.done() and sender is not asyncio.current_task():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    async def _drain(self, registration: Registration) -> None:
        """Deliver a session's outbound envelopes in counter order."""
        session, link = registration.session, registration.link
        while True:
            envelope = await session.outbox.get()
            if envelope is None:
                await link.close(_CLOSE_INTERNAL, "Internal error")
                return
            try:
                await link.send(envelope.to_json())
            except websockets.ConnectionClosed:
                return

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def dispatch(self, session: Session, raw: Union[str, bytes]) -> None:
        """
        Decode one inbound frame, drop it if its id was already processed,
        and route it by type. Protocol problems become `error` envelopes;
        anything unexpected closes the session.
        """
        try:
            envelope = Envelope.from_json(raw)
        except ProtocolError as exc:
            session.emit_error(exc.message, details=exc.details)
            return

        if not session.mark_seen(envelope.id):
            log.debug("gateway.duplicate_dropped", envelope_id=envelope.id, type=envelope.type)
            return

        if envelope.type not in INBOUND_TYPES:
            session.emit_error(
                "Unknown message type",
                details={"type": envelope.type, "supported": sorted(INBOUND_TYPES)},
            )
            return
        handler = self._routes[envelope.type]

        try:
            await handler(session, envelope)
        except ProtocolError as exc:
            session.emit_error(exc.message, details=exc.details)
        except Exception as exc:
            await session.fail(exc)

    async def _on_status(self, session: Session, envelope: Envelope) -> None:
        session.report_status(envelope.get("status"))

    async def _on_connect(self, session: Session, envelope: Envelope) -> None:
        await session.connect(envelope.get("connectionType"), envelope.fields)

    async def _on_disconnect(self, session: Session, envelope: Envelope) -> None:
        await session.disconnect()

    async def _on_command(self, session: Session, envelope: Envelope) -> None:
        await session.send_command(envelope.require_str("command"))

    async def _on_pty_data(self, session: Session, envelope: Envelope) -> None:
        await session.send_pty_data(envelope.require_str("data"))

    # ─────────────────────────────────────────────────────────────────────────
    # Health sweep
    # ─────────────────────────────────────────────────────────────────────────

    async def health_sweep(self) -> None:
        """
        Terminate every client that did not answer the previous ping, and
        ping the rest.

        Pings run concurrently, each bounded by the ping timeout.
        """
        await asyncio.gather(*(
            self._check_client(registration)
            for registration in await self._registry.snapshot()
        ))

    async def _check_client(self, registration: Registration) -> None:
        if registration.awaiting_pong:
            await self._drop_unresponsive(registration, reason="no pong")
            return

        registration.awaiting_pong = True
        try:
            await asyncio.wait_for(
                registration.link.ping(registration.mark_alive), self._ping_timeout,
            )
        except asyncio.TimeoutError:
            await self._drop_unresponsive(registration, reason="ping timed out")
        except websockets.ConnectionClosed:
            await self._drop_unresponsive(registration, reason="connection closed")

    async def _drop_unresponsive(self, registration: Registration, *, reason: str) -> None:
        log.warning(
            "gateway.client_unresponsive",
            session_id=registration.session.id,
            remote=registration.link.remote,
            reason=reason,
        )
        registration.link.terminate()
        await self.close_session(registration.session.id)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            try:
                await self.health_sweep()
            except Exception as exc:
                log.error("gateway.health_sweep_failed", error=str(exc), exc_info=exc)
