"""
tests/unit/test_session.py — Session state machine

Drives a Session with an in-memory Transport and checks the envelopes it
queues for the client.

Covers:
  - connect → Connected with status metadata; already_connected while busy
  - open failure → Idle with exactly one error, and a later connect works
  - disconnect from Connected and from Connecting (one status, one close)
  - transport output, diagnostics, errors and end-of-stream
  - gapless outbound ids, inbound id dedup, internal faults
"""

import asyncio
import queue
from typing import Any, Optional

import pytest

from termbridge.exceptions import ProtocolError, TransportOpenError
from termbridge.gateway.protocol import Envelope
from termbridge.session.session import Session, SessionState
from termbridge.transport.base import Transport, TransportEvent, TransportKind
from termbridge.transport.serial_port import SerialTransport


class FakeTransport(Transport):
    """Transport whose open/read/write/close are scripted by the test."""

    kind = TransportKind.SHELL

    def __init__(self, *, fail: Optional[BaseException] = None,
                 gate: Optional[asyncio.Event] = None):
        super().__init__()
        self.fail = fail
        self.gate = gate
        self.inbox: "queue.Queue[TransportEvent]" = queue.Queue()
        self.written: list[bytes] = []
        self.close_calls = 0

    async def _open(self) -> dict[str, Any]:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return {"host": "10.0.0.5", "port": 22}

    def _poll(self) -> Optional[TransportEvent]:
        try:
            return self.inbox.get(timeout=0.02)
        except queue.Empty:
            return None

    def _write_blocking(self, data: bytes) -> None:
        self.written.append(data)

    def _close_blocking(self) -> None:
        self.close_calls += 1

    def push(self, event: TransportEvent) -> None:
        self.inbox.put(event)


class FakeSerialTransport(FakeTransport):
    kind = TransportKind.SERIAL
    line_ending = b"\r\n"


class ScriptedFactory:
    """TransportFactory returning pre-built transports in order."""

    def __init__(self, *transports: Transport):
        self.transports = list(transports)
        self.calls: list[tuple[TransportKind, dict]] = []

    def __call__(self, kind: TransportKind, fields: dict) -> Transport:
        self.calls.append((kind, fields))
        return self.transports.pop(0)


# ── Helpers ───────────────────────────────────────────────────────────────────

def drain(session: Session) -> list[Optional[Envelope]]:
    items = []
    while not session.outbox.empty():
        items.append(session.outbox.get_nowait())
    return items


async def until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


def statuses(envelopes) -> list[str]:
    return [e.get("status") for e in envelopes if e.type == "status"]


def errors(envelopes) -> list[Envelope]:
    return [e for e in envelopes if e.type == "error"]


async def connected_session(transport: FakeTransport) -> Session:
    session = Session("sess_test", ScriptedFactory(transport))
    await session.connect("shell", {"host": "10.0.0.5"})
    await until(lambda: session.state is SessionState.CONNECTED)
    return session


# ─────────────────────────────────────────────────────────────────────────────
# Connect
# ─────────────────────────────────────────────────────────────────────────────

class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_reaches_connected(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        out = drain(session)
        assert statuses(out) == ["connected"]
        status = out[0]
        assert status.get("connectionType") == "shell"
        assert status.get("host") == "10.0.0.5"
        assert session.transport is transport
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_is_asynchronous(self):
        gate = asyncio.Event()
        session = Session("s", ScriptedFactory(FakeTransport(gate=gate)))
        await session.connect("shell", {})
        assert session.state is SessionState.CONNECTING
        assert drain(session) == []
        gate.set()
        await until(lambda: session.state is SessionState.CONNECTED)
        await session.close()

    @pytest.mark.asyncio
    async def test_ssh_alias(self):
        factory = ScriptedFactory(FakeTransport())
        session = Session("s", factory)
        await session.connect("ssh", {})
        assert factory.calls[0][0] is TransportKind.SHELL
        await until(lambda: session.state is SessionState.CONNECTED)
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_connection_type(self):
        session = Session("s", ScriptedFactory())
        with pytest.raises(ProtocolError, match="connectionType"):
            await session.connect("telnet", {})
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_already_connected_while_connecting(self):
        gate = asyncio.Event()
        factory = ScriptedFactory(FakeTransport(gate=gate))
        session = Session("s", factory)
        await session.connect("shell", {})
        await session.connect("shell", {})
        assert statuses(drain(session)) == ["already_connected"]
        assert len(factory.calls) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_already_connected_while_connected(self):
        session = await connected_session(FakeTransport())
        drain(session)
        await session.connect("serial", {})
        out = drain(session)
        assert statuses(out) == ["already_connected"]
        assert out[0].get("connectionType") == "shell"
        await session.close()


class TestOpenFailure:
    @pytest.mark.asyncio
    async def test_failure_returns_to_idle_with_one_error(self):
        failing = FakeTransport(fail=TransportOpenError(
            "SSH connection to 10.0.0.5:22 failed", details={"host": "10.0.0.5"},
        ))
        session = Session("s", ScriptedFactory(failing))
        await session.connect("shell", {})
        await until(lambda: session.state is SessionState.IDLE)

        out = drain(session)
        assert len(out) == 1
        assert out[0].type == "error"
        assert out[0].get("message") == "SSH connection to 10.0.0.5:22 failed"
        assert out[0].get("details") == {"host": "10.0.0.5"}
        assert failing.close_calls == 1
        assert session.transport is None

    @pytest.mark.asyncio
    async def test_reconnect_after_failure(self):
        failing = FakeTransport(fail=TransportOpenError("nope"))
        working = FakeTransport()
        session = Session("s", ScriptedFactory(failing, working))
        await session.connect("shell", {})
        await until(lambda: session.state is SessionState.IDLE and not session.outbox.empty())
        drain(session)

        await session.connect("shell", {})
        await until(lambda: session.state is SessionState.CONNECTED)
        assert statuses(drain(session)) == ["connected"]
        await session.close()

    @pytest.mark.asyncio
    async def test_serial_without_device(self):
        serial_transport = SerialTransport(discoverer=lambda: [])
        session = Session("s", ScriptedFactory(serial_transport))
        await session.connect("serial", {})
        await until(lambda: session.state is SessionState.IDLE and not session.outbox.empty())
        out = drain(session)
        assert [e.get("message") for e in out] == ["No compatible serial device found"]

    @pytest.mark.asyncio
    async def test_unexpected_open_error_is_internal_fault(self):
        session = Session("s", ScriptedFactory(FakeTransport(fail=RuntimeError("bug"))))
        await session.connect("shell", {})
        await until(lambda: session.state is SessionState.CLOSED)
        out = drain(session)
        assert out[0].type == "error"
        assert "RuntimeError" in out[0].get("debug")
        assert out[-1] is None


# ─────────────────────────────────────────────────────────────────────────────
# Disconnect
# ─────────────────────────────────────────────────────────────────────────────

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_connected(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)

        await session.disconnect()
        out = drain(session)
        assert statuses(out) == ["disconnected"]
        assert transport.close_calls == 1
        assert session.state is SessionState.IDLE
        assert session.transport is None
        assert session.transport_kind is TransportKind.NONE

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting(self):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        session = Session("s", ScriptedFactory(transport))
        await session.connect("shell", {})

        await session.disconnect()
        gate.set()
        await asyncio.sleep(0.05)

        out = drain(session)
        assert statuses(out) == ["disconnected"]
        assert errors(out) == []
        assert transport.close_calls == 1
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_close_while_connecting(self):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        session = Session("s", ScriptedFactory(transport))
        await session.connect("shell", {})
        await asyncio.sleep(0.02)
        drain(session)

        await session.close()
        gate.set()
        await asyncio.sleep(0.05)

        assert session.state is SessionState.CLOSED
        assert session.transport is None
        assert transport.close_calls == 1
        assert session.outbox.empty()

    @pytest.mark.asyncio
    async def test_close_before_open_starts(self):
        transport = FakeTransport(gate=asyncio.Event())
        session = Session("s", ScriptedFactory(transport))
        await session.connect("shell", {})
        await session.close()

        assert session.state is SessionState.CLOSED
        assert session.transport is None
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_idle(self):
        session = Session("s", ScriptedFactory())
        await session.disconnect()
        assert statuses(drain(session)) == ["disconnected"]
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_disconnect_clears_seen_ids(self):
        session = await connected_session(FakeTransport())
        assert session.mark_seen(5) is True
        await session.disconnect()
        assert session.mark_seen(5) is True


# ─────────────────────────────────────────────────────────────────────────────
# Commands and output
# ─────────────────────────────────────────────────────────────────────────────

class TestIO:
    @pytest.mark.asyncio
    async def test_command_when_idle(self):
        session = Session("s", ScriptedFactory())
        await session.send_command("ls")
        out = drain(session)
        assert out[0].type == "error"
        assert out[0].get("message").startswith("Not connected")

    @pytest.mark.asyncio
    async def test_shell_command_line_ending(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        await session.send_command("ls -la")
        assert transport.written == [b"ls -la\n"]
        await session.close()

    @pytest.mark.asyncio
    async def test_serial_command_line_ending(self):
        transport = FakeSerialTransport()
        session = Session("s", ScriptedFactory(transport))
        await session.connect("serial", {})
        await until(lambda: session.state is SessionState.CONNECTED)
        await session.send_command("AT")
        assert transport.written == [b"AT\r\n"]
        await session.close()

    @pytest.mark.asyncio
    async def test_pty_data_forwarded_raw(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        await session.send_pty_data("\x03")
        assert transport.written == [b"\x03"]
        await session.close()

    @pytest.mark.asyncio
    async def test_output_is_normalized(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)

        transport.push(TransportEvent.data(b"hel"))
        transport.push(TransportEvent.data(b"lo\nworld\n"))
        await until(lambda: not session.outbox.empty())
        out = drain(session)
        assert [e.get("data") for e in out] == ["hello\nworld\n"]
        await session.close()

    @pytest.mark.asyncio
    async def test_diagnostic_keeps_connection(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)

        transport.push(TransportEvent.diagnostic(b"warning: locale\n"))
        await until(lambda: not session.outbox.empty())
        out = drain(session)
        assert out[0].type == "error"
        assert out[0].get("details") == {"stderr": "warning: locale\n"}
        assert session.state is SessionState.CONNECTED
        await session.close()

    @pytest.mark.asyncio
    async def test_transport_end_returns_to_idle(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)

        transport.push(TransportEvent.data(b"bye"))
        transport.push(TransportEvent.closed("remote shell closed the session"))
        await until(lambda: session.state is SessionState.IDLE)
        out = drain(session)
        assert [e.type for e in out] == ["output", "status"]
        assert out[0].get("data") == "bye\n"
        assert out[1].get("status") == "disconnected"
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_transport_error_reported_then_disconnected(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)

        transport.push(TransportEvent.error("Serial transport failed: device unplugged"))
        await until(lambda: session.state is SessionState.IDLE)
        out = drain(session)
        assert [e.type for e in out] == ["error", "status"]
        assert out[0].get("message") == "Serial transport failed: device unplugged"


# ─────────────────────────────────────────────────────────────────────────────
# Ids, status reports, faults
# ─────────────────────────────────────────────────────────────────────────────

class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_outbound_ids_are_gapless(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        await session.send_command("x")
        session.report_status("connected")
        await session.disconnect()
        await session.send_command("y")
        ids = [e.id for e in drain(session)]
        assert ids == list(range(len(ids)))
        assert ids[0] == 0

    def test_mark_seen(self):
        session = Session("s", ScriptedFactory())
        assert session.mark_seen(1) is True
        assert session.mark_seen(1) is False
        assert session.mark_seen(None) is True
        assert session.mark_seen(None) is True

    @pytest.mark.asyncio
    async def test_report_status_when_connected(self):
        session = await connected_session(FakeTransport())
        drain(session)
        session.report_status("connected")
        out = drain(session)
        assert statuses(out) == ["connected"]
        await session.close()

    @pytest.mark.asyncio
    async def test_report_status_when_idle(self):
        session = Session("s", ScriptedFactory())
        session.report_status("connected")
        out = drain(session)
        assert statuses(out) == ["ready"]
        assert out[0].get("state") == "idle"

    def test_report_status_other_values_ignored(self):
        session = Session("s", ScriptedFactory())
        session.report_status("ready")
        assert session.outbox.empty()

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_silences_output(self):
        transport = FakeTransport()
        session = await connected_session(transport)
        drain(session)
        await session.close()
        await session.close()
        session.report_status("connected")
        assert session.outbox.empty()
        assert transport.close_calls == 1
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_fail_emits_error_then_drop_marker(self):
        session = Session("s", ScriptedFactory())
        await session.fail(ValueError("bad state"))
        out = drain(session)
        assert out[0].type == "error"
        assert out[0].get("debug") == "ValueError: bad state"
        assert out[1] is None
        assert session.is_closed

    def test_create_generates_ids(self):
        a = Session.create(ScriptedFactory())
        b = Session.create(ScriptedFactory())
        assert a.id.startswith("sess_")
        assert a.id != b.id
