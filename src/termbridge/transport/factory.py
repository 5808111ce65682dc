"""
transport/factory.py — Build a Transport from a `connect` envelope.

The only place that maps a wire `connectionType` to a driver class.
"""

from __future__ import annotations

from typing import Any, Callable

from termbridge.config.settings import Settings
from termbridge.exceptions import ProtocolError
from termbridge.transport.base import Transport, TransportKind
from termbridge.transport.serial_port import SerialTransport
from termbridge.transport.shell import ShellParams, ShellTransport

TransportFactory = Callable[[TransportKind, dict[str, Any]], Transport]

# Browser clients send "ssh".
_KIND_ALIASES = {
    "shell": TransportKind.SHELL,
    "ssh": TransportKind.SHELL,
    "serial": TransportKind.SERIAL,
}


def parse_kind(value: Any) -> TransportKind:
    kind = _KIND_ALIASES.get(value) if isinstance(value, str) else None
    if kind is None:
        raise ProtocolError(
            f"Unsupported connectionType: {value!r}",
            details={"supported": sorted(_KIND_ALIASES)},
        )
    return kind


def make_transport_factory(settings: Settings) -> TransportFactory:
    """Return a factory bound to the shell/serial sections of settings."""

    def build(kind: TransportKind, fields: dict[str, Any]) -> Transport:
        if kind is TransportKind.SHELL:
            return ShellTransport(ShellParams.from_fields(fields, settings.shell))
        if kind is TransportKind.SERIAL:
            return SerialTransport(settings.serial)
        raise ProtocolError(f"Unsupported connectionType: {kind.value}")

    return build
