"""
gateway/protocol.py — Gateway WebSocket Envelope Protocol

Typed message schema for all client↔server communication.
Every envelope is a flat JSON object with a `type` field, an `id` field and
kind-specific fields next to them:

    {"type": "connect", "id": 7, "connectionType": "shell", "host": "10.0.0.5", ...}
    {"type": "output", "id": 12, "data": "total 0\\n"}

Inbound ids come from the client and are the deduplication key. Outbound ids
are assigned by the sending Session from its own counter.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from termbridge.exceptions import ProtocolError

EnvelopeId = Union[int, str]


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    """All supported envelope types."""

    # Client → Server
    STATUS     = "status"
    CONNECT    = "connect"
    DISCONNECT = "disconnect"
    COMMAND    = "command"
    PTY_DATA   = "pty_data"

    # Server → Client (status is shared)
    OUTPUT     = "output"
    ERROR      = "error"


class Status(str, Enum):
    """Values carried by outbound `status` envelopes."""

    READY             = "ready"
    CONNECTED         = "connected"
    DISCONNECTED      = "disconnected"
    ALREADY_CONNECTED = "already_connected"


INBOUND_TYPES = frozenset({
    MessageType.STATUS.value,
    MessageType.CONNECT.value,
    MessageType.DISCONNECT.value,
    MessageType.COMMAND.value,
    MessageType.PTY_DATA.value,
})


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Envelope:
    """
    One wire message unit.

    `fields` holds everything except `type` and `id`; it is flattened back
    into the top-level object on serialization.
    """
    type: str
    id: Optional[EnvelopeId] = None
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def require_str(self, name: str) -> str:
        """Return a string field or raise ProtocolError naming it."""
        value = self.fields.get(name)
        if not isinstance(value, str):
            raise ProtocolError(
                f"'{self.type}' requires a string '{name}' field",
                details={"field": name},
            )
        return value

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type}
        d.update({k: v for k, v in self.fields.items() if v is not None})
        if self.id is not None:
            d["id"] = self.id
        return d

    def to_json(self) -> str:
        """Serialize to a JSON string, dropping None fields."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        """Parse one inbound frame. Raises ProtocolError on malformed input."""
        try:
            d = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError("Message is not valid JSON", details={"error": str(exc)}) from exc
        if not isinstance(d, dict):
            raise ProtocolError("Message must be a JSON object")

        mtype = d.pop("type", None)
        if not isinstance(mtype, str) or not mtype:
            raise ProtocolError("Message is missing its 'type' field")

        mid = d.pop("id", None)
        if mid is not None and (isinstance(mid, bool) or not isinstance(mid, (int, str))):
            raise ProtocolError("Message 'id' must be a number or a string",
                                details={"id": repr(mid)})
        return cls(type=mtype, id=mid, fields=d)


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers: Server → Client envelopes (ids assigned by the Session)
# ─────────────────────────────────────────────────────────────────────────────

def make_status(status: Status, **metadata: Any) -> Envelope:
    """Build a `status` envelope with optional metadata fields."""
    fields: dict[str, Any] = {"status": status.value}
    fields.update(metadata)
    return Envelope(type=MessageType.STATUS.value, fields=fields)


def make_output(data: str) -> Envelope:
    """Build an `output` envelope carrying normalized line(s)."""
    return Envelope(type=MessageType.OUTPUT.value, fields={"data": data})


def make_error(
    message: str,
    *,
    debug: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> Envelope:
    """Build an `error` envelope. Empty diagnostic context is omitted."""
    fields: dict[str, Any] = {"message": message}
    if debug:
        fields["debug"] = debug
    if details:
        fields["details"] = details
    return Envelope(type=MessageType.ERROR.value, fields=fields)
