"""
exceptions.py — termbridge Unified Error Hierarchy

All termbridge-specific exceptions live here. Transport drivers, device
discovery and the envelope codec raise typed subclasses of TermBridgeError;
the Session and Gateway layers convert them into `error` envelopes.

Import from here, not from individual modules:
    from termbridge.exceptions import TransportOpenError, ProtocolError

Hierarchy:
    TermBridgeError
    ├── TransportError
    │   ├── TransportOpenError
    │   ├── TransportRuntimeError
    │   └── TransportNotOpenError
    ├── DiscoveryError
    │   ├── NoCompatibleDeviceError
    │   └── DiscoveryExhaustedError
    ├── ProtocolError
    └── InternalFault
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TermBridgeError(Exception):
    """
    Base class for all termbridge exceptions.

    `details` holds best-effort diagnostic context that is attached to the
    outgoing `error` envelope. It is optional; absence is not an error.
    """

    default_message = "termbridge error"

    def __init__(self, message: str = "", *, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


# ─────────────────────────────────────────────────────────────────────────────
# Transport layer
# ─────────────────────────────────────────────────────────────────────────────

class TransportError(TermBridgeError):
    """Base for transport driver errors."""

    default_message = "Transport error"


class TransportOpenError(TransportError):
    """The underlying link could not be established."""

    default_message = "Failed to open transport"


class TransportRuntimeError(TransportError):
    """An open link failed while reading or writing."""

    default_message = "Transport failed"


class TransportNotOpenError(TransportError):
    """A write was attempted on a transport that is not open."""

    default_message = "Transport is not open"


# ─────────────────────────────────────────────────────────────────────────────
# Device discovery
# ─────────────────────────────────────────────────────────────────────────────

class DiscoveryError(TermBridgeError):
    """Base for serial device discovery errors."""

    default_message = "Serial device discovery failed"


class NoCompatibleDeviceError(DiscoveryError):
    """No attached serial device matched the vendor allow-list."""

    default_message = "No compatible serial device found"


class DiscoveryExhaustedError(DiscoveryError):
    """Every (device, baud rate) candidate failed to open."""

    default_message = "Could not open any compatible serial device"


# ─────────────────────────────────────────────────────────────────────────────
# Protocol / internal
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolError(TermBridgeError):
    """Malformed, incomplete or unknown envelope."""

    default_message = "Invalid message"


class InternalFault(TermBridgeError):
    """Unexpected defect; the affected session is forced closed."""

    default_message = "Internal error"
