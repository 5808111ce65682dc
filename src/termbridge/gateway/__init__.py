"""
gateway/ — WebSocket Gateway

Accepts browser terminal connections, gives each one a Session and moves
JSON envelopes between the client and the Session.

GatewayServer is imported from termbridge.gateway.gateway_server.
"""

from termbridge.gateway.protocol import Envelope, MessageType, Status
from termbridge.gateway.session_registry import Registration, SessionRegistry

__all__ = [
    "Envelope",
    "MessageType",
    "Status",
    "Registration",
    "SessionRegistry",
]
