"""
termbridge: WebSocket gateway for remote shells and serial consoles.

A browser terminal speaks one JSON envelope protocol over a WebSocket; each
connection gets a Session that drives either an SSH shell or a local
serial/UART device and streams normalized output back.
"""

__version__ = "0.1.0"
