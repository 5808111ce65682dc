"""
transport/shell.py — Remote interactive shell over SSH (paramiko)

Opens an SSH connection with password authentication, requests a PTY and an
interactive shell, and exposes the channel as a Transport. stderr output of
the channel is surfaced as DIAGNOSTIC events.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Any, ClassVar, Optional

import paramiko

from termbridge.config.settings import NormalizerConfig, ShellConfig
from termbridge.exceptions import ProtocolError, TransportOpenError
from termbridge.observability.logger import get_logger
from termbridge.transport.base import Transport, TransportEvent, TransportKind
from termbridge.transport.normalizer import OutputNormalizer

log = get_logger(__name__)

_RECV_SIZE = 32768
_POLL_INTERVAL = 0.2


@dataclass
class ShellParams:
    host: str
    username: str
    credential: str
    port: int = 22
    term: str = "xterm-256color"
    ready_timeout: float = 30.0
    keepalive_interval: int = 10

    @classmethod
    def from_fields(cls, fields: dict[str, Any], config: ShellConfig) -> "ShellParams":
        """
        Build params from a `connect` envelope's fields.

        `password` is accepted as an alias of `credential`.
        """
        host = fields.get("host")
        username = fields.get("username")
        credential = fields.get("credential", fields.get("password"))
        missing = [
            name for name, value in (
                ("host", host), ("username", username), ("credential", credential),
            )
            if not isinstance(value, str) or not value
        ]
        if missing:
            raise ProtocolError(
                f"Shell connect requires {', '.join(missing)}",
                details={"missing": missing},
            )

        port = fields.get("port", config.default_port)
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ProtocolError(f"Invalid port: {port!r}") from None
        if not (1 <= port <= 65535):
            raise ProtocolError(f"Invalid port: {port}")

        return cls(
            host=host,
            username=username,
            credential=credential,
            port=port,
            term=config.term,
            ready_timeout=config.ready_timeout_seconds,
            keepalive_interval=config.keepalive_interval_seconds,
        )

    def __repr__(self) -> str:
        return f"ShellParams(host={self.host!r}, port={self.port}, username={self.username!r})"


class ShellTransport(Transport):
    """Interactive login shell on a remote host."""

    kind: ClassVar[TransportKind] = TransportKind.SHELL
    line_ending: ClassVar[bytes] = b"\n"
    io_errors: ClassVar[tuple[type[BaseException], ...]] = (
        OSError, EOFError, paramiko.SSHException,
    )
    # Hostnames the IDNA codec refuses (e.g. a label over 63 chars) surface as
    # UnicodeError, a ValueError subclass.
    open_errors: ClassVar[tuple[type[BaseException], ...]] = io_errors + (ValueError,)

    def __init__(self, params: ShellParams):
        super().__init__()
        self.params = params
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None

    async def _open(self) -> dict[str, Any]:
        log.info(
            "shell.connecting",
            host=self.params.host,
            port=self.params.port,
            username=self.params.username,
        )
        try:
            client, channel = await self._run_cancellable(
                self._connect_blocking, _close_pair,
            )
        except self.open_errors as exc:
            raise TransportOpenError(
                f"SSH connection to {self.params.host}:{self.params.port} failed: {exc}",
                details={
                    "host": self.params.host,
                    "port": self.params.port,
                    "error": type(exc).__name__,
                },
            ) from exc

        self._client, self._channel = client, channel
        log.info("shell.connected", host=self.params.host, port=self.params.port)
        return {
            "host": self.params.host,
            "port": self.params.port,
            "username": self.params.username,
        }

    def _connect_blocking(self) -> tuple[paramiko.SSHClient, paramiko.Channel]:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.params.host,
                port=self.params.port,
                username=self.params.username,
                password=self.params.credential,
                timeout=self.params.ready_timeout,
                banner_timeout=self.params.ready_timeout,
                auth_timeout=self.params.ready_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            transport = client.get_transport()
            if transport:
                transport.set_keepalive(self.params.keepalive_interval)
            channel = client.invoke_shell(term=self.params.term)
            channel.settimeout(_POLL_INTERVAL)
        except BaseException:
            client.close()
            raise
        return client, channel

    def _poll(self) -> Optional[TransportEvent]:
        channel = self._channel
        if channel is None:
            return TransportEvent.closed("shell channel released")
        if channel.recv_stderr_ready():
            return TransportEvent.diagnostic(channel.recv_stderr(_RECV_SIZE))
        try:
            data = channel.recv(_RECV_SIZE)
        except socket.timeout:
            return None
        if not data:
            return TransportEvent.closed("remote shell closed the session")
        return TransportEvent.data(data)

    def _write_blocking(self, data: bytes) -> None:
        if self._channel is None:
            raise EOFError("shell channel released")
        self._channel.sendall(data)

    def _close_blocking(self) -> None:
        client, channel = self._client, self._channel
        self._client = self._channel = None
        if client is not None:
            _close_pair((client, channel))

    def build_normalizer(self, config: NormalizerConfig) -> OutputNormalizer:
        return OutputNormalizer(config.prompt_regex, banner_marker=config.banner_marker)


def _close_pair(pair: tuple[paramiko.SSHClient, Optional[paramiko.Channel]]) -> None:
    client, channel = pair
    if channel is not None:
        channel.close()
    client.close()
