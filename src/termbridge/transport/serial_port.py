"""
transport/serial_port.py — Local serial/UART console (pyserial)

open() discovers allow-listed devices, negotiates a baud rate (which also
runs the initialization handshake) and keeps the winning handle.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, ClassVar, Optional, Sequence

import serial

from termbridge.config.settings import NormalizerConfig, SerialConfig
from termbridge.observability.logger import get_logger
from termbridge.transport.base import Transport, TransportEvent, TransportKind
from termbridge.transport.discovery import (
    DeviceDescriptor,
    Negotiator,
    discover,
    open_serial_port,
)
from termbridge.transport.normalizer import OutputNormalizer

log = get_logger(__name__)

_MAX_READ = 4096


class SerialTransport(Transport):
    """Serial console on the first compatible local device."""

    kind: ClassVar[TransportKind] = TransportKind.SERIAL
    line_ending: ClassVar[bytes] = b"\r\n"
    io_errors: ClassVar[tuple[type[BaseException], ...]] = (
        serial.SerialException, OSError,
    )

    def __init__(
        self,
        config: Optional[SerialConfig] = None,
        *,
        discoverer: Callable[[], Sequence[DeviceDescriptor]] = discover,
        negotiator: Optional[Negotiator] = None,
    ):
        super().__init__()
        config = config or SerialConfig()
        self._discoverer = discoverer
        self._negotiator = negotiator or Negotiator(
            opener=functools.partial(
                open_serial_port,
                read_timeout=config.read_timeout_seconds,
                write_timeout=config.write_timeout_seconds,
            ),
        )
        self._handle: Optional[serial.Serial] = None
        self.device: Optional[DeviceDescriptor] = None
        self.baud_rate: Optional[int] = None

    async def _open(self) -> dict[str, Any]:
        devices = await asyncio.to_thread(self._discoverer)
        result = await self._negotiator.negotiate(devices)

        self._handle = result.handle
        self.device = result.device
        self.baud_rate = result.baud_rate
        return {"device": result.device.to_dict(), "baudRate": result.baud_rate}

    def _poll(self) -> Optional[TransportEvent]:
        handle = self._handle
        if handle is None:
            return TransportEvent.closed("serial port released")
        # Blocks up to the port's read timeout.
        data = handle.read(min(max(handle.in_waiting, 1), _MAX_READ))
        if not data:
            return None
        return TransportEvent.data(data)

    def _write_blocking(self, data: bytes) -> None:
        if self._handle is None:
            raise serial.SerialException("serial port released")
        self._handle.write(data)
        self._handle.flush()

    def _close_blocking(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
            log.info("serial.closed", port=handle.port)

    def build_normalizer(self, config: NormalizerConfig) -> OutputNormalizer:
        return OutputNormalizer(
            config.prompt_regex,
            banner_marker=None,
            strip_segments=True,
            printable_only=True,
        )
