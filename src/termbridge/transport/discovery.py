"""
transport/discovery.py — Serial device discovery and baud negotiation

discover() lists attached serial ports and keeps the ones whose USB vendor id
is on the allow-list, likeliest ports first. negotiate() walks
(device, baud) candidates (devices outer, baud rates inner) and returns the
first one that opens, after running the initialization handshake on it.
Half-open handles of failed candidates are closed before moving on.
"""

from __future__ import annotations

import asyncio
import platform
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

import serial
from serial.tools import list_ports

from termbridge.exceptions import DiscoveryExhaustedError, NoCompatibleDeviceError
from termbridge.observability.logger import get_logger
from termbridge.transport.handshake import Sleep, run_handshake

log = get_logger(__name__)

# USB vendor id → chip family
ALLOWED_VENDORS: dict[int, str] = {
    0x303A: "Espressif",
    0x1A86: "WCH CH340",
    0x10C4: "Silicon Labs CP210x",
    0x0403: "FTDI",
}

# Highest likelihood of success first.
BAUD_RATES: tuple[int, ...] = (115200, 9600, 74880, 921600)


@dataclass(frozen=True)
class DeviceDescriptor:
    device: str
    vendor_id: int
    product_id: Optional[int] = None
    description: str = ""
    serial_number: Optional[str] = None

    @property
    def vendor_name(self) -> str:
        return ALLOWED_VENDORS.get(self.vendor_id, "unknown")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "path": self.device,
            "vendorId": f"0x{self.vendor_id:04x}",
            "vendor": self.vendor_name,
        }
        if self.product_id is not None:
            d["productId"] = f"0x{self.product_id:04x}"
        if self.description:
            d["description"] = self.description
        if self.serial_number:
            d["serialNumber"] = self.serial_number
        return d


@dataclass
class Negotiated:
    device: DeviceDescriptor
    baud_rate: int
    handle: serial.Serial
    handshake_failures: list[str] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Discovery
# ─────────────────────────────────────────────────────────────────────────────

def _likely_rank(device: str) -> tuple[int, str]:
    """Rank USB-serial device names ahead of everything else."""
    system = platform.system().lower()
    if system == "linux":
        usb = "ttyUSB" in device or "ttyACM" in device
    elif system == "darwin":
        usb = "usbserial" in device or "usbmodem" in device or "SLAB_USBtoUART" in device
    else:
        usb = True
    return (0 if usb else 1, device)


def discover(ports: Optional[Iterable[Any]] = None) -> list[DeviceDescriptor]:
    """
    Return allow-listed serial devices, likeliest first.

    `ports` defaults to serial.tools.list_ports.comports(). An empty list is
    a normal result, not an error.
    """
    if ports is None:
        ports = list_ports.comports()

    found: list[DeviceDescriptor] = []
    for info in ports:
        vid = getattr(info, "vid", None)
        if vid not in ALLOWED_VENDORS:
            continue
        found.append(DeviceDescriptor(
            device=info.device,
            vendor_id=vid,
            product_id=getattr(info, "pid", None),
            description=getattr(info, "description", "") or "",
            serial_number=getattr(info, "serial_number", None),
        ))

    found.sort(key=lambda d: _likely_rank(d.device))
    log.info("discovery.scanned", compatible=[d.device for d in found])
    return found


# ─────────────────────────────────────────────────────────────────────────────
# Negotiation
# ─────────────────────────────────────────────────────────────────────────────

def open_serial_port(
    device: DeviceDescriptor,
    baud: int,
    *,
    read_timeout: float = 0.1,
    write_timeout: float = 1.0,
) -> serial.Serial:
    """
    Open a port at the given baud (8N1, no flow control).

    The handle is created unopened so a failed open() still leaves something
    to close.
    """
    handle = serial.Serial()
    handle.port = device.device
    handle.baudrate = baud
    handle.bytesize = serial.EIGHTBITS
    handle.parity = serial.PARITY_NONE
    handle.stopbits = serial.STOPBITS_ONE
    handle.timeout = read_timeout
    handle.write_timeout = write_timeout
    try:
        handle.open()
    except (serial.SerialException, OSError, ValueError):
        close_quietly(handle)
        raise
    return handle


def close_quietly(handle: Any) -> None:
    """Best-effort close; failures are logged, never raised."""
    try:
        handle.close()
    except Exception as exc:
        log.warning("discovery.close_failed", port=getattr(handle, "port", "?"), error=str(exc))


PortOpener = Callable[[DeviceDescriptor, int], serial.Serial]


class Negotiator:
    """Finds the first (device, baud) candidate that opens."""

    def __init__(
        self,
        *,
        baud_rates: Sequence[int] = BAUD_RATES,
        opener: PortOpener = open_serial_port,
        sleep: Sleep = asyncio.sleep,
    ):
        self._baud_rates = tuple(baud_rates)
        self._opener = opener
        self._sleep = sleep

    async def negotiate(self, devices: Sequence[DeviceDescriptor]) -> Negotiated:
        if not devices:
            raise NoCompatibleDeviceError(
                details={"allowedVendors": [f"0x{v:04x}" for v in ALLOWED_VENDORS]},
            )

        attempts: list[dict[str, Any]] = []
        for device in devices:
            for baud in self._baud_rates:
                handle = await self._open_candidate(device, baud, attempts)
                if handle is None:
                    continue
                try:
                    failures = await run_handshake(handle, baud, sleep=self._sleep)
                except asyncio.CancelledError:
                    close_quietly(handle)
                    raise
                log.info("discovery.negotiated", device=device.device, baud=baud)
                return Negotiated(device, baud, handle, failures)

        raise DiscoveryExhaustedError(details={"attempts": attempts})

    async def _open_candidate(
        self,
        device: DeviceDescriptor,
        baud: int,
        attempts: list[dict[str, Any]],
    ) -> Optional[serial.Serial]:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._opener, device, baud)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_orphan)
            raise
        except (serial.SerialException, OSError, ValueError) as exc:
            log.info("discovery.candidate_failed", device=device.device, baud=baud, error=str(exc))
            attempts.append({"device": device.device, "baud": baud, "error": str(exc)})
            return None


def _close_orphan(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    close_quietly(future.result())
