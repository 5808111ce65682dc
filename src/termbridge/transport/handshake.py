"""
transport/handshake.py — Serial device initialization sequence

Run once right after a serial port opens:

    control lines off → on, three CR/LF pairs, "+++" escape, "AT",
    "AT+UART_CUR=<baud>,8,1,0,0"

Each step is followed by a fixed settle delay. Nothing is read back; many
boards never echo. A step that raises is logged and skipped, the sequence
always runs to the end. Delays were chosen empirically on ESP32/CH340/CP210x
boards.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import serial

from termbridge.observability.logger import get_logger

log = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class HandshakeStep:
    name: str
    action: Callable[[serial.Serial, int], None]
    settle: float


def _lines_off(port: serial.Serial, baud: int) -> None:
    port.dtr = False
    port.rts = False


def _lines_on(port: serial.Serial, baud: int) -> None:
    port.dtr = True
    port.rts = True


def _wake(port: serial.Serial, baud: int) -> None:
    port.write(b"\r\n" * 3)


def _escape(port: serial.Serial, baud: int) -> None:
    port.write(b"+++")


def _attention(port: serial.Serial, baud: int) -> None:
    port.write(b"AT\r\n")


def _uart_config(port: serial.Serial, baud: int) -> None:
    port.write(f"AT+UART_CUR={baud},8,1,0,0\r\n".encode("ascii"))


HANDSHAKE_STEPS: tuple[HandshakeStep, ...] = (
    HandshakeStep("lines_off", _lines_off, 0.1),
    HandshakeStep("lines_on", _lines_on, 0.5),
    HandshakeStep("wake", _wake, 0.5),
    HandshakeStep("escape", _escape, 1.0),
    HandshakeStep("attention", _attention, 0.5),
    HandshakeStep("uart_config", _uart_config, 0.5),
)


async def run_handshake(
    port: serial.Serial,
    baud: int,
    *,
    steps: tuple[HandshakeStep, ...] = HANDSHAKE_STEPS,
    sleep: Sleep = asyncio.sleep,
) -> list[str]:
    """
    Fire every step in order and return the names of steps that failed.

    Cancellation is honoured at every settle delay.
    """
    failed: list[str] = []
    for step in steps:
        try:
            await asyncio.to_thread(step.action, port, baud)
        except (serial.SerialException, OSError, ValueError) as exc:
            failed.append(step.name)
            log.debug("handshake.step_failed", step=step.name, error=str(exc))
        await sleep(step.settle)
    if failed:
        log.info("handshake.completed_with_failures", port=port.port, baud=baud, failed=failed)
    return failed
