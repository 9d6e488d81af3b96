from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

import serial  # type: ignore[import]
from serial.tools import list_ports  # type: ignore[import]

from .config import SerialConfig

logger = logging.getLogger(__name__)

PortPicker = Callable[[List[str]], Optional[str]]


class TransportError(RuntimeError):
    """Raised when a transport cannot be opened or has failed mid-session."""


class PortSelectionCancelled(TransportError):
    """The user dismissed the port picker; not an error worth reporting."""


class ByteTransport:
    """Byte-in/byte-out link consumed by the logger session."""

    description = "transport"

    async def open(self) -> None:
        raise NotImplementedError

    async def read(self) -> bytes:
        """Suspend until at least one byte is available."""
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


def available_ports() -> List[str]:
    return [info.device for info in list_ports.comports()]


def bluetooth_ports() -> List[str]:
    found = []
    for info in list_ports.comports():
        text = f"{info.device} {info.description or ''} {info.hwid or ''}".lower()
        if "rfcomm" in text or "bluetooth" in text:
            found.append(info.device)
    return found


class SerialTransport(ByteTransport):
    """pyserial port driven from the event loop through worker threads."""

    def __init__(self, settings: SerialConfig, picker: Optional[PortPicker] = None) -> None:
        self.settings = settings
        self._picker = picker
        self._handle: Any = None
        self.description = settings.port or "serial"

    async def open(self) -> None:
        port = self.settings.port or self._choose_port()
        self.description = port
        self._handle = await asyncio.to_thread(
            serial.Serial,
            port=port,
            baudrate=self.settings.baudrate,
            timeout=self.settings.timeout,
        )
        logger.info("Port %s open at %d baud", port, self.settings.baudrate)

    async def read(self) -> bytes:
        handle = self._require_open()
        while True:
            data = await asyncio.to_thread(self._read_available, handle)
            if data:
                return data
            if self._handle is None:
                raise TransportError("Port closed")

    async def write(self, data: bytes) -> None:
        handle = self._require_open()
        await asyncio.to_thread(self._write_all, handle, data)

    async def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await asyncio.to_thread(handle.close)
        except (serial.SerialException, OSError) as exc:
            logger.debug("Error closing %s: %s", self.description, exc)

    def _choose_port(self) -> str:
        ports = available_ports()
        if self._picker is not None:
            choice = self._picker(ports)
            if not choice:
                raise PortSelectionCancelled("No port selected")
            return choice
        candidates = bluetooth_ports()
        if not candidates:
            raise TransportError(f"No Bluetooth serial port found (available: {ports})")
        return candidates[0]

    def _require_open(self) -> Any:
        if self._handle is None:
            raise TransportError("Port is not open")
        return self._handle

    def _read_available(self, handle: Any) -> bytes:
        first = handle.read(1)
        if not first:
            return b""
        waiting = min(handle.in_waiting, max(self.settings.chunk_size - 1, 0))
        return first + (handle.read(waiting) if waiting else b"")

    @staticmethod
    def _write_all(handle: Any, data: bytes) -> None:
        handle.write(data)
        handle.flush()


class ReplayTransport(ByteTransport):
    """
    Plays back a captured byte dump in fixed-size chunks.

    Once the capture is exhausted, reads wait until the transport is closed
    and then fail, the same way a serial link that goes quiet and is torn
    down would. Written packets are kept in ``written``.
    """

    def __init__(self, data: bytes, chunk_size: int = 64, description: str = "replay") -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.data = bytes(data)
        self.chunk_size = chunk_size
        self.description = description
        self.written: List[bytes] = []
        self._offset = 0
        self._closed: Optional[asyncio.Event] = None

    @classmethod
    def from_file(cls, path: Path, chunk_size: int = 64) -> "ReplayTransport":
        return cls(Path(path).read_bytes(), chunk_size=chunk_size, description=str(path))

    @property
    def exhausted(self) -> bool:
        return self._offset >= len(self.data)

    async def open(self) -> None:
        self._offset = 0
        self._closed = asyncio.Event()
        logger.info("Replaying %d bytes from %s", len(self.data), self.description)

    async def read(self) -> bytes:
        closed = self._closed
        if closed is None or closed.is_set():
            raise TransportError("Replay is not open")
        if self.exhausted:
            await closed.wait()
            raise TransportError("Replay closed")
        chunk = self.data[self._offset : self._offset + self.chunk_size]
        self._offset += len(chunk)
        await asyncio.sleep(0)
        return chunk

    async def write(self, data: bytes) -> None:
        if self._closed is None or self._closed.is_set():
            raise TransportError("Replay is not open")
        self.written.append(bytes(data))

    async def close(self) -> None:
        if self._closed is not None:
            self._closed.set()


def iterate_binary_stream(handle: Any, chunk_size: int = 256) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk
