from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from sensorbridge.link.config import SerialConfig
from sensorbridge.link.transport import (
    PortSelectionCancelled,
    SerialTransport,
    TransportError,
    bluetooth_ports,
)


class FakeSerialInstance:
    def __init__(self, data: bytes):
        self._data = bytearray(data)
        self.written = bytearray()
        self.closed = False

    @property
    def in_waiting(self) -> int:
        return len(self._data)

    def read(self, size: int = 1) -> bytes:
        chunk = bytes(self._data[:size])
        del self._data[:size]
        return chunk

    def write(self, data: bytes) -> int:
        self.written.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeSerialModule:
    SerialException = OSError

    def __init__(self, data: bytes = b""):
        self.data = data
        self.calls = []
        self.instance = None

    def Serial(self, **kwargs):
        self.calls.append(kwargs)
        self.instance = FakeSerialInstance(self.data)
        return self.instance


def port_info(device: str, description: str = "", hwid: str = ""):
    return SimpleNamespace(device=device, description=description, hwid=hwid)


def test_serial_transport_round_trip(monkeypatch):
    fake = FakeSerialModule(b"\x2e\x69\x82\x1e")
    monkeypatch.setattr("sensorbridge.link.transport.serial", fake)
    transport = SerialTransport(SerialConfig(port="/dev/rfcomm0", chunk_size=3))

    async def scenario():
        await transport.open()
        first = await transport.read()
        second = await transport.read()
        await transport.write(b"\x47\x14\xaa\xfb")
        await transport.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert fake.calls == [{"port": "/dev/rfcomm0", "baudrate": 9600, "timeout": 0.2}]
    assert first == b"\x2e\x69\x82"
    assert second == b"\x1e"
    assert bytes(fake.instance.written) == b"\x47\x14\xaa\xfb"
    assert fake.instance.closed


def test_read_before_open_fails():
    transport = SerialTransport(SerialConfig(port="/dev/null"))
    with pytest.raises(TransportError):
        asyncio.run(transport.read())


def test_picker_cancel_is_distinct(monkeypatch):
    monkeypatch.setattr("sensorbridge.link.transport.list_ports.comports", lambda: [port_info("/dev/ttyS0")])
    transport = SerialTransport(SerialConfig(), picker=lambda ports: None)
    with pytest.raises(PortSelectionCancelled):
        asyncio.run(transport.open())


def test_default_port_is_first_bluetooth(monkeypatch):
    infos = [
        port_info("/dev/ttyS0", "Serial"),
        port_info("/dev/rfcomm0", "", "BTHENUM"),
        port_info("COM7", "Standard Serial over Bluetooth link"),
    ]
    monkeypatch.setattr("sensorbridge.link.transport.list_ports.comports", lambda: infos)
    assert bluetooth_ports() == ["/dev/rfcomm0", "COM7"]

    fake = FakeSerialModule()
    monkeypatch.setattr("sensorbridge.link.transport.serial", fake)
    transport = SerialTransport(SerialConfig())
    asyncio.run(transport.open())
    assert fake.calls[0]["port"] == "/dev/rfcomm0"
    assert transport.description == "/dev/rfcomm0"


def test_no_bluetooth_port_is_an_error(monkeypatch):
    monkeypatch.setattr("sensorbridge.link.transport.list_ports.comports", lambda: [port_info("/dev/ttyS0")])
    with pytest.raises(TransportError):
        asyncio.run(SerialTransport(SerialConfig()).open())
