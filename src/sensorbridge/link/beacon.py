from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Iterator, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .config import BeaconConfig
from .events import Signal

logger = logging.getLogger(__name__)


class BeaconState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def fragment(data: bytes, size: int) -> Iterator[bytes]:
    if size <= 0:
        raise ValueError("Fragment size must be positive")
    for start in range(0, len(data), size):
        yield data[start : start + size]


class BeaconLink:
    """
    BLE text UART client for the beacon.

    Outbound text is split into link-sized chunks written one after another;
    inbound notifications are decoded and published on ``received``.
    """

    def __init__(self, settings: BeaconConfig) -> None:
        self.settings = settings
        self.state = BeaconState.DISCONNECTED
        self.name: Optional[str] = None
        self.state_changed = Signal("beacon.state")
        self.received = Signal("beacon.received")
        self._client: Optional[BleakClient] = None

    @property
    def is_connected(self) -> bool:
        return self.state is BeaconState.CONNECTED

    async def connect(self) -> None:
        if self.state is not BeaconState.DISCONNECTED:
            return
        self._set_state(BeaconState.CONNECTING)
        logger.info("Scanning for beacon...")
        client: Optional[BleakClient] = None
        try:
            device = await self._find_device()
            if device is None:
                logger.error(
                    "No beacon found (address=%s, name prefix=%r)",
                    self.settings.address,
                    self.settings.name_prefix,
                )
                self._set_state(BeaconState.DISCONNECTED)
                return
            self.name = device.name or device.address
            logger.info("Connecting to %s...", self.name)
            client = BleakClient(
                device,
                disconnected_callback=self._on_disconnected,
                timeout=self.settings.connect_timeout,
            )
            await client.connect()
            if client.services.get_service(self.settings.service_uuid) is None:
                raise BleakError(f"{self.name} has no UART service {self.settings.service_uuid}")
            await client.start_notify(self.settings.notify_uuid, self._on_notify)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            logger.error("BLE: %s", exc)
            if client is not None:
                await self._safe_disconnect(client)
            self._set_state(BeaconState.DISCONNECTED)
            return
        self._client = client
        self._set_state(BeaconState.CONNECTED)
        logger.info("Beacon connected: %s", self.name)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await self._safe_disconnect(client)
        if self.state is not BeaconState.DISCONNECTED:
            self._set_state(BeaconState.DISCONNECTED)
            logger.info("Beacon disconnected")

    async def send(self, text: str) -> bool:
        client = self._client
        if client is None:
            return False
        for chunk in fragment(text.encode("utf-8"), self.settings.chunk_size):
            try:
                await client.write_gatt_char(self.settings.write_uuid, chunk, response=False)
            except (BleakError, OSError) as exc:
                logger.error("BLE write: %s", exc)
                return False
        return True

    async def _find_device(self) -> Any:
        if self.settings.address:
            return await BleakScanner.find_device_by_address(
                self.settings.address, timeout=self.settings.scan_timeout
            )
        prefix = self.settings.name_prefix

        def matches(device: Any, adv: Any) -> bool:
            name = device.name or getattr(adv, "local_name", None) or ""
            return name.startswith(prefix)

        return await BleakScanner.find_device_by_filter(matches, timeout=self.settings.scan_timeout)

    async def _safe_disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            logger.debug("BLE disconnect: %s", exc)

    def _on_disconnected(self, client: BleakClient) -> None:
        if self._client is not None and self._client is not client:
            return
        self._client = None
        if self.state is not BeaconState.DISCONNECTED:
            logger.info("Beacon link lost")
            self._set_state(BeaconState.DISCONNECTED)

    def _on_notify(self, _sender: Any, data: bytearray) -> None:
        self.received.emit(bytes(data).decode("utf-8", errors="replace"))

    def _set_state(self, state: BeaconState) -> None:
        if state is self.state:
            return
        old, self.state = self.state, state
        self.state_changed.emit(old, state)
