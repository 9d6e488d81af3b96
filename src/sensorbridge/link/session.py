"""
Connection and streaming state machine for the logger.

The device's START_LOGIN always replays the experiment configured last, so
every stream start runs the full handshake (stop, re-read sensor ids and
status, configure, start) with settle delays between the steps. The device
also has no endless mode: when its sample count runs out it reports
StopLoginAck, and the session restarts the same stream.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple, Union

from .codec import (
    COUNT_TABLE,
    RATE_TABLE,
    Command,
    StatusSubtype,
    build_command,
    build_start_experiment,
    command_name,
    format_hex,
)
from .config import SessionTiming, StreamConfig
from .events import Signal
from .framer import DeviceStatus, PacketFramer, SampleEvent, SensorIdsEvent, StatusEvent
from .sensors import CATALOG, SensorCatalog
from .transport import ByteTransport, PortSelectionCancelled, TransportError

logger = logging.getLogger(__name__)

MASK_BITS = 16


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"


class StreamMode(str, enum.Enum):
    NORMAL = "normal"
    FAST = "fast"


@dataclass(frozen=True)
class StreamPlan:
    mode: StreamMode
    mask: int
    rate_index: int
    count_index: int
    excluded: Tuple[str, ...] = field(default=())

    def describe(self) -> str:
        rate = RATE_TABLE.get(self.rate_index)
        count = COUNT_TABLE.get(self.count_index)
        return (
            f"mask=0x{self.mask:x} rate={rate if rate is not None else '?'}Hz "
            f"count={count if count is not None else '?'}"
        )


def build_stream_plan(
    sensor_ids: Sequence[int],
    mode: StreamMode,
    stream: StreamConfig,
    catalog: SensorCatalog = CATALOG,
) -> StreamPlan:
    """Active-sensor mask over the device's id ordering, one bit per position."""
    rate_index = stream.fast_rate_index if mode is StreamMode.FAST else stream.normal_rate_index
    mask = 0
    excluded = []
    for bit, sid in enumerate(sensor_ids[:MASK_BITS]):
        if not catalog.supports_rate(sid, rate_index):
            excluded.append(catalog.name_of(sid))
            continue
        mask |= 1 << bit
    return StreamPlan(
        mode=mode,
        mask=mask,
        rate_index=rate_index,
        count_index=stream.count_index,
        excluded=tuple(excluded),
    )


class LoggerSession:
    def __init__(
        self,
        transport: ByteTransport,
        *,
        stream: Optional[StreamConfig] = None,
        timing: Optional[SessionTiming] = None,
        catalog: SensorCatalog = CATALOG,
    ) -> None:
        self.transport = transport
        self.stream = stream or StreamConfig()
        self.timing = timing or SessionTiming()
        self.catalog = catalog.with_rate_limited(self.stream.fast_excluded)
        self.framer = PacketFramer(self.catalog)
        self.state = ConnectionState.DISCONNECTED
        self.device_status: Optional[DeviceStatus] = None
        self.stream_mode: Optional[StreamMode] = None
        self.restarts = 0

        self.state_changed = Signal("session.state")
        self.ready = Signal("session.ready")
        self.sensor_ids_received = Signal("session.sensor_ids")
        self.status_received = Signal("session.status")
        self.sample_received = Signal("session.sample")

        self._read_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._busy = False
        self._epoch = 0

    @property
    def sensor_ids(self) -> Tuple[int, ...]:
        return self.framer.sensor_ids

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.STREAMING)

    @property
    def is_streaming(self) -> bool:
        return self.state is ConnectionState.STREAMING

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    @property
    def stream_active(self) -> bool:
        """Streaming, or between a device-side completion and its restart."""
        return self.is_streaming or self.restart_pending

    async def connect(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            return
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Opening %s...", self.transport.description)
        try:
            await self.transport.open()
        except PortSelectionCancelled:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        except (TransportError, OSError) as exc:
            logger.error("Connection: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if self.state is not ConnectionState.CONNECTING:
            # disconnect() was requested while the port was opening
            await self._close_transport()
            return
        epoch = self._epoch
        self._set_state(ConnectionState.CONNECTED)
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop(epoch))

        self._busy = True
        try:
            if not await self._pause(self.timing.connect_settle_sec, epoch):
                return
            if not await self.send_command(Command.GET_SENSOR_IDS):
                return
            if not await self._pause(self.timing.query_settle_sec, epoch):
                return
            await self.send_command(Command.GET_SENSOR_STATUS)
        finally:
            if epoch == self._epoch:
                self._busy = False
        if epoch == self._epoch:
            self.ready.emit()

    async def disconnect(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.is_streaming:
            await self.stop_streaming()
            await asyncio.sleep(self.timing.command_gap_sec)
        await self._teardown()
        logger.info("Disconnected from logger")

    async def start_streaming(self, mode: StreamMode) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            logger.warning("Cannot start %s stream while %s", mode.value, self.state.value)
            return False
        if self._busy:
            logger.warning("Command sequence in progress; %s stream start ignored", mode.value)
            return False
        self._busy = True
        epoch = self._epoch
        try:
            return await self._run_handshake(mode, epoch)
        finally:
            if epoch == self._epoch:
                self._busy = False

    async def stop_streaming(self) -> None:
        restart, self._restart_task = self._restart_task, None
        if restart is not None and not restart.done():
            logger.info("Pending auto-restart cancelled")
            self._cancel(restart)
        if self.state is not ConnectionState.STREAMING:
            return
        self._set_state(ConnectionState.CONNECTED)
        await self.send_command(Command.STOP_LOGIN)

    async def send_command(self, code: int) -> bool:
        return await self._send(build_command(code), command_name(code))

    def handle_bytes(self, data: bytes) -> None:
        for event in self.framer.feed(data):
            if isinstance(event, SensorIdsEvent):
                self.sensor_ids_received.emit(event.ids)
            elif isinstance(event, StatusEvent):
                self._on_status(event.status)
            elif isinstance(event, SampleEvent):
                self.sample_received.emit(event)

    def stats(self) -> Dict[str, Union[int, str]]:
        stats: Dict[str, Union[int, str]] = dict(self.framer.stats())
        stats["restarts"] = self.restarts
        stats["state"] = self.state.value
        return stats

    async def _run_handshake(self, mode: StreamMode, epoch: int) -> bool:
        self.stream_mode = mode
        logger.info("Starting %s stream: handshake", mode.value)
        if not await self.send_command(Command.STOP_LOGIN):
            return False
        if not await self._pause(self.timing.command_gap_sec, epoch):
            return False
        if not await self.send_command(Command.GET_SENSOR_IDS):
            return False
        if not await self._pause(self.timing.query_settle_sec, epoch):
            return False
        if not await self.send_command(Command.GET_SENSOR_STATUS):
            return False
        if not await self._pause(self.timing.query_settle_sec, epoch):
            return False

        ids = self.sensor_ids
        if not ids:
            logger.error("No sensors detected; %s stream not started", mode.value)
            return False
        plan = build_stream_plan(ids, mode, self.stream, self.catalog)
        if plan.excluded:
            logger.info("%s mode excludes: %s", mode.value.capitalize(), ", ".join(plan.excluded))
        if plan.mask == 0:
            logger.error("No detected sensor supports the %s rate", mode.value)
            return False

        packet = build_start_experiment(plan.mask, plan.rate_index, plan.count_index)
        if not await self._send(packet, f"START_EXPERIMENT {plan.describe()}"):
            return False
        if not await self._pause(self.timing.command_gap_sec, epoch):
            return False
        if not await self.send_command(Command.START_LOGIN):
            return False
        self.framer.packet_count = 0
        self._set_state(ConnectionState.STREAMING)
        return True

    def _on_status(self, status: DeviceStatus) -> None:
        self.device_status = status
        if status.subtype == StatusSubtype.STOP_LOGIN_ACK and self.is_streaming:
            mode = self.stream_mode or StreamMode.NORMAL
            logger.info("Device finished its experiment; restarting %s stream", mode.value)
            self._set_state(ConnectionState.CONNECTED)
            self.restarts += 1
            self._restart_task = asyncio.get_running_loop().create_task(
                self._auto_restart(mode, self._epoch)
            )
        self.status_received.emit(status)

    async def _auto_restart(self, mode: StreamMode, epoch: int) -> None:
        if not await self._pause(self.timing.restart_delay_sec, epoch):
            return
        await self.start_streaming(mode)

    async def _read_loop(self, epoch: int) -> None:
        while epoch == self._epoch and self.state is not ConnectionState.DISCONNECTED:
            try:
                data = await self.transport.read()
            except (TransportError, OSError) as exc:
                if epoch == self._epoch:
                    logger.error("Read error: %s", exc)
                    await self._teardown()
                return
            if data:
                self.handle_bytes(data)

    async def _send(self, packet: bytes, label: str) -> bool:
        if not self.is_connected:
            logger.warning("Not connected; %s not sent", label)
            return False
        try:
            await self.transport.write(packet)
        except (TransportError, OSError) as exc:
            logger.error("TX error: %s", exc)
            return False
        logger.info("%s (%s)", format_hex(packet), label, extra={"category": "tx"})
        return True

    async def _pause(self, delay: float, epoch: int) -> bool:
        await asyncio.sleep(delay)
        return epoch == self._epoch and self.state is ConnectionState.CONNECTED

    async def _teardown(self) -> None:
        self._epoch += 1
        self._busy = False
        restart, self._restart_task = self._restart_task, None
        if restart is not None:
            self._cancel(restart)
        reader, self._read_task = self._read_task, None
        if reader is not None:
            self._cancel(reader)
        await self._close_transport()
        self.framer.reset()
        self.device_status = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except (TransportError, OSError) as exc:
            logger.debug("Error closing transport: %s", exc)

    @staticmethod
    def _cancel(task: asyncio.Task) -> None:
        if task is asyncio.current_task() or task.done():
            return
        task.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        old, self.state = self.state, state
        self.state_changed.emit(old, state)

