"""
Cross-device coordination between the logger session and the beacon.

Streaming starts by itself once both devices are linked and the logger has
reported its sensors. A stream started that way stops again when the beacon
goes away; a stream started by hand keeps running until it is stopped by
hand.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Optional, Set, Tuple, Union

from .beacon import BeaconLink, BeaconState
from .events import Signal
from .framer import DeviceStatus, SampleEvent
from .processing import SampleRecorder
from .session import ConnectionState, LoggerSession, StreamMode
from .wire import DisplayRow, to_display_rows, to_wire_line

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BridgeSnapshot:
    logger_state: ConnectionState
    beacon_state: BeaconState
    mode: StreamMode
    auto_started: bool
    sensor_ids: Tuple[int, ...]
    device_status: Optional[DeviceStatus]
    display_rows: Tuple[DisplayRow, ...] = field(default=())
    last_line: str = ""
    sent_count: int = 0
    packet_count: int = 0


class BridgeOrchestrator:
    def __init__(
        self,
        session: LoggerSession,
        beacon: BeaconLink,
        *,
        mode: Union[StreamMode, str] = StreamMode.NORMAL,
        recorder: Optional[SampleRecorder] = None,
    ) -> None:
        self.session = session
        self.beacon = beacon
        self.mode = StreamMode(mode)
        self.recorder = recorder
        self.auto_started = False
        self.sent_count = 0
        self.display_rows: List[DisplayRow] = []
        self.last_line = ""
        self.updated = Signal("bridge.updated")

        self._linked = session.is_connected
        self._starting = False
        self._tasks: Set[asyncio.Task] = set()
        self._send_lock: Optional[asyncio.Lock] = None

        session.state_changed.connect(self._on_session_state)
        session.ready.connect(self._on_session_ready)
        session.sensor_ids_received.connect(self._on_sensor_ids)
        session.status_received.connect(self._on_status)
        session.sample_received.connect(self._on_sample)
        beacon.state_changed.connect(self._on_beacon_state)
        beacon.received.connect(self._on_beacon_text)

    async def connect_logger(self) -> None:
        await self.session.connect()

    async def disconnect_logger(self) -> None:
        await self.session.disconnect()
        self._notify()

    async def connect_beacon(self) -> None:
        await self.beacon.connect()

    async def disconnect_beacon(self) -> None:
        await self.beacon.disconnect()
        self._notify()

    def set_mode(self, mode: Union[StreamMode, str]) -> None:
        try:
            self.mode = StreamMode(mode)
        except ValueError:
            logger.warning("Unknown stream mode %r; keeping %s", mode, self.mode.value)
            return
        self._notify()

    async def manual_start(self) -> bool:
        """Start streaming in the current mode; works without a beacon."""
        if self.session.state is not ConnectionState.CONNECTED:
            logger.warning("Logger not ready (%s); stream not started", self.session.state.value)
            return False
        self.auto_started = False
        return await self._start_stream()

    async def manual_stop(self) -> None:
        if not self.session.stream_active:
            return
        self.auto_started = False
        await self.session.stop_streaming()
        self._notify()

    def snapshot(self) -> BridgeSnapshot:
        return BridgeSnapshot(
            logger_state=self.session.state,
            beacon_state=self.beacon.state,
            mode=self.mode,
            auto_started=self.auto_started,
            sensor_ids=self.session.sensor_ids,
            device_status=self.session.device_status,
            display_rows=tuple(self.display_rows),
            last_line=self.last_line,
            sent_count=self.sent_count,
            packet_count=self.session.framer.packet_count,
        )

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
        await self.session.disconnect()
        await self.beacon.disconnect()
        if self.recorder is not None:
            self.recorder.close()

    def _check_auto_stream(self) -> None:
        session = self.session
        if (
            session.state is ConnectionState.CONNECTED
            and not session.busy
            and not session.restart_pending
            and not self._starting
            and self.beacon.is_connected
            and session.sensor_ids
        ):
            logger.info("Both devices connected; auto-starting %s stream", self.mode.value)
            self.auto_started = True
            self._starting = True
            self._schedule(self._auto_start())
            return
        if self.auto_started and not self.beacon.is_connected and session.stream_active:
            logger.info("Beacon lost; stopping auto-started stream")
            self.auto_started = False
            self._schedule(session.stop_streaming())

    async def _auto_start(self) -> None:
        try:
            if not await self._start_stream():
                self.auto_started = False
            elif self.auto_started and not self.beacon.is_connected:
                logger.info("Beacon lost during start; stopping auto-started stream")
                self.auto_started = False
                await self.session.stop_streaming()
                self._notify()
        finally:
            self._starting = False

    async def _start_stream(self) -> bool:
        started = await self.session.start_streaming(self.mode)
        if started:
            self.sent_count = 0
        self._notify()
        return started

    def _on_session_state(self, old: ConnectionState, new: ConnectionState) -> None:
        logger.info("Logger: %s", new.value)
        linked = self.session.is_connected
        if linked != self._linked:
            self._linked = linked
            if not linked:
                self.auto_started = False
            self._check_auto_stream()
        self._notify()

    def _on_session_ready(self) -> None:
        self._check_auto_stream()

    def _on_sensor_ids(self, ids: Tuple[int, ...]) -> None:
        logger.info("Logger: %d sensors detected", len(ids))
        self._check_auto_stream()
        self._notify()

    def _on_status(self, _status: DeviceStatus) -> None:
        self._notify()

    def _on_sample(self, event: SampleEvent) -> None:
        self.display_rows = to_display_rows(event.readings, self.session.catalog)
        line = to_wire_line(event.readings)
        self.last_line = line.strip()
        if self.recorder is not None:
            self.recorder.append(event)
        if self.beacon.is_connected:
            self.sent_count += 1
            self._schedule(self._send_line(line))
        self._notify()

    def _on_beacon_state(self, old: BeaconState, new: BeaconState) -> None:
        logger.info("Beacon: %s", new.value)
        if BeaconState.CONNECTED in (old, new):
            self._check_auto_stream()
        self._notify()

    def _on_beacon_text(self, text: str) -> None:
        logger.info("[beacon] %s", text.strip(), extra={"category": "rx"})

    async def _send_line(self, line: str) -> None:
        if self._send_lock is None:
            self._send_lock = asyncio.Lock()
        async with self._send_lock:
            await self.beacon.send(line)

    def _schedule(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Bridge task failed: %s", exc, exc_info=exc)

    def _notify(self) -> None:
        self.updated.emit()
