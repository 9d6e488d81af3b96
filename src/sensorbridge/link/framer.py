from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .codec import (
    COUNT_TABLE,
    FIXED_LENGTHS,
    LENGTH_OFFSET,
    MAX_PACKET_LEN,
    MIN_PACKET_LEN,
    RATE_TABLE,
    RESPONSE_HEADER,
    VARIABLE_LENGTH_TYPES,
    Response,
    checksum_valid,
    status_name,
)
from .sensors import CATALOG, GPS_ID, Reading, SensorCatalog, decode_gps_coordinate

# Without a header in sight, keep at most this many bytes around.
PRUNE_THRESHOLD = 200
# Consecutive checksum failures before a larger chunk is skipped.
BAD_STREAK_LIMIT = 30
BAD_STREAK_SKIP = 10
COMPACT_THRESHOLD = 4096

ONLINE_DATA_OFFSET = 4
EXPERIMENT_MASK_OFFSET = 4
EXPERIMENT_COUNTER_OFFSET = 7
EXPERIMENT_DATA_OFFSET = 8
GPS_ONLINE_WIDTH = 8
GPS_EXPERIMENT_WIDTH = 12


@dataclass(frozen=True)
class DeviceStatus:
    subtype: int
    model: int
    firmware: str
    active: bool
    sensor_mask: int
    rate_index: int
    count_index: int
    date: str
    time: str
    sensor_count: int

    @property
    def name(self) -> str:
        return status_name(self.subtype)

    @property
    def rate_hz(self) -> Optional[int]:
        return RATE_TABLE.get(self.rate_index)

    @property
    def sample_count(self) -> Optional[int]:
        return COUNT_TABLE.get(self.count_index)

    @property
    def timestamp(self) -> Optional[datetime]:
        try:
            return datetime.strptime(f"{self.date} {self.time}", "%d/%m/%Y %H:%M:%S")
        except ValueError:
            return None


@dataclass(frozen=True)
class SensorIdsEvent:
    ids: Tuple[int, ...]


@dataclass(frozen=True)
class StatusEvent:
    status: DeviceStatus


@dataclass(frozen=True)
class SampleEvent:
    kind: str
    readings: Mapping[int, Reading]
    packet_count: int
    counter: Optional[int] = None


FramerEvent = Union[SensorIdsEvent, StatusEvent, SampleEvent]


def _bcd(value: int) -> str:
    return f"{value:02x}"


def decode_status(packet: bytes) -> DeviceStatus:
    return DeviceStatus(
        subtype=packet[3],
        model=packet[4],
        firmware=f"{packet[5]}.{packet[6]:02x}",
        active=packet[7] == 0x01,
        sensor_mask=(packet[9] << 8) | packet[10],
        rate_index=packet[11],
        count_index=packet[12],
        date=f"{_bcd(packet[13])}/{_bcd(packet[14])}/20{_bcd(packet[15])}",
        time=f"{_bcd(packet[16])}:{_bcd(packet[17])}:{_bcd(packet[18])}",
        sensor_count=packet[29],
    )


class PacketFramer:
    """
    Streaming packet parser for the logger's response stream.

    Bytes accumulate in a buffer read through a cursor; complete packets are
    validated by checksum and turned into typed events. Misaligned or corrupt
    input is skipped one byte at a time until a valid packet lines up again.
    """

    def __init__(self, catalog: SensorCatalog = CATALOG) -> None:
        self.catalog = catalog
        self.sensor_ids: Tuple[int, ...] = ()
        self.packet_count = 0
        self._buffer = bytearray()
        self._pos = 0
        self._bad_streak = 0
        self._skip_owed = 0
        self._stats: Dict[str, int] = {
            "packets": 0,
            "checksum_errors": 0,
            "length_errors": 0,
            "unknown_types": 0,
            "dropped_bytes": 0,
            "orphan_data": 0,
        }
        self._log = logging.getLogger(__name__)

    def feed(self, data: bytes) -> List[FramerEvent]:
        if data:
            self._buffer.extend(data)
        self._pay_skip()
        events: List[FramerEvent] = []
        # Every pass consumes at least one byte or stops, so this never binds
        # on well-formed input.
        budget = self._pending() + 1
        while self._pending() >= MIN_PACKET_LEN and budget > 0:
            budget -= 1
            start = self._buffer.find(RESPONSE_HEADER, self._pos)
            if start < 0:
                if self._pending() > PRUNE_THRESHOLD:
                    self._drop(self._pending() - len(RESPONSE_HEADER))
                break
            if start > self._pos:
                self._drop(start - self._pos)
            if self._pending() < MIN_PACKET_LEN:
                break
            ptype = self._buffer[self._pos + 2]
            length = self._packet_length(ptype)
            if length is None:
                self._stats["unknown_types"] += 1
                self._drop(1)
                continue
            if length < MIN_PACKET_LEN or length > MAX_PACKET_LEN:
                self._stats["length_errors"] += 1
                self._drop(1)
                continue
            if self._pending() < length:
                break
            packet = bytes(self._buffer[self._pos : self._pos + length])
            if checksum_valid(packet):
                self._pos += length
                self._bad_streak = 0
                self._stats["packets"] += 1
                event = self._dispatch(ptype, packet)
                if event is not None:
                    events.append(event)
                continue
            self._stats["checksum_errors"] += 1
            self._bad_streak += 1
            self._log.warning(
                "Bad checksum, resync (type=0x%02x, %db)",
                ptype,
                length,
                extra={"category": "warn"},
            )
            self._drop(1)
            if self._bad_streak >= BAD_STREAK_LIMIT:
                self._skip_owed += BAD_STREAK_SKIP
                self._bad_streak = 0
                self._pay_skip()
        self._compact()
        return events

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["samples"] = self.packet_count
        return stats

    def reset(self) -> None:
        self._buffer.clear()
        self._pos = 0
        self._bad_streak = 0
        self._skip_owed = 0
        self.sensor_ids = ()
        self.packet_count = 0

    def _pending(self) -> int:
        return len(self._buffer) - self._pos

    def _drop(self, count: int) -> None:
        self._pos += count
        self._stats["dropped_bytes"] += count

    def _pay_skip(self) -> None:
        # A streak skip may span several feed calls.
        count = min(self._skip_owed, self._pending())
        if count:
            self._drop(count)
            self._skip_owed -= count

    def _compact(self) -> None:
        if self._pos >= len(self._buffer):
            self._buffer.clear()
            self._pos = 0
        elif self._pos > COMPACT_THRESHOLD:
            del self._buffer[: self._pos]
            self._pos = 0

    def _packet_length(self, ptype: int) -> Optional[int]:
        if ptype in FIXED_LENGTHS:
            return FIXED_LENGTHS[ptype]
        if ptype in VARIABLE_LENGTH_TYPES:
            return self._buffer[self._pos + LENGTH_OFFSET]
        return None

    def _dispatch(self, ptype: int, packet: bytes) -> Optional[FramerEvent]:
        if ptype == Response.SENSOR_IDS:
            return self._parse_sensor_ids(packet)
        if ptype == Response.DEVICE_STATUS:
            return self._parse_status(packet)
        if ptype == Response.ONLINE_DATA:
            return self._parse_online_data(packet)
        if ptype == Response.EXPERIMENT_DATA:
            return self._parse_experiment_data(packet)
        self._log.info(
            "Unhandled packet type 0x%02x (%db)", ptype, len(packet), extra={"category": "rx"}
        )
        return None

    def _parse_sensor_ids(self, packet: bytes) -> SensorIdsEvent:
        ids = tuple(b for b in packet[3:-1] if b != 0)
        self.sensor_ids = ids
        self._log.info(
            "SensorIDs: [%s] (%d sensors)",
            ",".join(str(i) for i in ids),
            len(ids),
            extra={"category": "rx"},
        )
        self._log.info(
            "%s", ", ".join(self.catalog.name_of(i) for i in ids), extra={"category": "info"}
        )
        return SensorIdsEvent(ids)

    def _parse_status(self, packet: bytes) -> StatusEvent:
        status = decode_status(packet)
        self._log.info(
            "%s: %s %s | %s | mask:0x%x",
            status.name,
            status.date,
            status.time,
            "active" if status.active else "idle",
            status.sensor_mask,
            extra={"category": "rx"},
        )
        return StatusEvent(status)

    def _parse_online_data(self, packet: bytes) -> Optional[SampleEvent]:
        if not self._have_ids("online"):
            return None
        end = len(packet) - 1
        offset = ONLINE_DATA_OFFSET
        readings: Dict[int, Reading] = {}
        for sid in self.sensor_ids:
            if sid == GPS_ID:
                if offset + GPS_ONLINE_WIDTH > end:
                    break
                readings[sid] = self._gps_reading(packet, offset, full=False)
                offset += GPS_ONLINE_WIDTH
                continue
            if offset + 2 > end:
                break
            raw = (packet[offset] << 8) | packet[offset + 1]
            offset += 2
            readings[sid] = self.catalog.decode(sid, raw)
        return self._emit("online", readings, None)

    def _parse_experiment_data(self, packet: bytes) -> Optional[SampleEvent]:
        if not self._have_ids("experiment"):
            return None
        end = len(packet) - 1
        if end < EXPERIMENT_DATA_OFFSET:
            self._log.warning(
                "Experiment packet too short (%db)", len(packet), extra={"category": "warn"}
            )
            return None
        mask = (packet[EXPERIMENT_MASK_OFFSET] << 8) | packet[EXPERIMENT_MASK_OFFSET + 1]
        counter = packet[EXPERIMENT_COUNTER_OFFSET]
        offset = EXPERIMENT_DATA_OFFSET
        readings: Dict[int, Reading] = {}
        for bit, sid in enumerate(self.sensor_ids):
            if not (mask >> bit) & 1:
                readings[sid] = Reading.missing()
                continue
            if sid == GPS_ID:
                if offset + GPS_EXPERIMENT_WIDTH > end:
                    break
                readings[sid] = self._gps_reading(packet, offset, full=True)
                offset += GPS_EXPERIMENT_WIDTH
                continue
            if offset + 2 > end:
                break
            raw = (packet[offset] << 8) | packet[offset + 1]
            offset += 2
            readings[sid] = self.catalog.decode(sid, raw)
        return self._emit("experiment", readings, counter)

    def _have_ids(self, kind: str) -> bool:
        if self.sensor_ids:
            return True
        self._stats["orphan_data"] += 1
        self._log.warning(
            "Dropping %s data packet: sensor id list not received yet",
            kind,
            extra={"category": "warn"},
        )
        return False

    @staticmethod
    def _gps_reading(packet: bytes, offset: int, *, full: bool) -> Reading:
        lat = decode_gps_coordinate(*packet[offset : offset + 4])
        lon = decode_gps_coordinate(*packet[offset + 4 : offset + 8])
        speed = heading = None
        if full:
            speed = ((packet[offset + 8] << 8) | packet[offset + 9]) / 10
            heading = ((packet[offset + 10] << 8) | packet[offset + 11]) / 10
        return Reading(
            raw=0,
            value=None,
            no_data=False,
            gps_lat=lat,
            gps_lon=lon,
            gps_speed=speed,
            gps_heading=heading,
        )

    def _emit(
        self, kind: str, readings: Dict[int, Reading], counter: Optional[int]
    ) -> SampleEvent:
        # Truncated payloads still report every known sensor.
        complete = {sid: readings.get(sid, Reading.missing()) for sid in self.sensor_ids}
        self.packet_count += 1
        if self.packet_count <= 3 or self.packet_count % 10 == 0:
            self._log.info(
                "#%d %s", self.packet_count, self._summary(complete), extra={"category": "rx"}
            )
        return SampleEvent(
            kind=kind, readings=complete, packet_count=self.packet_count, counter=counter
        )

    def _summary(self, readings: Mapping[int, Reading]) -> str:
        parts = []
        for sid, reading in readings.items():
            desc = self.catalog.describe(sid)
            if desc is None or sid == GPS_ID or reading.value is None:
                continue
            parts.append(f"{desc.name}:{reading.value:.{desc.decimals}f}")
        return " · ".join(parts) or "(no data)"
