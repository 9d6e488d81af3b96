"""
Sensor catalog for the logger: descriptors, raw to physical conversions, and
the GPS coordinate decoder.

Raw readings are unsigned 16-bit big-endian integers. Most sensors map them
linearly; illuminance and the external thermistor go through breakpoint
tables, and GPS is a composite 12-byte record decoded field by field.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Iterator, Mapping, Optional

import numpy as np

from .codec import RATE_1HZ

NO_DATA_RAW = 0xFFFF
MIDPOINT_NO_DATA_RAW = 0x8000

# Sensors that report 0x8000 instead of a measurement when nothing is attached.
MIDPOINT_NO_DATA_IDS = frozenset({2, 4, 6, 14, 15, 16, 17, 21, 23, 25, 26, 30, 31, 40, 41, 42})

GPS_ID = 7
GPS_SPEED_ID = 10
GPS_HEADING_ID = 11

# Sensors limited to the 1 Hz rate index; everything else is assumed to keep
# up with the fast index.
RATE_LIMITED_IDS = frozenset({GPS_ID})

Converter = Callable[[int], float]


@dataclass(frozen=True)
class GpsCoordinate:
    decimal: float
    text: str


@dataclass(frozen=True)
class Reading:
    raw: int
    value: Optional[float]
    no_data: bool
    gps_lat: Optional[GpsCoordinate] = None
    gps_lon: Optional[GpsCoordinate] = None
    gps_speed: Optional[float] = None
    gps_heading: Optional[float] = None

    @property
    def has_value(self) -> bool:
        return not self.no_data and self.value is not None

    @classmethod
    def missing(cls) -> "Reading":
        return cls(raw=NO_DATA_RAW, value=None, no_data=True)


@dataclass(frozen=True)
class SensorDescriptor:
    id: int
    name: str
    unit: str
    decimals: int
    width: int
    factor: int
    convert: Optional[Converter] = field(default=None, compare=False, repr=False)

    @property
    def is_composite(self) -> bool:
        return self.convert is None


def _scale(raw: float, raw_lo: float, raw_hi: float, lo: float, hi: float) -> float:
    return (raw - raw_lo) / (raw_hi - raw_lo) * (hi - lo) + lo


def _signed16(raw: int) -> int:
    return raw - 0x10000 if raw > 0x7FFF else raw


# (raw threshold, lux at threshold, lux per raw count above threshold)
_LIGHT_TABLE = np.array(
    [
        [0, 0.0, 0.00054],
        [3714, 2.0, 0.00215],
        [7427, 10.0, 0.00269],
        [11141, 20.0, 0.02154],
        [14855, 100.0, 0.02693],
        [18568, 200.0, 0.21542],
        [22282, 1000.0, 0.26928],
        [25996, 2000.0, 2.154],
        [29709, 1e4, 2.693],
        [33423, 2e4, 18.849],
    ]
)
_LIGHT_UPPER_LIMIT = 35280


def convert_light(raw: int) -> float:
    """Segmented interpolation; 0 and 0xFFFF mean the sensor is off or saturated."""
    if raw == 0 or raw == 0xFFFF:
        return 0.0
    if raw > _LIGHT_UPPER_LIMIT:
        return math.nan
    idx = int(np.searchsorted(_LIGHT_TABLE[:, 0], raw, side="right")) - 1
    threshold, lux, slope = _LIGHT_TABLE[idx]
    return float(lux + (raw - threshold) * slope)


# Thermistor rows ordered by decreasing raw value:
# (raw at temperature, temperature in C, C per raw count towards the next row)
_THERMISTOR_TABLE = np.array(
    [
        [62587, -40, 0.0056201],
        [61698, -35, 0.0046082],
        [60613, -30, 0.0038338],
        [59309, -25, 0.0032394],
        [57765, -20, 0.0027826],
        [55968, -15, 0.0024331],
        [53913, -10, 0.002168],
        [51607, -5, 0.0019704],
        [49069, 0, 0.0018274],
        [46333, 5, 0.001731],
        [43445, 10, 0.0016739],
        [40458, 15, 0.0016514],
        [37430, 20, 0.0016621],
        [34422, 25, 0.0017029],
        [31486, 30, 0.0017738],
        [28667, 35, 0.0018773],
        [26003, 40, 0.0020116],
        [23518, 45, 0.0021819],
        [21226, 50, 0.0023894],
        [19134, 55, 0.0026435],
        [17242, 60, 0.0029314],
        [15537, 65, 0.0032898],
        [14017, 70, 0.0036839],
        [12659, 75, 0.0041677],
        [11460, 80, 0.0046932],
        [10394, 85, 0.0053328],
        [9457, 90, 0.0060505],
        [8630, 95, 0.0068394],
        [7899, 100, 0.0078301],
        [7261, 105, 0.0088086],
        [6693, 110, 0.0101603],
        [6201, 115, 0.0114695],
        [5765, 120, 0.0128549],
    ]
)
_THERMISTOR_LOWER_LIMIT = 5376


def convert_thermistor(raw: int) -> float:
    raws = _THERMISTOR_TABLE[:, 0]
    if raw >= raws[0]:
        return float(_THERMISTOR_TABLE[0, 1])
    if raw < _THERMISTOR_LOWER_LIMIT:
        return float(_THERMISTOR_TABLE[-1, 1])
    hits = np.flatnonzero(raws <= raw)
    row = (int(hits[0]) if hits.size else len(raws)) - 1
    raw_at, temp, slope = _THERMISTOR_TABLE[row]
    return float(temp + (raw_at - raw) * slope)


_HEMISPHERES = {0x4E: "N", 0x53: "S", 0x45: "E", 0x57: "W"}
_POSITIVE_HEMISPHERES = {0x4E, 0x45, 0x00}


def decode_gps_coordinate(b0: int, b1: int, b2: int, b3: int) -> GpsCoordinate:
    """
    Decode one GPS coordinate.

    Byte 0 holds whole degrees, bytes 1-2 minutes x 1000 and byte 3 the ASCII
    hemisphere letter (or 0 when the receiver has no fix).
    """
    degrees = b0
    minutes = ((b1 << 8) | b2) / 1000
    decimal = degrees + minutes / 60
    if b3 not in _POSITIVE_HEMISPHERES:
        decimal = -decimal
    hemisphere = _HEMISPHERES.get(b3, "?")
    return GpsCoordinate(decimal=decimal, text=f"{degrees}°{minutes:.3f}'{hemisphere}")


def _pulse(raw: int) -> float:
    return 0.0 if raw > 240 else float(raw)


def _descriptors() -> Iterator[SensorDescriptor]:
    d = SensorDescriptor
    yield d(1, "UV", "idx", 2, 2, 100, lambda r: max(0.0, (r - 21845) * 458 * 150 / 1e6 / 100))
    yield d(2, "pH", "pH", 2, 2, 100, lambda r: r / 1000)
    yield d(4, "Barometer", "hPa", 1, 2, 10, lambda r: _scale(r, 5000, 11500, 500, 1150))
    yield d(5, "IR Temperature", "°C", 1, 2, 10, lambda r: _scale(r, 5157, 32657, -170, 380))
    yield d(6, "Humidity", "%", 1, 2, 10, lambda r: _scale(r, 0, 1000, 0, 100))
    yield d(GPS_ID, "GPS", "", 0, 12, 1, None)
    yield d(GPS_SPEED_ID, "GPS Speed", "km/h", 1, 2, 10, lambda r: r / 10)
    yield d(GPS_HEADING_ID, "GPS Heading", "°", 1, 2, 10, lambda r: r / 10)
    yield d(13, "External Temperature", "°C", 1, 2, 10, convert_thermistor)
    yield d(15, "Color Red", "", 1, 2, 10, lambda r: _scale(r, 0, 1000, 0, 100) / 10)
    yield d(16, "Color Green", "", 1, 2, 10, lambda r: _scale(r, 0, 1000, 0, 100) / 10)
    yield d(17, "Color Blue", "", 1, 2, 10, lambda r: _scale(r, 0, 1000, 0, 100) / 10)
    yield d(20, "Light", "lux", 0, 2, 1, convert_light)
    yield d(21, "Sound", "dB", 1, 2, 10, lambda r: _scale(r, 540, 960, 54, 96))
    yield d(22, "Pulse", "bpm", 0, 2, 1, _pulse)
    yield d(23, "Heart Rate", "bpm", 0, 2, 1, _pulse)
    yield d(24, "Pulse Wave", "V", 5, 2, 10000, lambda r: r * 0.00004578754578754579)
    yield d(25, "Distance", "m", 3, 2, 1000, lambda r: _scale(r, 400, 10000, 0.4, 10))
    yield d(26, "Pressure", "kPa", 1, 2, 10, lambda r: _scale(r, 0, 3000, 0, 300))
    yield d(27, "Voltage", "V", 3, 2, 1000, lambda r: _scale(r, 15527, 50009, -5, 5))
    yield d(28, "Current", "A", 3, 2, 1000, lambda r: _scale(r, 14318, 51218, -1, 1))
    yield d(
        29,
        "External Humidity",
        "%",
        1,
        2,
        10,
        lambda r: (min(56848, max(12288, r)) - 12288) * 224 / 1e4 / 10,
    )
    yield d(30, "Ambient Temperature", "°C", 1, 2, 10, lambda r: _signed16(r) / 10)
    yield d(31, "Turbidity", "NTU", 1, 2, 10, lambda r: r / 10)
    yield d(32, "External Analog", "V", 3, 2, 1000, lambda r: r * 92 / 1e4 / 100)
    yield d(33, "Microphone", "V", 3, 2, 1000, lambda r: _scale(r, 0, 65535, 0, 3.3))
    yield d(34, "Low Voltage", "mV", 0, 2, 1, lambda r: _scale(r, 15163, 50373, -500, 500))
    yield d(36, "Acceleration X", "g", 3, 2, 1000, lambda r: r * 0.0002442)
    yield d(37, "Acceleration Y", "g", 3, 2, 1000, lambda r: r * 0.0002442)
    yield d(38, "Acceleration Z", "g", 3, 2, 1000, lambda r: r * 0.0002442)
    yield d(39, "External Analog 2", "V", 3, 2, 1000, lambda r: r * 92 / 1e4 / 100)
    yield d(40, "Dissolved Oxygen", "mg/L", 2, 2, 100, lambda r: _scale(r, 0, 1400, 0, 14))
    yield d(41, "Respiration", "", 1, 2, 10, lambda r: _scale(r, 0, 2000, 0, 20))
    yield d(42, "Temperature 2", "°C", 1, 2, 10, lambda r: _signed16(r) / 10)
    yield d(47, "Barometer kPa", "kPa", 2, 2, 100, lambda r: r / 100)
    yield d(49, "Voltage Alt", "V", 3, 2, 1000, lambda r: (r - 32768) * 1084 / 1e4 / 100)
    yield d(50, "Current Alt", "A", 4, 2, 10000, lambda r: r * 0.5 / 28558)


class SensorCatalog:
    """Read-only lookup of sensor descriptors keyed by protocol id."""

    def __init__(
        self,
        descriptors: Iterable[SensorDescriptor],
        *,
        rate_limited: Iterable[int] = RATE_LIMITED_IDS,
    ) -> None:
        table: Dict[int, SensorDescriptor] = {}
        for desc in descriptors:
            if desc.id in table:
                raise ValueError(f"Duplicate sensor id {desc.id}")
            table[desc.id] = desc
        self._table: Mapping[int, SensorDescriptor] = MappingProxyType(table)
        self._rate_limited = frozenset(rate_limited)

    @classmethod
    def default(cls) -> "SensorCatalog":
        return cls(_descriptors())

    def __contains__(self, sensor_id: object) -> bool:
        return sensor_id in self._table

    def __iter__(self) -> Iterator[SensorDescriptor]:
        return iter(self._table.values())

    def __len__(self) -> int:
        return len(self._table)

    def describe(self, sensor_id: int) -> Optional[SensorDescriptor]:
        return self._table.get(sensor_id)

    def name_of(self, sensor_id: int) -> str:
        desc = self._table.get(sensor_id)
        return f"{desc.name}({sensor_id})" if desc else f"?({sensor_id})"

    def convert(self, sensor_id: int, raw: int) -> Optional[float]:
        desc = self._table.get(sensor_id)
        if desc is None or desc.is_composite:
            return None
        try:
            value = float(desc.convert(raw))
        except (ArithmeticError, ValueError, TypeError):
            return None
        return value if math.isfinite(value) else None

    def is_no_data(self, sensor_id: int, raw: int) -> bool:
        if raw == NO_DATA_RAW:
            return True
        return raw == MIDPOINT_NO_DATA_RAW and sensor_id in MIDPOINT_NO_DATA_IDS

    def decode(self, sensor_id: int, raw: int) -> Reading:
        if self.is_no_data(sensor_id, raw):
            return Reading(raw=raw, value=None, no_data=True)
        return Reading(raw=raw, value=self.convert(sensor_id, raw), no_data=False)

    def supports_rate(self, sensor_id: int, rate_index: int) -> bool:
        if rate_index == RATE_1HZ:
            return True
        return sensor_id not in self._rate_limited

    def with_rate_limited(self, sensor_ids: Iterable[int]) -> "SensorCatalog":
        return SensorCatalog(self._table.values(), rate_limited=sensor_ids)


CATALOG = SensorCatalog.default()
