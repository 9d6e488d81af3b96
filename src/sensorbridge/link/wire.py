"""
Outbound line format for the beacon.

Each line carries a fixed selection of sensors in a fixed order, whatever the
logger model reports, so the beacon can read values by position. Values are
sent as fixed-point integers (physical value times the sensor's factor).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from .sensors import CATALOG, Reading, SensorCatalog

NO_DATA_VALUE = -9999
MISSING_TEXT = "--"

# (sensor id, wire factor)
WIRE_ORDER: Tuple[Tuple[int, int], ...] = (
    (30, 10),  # ambient temperature
    (6, 10),  # humidity
    (20, 1),  # light
    (26, 10),  # pressure
    (2, 100),  # pH
    (25, 1000),  # distance
    (21, 10),  # sound
    (13, 10),  # external temperature
    (27, 1000),  # voltage
    (28, 1000),  # current
    (33, 1000),  # microphone
    (32, 1000),  # external analog
    (4, 10),  # barometer
)


@dataclass(frozen=True)
class DisplayRow:
    id: int
    name: str
    unit: str
    value: str
    has_data: bool


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _value_of(reading: Optional[Reading]) -> Optional[float]:
    if reading is None or reading.no_data or reading.value is None:
        return None
    if not math.isfinite(reading.value):
        return None
    return reading.value


def wire_values(readings: Mapping[int, Reading]) -> List[int]:
    values = []
    for sensor_id, factor in WIRE_ORDER:
        value = _value_of(readings.get(sensor_id))
        values.append(NO_DATA_VALUE if value is None else _round_half_up(value * factor))
    return values


def to_wire_line(readings: Mapping[int, Reading]) -> str:
    return ",".join(str(v) for v in wire_values(readings)) + "\n"


def to_display_rows(
    readings: Mapping[int, Reading], catalog: SensorCatalog = CATALOG
) -> List[DisplayRow]:
    rows = []
    for sensor_id, _factor in WIRE_ORDER:
        desc = catalog.describe(sensor_id)
        if desc is None:
            continue
        value = _value_of(readings.get(sensor_id))
        rows.append(
            DisplayRow(
                id=sensor_id,
                name=desc.name,
                unit=desc.unit,
                value=MISSING_TEXT if value is None else f"{value:.{desc.decimals}f}",
                has_data=value is not None,
            )
        )
    return rows
