from __future__ import annotations

import csv
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from .framer import SampleEvent
from .sensors import CATALOG, SensorCatalog
from .wire import WIRE_ORDER

BASE_FIELDS = ["timestamp", "packet_count", "kind", "counter"]


def column_name(sensor_id: int, catalog: SensorCatalog = CATALOG) -> str:
    desc = catalog.describe(sensor_id)
    label = desc.name if desc else f"sensor_{sensor_id}"
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")


def sensor_columns(catalog: SensorCatalog = CATALOG) -> List[str]:
    return [column_name(sensor_id, catalog) for sensor_id, _factor in WIRE_ORDER]


class SampleRecorder:
    """
    CSV sink for decoded samples, one column per wire-order sensor.

    The file is only created once the first sample arrives; metadata set
    before that is written ahead of the header as ``# key=value`` lines.
    """

    def __init__(
        self,
        path: Path,
        catalog: SensorCatalog = CATALOG,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.path = path
        self.catalog = catalog
        self.rows = 0
        self._clock = clock
        self._writer: Optional[csv.DictWriter] = None
        self._file_handle: Optional[TextIO] = None
        self._pending_metadata: List[str] = []
        self._columns = sensor_columns(catalog)

    def append(self, event: SampleEvent) -> None:
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            for line in self._pending_metadata:
                self._file_handle.write(line + "\n")
            self._pending_metadata.clear()
            self._writer = csv.DictWriter(self._file_handle, fieldnames=BASE_FIELDS + self._columns)
            self._writer.writeheader()
        row: Dict[str, object] = {
            "timestamp": self._clock().isoformat(timespec="milliseconds"),
            "packet_count": event.packet_count,
            "kind": event.kind,
            "counter": "" if event.counter is None else event.counter,
        }
        for (sensor_id, _factor), column in zip(WIRE_ORDER, self._columns):
            reading = event.readings.get(sensor_id)
            row[column] = "" if reading is None or not reading.has_value else reading.value
        self._writer.writerow(row)
        self.rows += 1
        if self._file_handle is not None:
            self._file_handle.flush()

    def set_metadata(self, metadata: Dict[str, str]) -> None:
        if not metadata:
            return
        line = "# " + " ".join(f"{key}={value}" for key, value in metadata.items())
        if self._writer is None:
            self._pending_metadata.append(line)
            return
        if self._file_handle is None:
            return
        self._file_handle.write(line + "\n")
        self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None
