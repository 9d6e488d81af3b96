from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .codec import BAUD_RATE, MAX_COUNT_INDEX, RATE_1HZ, RATE_25HZ
from .sensors import GPS_ID

STREAM_MODES = ("normal", "fast")

UART_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
# micro:bit naming: TX is the beacon's outgoing (notify) side, RX its input.
UART_TX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
UART_RX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"


@dataclass
class SerialConfig:
    port: Optional[str] = None
    baudrate: int = BAUD_RATE
    timeout: float = 0.2
    chunk_size: int = 64


@dataclass
class BeaconConfig:
    address: Optional[str] = None
    name_prefix: str = "BBC micro:bit"
    scan_timeout: float = 10.0
    connect_timeout: float = 20.0
    chunk_size: int = 20
    service_uuid: str = UART_SERVICE_UUID
    notify_uuid: str = UART_TX_UUID
    write_uuid: str = UART_RX_UUID


@dataclass
class StreamConfig:
    mode: str = "normal"
    normal_rate_index: int = RATE_1HZ
    fast_rate_index: int = RATE_25HZ
    count_index: int = MAX_COUNT_INDEX
    fast_excluded: List[int] = field(default_factory=lambda: [GPS_ID])


@dataclass
class SessionTiming:
    connect_settle_sec: float = 0.3
    query_settle_sec: float = 0.5
    command_gap_sec: float = 0.3
    restart_delay_sec: float = 0.5


@dataclass
class HostRuntime:
    stats_log_interval: float = 60.0
    beacon_retry_sec: float = 5.0


@dataclass
class BridgeConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    beacon: BeaconConfig = field(default_factory=BeaconConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    timing: SessionTiming = field(default_factory=SessionTiming)
    host: HostRuntime = field(default_factory=HostRuntime)
    output_csv: Path | None = None

    @property
    def stream_mode(self) -> str:
        mode = self.stream.mode.lower()
        if mode not in STREAM_MODES:
            raise ValueError(f"Unsupported stream mode '{self.stream.mode}'")
        return mode


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def default_config() -> BridgeConfig:
    return BridgeConfig()


def load_config(path: Path | str | None, overrides: Sequence[str] | None = None) -> BridgeConfig:
    """
    Load a bridge configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["serial.port=/dev/rfcomm0", "stream.mode=fast", "timing.query_settle_sec=0.8"]
    Without a path the defaults are used as the base.
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    serial_data = merged.get("serial") or {}
    beacon_data = merged.get("beacon") or {}
    stream_data = merged.get("stream") or {}
    timing_data = merged.get("timing") or {}
    host_data = merged.get("host") or {}
    defaults = BeaconConfig()
    cfg = BridgeConfig(
        serial=SerialConfig(
            port=_optional_str(serial_data.get("port")),
            baudrate=int(serial_data.get("baudrate", BAUD_RATE)),
            timeout=float(serial_data.get("timeout", 0.2)),
            chunk_size=int(serial_data.get("chunk_size", 64)),
        ),
        beacon=BeaconConfig(
            address=_optional_str(beacon_data.get("address")),
            name_prefix=str(beacon_data.get("name_prefix", defaults.name_prefix)),
            scan_timeout=float(beacon_data.get("scan_timeout", defaults.scan_timeout)),
            connect_timeout=float(beacon_data.get("connect_timeout", defaults.connect_timeout)),
            chunk_size=int(beacon_data.get("chunk_size", defaults.chunk_size)),
            service_uuid=str(beacon_data.get("service_uuid", defaults.service_uuid)),
            notify_uuid=str(beacon_data.get("notify_uuid", defaults.notify_uuid)),
            write_uuid=str(beacon_data.get("write_uuid", defaults.write_uuid)),
        ),
        stream=StreamConfig(
            mode=str(stream_data.get("mode", "normal")),
            normal_rate_index=int(stream_data.get("normal_rate_index", RATE_1HZ)),
            fast_rate_index=int(stream_data.get("fast_rate_index", RATE_25HZ)),
            count_index=int(stream_data.get("count_index", MAX_COUNT_INDEX)),
            fast_excluded=_int_list(stream_data.get("fast_excluded", [GPS_ID])),
        ),
        timing=SessionTiming(
            connect_settle_sec=float(timing_data.get("connect_settle_sec", 0.3)),
            query_settle_sec=float(timing_data.get("query_settle_sec", 0.5)),
            command_gap_sec=float(timing_data.get("command_gap_sec", 0.3)),
            restart_delay_sec=float(timing_data.get("restart_delay_sec", 0.5)),
        ),
        host=HostRuntime(
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
            beacon_retry_sec=float(host_data.get("beacon_retry_sec", 5.0)),
        ),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
    )
    # Validate early so a typo fails at load time rather than mid-session.
    cfg.stream_mode
    if cfg.beacon.chunk_size <= 0:
        raise ValueError("beacon.chunk_size must be positive")
    return cfg


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _int_list(value: Any) -> List[int]:
    if isinstance(value, (int, float)):
        return [int(value)]
    if not isinstance(value, list):
        raise ValueError("stream.fast_excluded must be a list of sensor ids")
    return [int(item) for item in value]


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower() in {"none", "null"}:
        return None
    try:
        if raw.lower().startswith("0x"):
            return int(raw, 16)
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
