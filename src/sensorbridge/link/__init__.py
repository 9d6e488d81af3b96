"""
Logger protocol engine and device bridge.

The subpackage holds the binary protocol (codec, framer, sensor catalog), the
logger session state machine, the BLE beacon client and the orchestrator
that forwards decoded samples to the beacon as text lines.
"""

from .bridge import BridgeOrchestrator, BridgeSnapshot
from .codec import Command, Response, build_command, build_start_experiment, checksum, checksum_valid
from .config import BridgeConfig, HostRuntime, SessionTiming, StreamConfig, load_config
from .framer import DeviceStatus, PacketFramer, SampleEvent
from .sensors import CATALOG, Reading, SensorCatalog, SensorDescriptor
from .session import ConnectionState, LoggerSession, StreamMode
from .wire import DisplayRow, to_display_rows, to_wire_line

__all__ = [
    "BridgeOrchestrator",
    "BridgeSnapshot",
    "Command",
    "Response",
    "build_command",
    "build_start_experiment",
    "checksum",
    "checksum_valid",
    "BridgeConfig",
    "HostRuntime",
    "SessionTiming",
    "StreamConfig",
    "load_config",
    "DeviceStatus",
    "PacketFramer",
    "SampleEvent",
    "CATALOG",
    "Reading",
    "SensorCatalog",
    "SensorDescriptor",
    "ConnectionState",
    "LoggerSession",
    "StreamMode",
    "DisplayRow",
    "to_display_rows",
    "to_wire_line",
]
