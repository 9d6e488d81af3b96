from __future__ import annotations

import enum
from typing import Dict, Iterable

BAUD_RATE = 9600

COMMAND_HEADER = b"\x47\x14"
RESPONSE_HEADER = b"\x2E\x69"

START_EXPERIMENT_PAYLOAD_LEN = 13

MIN_PACKET_LEN = 4
MAX_PACKET_LEN = 800


class Command(enum.IntEnum):
    GET_SENSOR_STATUS = 0x10
    START_EXPERIMENT = 0x11
    START_LOGIN = 0x22
    STOP_LOGIN = 0x33
    GET_DEVICE_INFO = 0x45
    RESET_CLEAR = 0x48
    GET_CONFIG = 0x55
    GET_SENSOR_IDS = 0xAA
    SET_DATETIME = 0xCC


class Response(enum.IntEnum):
    ONLINE_DATA = 0x81
    SENSOR_IDS = 0x82
    DEVICE_STATUS = 0x83
    EXPERIMENT_DATA = 0x84
    CONFIG = 0x85


FIXED_LENGTHS: Dict[int, int] = {
    Response.SENSOR_IDS: 21,
    Response.DEVICE_STATUS: 33,
}

# Variable-length responses declare their total length in byte 3.
VARIABLE_LENGTH_TYPES = frozenset(
    {Response.ONLINE_DATA, Response.EXPERIMENT_DATA, Response.CONFIG}
)
LENGTH_OFFSET = 3


class StatusSubtype(enum.IntEnum):
    GET_STATUS = 0x10
    EXPERIMENT_ACK = 0x11
    START_LOGIN_ACK = 0x22
    # Also reported by the device when the configured sample count runs out.
    STOP_LOGIN_ACK = 0x33


STATUS_NAMES: Dict[int, str] = {
    StatusSubtype.GET_STATUS: "GetStatus",
    StatusSubtype.EXPERIMENT_ACK: "ExperimentAck",
    StatusSubtype.START_LOGIN_ACK: "StartLoginAck",
    StatusSubtype.STOP_LOGIN_ACK: "StopLoginAck",
}

RATE_1HZ = 0x02
RATE_25HZ = 0x04

RATE_TABLE: Dict[int, int] = {
    RATE_1HZ: 1,
    RATE_25HZ: 25,
}

COUNT_10 = 0x00
COUNT_100 = 0x01
COUNT_10000 = 0x03

COUNT_TABLE: Dict[int, int] = {
    COUNT_10: 10,
    COUNT_100: 100,
    COUNT_10000: 10000,
}

MAX_COUNT_INDEX = COUNT_10000


def checksum(data: Iterable[int]) -> int:
    """Two's complement of the byte sum, so the whole packet sums to 0 mod 256."""
    return (256 - (sum(data) % 256)) % 256


def checksum_valid(packet: Iterable[int]) -> bool:
    return sum(packet) % 256 == 0


def build_command(code: int, payload: bytes = b"") -> bytes:
    body = COMMAND_HEADER + bytes([code]) + bytes(payload)
    return body + bytes([checksum(body)])


def build_start_experiment(mask: int, rate_index: int, count_index: int) -> bytes:
    """
    Configure the next experiment: active sensor mask, rate and sample count.

    The device replays whatever was configured last when logging starts, so
    this has to be sent before every START_LOGIN.
    """
    if not 0 <= mask <= 0xFFFF:
        raise ValueError(f"Sensor mask out of range: 0x{mask:X}")
    payload = bytearray(START_EXPERIMENT_PAYLOAD_LEN)
    payload[0] = (mask >> 8) & 0xFF
    payload[1] = mask & 0xFF
    payload[2] = rate_index & 0xFF
    payload[3] = count_index & 0xFF
    return build_command(Command.START_EXPERIMENT, bytes(payload))


def format_hex(data: Iterable[int]) -> str:
    return " ".join(f"{b:02x}" for b in data)


def status_name(subtype: int) -> str:
    return STATUS_NAMES.get(subtype, f"Sub:0x{subtype:02x}")


def command_name(code: int) -> str:
    try:
        return Command(code).name
    except ValueError:
        return f"0x{code:02X}"
