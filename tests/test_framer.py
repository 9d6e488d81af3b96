from __future__ import annotations

import logging

import pytest

from packets import (
    experiment_packet,
    online_packet,
    response,
    sensor_ids_packet,
    status_packet,
    words,
)
from sensorbridge.link.framer import PacketFramer, SampleEvent, SensorIdsEvent, StatusEvent

IDS = [30, 6, 20]


def stream_bytes() -> bytes:
    return (
        b"\x00\x11"
        + sensor_ids_packet(IDS)
        + status_packet(0x10, mask=0x0007, sensor_count=3)
        + online_packet(words([263, 0x8000, 5000]))
        + b"\xff\x2e"
        + experiment_packet(words([250, 455]), mask=0b011, counter=7)
        + online_packet(words([100, 200, 0]))
    )


def describe(events):
    out = []
    for event in events:
        if isinstance(event, SampleEvent):
            out.append(("sample", event.kind, event.packet_count, event.counter, dict(event.readings)))
        else:
            out.append(event)
    return out


def test_sensor_ids_event():
    framer = PacketFramer()
    events = framer.feed(sensor_ids_packet(IDS))
    assert events == [SensorIdsEvent((30, 6, 20))]
    assert framer.sensor_ids == (30, 6, 20)


def test_status_event_fields():
    framer = PacketFramer()
    (event,) = framer.feed(status_packet(0x33, active=True, mask=0x00FF, rate_index=0x04))
    assert isinstance(event, StatusEvent)
    status = event.status
    assert status.name == "StopLoginAck"
    assert status.active
    assert status.sensor_mask == 0x00FF
    assert status.rate_hz == 25
    assert status.sample_count == 10000
    assert status.firmware == "1.23"
    assert status.date == "18/10/2026"
    assert status.time == "14:05:09"
    assert status.timestamp is not None and status.timestamp.year == 2026


def test_online_data_decodes_in_id_order():
    framer = PacketFramer()
    framer.feed(sensor_ids_packet(IDS))
    (event,) = framer.feed(online_packet(words([263, 0x8000, 5000])))
    assert isinstance(event, SampleEvent)
    assert event.kind == "online"
    assert event.packet_count == 1
    assert event.readings[30].value == pytest.approx(26.3)
    assert event.readings[6].no_data
    assert event.readings[20].value == pytest.approx(2.0 + (5000 - 3714) * 0.00215)


def test_experiment_data_follows_mask():
    framer = PacketFramer()
    framer.feed(sensor_ids_packet(IDS))
    (event,) = framer.feed(experiment_packet(words([250, 455]), mask=0b101, counter=9))
    assert event.kind == "experiment"
    assert event.counter == 9
    assert event.readings[30].value == pytest.approx(25.0)
    assert event.readings[6].no_data
    assert event.readings[20].value == pytest.approx(455 * 0.00054)


def test_truncated_payload_reports_every_sensor():
    framer = PacketFramer()
    framer.feed(sensor_ids_packet(IDS))
    (event,) = framer.feed(online_packet(words([263])))
    assert set(event.readings) == {30, 6, 20}
    assert event.readings[30].has_value
    assert event.readings[6].no_data and event.readings[20].no_data


def test_gps_in_experiment_data():
    framer = PacketFramer()
    framer.feed(sensor_ids_packet([7, 30]))
    gps = bytes([40, 0x30, 0x39, 0x4E, 3, 0, 0, 0x57, 0x00, 0x64, 0x01, 0x2C])
    (event,) = framer.feed(experiment_packet(gps + words([263]), mask=0b11))
    reading = event.readings[7]
    assert reading.value is None and not reading.no_data
    assert reading.gps_lat.text.endswith("N")
    assert reading.gps_lon.decimal == pytest.approx(-3.0)
    assert reading.gps_speed == pytest.approx(10.0)
    assert reading.gps_heading == pytest.approx(30.0)
    assert event.readings[30].value == pytest.approx(26.3)


def test_data_before_ids_is_dropped():
    framer = PacketFramer()
    assert framer.feed(online_packet(words([263]))) == []
    assert framer.stats()["orphan_data"] == 1
    assert framer.packet_count == 0


def test_corrupted_packet_resyncs_on_next(caplog):
    framer = PacketFramer()
    framer.feed(sensor_ids_packet(IDS))
    bad = bytearray(online_packet(words([263, 500, 100])))
    bad[6] ^= 0x40
    good = online_packet(words([250, 500, 100]))
    with caplog.at_level(logging.WARNING, logger="sensorbridge.link.framer"):
        events = framer.feed(bytes(bad) + good)
    samples = [e for e in events if isinstance(e, SampleEvent)]
    assert len(samples) == 1
    assert samples[0].readings[30].value == pytest.approx(25.0)
    assert framer.stats()["checksum_errors"] >= 1
    assert any("Bad checksum" in record.getMessage() for record in caplog.records)


def test_unknown_type_is_skipped():
    framer = PacketFramer()
    events = framer.feed(response(0x99, b"\x01\x02") + sensor_ids_packet(IDS))
    assert events == [SensorIdsEvent((30, 6, 20))]
    assert framer.stats()["unknown_types"] >= 1


@pytest.mark.parametrize("size", [1, 2, 3, 7, 20])
def test_chunked_feeding_matches_bulk(size):
    data = stream_bytes()
    bulk = PacketFramer()
    expected = describe(bulk.feed(data))

    chunked = PacketFramer()
    got = []
    for start in range(0, len(data), size):
        got.extend(chunked.feed(data[start : start + size]))
    assert describe(got) == expected
    assert chunked.stats() == bulk.stats()
    assert len([e for e in expected if isinstance(e, tuple)]) == 3


def test_garbage_without_header_is_pruned():
    framer = PacketFramer()
    framer.feed(bytes(500))
    assert framer.stats()["dropped_bytes"] >= 400
    framer.feed(sensor_ids_packet(IDS))
    assert framer.sensor_ids == (30, 6, 20)


def test_reset_clears_state():
    framer = PacketFramer()
    framer.feed(sensor_ids_packet(IDS) + online_packet(words([263, 1, 1])))
    framer.feed(b"\x2e\x69")
    framer.reset()
    assert framer.sensor_ids == ()
    assert framer.packet_count == 0
    assert framer.feed(online_packet(words([263]))) == []


@pytest.mark.parametrize("size", [1, 2, 5, 11])
def test_bad_checksum_streak_skip_is_chunking_independent(size):
    data = (
        sensor_ids_packet(IDS)
        + bytes([0x2E, 0x69, 0x81, 0x05, 0x00]) * 30
        + online_packet(words([263, 500, 0]))
        + online_packet(words([250, 500, 0]))
    )
    bulk = PacketFramer()
    expected = describe(bulk.feed(data))

    chunked = PacketFramer()
    got = []
    for start in range(0, len(data), size):
        got.extend(chunked.feed(data[start : start + size]))
    assert describe(got) == expected
    assert chunked.stats() == bulk.stats()
    assert bulk.stats()["checksum_errors"] >= 30
