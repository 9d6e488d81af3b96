from __future__ import annotations

import asyncio
import logging

from fakes import FAST_TIMING, FakeLogger, settle
from packets import online_packet, status_packet, words
from sensorbridge.link.codec import Command
from sensorbridge.link.config import SessionTiming, StreamConfig
from sensorbridge.link.framer import SampleEvent
from sensorbridge.link.session import ConnectionState, LoggerSession, StreamMode, build_stream_plan
from sensorbridge.link.transport import PortSelectionCancelled, TransportError

HANDSHAKE = [
    Command.STOP_LOGIN,
    Command.GET_SENSOR_IDS,
    Command.GET_SENSOR_STATUS,
    Command.START_EXPERIMENT,
    Command.START_LOGIN,
]


def make_session(transport: FakeLogger, **stream) -> LoggerSession:
    return LoggerSession(transport, stream=StreamConfig(**stream), timing=FAST_TIMING)


async def connected(transport: FakeLogger, **stream) -> LoggerSession:
    session = make_session(transport, **stream)
    await session.connect()
    await settle(0.05)
    return session


def start_experiment_packets(transport: FakeLogger):
    return [p for p in transport.written if p[2] == Command.START_EXPERIMENT]


def test_connect_queries_ids_then_status():
    async def scenario():
        transport = FakeLogger()
        session = make_session(transport)
        states = []
        ready = []
        session.state_changed.connect(lambda old, new: states.append(new))
        session.ready.connect(lambda: ready.append(True))
        await session.connect()
        await settle(0.05)
        return transport, session, states, ready

    transport, session, states, ready = asyncio.run(scenario())
    assert transport.codes == [Command.GET_SENSOR_IDS, Command.GET_SENSOR_STATUS]
    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert ready == [True]
    assert session.sensor_ids == (30, 6, 20)
    assert session.device_status is not None
    assert not session.busy


def test_normal_handshake_order_and_mask():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        transport.written.clear()
        started = await session.start_streaming(StreamMode.NORMAL)
        return transport, session, started

    transport, session, started = asyncio.run(scenario())
    assert started
    assert transport.codes == HANDSHAKE
    (configure,) = start_experiment_packets(transport)
    assert configure[3:7] == bytes([0x00, 0x07, 0x02, 0x03])
    assert session.state is ConnectionState.STREAMING
    assert session.stream_mode is StreamMode.NORMAL


def test_fast_handshake_excludes_gps(caplog):
    async def scenario():
        transport = FakeLogger(ids=(7, 30, 6))
        session = await connected(transport)
        transport.written.clear()
        with caplog.at_level(logging.INFO, logger="sensorbridge"):
            started = await session.start_streaming(StreamMode.FAST)
        return transport, started

    transport, started = asyncio.run(scenario())
    assert started
    assert transport.codes == HANDSHAKE
    (configure,) = start_experiment_packets(transport)
    assert configure[3:7] == bytes([0x00, 0b110, 0x04, 0x03])
    assert any("GPS(7)" in record.getMessage() for record in caplog.records)


def test_stream_plan_configurable_exclusions():
    stream = StreamConfig(fast_excluded=[30])
    session = LoggerSession(FakeLogger(), stream=stream)
    plan = build_stream_plan((7, 30, 6), StreamMode.FAST, stream, session.catalog)
    assert plan.mask == 0b101
    assert plan.excluded == ("Ambient Temperature(30)",)
    normal = build_stream_plan((7, 30, 6), StreamMode.NORMAL, stream, session.catalog)
    assert normal.mask == 0b111
    assert "rate=1Hz" in normal.describe()


def test_samples_are_published():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        samples = []
        session.sample_received.connect(samples.append)
        await session.start_streaming(StreamMode.NORMAL)
        transport.push(online_packet(words([263, 500, 100])))
        await settle(0.02)
        return samples

    samples = asyncio.run(scenario())
    assert len(samples) == 1
    assert isinstance(samples[0], SampleEvent)
    assert samples[0].packet_count == 1


def test_device_completion_restarts_same_mode():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        await session.start_streaming(StreamMode.FAST)
        transport.written.clear()
        transport.push(status_packet(0x33))
        await settle(0.02)
        interim = session.state
        await settle(0.2)
        return transport, session, interim

    transport, session, interim = asyncio.run(scenario())
    assert interim in (ConnectionState.CONNECTED, ConnectionState.STREAMING)
    assert session.restarts == 1
    assert session.state is ConnectionState.STREAMING
    assert transport.codes == HANDSHAKE
    (configure,) = start_experiment_packets(transport)
    assert configure[5] == 0x04


def test_manual_stop_does_not_restart():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        await session.start_streaming(StreamMode.NORMAL)
        transport.written.clear()
        await session.stop_streaming()
        await settle(0.1)
        return transport, session

    transport, session = asyncio.run(scenario())
    assert transport.codes == [Command.STOP_LOGIN]
    assert session.state is ConnectionState.CONNECTED
    assert session.restarts == 0


def test_stop_cancels_pending_restart():
    async def scenario():
        transport = FakeLogger()
        session = LoggerSession(
            transport,
            timing=SessionTiming(0.01, 0.01, 0.01, restart_delay_sec=0.2),
        )
        await session.connect()
        await settle(0.05)
        await session.start_streaming(StreamMode.NORMAL)
        transport.push(status_packet(0x33))
        await settle(0.02)
        pending = session.restart_pending
        await session.stop_streaming()
        transport.written.clear()
        await settle(0.3)
        return transport, session, pending

    transport, session, pending = asyncio.run(scenario())
    assert pending
    assert not session.restart_pending
    assert Command.START_LOGIN not in transport.codes
    assert session.state is ConnectionState.CONNECTED


def test_start_requires_sensor_ids(caplog):
    async def scenario():
        transport = FakeLogger(ids=())
        session = await connected(transport)
        with caplog.at_level(logging.ERROR, logger="sensorbridge"):
            started = await session.start_streaming(StreamMode.NORMAL)
        return transport, session, started

    transport, session, started = asyncio.run(scenario())
    assert not started
    assert Command.START_EXPERIMENT not in transport.codes
    assert session.state is ConnectionState.CONNECTED
    assert any("No sensors detected" in record.getMessage() for record in caplog.records)


def test_start_rejected_while_busy():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        first = asyncio.ensure_future(session.start_streaming(StreamMode.NORMAL))
        await asyncio.sleep(0)
        second = await session.start_streaming(StreamMode.FAST)
        return transport, await first, second

    transport, first, second = asyncio.run(scenario())
    assert first
    assert not second
    assert len(start_experiment_packets(transport)) == 1


def test_write_failure_aborts_handshake():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        transport.fail_writes = True
        started = await session.start_streaming(StreamMode.NORMAL)
        return session, started

    session, started = asyncio.run(scenario())
    assert not started
    assert session.state is ConnectionState.CONNECTED
    assert not session.busy


def test_read_error_disconnects():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        transport.push(TransportError("link dropped"))
        await settle(0.02)
        return transport, session

    transport, session = asyncio.run(scenario())
    assert session.state is ConnectionState.DISCONNECTED
    assert transport.closed == 1
    assert session.sensor_ids == ()
    assert session.device_status is None


def test_disconnect_while_streaming_sends_stop():
    async def scenario():
        transport = FakeLogger()
        session = await connected(transport)
        await session.start_streaming(StreamMode.NORMAL)
        transport.written.clear()
        await session.disconnect()
        return transport, session

    transport, session = asyncio.run(scenario())
    assert transport.codes == [Command.STOP_LOGIN]
    assert session.state is ConnectionState.DISCONNECTED
    assert session.restarts == 0


def test_open_failure_is_logged(caplog):
    async def scenario():
        session = make_session(FakeLogger(open_error=OSError("permission denied")))
        with caplog.at_level(logging.ERROR, logger="sensorbridge"):
            await session.connect()
        return session

    session = asyncio.run(scenario())
    assert session.state is ConnectionState.DISCONNECTED
    assert any("permission denied" in record.getMessage() for record in caplog.records)


def test_cancelled_picker_is_silent(caplog):
    async def scenario():
        session = make_session(FakeLogger(open_error=PortSelectionCancelled("No port selected")))
        with caplog.at_level(logging.WARNING, logger="sensorbridge"):
            await session.connect()
        return session

    session = asyncio.run(scenario())
    assert session.state is ConnectionState.DISCONNECTED
    assert caplog.records == []
