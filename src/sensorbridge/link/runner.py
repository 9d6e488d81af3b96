from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .beacon import BeaconLink, BeaconState
from .bridge import BridgeOrchestrator
from .config import BridgeConfig, load_config
from .processing import SampleRecorder
from .session import LoggerSession
from .transport import ByteTransport, ReplayTransport, SerialTransport, available_ports

logger = logging.getLogger(__name__)


PRESETS: Dict[str, Dict[str, Any]] = {
    "normal": {
        "mode": "normal",
        "rate_key": "normal_rate_index",
        "rate_index": 0x02,
        "count_index": 0x03,
    },
    "fast": {
        "mode": "fast",
        "rate_key": "fast_rate_index",
        "rate_index": 0x04,
        "count_index": 0x03,
    },
}


def preset_overrides(preset: str) -> list[str]:
    data = PRESETS[preset]
    overrides = [
        f"stream.mode={data['mode']}",
        f"stream.{data['rate_key']}={data['rate_index']}",
        f"stream.count_index={data['count_index']}",
    ]
    return overrides


def prompt_port(ports: List[str]) -> Optional[str]:
    """Ask for a serial port on the terminal; empty input cancels."""
    if ports:
        for index, name in enumerate(ports, start=1):
            typer.echo(f"  [{index}] {name}")
    else:
        typer.echo("No serial ports detected.")
    answer = typer.prompt("Port number or path (empty to cancel)", default="", show_default=False)
    answer = answer.strip()
    if not answer:
        return None
    if answer.isdigit() and 1 <= int(answer) <= len(ports):
        return ports[int(answer) - 1]
    return answer


class BridgeHost:
    """Owns the event loop side of a bridge run: connect, supervise, log stats."""

    def __init__(
        self,
        config: BridgeConfig,
        transport: Optional[ByteTransport] = None,
        beacon: Optional[BeaconLink] = None,
        use_beacon: bool = True,
        tick_sec: float = 0.5,
    ) -> None:
        self.config = config
        self.transport = transport or SerialTransport(config.serial)
        self.session = LoggerSession(self.transport, stream=config.stream, timing=config.timing)
        self.beacon = beacon or BeaconLink(config.beacon)
        self.use_beacon = use_beacon
        self.tick_sec = tick_sec
        recorder = SampleRecorder(Path(config.output_csv)) if config.output_csv else None
        if recorder is not None:
            recorder.set_metadata(
                {"mode": config.stream_mode, "source": self.transport.description}
            )
        self.bridge = BridgeOrchestrator(
            self.session, self.beacon, mode=config.stream_mode, recorder=recorder
        )
        self.samples = 0
        self.session.sample_received.connect(self._count_sample)

    async def run(self, duration: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if duration is None else loop.time() + duration
        interval_sec = max(float(self.config.host.stats_log_interval), 5.0)
        retry_sec = float(self.config.host.beacon_retry_sec)
        next_log = loop.time() + interval_sec
        next_beacon = loop.time() + retry_sec

        try:
            if self.use_beacon:
                await asyncio.gather(self.bridge.connect_logger(), self.bridge.connect_beacon())
            else:
                await self.bridge.connect_logger()
            if not self.session.is_connected:
                logger.error("Logger is not connected; stopping")
                return
            if not self.use_beacon:
                await self.bridge.manual_start()

            while deadline is None or loop.time() < deadline:
                await asyncio.sleep(self.tick_sec)
                now = loop.time()
                if not self.session.is_connected:
                    logger.warning("Logger link lost; stopping")
                    break
                if (
                    self.use_beacon
                    and retry_sec > 0
                    and self.beacon.state is BeaconState.DISCONNECTED
                    and now >= next_beacon
                ):
                    await self.bridge.connect_beacon()
                    next_beacon = loop.time() + retry_sec
                if now >= next_log:
                    self.emit_stats()
                    next_log = now + interval_sec
        finally:
            await self.bridge.shutdown()
            self.emit_stats(final=True)

    def start(self, duration: Optional[float] = None) -> None:
        try:
            asyncio.run(self.run(duration))
        except KeyboardInterrupt:
            logger.info("Stopping bridge (Ctrl+C)")

    def emit_stats(self, final: bool = False) -> None:
        stats = self.session.stats()
        logger.info(
            "%ssamples=%d packets=%d checksum_errors=%d length_errors=%d dropped_bytes=%d restarts=%d sent=%d",
            "Final stats: " if final else "",
            self.samples,
            stats.get("packets", 0),
            stats.get("checksum_errors", 0),
            stats.get("length_errors", 0),
            stats.get("dropped_bytes", 0),
            stats.get("restarts", 0),
            self.bridge.sent_count,
        )

    def _count_sample(self, _event: Any) -> None:
        self.samples += 1


def run(
    port: Optional[str] = typer.Option(
        None, "--port", "-p", help="Logger serial port. Defaults to the first Bluetooth port."
    ),
    pick: bool = typer.Option(False, "--pick", help="Choose the logger port interactively."),
    beacon_address: Optional[str] = typer.Option(
        None, "--beacon", "-b", help="Beacon BLE address. Defaults to a name-prefix scan."
    ),
    no_beacon: bool = typer.Option(
        False, "--no-beacon", help="Stream from the logger only (starts streaming manually)."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to bridge config JSON."
    ),
    preset: Optional[str] = typer.Option(
        None, "--preset", "-P", help="Apply stream preset (normal|fast) before other overrides."
    ),
    override: Optional[list[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set stream.mode=fast --set timing.query_settle_sec=0.8",
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Record decoded samples to this CSV file."
    ),
    replay: Optional[Path] = typer.Option(
        None, "--replay", help="Replay a captured byte dump instead of opening a port.", exists=True
    ),
    duration: Optional[float] = typer.Option(
        None, "--duration", help="Stop after this many seconds."
    ),
):
    """Bridge the logger to the beacon: decode samples and forward wire lines."""

    preset_overrides_list: list[str] = []
    if preset:
        key = preset.lower()
        if key not in PRESETS:
            raise typer.BadParameter(f"Unknown preset '{preset}'. Expected one of {list(PRESETS)}")
        preset_overrides_list = preset_overrides(key)
    combined_overrides = preset_overrides_list + (override or [])
    try:
        cfg = load_config(config_path, combined_overrides or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if port:
        cfg.serial.port = port
    if beacon_address:
        cfg.beacon.address = beacon_address
    if output is not None:
        cfg.output_csv = output
    if preset:
        logger.info("Applied preset %s (mode=%s)", preset.lower(), cfg.stream_mode)

    transport: ByteTransport
    if replay is not None:
        transport = ReplayTransport.from_file(replay, chunk_size=cfg.serial.chunk_size)
    else:
        transport = SerialTransport(cfg.serial, picker=prompt_port if pick else None)
    host = BridgeHost(cfg, transport=transport, use_beacon=not no_beacon)
    host.start(duration)


def ports() -> None:
    """List serial ports visible to pyserial."""
    found = available_ports()
    if not found:
        typer.echo("No serial ports found.")
        return
    for name in found:
        typer.echo(name)
