"""Command line interface for the sensorbridge package."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer

from .link import runner
from .link.framer import PacketFramer, SampleEvent
from .link.sensors import CATALOG
from .link.transport import iterate_binary_stream
from .link.wire import to_wire_line
from .recording import load_recording, plot_recording, recording_span, summarize_recording

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
app.command("run")(runner.run)
app.command("ports")(runner.ports)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Bridge a serial data logger to a BLE UART beacon."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def sensors() -> None:
    """List the sensors the decoder knows about."""

    for desc in CATALOG:
        unit = f" [{desc.unit}]" if desc.unit else ""
        typer.echo(f"{desc.id:>3}  {desc.name}{unit}  x{desc.factor}")


@app.command()
def decode(
    input_path: str = typer.Argument(..., help="Captured logger bytes. Use '-' to read from stdin."),
    chunk_size: int = typer.Option(256, "--chunk-size", help="Bytes fed to the decoder per step."),
    ids: Optional[str] = typer.Option(
        None, "--ids", help="Comma separated sensor ids, for captures without an id list."
    ),
) -> None:
    """Decode a captured byte stream and print one wire line per sample."""

    if chunk_size <= 0:
        raise typer.BadParameter("--chunk-size must be positive", param_hint="--chunk-size")
    framer = PacketFramer(CATALOG)
    if ids:
        framer.sensor_ids = _parse_ids(ids)

    if input_path == "-":
        chunks = iterate_binary_stream(sys.stdin.buffer, chunk_size)
        samples = _print_samples(framer, chunks)
    else:
        path = Path(input_path)
        if not path.exists():
            raise typer.BadParameter(f"File not found: {path}", param_hint="INPUT_PATH")
        with path.open("rb") as fh:
            samples = _print_samples(framer, iterate_binary_stream(fh, chunk_size))

    stats = framer.stats()
    typer.echo(
        f"samples={samples} packets={stats['packets']} checksum_errors={stats['checksum_errors']} "
        f"dropped_bytes={stats['dropped_bytes']}",
        err=True,
    )


@app.command()
def summary(
    input_path: Path = typer.Argument(..., help="Recording CSV written by 'run --output'."),
) -> None:
    """Print per-sensor statistics for a recorded session."""

    try:
        df = load_recording(input_path)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="INPUT_PATH") from exc
    table = summarize_recording(df)
    typer.echo(f"{len(df)} samples over {recording_span(df):.1f} s")
    typer.echo(table[table["count"] > 0].to_string(float_format=lambda v: f"{v:.3f}"))


@app.command()
def plot(
    input_path: Path = typer.Argument(..., help="Recording CSV written by 'run --output'."),
    out: Path = typer.Option(Path("recording.png"), "--out", help="Output PNG path."),
    columns: Optional[List[str]] = typer.Option(None, "--column", help="Sensor column to plot (repeatable)."),
) -> None:
    """Plot recorded sensor values over time."""

    try:
        df = load_recording(input_path)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="INPUT_PATH") from exc
    try:
        figure_path = plot_recording(df, out, columns)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--column") from exc
    except RuntimeError as exc:
        typer.echo(f"[warning] plotting skipped: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Plot written to {figure_path}")


def _parse_ids(text: str) -> tuple:
    try:
        return tuple(int(part) for part in text.split(",") if part.strip())
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid sensor id list '{text}'", param_hint="--ids") from exc


def _print_samples(framer: PacketFramer, chunks) -> int:
    samples = 0
    for chunk in chunks:
        for event in framer.feed(chunk):
            if isinstance(event, SampleEvent):
                samples += 1
                typer.echo(to_wire_line(event.readings), nl=False)
    return samples


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
