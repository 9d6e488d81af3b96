from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from packets import online_packet, sensor_ids_packet, status_packet, words
from sensorbridge.cli import app
from sensorbridge.link.framer import SampleEvent
from sensorbridge.link.processing import SampleRecorder
from sensorbridge.link.sensors import CATALOG

runner = CliRunner()


def capture() -> bytes:
    return (
        sensor_ids_packet([30, 6, 20])
        + status_packet(0x10)
        + online_packet(words([263, 0x8000, 0]))
        + online_packet(words([250, 500, 0]))
    )


def test_decode_file(tmp_path: Path):
    path = tmp_path / "capture.bin"
    path.write_bytes(capture())
    result = runner.invoke(app, ["decode", str(path), "--chunk-size", "5"])
    assert result.exit_code == 0, result.output
    assert "263,-9999,0" + ",-9999" * 10 in result.output
    assert "250,500,0" + ",-9999" * 10 in result.output
    assert "samples=2" in result.output


def test_decode_stdin_with_ids():
    data = online_packet(words([263, 0x8000, 0]))
    result = runner.invoke(app, ["decode", "-", "--ids", "30,6,20"], input=data)
    assert result.exit_code == 0, result.output
    assert "263,-9999,0" in result.output


def test_decode_missing_file(tmp_path: Path):
    result = runner.invoke(app, ["decode", str(tmp_path / "missing.bin")])
    assert result.exit_code != 0


def test_sensors_lists_catalog():
    result = runner.invoke(app, ["sensors"])
    assert result.exit_code == 0
    assert "Ambient Temperature" in result.output
    assert len(result.output.strip().splitlines()) == len(CATALOG)


def test_summary(tmp_path: Path):
    path = tmp_path / "rec.csv"
    recorder = SampleRecorder(path)
    for count, raw in enumerate([250, 270], start=1):
        recorder.append(
            SampleEvent(kind="online", readings={30: CATALOG.decode(30, raw)}, packet_count=count)
        )
    recorder.close()
    result = runner.invoke(app, ["summary", str(path)])
    assert result.exit_code == 0, result.output
    assert "2 samples" in result.output
    assert "ambient_temperature" in result.output
    assert "26.000" in result.output
    assert "humidity" not in result.output


def test_run_rejects_unknown_preset():
    result = runner.invoke(app, ["run", "--preset", "turbo", "--no-beacon"])
    assert result.exit_code != 0


def test_ports_lists_devices(monkeypatch):
    monkeypatch.setattr("sensorbridge.link.runner.available_ports", lambda: ["/dev/rfcomm0"])
    result = runner.invoke(app, ["ports"])
    assert result.exit_code == 0
    assert "/dev/rfcomm0" in result.output
