"""Loading, summarising and plotting recorded bridge sessions."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .link.processing import BASE_FIELDS

REQUIRED_COLUMNS = {"timestamp", "packet_count"}


def read_metadata(path: str | Path) -> Dict[str, str]:
    """Collect the ``# key=value`` lines written ahead of the CSV header."""

    metadata: Dict[str, str] = {}
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            if not line.startswith("#"):
                break
            for item in line[1:].split():
                if "=" in item:
                    key, value = item.split("=", 1)
                    metadata[key] = value
    return metadata


def load_recording(path: str | Path) -> pd.DataFrame:
    """Load a CSV written by :class:`SampleRecorder`.

    Parameters
    ----------
    path:
        Recording produced by ``sensorbridge run --output``.

    Returns
    -------
    pandas.DataFrame
        One row per sample, ``timestamp`` parsed, sensor columns as floats
        (missing readings are NaN).
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    df = pd.read_csv(path, comment="#")
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    for column in sensor_columns_of(df):
        df[column] = pd.to_numeric(df[column], errors="coerce")
    return df


def sensor_columns_of(df: pd.DataFrame) -> List[str]:
    return [column for column in df.columns if column not in BASE_FIELDS]


def summarize_recording(df: pd.DataFrame) -> pd.DataFrame:
    rows = []
    for column in sensor_columns_of(df):
        values = df[column].to_numpy(dtype=float)
        present = values[np.isfinite(values)]
        if present.size:
            rows.append(
                {
                    "sensor": column,
                    "count": int(present.size),
                    "min": float(present.min()),
                    "mean": float(present.mean()),
                    "max": float(present.max()),
                }
            )
        else:
            rows.append({"sensor": column, "count": 0, "min": np.nan, "mean": np.nan, "max": np.nan})
    return pd.DataFrame(rows, columns=["sensor", "count", "min", "mean", "max"]).set_index("sensor")


def recording_span(df: pd.DataFrame) -> float:
    if df.empty:
        return 0.0
    return float((df["timestamp"].max() - df["timestamp"].min()).total_seconds())


def plot_recording(
    df: pd.DataFrame,
    out_path: Path,
    columns: Optional[Sequence[str]] = None,
) -> Path:
    plt = _require_matplotlib()
    selected = list(columns) if columns else [
        column for column in sensor_columns_of(df) if df[column].notna().any()
    ]
    unknown = [column for column in selected if column not in df.columns]
    if unknown:
        raise ValueError(f"Unknown columns: {unknown}")
    if not selected:
        raise ValueError("Recording has no sensor values to plot")

    fig, axes = plt.subplots(len(selected), 1, figsize=(10, 2.4 * len(selected)), sharex=True, squeeze=False)
    for ax, column in zip(axes[:, 0], selected):
        ax.plot(df["timestamp"], df[column], linewidth=1.0)
        ax.set_ylabel(column.replace("_", " "))
        ax.grid(True, alpha=0.3)
    axes[-1, 0].set_xlabel("time")
    fig.tight_layout()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _require_matplotlib() -> Any:
    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install sensorbridge[plot]") from exc
    return plt
