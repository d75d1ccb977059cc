#!/usr/bin/env python3
"""
Summarize flight-time files written by amqp-traffic receivers.
Walks a results directory, reads every file whose path contains the
signifier (default "flight_times") and prints latency statistics.
"""
from __future__ import annotations
import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

COLUMNS = ["arrival_time", "latency_ms"]


def find_flight_time_files(root, signifier: str = "flight_times") -> List[Path]:
    root = Path(root)
    if root.is_file():
        return [root]
    return sorted(p for p in root.rglob("*") if p.is_file() and signifier in str(p))


def read_flight_times(path) -> pd.DataFrame:
    """Two floats per line; the first blank line ends the file."""
    rows = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                break
            parts = line.split()
            if len(parts) < 2:
                raise ValueError(f"{path}:{lineno}: expected two numbers, got {line!r}")
            try:
                rows.append((float(parts[0]), float(parts[1])))
            except ValueError as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from exc
    return pd.DataFrame(rows, columns=COLUMNS)


def load_results(root, signifier: str = "flight_times") -> pd.DataFrame:
    frames = []
    for p in find_flight_time_files(root, signifier):
        df = read_flight_times(p)
        df["file"] = str(p)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=COLUMNS + ["file"])
    return pd.concat(frames, ignore_index=True)


def summarize(df: pd.DataFrame) -> dict:
    lat = pd.to_numeric(df["latency_ms"], errors="coerce").dropna()
    arr = pd.to_numeric(df["arrival_time"], errors="coerce").dropna()
    if lat.empty:
        return {"count": 0}
    values = lat.to_numpy()
    return {
        "count": int(values.size),
        "mean_ms": float(values.mean()),
        "min_ms": float(values.min()),
        "max_ms": float(values.max()),
        "p50_ms": float(np.percentile(values, 50)),
        "p99_ms": float(np.percentile(values, 99)),
        "first_arrival": float(arr.min()),
        "last_arrival": float(arr.max()),
        "span_s": float(arr.max() - arr.min()),
    }


def per_file_summary(df: pd.DataFrame) -> pd.DataFrame:
    rows = []
    for name, g in df.groupby("file", sort=True):
        row = {"file": name}
        row.update(summarize(g))
        rows.append(row)
    return pd.DataFrame(rows)


def plot_histogram(df: pd.DataFrame, out_path, bins: int = 50) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(8, 4.5))
    ax.hist(df["latency_ms"].to_numpy(dtype=float), bins=bins, color="tab:blue", alpha=0.8)
    ax.set_xlabel("Flight time (ms)")
    ax.set_ylabel("Messages")
    ax.set_title(f"Flight times ({len(df)} messages)")
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(out_path, dpi=120)
    plt.close(fig)
    return out_path


def format_summary(stats: dict) -> str:
    if not stats.get("count"):
        return "no flight times found"
    return (
        f"messages={stats['count']} mean={stats['mean_ms']:.3f}ms "
        f"p50={stats['p50_ms']:.3f}ms p99={stats['p99_ms']:.3f}ms "
        f"min={stats['min_ms']:.3f}ms max={stats['max_ms']:.3f}ms span={stats['span_s']:.3f}s"
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="amqp-traffic-report", description="Summarize receiver flight-time files.")
    ap.add_argument("results", help="Results directory (or a single flight-times file).")
    ap.add_argument("--signifier", default="flight_times", help="Substring that marks flight-time files.")
    ap.add_argument("--csv", default=None, help="Write the per-file summary to this CSV.")
    ap.add_argument("--histogram", default=None, help="Write a latency histogram PNG here.")
    ap.add_argument("--bins", type=int, default=50, help="Histogram bins (default 50).")
    args = ap.parse_args(argv)

    try:
        df = load_results(args.results, args.signifier)
    except (OSError, ValueError) as exc:
        print(f"amqp-traffic-report: {exc}", file=sys.stderr)
        return 1

    print(format_summary(summarize(df)))
    if df.empty:
        return 0

    if args.csv:
        Path(args.csv).parent.mkdir(parents=True, exist_ok=True)
        per_file_summary(df).to_csv(args.csv, index=False)
        print(f"OK: wrote {args.csv}")
    if args.histogram:
        plot_histogram(df, args.histogram, bins=args.bins)
        print(f"OK: wrote {args.histogram}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
