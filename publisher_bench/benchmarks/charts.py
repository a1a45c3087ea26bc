from __future__ import annotations

import logging
import re
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("publisher_bench.benchmark.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

STATUS_COLORS = {
    "ok": "#2E86AB",
    "failed": "#C73E1D",
    "dropped": "#F18F01",
}
STATUS_ORDER = ["ok", "failed", "dropped"]


def chart_filename(scenario_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", scenario_name) + ".png"


def render_scenario_chart(
    scenario_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    baseline_ms: float | None = None,
    slow_threshold_ms: float | None = None,
    bucket_s: float | None = None,
) -> Path | None:
    """Render latency over time and arrivals per time bucket for one scenario."""
    chart_path = output_dir / chart_filename(scenario_name)
    if df.empty:
        LOGGER.warning("No outcomes recorded for %s; skipping chart", scenario_name)
        return None

    df = df.copy()
    df["elapsed_s"] = df["started_at"] - df["started_at"].min()
    df["status"] = np.where(
        df["error"] == "dropped",
        "dropped",
        np.where(df["succeeded"].astype(bool), "ok", "failed"),
    )

    fig, (ax_latency, ax_arrivals) = plt.subplots(
        2, 1, figsize=(12, 8), sharex=True, gridspec_kw={"height_ratios": [3, 2]}
    )
    _render_latency(ax_latency, df, baseline_ms, slow_threshold_ms)
    _render_arrivals(ax_arrivals, df, bucket_s)

    fig.suptitle(scenario_name, fontweight="bold")
    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _render_latency(
    ax: plt.Axes,
    df: pd.DataFrame,
    baseline_ms: float | None,
    slow_threshold_ms: float | None,
) -> None:
    timed = df[df["status"] != "dropped"]
    if not timed.empty:
        sns.scatterplot(
            data=timed,
            x="elapsed_s",
            y="duration_ms",
            hue="status",
            hue_order=[status for status in STATUS_ORDER if status in set(timed["status"])],
            palette=STATUS_COLORS,
            s=14,
            linewidth=0,
            alpha=0.7,
            ax=ax,
        )
    if baseline_ms is not None:
        ax.axhline(baseline_ms, color="#6A994E", linestyle="--", linewidth=1.5, label="baseline")
    if slow_threshold_ms is not None:
        ax.axhline(
            slow_threshold_ms, color="#A23B72", linestyle=":", linewidth=1.5, label="slow threshold"
        )
    ax.set_ylabel("PUT duration (ms)", fontweight="semibold")
    ax.set_ylim(bottom=0)
    ax.set_title("Request Latency", fontweight="bold", pad=10)
    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, linestyle="--")


def _render_arrivals(ax: plt.Axes, df: pd.DataFrame, bucket_s: float | None) -> None:
    span = float(df["elapsed_s"].max())
    if bucket_s is None:
        bucket_s = max(span / 60.0, 1.0)
    df["bucket"] = (df["elapsed_s"] // bucket_s) * bucket_s
    counts = df.groupby(["bucket", "status"]).size().unstack(fill_value=0)

    bottom = np.zeros(len(counts))
    for status in STATUS_ORDER:
        if status not in counts.columns:
            continue
        values = counts[status].to_numpy()
        ax.bar(
            counts.index.to_numpy(),
            values,
            width=bucket_s * 0.9,
            align="edge",
            bottom=bottom,
            label=status,
            color=STATUS_COLORS[status],
            alpha=0.8,
            edgecolor="white",
        )
        bottom = bottom + values

    ax.set_xlabel("Elapsed (s)", fontweight="semibold")
    ax.set_ylabel(f"Requests per {bucket_s:g}s", fontweight="semibold")
    ax.set_title("Arrivals", fontweight="bold", pad=10)
    ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
