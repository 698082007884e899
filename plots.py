from __future__ import annotations

import math
from typing import List, Sequence, Tuple

from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure
import numpy as np
import pandas as pd

from model import Person, compute_lorenz

FEATURES = ("mean_allele", "env", "education_score", "wealth", "parent_wealth")
LOG_FEATURES = ("wealth", "parent_wealth")
FEATURE_CMAPS = {
    "mean_allele": "viridis",
    "env": "plasma",
    "education_score": "inferno",
    "wealth": "cividis",
    "parent_wealth": "magma",
}


def compute_grid(n: int) -> Tuple[int, int]:
    if n <= 0:
        return 0, 0
    cols = math.ceil(math.sqrt(n))
    rows = math.ceil(n / cols)
    return rows, cols


def prepare_raster_array(people: Sequence[Person], feature: str) -> np.ndarray:
    """Feature values ordered by wealth, richest first; wealth columns as log10(v + 1)."""
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature '{feature}', expected one of {FEATURES}")
    ordered = sorted(people, key=lambda p: p.wealth, reverse=True)
    values = np.array([getattr(p, feature) for p in ordered], dtype=float)
    if feature in LOG_FEATURES:
        values = np.log10(values + 1)
    return values


def make_raster_figure(people: Sequence[Person], feature: str = "wealth") -> Figure:
    fig = Figure(figsize=(5.0, 5.0))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    values = prepare_raster_array(people, feature)
    rows, cols = compute_grid(values.size)
    if values.size:
        grid = np.full(rows * cols, np.nan)
        grid[: values.size] = values
        ax.imshow(grid.reshape(rows, cols), cmap=FEATURE_CMAPS[feature], interpolation="nearest")
    else:
        ax.text(0.5, 0.5, "no data", ha="center", va="center")
    ax.set_xticks([])
    ax.set_yticks([])
    label = f"log10({feature} + 1)" if feature in LOG_FEATURES else feature
    ax.set_title(f"{label}, sorted by wealth")
    return fig


def make_lorenz_figure(wealth: Sequence[float]) -> Figure:
    fig = Figure(figsize=(4.5, 4.0))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    lorenz = compute_lorenz(wealth)
    ax.plot([0, 1], [0, 1], color="#999999", linestyle="--", linewidth=1)
    ax.plot(lorenz[:, 0], lorenz[:, 1], color="tomato", linewidth=2)
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_xlabel("cumulative population share")
    ax.set_ylabel("cumulative wealth share")
    ax.set_title("Lorenz curve")
    ax.grid(True, linestyle="--", alpha=0.3)
    return fig


def make_line_figure(history: pd.DataFrame, column: str, title: str, color: str) -> Figure:
    fig = Figure(figsize=(4.5, 3))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    if column in history:
        ax.plot(history.index, history[column], color=color, linewidth=2)
        ax.set_ylabel(column)
        if column == "gini_wealth":
            ax.set_ylim(0, 1)
    else:
        ax.text(0.5, 0.5, "no data", ha="center", va="center")
    ax.set_title(title)
    ax.set_xlabel("generation")
    ax.grid(True, linestyle="--", alpha=0.3)
    return fig


def make_histogram_figure(data: Sequence[float], bins: int = 20, log10: bool = False, title: str = "") -> Figure:
    """Histogram; with ``log10`` the data are already log10 values and ticks show the raw amounts."""
    fig = Figure(figsize=(4.5, 3.2))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    values = np.asarray(data, dtype=float)
    if values.size:
        ax.hist(values, bins=bins, color="steelblue", edgecolor="white")
        if log10:
            ticks: List[int] = [t for t in range(1, 15) if values.min() < t < values.max()]
            ax.set_xticks(ticks)
            ax.set_xticklabels([f"{10 ** t:,}" for t in ticks], rotation=45, ha="right")
    else:
        ax.text(0.5, 0.5, "no data", ha="center", va="center")
    ax.set_title(title)
    ax.set_ylabel("count")
    return fig
