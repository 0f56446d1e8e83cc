"""Formatted ASCII tables for mock data and benchmark reports.

The tables share one visual style: an 80-column frame of ``=`` rules
around a centred title, label/value rows, and ``-`` rules between
sections.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from ._results import RepetitionReport
    from .mock import MockData

W = 80
LW = 28  # label column width


def _print_title(title: str) -> None:
    print("=" * W)
    for line in textwrap.wrap(title, width=W - 2):
        print(f"{line:^{W}}")
    print("=" * W)


def _row(label: str, value: object) -> None:
    print(f"  {label + ':':<{LW}}{value}")


def _fmt_seconds(seconds: float) -> str:
    """Human-readable duration with a unit suited to its magnitude."""
    if seconds >= 1.0:
        return f"{seconds:.3f} s"
    if seconds >= 1e-3:
        return f"{seconds * 1e3:.3f} ms"
    return f"{seconds * 1e6:.1f} µs"


def print_mock_summary(data: MockData, *, title: str = "Mock Data") -> None:
    """Print the dimensions and block structure of *data*.

    Args:
        data: Generated or loaded mock data.
        title: Title for the output table.
    """
    sizes = np.bincount(data.block_ids, minlength=data.n_blocks)

    _print_title(title)
    _row("No. Observations", data.n_obs)
    _row("No. Features", data.n_feat)
    _row("No. Predictors", data.n_pred)
    _row("No. Blocks", data.n_blocks)
    print("-" * W)
    _row("Block Size (min / max)", f"{sizes.min()} / {sizes.max()}")
    _row("Block Size (mean)", f"{sizes.mean():.2f}")
    _row("Dtype", data.resid.dtype)
    print("=" * W)


def print_repetition_report(
    report: RepetitionReport,
    *,
    title: str = "Sandwich Estimator Benchmark",
) -> None:
    """Print the timing summary of a repetition run.

    The top panel describes the configuration (backend, pool widths,
    output shape); the bottom panel lists aggregate and per-repetition
    wall-clock times.

    Args:
        report: Result of :func:`~half_sandwich.run_repetitions`.
        title: Title for the output table.
    """
    pred, _, feat = report.shape
    times = report.repetition_seconds

    _print_title(title)
    _row("Backend", report.backend)
    _row("Outer Threads", report.outer_threads)
    _row("Inner Threads", report.inner_threads)
    _row("Block-Level Parallel", "yes" if report.block_level_parallel else "no")
    _row("Regenerated Inputs", "yes" if report.regenerated else "no")
    _row("Covariance Shape", f"{pred} x {pred} x {feat}")
    print("-" * W)
    _row("Repetitions", report.n_repetitions)
    _row("Time Elapsed", _fmt_seconds(report.total_seconds))
    _row("Per Repetition (wall)", _fmt_seconds(report.seconds_per_repetition))
    _row("Per Repetition (mean)", _fmt_seconds(report.mean_repetition_seconds))
    if report.n_repetitions > 1:
        _row(
            "Per Repetition (min / max)",
            f"{_fmt_seconds(float(times.min()))} / {_fmt_seconds(float(times.max()))}",
        )
    print("=" * W)
