"""Profile outer × inner thread splits of the repetition driver.

For every split ``(outer, inner)`` with ``outer × inner <= n_cpus``
runs R covariance repetitions over one fixed mock problem and records
wall-clock time, with and without block-level parallelism.  The
resulting heatmap shows where the machine prefers repetitions in
flight over features in flight.

Usage::

    pip install -e ".[bench]"
    python benchmarks/profile_nesting.py            # default problem size
    python benchmarks/profile_nesting.py --quick    # small problem, smoke test

Outputs:
    benchmarks/results/nesting_profile.csv
    benchmarks/results/nesting_heatmap.png
    benchmarks/results/nesting_block_level.png
"""

from __future__ import annotations

import argparse
import platform
import sys
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from joblib import cpu_count

# Ensure the package is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from half_sandwich import (  # noqa: E402
    MockData,
    MockParams,
    ParallelConfig,
    fixed_inputs,
    plan_nested_parallelism,
    run_repetitions,
)

# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #

PARAMS_FULL = MockParams(n_obs=8192, n_feat=10_000, n_pred=8)
PARAMS_QUICK = MockParams(n_obs=1024, n_feat=500, n_pred=4)

REPETITIONS = 8
SEED = 42

RESULTS_DIR = Path(__file__).resolve().parent / "results"


# ------------------------------------------------------------------ #
# Benchmark helpers
# ------------------------------------------------------------------ #


def _splits(n_cpus: int) -> list[tuple[int, int]]:
    """All (outer, inner) pairs with power-of-two-ish widths within n_cpus."""
    widths = sorted({1, 2, 4, 8, 16, 32, n_cpus} & set(range(1, n_cpus + 1)))
    return [(o, i) for o in widths for i in widths if o * i <= n_cpus]


def run_grid(data: MockData, repetitions: int, backend: str) -> pd.DataFrame:
    """Time every split and return one row per configuration."""
    factory = fixed_inputs(data.x_pinv, data.resid, data.block_index())
    splits = _splits(cpu_count())
    rows: list[dict] = []
    total = 2 * len(splits)
    done = 0

    for block_level in (False, True):
        for outer, inner in splits:
            report = run_repetitions(
                factory,
                repetitions,
                outer_threads=outer,
                parallelism=ParallelConfig(
                    inner_threads=inner, block_level_parallel=block_level
                ),
                backend=backend,
            )
            done += 1
            row = report.to_dict()
            row.pop("repetition_seconds")
            row["median_repetition_s"] = float(np.median(report.repetition_seconds))
            row["throughput_per_s"] = repetitions / report.total_seconds
            rows.append(row)
            print(
                f"  [{done:3d}/{total}] outer={outer:2d}, inner={inner:2d}, "
                f"block_level={block_level!s:5s}, "
                f"total={report.total_seconds:.3f}s"
            )

    return pd.DataFrame(rows)


# ------------------------------------------------------------------ #
# Chart generation
# ------------------------------------------------------------------ #


def _make_heatmap(df: pd.DataFrame, block_level: bool, path: Path) -> None:
    """Throughput heatmap over (outer, inner)."""
    subset = df[df["block_level_parallel"] == block_level]
    pivot = subset.pivot(
        index="outer_threads", columns="inner_threads", values="throughput_per_s"
    )

    fig, ax = plt.subplots(figsize=(8, 6))
    im = ax.imshow(pivot.values, aspect="auto", cmap="viridis", origin="lower")
    ax.set_xticks(range(len(pivot.columns)))
    ax.set_xticklabels(pivot.columns)
    ax.set_yticks(range(len(pivot.index)))
    ax.set_yticklabels(pivot.index)
    ax.set_xlabel("Inner threads")
    ax.set_ylabel("Outer threads")
    suffix = " (block-level parallel)" if block_level else ""
    ax.set_title(f"Repetitions per second{suffix}")

    for i in range(len(pivot.index)):
        for j in range(len(pivot.columns)):
            val = pivot.values[i, j]
            text = "—" if np.isnan(val) else f"{val:.2f}"
            ax.text(j, i, text, ha="center", va="center", fontsize=8, color="white")

    fig.colorbar(im, ax=ax, label="Repetitions / s")
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    print(f"  Saved {path}")


# ------------------------------------------------------------------ #
# Main
# ------------------------------------------------------------------ #


def main() -> None:
    parser = argparse.ArgumentParser(description="Profile nested thread splits")
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Run a small problem for quick smoke testing",
    )
    parser.add_argument("--repetitions", type=int, default=REPETITIONS)
    parser.add_argument("--backend", choices=("numpy", "jax"), default="numpy")
    args = parser.parse_args()

    params = PARAMS_QUICK if args.quick else PARAMS_FULL
    data = MockData.from_params(params, random_state=SEED)
    outer, inner = plan_nested_parallelism()

    print("=" * 60)
    print("Nested Parallelism Profile")
    print("=" * 60)
    print(f"  Platform:    {platform.platform()}")
    print(f"  Python:      {platform.python_version()}")
    print(f"  NumPy:       {np.__version__}")
    print(f"  CPUs:        {cpu_count()}")
    print(f"  Default:     {outer} outer x {inner} inner")
    print(f"  Problem:     obs={data.n_obs}, feat={data.n_feat}, pred={data.n_pred}")
    print(f"  Blocks:      {data.n_blocks}")
    print(f"  Repetitions: {args.repetitions}")
    print()

    print("Running benchmarks...")
    df = run_grid(data, args.repetitions, args.backend)

    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    csv_path = RESULTS_DIR / "nesting_profile.csv"
    df.to_csv(csv_path, index=False)
    print(f"\nSaved results to {csv_path}")

    print("\nGenerating charts...")
    _make_heatmap(df, False, RESULTS_DIR / "nesting_heatmap.png")
    _make_heatmap(df, True, RESULTS_DIR / "nesting_block_level.png")

    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    best = df.sort_values("throughput_per_s", ascending=False).head(5)
    print(
        best[
            [
                "outer_threads",
                "inner_threads",
                "block_level_parallel",
                "total_seconds",
                "median_repetition_s",
                "throughput_per_s",
            ]
        ].to_string(index=False)
    )


if __name__ == "__main__":
    main()
