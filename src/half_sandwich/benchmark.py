"""Command-line benchmark of the sandwich estimator.

Three subcommands::

    half-sandwich-bench mock    # write mock-data.npz
    half-sandwich-bench single  # one computation on the inner pool
    half-sandwich-bench multi   # R repetitions on outer x inner pools

``single`` and ``multi`` read ``--input`` (default ``mock-data.npz``)
when it exists and otherwise generate mock data on the fly from the
sizing options.  ``single`` uses every CPU for its inner pool by
default; ``multi`` splits the CPUs with
:func:`~half_sandwich.parallel.plan_nested_parallelism`.

Usage::

    half-sandwich-bench mock --n-obs 8192 --seed 1
    half-sandwich-bench single --inner-threads 8
    half-sandwich-bench multi --repetitions 20 --outer-threads 2 --inner-threads 6
    python -m half_sandwich multi --regenerate --csv timings.csv
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

import pandas as pd

from . import __version__
from .core import half_sandwich_covariance
from .display import print_mock_summary, print_repetition_report
from .exceptions import SandwichError
from .mock import DEFAULT_N_FEAT, BlockSizes, MockData, MockParams
from .parallel import ParallelConfig, plan_nested_parallelism
from .repetitions import fixed_inputs, mock_inputs, run_repetitions

logger = logging.getLogger(__name__)

DEFAULT_NPZ = "mock-data.npz"


# ------------------------------------------------------------------ #
# Argument parsing
# ------------------------------------------------------------------ #


def _add_mock_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("mock data")
    group.add_argument("--n-obs", type=int, default=8192, help="observations")
    group.add_argument(
        "--n-feat", type=int, default=DEFAULT_N_FEAT, help="features (columns)"
    )
    group.add_argument("--n-pred", type=int, default=8, help="predictors")
    group.add_argument("--min-block-size", type=int, default=1)
    group.add_argument("--max-block-size", type=int, default=8)
    group.add_argument("--seed", type=int, default=None, help="random seed")


def _add_compute_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--input",
        default=DEFAULT_NPZ,
        help=f"mock data archive to read if present (default: {DEFAULT_NPZ})",
    )
    parser.add_argument(
        "--backend",
        choices=("numpy", "jax"),
        default=None,
        help="compute backend (default: HALF_SANDWICH_BACKEND or auto-detect)",
    )
    parser.add_argument(
        "--inner-threads",
        type=int,
        default=None,
        help="inner pool width, -1 for all CPUs",
    )
    parser.add_argument(
        "--block-level-parallel",
        action="store_true",
        help="also split blocks across inner tasks",
    )
    parser.add_argument("--feature-chunk-size", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for the ``half-sandwich-bench`` command."""
    parser = argparse.ArgumentParser(
        prog="half-sandwich-bench",
        description="Benchmark the cluster-robust sandwich estimator.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_mock = sub.add_parser("mock", help="generate mock data and write it to .npz")
    _add_mock_options(p_mock)
    p_mock.add_argument("--output", default=DEFAULT_NPZ)

    p_single = sub.add_parser("single", help="one covariance computation")
    _add_mock_options(p_single)
    _add_compute_options(p_single)

    p_multi = sub.add_parser("multi", help="repeated covariance computations")
    _add_mock_options(p_multi)
    _add_compute_options(p_multi)
    p_multi.add_argument("--repetitions", type=int, default=20)
    p_multi.add_argument(
        "--outer-threads", type=int, default=None, help="outer pool width"
    )
    p_multi.add_argument(
        "--regenerate",
        action="store_true",
        help="draw fresh mock data for every repetition",
    )
    p_multi.add_argument(
        "--csv", default=None, help="write per-repetition timings to this file"
    )
    return parser


# ------------------------------------------------------------------ #
# Subcommands
# ------------------------------------------------------------------ #


def _mock_params(args: argparse.Namespace) -> MockParams:
    return MockParams(
        n_obs=args.n_obs,
        n_feat=args.n_feat,
        n_pred=args.n_pred,
        block_sizes=BlockSizes(args.min_block_size, args.max_block_size),
    )


def _load_or_generate(args: argparse.Namespace) -> MockData:
    path = Path(args.input)
    if path.exists():
        print(f"Reading mock data from {path}...", end="", flush=True)
        data = MockData.from_npz(path)
    else:
        print(f"File {path} not found.")
        print("Consider running `half-sandwich-bench mock` to generate data.")
        print("Generating mock data on the fly...", end="", flush=True)
        data = MockData.from_params(_mock_params(args), args.seed)
    print(" done.")
    return data


def _parallel_config(args: argparse.Namespace, default_inner: int) -> ParallelConfig:
    inner = args.inner_threads if args.inner_threads is not None else default_inner
    return ParallelConfig(
        inner_threads=inner,
        block_level_parallel=args.block_level_parallel,
        feature_chunk_size=args.feature_chunk_size,
    )


def _cmd_mock(args: argparse.Namespace) -> int:
    params = _mock_params(args)
    print(params)
    print("Generating mock data...", end="", flush=True)
    data = MockData.from_params(params, args.seed)
    print(" done.")
    print(f"Generated {data.n_blocks} blocks.")
    print(f"Writing mock data to {args.output}...", end="", flush=True)
    data.save_npz(args.output)
    print(" done.")
    return 0


def _cmd_single(args: argparse.Namespace) -> int:
    data = _load_or_generate(args)
    print_mock_summary(data)
    config = _parallel_config(args, -1)
    print(f"Inner thread pool has {config.n_threads} thread(s).")

    index = data.block_index()
    print("Computing SwE...", end="", flush=True)
    start = time.perf_counter()
    cov = half_sandwich_covariance(
        data.x_pinv, data.resid, index, config, backend=args.backend
    )
    elapsed = time.perf_counter() - start
    print(" done.")
    print(f"Time elapsed: {elapsed:.3f} s")
    # Touch the result so the computation is observably used.
    print(f"cov_b[0, 0, 0] = {cov[0, 0, 0]}")
    return 0


def _cmd_multi(args: argparse.Namespace) -> int:
    default_outer, default_inner = plan_nested_parallelism()
    outer = args.outer_threads if args.outer_threads is not None else default_outer
    config = _parallel_config(args, default_inner)

    if args.regenerate:
        factory = mock_inputs(_mock_params(args), args.seed)
    else:
        data = _load_or_generate(args)
        print_mock_summary(data)
        factory = fixed_inputs(data.x_pinv, data.resid, data.block_index())

    print(
        f"Computing SwE {args.repetitions} time(s) on {outer} outer x "
        f"{config.n_threads} inner thread(s)...",
        end="",
        flush=True,
    )
    report = run_repetitions(
        factory,
        args.repetitions,
        outer_threads=outer,
        parallelism=config,
        backend=args.backend,
    )
    print(" done.")
    print_repetition_report(report)

    if args.csv:
        pd.DataFrame(
            {
                "repetition": range(1, report.n_repetitions + 1),
                "seconds": report.repetition_seconds,
                "outer_threads": report.outer_threads,
                "inner_threads": report.inner_threads,
                "backend": report.backend,
            }
        ).to_csv(args.csv, index=False)
        print(f"Wrote per-repetition timings to {args.csv}")
    return 0


_COMMANDS = {"mock": _cmd_mock, "single": _cmd_single, "multi": _cmd_multi}


def main(argv: list[str] | None = None) -> int:
    """Entry point of ``half-sandwich-bench``; returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    logger.debug("Running %r with %s", args.command, vars(args))
    try:
        return _COMMANDS[args.command](args)
    except (SandwichError, ValueError, ImportError) as exc:
        logger.debug("Command %r failed", args.command, exc_info=True)
        print(f"\nerror: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
