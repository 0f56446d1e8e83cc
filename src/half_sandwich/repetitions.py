"""Repetition driver — many independent covariance computations.

Resampling schemes such as the wild bootstrap recompute the sandwich
covariance hundreds of times over the same block partition.  This
module runs R such repetitions and reports their wall-clock cost, so
that the split of CPUs between

* an **outer** pool (repetitions in flight at once), and
* an **inner** pool (features / blocks within one repetition)

can be tuned per machine.  Neither split is universally better: outer
parallelism has no synchronisation at all but multiplies peak memory by
the number of repetitions in flight, inner parallelism keeps one
repetition's scratch arrays in memory but pays task overhead on every
feature chunk.  :func:`~half_sandwich.parallel.plan_nested_parallelism`
gives a reasonable starting point.

Inputs come from a *factory* called once per repetition with the
repetition number:

* :func:`fixed_inputs` hands out the same arrays and the same
  :class:`~half_sandwich.blocks.BlockIndex` every time, so the
  partition is built once and amortised over all repetitions.
* :func:`mock_inputs` regenerates mock data per repetition from
  independent child seeds, so results do not depend on which outer
  thread ran which repetition.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from joblib import Parallel, cpu_count, delayed

from ._backends import resolve_backend
from ._results import RepetitionReport
from ._typing import BlockIdsLike, MatrixLike
from .blocks import BlockIndex, build_block_index
from .core import _validate_inputs, half_sandwich_covariance
from .exceptions import ShapeMismatchError
from .mock import MockData, MockParams
from .parallel import ParallelConfig, resolve_n_threads

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandwichInputs:
    """The (pseudoinverse, residuals, partition) triple of one computation."""

    x_pinv: np.ndarray
    resid: np.ndarray
    block_index: BlockIndex

    @classmethod
    def from_mock(cls, data: MockData) -> SandwichInputs:
        return cls(x_pinv=data.x_pinv, resid=data.resid, block_index=data.block_index())


InputFactory = Callable[[int], SandwichInputs]


class FixedInputs:
    """Factory returning the same validated inputs for every repetition."""

    regenerates = False

    def __init__(self, inputs: SandwichInputs) -> None:
        self.inputs = inputs

    def __call__(self, repetition: int) -> SandwichInputs:
        return self.inputs


class MockInputs:
    """Factory drawing fresh mock data for every repetition.

    Repetition ``r`` is seeded with child ``r`` of the root
    ``SeedSequence``, independent of scheduling order.
    """

    regenerates = True

    def __init__(self, params: MockParams, random_state: int | None = None) -> None:
        self.params = params
        self._root = np.random.SeedSequence(random_state)

    def __call__(self, repetition: int) -> SandwichInputs:
        seed = np.random.SeedSequence(
            entropy=self._root.entropy, spawn_key=(repetition,)
        )
        return SandwichInputs.from_mock(MockData.from_params(self.params, seed))


def fixed_inputs(
    x_pinv: MatrixLike,
    resid: MatrixLike,
    block_ids: BlockIdsLike | BlockIndex,
    n_blocks: int | None = None,
) -> FixedInputs:
    """Factory for repetitions over one fixed problem.

    The block partition is built (and all shapes validated) once, here,
    rather than in every repetition.

    Args:
        x_pinv: Pseudoinverse ``(pred, obs)``.
        resid: Residuals ``(obs, feat)``.
        block_ids: Block assignment, or an already built
            :class:`~half_sandwich.blocks.BlockIndex`.
        n_blocks: Number of blocks when *block_ids* is an assignment.

    Returns:
        A callable ``factory(repetition) -> SandwichInputs``.
    """
    p, e = _validate_inputs(x_pinv, resid)
    if isinstance(block_ids, BlockIndex):
        index = block_ids
    else:
        index = build_block_index(block_ids, n_blocks)
    index.check(e.shape[0])
    return FixedInputs(SandwichInputs(x_pinv=p, resid=e, block_index=index))


def mock_inputs(
    params: MockParams | None = None,
    random_state: int | None = None,
) -> MockInputs:
    """Factory regenerating mock inputs for every repetition."""
    return MockInputs(params if params is not None else MockParams(), random_state)


def run_repetitions(
    factory: InputFactory,
    n_repetitions: int = 20,
    *,
    outer_threads: int = 1,
    parallelism: ParallelConfig | None = None,
    backend: str | None = None,
    keep_results: bool = False,
) -> RepetitionReport:
    """Run the covariance computation *n_repetitions* times.

    Args:
        factory: ``factory(repetition) -> SandwichInputs``; see
            :func:`fixed_inputs` and :func:`mock_inputs`.
        n_repetitions: Number of repetitions (>= 1).
        outer_threads: Width of the outer pool; ``-1`` for all CPUs.
        parallelism: Inner-pool configuration used by every repetition.
        backend: Backend name or ``None`` for the configured policy.
        keep_results: Keep every covariance tensor in the report.

    Returns:
        A :class:`~half_sandwich._results.RepetitionReport`.  Per-
        repetition times cover the reduction only; the total also
        includes input generation and scheduling.

    Raises:
        ValueError: If *n_repetitions* < 1 or *outer_threads* is invalid.
        ShapeMismatchError: If repetitions produce tensors of different
            shapes.
    """
    if n_repetitions < 1:
        raise ValueError(f"n_repetitions must be >= 1, got {n_repetitions}.")
    n_outer = resolve_n_threads(outer_threads)
    config = parallelism if parallelism is not None else ParallelConfig.serial()
    engine_name = resolve_backend(backend).name

    n_cpus = cpu_count()
    if n_outer * config.n_threads > n_cpus:
        warnings.warn(
            f"outer_threads ({n_outer}) x inner_threads ({config.n_threads}) "
            f"exceeds the {n_cpus} available CPUs; nested pools will be "
            f"oversubscribed.",
            UserWarning,
            stacklevel=2,
        )

    def _one(repetition: int) -> tuple[np.ndarray | None, tuple[int, ...], float]:
        inputs = factory(repetition)
        start = time.perf_counter()
        cov = half_sandwich_covariance(
            inputs.x_pinv,
            inputs.resid,
            inputs.block_index,
            config,
            backend=engine_name,
        )
        elapsed = time.perf_counter() - start
        logger.debug("Repetition %d finished in %.3fs", repetition + 1, elapsed)
        return (cov if keep_results else None), cov.shape, elapsed

    logger.debug(
        "Running %d repetition(s) on %d outer x %d inner thread(s)",
        n_repetitions,
        n_outer,
        config.n_threads,
    )
    start = time.perf_counter()
    if n_outer == 1:
        results = [_one(r) for r in range(n_repetitions)]
    else:
        with Parallel(n_jobs=n_outer, backend="threading") as pool:
            results = list(pool(delayed(_one)(r) for r in range(n_repetitions)))
    total = time.perf_counter() - start

    shapes = {shape for _, shape, _ in results}
    if len(shapes) != 1:
        raise ShapeMismatchError(
            f"Repetitions produced covariance tensors of different shapes: "
            f"{sorted(shapes)}."
        )

    return RepetitionReport(
        n_repetitions=n_repetitions,
        shape=tuple(shapes.pop()),  # type: ignore[arg-type]
        backend=engine_name,
        outer_threads=n_outer,
        inner_threads=config.n_threads,
        block_level_parallel=config.block_level_parallel,
        regenerated=bool(getattr(factory, "regenerates", False)),
        total_seconds=total,
        repetition_seconds=np.array([elapsed for _, _, elapsed in results]),
        covariances=[cov for cov, _, _ in results] if keep_results else None,
    )
