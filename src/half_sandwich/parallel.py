"""Explicit parallelism configuration and work planning.

Two independent axes of parallelism exist:

1. **Inner** — inside one covariance computation.  Features share only
   read-only inputs and write disjoint slices of the output tensor, so
   the feature axis is split into chunks, one task per chunk, with no
   synchronisation.  Optionally the block axis is split as well
   (``block_level_parallel``): each (feature chunk, block chunk) task
   returns a partial sum and the partials are combined with a pairwise
   tree reduction.  Summation is associative and commutative, so the
   result only differs from the serial one by rounding.

2. **Outer** — across independent repetitions (see
   :mod:`half_sandwich.repetitions`).  Every repetition opens its own
   inner pool.

Both pools are ``joblib.Parallel(backend="threading")`` instances built
per call from the values in :class:`ParallelConfig`.  Nothing here is a
process-wide singleton: an outer pool of width *a* and inner pools of
width *b* are sized independently and deterministically, and callers
are expected to keep ``a × b`` at or below the hardware concurrency
(:func:`plan_nested_parallelism` picks such a split).

Threads rather than processes: the heavy lifting in each task is NumPy
ufunc and BLAS work that releases the GIL, and threads share the
read-only inputs without pickling tens of megabytes per task.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from joblib import Parallel, cpu_count

logger = logging.getLogger(__name__)

_CHUNK_ELEMENT_BUDGET: int = 1 << 22
"""Upper bound on the ``pred × obs × chunk`` scratch array of one task.

The NumPy kernel materialises the elementwise product of the
block-sorted pseudoinverse with a chunk of residual columns before the
segmented sum.  ``2**22`` float64 elements is 32 MiB per task, which
keeps the working set of a handful of threads comfortably in memory
while leaving chunks wide enough for the batched matmul to amortise
its call overhead.
"""


@dataclass(frozen=True)
class ParallelConfig:
    """Per-call configuration of the inner thread pool.

    Attributes:
        inner_threads: Width of the inner pool.  A positive integer,
            or ``-1`` for every CPU reported by :func:`joblib.cpu_count`.
            ``1`` runs serially without starting any thread.
        block_level_parallel: Also split the blocks of each feature
            chunk across tasks (map, then tree-reduce).  Only pays off
            when per-block work is expensive (large ``pred`` or large
            blocks); otherwise task overhead dominates.
        feature_chunk_size: Features per task.  ``None`` derives it
            from the scratch-memory budget and the pool width.
        block_chunk_size: Blocks per task when ``block_level_parallel``
            is set.  ``None`` splits the blocks evenly across the pool.
    """

    inner_threads: int = 1
    block_level_parallel: bool = False
    feature_chunk_size: int | None = None
    block_chunk_size: int | None = None

    def __post_init__(self) -> None:
        if self.inner_threads == 0 or self.inner_threads < -1:
            raise ValueError(
                f"inner_threads must be a positive integer or -1, "
                f"got {self.inner_threads}."
            )
        for name in ("feature_chunk_size", "block_chunk_size"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}.")

    @classmethod
    def serial(cls) -> ParallelConfig:
        """Single-threaded configuration (the default)."""
        return cls(inner_threads=1)

    @property
    def n_threads(self) -> int:
        """Concrete inner pool width with ``-1`` resolved."""
        return resolve_n_threads(self.inner_threads)

    def make_pool(self) -> Parallel:
        """Fresh joblib threading pool of width :attr:`n_threads`."""
        return Parallel(n_jobs=self.n_threads, backend="threading")


def resolve_n_threads(n_threads: int) -> int:
    """Translate the joblib ``-1`` convention into a CPU count."""
    if n_threads == -1:
        return max(1, cpu_count())
    if n_threads < 1:
        raise ValueError(f"Thread count must be >= 1 or -1, got {n_threads}.")
    return n_threads


def plan_nested_parallelism(n_cpus: int | None = None) -> tuple[int, int]:
    """Split the CPUs between an outer and an inner pool.

    Uses one outer thread on machines with fewer than five CPUs and two
    otherwise.  Every outer thread opens an inner pool of its own, so the
    inner width is the CPU count divided by the outer width (at least
    one), keeping ``outer × inner`` within the machine.  More outer
    threads mean more repetitions in flight at once and proportionally
    more memory for their scratch arrays.

    Args:
        n_cpus: CPUs to distribute.  ``None`` uses
            :func:`joblib.cpu_count`.

    Returns:
        ``(outer_threads, inner_threads)``.
    """
    if n_cpus is None:
        n_cpus = cpu_count()
    if n_cpus < 1:
        raise ValueError(f"n_cpus must be >= 1, got {n_cpus}.")
    n_outer = 1 if n_cpus < 5 else 2
    n_inner = max(1, n_cpus // n_outer)
    return n_outer, n_inner


def _even_chunks(n_items: int, chunk_size: int) -> list[tuple[int, int]]:
    """Half-open ``(start, stop)`` ranges covering ``range(n_items)``."""
    return [
        (start, min(start + chunk_size, n_items))
        for start in range(0, n_items, chunk_size)
    ]


def plan_feature_chunks(
    n_feat: int,
    n_pred: int,
    n_obs: int,
    config: ParallelConfig,
) -> list[tuple[int, int]]:
    """Split the feature axis into per-task column ranges.

    Without an explicit ``feature_chunk_size`` the chunk is the widest
    that fits :data:`_CHUNK_ELEMENT_BUDGET`, narrowed so that every
    inner thread receives at least one chunk.
    """
    if config.feature_chunk_size is not None:
        size = config.feature_chunk_size
    else:
        size = max(1, _CHUNK_ELEMENT_BUDGET // max(1, n_pred * n_obs))
        size = min(size, math.ceil(n_feat / config.n_threads))
    chunks = _even_chunks(n_feat, max(1, size))
    logger.debug(
        "Planned %d feature chunk(s) of up to %d feature(s)", len(chunks), size
    )
    return chunks


def plan_block_chunks(n_blocks: int, config: ParallelConfig) -> list[tuple[int, int]]:
    """Split the block axis into ranges of consecutive block ids.

    Returns a single range covering every block unless
    ``block_level_parallel`` is set.
    """
    if not config.block_level_parallel:
        return [(0, n_blocks)]
    if config.block_chunk_size is not None:
        size = config.block_chunk_size
    else:
        size = math.ceil(n_blocks / config.n_threads)
    return _even_chunks(n_blocks, max(1, size))


def tree_sum(parts: list[np.ndarray]) -> np.ndarray:
    """Pairwise (tree) reduction of equally shaped partial sums.

    Combines neighbours level by level, which keeps the rounding error
    of long sums at O(log n) rather than O(n) for a left fold.
    """
    if not parts:
        raise ValueError("tree_sum() needs at least one partial sum.")
    level = list(parts)
    while len(level) > 1:
        paired = [level[i] + level[i + 1] for i in range(0, len(level) - 1, 2)]
        if len(level) % 2:
            paired.append(level[-1])
        level = paired
    return level[0]
