"""NumPy / joblib backend (always available).

Kernel
~~~~~~
The textbook loop visits every (feature, block) pair::

    for f in features:
        for b in blocks:
            H = P[:, rows(b)] @ E[rows(b), f]     # (pred,)
            cov[:, :, f] += outer(H, H)

which is ``feat × n_blocks`` tiny matrix products, tens of millions of
Python-level calls at realistic sizes.  The kernel here computes the
same sums for a whole *chunk* of features at once:

1. Gather P's columns and E's rows into block-sorted order **once**
   (``order`` from :class:`~half_sandwich.blocks.BlockIndex`), so each
   block occupies a contiguous run of positions.
2. Form the elementwise products ``W[i, r, f] = P[i, r] · E[r, f]``
   for the chunk, shape ``(pred, obs, k)``.
3. Sum each block's run with one ``np.add.reduceat`` call at the block
   offsets.  The result is every half sandwich of the chunk,
   ``H[i, b, f]``, shape ``(pred, n_blocks, k)``.
4. Accumulate ``Σ_b H[:, b, f] H[:, b, f]ᵀ`` for all ``f`` with one
   batched matrix product ``H_f @ H_fᵀ``, a single BLAS-3 call per
   feature slab instead of ``n_blocks`` rank-1 updates.

Step 3 is the reason every block must be non-empty: ``reduceat``
returns an element, not zero, for an empty segment.

Parallelism
~~~~~~~~~~~
Feature chunks are independent and each writes a disjoint slice of the
output tensor, so tasks need no locks.  With ``block_level_parallel``
the block axis is split too; every (feature chunk, block chunk) task
returns a partial tensor and the partials of one feature chunk are
combined with :func:`~half_sandwich.parallel.tree_sum`.

Tasks run on ``joblib.Parallel(backend="threading")``.  Threads rather
than processes avoid pickling the inputs, and the ufunc / BLAS work in
each task releases the GIL.  When a task raises, joblib stops
dispatching the remaining tasks and re-raises that single exception in
the caller; no partial tensor escapes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import numpy as np
from joblib import delayed

from ..blocks import BlockIndex
from ..parallel import (
    ParallelConfig,
    plan_block_chunks,
    plan_feature_chunks,
    tree_sum,
)

logger = logging.getLogger(__name__)


def _chunk_covariance(
    p_sorted: np.ndarray,
    resid: np.ndarray,
    order: np.ndarray,
    bounds: np.ndarray,
    features: tuple[int, int],
    blocks: tuple[int, int],
) -> np.ndarray:
    """Covariance contribution of a range of blocks to a range of features.

    Args:
        p_sorted: Pseudoinverse with columns in block-sorted order
            ``(pred, obs)``.
        resid: Residuals in original row order ``(obs, feat)``.
        order: Block-sorted row permutation.
        bounds: Block boundaries in ``order``, length ``n_blocks + 1``.
        features: Half-open feature range ``(f0, f1)``.
        blocks: Half-open block range ``(b0, b1)``.

    Returns:
        Partial covariance ``(pred, pred, f1 - f0)``.
    """
    f0, f1 = features
    b0, b1 = blocks
    lo, hi = bounds[b0], bounds[b1]
    e_sorted = resid[order[lo:hi], f0:f1]  # (m, k)

    # Elementwise products, then one segmented sum per block.
    weighted = p_sorted[:, lo:hi, np.newaxis] * e_sorted[np.newaxis, :, :]
    half = np.add.reduceat(weighted, bounds[b0:b1] - lo, axis=1)  # (pred, nb, k)

    # Σ_b H Hᵀ for every feature as one batched matmul.
    half = np.moveaxis(half, 2, 0)  # (k, pred, nb)
    cov = half @ np.swapaxes(half, 1, 2)  # (k, pred, pred)
    return np.moveaxis(cov, 0, 2)


@dataclass(frozen=True)
class NumpyBackend:
    """NumPy / joblib compute backend.

    Frozen dataclass with no instance state.  It exists to namespace
    the kernel behind the :class:`BackendProtocol` interface and is
    safe to cache in the module-level ``_BACKEND_CACHE`` singleton.
    """

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return True

    @staticmethod
    def _run(config: ParallelConfig, tasks: Iterable[Any]) -> list[Any]:
        """Execute delayed tasks serially or on a fresh inner pool."""
        if config.n_threads == 1:
            # Serial config: run inline without a pool.
            return [fn(*args, **kwargs) for fn, args, kwargs in tasks]
        with config.make_pool() as pool:
            return list(pool(tasks))

    def half_sandwich_covariance(
        self,
        x_pinv: np.ndarray,
        resid: np.ndarray,
        block_index: BlockIndex,
        config: ParallelConfig,
    ) -> np.ndarray:
        """Cluster-robust covariance via segmented sums and batched matmul.

        Args:
            x_pinv: Pseudoinverse ``(pred, obs)``.
            resid: Residuals ``(obs, feat)``.
            block_index: Partition of the rows into blocks.
            config: Inner-pool configuration.

        Returns:
            Covariance tensor ``(pred, pred, feat)``.
        """
        n_pred = x_pinv.shape[0]
        n_obs, n_feat = resid.shape
        block_index.check(n_obs)
        order = block_index.order
        bounds = block_index.bounds

        # Gathered once and shared read-only by every task.
        p_sorted = np.ascontiguousarray(x_pinv[:, order])

        feature_chunks = plan_feature_chunks(n_feat, n_pred, n_obs, config)
        block_chunks = plan_block_chunks(block_index.n_blocks, config)
        out = np.empty((n_pred, n_pred, n_feat), dtype=np.result_type(x_pinv, resid))

        if len(block_chunks) == 1:
            # Feature-level tasks, each owning a disjoint output slice.
            def _fill(features: tuple[int, int]) -> None:
                start, stop = features
                out[:, :, start:stop] = _chunk_covariance(
                    p_sorted, resid, order, bounds, features, block_chunks[0]
                )

            self._run(config, (delayed(_fill)(fc) for fc in feature_chunks))
            return out

        # Block-level map: one partial tensor per (feature, block) chunk pair.
        logger.debug(
            "Block-level parallel reduction: %d feature chunk(s) x %d block chunk(s)",
            len(feature_chunks),
            len(block_chunks),
        )
        parts = self._run(
            config,
            (
                delayed(_chunk_covariance)(p_sorted, resid, order, bounds, fc, bc)
                for fc in feature_chunks
                for bc in block_chunks
            ),
        )
        n_bc = len(block_chunks)
        for i, (start, stop) in enumerate(feature_chunks):
            out[:, :, start:stop] = tree_sum(parts[i * n_bc : (i + 1) * n_bc])
        return out
