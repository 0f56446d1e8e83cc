"""Block partition — grouping of observation rows by cluster id.

The sandwich estimator visits every block once per feature.  Looking
up a block's rows by scanning the assignment vector (``block_ids ==
b``) costs O(obs) per block, i.e. O(obs × n_blocks) per feature, which
dominates everything else at realistic sizes (thousands of blocks,
tens of thousands of features).  Instead, the partition is built
**once** as a block-sorted permutation of the row indices:

    order   = rows sorted by (block id, row)           shape (obs,)
    offsets = start of each block inside ``order``     shape (n_blocks,)

so that ``rows(b) == order[offsets[b]:offsets[b + 1]]``.  The layout
is also exactly what :func:`numpy.add.reduceat` and
``jax.ops.segment_sum`` need to sum per-block contributions in a
single vectorised call, which is how the reducer in
:mod:`half_sandwich._backends` consumes it.

Why every block must be non-empty
---------------------------------
An empty block contributes nothing to the estimator, but it signals a
mismatch between ``n_blocks`` and the data (e.g. ids that were not
re-coded after filtering rows).  It also breaks the offsets encoding:
two equal consecutive offsets make ``reduceat`` return a row instead
of an empty sum.  Empty blocks are therefore rejected up front with
:class:`~half_sandwich.exceptions.DegenerateBlockingError`.

A single block is rejected for the same reason: with one cluster the
meat matrix is the outer product of the total score, which is zero for
OLS residuals orthogonal to the design.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._typing import BlockIdsLike
from .exceptions import (
    DegenerateBlockingError,
    InvalidBlockIdError,
    ShapeMismatchError,
)

logger = logging.getLogger(__name__)


def _format_block_ids(ids: np.ndarray, limit: int = 5) -> str:
    """Format a list of block ids for error messages, eliding the tail."""
    shown = ", ".join(str(int(i)) for i in ids[:limit])
    if len(ids) > limit:
        return f"{shown}, ... and {len(ids) - limit} more"
    return shown


@dataclass(frozen=True)
class BlockIndex:
    """Read-only mapping from block id to its observation rows.

    Build with :func:`build_block_index` rather than directly; the
    constructor performs no validation; see :meth:`check`.

    Attributes:
        n_blocks: Number of blocks (clusters).
        n_obs: Number of observations the index was built for.
        order: Row indices sorted by block, ascending within each
            block.  Shape ``(n_obs,)``.
        offsets: Position in ``order`` where each block starts.
            Shape ``(n_blocks,)``, strictly increasing.
    """

    n_blocks: int
    n_obs: int
    order: np.ndarray
    offsets: np.ndarray

    def __len__(self) -> int:
        return self.n_blocks

    @property
    def bounds(self) -> np.ndarray:
        """Block boundaries in ``order``: ``offsets`` followed by ``n_obs``."""
        return np.append(self.offsets, self.n_obs)

    @property
    def sizes(self) -> np.ndarray:
        """Number of observations in each block, shape ``(n_blocks,)``."""
        return np.diff(self.bounds)

    def rows(self, block: int) -> np.ndarray:
        """Ascending observation rows belonging to *block*."""
        if not 0 <= block < self.n_blocks:
            raise IndexError(
                f"block {block} out of range for index with {self.n_blocks} blocks"
            )
        start = self.offsets[block]
        stop = self.offsets[block + 1] if block + 1 < self.n_blocks else self.n_obs
        return self.order[start:stop]

    def check(self, n_obs: int) -> None:
        """Verify the index partitions exactly ``n_obs`` rows.

        A hand-built index skips :func:`build_block_index`, so its
        arrays are checked here before any numeric work is scheduled.

        Raises:
            ShapeMismatchError: If the index was built for another row
                count, a row index falls outside ``[0, n_obs)`` or the
                offsets are not a strictly increasing sequence of
                ``n_blocks`` starts beginning at 0.
        """
        if self.n_obs != n_obs:
            raise ShapeMismatchError(
                f"Block index covers {self.n_obs} observations but resid "
                f"has {n_obs} rows."
            )
        order = np.asarray(self.order)
        offsets = np.asarray(self.offsets)
        if order.shape != (n_obs,):
            raise ShapeMismatchError(
                f"Block index order has shape {order.shape}, expected ({n_obs},)."
            )
        if order.size and (order.min() < 0 or order.max() >= n_obs):
            raise ShapeMismatchError(
                f"Block index refers to rows [{int(order.min())}, "
                f"{int(order.max())}] outside [0, {n_obs})."
            )
        if offsets.shape != (self.n_blocks,):
            raise ShapeMismatchError(
                f"Block index offsets have shape {offsets.shape}, expected "
                f"({self.n_blocks},)."
            )
        if offsets.size and (offsets[0] != 0 or np.any(np.diff(self.bounds) <= 0)):
            raise ShapeMismatchError(
                "Block index offsets must start at 0 and increase strictly "
                f"below {n_obs}."
            )


def build_block_index(
    block_ids: BlockIdsLike,
    n_blocks: int | None = None,
) -> BlockIndex:
    """Group observation rows by block id.

    Args:
        block_ids: One integer block id per observation, values in
            ``[0, n_blocks)``.  Blocks need not be contiguous in row
            order nor equal-sized.
        n_blocks: Total number of blocks.  ``None`` infers
            ``max(block_ids) + 1``.

    Returns:
        A :class:`BlockIndex` whose arrays are marked read-only.

    Raises:
        ShapeMismatchError: If *block_ids* is not one-dimensional.
        InvalidBlockIdError: If an id is not an integer or lies outside
            ``[0, n_blocks)``.
        DegenerateBlockingError: If ``n_blocks < 2`` or any block is
            empty.
    """
    if isinstance(block_ids, pd.Series):
        block_ids = block_ids.to_numpy()
    ids = np.asarray(block_ids)

    if ids.ndim != 1:
        raise ShapeMismatchError(
            f"block_ids must be one-dimensional, got shape {ids.shape}."
        )
    if ids.size and not np.issubdtype(ids.dtype, np.integer):
        raise InvalidBlockIdError(
            f"block_ids must contain integers, got dtype {ids.dtype}.  "
            f"Use factorize_blocks() to encode arbitrary cluster labels."
        )
    ids = ids.astype(np.intp, copy=False)

    if n_blocks is None:
        n_blocks = int(ids.max()) + 1 if ids.size else 0
    n_blocks = int(n_blocks)

    if n_blocks < 2:
        raise DegenerateBlockingError(
            f"Need at least 2 blocks for a cluster-robust covariance, got {n_blocks}."
        )

    bad = np.flatnonzero((ids < 0) | (ids >= n_blocks))
    if bad.size:
        row = int(bad[0])
        raise InvalidBlockIdError(
            f"Block id {int(ids[row])} at row {row} is outside [0, {n_blocks}) "
            f"({bad.size} invalid assignment(s) in total)."
        )

    counts = np.bincount(ids, minlength=n_blocks)
    empty = np.flatnonzero(counts == 0)
    if empty.size:
        raise DegenerateBlockingError(
            f"Every block needs at least one observation; empty block(s): "
            f"{_format_block_ids(empty)}."
        )

    # Stable sort keeps rows ascending inside each block.
    order = np.argsort(ids, kind="stable")
    offsets = np.concatenate(([0], np.cumsum(counts)[:-1])).astype(np.intp)
    order.setflags(write=False)
    offsets.setflags(write=False)

    logger.debug(
        "Built block index: %d observations in %d blocks (sizes %d..%d)",
        ids.size,
        n_blocks,
        counts.min(),
        counts.max(),
    )
    return BlockIndex(
        n_blocks=n_blocks,
        n_obs=int(ids.size),
        order=order,
        offsets=offsets,
    )


def factorize_blocks(labels: BlockIdsLike) -> tuple[np.ndarray, int]:
    """Encode arbitrary cluster labels as contiguous block ids.

    Handles string, categorical, or non-contiguous integer labels by
    mapping them to integers ``0 .. n_blocks - 1`` in order of first
    appearance.

    Args:
        labels: One cluster label per observation.

    Returns:
        ``(block_ids, n_blocks)`` ready for :func:`build_block_index`.

    Raises:
        InvalidBlockIdError: If any label is missing (NaN / None).
    """
    codes, uniques = pd.factorize(np.asarray(labels))
    if (codes < 0).any():
        row = int(np.flatnonzero(codes < 0)[0])
        raise InvalidBlockIdError(f"Missing cluster label at row {row}.")
    return codes.astype(np.intp), len(uniques)
