"""Cluster-robust (sandwich) covariance for massively univariate OLS.

For a design matrix ``X`` shared by many response columns ("features"),
OLS gives ``β̂_f = P y_f`` with ``P = pinv(X)`` of shape ``(pred, obs)``,
and residuals ``E[:, f]``.  With observations partitioned into blocks
(clusters) whose errors may be correlated, the cluster-robust
covariance of ``β̂_f`` is the sandwich

    Σ_f = P · blockdiag(e_b e_bᵀ) · Pᵀ
        = Σ_b (P[:, rows(b)] e_b)(P[:, rows(b)] e_b)ᵀ
        = Σ_b H_bf H_bfᵀ

where ``H_bf = P[:, rows(b)] · E[rows(b), f]`` is the ``(pred,)``
*half sandwich* of block ``b``.  Working with half sandwiches avoids
ever forming the ``(obs, obs)`` block-diagonal residual covariance.
Every slice ``Σ_f`` is a sum of outer products, hence symmetric and
positive semi-definite.

No small-sample correction is applied: the tensor is the raw sum, the
``G / (G - 1)`` style factors belong to the downstream inference step.

Entry points:

* :func:`compute_covariance` — takes the raw block assignment and
  builds the partition itself.
* :func:`half_sandwich_covariance` — takes a prebuilt
  :class:`~half_sandwich.blocks.BlockIndex`, so repeated computations
  over the same partition skip the bucketing pass.

Both validate every shape before any work is scheduled and either
return a complete tensor or raise; there is no partial result.
"""

from __future__ import annotations

import logging
import time

import numpy as np
import pandas as pd

from ._backends import resolve_backend
from ._typing import BlockIdsLike, MatrixLike
from .blocks import BlockIndex, build_block_index
from .exceptions import EmptyFeatureSetError, ShapeMismatchError
from .parallel import ParallelConfig

logger = logging.getLogger(__name__)


def _as_float_matrix(values: MatrixLike, name: str) -> np.ndarray:
    """Coerce *values* to a real floating-point ndarray.

    Floating inputs keep their dtype; integer and boolean inputs are
    promoted to ``float64``.

    Raises:
        TypeError: For complex or non-numeric input.
    """
    if isinstance(values, (pd.DataFrame, pd.Series)):
        values = values.to_numpy()
    arr = np.asarray(values)
    if np.issubdtype(arr.dtype, np.complexfloating):
        raise TypeError(f"'{name}' must be real-valued, got dtype {arr.dtype}.")
    if np.issubdtype(arr.dtype, np.floating):
        return arr
    if np.issubdtype(arr.dtype, np.integer) or arr.dtype == np.bool_:
        return arr.astype(np.float64)
    raise TypeError(f"'{name}' must be numeric, got dtype {arr.dtype}.")


def _validate_inputs(
    x_pinv: MatrixLike,
    resid: MatrixLike,
) -> tuple[np.ndarray, np.ndarray]:
    """Check the pseudoinverse and residuals against each other.

    A one-dimensional residual vector is treated as a single feature.

    Returns:
        ``(x_pinv, resid)`` as 2-D arrays in a common floating dtype.

    Raises:
        ShapeMismatchError: If the arrays are not 2-D, ``x_pinv`` has no
            rows, or ``x_pinv`` has a different number of columns than
            ``resid`` has rows.
        EmptyFeatureSetError: If ``resid`` has no columns.
    """
    p = _as_float_matrix(x_pinv, "x_pinv")
    e = _as_float_matrix(resid, "resid")

    if p.ndim != 2:
        raise ShapeMismatchError(
            f"x_pinv must be a 2-D (pred, obs) matrix, got shape {p.shape}."
        )
    if e.ndim == 1:
        e = e[:, np.newaxis]
    if e.ndim != 2:
        raise ShapeMismatchError(
            f"resid must be a 2-D (obs, feat) matrix, got shape {e.shape}."
        )
    if p.shape[0] == 0:
        raise ShapeMismatchError("x_pinv must have at least one predictor row.")
    if p.shape[1] != e.shape[0]:
        raise ShapeMismatchError(
            f"x_pinv has {p.shape[1]} observation columns but resid has "
            f"{e.shape[0]} rows."
        )
    if e.shape[1] == 0:
        raise EmptyFeatureSetError("resid must have at least one feature column.")

    dtype = np.result_type(p, e)
    return p.astype(dtype, copy=False), e.astype(dtype, copy=False)


def half_sandwich_covariance(
    x_pinv: MatrixLike,
    resid: MatrixLike,
    block_index: BlockIndex,
    parallelism: ParallelConfig | None = None,
    *,
    backend: str | None = None,
) -> np.ndarray:
    """Cluster-robust covariance over a prebuilt block partition.

    Args:
        x_pinv: Pseudoinverse of the design matrix, ``(pred, obs)``.
        resid: OLS residuals, ``(obs, feat)``; one column per feature.
            A ``pandas.DataFrame`` is accepted.
        block_index: Partition of the ``obs`` rows, from
            :func:`~half_sandwich.blocks.build_block_index`.
        parallelism: Inner-pool configuration.  ``None`` runs serially.
        backend: ``"numpy"``, ``"jax"`` or ``None`` for the configured
            policy (see :func:`~half_sandwich.set_backend`).

    Returns:
        Covariance tensor of shape ``(pred, pred, feat)``.

    Raises:
        ShapeMismatchError: If the dimensions of *x_pinv*, *resid* and
            *block_index* disagree.
        EmptyFeatureSetError: If *resid* has no columns.
    """
    p, e = _validate_inputs(x_pinv, resid)
    block_index.check(e.shape[0])
    config = parallelism if parallelism is not None else ParallelConfig.serial()
    engine = resolve_backend(backend)

    logger.debug(
        "Computing covariance: pred=%d obs=%d feat=%d blocks=%d backend=%s "
        "threads=%d block_level=%s",
        p.shape[0],
        p.shape[1],
        e.shape[1],
        block_index.n_blocks,
        engine.name,
        config.n_threads,
        config.block_level_parallel,
    )
    start = time.perf_counter()
    cov = engine.half_sandwich_covariance(p, e, block_index, config)
    logger.debug("Covariance finished in %.3fs", time.perf_counter() - start)
    return cov


def compute_covariance(
    x_pinv: MatrixLike,
    resid: MatrixLike,
    block_ids: BlockIdsLike,
    n_blocks: int | None = None,
    parallelism: ParallelConfig | None = None,
    *,
    backend: str | None = None,
) -> np.ndarray:
    """Cluster-robust covariance of OLS coefficients for every feature.

    Slice ``f`` of the result is ``Σ_b H_bf H_bfᵀ`` with
    ``H_bf = x_pinv[:, rows(b)] @ resid[rows(b), f]``.

    Args:
        x_pinv: Pseudoinverse of the design matrix, ``(pred, obs)``.
        resid: OLS residuals, ``(obs, feat)``.
        block_ids: Block id of every observation, values in
            ``[0, n_blocks)``.
        n_blocks: Number of blocks; ``None`` infers ``max + 1``.
        parallelism: Inner-pool configuration.  ``None`` runs serially.
        backend: ``"numpy"``, ``"jax"`` or ``None`` for the configured
            policy.

    Returns:
        Covariance tensor of shape ``(pred, pred, feat)``.

    Raises:
        ShapeMismatchError: If the dimensions of the inputs disagree.
        EmptyFeatureSetError: If *resid* has no columns.
        InvalidBlockIdError: If a block id is outside ``[0, n_blocks)``.
        DegenerateBlockingError: If ``n_blocks < 2`` or a block is empty.

    Examples:
        >>> import numpy as np
        >>> x_pinv = np.array([[1.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 1.0]])
        >>> resid = np.array([[1.0], [2.0], [3.0], [4.0]])
        >>> cov = compute_covariance(x_pinv, resid, [0, 0, 1, 1], 2)
        >>> cov[:, :, 0]
        array([[10., 14.],
               [14., 20.]])
    """
    p, e = _validate_inputs(x_pinv, resid)
    if isinstance(block_ids, pd.Series):
        block_ids = block_ids.to_numpy()
    ids = np.asarray(block_ids)
    if ids.ndim == 1 and ids.shape[0] != e.shape[0]:
        raise ShapeMismatchError(
            f"block_ids has {ids.shape[0]} entries but resid has {e.shape[0]} rows."
        )
    block_index = build_block_index(ids, n_blocks)
    return half_sandwich_covariance(
        p, e, block_index, parallelism, backend=backend
    )
