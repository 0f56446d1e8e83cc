"""JAX-accelerated backend for the half-sandwich reduction.

Computes the same per-block sums as the NumPy kernel but lets XLA fuse
the elementwise product, the segmented sum and the batched outer
products into one compiled program::

    W = P_sorted[:, :, None] * E_sorted[None, :, :]   # (pred, obs, k)
    H = segment_sum(W over obs, block_of_position)    # (n_blocks, pred, k)
    Σ = einsum("bik,bjk->ijk", H, H)                  # (pred, pred, k)

``jax.ops.segment_sum`` needs a static segment count, so the compiled
kernel is specialised on ``n_blocks``; a new partition size triggers
one recompilation, repeated calls with the same partition reuse it.

NumPy ↔ JAX boundary convention
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The public method accepts NumPy arrays and returns a NumPy array.
Inputs are materialised with ``jnp.asarray`` (the dtype of the inputs
is kept; 64-bit mode is enabled at import so float64 stays float64),
and the result is brought back with ``np.asarray``.

Parallelism
~~~~~~~~~~~
XLA parallelises the compiled kernel itself, so the joblib settings of
:class:`~half_sandwich.parallel.ParallelConfig` do not apply.  The
feature axis is still processed in chunks to bound the ``(pred, obs,
k)`` intermediate.

Graceful degradation
~~~~~~~~~~~~~~~~~~~~
If JAX is not installed, :class:`JaxBackend` can still be instantiated
(for introspection) but ``is_available`` returns ``False`` and
:func:`~half_sandwich._backends.resolve_backend` raises ``ImportError``
when this backend is explicitly requested.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from functools import partial

import numpy as np

from ..blocks import BlockIndex
from ..parallel import ParallelConfig, plan_feature_chunks

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Optional JAX import
# ------------------------------------------------------------------ #

try:
    import jax

    # Enable 64-bit floating point before any array creation; sums over
    # thousands of blocks need double precision.
    jax.config.update("jax_enable_x64", True)

    import jax.numpy as jnp
    from jax import jit

    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


if _CAN_IMPORT_JAX:

    @partial(jit, static_argnames=("num_segments",))
    def _chunk_covariance_jax(
        p_sorted: jax.Array,
        e_sorted: jax.Array,
        segment_ids: jax.Array,
        num_segments: int,
    ) -> jax.Array:
        """Covariance of one feature chunk, ``(pred, pred, k)``."""
        weighted = p_sorted[:, :, None] * e_sorted[None, :, :]  # (pred, obs, k)
        half = jax.ops.segment_sum(
            jnp.moveaxis(weighted, 1, 0),
            segment_ids,
            num_segments=num_segments,
            indices_are_sorted=True,
        )  # (n_blocks, pred, k)
        return jnp.einsum("bik,bjk->ijk", half, half)


@dataclass(frozen=True)
class JaxBackend:
    """JAX compute backend (``segment_sum`` under ``jit``)."""

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:
        return _CAN_IMPORT_JAX

    def half_sandwich_covariance(
        self,
        x_pinv: np.ndarray,
        resid: np.ndarray,
        block_index: BlockIndex,
        config: ParallelConfig,
    ) -> np.ndarray:
        """Cluster-robust covariance via JIT-compiled segmented sums.

        Args:
            x_pinv: Pseudoinverse ``(pred, obs)``.
            resid: Residuals ``(obs, feat)``.
            block_index: Partition of the rows into blocks.
            config: Only ``feature_chunk_size`` is honoured.

        Returns:
            Covariance tensor ``(pred, pred, feat)``.
        """
        if config.inner_threads != 1 or config.block_level_parallel:
            warnings.warn(
                "inner_threads and block_level_parallel are ignored when the "
                "JAX backend is active because XLA parallelises the compiled "
                "kernel itself.",
                UserWarning,
                stacklevel=3,
            )

        n_pred = x_pinv.shape[0]
        n_obs, n_feat = resid.shape
        order = block_index.order

        p_sorted = jnp.asarray(x_pinv[:, order])
        e_sorted = resid[order]
        segment_ids = jnp.asarray(
            np.repeat(np.arange(block_index.n_blocks), block_index.sizes)
        )

        # Chunk sizing ignores the thread count; XLA owns the parallelism.
        chunks = plan_feature_chunks(
            n_feat,
            n_pred,
            n_obs,
            ParallelConfig(feature_chunk_size=config.feature_chunk_size),
        )
        out = np.empty((n_pred, n_pred, n_feat), dtype=np.result_type(x_pinv, resid))
        for start, stop in chunks:
            out[:, :, start:stop] = np.asarray(
                _chunk_covariance_jax(
                    p_sorted,
                    jnp.asarray(e_sorted[:, start:stop]),
                    segment_ids,
                    num_segments=block_index.n_blocks,
                )
            )
        logger.debug("JAX reduction finished in %d chunk(s)", len(chunks))
        return out
