"""Backend abstraction layer for the half-sandwich reduction.

Each backend implements the :class:`BackendProtocol` interface: given a
validated pseudoinverse, residual matrix and :class:`BlockIndex`, return
the ``(pred, pred, feat)`` covariance tensor.  :mod:`half_sandwich.core`
validates inputs once and dispatches to the active backend via
:func:`resolve_backend` instead of branching on the backend at every
call site.

Resolution follows the policy set by :mod:`.._config`:

1. Programmatic override via :func:`~half_sandwich.set_backend`.
2. ``HALF_SANDWICH_BACKEND`` environment variable.
3. Auto-detection: ``"jax"`` if importable, else ``"numpy"``.

When ``"jax"`` is explicitly requested but JAX is not installed, an
:class:`ImportError` is raised; explicit requests are never silently
degraded.  Only the ``"auto"`` policy falls back from JAX to NumPy.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .._config import get_backend
from ..blocks import BlockIndex
from ..parallel import ParallelConfig

# ------------------------------------------------------------------ #
# BackendProtocol
# ------------------------------------------------------------------ #


@runtime_checkable
class BackendProtocol(Protocol):
    """Interface that every compute backend must implement.

    Attributes:
        name: Short identifier (e.g. ``"numpy"``, ``"jax"``).
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

    def half_sandwich_covariance(
        self,
        x_pinv: np.ndarray,
        resid: np.ndarray,
        block_index: BlockIndex,
        config: ParallelConfig,
    ) -> np.ndarray:
        """Cluster-robust covariance for every feature.

        Inputs are already validated and share a floating dtype.

        Args:
            x_pinv: Pseudoinverse of the design matrix ``(pred, obs)``.
            resid: OLS residuals ``(obs, feat)``.
            block_index: Partition of the ``obs`` rows into blocks.
            config: Inner-pool configuration.

        Returns:
            Covariance tensor ``(pred, pred, feat)``; slice ``f`` is
            ``Σ_b H_bf H_bfᵀ`` with ``H_bf = P[:, rows(b)] E[rows(b), f]``.
        """
        ...


# ------------------------------------------------------------------ #
# Backend resolution
# ------------------------------------------------------------------ #

# Backend instances, created once per name.
_BACKEND_CACHE: dict[str, BackendProtocol] = {}


def resolve_backend(name: str | None = None) -> BackendProtocol:
    """Return a :class:`BackendProtocol` instance for *name*.

    When *name* is ``None`` (the default), the policy from
    :func:`~half_sandwich._config.get_backend` is used.

    Args:
        name: ``"numpy"``, ``"jax"``, or ``None`` for policy default.

    Returns:
        A backend instance.

    Raises:
        ImportError: If ``"jax"`` is explicitly requested but JAX
            is not installed.
        ValueError: If *name* is not a recognised backend.
    """
    if name is None:
        name = get_backend()
    name = name.strip().lower()

    if name in _BACKEND_CACHE:
        return _BACKEND_CACHE[name]

    if name == "numpy":
        from ._numpy import NumpyBackend

        backend: BackendProtocol = NumpyBackend()

    elif name == "jax":
        from ._jax import JaxBackend

        jax_backend = JaxBackend()
        if not jax_backend.is_available:
            msg = (
                "Backend 'jax' was explicitly requested but JAX is "
                "not installed.  Install JAX (`pip install jax`) or "
                "use set_backend('numpy')."
            )
            raise ImportError(msg)
        backend = jax_backend

    else:
        msg = f"Unknown backend {name!r}.  Choose 'numpy' or 'jax'."
        raise ValueError(msg)

    _BACKEND_CACHE[name] = backend
    return backend
