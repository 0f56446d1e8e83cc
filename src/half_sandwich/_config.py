"""Backend selection for the half-sandwich reduction.

Two kernels compute the same tensor:

``"numpy"``
    Block-sorted gather, ``np.add.reduceat`` segmented sums and a
    batched matmul per feature chunk.  Chunks run on a joblib
    threading pool sized by
    :class:`~half_sandwich.parallel.ParallelConfig`, optionally with
    the block axis split too.

``"jax"``
    ``jax.ops.segment_sum`` and ``einsum`` under ``jit`` with 64-bit
    mode enabled.  XLA schedules its own threads, so the inner-pool
    width and block-level splitting are ignored; only
    ``feature_chunk_size`` bounds memory.

The active kernel is the first of:
    1. a name passed to :func:`set_backend` (``"auto"`` clears it),
    2. the ``HALF_SANDWICH_BACKEND`` environment variable,
    3. ``"jax"`` when JAX imports, otherwise ``"numpy"``.

Names are case-insensitive.  Pool widths are not global state: they
travel with each call so nested outer/inner pools can be sized
independently.

Examples:
    Pin the NumPy kernel from the shell::

        export HALF_SANDWICH_BACKEND=numpy

    or from Python::

        import half_sandwich
        half_sandwich.set_backend("numpy")
        ...
        half_sandwich.set_backend("auto")
"""

from __future__ import annotations

import os
import warnings

ENV_VAR = "HALF_SANDWICH_BACKEND"

KERNELS = ("jax", "numpy")
_VALID_BACKENDS = {*KERNELS, "auto"}

# None (or "auto") means no programmatic choice.
_backend_override: str | None = None


def _jax_is_available() -> bool:
    """Return ``True`` if JAX can be imported."""
    try:
        import jax  # noqa: F401

        return True
    except ImportError:
        return False


def _from_env() -> str | None:
    """Kernel named by ``HALF_SANDWICH_BACKEND``, or ``None`` if unset."""
    raw = os.environ.get(ENV_VAR, "")
    name = raw.strip().lower()
    if not name or name == "auto":
        return None
    if name not in KERNELS:
        warnings.warn(
            f"Ignoring {ENV_VAR}={raw!r}; expected one of {list(KERNELS)}.",
            UserWarning,
            stacklevel=3,
        )
        return None
    return name


def get_backend() -> str:
    """Return the kernel the next call will use: ``"jax"`` or ``"numpy"``.

    An unrecognised ``HALF_SANDWICH_BACKEND`` value is ignored with a
    :class:`UserWarning` and auto-detection applies.
    """
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override
    return _from_env() or ("jax" if _jax_is_available() else "numpy")


def set_backend(name: str) -> None:
    """Pin the kernel for subsequent calls.

    Args:
        name: ``"jax"``, ``"numpy"`` or ``"auto"`` (case-insensitive).
            ``"auto"`` hands the choice back to the environment
            variable and auto-detection.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised
