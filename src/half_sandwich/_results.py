"""Typed result objects for repeated covariance computations.

Frozen dataclasses that provide:

* **Attribute access** — ``report.total_seconds``, ``report.shape``.
* **Dict-like access** — ``report["backend"]``, ``report.get("key")``,
  ``"key" in report`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python, ready for JSON.

Reports are frozen to communicate that they are a snapshot of a
completed run.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar

import numpy as np

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, tuples, np.ndarray, np.integer, and
    np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test
    """

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"covariances"})

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Large array payloads listed in ``_EXCLUDE_FROM_DICT`` are
        skipped; everything else goes through :func:`_numpy_to_python`.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            result[f.name] = _numpy_to_python(getattr(self, f.name))
        return result


# ------------------------------------------------------------------ #
# Repetition report
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RepetitionReport(_DictAccessMixin):
    """Timing summary of :func:`~half_sandwich.repetitions.run_repetitions`.

    Attributes:
        n_repetitions: Number of covariance computations performed.
        shape: Shape of every covariance tensor, ``(pred, pred, feat)``.
        backend: Backend that performed the reduction.
        outer_threads: Width of the pool running repetitions.
        inner_threads: Width of each repetition's inner pool.
        block_level_parallel: Whether blocks were split across tasks.
        regenerated: Whether the factory declared fresh inputs per
            repetition (its ``regenerates`` attribute; ``False`` for a
            plain callable).
        total_seconds: Wall-clock time of the whole run.
        repetition_seconds: Wall-clock time of each repetition, in
            repetition order, ``(n_repetitions,)``.
        covariances: The tensors, when requested with
            ``keep_results=True``; excluded from :meth:`to_dict`.
    """

    n_repetitions: int
    shape: tuple[int, int, int]
    backend: str
    outer_threads: int
    inner_threads: int
    block_level_parallel: bool
    regenerated: bool
    total_seconds: float
    repetition_seconds: np.ndarray
    covariances: list[np.ndarray] | None = None

    @property
    def seconds_per_repetition(self) -> float:
        """Total wall-clock time divided by the number of repetitions."""
        return self.total_seconds / self.n_repetitions

    @property
    def mean_repetition_seconds(self) -> float:
        """Mean of the per-repetition wall-clock times."""
        return float(np.mean(self.repetition_seconds))
