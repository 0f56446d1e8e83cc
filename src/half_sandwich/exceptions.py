"""Exception hierarchy for the half_sandwich package.

Every failure of the covariance computation is a deterministic function
of its inputs, so nothing here is retried.  All classes derive from
:class:`SandwichError`, which is itself a :class:`ValueError`, so callers
that already guard numeric code with ``except ValueError`` keep working.

Taxonomy::

    SandwichError (ValueError)
    ├── ShapeMismatchError       P / E / BlockIndex dimensions disagree
    ├── InvalidBlockIdError      block id outside [0, n_blocks)
    ├── DegenerateBlockingError  n_blocks < 2 or an empty block
    └── EmptyFeatureSetError     residual matrix has no columns
"""

from __future__ import annotations


class SandwichError(ValueError):
    """Base class for malformed inputs to the sandwich estimator."""


class ShapeMismatchError(SandwichError):
    """Dimensions of the pseudoinverse, residuals, or block index disagree."""


class InvalidBlockIdError(SandwichError):
    """A block assignment lies outside ``[0, n_blocks)`` or is not an integer."""


class DegenerateBlockingError(SandwichError):
    """Fewer than two blocks, or a block with no observations."""


class EmptyFeatureSetError(SandwichError):
    """The residual matrix has zero feature columns."""
