"""half_sandwich — Cluster-robust covariance for massively univariate OLS.

Computes the sandwich covariance ``Σ_b H_bf H_bfᵀ`` of the OLS
coefficients of many response columns ("features") that share one
design matrix, from the design's pseudoinverse, the residual matrix and
a partition of the observations into blocks (clusters).  Per-block
half sandwiches are formed with vectorised segmented sums over a
block-sorted row order, features are split across a joblib thread
pool, and independent repetitions can run on an outer pool of their
own; an optional JAX backend compiles the same reduction with XLA.

Public API:
    .. autosummary::
        compute_covariance
        half_sandwich_covariance
        build_block_index
        factorize_blocks
        BlockIndex
        ParallelConfig
        plan_nested_parallelism
        run_repetitions
        fixed_inputs
        mock_inputs
        SandwichInputs
        RepetitionReport
        BlockSizes
        MockParams
        MockData
        print_mock_summary
        print_repetition_report
        get_backend
        set_backend
        SandwichError
        ShapeMismatchError
        InvalidBlockIdError
        DegenerateBlockingError
        EmptyFeatureSetError
"""

from ._config import get_backend, set_backend
from ._results import RepetitionReport
from .blocks import BlockIndex, build_block_index, factorize_blocks
from .core import compute_covariance, half_sandwich_covariance
from .display import print_mock_summary, print_repetition_report
from .exceptions import (
    DegenerateBlockingError,
    EmptyFeatureSetError,
    InvalidBlockIdError,
    SandwichError,
    ShapeMismatchError,
)
from .mock import BlockSizes, MockData, MockParams
from .parallel import ParallelConfig, plan_nested_parallelism
from .repetitions import SandwichInputs, fixed_inputs, mock_inputs, run_repetitions

__version__ = "0.1.0"

__all__ = [
    "compute_covariance",
    "half_sandwich_covariance",
    "build_block_index",
    "factorize_blocks",
    "BlockIndex",
    "ParallelConfig",
    "plan_nested_parallelism",
    "run_repetitions",
    "fixed_inputs",
    "mock_inputs",
    "SandwichInputs",
    "RepetitionReport",
    "BlockSizes",
    "MockParams",
    "MockData",
    "print_mock_summary",
    "print_repetition_report",
    "get_backend",
    "set_backend",
    "SandwichError",
    "ShapeMismatchError",
    "InvalidBlockIdError",
    "DegenerateBlockingError",
    "EmptyFeatureSetError",
]
