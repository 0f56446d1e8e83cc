"""Shared type aliases for the half_sandwich package."""

from collections.abc import Sequence

import numpy as np
import pandas as pd

# Matrix inputs accepted by the public API (pseudoinverse, residuals).
MatrixLike = np.ndarray | pd.DataFrame

# Block assignments: one integer id per observation.
BlockIdsLike = np.ndarray | pd.Series | Sequence[int]
