"""Edge-case tests for input validation and boundary conditions.

Covers: the error taxonomy, mismatched dimensions, empty feature sets,
degenerate partitions, minimal problems, and a NaN residual.
"""

import numpy as np
import pytest

from half_sandwich.blocks import BlockIndex, build_block_index
from half_sandwich.core import compute_covariance, half_sandwich_covariance
from half_sandwich.exceptions import (
    DegenerateBlockingError,
    EmptyFeatureSetError,
    InvalidBlockIdError,
    SandwichError,
    ShapeMismatchError,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _inputs(n_obs: int = 12, n_feat: int = 3, n_pred: int = 2, seed: int = 42):
    rng = np.random.default_rng(seed)
    return rng.standard_normal((n_pred, n_obs)), rng.standard_normal((n_obs, n_feat))


# ------------------------------------------------------------------ #
# 1. Error taxonomy
# ------------------------------------------------------------------ #


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc",
        [
            ShapeMismatchError,
            InvalidBlockIdError,
            DegenerateBlockingError,
            EmptyFeatureSetError,
        ],
    )
    def test_subclasses(self, exc):
        assert issubclass(exc, SandwichError)
        assert issubclass(exc, ValueError)


# ------------------------------------------------------------------ #
# 2. Dimension mismatches
# ------------------------------------------------------------------ #


class TestShapeMismatch:
    def test_pinv_columns_vs_resid_rows(self):
        x_pinv, resid = _inputs()
        with pytest.raises(ShapeMismatchError, match="11 observation columns"):
            compute_covariance(x_pinv[:, :11], resid, np.arange(12) % 3)

    def test_block_ids_length(self):
        x_pinv, resid = _inputs()
        with pytest.raises(ShapeMismatchError, match="block_ids has 10 entries"):
            compute_covariance(x_pinv, resid, np.arange(10) % 3)

    def test_index_for_other_problem(self):
        x_pinv, resid = _inputs()
        index = build_block_index(np.arange(20) % 4)
        with pytest.raises(ShapeMismatchError, match="covers 20 observations"):
            half_sandwich_covariance(x_pinv, resid, index)

    def test_three_dimensional_resid(self):
        x_pinv, _ = _inputs()
        with pytest.raises(ShapeMismatchError, match="resid must be a 2-D"):
            compute_covariance(x_pinv, np.zeros((12, 2, 2)), np.arange(12) % 3)

    def test_vector_pinv(self):
        _, resid = _inputs()
        with pytest.raises(ShapeMismatchError, match="x_pinv must be a 2-D"):
            compute_covariance(np.zeros(12), resid, np.arange(12) % 3)

    def test_no_predictors(self):
        _, resid = _inputs()
        with pytest.raises(ShapeMismatchError, match="at least one predictor"):
            compute_covariance(np.zeros((0, 12)), resid, np.arange(12) % 3)

    def test_hand_built_index_row_out_of_bounds(self):
        index = BlockIndex(
            n_blocks=2, n_obs=4, order=np.array([0, 1, 2, 9]), offsets=np.array([0, 2])
        )
        with pytest.raises(ShapeMismatchError, match="outside \\[0, 4\\)"):
            half_sandwich_covariance(
                np.ones((2, 4)), np.ones((4, 1)), index, backend="numpy"
            )

    def test_hand_built_index_negative_row(self):
        index = BlockIndex(
            n_blocks=2, n_obs=4, order=np.array([-1, 1, 2, 3]), offsets=np.array([0, 2])
        )
        with pytest.raises(ShapeMismatchError, match="outside"):
            half_sandwich_covariance(
                np.ones((2, 4)), np.ones((4, 1)), index, backend="numpy"
            )

    @pytest.mark.parametrize(
        "offsets",
        [np.array([0, 2, 3]), np.array([1, 2]), np.array([0, 0]), np.array([0, 4])],
    )
    def test_hand_built_index_bad_offsets(self, offsets):
        index = BlockIndex(n_blocks=2, n_obs=4, order=np.arange(4), offsets=offsets)
        with pytest.raises(ShapeMismatchError, match="offsets"):
            half_sandwich_covariance(
                np.ones((2, 4)), np.ones((4, 1)), index, backend="numpy"
            )


# ------------------------------------------------------------------ #
# 3. Empty features and degenerate partitions
# ------------------------------------------------------------------ #


class TestDegenerateInputs:
    def test_zero_features(self):
        x_pinv, _ = _inputs()
        with pytest.raises(EmptyFeatureSetError, match="at least one feature"):
            compute_covariance(x_pinv, np.zeros((12, 0)), np.arange(12) % 3)

    def test_single_block(self):
        x_pinv, resid = _inputs()
        with pytest.raises(DegenerateBlockingError, match="at least 2 blocks"):
            compute_covariance(x_pinv, resid, np.zeros(12, dtype=int))

    def test_declared_blocks_left_empty(self):
        x_pinv, resid = _inputs()
        with pytest.raises(DegenerateBlockingError, match="empty block"):
            compute_covariance(x_pinv, resid, np.arange(12) % 3, n_blocks=5)

    def test_id_beyond_declared_count(self):
        x_pinv, resid = _inputs()
        with pytest.raises(InvalidBlockIdError, match="outside"):
            compute_covariance(x_pinv, resid, np.arange(12) % 4, n_blocks=3)


# ------------------------------------------------------------------ #
# 4. Minimal problems
# ------------------------------------------------------------------ #


class TestMinimalProblems:
    def test_two_observations_two_blocks(self):
        cov = compute_covariance([[1.0, 2.0]], [[3.0], [4.0]], [0, 1], backend="numpy")
        # H_0 = 3, H_1 = 8
        np.testing.assert_allclose(cov, [[[73.0]]])

    def test_single_predictor_single_feature(self):
        x_pinv, resid = _inputs(n_pred=1, n_feat=1)
        cov = compute_covariance(x_pinv, resid, np.arange(12) % 4, backend="numpy")
        assert cov.shape == (1, 1, 1)
        assert cov[0, 0, 0] >= 0.0

    def test_more_predictors_than_blocks(self):
        # Rank-deficient but still symmetric and PSD.
        x_pinv, resid = _inputs(n_pred=5, n_feat=2)
        cov = compute_covariance(x_pinv, resid, np.arange(12) % 2, backend="numpy")
        for f in range(2):
            assert np.linalg.matrix_rank(cov[:, :, f]) <= 2
            assert np.linalg.eigvalsh(cov[:, :, f]).min() >= -1e-10


# ------------------------------------------------------------------ #
# 5. Non-finite values
# ------------------------------------------------------------------ #


class TestNonFinite:
    def test_nan_confined_to_its_feature(self):
        x_pinv, resid = _inputs()
        resid[0, 1] = np.nan
        cov = compute_covariance(x_pinv, resid, np.arange(12) % 3, backend="numpy")
        assert np.isnan(cov[:, :, 1]).all()
        assert np.isfinite(cov[:, :, [0, 2]]).all()
