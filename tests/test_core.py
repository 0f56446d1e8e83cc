"""Tests for the covariance entry points in half_sandwich.core.

Covers: the reference loop definition, a hand-computed example,
symmetry and positive semi-definiteness, invariance under row
permutation, block merging, the heteroskedasticity-robust limit of
singleton blocks, agreement with statsmodels' cluster covariance, and
input coercion (pandas, integer and float32 inputs).
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from half_sandwich.blocks import build_block_index
from half_sandwich.core import compute_covariance, half_sandwich_covariance
from half_sandwich.parallel import ParallelConfig

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _naive_covariance(
    x_pinv: np.ndarray, resid: np.ndarray, block_ids: np.ndarray, n_blocks: int
) -> np.ndarray:
    """Literal double loop over features and blocks."""
    n_pred = x_pinv.shape[0]
    n_feat = resid.shape[1]
    cov = np.zeros((n_pred, n_pred, n_feat))
    for f in range(n_feat):
        for b in range(n_blocks):
            rows = np.flatnonzero(block_ids == b)
            half = x_pinv[:, rows] @ resid[rows, f]
            cov[:, :, f] += np.outer(half, half)
    return cov


def _random_problem(
    n_obs: int = 60,
    n_feat: int = 7,
    n_pred: int = 3,
    n_blocks: int = 12,
    seed: int = 42,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    x_pinv = rng.standard_normal((n_pred, n_obs))
    resid = rng.standard_normal((n_obs, n_feat))
    # Every block non-empty, rows scattered.
    block_ids = rng.permutation(np.arange(n_obs) % n_blocks)
    return x_pinv, resid, block_ids


@pytest.fixture
def problem():
    return _random_problem()


# ------------------------------------------------------------------ #
# 1. Definition
# ------------------------------------------------------------------ #


class TestDefinition:
    def test_matches_reference_loop(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(x_pinv, resid, block_ids, 12, backend="numpy")
        expected = _naive_covariance(x_pinv, resid, block_ids, 12)
        np.testing.assert_allclose(cov, expected, rtol=1e-10, atol=1e-12)

    def test_output_shape(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        assert cov.shape == (3, 3, 7)
        assert cov.dtype == np.float64

    def test_hand_computed_example(self):
        x_pinv = np.array([[1.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 1.0]])
        resid = np.array([[1.0], [2.0], [3.0], [4.0]])
        cov = compute_covariance(x_pinv, resid, [0, 0, 1, 1], 2, backend="numpy")
        # H_0 = (1, 2), H_1 = (3, 4)
        np.testing.assert_allclose(cov[:, :, 0], [[10.0, 14.0], [14.0, 20.0]])

    def test_prebuilt_index_matches_raw_ids(self, problem):
        x_pinv, resid, block_ids = problem
        index = build_block_index(block_ids, 12)
        np.testing.assert_array_equal(
            half_sandwich_covariance(x_pinv, resid, index, backend="numpy"),
            compute_covariance(x_pinv, resid, block_ids, 12, backend="numpy"),
        )

    def test_inputs_not_modified(self, problem):
        x_pinv, resid, block_ids = problem
        copies = (x_pinv.copy(), resid.copy(), block_ids.copy())
        compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        for before, after in zip(copies, (x_pinv, resid, block_ids)):
            np.testing.assert_array_equal(before, after)

    def test_one_dimensional_resid_is_single_feature(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(x_pinv, resid[:, 2], block_ids, backend="numpy")
        full = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        assert cov.shape == (3, 3, 1)
        np.testing.assert_allclose(cov[:, :, 0], full[:, :, 2])


# ------------------------------------------------------------------ #
# 2. Algebraic properties
# ------------------------------------------------------------------ #


class TestProperties:
    def test_slices_symmetric(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        np.testing.assert_allclose(cov, np.swapaxes(cov, 0, 1), atol=1e-12)

    def test_slices_positive_semidefinite(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        for f in range(cov.shape[2]):
            eigvals = np.linalg.eigvalsh(cov[:, :, f])
            assert eigvals.min() >= -1e-10

    def test_invariant_to_row_permutation(self, problem):
        x_pinv, resid, block_ids = problem
        perm = np.random.default_rng(7).permutation(resid.shape[0])
        cov = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        permuted = compute_covariance(
            x_pinv[:, perm], resid[perm], block_ids[perm], backend="numpy"
        )
        np.testing.assert_allclose(cov, permuted, rtol=1e-10, atol=1e-12)

    def test_invariant_to_block_relabelling(self, problem):
        x_pinv, resid, block_ids = problem
        relabel = np.random.default_rng(3).permutation(12)
        np.testing.assert_allclose(
            compute_covariance(x_pinv, resid, block_ids, backend="numpy"),
            compute_covariance(x_pinv, resid, relabel[block_ids], backend="numpy"),
            rtol=1e-10,
            atol=1e-12,
        )

    def test_merging_blocks_adds_cross_terms(self, problem):
        # Merging blocks 0 and 1 adds H_0 H_1ᵀ + H_1 H_0ᵀ to every slice.
        x_pinv, resid, block_ids = problem
        merged = np.where(block_ids == 1, 0, block_ids)
        merged = np.where(merged > 1, merged - 1, merged)

        split = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        joined = compute_covariance(x_pinv, resid, merged, 11, backend="numpy")

        rows0 = block_ids == 0
        rows1 = block_ids == 1
        h0 = x_pinv[:, rows0] @ resid[rows0]  # (pred, feat)
        h1 = x_pinv[:, rows1] @ resid[rows1]
        cross = np.einsum("if,jf->ijf", h0, h1)
        np.testing.assert_allclose(
            joined, split + cross + np.swapaxes(cross, 0, 1), rtol=1e-10, atol=1e-12
        )

    def test_merging_identical_blocks_doubles_their_share(self):
        # Blocks 0 and 1 both have H = (1, 2); block 2 has H = (3, 0).
        x_pinv = np.array(
            [[1.0, 0.0, 1.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 1.0, 0.0, 1.0]]
        )
        resid = np.array([[1.0], [2.0], [1.0], [2.0], [3.0], [0.0]])
        split = compute_covariance(x_pinv, resid, [0, 0, 1, 1, 2, 2], backend="numpy")
        merged = compute_covariance(x_pinv, resid, [0, 0, 0, 0, 1, 1], backend="numpy")
        # 2 hhᵀ + [[9, 0], [0, 0]]  versus  (2h)(2h)ᵀ + [[9, 0], [0, 0]]
        np.testing.assert_allclose(split[:, :, 0], [[11.0, 4.0], [4.0, 8.0]])
        np.testing.assert_allclose(merged[:, :, 0], [[13.0, 8.0], [8.0, 16.0]])

    def test_zero_residual_feature_gives_zero_slice(self, problem):
        x_pinv, resid, block_ids = problem
        resid = resid.copy()
        resid[:, 4] = 0.0
        cov = compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        np.testing.assert_array_equal(cov[:, :, 4], 0.0)

    def test_singleton_blocks_give_hc0(self):
        # One observation per block: Σ_f = P diag(e_f²) Pᵀ.
        x_pinv, resid, _ = _random_problem(n_obs=25, n_feat=3, n_blocks=25)
        cov = compute_covariance(x_pinv, resid, np.arange(25), backend="numpy")
        for f in range(3):
            expected = (x_pinv * resid[:, f] ** 2) @ x_pinv.T
            np.testing.assert_allclose(cov[:, :, f], expected, rtol=1e-10)

    def test_block_sizes_may_differ(self):
        rng = np.random.default_rng(0)
        block_ids = np.repeat(np.arange(4), [1, 5, 2, 12])
        x_pinv = rng.standard_normal((2, 20))
        resid = rng.standard_normal((20, 3))
        np.testing.assert_allclose(
            compute_covariance(x_pinv, resid, block_ids, backend="numpy"),
            _naive_covariance(x_pinv, resid, block_ids, 4),
            rtol=1e-10,
        )


# ------------------------------------------------------------------ #
# 3. Agreement with statsmodels
# ------------------------------------------------------------------ #


class TestStatsmodelsAgreement:
    """The raw sandwich equals statsmodels' uncorrected cluster covariance."""

    @pytest.fixture
    def ols_fits(self):
        sm = pytest.importorskip("statsmodels.api")
        rng = np.random.default_rng(42)
        n, n_blocks = 90, 15
        X = sm.add_constant(rng.standard_normal((n, 2)))
        groups = rng.permutation(np.arange(n) % n_blocks)
        # Cluster-correlated errors.
        block_effects = rng.standard_normal((n_blocks, 4))
        Y = X @ rng.standard_normal((3, 4)) + block_effects[groups]
        Y += rng.standard_normal((n, 4))
        fits = [sm.OLS(Y[:, f], X).fit() for f in range(Y.shape[1])]
        x_pinv = np.linalg.pinv(X)
        resid = np.column_stack([fit.resid for fit in fits])
        return fits, x_pinv, resid, groups

    def test_matches_cov_cluster(self, ols_fits):
        from statsmodels.stats.sandwich_covariance import cov_cluster

        fits, x_pinv, resid, groups = ols_fits
        cov = compute_covariance(x_pinv, resid, groups, backend="numpy")
        for f, fit in enumerate(fits):
            expected = cov_cluster(fit, groups, use_correction=False)
            np.testing.assert_allclose(cov[:, :, f], expected, rtol=1e-8, atol=1e-12)

    def test_singleton_blocks_match_cov_hc0(self, ols_fits):
        from statsmodels.stats.sandwich_covariance import cov_hc0

        fits, x_pinv, resid, _ = ols_fits
        cov = compute_covariance(
            x_pinv, resid, np.arange(resid.shape[0]), backend="numpy"
        )
        for f, fit in enumerate(fits):
            np.testing.assert_allclose(
                cov[:, :, f], cov_hc0(fit), rtol=1e-8, atol=1e-12
            )


# ------------------------------------------------------------------ #
# 4. Input coercion
# ------------------------------------------------------------------ #


class TestInputCoercion:
    def test_pandas_inputs(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(
            pd.DataFrame(x_pinv),
            pd.DataFrame(resid, columns=[f"f{i}" for i in range(7)]),
            pd.Series(block_ids),
            backend="numpy",
        )
        np.testing.assert_allclose(
            cov, compute_covariance(x_pinv, resid, block_ids, backend="numpy")
        )

    def test_integer_inputs_promoted(self):
        x_pinv = np.array([[1, 0, 1, 0], [0, 1, 0, 1]])
        resid = np.array([[1], [2], [3], [4]])
        cov = compute_covariance(x_pinv, resid, [0, 0, 1, 1], backend="numpy")
        assert cov.dtype == np.float64
        np.testing.assert_array_equal(cov[:, :, 0], [[10, 14], [14, 20]])

    def test_float32_preserved(self, problem):
        x_pinv, resid, block_ids = problem
        cov = compute_covariance(
            x_pinv.astype(np.float32),
            resid.astype(np.float32),
            block_ids,
            backend="numpy",
        )
        assert cov.dtype == np.float32
        np.testing.assert_allclose(
            cov,
            compute_covariance(x_pinv, resid, block_ids, backend="numpy"),
            rtol=1e-4,
            atol=1e-4,
        )

    def test_complex_input_rejected(self, problem):
        x_pinv, resid, block_ids = problem
        with pytest.raises(TypeError, match="real-valued"):
            compute_covariance(
                x_pinv.astype(complex), resid, block_ids, backend="numpy"
            )

    def test_string_input_rejected(self):
        with pytest.raises(TypeError, match="numeric"):
            compute_covariance(
                np.array([["a", "b"]]), np.ones((2, 1)), [0, 1], backend="numpy"
            )

    def test_parallel_config_passed_through(self, problem):
        x_pinv, resid, block_ids = problem
        config = ParallelConfig(inner_threads=3, feature_chunk_size=2)
        np.testing.assert_allclose(
            compute_covariance(
                x_pinv, resid, block_ids, parallelism=config, backend="numpy"
            ),
            compute_covariance(x_pinv, resid, block_ids, backend="numpy"),
            rtol=1e-12,
        )
