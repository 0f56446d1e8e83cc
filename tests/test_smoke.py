"""Large-size smoke tests for regression detection.

These tests verify that the covariance kernel completes within a
reasonable time bound at realistic sizes (8192 observations, around a
thousand blocks).  They catch accidental per-block Python loops,
quadratic block lookups, and memory blowouts in the chunk planner.

All tests are marked ``@pytest.mark.slow`` and excluded from the
default ``pytest`` run.  Run them explicitly::

    pytest -m slow
"""

from __future__ import annotations

import time

import numpy as np
import pytest

from half_sandwich.core import half_sandwich_covariance
from half_sandwich.mock import MockData, MockParams
from half_sandwich.parallel import ParallelConfig
from half_sandwich.repetitions import fixed_inputs, run_repetitions

SEED = 42
PARAMS = MockParams(n_obs=8192, n_feat=2000, n_pred=8)


@pytest.fixture(scope="module")
def large_data():
    return MockData.from_params(PARAMS, random_state=SEED)


@pytest.mark.slow
class TestLargeProblem:
    def test_serial_completes(self, large_data):
        index = large_data.block_index()
        start = time.perf_counter()
        cov = half_sandwich_covariance(
            large_data.x_pinv, large_data.resid, index, backend="numpy"
        )
        elapsed = time.perf_counter() - start
        assert cov.shape == (8, 8, 2000)
        assert np.isfinite(cov).all()
        assert elapsed < 60.0

    def test_threaded_matches_serial(self, large_data):
        index = large_data.block_index()
        serial = half_sandwich_covariance(
            large_data.x_pinv, large_data.resid, index, backend="numpy"
        )
        threaded = half_sandwich_covariance(
            large_data.x_pinv,
            large_data.resid,
            index,
            ParallelConfig(inner_threads=-1, block_level_parallel=True),
            backend="numpy",
        )
        np.testing.assert_allclose(threaded, serial, rtol=1e-10, atol=1e-10)

    def test_repetitions_complete(self, large_data):
        factory = fixed_inputs(
            large_data.x_pinv,
            large_data.resid,
            large_data.block_ids,
            large_data.n_blocks,
        )
        report = run_repetitions(factory, 3, backend="numpy")
        assert report.shape == (8, 8, 2000)
        assert report.total_seconds < 180.0
