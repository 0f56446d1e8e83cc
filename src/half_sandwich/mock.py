"""Mock inputs for benchmarking the sandwich estimator.

Real inputs come from an upstream OLS fit: the pseudoinverse of a
design matrix and one residual column per feature.  For benchmarking
only their shapes and the block structure matter, so both matrices are
drawn from the standard normal distribution.

Block ids are assigned block by block with sizes drawn uniformly from
:class:`BlockSizes`; the last block takes whatever observations remain.
The ids are then **shuffled** so that blocks are scattered through the
rows, as they are in real data (subjects measured at several sites,
repeated scans interleaved with others).  Gathering a scattered block
costs cache misses that contiguous blocks would hide.

Archive layout (``numpy.savez_compressed``):

=============  ===============  =====================================
key            shape / dtype    meaning
=============  ===============  =====================================
``n_blocks``   ``(1,)`` uint64  number of blocks
``block_ids``  ``(obs,)`` uint64  block id of every observation
``x_pinv``     ``(pred, obs)``  pseudoinverse stand-in
``resid``      ``(obs, feat)``  residual matrix
=============  ===============  =====================================
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

import numpy as np

from .blocks import BlockIndex, build_block_index

logger = logging.getLogger(__name__)

_NPZ_KEYS = ("n_blocks", "block_ids", "x_pinv", "resid")

# Upper triangle of a 333-region connectivity matrix, without the diagonal.
DEFAULT_N_FEAT = (333 * 333 - 333) // 2


@dataclass(frozen=True)
class BlockSizes:
    """Inclusive range of block sizes.

    Attributes:
        min_size: Smallest block size (>= 1).
        max_size: Largest block size, inclusive (>= ``min_size``).
    """

    min_size: int = 1
    max_size: int = 8

    def __post_init__(self) -> None:
        if self.min_size < 1:
            raise ValueError(f"min_size must be >= 1, got {self.min_size}.")
        if self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})."
            )

    def __str__(self) -> str:
        return (
            f"Block sizes from {self.min_size} up to and including {self.max_size}"
        )


@dataclass(frozen=True)
class MockParams:
    """Dimensions of the mock problem.

    Attributes:
        n_obs: Number of observations.
        n_feat: Number of features (response columns).
        n_pred: Number of predictors (covariates).
        block_sizes: Range of block sizes.
    """

    n_obs: int = 8192
    n_feat: int = DEFAULT_N_FEAT
    n_pred: int = 8
    block_sizes: BlockSizes = field(default_factory=BlockSizes)

    def __post_init__(self) -> None:
        for name in ("n_obs", "n_feat", "n_pred"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}.")
        # The first block is at most max_size long, so a longer
        # observation axis guarantees a second block.
        if self.n_obs <= self.block_sizes.max_size:
            raise ValueError(
                f"n_obs ({self.n_obs}) must exceed the largest block size "
                f"({self.block_sizes.max_size}) so that at least two blocks exist."
            )

    def __str__(self) -> str:
        return "\n".join(
            [
                "Mock data parameters:",
                f"Number of observations: {self.n_obs}",
                f"Number of features: {self.n_feat}",
                f"Number of predictors: {self.n_pred}",
                str(self.block_sizes),
            ]
        )


def _draw_block_ids(
    n_obs: int,
    block_sizes: BlockSizes,
    rng: np.random.Generator,
) -> tuple[np.ndarray, int]:
    """Assign shuffled block ids with sizes drawn from *block_sizes*."""
    # Enough draws to cover n_obs even if every block is minimal.
    max_blocks = -(-n_obs // block_sizes.min_size)
    sizes = rng.integers(
        block_sizes.min_size, block_sizes.max_size, size=max_blocks, endpoint=True
    )
    ends = np.cumsum(sizes)
    n_blocks = int(np.searchsorted(ends, n_obs)) + 1
    sizes = sizes[:n_blocks].copy()
    # The last block keeps only the observations that remain.
    sizes[-1] -= ends[n_blocks - 1] - n_obs
    block_ids = np.repeat(np.arange(n_blocks, dtype=np.intp), sizes)
    return rng.permutation(block_ids), n_blocks


@dataclass
class MockData:
    """Generated (or loaded) inputs for one covariance computation.

    Attributes:
        n_blocks: Number of blocks.
        block_ids: Block id of every observation, ``(obs,)``.
        x_pinv: Stand-in pseudoinverse, ``(pred, obs)``.
        resid: Stand-in residuals, ``(obs, feat)``.
    """

    n_blocks: int
    block_ids: np.ndarray
    x_pinv: np.ndarray
    resid: np.ndarray

    @classmethod
    def from_params(
        cls,
        params: MockParams | None = None,
        random_state: int | np.random.Generator | np.random.SeedSequence | None = None,
    ) -> MockData:
        """Randomly generate mock data.

        Args:
            params: Problem dimensions; defaults to :class:`MockParams`.
            random_state: Seed, ``SeedSequence`` or ``Generator``.

        Returns:
            A new :class:`MockData`.
        """
        params = params if params is not None else MockParams()
        rng = np.random.default_rng(random_state)

        resid = rng.standard_normal((params.n_obs, params.n_feat))
        x_pinv = rng.standard_normal((params.n_pred, params.n_obs))
        block_ids, n_blocks = _draw_block_ids(params.n_obs, params.block_sizes, rng)

        logger.debug(
            "Generated mock data: obs=%d feat=%d pred=%d blocks=%d",
            params.n_obs,
            params.n_feat,
            params.n_pred,
            n_blocks,
        )
        return cls(n_blocks=n_blocks, block_ids=block_ids, x_pinv=x_pinv, resid=resid)

    @classmethod
    def from_npz(cls, path: str | os.PathLike[str]) -> MockData:
        """Load mock data written by :meth:`save_npz`.

        Raises:
            ValueError: If keys are missing or the stored block count is
                not a single positive integer.
        """
        with np.load(path) as npz:
            missing = [key for key in _NPZ_KEYS if key not in npz.files]
            if missing:
                raise ValueError(f"{os.fspath(path)!r} is missing array(s): {missing}")
            n_blocks_arr = npz["n_blocks"]
            block_ids = npz["block_ids"].astype(np.intp)
            x_pinv = npz["x_pinv"]
            resid = npz["resid"]

        if n_blocks_arr.shape != (1,) or int(n_blocks_arr[0]) < 1:
            raise ValueError(
                f"'n_blocks' must hold one positive integer, got {n_blocks_arr!r}."
            )
        return cls(
            n_blocks=int(n_blocks_arr[0]),
            block_ids=block_ids,
            x_pinv=x_pinv,
            resid=resid,
        )

    def save_npz(self, path: str | os.PathLike[str]) -> None:
        """Write the arrays to a compressed ``.npz`` archive."""
        np.savez_compressed(
            path,
            n_blocks=np.array([self.n_blocks], dtype=np.uint64),
            block_ids=self.block_ids.astype(np.uint64),
            x_pinv=self.x_pinv,
            resid=self.resid,
        )

    def block_index(self) -> BlockIndex:
        """Validated partition of the rows; see :func:`build_block_index`."""
        return build_block_index(self.block_ids, self.n_blocks)

    @property
    def n_obs(self) -> int:
        return int(self.resid.shape[0])

    @property
    def n_feat(self) -> int:
        return int(self.resid.shape[1])

    @property
    def n_pred(self) -> int:
        return int(self.x_pinv.shape[0])

    def __str__(self) -> str:
        return "\n".join(
            [
                "Mock data parameters:",
                f"Number of observations: {self.n_obs}",
                f"Number of features: {self.n_feat}",
                f"Number of predictors: {self.n_pred}",
                f"Number of blocks: {self.n_blocks}",
            ]
        )
