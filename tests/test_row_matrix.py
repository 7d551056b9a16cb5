"""
Tests for DistributedRowMatrix (the distributed linear operator).

Tests cover:
- multiply against dense and SciPy references
- Row-wise vs blockified multiply
- Regularization (A + lambda * I)
- Partition sizing triggered by multiply
- Checkpointing to the scratch directory
"""

import os
import sys
import pytest
import numpy as np
import scipy.sparse as sp
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_dcg import (
    DistributedRowMatrix,
    DrmConf,
    EngineConf,
    MatrixOperator,
    ParRequest,
    ShapeException,
    load_metadata,
)


def create_poisson_2d(n, dtype=torch.float64):
    """Create 2D Poisson matrix (5-point stencil)."""
    N = n * n
    idx = torch.arange(N)
    i, j = idx // n, idx % n
    entries = [
        (idx, idx, torch.full((N,), 4.0, dtype=dtype)),
        (idx[i > 0], idx[i > 0] - n, torch.full(((i > 0).sum(),), -1.0, dtype=dtype)),
        (idx[i < n-1], idx[i < n-1] + n, torch.full(((i < n-1).sum(),), -1.0, dtype=dtype)),
        (idx[j > 0], idx[j > 0] - 1, torch.full(((j > 0).sum(),), -1.0, dtype=dtype)),
        (idx[j < n-1], idx[j < n-1] + 1, torch.full(((j < n-1).sum(),), -1.0, dtype=dtype)),
    ]
    vals = torch.cat([e[2] for e in entries])
    rows = torch.cat([e[0] for e in entries])
    cols = torch.cat([e[1] for e in entries])
    return vals, rows, cols, (N, N)


def to_dense(val, row, col, shape):
    return torch.sparse_coo_tensor(torch.stack([row, col]), val, shape).to_dense()


class TestMultiply:

    @pytest.mark.parametrize("blockify", [True, False])
    @pytest.mark.parametrize("num_partitions", [1, 3, 7])
    def test_poisson(self, blockify, num_partitions):
        val, row, col, shape = create_poisson_2d(5)
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=num_partitions,
                                          conf=DrmConf(blockify=blockify))
        x = torch.linspace(0, 1, shape[1], dtype=torch.float64)

        torch.testing.assert_close(A.multiply(x), to_dense(val, row, col, shape) @ x)

    def test_row_wise_and_blockified_agree(self):
        g = torch.Generator().manual_seed(0)
        M = torch.randn(23, 23, generator=g, dtype=torch.float64)
        x = torch.randn(23, generator=g, dtype=torch.float64)

        blocked = DistributedRowMatrix.from_dense(M, num_partitions=4, conf=DrmConf(blockify=True))
        by_row = DistributedRowMatrix.from_dense(M, num_partitions=4, conf=DrmConf(blockify=False))

        assert blocked.drm.is_blockified is False  # nothing prepared yet
        y_blocked = blocked.multiply(x)
        y_by_row = by_row.multiply(x)

        assert blocked.drm.is_blockified
        assert not by_row.drm.is_blockified
        torch.testing.assert_close(y_blocked, y_by_row, rtol=1e-12, atol=1e-12)

    def test_scipy_reference(self):
        A_sp = sp.random(40, 30, density=0.1, random_state=0, format="coo")
        val = torch.from_numpy(A_sp.data)
        row = torch.from_numpy(A_sp.row.astype(np.int64))
        col = torch.from_numpy(A_sp.col.astype(np.int64))
        x = np.random.RandomState(1).randn(30)

        A = DistributedRowMatrix.from_coo(val, row, col, (40, 30), num_partitions=5)
        y = A.multiply(torch.from_numpy(x))

        np.testing.assert_allclose(y.numpy(), A_sp @ x, rtol=1e-12, atol=1e-12)
        # sparse rows are packed into sparse blocks
        assert all(block.is_sparse for block in A.drm.partitions)

    @pytest.mark.parametrize("lam", [0.0, 0.5, 3.0])
    def test_lambda(self, lam):
        val, row, col, shape = create_poisson_2d(4)
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2, conf=DrmConf(lam=lam))
        x = torch.arange(shape[1], dtype=torch.float64)

        expected = to_dense(val, row, col, shape) @ x + lam * x
        torch.testing.assert_close(A.multiply(x), expected)
        torch.testing.assert_close(A @ x, expected)
        torch.testing.assert_close(A.times(x), expected)

    def test_lambda_requires_square(self):
        with pytest.raises(ShapeException):
            DistributedRowMatrix.from_dense(torch.ones(3, 2, dtype=torch.float64), conf=DrmConf(lam=1.0))

    def test_negative_lambda(self):
        with pytest.raises(ValueError):
            DrmConf(lam=-1.0)

    def test_wrong_vector_size(self):
        A = DistributedRowMatrix.from_dense(torch.eye(3, dtype=torch.float64))
        with pytest.raises(ShapeException):
            A.multiply(torch.ones(4, dtype=torch.float64))

    def test_key_out_of_range(self):
        rows = [(0, torch.ones(2, dtype=torch.float64)), (5, torch.ones(2, dtype=torch.float64))]
        with pytest.raises(ShapeException):
            DistributedRowMatrix.from_rows(rows, 2, 2)

    def test_duplicate_keys(self):
        rows = [(0, torch.ones(2, dtype=torch.float64)), (0, torch.zeros(2, dtype=torch.float64))]
        with pytest.raises(ValueError):
            DistributedRowMatrix.from_rows(rows, 2, 2, num_partitions=2)

    @pytest.mark.parametrize("blockify", [True, False])
    def test_mixed_precision(self, blockify):
        """A float32 matrix times a float64 vector is computed in float64."""
        val, row, col, shape = create_poisson_2d(4, dtype=torch.float32)
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2,
                                          conf=DrmConf(blockify=blockify, lam=0.1))
        x = torch.full((shape[1],), 1 / 3, dtype=torch.float64)

        y = A.multiply(x)

        assert y.dtype == torch.float64
        expected = to_dense(val, row, col, shape).to(torch.float64) @ x + 0.1 * x
        torch.testing.assert_close(y, expected, rtol=1e-12, atol=1e-12)

    def test_rectangular(self):
        M = torch.arange(12, dtype=torch.float64).reshape(4, 3)
        A = DistributedRowMatrix.from_dense(M, num_partitions=2)
        x = torch.tensor([1.0, -1.0, 2.0], dtype=torch.float64)
        torch.testing.assert_close(A.multiply(x), M @ x)

    def test_threaded_engine(self):
        val, row, col, shape = create_poisson_2d(6)
        conf = DrmConf(engine=EngineConf(default_parallelism=5, num_workers=4))
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2, conf=conf)
        x = torch.ones(shape[1], dtype=torch.float64)

        torch.testing.assert_close(A.multiply(x), to_dense(val, row, col, shape) @ x)


class TestLayout:

    def test_multiply_adjusts_partitions(self):
        M = torch.eye(16, dtype=torch.float64)
        conf = DrmConf(engine=EngineConf(default_parallelism=8))
        A = DistributedRowMatrix.from_dense(M, num_partitions=2, conf=conf)

        assert A.num_partitions == 2
        A.multiply(torch.ones(16, dtype=torch.float64))
        assert A.num_partitions == 8
        assert A.drm.is_blockified
        assert A.drm.num_rows == 16

    def test_exact_splits(self):
        conf = DrmConf(par=ParRequest(exact_splits=3))
        A = DistributedRowMatrix.from_dense(torch.eye(12, dtype=torch.float64), num_partitions=6, conf=conf)
        A.multiply(torch.ones(12, dtype=torch.float64))
        assert A.num_partitions == 3

    def test_explicit_repartition(self):
        M = torch.randn(20, 20, dtype=torch.float64)
        A = DistributedRowMatrix.from_dense(M, num_partitions=2)
        x = torch.randn(20, dtype=torch.float64)
        y = A.multiply(x)

        assert A.repartition(ParRequest(exact_splits=7)) == 7
        assert A.num_partitions == 7
        torch.testing.assert_close(A.multiply(x), y)

        assert A.repartition(ParRequest(exact_splits=3)) == 3
        assert A.num_partitions == 3
        torch.testing.assert_close(A.multiply(x), y)

    def test_checkpoint(self, tmp_path):
        val, row, col, shape = create_poisson_2d(4)
        scratch = tmp_path / "scratch"
        conf = DrmConf(engine=EngineConf(default_parallelism=3))
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=1, conf=conf, tmp_path=scratch)
        x = torch.ones(shape[1], dtype=torch.float64)

        y = A.multiply(x)

        meta = load_metadata(scratch)
        assert meta["num_partitions"] == 3
        assert (meta["num_rows"], meta["num_cols"]) == shape
        torch.testing.assert_close(y, to_dense(val, row, col, shape) @ x)

    def test_checkpoint_requires_tmp_path(self):
        A = DistributedRowMatrix.from_dense(torch.eye(2, dtype=torch.float64))
        with pytest.raises(ValueError):
            A.checkpoint()

    def test_requires_source(self):
        with pytest.raises(ValueError):
            DistributedRowMatrix(None, None, 2, 2)


class TestHelpers:

    def test_diagonal(self):
        val, row, col, shape = create_poisson_2d(3)
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2, conf=DrmConf(lam=0.5))
        torch.testing.assert_close(A.diagonal(), torch.full((9,), 4.5, dtype=torch.float64))

    def test_diagonal_dense_rows(self):
        M = torch.diag(torch.arange(1, 5, dtype=torch.float64))
        A = DistributedRowMatrix.from_dense(M, num_partitions=2)
        torch.testing.assert_close(A.diagonal(), torch.arange(1, 5, dtype=torch.float64))

    def test_to_dense(self):
        val, row, col, shape = create_poisson_2d(3)
        A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2)
        with pytest.warns(UserWarning):
            dense = A.to_dense()
        torch.testing.assert_close(dense, to_dense(val, row, col, shape))


class TestMatrixOperator:

    @pytest.mark.parametrize("sparse", [False, True])
    def test_multiply(self, sparse):
        val, row, col, shape = create_poisson_2d(3)
        M = to_dense(val, row, col, shape)
        op = MatrixOperator(M.to_sparse() if sparse else M, lam=2.0)
        x = torch.linspace(-1, 1, 9, dtype=torch.float64)

        torch.testing.assert_close(op.multiply(x), M @ x + 2.0 * x)
        torch.testing.assert_close(op.diagonal(), torch.full((9,), 6.0, dtype=torch.float64))

    def test_mixed_precision(self):
        M = torch.eye(3, dtype=torch.float32)
        y = MatrixOperator(M).multiply(torch.full((3,), 1 / 3, dtype=torch.float64))
        assert y.dtype == torch.float64
        torch.testing.assert_close(y, torch.full((3,), 1 / 3, dtype=torch.float64), rtol=0, atol=0)

    def test_invalid(self):
        with pytest.raises(ShapeException):
            MatrixOperator(torch.ones(3, dtype=torch.float64))
        with pytest.raises(ValueError):
            MatrixOperator(torch.eye(3, dtype=torch.float64), lam=-1.0)
