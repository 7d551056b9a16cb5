"""
Distributed row matrix as a linear operator.

``DistributedRowMatrix`` wraps a row-partitioned matrix ``A`` and exposes
``multiply(v) = (A + lam * I) @ v`` as a partition-parallel computation:
``v`` is broadcast to every partition, each partition produces the slice of
the result for its own rows, and the slices are scattered back into one
vector by row index.

Before its first multiply the matrix consults the partition adjustment
policy (``torch_dcg.par``) so the number of partitions matches the engine's
parallelism, then packs every partition into a block. Blockified and
row-wise multiplies may differ in the last bits because the products are
summed in a different order; both agree within floating-point tolerance.

Example
-------
>>> A = DistributedRowMatrix.from_dense(torch.eye(4, dtype=torch.float64), num_partitions=2)
>>> A.multiply(torch.ones(4, dtype=torch.float64))
tensor([1., 1., 1., 1.], dtype=torch.float64)
"""

import os
import torch
import warnings
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple, Union

from .check import ShapeException, check_keys, check_shape, check_vector
from .drm import Block, DrmInput, Row, split_coo_rows
from .engine import Engine, EngineConf
from .par import ParRequest, par


@dataclass(frozen=True)
class DrmConf:
    """Configuration of a distributed row matrix"""
    engine: EngineConf = field(default_factory=EngineConf)
    par: ParRequest = field(default_factory=ParRequest)
    lam: float = 0.0          # lambda in A + lambda * I
    blockify: bool = True     # pack partitions into blocks before multiplying
    verbose: bool = False

    def __post_init__(self):
        if self.lam < 0:
            raise ValueError(f"lam must be non-negative, got {self.lam}")


def _row_dot(row: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
    if row.is_sparse:
        row = row.coalesce()
        return torch.dot(row.values().to(v.dtype), v[row.indices()[0]])
    return torch.dot(row.to(v.dtype), v)


def _block_mv(block: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
    """Block @ v, sparse COO blocks via gather + scatter_add."""
    if not block.is_sparse:
        return torch.mv(block.to(v.dtype), v)
    block = block.coalesce()
    row, col = block.indices()
    products = block.values().to(v.dtype) * v[col]
    result = torch.zeros(block.shape[0], dtype=v.dtype, device=v.device)
    result.scatter_add_(0, row, products)
    return result


def _partition_times(partition: Union[Block, list], v: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    if isinstance(partition, Block):
        return partition.keys, _block_mv(partition.block, v)
    if len(partition) == 0:
        return torch.zeros(0, dtype=torch.int64), torch.zeros(0, dtype=v.dtype)
    keys = torch.tensor([key for key, _ in partition], dtype=torch.int64)
    return keys, torch.stack([_row_dot(row, v) for _, row in partition])


class DistributedRowMatrix:
    """
    Row-partitioned matrix ``A`` acting as the operator ``A + lam * I``.

    Parameters
    ----------
    input_path : str or PathLike, optional
        Directory holding the matrix (see ``torch_dcg.io.save_drm``).
        Loaded lazily on first use.
    tmp_path : str or PathLike, optional
        Scratch directory for ``checkpoint``. The caller removes it.
    num_rows : int
        Number of rows of ``A``
    num_cols : int
        Number of columns of ``A``
    conf : DrmConf, optional
        Engine, partitioning and regularization settings
    drm : DrmInput, optional
        In-memory partitions, used instead of ``input_path``

    Attributes
    ----------
    num_rows : int
    num_cols : int
    lam : float
    conf : DrmConf
    engine : Engine
    """

    def __init__(
        self,
        input_path: Optional[Union[str, "os.PathLike"]],
        tmp_path: Optional[Union[str, "os.PathLike"]],
        num_rows: int,
        num_cols: int,
        conf: Optional[DrmConf] = None,
        drm: Optional[DrmInput] = None
    ):
        check_shape((num_rows, num_cols))
        if input_path is None and drm is None:
            raise ValueError("Either input_path or drm must be given")

        self.input_path = input_path
        self.tmp_path = tmp_path
        self.num_rows = num_rows
        self.num_cols = num_cols
        self.conf = conf if conf is not None else DrmConf()
        self.engine = Engine(self.conf.engine)

        if self.conf.lam != 0 and num_rows != num_cols:
            raise ShapeException("A + lam * I", (num_rows, num_cols), "(n,n)")

        self._source = None
        if drm is not None:
            check_keys(drm.keys(), num_rows)
            self._source = DrmInput(drm.partitions, drm.representation, self.engine)
        self._layout: Optional[DrmInput] = None

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Row],
        num_rows: int,
        num_cols: int,
        num_partitions: int = 1,
        conf: Optional[DrmConf] = None,
        tmp_path: Optional[Union[str, "os.PathLike"]] = None
    ) -> "DistributedRowMatrix":
        """Build from ``(row_index, row)`` pairs cut into contiguous partitions."""
        drm = DrmInput.from_rows(rows, num_partitions)
        return cls(None, tmp_path, num_rows, num_cols, conf=conf, drm=drm)

    @classmethod
    def from_dense(
        cls,
        A: torch.Tensor,
        num_partitions: int = 1,
        conf: Optional[DrmConf] = None,
        tmp_path: Optional[Union[str, "os.PathLike"]] = None
    ) -> "DistributedRowMatrix":
        """
        Build from a dense 2-D tensor.

        Parameters
        ----------
        A : torch.Tensor
            [m, n] dense matrix
        num_partitions : int
            Initial number of row partitions
        """
        if A.ndim != 2:
            raise ShapeException("A", tuple(A.shape), "[m, n]")
        rows = [(i, A[i]) for i in range(A.shape[0])]
        return cls.from_rows(rows, A.shape[0], A.shape[1], num_partitions, conf, tmp_path)

    @classmethod
    def from_coo(
        cls,
        val: torch.Tensor,
        row: torch.Tensor,
        col: torch.Tensor,
        shape: Tuple[int, int],
        num_partitions: int = 1,
        conf: Optional[DrmConf] = None,
        tmp_path: Optional[Union[str, "os.PathLike"]] = None
    ) -> "DistributedRowMatrix":
        """
        Build from COO triplets, one sparse row per matrix row.

        Parameters
        ----------
        val : torch.Tensor
            [nnz] values
        row : torch.Tensor
            [nnz] row indices
        col : torch.Tensor
            [nnz] column indices
        shape : Tuple[int, int]
            (m, n)
        """
        check_shape(shape)
        if not (val.ndim == 1 and val.shape == row.shape == col.shape):
            raise ShapeException("val", tuple(val.shape), "[nnz]")
        m, n = shape
        A = torch.sparse_coo_tensor(torch.stack([row, col]), val, (m, n)).coalesce()
        indices = A.indices()
        rows = enumerate(split_coo_rows(indices[0], indices[1], A.values(), m, n))
        return cls.from_rows(rows, m, n, num_partitions, conf, tmp_path)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def lam(self) -> float:
        return self.conf.lam

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.num_rows, self.num_cols)

    @property
    def num_partitions(self) -> int:
        return self.drm.num_partitions

    @property
    def drm(self) -> DrmInput:
        """Current partitions: the prepared layout once multiplied, the source before."""
        if self._layout is not None:
            return self._layout
        return self._load()

    @property
    def dtype(self) -> torch.dtype:
        return self.drm.dtype or torch.float64

    def _load(self) -> DrmInput:
        if self._source is None:
            from .io import load_drm
            drm, meta = load_drm(self.input_path, self.engine)
            if (meta["num_rows"], meta["num_cols"]) != (self.num_rows, self.num_cols):
                raise ShapeException(str(self.input_path), (meta["num_rows"], meta["num_cols"]),
                                     (self.num_rows, self.num_cols))
            self._source = drm
        return self._source

    # =========================================================================
    # Layout
    # =========================================================================

    def repartition(self, request: Optional[ParRequest] = None) -> int:
        """
        Run the partition adjustment policy on the current layout.

        Parameters
        ----------
        request : ParRequest, optional
            Sizing request, by default the one in ``conf``

        Returns
        -------
        int
            Number of partitions after the adjustment
        """
        request = request if request is not None else self.conf.par
        target, drm = par(self.drm, request, self.num_cols, verbose=self.conf.verbose)
        if self.conf.blockify:
            drm = drm.as_blockified(self.num_cols)
        self._layout = drm
        return target

    def _prepared(self) -> DrmInput:
        if self._layout is None:
            self.repartition()
            if self.tmp_path is not None:
                self.checkpoint()
        return self._layout

    def checkpoint(self) -> None:
        """Write the current layout to ``tmp_path`` and read it back from there."""
        if self.tmp_path is None:
            raise ValueError("checkpoint requires a tmp_path")
        from .io import save_drm, load_drm
        save_drm(self.tmp_path, self.drm, self.num_rows, self.num_cols)
        drm, _ = load_drm(self.tmp_path, self.engine)
        if self.conf.blockify:
            drm = drm.as_blockified(self.num_cols)
        self._layout = drm
        if self.conf.verbose:
            print(f"checkpoint {self.drm} => {self.tmp_path}")

    # =========================================================================
    # Linear operator
    # =========================================================================

    def multiply(self, v: torch.Tensor) -> torch.Tensor:
        """
        Compute ``(A + lam * I) @ v``.

        Parameters
        ----------
        v : torch.Tensor
            [num_cols] dense vector

        Returns
        -------
        torch.Tensor
            [num_rows] dense vector
        """
        check_vector("v", v, self.num_cols)
        drm = self._prepared()
        # products run in the wider of the matrix and vector dtypes
        dtype = torch.promote_types(self.dtype, v.dtype)
        x = v.to(dtype)

        slices = self.engine.map_partitions(lambda p: _partition_times(p, x), drm.partitions)

        w = torch.zeros(self.num_rows, dtype=dtype, device=x.device)
        for keys, ys in slices:
            w.index_copy_(0, keys.to(x.device), ys)

        if self.lam != 0:
            w = w + self.lam * x
        return w

    def times(self, v: torch.Tensor) -> torch.Tensor:
        return self.multiply(v)

    def __matmul__(self, v: torch.Tensor) -> torch.Tensor:
        return self.multiply(v)

    def diagonal(self) -> torch.Tensor:
        """Diagonal of ``A + lam * I``, [min(num_rows, num_cols)]."""
        n = min(self.num_rows, self.num_cols)
        diag = torch.zeros(n, dtype=self.dtype)
        for key, row in self.drm.rows():
            if key >= n:
                continue
            if row.is_sparse:
                row = row.coalesce()
                hit = row.indices()[0] == key
                if hit.any():
                    diag[key] = row.values()[hit].sum()
            else:
                diag[key] = row[key]
        return diag + self.lam

    def to_dense(self) -> torch.Tensor:
        """Gather ``A`` (without ``lam``) into one dense tensor."""
        warnings.warn("to_dense() gathers the whole matrix on one node.")
        A = torch.zeros(self.num_rows, self.num_cols, dtype=self.dtype)
        for key, row in self.drm.rows():
            A[key] = row.to_dense() if row.is_sparse else row
        return A

    def __repr__(self) -> str:
        source = self.input_path if self._source is None else "memory"
        return (f"DistributedRowMatrix(shape=({self.num_rows}, {self.num_cols}), "
                f"lam={self.lam}, source={source})")


class MatrixOperator:
    """
    Local operator ``A + lam * I`` over a single 2-D tensor.

    Parameters
    ----------
    A : torch.Tensor
        [m, n] dense or sparse matrix
    lam : float
        Regularization added to the diagonal
    """

    def __init__(self, A: torch.Tensor, lam: float = 0.0):
        if A.ndim != 2:
            raise ShapeException("A", tuple(A.shape), "[m, n]")
        if lam < 0:
            raise ValueError(f"lam must be non-negative, got {lam}")
        if lam != 0 and A.shape[0] != A.shape[1]:
            raise ShapeException("A + lam * I", tuple(A.shape), "(n,n)")
        self.A = A
        self.lam = lam
        self.num_rows, self.num_cols = A.shape

    def multiply(self, v: torch.Tensor) -> torch.Tensor:
        check_vector("v", v, self.num_cols)
        x = v.to(torch.promote_types(self.A.dtype, v.dtype))
        w = _block_mv(self.A, x)
        if self.lam != 0:
            w = w + self.lam * x
        return w

    def times(self, v: torch.Tensor) -> torch.Tensor:
        return self.multiply(v)

    def __matmul__(self, v: torch.Tensor) -> torch.Tensor:
        return self.multiply(v)

    def diagonal(self) -> torch.Tensor:
        A = self.A.to_dense() if self.A.is_sparse else self.A
        return torch.diagonal(A) + self.lam
