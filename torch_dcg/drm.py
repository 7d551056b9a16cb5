"""
Physical encodings of a row-partitioned matrix.

A distributed row matrix (DRM) is a list of partitions. Each partition is
held in one of two interchangeable encodings:

- row-wise: a list of ``(row_index, row)`` pairs, ``row`` a 1-D dense or
  sparse COO tensor of length ``ncol``
- blockified: one ``Block`` per partition, the partition's rows packed into
  a single 2-D tensor ``[nrow, ncol]`` next to their row indices

Row-wise partitions can be cut at any row, which is what a shuffle needs.
Blocks turn a partition's matrix-vector product into a single kernel call.
Conversions in both directions are loss-free and keep the row order of
every partition.

Example
-------
>>> rows = [(i, torch.randn(4, dtype=torch.float64)) for i in range(6)]
>>> A = DrmInput.from_rows(rows, num_partitions=2)
>>> B = A.as_blockified(ncol=4)
>>> B.partitions[0].block.shape
torch.Size([3, 4])
>>> B.as_row_wise().num_rows
6
"""

import torch
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .check import ShapeException, check_row
from .engine import Engine

# Partitions sparser than this are packed into sparse COO blocks
BLOCKIFY_DENSITY_THRESHOLD = 0.25

Row = Tuple[int, torch.Tensor]


@dataclass(frozen=True)
class RowWise:
    """Every row is its own record, tagged with its row index."""


@dataclass(frozen=True)
class Blockified:
    """Every partition is one block of ``ncol`` columns."""
    ncol: int


Representation = Union[RowWise, Blockified]


@dataclass
class Block:
    """Rows of one partition packed together"""
    keys: torch.Tensor   # [nrow] int64 row indices
    block: torch.Tensor  # [nrow, ncol] dense or sparse COO

    @property
    def num_rows(self) -> int:
        return self.keys.shape[0]

    @property
    def is_sparse(self) -> bool:
        return self.block.is_sparse


def _nnz(row: torch.Tensor) -> int:
    if row.is_sparse:
        return row._nnz()
    return int(torch.count_nonzero(row).item())


def blockify(rows: Sequence[Row], ncol: int, dtype: Optional[torch.dtype] = None) -> Block:
    """
    Pack a row-wise partition into a single block.

    The block is dense unless the partition's density falls below
    ``BLOCKIFY_DENSITY_THRESHOLD``, in which case it is a sparse COO block.
    """
    if len(rows) == 0:
        return Block(
            keys=torch.zeros(0, dtype=torch.int64),
            block=torch.zeros(0, ncol, dtype=dtype or torch.float64),
        )

    for key, row in rows:
        check_row(key, row, ncol)

    keys = torch.tensor([key for key, _ in rows], dtype=torch.int64)
    dtype = dtype or rows[0][1].dtype
    nnz = sum(_nnz(row) for _, row in rows)
    density = nnz / (len(rows) * ncol)

    if density >= BLOCKIFY_DENSITY_THRESHOLD:
        block = torch.stack([
            row.to_dense().to(dtype) if row.is_sparse else row.to(dtype)
            for _, row in rows
        ])
        return Block(keys=keys, block=block)

    block_row, block_col, block_val = [], [], []
    for i, (_, row) in enumerate(rows):
        if row.is_sparse:
            row = row.coalesce()
            col = row.indices()[0]
            val = row.values()
        else:
            col = torch.nonzero(row, as_tuple=True)[0]
            val = row[col]
        block_row.append(torch.full_like(col, i))
        block_col.append(col)
        block_val.append(val.to(dtype))

    block = torch.sparse_coo_tensor(
        torch.stack([torch.cat(block_row), torch.cat(block_col)]),
        torch.cat(block_val),
        (len(rows), ncol),
    ).coalesce()
    return Block(keys=keys, block=block)


def split_coo_rows(
    row: torch.Tensor,
    col: torch.Tensor,
    val: torch.Tensor,
    nrow: int,
    ncol: int
) -> List[torch.Tensor]:
    """
    Split COO triplets into one sparse row per matrix row.

    Entries are sorted by row once and cut with ``torch.split``, so the cost
    is O(nnz log nnz + nrow).

    Parameters
    ----------
    row : torch.Tensor
        [nnz] row indices in ``[0, nrow)``
    col : torch.Tensor
        [nnz] column indices in ``[0, ncol)``
    val : torch.Tensor
        [nnz] values
    nrow : int
        Number of rows
    ncol : int
        Length of every row

    Returns
    -------
    List[torch.Tensor]
        [nrow] sparse COO rows, empty rows included
    """
    if row.numel() > 0 and (int(row.min()) < 0 or int(row.max()) >= nrow):
        raise ShapeException("row", (int(row.min()), int(row.max())), f"indices in [0, {nrow})")

    order = torch.argsort(row, stable=True)
    counts = torch.bincount(row, minlength=nrow).tolist()
    cols = torch.split(col[order], counts)
    vals = torch.split(val[order], counts)
    return [
        torch.sparse_coo_tensor(c.unsqueeze(0), v, (ncol,)).coalesce()
        for c, v in zip(cols, vals)
    ]


def deblockify(block: Block) -> List[Row]:
    """Split a block back into ``(row_index, row)`` pairs, in block order."""
    keys = block.keys.tolist()
    if not block.is_sparse:
        return [(key, block.block[i]) for i, key in enumerate(keys)]

    A = block.block.coalesce()
    row, col = A.indices()
    return list(zip(keys, split_coo_rows(row, col, A.values(), len(keys), A.shape[1])))


def rbind(blocks: Sequence[Block]) -> Block:
    """
    Stack blocks on top of each other into one block.

    Dense blocks are concatenated as dense; if any block is sparse the result
    is a sparse COO block.
    """
    if len(blocks) == 1:
        return blocks[0]

    keys = torch.cat([b.keys for b in blocks])
    if any(b.is_sparse for b in blocks):
        parts = [b.block if b.is_sparse else b.block.to_sparse() for b in blocks]
        return Block(keys=keys, block=torch.cat(parts, dim=0).coalesce())
    return Block(keys=keys, block=torch.cat([b.block for b in blocks], dim=0))


class DrmInput:
    """
    Partitions of a distributed row matrix in a known encoding.

    Parameters
    ----------
    partitions : list
        Row-wise: a list of row lists. Blockified: a list of ``Block``.
    representation : RowWise or Blockified
        Encoding of ``partitions``
    engine : Engine, optional
        Engine that moves and maps the partitions

    Notes
    -----
    Instances are never modified; every conversion or re-partitioning
    returns a new ``DrmInput``.
    """

    def __init__(
        self,
        partitions: list,
        representation: Representation,
        engine: Optional[Engine] = None
    ):
        self.partitions = partitions
        self.representation = representation
        self.engine = engine if engine is not None else Engine()

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Row],
        num_partitions: int = 1,
        engine: Optional[Engine] = None
    ) -> "DrmInput":
        """
        Build a row-wise DRM by cutting ``rows`` into contiguous runs.

        Parameters
        ----------
        rows : Iterable[Tuple[int, torch.Tensor]]
            ``(row_index, row)`` pairs with unique row indices
        num_partitions : int
            Number of partitions, by default 1

        Returns
        -------
        DrmInput
            Row-wise DRM with ``num_partitions`` partitions
        """
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be positive, got {num_partitions}")
        rows = list(rows)
        n = len(rows)
        partitions = [rows[j * n // num_partitions:(j + 1) * n // num_partitions]
                      for j in range(num_partitions)]
        return cls(partitions, RowWise(), engine)

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    @property
    def is_blockified(self) -> bool:
        return isinstance(self.representation, Blockified)

    @property
    def num_rows(self) -> int:
        if self.is_blockified:
            return sum(b.num_rows for b in self.partitions)
        return sum(len(p) for p in self.partitions)

    @property
    def dtype(self) -> Optional[torch.dtype]:
        """dtype of the first non-empty partition, None when there are no rows."""
        for part in self.partitions:
            if self.is_blockified:
                if part.num_rows > 0:
                    return part.block.dtype
            elif len(part) > 0:
                return part[0][1].dtype
        return None

    def as_row_wise(self) -> "DrmInput":
        """Row-wise view of this DRM (``self`` if already row-wise)."""
        if not self.is_blockified:
            return self
        partitions = self.engine.map_partitions(deblockify, self.partitions)
        return DrmInput(partitions, RowWise(), self.engine)

    def as_blockified(self, ncol: int) -> "DrmInput":
        """Blockified view of this DRM (``self`` if already blockified)."""
        if self.is_blockified:
            if self.representation.ncol != ncol:
                raise ShapeException("block", (None, self.representation.ncol), f"[nrow, {ncol}]")
            return self
        dtype = self.dtype
        partitions = self.engine.map_partitions(lambda rows: blockify(rows, ncol, dtype), self.partitions)
        return DrmInput(partitions, Blockified(ncol), self.engine)

    def rows(self) -> List[Row]:
        """All ``(row_index, row)`` pairs, partition by partition."""
        return [row for part in self.as_row_wise().partitions for row in part]

    def keys(self) -> torch.Tensor:
        """Row indices of all partitions, partition by partition."""
        if self.is_blockified:
            if len(self.partitions) == 0:
                return torch.zeros(0, dtype=torch.int64)
            return torch.cat([b.keys for b in self.partitions])
        return torch.tensor([key for part in self.partitions for key, _ in part], dtype=torch.int64)

    def __repr__(self) -> str:
        layout = f"Blockified(ncol={self.representation.ncol})" if self.is_blockified else "RowWise"
        return f"DrmInput(num_partitions={self.num_partitions}, num_rows={self.num_rows}, {layout})"
