"""
Persistence of vectors and distributed row matrices.

Vectors are stored as labeled records: a safetensors file holding a single
tensor ``vector`` and a ``key`` label in its metadata.

A distributed row matrix is a directory::

    matrix/
        metadata.json          # num_rows, num_cols, num_partitions, dtype
        part-00000.safetensors # keys, row, col, val of partition 0
        part-00001.safetensors
        ...

Each partition is stored as COO triplets whose ``row`` is the position of
the row inside the partition and ``keys`` maps positions to row indices, so
loading gives back the same partitions with the same row order.

Example
-------
>>> save_vector("b.safetensors", b)
>>> b = load_vector("b.safetensors")
>>> save_drm("matrix", A.drm, *A.shape)
>>> drm, meta = load_drm("matrix")
"""

import os
import json
import torch
from typing import Dict, Optional, Tuple, Union

from safetensors import SafetensorError, safe_open
from safetensors.torch import save_file, load_file

from .check import check_keys
from .drm import Block, DrmInput, RowWise, split_coo_rows
from .engine import Engine

METADATA_FILE = "metadata.json"
VECTOR_TENSOR = "vector"

PathType = Union[str, "os.PathLike"]


def _part_file(index: int) -> str:
    return f"part-{index:05d}.safetensors"


# =============================================================================
# Vectors
# =============================================================================

def save_vector(path: PathType, v: torch.Tensor, key: int = 0) -> None:
    """
    Write ``v`` as a single labeled vector record.

    Parameters
    ----------
    path : str or PathLike
        Output file
    v : torch.Tensor
        [n] vector
    key : int
        Record label
    """
    if v.ndim != 1:
        raise ValueError(f"v must be 1D tensor, got {v.dim()}")
    save_file({VECTOR_TENSOR: v.detach().cpu().contiguous()}, str(path), metadata={"key": str(key)})


def load_vector_record(path: PathType) -> Tuple[int, torch.Tensor]:
    """
    Read the labeled vector record stored at ``path``.

    Returns
    -------
    Tuple[int, torch.Tensor]
        Label and vector

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist
    IOError
        If the file is not a safetensors file or holds no vector
    """
    path = str(path)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input vector file not found: {path}")

    try:
        with safe_open(path, framework="pt") as f:
            if VECTOR_TENSOR not in f.keys():
                raise IOError("Input vector file is empty.")
            metadata = f.metadata() or {}
            v = f.get_tensor(VECTOR_TENSOR)
    except SafetensorError as e:
        raise IOError(f"Input vector file is not a safetensors file: {path}") from e

    if v.ndim != 1:
        raise IOError(f"Input vector file holds a tensor of shape {tuple(v.shape)}, expected [n]")
    return int(metadata.get("key", 0)), v


def load_vector(path: PathType) -> torch.Tensor:
    """Read the vector of the record stored at ``path``."""
    return load_vector_record(path)[1]


# =============================================================================
# Distributed row matrices
# =============================================================================

def _block_to_coo(block: Block) -> Dict[str, torch.Tensor]:
    A = block.block
    if A.is_sparse:
        A = A.coalesce()
        row, col = A.indices()
        val = A.values()
    else:
        row, col = torch.nonzero(A, as_tuple=True)
        val = A[row, col]
    return {
        "keys": block.keys.contiguous(),
        "row": row.contiguous(),
        "col": col.contiguous(),
        "val": val.contiguous(),
    }


def save_drm(
    directory: PathType,
    drm: DrmInput,
    num_rows: int,
    num_cols: int,
    verbose: bool = False
) -> None:
    """
    Save every partition of ``drm`` under ``directory``.

    Parameters
    ----------
    directory : str or PathLike
        Output directory, created if missing
    drm : DrmInput
        Partitions to save, row-wise or blockified
    num_rows : int
        Number of matrix rows
    num_cols : int
        Number of matrix columns
    verbose : bool
        Print progress
    """
    os.makedirs(directory, exist_ok=True)
    blocks = drm.as_blockified(num_cols)
    dtype = drm.dtype or torch.float64

    for i, block in enumerate(blocks.partitions):
        tensors = _block_to_coo(block)
        tensors["val"] = tensors["val"].to(dtype)
        save_file(tensors, os.path.join(directory, _part_file(i)))
        if verbose:
            print(f"  saved partition {i}: {block.num_rows} rows, {tensors['val'].numel()} nnz")

    metadata = {
        "num_rows": num_rows,
        "num_cols": num_cols,
        "num_partitions": blocks.num_partitions,
        "dtype": str(dtype).replace("torch.", ""),
    }
    with open(os.path.join(directory, METADATA_FILE), "w") as f:
        json.dump(metadata, f, indent=2)


def load_metadata(directory: PathType) -> Dict:
    """Read ``metadata.json`` of a saved matrix."""
    path = os.path.join(directory, METADATA_FILE)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Matrix metadata not found: {path}")
    with open(path) as f:
        return json.load(f)


def load_drm(
    directory: PathType,
    engine: Optional[Engine] = None
) -> Tuple[DrmInput, Dict]:
    """
    Load a matrix saved with ``save_drm`` as a row-wise DRM.

    Rows come back as sparse COO rows, partition boundaries and row order
    are those of the saved matrix.

    Returns
    -------
    Tuple[DrmInput, Dict]
        Row-wise DRM and the matrix metadata

    Raises
    ------
    ShapeException
        If a row index lies outside ``[0, num_rows)``
    ValueError
        If a row index appears twice
    """
    meta = load_metadata(directory)
    num_cols = meta["num_cols"]
    dtype = getattr(torch, meta.get("dtype", "float64"))

    partitions = []
    for i in range(meta["num_partitions"]):
        path = os.path.join(directory, _part_file(i))
        if not os.path.exists(path):
            raise FileNotFoundError(f"Matrix partition not found: {path}")
        tensors = load_file(path)
        keys, row, col, val = tensors["keys"], tensors["row"], tensors["col"], tensors["val"].to(dtype)

        rows = split_coo_rows(row, col, val, keys.shape[0], num_cols)
        partitions.append(list(zip(keys.tolist(), rows)))

    drm = DrmInput(partitions, RowWise(), engine)
    check_keys(drm.keys(), meta["num_rows"])
    return drm, meta
