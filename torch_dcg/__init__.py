"""
torch-dcg: Distributed Conjugate Gradient for PyTorch

Solves (A + lambda * I) x = b with (preconditioned) conjugate gradient where
A is a row-partitioned matrix whose multiply runs partition by partition.

Features
--------
- Preconditioned CG over any operator with ``multiply(v)``
- Distributed row matrices in row-wise or blockified encoding
- Adaptive partition sizing: shuffle to grow, merge adjacent partitions to shrink
- Identity, custom and Jacobi preconditioners
- safetensors persistence of vectors and partitioned matrices
- ``python -m torch_dcg.solver_job`` command line driver

Usage
-----
>>> import torch
>>> from torch_dcg import DistributedRowMatrix, DrmConf, EngineConf, ConjugateGradientSolver
>>>
>>> val = torch.tensor([4.0, -1.0, -1.0, 4.0, -1.0, -1.0, 4.0], dtype=torch.float64)
>>> row = torch.tensor([0, 0, 1, 1, 1, 2, 2])
>>> col = torch.tensor([0, 1, 0, 1, 2, 1, 2])
>>> b = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
>>>
>>> conf = DrmConf(engine=EngineConf(default_parallelism=4), lam=0.1)
>>> A = DistributedRowMatrix.from_coo(val, row, col, (3, 3), num_partitions=2, conf=conf)
>>> x = ConjugateGradientSolver().solve(A, b, max_error=1e-12)
"""

from .check import (
    ShapeException,
)

from .engine import (
    Engine,
    EngineConf,
)

from .drm import (
    Block,
    Blockified,
    DrmInput,
    Representation,
    RowWise,
    blockify,
    deblockify,
    rbind,
    split_coo_rows,
)

from .par import (
    ParRequest,
    par,
    target_partitions,
)

from .row_matrix import (
    DistributedRowMatrix,
    DrmConf,
    MatrixOperator,
)

from .preconditioner import (
    Preconditioner,
    IdentityPreconditioner,
    FunctionPreconditioner,
    JacobiPreconditioner,
    as_preconditioner,
)

from .cg import (
    ConjugateGradientSolver,
    NotPositiveDefiniteError,
    conjugate_gradient,
    DEFAULT_MAX_ERROR,
)

from .io import (
    save_vector,
    load_vector,
    load_vector_record,
    save_drm,
    load_drm,
    load_metadata,
)

__version__ = "0.1.0"

__all__ = [
    "ShapeException",
    # Engine
    "Engine",
    "EngineConf",
    # Encodings
    "Block",
    "Blockified",
    "DrmInput",
    "Representation",
    "RowWise",
    "blockify",
    "deblockify",
    "rbind",
    "split_coo_rows",
    # Partition sizing
    "ParRequest",
    "par",
    "target_partitions",
    # Operators
    "DistributedRowMatrix",
    "DrmConf",
    "MatrixOperator",
    # Preconditioners
    "Preconditioner",
    "IdentityPreconditioner",
    "FunctionPreconditioner",
    "JacobiPreconditioner",
    "as_preconditioner",
    # Solver
    "ConjugateGradientSolver",
    "NotPositiveDefiniteError",
    "conjugate_gradient",
    "DEFAULT_MAX_ERROR",
    # I/O
    "save_vector",
    "load_vector",
    "load_vector_record",
    "save_drm",
    "load_drm",
    "load_metadata",
    # Version
    "__version__",
]
