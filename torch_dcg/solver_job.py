#!/usr/bin/env python
"""
Solve (A + lambda * I) x = b for a matrix stored on disk.

Usage
-----
    python -m torch_dcg.solver_job \\
        --input matrix --vector b.safetensors --output x.safetensors \\
        --temp-dir /tmp/dcg --num-rows 10000 --num-cols 10000 \\
        --lambda 0.1 --max-iter 500 --max-error 1e-10 --parallelism 8
"""

import os
import sys
import shutil
import argparse
import torch
from typing import Callable, List, Optional, Union

from .cg import DEFAULT_MAX_ERROR, ConjugateGradientSolver
from .engine import EngineConf
from .io import load_vector, save_vector
from .par import ParRequest
from .preconditioner import JacobiPreconditioner, Preconditioner
from .row_matrix import DistributedRowMatrix, DrmConf


class DistributedConjugateGradientSolver(ConjugateGradientSolver):
    """
    Conjugate Gradient over a ``DistributedRowMatrix`` loaded from disk.

    Parameters
    ----------
    conf : DrmConf, optional
        Engine and partitioning settings of the matrices this solver builds.
        ``lam`` is taken from ``run_job``.
    verbose : bool
        Print progress

    Example
    -------
    >>> solver = DistributedConjugateGradientSolver(DrmConf(engine=EngineConf(default_parallelism=8)))
    >>> x = solver.run_job("matrix", "/tmp/dcg", n, n, b, None, 500, 1e-10)
    """

    def __init__(self, conf: Optional[DrmConf] = None, verbose: bool = False):
        super().__init__(verbose=verbose)
        self.conf = conf if conf is not None else DrmConf()

    def run_job(
        self,
        input_path: Union[str, "os.PathLike"],
        tmp_path: Optional[Union[str, "os.PathLike"]],
        num_rows: int,
        num_cols: int,
        b: torch.Tensor,
        preconditioner: Optional[Union[Preconditioner, Callable[[torch.Tensor], torch.Tensor], str]] = None,
        max_iterations: Optional[int] = None,
        max_error: float = DEFAULT_MAX_ERROR,
        lam: float = 0.0
    ) -> torch.Tensor:
        """
        Solve ``(A + lam * I) x = b`` for the matrix stored at ``input_path``.

        Parameters
        ----------
        input_path : str or PathLike
            Directory of the matrix ``A``
        tmp_path : str or PathLike, optional
            Scratch directory, the caller removes it afterwards
        num_rows : int
            Number of rows in ``A``
        num_cols : int
            Number of columns in ``A``
        b : torch.Tensor
            [num_rows] right-hand side
        preconditioner : Preconditioner, callable or str, optional
            'jacobi' builds a Jacobi preconditioner from the matrix. By default none
        max_iterations : int, optional
            By default ``num_cols``
        max_error : float
            Residual norm below which the solve stops
        lam : float
            Scalar in ``A + lam * I``

        Returns
        -------
        torch.Tensor
            [num_cols] solution
        """
        conf = DrmConf(engine=self.conf.engine, par=self.conf.par, lam=lam,
                       blockify=self.conf.blockify, verbose=self.conf.verbose or self.verbose)
        matrix = DistributedRowMatrix(input_path, tmp_path, num_rows, num_cols, conf=conf)
        if isinstance(preconditioner, str):
            if preconditioner != "jacobi":
                raise ValueError(f"Unknown preconditioner: {preconditioner}. Supported: 'jacobi'")
            preconditioner = JacobiPreconditioner.from_matrix(matrix)

        return self.solve(matrix, b, preconditioner, max_iterations, max_error)

    def run(self, args: argparse.Namespace) -> int:
        """Load ``b``, solve, save ``x`` and remove the scratch directory."""
        b = load_vector(args.vector)
        max_iterations = args.max_iter if args.max_iter is not None else args.num_cols
        preconditioner = None if args.preconditioner == "none" else args.preconditioner

        x = self.run_job(args.input, args.temp_dir, args.num_rows, args.num_cols, b,
                         preconditioner, max_iterations, args.max_error, args.lam)
        save_vector(args.output, x)

        if self.verbose:
            print(f"Solved in {self.iterations} iterations, residual = {self.residual_norm:.2e}")
        if args.temp_dir is not None and os.path.exists(args.temp_dir):
            shutil.rmtree(args.temp_dir)
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torch_dcg.solver_job",
        description="Distributed conjugate gradient solve of (A + lambda * I) x = b",
    )
    parser.add_argument("--input", "-i", required=True, help="Directory of the matrix A")
    parser.add_argument("--output", "-o", required=True, help="File the solution x is written to")
    parser.add_argument("--temp-dir", default=None, help="Scratch directory, removed after the solve")
    parser.add_argument("--vector", "-b", required=True, help="File of the vector b to solve against")
    parser.add_argument("--num-rows", "-nr", type=int, required=True, help="Number of rows in the input matrix")
    parser.add_argument("--num-cols", "-nc", type=int, required=True, help="Number of columns in the input matrix")
    parser.add_argument("--lambda", "-l", dest="lam", type=float, default=0.0,
                        help="Scalar in A + lambda * I [default = 0]")
    parser.add_argument("--max-iter", "-x", type=int, default=None,
                        help="Maximum number of iterations to run [default = num-cols]")
    parser.add_argument("--max-error", "-err", type=float, default=DEFAULT_MAX_ERROR,
                        help=f"Maximum residual error to allow before stopping [default = {DEFAULT_MAX_ERROR}]")
    parser.add_argument("--min-splits", type=int, default=0, help="Lower bound on the number of partitions")
    parser.add_argument("--exact-splits", type=int, default=0, help="Exact number of partitions")
    parser.add_argument("--parallelism", type=int, default=None, help="Default parallelism of the engine")
    parser.add_argument("--workers", type=int, default=1, help="Threads multiplying partitions")
    parser.add_argument("--preconditioner", choices=["none", "jacobi"], default="none")
    parser.add_argument("--no-blockify", action="store_true", help="Multiply row by row instead of by blocks")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    conf = DrmConf(
        engine=EngineConf(default_parallelism=args.parallelism, num_workers=args.workers),
        par=ParRequest(min_splits=args.min_splits, exact_splits=args.exact_splits),
        blockify=not args.no_blockify,
        verbose=args.verbose,
    )
    return DistributedConjugateGradientSolver(conf, verbose=args.verbose).run(args)


if __name__ == "__main__":
    sys.exit(main())
