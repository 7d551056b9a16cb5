#!/usr/bin/env python
"""
Distributed Conjugate Gradient Example

This example demonstrates:
1. Building a row-partitioned matrix and solving (A + lambda * I) x = b
2. How the partition count follows the engine parallelism
3. Jacobi preconditioning
4. Saving the matrix and running the command line driver on it

Usage:
    python distributed_solve.py
"""

import os
import tempfile
import torch
from torch_dcg import (
    ConjugateGradientSolver,
    DistributedRowMatrix,
    DrmConf,
    EngineConf,
    JacobiPreconditioner,
    load_vector,
    save_drm,
    save_vector,
)
from torch_dcg.solver_job import main as solver_main


def create_tridiagonal(n):
    idx = torch.arange(n)
    val = torch.cat([
        torch.full((n,), 4.0, dtype=torch.float64),
        torch.full((n-1,), -1.0, dtype=torch.float64),
        torch.full((n-1,), -1.0, dtype=torch.float64)
    ])
    row = torch.cat([idx, idx[1:], idx[:-1]])
    col = torch.cat([idx, idx[:-1], idx[1:]])
    return val, row, col, (n, n)


def main():
    print("=" * 60)
    print("Distributed CG: (A + lambda * I) @ x = b")
    print("=" * 60)

    n = 200
    val, row, col, shape = create_tridiagonal(n)
    b = torch.ones(n, dtype=torch.float64)

    # 1. Solve on 8 partitions worked by 4 threads
    conf = DrmConf(engine=EngineConf(default_parallelism=8, num_workers=4), lam=0.1, verbose=True)
    A = DistributedRowMatrix.from_coo(val, row, col, shape, num_partitions=2, conf=conf)
    print(f"\n{A}, {A.num_partitions} partitions before the solve")

    solver = ConjugateGradientSolver(verbose=True)
    x = solver.solve(A, b, max_error=1e-10)
    print(f"{A.num_partitions} partitions after the solve")
    print(f"iterations = {solver.iterations}, ||b - (A + lambda I) x|| = {(b - A @ x).norm():.2e}")

    # 2. Jacobi preconditioning
    M = JacobiPreconditioner.from_matrix(A)
    solver = ConjugateGradientSolver()
    x_jacobi = solver.solve(A, b, preconditioner=M, max_error=1e-10)
    print(f"\nJacobi: iterations = {solver.iterations}, "
          f"max |x - x_jacobi| = {(x - x_jacobi).abs().max():.2e}")

    # 3. Command line driver on a saved matrix
    with tempfile.TemporaryDirectory() as tmpdir:
        matrix_dir = os.path.join(tmpdir, "matrix")
        save_drm(matrix_dir, A.drm, *shape)
        save_vector(os.path.join(tmpdir, "b.safetensors"), b)

        solver_main([
            "--input", matrix_dir,
            "--vector", os.path.join(tmpdir, "b.safetensors"),
            "--output", os.path.join(tmpdir, "x.safetensors"),
            "--temp-dir", os.path.join(tmpdir, "scratch"),
            "--num-rows", str(n), "--num-cols", str(n),
            "--lambda", "0.1",
            "--parallelism", "4",
            "--preconditioner", "jacobi",
            "--verbose",
        ])
        x_cli = load_vector(os.path.join(tmpdir, "x.safetensors"))
        print(f"CLI: max |x - x_cli| = {(x - x_cli).abs().max():.2e}")

    print("\n" + "=" * 60)
    print("Distributed solve completed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
