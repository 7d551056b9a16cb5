"""
Preconditioned Conjugate Gradient.

Solves ``(A + lam * I) x = b`` for symmetric positive definite operators.
The operator is anything with ``multiply(v)`` plus ``num_rows`` and
``num_cols`` (a ``DistributedRowMatrix``, a ``MatrixOperator``, ...); a plain
2-D tensor is wrapped in a ``MatrixOperator``.

Each iteration calls ``multiply`` exactly once. Iterations are sequential;
all parallelism lives inside ``multiply``.

Example
-------
>>> from torch_dcg import ConjugateGradientSolver, DistributedRowMatrix
>>> A = DistributedRowMatrix.from_coo(val, row, col, (n, n), num_partitions=4)
>>> solver = ConjugateGradientSolver()
>>> x = solver.solve(A, b, max_error=1e-10)
>>> solver.iterations, solver.residual_norm
"""

import math
import torch
import warnings
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .check import check_square, check_vector
from .preconditioner import Preconditioner, as_preconditioner
from .row_matrix import MatrixOperator

DEFAULT_MAX_ERROR = 1e-9


class NotPositiveDefiniteError(ArithmeticError):
    """Raised when ``p^T A p`` is zero or not finite."""

    def __init__(self, iteration: int, pAp: float):
        self.iteration = iteration
        self.pAp = pAp
        super().__init__(f"p^T A p = {pAp} at iteration {iteration}: "
                         f"the operator is not positive definite along the search direction")


@dataclass(frozen=True)
class CGState:
    """Solver state of one iteration, replaced (never modified) every round"""
    x: torch.Tensor    # current estimate
    r: torch.Tensor    # residual b - A x
    z: torch.Tensor    # preconditioned residual
    p: torch.Tensor    # search direction
    rho: torch.Tensor  # r^T z


def _as_operator(a):
    if isinstance(a, torch.Tensor):
        return MatrixOperator(a)
    if not callable(getattr(a, "multiply", None)):
        raise TypeError(f"operator must provide multiply(v), got {type(a).__name__}")
    return a


class ConjugateGradientSolver:
    """
    Conjugate Gradient solver with optional preconditioning.

    Parameters
    ----------
    verbose : bool
        Print the residual every ``log_every`` iterations
    log_every : int
        Print interval when ``verbose``

    Attributes
    ----------
    iterations : int
        Iterations run by the last ``solve``
    residual_norm : float
        ||b - A x|| of the estimate returned by the last ``solve``
    """

    def __init__(self, verbose: bool = False, log_every: int = 50):
        self.verbose = verbose
        self.log_every = log_every
        self.iterations = 0
        self.residual_norm = math.nan

    def solve(
        self,
        a,
        b: torch.Tensor,
        preconditioner: Optional[Union[Preconditioner, Callable[[torch.Tensor], torch.Tensor]]] = None,
        max_iterations: Optional[int] = None,
        max_error: float = DEFAULT_MAX_ERROR,
        x0: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        """
        Solve ``a x = b``.

        Parameters
        ----------
        a : operator or torch.Tensor
            Square symmetric positive definite operator
        b : torch.Tensor
            [num_rows] right-hand side
        preconditioner : Preconditioner or callable, optional
            ``z = M^{-1} r``, by default identity
        max_iterations : int, optional
            Iteration budget, by default ``a.num_cols``
        max_error : float, optional
            Stop once ||r|| < max_error, by default ``DEFAULT_MAX_ERROR``.
            A non-positive value runs the whole budget unless the residual
            becomes exactly zero.
        x0 : torch.Tensor, optional
            [num_cols] initial guess, by default zeros

        Returns
        -------
        torch.Tensor
            [num_cols] solution estimate. When the budget runs out before
            the tolerance is met this is the last estimate; check
            ``residual_norm``.

        Raises
        ------
        ShapeException
            If the operator is not square or ``b``/``x0`` have wrong sizes
        NotPositiveDefiniteError
            If ``p^T A p`` is zero or not finite
        """
        a = _as_operator(a)
        check_square(a.num_rows, a.num_cols)
        check_vector("b", b, a.num_rows)
        if max_iterations is None:
            max_iterations = a.num_cols
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        if b.dtype != torch.float64:
            warnings.warn("You'd better use float64 to maintain good precision")

        M = as_preconditioner(preconditioner)

        if x0 is None:
            x = torch.zeros_like(b)
        else:
            check_vector("x0", x0, a.num_cols)
            x = x0.to(b.dtype)

        self.iterations = 0
        r = b - a.multiply(x).to(b.dtype)
        residual = r.norm()
        self.residual_norm = residual.item()

        if residual == 0 or residual < max_error:
            if self.verbose:
                print(f"  CG converged at iter 0, residual = {residual:.2e}")
            return x

        z = M.apply(r)
        state = CGState(x=x, r=r, z=z, p=z, rho=torch.dot(r, z))

        for i in range(max_iterations):
            q = a.multiply(state.p).to(b.dtype)

            pq = torch.dot(state.p, q)
            if pq == 0 or not torch.isfinite(pq):
                raise NotPositiveDefiniteError(i, pq.item())

            alpha = state.rho / pq
            x = state.x + alpha * state.p
            r = state.r - alpha * q

            residual = r.norm()
            self.iterations = i + 1
            self.residual_norm = residual.item()

            if self.verbose and i % self.log_every == 0:
                print(f"  CG iter {i}: residual = {residual:.2e}")

            if residual == 0 or residual < max_error:
                if self.verbose:
                    print(f"  CG converged at iter {i}, residual = {residual:.2e}")
                return x

            z = M.apply(r)
            rho = torch.dot(r, z)
            beta = rho / state.rho
            state = CGState(x=x, r=r, z=z, p=z + beta * state.p, rho=rho)

        if max_error > 0:
            warnings.warn(f"CG did not converge in {max_iterations} iterations, "
                          f"residual = {self.residual_norm:.2e} >= {max_error:.2e}")
        return state.x


def conjugate_gradient(
    a,
    b: torch.Tensor,
    preconditioner: Optional[Union[Preconditioner, Callable[[torch.Tensor], torch.Tensor]]] = None,
    max_iterations: Optional[int] = None,
    max_error: float = DEFAULT_MAX_ERROR,
    x0: Optional[torch.Tensor] = None,
    verbose: bool = False
) -> torch.Tensor:
    """Functional form of ``ConjugateGradientSolver().solve``."""
    return ConjugateGradientSolver(verbose=verbose).solve(
        a, b, preconditioner=preconditioner, max_iterations=max_iterations,
        max_error=max_error, x0=x0
    )
