"""
Preconditioners for the conjugate gradient solver.

A preconditioner maps a residual ``r`` to ``z = M^{-1} r``. The solver never
sees ``None``: a missing preconditioner is the identity.
"""

import torch
from typing import Callable, Optional, Union


class Preconditioner:
    """Base class, ``apply(r)`` returns the preconditioned residual."""

    def apply(self, r: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def __call__(self, r: torch.Tensor) -> torch.Tensor:
        return self.apply(r)


class IdentityPreconditioner(Preconditioner):
    """z = r"""

    def apply(self, r: torch.Tensor) -> torch.Tensor:
        return r

    def __repr__(self) -> str:
        return "IdentityPreconditioner()"


class FunctionPreconditioner(Preconditioner):
    """Wraps any callable ``fn(r) -> z``."""

    def __init__(self, fn: Callable[[torch.Tensor], torch.Tensor]):
        self.fn = fn

    def apply(self, r: torch.Tensor) -> torch.Tensor:
        return self.fn(r)

    def __repr__(self) -> str:
        return f"FunctionPreconditioner({getattr(self.fn, '__name__', self.fn)!r})"


class JacobiPreconditioner(Preconditioner):
    """
    Diagonal (Jacobi) preconditioner, ``z = D^{-1} r``.

    Parameters
    ----------
    diagonal : torch.Tensor
        [n] diagonal of the operator. Zero entries leave the matching
        residual component unscaled.
    """

    def __init__(self, diagonal: torch.Tensor):
        if diagonal.ndim != 1:
            raise ValueError(f"diagonal must be 1D tensor, got {diagonal.dim()}")
        safe = torch.where(diagonal != 0, diagonal, torch.ones_like(diagonal))
        self.inv_diagonal = 1.0 / safe

    @classmethod
    def from_matrix(cls, operator) -> "JacobiPreconditioner":
        """Build from any operator exposing ``diagonal()``."""
        return cls(operator.diagonal())

    def apply(self, r: torch.Tensor) -> torch.Tensor:
        return self.inv_diagonal.to(r.dtype) * r

    def __repr__(self) -> str:
        return f"JacobiPreconditioner(n={self.inv_diagonal.shape[0]})"


def as_preconditioner(
    preconditioner: Optional[Union[Preconditioner, Callable[[torch.Tensor], torch.Tensor]]]
) -> Preconditioner:
    """
    Normalize ``None``, a callable or a ``Preconditioner`` to a ``Preconditioner``.

    Examples
    --------
    >>> as_preconditioner(None)
    IdentityPreconditioner()
    """
    if preconditioner is None:
        return IdentityPreconditioner()
    if isinstance(preconditioner, Preconditioner):
        return preconditioner
    if callable(preconditioner):
        return FunctionPreconditioner(preconditioner)
    raise TypeError(f"preconditioner must be callable or a Preconditioner, got {type(preconditioner).__name__}")
