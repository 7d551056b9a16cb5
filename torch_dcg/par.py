"""
Physical adjustment of parallelism.

Decides how many partitions a distributed row matrix should have and moves
it there as cheaply as possible:

- growing the partition count needs fresh row placement, so the rows are
  deblockified and fully shuffled
- shrinking merges adjacent partitions in place (no shuffle); blockified
  input stays blockified and each merged group is re-bound into one block
- an unchanged count returns the input as is
"""

import math
from dataclasses import dataclass
from typing import Tuple

from .drm import DrmInput, RowWise, rbind

# Tunable heuristics of the auto mode, not derived constants
AUTO_PARALLELISM_FACTOR = 0.95
AUTO_SHRINK_FACTOR = 2.0


@dataclass(frozen=True)
class ParRequest:
    """
    Target-sizing request.

    ``min_splits`` wins over ``exact_splits``; both unset (0) selects the
    auto heuristic.
    """
    min_splits: int = 0
    exact_splits: int = 0

    def __post_init__(self):
        if self.min_splits < 0:
            raise ValueError(f"min_splits must be non-negative, got {self.min_splits}")
        if self.exact_splits < 0:
            raise ValueError(f"exact_splits must be non-negative, got {self.exact_splits}")

    @property
    def is_auto(self) -> bool:
        return self.min_splits == 0 and self.exact_splits == 0


def target_partitions(
    num_partitions: int,
    request: ParRequest,
    parallelism_hint: int = 1
) -> int:
    """
    Resolve the partition count a request asks for.

    Parameters
    ----------
    num_partitions : int
        Current number of partitions
    request : ParRequest
        Sizing request
    parallelism_hint : int, optional
        Baseline parallelism of the engine, clamped to at least 1

    Returns
    -------
    int
        Target number of partitions

    Examples
    --------
    >>> target_partitions(10, ParRequest(), parallelism_hint=20)
    19
    >>> target_partitions(50, ParRequest(), parallelism_hint=20)
    38
    """
    if request.min_splits > 0:
        return max(num_partitions, request.min_splits)
    if request.exact_splits > 0:
        return request.exact_splits

    x1 = AUTO_PARALLELISM_FACTOR * max(parallelism_hint, 1)
    if num_partitions <= math.ceil(x1):
        return math.ceil(x1)
    return math.ceil(AUTO_SHRINK_FACTOR * x1)


def par(
    src: DrmInput,
    request: ParRequest,
    ncol: int,
    verbose: bool = False
) -> Tuple[int, DrmInput]:
    """
    Move ``src`` to the partition count resolved from ``request``.

    Parameters
    ----------
    src : DrmInput
        Source DRM, row-wise or blockified
    request : ParRequest
        Sizing request
    ncol : int
        Number of matrix columns, needed to (re)form blocks
    verbose : bool
        Print the adjustment

    Returns
    -------
    Tuple[int, DrmInput]
        Target partition count and the adjusted DRM
    """
    engine = src.engine
    num_partitions = src.num_partitions
    target = target_partitions(num_partitions, request, engine.parallelism_hint)

    if verbose:
        print(f"par {num_partitions} => {target}.")

    if target > num_partitions:
        # Blocks cannot be cut at new boundaries, go through rows
        rows = src.as_row_wise()
        return target, DrmInput(engine.shuffle(rows.partitions, target), RowWise(), engine)

    if target < num_partitions:
        if src.is_blockified:
            blocks = src.as_blockified(ncol)
            groups = engine.coalesce(blocks.partitions, target)
            return target, DrmInput(engine.map_partitions(rbind, groups), blocks.representation, engine)

        groups = engine.coalesce(src.partitions, target)
        merged = [[row for part in group for row in part] for group in groups]
        return target, DrmInput(merged, RowWise(), engine)

    return target, src
