"""
Partition-parallel execution engine.

A minimal in-process stand-in for the cluster engine the solver runs on.
It only knows how to do three things with a list of partitions:

- run a partition-local function on every partition (``map_partitions``)
- redistribute rows over a new number of partitions with a full shuffle
  (``shuffle``)
- merge adjacent partitions without moving rows between them (``coalesce``)

All three return new lists and never modify their input, so a partitioned
collection can be treated as an immutable value.

Example
-------
>>> engine = Engine(EngineConf(default_parallelism=8, num_workers=4))
>>> engine.parallelism_hint
8
>>> parts = engine.shuffle([[(0, r0), (1, r1)], [(2, r2)]], 3)
>>> len(parts)
3
"""

import torch
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class EngineConf:
    """Execution engine configuration"""
    default_parallelism: Optional[int] = None  # baseline parallelism reported by the engine
    num_workers: int = 1                       # threads used by map_partitions
    seed: int = 0                              # seed of the shuffle placement

    def __post_init__(self):
        if self.num_workers < 1:
            raise ValueError(f"num_workers must be positive, got {self.num_workers}")


class Engine:
    """
    Runs partition-local work and moves rows between partitions.

    Parameters
    ----------
    conf : EngineConf, optional
        Engine configuration, by default ``EngineConf()``
    """

    def __init__(self, conf: Optional[EngineConf] = None):
        self.conf = conf if conf is not None else EngineConf()

    @property
    def parallelism_hint(self) -> int:
        """Baseline parallelism, 1 when the engine reports none, never below 1."""
        hint = self.conf.default_parallelism
        if hint is None:
            return 1
        return max(int(hint), 1)

    def map_partitions(
        self,
        fn: Callable[[T], R],
        partitions: Sequence[T]
    ) -> List[R]:
        """
        Apply ``fn`` to every partition.

        Results are returned in partition order. With ``num_workers > 1`` the
        partitions are processed by a thread pool; torch kernels release the
        GIL so dense block products run concurrently.
        """
        if self.conf.num_workers == 1 or len(partitions) <= 1:
            return [fn(p) for p in partitions]

        with ThreadPoolExecutor(max_workers=self.conf.num_workers) as pool:
            return list(pool.map(fn, partitions))

    def shuffle(
        self,
        partitions: Sequence[Sequence[Any]],
        num_partitions: int
    ) -> List[List[Any]]:
        """
        Redistribute records over ``num_partitions`` partitions.

        Every record may move to any partition: the records of source
        partition ``i`` are dealt round-robin starting at a position drawn
        from a generator seeded with ``seed + i``, which keeps the output
        balanced and reproducible.

        Parameters
        ----------
        partitions : Sequence[Sequence[Any]]
            Source partitions, each a sequence of records
        num_partitions : int
            Number of output partitions

        Returns
        -------
        List[List[Any]]
            [num_partitions] new partitions
        """
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be positive, got {num_partitions}")

        out: List[List[Any]] = [[] for _ in range(num_partitions)]
        for index, part in enumerate(partitions):
            generator = torch.Generator().manual_seed(self.conf.seed + index)
            position = int(torch.randint(0, num_partitions, (1,), generator=generator).item())
            for record in part:
                position += 1
                out[position % num_partitions].append(record)
        return out

    def coalesce(
        self,
        partitions: Sequence[T],
        num_partitions: int
    ) -> List[List[T]]:
        """
        Group adjacent partitions into ``num_partitions`` groups.

        No record changes place: output group ``j`` holds the source
        partitions ``[j * P // n, (j + 1) * P // n)``. Coalescing can only
        shrink; asking for at least as many partitions as there are returns
        one group per source partition.

        Returns
        -------
        List[List[T]]
            Groups of source partitions, in source order
        """
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be positive, got {num_partitions}")

        P = len(partitions)
        if num_partitions >= P:
            return [[p] for p in partitions]

        return [list(partitions[j * P // num_partitions:(j + 1) * P // num_partitions])
                for j in range(num_partitions)]
