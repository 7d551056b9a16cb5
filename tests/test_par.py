"""
Tests for the partition adjustment policy.

Tests cover:
- Target resolution (min splits, exact splits, auto heuristic)
- Expanding with a shuffle, shrinking with adjacent merges
- Idempotence and the expand-then-shrink round trip
"""

import os
import sys
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_dcg import (
    DrmInput,
    Engine,
    EngineConf,
    ParRequest,
    par,
    target_partitions,
)


NCOL = 3


def create_drm(num_rows, num_partitions, parallelism=None, seed=0):
    g = torch.Generator().manual_seed(seed)
    rows = [(i, torch.randn(NCOL, generator=g, dtype=torch.float64)) for i in range(num_rows)]
    engine = Engine(EngineConf(default_parallelism=parallelism))
    return DrmInput.from_rows(rows, num_partitions, engine)


def row_dict(drm):
    return {key: row for key, row in drm.rows()}


def assert_same_rows(a, b):
    rows_a, rows_b = row_dict(a), row_dict(b)
    assert rows_a.keys() == rows_b.keys()
    for key in rows_a:
        assert torch.equal(rows_a[key], rows_b[key])


class TestTargetPartitions:

    def test_auto_expand(self):
        """10 partitions, hint 20: x1 = 19 and 10 <= 19, so 19."""
        assert target_partitions(10, ParRequest(), parallelism_hint=20) == 19

    def test_auto_shrink(self):
        """50 partitions, hint 20: 50 > 19, so ceil(2 * 19) = 38."""
        assert target_partitions(50, ParRequest(), parallelism_hint=20) == 38

    def test_auto_boundary(self):
        assert target_partitions(19, ParRequest(), parallelism_hint=20) == 19
        assert target_partitions(20, ParRequest(), parallelism_hint=20) == 38

    @pytest.mark.parametrize("hint", [0, -3])
    def test_hint_clamped(self, hint):
        assert target_partitions(1, ParRequest(), parallelism_hint=hint) == 1
        assert target_partitions(4, ParRequest(), parallelism_hint=hint) == 2

    def test_min_splits(self):
        assert target_partitions(5, ParRequest(min_splits=8)) == 8
        assert target_partitions(12, ParRequest(min_splits=8)) == 12

    def test_exact_splits(self):
        assert target_partitions(5, ParRequest(exact_splits=3)) == 3
        assert target_partitions(5, ParRequest(exact_splits=9)) == 9

    def test_min_splits_wins_over_exact_splits(self):
        request = ParRequest(min_splits=8, exact_splits=3)
        assert target_partitions(5, request, parallelism_hint=20) == 8

    @pytest.mark.parametrize("field", ["min_splits", "exact_splits"])
    def test_negative_request(self, field):
        with pytest.raises(ValueError):
            ParRequest(**{field: -1})


class TestPar:

    def test_expand_shuffles_rows(self):
        src = create_drm(40, 10, parallelism=20)
        target, drm = par(src, ParRequest(), NCOL)

        assert target == 19
        assert drm.num_partitions == 19
        assert not drm.is_blockified
        assert_same_rows(src, drm)

    def test_expand_deblockifies(self):
        src = create_drm(40, 2, parallelism=20).as_blockified(NCOL)
        target, drm = par(src, ParRequest(exact_splits=6), NCOL)

        assert target == 6
        assert drm.num_partitions == 6
        assert not drm.is_blockified
        assert_same_rows(src, drm)

    def test_shrink_row_wise_merges_adjacent(self):
        src = create_drm(100, 50, parallelism=20)
        target, drm = par(src, ParRequest(), NCOL)

        assert target == 38
        assert drm.num_partitions == 38
        assert not drm.is_blockified
        # no shuffle: global row order is untouched
        assert torch.equal(drm.keys(), src.keys())
        assert_same_rows(src, drm)

    def test_shrink_blockified_stays_blockified(self):
        src = create_drm(100, 50, parallelism=20).as_blockified(NCOL)
        target, drm = par(src, ParRequest(), NCOL)

        assert target == 38
        assert drm.num_partitions == 38
        assert drm.is_blockified
        assert drm.representation.ncol == NCOL
        assert torch.equal(drm.keys(), src.keys())
        assert_same_rows(src, drm)

    def test_unchanged_is_noop(self):
        src = create_drm(10, 4)
        target, drm = par(src, ParRequest(exact_splits=4), NCOL)

        assert target == 4
        assert drm is src

    def test_verbose(self, capsys):
        par(create_drm(10, 2, parallelism=4), ParRequest(), NCOL, verbose=True)
        assert "par 2 => 4." in capsys.readouterr().out

    @pytest.mark.parametrize("request_", [
        ParRequest(),
        ParRequest(min_splits=7),
        ParRequest(exact_splits=3),
        ParRequest(min_splits=2, exact_splits=9),
    ])
    @pytest.mark.parametrize("num_partitions", [1, 5, 50])
    @pytest.mark.parametrize("blockified", [False, True])
    def test_idempotent(self, request_, num_partitions, blockified):
        src = create_drm(60, num_partitions, parallelism=20)
        if blockified:
            src = src.as_blockified(NCOL)

        first, once = par(src, request_, NCOL)
        second, twice = par(once, request_, NCOL)

        assert first == second
        assert twice is once

    @pytest.mark.parametrize("blockified", [False, True])
    def test_expand_then_shrink_round_trip(self, blockified):
        src = create_drm(45, 4)
        if blockified:
            src = src.as_blockified(NCOL)

        _, expanded = par(src, ParRequest(exact_splits=11), NCOL)
        _, shrunk = par(expanded, ParRequest(exact_splits=4), NCOL)

        assert expanded.num_partitions == 11
        assert shrunk.num_partitions == 4
        assert shrunk.num_rows == src.num_rows
        assert_same_rows(src, shrunk)
