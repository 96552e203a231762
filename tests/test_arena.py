from __future__ import annotations

import numpy as np
import pytest

from rigcalib.calib import BlockArena


def test_slot_views_survive_growth():
    arena = BlockArena(3, segment_size=2)
    first = arena[arena.append([1.0, 2.0, 3.0])]
    for i in range(10):
        assert arena.append(np.full(3, float(i))) == i + 1

    first[:] = [7.0, 8.0, 9.0]
    assert np.array_equal(arena[0], [7.0, 8.0, 9.0])
    assert np.array_equal(arena[10], [9.0, 9.0, 9.0])
    assert len(arena) == 11


def test_rejects_bad_sizes_and_indices():
    arena = BlockArena(4)
    with pytest.raises(ValueError):
        arena.append([1.0, 2.0])
    with pytest.raises(IndexError):
        arena[0]
    with pytest.raises(ValueError):
        BlockArena(0)
