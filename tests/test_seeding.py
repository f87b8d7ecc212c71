# tests/test_seeding.py
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from cpm_sim import CPM, GridInitializer
from cpm_sim.errors import ConfigurationError, SeedingExhaustedError


def test_seed_cell_starts_at_midpoint():
    C = CPM(extents=(11, 11), seed=0)
    gi = GridInitializer(C)
    first = gi.seed_cell(1)
    assert C.cell_id_at(C.grid.midpoint) == first
    second = gi.seed_cell(1)
    assert second != first
    assert C.volume_of(first) == C.volume_of(second) == 1


def test_seed_cell_on_full_grid_raises():
    C = CPM(extents=(3, 3), seed=0)
    gi = GridInitializer(C)
    for x in range(3):
        gi.fill_plane(1, 0, x)
    with pytest.raises(SeedingExhaustedError):
        gi.seed_cell(1, max_attempts=50)


def test_seed_cells_in_circle_stay_inside_the_disk():
    C = CPM(extents=(30, 30), seed=2)
    ids = GridInitializer(C).seed_cells_in_circle(2, 8, (15, 15), 5)
    assert len(ids) == len(set(ids)) == 8
    for cid in ids:
        (x, y), = list(C.pixels_of_cell(cid))
        assert (x - 15) ** 2 + (y - 15) ** 2 < 25
        assert C.kind_of(cid) == 2


def test_seed_cells_in_circle_exhaustion_keeps_placed_cells():
    """Cells placed before the budget runs out are not rolled back."""
    C = CPM(extents=(20, 20), seed=0)
    gi = GridInitializer(C)
    with pytest.raises(SeedingExhaustedError):
        gi.seed_cells_in_circle(1, 50, (10, 10), 2, max_attempts=500)
    # a radius-2 disk holds 9 sites
    assert 0 < C.n_cells <= 9


def test_make_plane_and_fill_plane():
    C = CPM(extents=(4, 5, 6), seed=0)
    gi = GridInitializer(C)
    plane = gi.make_plane([], 1, 2)
    assert len(plane) == 4 * 6
    assert all(p[1] == 2 for p in plane)
    cid = gi.fill_plane(3, 2, 0)
    assert C.volume_of(cid) == 4 * 5
    assert C.kind_of(cid) == 3
    with pytest.raises(IndexError):
        gi.make_plane([], 0, 4)


def test_kill_cell():
    C = CPM(extents=(10, 10), seed=0)
    gi = GridInitializer(C)
    cid = gi.change_kind([(1, 1), (1, 2), (2, 2)], 1)
    gi.kill_cell(cid)
    assert cid not in C.live_cell_ids()
    assert not C.grid.values.any()
    C.verify_invariants()


def test_divide_cell_splits_along_short_axis():
    C = CPM(extents=(20, 20), torus=(False, False), seed=0)
    gi = GridInitializer(C)
    block = [(x, y) for x in range(5, 9) for y in range(4, 12)]
    mother = gi.change_kind(block, 2)
    daughter = gi.divide_cell(mother)
    assert daughter not in (0, mother)
    assert C.kind_of(daughter) == 2
    assert C.volume_of(mother) == C.volume_of(daughter) == 16
    # the 4x8 block is cut across its long axis (dimension 1)
    ys_mother = {p[1] for p in C.pixels_of_cell(mother)}
    ys_daughter = {p[1] for p in C.pixels_of_cell(daughter)}
    assert ys_mother.isdisjoint(ys_daughter)
    C.verify_invariants()


def test_divide_cell_limits():
    C = CPM(extents=(10, 10), seed=0)
    gi = GridInitializer(C)
    cid = gi.change_kind([(1, 1), (1, 2)], 1)
    with pytest.raises(ConfigurationError):
        gi.divide_cell(cid)
    B = CPM(extents=(10, 10), torus=(False, False), seed=0)
    single = GridInitializer(B).seed_cell(1)
    with pytest.raises(ValueError):
        GridInitializer(B).divide_cell(single)
