# tests/test_constraints.py
import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from cpm_sim import (
    CPM,
    ActivityConstraint,
    ActivityMultiBackground,
    Adhesion,
    AdhesionMultiBackground,
    AttractionPointConstraint,
    BarrierConstraint,
    BorderConstraint,
    ChemotaxisConstraint,
    CoarseGrid,
    ConnectivityConstraint,
    Grid,
    GridInitializer,
    HardConstraint,
    HardVolumeRangeConstraint,
    LocalConnectivityConstraint,
    PerimeterConstraint,
    PersistenceConstraint,
    PreferredDirectionConstraint,
    ProtrusionConstraint,
    SoftConnectivityConstraint,
    SoftConstraint,
    SoftLocalConnectivityConstraint,
    VolumeConstraint,
)
from cpm_sim.errors import CapabilityError, ConfigurationError


def bounded_model(size=5, **kwargs):
    return CPM(extents=(size, size), torus=(False, False), seed=0, **kwargs)


def idx(C, p):
    return C.grid.coordinate_to_index(p)


def recount_perimeters(C):
    """Perimeter of every cell, counted from scratch on the grid."""
    values = C.grid.values
    out = {}
    for i in np.flatnonzero(values).tolist():
        t = int(values[i])
        n = sum(1 for ni in C.grid.neighbors(i).tolist() if ni != i and values[ni] != t)
        out[t] = out.get(t, 0) + n
    return out


# --------------------------------------------------------------------- framework


def test_add_rejects_non_constraints():
    C = bounded_model()
    with pytest.raises(CapabilityError):
        C.add(object())

    class NoEnergy(SoftConstraint):
        pass

    class NoRule(HardConstraint):
        pass

    with pytest.raises(CapabilityError):
        C.add(NoEnergy())
    with pytest.raises(CapabilityError):
        C.add(NoRule())
    assert C.soft_constraints == [] and C.hard_constraints == []


def test_parameter_validation_at_add_time():
    C = bounded_model()
    with pytest.raises(ConfigurationError):
        C.add(Adhesion())
    with pytest.raises(ConfigurationError):
        C.add(VolumeConstraint(LAMBDA_V=[0, -1], V=[0, 10]))
    with pytest.raises(ConfigurationError):
        C.add(BarrierConstraint(IS_BARRIER=[0, 1]))
    with pytest.raises(ConfigurationError):
        C.add(ActivityConstraint(LAMBDA_ACT=[0, 1], MAX_ACT=[0, 5], ACT_MEAN="median"))


def test_number_of_kinds_must_agree():
    """The first per-kind parameter fixes the number of kinds for the model."""
    C = bounded_model(params={"J": [[0, 20], [20, 10]]})
    assert C.n_cell_kinds == 1
    with pytest.raises(ConfigurationError):
        C.add(VolumeConstraint(LAMBDA_V=[0, 1, 1], V=[0, 10, 10]))
    with pytest.raises(ConfigurationError):
        CPM(extents=(5, 5), params={"J": [[0, 20], [20]]})


def test_conf_dict_and_keywords_are_equivalent():
    a = Adhesion({"J": [[0, 1], [1, 0]]})
    b = Adhesion(J=[[0, 1], [1, 0]])
    assert a.conf == b.conf
    assert a.name == "Adhesion"


# ------------------------------------------------------------------ soft terms


def test_adhesion_delta_energy():
    C = bounded_model(params={"J": [[0, 20], [20, 0]]})
    cid = GridInitializer(C).seed_cell_at(1, (2, 2))
    adh = C.get_constraint("Adhesion")
    src, tgt = idx(C, (2, 2)), idx(C, (2, 3))
    # tgt would have 7 background neighbours instead of one foreign cell
    assert adh.delta_energy(src, tgt, cid, 0) == pytest.approx(7 * 20 - 20)
    # removing the only pixel loses all eight contacts
    assert adh.delta_energy(tgt, src, 0, cid) == pytest.approx(-8 * 20)


def test_volume_delta_energy():
    C = bounded_model(params={"LAMBDA_V": [0, 1], "V": [0, 5]})
    cid = GridInitializer(C).seed_cell_at(1, (2, 2))
    vol = C.get_constraint("VolumeConstraint")
    src, tgt = idx(C, (2, 2)), idx(C, (2, 3))
    assert vol.delta_energy(src, tgt, cid, 0) == pytest.approx((5 - 2) ** 2 - (5 - 1) ** 2)
    assert vol.delta_energy(tgt, src, 0, cid) == pytest.approx(5 ** 2 - 4 ** 2)


def test_perimeter_tracks_recount_during_simulation():
    """Incremental perimeters equal a from-scratch count after many MCS."""
    params = {
        "J": [[0, 20], [20, 10]],
        "LAMBDA_V": [0, 50],
        "V": [0, 30],
        "LAMBDA_P": [0, 2],
        "P": [0, 20],
    }
    C = CPM(extents=(30, 30), T=20, seed=4, params=params)
    GridInitializer(C).seed_cells_in_circle(1, 6, (15, 15), 10)
    perim = C.get_constraint("PerimeterConstraint")
    C.run(15)
    expected = recount_perimeters(C)
    tracked = {cid: p for cid, p in perim.cell_perimeters.items() if cid in C.registry}
    assert tracked == expected
    assert set(perim.cell_perimeters) <= set(C.live_cell_ids())


def test_perimeter_initialised_from_existing_cells():
    C = CPM(extents=(10, 10), seed=0)
    gi = GridInitializer(C)
    cid = gi.change_kind([(2, 2), (2, 3), (3, 2), (3, 3)], 1)
    perim = C.add(PerimeterConstraint(LAMBDA_P=[0, 1], P=[0, 8]))
    assert perim.perimeter_of(cid) == recount_perimeters(C)[cid] == 20


def test_activity_set_on_copy_and_decays():
    C = bounded_model(params={"LAMBDA_ACT": [0, 100], "MAX_ACT": [0, 3]})
    act = C.get_constraint("ActivityConstraint")
    assert act.conf["ACT_MEAN"] == "geometric"
    cid = GridInitializer(C).seed_cell_at(1, (2, 2))
    C.set_pixel((2, 3), cid)
    assert act.pxact(idx(C, (2, 3))) == 3
    assert act.activity_at(idx(C, (2, 3))) == pytest.approx(3.0)
    for expected in (2, 1):
        act.on_step()
        assert act.pxact(idx(C, (2, 3))) == expected
    act.on_step()
    assert act.cell_pixels_act == {}


def test_activity_arithmetic_mean():
    C = bounded_model(params={"LAMBDA_ACT": [0, 100], "MAX_ACT": [0, 4], "ACT_MEAN": "arithmetic"})
    act = C.get_constraint("ActivityConstraint")
    cid = GridInitializer(C).seed_cell_at(1, (2, 2))
    C.set_pixel((2, 3), cid)
    act.on_step()
    C.set_pixel((2, 1), cid)
    assert act.pxact(idx(C, (2, 1))) == 4
    # (2,1) is not a neighbour of (2,3); (2,2) and (2,3) both decayed to 3
    assert act.activity_at(idx(C, (2, 3))) == pytest.approx((3 + 3) / 2)
    assert act.activity_at(idx(C, (2, 2))) == pytest.approx((3 + 3 + 4) / 3)
    # copying background into an active cell is charged with the cell's parameters
    d = act.delta_energy(idx(C, (1, 3)), idx(C, (2, 3)), 0, cid)
    assert d == pytest.approx(100 * (act.activity_at(idx(C, (2, 3))) - 0) / 4)


def test_preferred_direction_and_attraction_point():
    C = bounded_model(size=9)
    cid = GridInitializer(C).seed_cell_at(1, (4, 4))
    pd = C.add(PreferredDirectionConstraint(LAMBDA_DIR=[0, 2], DIR=[[0, 0], [1, 0]]))
    src = idx(C, (4, 4))
    assert pd.delta_energy(src, idx(C, (5, 4)), cid, 0) == pytest.approx(-2)
    assert pd.delta_energy(src, idx(C, (3, 4)), cid, 0) == pytest.approx(2)
    assert pd.delta_energy(src, idx(C, (4, 5)), cid, 0) == pytest.approx(0)

    ap = C.add(AttractionPointConstraint(LAMBDA_ATTRACTIONPOINT=[0, 3], ATTRACTIONPOINT=[4, 8]))
    assert ap.delta_energy(src, idx(C, (4, 5)), cid, 0) == pytest.approx(-3)
    assert ap.delta_energy(src, idx(C, (5, 4)), cid, 0) == pytest.approx(0)
    with pytest.raises(ConfigurationError):
        C.add(AttractionPointConstraint(LAMBDA_ATTRACTIONPOINT=[0, 3], ATTRACTIONPOINT=[4]))


def test_chemotaxis_full_and_coarse_fields():
    C = bounded_model(size=10)
    cid = GridInitializer(C).seed_cell_at(1, (4, 4))
    field = Grid((10, 10), torus=(False, False), dtype=np.float64)
    field.values[:] = np.repeat(np.arange(10.0), 10)
    ch = C.add(ChemotaxisConstraint(LAMBDA_CH=[0, 5], CH_FIELD=field))
    assert ch.delta_energy(idx(C, (4, 4)), idx(C, (5, 4)), cid, 0) == pytest.approx(-5)

    coarse = CoarseGrid(C.grid, 5)
    coarse.set_value((1, 0), 5.0)
    coarse.set_value((1, 1), 5.0)
    ch2 = C.add(ChemotaxisConstraint(LAMBDA_CH=[0, 5], CH_FIELD=coarse))
    # the interpolated field rises by one per fine row up to row 5
    assert ch2.delta_energy(idx(C, (4, 4)), idx(C, (5, 4)), cid, 0) == pytest.approx(-5)
    assert ch2.delta_energy(idx(C, (3, 4)), idx(C, (4, 4)), 0, cid) == pytest.approx(0)
    assert ch2.field_at(idx(C, (3, 4))) == pytest.approx(3.0)
    assert ch2.delta_energy(idx(C, (4, 4)), idx(C, (4, 3)), cid, 0) == pytest.approx(0)

    with pytest.raises(ConfigurationError):
        C.add(ChemotaxisConstraint(LAMBDA_CH=[0, 5], CH_FIELD=Grid((5, 5), dtype=np.float64)))


def test_persistence_assigns_directions():
    C = CPM(extents=(30, 30), T=20, seed=2, params={"J": [[0, 20], [20, 10]], "LAMBDA_V": [0, 50], "V": [0, 25]})
    gi = GridInitializer(C)
    cid = gi.change_kind([(x, y) for x in range(13, 18) for y in range(13, 18)], 1)
    pers = C.add(PersistenceConstraint(LAMBDA_DIR=[0, 5], PERSIST=[0, 0.8], DELTA_T=[0, 3]))
    C.run(8)
    assert cid in pers.cell_directions
    norm = float(np.linalg.norm(pers.cell_directions[cid]))
    assert np.isclose(norm, 1.0) or np.isclose(norm, 5.0)
    assert len(pers.cell_centroid_lists[cid]) < 3


# ------------------------------------------------------------------ hard rules


def test_barrier_constraint():
    C = bounded_model(params={"IS_BARRIER": [False, True, False]})
    gi = GridInitializer(C)
    wall = gi.seed_cell_at(1, (2, 2))
    cell = gi.seed_cell_at(2, (0, 0))
    bar = C.get_constraint("BarrierConstraint")
    assert not bar.permits(idx(C, (2, 2)), idx(C, (2, 3)), wall, 0)
    assert not bar.permits(idx(C, (2, 3)), idx(C, (2, 2)), 0, wall)
    assert bar.permits(idx(C, (0, 0)), idx(C, (0, 1)), cell, 0)


def test_hard_volume_range():
    C = bounded_model()
    gi = GridInitializer(C)
    cid = gi.change_kind([(1, 1), (1, 2)], 1)
    rng = C.add(HardVolumeRangeConstraint(LAMBDA_VRANGE_MIN=[0, 2], LAMBDA_VRANGE_MAX=[0, 2]))
    assert not rng.permits(idx(C, (1, 2)), idx(C, (1, 3)), cid, 0), "would exceed the maximum"
    assert not rng.permits(idx(C, (0, 2)), idx(C, (1, 2)), 0, cid), "would drop below the minimum"


def test_local_connectivity_constraint():
    C = bounded_model(connectivity=False)
    gi = GridInitializer(C)
    cid = gi.change_kind([(2, 1), (2, 2), (2, 3)], 1)
    lc = C.add(LocalConnectivityConstraint(CONNECTED=[False, True]))
    middle, end = idx(C, (2, 2)), idx(C, (2, 3))
    assert not lc.permits(idx(C, (1, 2)), middle, 0, cid)
    assert lc.permits(idx(C, (1, 3)), end, 0, cid)


# bar whose middle pixel holds it together, and a ring that is only closed
# through pixels outside the 3x3 box around (3, 3)
BAR = [(3, 2), (3, 3), (3, 4)]
RING = BAR + [(4, 1), (5, 2), (5, 3), (5, 4), (4, 5)]


def test_connectivity_constraint_uses_the_whole_cell():
    C = bounded_model(size=7, connectivity=False)
    gi = GridInitializer(C)
    ring = gi.change_kind(RING, 1)
    cc = C.add(ConnectivityConstraint(CONNECTED=[False, True]))
    centre = idx(C, (3, 3))
    assert cc.permits(idx(C, (2, 3)), centre, 0, ring), "the ring stays whole without its centre"
    lc = C.add(LocalConnectivityConstraint(CONNECTED=[False, True]))
    assert not lc.permits(idx(C, (2, 3)), centre, 0, ring), "the local check cannot see the detour"

    B = bounded_model(size=7, connectivity=False)
    bar = GridInitializer(B).change_kind(BAR, 1)
    cb = B.add(ConnectivityConstraint(CONNECTED=[False, True]))
    assert not cb.permits(idx(B, (2, 3)), idx(B, (3, 3)), 0, bar)
    assert cb.permits(idx(B, (2, 4)), idx(B, (3, 4)), 0, bar)
    assert cb.permits(idx(B, (3, 3)), idx(B, (2, 3)), bar, 0), "background targets are never refused"

    loose = bounded_model(size=7, connectivity=False)
    cid = GridInitializer(loose).change_kind(BAR, 1)
    free = loose.add(ConnectivityConstraint(CONNECTED=[False, False]))
    assert free.permits(idx(loose, (2, 3)), idx(loose, (3, 3)), 0, cid)


def test_border_constraint_blocks_listed_pixels():
    C = bounded_model()
    bc = C.add(BorderConstraint(BARRIER_VOXELS=[[0, 0], [1, 1]]))
    assert not bc.permits(idx(C, (1, 2)), idx(C, (1, 1)), 0, 0)
    assert bc.permits(idx(C, (1, 1)), idx(C, (2, 2)), 0, 0)
    bc.set_barrier_voxels([[2, 2]])
    assert bc.permits(idx(C, (1, 2)), idx(C, (1, 1)), 0, 0)
    assert not bc.permits(idx(C, (1, 1)), idx(C, (2, 2)), 0, 0)
    with pytest.raises(ConfigurationError):
        C.add(BorderConstraint(BARRIER_VOXELS=[[9, 9]]))
    with pytest.raises(ConfigurationError):
        C.add(BorderConstraint(BARRIER_VOXELS=[[1]]))


def test_soft_connectivity_penalises_splits():
    C = bounded_model(size=7, connectivity=False)
    bar = GridInitializer(C).change_kind(BAR, 1)
    sc = C.add(SoftConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 100]))
    # two single pixels: connectivity 0.5, penalty 100 * 0.5^2
    assert sc.delta_energy(idx(C, (2, 3)), idx(C, (3, 3)), 0, bar) == pytest.approx(25)
    assert sc.delta_energy(idx(C, (2, 4)), idx(C, (3, 4)), 0, bar) == 0

    R = bounded_model(size=7, connectivity=False)
    ring = GridInitializer(R).change_kind(RING, 1)
    sr = R.add(SoftConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 100]))
    assert sr.delta_energy(idx(R, (2, 3)), idx(R, (3, 3)), 0, ring) == pytest.approx(0)


def test_soft_local_connectivity_neighbourhoods():
    """An L corner is split under von Neumann linking but not under Moore."""
    corner = [(2, 2), (2, 3), (3, 2)]
    C = bounded_model()
    cid = GridInitializer(C).change_kind(corner, 1)
    neumann = C.add(SoftLocalConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 30]))
    moore = C.add(SoftLocalConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 30], NBH_TYPE="Moore"))
    tgt = idx(C, (2, 2))
    assert neumann.delta_energy(idx(C, (1, 2)), tgt, 0, cid) == 30
    assert moore.delta_energy(idx(C, (1, 2)), tgt, 0, cid) == 0
    assert neumann.delta_energy(idx(C, (1, 3)), idx(C, (2, 3)), 0, cid) == 0

    with pytest.raises(ConfigurationError):
        C.add(SoftLocalConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 30], NBH_TYPE="Hex"))
    with pytest.raises(ConfigurationError):
        CPM(extents=(4, 4, 4), seed=0).add(SoftLocalConnectivityConstraint(LAMBDA_CONNECTIVITY=[0, 1]))


def test_adhesion_multi_background():
    C = bounded_model()
    cid = GridInitializer(C).seed_cell_at(1, (2, 2))
    J = [[0, 10], [10, 0]]
    plain = C.add(Adhesion(J=J))
    single = C.add(AdhesionMultiBackground(J_MULTI=J, BACKGROUND_VOXELS=[[[0, 0]]]))
    src, tgt = idx(C, (2, 1)), idx(C, (2, 2))
    assert single.delta_energy(src, tgt, 0, cid) == pytest.approx(plain.delta_energy(src, tgt, 0, cid))

    multi = C.add(
        AdhesionMultiBackground(J_MULTI=[[0, 10], [10, 4]], BACKGROUND_VOXELS=[[], [[2, 3]]])
    )
    # seven type-0 neighbours at 10 plus one type-1 neighbour at 4
    assert multi.H(tgt, cid) == pytest.approx(74)
    # as background, (2, 2) only feels the type-1 neighbour
    assert multi.H(tgt, 0) == pytest.approx(10)
    assert multi.delta_energy(src, tgt, 0, cid) == pytest.approx(-64)

    with pytest.raises(ConfigurationError):
        C.add(AdhesionMultiBackground(J_MULTI=J, BACKGROUND_VOXELS=[[], [], [[1, 1]]]))


def test_activity_multi_background():
    C = bounded_model()
    cid = GridInitializer(C).change_kind([(2, 2), (2, 3)], 1)
    amb = C.add(
        ActivityMultiBackground(
            LAMBDA_ACT_MBG=[[0, 0], [100, 0]],
            MAX_ACT=[0, 10],
            BACKGROUND_VOXELS=[[], [[2, 3]]],
        )
    )
    amb.cell_pixels_act[idx(C, (2, 2))] = 10
    amb.cell_pixels_act[idx(C, (2, 3))] = 10
    assert amb.delta_energy(idx(C, (2, 2)), idx(C, (1, 2)), cid, 0) == pytest.approx(-100)
    assert amb.delta_energy(idx(C, (2, 3)), idx(C, (1, 3)), cid, 0) == 0, "no activity push on type 1"
    assert amb.delta_energy(idx(C, (1, 2)), idx(C, (2, 2)), 0, cid) == pytest.approx(100)

    with pytest.raises(ConfigurationError):
        C.add(ActivityMultiBackground(LAMBDA_ACT_MBG=[[0], [1]], MAX_ACT=[0, 10], BACKGROUND_VOXELS=[[]]))
    with pytest.raises(ConfigurationError):
        C.add(
            ActivityMultiBackground(
                LAMBDA_ACT_MBG=[[0, 0], [1, 2, 3]], MAX_ACT=[0, 10], BACKGROUND_VOXELS=[[], []]
            )
        )


def test_protrusion_focal_points():
    C = bounded_model(size=7)
    cid = GridInitializer(C).change_kind([(x, y) for x in range(2, 5) for y in range(2, 5)], 1)
    pc = C.add(ProtrusionConstraint(P_DETACH=[0, 7], G_PROTRUSION=[0, 6], FOCAL_POINTS=[[3, 4]]))
    focal = idx(C, (3, 4))
    assert pc.is_focal_point(focal)
    assert pc.delta_energy(idx(C, (3, 5)), focal, 0, cid) == pytest.approx(7)
    # centroid (3, 3): distance 1 before, 2 after
    assert pc.delta_energy(focal, idx(C, (3, 5)), cid, 0) == pytest.approx(6 / 2 - 6 / 1)
    assert pc.delta_energy(idx(C, (2, 2)), idx(C, (1, 2)), cid, 0) == 0

    C.set_pixel((3, 4), 0)
    assert not pc.is_focal_point(focal), "an overwritten focal point detaches"
    with pytest.raises(ConfigurationError):
        C.add(ProtrusionConstraint(P_DETACH=[0, 7], G_PROTRUSION=[0, 6], FOCAL_POINTS=[[3, 7]]))
