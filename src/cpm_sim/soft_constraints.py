"""
Energy terms of the CPM Hamiltonian.

Every class here is a ``SoftConstraint``: it returns the change in its energy
term for a proposed copy of pixel ``src_i`` (cell ``src_id``) into pixel
``tgt_i`` (cell ``tgt_id``). Terms that need per-cell or per-pixel memory keep
it in their own dictionaries and update it from the model's ``on_accept`` and
``on_step`` hooks.

Key Features:
1.  **Adhesion:** contact energy between neighbouring pixels of different
    cells, indexed by the pair of CellKinds.
2.  **Volume / Perimeter:** quadratic penalties on the deviation from a target
    volume or perimeter per CellKind. Perimeters are tracked incrementally.
3.  **Activity (Act model):** recently conquered pixels carry an activity that
    decays by one every MCS; protrusions into active regions are favoured.
4.  **Directed motion:** persistence of a cell's own displacement, a fixed
    preferred direction, an attraction point and chemotaxis up a field.
5.  **Background types:** adhesion and activity variants that read extra
    background kinds from fixed sets of sites.
6.  **Soft connectivity and protrusions:** penalties for splitting cells and
    focal points that cells pull away from.
"""

from __future__ import annotations

import math
from typing import Dict, List

import numpy as np

from .connectivity import connected_components, connectivity_score, local_component_count
from .constraints import KIND_ARRAY, KIND_MATRIX, SINGLE_VALUE, ParameterChecker, SoftConstraint
from .errors import ConfigurationError
from .lattice import CoarseGrid, Grid

###############################################################################
# Helpers
###############################################################################


def _torus_delta(dx: float, extent: int, periodic: bool) -> float:
    """Shortest displacement along a periodic dimension."""
    if periodic:
        half = extent / 2
        if dx > half:
            dx -= extent
        elif dx < -half:
            dx += extent
    return dx


def _normalize(v: np.ndarray) -> np.ndarray:
    norm = float(np.sqrt(np.dot(v, v)))
    if norm == 0.0 or not np.isfinite(norm):
        return np.full_like(v, np.nan, dtype=float)
    return v / norm


def centroid_with_torus_correction(grid: Grid, indices: List[int]) -> np.ndarray:
    """
    Mean position of ``indices``, corrected for cells that cross a periodic edge.

    The mean is accumulated online; a pixel further than half the extent from
    the running mean is taken to lie on the other side of the torus. Assumes a
    cell never spans more than half of the grid.
    """
    coords = np.array([grid.index_to_coordinate(i) for i in indices], dtype=float)
    out = np.zeros(grid.ndim)
    for d in range(grid.ndim):
        extent = grid.extents[d]
        m = 0.0
        for j, c in enumerate(coords[:, d]):
            dx = c - m
            if j > 0:
                dx = _torus_delta(dx, extent, grid.torus[d])
            m += dx / (j + 1)
        if m < 0:
            m += extent
        elif m > extent:
            m -= extent
        out[d] = m
    return out


###############################################################################
# Adhesion
###############################################################################


class Adhesion(SoftConstraint):
    """
    Contact energy between cells.

    Parameters:
        J: KindMatrix of interaction energies. ``J[k1][k2]`` is paid for every
           neighbour pair of different cells with kinds ``k1`` and ``k2``.
    """

    def check_parameters(self) -> None:
        ParameterChecker(self.conf, self.C).check_parameter("J", KIND_MATRIX, "Number")

    def post_add(self) -> None:
        self._J = np.asarray(self.conf["J"], dtype=float)

    def H(self, i: int, cell_id: int) -> float:
        """Adhesion energy of pixel ``i`` if it belonged to ``cell_id``."""
        C = self.C
        values = C.grid.values
        k = C.kind_of(cell_id)
        r = 0.0
        for ni in C.grid.neighbors(i).tolist():
            if ni == i:
                continue
            nid = int(values[ni])
            if nid != cell_id:
                r += self._J[k, C.kind_of(nid)]
        return r

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        return self.H(tgt_i, src_id) - self.H(tgt_i, tgt_id)


###############################################################################
# Volume
###############################################################################


class VolumeConstraint(SoftConstraint):
    """
    Quadratic penalty on volume deviation: ``LAMBDA_V * (v - V)^2``.

    Parameters:
        LAMBDA_V: KindArray, non-negative strength per kind.
        V: KindArray, non-negative target volume per kind.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_V", KIND_ARRAY, "NonNegative")
        checker.check_parameter("V", KIND_ARRAY, "NonNegative")

    def volume_energy(self, vgain: int, cell_id: int) -> float:
        if cell_id == 0:
            return 0.0
        lam = self.cell_parameter("LAMBDA_V", cell_id)
        if lam == 0:
            return 0.0
        vdiff = self.cell_parameter("V", cell_id) - (self.C.volume_of(cell_id) + vgain)
        return lam * vdiff * vdiff

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        gain = self.volume_energy(1, src_id) - self.volume_energy(0, src_id)
        loss = self.volume_energy(-1, tgt_id) - self.volume_energy(0, tgt_id)
        return gain + loss


###############################################################################
# Perimeter
###############################################################################


class PerimeterConstraint(SoftConstraint):
    """
    Quadratic penalty on perimeter deviation: ``LAMBDA_P * (p - P)^2``.

    The perimeter of a cell is the number of (pixel, neighbour) pairs where the
    pixel belongs to the cell and the neighbour does not. Totals are built from
    the model's border counts when the constraint is attached and updated on
    every accepted copy.

    Parameters:
        LAMBDA_P: KindArray, non-negative strength per kind.
        P: KindArray, non-negative target perimeter per kind.
    """

    def __init__(self, conf=None, **params) -> None:
        super().__init__(conf, **params)
        self.cell_perimeters: Dict[int, int] = {}

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_P", KIND_ARRAY, "NonNegative")
        checker.check_parameter("P", KIND_ARRAY, "NonNegative")

    def post_add(self) -> None:
        self.initialize_perimeters()

    def initialize_perimeters(self) -> None:
        self.cell_perimeters = {}
        for i, cid in self.C.cell_border_pixel_indices():
            self.cell_perimeters[cid] = self.cell_perimeters.get(cid, 0) + self.C.border_count(i)

    def perimeter_of(self, cell_id: int) -> int:
        return self.cell_perimeters.get(cell_id, 0)

    def on_accept(self, index, old_id, new_id) -> None:
        if old_id == new_id:
            return
        values = self.C.grid.values
        perims = self.cell_perimeters
        n_new = n_old = 0
        for ni in self.C.grid.neighbors(index).tolist():
            if ni == index:
                continue
            nt = int(values[ni])
            if nt != new_id:
                n_new += 1
            if nt != old_id:
                n_old += 1
            if nt != 0:
                if nt == old_id:
                    perims[nt] = perims.get(nt, 0) + 1
                elif nt == new_id:
                    perims[nt] = perims.get(nt, 0) - 1
        if old_id != 0:
            if old_id in self.C.registry:
                perims[old_id] = perims.get(old_id, 0) - n_old
            else:
                perims.pop(old_id, None)
        if new_id != 0:
            perims[new_id] = perims.get(new_id, 0) + n_new

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        if src_id == tgt_id:
            return 0.0
        ls = self.cell_parameter("LAMBDA_P", src_id) if src_id != 0 else 0
        lt = self.cell_parameter("LAMBDA_P", tgt_id) if tgt_id != 0 else 0
        if not (ls > 0) and not (lt > 0):
            return 0.0

        d_src = d_tgt = 0
        values = self.C.grid.values
        for ni in self.C.grid.neighbors(tgt_i).tolist():
            if ni == tgt_i:
                continue
            nt = int(values[ni])
            if nt != src_id:
                d_src += 1
            else:
                d_src -= 1
            if nt != tgt_id:
                d_tgt -= 1
            else:
                d_tgt += 1

        r = 0.0
        if ls > 0:
            target = self.cell_parameter("P", src_id)
            p = self.perimeter_of(src_id)
            r += ls * ((p + d_src - target) ** 2 - (p - target) ** 2)
        if lt > 0:
            target = self.cell_parameter("P", tgt_id)
            p = self.perimeter_of(tgt_id)
            r += lt * ((p + d_tgt - target) ** 2 - (p - target) ** 2)
        return r


###############################################################################
# Activity
###############################################################################


class ActivityConstraint(SoftConstraint):
    """
    Act model of Niculescu, Textor and de Boer (2015).

    A pixel gets activity ``MAX_ACT`` of its cell's kind when it is copied
    into, and loses one unit of activity per MCS. The local activity around a
    pixel is the geometric or arithmetic mean over the pixel and its
    neighbours in the same cell.

    Parameters:
        LAMBDA_ACT: KindArray, non-negative strength per kind.
        MAX_ACT: KindArray, non-negative maximum activity per kind.
        ACT_MEAN: ``"geometric"`` (default) or ``"arithmetic"``.
    """

    def __init__(self, conf=None, **params) -> None:
        super().__init__(conf, **params)
        self.conf.setdefault("ACT_MEAN", "geometric")
        self.cell_pixels_act: Dict[int, float] = {}

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("ACT_MEAN", SINGLE_VALUE, "String", ("geometric", "arithmetic"))
        checker.check_parameter("LAMBDA_ACT", KIND_ARRAY, "NonNegative")
        checker.check_parameter("MAX_ACT", KIND_ARRAY, "NonNegative")

    def post_add(self) -> None:
        if self.conf["ACT_MEAN"] == "arithmetic":
            self.activity_at = self.activity_at_arith
        else:
            self.activity_at = self.activity_at_geom

    def pxact(self, i: int) -> float:
        return self.cell_pixels_act.get(i, 0)

    def _same_cell_neighbors(self, i: int, cell_id: int) -> List[int]:
        values = self.C.grid.values
        return [ni for ni in self.C.grid.neighbors(i).tolist() if ni != i and values[ni] == cell_id]

    def activity_at_arith(self, i: int) -> float:
        t = int(self.C.grid.values[i])
        if t <= 0:
            return 0.0
        r = self.pxact(i)
        nbrs = self._same_cell_neighbors(i, t)
        for ni in nbrs:
            r += self.pxact(ni)
        return r / (len(nbrs) + 1)

    def activity_at_geom(self, i: int) -> float:
        t = int(self.C.grid.values[i])
        if t <= 0:
            return 0.0
        r = self.pxact(i)
        nbrs = self._same_cell_neighbors(i, t)
        for ni in nbrs:
            a = self.pxact(ni)
            if a == 0:
                return 0.0
            r *= a
        return r ** (1.0 / (len(nbrs) + 1))

    activity_at = activity_at_geom

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        # a retraction into the background is charged with the target's parameters
        owner = src_id if src_id != 0 else tgt_id
        max_act = self.cell_parameter("MAX_ACT", owner)
        lambda_act = self.cell_parameter("LAMBDA_ACT", owner)
        if not max_act or not lambda_act:
            return 0.0
        return lambda_act * (self.activity_at(tgt_i) - self.activity_at(src_i)) / max_act

    def on_accept(self, index, old_id, new_id) -> None:
        act = self.conf["MAX_ACT"][self.C.kind_of(new_id)]
        if act > 0:
            self.cell_pixels_act[index] = act
        else:
            self.cell_pixels_act.pop(index, None)

    def on_step(self) -> None:
        for key in list(self.cell_pixels_act):
            self.cell_pixels_act[key] -= 1
            if self.cell_pixels_act[key] <= 0:
                del self.cell_pixels_act[key]


###############################################################################
# Directed motion
###############################################################################


class PersistenceConstraint(SoftConstraint):
    """
    Persistent random walk.

    Each cell with ``LAMBDA_DIR > 0`` keeps a target direction. After every
    MCS the direction is blended with the cell's displacement over the last
    ``DELTA_T`` steps: ``PERSIST = 1`` keeps the old direction, lower values
    follow the actual motion more closely. A cell that has not moved gets a
    fresh random direction.

    Parameters:
        LAMBDA_DIR: KindArray, non-negative strength per kind.
        PERSIST: KindArray of probabilities.
        DELTA_T: optional KindArray of window lengths in MCS (default 10).
    """

    def __init__(self, conf=None, **params) -> None:
        super().__init__(conf, **params)
        self.cell_centroid_lists: Dict[int, List[np.ndarray]] = {}
        self.cell_directions: Dict[int, np.ndarray] = {}

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_DIR", KIND_ARRAY, "NonNegative")
        checker.check_parameter("PERSIST", KIND_ARRAY, "Probability")
        if self.conf.get("DELTA_T") is not None:
            checker.check_parameter("DELTA_T", KIND_ARRAY, "NonNegative")

    def random_direction(self, n: int) -> np.ndarray:
        while True:
            d = _normalize(self.C.rng.standard_normal(n))
            if not np.isnan(d).any():
                return d

    def set_direction(self, cell_id: int, direction) -> None:
        self.cell_directions[cell_id] = np.asarray(direction, dtype=float)

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        if src_id == 0 or src_id not in self.cell_directions:
            return 0.0
        grid = self.C.grid
        b = self.cell_directions[src_id]
        p1 = grid.index_to_coordinate(src_i)
        p2 = grid.index_to_coordinate(tgt_i)
        dp = 0.0
        for d in range(grid.ndim):
            dp += _torus_delta(p2[d] - p1[d], grid.extents[d], grid.torus[d]) * b[d]
        return -dp

    def _delta_t(self, cell_id: int) -> int:
        dts = self.conf.get("DELTA_T")
        if dts is not None and dts[self.C.kind_of(cell_id)]:
            return int(self.cell_parameter("DELTA_T", cell_id))
        return 10

    def on_step(self) -> None:
        C = self.C
        grid = C.grid
        live = set(C.live_cell_ids())
        for cid in [c for c in self.cell_directions if c not in live]:
            self.cell_directions.pop(cid, None)
            self.cell_centroid_lists.pop(cid, None)

        by_cell = C.pixels_by_cell()
        for cid in sorted(live):
            ld = self.cell_parameter("LAMBDA_DIR", cid)
            if ld == 0:
                self.cell_centroid_lists.pop(cid, None)
                self.cell_directions.pop(cid, None)
                continue
            if cid not in self.cell_centroid_lists:
                self.cell_centroid_lists[cid] = []
                self.cell_directions[cid] = self.random_direction(grid.ndim)

            ci = centroid_with_torus_correction(grid, by_cell[cid])
            history = self.cell_centroid_lists[cid]
            history.insert(0, ci)
            dt = self._delta_t(cid)
            if len(history) < dt:
                continue
            while len(history) >= dt:
                last = history.pop()
            dx = np.array(
                [_torus_delta(ci[d] - last[d], grid.extents[d], grid.torus[d]) for d in range(grid.ndim)]
            )
            per = self.cell_parameter("PERSIST", cid)
            if per < 1:
                dx = _normalize(dx)
                old = _normalize(self.cell_directions[cid])
                dx = _normalize((1 - per) * dx + per * old)
                if np.isnan(dx).any():
                    self.cell_directions[cid] = self.random_direction(grid.ndim)
                else:
                    self.cell_directions[cid] = dx * ld


class PreferredDirectionConstraint(SoftConstraint):
    """
    Bias copies along a fixed vector per kind.

    The energy change is ``-LAMBDA_DIR * (copy vector . DIR)``, unnormalised:
    supply ``DIR`` normalised or use its length as an extra strength.

    Parameters:
        LAMBDA_DIR: KindArray, non-negative strength per kind.
        DIR: one direction vector per kind.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_DIR", KIND_ARRAY, "NonNegative")
        checker.check_presence("DIR")
        checker.check_structure_kind_array(self.conf["DIR"], "DIR")
        for p in self.conf["DIR"]:
            if not checker.is_coordinate(p):
                raise ConfigurationError(
                    "DIR elements must be vectors with the same dimensions as the grid!"
                )

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        lam = self.cell_parameter("LAMBDA_DIR", src_id)
        if not lam:
            return 0.0
        grid = self.C.grid
        direction = self.cell_parameter("DIR", src_id)
        p1 = grid.index_to_coordinate(src_i)
        p2 = grid.index_to_coordinate(tgt_i)
        r = 0.0
        for d in range(grid.ndim):
            r += _torus_delta(p2[d] - p1[d], grid.extents[d], grid.torus[d]) * direction[d]
        return -r * lam


class AttractionPointConstraint(SoftConstraint):
    """
    Bias copies towards a fixed point on the grid.

    Parameters:
        LAMBDA_ATTRACTIONPOINT: KindArray, non-negative strength per kind.
        ATTRACTIONPOINT: coordinate of the point.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_ATTRACTIONPOINT", KIND_ARRAY, "NonNegative")
        checker.check_presence("ATTRACTIONPOINT")
        if not checker.is_coordinate(self.conf["ATTRACTIONPOINT"]):
            raise ConfigurationError(
                "ATTRACTIONPOINT must be a coordinate with the same dimensions as the grid!"
            )

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        lam = self.cell_parameter("LAMBDA_ATTRACTIONPOINT", src_id)
        if not lam:
            return 0.0
        grid = self.C.grid
        point = self.conf["ATTRACTIONPOINT"]
        p1 = grid.index_to_coordinate(src_i)
        p2 = grid.index_to_coordinate(tgt_i)
        r = 0.0
        ldir = 0.0
        for d in range(grid.ndim):
            dir_d = point[d] - p1[d]
            ldir += dir_d * dir_d
            r += _torus_delta(p2[d] - p1[d], grid.extents[d], grid.torus[d]) * dir_d
        if ldir == 0:
            return 0.0
        return -r * lam / math.sqrt(ldir)


class ChemotaxisConstraint(SoftConstraint):
    """
    Favour copies up the gradient of a chemokine field.

    Parameters:
        LAMBDA_CH: KindArray, non-negative strength per kind.
        CH_FIELD: float ``Grid`` with the extents of the model grid, or a
            ``CoarseGrid`` coupled to it.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_CH", KIND_ARRAY, "NonNegative")
        checker.check_presence("CH_FIELD")
        field = self.conf["CH_FIELD"]
        if isinstance(field, CoarseGrid):
            if field.fine.extents != self.C.grid.extents:
                raise ConfigurationError("CH_FIELD is coupled to a grid of a different size")
        elif isinstance(field, Grid):
            if not field.is_field or field.extents != self.C.grid.extents:
                raise ConfigurationError(
                    "CH_FIELD must be a float grid with the extents of the model grid"
                )
        else:
            raise ConfigurationError("CH_FIELD must be a Grid or CoarseGrid")

    def post_add(self) -> None:
        self.field = self.conf["CH_FIELD"]

    def field_at(self, i: int) -> float:
        if isinstance(self.field, CoarseGrid):
            return self.field.value_at_fine_index(i)
        return float(self.field.values[i])

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        delta = self.field_at(tgt_i) - self.field_at(src_i)
        return -delta * self.cell_parameter("LAMBDA_CH", src_id)


###############################################################################
# Multiple backgrounds
###############################################################################


def _background_map(checker: ParameterChecker, voxels, name: str, min_groups: int = 1) -> np.ndarray:
    """
    Background type of every site: ``b`` for the sites listed in
    ``voxels[b]``, 0 elsewhere. A site listed twice takes the later group.
    """
    if not isinstance(voxels, (list, tuple)) or len(voxels) < min_groups:
        raise ConfigurationError(
            f"Parameter {name} should be an array of at least {min_groups} arrays of coordinates!"
        )
    grid = checker.C.grid
    bg = np.zeros(grid.size, dtype=np.int64)
    for b, group in enumerate(voxels):
        checker.check_coordinate_list(group, f"{name}[{b}]")
        for v in group:
            bg[grid.coordinate_to_index(v)] = b
    return bg


class AdhesionMultiBackground(Adhesion):
    """
    Adhesion with several background types.

    Only the background id 0 is on the grid, but a background pixel listed
    in ``BACKGROUND_VOXELS[b]`` interacts as kind ``b`` in ``J_MULTI``.
    Contacts between two background pixels are charged too, so regions of
    different background type can have an energy of their own.

    Parameters:
        J_MULTI: KindMatrix of interaction energies.
        BACKGROUND_VOXELS: list of coordinate lists, one per background type.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("J_MULTI", KIND_MATRIX, "Number")
        checker.check_presence("BACKGROUND_VOXELS")
        groups = self.conf["BACKGROUND_VOXELS"]
        if isinstance(groups, (list, tuple)) and len(groups) > len(self.conf["J_MULTI"]):
            raise ConfigurationError("BACKGROUND_VOXELS lists more background types than J_MULTI has rows")
        _background_map(checker, groups, "BACKGROUND_VOXELS")

    def post_add(self) -> None:
        self._J = np.asarray(self.conf["J_MULTI"], dtype=float)
        self.set_background_voxels(self.conf["BACKGROUND_VOXELS"])

    def set_background_voxels(self, voxels) -> None:
        self.bg_kind = _background_map(ParameterChecker(self.conf, self.C), voxels, "BACKGROUND_VOXELS")

    def H(self, i: int, cell_id: int) -> float:
        C = self.C
        values = C.grid.values
        bg = self.bg_kind
        k = C.kind_of(cell_id) if cell_id != 0 else bg[i]
        r = 0.0
        for ni in C.grid.neighbors(i).tolist():
            if ni == i:
                continue
            nid = int(values[ni])
            if nid != cell_id or nid == 0:
                kn = C.kind_of(nid) if nid != 0 else bg[ni]
                r += self._J[k, kn]
        return r


class ActivityMultiBackground(ActivityConstraint):
    """
    Act model whose strength depends on where the copy happens.

    ``LAMBDA_ACT_MBG[k][b]`` replaces ``LAMBDA_ACT[k]`` at sites of background
    type ``b``; sites not listed in ``BACKGROUND_VOXELS`` are type 0. The
    type is looked up at the source pixel for extensions and at the target
    pixel for retractions.

    Parameters:
        LAMBDA_ACT_MBG: KindArray of non-negative lists, one entry per
            background type.
        MAX_ACT: KindArray, non-negative maximum activity per kind.
        BACKGROUND_VOXELS: at least two coordinate lists.
        ACT_MEAN: ``"geometric"`` (default) or ``"arithmetic"``.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("ACT_MEAN", SINGLE_VALUE, "String", ("geometric", "arithmetic"))
        checker.check_parameter("MAX_ACT", KIND_ARRAY, "NonNegative")
        checker.check_presence("LAMBDA_ACT_MBG")
        checker.check_presence("BACKGROUND_VOXELS")
        lambdas = self.conf["LAMBDA_ACT_MBG"]
        checker.check_structure_kind_array(lambdas, "LAMBDA_ACT_MBG")
        n_bg = len(self.conf["BACKGROUND_VOXELS"]) if isinstance(
            self.conf["BACKGROUND_VOXELS"], (list, tuple)
        ) else 0
        for row in lambdas:
            if not isinstance(row, (list, tuple, np.ndarray)) or len(row) != n_bg:
                raise ConfigurationError(
                    "Elements of LAMBDA_ACT_MBG must list one value per background type!"
                )
            for v in row:
                if not checker.is_non_negative(v):
                    raise ConfigurationError("Elements of LAMBDA_ACT_MBG must be non-negative numbers!")
        _background_map(checker, self.conf["BACKGROUND_VOXELS"], "BACKGROUND_VOXELS", min_groups=2)

    def post_add(self) -> None:
        super().post_add()
        self.set_background_voxels(self.conf["BACKGROUND_VOXELS"])

    def set_background_voxels(self, voxels) -> None:
        self.bg_kind = _background_map(
            ParameterChecker(self.conf, self.C), voxels, "BACKGROUND_VOXELS", min_groups=2
        )

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        if src_id != 0:
            owner, site = src_id, src_i
        else:
            owner, site = tgt_id, tgt_i
        max_act = self.cell_parameter("MAX_ACT", owner)
        lambda_act = self.cell_parameter("LAMBDA_ACT_MBG", owner)[self.bg_kind[site]]
        if not max_act or not lambda_act:
            return 0.0
        return lambda_act * (self.activity_at(tgt_i) - self.activity_at(src_i)) / max_act


###############################################################################
# Connectivity
###############################################################################


class SoftConnectivityConstraint(SoftConstraint):
    """
    Penalise copies that split a cell, more so for even splits.

    The connectivity of a cell is 1 when it is whole and otherwise the sum of
    squared size fractions of its pieces (``connectivity_score``). A copy
    costs ``LAMBDA_CONNECTIVITY * ((1 - c_after)^2 - (1 - c_before)^2)``.
    Copies that pass the local connectivity check cost nothing and skip the
    flood fill. Meant for models built with ``connectivity=False``.

    Parameters:
        LAMBDA_CONNECTIVITY: KindArray, non-negative strength per kind.
    """

    def check_parameters(self) -> None:
        ParameterChecker(self.conf, self.C).check_parameter(
            "LAMBDA_CONNECTIVITY", KIND_ARRAY, "NonNegative"
        )

    def connectivity_change(self, tgt_i: int, cell_id: int) -> float:
        grid = self.C.grid
        pixels = self.C.pixels_of_cell(cell_id).indices()
        before = connectivity_score(connected_components(grid, pixels))
        after = connectivity_score(connected_components(grid, [i for i in pixels if i != tgt_i]))
        return (1.0 - after) ** 2 - (1.0 - before) ** 2

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        if tgt_id == 0:
            return 0.0
        lam = self.cell_parameter("LAMBDA_CONNECTIVITY", tgt_id)
        if not lam > 0:
            return 0.0
        if local_component_count(self.C.grid, tgt_i, tgt_id) <= 1:
            return 0.0
        return lam * self.connectivity_change(tgt_i, tgt_id)


class SoftLocalConnectivityConstraint(SoftConstraint):
    """
    Flat penalty for copies that break a cell up locally (2D only).

    The same-cell neighbours of the target are linked through each other with
    a von Neumann (default) or Moore neighbourhood; more than one piece costs
    ``LAMBDA_CONNECTIVITY``. The Moore variant is more permissive and needs a
    larger penalty.

    Parameters:
        LAMBDA_CONNECTIVITY: KindArray, non-negative strength per kind.
        NBH_TYPE: ``"Neumann"`` (default) or ``"Moore"``.
    """

    def __init__(self, conf=None, **params) -> None:
        super().__init__(conf, **params)
        self.conf.setdefault("NBH_TYPE", "Neumann")

    def check_parameters(self) -> None:
        if self.C.ndim != 2:
            raise ConfigurationError(
                "SoftLocalConnectivityConstraint is only supported on 2D grids"
            )
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_CONNECTIVITY", KIND_ARRAY, "NonNegative")
        checker.check_parameter("NBH_TYPE", SINGLE_VALUE, "String", ("Neumann", "Moore"))

    def post_add(self) -> None:
        grid = self.C.grid
        self._link = grid.neumann_table() if self.conf["NBH_TYPE"] == "Neumann" else grid.box_table()

    def is_disconnected(self, tgt_i: int, cell_id: int) -> bool:
        grid = self.C.grid
        values = grid.values
        nbrs = [n for n in grid.neighbors(tgt_i).tolist() if n != tgt_i and values[n] == cell_id]
        return len(connected_components(grid, nbrs, table=self._link)) > 1

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        if tgt_id == 0:
            return 0.0
        lam = self.cell_parameter("LAMBDA_CONNECTIVITY", tgt_id)
        if lam > 0 and self.is_disconnected(tgt_i, tgt_id):
            return float(lam)
        return 0.0


###############################################################################
# Protrusions
###############################################################################


class ProtrusionConstraint(SoftConstraint):
    """
    Focal points that anchor a cell to the substrate.

    Overwriting a focal point costs ``P_DETACH`` of the losing cell's kind,
    and the point is gone once such a copy is accepted. A copy out of a focal
    point changes the energy by ``G / d_target - G / d_source``, with ``d``
    the distance to the source cell's centroid, so cells extend away from
    their focal points.

    Parameters:
        P_DETACH: KindArray, non-negative detachment cost per kind.
        G_PROTRUSION: KindArray, non-negative protrusion strength per kind.
        FOCAL_POINTS: optional list of coordinates to start with.
    """

    def __init__(self, conf=None, **params) -> None:
        super().__init__(conf, **params)
        self.focal_points: set = set()

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("P_DETACH", KIND_ARRAY, "NonNegative")
        checker.check_parameter("G_PROTRUSION", KIND_ARRAY, "NonNegative")
        if self.conf.get("FOCAL_POINTS") is not None:
            checker.check_coordinate_list(self.conf["FOCAL_POINTS"], "FOCAL_POINTS")

    def post_add(self) -> None:
        for p in self.conf.get("FOCAL_POINTS") or []:
            self.add_focal_point(p)

    def add_focal_point(self, p) -> None:
        self.C.grid.check_on_grid(p)
        self.focal_points.add(self.C.grid.coordinate_to_index(p))

    def remove_focal_point(self, p) -> None:
        self.focal_points.discard(self.C.grid.coordinate_to_index(p))

    def is_focal_point(self, i: int) -> bool:
        return i in self.focal_points

    def _distance(self, i: int, centroid: np.ndarray) -> float:
        grid = self.C.grid
        p = grid.index_to_coordinate(i)
        s = 0.0
        for d in range(grid.ndim):
            dx = _torus_delta(p[d] - centroid[d], grid.extents[d], grid.torus[d])
            s += dx * dx
        return math.sqrt(s)

    def delta_energy(self, src_i, tgt_i, src_id, tgt_id) -> float:
        r = 0.0
        if tgt_i in self.focal_points:
            r += self.conf["P_DETACH"][self.C.kind_of(tgt_id)]
        if src_id != 0 and src_i in self.focal_points:
            g = self.cell_parameter("G_PROTRUSION", src_id)
            if g:
                centroid = centroid_with_torus_correction(
                    self.C.grid, self.C.pixels_of_cell(src_id).indices()
                )
                d_src = self._distance(src_i, centroid)
                d_tgt = self._distance(tgt_i, centroid)
                # a focal point on the centroid has no defined potential
                if d_src > 0 and d_tgt > 0:
                    r += g / d_tgt - g / d_src
        return r

    def on_accept(self, index, old_id, new_id) -> None:
        self.focal_points.discard(index)


__all__ = [
    "Adhesion",
    "AdhesionMultiBackground",
    "VolumeConstraint",
    "PerimeterConstraint",
    "ActivityConstraint",
    "ActivityMultiBackground",
    "PersistenceConstraint",
    "PreferredDirectionConstraint",
    "AttractionPointConstraint",
    "ChemotaxisConstraint",
    "SoftConnectivityConstraint",
    "SoftLocalConnectivityConstraint",
    "ProtrusionConstraint",
    "centroid_with_torus_correction",
]
