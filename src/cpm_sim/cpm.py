"""
Cellular Potts Model engine.

The model owns a CellId lattice (``Grid``), the registry of live cells, the
set of border pixels and the random number generator. One Monte Carlo step
(MCS) runs a fixed number of copy attempts:

1. draw a border pixel ``tgt`` uniformly,
2. draw a random neighbour ``src`` of it,
3. skip the attempt when both pixels belong to the same cell,
4. refuse it when the target cell would fall apart locally,
5. refuse it when any hard constraint objects,
6. otherwise sum dH over the soft constraints and apply the Metropolis rule.

Accepted copies update the registry, the border bookkeeping (a ``@numba.njit``
kernel) and every constraint's auxiliary state through ``on_accept``.

Key Features:
1.  **Deterministic:** every draw comes from one ``np.random.Generator``
    seeded from the config, in a fixed order.
2.  **Border bookkeeping:** each site stores how many neighbours belong to a
    different cell; the border set holds exactly the sites where that count is
    positive.
3.  **Auto-added constraints:** the keys ``J``, ``LAMBDA_V``, ``LAMBDA_ACT``,
    ``LAMBDA_P`` and ``IS_BARRIER`` in the parameter bag add the matching
    constraint at construction.
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from . import utils
from .connectivity import connected_components, is_locally_connected
from .constraints import Constraint, HardConstraint, SoftConstraint
from .diceset import DiceSet
from .errors import CapabilityError, ConfigurationError, InvariantViolation
from .hard_constraints import BarrierConstraint
from .lattice import MOORE, Grid
from .registry import MAX_CELL_ID, CellRegistry
from .soft_constraints import ActivityConstraint, Adhesion, PerimeterConstraint, VolumeConstraint

# Parameter keys that add their constraint automatically, in this order.
AUTO_ADDERS = (
    ("J", Adhesion),
    ("LAMBDA_V", VolumeConstraint),
    ("LAMBDA_ACT", ActivityConstraint),
    ("LAMBDA_P", PerimeterConstraint),
    ("IS_BARRIER", BarrierConstraint),
)


@dataclass
class CPMConfig:
    """Configuration of a Cellular Potts Model."""

    extents: Tuple[int, ...] = (100, 100)
    torus: Optional[Tuple[bool, ...]] = None
    T: float = 20.0
    seed: int | None = None
    neighborhood: str = MOORE
    connectivity: bool = True
    attempts_per_step: int | None = None
    max_cell_id: int = MAX_CELL_ID
    check_invariants: bool = False


###############################################################################
# Border kernels
###############################################################################


@njit(cache=True)
def _compute_border_counts(values: np.ndarray, table: np.ndarray, counts: np.ndarray) -> np.ndarray:
    """Number of neighbours of every site that hold a different value."""
    n_sites = values.shape[0]
    out = np.zeros(n_sites, dtype=np.int32)
    for i in range(n_sites):
        v = values[i]
        c = 0
        for j in range(counts[i]):
            if values[table[i, j]] != v:
                c += 1
        out[i] = c
    return out


@njit(cache=True)
def _update_border_counts(
    values: np.ndarray,
    table: np.ndarray,
    counts: np.ndarray,
    border_counts: np.ndarray,
    i: int,
    old_id: int,
    new_id: int,
    ops: np.ndarray,
) -> int:
    """
    Update ``border_counts`` after site ``i`` changed from ``old_id`` to
    ``new_id`` (already written to ``values``).

    Membership changes of the border set are written to ``ops`` in the order
    they happen: ``+(j + 1)`` inserts site ``j``, ``-(j + 1)`` removes it.
    Returns the number of ops written.
    """
    was_border = border_counts[i] > 0
    n_ops = 0
    c = 0
    for k in range(counts[i]):
        ni = table[i, k]
        if ni == i:
            continue
        nt = values[ni]
        if nt != new_id:
            c += 1
        if nt == old_id:
            border_counts[ni] += 1
            if border_counts[ni] == 1:
                ops[n_ops] = ni + 1
                n_ops += 1
        elif nt == new_id:
            border_counts[ni] -= 1
            if border_counts[ni] == 0:
                ops[n_ops] = -(ni + 1)
                n_ops += 1
    border_counts[i] = c
    if not was_border and c > 0:
        ops[n_ops] = i + 1
        n_ops += 1
    elif was_border and c == 0:
        ops[n_ops] = -(i + 1)
        n_ops += 1
    return n_ops


###############################################################################
# Model
###############################################################################


class CellPixels:
    """
    Lazy, restartable view of the pixel coordinates of one cell.

    Every iteration scans the current grid, so the view reflects the grid at
    the time it is iterated rather than when it was created.
    """

    def __init__(self, model: "CPM", cell_id: int) -> None:
        self.model = model
        self.cell_id = int(cell_id)

    def indices(self) -> List[int]:
        return np.flatnonzero(self.model.grid.values == self.cell_id).tolist()

    def __iter__(self) -> Iterator[Tuple[int, ...]]:
        grid = self.model.grid
        for i in self.indices():
            yield grid.index_to_coordinate(i)

    def __len__(self) -> int:
        return int(np.count_nonzero(self.model.grid.values == self.cell_id))


class CPM:
    """
    Cellular Potts Model.

    Args:
        config: ``CPMConfig`` or a dict of its fields. Keyword arguments
            override individual fields.
        params: Per-kind constraint parameters (``J``, ``LAMBDA_V``, ``V``,
            ...). Keys listed in ``AUTO_ADDERS`` add their constraint.
    """

    def __init__(
        self,
        config: CPMConfig | Dict[str, Any] | None = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        **overrides: Any,
    ) -> None:
        if config is None:
            config = CPMConfig()
        elif isinstance(config, dict):
            config = CPMConfig(**config)
        # always a private copy; the T setter writes to it
        config = replace(config, **overrides)
        if config.attempts_per_step is not None and config.attempts_per_step < 0:
            raise ConfigurationError("attempts_per_step must be non-negative")
        self.config = config
        self.params: Dict[str, Any] = dict(params or {})

        self.grid = Grid(config.extents, torus=config.torus, neighborhood=config.neighborhood)
        self.rng = np.random.default_rng(config.seed)
        self.registry = CellRegistry(config.max_cell_id)
        self.border = DiceSet(self.rng)
        self._border_counts = np.zeros(self.grid.size, dtype=np.int32)
        self._ops = np.zeros(self.grid.neighbor_table.shape[1] + 1, dtype=np.int64)
        self.time = 0

        self.soft_constraints: List[SoftConstraint] = []
        self.hard_constraints: List[HardConstraint] = []
        self._constraints: List[Constraint] = []
        self.n_cell_kinds: Optional[int] = None

        for key, cls in AUTO_ADDERS:
            if key in self.params:
                self.add(cls(self.params))

    # ------------------------------------------------------------ properties
    @property
    def extents(self) -> Tuple[int, ...]:
        return self.grid.extents

    @property
    def ndim(self) -> int:
        return self.grid.ndim

    @property
    def T(self) -> float:
        return self.config.T

    @T.setter
    def T(self, value: float) -> None:
        self.config.T = float(value)

    @property
    def attempts_per_step(self) -> int:
        n = self.config.attempts_per_step
        return self.grid.size if n is None else int(n)

    @property
    def constraints(self) -> List[Constraint]:
        return list(self._constraints)

    # ----------------------------------------------------------- constraints
    def add(self, constraint: Constraint) -> Constraint:
        """Register a constraint. Only call this between Monte Carlo steps."""
        if isinstance(constraint, SoftConstraint):
            if type(constraint).delta_energy is SoftConstraint.delta_energy:
                raise CapabilityError(f"{type(constraint).__name__} does not implement delta_energy")
            target = self.soft_constraints
        elif isinstance(constraint, HardConstraint):
            if type(constraint).permits is HardConstraint.permits:
                raise CapabilityError(f"{type(constraint).__name__} does not implement permits")
            target = self.hard_constraints
        else:
            raise CapabilityError(
                f"{type(constraint).__name__} is neither a soft nor a hard constraint"
            )
        constraint.attach(self)
        target.append(constraint)
        self._constraints.append(constraint)
        return constraint

    def remove(self, constraint: Constraint) -> None:
        self._constraints.remove(constraint)
        if isinstance(constraint, SoftConstraint):
            self.soft_constraints.remove(constraint)
        else:
            self.hard_constraints.remove(constraint)

    def get_constraint(self, name: str, num: int = 0) -> Constraint:
        """The ``num``-th constraint of class ``name``, in order of addition."""
        matches = [c for c in self._constraints if c.name == name]
        if num >= len(matches):
            raise KeyError(f"No constraint {name!r} number {num} on this model")
        return matches[num]

    # ---------------------------------------------------------------- random
    def random(self) -> float:
        """Uniform float in [0, 1) from the model's generator."""
        return float(self.rng.random())

    def ran(self, lo: int, hi: int) -> int:
        """Uniform integer in [lo, hi], both ends included."""
        return int(self.rng.integers(lo, hi + 1))

    # --------------------------------------------------------------- queries
    def value_at(self, p: Sequence[int]) -> int:
        return int(self.grid.value_at(p))

    cell_id_at = value_at

    def kind_of(self, cell_id: int) -> int:
        return self.registry.kind_of(cell_id)

    def volume_of(self, cell_id: int) -> int:
        return self.registry.volume_of(cell_id)

    def set_kind(self, cell_id: int, kind: int) -> None:
        self.registry.set_kind(cell_id, kind)

    def live_cell_ids(self) -> List[int]:
        return self.registry.live_ids()

    @property
    def n_cells(self) -> int:
        return self.registry.n_cells

    def pixels_of_cell(self, cell_id: int) -> CellPixels:
        return CellPixels(self, cell_id)

    def pixels_by_cell(self) -> Dict[int, List[int]]:
        """Linear indices of every live cell, in index order."""
        out: Dict[int, List[int]] = {cid: [] for cid in self.registry.live_ids()}
        values = self.grid.values
        for i in np.flatnonzero(values).tolist():
            out[int(values[i])].append(i)
        return out

    def neighbors_of(self, p: Sequence[int], torus: Optional[Sequence[bool]] = None) -> list:
        return self.grid.neighbors_of(p, torus)

    def cell_pixels(self) -> Iterator[Tuple[Tuple[int, ...], int]]:
        """Yields ``(coordinate, cell_id)`` for every non-background pixel."""
        for p, v in self.grid.pixels():
            yield p, int(v)

    def border_pixels(self) -> List[int]:
        return list(self.border.elements)

    def cell_border_pixel_indices(self) -> Iterator[Tuple[int, int]]:
        values = self.grid.values
        for i in self.border.elements:
            t = int(values[i])
            if t != 0:
                yield i, t

    def cell_border_pixels(self) -> Iterator[Tuple[Tuple[int, ...], int]]:
        """Yields ``(coordinate, cell_id)`` for every non-background border pixel."""
        for i, t in self.cell_border_pixel_indices():
            yield self.grid.index_to_coordinate(i), t

    def border_count(self, i: int) -> int:
        """Number of neighbours of site ``i`` that belong to another cell."""
        return int(self._border_counts[i])

    def components_of(self, cell_id: int) -> List[List[int]]:
        return connected_components(self.grid, CellPixels(self, cell_id).indices())

    # -------------------------------------------------------------- mutation
    def make_new_cell_id(self, kind: int) -> int:
        return self.registry.make_new_cell_id(kind)

    def set_pixel(self, p: Sequence[int], cell_id: int) -> None:
        self.grid.check_on_grid(p)
        self.set_pixel_index(self.grid.coordinate_to_index(p), cell_id)

    def set_pixel_index(self, i: int, cell_id: int) -> None:
        """Assign site ``i`` to ``cell_id`` and bring all bookkeeping up to date."""
        cell_id = int(cell_id)
        old_id = int(self.grid.values[i])
        if old_id == cell_id:
            return
        if cell_id != 0 and cell_id not in self.registry:
            raise InvariantViolation(f"Cell {cell_id} is not registered; use make_new_cell_id first")

        self.registry.remove_pixel(old_id)
        self.grid.values[i] = cell_id
        self.registry.add_pixel(cell_id)

        n_ops = _update_border_counts(
            self.grid.values,
            self.grid.neighbor_table,
            self.grid.neighbor_counts,
            self._border_counts,
            int(i),
            old_id,
            cell_id,
            self._ops,
        )
        for op in self._ops[:n_ops].tolist():
            if op > 0:
                self.border.insert(op - 1)
            else:
                self.border.remove(-op - 1)

        for c in self._constraints:
            c.on_accept(int(i), old_id, cell_id)

    # ------------------------------------------------------------ dynamics
    def delta_energy(self, src_i: int, tgt_i: int, src_id: int, tgt_id: int) -> float:
        r = 0.0
        for c in self.soft_constraints:
            r += c.delta_energy(src_i, tgt_i, src_id, tgt_id)
        return r

    def accept(self, delta_h: float) -> bool:
        """Metropolis rule. No random number is drawn unless 0 < dH and T > 0."""
        if delta_h <= 0:
            return True
        T = self.config.T
        if T <= 0:
            return False
        return self.rng.random() < math.exp(-delta_h / T)

    def copy_attempt(self) -> Optional[bool]:
        """
        One copy attempt.

        Returns None when source and target belong to the same cell, False
        when the copy was refused and True when it was carried out.
        """
        tgt_i = self.border.sample()
        nbrs = self.grid.neighbors(tgt_i)
        src_i = int(nbrs[self.rng.integers(len(nbrs))])
        values = self.grid.values
        src_id = int(values[src_i])
        tgt_id = int(values[tgt_i])
        if src_id == tgt_id:
            return None
        if self.config.connectivity and not is_locally_connected(self.grid, tgt_i, tgt_id):
            return False
        for h in self.hard_constraints:
            if not h.permits(src_i, tgt_i, src_id, tgt_id):
                return False
        if not self.accept(self.delta_energy(src_i, tgt_i, src_id, tgt_id)):
            return False
        self.set_pixel_index(tgt_i, src_id)
        return True

    def monte_carlo_step(self) -> None:
        """Advance the model by one MCS."""
        border = self.border
        for _ in range(self.attempts_per_step):
            if len(border) == 0:
                break
            self.copy_attempt()
        for c in self._constraints:
            c.on_step()
        self.time += 1
        if self.config.check_invariants:
            self.verify_invariants()

    time_step = monte_carlo_step

    def run(self, n_steps: int, report_every: int | None = None) -> None:
        """Run ``n_steps`` MCS, printing progress every ``report_every`` steps."""
        t_start = time.perf_counter()
        for step in range(1, n_steps + 1):
            self.monte_carlo_step()
            if report_every and step % report_every == 0:
                elapsed = time.perf_counter() - t_start
                rate = step / elapsed if elapsed > 0 else 0.0
                print(f"[cpm] {step}/{n_steps} MCS, {self.n_cells} cells, "
                      f"{len(self.border)} border pixels, {rate:.1f} MCS/s")
        if report_every:
            elapsed = time.perf_counter() - t_start
            rate = n_steps / elapsed if elapsed > 0 else 0.0
            print(f"Simulation completed: {n_steps} MCS in {elapsed:.2f}s ({rate:.1f} MCS/s)")

    # ------------------------------------------------------------- lifecycle
    def reset(self) -> None:
        """Remove all cells and set time back to zero. Constraints stay."""
        for i in np.flatnonzero(self.grid.values).tolist():
            self.set_pixel_index(i, 0)
        self.registry.reset()
        self.time = 0

    def verify_invariants(self) -> None:
        """Recount everything from the grid and compare with the bookkeeping."""
        self.border.check_consistency()
        values = self.grid.values
        expected = _compute_border_counts(values, self.grid.neighbor_table, self.grid.neighbor_counts)
        if not np.array_equal(expected, self._border_counts):
            bad = np.flatnonzero(expected != self._border_counts)[:5].tolist()
            raise InvariantViolation(f"Border counts disagree with the grid at sites {bad}")
        border = set(np.flatnonzero(expected).tolist())
        if border != set(self.border.elements):
            raise InvariantViolation("Border set disagrees with the grid")
        ids, counts = np.unique(values[values != 0], return_counts=True)
        volumes = dict(zip(ids.tolist(), counts.tolist()))
        if volumes != self.registry.volumes:
            raise InvariantViolation("Cell volumes disagree with the grid")

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the grid plus the kind and volume of every live cell."""
        ids = sorted(self.registry.live_ids())
        return {
            "grid": self.grid.as_array().copy(),
            "time": self.time,
            "cell_ids": np.array(ids, dtype=np.int64),
            "kinds": np.array([self.kind_of(c) for c in ids], dtype=np.int64),
            "volumes": np.array([self.volume_of(c) for c in ids], dtype=np.int64),
        }


###############################################################################
# Driver
###############################################################################


def run_model(config: Dict[str, Any]) -> utils.SimulationResult:
    """
    Build, seed and run a model from a plain dict (as read by
    ``utils.load_params``).

    Recognised keys: every ``CPMConfig`` field, ``params`` (constraint
    parameters), ``cells`` (list of ``{"kind", "n", "center", "radius"}``
    seeding requests), ``steps`` and ``report_every``.
    """
    from .seeding import GridInitializer

    config = utils.check_config(dict(config), source="run_model config")
    params = config.pop("params", {})
    cells = config.pop("cells", [])
    n_steps = int(config.pop("steps", 0))
    report_every = config.pop("report_every", None)

    C = CPM(CPMConfig(**config), params=params)
    gi = GridInitializer(C)
    for req in cells:
        kind = int(req.get("kind", 1))
        n = int(req.get("n", 1))
        if "radius" in req:
            center = req.get("center", C.grid.midpoint)
            gi.seed_cells_in_circle(kind, n, center, req["radius"])
        else:
            for _ in range(n):
                gi.seed_cell(kind)

    C.run(n_steps, report_every=report_every)

    snap = C.snapshot()
    meta = {
        "model": "cpm",
        **{k: v for k, v in asdict(C.config).items() if v is not None},
        "steps": n_steps,
        "time": C.time,
        "n_cells": C.n_cells,
    }
    return utils.SimulationResult(
        grid=snap["grid"],
        cell_ids=snap["cell_ids"],
        kinds=snap["kinds"],
        volumes=snap["volumes"],
        meta=meta,
    )


__all__ = [
    "AUTO_ADDERS",
    "CPMConfig",
    "CellPixels",
    "CPM",
    "run_model",
]
