"""
Helpers that place, reshape and remove cells on a CPM grid.

All changes go through ``CPM.set_pixel`` so that volumes, borders and
constraint state stay consistent. Random positions are drawn from the
model's own generator.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError, SeedingExhaustedError

Coordinate = Tuple[int, ...]


class GridInitializer:
    """
    Seeding and manipulation of cells on the grid of a ``CPM``.

    Example:
        >>> C = CPM(extents=(50, 50), seed=1, params={"J": [[0, 20], [20, 10]]})
        >>> gi = GridInitializer(C)
        >>> cid = gi.seed_cell(1)
    """

    def __init__(self, C) -> None:
        self.C = C

    # --------------------------------------------------------------- seeding
    def seed_cell(self, kind: int, max_attempts: int = 10000) -> int:
        """
        Seed a one-pixel cell of ``kind`` at the grid midpoint, or at a random
        free site when the midpoint is taken.

        Raises:
            SeedingExhaustedError: no free site found in ``max_attempts`` draws.
        """
        C = self.C
        p = list(C.grid.midpoint)
        attempts = max_attempts
        while C.value_at(p) != 0 and attempts > 0:
            attempts -= 1
            for d in range(C.ndim):
                p[d] = C.ran(0, C.extents[d] - 1)
        if C.value_at(p) != 0:
            raise SeedingExhaustedError(
                f"Could not find a free site for a cell of kind {kind} in {max_attempts} attempts"
            )
        return self.seed_cell_at(kind, p)

    def seed_cell_at(self, kind: int, p: Sequence[int]) -> int:
        """Seed a new cell at ``p``, overwriting whatever is there."""
        self.C.grid.check_on_grid(p)
        new_id = self.C.make_new_cell_id(kind)
        self.C.set_pixel(p, new_id)
        return new_id

    def seed_cells_in_circle(
        self,
        kind: int,
        n: int,
        center: Sequence[float],
        radius: float,
        max_attempts: int = 10000,
    ) -> List[int]:
        """
        Seed ``n`` one-pixel cells at random free sites strictly inside the
        disk (or ball) around ``center``.

        Cells placed before the attempt budget runs out stay on the grid.

        Raises:
            SeedingExhaustedError: ``max_attempts`` draws were not enough.
        """
        C = self.C
        if not max_attempts:
            max_attempts = 10 * n
        if len(center) != C.ndim:
            raise ConfigurationError(f"center {tuple(center)} does not have {C.ndim} dimensions")
        seeded: List[int] = []
        attempts = max_attempts
        while len(seeded) < n:
            attempts -= 1
            if attempts < 0:
                raise SeedingExhaustedError(
                    f"Too many attempts to seed cells: placed {len(seeded)} of {n}"
                )
            p = [C.ran(math.ceil(c - radius), math.floor(c + radius)) for c in center]
            d2 = sum((pc - c) ** 2 for pc, c in zip(p, center))
            if d2 >= radius * radius:
                continue
            q = C.grid.wrap(p)
            if q is None or C.value_at(q) != 0:
                continue
            seeded.append(self.seed_cell_at(kind, q))
        return seeded

    # ---------------------------------------------------------------- planes
    def make_plane(self, voxels: List[Coordinate], dim: int, value: int) -> List[Coordinate]:
        """
        Append to ``voxels`` every coordinate whose component ``dim`` equals
        ``value`` and return the list.
        """
        C = self.C
        if not 0 <= dim < C.ndim:
            raise ConfigurationError(f"Dimension {dim} does not exist on a {C.ndim}D grid")
        if not 0 <= value < C.extents[dim]:
            raise IndexError(f"Plane {dim}={value} lies outside a grid of size {C.extents}")
        ranges = [range(e) for e in C.extents]
        ranges[dim] = range(value, value + 1)
        for p in np.ndindex(*[len(r) for r in ranges]):
            voxels.append(tuple(r[k] for r, k in zip(ranges, p)))
        return voxels

    def change_kind(self, voxels: Sequence[Sequence[int]], kind: int) -> int:
        """Turn ``voxels`` into one new cell of ``kind`` and return its id."""
        new_id = self.C.make_new_cell_id(kind)
        for p in voxels:
            self.C.set_pixel(p, new_id)
        return new_id

    def fill_plane(self, kind: int, dim: int, value: int) -> int:
        return self.change_kind(self.make_plane([], dim, value), kind)

    # ----------------------------------------------------------------- cells
    def kill_cell(self, cell_id: int) -> None:
        """Return every pixel of ``cell_id`` to the background."""
        for i in self.C.pixels_of_cell(cell_id).indices():
            self.C.set_pixel_index(i, 0)

    def divide_cell(self, cell_id: int) -> int:
        """
        Split ``cell_id`` in two along its short axis through the centroid.

        The daughter gets a new id of the same kind and the pixels on one side
        of the line. Only bounded 2D grids are supported. Returns the
        daughter's id, or 0 if no pixel ended up on the daughter's side.
        """
        C = self.C
        if C.ndim != 2 or any(C.grid.torus):
            raise ConfigurationError(
                "divide_cell is only implemented for 2D grids without periodic boundaries"
            )
        pixels = C.pixels_of_cell(cell_id).indices()
        if len(pixels) < 2:
            raise ValueError(f"Cell {cell_id} needs at least two pixels to divide")

        coords = np.array([C.grid.index_to_coordinate(i) for i in pixels], dtype=float)
        rel = coords - coords.mean(axis=0)
        bxx = float(np.sum(rel[:, 0] * rel[:, 0]))
        bxy = float(np.sum(rel[:, 0] * rel[:, 1]))
        byy = float(np.sum(rel[:, 1] * rel[:, 1]))

        # direction of the dividing line: eigenvector of the smaller eigenvalue
        if bxy == 0:
            x1, y1 = (1.0, 0.0) if bxx <= byy else (0.0, 1.0)
        else:
            tr = bxx + byy
            det = bxx * byy - bxy * bxy
            l2 = tr / 2 - math.sqrt(max(tr * tr / 4 - det, 0.0))
            x1, y1 = l2 - byy, bxy

        new_id = C.make_new_cell_id(C.kind_of(cell_id))
        for i, (x2, y2) in zip(pixels, rel.tolist()):
            if x1 * y2 - x2 * y1 > 0:
                C.set_pixel_index(i, new_id)
        if C.volume_of(new_id) == 0:
            C.registry.release(new_id)
            return 0
        return new_id


__all__ = ["GridInitializer"]
