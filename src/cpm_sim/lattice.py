"""
Lattice storage for the Cellular Potts Model.

A ``Grid`` is a dense D-dimensional lattice stored as a flat numpy array in
row-major order. Every site carries one value: a CellId for the CPM lattice,
or a float for diffusion fields.

Key Features:
1.  **Precomputed neighbour table:** neighbour indices for every site are
    built once by a ``@numba.njit`` kernel, so the hot copy-attempt loop only
    slices a row of the table.
2.  **Pluggable neighbourhoods:** Moore, von Neumann and a 2D hexagonal
    neighbourhood whose offsets alternate with row parity. All three share the
    same kernel; only the offset array differs.
3.  **Periodic or bounded dimensions:** neighbours wrap on toroidal
    dimensions and are dropped on bounded ones.
4.  **Coarse fields:** ``CoarseGrid`` wraps a fine grid at an integer
    downsample factor and carries its own diffusion step.
"""

from __future__ import annotations

import itertools
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from .errors import ConfigurationError

###############################################################################
# Constants
###############################################################################

MOORE = "moore"
NEUMANN = "neumann"
HEX = "hex"
NEIGHBORHOODS = (MOORE, NEUMANN, HEX)

# Offsets of the hexagonal neighbourhood, indexed by parity of coordinate 0.
# Odd rows shift the left/right neighbour pairs by -1 along dimension 1.
HEX_OFFSETS = np.array(
    [
        [[-1, 0], [-1, 1], [1, 0], [1, 1], [0, -1], [0, 1]],
        [[-1, -1], [-1, 0], [1, -1], [1, 0], [0, -1], [0, 1]],
    ],
    dtype=np.int64,
)


def neighborhood_offsets(ndim: int, neighborhood: str = MOORE) -> np.ndarray:
    """
    Returns the neighbour offsets as an array of shape (2, k, ndim).

    The leading axis selects the offset set by parity of coordinate 0; it only
    differs for the hexagonal neighbourhood. Offsets are listed in
    lexicographic order so that neighbour enumeration is deterministic.
    """
    if neighborhood == HEX:
        if ndim != 2:
            raise ConfigurationError("The hexagonal neighbourhood only exists in 2D")
        return HEX_OFFSETS.copy()
    if neighborhood == MOORE:
        offs = [d for d in itertools.product((-1, 0, 1), repeat=ndim) if any(d)]
    elif neighborhood == NEUMANN:
        offs = []
        for d in range(ndim):
            for step in (-1, 1):
                o = [0] * ndim
                o[d] = step
                offs.append(tuple(o))
        offs.sort()
    else:
        raise ConfigurationError(
            f"Unknown neighbourhood {neighborhood!r}; choose one of {NEIGHBORHOODS}"
        )
    single = np.array(offs, dtype=np.int64).reshape(len(offs), ndim)
    return np.stack([single, single])


###############################################################################
# Neighbour kernels
###############################################################################


@njit(cache=True)
def _site_neighbors(
    i: int,
    extents: np.ndarray,
    strides: np.ndarray,
    torus: np.ndarray,
    offsets: np.ndarray,
    out: np.ndarray,
) -> int:
    """
    Writes the neighbour indices of site ``i`` into ``out`` and returns how
    many were written. Neighbours falling off a bounded dimension are skipped.
    """
    ndim = extents.shape[0]
    coord = np.empty(ndim, dtype=np.int64)
    rem = i
    for d in range(ndim):
        coord[d] = rem // strides[d]
        rem -= coord[d] * strides[d]
    parity = coord[0] & 1
    n = 0
    for k in range(offsets.shape[1]):
        idx = 0
        valid = True
        for d in range(ndim):
            c = coord[d] + offsets[parity, k, d]
            if c < 0:
                if torus[d]:
                    c += extents[d]
                else:
                    valid = False
                    break
            elif c >= extents[d]:
                if torus[d]:
                    c -= extents[d]
                else:
                    valid = False
                    break
            idx += c * strides[d]
        if valid:
            out[n] = idx
            n += 1
    return n


@njit(cache=True)
def _build_neighbor_table(
    extents: np.ndarray, strides: np.ndarray, torus: np.ndarray, offsets: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Builds the full (n_sites, k) neighbour table. Rows are left-packed; unused
    slots on bounded edges hold -1 and ``counts`` gives the valid length.
    """
    n_sites = 1
    for d in range(extents.shape[0]):
        n_sites *= extents[d]
    k = offsets.shape[1]
    table = np.full((n_sites, k), -1, dtype=np.int32)
    counts = np.zeros(n_sites, dtype=np.int32)
    buf = np.empty(k, dtype=np.int64)
    for i in range(n_sites):
        n = _site_neighbors(i, extents, strides, torus, offsets, buf)
        for j in range(n):
            table[i, j] = buf[j]
        counts[i] = n
    return table, counts


@njit(cache=True)
def _diffuse(values: np.ndarray, table: np.ndarray, counts: np.ndarray, D: float) -> np.ndarray:
    """
    One explicit finite-difference pass: v' = v + D * laplacian(v).
    Bounded edges only exchange with the neighbours they have (no flux).
    """
    out = np.empty_like(values)
    for i in range(values.shape[0]):
        n = counts[i]
        s = 0.0
        for j in range(n):
            s += values[table[i, j]]
        out[i] = values[i] + D * (s - n * values[i])
    return out


###############################################################################
# Grid
###############################################################################


class Grid:
    """
    Dense D-dimensional lattice with row-major linear indices.

    Args:
        extents: Size of every dimension.
        torus: Periodic flag per dimension. Defaults to periodic everywhere.
        neighborhood: ``"moore"``, ``"neumann"`` or ``"hex"`` (2D only).
        dtype: numpy dtype of the site values. Integer grids hold CellIds,
            float grids hold fields.
    """

    def __init__(
        self,
        extents: Sequence[int],
        torus: Optional[Sequence[bool]] = None,
        neighborhood: str = MOORE,
        dtype=np.int32,
    ) -> None:
        extents = tuple(int(e) for e in extents)
        if len(extents) == 0 or any(e <= 0 for e in extents):
            raise ConfigurationError(f"Grid extents must be positive integers, got {extents}")
        if torus is None:
            torus = (True,) * len(extents)
        torus = tuple(bool(t) for t in torus)
        if len(torus) != len(extents):
            raise ConfigurationError(
                "Torus should be specified for each dimension, or not at all!"
            )
        # hex offsets depend on row parity, which must survive the wrap
        if neighborhood == HEX and torus[0] and extents[0] % 2 == 1:
            raise ConfigurationError(
                f"A hexagonal grid that wraps along dimension 0 needs an even number "
                f"of rows, got {extents[0]}"
            )

        self.extents = extents
        self.torus = torus
        self.ndim = len(extents)
        self.neighborhood = neighborhood
        self.size = int(np.prod(extents))
        self.midpoint = tuple(int(round((e - 1) / 2)) for e in extents)

        strides = [1] * self.ndim
        for d in range(self.ndim - 2, -1, -1):
            strides[d] = strides[d + 1] * extents[d + 1]
        self.strides = tuple(strides)

        self._extents_arr = np.array(extents, dtype=np.int64)
        self._strides_arr = np.array(strides, dtype=np.int64)
        self._torus_arr = np.array(torus, dtype=np.bool_)
        self._offsets = neighborhood_offsets(self.ndim, neighborhood)
        self.neighbor_table, self.neighbor_counts = _build_neighbor_table(
            self._extents_arr, self._strides_arr, self._torus_arr, self._offsets
        )
        # von Neumann table for laplacians, built on first use
        self._neumann = None
        # 3^D box around each site, used by the local connectivity check
        self._box = None

        self.values = np.zeros(self.size, dtype=dtype)

    @property
    def is_field(self) -> bool:
        return np.issubdtype(self.values.dtype, np.floating)

    # ------------------------------------------------------------ coordinates
    def coordinate_to_index(self, p: Sequence[int]) -> int:
        i = 0
        for c, s in zip(p, self.strides):
            i += int(c) * s
        return i

    def index_to_coordinate(self, i: int) -> Tuple[int, ...]:
        coord = []
        rem = int(i)
        for s in self.strides:
            c, rem = divmod(rem, s)
            coord.append(c)
        return tuple(coord)

    def check_on_grid(self, p: Sequence[int]) -> None:
        if len(p) != self.ndim:
            raise IndexError(f"Coordinate {tuple(p)} does not have {self.ndim} dimensions")
        for c, e in zip(p, self.extents):
            if c < 0 or c >= e:
                raise IndexError(
                    f"Coordinate {tuple(p)} does not lie on a grid of size {self.extents}"
                )

    def wrap(self, p: Sequence[int]) -> Optional[Tuple[int, ...]]:
        """Apply periodic boundaries to ``p``; None if it falls off a bounded edge."""
        out = []
        for c, e, t in zip(p, self.extents, self.torus):
            c = int(c)
            if 0 <= c < e:
                out.append(c)
            elif t:
                out.append(c % e)
            else:
                return None
        return tuple(out)

    # ------------------------------------------------------------- neighbours
    def neighbors(self, i: int, torus: Optional[Sequence[bool]] = None) -> np.ndarray:
        """Neighbour indices of site ``i``, optionally under a different torus."""
        if torus is not None and tuple(bool(t) for t in torus) != self.torus:
            buf = np.empty(self._offsets.shape[1], dtype=np.int64)
            n = _site_neighbors(
                int(i),
                self._extents_arr,
                self._strides_arr,
                np.array(torus, dtype=np.bool_),
                self._offsets,
                buf,
            )
            return buf[:n]
        return self.neighbor_table[i, : self.neighbor_counts[i]]

    def neighbors_of(
        self, p: Sequence[int], torus: Optional[Sequence[bool]] = None
    ) -> list:
        self.check_on_grid(p)
        return [
            self.index_to_coordinate(n)
            for n in self.neighbors(self.coordinate_to_index(p), torus).tolist()
        ]

    def neumann_table(self) -> Tuple[np.ndarray, np.ndarray]:
        if self.neighborhood == NEUMANN:
            return self.neighbor_table, self.neighbor_counts
        if self._neumann is None:
            self._neumann = _build_neighbor_table(
                self._extents_arr,
                self._strides_arr,
                self._torus_arr,
                neighborhood_offsets(self.ndim, NEUMANN),
            )
        return self._neumann

    def box_table(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Neighbour table of the full 3^D box around every site.

        Equal to the grid's own table for Moore grids. Hex offsets all lie
        inside the box, so for hex grids the box is the Moore box as well.
        """
        if self.neighborhood == MOORE:
            return self.neighbor_table, self.neighbor_counts
        if self._box is None:
            self._box = _build_neighbor_table(
                self._extents_arr,
                self._strides_arr,
                self._torus_arr,
                neighborhood_offsets(self.ndim, MOORE),
            )
        return self._box

    # ---------------------------------------------------------------- values
    def value_at(self, p: Sequence[int]):
        self.check_on_grid(p)
        return self.values[self.coordinate_to_index(p)]

    def set_value(self, p: Sequence[int], v) -> None:
        self.check_on_grid(p)
        self.set_value_at_index(self.coordinate_to_index(p), v)

    def value_at_index(self, i: int):
        return self.values[i]

    def set_value_at_index(self, i: int, v) -> None:
        if not self.is_field and (v < 0 or v != int(v)):
            raise ValueError(
                f"Cannot store {v!r} on an integer grid; values must be non-negative integers"
            )
        self.values[i] = v

    def indices(self) -> range:
        return range(self.size)

    def pixels(self) -> Iterator[Tuple[Tuple[int, ...], object]]:
        """Yields ``(coordinate, value)`` for every non-zero site."""
        for i in np.flatnonzero(self.values).tolist():
            yield self.index_to_coordinate(i), self.values[i]

    def as_array(self) -> np.ndarray:
        """View of the site values shaped like the grid."""
        return self.values.reshape(self.extents)

    # ----------------------------------------------------------------- fields
    def _require_field(self, what: str) -> None:
        if not self.is_field:
            raise ConfigurationError(
                f"{what} does not work on an integer grid! Use a float dtype."
            )

    def laplacian_at_index(self, i: int) -> float:
        self._require_field("The laplacian")
        table, counts = self.neumann_table()
        n = counts[i]
        return float(self.values[table[i, :n]].sum() - n * self.values[i])

    def laplacian(self, p: Sequence[int]) -> float:
        self.check_on_grid(p)
        return self.laplacian_at_index(self.coordinate_to_index(p))

    def diffusion(self, D: float) -> None:
        """Apply one synchronous diffusion pass with coefficient ``D``."""
        self._require_field("Diffusion")
        table, counts = self.neumann_table()
        self.values = _diffuse(self.values, table, counts, float(D))

    def multiply_by(self, r: float) -> None:
        self._require_field("multiply_by")
        self.values *= r


###############################################################################
# Coarse grid
###############################################################################


class CoarseGrid:
    """
    A lower-resolution float field coupled to a fine lattice.

    Each coarse site covers a block of ``factor[d]`` fine sites per dimension.
    The factor must divide every fine extent exactly.
    """

    def __init__(self, grid: Grid, factor: int | Sequence[int] = 2) -> None:
        if np.isscalar(factor):
            factor = (int(factor),) * grid.ndim
        factor = tuple(int(f) for f in factor)
        if len(factor) != grid.ndim or any(f <= 0 for f in factor):
            raise ConfigurationError(
                f"Downsample factor {factor} must be a positive integer per dimension"
            )
        for e, f in zip(grid.extents, factor):
            if e % f != 0:
                raise ConfigurationError(
                    f"Downsample factor {f} does not divide grid extent {e} "
                    f"(extents {grid.extents})"
                )
        self.fine = grid
        self.factor = factor
        # coarse rows need not keep the fine hex parity
        self.grid = Grid(
            [e // f for e, f in zip(grid.extents, factor)],
            torus=grid.torus,
            neighborhood=MOORE if grid.neighborhood == HEX else grid.neighborhood,
            dtype=np.float64,
        )

    @property
    def extents(self) -> Tuple[int, ...]:
        return self.grid.extents

    @property
    def torus(self) -> Tuple[bool, ...]:
        return self.grid.torus

    @property
    def ndim(self) -> int:
        return self.grid.ndim

    @property
    def size(self) -> int:
        return self.grid.size

    @property
    def values(self) -> np.ndarray:
        return self.grid.values

    def coordinate_to_index(self, p: Sequence[int]) -> int:
        return self.grid.coordinate_to_index(p)

    def index_to_coordinate(self, i: int) -> Tuple[int, ...]:
        return self.grid.index_to_coordinate(i)

    def neighbors(self, i: int, torus: Optional[Sequence[bool]] = None) -> np.ndarray:
        return self.grid.neighbors(i, torus)

    def value_at(self, p: Sequence[int]) -> float:
        return float(self.grid.value_at(p))

    def set_value(self, p: Sequence[int], v: float) -> None:
        self.grid.set_value(p, v)

    def value_at_index(self, i: int) -> float:
        return float(self.grid.values[i])

    def coarse_coordinate(self, fine_p: Sequence[int]) -> Tuple[int, ...]:
        """Coarse site that contains the fine coordinate ``fine_p``."""
        return tuple(int(c) // f for c, f in zip(fine_p, self.factor))

    def value_at_fine(self, fine_p: Sequence[int]) -> float:
        """
        Field value seen at a fine coordinate, interpolated linearly along
        every dimension between the coarse site containing ``fine_p`` and the
        next one up. Past the last coarse site the upper corner wraps on
        periodic dimensions and is clamped on bounded ones.
        """
        self.fine.check_on_grid(fine_p)
        lo, hi, frac = [], [], []
        for c, f, e, t in zip(fine_p, self.factor, self.extents, self.torus):
            base, rem = divmod(int(c), f)
            up = base + 1
            if up >= e:
                up = up % e if t else e - 1
            lo.append(base)
            hi.append(up)
            frac.append(rem / f)

        v = 0.0
        for corner in itertools.product((0, 1), repeat=self.ndim):
            w = 1.0
            p = []
            for d, upper in enumerate(corner):
                if upper:
                    w *= frac[d]
                    p.append(hi[d])
                else:
                    w *= 1.0 - frac[d]
                    p.append(lo[d])
            if w > 0.0:
                v += w * self.grid.values[self.grid.coordinate_to_index(p)]
        return float(v)

    def value_at_fine_index(self, fine_i: int) -> float:
        return self.value_at_fine(self.fine.index_to_coordinate(fine_i))

    def as_array(self) -> np.ndarray:
        return self.grid.as_array()

    def diffusion(self, D: float) -> None:
        self.grid.diffusion(D)

    def multiply_by(self, r: float) -> None:
        self.grid.multiply_by(r)


__all__ = [
    "MOORE",
    "NEUMANN",
    "HEX",
    "Grid",
    "CoarseGrid",
    "neighborhood_offsets",
]
