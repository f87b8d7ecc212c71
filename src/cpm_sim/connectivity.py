"""
Connectivity checks for cell pixel sets.

The copy-attempt loop uses a *local* test around the target pixel. It takes
the cell's pixels inside the 3^D box around the target (the target itself
excluded), links them with the grid's own neighbourhood restricted to that
box, and counts the components that touch a direct neighbour of the target.
More than one such component means that removing the target may split the
cell. Paths that leave the box are not followed, so the check can refuse a
harmless copy but never lets a connected cell fall apart.

On a Moore grid the box is the neighbourhood itself. On a von Neumann grid
the box adds the diagonal sites, which are what joins two axis neighbours of
the target; without them every compact cell would be frozen.

``connected_components`` is the exact (flood-fill) counterpart used for
queries and verification.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, List, Sequence

import numpy as np
from numba import njit


@njit(cache=True)
def _count_local_components(
    values: np.ndarray,
    table: np.ndarray,
    counts: np.ndarray,
    box_table: np.ndarray,
    box_counts: np.ndarray,
    tgt_i: int,
    cell_id: int,
) -> int:
    """
    Number of components, among the pixels of ``cell_id`` in the box around
    ``tgt_i``, that contain a direct neighbour of ``tgt_i``.
    """
    nb = box_counts[tgt_i]
    members = np.empty(nb, dtype=np.int64)
    m = 0
    for j in range(nb):
        ni = box_table[tgt_i, j]
        if ni == tgt_i or values[ni] != cell_id:
            continue
        dup = False
        for q in range(m):
            if members[q] == ni:
                dup = True
                break
        if not dup:
            members[m] = ni
            m += 1

    # members adjacent to the target under the grid neighbourhood
    anchor = np.zeros(m, dtype=np.bool_)
    for j in range(counts[tgt_i]):
        ni = table[tgt_i, j]
        for q in range(m):
            if members[q] == ni:
                anchor[q] = True

    label = np.full(m, -1, dtype=np.int64)
    stack = np.empty(m, dtype=np.int64)
    n_comp = 0
    for s in range(m):
        if label[s] >= 0 or not anchor[s]:
            continue
        label[s] = n_comp
        stack[0] = s
        top = 1
        while top > 0:
            top -= 1
            a = members[stack[top]]
            for j in range(counts[a]):
                nbr = table[a, j]
                for b in range(m):
                    if label[b] < 0 and members[b] == nbr:
                        label[b] = n_comp
                        stack[top] = b
                        top += 1
        n_comp += 1
    return n_comp


def local_component_count(grid, tgt_i: int, cell_id: int) -> int:
    box_table, box_counts = grid.box_table()
    return int(
        _count_local_components(
            grid.values,
            grid.neighbor_table,
            grid.neighbor_counts,
            box_table,
            box_counts,
            int(tgt_i),
            int(cell_id),
        )
    )


def is_locally_connected(grid, tgt_i: int, cell_id: int) -> bool:
    """
    True if ``cell_id`` stays locally connected after losing pixel ``tgt_i``.

    The background (id 0) is always connected. A cell losing its last pixel
    has no remaining neighbours and counts as connected, so cells can vanish.
    """
    if cell_id == 0:
        return True
    return local_component_count(grid, tgt_i, cell_id) <= 1


def connected_components(grid, indices: Iterable[int], table=None) -> List[List[int]]:
    """
    Split ``indices`` into connected components under the grid neighbourhood.

    Args:
        grid: The lattice the indices live on.
        indices: Linear indices of the pixel set.
        table: Optional ``(neighbor_table, neighbor_counts)`` pair to link
            pixels with instead of the grid's own neighbourhood, e.g.
            ``grid.neumann_table()``.

    Returns a list of components, each a list of linear indices, ordered by
    their first member in ``indices``.
    """
    order = [int(i) for i in indices]
    members = set(order)
    if table is None:
        table = (grid.neighbor_table, grid.neighbor_counts)
    nbr_table, nbr_counts = table
    visited = set()
    components = []
    for seed in order:
        if seed in visited:
            continue
        visited.add(seed)
        comp = []
        queue = deque([seed])
        while queue:
            e = queue.popleft()
            comp.append(e)
            for nb in nbr_table[e, : nbr_counts[e]].tolist():
                if nb in members and nb not in visited:
                    visited.add(nb)
                    queue.append(nb)
        components.append(comp)
    return components


def connectivity_score(components: Sequence[Sequence[int]]) -> float:
    """
    1 for a connected pixel set, otherwise the sum of squared size fractions
    of its components. Splitting off one pixel scores close to 1, an even
    split into two halves scores 0.5.
    """
    if len(components) <= 1:
        return 1.0
    total = sum(len(c) for c in components)
    return sum((len(c) / total) ** 2 for c in components)


__all__ = [
    "connected_components",
    "connectivity_score",
    "is_locally_connected",
    "local_component_count",
]
