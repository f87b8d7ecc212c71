"""Bookkeeping of live CellIds: their kind and volume, plus id recycling."""

from __future__ import annotations

import heapq
from typing import Dict, List

from .errors import CellIdExhaustedError, InvariantViolation

# CellIds historically live in a 16-bit lattice.
MAX_CELL_ID = 65535


class CellRegistry:
    """
    Maps every live CellId to its CellKind and volume (pixel count).

    New ids come from a running counter. Once the counter has used up
    ``1..max_cell_id``, released ids are handed out again, smallest first.
    Id 0 is the background: it is never allocated, has kind 0 and is not
    counted.
    """

    def __init__(self, max_cell_id: int = MAX_CELL_ID) -> None:
        if max_cell_id < 1:
            raise ValueError("max_cell_id must be at least 1")
        self.max_cell_id = int(max_cell_id)
        self.reset()

    def reset(self) -> None:
        self.kinds: Dict[int, int] = {0: 0}
        self.volumes: Dict[int, int] = {}
        self.last_cell_id = 0
        self._free: List[int] = []

    # ------------------------------------------------------------- lifecycle
    def make_new_cell_id(self, kind: int) -> int:
        if self.last_cell_id < self.max_cell_id:
            self.last_cell_id += 1
            new_id = self.last_cell_id
        elif self._free:
            new_id = heapq.heappop(self._free)
        else:
            raise CellIdExhaustedError(
                f"Max amount of living cells exceeded ({self.max_cell_id})!"
            )
        self.volumes[new_id] = 0
        self.kinds[new_id] = int(kind)
        return new_id

    def release(self, cell_id: int) -> None:
        del self.volumes[cell_id]
        del self.kinds[cell_id]
        heapq.heappush(self._free, cell_id)

    def add_pixel(self, cell_id: int) -> None:
        if cell_id == 0:
            return
        try:
            self.volumes[cell_id] += 1
        except KeyError:
            raise InvariantViolation(
                f"Cell {cell_id} gained a pixel but is not registered"
            ) from None

    def remove_pixel(self, cell_id: int) -> bool:
        """Decrement the volume of ``cell_id``; True when the cell died."""
        if cell_id == 0:
            return False
        v = self.volumes.get(cell_id, 0) - 1
        if v < 0:
            raise InvariantViolation(f"Volume of cell {cell_id} would become {v}")
        if v == 0:
            self.release(cell_id)
            return True
        self.volumes[cell_id] = v
        return False

    # ---------------------------------------------------------------- queries
    def kind_of(self, cell_id: int) -> int:
        return self.kinds[cell_id]

    def set_kind(self, cell_id: int, kind: int) -> None:
        if cell_id not in self.volumes:
            raise KeyError(f"Cell {cell_id} is not alive")
        self.kinds[cell_id] = int(kind)

    def volume_of(self, cell_id: int) -> int:
        return self.volumes.get(cell_id, 0)

    def live_ids(self) -> List[int]:
        return list(self.volumes)

    @property
    def n_cells(self) -> int:
        return len(self.volumes)

    def __contains__(self, cell_id: int) -> bool:
        return cell_id in self.volumes

    def __len__(self) -> int:
        return len(self.volumes)


__all__ = ["MAX_CELL_ID", "CellRegistry"]
