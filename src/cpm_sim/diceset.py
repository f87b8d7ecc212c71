"""Set of lattice indices with O(1) insert, remove and uniform sampling."""

from __future__ import annotations

from typing import Dict, Iterator, List

import numpy as np

from .errors import InvariantViolation


class DiceSet:
    """
    Tracks the border pixels of the CPM so that copy attempts can be drawn
    uniformly from them regardless of how much the set churns.

    ``elements`` is a dense list used for sampling; ``indices`` maps each
    element to its slot in that list. Removal swaps the last element into the
    freed slot.
    """

    def __init__(self, rng: np.random.Generator) -> None:
        self.rng = rng
        self.indices: Dict[int, int] = {}
        self.elements: List[int] = []

    def __len__(self) -> int:
        return len(self.elements)

    def __contains__(self, v: int) -> bool:
        return v in self.indices

    def __iter__(self) -> Iterator[int]:
        return iter(self.elements)

    def size(self) -> int:
        return len(self.elements)

    def contains(self, v: int) -> bool:
        return v in self.indices

    def insert(self, v: int) -> None:
        if v in self.indices:
            return
        self.indices[v] = len(self.elements)
        self.elements.append(v)

    def remove(self, v: int) -> None:
        i = self.indices.pop(v, None)
        if i is None:
            return
        e = self.elements.pop()
        if e == v:
            return
        self.elements[i] = e
        self.indices[e] = i

    def sample(self) -> int:
        n = len(self.elements)
        if n == 0:
            raise IndexError("Cannot sample from an empty DiceSet")
        return self.elements[int(self.rng.integers(n))]

    def clear(self) -> None:
        self.indices.clear()
        self.elements.clear()

    def check_consistency(self) -> None:
        """Raise InvariantViolation if the index map and element list disagree."""
        if len(self.indices) != len(self.elements):
            raise InvariantViolation(
                f"DiceSet holds {len(self.elements)} elements but indexes {len(self.indices)}"
            )
        for pos, v in enumerate(self.elements):
            if self.indices.get(v) != pos:
                raise InvariantViolation(
                    f"DiceSet element {v} sits at slot {pos} but is indexed at {self.indices.get(v)}"
                )


__all__ = ["DiceSet"]
