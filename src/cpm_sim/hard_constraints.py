"""Rules that veto copy attempts outright."""

from __future__ import annotations

import numpy as np

from .connectivity import connected_components, local_component_count
from .constraints import KIND_ARRAY, HardConstraint, ParameterChecker


class BarrierConstraint(HardConstraint):
    """
    Forbid every copy into or out of a barrier kind.

    Parameters:
        IS_BARRIER: KindArray of booleans.
    """

    def check_parameters(self) -> None:
        ParameterChecker(self.conf, self.C).check_parameter("IS_BARRIER", KIND_ARRAY, "Boolean")

    def permits(self, src_i, tgt_i, src_id, tgt_id) -> bool:
        if self.cell_parameter("IS_BARRIER", src_id):
            return False
        if self.cell_parameter("IS_BARRIER", tgt_id):
            return False
        return True


class HardVolumeRangeConstraint(HardConstraint):
    """
    Keep cell volumes inside ``[LAMBDA_VRANGE_MIN, LAMBDA_VRANGE_MAX]``.

    A copy is refused when the gaining cell would exceed its maximum or the
    losing cell would drop below its minimum. The background is unbounded.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_parameter("LAMBDA_VRANGE_MAX", KIND_ARRAY, "NonNegative")
        checker.check_parameter("LAMBDA_VRANGE_MIN", KIND_ARRAY, "NonNegative")

    def permits(self, src_i, tgt_i, src_id, tgt_id) -> bool:
        if src_id != 0 and self.C.volume_of(src_id) + 1 > self.cell_parameter(
            "LAMBDA_VRANGE_MAX", src_id
        ):
            return False
        if tgt_id != 0 and self.C.volume_of(tgt_id) - 1 < self.cell_parameter(
            "LAMBDA_VRANGE_MIN", tgt_id
        ):
            return False
        return True


class LocalConnectivityConstraint(HardConstraint):
    """
    Per-kind version of the model's built-in local connectivity check.

    For kinds with ``CONNECTED`` set, a copy is refused when the target
    cell's pixels around the target would fall apart into more than one
    component. Useful on models built with ``connectivity=False``.
    """

    def check_parameters(self) -> None:
        ParameterChecker(self.conf, self.C).check_parameter("CONNECTED", KIND_ARRAY, "Boolean")

    def permits(self, src_i, tgt_i, src_id, tgt_id) -> bool:
        if tgt_id != 0 and self.cell_parameter("CONNECTED", tgt_id):
            return local_component_count(self.C.grid, tgt_i, tgt_id) <= 1
        return True


class ConnectivityConstraint(HardConstraint):
    """
    Exact connectivity rule for kinds with ``CONNECTED`` set.

    Copies that pass the local check are allowed straight away. Otherwise the
    cell's pixels are flood-filled with and without the target pixel, and the
    copy is refused when that raises the number of components. Unlike
    ``LocalConnectivityConstraint`` this never refuses a copy that keeps the
    cell whole through a path outside the target's box. Meant for models
    built with ``connectivity=False``, where the built-in local check is off.
    """

    def check_parameters(self) -> None:
        ParameterChecker(self.conf, self.C).check_parameter("CONNECTED", KIND_ARRAY, "Boolean")

    def stays_connected(self, tgt_i: int, cell_id: int) -> bool:
        grid = self.C.grid
        pixels = self.C.pixels_of_cell(cell_id).indices()
        before = len(connected_components(grid, pixels))
        after = len(connected_components(grid, [i for i in pixels if i != tgt_i]))
        return after <= before

    def permits(self, src_i, tgt_i, src_id, tgt_id) -> bool:
        if tgt_id == 0 or not self.cell_parameter("CONNECTED", tgt_id):
            return True
        if local_component_count(self.C.grid, tgt_i, tgt_id) <= 1:
            return True
        return self.stays_connected(tgt_i, tgt_id)


class BorderConstraint(HardConstraint):
    """
    Forbid copies into a fixed set of pixels.

    Parameters:
        BARRIER_VOXELS: list of coordinates that no copy may overwrite.
    """

    def check_parameters(self) -> None:
        checker = ParameterChecker(self.conf, self.C)
        checker.check_presence("BARRIER_VOXELS")
        checker.check_coordinate_list(self.conf["BARRIER_VOXELS"], "BARRIER_VOXELS")

    def post_add(self) -> None:
        self.set_barrier_voxels(self.conf["BARRIER_VOXELS"])

    def set_barrier_voxels(self, voxels) -> None:
        """Replace the barrier; can be called between steps."""
        ParameterChecker(self.conf, self.C).check_coordinate_list(voxels, "BARRIER_VOXELS")
        grid = self.C.grid
        self.barrier = np.zeros(grid.size, dtype=np.bool_)
        for v in voxels:
            self.barrier[grid.coordinate_to_index(v)] = True

    def permits(self, src_i, tgt_i, src_id, tgt_id) -> bool:
        return not self.barrier[tgt_i]


__all__ = [
    "BarrierConstraint",
    "BorderConstraint",
    "ConnectivityConstraint",
    "HardVolumeRangeConstraint",
    "LocalConnectivityConstraint",
]
