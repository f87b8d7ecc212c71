"""
Constraint framework for the CPM Hamiltonian.

Two kinds of constraint take part in a copy attempt:

- a ``HardConstraint`` is a rule that must hold for the copy to go ahead
  (``permits``); one ``False`` vetoes the attempt before any energy is
  computed;
- a ``SoftConstraint`` contributes an energy change (``delta_energy``) to the
  total dH that drives the Metropolis acceptance.

Constraints keep their parameters in ``conf``. Per-kind parameters are lists
with one entry per CellKind including the background (kind 0), or square
matrices of such lists for interactions. Parameters are validated when the
constraint is attached to a model, so mistakes surface before the first MCS.
"""

from __future__ import annotations

from numbers import Number
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .errors import ConfigurationError

SINGLE_VALUE = "SingleValue"
KIND_ARRAY = "KindArray"
KIND_MATRIX = "KindMatrix"

_SEQUENCE = (list, tuple, np.ndarray)


class ParameterChecker:
    """
    Validates the structure and value types of constraint parameters.

    The number of cell kinds is taken from the first per-kind parameter seen
    and stored on the model (``n_cell_kinds``, background excluded); every
    later per-kind parameter has to agree with it.
    """

    def __init__(self, conf: Dict[str, Any], C) -> None:
        self.conf = conf
        self.C = C

    # -------------------------------------------------------------- presence
    def check_presence(self, name: str) -> None:
        if name not in self.conf or self.conf[name] is None:
            raise ConfigurationError(f"Cannot find parameter {name} in the conf object!")

    # ------------------------------------------------------------- structure
    def _cell_kinds(self, n_default: int) -> int:
        if self.C is None:
            raise ConfigurationError("Parameters checked before the constraint was added to a model!")
        if getattr(self.C, "n_cell_kinds", None) is None:
            self.C.n_cell_kinds = n_default - 1
        return self.C.n_cell_kinds

    def check_structure_single(self, p, name: str) -> None:
        if not isinstance(p, (str, Number, bool)):
            raise ConfigurationError(f"Parameter {name} should be a single value!")

    def check_structure_kind_array(self, p, name: str) -> None:
        if not isinstance(p, _SEQUENCE):
            raise ConfigurationError(f"Parameter {name} should be an array!")
        n_cell_kinds = self._cell_kinds(len(p))
        if len(p) != n_cell_kinds + 1:
            raise ConfigurationError(
                f"Parameter {name} should be an array with an element for each "
                f"cellkind including background ({n_cell_kinds + 1}), got {len(p)}!"
            )

    def check_structure_kind_matrix(self, p, name: str) -> None:
        if not isinstance(p, _SEQUENCE):
            raise ConfigurationError(
                f"Parameter {name} must be an array with a sub-array for each "
                "cellkind including background!"
            )
        n_cell_kinds = self._cell_kinds(len(p))
        if len(p) != n_cell_kinds + 1:
            raise ConfigurationError(
                f"Parameter {name} must be an array with a sub-array for each "
                "cellkind including background!"
            )
        for row in p:
            if not isinstance(row, _SEQUENCE) or len(row) != n_cell_kinds + 1:
                raise ConfigurationError(
                    f"Sub-arrays of {name} must have an element for each cellkind "
                    "including background!"
                )

    def check_structure(self, p, name: str, structure: str) -> None:
        if structure == SINGLE_VALUE:
            self.check_structure_single(p, name)
        elif structure == KIND_ARRAY:
            self.check_structure_kind_array(p, name)
        elif structure == KIND_MATRIX:
            self.check_structure_kind_matrix(p, name)
        else:
            raise ConfigurationError(
                f"Unknown structure {structure}, please choose "
                f"'{SINGLE_VALUE}', '{KIND_ARRAY}', or '{KIND_MATRIX}'."
            )

    # ------------------------------------------------------------ value type
    @staticmethod
    def is_number(v) -> bool:
        return isinstance(v, Number) and not isinstance(v, bool)

    @classmethod
    def is_non_negative(cls, v) -> bool:
        return cls.is_number(v) and v >= 0

    @classmethod
    def is_probability(cls, v) -> bool:
        return cls.is_number(v) and 0 <= v <= 1

    @staticmethod
    def is_boolean(v) -> bool:
        return isinstance(v, (bool, np.bool_))

    def is_coordinate(self, p) -> bool:
        if not isinstance(p, _SEQUENCE) or len(p) != self.C.grid.ndim:
            return False
        return all(self.is_number(c) for c in p)

    def _check_value(self, v, value_type: str, name: str, values: Optional[Sequence] = None) -> None:
        checks = {
            "Number": self.is_number,
            "NonNegative": self.is_non_negative,
            "Probability": self.is_probability,
            "Boolean": self.is_boolean,
        }
        if value_type == "String":
            if not isinstance(v, str) or (values is not None and v not in values):
                raise ConfigurationError(
                    f"Parameter {name} must be one of {list(values or [])}, got {v!r}"
                )
            return
        if value_type not in checks:
            raise ConfigurationError(f"Unknown value type {value_type} for parameter {name}")
        if not checks[value_type](v):
            raise ConfigurationError(
                f"Parameter {name} contains {v!r}, expected values of type {value_type}"
            )

    def check_values(self, p, name: str, structure: str, value_type: str, values=None) -> None:
        if structure == SINGLE_VALUE:
            self._check_value(p, value_type, name, values)
        elif structure == KIND_ARRAY:
            for v in p:
                self._check_value(v, value_type, name, values)
        else:
            for row in p:
                for v in row:
                    self._check_value(v, value_type, name, values)

    def check_parameter(
        self, name: str, structure: str, value_type: str, values: Optional[Sequence] = None
    ) -> None:
        """Presence, structure and value-type check in one call."""
        self.check_presence(name)
        p = self.conf[name]
        self.check_structure(p, name, structure)
        self.check_values(p, name, structure, value_type, values)

    def check_coordinate_list(self, p, name: str) -> None:
        """``p`` must be a list of coordinates that lie on the model grid."""
        if not isinstance(p, _SEQUENCE):
            raise ConfigurationError(f"Parameter {name} should be an array of coordinates!")
        for c in p:
            if not self.is_coordinate(c):
                raise ConfigurationError(
                    f"Parameter {name}: elements should be coordinates of length "
                    f"{self.C.grid.ndim}, got {c!r}"
                )
            if any(x < 0 or x >= e for x, e in zip(c, self.C.grid.extents)):
                raise ConfigurationError(
                    f"Parameter {name}: {tuple(c)} does not lie on the grid {self.C.grid.extents}"
                )


class Constraint:
    """
    Base class of all constraints.

    Args:
        conf: Parameter dictionary. Keyword arguments are merged into it, so
            ``Adhesion(J=...)`` and ``Adhesion({"J": ...})`` are equivalent.
    """

    CONSTRAINT_TYPE: Optional[str] = None

    def __init__(self, conf: Optional[Dict[str, Any]] = None, **params: Any) -> None:
        self.conf: Dict[str, Any] = dict(conf or {})
        self.conf.update(params)
        self.C = None

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.conf

    @property
    def name(self) -> str:
        return type(self).__name__

    def attach(self, C) -> None:
        """Bind this constraint to model ``C`` and validate its parameters."""
        self.C = C
        self.check_parameters()
        self.post_add()

    def check_parameters(self) -> None:
        """Validate ``conf``; overridden by constraints that take parameters."""

    def post_add(self) -> None:
        """Called once after attachment, e.g. to build state from the grid."""

    def cell_parameter(self, name: str, cell_id: int):
        return self.conf[name][self.C.kind_of(cell_id)]

    # hooks called by the model
    def on_accept(self, index: int, old_id: int, new_id: int) -> None:
        """Called after pixel ``index`` changed from ``old_id`` to ``new_id``."""

    def on_step(self) -> None:
        """Called after every Monte Carlo step."""


class SoftConstraint(Constraint):
    """An energy term of the Hamiltonian."""

    CONSTRAINT_TYPE = "soft"

    def delta_energy(self, src_i: int, tgt_i: int, src_id: int, tgt_id: int) -> float:
        """
        Change in this term's energy if pixel ``tgt_i`` (now ``tgt_id``) were
        copied from ``src_i`` and became ``src_id``. Must not change state.
        """
        raise NotImplementedError(
            "You need to implement the 'delta_energy' method for this constraint!"
        )


class HardConstraint(Constraint):
    """A rule that copy attempts must satisfy."""

    CONSTRAINT_TYPE = "hard"

    def permits(self, src_i: int, tgt_i: int, src_id: int, tgt_id: int) -> bool:
        raise NotImplementedError(
            "You need to implement the 'permits' method for this constraint!"
        )


__all__ = [
    "SINGLE_VALUE",
    "KIND_ARRAY",
    "KIND_MATRIX",
    "ParameterChecker",
    "Constraint",
    "SoftConstraint",
    "HardConstraint",
]
