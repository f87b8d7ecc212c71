"""
CPM Simulation Library - Cellular Potts Model engine

This package provides:
- Grid / CoarseGrid: lattices with Moore, von Neumann and hexagonal neighbourhoods
- CPM: the Monte Carlo step engine with pluggable soft and hard constraints
- GridInitializer: seeding and manipulation of cells on the grid
"""

from .errors import (
    CapabilityError,
    CellIdExhaustedError,
    ConfigurationError,
    CPMError,
    InvariantViolation,
    SeedingExhaustedError,
)
from .lattice import HEX, MOORE, NEUMANN, CoarseGrid, Grid
from .diceset import DiceSet
from .registry import CellRegistry
from .constraints import Constraint, HardConstraint, ParameterChecker, SoftConstraint
from .soft_constraints import (
    ActivityConstraint,
    ActivityMultiBackground,
    Adhesion,
    AdhesionMultiBackground,
    AttractionPointConstraint,
    ChemotaxisConstraint,
    PerimeterConstraint,
    PersistenceConstraint,
    PreferredDirectionConstraint,
    ProtrusionConstraint,
    SoftConnectivityConstraint,
    SoftLocalConnectivityConstraint,
    VolumeConstraint,
)
from .hard_constraints import (
    BarrierConstraint,
    BorderConstraint,
    ConnectivityConstraint,
    HardVolumeRangeConstraint,
    LocalConnectivityConstraint,
)
from .cpm import CPM, CPMConfig, run_model
from .seeding import GridInitializer
from . import utils

__all__ = [
    # Model
    "CPM",
    "CPMConfig",
    "run_model",
    "GridInitializer",
    # Lattices
    "Grid",
    "CoarseGrid",
    "MOORE",
    "NEUMANN",
    "HEX",
    "DiceSet",
    "CellRegistry",
    # Constraints
    "Constraint",
    "SoftConstraint",
    "HardConstraint",
    "ParameterChecker",
    "Adhesion",
    "VolumeConstraint",
    "PerimeterConstraint",
    "ActivityConstraint",
    "PersistenceConstraint",
    "PreferredDirectionConstraint",
    "AttractionPointConstraint",
    "ChemotaxisConstraint",
    "AdhesionMultiBackground",
    "ActivityMultiBackground",
    "SoftConnectivityConstraint",
    "SoftLocalConnectivityConstraint",
    "ProtrusionConstraint",
    "BarrierConstraint",
    "BorderConstraint",
    "ConnectivityConstraint",
    "HardVolumeRangeConstraint",
    "LocalConnectivityConstraint",
    # Errors
    "CPMError",
    "ConfigurationError",
    "CapabilityError",
    "SeedingExhaustedError",
    "CellIdExhaustedError",
    "InvariantViolation",
    # Utilities
    "utils",
]
