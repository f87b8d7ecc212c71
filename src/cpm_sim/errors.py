"""Exception hierarchy for the CPM engine.

Every error also derives from the builtin it refines, so callers that only
know about ``ValueError`` / ``RuntimeError`` still catch them.
"""

from __future__ import annotations


class CPMError(Exception):
    """Base class for all cpm_sim errors."""


class ConfigurationError(CPMError, ValueError):
    """Grid or constraint parameters are missing, malformed or incompatible."""


class CapabilityError(CPMError, TypeError):
    """A constraint does not implement the method its kind requires."""


class SeedingExhaustedError(CPMError, RuntimeError):
    """Random seeding could not find a free site within its attempt budget."""


class CellIdExhaustedError(CPMError, RuntimeError):
    """Every CellId in the allowed range is currently in use."""


class InvariantViolation(CPMError, RuntimeError):
    """Internal bookkeeping disagrees with the grid. Indicates an engine bug."""


__all__ = [
    "CPMError",
    "ConfigurationError",
    "CapabilityError",
    "SeedingExhaustedError",
    "CellIdExhaustedError",
    "InvariantViolation",
]
