# src/cpm_sim/utils.py
from __future__ import annotations

import json
import os
import time
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from .errors import ConfigurationError


@dataclass
class SimulationResult:
    """Final state of a CPM run: the CellId lattice plus per-cell kind and volume."""

    grid: Optional[np.ndarray] = None
    cell_ids: Optional[np.ndarray] = None
    kinds: Optional[np.ndarray] = None
    volumes: Optional[np.ndarray] = None
    meta: Optional[Dict[str, Any]] = None

    def ensure_meta(self) -> Dict[str, Any]:
        if self.meta is None:
            self.meta = {}
        return self.meta

    def volume_by_cell(self) -> Dict[int, int]:
        if self.cell_ids is None or self.volumes is None:
            return {}
        return dict(zip(self.cell_ids.tolist(), self.volumes.tolist()))


def now_str() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def save_result(
    path: str | os.PathLike[str], result: SimulationResult, *, overwrite: bool = True
) -> None:
    """Serialize a SimulationResult to a compressed .npz file."""
    out_dir = Path(path).parent
    out_dir.mkdir(parents=True, exist_ok=True)
    out: Dict[str, Any] = {}
    if result.grid is not None:
        out["grid"] = np.asarray(result.grid)
    for key in ("cell_ids", "kinds", "volumes"):
        value = getattr(result, key)
        if value is not None:
            out[key] = np.asarray(value, dtype=np.int64)

    # numpy arrays in meta are stored at top level
    meta_clean = {}
    for key, value in (result.meta or {}).items():
        if isinstance(value, np.ndarray):
            out[key] = value
        else:
            meta_clean[key] = value
    out["meta"] = meta_clean

    if not overwrite and Path(path).exists():
        raise FileExistsError(f"{path} already exists")
    np.savez_compressed(path, **out)


def load_result(path: str | os.PathLike[str]) -> SimulationResult:
    """Load a .npz written by ``save_result``."""
    data = np.load(path, allow_pickle=True)
    meta: Dict[str, Any] = {}
    if "meta" in data:
        meta_raw = data["meta"]
        try:
            meta = dict(meta_raw.item())
        except (ValueError, AttributeError):
            meta = {}
    known = {"grid", "cell_ids", "kinds", "volumes", "meta"}
    for key in data.files:
        if key not in known and key not in meta:
            meta[key] = data[key]
    return SimulationResult(
        grid=data["grid"] if "grid" in data else None,
        cell_ids=data["cell_ids"] if "cell_ids" in data else None,
        kinds=data["kinds"] if "kinds" in data else None,
        volumes=data["volumes"] if "volumes" in data else None,
        meta=meta,
    )


# Top-level keys consumed by run_model besides the CPMConfig fields.
RUN_KEYS = ("params", "cells", "steps", "report_every")


def config_keys() -> set:
    """Every top-level key ``run_model`` understands."""
    from .cpm import CPMConfig

    return {f.name for f in fields(CPMConfig)} | set(RUN_KEYS)


def check_config(config: Dict[str, Any], source: str = "configuration") -> Dict[str, Any]:
    """
    Validate and normalise a model description in place.

    Unknown top-level keys raise ``ConfigurationError``; ``extents`` and
    ``torus`` become tuples; ``params`` must be a table and ``cells`` a list
    of tables.
    """
    unknown = set(config) - config_keys()
    if unknown:
        raise ConfigurationError(f"Unknown keys in {source}: {sorted(unknown)}")
    for key in ("extents", "torus"):
        if config.get(key) is not None:
            if not isinstance(config[key], (list, tuple)):
                raise ConfigurationError(f"{key} in {source} must be a list, got {config[key]!r}")
            config[key] = tuple(config[key])
    if not isinstance(config.get("params", {}), dict):
        raise ConfigurationError(f"params in {source} must be a table of constraint parameters")
    cells = config.get("cells", [])
    if not isinstance(cells, list) or not all(isinstance(c, dict) for c in cells):
        raise ConfigurationError(f"cells in {source} must be a list of tables")
    return config


def load_params(path: str | os.PathLike[str]) -> Dict[str, Any]:
    """
    Load a model description from JSON or TOML and check its keys.

    The description may sit at the top level or inside a ``model`` table;
    other top-level tables are ignored in the latter case, so one file can
    also carry settings for other tools.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in {".json", ""}:
        data = json.loads(text)
    elif suffix in {".toml", ".tml"}:
        data = tomllib.loads(text)
    else:
        raise ValueError(f"Unsupported parameter file format: {suffix}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must hold a table of model settings")
    if "model" in data:
        if not isinstance(data["model"], dict):
            raise ConfigurationError(f"The model entry of {path} must be a table")
        data = dict(data["model"])
    return check_config(data, source=str(path))
