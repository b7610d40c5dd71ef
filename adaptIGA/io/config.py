"""
Configuration of adaptive simulations.

A simulation is described by three sections, loadable from a JSON file:

    {
      "method":     {"degree": [2, 2], "nsub_coarse": [32, 32], "nquad": [3, 3],
                     "truncated": true, "domain": [[0, 1], [0, 1]]},
      "adaptivity": {"flag": "elements", "C0_est": 1.0, "mark_strategy": "MS",
                     "mark_param": 0.75, "mark_param_coarsening": 0.25,
                     "mark_neighbours": true, "crp": 1.0, "max_level": 6,
                     "max_ndof": 15000, "max_nel": 15000, "num_max_iter": 6,
                     "tol": 0.5, "doCoarsening": true},
      "time":       {"time_end": 20.0, "n_time_steps": 400}
    }

Keys may be given in snake_case or with their historical spelling
(C0_est, doCoarsening). Unknown keys and invalid values raise ValueError
naming the offending key.
"""

import json
import logging
import numpy as np
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ADAPTIVITY_ALIASES = {
    "C0_est": "c0_est",
    "doCoarsening": "do_coarsening",
}


def _from_dict(cls, data: Dict[str, Any], section: str, aliases: Optional[Dict[str, str]] = None):
    aliases = aliases or {}
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        name = aliases.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown key '{key}' in '{section}' configuration")
        kwargs[name] = value
    return cls(**kwargs)


@dataclass
class AdaptivityConfig:
    """
    Parameters of estimator, marker and adaptive loop.

    Attributes:
        flag: "elements" or "functions"
        c0_est: Multiplicative constant of the indicators
        mark_strategy: "MS" or "GR"
        mark_param: Refinement threshold factor ([0, 1] for MS)
        mark_param_coarsening: Coarsening threshold factor
        mark_neighbours: Add neighbours of marked entities to REFINE
        neighbour_passes: Number of neighbour rings
        crp: Coarsening relaxation parameter
        max_level: Highest level index (None = unbounded)
        max_ndof: Stop when ndof exceeds this
        max_nel: Stop when the number of elements exceeds this
        num_max_iter: Maximum number of adaptive iterations per solve
        tol: Stop when the largest indicator falls below this
        do_coarsening: Compute and apply a COARSEN set
        normalization: "source" or "none"
    """
    flag: str = "elements"
    c0_est: float = 1.0
    mark_strategy: str = "MS"
    mark_param: float = 0.75
    mark_param_coarsening: float = 0.25
    mark_neighbours: bool = False
    neighbour_passes: int = 1
    crp: float = 1.0
    max_level: Optional[int] = None
    max_ndof: int = 15000
    max_nel: int = 15000
    num_max_iter: int = 6
    tol: float = 0.5
    do_coarsening: bool = False
    normalization: str = "source"

    def __post_init__(self):
        if self.flag not in ("elements", "functions"):
            raise ValueError(f"adaptivity.flag must be 'elements' or 'functions', got '{self.flag}'")
        if self.mark_strategy not in ("MS", "GR"):
            raise ValueError(f"adaptivity.mark_strategy must be 'MS' or 'GR', got '{self.mark_strategy}'")
        if self.normalization not in ("source", "none"):
            raise ValueError(
                f"adaptivity.normalization must be 'source' or 'none', got '{self.normalization}'")
        if self.c0_est < 0:
            raise ValueError(f"adaptivity.C0_est must be non-negative, got {self.c0_est}")
        if self.mark_param < 0:
            raise ValueError(f"adaptivity.mark_param must be non-negative, got {self.mark_param}")
        if self.mark_strategy == "MS" and self.mark_param > 1.0:
            raise ValueError(f"adaptivity.mark_param must lie in [0, 1] for MS, got {self.mark_param}")
        if self.mark_param_coarsening < 0:
            raise ValueError(
                f"adaptivity.mark_param_coarsening must be non-negative, got {self.mark_param_coarsening}")
        if self.crp <= 0:
            raise ValueError(f"adaptivity.crp must be positive, got {self.crp}")
        if self.neighbour_passes < 0:
            raise ValueError(f"adaptivity.neighbour_passes must be non-negative, got {self.neighbour_passes}")
        if self.max_level is not None and self.max_level < 0:
            raise ValueError(f"adaptivity.max_level must be non-negative, got {self.max_level}")
        for key in ("max_ndof", "max_nel", "num_max_iter"):
            if getattr(self, key) < 1:
                raise ValueError(f"adaptivity.{key} must be at least 1, got {getattr(self, key)}")
        if self.tol < 0:
            raise ValueError(f"adaptivity.tol must be non-negative, got {self.tol}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdaptivityConfig':
        return _from_dict(cls, data, "adaptivity", ADAPTIVITY_ALIASES)


@dataclass
class MethodConfig:
    """
    Discretization parameters.

    Attributes:
        degree: Spline degree per direction
        nsub_coarse: Number of level-0 elements per direction
        nquad: Gauss points per direction
        truncated: THB-splines (True) or HB-splines (False)
        domain: Parametric box, one (start, end) pair per direction
    """
    degree: Tuple[int, ...] = (2, 2)
    nsub_coarse: Tuple[int, ...] = (32, 32)
    nquad: Tuple[int, ...] = (3, 3)
    truncated: bool = True
    domain: Tuple[Tuple[float, float], ...] = ((0.0, 1.0), (0.0, 1.0))

    def __post_init__(self):
        self.degree = tuple(int(p) for p in self.degree)
        self.nsub_coarse = tuple(int(n) for n in self.nsub_coarse)
        self.nquad = tuple(int(n) for n in self.nquad)
        self.domain = tuple((float(a), float(b)) for a, b in self.domain)
        self.truncated = bool(self.truncated)

        n_dim = len(self.degree)
        for key in ("nsub_coarse", "nquad", "domain"):
            if len(getattr(self, key)) != n_dim:
                raise ValueError(
                    f"method.{key} has {len(getattr(self, key))} entries, degree has {n_dim}")
        if any(p < 1 for p in self.degree):
            raise ValueError(f"method.degree must be at least 1, got {self.degree}")
        if any(n < 1 for n in self.nsub_coarse):
            raise ValueError(f"method.nsub_coarse must be at least 1, got {self.nsub_coarse}")
        if any(n < 1 for n in self.nquad):
            raise ValueError(f"method.nquad must be at least 1, got {self.nquad}")
        if any(b <= a for a, b in self.domain):
            raise ValueError(f"method.domain needs start < end in every direction, got {self.domain}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MethodConfig':
        return _from_dict(cls, data, "method")


@dataclass
class TimeConfig:
    """
    Uniform time discretization.

    Attributes:
        time_end: Final time (start is 0)
        n_time_steps: Number of steps
    """
    time_end: float = 20.0
    n_time_steps: int = 400

    def __post_init__(self):
        if self.time_end <= 0:
            raise ValueError(f"time.time_end must be positive, got {self.time_end}")
        if self.n_time_steps < 1:
            raise ValueError(f"time.n_time_steps must be at least 1, got {self.n_time_steps}")

    def time_discretization(self) -> np.ndarray:
        return np.linspace(0.0, self.time_end, self.n_time_steps + 1)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeConfig':
        return _from_dict(cls, data, "time")


@dataclass
class SimulationConfig:
    """All sections of a simulation configuration."""
    method: MethodConfig = field(default_factory=MethodConfig)
    adaptivity: AdaptivityConfig = field(default_factory=AdaptivityConfig)
    time: TimeConfig = field(default_factory=TimeConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SimulationConfig':
        unknown = set(data) - {"method", "adaptivity", "time"}
        if unknown:
            raise ValueError(f"Unknown configuration section(s): {sorted(unknown)}")
        return cls(
            method=MethodConfig.from_dict(data.get("method", {})),
            adaptivity=AdaptivityConfig.from_dict(data.get("adaptivity", {})),
            time=TimeConfig.from_dict(data.get("time", {})),
        )


def load_config(filename) -> SimulationConfig:
    """
    Load a simulation configuration from a JSON file.

    Parameters:
        filename: Path to the JSON file

    Returns:
        SimulationConfig with defaults for missing sections and keys
    """
    path = Path(filename)
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to load config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    config = SimulationConfig.from_dict(data)
    logger.info("Loaded configuration from %s", path)
    return config
