"""
Problem data for transient nonlinear heat conduction.

    c_cap(u, u_prev) du/dt - div(c_diff(u) grad u) = f(x, path)   in Omega
                                 c_diff(u) du/dn = 0              on dOmega

Coefficient callables act pointwise on arrays of any shape:
- c_diff(u)             diffusion coefficient (conductivity)
- grad_c_diff(u)        optional, combined with grad u in the residual as
                        sum_d grad_c_diff(u)[..., d] * du/dx_d; an array with
                        the shape of u is broadcast over the directions
- c_cap(u, u_prev)      capacity coefficient
- f(x, path)            source, x of shape (..., d), path the source
                        position (d,) of the current time step

Temperatures are in degrees Celsius.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence


@dataclass
class ProblemData:
    """
    Coefficients, time discretization and heat source path of a problem.

    Attributes:
        c_diff: Diffusion coefficient c_diff(u)
        c_cap: Capacity coefficient c_cap(u, u_prev)
        f: Source term f(x, path)
        grad_c_diff: Optional derivative term of the diffusion coefficient
        time_discretization: Time instants t_0 < t_1 < ... < t_N
        path: Source position at every time instant, shape (N+1, d)
        initial_temperature: Uniform initial temperature
    """
    c_diff: Callable[[np.ndarray], np.ndarray]
    c_cap: Callable[[np.ndarray, np.ndarray], np.ndarray]
    f: Callable[[np.ndarray, np.ndarray], np.ndarray]
    grad_c_diff: Optional[Callable[[np.ndarray], np.ndarray]] = None
    time_discretization: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0]))
    path: Optional[np.ndarray] = None
    initial_temperature: float = 0.0

    def __post_init__(self):
        self.time_discretization = np.asarray(self.time_discretization, dtype=np.float64)
        if self.time_discretization.ndim != 1 or len(self.time_discretization) < 2:
            raise ValueError("time_discretization needs at least two time instants")
        if np.any(np.diff(self.time_discretization) <= 0):
            raise ValueError("time_discretization must be strictly increasing")
        if self.path is not None:
            self.path = np.asarray(self.path, dtype=np.float64)
            if len(self.path) != len(self.time_discretization):
                raise ValueError(
                    f"path has {len(self.path)} positions for "
                    f"{len(self.time_discretization)} time instants")

    @property
    def n_time_steps(self) -> int:
        return len(self.time_discretization) - 1

    def time_step(self, step: int) -> float:
        """dt of step `step` (1-based: step k goes from t_{k-1} to t_k)."""
        return float(self.time_discretization[step] - self.time_discretization[step - 1])

    def path_at(self, step: int) -> Optional[np.ndarray]:
        if self.path is None:
            return None
        return self.path[step]


def conductivity(u: np.ndarray) -> np.ndarray:
    """
    Temperature-dependent conductivity [W/(m K)].

    Piecewise linear around 800 degrees: 34 u/800 above, 26.7 (800-u)/800
    at and below.
    """
    u = np.asarray(u, dtype=np.float64)
    return np.where(u > 800.0, 34.0 * (u / 800.0), 26.7 * ((800.0 - u) / 800.0))


def conductivity_derivative(u: np.ndarray) -> np.ndarray:
    """d conductivity / du, matching the branches of conductivity()."""
    u = np.asarray(u, dtype=np.float64)
    return np.where(u > 800.0, 34.0 / 800.0, -26.7 / 800.0)


def constant_coefficient(value: float) -> Callable[..., np.ndarray]:
    """Coefficient returning `value` with the shape of its first argument."""
    def coefficient(u, *args):
        return np.full(np.shape(u), float(value))
    return coefficient


def constant_source(value: float) -> Callable[[np.ndarray, Optional[np.ndarray]], np.ndarray]:
    """Spatially uniform source f(x, path) = value."""
    def source(x, path=None):
        return np.full(np.shape(x)[:-1], float(value))
    return source


def moving_heat_source(power: float, radius: float) -> Callable[[np.ndarray, np.ndarray], np.ndarray]:
    """
    Gaussian surface heat source centred at the current path position.

        f(x) = 2 P / (pi r^2) * exp(-2 |x - path|^2 / r^2)

    Parameters:
        power: Absorbed power P
        radius: Beam radius r
    """
    if radius <= 0:
        raise ValueError(f"radius must be positive, got {radius}")
    peak = 2.0 * power / (np.pi * radius ** 2)

    def source(x, path):
        dist2 = np.sum((np.asarray(x) - np.asarray(path)) ** 2, axis=-1)
        return peak * np.exp(-2.0 * dist2 / radius ** 2)
    return source


def linear_path(start: Sequence[float], end: Sequence[float], n_steps: int) -> np.ndarray:
    """
    Straight source path sampled at n_steps + 1 time instants.

    Returns:
        Array of shape (n_steps + 1, d)
    """
    start = np.asarray(start, dtype=np.float64)
    end = np.asarray(end, dtype=np.float64)
    if start.shape != end.shape:
        raise ValueError("start and end must have the same dimension")
    return np.linspace(start, end, n_steps + 1)
