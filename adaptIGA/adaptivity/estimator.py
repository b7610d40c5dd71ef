"""
Residual-based a posteriori error indicators.

For the transient nonlinear diffusion problem the interior residual at a
quadrature point is

    r = f - c_cap(u, u_prev) (u - u_prev) / dt + c_diff(u) lap(u)
          + sum_d grad_c_diff(u)_d du/dx_d

and r^2 is normalized by the largest |f| over all quadrature points of the
call (no normalization when the source vanishes identically).

Two variants:

- elements:   est_Q = C0 h_Q sqrt(d) ( int_Q r^2 )^(1/2)
- functions:  est_b = C0 h_b sqrt(d) ( a_b int r^2 b )^(1/2)

with h_Q the longest side of element Q, h_b the size of the finest active
element on which b does not vanish and a_b the partition-of-unity
coefficient of b. The function integrals are computed level by level in the
tensor bases and gathered with Csub[l]^T.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import List, Optional

from ..exceptions import StaleSolution
from ..geometry.hierarchical_space import HierarchicalSpace
from ..solver.problem import ProblemData

logger = logging.getLogger(__name__)

FLAGS = ("elements", "functions")
NORMALIZATIONS = ("source", "none")


@dataclass
class Indicators:
    """
    Error indicators of one adaptive iteration.

    Attributes:
        flag: "elements" or "functions"
        entities: Element ids or function ids, canonical order
        values: Non-negative indicator per entity
        levels: Level of every entity
    """
    flag: str
    entities: List[tuple]
    values: np.ndarray
    levels: np.ndarray

    def __len__(self) -> int:
        return len(self.values)

    @property
    def max(self) -> float:
        return float(np.max(self.values)) if len(self.values) else 0.0


class ErrorEstimator:
    """
    Computes element or function indicators for a hierarchical space.

    Attributes:
        space: Hierarchical space the solutions live on
        problem: Problem coefficients
        flag: "elements" or "functions"
        C0: Multiplicative constant (>= 0)
        normalization: "source" to divide r^2 by max |f|, "none" otherwise
    """

    def __init__(self, space: HierarchicalSpace, problem: ProblemData, flag: str = "elements",
                 C0: float = 1.0, normalization: str = "source"):
        if flag not in FLAGS:
            raise ValueError(f"Unknown indicator flag '{flag}', expected one of {FLAGS}")
        if C0 < 0:
            raise ValueError(f"C0 must be non-negative, got {C0}")
        if normalization not in NORMALIZATIONS:
            raise ValueError(f"Unknown normalization '{normalization}', expected one of {NORMALIZATIONS}")

        self.space = space
        self.problem = problem
        self.flag = flag
        self.C0 = C0
        self.normalization = normalization

    def residual(self, u: np.ndarray, u_prev: np.ndarray, dt: float,
                 path: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Normalized squared residual at all quadrature points.

        Returns:
            Array of shape (nel, n_q), canonical element order
        """
        space = self.space
        problem = self.problem

        ders = space.evaluate_at_quadrature(u, ("value", "gradient", "laplacian"))
        prev = space.evaluate_at_quadrature(u_prev, ("value",))["value"]
        points, _, _ = space.mesh.quadrature_arrays()

        val = ders["value"]
        f = np.broadcast_to(np.asarray(problem.f(points, path), dtype=np.float64), val.shape)

        r = (f
             - problem.c_cap(val, prev) * (val - prev) / dt
             + problem.c_diff(val) * ders["laplacian"])
        if problem.grad_c_diff is not None:
            g = np.asarray(problem.grad_c_diff(val), dtype=np.float64)
            if g.ndim == val.ndim:
                g = g[..., None]
            r = r + np.sum(g * ders["gradient"], axis=-1)

        r2 = r ** 2
        if self.normalization == "source":
            f_max = float(np.max(np.abs(f)))
            if f_max > 0:
                r2 = r2 / f_max
        return r2

    def estimate(self, u: np.ndarray, u_prev: np.ndarray, dt: float,
                 path: Optional[np.ndarray] = None) -> Indicators:
        """
        Compute the indicators of a discrete solution.

        Parameters:
            u: Current solution, shape (ndof,)
            u_prev: Previous time step on the same space, shape (ndof,)
            dt: Time step size
            path: Heat source position passed to f

        Returns:
            Indicators for the active elements or active functions

        Raises:
            StaleSolution: If u or u_prev does not match the space
        """
        space = self.space
        ndof = space.ndof
        if len(u) != ndof:
            raise StaleSolution(len(u), ndof, "solution")
        if len(u_prev) != ndof:
            raise StaleSolution(len(u_prev), ndof, "previous solution")
        if dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")

        r2 = self.residual(u, u_prev, dt, path)
        if self.flag == "elements":
            indicators = self._element_indicators(r2)
        else:
            indicators = self._function_indicators(r2)

        logger.debug("Estimated %d %s indicators, max %.4e",
                     len(indicators), self.flag, indicators.max)
        return indicators

    def _element_indicators(self, r2: np.ndarray) -> Indicators:
        mesh = self.space.mesh
        _, weights, jacdet = mesh.quadrature_arrays()
        h = mesh.element_sizes() * np.sqrt(mesh.n_dim)

        values = self.C0 * h * np.sqrt(np.sum(r2 * weights * jacdet, axis=1))
        elements = mesh.active_elements()
        return Indicators(
            flag="elements",
            entities=elements,
            values=values,
            levels=np.array([level for level, _ in elements], dtype=int),
        )

    def _function_indicators(self, r2: np.ndarray) -> Indicators:
        space = self.space
        mesh = space.mesh
        _, weights, jacdet = mesh.quadrature_arrays()
        w = weights * jacdet

        est = np.zeros(space.ndof)
        n_dofs = 0
        row = 0
        for level in range(space.n_levels):
            n_dofs += space.ndof_per_level[level]
            cells = sorted(mesh.active[level])
            if not cells:
                continue

            b_lev = np.zeros(space.level_basis(level).n_basis_total)
            for cell in cells:
                local, tables = space.level_tables((level, cell))
                b_lev[local] += tables["value"].T @ (r2[row] * w[row])
                row += 1
            est[:n_dofs] += space.subdivision_coefficients(level).T @ b_lev

        h = space.function_sizes() * np.sqrt(mesh.n_dim)
        values = self.C0 * h * np.sqrt(np.maximum(space.coeff_pou * est, 0.0))
        return Indicators(
            flag="functions",
            entities=space.active_functions(),
            values=values,
            levels=space.function_levels(),
        )
