"""
Transient adaptive simulation driver.

For every time step the adaptive loop is run with the nonlinear heat solver,
so the hierarchical mesh follows a moving heat source: elements are refined
where the residual is large and coarsened again once the source has passed.

Usage:
    config = load_config("travelling_heat_source.json")
    driver = TransientAdaptiveDriver(config.method, config.adaptivity, problem)
    result = driver.run()
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .loop import AdaptiveLoop
from ..discretization.hierarchical_mesh import HierarchicalMesh
from ..geometry.hierarchical_space import HierarchicalSpace
from ..io.config import AdaptivityConfig, MethodConfig
from ..quadrature.gauss import GaussQuadrature
from ..solver.heat import NonlinearHeatSolver
from ..solver.problem import ProblemData

logger = logging.getLogger(__name__)


def build_discretization(method: MethodConfig,
                         max_level: Optional[int] = None) -> Tuple[HierarchicalMesh, HierarchicalSpace]:
    """Create the level-0 mesh and its hierarchical space."""
    mesh = HierarchicalMesh(method.domain, method.nsub_coarse,
                            GaussQuadrature(method.nquad), max_level=max_level)
    space = HierarchicalSpace(mesh, method.degree, truncated=method.truncated)
    return mesh, space


@dataclass
class StepRecord:
    """Statistics of one time step."""
    step: int
    time: float
    ndof: int
    nel: int
    iterations: int
    reason: str
    max_indicator: float


@dataclass
class TransientResult:
    """
    Outcome of a transient simulation.

    Attributes:
        u: Solution of the last time step on the final space
        history: One StepRecord per time step
    """
    u: np.ndarray
    history: List[StepRecord] = field(default_factory=list)


class TransientAdaptiveDriver:
    """
    Runs AdaptiveLoop + NonlinearHeatSolver over the time steps of a problem.

    Attributes:
        mesh: Hierarchical mesh (mutated in place)
        space: Hierarchical space on the mesh
        solver: Heat solver carrying the previous time step
        loop: Adaptive loop used for every step
    """

    def __init__(self, method: MethodConfig, adaptivity: AdaptivityConfig, problem: ProblemData,
                 lumped: bool = False, nonlinear_tol: float = 1e-5, max_nonlinear_iter: int = 20):
        self.problem = problem
        self.mesh, self.space = build_discretization(method, adaptivity.max_level)
        self.solver = NonlinearHeatSolver(problem, lumped=lumped, nonlinear_tol=nonlinear_tol,
                                          max_nonlinear_iter=max_nonlinear_iter)
        self.loop = AdaptiveLoop.from_config(self.space, self.solver, problem, adaptivity)

    def run(self, n_steps: Optional[int] = None,
            callback: Optional[Callable[[int, HierarchicalSpace, np.ndarray], None]] = None) -> TransientResult:
        """
        Integrate in time.

        Parameters:
            n_steps: Number of time steps (default: all steps of the problem)
            callback: Called as callback(step, space, u) after every step

        Returns:
            TransientResult with the final solution and per-step history
        """
        total = self.problem.n_time_steps
        n_steps = total if n_steps is None else n_steps
        if not 1 <= n_steps <= total:
            raise ValueError(f"n_steps must lie in [1, {total}], got {n_steps}")

        u = self.solver.initialize(self.space)
        history = []

        for step in range(1, n_steps + 1):
            result = self.loop.run()
            u = result.u
            self.solver.advance(self.space, u)

            record = StepRecord(
                step=step,
                time=float(self.problem.time_discretization[step]),
                ndof=self.space.ndof,
                nel=self.mesh.n_elements,
                iterations=result.iterations,
                reason=result.reason,
                max_indicator=result.indicators.max if result.indicators is not None else 0.0,
            )
            history.append(record)
            logger.info("Time step %d/%d (t = %.4g): ndof = %d, nel = %d, levels = %s",
                        step, n_steps, record.time, record.ndof, record.nel, self.mesh.nel_per_level)

            if callback is not None:
                callback(step, self.space, u)

        return TransientResult(u=u, history=history)
