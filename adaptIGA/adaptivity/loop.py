"""
The adaptive loop: SOLVE -> ESTIMATE -> MARK -> REFINE / COARSEN.

    for iteration = 1, 2, ...
        solution   = solver.solve(space)
        indicators = estimator.estimate(u, u_prev, dt, path)
        stop if iteration >= num_max_iter, ndof > max_ndof or nel > max_nel
        marked     = marker.mark(indicators, space, iteration)
        stop if every marked element already sits on the highest allowed
             level, if max(indicators) < tol, or if nothing is marked
        mesh.refine(...);  space.update()
        mesh.coarsen(...); space.update()        (if coarsening is enabled)

Marked entities are converted to elements before the mesh is touched, so
function marks are always interpreted on the space they were computed on.
Coarsening runs after refinement; families that were just refined are no
longer active and are skipped by the mesh.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional

from .estimator import ErrorEstimator, Indicators
from .marker import Marker
from ..exceptions import EmptyIndicatorSet
from ..geometry.hierarchical_space import HierarchicalSpace
from ..solver.base import TimeStepSolver

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    """Statistics of one adaptive iteration."""
    iteration: int
    ndof: int
    nel: int
    max_indicator: float
    n_refined: int = 0
    n_coarsened: int = 0


@dataclass
class AdaptivityResult:
    """
    Outcome of an adaptive loop.

    Attributes:
        u: Solution on the final space
        u_prev: Previous time step on the final space
        indicators: Indicators of the last solve
        iterations: Number of SOLVE steps performed
        reason: Why the loop stopped
        history: One IterationRecord per iteration
    """
    u: np.ndarray
    u_prev: np.ndarray
    indicators: Optional[Indicators]
    iterations: int
    reason: str
    history: List[IterationRecord] = field(default_factory=list)


class AdaptiveLoop:
    """
    Drives solver, estimator and marker on one mesh/space pair.

    The loop owns no state beyond the mesh and space it mutates; running it
    twice continues from the current mesh.
    """

    def __init__(self, space: HierarchicalSpace, solver: TimeStepSolver,
                 estimator: ErrorEstimator, marker: Marker,
                 num_max_iter: int = 6, max_ndof: float = np.inf, max_nel: float = np.inf,
                 tol: float = 0.0):
        if num_max_iter < 1:
            raise ValueError(f"num_max_iter must be at least 1, got {num_max_iter}")
        if estimator.space is not space:
            raise ValueError("The estimator must work on the space driven by the loop")

        self.space = space
        self.mesh = space.mesh
        self.solver = solver
        self.estimator = estimator
        self.marker = marker
        self.num_max_iter = num_max_iter
        self.max_ndof = max_ndof
        self.max_nel = max_nel
        self.tol = tol

    @classmethod
    def from_config(cls, space: HierarchicalSpace, solver: TimeStepSolver,
                    problem, config) -> 'AdaptiveLoop':
        """
        Build estimator, marker and loop from an AdaptivityConfig.

        The mesh's max_level is taken as given; it is set when the mesh is
        created.
        """
        estimator = ErrorEstimator(space, problem, flag=config.flag, C0=config.c0_est,
                                   normalization=config.normalization)
        marker = Marker(
            strategy=config.mark_strategy,
            mark_param=config.mark_param,
            coarsening=config.do_coarsening,
            mark_param_coarsening=config.mark_param_coarsening,
            crp=config.crp,
            mark_neighbours=config.mark_neighbours,
            neighbour_passes=config.neighbour_passes,
        )
        return cls(space, solver, estimator, marker, num_max_iter=config.num_max_iter,
                   max_ndof=config.max_ndof, max_nel=config.max_nel, tol=config.tol)

    def _stop_reason(self, iteration: int) -> Optional[str]:
        if iteration >= self.num_max_iter:
            return "max_iterations"
        if self.space.ndof > self.max_ndof:
            return "max_ndof"
        if self.mesh.n_elements > self.max_nel:
            return "max_nel"
        return None

    def run(self) -> AdaptivityResult:
        """
        Iterate until a stopping criterion holds.

        Returns:
            AdaptivityResult with the final solution and the stop reason
        """
        space, mesh = self.space, self.mesh
        history: List[IterationRecord] = []
        iteration = 0

        while True:
            iteration += 1

            # SOLVE
            solution = self.solver.solve(space)

            # ESTIMATE
            indicators = self.estimator.estimate(solution.u, solution.u_prev, solution.dt, solution.path)
            record = IterationRecord(iteration=iteration, ndof=space.ndof, nel=mesh.n_elements,
                                     max_indicator=indicators.max)
            history.append(record)
            logger.info("Iteration %d: ndof = %d, nel = %d, max indicator = %.4e",
                        iteration, record.ndof, record.nel, record.max_indicator)

            reason = self._stop_reason(iteration)
            if reason is not None:
                break

            # MARK
            try:
                marked = self.marker.mark(indicators, space, iteration)
            except EmptyIndicatorSet:
                reason = "empty_indicators"
                break

            to_refine = marked.refine_elements(space)
            to_coarsen = marked.coarsen_elements(space) if self.marker.coarsening else []
            if to_refine and mesh.max_level is not None:
                refinable = [eid for eid in to_refine if eid[0] + 1 <= mesh.max_level]
                if not refinable:
                    reason = "max_level"
                    break
                to_refine = refinable

            if indicators.max < self.tol:
                reason = "tolerance"
                break
            if not to_refine:
                reason = "no_refinement"
                break

            # REFINE
            mesh.refine(to_refine)
            space.update()
            record.n_refined = len(to_refine)

            # COARSEN
            if to_coarsen:
                report = mesh.coarsen(to_coarsen)
                record.n_coarsened = sum(report.values())
                if record.n_coarsened:
                    space.update()

            logger.debug("Iteration %d: refined %d elements, merged %d families",
                         iteration, record.n_refined, record.n_coarsened)

        logger.info("Adaptive loop stopped after %d iterations: %s", iteration, reason)
        return AdaptivityResult(u=solution.u, u_prev=solution.u_prev, indicators=indicators,
                                iterations=iteration, reason=reason, history=history)
