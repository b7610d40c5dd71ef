"""
Nonlinear transient heat conduction solver.

Backward Euler in time, Picard (fixed point) iteration for the
temperature-dependent coefficients:

    (M(u^k) / dt + K(u^k)) u^{k+1} = M(u^k) / dt u_prev + F

    M_ij = int c_cap(u, u_prev) N_i N_j     (optionally row-sum lumped)
    K_ij = int c_diff(u) grad N_i . grad N_j
    F_i  = int f(x, path) N_i

Natural (zero flux) boundary conditions everywhere.

The previous time step is kept as a FunctionSnapshot and L2-projected onto
the current hierarchical space on every solve, so the solver can be called
repeatedly by the adaptive loop while the mesh is refined and coarsened.
"""

import logging
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve
from typing import Optional, Tuple

from .base import TimeStepSolution, TimeStepSolver
from .problem import ProblemData
from ..discretization.assembly import TripletAssembler
from ..geometry.hierarchical_space import FunctionSnapshot, HierarchicalSpace

logger = logging.getLogger(__name__)


class NonlinearHeatSolver(TimeStepSolver):
    """
    Backward Euler / Picard solver for c_cap du/dt - div(c_diff grad u) = f.

    Attributes:
        problem: Coefficients, time discretization and source path
        lumped: Use a row-sum lumped capacity matrix
        nonlinear_tol: Relative increment tolerance of the Picard iteration
        max_nonlinear_iter: Maximum number of Picard iterations
        step: Index of the time step being solved (1-based)
    """

    def __init__(self, problem: ProblemData, lumped: bool = False,
                 nonlinear_tol: float = 1e-5, max_nonlinear_iter: int = 20):
        if nonlinear_tol <= 0:
            raise ValueError(f"nonlinear_tol must be positive, got {nonlinear_tol}")
        if max_nonlinear_iter < 1:
            raise ValueError(f"max_nonlinear_iter must be at least 1, got {max_nonlinear_iter}")

        self.problem = problem
        self.lumped = lumped
        self.nonlinear_tol = nonlinear_tol
        self.max_nonlinear_iter = max_nonlinear_iter

        self.step = 1
        self._previous: Optional[FunctionSnapshot] = None
        self._previous_projected: Optional[Tuple[int, int, np.ndarray]] = None

    def initialize(self, space: HierarchicalSpace) -> np.ndarray:
        """
        Project the initial temperature and make it the previous step.

        Returns:
            Initial coefficients on the current space
        """
        T0 = self.problem.initial_temperature
        u0 = space.project(lambda x: np.full(np.shape(x)[:-1], T0))
        self._previous = space.snapshot(u0)
        self._previous_projected = None
        self.step = 1
        return u0

    def set_previous(self, space: HierarchicalSpace, u: np.ndarray) -> None:
        """Freeze `u` as the previous time step."""
        self._previous = space.snapshot(u)
        self._previous_projected = None

    def advance(self, space: HierarchicalSpace, u: np.ndarray) -> None:
        """Accept `u` as the solution of the current step and move on."""
        self.set_previous(space, u)
        self.step += 1

    def previous_on(self, space: HierarchicalSpace) -> np.ndarray:
        """The previous time step projected onto the current space."""
        if self._previous is None:
            raise RuntimeError("No previous time step. Call initialize() first.")

        key = (id(space), space.mesh.revision)
        if self._previous_projected is None or self._previous_projected[:2] != key:
            self._previous_projected = key + (space.project(self._previous),)
        return self._previous_projected[2]

    def assemble(self, space: HierarchicalSpace, u: np.ndarray, u_prev: np.ndarray,
                 path: Optional[np.ndarray]) -> Tuple[sparse.csr_matrix, sparse.csr_matrix, np.ndarray]:
        """
        Assemble capacity matrix, conductivity matrix and load vector.

        Coefficients are evaluated with the current iterate u.

        Returns:
            (M, K, F)
        """
        problem = self.problem
        points, weights, jacdet = space.mesh.quadrature_arrays()
        u_q = space.evaluate_at_quadrature(u, ("value",))["value"]
        u_prev_q = space.evaluate_at_quadrature(u_prev, ("value",))["value"]

        cap = np.broadcast_to(problem.c_cap(u_q, u_prev_q), u_q.shape)
        diff = np.broadcast_to(problem.c_diff(u_q), u_q.shape)
        src = np.broadcast_to(problem.f(points, path), u_q.shape)

        M = TripletAssembler(space.ndof)
        K = TripletAssembler(space.ndof)
        F = np.zeros(space.ndof)

        for e, element_id in enumerate(space.mesh.active_elements()):
            dofs, tables = space.element_basis(element_id, ("value", "gradient"))
            N = tables["value"]
            dN = tables["gradient"]
            w = weights[e] * jacdet[e]

            M.add(dofs, N.T @ ((w * cap[e])[:, None] * N))
            K.add(dofs, np.einsum("qid,qjd,q->ij", dN, dN, w * diff[e]))
            F[dofs] += N.T @ (w * src[e])

        M = M.tocsr()
        if self.lumped:
            M = sparse.diags(np.asarray(M.sum(axis=1)).ravel(), format="csr")
        return M, K.tocsr(), F

    def solve(self, space: HierarchicalSpace) -> TimeStepSolution:
        """
        Solve the current time step on the current space.

        Returns:
            TimeStepSolution with the converged (or last) Picard iterate
        """
        problem = self.problem
        if self.step > problem.n_time_steps:
            raise RuntimeError(
                f"Time step {self.step} is beyond the {problem.n_time_steps} steps of the problem")

        dt = problem.time_step(self.step)
        path = problem.path_at(self.step)
        u_prev = self.previous_on(space)

        u = u_prev.copy()
        for iteration in range(1, self.max_nonlinear_iter + 1):
            M, K, F = self.assemble(space, u, u_prev, path)
            A = M / dt + K
            rhs = M @ u_prev / dt + F
            u_new = spsolve(sparse.csc_matrix(A), rhs)

            norm = np.linalg.norm(u_new)
            increment = np.linalg.norm(u_new - u) / (norm if norm > 0 else 1.0)
            u = u_new
            logger.debug("Step %d, Picard iteration %d: relative increment %.3e",
                         self.step, iteration, increment)
            if increment < self.nonlinear_tol:
                break
        else:
            logger.warning("Step %d: Picard iteration did not converge in %d iterations "
                           "(relative increment %.3e)", self.step, self.max_nonlinear_iter, increment)

        return TimeStepSolution(u=u, u_prev=u_prev, dt=dt, path=path)
