"""
Base solver interface for the adaptive loop.

The adaptive loop knows nothing about the PDE being solved. It only asks a
TimeStepSolver for a discrete solution on the current hierarchical space:

    solution = solver.solve(space)
    solution.u, solution.u_prev      # both over the current active basis

The solver is responsible for bringing the previous time step onto the
current space (the mesh may have changed since it was computed).
"""

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..geometry.hierarchical_space import HierarchicalSpace


@dataclass
class TimeStepSolution:
    """
    Result of one solve on the current space.

    Attributes:
        u: Coefficients of the new time step, shape (ndof,)
        u_prev: Previous time step represented on the same space, shape (ndof,)
        dt: Time step size
        path: Heat source position of the time step (or None)
    """
    u: np.ndarray
    u_prev: np.ndarray
    dt: float
    path: Optional[np.ndarray] = None


class TimeStepSolver(ABC):
    """Abstract solver consumed by AdaptiveLoop."""

    @abstractmethod
    def solve(self, space: HierarchicalSpace) -> TimeStepSolution:
        """
        Compute the discrete solution on the current space.

        Parameters:
            space: Hierarchical space, up to date with its mesh

        Returns:
            TimeStepSolution with u and u_prev of length space.ndof
        """
        pass

