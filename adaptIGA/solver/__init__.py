"""
Solver module: time-step solver interface and the nonlinear heat solver.
"""

from .base import TimeStepSolver, TimeStepSolution
from .heat import NonlinearHeatSolver
from .problem import ProblemData
