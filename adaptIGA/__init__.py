"""
adaptIGA - Adaptive Hierarchical Isogeometric Analysis

Adaptive refinement and coarsening of hierarchical spline spaces (HB- and
THB-splines) driven by residual-based a posteriori error indicators, for
transient nonlinear diffusion problems such as heat conduction with a
moving heat source.

Key modules:
- discretization: Knot vectors, elements, level meshes, hierarchical mesh
- geometry: B-spline basis functions, hierarchical spline spaces
- adaptivity: Error estimator, marking strategies, adaptive loop, transient driver
- solver: Time-step solver interface, nonlinear heat solver, problem data
- quadrature: Gauss-Legendre integration
- io: Configuration loading

Quick start:
    from adaptIGA import HierarchicalMesh, HierarchicalSpace, GaussQuadrature

    mesh = HierarchicalMesh(((0, 1), (0, 1)), (4, 4), GaussQuadrature((3, 3)), max_level=4)
    space = HierarchicalSpace(mesh, degrees=(2, 2), truncated=True)

    # Refine one element and rebuild the basis
    mesh.refine([(0, (1, 1))])
    space.update()
    print(space.ndof, space.ndof_per_level)

Quick start (adaptive transient run):
    from adaptIGA import TransientAdaptiveDriver, load_config

    config = load_config("travelling_heat_source.json")
    driver = TransientAdaptiveDriver(config.method, config.adaptivity, problem)
    result = driver.run()
"""

__version__ = "0.1.0"

# Core imports for convenience
from .exceptions import (
    AdaptivityError,
    InvalidRefinement,
    StaleSolution,
    EmptyIndicatorSet,
    InconsistentBasis,
)
from .quadrature.gauss import GaussQuadrature
from .discretization.hierarchical_mesh import HierarchicalMesh
from .geometry.hierarchical_space import HierarchicalSpace
from .adaptivity.estimator import ErrorEstimator, Indicators
from .adaptivity.marker import Marker, MarkedSet
from .adaptivity.loop import AdaptiveLoop, AdaptivityResult
from .adaptivity.transient import TransientAdaptiveDriver
from .solver.problem import ProblemData
from .solver.heat import NonlinearHeatSolver
from .io.config import AdaptivityConfig, MethodConfig, TimeConfig, SimulationConfig, load_config
