"""
Tests for the adaptive loop (SOLVE -> ESTIMATE -> MARK -> REFINE / COARSEN).
"""

import numpy as np
import pytest

from adaptIGA.adaptivity.estimator import ErrorEstimator
from adaptIGA.adaptivity.loop import AdaptiveLoop, AdaptivityResult
from adaptIGA.adaptivity.marker import Marker
from adaptIGA.discretization.hierarchical_mesh import HierarchicalMesh
from adaptIGA.exceptions import EmptyIndicatorSet
from adaptIGA.io.config import AdaptivityConfig
from adaptIGA.quadrature.gauss import GaussQuadrature
from adaptIGA.solver.base import TimeStepSolution, TimeStepSolver
from adaptIGA.solver.problem import ProblemData, constant_coefficient, constant_source

from conftest import make_space


class ZeroSolver(TimeStepSolver):
    """Returns the zero function on whatever space it is given."""

    def __init__(self):
        self.calls = []

    def solve(self, space):
        self.calls.append(space.ndof)
        zeros = np.zeros(space.ndof)
        return TimeStepSolution(u=zeros, u_prev=zeros.copy(), dt=1.0)


class SilentMarker(Marker):
    def mark(self, indicators, space, iteration=0):
        raise EmptyIndicatorSet("no indicators")


def make_problem(source):
    return ProblemData(c_diff=constant_coefficient(1.0), c_cap=constant_coefficient(1.0),
                       f=constant_source(source))


def make_loop(source=0.0, max_level=None, marker=None, **kwargs):
    mesh = HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (2, 2), GaussQuadrature((3, 3)),
                            max_level=max_level)
    space = make_space(mesh)
    estimator = ErrorEstimator(space, make_problem(source))
    return AdaptiveLoop(space, ZeroSolver(), estimator, marker or Marker("MS", 0.75), **kwargs)


class TestStoppingCriteria:
    """Tests for the reasons the loop stops."""

    def test_zero_residual_tolerance(self):
        """Test that a vanishing residual stops after one solve."""
        loop = make_loop(source=0.0, tol=0.5)
        result = loop.run()

        assert isinstance(result, AdaptivityResult)
        assert result.iterations == 1
        assert result.reason == "tolerance"
        assert loop.mesh.n_elements == 4
        assert loop.mesh.revision == 0

    def test_zero_residual_no_refinement(self):
        """Test that identical zero indicators leave REFINE empty."""
        loop = make_loop(source=0.0, tol=0.0)
        result = loop.run()

        assert result.iterations == 1
        assert result.reason == "no_refinement"
        assert loop.mesh.n_elements == 4

    def test_max_iterations(self):
        """Test that the loop solves exactly num_max_iter times."""
        loop = make_loop(source=1.0, num_max_iter=2)
        result = loop.run()

        assert result.reason == "max_iterations"
        assert result.iterations == 2
        assert len(loop.solver.calls) == 2
        assert [r.iteration for r in result.history] == [1, 2]

    def test_max_level(self):
        """Test that marks beyond the highest level end the loop."""
        loop = make_loop(source=1.0, max_level=1, num_max_iter=10)
        result = loop.run()

        assert result.reason == "max_level"
        assert result.iterations == 2
        assert loop.mesh.nel_per_level == (0, 16)
        assert result.history[0].n_refined == 4

    def test_max_ndof(self):
        """Test the DOF limit."""
        loop = make_loop(source=1.0, max_ndof=20, num_max_iter=10)
        result = loop.run()

        assert result.reason == "max_ndof"
        assert loop.solver.calls == [16, 36]
        assert len(result.u) == loop.space.ndof

    def test_max_nel(self):
        """Test the element limit."""
        loop = make_loop(source=1.0, max_nel=10, num_max_iter=10)
        result = loop.run()

        assert result.reason == "max_nel"
        assert loop.mesh.n_elements == 16

    def test_empty_indicators(self):
        """Test that EmptyIndicatorSet from the marker ends the loop."""
        loop = make_loop(source=1.0, marker=SilentMarker())
        result = loop.run()

        assert result.reason == "empty_indicators"
        assert result.iterations == 1


class TestLoopSetup:
    """Tests for construction of the loop."""

    def test_estimator_on_other_space(self):
        """Test that estimator and loop must share their space."""
        mesh = HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (2, 2), GaussQuadrature((3, 3)))
        space = make_space(mesh)
        other = make_space(mesh)
        estimator = ErrorEstimator(other, make_problem(1.0))

        with pytest.raises(ValueError):
            AdaptiveLoop(space, ZeroSolver(), estimator, Marker())

    def test_invalid_iterations(self):
        with pytest.raises(ValueError):
            make_loop(num_max_iter=0)

    def test_from_config(self):
        """Test that from_config forwards every parameter."""
        mesh = HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (2, 2), GaussQuadrature((3, 3)))
        space = make_space(mesh)
        config = AdaptivityConfig(flag="functions", c0_est=2.0, mark_strategy="GR", mark_param=0.5,
                                  do_coarsening=True, crp=0.9, mark_neighbours=True,
                                  max_ndof=100, max_nel=200, num_max_iter=3, tol=0.1)

        loop = AdaptiveLoop.from_config(space, ZeroSolver(), make_problem(1.0), config)

        assert loop.estimator.flag == "functions"
        assert loop.estimator.C0 == 2.0
        assert loop.marker.strategy == "GR"
        assert loop.marker.mark_param == 0.5
        assert loop.marker.coarsening
        assert loop.marker.crp == 0.9
        assert loop.marker.mark_neighbours
        assert (loop.num_max_iter, loop.max_ndof, loop.max_nel, loop.tol) == (3, 100, 200, 0.1)

    def test_function_flag_refines(self):
        """Test one refinement step driven by function indicators."""
        mesh = HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (2, 2), GaussQuadrature((3, 3)))
        space = make_space(mesh)
        estimator = ErrorEstimator(space, make_problem(1.0), flag="functions")
        loop = AdaptiveLoop(space, ZeroSolver(), estimator, Marker(), num_max_iter=2)

        result = loop.run()

        assert result.reason == "max_iterations"
        assert result.history[0].n_refined > 0
        assert mesh.check_tiling()
        assert result.indicators.flag == "functions"
        assert len(result.indicators) == space.ndof


class LocalizedSolver(TimeStepSolver):
    """Returns a fixed level-0 B-spline, projected onto the current space."""

    def __init__(self, snapshot):
        self.snapshot = snapshot

    def solve(self, space):
        u = space.project(self.snapshot)
        return TimeStepSolution(u=u, u_prev=u.copy(), dt=1.0)


class TestCoarsening:
    """Tests for the COARSEN step of the loop."""

    @pytest.fixture
    def mesh(self):
        mesh = HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (4, 4), GaussQuadrature((3, 3)))
        mesh.refine([(0, (0, 0)), (0, (0, 1)), (0, (1, 0)), (0, (1, 1))])
        return mesh

    @pytest.fixture
    def corner_bump(self):
        """The quadratic B-spline supported on the upper right level-0 element only."""
        coarse = make_space(HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (4, 4), GaussQuadrature((3, 3))))
        u0 = np.zeros(coarse.ndof)
        u0[coarse.dof_index((0, (5, 5)))] = 1.0
        return coarse.snapshot(u0)

    def _run(self, mesh, corner_bump, flag):
        space = make_space(mesh)
        estimator = ErrorEstimator(space, make_problem(0.0), flag=flag)
        marker = Marker("MS", 0.75, coarsening=True, mark_param_coarsening=0.25)
        loop = AdaptiveLoop(space, LocalizedSolver(corner_bump), estimator, marker, num_max_iter=2)
        return loop.run()

    def test_element_families_merged(self, mesh, corner_bump):
        """Test that refinement at the bump and coarsening away from it happen together."""
        result = self._run(mesh, corner_bump, "elements")

        assert result.reason == "max_iterations"
        assert result.history[0].n_refined == 1
        assert result.history[0].n_coarsened == 4
        assert sum(r.n_coarsened for r in result.history) > 0
        assert mesh.check_tiling()
        assert mesh.nel_per_level == (15, 4)
        assert mesh.active_elements(1) == sorted(mesh.children((0, (3, 3))))

    def test_function_families_merged(self, mesh, corner_bump):
        """Test coarsening through function indicators."""
        result = self._run(mesh, corner_bump, "functions")

        assert result.history[0].n_refined > 0
        assert result.history[0].n_coarsened >= 1
        assert sum(r.n_coarsened for r in result.history) > 0
        assert mesh.is_active((0, (0, 0)))
        assert mesh.check_tiling()

    def test_coarsening_disabled(self, mesh, corner_bump):
        space = make_space(mesh)
        estimator = ErrorEstimator(space, make_problem(0.0))
        loop = AdaptiveLoop(space, LocalizedSolver(corner_bump), estimator, Marker("MS", 0.75),
                            num_max_iter=2)

        result = loop.run()

        assert all(r.n_coarsened == 0 for r in result.history)
        assert mesh.nel_per_level[1] == 16 + 4


class TestStopOrder:
    """The highest-level check comes before the tolerance check."""

    def test_max_level_before_tolerance(self):
        loop = make_loop(source=1.0, max_level=0, tol=1.0e6, num_max_iter=10)
        result = loop.run()

        assert result.reason == "max_level"
        assert result.iterations == 1
        assert loop.mesh.n_elements == 4

    def test_tolerance_when_levels_allow_refinement(self):
        loop = make_loop(source=1.0, max_level=1, tol=1.0e6, num_max_iter=10)
        result = loop.run()

        assert result.reason == "tolerance"
        assert loop.mesh.n_elements == 4
