"""
Tests for the residual-based error estimator.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from adaptIGA.adaptivity.estimator import ErrorEstimator, Indicators
from adaptIGA.discretization.hierarchical_mesh import HierarchicalMesh
from adaptIGA.exceptions import StaleSolution
from adaptIGA.quadrature.gauss import GaussQuadrature
from adaptIGA.solver.problem import ProblemData, constant_coefficient, constant_source

from conftest import make_space


def make_problem(source=0.0, capacity=1.0, diffusion=1.0, grad_c_diff=None):
    return ProblemData(
        c_diff=constant_coefficient(diffusion),
        c_cap=constant_coefficient(capacity),
        f=constant_source(source),
        grad_c_diff=grad_c_diff,
    )


@pytest.fixture
def coarse_mesh():
    """2x2 level-0 mesh (4 elements) on the unit square."""
    return HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (2, 2), GaussQuadrature((3, 3)))


class TestZeroResidual:
    """A vanishing residual gives vanishing indicators."""

    @pytest.mark.parametrize("flag", ["elements", "functions"])
    def test_zero_source_zero_solution(self, coarse_mesh, flag):
        """Test that zero data and zero solutions give zero indicators."""
        space = make_space(coarse_mesh)
        estimator = ErrorEstimator(space, make_problem(), flag=flag)
        u = np.zeros(space.ndof)

        indicators = estimator.estimate(u, u, dt=1.0)

        assert isinstance(indicators, Indicators)
        assert indicators.flag == flag
        assert len(indicators) == (4 if flag == "elements" else space.ndof)
        assert_allclose(indicators.values, 0.0)
        assert indicators.max == 0.0


class TestElementIndicators:
    """Tests for the element variant."""

    def test_constant_source_normalized(self, coarse_mesh):
        """Test est = h sqrt(d) sqrt(f^2 / max|f| |Q|) for a constant source."""
        space = make_space(coarse_mesh)
        estimator = ErrorEstimator(space, make_problem(source=4.0))
        u = np.zeros(space.ndof)

        values = estimator.estimate(u, u, dt=1.0).values

        # h = 0.5, |Q| = 0.25, r^2 / max|f| = 4
        assert_allclose(values, 0.5 * np.sqrt(2.0) * np.sqrt(4.0 * 0.25))

    def test_constant_source_unnormalized(self, coarse_mesh):
        """Test the indicator without source normalization."""
        space = make_space(coarse_mesh)
        estimator = ErrorEstimator(space, make_problem(source=4.0), normalization="none")
        u = np.zeros(space.ndof)

        values = estimator.estimate(u, u, dt=1.0).values
        assert_allclose(values, 0.5 * np.sqrt(2.0) * np.sqrt(16.0 * 0.25))

    def test_time_derivative_term(self, coarse_mesh):
        """Test the capacity term; without a source no normalization applies."""
        space = make_space(coarse_mesh)
        estimator = ErrorEstimator(space, make_problem(capacity=2.0))

        u = space.coeff_pou.copy()           # u = 1
        u_prev = np.zeros(space.ndof)
        values = estimator.estimate(u, u_prev, dt=0.5).values

        # r = -c_cap (u - u_prev) / dt = -4
        assert_allclose(values, 0.5 * np.sqrt(2.0) * np.sqrt(16.0 * 0.25), rtol=1e-10)

    def test_grad_c_diff_term(self, coarse_mesh):
        """Test the derivative term of the diffusion coefficient."""
        space = make_space(coarse_mesh)
        problem = make_problem(capacity=0.0, grad_c_diff=lambda u: np.ones_like(u))
        estimator = ErrorEstimator(space, problem)

        u = space.project(lambda x: x[..., 0])
        values = estimator.estimate(u, u, dt=1.0).values

        # r = sum_d 1 * du/dx_d = 1
        assert_allclose(values, 0.5 * np.sqrt(2.0) * np.sqrt(0.25), rtol=1e-7)

    def test_c0_scaling(self, refined_mesh_2d):
        """Test that indicators scale linearly with C0."""
        space = make_space(refined_mesh_2d)
        problem = make_problem(source=1.0)
        u = np.random.default_rng(3).random(space.ndof)

        base = ErrorEstimator(space, problem, C0=1.0).estimate(u, 0.5 * u, dt=0.1).values
        scaled = ErrorEstimator(space, problem, C0=2.5).estimate(u, 0.5 * u, dt=0.1).values
        assert_allclose(scaled, 2.5 * base)

    def test_entities_follow_canonical_order(self, refined_mesh_2d):
        """Test that element indicators are ordered like the active elements."""
        space = make_space(refined_mesh_2d)
        indicators = ErrorEstimator(space, make_problem(source=1.0)).estimate(
            np.zeros(space.ndof), np.zeros(space.ndof), dt=1.0)

        assert indicators.entities == refined_mesh_2d.active_elements()
        assert list(indicators.levels) == [eid[0] for eid in indicators.entities]


class TestFunctionIndicators:
    """Tests for the function variant."""

    def test_partition_of_unity_sum(self, refined_mesh_2d, truncated):
        """Test sum_b (est_b / (h_b sqrt(d)))^2 = int r^2 / max|f|."""
        space = make_space(refined_mesh_2d, truncated=truncated)
        estimator = ErrorEstimator(space, make_problem(source=4.0), flag="functions")
        u = np.zeros(space.ndof)

        values = estimator.estimate(u, u, dt=1.0).values
        scaled = values / (space.function_sizes() * np.sqrt(2.0))

        assert_allclose(np.sum(scaled ** 2), 4.0, rtol=1e-10)

    def test_entities_are_active_functions(self, refined_mesh_2d):
        """Test that function indicators are ordered like the DOFs."""
        space = make_space(refined_mesh_2d)
        indicators = ErrorEstimator(space, make_problem(source=1.0), flag="functions").estimate(
            np.zeros(space.ndof), np.zeros(space.ndof), dt=1.0)

        assert indicators.entities == space.active_functions()
        assert len(indicators.levels) == space.ndof


class TestEstimatorProperties:
    """General properties and error handling."""

    @pytest.mark.parametrize("flag", ["elements", "functions"])
    def test_non_negative(self, refined_mesh_2d, truncated, flag):
        """Test that indicators are non-negative for arbitrary solutions."""
        space = make_space(refined_mesh_2d, truncated=truncated)
        problem = ProblemData(
            c_diff=lambda u: 1.0 + u ** 2,
            c_cap=lambda u, u_prev: 2.0 + 0.0 * u,
            f=lambda x, path: np.sin(3.0 * x[..., 0]) - x[..., 1],
            grad_c_diff=lambda u: 2.0 * u,
        )
        rng = np.random.default_rng(7)
        u = rng.standard_normal(space.ndof)
        u_prev = rng.standard_normal(space.ndof)

        values = ErrorEstimator(space, problem, flag=flag).estimate(u, u_prev, dt=0.1).values
        assert np.all(values >= 0.0)
        assert np.all(np.isfinite(values))

    def test_stale_solution(self, refined_mesh_2d):
        """Test that solutions from another mesh are rejected."""
        space = make_space(refined_mesh_2d)
        estimator = ErrorEstimator(space, make_problem())
        u = np.zeros(space.ndof)

        with pytest.raises(StaleSolution):
            estimator.estimate(np.zeros(space.ndof - 1), u, dt=1.0)
        with pytest.raises(StaleSolution):
            estimator.estimate(u, np.zeros(space.ndof + 4), dt=1.0)

    def test_invalid_arguments(self, coarse_mesh):
        """Test validation of flag, C0, normalization and dt."""
        space = make_space(coarse_mesh)
        problem = make_problem()

        with pytest.raises(ValueError):
            ErrorEstimator(space, problem, flag="edges")
        with pytest.raises(ValueError):
            ErrorEstimator(space, problem, C0=-1.0)
        with pytest.raises(ValueError):
            ErrorEstimator(space, problem, normalization="l2")
        with pytest.raises(ValueError):
            ErrorEstimator(space, problem).estimate(np.zeros(space.ndof), np.zeros(space.ndof), dt=0.0)
