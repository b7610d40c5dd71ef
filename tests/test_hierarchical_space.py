"""
Tests for hierarchical spline spaces (HB- and THB-splines).
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from adaptIGA.discretization.hierarchical_mesh import HierarchicalMesh
from adaptIGA.exceptions import InconsistentBasis, StaleSolution
from adaptIGA.geometry.hierarchical_space import HierarchicalSpace, FunctionSnapshot
from adaptIGA.quadrature.gauss import GaussQuadrature

from conftest import make_space


def mesh_1d(n_elements=4, max_level=None):
    return HierarchicalMesh(((0.0, 1.0),), (n_elements,), GaussQuadrature((3,)), max_level=max_level)


class TestActiveFunctions:
    """Tests for the selection of active and deactivated functions."""

    def test_uniform_space(self, mesh_2d):
        """Test that an unrefined mesh gives the full tensor basis."""
        space = make_space(mesh_2d)

        assert space.ndof == 36
        assert space.ndof_per_level == (36,)
        assert_allclose(space.subdivision_coefficients(0).toarray(), np.eye(36))
        assert_allclose(space.coeff_pou, 1.0)

    def test_linear_1d(self):
        """Test active functions of linear splines after one refinement."""
        mesh = mesh_1d()
        space = HierarchicalSpace(mesh, (1,), truncated=False)

        mesh.refine([(0, (0,))])
        space.update()

        assert space.ndof_per_level == (4, 2)
        assert_array_equal(space.active_indices(0), [1, 2, 3, 4])
        assert_array_equal(space.deactivated_indices(0), [0])
        assert_array_equal(space.active_indices(1), [0, 1])

    def test_quadratic_1d(self):
        """Test active functions of quadratic splines after refining half the domain."""
        mesh = mesh_1d()
        space = HierarchicalSpace(mesh, (2,), truncated=True)

        mesh.refine([(0, (0,)), (0, (1,))])
        space.update()

        assert space.ndof_per_level == (4, 4)
        assert_array_equal(space.active_indices(0), [2, 3, 4, 5])
        assert_array_equal(space.deactivated_indices(0), [0, 1])
        assert_array_equal(space.active_indices(1), [0, 1, 2, 3])

    def test_function_ids(self, refined_mesh_2d):
        """Test the conversions between function ids and DOF numbers."""
        space = make_space(refined_mesh_2d)
        functions = space.active_functions()

        assert len(functions) == space.ndof
        assert functions == sorted(functions)
        for dof in (0, space.ndof // 2, space.ndof - 1):
            assert space.function_id(dof) == functions[dof]
            assert space.dof_index(functions[dof]) == dof
        assert_array_equal(np.bincount(space.function_levels()), space.ndof_per_level)

    def test_inactive_function_id(self, refined_mesh_2d):
        """Test that looking up an inactive function fails."""
        space = make_space(refined_mesh_2d)

        with pytest.raises(ValueError):
            space.dof_index((0, (0, 0)))

    def test_degree_dimension_mismatch(self, mesh_2d):
        """Test that one degree per direction is required."""
        with pytest.raises(ValueError):
            HierarchicalSpace(mesh_2d, (2,))


class TestSubdivision:
    """Tests for refinement matrices and Csub."""

    def test_refinement_matrix_shape(self, mesh_2d):
        """Test the tensor two-scale matrix."""
        space = make_space(mesh_2d)
        P = space.refinement_matrix(0)

        assert P.shape == (100, 36)
        # constants are reproduced: P @ 1 = 1
        assert_allclose(P @ np.ones(36), 1.0)

    def test_csub_shapes(self, refined_mesh_2d, truncated):
        """Test Csub[l] maps the DOFs of levels 0..l to the level-l basis."""
        space = make_space(refined_mesh_2d, truncated=truncated)

        n_dofs = np.cumsum(space.ndof_per_level)
        for level in range(space.n_levels):
            C = space.subdivision_coefficients(level)
            assert C.shape == (space.level_basis(level).n_basis_total, n_dofs[level])

    def test_standard_csub_is_two_scale_lift(self, refined_mesh_2d):
        """Test that without truncation Csub[l+1] extends P_l Csub[l]."""
        space = make_space(refined_mesh_2d, truncated=False)

        for level in range(space.n_levels - 1):
            C = space.subdivision_coefficients(level)
            C_next = space.subdivision_coefficients(level + 1)
            lifted = space.refinement_matrix(level) @ C
            assert_allclose(C_next[:, :C.shape[1]].toarray(), lifted.toarray(), atol=1e-14)

    def test_lifting_reproduces_function(self, refined_mesh_2d, truncated):
        """Test that per-level and finest-level lifting give the same function."""
        space = make_space(refined_mesh_2d, truncated=truncated)
        u = np.random.default_rng(0).random(space.ndof)

        at_quadrature = space.evaluate_at_quadrature(u)["value"]
        points, _, _ = refined_mesh_2d.quadrature_arrays()
        at_points = space.evaluate_points(u, points.reshape(-1, 2))

        assert_allclose(at_quadrature.ravel(), at_points, atol=1e-12)


class TestPartitionOfUnity:
    """Tests for coeff_pou in both modes."""

    def test_truncated_coefficients_are_one(self, refined_mesh_2d):
        """Test that THB-splines form a partition of unity directly."""
        space = make_space(refined_mesh_2d, truncated=True)
        assert_allclose(space.coeff_pou, 1.0)

    def test_partition_of_unity_at_points(self, refined_mesh_2d, truncated, unit_points):
        """Test sum_b a_b b(x) = 1 at arbitrary points."""
        space = make_space(refined_mesh_2d, truncated=truncated)

        values = space.evaluate_points(space.coeff_pou, unit_points)
        assert_allclose(values, 1.0, atol=1e-12)

    def test_partition_of_unity_on_elements(self, refined_mesh_2d, truncated):
        """Test the partition of unity through the element shape functions."""
        space = make_space(refined_mesh_2d, truncated=truncated)

        for eid in refined_mesh_2d.active_elements():
            dofs, tables = space.element_basis(eid, ("value", "gradient"))
            assert_allclose(tables["value"] @ space.coeff_pou[dofs], 1.0, atol=1e-12)
            assert_allclose(np.einsum("qkd,k->qd", tables["gradient"], space.coeff_pou[dofs]),
                            0.0, atol=1e-9)

    def test_standard_coefficients_differ_from_one(self, refined_mesh_2d):
        """Test that HB-splines need non-trivial coefficients."""
        space = make_space(refined_mesh_2d, truncated=False)

        assert np.any(space.coeff_pou < 1.0 - 1e-12)
        assert np.all(space.coeff_pou >= 0.0)

    def test_projection_of_one(self, refined_mesh_2d, truncated):
        """Test that the L2 projection of 1 gives coeff_pou."""
        space = make_space(refined_mesh_2d, truncated=truncated)

        u = space.project(lambda x: np.ones(x.shape[:-1]))
        assert_allclose(u, space.coeff_pou, atol=1e-8)


class TestEvaluation:
    """Tests for evaluation, snapshots and projection."""

    def test_shapes(self, refined_mesh_2d):
        """Test the array shapes of evaluate_at_quadrature."""
        space = make_space(refined_mesh_2d)
        u = np.zeros(space.ndof)

        ders = space.evaluate_at_quadrature(u, ("value", "gradient", "laplacian"))
        nel = refined_mesh_2d.n_elements
        assert ders["value"].shape == (nel, 9)
        assert ders["gradient"].shape == (nel, 9, 2)
        assert ders["laplacian"].shape == (nel, 9)

    def test_quadratic_reproduction(self, refined_mesh_2d, truncated):
        """Test that x^2 + y is reproduced with exact derivatives."""
        space = make_space(refined_mesh_2d, truncated=truncated)
        u = space.project(lambda x: x[..., 0] ** 2 + x[..., 1])

        ders = space.evaluate_at_quadrature(u, ("value", "gradient", "laplacian"))
        points, _, _ = refined_mesh_2d.quadrature_arrays()
        assert_allclose(ders["value"], points[..., 0] ** 2 + points[..., 1], atol=1e-8)
        assert_allclose(ders["gradient"][..., 0], 2 * points[..., 0], atol=1e-7)
        assert_allclose(ders["gradient"][..., 1], 1.0, atol=1e-7)
        assert_allclose(ders["laplacian"], 2.0, atol=1e-5)

    def test_snapshot_survives_refinement(self, mesh_2d, truncated, unit_points):
        """Test that a projected snapshot reproduces the old function on a finer space."""
        space = make_space(mesh_2d, truncated=truncated)
        u = np.random.default_rng(1).random(space.ndof)
        snapshot = space.snapshot(u)
        expected = space.evaluate_points(u, unit_points)

        mesh_2d.refine([(0, (1, 1)), (0, (2, 1))])
        space.update()
        u_new = space.project(snapshot)

        assert isinstance(snapshot, FunctionSnapshot)
        assert_allclose(snapshot(unit_points), expected, atol=1e-12)
        assert_allclose(space.evaluate_points(u_new, unit_points), expected, atol=1e-8)

    def test_point_gradients(self, mesh_2d):
        """Test gradients returned by evaluate_points."""
        space = make_space(mesh_2d)
        u = space.project(lambda x: 3.0 * x[..., 0] - x[..., 1])

        values, grads = space.evaluate_points(u, np.array([[0.3, 0.4], [0.9, 0.1]]), n_ders=1)
        assert_allclose(values, [0.5, 2.6], atol=1e-8)
        assert_allclose(grads, [[3.0, -1.0], [3.0, -1.0]], atol=1e-7)

    def test_stale_solution(self, mesh_2d):
        """Test that a coefficient vector of the wrong length is rejected."""
        space = make_space(mesh_2d)

        with pytest.raises(StaleSolution):
            space.evaluate_at_quadrature(np.zeros(space.ndof + 1))
        with pytest.raises(ValueError):
            space.snapshot(np.zeros(3))

    def test_space_must_be_updated(self, mesh_2d):
        """Test that evaluating after a mesh change without update() fails."""
        space = make_space(mesh_2d)
        u = np.zeros(space.ndof)
        mesh_2d.refine([(0, (0, 0))])

        with pytest.raises(InconsistentBasis):
            space.evaluate_at_quadrature(u)
        with pytest.raises(InconsistentBasis):
            space.element_basis((1, (0, 0)))

        space.update()
        assert space.evaluate_at_quadrature(np.zeros(space.ndof))["value"].shape[0] == mesh_2d.n_elements

    def test_update_after_coarsening(self, mesh_2d, truncated):
        """Test that coarsening back restores the uniform space."""
        space = make_space(mesh_2d, truncated=truncated)
        children = mesh_2d.refine([(0, (2, 2))])
        space.update()
        assert space.ndof > 36

        mesh_2d.coarsen(children)
        space.update()
        assert space.ndof == 36
        assert space.ndof_per_level == (36, 0)


class TestFunctionElementRelations:
    """Tests for conversions between marked functions and elements."""

    @pytest.fixture
    def space(self):
        mesh = mesh_1d()
        space = HierarchicalSpace(mesh, (2,), truncated=True)
        mesh.refine([(0, (0,)), (0, (1,))])
        space.update()
        return space

    def test_cells_to_refine(self, space):
        """Test that only active cells of the function's level are returned."""
        assert space.cells_to_refine([(0, (2,))]) == [(0, (2,))]
        assert space.cells_to_refine([(1, (1,))]) == [(1, (0,)), (1, (1,))]

    def test_function_elements(self, space):
        """Test the active elements a fine function acts on."""
        dof = space.dof_index((1, (0,)))
        assert space.function_elements(dof) == [(1, (0,))]
        assert space.cells_to_coarsen([(1, (0,))]) == [(1, (0,))]

    def test_function_sizes(self, space):
        """Test h_b as the size of the finest active element of the function."""
        sizes = space.function_sizes()

        assert sizes[space.dof_index((1, (0,)))] == pytest.approx(0.125)
        assert sizes[space.dof_index((0, (5,)))] == pytest.approx(0.25)

    def test_function_neighbours(self, space):
        """Test that neighbours share an element and are not finer."""
        dof = space.dof_index((0, (5,)))
        neighbours = space.function_neighbours(dof)

        assert dof not in neighbours
        assert all(space.function_level(n) == 0 for n in neighbours)
        assert space.dof_index((0, (4,))) in neighbours

    def test_incidence(self, space):
        """Test that every active element and every function appear in the incidence."""
        incidence = space.incidence()

        assert incidence.shape == (space.mesh.n_elements, space.ndof)
        assert np.all(np.asarray(incidence.sum(axis=0)).ravel() > 0)
        assert np.all(np.asarray(incidence.sum(axis=1)).ravel() > 0)
