"""
Pytest configuration and shared fixtures for adaptIGA tests.
"""

import pytest
import numpy as np
import sys
from pathlib import Path

# Add the parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptIGA.discretization.hierarchical_mesh import HierarchicalMesh
from adaptIGA.geometry.hierarchical_space import HierarchicalSpace
from adaptIGA.quadrature.gauss import GaussQuadrature


@pytest.fixture
def tolerance():
    """Default tolerance for floating point comparisons."""
    return 1e-12


@pytest.fixture
def loose_tolerance():
    """Looser tolerance for numerical integration tests."""
    return 1e-8


@pytest.fixture
def mesh_2d():
    """4x4 level-0 mesh on the unit square with a 3x3 Gauss rule."""
    return HierarchicalMesh(((0.0, 1.0), (0.0, 1.0)), (4, 4), GaussQuadrature((3, 3)))


@pytest.fixture
def refined_mesh_2d(mesh_2d):
    """The 4x4 mesh with a two-level refinement around the lower left corner."""
    mesh_2d.refine([(0, (0, 0)), (0, (0, 1)), (0, (1, 0)), (0, (1, 1))])
    mesh_2d.refine([(1, (0, 0)), (1, (1, 1))])
    return mesh_2d


@pytest.fixture(params=[True, False], ids=["truncated", "standard"])
def truncated(request):
    """Run a test for THB-splines and for HB-splines."""
    return request.param


@pytest.fixture
def unit_points():
    """Random evaluation points in the unit square."""
    rng = np.random.default_rng(1234)
    return rng.random((50, 2))


def make_space(mesh, degrees=(2, 2), truncated=True):
    return HierarchicalSpace(mesh, degrees, truncated=truncated)
