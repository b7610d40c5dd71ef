"""
Discretization module: knot vectors, elements and hierarchical meshes.
"""

from .knot_vector import KnotVector, make_uniform_knot_vector, refine_knot_vector_dyadic
from .element import Element, ElementId, element_children, element_parent
from .level_mesh import LevelMesh, QuadratureData
from .hierarchical_mesh import HierarchicalMesh
from .assembly import TripletAssembler
