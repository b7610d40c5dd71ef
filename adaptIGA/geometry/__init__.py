"""
Geometry module for B-spline bases and hierarchical spline spaces.
"""

from .bspline import TensorProductBasis, eval_basis_ders_1d
from .hierarchical_space import (
    HierarchicalSpace,
    FunctionSnapshot,
    StandardBasis,
    TruncatedBasis,
)
