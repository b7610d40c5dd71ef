"""
Element abstraction for hierarchical IGA.

In IGA, an element corresponds to a non-zero measure knot span (a cell of
the tensor-product grid of one level). Elements of a hierarchical mesh are
identified arena-style by an ElementId = (level, multi-index): no element
holds references to other elements, parents and children are computed from
the index arithmetic of dyadic refinement:

    children of (l, (i, j))  = (l+1, (2i + a, 2j + b)),  a, b in {0, 1}
    parent of   (l, (i, j))  = (l-1, (i // 2, j // 2))

The Element dataclass is an immutable, solver-ready view of one cell: its
parametric bounds, size and the affine reference-to-parametric map used for
quadrature on [0,1]^d.
"""

import itertools
import numpy as np
from typing import Iterator, Optional, Tuple
from dataclasses import dataclass

CellIndex = Tuple[int, ...]
ElementId = Tuple[int, CellIndex]


def element_children(element_id: ElementId) -> Iterator[ElementId]:
    """The 2^d children of an element at the next level."""
    level, cell = element_id
    for child in itertools.product(*(range(2 * c, 2 * c + 2) for c in cell)):
        yield (level + 1, child)


def element_parent(element_id: ElementId) -> Optional[ElementId]:
    """The parent of an element, or None at level 0."""
    level, cell = element_id
    if level == 0:
        return None
    return (level - 1, tuple(c // 2 for c in cell))


@dataclass(frozen=True)
class Element:
    """
    A cell of one hierarchy level.

    Attributes:
        level: Refinement level (0 = coarsest)
        index: Cell multi-index on that level
        parametric_bounds: ((xi_min, xi_max), ...) bounds in each direction
    """
    level: int
    index: CellIndex
    parametric_bounds: Tuple[Tuple[float, float], ...]

    @property
    def n_dim(self) -> int:
        """Number of parametric dimensions."""
        return len(self.parametric_bounds)

    @property
    def side_lengths(self) -> np.ndarray:
        return np.array([xi_max - xi_min for xi_min, xi_max in self.parametric_bounds])

    @property
    def size(self) -> float:
        """
        Local mesh size h_e: the longest side of the element.

        Estimators scale it by sqrt(n_dim) to obtain the diameter bound.
        """
        return float(np.max(self.side_lengths))

    @property
    def measure(self) -> float:
        """Length/area/volume of the element."""
        return self.det_jacobian_ref_to_param()

    def reference_to_parametric(self, t: np.ndarray) -> np.ndarray:
        """
        Map reference coordinates [0,1]^d to parametric coordinates.

        Parameters:
            t: Reference coordinates, shape (..., d)

        Returns:
            Parametric coordinates with the same shape
        """
        lower = np.array([xi_min for xi_min, _ in self.parametric_bounds])
        return lower + np.asarray(t) * self.side_lengths

    def det_jacobian_ref_to_param(self) -> float:
        """
        Determinant of the (affine) reference-to-parametric map.

        Returns:
            Product of all (xi_max - xi_min) values
        """
        return float(np.prod(self.side_lengths))
