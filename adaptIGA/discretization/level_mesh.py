"""
Single-level Cartesian mesh.

A LevelMesh is the full tensor-product grid of one hierarchy level over the
parametric box. Level l has 2^l times as many elements per direction as
level 0. The LevelMesh knows nothing about which of its cells are active;
that bookkeeping lives in HierarchicalMesh.

Quadrature metadata follows the reference-element convention of the solver:
weights of the Gauss rule on [0,1]^d times the determinant of the affine
reference-to-parametric map give the integration weights on the element.
"""

import numpy as np
from typing import List, Sequence, Tuple
from dataclasses import dataclass

from .element import CellIndex, Element
from ..quadrature.gauss import GaussQuadrature


@dataclass(frozen=True)
class QuadratureData:
    """
    Quadrature of one element.

    Attributes:
        points: Parametric quadrature points, shape (n_q, d)
        weights: Reference weights on [0,1]^d, shape (n_q,)
        jacdet: Jacobian determinants at the points, shape (n_q,)
    """
    points: np.ndarray
    weights: np.ndarray
    jacdet: np.ndarray

    @property
    def integration_weights(self) -> np.ndarray:
        """weights * |J|, ready for summation."""
        return self.weights * self.jacdet


class LevelMesh:
    """
    Cartesian grid of one level.

    Attributes:
        level: Level index
        domain: ((a_1, b_1), ..., (a_d, b_d)) parametric box
        n_elements_per_dir: Number of elements in each direction
        quadrature: Reference quadrature rule shared by all elements
    """

    def __init__(self, level: int, domain: Sequence[Tuple[float, float]],
                 n_elements_per_dir: Sequence[int], quadrature: GaussQuadrature):
        self.level = level
        self.domain = tuple((float(a), float(b)) for a, b in domain)
        self.n_elements_per_dir = tuple(int(n) for n in n_elements_per_dir)
        self.quadrature = quadrature

        if len(self.domain) != len(self.n_elements_per_dir):
            raise ValueError("Domain and element counts must have the same dimension")
        if quadrature.n_dim != len(self.domain):
            raise ValueError(
                f"Quadrature dimension {quadrature.n_dim} does not match "
                f"mesh dimension {len(self.domain)}"
            )

        self.breakpoints: List[np.ndarray] = [
            np.linspace(a, b, n + 1) for (a, b), n in zip(self.domain, self.n_elements_per_dir)
        ]

    @classmethod
    def refined(cls, coarse: 'LevelMesh') -> 'LevelMesh':
        """The next level: every element split in two along each direction."""
        return cls(coarse.level + 1, coarse.domain,
                   tuple(2 * n for n in coarse.n_elements_per_dir), coarse.quadrature)

    @property
    def n_dim(self) -> int:
        return len(self.domain)

    @property
    def n_elements(self) -> int:
        return int(np.prod(self.n_elements_per_dir))

    def element_bounds(self, cell: CellIndex) -> Tuple[Tuple[float, float], ...]:
        return tuple((float(bp[c]), float(bp[c + 1])) for bp, c in zip(self.breakpoints, cell))

    def element(self, cell: CellIndex) -> Element:
        return Element(level=self.level, index=tuple(cell), parametric_bounds=self.element_bounds(cell))

    def element_size(self, cell: CellIndex) -> float:
        return self.element(cell).size

    def quadrature_data(self, cell: CellIndex) -> QuadratureData:
        elem = self.element(cell)
        n_q = self.quadrature.n_points
        return QuadratureData(
            points=elem.reference_to_parametric(self.quadrature.points),
            weights=self.quadrature.weights.copy(),
            jacdet=np.full(n_q, elem.det_jacobian_ref_to_param()),
        )

    def quadrature_arrays(self, cells: Sequence[CellIndex]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Quadrature data of many cells at once.

        Returns:
            (points, weights, jacdet) with shapes (n_cells, n_q, d),
            (n_cells, n_q) and (n_cells, n_q)
        """
        n_q = self.quadrature.n_points
        cells = np.asarray(list(cells), dtype=int).reshape(-1, self.n_dim)

        lower = np.stack([bp[cells[:, d]] for d, bp in enumerate(self.breakpoints)], axis=-1)
        upper = np.stack([bp[cells[:, d] + 1] for d, bp in enumerate(self.breakpoints)], axis=-1)
        sides = upper - lower

        points = lower[:, None, :] + self.quadrature.points[None, :, :] * sides[:, None, :]
        weights = np.broadcast_to(self.quadrature.weights, (len(cells), n_q)).copy()
        jacdet = np.repeat(np.prod(sides, axis=1)[:, None], n_q, axis=1)
        return points, weights, jacdet
