"""
Gauss-Legendre quadrature for numerical integration.

Gauss quadrature provides optimal polynomial integration:
n points integrate exactly polynomials up to degree 2n-1.

The reference domain is [0, 1]^d. Rules in several dimensions are tensor
products of 1D rules; points are ordered with the first direction varying
slowest, which matches the C-order raveling used for tensor-product basis
functions throughout the package.

Usage:
    points, weights = gauss_legendre_1d(n)        # 1D rule on [0,1]
    quad = GaussQuadrature((3, 3))                # 2D tensor-product rule
"""

import itertools
import numpy as np
from typing import Tuple
from functools import lru_cache


@lru_cache(maxsize=16)
def gauss_legendre_1d(n: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gauss-Legendre quadrature points and weights on [0, 1].

    Parameters:
        n: Number of quadrature points

    Returns:
        (points, weights), the weights sum to 1
    """
    if n < 1:
        raise ValueError("Need at least 1 quadrature point")

    points_std, weights_std = np.polynomial.legendre.leggauss(n)

    # Map to [0, 1]: x = (xi + 1) / 2, dx = 1/2 * dxi
    points = 0.5 * (points_std + 1.0)
    weights = 0.5 * weights_std

    return points.copy(), weights.copy()


def gauss_legendre_nd(n_points_per_dir: Tuple[int, ...]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Tensor-product Gauss-Legendre quadrature on [0,1]^d.

    Parameters:
        n_points_per_dir: Number of points in each direction

    Returns:
        (points, weights) with shapes (n_total, d) and (n_total,)
    """
    rules = [gauss_legendre_1d(n) for n in n_points_per_dir]

    points = np.array(list(itertools.product(*(pts for pts, _ in rules))))
    weights = np.array([np.prod(w) for w in itertools.product(*(wts for _, wts in rules))])

    return points.reshape(-1, len(n_points_per_dir)), weights


class GaussQuadrature:
    """
    Tensor-product Gauss rule on the reference element [0,1]^d.

    Attributes:
        n_points_per_dir: Number of quadrature points per parametric direction
    """

    def __init__(self, n_points_per_dir: Tuple[int, ...]):
        self.n_points_per_dir = tuple(int(n) for n in n_points_per_dir)
        self.n_dim = len(self.n_points_per_dir)

        if self.n_dim < 1:
            raise ValueError("Quadrature needs at least one direction")

        self._points, self._weights = gauss_legendre_nd(self.n_points_per_dir)
        self._points_1d = tuple(gauss_legendre_1d(n)[0] for n in self.n_points_per_dir)

    @property
    def n_points(self) -> int:
        """Total number of quadrature points."""
        return len(self._weights)

    @property
    def points(self) -> np.ndarray:
        """Quadrature points on [0,1]^d, shape (n_points, n_dim)."""
        return self._points

    @property
    def weights(self) -> np.ndarray:
        """Quadrature weights, shape (n_points,)."""
        return self._weights

    @property
    def points_1d(self) -> Tuple[np.ndarray, ...]:
        """The univariate rules the tensor product is built from."""
        return self._points_1d
