"""
B-spline basis function evaluation.

B-splines are piecewise polynomial functions defined by:
1. A knot vector (non-decreasing sequence of parametric values)
2. A polynomial degree p

The i-th B-spline basis function of degree p is defined recursively:

    N_{i,0}(xi) = 1 if xi_i <= xi < xi_{i+1}, else 0

    N_{i,p}(xi) = (xi - xi_i)/(xi_{i+p} - xi_i) * N_{i,p-1}(xi)
                + (xi_{i+p+1} - xi)/(xi_{i+p+1} - xi_{i+1}) * N_{i+1,p-1}(xi)

Properties:
- Partition of unity: sum of all basis functions = 1
- Non-negativity: N_{i,p}(xi) >= 0
- Local support: N_{i,p} is non-zero only on [xi_i, xi_{i+p+1})

Tensor-product functions on a level are identified by multi-indices
(i_1, ..., i_d) and raveled in C order (first direction slowest). Element
tables are built with Kronecker products of univariate tables, which
produces exactly that ordering for both quadrature points and functions.
"""

import itertools
from functools import reduce

import numpy as np
from scipy import sparse
from typing import Dict, Optional, Sequence, Tuple

from ..discretization.knot_vector import KnotVector


def eval_basis_ders_1d(kv: KnotVector, xi: float, n_ders: int,
                       span: Optional[int] = None) -> np.ndarray:
    """
    Evaluate B-spline basis functions and derivatives at a parameter value.

    Uses the algorithm from Piegl & Tiller "The NURBS Book" (Algorithm A2.3).

    Parameters:
        kv: Knot vector
        xi: Parameter value
        n_ders: Number of derivatives to compute (0 = just values)
        span: Optional pre-computed span index

    Returns:
        Array of shape (n_ders+1, p+1) where result[k, j] is the k-th derivative
        of the j-th non-zero basis function (N_{span-p+j, p}). Derivatives of
        order higher than p are zero.
    """
    p = kv.degree
    knots = kv.knots

    if span is None:
        span = kv.find_span(xi)

    ders = np.zeros((n_ders + 1, p + 1))
    n_ders = min(n_ders, p)

    # ndu[j][r] = N_{span-p+r, j} (lower triangle) or knot differences (upper)
    ndu = np.zeros((p + 1, p + 1))
    ndu[0, 0] = 1.0

    left = np.zeros(p + 1)
    right = np.zeros(p + 1)

    for j in range(1, p + 1):
        left[j] = xi - knots[span + 1 - j]
        right[j] = knots[span + j] - xi

        saved = 0.0
        for r in range(j):
            ndu[j, r] = right[r + 1] + left[j - r]
            temp = ndu[r, j - 1] / ndu[j, r]

            ndu[r, j] = saved + right[r + 1] * temp
            saved = left[j - r] * temp

        ndu[j, j] = saved

    for j in range(p + 1):
        ders[0, j] = ndu[j, p]

    a = np.zeros((2, p + 1))

    for r in range(p + 1):
        s1, s2 = 0, 1
        a[0, 0] = 1.0

        for k in range(1, n_ders + 1):
            d = 0.0
            rk = r - k
            pk = p - k

            if r >= k:
                a[s2, 0] = a[s1, 0] / ndu[pk + 1, rk]
                d = a[s2, 0] * ndu[rk, pk]

            j1 = 1 if rk >= -1 else -rk
            j2 = k - 1 if r - 1 <= pk else p - r

            for j in range(j1, j2 + 1):
                a[s2, j] = (a[s1, j] - a[s1, j - 1]) / ndu[pk + 1, rk + j]
                d += a[s2, j] * ndu[rk + j, pk]

            if r <= pk:
                a[s2, k] = -a[s1, k - 1] / ndu[pk + 1, r]
                d += a[s2, k] * ndu[r, pk]

            ders[k, r] = d
            s1, s2 = s2, s1

    r = p
    for k in range(1, n_ders + 1):
        for j in range(p + 1):
            ders[k, j] *= r
        r *= (p - k)

    return ders


def eval_element_basis_1d(kv: KnotVector, element_idx: int,
                          ref_points: np.ndarray, n_ders: int) -> np.ndarray:
    """
    Tabulate the p+1 non-zero functions of one element at reference points.

    Parameters:
        kv: Knot vector
        element_idx: Element (knot span) index
        ref_points: Points in [0, 1] mapped affinely onto the element
        n_ders: Highest derivative order

    Returns:
        Array of shape (n_ders+1, n_points, p+1); derivatives are taken with
        respect to the parametric coordinate, not the reference coordinate
    """
    xi_start, xi_end = kv.elements[element_idx]
    span = kv.element_to_span(element_idx)

    table = np.zeros((n_ders + 1, len(ref_points), kv.degree + 1))
    for q, t in enumerate(ref_points):
        xi = xi_start + t * (xi_end - xi_start)
        table[:, q, :] = eval_basis_ders_1d(kv, xi, n_ders, span)
    return table


class TensorProductBasis:
    """
    Full tensor-product B-spline basis of one hierarchy level.

    For 2D: N_{i,j}(xi, eta) = N_i(xi) * N_j(eta)

    Attributes:
        knot_vectors: One KnotVector per parametric direction
    """

    def __init__(self, knot_vectors: Sequence[KnotVector]):
        self.knot_vectors = tuple(knot_vectors)
        self.n_dim = len(self.knot_vectors)
        # (direction, element, n_ders, points) -> univariate table
        self._table_cache: Dict[tuple, np.ndarray] = {}

    @property
    def degrees(self) -> Tuple[int, ...]:
        return tuple(kv.degree for kv in self.knot_vectors)

    @property
    def n_basis_per_dir(self) -> Tuple[int, ...]:
        return tuple(kv.n_basis for kv in self.knot_vectors)

    @property
    def n_basis_total(self) -> int:
        return int(np.prod(self.n_basis_per_dir))

    @property
    def n_elements_per_dir(self) -> Tuple[int, ...]:
        return tuple(kv.n_elements for kv in self.knot_vectors)

    def ravel(self, functions) -> np.ndarray:
        """Flat indices of a sequence of function multi-indices."""
        functions = list(functions)
        if not functions:
            return np.zeros(0, dtype=int)
        return np.ravel_multi_index(np.array(functions).T, self.n_basis_per_dir)

    def functions_on_element(self, cell: Tuple[int, ...]):
        """Multi-indices of the functions that do not vanish on a cell."""
        return itertools.product(
            *(kv.supported_basis(c) for kv, c in zip(self.knot_vectors, cell)))

    def support(self, function: Tuple[int, ...]):
        """Multi-indices of the cells in the support of a function."""
        return itertools.product(
            *(kv.support_elements(i) for kv, i in zip(self.knot_vectors, function)))

    def _univariate_table(self, direction: int, element_idx: int,
                          points: np.ndarray, n_ders: int) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        key = (direction, int(element_idx), n_ders, points.tobytes())
        table = self._table_cache.get(key)
        if table is None:
            table = eval_element_basis_1d(self.knot_vectors[direction], element_idx, points, n_ders)
            self._table_cache[key] = table
        return table

    def element_tables(self, cell: Tuple[int, ...], points_1d: Sequence[np.ndarray],
                       derivatives: Sequence[str] = ("value",)) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        """
        Tabulate the non-zero tensor-product functions of a cell.

        Parameters:
            cell: Cell multi-index on this level
            points_1d: Univariate reference quadrature points per direction
            derivatives: Any of "value", "gradient", "laplacian"

        Returns:
            (indices, tables) where indices are the flat level indices of the
            (p+1)^d local functions and tables maps
            - "value" -> (n_q, n_loc)
            - "gradient" -> (n_q, n_loc, d)
            - "laplacian" -> (n_q, n_loc)
        """
        n_ders = 2 if "laplacian" in derivatives else (1 if "gradient" in derivatives else 0)

        univariate = [self._univariate_table(d, c, pts, n_ders)
                      for d, (c, pts) in enumerate(zip(cell, points_1d))]
        indices = self.ravel(list(self.functions_on_element(cell)))

        tables = {}
        if "value" in derivatives:
            tables["value"] = reduce(np.kron, [u[0] for u in univariate])
        if "gradient" in derivatives:
            tables["gradient"] = np.stack([
                reduce(np.kron, [u[1] if d == k else u[0] for d, u in enumerate(univariate)])
                for k in range(self.n_dim)
            ], axis=-1)
        if "laplacian" in derivatives:
            tables["laplacian"] = sum(
                reduce(np.kron, [u[2] if d == k else u[0] for d, u in enumerate(univariate)])
                for k in range(self.n_dim)
            )
        return indices, tables

    def collocation_matrix(self, points: np.ndarray, n_ders: int = 0):
        """
        Sparse matrix of basis values (and gradients) at arbitrary points.

        Parameters:
            points: Parametric points, shape (n_points, d)
            n_ders: 0 for values only, 1 to also return gradient matrices

        Returns:
            Values matrix of shape (n_points, n_basis_total); with n_ders=1 a
            tuple (values, [d/dxi_k matrices])
        """
        if n_ders not in (0, 1):
            raise ValueError(f"collocation_matrix supports n_ders 0 or 1, got {n_ders}")

        points = np.asarray(points, dtype=np.float64).reshape(-1, self.n_dim)
        n_points = points.shape[0]
        n_loc = int(np.prod([p + 1 for p in self.degrees]))

        rows = np.repeat(np.arange(n_points), n_loc)
        cols = np.zeros(n_points * n_loc, dtype=int)
        vals = np.zeros((1 + self.n_dim * n_ders, n_points * n_loc))

        for q, x in enumerate(points):
            univariate = []
            spans = []
            for kv, xi in zip(self.knot_vectors, x):
                span = kv.find_span(xi)
                spans.append(range(span - kv.degree, span + 1))
                univariate.append(eval_basis_ders_1d(kv, xi, n_ders, span))

            block = slice(q * n_loc, (q + 1) * n_loc)
            cols[block] = self.ravel(list(itertools.product(*spans)))
            vals[0, block] = reduce(np.kron, [u[0] for u in univariate])
            for k in range(self.n_dim if n_ders else 0):
                vals[1 + k, block] = reduce(
                    np.kron, [u[1] if d == k else u[0] for d, u in enumerate(univariate)])

        shape = (n_points, self.n_basis_total)
        matrices = [sparse.csr_matrix((v, (rows, cols)), shape=shape) for v in vals]
        if n_ders:
            return matrices[0], matrices[1:]
        return matrices[0]
