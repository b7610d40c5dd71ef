"""
Knot vector utilities for hierarchical IGA.

A knot vector is a non-decreasing sequence of real numbers that defines
the parametric domain and basis function support for B-splines.

Every level of a hierarchical space uses an open knot vector with maximal
smoothness (interior knots of multiplicity one). Level l+1 is obtained from
level l by dyadic refinement, i.e. by inserting the midpoint of every
non-zero knot span. The refinement (two-scale) matrix produced by the
insertion is what relates the spline bases of consecutive levels.

Mathematical background:
- Open knot vectors have p+1 repeated knots at each end
- The number of basis functions n = len(knots) - p - 1
- Knot spans (elements) are unique intervals [xi_i, xi_{i+1}] where xi_i < xi_{i+1}
- With simple interior knots, basis function i is non-zero exactly on
  elements i-p, ..., i (clipped to the valid range)
"""

import numpy as np
from scipy import sparse
from typing import List, Tuple
from dataclasses import dataclass


@dataclass
class KnotVector:
    """
    Represents a univariate knot vector.

    Attributes:
        knots: The knot values (non-decreasing sequence)
        degree: Polynomial degree p

    Properties computed:
        n_basis: Number of basis functions
        n_elements: Number of non-zero measure knot spans
        elements: List of (start, end) parametric coordinates for each element
    """
    knots: np.ndarray
    degree: int

    def __post_init__(self):
        self.knots = np.asarray(self.knots, dtype=np.float64)
        self._validate()
        self._compute_elements()

    def _validate(self):
        if len(self.knots) < 2 * (self.degree + 1):
            raise ValueError(
                f"Knot vector too short for degree {self.degree}. "
                f"Need at least {2 * (self.degree + 1)} knots, got {len(self.knots)}."
            )
        if not np.all(np.diff(self.knots) >= 0):
            raise ValueError("Knot vector must be non-decreasing.")

    def _compute_elements(self):
        """
        Compute unique knot spans (elements) and their span indices.

        The span index of an element is the last occurrence of its left
        breakpoint in the knot vector.
        """
        unique_knots = np.unique(self.knots)
        self._unique_knots = unique_knots
        self._elements = []
        self._element_spans = []

        for xi_start, xi_end in zip(unique_knots[:-1], unique_knots[1:]):
            self._elements.append((float(xi_start), float(xi_end)))
            span_idx = np.searchsorted(self.knots, xi_start, side='right') - 1
            span_idx = max(self.degree, min(span_idx, self.n_basis - 1))
            self._element_spans.append(int(span_idx))

    @property
    def n_basis(self) -> int:
        """Number of basis functions."""
        return len(self.knots) - self.degree - 1

    @property
    def n_elements(self) -> int:
        """Number of non-zero measure knot spans (elements)."""
        return len(self._elements)

    @property
    def elements(self) -> List[Tuple[float, float]]:
        """List of element intervals as (xi_start, xi_end) tuples."""
        return self._elements.copy()

    @property
    def breakpoints(self) -> np.ndarray:
        """Unique knot values (element boundaries)."""
        return self._unique_knots.copy()

    @property
    def domain(self) -> Tuple[float, float]:
        """Parametric domain (first unique knot, last unique knot)."""
        return (float(self._unique_knots[0]), float(self._unique_knots[-1]))

    def find_span(self, xi: float) -> int:
        """
        Find the knot span index containing parameter value xi.

        For xi in [xi_i, xi_{i+1}), returns i. The last span is closed.
        """
        n = self.n_basis
        p = self.degree

        if xi >= self.knots[n]:
            return n - 1
        if xi <= self.knots[p]:
            return p

        low = p
        high = n
        mid = (low + high) // 2

        while xi < self.knots[mid] or xi >= self.knots[mid + 1]:
            if xi < self.knots[mid]:
                high = mid
            else:
                low = mid
            mid = (low + high) // 2

        return mid

    def element_to_span(self, element_idx: int) -> int:
        """Convert element index to knot span index."""
        return self._element_spans[element_idx]

    def support_elements(self, basis_idx: int) -> range:
        """
        Element indices in the support of a basis function.

        Parameters:
            basis_idx: Basis function index

        Returns:
            Range of element indices where the function does not vanish
        """
        lo = np.searchsorted(self._unique_knots, self.knots[basis_idx], side='left')
        hi = np.searchsorted(self._unique_knots, self.knots[basis_idx + self.degree + 1], side='left')
        return range(int(lo), int(hi))

    def supported_basis(self, element_idx: int) -> range:
        """Range of basis function indices that are non-zero on an element."""
        span = self.element_to_span(element_idx)
        return range(span - self.degree, span + 1)


def make_uniform_knot_vector(n_elements: int, degree: int,
                             domain: Tuple[float, float] = (0.0, 1.0)) -> KnotVector:
    """
    Create an open uniform knot vector with maximal smoothness.

    Parameters:
        n_elements: Number of elements (knot spans)
        degree: Polynomial degree p
        domain: Parametric domain (start, end)

    Returns:
        KnotVector with n_elements + p basis functions
    """
    if n_elements < 1:
        raise ValueError(f"Need at least one element, got n_elements={n_elements}")
    if degree < 0:
        raise ValueError(f"Degree must be non-negative, got {degree}")

    a, b = domain
    if not b > a:
        raise ValueError(f"Invalid domain {domain}: need start < end")

    breaks = np.linspace(a, b, n_elements + 1)
    knots = np.concatenate([[a] * degree, breaks, [b] * degree])
    return KnotVector(knots, degree)


def compute_knot_insertion_matrix(kv: KnotVector, xi: float) -> Tuple[KnotVector, np.ndarray]:
    """
    Compute the knot insertion matrix for inserting a single knot.

    When a knot is inserted, coefficients are updated by a linear transformation:
        c_new = A @ c_old

    Parameters:
        kv: Original knot vector
        xi: Knot value to insert

    Returns:
        Tuple of (new_knot_vector, insertion_matrix A)
        A has shape (n_old + 1, n_old)
    """
    p = kv.degree
    knots = kv.knots
    n_old = kv.n_basis

    k = kv.find_span(xi)

    new_knots = np.zeros(len(knots) + 1)
    new_knots[:k + 1] = knots[:k + 1]
    new_knots[k + 1] = xi
    new_knots[k + 2:] = knots[k + 1:]

    A = np.zeros((n_old + 1, n_old))

    for i in range(n_old + 1):
        if i <= k - p:
            A[i, i] = 1.0
        elif i >= k + 1:
            A[i, i - 1] = 1.0
        else:
            # alpha_i = (xi - knots[i]) / (knots[i+p] - knots[i])
            denom = knots[i + p] - knots[i]
            alpha = (xi - knots[i]) / denom if abs(denom) > 1e-14 else 0.0
            A[i, i - 1] = 1.0 - alpha
            A[i, i] = alpha

    return KnotVector(new_knots, p), A


def refine_knot_vector_dyadic(kv: KnotVector) -> Tuple[KnotVector, sparse.csr_matrix]:
    """
    Refine a knot vector by inserting the midpoint of every knot span.

    Parameters:
        kv: Coarse knot vector

    Returns:
        Tuple of (refined_knot_vector, refinement_matrix)
        The refinement matrix P has shape (n_fine, n_coarse) and maps coarse
        coefficients to fine coefficients of the same function:
            c_fine = P @ c_coarse
        Equivalently, every coarse basis function is the combination
            N_i^coarse = sum_j P[j, i] * N_j^fine
    """
    midpoints = sorted(0.5 * (xi_start + xi_end) for xi_start, xi_end in kv.elements)

    current_kv = kv
    A_total = np.eye(kv.n_basis)

    for xi in midpoints:
        new_kv, A = compute_knot_insertion_matrix(current_kv, xi)
        A_total = A @ A_total
        current_kv = new_kv

    A_total[np.abs(A_total) < 1e-14] = 0.0
    return current_kv, sparse.csr_matrix(A_total)
