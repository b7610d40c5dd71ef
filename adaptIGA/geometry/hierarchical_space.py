"""
Hierarchical B-spline spaces: HB-splines and truncated THB-splines.

Every level l carries the full tensor-product B-spline basis of its
LevelMesh (open knot vectors, maximal smoothness, level l+1 obtained by
dyadic knot insertion). The hierarchical space selects from each level the
functions that are relevant where that level is active:

    A^l = { N in B^l : supp N in Omega^l and supp N not in Omega^{l+1} }
    D^l = { N in B^l : supp N in Omega^{l+1} }       (deactivated)

where Omega^l is the union of the active and deactivated level-l cells.

Global numbering (canonical order): level ascending, then the C-order flat
index of the tensor-product multi-index within the level. Degrees of freedom
0..ndof_{<=l}-1 are therefore exactly the active functions of levels 0..l.

Inter-level relations:
- refinement_matrix(l) = P_l, shape (n_{l+1}, n_l), c^{l+1} = P_l @ c^l,
  the Kronecker product of the univariate knot insertion matrices
- subdivision_coefficients(l) = Csub[l], shape (n_l, ndof_{<=l}): column k
  holds the level-l tensor coefficients of hierarchical function k.
  Built recursively:

      Csub[0] = I[:, A^0]
      Csub[l] = [ T_l P_{l-1} Csub[l-1] | I[:, A^l] ]

  T_l is the identity for HB-splines. For THB-splines it zeroes the rows of
  the level-l functions whose support lies in Omega^l (truncation).

Evaluation on an active element of level l uses the level-l tensor tables
and the rows of Csub[l] belonging to the element's local functions.

Usage:
    mesh = HierarchicalMesh(((0, 1), (0, 1)), (4, 4), GaussQuadrature((3, 3)))
    space = HierarchicalSpace(mesh, degrees=(2, 2), truncated=True)
    mesh.refine([(0, (1, 1))])
    space.update()
"""

import logging
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve
from functools import reduce
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple

from .bspline import TensorProductBasis
from ..discretization.assembly import TripletAssembler
from ..discretization.element import ElementId
from ..discretization.hierarchical_mesh import HierarchicalMesh
from ..discretization.knot_vector import KnotVector, make_uniform_knot_vector, refine_knot_vector_dyadic
from ..exceptions import InconsistentBasis, StaleSolution

logger = logging.getLogger(__name__)

FunctionId = Tuple[int, Tuple[int, ...]]


class StandardBasis:
    """Hierarchical B-splines: active functions are used without truncation."""

    name = "standard"
    truncated = False

    def restrict(self, lifted: sparse.csr_matrix, region: np.ndarray) -> sparse.csr_matrix:
        return lifted

    def coeff_pou(self, space: 'HierarchicalSpace') -> np.ndarray:
        """
        Partition-of-unity coefficients of the HB basis.

        Level by level, the active functions keep the coefficient of the
        constant 1 in the level basis; the contribution of the deactivated
        functions is pushed to the next level through P_l.
        """
        coeffs = np.ones(space.level_basis(0).n_basis_total)
        parts = []
        for level in range(space.n_levels):
            parts.append(coeffs[space.active_indices(level)])
            if level + 1 < space.n_levels:
                deactivated = space.deactivated_indices(level)
                pushed = np.zeros_like(coeffs)
                pushed[deactivated] = coeffs[deactivated]
                coeffs = space.refinement_matrix(level) @ pushed
        return np.concatenate(parts)


class TruncatedBasis:
    """THB-splines: coarse functions are truncated against finer levels."""

    name = "truncated"
    truncated = True

    def restrict(self, lifted: sparse.csr_matrix, region: np.ndarray) -> sparse.csr_matrix:
        keep = sparse.diags((~region).astype(np.float64))
        return sparse.csr_matrix(keep @ lifted)

    def coeff_pou(self, space: 'HierarchicalSpace') -> np.ndarray:
        # truncation preserves the partition of unity of the level bases
        return np.ones(space.ndof)


@dataclass
class FunctionSnapshot:
    """
    A discrete function frozen in the finest tensor basis of its space.

    Survives later mutation of the mesh, so a previous time step can be
    evaluated (and projected) after refinement or coarsening.

    Attributes:
        knot_vectors: Knot vectors of the finest level at snapshot time
        coefficients: Tensor-product coefficients on that level
    """
    knot_vectors: Tuple[KnotVector, ...]
    coefficients: np.ndarray

    def evaluate(self, points: np.ndarray, n_ders: int = 0):
        basis = TensorProductBasis(self.knot_vectors)
        if n_ders == 0:
            return basis.collocation_matrix(points) @ self.coefficients
        values, grads = basis.collocation_matrix(points, n_ders=1)
        return values @ self.coefficients, np.stack([g @ self.coefficients for g in grads], axis=-1)

    def __call__(self, x: np.ndarray) -> np.ndarray:
        """Values at points of shape (..., d)."""
        x = np.asarray(x, dtype=np.float64)
        flat = x.reshape(-1, x.shape[-1])
        return self.evaluate(flat).reshape(x.shape[:-1])


class HierarchicalSpace:
    """
    Hierarchical spline space on a HierarchicalMesh.

    The space holds a read-only reference to the mesh. After every mesh
    mutation update() must be called; until then evaluation raises
    InconsistentBasis.

    Attributes:
        mesh: The hierarchical mesh
        degrees: Polynomial degree per direction
        policy: StandardBasis or TruncatedBasis
    """

    def __init__(self, mesh: HierarchicalMesh, degrees: Sequence[int], truncated: bool = True):
        self.mesh = mesh
        self.degrees = tuple(int(p) for p in degrees)
        if len(self.degrees) != mesh.n_dim:
            raise ValueError(
                f"Need one degree per direction: got {len(self.degrees)} for a {mesh.n_dim}D mesh")

        self.policy = TruncatedBasis() if truncated else StandardBasis()

        level0 = mesh.level_mesh(0)
        knot_vectors = [
            make_uniform_knot_vector(n, p, dom)
            for n, p, dom in zip(level0.n_elements_per_dir, self.degrees, level0.domain)
        ]
        self._bases: List[TensorProductBasis] = [TensorProductBasis(knot_vectors)]
        self._refinement: List[sparse.csr_matrix] = []
        self._support_matrices: List[List[np.ndarray]] = [self._support_matrices_of(self._bases[0])]

        self._active: List[np.ndarray] = []
        self._deactivated: List[np.ndarray] = []
        self._csub: List[sparse.csr_matrix] = []
        self._row_support: List[np.ndarray] = []
        self._coeff_pou = np.zeros(0)
        self._offsets = np.zeros(1, dtype=int)
        self._incidence = None
        self._revision = None

        self.update()

    # ------------------------------------------------------------------
    # Level bases
    # ------------------------------------------------------------------

    @property
    def truncated(self) -> bool:
        return self.policy.truncated

    @property
    def n_dim(self) -> int:
        return len(self.degrees)

    @property
    def n_levels(self) -> int:
        return len(self._active)

    def level_basis(self, level: int) -> TensorProductBasis:
        return self._bases[level]

    def refinement_matrix(self, level: int) -> sparse.csr_matrix:
        """Two-scale matrix P_level of shape (n_{level+1}, n_level)."""
        self._ensure_levels(level + 2)
        return self._refinement[level]

    @staticmethod
    def _support_matrices_of(basis: TensorProductBasis) -> List[np.ndarray]:
        """S_d[i, e] = 1 if element e lies in the support of function i."""
        matrices = []
        for kv in basis.knot_vectors:
            S = np.zeros((kv.n_basis, kv.n_elements), dtype=int)
            for i in range(kv.n_basis):
                support = kv.support_elements(i)
                S[i, support.start:support.stop] = 1
            matrices.append(S)
        return matrices

    def _ensure_levels(self, n_levels: int) -> None:
        while len(self._bases) < n_levels:
            coarse = self._bases[-1]
            refined = [refine_knot_vector_dyadic(kv) for kv in coarse.knot_vectors]
            fine = TensorProductBasis([kv for kv, _ in refined])
            P = reduce(lambda a, b: sparse.kron(a, b, format="csr"), [P1 for _, P1 in refined])
            self._bases.append(fine)
            self._refinement.append(sparse.csr_matrix(P))
            self._support_matrices.append(self._support_matrices_of(fine))

    # ------------------------------------------------------------------
    # Active functions
    # ------------------------------------------------------------------

    def _support_sums(self, level: int, cell_values: np.ndarray) -> np.ndarray:
        """Sum of a cell array over the support of every level function."""
        out = cell_values
        for d, S in enumerate(self._support_matrices[level]):
            out = np.moveaxis(np.tensordot(S, out, axes=(1, d)), 0, d)
        return out

    def _classify_functions(self, level: int) -> Tuple[np.ndarray, np.ndarray]:
        shape = self._bases[level].n_elements_per_dir

        def indicator(cells):
            arr = np.zeros(shape, dtype=int)
            if cells:
                arr[tuple(np.array(sorted(cells)).T)] = 1
            return arr

        n_active = self._support_sums(level, indicator(self.mesh.active[level]))
        n_deactivated = self._support_sums(level, indicator(self.mesh.deactivated[level]))
        n_support = self._support_sums(level, np.ones(shape, dtype=int))

        is_active = (n_active + n_deactivated == n_support) & (n_active > 0)
        is_deactivated = n_deactivated == n_support
        return np.flatnonzero(is_active.ravel()), np.flatnonzero(is_deactivated.ravel())

    def _build_subdivision(self) -> List[sparse.csr_matrix]:
        n0 = self._bases[0].n_basis_total
        csub = [sparse.csr_matrix(sparse.identity(n0, format="csr")[:, self._active[0]])]

        for level in range(1, self.n_levels):
            n_level = self._bases[level].n_basis_total
            lifted = sparse.csr_matrix(self._refinement[level - 1] @ csub[-1])

            region = np.zeros(n_level, dtype=bool)
            region[self._active[level]] = True
            region[self._deactivated[level]] = True
            lifted = self.policy.restrict(lifted, region)

            own = sparse.identity(n_level, format="csr")[:, self._active[level]]
            C = sparse.hstack([lifted, own], format="csr")
            C.eliminate_zeros()
            csub.append(C)
        return csub

    def update(self) -> None:
        """
        Recompute active functions, Csub and coeff_pou from the mesh.

        Must be called after every refine/coarsen of the mesh.
        """
        self._ensure_levels(self.mesh.n_levels)

        self._active, self._deactivated = [], []
        for level in range(self.mesh.n_levels):
            active, deactivated = self._classify_functions(level)
            self._active.append(active)
            self._deactivated.append(deactivated)

        self._offsets = np.concatenate([[0], np.cumsum([len(a) for a in self._active])]).astype(int)
        self._csub = self._build_subdivision()
        self._row_support = [np.diff(C.indptr) > 0 for C in self._csub]
        self._coeff_pou = self.policy.coeff_pou(self)
        self._incidence = None
        self._revision = self.mesh.revision

        logger.debug("Hierarchical space updated: ndof=%d per level %s (%s)",
                     self.ndof, self.ndof_per_level, self.policy.name)

    def _check_current(self) -> None:
        if self._revision != self.mesh.revision:
            raise InconsistentBasis(
                "Hierarchical space is out of date with its mesh; call update() after refine/coarsen")

    def _check_coefficients(self, coefficients, name: str = "solution") -> np.ndarray:
        coefficients = np.asarray(coefficients, dtype=np.float64)
        if coefficients.ndim != 1 or len(coefficients) != self.ndof:
            raise StaleSolution(coefficients.size, self.ndof, name)
        return coefficients

    @property
    def ndof(self) -> int:
        return int(self._offsets[-1])

    @property
    def ndof_per_level(self) -> Tuple[int, ...]:
        return tuple(len(a) for a in self._active)

    def active_indices(self, level: int) -> np.ndarray:
        """Flat level indices of the active functions of a level (sorted)."""
        return self._active[level]

    def deactivated_indices(self, level: int) -> np.ndarray:
        return self._deactivated[level]

    def active_functions(self) -> List[FunctionId]:
        """Active functions (level, multi-index) in canonical order."""
        functions = []
        for level, flat in enumerate(self._active):
            shape = self._bases[level].n_basis_per_dir
            multi = np.array(np.unravel_index(flat, shape)).T
            functions.extend((level, tuple(int(i) for i in m)) for m in multi)
        return functions

    def function_level(self, dof: int) -> int:
        return int(np.searchsorted(self._offsets, dof, side="right") - 1)

    def function_levels(self) -> np.ndarray:
        """Level of every DOF, shape (ndof,)."""
        return np.repeat(np.arange(self.n_levels), self.ndof_per_level)

    def function_id(self, dof: int) -> FunctionId:
        level = self.function_level(dof)
        flat = self._active[level][dof - self._offsets[level]]
        shape = self._bases[level].n_basis_per_dir
        return (level, tuple(int(i) for i in np.unravel_index(flat, shape)))

    def dof_index(self, function: FunctionId) -> int:
        """Global DOF number of an active function."""
        level, multi = function
        flat = int(np.ravel_multi_index(tuple(multi), self._bases[level].n_basis_per_dir))
        pos = int(np.searchsorted(self._active[level], flat))
        if pos >= len(self._active[level]) or self._active[level][pos] != flat:
            raise ValueError(f"Function {function} is not active")
        return int(self._offsets[level]) + pos

    def subdivision_coefficients(self, level: int) -> sparse.csr_matrix:
        """Csub[level], shape (n_level, ndof_{<=level})."""
        return self._csub[level]

    @property
    def coeff_pou(self) -> np.ndarray:
        """Coefficients a_b with sum_b a_b * b = 1."""
        return self._coeff_pou

    def lift(self, coefficients: np.ndarray, level: int) -> np.ndarray:
        """Level-`level` tensor coefficients of the hierarchical function."""
        return self._csub[level] @ coefficients[:self._offsets[level + 1]]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def level_tables(self, element_id: ElementId,
                     derivatives: Sequence[str] = ("value",)) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        """Level tensor-product tables of an element at its quadrature points."""
        level, cell = element_id
        return self._bases[level].element_tables(cell, self.mesh.quadrature.points_1d, derivatives)

    def element_basis(self, element_id: ElementId,
                      derivatives: Sequence[str] = ("value",)) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        """
        Hierarchical shape functions of one active element.

        Parameters:
            element_id: Active element (level, multi-index)
            derivatives: Any of "value", "gradient", "laplacian"

        Returns:
            (dofs, tables): global DOF indices of the functions acting on the
            element and their tables, shaped (n_q, n_dofs) for values and
            Laplacians, (n_q, n_dofs, d) for gradients

        Raises:
            InconsistentBasis: If no active function is supported on the element
        """
        self._check_current()
        if not self.mesh.is_active(element_id):
            raise ValueError(f"Element {element_id} is not active")

        level = element_id[0]
        local, tables = self.level_tables(element_id, derivatives)
        block = self._csub[level][local, :]
        dofs = np.unique(block.indices)
        if len(dofs) == 0:
            raise InconsistentBasis(f"No active function is supported on element {element_id}")

        C = block[:, dofs].toarray()
        shape_functions = {}
        for name, table in tables.items():
            shape_functions[name] = np.tensordot(table, C, axes=([1], [0]))
            if name == "gradient":
                shape_functions[name] = np.moveaxis(shape_functions[name], -1, 1)
        return dofs, shape_functions

    def element_dofs(self, element_id: ElementId) -> np.ndarray:
        """Global DOF indices of the functions acting on an active element."""
        level, cell = element_id
        local = self._bases[level].ravel(list(self._bases[level].functions_on_element(cell)))
        return np.unique(self._csub[level][local, :].indices)

    def evaluate_at_quadrature(self, coefficients: np.ndarray,
                               derivatives: Sequence[str] = ("value",)) -> Dict[str, np.ndarray]:
        """
        Evaluate a discrete function at the quadrature points of all active
        elements (canonical order).

        Parameters:
            coefficients: Hierarchical coefficients, shape (ndof,)
            derivatives: Any subset of "value", "gradient", "laplacian"

        Returns:
            Dict with "value" (nel, n_q), "gradient" (nel, n_q, d) and
            "laplacian" (nel, n_q) for the requested derivatives
        """
        self._check_current()
        coefficients = self._check_coefficients(coefficients)

        nel = self.mesh.n_elements
        n_q = self.mesh.quadrature.n_points
        out = {}
        for name in derivatives:
            if name == "gradient":
                out[name] = np.zeros((nel, n_q, self.n_dim))
            elif name in ("value", "laplacian"):
                out[name] = np.zeros((nel, n_q))
            else:
                raise ValueError(f"Unknown derivative '{name}'")

        row = 0
        for level in range(self.n_levels):
            cells = sorted(self.mesh.active[level])
            if not cells:
                continue
            level_coeffs = self.lift(coefficients, level)
            for cell in cells:
                local, tables = self.level_tables((level, cell), derivatives)
                if not self._row_support[level][local].any():
                    raise InconsistentBasis(f"No active function is supported on element {(level, cell)}")
                for name, table in tables.items():
                    out[name][row] = np.tensordot(table, level_coeffs[local], axes=([1], [0]))
                row += 1
        return out

    def evaluate_points(self, coefficients: np.ndarray, points: np.ndarray, n_ders: int = 0):
        """
        Evaluate a discrete function at arbitrary parametric points.

        Returns:
            Values of shape (n_points,); with n_ders=1 a tuple
            (values, gradients of shape (n_points, d))
        """
        return self.snapshot(coefficients).evaluate(points, n_ders)

    def snapshot(self, coefficients: np.ndarray) -> FunctionSnapshot:
        """Freeze a discrete function in the finest tensor basis."""
        self._check_current()
        coefficients = self._check_coefficients(coefficients)
        finest = self.n_levels - 1
        return FunctionSnapshot(
            knot_vectors=self._bases[finest].knot_vectors,
            coefficients=np.asarray(self.lift(coefficients, finest)).copy(),
        )

    def project(self, function: Callable[[np.ndarray], np.ndarray]) -> np.ndarray:
        """
        L2 projection onto the current space.

        Parameters:
            function: Callable taking points of shape (..., d) and returning
                values of shape (...); a FunctionSnapshot qualifies

        Returns:
            Hierarchical coefficients, shape (ndof,)
        """
        self._check_current()
        points, weights, jacdet = self.mesh.quadrature_arrays()
        values = np.broadcast_to(np.asarray(function(points), dtype=np.float64), weights.shape)

        M = TripletAssembler(self.ndof)
        rhs = np.zeros(self.ndof)
        for e, element_id in enumerate(self.mesh.active_elements()):
            dofs, tables = self.element_basis(element_id)
            N = tables["value"]
            w = weights[e] * jacdet[e]

            M.add(dofs, N.T @ (w[:, None] * N))
            rhs[dofs] += N.T @ (w * values[e])

        return spsolve(M.tocsr().tocsc(), rhs)

    # ------------------------------------------------------------------
    # Function <-> element relations
    # ------------------------------------------------------------------

    def incidence(self) -> sparse.csr_matrix:
        """
        Boolean (nel, ndof) matrix: entry (e, k) is set when function k acts
        on active element e (canonical order on both axes).
        """
        self._check_current()
        if self._incidence is None:
            rows, cols = [], []
            for e, element_id in enumerate(self.mesh.active_elements()):
                dofs = self.element_dofs(element_id)
                rows.append(np.full(len(dofs), e))
                cols.append(dofs)
            self._incidence = sparse.csr_matrix(
                (np.ones(sum(len(c) for c in cols), dtype=bool),
                 (np.concatenate(rows), np.concatenate(cols))),
                shape=(self.mesh.n_elements, self.ndof),
            )
        return self._incidence

    def function_elements(self, dof: int) -> List[ElementId]:
        """Active elements on which a function does not vanish."""
        elements = self.mesh.active_elements()
        rows = self.incidence().tocsc()[:, dof].indices
        return [elements[e] for e in sorted(rows)]

    def function_sizes(self) -> np.ndarray:
        """
        h_b per DOF: size of the finest active element on which b is non-zero.
        """
        sizes = self.mesh.element_sizes()
        inc = self.incidence().tocsc()
        return np.array([sizes[inc.indices[inc.indptr[k]:inc.indptr[k + 1]]].min()
                         for k in range(self.ndof)])

    def function_neighbours(self, dof: int) -> np.ndarray:
        """
        Functions sharing an active element with `dof`, at the same or a
        coarser level (the function itself excluded).
        """
        inc = self.incidence()
        elements = inc.tocsc()[:, dof].indices
        neighbours = np.unique(inc[elements, :].indices)
        levels = self.function_levels()
        keep = (neighbours != dof) & (levels[neighbours] <= levels[dof])
        return neighbours[keep]

    def cells_to_refine(self, functions: Sequence[FunctionId]) -> List[ElementId]:
        """Active level-l cells in the level-l support of marked functions."""
        cells = set()
        for level, multi in functions:
            for cell in self._bases[level].support(multi):
                if cell in self.mesh.active[level]:
                    cells.add((level, cell))
        return sorted(cells)

    def cells_to_coarsen(self, functions: Sequence[FunctionId]) -> List[ElementId]:
        """Active elements on which functions marked for coarsening act."""
        cells = set()
        for function in functions:
            cells.update(self.function_elements(self.dof_index(function)))
        return sorted(cells)
