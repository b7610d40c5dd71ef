"""
Element-by-element sparse assembly.

Local matrices are scattered into triplet lists and converted once to a
sparse CSR matrix; duplicate entries are summed by the conversion.
"""

import numpy as np
from scipy import sparse
from typing import List


class TripletAssembler:
    """Accumulates local matrices into a global sparse matrix."""

    def __init__(self, n_dof: int):
        self.n_dof = n_dof
        self._rows: List[np.ndarray] = []
        self._cols: List[np.ndarray] = []
        self._values: List[np.ndarray] = []

    def add(self, dofs: np.ndarray, local_matrix: np.ndarray) -> None:
        n = len(dofs)
        self._rows.append(np.repeat(dofs, n))
        self._cols.append(np.tile(dofs, n))
        self._values.append(np.asarray(local_matrix).ravel())

    def tocsr(self) -> sparse.csr_matrix:
        if not self._values:
            return sparse.csr_matrix((self.n_dof, self.n_dof))
        return sparse.csr_matrix(
            (np.concatenate(self._values), (np.concatenate(self._rows), np.concatenate(self._cols))),
            shape=(self.n_dof, self.n_dof),
        )
