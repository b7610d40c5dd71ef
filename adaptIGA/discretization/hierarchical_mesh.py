"""
Hierarchical mesh: a stack of Cartesian levels plus the active element set.

The HierarchicalMesh is the single owner of all level and element data:
1. Owns one LevelMesh per level (created lazily by refinement)
2. Tracks active cells (leaves) and deactivated cells (refined) per level
3. Refines active elements into their 2^d children and coarsens complete
   families back into their parent

Invariant (exact tiling): the active elements of all levels cover the
parametric box exactly once. Refine and coarsen both preserve it:
- refine replaces an active element by all of its children
- coarsen replaces a complete family of active children by their parent;
  incomplete families are left untouched

Levels are never removed. A level emptied by coarsening keeps its index and
its LevelMesh, so later refinement can use it again.

For level l, Omega^l denotes the region covered by the level-l cells that are
active or deactivated; it is what the hierarchical space uses to decide
which basis functions are active.
"""

import logging
import numpy as np
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .element import CellIndex, Element, ElementId, element_children, element_parent
from .level_mesh import LevelMesh, QuadratureData
from ..exceptions import InvalidRefinement
from ..quadrature.gauss import GaussQuadrature

logger = logging.getLogger(__name__)


class HierarchicalMesh:
    """
    Multi-level mesh with explicit active tracking.

    Attributes:
        levels: LevelMesh per level
        active: Set of active cell multi-indices per level
        deactivated: Set of deactivated (refined) cell multi-indices per level
        max_level: Highest level index elements may reach (None = unbounded)
        revision: Counter incremented by every mutation
    """

    def __init__(self, domain: Sequence[Tuple[float, float]], n_elements: Sequence[int],
                 quadrature: GaussQuadrature, max_level: Optional[int] = None):
        """
        Initialize a single-level mesh with every element active.

        Parameters:
            domain: Parametric box ((a_1, b_1), ..., (a_d, b_d))
            n_elements: Number of level-0 elements per direction
            quadrature: Reference quadrature rule for every element
            max_level: Highest level index allowed (None = unbounded)
        """
        if max_level is not None and max_level < 0:
            raise ValueError(f"max_level must be non-negative, got {max_level}")

        level0 = LevelMesh(0, domain, n_elements, quadrature)
        self.levels: List[LevelMesh] = [level0]
        self.active: List[Set[CellIndex]] = [set(np.ndindex(*level0.n_elements_per_dir))]
        self.deactivated: List[Set[CellIndex]] = [set()]
        self.max_level = max_level
        self.revision = 0

    @property
    def n_dim(self) -> int:
        return self.levels[0].n_dim

    @property
    def n_levels(self) -> int:
        """Number of levels created so far (including emptied ones)."""
        return len(self.levels)

    @property
    def domain(self) -> Tuple[Tuple[float, float], ...]:
        return self.levels[0].domain

    @property
    def domain_measure(self) -> float:
        return float(np.prod([b - a for a, b in self.domain]))

    @property
    def quadrature(self) -> GaussQuadrature:
        return self.levels[0].quadrature

    @property
    def n_elements(self) -> int:
        """Total number of active elements."""
        return sum(len(cells) for cells in self.active)

    @property
    def nel_per_level(self) -> Tuple[int, ...]:
        return tuple(len(cells) for cells in self.active)

    @property
    def finest_active_level(self) -> int:
        """Highest level that currently owns at least one active element."""
        return max(lev for lev, cells in enumerate(self.active) if cells)

    def level_mesh(self, level: int) -> LevelMesh:
        return self.levels[level]

    def _ensure_level(self, level: int) -> None:
        while self.n_levels <= level:
            self.levels.append(LevelMesh.refined(self.levels[-1]))
            self.active.append(set())
            self.deactivated.append(set())
            logger.debug("Created mesh level %d", self.n_levels - 1)

    def active_elements(self, level: Optional[int] = None) -> List[ElementId]:
        """
        Active elements in canonical order.

        Canonical order is level ascending, then lexicographic by multi-index.
        This is also the row order of every per-element array produced by the
        hierarchical space and the error estimator.
        """
        if level is not None:
            return [(level, cell) for cell in sorted(self.active[level])]
        return [(lev, cell) for lev in range(self.n_levels) for cell in sorted(self.active[lev])]

    def is_active(self, element_id: ElementId) -> bool:
        level, cell = element_id
        return 0 <= level < self.n_levels and tuple(cell) in self.active[level]

    def region(self, level: int) -> Set[CellIndex]:
        """Cells of a level that lie in Omega^level (active or deactivated)."""
        return self.active[level] | self.deactivated[level]

    def level(self, element_id: ElementId) -> int:
        return element_id[0]

    def element(self, element_id: ElementId) -> Element:
        level, cell = element_id
        return self.levels[level].element(cell)

    def element_size(self, element_id: ElementId) -> float:
        level, cell = element_id
        return self.levels[level].element_size(cell)

    def quadrature_data(self, element_id: ElementId) -> QuadratureData:
        level, cell = element_id
        return self.levels[level].quadrature_data(cell)

    def quadrature_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Quadrature data of all active elements in canonical order.

        Returns:
            (points, weights, jacdet) with shapes (nel, n_q, d), (nel, n_q)
            and (nel, n_q)
        """
        chunks = [self.levels[lev].quadrature_arrays(sorted(cells))
                  for lev, cells in enumerate(self.active) if cells]
        return tuple(np.concatenate(parts, axis=0) for parts in zip(*chunks))

    def element_sizes(self) -> np.ndarray:
        """Sizes h_e of all active elements in canonical order."""
        return np.array([self.element_size(eid) for eid in self.active_elements()])

    def children(self, element_id: ElementId) -> List[ElementId]:
        return list(element_children(element_id))

    def parent(self, element_id: ElementId) -> Optional[ElementId]:
        return element_parent(element_id)

    def active_ancestor(self, level: int, cell: CellIndex) -> Optional[ElementId]:
        """
        The active element covering a cell of the given level, searching that
        level and coarser ones. Returns None when the cell is refined further.
        """
        cell = tuple(cell)
        for lev in range(min(level, self.n_levels - 1), -1, -1):
            if cell in self.active[lev]:
                return (lev, cell)
            cell = tuple(c // 2 for c in cell)
        return None

    def neighbours(self, element_id: ElementId) -> Set[ElementId]:
        """
        Active elements sharing a face with an element, at the same or a
        coarser level. Finer neighbours are not reported.
        """
        level, cell = element_id
        n_per_dir = self.levels[level].n_elements_per_dir
        result = set()
        for d in range(self.n_dim):
            for step in (-1, 1):
                c = list(cell)
                c[d] += step
                if not 0 <= c[d] < n_per_dir[d]:
                    continue
                owner = self.active_ancestor(level, tuple(c))
                if owner is not None:
                    result.add(owner)
        return result

    def refine(self, elements: Iterable[ElementId]) -> List[ElementId]:
        """
        Replace active elements by their children.

        All elements are validated before anything is mutated, so a failing
        call leaves the mesh unchanged.

        Parameters:
            elements: Element ids (level, multi-index) to refine

        Returns:
            The newly activated children in canonical order

        Raises:
            InvalidRefinement: If an element is not active, or its children
                would exceed max_level
        """
        to_refine = sorted({(lev, tuple(cell)) for lev, cell in elements})

        for element_id in to_refine:
            level = element_id[0]
            if not self.is_active(element_id):
                raise InvalidRefinement(element_id, "element is not active")
            if self.max_level is not None and level + 1 > self.max_level:
                raise InvalidRefinement(
                    element_id, f"children would exceed max_level={self.max_level}")

        new_children = []
        for element_id in to_refine:
            level, cell = element_id
            self._ensure_level(level + 1)
            children = [child for _, child in self.children(element_id)]
            self.active[level].discard(cell)
            self.deactivated[level].add(cell)
            self.active[level + 1].update(children)
            new_children.extend((level + 1, child) for child in children)

        if to_refine:
            self.revision += 1
            logger.debug("Refined %d elements into %d children", len(to_refine), len(new_children))
        return sorted(new_children)

    def coarsen(self, elements: Iterable[ElementId]) -> Dict[ElementId, bool]:
        """
        Merge complete families of children back into their parents.

        A parent is reactivated only if all of its 2^d children are active
        and contained in `elements`. Other families are left untouched; this
        is not an error, it is reported as False in the result.

        Parameters:
            elements: Children proposed for coarsening

        Returns:
            Mapping parent id -> True if the family was merged
        """
        proposed = {(lev, tuple(cell)) for lev, cell in elements}

        families: Dict[ElementId, List[ElementId]] = {}
        for element_id in proposed:
            parent = self.parent(element_id)
            if parent is not None:
                families.setdefault(parent, []).append(element_id)

        report = {}
        for parent in sorted(families):
            children = self.children(parent)
            complete = all(child in proposed and self.is_active(child) for child in children)
            report[parent] = complete
            if not complete:
                continue

            level, cell = parent
            self.active[level + 1].difference_update(c for _, c in children)
            self.deactivated[level].discard(cell)
            self.active[level].add(cell)

        n_merged = sum(report.values())
        if n_merged:
            self.revision += 1
            logger.debug("Coarsened %d families (%d proposed parents)", n_merged, len(report))
        return report

    def check_tiling(self, tol: float = 1e-12) -> bool:
        """
        Verify the exact-tiling invariant.

        Every finest-level cell must be covered by exactly one active element
        and the active measures must add up to the domain measure.
        """
        finest = self.n_levels - 1
        n_fine = self.levels[finest].n_elements_per_dir
        cover = np.zeros(n_fine, dtype=int)
        total = 0.0
        for level, cell in self.active_elements():
            factor = 2 ** (finest - level)
            cover[tuple(slice(c * factor, (c + 1) * factor) for c in cell)] += 1
            total += self.element((level, cell)).measure
        return bool(np.all(cover == 1)) and abs(total - self.domain_measure) <= tol * self.domain_measure
