"""
Marking strategies: turn error indicators into REFINE and COARSEN sets.

Refinement:
- MS (maximum strategy):   mark  est > mark_param * max(est)
- GR (global refinement):  mark  est > mark_param * rms(est)

Both comparisons are strict, so identical zero indicators mark nothing.
mark_param lies in [0, 1] for MS; for GR it only has to be non-negative
(the rms never exceeds the max, so factors above 1 still mark entities).

Optional neighbour marking adds, for every marked entity, the adjacent
entities at the same or a coarser level (face neighbours for elements,
functions sharing an active element for functions), one ring per pass.

Coarsening (optional): candidates satisfy

    est < mark_param_coarsening * crp^iteration * reference

with reference = max for MS and rms for GR, are not marked for refinement
and live on level >= 1. Only complete sibling families can be merged:
- elements: a candidate is kept when all 2^d siblings are active candidates
- functions: an element is eligible when every function acting on it is a
  candidate; a candidate function is kept when all its active elements
  belong to complete families of eligible elements
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Set

from .estimator import Indicators
from ..discretization.element import ElementId
from ..discretization.hierarchical_mesh import HierarchicalMesh
from ..exceptions import EmptyIndicatorSet
from ..geometry.hierarchical_space import HierarchicalSpace

logger = logging.getLogger(__name__)

STRATEGIES = ("MS", "GR")


@dataclass
class MarkedSet:
    """
    Disjoint REFINE and COARSEN sets of one iteration.

    Attributes:
        flag: "elements" or "functions" (kind of the entity ids)
        refine: Entities marked for refinement
        coarsen: Entities marked for coarsening
    """
    flag: str
    refine: List[tuple] = field(default_factory=list)
    coarsen: List[tuple] = field(default_factory=list)

    def refine_elements(self, space: HierarchicalSpace) -> List[ElementId]:
        if self.flag == "elements":
            return sorted(self.refine)
        return space.cells_to_refine(self.refine)

    def coarsen_elements(self, space: HierarchicalSpace) -> List[ElementId]:
        if self.flag == "elements":
            return sorted(self.coarsen)
        return space.cells_to_coarsen(self.coarsen)


class Marker:
    """
    Marking strategy with optional neighbour marking and coarsening.

    Attributes:
        strategy: "MS" or "GR"
        mark_param: Refinement threshold factor
        coarsening: Whether a COARSEN set is computed
        mark_param_coarsening: Coarsening threshold factor
        crp: Coarsening relaxation parameter
        mark_neighbours: Whether neighbours of marked entities are added
        neighbour_passes: Number of neighbour rings
    """

    def __init__(self, strategy: str = "MS", mark_param: float = 0.75,
                 coarsening: bool = False, mark_param_coarsening: float = 0.25,
                 crp: float = 1.0, mark_neighbours: bool = False, neighbour_passes: int = 1):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown marking strategy '{strategy}', expected one of {STRATEGIES}")
        if mark_param < 0:
            raise ValueError(f"mark_param must be non-negative, got {mark_param}")
        if strategy == "MS" and mark_param > 1.0:
            raise ValueError(f"mark_param must lie in [0, 1] for MS, got {mark_param}")
        if mark_param_coarsening < 0:
            raise ValueError(f"mark_param_coarsening must be non-negative, got {mark_param_coarsening}")
        if crp <= 0:
            raise ValueError(f"crp must be positive, got {crp}")
        if neighbour_passes < 0:
            raise ValueError(f"neighbour_passes must be non-negative, got {neighbour_passes}")

        self.strategy = strategy
        self.mark_param = mark_param
        self.coarsening = coarsening
        self.mark_param_coarsening = mark_param_coarsening
        self.crp = crp
        self.mark_neighbours = mark_neighbours
        self.neighbour_passes = neighbour_passes

    def reference(self, values: np.ndarray) -> float:
        """max for MS, root mean square for GR."""
        if self.strategy == "MS":
            return float(np.max(values))
        return float(np.sqrt(np.mean(values ** 2)))

    def mark(self, indicators: Indicators, space: HierarchicalSpace, iteration: int = 0) -> MarkedSet:
        """
        Compute the marked sets.

        Parameters:
            indicators: Indicators of the current space
            space: The space the indicators were computed on
            iteration: Adaptive iteration, exponent of crp

        Returns:
            MarkedSet with entity ids of the indicators' kind

        Raises:
            EmptyIndicatorSet: If there are no indicators
        """
        values = np.asarray(indicators.values, dtype=np.float64)
        if len(values) == 0:
            raise EmptyIndicatorSet("Cannot mark: the indicator set is empty")

        reference = self.reference(values)
        refine = values > self.mark_param * reference

        if self.mark_neighbours and refine.any():
            refine = self._add_neighbours(refine, indicators, space)

        coarsen = np.zeros(len(values), dtype=bool)
        if self.coarsening:
            threshold = self.mark_param_coarsening * self.crp ** iteration * reference
            candidates = (values < threshold) & ~refine & (indicators.levels >= 1)
            if indicators.flag == "elements":
                coarsen = self._element_families(candidates, indicators, space.mesh)
            else:
                coarsen = self._function_families(candidates, space)

        entities = indicators.entities
        marked = MarkedSet(
            flag=indicators.flag,
            refine=[entities[i] for i in np.flatnonzero(refine)],
            coarsen=[entities[i] for i in np.flatnonzero(coarsen)],
        )
        logger.debug("Marked %d/%d %s for refinement, %d for coarsening",
                     len(marked.refine), len(values), indicators.flag, len(marked.coarsen))
        return marked

    def _add_neighbours(self, refine: np.ndarray, indicators: Indicators,
                        space: HierarchicalSpace) -> np.ndarray:
        refine = refine.copy()
        if indicators.flag == "elements":
            position: Dict[ElementId, int] = {eid: i for i, eid in enumerate(indicators.entities)}
            mesh = space.mesh

            def neighbours(i):
                return [position[n] for n in mesh.neighbours(indicators.entities[i]) if n in position]
        else:
            def neighbours(i):
                return space.function_neighbours(i)

        front = np.flatnonzero(refine)
        for _ in range(self.neighbour_passes):
            added: Set[int] = set()
            for i in front:
                added.update(int(n) for n in neighbours(i) if not refine[n])
            if not added:
                break
            front = np.array(sorted(added), dtype=int)
            refine[front] = True
        return refine

    @staticmethod
    def _element_families(candidates: np.ndarray, indicators: Indicators,
                          mesh: HierarchicalMesh) -> np.ndarray:
        entities = indicators.entities
        candidate_set = {entities[i] for i in np.flatnonzero(candidates)}

        keep = np.zeros(len(entities), dtype=bool)
        checked = {}
        for i in np.flatnonzero(candidates):
            parent = mesh.parent(entities[i])
            if parent not in checked:
                checked[parent] = all(child in candidate_set for child in mesh.children(parent))
            keep[i] = checked[parent]
        return keep

    @staticmethod
    def _function_families(candidates: np.ndarray, space: HierarchicalSpace) -> np.ndarray:
        incidence = space.incidence().astype(np.int64)
        mesh = space.mesh
        elements = mesh.active_elements()

        # eligible: no non-candidate function acts on the element
        non_candidate = (~candidates).astype(np.int64)
        eligible = np.asarray(incidence @ non_candidate).ravel() == 0
        eligible_set = {elements[e] for e in np.flatnonzero(eligible) if elements[e][0] >= 1}

        in_family = np.zeros(len(elements), dtype=bool)
        checked = {}
        for e, element_id in enumerate(elements):
            if element_id not in eligible_set:
                continue
            parent = mesh.parent(element_id)
            if parent not in checked:
                checked[parent] = all(child in eligible_set for child in mesh.children(parent))
            in_family[e] = checked[parent]

        outside = (~in_family).astype(np.int64)
        all_inside = np.asarray(incidence.T @ outside).ravel() == 0
        return candidates & all_inside
