"""
Exceptions raised by the hierarchical adaptivity engine.

All errors derive from AdaptivityError so callers can catch the whole family.
Each one also derives from the builtin it specializes, so code that already
catches ValueError / RuntimeError keeps working.

Partial coarsening families are NOT errors: they are filtered silently by
HierarchicalMesh.coarsen.
"""


class AdaptivityError(Exception):
    """Base class for errors of the adaptive mesh/space engine."""


class InvalidRefinement(AdaptivityError, ValueError):
    """
    An element cannot be refined.

    Raised when the element is not currently active, or when refining it
    would create a level beyond the configured maximum level.
    """

    def __init__(self, element_id, reason: str):
        self.element_id = element_id
        self.reason = reason
        super().__init__(f"Cannot refine element {element_id}: {reason}")


class StaleSolution(AdaptivityError, ValueError):
    """
    A coefficient vector does not match the current number of DOFs.

    This means the mesh changed after the solution was computed. Using it
    anyway would silently corrupt the error indicators.
    """

    def __init__(self, n_coefficients: int, ndof: int, name: str = "solution"):
        self.n_coefficients = n_coefficients
        self.ndof = ndof
        super().__init__(
            f"Stale {name}: got {n_coefficients} coefficients, "
            f"but the hierarchical space has {ndof} active functions"
        )


class EmptyIndicatorSet(AdaptivityError, ValueError):
    """Marking was requested with zero indicators."""


class InconsistentBasis(AdaptivityError, RuntimeError):
    """
    An active element has no supporting active basis function.

    Never happens while the mesh/space invariants hold.
    """
