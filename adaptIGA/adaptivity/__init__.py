"""
Adaptivity module: error indicators, marking and the adaptive loops.
"""

from .estimator import ErrorEstimator, Indicators
from .marker import Marker, MarkedSet
from .loop import AdaptiveLoop, AdaptivityResult, IterationRecord
from .transient import TransientAdaptiveDriver, TransientResult, build_discretization
