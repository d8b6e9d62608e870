"""Survival TMLE estimators.

This module provides the hazard-based and iterated-mean TMLE of marginal
cumulative incidence, their efficient influence curves and the projector
that re-evaluates frozen fits over several horizons.
"""

from .hazard_tmle import HazardTargetingResult, HazardTMLE
from .mean_tmle import IteratedMeanTask, MeanTargetResult, MeanTMLE
from .nuisance_fits import FitBundle
from .projection import CumulativeIncidenceProjector, ProjectionResult, isotonic_projection

__all__ = [
    "CumulativeIncidenceProjector",
    "FitBundle",
    "HazardTargetingResult",
    "HazardTMLE",
    "IteratedMeanTask",
    "MeanTargetResult",
    "MeanTMLE",
    "ProjectionResult",
    "isotonic_projection",
]
