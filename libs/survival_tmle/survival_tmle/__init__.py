"""Targeted minimum loss-based estimation of cumulative incidence.

Estimates marginal cumulative incidence under two treatment arms for
discrete-time, right-censored survival outcomes with competing risks, by
iterative hazard targeting or by iterated conditional means.
"""

__version__ = "0.1.0"

from .api import estimate, project
from .core import *
from .estimators import (
    CumulativeIncidenceProjector,
    FitBundle,
    HazardTMLE,
    MeanTMLE,
    ProjectionResult,
)
from .ml import Ensemble, NuisanceSpecs, Parametric, SuperLearner

__all__ = [
    "__version__",
    "estimate",
    "project",
    "Bounds",
    "CumulativeIncidenceProjector",
    "Ensemble",
    "EstimateRecord",
    "EstimationConfig",
    "FitBundle",
    "FitError",
    "FluctuationDegeneracy",
    "HazardTMLE",
    "HazardTMLEConfig",
    "InputError",
    "MeanTMLE",
    "NonConvergenceWarning",
    "NuisanceSpecs",
    "Parametric",
    "ProjectionResult",
    "SuperLearner",
    "SurvivalData",
    "SurvivalTMLEError",
    "SurvivalTMLEResult",
    "SurvivalTMLESettings",
]
