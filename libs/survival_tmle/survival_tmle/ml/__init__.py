"""Nuisance model specifications, fitting and fluctuation.

This module provides the typed model specifications, a Super Learner
ensemble, the nuisance fit/predict contract and the logistic fluctuation
solver used by the targeting steps.
"""

from .fluctuation import (
    apply_fluctuation,
    fit_quasi_binomial,
    logit_bounded,
    solve_fluctuation,
)
from .nuisance import BoundSpec, FittedModel, NuisanceEstimator
from .specs import Ensemble, EstimatorSpec, NuisanceSpecs, Parametric
from .super_learner import FractionalLogisticRegression, SuperLearner

__all__ = [
    "BoundSpec",
    "Ensemble",
    "EstimatorSpec",
    "FittedModel",
    "FractionalLogisticRegression",
    "NuisanceEstimator",
    "NuisanceSpecs",
    "Parametric",
    "SuperLearner",
    "apply_fluctuation",
    "fit_quasi_binomial",
    "logit_bounded",
    "solve_fluctuation",
]
