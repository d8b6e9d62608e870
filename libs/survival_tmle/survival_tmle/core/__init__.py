"""Core data models, result containers, exceptions and configuration."""

from .base import (
    Bounds,
    EstimateRecord,
    FitError,
    FluctuationDegeneracy,
    InputError,
    NonConvergenceWarning,
    SurvivalData,
    SurvivalTMLEError,
    SurvivalTMLEResult,
    target_label,
)
from .config import (
    HAZARD_CLIP_EPS,
    Environment,
    EstimationConfig,
    HazardTMLEConfig,
    SurvivalTMLESettings,
)

__all__ = [
    "Bounds",
    "EstimateRecord",
    "SurvivalData",
    "SurvivalTMLEResult",
    "target_label",
    # Exceptions and warnings
    "SurvivalTMLEError",
    "InputError",
    "FitError",
    "FluctuationDegeneracy",
    "NonConvergenceWarning",
    # Configuration
    "HAZARD_CLIP_EPS",
    "Environment",
    "EstimationConfig",
    "HazardTMLEConfig",
    "SurvivalTMLESettings",
]
