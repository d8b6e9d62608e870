"""Data layouts, input validation and simulation for survival TMLE.

This module provides:
- Pooled-over-time long tables and design matrices
- Fail-fast validation of horizons, failure types, specifications and bounds
- Synthetic competing risks data with known cumulative incidence
"""

from .long_format import (
    DesignBuilder,
    TimeBasis,
    at_risk_matrix,
    event_matrix,
    pooled_rows,
    time_grid_frame,
)
from .synthetic import CompetingRisksGenerator, generate_competing_risks
from .validation import (
    validate_bounds,
    validate_failure_types,
    validate_horizon,
    validate_method,
    validate_specs,
)

__all__ = [
    # Long format
    "DesignBuilder",
    "TimeBasis",
    "at_risk_matrix",
    "event_matrix",
    "pooled_rows",
    "time_grid_frame",
    # Validation
    "validate_bounds",
    "validate_failure_types",
    "validate_horizon",
    "validate_method",
    "validate_specs",
    # Synthetic data generation
    "CompetingRisksGenerator",
    "generate_competing_risks",
]
