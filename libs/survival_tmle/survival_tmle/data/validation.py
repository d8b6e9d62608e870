"""Validation of estimation inputs.

Every check fails fast with ``InputError`` before any model is fit.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd
from pydantic import ValidationError

from ..core.base import Bounds, InputError, SurvivalData
from ..ml.specs import NuisanceSpecs, resolve_columns

__all__ = [
    "validate_bounds",
    "validate_failure_types",
    "validate_horizon",
    "validate_method",
    "validate_specs",
]

METHODS = ("hazard", "mean")


def validate_method(method: str) -> str:
    if method not in METHODS:
        raise InputError(f"method must be one of {list(METHODS)}, got '{method}'")
    return method


def validate_horizon(data: SurvivalData, horizon: int) -> int:
    """Check 1 <= horizon <= largest observed time."""
    try:
        is_integer = not isinstance(horizon, bool) and float(horizon) == int(horizon)
    except (TypeError, ValueError):
        is_integer = False
    if not is_integer:
        raise InputError(f"horizon must be an integer, got {horizon!r}")
    horizon = int(horizon)
    if horizon < 1:
        raise InputError(f"horizon must be at least 1, got {horizon}")
    if horizon > data.max_time:
        raise InputError(
            f"horizon {horizon} exceeds the largest observed time {data.max_time}"
        )
    return horizon


def validate_failure_types(
    data: SurvivalData, failure_types: Optional[Iterable[int]]
) -> tuple[int, ...]:
    """Failure types of interest, defaulting to every observed cause."""
    causes = data.causes
    if not causes:
        raise InputError("No failures observed; every subject is censored")
    if failure_types is None:
        return tuple(causes)
    types = tuple(int(k) for k in failure_types)
    if not types:
        raise InputError("failure_types_of_interest cannot be empty")
    if any(k < 1 for k in types):
        raise InputError("Failure type 0 is reserved for censoring and cannot be a target")
    unobserved = [k for k in types if k not in causes]
    if unobserved:
        raise InputError(f"Failure types {unobserved} are never observed")
    return tuple(sorted(set(types)))


def validate_specs(data: SurvivalData, specs: NuisanceSpecs, bounded: bool) -> NuisanceSpecs:
    """Check referenced covariates exist and bounds are only used with parametric models."""
    if not isinstance(specs, NuisanceSpecs):
        raise InputError("nuisance_specs must be a NuisanceSpecs instance")
    for name in ("treatment", "censoring", "failure"):
        try:
            resolve_columns(getattr(specs, name), data.covariate_names)
        except ValueError as e:
            raise InputError(f"Invalid {name} specification: {e}") from e
    if bounded and not specs.all_parametric:
        raise InputError("Bounded estimation requires parametric nuisance specifications")
    return specs


def validate_bounds(
    bounds: Union[Bounds, pd.DataFrame],
    horizon: int,
    required_types: Iterable[int],
    max_lower_sum: Optional[float] = None,
) -> Bounds:
    """Check the bounds table covers every time 1..horizon for each required type.

    Args:
        bounds: Bounds model or raw table with ``t`` and ``l{j}``/``u{j}`` columns
        horizon: Target time t0
        required_types: Types of interest (mean method) or every observed
            cause (hazard method)
        max_lower_sum: If set, the lower bounds summed over the required
            types must stay below this value at every time

    Returns:
        Validated bounds

    Raises:
        InputError: If the table is malformed or coverage is incomplete
    """
    if isinstance(bounds, pd.DataFrame):
        try:
            bounds = Bounds(table=bounds)
        except ValidationError as e:
            raise InputError(f"Invalid bounds table: {e}") from e
    elif not isinstance(bounds, Bounds):
        raise InputError("bounds must be a Bounds instance or a DataFrame")

    times = np.arange(1, horizon + 1)
    required_types = list(required_types)
    for j in required_types:
        if j not in bounds.failure_types:
            raise InputError(f"Bounds table has no l{j}/u{j} columns for failure type {j}")
        lower, upper = bounds.limits(j, times)
        missing = times[np.isnan(lower) | np.isnan(upper)]
        if len(missing) > 0:
            raise InputError(
                f"Bounds for failure type {j} are missing at times {missing.tolist()}"
            )

    if max_lower_sum is not None:
        lower_sum = sum(bounds.limits(j, times)[0] for j in required_types)
        crowded = times[lower_sum >= max_lower_sum]
        if len(crowded) > 0:
            raise InputError(
                f"Lower bounds summed over failure types reach {max_lower_sum} "
                f"at times {crowded.tolist()}"
            )
    return bounds
