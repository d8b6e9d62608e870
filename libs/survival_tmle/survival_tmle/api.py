"""Top-level entry points for survival TMLE.

``estimate`` validates its inputs, dispatches to the hazard- or mean-based
estimator and assembles per-target estimate records with influence-curve
based inference. ``project`` re-evaluates a returned fit bundle at several
horizons.

Examples:
    >>> from survival_tmle import NuisanceSpecs, Parametric, estimate, project
    >>> specs = NuisanceSpecs(failure=Parametric(columns=("W1", "W2")))
    >>> result = estimate(data, horizon=6, nuisance_specs=specs, return_fits=True)
    >>> result.to_frame()
    >>> curves = project(result.fits, horizons=range(1, 7), isotonic=True)
"""

from __future__ import annotations

import logging
from typing import Iterable, Literal, Optional, Union

import pandas as pd

from .core.base import Bounds, InputError, SurvivalData, SurvivalTMLEResult
from .core.config import EstimationConfig
from .data.validation import (
    validate_bounds,
    validate_failure_types,
    validate_horizon,
    validate_method,
    validate_specs,
)
from .estimators.hazard_tmle import HazardTMLE
from .estimators.influence_curve import influence_covariance
from .estimators.mean_tmle import MeanTMLE
from .estimators.nuisance_fits import FitBundle
from .estimators.projection import CumulativeIncidenceProjector, ProjectionResult
from .ml.specs import NuisanceSpecs

logger = logging.getLogger(__name__)

__all__ = ["estimate", "project"]


def _as_observations(observations: Union[SurvivalData, pd.DataFrame]) -> SurvivalData:
    if isinstance(observations, SurvivalData):
        return observations
    if isinstance(observations, pd.DataFrame):
        return SurvivalData.from_dataframe(observations)
    raise InputError("observations must be SurvivalData or a DataFrame")


def estimate(
    observations: Union[SurvivalData, pd.DataFrame],
    horizon: int,
    nuisance_specs: Optional[NuisanceSpecs] = None,
    method: Literal["hazard", "mean"] = "hazard",
    bounds: Optional[Union[Bounds, pd.DataFrame]] = None,
    failure_types_of_interest: Optional[Iterable[int]] = None,
    return_fits: bool = False,
    config: Optional[EstimationConfig] = None,
) -> SurvivalTMLEResult:
    """Estimate marginal cumulative incidence at ``horizon`` under both treatment arms.

    Args:
        observations: Observation table; a DataFrame must have ``ftime``,
            ``ftype`` and ``trt`` columns with every other column a covariate
        horizon: Target time t0, between 1 and the largest observed time
        nuisance_specs: Treatment, censoring and failure model specifications;
            defaults to main-terms logistic regressions on every covariate
        method: ``"hazard"`` for iterative hazard targeting, ``"mean"`` for
            iterated conditional means
        bounds: Per-time bounds on hazards (hazard method, every observed
            cause) or iterated means (mean method, each type of interest)
        failure_types_of_interest: Causes to estimate; defaults to every
            observed cause
        return_fits: Attach the frozen fit bundle for use with ``project``
        config: Estimation options

    Returns:
        One estimate record per (arm, failure type) plus their covariance

    Raises:
        InputError: If observations, horizon, specifications or bounds are invalid
        FitError: If a nuisance regression cannot produce finite predictions
    """
    data = _as_observations(observations)
    config = config or EstimationConfig()
    method = validate_method(method)
    horizon = validate_horizon(data, horizon)
    types = validate_failure_types(data, failure_types_of_interest)
    specs = validate_specs(data, nuisance_specs or NuisanceSpecs(), bounds is not None)
    if bounds is not None:
        if method == "mean":
            bounds = validate_bounds(bounds, horizon, types)
        else:
            bounds = validate_bounds(
                bounds,
                horizon,
                tuple(data.causes),
                max_lower_sum=1.0 - config.hazard.hazard_clip_eps,
            )

    log = logger.info if config.verbose else logger.debug
    log(
        f"Estimating cumulative incidence by {method} TMLE: n={data.n}, "
        f"horizon={horizon}, types={list(types)}, bounded={bounds is not None}"
    )

    if method == "hazard":
        bundle, targeting = HazardTMLE(config).fit(data, horizon, specs, types, bounds)
        records = targeting.records(horizon, config.confidence_level)
    else:
        bundle, targets = MeanTMLE(config).fit(data, horizon, specs, types, bounds)
        records = {
            key: res.to_record(config.confidence_level) for key, res in sorted(targets.items())
        }

    covariance = influence_covariance({key: rec.eic for key, rec in records.items()})
    return SurvivalTMLEResult(
        records=records,
        covariance=covariance,
        method=method,
        horizon=horizon,
        n_observations=data.n,
        fits=bundle if return_fits else None,
    )


def project(
    fit_bundle: FitBundle, horizons: Iterable[int], isotonic: bool = False
) -> ProjectionResult:
    """Cumulative incidence curves over ``horizons`` reusing frozen fits.

    Args:
        fit_bundle: ``result.fits`` from ``estimate(..., return_fits=True)``
        horizons: Horizons to evaluate, each between 1 and the fit horizon
        isotonic: Project each curve onto non-decreasing sequences

    Raises:
        InputError: If no fit bundle is given or a horizon is out of range
    """
    if not isinstance(fit_bundle, FitBundle):
        raise InputError("project requires the fit bundle from estimate(..., return_fits=True)")
    return CumulativeIncidenceProjector(fit_bundle).project(horizons, isotonic=isotonic)
