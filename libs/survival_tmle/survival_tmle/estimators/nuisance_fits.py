"""Treatment and censoring nuisance fits shared by both TMLE methods.

The treatment model estimates P(A = 1 | W); the censoring model is a pooled
hazard regression over subject-times where no failure occurred. Both are fit
once per estimation call and frozen into a ``FitBundle`` that can be handed
back to the caller for reuse across horizons.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray

from ..core.base import Bounds, SurvivalData
from ..core.config import EstimationConfig
from ..data.long_format import DesignBuilder, pooled_rows, time_grid_frame
from ..ml.nuisance import FittedModel, NuisanceEstimator
from ..ml.specs import EstimatorSpec, NuisanceSpecs, resolve_columns

logger = logging.getLogger(__name__)

__all__ = [
    "ArmNuisance",
    "FitBundle",
    "arm_nuisance",
    "fit_censoring_model",
    "fit_treatment_model",
]


@dataclass(frozen=True)
class FitBundle:
    """Frozen nuisance fits from one estimation call.

    Returned by ``estimate(..., return_fits=True)`` and consumed by
    ``project`` to re-evaluate the estimator at other horizons.
    """

    data: SurvivalData
    method: str
    horizon: int
    specs: NuisanceSpecs
    treatment_model: FittedModel
    censoring_model: Optional[FittedModel]
    failure_types_of_interest: tuple[int, ...]
    config: EstimationConfig
    hazard_models: dict[int, FittedModel] = field(default_factory=dict)
    bounds: Optional[Bounds] = None


@dataclass(frozen=True)
class ArmNuisance:
    """Treatment and censoring predictions with treatment set to one arm.

    Attributes:
        arm: Treatment arm
        g: P(A = arm | W), shape (n,)
        censoring_survival: G(t | arm, W) for t = 0..horizon, shape (n, horizon + 1)
    """

    arm: int
    g: NDArray[Any]
    censoring_survival: NDArray[Any]

    def inverse_weights(self, g_tol: float) -> NDArray[Any]:
        """1 / (g_a(W) G(t - 1 | a, W)) for t = 1..horizon, truncated at g_tol."""
        denom = self.g[:, None] * self.censoring_survival[:, :-1]
        truncated = denom < g_tol
        if np.any(truncated):
            share = float(np.mean(truncated))
            warnings.warn(
                f"{share:.1%} of g*G values for arm {self.arm} fall below "
                f"g_tol={g_tol}; truncating. Check positivity."
            )
        return 1.0 / np.maximum(denom, g_tol)


def fit_treatment_model(
    data: SurvivalData, spec: EstimatorSpec, estimator: NuisanceEstimator
) -> FittedModel:
    """Fit P(A = 1 | W)."""
    design = DesignBuilder(
        covariates=tuple(resolve_columns(spec, data.covariate_names)), include_trt=False
    )
    model = estimator.fit(np.asarray(data.trt, dtype=float), data.baseline_frame(), spec, design)
    logger.debug(f"Fitted treatment model {type(model).__name__}")
    return model


def fit_censoring_model(
    data: SurvivalData,
    spec: EstimatorSpec,
    horizon: int,
    estimator: NuisanceEstimator,
) -> Optional[FittedModel]:
    """Fit the pooled censoring hazard, or ``None`` if nobody is censored before ``horizon``.

    Only G(t - 1) for t <= horizon enters the estimators, so censoring at the
    horizon itself (e.g. end of follow-up) needs no model. Censoring at time t
    is observed only for subjects who did not fail at t, so failure rows are
    excluded from the pooled regression.
    """
    censored_early = (np.asarray(data.ftype) == 0) & (np.asarray(data.ftime) < horizon)
    if not np.any(censored_early):
        logger.debug("No censoring before the horizon; using G = 1")
        return None

    rows = pooled_rows(data, horizon)
    failed = np.zeros(len(rows), dtype=bool)
    for j in data.causes:
        failed |= rows[f"dN{j}"].to_numpy() == 1
    rows = rows.loc[~failed].reset_index(drop=True)

    design = DesignBuilder(
        covariates=tuple(resolve_columns(spec, data.covariate_names)),
        include_trt=True,
        time_basis=spec.time_basis,
        horizon=horizon,
    )
    model = estimator.fit(rows["dC"].to_numpy(), rows, spec, design)
    logger.debug(f"Fitted censoring model {type(model).__name__} on {len(rows)} rows")
    return model


def arm_nuisance(
    data: SurvivalData,
    treatment_model: FittedModel,
    censoring_model: Optional[FittedModel],
    horizon: int,
    arm: int,
) -> ArmNuisance:
    """Evaluate the treatment and censoring models with treatment set to ``arm``."""
    p_treated = treatment_model.predict(data.baseline_frame())
    g = p_treated if arm == 1 else 1.0 - p_treated

    survival = np.ones((data.n, horizon + 1))
    if censoring_model is not None:
        hazard = censoring_model.predict(time_grid_frame(data, horizon, arm))
        survival[:, 1:] = np.cumprod(1.0 - hazard.reshape(data.n, horizon), axis=1)
    return ArmNuisance(arm=arm, g=g, censoring_survival=survival)
