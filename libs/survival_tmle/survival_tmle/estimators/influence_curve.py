"""Efficient influence curves for marginal cumulative incidence.

For a target (arm a, failure type k) at horizon t0 the efficient influence
curve of psi = E[F_k(t0 | a, W)] is

    D = I(A = a) sum_{t <= t0} I(T >= t) sum_j H_kj(t) (dN_j(t) - h_j(t | a, W))
        + F_k(t0 | a, W) - psi

    H_kj(t) = [I(j = k) - (F_k(t0) - F_k(t)) / S(t)] / (g_a(W) G(t - 1 | a, W))

in terms of cause-specific hazards, or equivalently, for iterated means Q_t,

    D = I(A = a) sum_t I(T >= t) (Z_t - Q_t) / (g_a(W) G(t - 1 | a, W))
        + Q_1(a, W) - psi

where Z_t is the pseudo-outcome regressed at time t. The mean of D is the
first-order bias of the current estimate.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import norm

from ..core.base import EstimateRecord, SurvivalData, target_label
from ..data.long_format import at_risk_matrix, event_matrix

__all__ = [
    "build_record",
    "cumulative_incidence",
    "hazard_clever_covariates",
    "hazard_influence_curve",
    "influence_covariance",
    "mean_influence_curve",
    "summarize_influence_curve",
]


def cumulative_incidence(
    hazards: dict[int, NDArray[Any]],
) -> tuple[NDArray[Any], dict[int, NDArray[Any]]]:
    """Discrete product-limit survival and cause-specific incidence.

    Args:
        hazards: Cause-specific hazards h_j(t), each of shape (n, horizon)

    Returns:
        Tuple of S(t) = prod_{s <= t} (1 - sum_j h_j(s)) and, per cause,
        F_j(t) = sum_{s <= t} h_j(s) S(s - 1)
    """
    total = sum(hazards.values())
    survival = np.cumprod(1.0 - total, axis=1)
    survival_lag = np.hstack([np.ones((survival.shape[0], 1)), survival[:, :-1]])
    incidence = {
        j: np.cumsum(h * survival_lag, axis=1) for j, h in hazards.items()
    }
    return survival, incidence


def hazard_clever_covariates(
    hazards: dict[int, NDArray[Any]],
    inverse_weights: NDArray[Any],
    failure_type: int,
) -> dict[int, NDArray[Any]]:
    """Clever covariates H_kj(t) for every cause j, each of shape (n, horizon)."""
    survival, incidence = cumulative_incidence(hazards)
    f_k = incidence[failure_type]
    remaining = np.divide(
        f_k[:, -1:] - f_k,
        survival,
        out=np.zeros_like(survival),
        where=survival > 0,
    )
    return {
        j: inverse_weights * (float(j == failure_type) - remaining) for j in hazards
    }


def hazard_influence_curve(
    data: SurvivalData,
    hazards: dict[int, NDArray[Any]],
    inverse_weights: NDArray[Any],
    arm: int,
    failure_type: int,
) -> NDArray[Any]:
    """Per-observation influence curve from cause-specific hazards under ``arm``.

    Args:
        data: Observations
        hazards: h_j(t | arm, W) for every cause, shape (n, horizon)
        inverse_weights: 1 / (g_a G(t - 1)), shape (n, horizon)
        arm: Treatment arm of the target
        failure_type: Failure type of the target

    Returns:
        Influence curve values, shape (n,)
    """
    horizon = inverse_weights.shape[1]
    at_risk = at_risk_matrix(data, horizon)
    clever = hazard_clever_covariates(hazards, inverse_weights, failure_type)

    martingale = np.zeros(data.n)
    for j, h_j in hazards.items():
        residual = event_matrix(data, horizon, j) - h_j
        martingale += np.sum(np.where(at_risk, clever[j] * residual, 0.0), axis=1)

    _, incidence = cumulative_incidence(hazards)
    plug_in = incidence[failure_type][:, -1]
    treated = np.asarray(data.trt) == arm
    return treated * martingale + plug_in - plug_in.mean()


def mean_influence_curve(
    data: SurvivalData,
    inverse_weights: NDArray[Any],
    pseudo_outcomes: NDArray[Any],
    targeted_means: NDArray[Any],
    arm: int,
) -> NDArray[Any]:
    """Per-observation influence curve from targeted iterated means.

    Args:
        data: Observations
        inverse_weights: 1 / (g_a G(t - 1)), shape (n, horizon)
        pseudo_outcomes: Outcome Z_t regressed at each time, shape (n, horizon)
        targeted_means: Targeted Q*_t(arm, W), shape (n, horizon)
        arm: Treatment arm of the target

    Returns:
        Influence curve values, shape (n,)
    """
    horizon = inverse_weights.shape[1]
    at_risk = at_risk_matrix(data, horizon)
    residual = np.where(at_risk, inverse_weights * (pseudo_outcomes - targeted_means), 0.0)
    treated = np.asarray(data.trt) == arm
    plug_in = targeted_means[:, 0]
    return treated * residual.sum(axis=1) + plug_in - plug_in.mean()


def summarize_influence_curve(
    estimate: float, eic: NDArray[Any], confidence_level: float = 0.95
) -> dict[str, float]:
    """Variance, standard error and Wald interval from an influence curve."""
    variance = float(np.var(eic) / len(eic))
    std_error = float(np.sqrt(variance))
    z_score = float(norm.ppf(1 - (1 - confidence_level) / 2))
    return {
        "variance": variance,
        "std_error": std_error,
        "ci_lower": estimate - z_score * std_error,
        "ci_upper": estimate + z_score * std_error,
    }


def influence_covariance(eics: dict[tuple[int, int], NDArray[Any]]) -> pd.DataFrame:
    """Covariance matrix of the estimates across targets, cov(D) / n."""
    keys = sorted(eics)
    labels = [target_label(arm, ftype) for arm, ftype in keys]
    stacked = np.vstack([eics[k] for k in keys])
    n = stacked.shape[1]
    cov = np.atleast_2d(np.cov(stacked, ddof=0)) / n
    return pd.DataFrame(cov, index=labels, columns=labels)


def build_record(
    arm: int,
    failure_type: int,
    horizon: int,
    estimate: float,
    eic: NDArray[Any],
    confidence_level: float,
    method: str,
    **extra: Any,
) -> EstimateRecord:
    """Assemble an ``EstimateRecord`` with inference derived from its influence curve."""
    summary = summarize_influence_curve(estimate, eic, confidence_level)
    return EstimateRecord(
        arm=arm,
        failure_type=failure_type,
        horizon=horizon,
        estimate=float(estimate),
        eic=eic,
        confidence_level=confidence_level,
        method=method,
        **summary,
        **extra,
    )
