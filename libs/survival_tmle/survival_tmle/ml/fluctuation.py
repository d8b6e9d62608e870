"""Logistic fluctuation submodels and the logit-bounds transform.

Targeting fits ``logit(Q_eps) = logit(Q) + H @ eps`` by solving the
quasi-binomial score equation ``sum H (Y - Q_eps) = 0``. With bounds
``[l, u]`` the mean is first mapped to the unit interval by
``(Q - l) / (u - l)``; the scaled outcome may then fall outside [0, 1],
which the quasi-likelihood tolerates. Outcomes inside [0, 1] are fit as a
statsmodels binomial GLM with offset; scaled outcomes outside it use damped
Newton steps until the score vanishes.
"""
# ruff: noqa: N803

from __future__ import annotations

import logging
import warnings
from typing import Any, Optional

import numpy as np
import statsmodels.api as sm
from numpy.typing import NDArray
from scipy.special import expit, logit
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

from ..core.base import FitError, FluctuationDegeneracy

logger = logging.getLogger(__name__)

# Probabilities are kept this far from 0 and 1 before taking logits.
LOGIT_EPS = 1e-10

# Newton iterations stop once every component of the mean score is below this.
SCORE_TOL = 1e-10

__all__ = [
    "apply_fluctuation",
    "fit_quasi_binomial",
    "from_unit_scale",
    "logit_bounded",
    "solve_fluctuation",
    "to_unit_scale",
]


def to_unit_scale(
    values: NDArray[Any], lower: NDArray[Any] | float, upper: NDArray[Any] | float
) -> NDArray[Any]:
    """Affine map of ``values`` from [lower, upper] to [0, 1]."""
    return (np.asarray(values, dtype=float) - lower) / (upper - lower)


def from_unit_scale(
    values: NDArray[Any], lower: NDArray[Any] | float, upper: NDArray[Any] | float
) -> NDArray[Any]:
    """Inverse of ``to_unit_scale``."""
    return lower + (upper - lower) * np.asarray(values, dtype=float)


def logit_bounded(
    values: NDArray[Any],
    lower: NDArray[Any] | float = 0.0,
    upper: NDArray[Any] | float = 1.0,
) -> NDArray[Any]:
    """Logit of the unit-scaled values, clipped away from 0 and 1."""
    scaled = np.clip(to_unit_scale(values, lower, upper), LOGIT_EPS, 1 - LOGIT_EPS)
    return logit(scaled)


def apply_fluctuation(
    offset: NDArray[Any],
    clever: NDArray[Any],
    epsilon: NDArray[Any],
    lower: NDArray[Any] | float = 0.0,
    upper: NDArray[Any] | float = 1.0,
) -> NDArray[Any]:
    """Evaluate the fluctuated mean ``l + (u - l) expit(offset + H @ eps)``."""
    clever = np.asarray(clever, dtype=float)
    if clever.ndim == 1:
        clever = clever.reshape(-1, 1)
    eta = offset + clever @ np.atleast_1d(epsilon)
    return from_unit_scale(expit(eta), lower, upper)


def _glm_binomial(
    y: NDArray[Any],
    X: NDArray[Any],
    offset: NDArray[Any],
    max_iter: int,
) -> tuple[NDArray[Any], bool]:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        model = sm.GLM(y, X, family=sm.families.Binomial(), offset=offset)
        result = model.fit(maxiter=max_iter, tol=1e-12)
    return np.asarray(result.params, dtype=float), bool(result.converged)


def _newton_quasi_binomial(
    y: NDArray[Any],
    X: NDArray[Any],
    offset: NDArray[Any],
    max_iter: int,
    tol: float = SCORE_TOL,
) -> tuple[NDArray[Any], bool]:
    """Damped Newton iterations on the logistic quasi-likelihood.

    Used when the outcome leaves [0, 1], where the binomial family rejects
    the response. Stops once the mean score is below ``tol``.
    """
    n = len(y)
    beta = np.zeros(X.shape[1])

    def loss(b: NDArray[Any]) -> float:
        eta = offset + X @ b
        return float(np.sum(np.logaddexp(0.0, eta) - y * eta) / n)

    current = loss(beta)
    for _ in range(max_iter):
        mu = expit(offset + X @ beta)
        score = X.T @ (y - mu) / n
        if np.max(np.abs(score)) < tol:
            return beta, True
        hess = (X * (mu * (1 - mu))[:, None]).T @ X / n
        step = np.linalg.lstsq(hess, score, rcond=None)[0]
        scale = 1.0
        for _ in range(50):
            candidate = beta + scale * step
            value = loss(candidate)
            if np.isfinite(value) and value <= current + 1e-14 * max(1.0, abs(current)):
                break
            scale /= 2
        else:
            break
        beta, current = candidate, value

    mu = expit(offset + X @ beta)
    score = X.T @ (y - mu) / n
    return beta, bool(np.max(np.abs(score)) < tol)


def fit_quasi_binomial(
    y: NDArray[Any],
    X: NDArray[Any],
    offset: Optional[NDArray[Any]] = None,
    max_iter: int = 200,
) -> NDArray[Any]:
    """Fit a logistic quasi-likelihood regression without an implicit intercept.

    Args:
        y: Outcome on the (possibly unit-scaled) probability scale
        X: Design matrix
        offset: Fixed offset on the logit scale
        max_iter: Maximum solver iterations

    Returns:
        Coefficient vector

    Raises:
        FitError: If the solver produces non-finite coefficients
    """
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    offset = np.zeros(len(y)) if offset is None else np.asarray(offset, dtype=float)
    if len(y) == 0:
        raise FitError("Cannot fit a regression with no rows")
    try:
        if np.all((y >= 0) & (y <= 1)):
            beta, success = _glm_binomial(y, X, offset, max_iter)
        else:
            beta, success = _newton_quasi_binomial(y, X, offset, max_iter)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise FitError(f"Quasi-binomial fit failed: {e}") from e
    if not np.all(np.isfinite(beta)):
        raise FitError("Quasi-binomial fit produced non-finite coefficients")
    if not success:
        logger.debug("Quasi-binomial fit stopped before reaching the score tolerance")
    return beta


def solve_fluctuation(
    y: NDArray[Any],
    clever: NDArray[Any],
    offset: NDArray[Any],
    max_iter: int = 200,
) -> NDArray[Any]:
    """Fit the fluctuation parameter of a logistic submodel.

    Columns of ``clever`` that are identically zero carry no information and
    get a zero coefficient.

    Args:
        y: Outcome on the unit scale
        clever: Clever covariate vector or matrix (rows x targets)
        offset: Logit of the current (unit-scaled) estimate

    Returns:
        Fluctuation parameter with one entry per clever covariate column

    Raises:
        FluctuationDegeneracy: If every clever covariate is zero or the fit
            does not produce a finite parameter
    """
    clever = np.asarray(clever, dtype=float)
    if clever.ndim == 1:
        clever = clever.reshape(-1, 1)
    epsilon = np.zeros(clever.shape[1])
    if clever.shape[0] == 0:
        raise FluctuationDegeneracy("No rows available for the fluctuation")

    informative = np.any(clever != 0, axis=0)
    if not np.any(informative):
        raise FluctuationDegeneracy("Clever covariate is identically zero")
    if not np.all(np.isfinite(clever)) or not np.all(np.isfinite(offset)):
        raise FluctuationDegeneracy("Clever covariate or offset is not finite")

    try:
        fitted = fit_quasi_binomial(y, clever[:, informative], offset, max_iter=max_iter)
    except FitError as e:
        raise FluctuationDegeneracy(str(e)) from e
    epsilon[informative] = fitted
    return epsilon
