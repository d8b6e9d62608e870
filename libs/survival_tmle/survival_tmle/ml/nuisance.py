"""Nuisance estimation: a uniform fit/predict contract over model specs.

``NuisanceEstimator.fit`` turns an outcome vector, a data frame of rows and an
``EstimatorSpec`` into a frozen ``FittedModel``; ``predict`` evaluates that model
at arbitrary covariate/time rows and always returns probabilities in [0, 1].
"""
# ruff: noqa: N803

from __future__ import annotations

import abc
import logging
import warnings
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from numpy.typing import NDArray
from scipy.special import expit
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

from ..core.base import Bounds, FitError, InputError
from ..data.long_format import DesignBuilder
from .fluctuation import fit_quasi_binomial, from_unit_scale, to_unit_scale
from .specs import Ensemble, EstimatorSpec, Parametric
from .super_learner import SuperLearner, make_learner

logger = logging.getLogger(__name__)

__all__ = [
    "BoundSpec",
    "BoundedParametricModel",
    "ConstantModel",
    "EnsembleModel",
    "FittedModel",
    "NuisanceEstimator",
    "ParametricModel",
]


@dataclass(frozen=True)
class BoundSpec:
    """Bounds applying to one regression.

    Attributes:
        bounds: The bounds table
        failure_type: Which ``l{j}``/``u{j}`` pair to use
        time: Fixed time for per-time regressions; ``None`` reads each row's ``t``
    """

    bounds: Bounds
    failure_type: int
    time: Optional[int] = None

    def limits(self, frame: pd.DataFrame) -> tuple[NDArray[Any], NDArray[Any]]:
        if self.time is None:
            times = frame["t"].to_numpy()
        else:
            times = np.full(len(frame), self.time)
        return self.bounds.limits(self.failure_type, times)


@dataclass(frozen=True)
class FittedModel(abc.ABC):
    """A frozen nuisance regression."""

    design: DesignBuilder

    @abc.abstractmethod
    def _predict_design(self, X: pd.DataFrame, frame: pd.DataFrame) -> NDArray[Any]:
        pass

    def predict(self, frame: pd.DataFrame) -> NDArray[Any]:
        """Predicted probabilities for the rows of ``frame``.

        Raises:
            FitError: If the predictions are not finite
        """
        X = self.design.build(frame)
        pred = np.asarray(self._predict_design(X, frame), dtype=float)
        if not np.all(np.isfinite(pred)):
            raise FitError(f"{type(self).__name__} produced non-finite predictions")
        return np.clip(pred, 0.0, 1.0)


@dataclass(frozen=True)
class ConstantModel(FittedModel):
    """Empirical proportion, ignoring covariates."""

    value: float = 0.0

    def _predict_design(self, X: pd.DataFrame, frame: pd.DataFrame) -> NDArray[Any]:
        return np.full(len(X), self.value)


@dataclass(frozen=True)
class ParametricModel(FittedModel):
    """Logistic GLM fit by statsmodels."""

    params: NDArray[Any] = None  # type: ignore[assignment]

    def _predict_design(self, X: pd.DataFrame, frame: pd.DataFrame) -> NDArray[Any]:
        design = sm.add_constant(X.to_numpy(dtype=float), has_constant="add")
        return expit(design @ self.params)


@dataclass(frozen=True)
class BoundedParametricModel(FittedModel):
    """Logistic model of the unit-scaled mean ``(Q - l) / (u - l)``."""

    params: NDArray[Any] = None  # type: ignore[assignment]
    bound_spec: BoundSpec = None  # type: ignore[assignment]

    def _predict_design(self, X: pd.DataFrame, frame: pd.DataFrame) -> NDArray[Any]:
        lower, upper = self.bound_spec.limits(frame)
        design = sm.add_constant(X.to_numpy(dtype=float), has_constant="add")
        return from_unit_scale(expit(design @ self.params), lower, upper)


@dataclass(frozen=True)
class EnsembleModel(FittedModel):
    """Super Learner ensemble."""

    learner: SuperLearner = None  # type: ignore[assignment]

    def _predict_design(self, X: pd.DataFrame, frame: pd.DataFrame) -> NDArray[Any]:
        return self.learner.predict(X.to_numpy(dtype=float))


class NuisanceEstimator:
    """Fits and evaluates nuisance regressions for any ``EstimatorSpec``."""

    def fit(
        self,
        outcome: NDArray[Any],
        frame: pd.DataFrame,
        spec: EstimatorSpec,
        design: DesignBuilder,
        bound_spec: Optional[BoundSpec] = None,
    ) -> FittedModel:
        """Fit a nuisance regression.

        Args:
            outcome: Outcome in [0, 1] for each row of ``frame``
            frame: Rows with ``trt``, covariates and (pooled fits) ``t``
            spec: Parametric or ensemble specification
            design: Design matrix builder for this regression
            bound_spec: Bounds on the conditional mean, parametric specs only

        Returns:
            Frozen fitted model

        Raises:
            InputError: If bounds are requested for an ensemble specification
            FitError: If the fit cannot produce finite predictions
        """
        y = np.asarray(outcome, dtype=float)
        if len(y) != len(frame):
            raise FitError(f"Outcome ({len(y)}) and rows ({len(frame)}) differ in length")
        if len(y) == 0:
            raise FitError("Cannot fit a nuisance regression with no rows")
        if not np.all(np.isfinite(y)):
            raise FitError("Nuisance regression outcome contains non-finite values")

        X = design.build(frame)

        if bound_spec is not None:
            if not isinstance(spec, Parametric):
                raise InputError("Bounded estimation requires parametric specifications")
            return self._fit_bounded(y, X, frame, design, bound_spec)

        if np.any(y < 0) or np.any(y > 1):
            raise FitError("Nuisance regression outcome must lie in [0, 1]")

        if X.shape[1] == 0 or np.ptp(y) == 0:
            logger.debug(
                f"Collapsing to the marginal proportion {y.mean():.4f} "
                f"({X.shape[1]} columns, {len(y)} rows)"
            )
            model: FittedModel = ConstantModel(design=design, value=float(y.mean()))
        elif isinstance(spec, Ensemble):
            model = self._fit_ensemble(y, X, design, spec)
        else:
            model = self._fit_parametric(y, X, design)

        self.predict(model, frame)
        return model

    def predict(self, model: FittedModel, frame: pd.DataFrame) -> NDArray[Any]:
        """Predicted probabilities of ``model`` at the rows of ``frame``."""
        return model.predict(frame)

    def _fit_parametric(
        self, y: NDArray[Any], X: pd.DataFrame, design: DesignBuilder
    ) -> ParametricModel:
        exog = sm.add_constant(X.to_numpy(dtype=float), has_constant="add")
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", PerfectSeparationWarning)
                result = sm.GLM(y, exog, family=sm.families.Binomial()).fit()
        except (np.linalg.LinAlgError, ValueError) as e:
            raise FitError(f"Parametric nuisance fit failed: {e}") from e
        params = np.asarray(result.params, dtype=float)
        if not np.all(np.isfinite(params)):
            raise FitError("Parametric nuisance fit produced non-finite coefficients")
        return ParametricModel(design=design, params=params)

    def _fit_bounded(
        self,
        y: NDArray[Any],
        X: pd.DataFrame,
        frame: pd.DataFrame,
        design: DesignBuilder,
        bound_spec: BoundSpec,
    ) -> BoundedParametricModel:
        lower, upper = bound_spec.limits(frame)
        if np.any(np.isnan(lower)) or np.any(np.isnan(upper)):
            raise InputError(
                f"Bounds do not cover every time for failure type {bound_spec.failure_type}"
            )
        exog = sm.add_constant(X.to_numpy(dtype=float), has_constant="add")
        params = fit_quasi_binomial(to_unit_scale(y, lower, upper), exog)
        model = BoundedParametricModel(design=design, params=params, bound_spec=bound_spec)
        self.predict(model, frame)
        return model

    def _fit_ensemble(
        self, y: NDArray[Any], X: pd.DataFrame, design: DesignBuilder, spec: Ensemble
    ) -> EnsembleModel:
        if isinstance(spec.learners, dict):
            learners = {
                name: make_learner(lrn, spec.random_state) if isinstance(lrn, str) else lrn
                for name, lrn in spec.learners.items()
            }
        else:
            learners = {name: make_learner(name, spec.random_state) for name in spec.learners}
        learner = SuperLearner(
            learners=learners,
            combiner=spec.combiner,
            cv_folds=spec.cv_folds,
            random_state=spec.random_state,
        ).fit(X.to_numpy(dtype=float), y)
        return EnsembleModel(design=design, learner=learner)
