"""Super Learner ensemble for probability-scale nuisance regressions.

Candidate learners are scikit-learn regressors fit to outcomes in [0, 1]
(binary event indicators or fractional iterated means). Their K-fold
cross-validated predictions are combined either by a convex weight vector
minimizing the cross-validated squared error or by picking the single best
learner.
"""
# ruff: noqa: N803

from __future__ import annotations

import logging
import warnings
from typing import Any, Literal, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from numpy.typing import NDArray
from scipy.optimize import minimize
from scipy.special import expit
from sklearn.base import BaseEstimator, RegressorMixin, clone, is_regressor
from sklearn.dummy import DummyRegressor
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor
from sklearn.model_selection import KFold
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

from ..core.base import FitError

logger = logging.getLogger(__name__)

__all__ = ["FractionalLogisticRegression", "SuperLearner", "make_learner"]


class FractionalLogisticRegression(RegressorMixin, BaseEstimator):
    """Logistic regression for outcomes in [0, 1] (quasi-binomial GLM).

    Wraps a statsmodels binomial GLM so it can sit alongside scikit-learn
    learners in an ensemble.
    """

    def __init__(self, max_iter: int = 100) -> None:
        self.max_iter = max_iter

    def fit(self, X: NDArray[Any], y: NDArray[Any]) -> FractionalLogisticRegression:
        design = sm.add_constant(np.asarray(X, dtype=float), has_constant="add")
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", PerfectSeparationWarning)
            self.result_ = sm.GLM(
                np.asarray(y, dtype=float), design, family=sm.families.Binomial()
            ).fit(maxiter=self.max_iter)
        self.coef_ = np.asarray(self.result_.params, dtype=float)
        return self

    def predict(self, X: NDArray[Any]) -> NDArray[Any]:
        design = sm.add_constant(np.asarray(X, dtype=float), has_constant="add")
        return expit(design @ self.coef_)


def make_learner(name: str, random_state: Optional[int] = None) -> BaseEstimator:
    """Instantiate a named candidate learner."""
    if name == "glm":
        return FractionalLogisticRegression()
    if name == "mean":
        return DummyRegressor(strategy="mean")
    if name == "random_forest":
        return RandomForestRegressor(
            n_estimators=200, min_samples_leaf=20, random_state=random_state
        )
    if name == "gradient_boosting":
        return GradientBoostingRegressor(
            n_estimators=100, max_depth=2, learning_rate=0.1, random_state=random_state
        )
    raise ValueError(f"Unknown learner '{name}'")


class SuperLearner(RegressorMixin, BaseEstimator):
    """Cross-validated ensemble of probability regressions.

    Attributes:
        learners: Mapping of learner names to unfitted estimators
        combiner: ``"convex"`` or ``"discrete"``
        cv_folds: Number of cross-validation folds
        random_state: Seed for the fold split
    """

    def __init__(
        self,
        learners: dict[str, Any],
        combiner: Literal["convex", "discrete"] = "convex",
        cv_folds: int = 5,
        random_state: Optional[int] = None,
    ) -> None:
        self.learners = learners
        self.combiner = combiner
        self.cv_folds = cv_folds
        self.random_state = random_state

    def _cross_validated_predictions(self, X: NDArray[Any], y: NDArray[Any]) -> NDArray[Any]:
        n_folds = min(self.cv_folds, len(y))
        folds = KFold(n_splits=n_folds, shuffle=True, random_state=self.random_state)
        Z = np.zeros((len(y), len(self.learners)))
        for train_idx, val_idx in folds.split(X):
            for m, learner in enumerate(self.learners.values()):
                model = clone(learner).fit(X[train_idx], y[train_idx])
                Z[val_idx, m] = model.predict(X[val_idx])
        return np.clip(Z, 0.0, 1.0)

    def _convex_weights(self, Z: NDArray[Any], y: NDArray[Any]) -> NDArray[Any]:
        n_learners = Z.shape[1]
        if n_learners == 1:
            return np.ones(1)

        def risk(w: NDArray[Any]) -> float:
            return float(np.mean((Z @ w - y) ** 2))

        result = minimize(
            risk,
            x0=np.full(n_learners, 1.0 / n_learners),
            method="SLSQP",
            bounds=[(0.0, 1.0)] * n_learners,
            constraints=[{"type": "eq", "fun": lambda w: np.sum(w) - 1.0}],
        )
        weights = np.clip(result.x, 0.0, None)
        if not result.success or weights.sum() <= 0:
            logger.warning(
                f"Ensemble weight optimization failed ({result.message}); "
                "falling back to the best single learner"
            )
            weights = np.zeros(n_learners)
            weights[int(np.argmin(np.mean((Z - y[:, None]) ** 2, axis=0)))] = 1.0
        return weights / weights.sum()

    def fit(self, X: NDArray[Any], y: NDArray[Any]) -> SuperLearner:
        """Fit the candidates, learn ensemble weights and refit on all rows."""
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)

        classifiers = [
            name for name, learner in self.learners.items() if not is_regressor(learner)
        ]
        if classifiers:
            raise FitError(f"Ensemble learners must be regressors; got classifiers {classifiers}")

        try:
            Z = self._cross_validated_predictions(X, y)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FitError(f"Cross-validation of ensemble learners failed: {e}") from e
        if not np.all(np.isfinite(Z)):
            raise FitError("Cross-validated ensemble predictions are not finite")

        self.learner_names_ = list(self.learners)
        self.cv_risks_ = np.mean((Z - y[:, None]) ** 2, axis=0)
        if self.combiner == "discrete":
            self.weights_ = np.zeros(len(self.learner_names_))
            self.weights_[int(np.argmin(self.cv_risks_))] = 1.0
        else:
            self.weights_ = self._convex_weights(Z, y)
        self.ensemble_cv_risk_ = float(np.mean((Z @ self.weights_ - y) ** 2))

        self.fitted_learners_ = {}
        for name, weight, learner in zip(
            self.learner_names_, self.weights_, self.learners.values()
        ):
            if weight > 0:
                self.fitted_learners_[name] = clone(learner).fit(X, y)

        logger.debug(
            "Super Learner weights: "
            + ", ".join(f"{n}={w:.3f}" for n, w in zip(self.learner_names_, self.weights_))
        )
        return self

    def predict(self, X: NDArray[Any]) -> NDArray[Any]:
        """Weighted combination of the refitted learners, clipped to [0, 1]."""
        X = np.asarray(X, dtype=float)
        pred = np.zeros(X.shape[0])
        for name, weight in zip(self.learner_names_, self.weights_):
            if weight > 0:
                pred += weight * np.clip(self.fitted_learners_[name].predict(X), 0.0, 1.0)
        return np.clip(pred, 0.0, 1.0)

    def get_learner_weights(self) -> dict[str, float]:
        """Ensemble weight of each candidate learner."""
        return {name: float(w) for name, w in zip(self.learner_names_, self.weights_)}

    def get_learner_performance(self) -> pd.DataFrame:
        """Cross-validated squared-error risk of each candidate learner."""
        return pd.DataFrame(
            {
                "learner": self.learner_names_,
                "cv_risk": self.cv_risks_,
                "weight": self.weights_,
            }
        ).sort_values("cv_risk", ignore_index=True)

    def get_ensemble_performance(self) -> dict[str, float]:
        """Cross-validated risk of the combined ensemble."""
        return {"cv_risk": self.ensemble_cv_risk_}
