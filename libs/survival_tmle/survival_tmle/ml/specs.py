"""Typed nuisance model specifications.

A nuisance model is described either by a parametric logistic regression
(``Parametric``) on an explicit list of covariates, or by an ensemble
(``Ensemble``) of named candidate learners combined by cross-validated
weighting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from sklearn.base import BaseEstimator as SklearnBaseEstimator
from sklearn.base import is_regressor

from ..data.long_format import TimeBasis

KNOWN_LEARNERS = ("glm", "mean", "random_forest", "gradient_boosting")


@dataclass(frozen=True)
class Parametric:
    """Logistic regression on explicit covariate columns.

    Attributes:
        columns: Covariates to adjust for; ``None`` uses every covariate and an
            empty tuple gives an intercept-only (marginal proportion) model
        time_basis: How time enters pooled-over-time regressions
    """

    columns: Optional[tuple[str, ...]] = None
    time_basis: TimeBasis = "categorical"

    def __post_init__(self) -> None:
        if self.columns is not None:
            object.__setattr__(self, "columns", tuple(self.columns))
            if len(set(self.columns)) != len(self.columns):
                raise ValueError("Parametric columns must be unique")
        if self.time_basis not in ("categorical", "linear"):
            raise ValueError("time_basis must be 'categorical' or 'linear'")

    @property
    def is_marginal(self) -> bool:
        """Whether the specification has no covariates."""
        return self.columns is not None and len(self.columns) == 0


@dataclass(frozen=True)
class Ensemble:
    """Cross-validated ensemble of candidate learners.

    Attributes:
        learners: Names from ``KNOWN_LEARNERS`` or a mapping of names to
            scikit-learn regressors (cloned before fitting)
        combiner: ``"convex"`` for non-negative weights summing to one,
            ``"discrete"`` for the single learner with the lowest CV risk
        cv_folds: Number of cross-validation folds
        random_state: Seed for the fold split and stochastic learners
    """

    learners: Union[tuple[str, ...], dict[str, Any]] = ("glm", "mean", "random_forest")
    combiner: Literal["convex", "discrete"] = "convex"
    cv_folds: int = 5
    random_state: Optional[int] = None
    columns: Optional[tuple[str, ...]] = field(default=None)

    def __post_init__(self) -> None:
        if isinstance(self.learners, dict):
            if not self.learners:
                raise ValueError("Ensemble requires at least one learner")
            for name, learner in self.learners.items():
                if isinstance(learner, str):
                    if learner not in KNOWN_LEARNERS:
                        raise ValueError(f"Unknown learner '{learner}' for '{name}'")
                elif not isinstance(learner, SklearnBaseEstimator):
                    raise ValueError(
                        f"Learner '{name}' must be a scikit-learn estimator or a known name"
                    )
                elif not is_regressor(learner):
                    raise ValueError(
                        f"Learner '{name}' must be a scikit-learn regressor, not a classifier"
                    )
        else:
            learners = tuple(self.learners)
            if not learners:
                raise ValueError("Ensemble requires at least one learner")
            unknown = [name for name in learners if name not in KNOWN_LEARNERS]
            if unknown:
                raise ValueError(
                    f"Unknown learners {unknown}; choose from {list(KNOWN_LEARNERS)}"
                )
            if len(set(learners)) != len(learners):
                raise ValueError("Ensemble learners must be unique")
            object.__setattr__(self, "learners", learners)
        if self.combiner not in ("convex", "discrete"):
            raise ValueError("combiner must be 'convex' or 'discrete'")
        if self.cv_folds < 2:
            raise ValueError("cv_folds must be at least 2")
        if self.columns is not None:
            object.__setattr__(self, "columns", tuple(self.columns))

    @property
    def time_basis(self) -> TimeBasis:
        """Ensembles always see time as a numeric feature."""
        return "linear"

    @property
    def is_marginal(self) -> bool:
        return False


EstimatorSpec = Union[Parametric, Ensemble]


@dataclass(frozen=True)
class NuisanceSpecs:
    """Specifications for every nuisance model of one estimation call.

    Attributes:
        treatment: Model for P(A = 1 | W)
        censoring: Pooled model for the censoring hazard
        failure: Pooled cause-specific hazard model (hazard method) or
            per-time iterated-mean model (mean method)
    """

    treatment: EstimatorSpec = field(default_factory=Parametric)
    censoring: EstimatorSpec = field(default_factory=Parametric)
    failure: EstimatorSpec = field(default_factory=Parametric)

    def __post_init__(self) -> None:
        for name in ("treatment", "censoring", "failure"):
            value = getattr(self, name)
            if not isinstance(value, (Parametric, Ensemble)):
                raise ValueError(f"{name} must be a Parametric or Ensemble spec")

    @property
    def all_parametric(self) -> bool:
        """Whether every model is parametric (required for bounded estimation)."""
        return all(
            isinstance(s, Parametric) for s in (self.treatment, self.censoring, self.failure)
        )


def resolve_columns(spec: EstimatorSpec, available: list[str]) -> list[str]:
    """Covariate columns a spec adjusts for, validated against the data."""
    if spec.columns is None:
        return list(available)
    missing = [c for c in spec.columns if c not in available]
    if missing:
        raise ValueError(f"Specification references unknown covariates {missing}")
    return list(spec.columns)
