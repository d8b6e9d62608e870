"""Iterated-mean TMLE of cause-specific cumulative incidence.

For each (arm, failure type) target the conditional mean of future
incidence is regressed backward from t0 to 1. Each time point is an explicit
``IteratedMeanTask`` that receives the targeted prediction of the following
time and returns its own; one logistic fluctuation per time solves that
time's part of the influence curve equation, so a single backward pass is
fully targeted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from joblib import Parallel, delayed
from numpy.typing import NDArray

from ..core.base import Bounds, EstimateRecord, FluctuationDegeneracy, SurvivalData
from ..core.config import EstimationConfig
from ..data.long_format import DesignBuilder
from ..ml.fluctuation import apply_fluctuation, logit_bounded, solve_fluctuation, to_unit_scale
from ..ml.nuisance import BoundSpec, FittedModel, NuisanceEstimator
from ..ml.specs import EstimatorSpec, NuisanceSpecs, resolve_columns
from .influence_curve import build_record, mean_influence_curve
from .nuisance_fits import FitBundle, arm_nuisance, fit_censoring_model, fit_treatment_model

logger = logging.getLogger(__name__)

__all__ = ["IteratedMeanStep", "IteratedMeanTask", "MeanTMLE", "MeanTargetResult"]


@dataclass
class IteratedMeanStep:
    """Output of one time point of the backward recursion.

    Attributes:
        time: Time point t
        pseudo_outcome: Z_t for every subject (meaningful where T >= t)
        initial: Initial regression Q_t(arm, W), shape (n,)
        targeted: Fluctuated Q*_t(arm, W), shape (n,)
        epsilon: Fitted fluctuation parameter (0 when degenerate)
        degenerate: Whether the fluctuation was skipped
        model: The frozen initial regression
    """

    time: int
    pseudo_outcome: NDArray[Any]
    initial: NDArray[Any]
    targeted: NDArray[Any]
    epsilon: float
    degenerate: bool
    model: FittedModel


@dataclass(frozen=True)
class IteratedMeanTask:
    """Regression and fluctuation of the iterated mean at a single time point."""

    time: int
    horizon: int
    arm: int
    failure_type: int
    spec: EstimatorSpec
    design: DesignBuilder
    bounds: Optional[Bounds] = None

    def pseudo_outcome(
        self, data: SurvivalData, next_targeted: Optional[NDArray[Any]]
    ) -> NDArray[Any]:
        """Z_t: 1 if failed from the target cause at t, 0 if from another cause, else Q*_{t+1}."""
        failed_now = np.asarray(data.ftime) == self.time
        ftype = np.asarray(data.ftype)
        if next_targeted is None:
            carried = np.zeros(data.n)
        else:
            carried = np.asarray(next_targeted, dtype=float)
        z = np.where(failed_now & (ftype > 0), 0.0, carried)
        return np.where(failed_now & (ftype == self.failure_type), 1.0, z)

    def run(
        self,
        data: SurvivalData,
        inverse_weights: NDArray[Any],
        next_targeted: Optional[NDArray[Any]],
        estimator: NuisanceEstimator,
    ) -> IteratedMeanStep:
        """Fit Q_t among subjects with T >= t and fluctuate it on the target arm.

        Args:
            data: Observations
            inverse_weights: 1 / (g_a G(t - 1)) at this time, shape (n,)
            next_targeted: Q*_{t+1}(arm, W) from the following task, ``None`` at t0
            estimator: Nuisance estimator for the initial regression

        Returns:
            The step's initial and targeted predictions
        """
        z = self.pseudo_outcome(data, next_targeted)
        at_risk = np.asarray(data.ftime) >= self.time

        bound_spec = None
        lower: NDArray[Any] | float = 0.0
        upper: NDArray[Any] | float = 1.0
        if self.bounds is not None:
            bound_spec = BoundSpec(
                bounds=self.bounds, failure_type=self.failure_type, time=self.time
            )
            lo, up = self.bounds.limits(self.failure_type, np.array([self.time]))
            lower, upper = float(lo[0]), float(up[0])

        frame = data.baseline_frame()
        model = estimator.fit(z[at_risk], frame.loc[at_risk], self.spec, self.design, bound_spec)
        initial = model.predict(data.baseline_frame(trt=self.arm))

        rows = at_risk & (np.asarray(data.trt) == self.arm)
        clever = inverse_weights * (upper - lower)
        offset = logit_bounded(initial, lower, upper)
        degenerate = False
        try:
            epsilon = float(
                solve_fluctuation(
                    to_unit_scale(z[rows], lower, upper), clever[rows], offset[rows]
                )[0]
            )
        except FluctuationDegeneracy as e:
            logger.debug(
                f"Skipping fluctuation at t={self.time} for arm {self.arm}, "
                f"type {self.failure_type}: {e}"
            )
            epsilon = 0.0
            degenerate = True

        if degenerate:
            targeted = np.asarray(initial, dtype=float)
        else:
            targeted = apply_fluctuation(offset, clever, np.array([epsilon]), lower, upper)
        return IteratedMeanStep(
            time=self.time,
            pseudo_outcome=z,
            initial=initial,
            targeted=targeted,
            epsilon=epsilon,
            degenerate=degenerate,
            model=model,
        )


@dataclass
class MeanTargetResult:
    """Backward recursion output for one (arm, failure type) target."""

    arm: int
    failure_type: int
    horizon: int
    estimate: float
    eic: NDArray[Any]
    steps: list[IteratedMeanStep] = field(default_factory=list)

    @property
    def degenerate_times(self) -> list[int]:
        """Times whose fluctuation was skipped."""
        return sorted(step.time for step in self.steps if step.degenerate)

    @property
    def targeted_means(self) -> NDArray[Any]:
        """Q*_t(arm, W) for t = 1..horizon, shape (n, horizon)."""
        ordered = sorted(self.steps, key=lambda s: s.time)
        return np.column_stack([s.targeted for s in ordered])

    @property
    def initial_means(self) -> NDArray[Any]:
        """Q_t(arm, W) before fluctuation, shape (n, horizon)."""
        ordered = sorted(self.steps, key=lambda s: s.time)
        return np.column_stack([s.initial for s in ordered])

    def to_record(self, confidence_level: float) -> EstimateRecord:
        return build_record(
            self.arm,
            self.failure_type,
            self.horizon,
            self.estimate,
            self.eic,
            confidence_level,
            "mean",
            degenerate_steps=self.degenerate_times,
            diagnostics={"epsilon": {s.time: s.epsilon for s in self.steps}},
        )


class MeanTMLE:
    """Backward iterated-conditional-mean TMLE.

    Args:
        config: Estimation options (``n_jobs`` parallelizes across targets)
        estimator: Nuisance estimator used for every regression
    """

    def __init__(
        self,
        config: Optional[EstimationConfig] = None,
        estimator: Optional[NuisanceEstimator] = None,
    ) -> None:
        self.config = config or EstimationConfig()
        self.estimator = estimator or NuisanceEstimator()

    def fit(
        self,
        data: SurvivalData,
        horizon: int,
        specs: NuisanceSpecs,
        failure_types: tuple[int, ...],
        bounds: Optional[Bounds] = None,
    ) -> tuple[FitBundle, dict[tuple[int, int], MeanTargetResult]]:
        """Fit treatment and censoring models, then target every (arm, type) pair."""
        treatment_model = fit_treatment_model(data, specs.treatment, self.estimator)
        censoring_model = fit_censoring_model(data, specs.censoring, horizon, self.estimator)
        bundle = FitBundle(
            data=data,
            method="mean",
            horizon=horizon,
            specs=specs,
            treatment_model=treatment_model,
            censoring_model=censoring_model,
            failure_types_of_interest=tuple(failure_types),
            config=self.config,
            bounds=bounds,
        )
        return bundle, self.target(bundle, horizon)

    def target(
        self, bundle: FitBundle, horizon: int
    ) -> dict[tuple[int, int], MeanTargetResult]:
        """Refit the iterated means at ``horizon`` on the frozen treatment and censoring fits."""
        data = bundle.data
        weights = {
            a: arm_nuisance(
                data, bundle.treatment_model, bundle.censoring_model, horizon, a
            ).inverse_weights(self.config.g_tol)
            for a in (0, 1)
        }
        targets = [(a, k) for a in (0, 1) for k in bundle.failure_types_of_interest]

        if self.config.n_jobs == 1:
            results = [
                self.fit_target(
                    data, horizon, bundle.specs.failure, a, k, weights[a], bundle.bounds
                )
                for a, k in targets
            ]
        else:
            results = Parallel(n_jobs=self.config.n_jobs)(
                delayed(self.fit_target)(
                    data, horizon, bundle.specs.failure, a, k, weights[a], bundle.bounds
                )
                for a, k in targets
            )

        log = logger.info if self.config.verbose else logger.debug
        for result in results:
            log(
                f"Mean TMLE arm={result.arm} type={result.failure_type} t0={horizon}: "
                f"estimate={result.estimate:.4f}, degenerate times={result.degenerate_times}"
            )
        return {(r.arm, r.failure_type): r for r in results}

    def tasks(
        self,
        data: SurvivalData,
        horizon: int,
        spec: EstimatorSpec,
        arm: int,
        failure_type: int,
        bounds: Optional[Bounds] = None,
    ) -> list[IteratedMeanTask]:
        """Ordered per-time tasks, t0 first."""
        design = DesignBuilder(
            covariates=tuple(resolve_columns(spec, data.covariate_names)), include_trt=True
        )
        return [
            IteratedMeanTask(
                time=t,
                horizon=horizon,
                arm=arm,
                failure_type=failure_type,
                spec=spec,
                design=design,
                bounds=bounds,
            )
            for t in range(horizon, 0, -1)
        ]

    def fit_target(
        self,
        data: SurvivalData,
        horizon: int,
        spec: EstimatorSpec,
        arm: int,
        failure_type: int,
        inverse_weights: NDArray[Any],
        bounds: Optional[Bounds] = None,
    ) -> MeanTargetResult:
        """Run the backward recursion for one target.

        Args:
            data: Observations
            horizon: Target time t0
            spec: Iterated-mean regression specification
            arm: Treatment arm
            failure_type: Failure type of interest
            inverse_weights: 1 / (g_a G(t - 1)), shape (n, horizon)
            bounds: Optional bounds on the iterated means

        Returns:
            Targeted estimate, influence curve and per-time steps
        """
        steps: list[IteratedMeanStep] = []
        next_targeted: Optional[NDArray[Any]] = None
        for task in self.tasks(data, horizon, spec, arm, failure_type, bounds):
            step = task.run(data, inverse_weights[:, task.time - 1], next_targeted, self.estimator)
            steps.append(step)
            next_targeted = step.targeted

        ordered = sorted(steps, key=lambda s: s.time)
        pseudo = np.column_stack([s.pseudo_outcome for s in ordered])
        targeted = np.column_stack([s.targeted for s in ordered])
        eic = mean_influence_curve(data, inverse_weights, pseudo, targeted, arm)
        return MeanTargetResult(
            arm=arm,
            failure_type=failure_type,
            horizon=horizon,
            estimate=float(np.mean(targeted[:, 0])),
            eic=eic,
            steps=steps,
        )
