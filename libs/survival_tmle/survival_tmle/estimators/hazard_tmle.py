"""Hazard-based TMLE of cause-specific cumulative incidence.

Cause-specific hazards are fit once by pooled-over-time regressions. The
targeting loop then repeatedly fits one joint logistic fluctuation across
every (arm, failure type of interest) target, updating all hazards together,
until the largest absolute mean influence curve falls below the tolerance or
the iteration cap is reached.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit

from ..core.base import (
    Bounds,
    EstimateRecord,
    FluctuationDegeneracy,
    NonConvergenceWarning,
    SurvivalData,
)
from ..core.config import EstimationConfig
from ..data.long_format import (
    DesignBuilder,
    at_risk_matrix,
    event_matrix,
    pooled_rows,
    time_grid_frame,
)
from ..ml.fluctuation import (
    from_unit_scale,
    logit_bounded,
    solve_fluctuation,
    to_unit_scale,
)
from ..ml.nuisance import BoundSpec, FittedModel, NuisanceEstimator
from ..ml.specs import NuisanceSpecs, resolve_columns
from .influence_curve import (
    build_record,
    cumulative_incidence,
    hazard_clever_covariates,
    hazard_influence_curve,
)
from .nuisance_fits import (
    FitBundle,
    arm_nuisance,
    fit_censoring_model,
    fit_treatment_model,
)

logger = logging.getLogger(__name__)

__all__ = ["HazardTMLE", "HazardTargetingResult", "clip_hazards", "fit_hazard_models"]

ARMS = (0, 1)


def clip_hazards(
    hazards: dict[int, NDArray[Any]],
    eps: float,
    lower: Optional[dict[int, NDArray[Any]]] = None,
) -> dict[int, NDArray[Any]]:
    """Clip each hazard to [0, 1 - eps] and rescale so their sum stays <= 1 - eps.

    When ``lower`` bounds are given only the excess above each bound is
    rescaled, so a hazard never drops below its lower bound as long as the
    bounds themselves sum to less than 1 - eps.
    """
    lower = lower or {}
    clipped = {j: np.clip(h, 0.0, 1.0 - eps) for j, h in hazards.items()}
    floors = {j: np.minimum(lower.get(j, 0.0), h) for j, h in clipped.items()}
    total = sum(clipped.values())
    floor = sum(floors.values())
    scale = np.where(
        total > 1.0 - eps, (1.0 - eps - floor) / np.maximum(total - floor, eps), 1.0
    )
    scale = np.clip(scale, 0.0, 1.0)
    return {j: floors[j] + (h - floors[j]) * scale for j, h in clipped.items()}


def fit_hazard_models(
    data: SurvivalData,
    specs: NuisanceSpecs,
    horizon: int,
    estimator: NuisanceEstimator,
    bounds: Optional[Bounds] = None,
) -> dict[int, FittedModel]:
    """Fit one pooled cause-specific hazard regression per observed cause."""
    spec = specs.failure
    rows = pooled_rows(data, horizon)
    design = DesignBuilder(
        covariates=tuple(resolve_columns(spec, data.covariate_names)),
        include_trt=True,
        time_basis=spec.time_basis,
        horizon=horizon,
    )
    models = {}
    for j in data.causes:
        bound_spec = BoundSpec(bounds=bounds, failure_type=j) if bounds is not None else None
        models[j] = estimator.fit(rows[f"dN{j}"].to_numpy(), rows, spec, design, bound_spec)
        logger.debug(f"Fitted hazard model for cause {j}: {type(models[j]).__name__}")
    return models


@dataclass
class HazardTargetingResult:
    """State of the targeting loop at exit.

    Attributes:
        hazards: Targeted hazards per arm and cause, shape (n, horizon)
        eics: Influence curve per (arm, failure type) target
        estimates: Targeted cumulative incidence per target
        n_iterations: Fluctuation steps taken
        converged: Whether max |mean EIC| fell below ``tol``
        tol: Tolerance used
        degenerate_iterations: Iterations whose fluctuation could not be fit
        mean_eic_trace: max |mean EIC| before each step
    """

    hazards: dict[int, dict[int, NDArray[Any]]]
    eics: dict[tuple[int, int], NDArray[Any]]
    estimates: dict[tuple[int, int], float]
    n_iterations: int
    converged: bool
    tol: float
    degenerate_iterations: list[int] = field(default_factory=list)
    mean_eic_trace: list[float] = field(default_factory=list)

    @property
    def max_abs_mean_eic(self) -> float:
        return max(abs(float(np.mean(d))) for d in self.eics.values())

    def records(
        self, horizon: int, confidence_level: float
    ) -> dict[tuple[int, int], EstimateRecord]:
        """One estimate record per target."""
        return {
            (arm, k): build_record(
                arm,
                k,
                horizon,
                self.estimates[(arm, k)],
                self.eics[(arm, k)],
                confidence_level,
                "hazard",
                n_iterations=self.n_iterations,
                converged=self.converged,
                degenerate_steps=list(self.degenerate_iterations),
                diagnostics={
                    "tol": self.tol,
                    "max_abs_mean_eic": self.max_abs_mean_eic,
                    "mean_eic_trace": list(self.mean_eic_trace),
                },
            )
            for arm, k in sorted(self.estimates)
        }


class HazardTMLE:
    """Iterative hazard-based TMLE over a discrete time grid.

    Args:
        config: Estimation options; ``config.hazard`` holds the loop tolerance
            and iteration cap
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
    ) -> tuple[FitBundle, HazardTargetingResult]:
        """Fit every nuisance model and run the targeting loop at ``horizon``."""
        treatment_model = fit_treatment_model(data, specs.treatment, self.estimator)
        censoring_model = fit_censoring_model(data, specs.censoring, horizon, self.estimator)
        hazard_models = fit_hazard_models(data, specs, horizon, self.estimator, bounds)

        bundle = FitBundle(
            data=data,
            method="hazard",
            horizon=horizon,
            specs=specs,
            treatment_model=treatment_model,
            censoring_model=censoring_model,
            failure_types_of_interest=tuple(failure_types),
            config=self.config,
            hazard_models=hazard_models,
            bounds=bounds,
        )
        return bundle, self.target(bundle, horizon)

    def target(self, bundle: FitBundle, horizon: int) -> HazardTargetingResult:
        """Run the targeting loop on frozen fits, restricted to times 1..horizon.

        Args:
            bundle: Frozen fits from ``fit`` (horizon must not exceed the fit horizon)
            horizon: Target time t0

        Returns:
            Loop state at exit; never raises on non-convergence
        """
        data = bundle.data
        eps = self.config.hazard.hazard_clip_eps
        tol = self.config.hazard.resolve_tol(data.n)
        max_iter = self.config.hazard.max_iter
        targets = [(a, k) for a in ARMS for k in bundle.failure_types_of_interest]
        causes = sorted(bundle.hazard_models)
        limits = self._hazard_limits(bundle.bounds, causes, horizon)
        floors = {j: lower[None, :] for j, (lower, _) in limits.items()}

        weights: dict[int, NDArray[Any]] = {}
        hazards: dict[int, dict[int, NDArray[Any]]] = {}
        for a in ARMS:
            nuisance = arm_nuisance(
                data, bundle.treatment_model, bundle.censoring_model, horizon, a
            )
            weights[a] = nuisance.inverse_weights(self.config.g_tol)
            grid = time_grid_frame(data, horizon, a)
            hazards[a] = clip_hazards(
                {
                    j: model.predict(grid).reshape(data.n, horizon)
                    for j, model in bundle.hazard_models.items()
                },
                eps,
                floors,
            )

        iteration = 0
        degenerate: list[int] = []
        trace: list[float] = []
        while True:
            eics = {
                (a, k): hazard_influence_curve(data, hazards[a], weights[a], a, k)
                for a, k in targets
            }
            max_mean = max(abs(float(np.mean(d))) for d in eics.values())
            trace.append(max_mean)
            logger.debug(f"Iteration {iteration}: max |mean EIC| = {max_mean:.3e}")

            if max_mean < tol:
                converged = True
                break
            if iteration >= max_iter:
                converged = False
                warnings.warn(
                    f"Hazard targeting did not converge in {max_iter} iterations "
                    f"(max |mean EIC| = {max_mean:.3e}, tol = {tol:.3e}); compare "
                    f"against 1/sqrt(n) = {1 / np.sqrt(data.n):.3e}",
                    NonConvergenceWarning,
                )
                break

            iteration += 1
            try:
                hazards = self._fluctuate(data, hazards, weights, targets, limits, eps)
            except FluctuationDegeneracy as e:
                logger.warning(f"Skipping degenerate fluctuation at iteration {iteration}: {e}")
                degenerate.append(iteration)

        estimates = {}
        for a, k in targets:
            _, incidence = cumulative_incidence(hazards[a])
            estimates[(a, k)] = float(np.mean(incidence[k][:, -1]))

        log = logger.info if self.config.verbose else logger.debug
        log(
            f"Hazard TMLE at t0={horizon}: {iteration} iterations, "
            f"converged={converged}, max |mean EIC|={trace[-1]:.3e}"
        )
        return HazardTargetingResult(
            hazards=hazards,
            eics=eics,
            estimates=estimates,
            n_iterations=iteration,
            converged=converged,
            tol=tol,
            degenerate_iterations=degenerate,
            mean_eic_trace=trace,
        )

    @staticmethod
    def _hazard_limits(
        bounds: Optional[Bounds], causes: list[int], horizon: int
    ) -> dict[int, tuple[NDArray[Any], NDArray[Any]]]:
        times = np.arange(1, horizon + 1)
        if bounds is None:
            return {j: (np.zeros(horizon), np.ones(horizon)) for j in causes}
        return {j: bounds.limits(j, times) for j in causes}

    def _fluctuate(
        self,
        data: SurvivalData,
        hazards: dict[int, dict[int, NDArray[Any]]],
        weights: dict[int, NDArray[Any]],
        targets: list[tuple[int, int]],
        limits: dict[int, tuple[NDArray[Any], NDArray[Any]]],
        eps: float,
    ) -> dict[int, dict[int, NDArray[Any]]]:
        """One joint fluctuation of every hazard; returns new hazard arrays.

        The pooled regressions of all failure types are stacked into one
        logistic fit. Each (target, failure type) pair gets its own column of
        the clever-covariate matrix, nonzero only on that type's rows, so
        every cause-specific hazard moves by its own parameter.
        """
        horizon = weights[0].shape[1]
        clever = {
            (a, k): hazard_clever_covariates(hazards[a], weights[a], k) for a, k in targets
        }
        trt = np.asarray(data.trt)
        subject, time = np.nonzero(at_risk_matrix(data, horizon))
        arm_rows = trt[subject]
        column = {
            (i, j): i * len(limits) + c
            for i in range(len(targets))
            for c, j in enumerate(limits)
        }

        outcomes, offsets, blocks = [], [], []
        for j, (lower, upper) in limits.items():
            lo, up = lower[time], upper[time]
            observed = np.where(
                arm_rows == 1, hazards[1][j][subject, time], hazards[0][j][subject, time]
            )
            outcomes.append(to_unit_scale(event_matrix(data, horizon, j)[subject, time], lo, up))
            offsets.append(logit_bounded(observed, lo, up))
            block = np.zeros((len(subject), len(column)))
            for i, (a, k) in enumerate(targets):
                block[:, column[(i, j)]] = (
                    (arm_rows == a) * clever[(a, k)][j][subject, time] * (up - lo)
                )
            blocks.append(block)

        epsilon = solve_fluctuation(
            np.concatenate(outcomes), np.vstack(blocks), np.concatenate(offsets)
        )
        logger.debug(f"Fluctuation epsilon: {np.round(epsilon, 6).tolist()}")

        floors = {j: lower[None, :] for j, (lower, _) in limits.items()}
        updated = {}
        for a in ARMS:
            arm_targets = [(i, k) for i, (b, k) in enumerate(targets) if b == a]
            new = {}
            for j, (lower, upper) in limits.items():
                lo, up = lower[None, :], upper[None, :]
                eta = logit_bounded(hazards[a][j], lo, up)
                for i, k in arm_targets:
                    eta = eta + epsilon[column[(i, j)]] * clever[(a, k)][j] * (up - lo)
                new[j] = from_unit_scale(expit(eta), lo, up)
            updated[a] = clip_hazards(new, eps, floors)
        return updated
