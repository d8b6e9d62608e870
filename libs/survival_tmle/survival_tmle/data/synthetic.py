"""Synthetic discrete-time competing risks data with known cumulative incidence.

Cause-specific hazards follow a multinomial logistic model in treatment,
time and two baseline covariates (W1 ~ N(0, 1), W2 ~ Bernoulli(0.5)), so
their sum is always below one. Treatment is confounded through W1 and W2, and
censoring, when enabled, follows a logistic hazard in W1. The true marginal
cumulative incidence is computed by Gauss-Hermite quadrature over W1 and
exact summation over W2.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from numpy.polynomial.hermite_e import hermegauss
from scipy.special import expit

from ..core.base import SurvivalData


class CompetingRisksGenerator:
    """Generator for confounded discrete competing risks data."""

    def __init__(
        self,
        n_causes: int = 1,
        max_time: int = 6,
        baseline_logits: Optional[Sequence[float]] = None,
        treatment_effects: Optional[Sequence[float]] = None,
        covariate_effects: tuple[float, float] = (0.4, -0.3),
        time_slope: float = 0.0,
        confounding: float = 0.5,
        censoring_logit: Optional[float] = None,
        random_state: Optional[int] = None,
    ):
        """Initialize the generator.

        Args:
            n_causes: Number of competing failure causes
            max_time: Administrative end of follow-up; subjects event-free at
                this time are censored there
            baseline_logits: Per-cause intercepts of the hazard model
            treatment_effects: Per-cause log-odds effect of treatment
            covariate_effects: Log-odds effects of (W1, W2) on every cause
            time_slope: Change in every cause's log-odds per time unit
            confounding: Strength of W1/W2 in the treatment model
            censoring_logit: Intercept of the censoring hazard; ``None`` disables
                censoring before ``max_time``
            random_state: Random seed for reproducible results
        """
        if n_causes < 1:
            raise ValueError("n_causes must be at least 1")
        if max_time < 1:
            raise ValueError("max_time must be at least 1")
        self.n_causes = n_causes
        self.max_time = max_time
        self.baseline_logits = np.asarray(
            baseline_logits
            if baseline_logits is not None
            else [-2.0 - 0.5 * j for j in range(n_causes)],
            dtype=float,
        )
        self.treatment_effects = np.asarray(
            treatment_effects
            if treatment_effects is not None
            else [-0.5] + [0.0] * (n_causes - 1),
            dtype=float,
        )
        if len(self.baseline_logits) != n_causes or len(self.treatment_effects) != n_causes:
            raise ValueError("Per-cause parameters must have n_causes entries")
        self.covariate_effects = covariate_effects
        self.time_slope = time_slope
        self.confounding = confounding
        self.censoring_logit = censoring_logit
        self.random_state = random_state
        self._rng = np.random.RandomState(random_state)

    def propensity(self, w1: np.ndarray, w2: np.ndarray) -> np.ndarray:
        """True P(A = 1 | W)."""
        return expit(-0.2 + self.confounding * (w1 + 0.6 * w2))

    def hazards(self, arm: np.ndarray | int, w1: np.ndarray, w2: np.ndarray) -> np.ndarray:
        """True cause-specific hazards, shape (n, max_time, n_causes)."""
        w1 = np.asarray(w1, dtype=float)
        w2 = np.asarray(w2, dtype=float)
        arm = np.broadcast_to(np.asarray(arm, dtype=float), w1.shape)
        times = np.arange(self.max_time, dtype=float)
        b1, b2 = self.covariate_effects
        eta = (
            self.baseline_logits[None, None, :]
            + self.time_slope * times[None, :, None]
            + self.treatment_effects[None, None, :] * arm[:, None, None]
            + (b1 * w1 + b2 * w2)[:, None, None]
        )
        odds = np.exp(eta)
        return odds / (1.0 + odds.sum(axis=2, keepdims=True))

    def generate(self, n_samples: int = 500) -> pd.DataFrame:
        """Simulate one data set.

        Returns:
            DataFrame with ``ftime``, ``ftype``, ``trt``, ``W1`` and ``W2``
        """
        rng = self._rng
        w1 = rng.normal(size=n_samples)
        w2 = rng.binomial(1, 0.5, size=n_samples).astype(float)
        trt = rng.binomial(1, self.propensity(w1, w2))
        hazards = self.hazards(trt, w1, w2)

        ftime = np.full(n_samples, self.max_time)
        ftype = np.zeros(n_samples, dtype=int)
        active = np.ones(n_samples, dtype=bool)
        for t in range(self.max_time):
            draw = rng.uniform(size=n_samples)
            cumulative = np.cumsum(hazards[:, t, :], axis=1)
            cause = np.sum(draw[:, None] >= cumulative, axis=1) + 1
            failed = active & (cause <= self.n_causes)
            ftime[failed] = t + 1
            ftype[failed] = cause[failed]
            active &= ~failed

            if self.censoring_logit is not None and t + 1 < self.max_time:
                p_cens = expit(self.censoring_logit + 0.3 * w1)
                censored = active & (rng.uniform(size=n_samples) < p_cens)
                ftime[censored] = t + 1
                active &= ~censored

        return pd.DataFrame({"ftime": ftime, "ftype": ftype, "trt": trt, "W1": w1, "W2": w2})

    def generate_data(self, n_samples: int = 500) -> SurvivalData:
        """Simulate one data set as validated observations."""
        return SurvivalData.from_dataframe(self.generate(n_samples), covariates=["W1", "W2"])

    def true_cumulative_incidence(
        self, arm: int, failure_type: int, horizon: int, n_nodes: int = 60
    ) -> float:
        """Marginal cumulative incidence E[F_k(t0 | arm, W)] under the true model."""
        if not 1 <= failure_type <= self.n_causes:
            raise ValueError(f"failure_type must be in 1..{self.n_causes}")
        if not 1 <= horizon <= self.max_time:
            raise ValueError(f"horizon must be in 1..{self.max_time}")
        nodes, weights = hermegauss(n_nodes)
        weights = weights / np.sqrt(2 * np.pi)

        total = 0.0
        for w2_value in (0.0, 1.0):
            w2 = np.full(n_nodes, w2_value)
            h = self.hazards(arm, nodes, w2)[:, :horizon, :]
            survival = np.cumprod(1.0 - h.sum(axis=2), axis=1)
            survival_lag = np.hstack([np.ones((n_nodes, 1)), survival[:, :-1]])
            incidence = np.sum(h[:, :, failure_type - 1] * survival_lag, axis=1)
            total += 0.5 * float(np.sum(weights * incidence))
        return total


def generate_competing_risks(
    n_samples: int = 500,
    n_causes: int = 1,
    max_time: int = 6,
    censoring_logit: Optional[float] = None,
    random_state: Optional[int] = None,
) -> SurvivalData:
    """Simulate confounded competing risks observations with default parameters."""
    generator = CompetingRisksGenerator(
        n_causes=n_causes,
        max_time=max_time,
        censoring_logit=censoring_logit,
        random_state=random_state,
    )
    return generator.generate_data(n_samples)
