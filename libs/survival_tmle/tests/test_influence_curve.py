"""Tests for influence curves and influence-curve based inference."""

import numpy as np
import pytest
from scipy.stats import norm

from survival_tmle.estimators.influence_curve import (
    build_record,
    cumulative_incidence,
    hazard_clever_covariates,
    hazard_influence_curve,
    influence_covariance,
    summarize_influence_curve,
)


class TestCumulativeIncidence:
    """Tests for the discrete product-limit conversion."""

    def test_single_cause(self):
        hazards = {1: np.array([[0.1, 0.2]])}
        survival, incidence = cumulative_incidence(hazards)
        assert np.allclose(survival, [[0.9, 0.72]])
        assert np.allclose(incidence[1], [[0.1, 0.28]])

    def test_competing_causes_partition_probability(self):
        rng = np.random.RandomState(0)
        h1 = rng.uniform(0, 0.3, (5, 4))
        h2 = rng.uniform(0, 0.3, (5, 4))
        survival, incidence = cumulative_incidence({1: h1, 2: h2})
        assert np.allclose(survival + incidence[1] + incidence[2], 1.0)
        assert np.all(np.diff(incidence[1], axis=1) >= 0)


class TestHazardInfluenceCurve:
    """Tests for the hazard form of the influence curve."""

    def test_clever_covariate_at_horizon(self):
        hazards = {1: np.full((3, 3), 0.2), 2: np.full((3, 3), 0.1)}
        weights = np.full((3, 3), 2.0)
        clever = hazard_clever_covariates(hazards, weights, failure_type=1)
        # Nothing left to accrue after t0
        assert np.allclose(clever[1][:, -1], 2.0)
        assert np.allclose(clever[2][:, -1], 0.0)
        # Other-cause covariate is non-positive before t0
        assert np.all(clever[2] <= 0)

    def test_plug_in_centered_without_martingale(self, tiny_data):
        # Zero hazards leave only observed target-type events in the treated arm
        hazards = {1: np.zeros((tiny_data.n, 1)), 2: np.zeros((tiny_data.n, 1))}
        weights = np.ones((tiny_data.n, 1))
        eic = hazard_influence_curve(tiny_data, hazards, weights, arm=1, failure_type=2)
        # Subject 6 (treated) failed from cause 2 at t=1
        expected = np.zeros(tiny_data.n)
        expected[6] = 1.0
        assert np.allclose(eic, expected)

    def test_nonparametric_hazards_give_zero_mean(self, randomized_data):
        data = randomized_data
        horizon = 4
        trt = np.asarray(data.trt)
        ftime = np.asarray(data.ftime)
        ftype = np.asarray(data.ftype)
        # Within-arm empirical hazards solve the influence curve equation exactly
        hazard = np.zeros((data.n, horizon))
        for t in range(1, horizon + 1):
            at_risk = (ftime >= t) & (trt == 1)
            hazard[:, t - 1] = np.mean((ftime[at_risk] == t) & (ftype[at_risk] == 1))
        g = trt.mean()
        weights = np.full((data.n, horizon), 1.0 / g)
        eic = hazard_influence_curve(data, {1: hazard}, weights, arm=1, failure_type=1)
        assert abs(eic.mean()) < 1e-10


class TestInference:
    """Tests for variance, intervals and covariance."""

    def test_summary(self):
        eic = np.array([1.0, -1.0, 2.0, -2.0])
        summary = summarize_influence_curve(0.4, eic, 0.95)
        assert summary["variance"] == pytest.approx(np.var(eic) / 4)
        z = norm.ppf(0.975)
        assert summary["ci_lower"] == pytest.approx(0.4 - z * summary["std_error"])
        assert summary["ci_upper"] == pytest.approx(0.4 + z * summary["std_error"])

    def test_covariance_diagonal_matches_variance(self):
        rng = np.random.RandomState(3)
        eics = {(0, 1): rng.normal(size=50), (1, 1): rng.normal(size=50)}
        cov = influence_covariance(eics)
        assert list(cov.columns) == ["trt0_ftype1", "trt1_ftype1"]
        for (arm, k), d in eics.items():
            label = f"trt{arm}_ftype{k}"
            assert cov.loc[label, label] == pytest.approx(np.var(d) / 50)
        assert cov.iloc[0, 1] == pytest.approx(cov.iloc[1, 0])

    def test_build_record(self):
        eic = np.array([0.5, -0.5, 0.25, -0.25])
        record = build_record(1, 2, 5, 0.3, eic, 0.9, "mean", degenerate_steps=[2])
        assert record.target == (1, 2)
        assert record.method == "mean"
        assert record.confidence_level == 0.9
        assert record.ci_lower < 0.3 < record.ci_upper
        assert record.fluctuation_degenerate
