"""Tests for the hazard-based TMLE and its targeting loop."""

import numpy as np
import pytest
from lifelines import KaplanMeierFitter

from survival_tmle.core.base import Bounds, FluctuationDegeneracy, NonConvergenceWarning
from survival_tmle.core.config import EstimationConfig, HazardTMLEConfig
from survival_tmle.estimators import hazard_tmle
from survival_tmle.estimators.hazard_tmle import HazardTMLE, clip_hazards, fit_hazard_models
from survival_tmle.estimators.influence_curve import cumulative_incidence
from survival_tmle.ml.nuisance import NuisanceEstimator


class TestClipHazards:
    """Tests for hazard clipping."""

    def test_clips_each_hazard(self):
        out = clip_hazards({1: np.array([[-0.1, 0.3, 1.2]])}, 1e-8)
        assert np.allclose(out[1], [[0.0, 0.3, 1 - 1e-8]])

    def test_rescales_sum(self):
        out = clip_hazards({1: np.array([[0.7]]), 2: np.array([[0.6]])}, 1e-8)
        total = out[1] + out[2]
        assert total[0, 0] == pytest.approx(1 - 1e-8)
        assert out[1][0, 0] / out[2][0, 0] == pytest.approx(0.7 / 0.6)

    def test_leaves_valid_hazards_unchanged(self):
        hazards = {1: np.array([[0.1, 0.2]]), 2: np.array([[0.3, 0.1]])}
        out = clip_hazards(hazards, 1e-8)
        for j in hazards:
            assert np.array_equal(out[j], hazards[j])

    def test_rescaling_keeps_lower_bounds(self):
        hazards = {1: np.array([[0.5]]), 2: np.array([[0.7]])}
        lower = {1: np.array([[0.4]]), 2: np.array([[0.4]])}
        out = clip_hazards(hazards, 1e-8, lower)
        assert (out[1] + out[2])[0, 0] == pytest.approx(1 - 1e-8)
        assert out[1][0, 0] >= 0.4
        assert out[2][0, 0] >= 0.4
        # The excess above each bound keeps its proportions
        assert (out[1][0, 0] - 0.4) / (out[2][0, 0] - 0.4) == pytest.approx(0.1 / 0.3)


class TestHazardModels:
    """Tests for the pooled cause-specific hazard fits."""

    def test_one_model_per_observed_cause(self, competing_data, glm_specs):
        models = fit_hazard_models(competing_data, glm_specs, 5, NuisanceEstimator())
        assert set(models) == {1, 2}


@pytest.mark.filterwarnings("ignore::survival_tmle.core.base.NonConvergenceWarning")
class TestHazardTMLE:
    """Tests for the iterative targeting loop."""

    def test_loop_exit_condition(self, competing_data, glm_specs):
        config = EstimationConfig(hazard=HazardTMLEConfig(max_iter=5))
        _, result = HazardTMLE(config=config).fit(competing_data, 5, glm_specs, (1, 2))
        assert (result.converged and result.max_abs_mean_eic < result.tol) or (
            not result.converged and result.n_iterations == 5
        )
        assert result.tol == pytest.approx(1 / competing_data.n)
        assert len(result.mean_eic_trace) == result.n_iterations + 1

    def test_converges_to_tight_tolerance(self, randomized_data, marginal_specs, tight_config):
        _, result = HazardTMLE(config=tight_config).fit(randomized_data, 6, marginal_specs, (1,))
        assert result.converged
        assert result.max_abs_mean_eic < 1e-6
        assert result.mean_eic_trace[-1] <= result.mean_eic_trace[0]

    def test_non_convergence_warns_and_returns(self, competing_data, glm_specs):
        config = EstimationConfig(hazard=HazardTMLEConfig(tol=1e-12, max_iter=1))
        with pytest.warns(NonConvergenceWarning, match="did not converge"):
            _, result = HazardTMLE(config=config).fit(competing_data, 5, glm_specs, (1,))
        assert not result.converged
        assert result.n_iterations == 1
        records = result.records(5, 0.95)
        assert all(rec.converged is False for rec in records.values())
        assert all(rec.n_iterations == 1 for rec in records.values())

    def test_matches_kaplan_meier_in_randomized_data(
        self, randomized_data, marginal_specs, tight_config
    ):
        data = randomized_data
        _, result = HazardTMLE(config=tight_config).fit(data, 6, marginal_specs, (1,))
        ftime = np.asarray(data.ftime)
        event = np.asarray(data.ftype) == 1
        for arm in (0, 1):
            mask = np.asarray(data.trt) == arm
            kmf = KaplanMeierFitter().fit(ftime[mask], event_observed=event[mask])
            assert result.estimates[(arm, 1)] == pytest.approx(1 - kmf.predict(6), abs=0.03)

    def test_estimates_match_targeted_hazards(self, competing_data, glm_specs):
        _, result = HazardTMLE().fit(competing_data, 5, glm_specs, (1, 2))
        for (arm, k), estimate in result.estimates.items():
            survival, incidence = cumulative_incidence(result.hazards[arm])
            assert estimate == pytest.approx(incidence[k][:, -1].mean())
            assert np.all(survival > 0)
            assert 0.0 <= estimate <= 1.0

    def test_hazards_respect_bounds_at_every_iteration(
        self, competing_data, glm_specs, bounds_factory
    ):
        bounds = Bounds(table=bounds_factory(5, [1, 2], lower=0.01, upper=0.6))
        bundle, _ = HazardTMLE().fit(competing_data, 5, glm_specs, (1,), bounds)
        for max_iter in range(1, 5):
            config = EstimationConfig(hazard=HazardTMLEConfig(tol=1e-12, max_iter=max_iter))
            result = HazardTMLE(config=config).target(bundle, 5)
            assert result.n_iterations == max_iter
            for arm in (0, 1):
                for hazard in result.hazards[arm].values():
                    assert np.all(hazard >= 0.01 - 1e-10)
                    assert np.all(hazard <= 0.6 + 1e-10)

    def test_one_clever_column_per_target_and_cause(self, competing_data, glm_specs, monkeypatch):
        captured = []
        solve = hazard_tmle.solve_fluctuation

        def recording(y, clever, offset, *args, **kwargs):
            captured.append(clever)
            return solve(y, clever, offset, *args, **kwargs)

        monkeypatch.setattr(hazard_tmle, "solve_fluctuation", recording)
        config = EstimationConfig(hazard=HazardTMLEConfig(tol=1e-12, max_iter=1))
        HazardTMLE(config=config).fit(competing_data, 5, glm_specs, (1,))

        clever = captured[0]
        n_causes, n_targets = 2, 2
        assert clever.shape[1] == n_targets * n_causes
        block = clever.shape[0] // n_causes
        assert block * n_causes == clever.shape[0]
        for i in range(n_targets):
            for c in range(n_causes):
                col = clever[:, i * n_causes + c]
                own = slice(c * block, (c + 1) * block)
                assert np.any(col[own] != 0)
                assert np.count_nonzero(col) == np.count_nonzero(col[own])

    def test_degenerate_fluctuation_is_skipped(self, competing_data, glm_specs, monkeypatch):
        def degenerate(*args, **kwargs):
            raise FluctuationDegeneracy("Clever covariate is identically zero")

        bundle, fitted = HazardTMLE().fit(competing_data, 5, glm_specs, (1,))
        assert not fitted.degenerate_iterations

        monkeypatch.setattr(hazard_tmle, "solve_fluctuation", degenerate)
        config = EstimationConfig(hazard=HazardTMLEConfig(tol=1e-12, max_iter=3))
        with pytest.warns(NonConvergenceWarning):
            result = HazardTMLE(config=config).target(bundle, 5)
        assert result.degenerate_iterations == [1, 2, 3]
        assert result.n_iterations == 3
        assert result.records(5, 0.95)[(1, 1)].fluctuation_degenerate
        # Hazards never move away from the initial fit
        assert len(set(result.mean_eic_trace)) == 1

    def test_target_at_earlier_horizon(self, competing_data, glm_specs):
        estimator = HazardTMLE()
        bundle, full = estimator.fit(competing_data, 5, glm_specs, (1,))
        early = estimator.target(bundle, 2)
        for key in full.estimates:
            assert early.hazards[key[0]][1].shape == (competing_data.n, 2)
            assert early.estimates[key] <= full.estimates[key] + 0.05

    def test_records_carry_diagnostics(self, competing_data, glm_specs):
        _, result = HazardTMLE().fit(competing_data, 5, glm_specs, (1, 2))
        records = result.records(5, 0.9)
        assert set(records) == {(0, 1), (0, 2), (1, 1), (1, 2)}
        for rec in records.values():
            assert rec.method == "hazard"
            assert rec.confidence_level == 0.9
            assert rec.diagnostics["tol"] == result.tol
            assert rec.std_error > 0
