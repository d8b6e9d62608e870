"""Tests for the iterated-mean TMLE."""

import numpy as np
import pandas as pd
import pytest
from lifelines import KaplanMeierFitter

from survival_tmle.core.base import Bounds, SurvivalData
from survival_tmle.core.config import EstimationConfig
from survival_tmle.estimators.mean_tmle import IteratedMeanTask, MeanTMLE
from survival_tmle.ml.specs import NuisanceSpecs, Parametric


class TestIteratedMeanTask:
    """Tests for a single backward step."""

    def test_pseudo_outcome(self, tiny_data):
        task = IteratedMeanTask(
            time=2, horizon=4, arm=1, failure_type=2, spec=Parametric(), design=None
        )
        carried = np.full(tiny_data.n, 0.3)
        z = task.pseudo_outcome(tiny_data, carried)
        # Subject 2 failed from type 2 at t=2; subject 1 was censored at t=2
        assert z[2] == 1.0
        assert z[1] == pytest.approx(0.3)
        assert z[5] == pytest.approx(0.3)

    def test_pseudo_outcome_at_horizon(self, tiny_data):
        task = IteratedMeanTask(
            time=4, horizon=4, arm=0, failure_type=1, spec=Parametric(), design=None
        )
        z = task.pseudo_outcome(tiny_data, None)
        assert z[7] == 1.0
        assert z[5] == 0.0

    def test_tasks_run_backward(self, tiny_data):
        tasks = MeanTMLE().tasks(tiny_data, 4, Parametric(), arm=1, failure_type=1)
        assert [t.time for t in tasks] == [4, 3, 2, 1]
        assert all(t.arm == 1 and t.horizon == 4 for t in tasks)


class TestMeanTMLE:
    """Tests for the full backward recursion."""

    def test_mean_influence_curve_is_solved(self, competing_data, glm_specs):
        _, results = MeanTMLE().fit(competing_data, 5, glm_specs, (1, 2))
        assert set(results) == {(0, 1), (0, 2), (1, 1), (1, 2)}
        for result in results.values():
            assert abs(np.mean(result.eic)) < 1e-6
            assert 0.0 <= result.estimate <= 1.0

    def test_marginal_specs_reproduce_kaplan_meier(self, single_cause_data, marginal_specs):
        data = single_cause_data
        _, results = MeanTMLE().fit(data, 6, marginal_specs, (1,))

        ftime = np.asarray(data.ftime)
        event = np.asarray(data.ftype) == 1
        for arm in (0, 1):
            mask = np.asarray(data.trt) == arm
            kmf = KaplanMeierFitter().fit(ftime[mask], event_observed=event[mask])
            assert results[(arm, 1)].estimate == pytest.approx(1 - kmf.predict(6), abs=1e-5)

    def test_competing_incidences_sum_below_one(self, competing_data, glm_specs):
        _, results = MeanTMLE().fit(competing_data, 5, glm_specs, (1, 2))
        for arm in (0, 1):
            assert results[(arm, 1)].estimate + results[(arm, 2)].estimate <= 1.0 + 1e-6

    def test_targeted_means_respect_bounds(self, competing_data, glm_specs, bounds_factory):
        bounds = Bounds(table=bounds_factory(5, [1], lower=0.0, upper=0.9))
        _, results = MeanTMLE().fit(competing_data, 5, glm_specs, (1,), bounds)
        for result in results.values():
            means = result.targeted_means
            assert means.shape == (competing_data.n, 5)
            assert np.all(means >= -1e-12)
            assert np.all(means <= 0.9 + 1e-12)

    def test_step_outputs(self, competing_data, glm_specs):
        _, results = MeanTMLE().fit(competing_data, 5, glm_specs, (1,))
        result = results[(1, 1)]
        assert [s.time for s in result.steps] == [5, 4, 3, 2, 1]
        assert result.estimate == pytest.approx(result.targeted_means[:, 0].mean())
        assert result.initial_means.shape == result.targeted_means.shape
        record = result.to_record(0.95)
        assert record.method == "mean"
        assert set(record.diagnostics["epsilon"]) == {1, 2, 3, 4, 5}

    def test_empty_arm_at_risk_is_degenerate(self):
        data = SurvivalData(
            ftime=np.array([1, 2, 3, 2, 1, 2, 2]),
            ftype=np.array([1, 1, 1, 2, 1, 1, 2]),
            trt=np.array([1, 1, 1, 1, 0, 0, 0]),
        )
        specs = NuisanceSpecs(
            treatment=Parametric(columns=()),
            censoring=Parametric(columns=()),
            failure=Parametric(columns=()),
        )
        _, results = MeanTMLE().fit(data, 3, specs, (1,))
        # No control subject is at risk at t=3
        assert results[(0, 1)].degenerate_times == [3]
        assert results[(0, 1)].to_record(0.95).fluctuation_degenerate
        # Control arm: 1/3 fail at t=1, then 1/2 of the remaining at t=2
        assert results[(0, 1)].estimate == pytest.approx(2 / 3, abs=1e-6)
        assert results[(1, 1)].degenerate_times == []

    def test_parallel_matches_sequential(self, competing_data, glm_specs):
        _, sequential = MeanTMLE().fit(competing_data, 4, glm_specs, (1, 2))
        parallel_config = EstimationConfig(n_jobs=2)
        _, parallel = MeanTMLE(config=parallel_config).fit(competing_data, 4, glm_specs, (1, 2))
        for key, result in sequential.items():
            assert parallel[key].estimate == pytest.approx(result.estimate, abs=1e-10)
            assert np.allclose(parallel[key].eic, result.eic)

    def test_target_reuses_frozen_fits(self, competing_data, glm_specs):
        estimator = MeanTMLE()
        bundle, results = estimator.fit(competing_data, 5, glm_specs, (1,))
        again = estimator.target(bundle, 5)
        assert again[(1, 1)].estimate == pytest.approx(results[(1, 1)].estimate)
        shorter = estimator.target(bundle, 3)
        assert shorter[(1, 1)].horizon == 3
        assert shorter[(1, 1)].estimate <= results[(1, 1)].estimate + 0.05

    def test_covariates_from_frame(self, competing_generator):
        frame = competing_generator.generate(150)
        data = SurvivalData.from_dataframe(frame)
        assert isinstance(data.covariates, pd.DataFrame)
        _, results = MeanTMLE().fit(data, 3, NuisanceSpecs(), (1,))
        assert abs(results[(1, 1)].eic.mean()) < 1e-6
