"""Tests for projecting fitted estimators over several horizons."""

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from survival_tmle import estimate, project
from survival_tmle.core.base import InputError
from survival_tmle.estimators.projection import CumulativeIncidenceProjector, isotonic_projection


class TestIsotonicProjection:
    """Tests for the pool-adjacent-violators projection."""

    def test_pools_violators(self):
        assert np.allclose(isotonic_projection([0.1, 0.05, 0.2]), [0.075, 0.075, 0.2])

    def test_monotone_input_unchanged(self):
        values = [0.05, 0.1, 0.1, 0.3]
        assert np.allclose(isotonic_projection(values), values)

    def test_short_sequences(self):
        assert isotonic_projection([]).shape == (0,)
        assert np.allclose(isotonic_projection([0.4]), [0.4])

    @given(
        st.lists(
            st.floats(min_value=0.0, max_value=1.0, allow_nan=False), min_size=2, max_size=12
        )
    )
    @settings(max_examples=100, deadline=None)
    def test_projection_properties(self, values):
        y = np.array(values)
        projected = isotonic_projection(y)
        assert np.all(np.diff(projected) >= -1e-12)
        assert projected.mean() == pytest.approx(y.mean(), abs=1e-9)
        # No farther from the data than any other monotone sequence, e.g. the sorted one
        assert np.sum((projected - y) ** 2) <= np.sum((np.sort(y) - y) ** 2) + 1e-12


@pytest.mark.filterwarnings("ignore::survival_tmle.core.base.NonConvergenceWarning")
class TestProjection:
    """Tests for re-evaluating frozen fits at other horizons."""

    @pytest.mark.parametrize("method", ["hazard", "mean"])
    def test_reproduces_estimate_at_fit_horizon(self, competing_data, method):
        result = estimate(competing_data, 5, method=method, return_fits=True)
        projection = project(result.fits, [1, 3, 5])
        assert projection.horizons == [1, 3, 5]
        for key, record in result.records.items():
            assert projection.curve(*key)[-1] == pytest.approx(record.estimate, abs=1e-10)
            assert projection.records[5][key].std_error == pytest.approx(record.std_error)

    def test_horizons_sorted_and_deduplicated(self, competing_data):
        result = estimate(competing_data, 4, method="mean", return_fits=True)
        projection = project(result.fits, [3, 1, 3])
        assert projection.horizons == [1, 3]
        assert set(projection.records) == {1, 3}

    def test_isotonic_curves_are_monotone(self, competing_data):
        result = estimate(competing_data, 5, method="mean", return_fits=True)
        projection = project(result.fits, range(1, 6), isotonic=True)
        for key, curve in projection.curves.items():
            assert np.all(np.diff(curve) >= -1e-12)
            assert curve.mean() == pytest.approx(projection.raw_curves[key].mean())

    def test_to_frame(self, competing_data):
        result = estimate(
            competing_data, 5, failure_types_of_interest=[1], method="mean", return_fits=True
        )
        frame = project(result.fits, [2, 5], isotonic=True).to_frame()
        assert len(frame) == 4
        assert set(frame["trt"]) == {0, 1}
        assert {"estimate", "raw_estimate", "std_error", "ci_lower", "ci_upper"} <= set(
            frame.columns
        )
        width = frame["ci_upper"] - frame["ci_lower"]
        assert np.all(frame["ci_lower"] <= frame["estimate"])
        assert np.all(frame["estimate"] <= frame["ci_upper"])
        assert np.all(width > 0)

    def test_invalid_horizons(self, competing_data):
        result = estimate(competing_data, 4, method="mean", return_fits=True)
        projector = CumulativeIncidenceProjector(result.fits)
        with pytest.raises(InputError, match="outside"):
            projector.validate_horizons([5])
        with pytest.raises(InputError, match="outside"):
            projector.validate_horizons([0, 2])
        with pytest.raises(InputError, match="integers"):
            projector.validate_horizons([1.5])
        with pytest.raises(InputError, match="At least one"):
            projector.validate_horizons([])

    def test_requires_fit_bundle(self, competing_data):
        result = estimate(competing_data, 4, method="mean")
        assert result.fits is None
        with pytest.raises(InputError, match="fit bundle"):
            project(result.fits, [1, 2])
