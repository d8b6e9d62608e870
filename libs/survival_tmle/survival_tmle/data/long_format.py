"""Pooled-over-time data layouts and design matrices.

Hazard and censoring regressions are fit on a long table with one row per
subject per at-risk time. Counterfactual grids hold one row per subject per
time on 1..horizon with the treatment set to a fixed arm, so predictions
reshape to ``(n_subjects, horizon)`` matrices.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ..core.base import SurvivalData

TimeBasis = Literal["categorical", "linear"]

__all__ = [
    "DesignBuilder",
    "TimeBasis",
    "at_risk_matrix",
    "event_matrix",
    "pooled_rows",
    "time_grid_frame",
]


def _expand_times(last: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
    subject = np.repeat(np.arange(len(last)), last)
    starts = np.repeat(np.cumsum(last) - last, last)
    t = np.arange(len(subject)) - starts + 1
    return subject, t


def pooled_rows(data: SurvivalData, horizon: int) -> pd.DataFrame:
    """Long table with one row per subject per time t <= min(ftime, horizon).

    Columns are ``subject``, ``t``, ``trt``, the covariates, one failure
    indicator ``dN{j}`` per observed cause and the censoring indicator ``dC``.
    """
    ftime = np.asarray(data.ftime, dtype=int)
    ftype = np.asarray(data.ftype, dtype=int)
    last = np.minimum(ftime, horizon)
    subject, t = _expand_times(last)

    frame = data.baseline_frame().iloc[subject].reset_index(drop=True)
    frame.insert(0, "t", t)
    frame.insert(0, "subject", subject)
    event_now = ftime[subject] == t
    for j in data.causes:
        frame[f"dN{j}"] = (event_now & (ftype[subject] == j)).astype(float)
    frame["dC"] = (event_now & (ftype[subject] == 0)).astype(float)
    return frame


def time_grid_frame(data: SurvivalData, horizon: int, trt: int) -> pd.DataFrame:
    """Every subject at every time 1..horizon with treatment set to ``trt``."""
    subject, t = _expand_times(np.full(data.n, horizon))
    frame = data.baseline_frame(trt=trt).iloc[subject].reset_index(drop=True)
    frame.insert(0, "t", t)
    frame.insert(0, "subject", subject)
    return frame


def at_risk_matrix(data: SurvivalData, horizon: int) -> NDArray[Any]:
    """Indicator I(T >= t) for t = 1..horizon, shape (n, horizon)."""
    times = np.arange(1, horizon + 1)
    return np.asarray(data.ftime)[:, None] >= times[None, :]


def event_matrix(data: SurvivalData, horizon: int, failure_type: int) -> NDArray[Any]:
    """Indicator I(T = t, J = j) for t = 1..horizon, shape (n, horizon)."""
    times = np.arange(1, horizon + 1)
    hit = np.asarray(data.ftime)[:, None] == times[None, :]
    return (hit & (np.asarray(data.ftype)[:, None] == failure_type)).astype(float)


@dataclass(frozen=True)
class DesignBuilder:
    """Builds numeric design matrices for one nuisance regression.

    Attributes:
        covariates: Baseline covariates entering the model
        include_trt: Whether the treatment indicator is a regressor
        time_basis: How time enters pooled regressions (``None`` for none)
        horizon: Largest time of the pooled fit, fixing the dummy levels
    """

    covariates: tuple[str, ...]
    include_trt: bool = True
    time_basis: Optional[TimeBasis] = None
    horizon: int = 1

    @property
    def column_names(self) -> list[str]:
        names = (["trt"] if self.include_trt else []) + list(self.covariates)
        if self.time_basis == "linear":
            names.append("t")
        elif self.time_basis == "categorical":
            names.extend(f"t_{s}" for s in range(2, self.horizon + 1))
        return names

    def build(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Design matrix (without intercept) for the rows of ``frame``."""
        cols = (["trt"] if self.include_trt else []) + list(self.covariates)
        X = frame[cols].astype(float).reset_index(drop=True)
        if self.time_basis is not None:
            t = frame["t"].to_numpy()
            if np.any(t > self.horizon):
                raise ValueError(
                    f"Cannot predict at time {int(t.max())} beyond the fitted horizon "
                    f"{self.horizon}"
                )
            if self.time_basis == "linear":
                X["t"] = t.astype(float)
            else:
                for s in range(2, self.horizon + 1):
                    X[f"t_{s}"] = (t == s).astype(float)
        return X
