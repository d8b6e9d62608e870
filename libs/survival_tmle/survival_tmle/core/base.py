"""Base data models, result containers and exceptions for survival TMLE.

This module provides the foundational data models shared by the mean- and
hazard-based estimators: the observation table, per-time bounds, and the
standardized per-target estimate record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

if TYPE_CHECKING:
    from ..estimators.nuisance_fits import FitBundle


class SurvivalTMLEError(Exception):
    """Base exception class for survival TMLE specific errors."""

    pass


class InputError(SurvivalTMLEError):
    """Raised when observations, bounds or horizons fail validation."""

    pass


class FitError(SurvivalTMLEError):
    """Raised when a nuisance regression cannot produce finite, in-range predictions."""

    pass


class FluctuationDegeneracy(SurvivalTMLEError):
    """Raised when a fluctuation submodel cannot be fit.

    Callers recover locally by treating the step as already targeted and
    recording a diagnostic flag.
    """

    pass


class NonConvergenceWarning(UserWarning):
    """Emitted when the hazard-based targeting loop reaches its iteration cap."""

    pass


def _as_readonly(values: Any) -> NDArray[Any]:
    arr = np.array(values, copy=True)
    arr.setflags(write=False)
    return arr


class SurvivalData(BaseModel):
    """Data model for discrete-time competing risks observations.

    Each row is one subject: the (integer) time of the first event or of
    censoring, the event type (0 for censored, 1..K for causes), a binary
    treatment arm and baseline covariates.
    """

    ftime: np.ndarray = Field(..., description="Positive integer follow-up times")
    ftype: np.ndarray = Field(
        ..., description="Event type at ftime: 0 = censored, 1..K = cause"
    )
    trt: np.ndarray = Field(..., description="Binary treatment arm (0/1)")
    covariates: pd.DataFrame = Field(
        default_factory=pd.DataFrame, description="Numeric baseline covariates"
    )
    ids: np.ndarray | None = Field(default=None, description="Subject identifiers")

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    @field_validator("ftime", "ftype", "trt", "ids", mode="before")
    @classmethod
    def coerce_arrays(cls, v: Any) -> Any:
        """Convert array-likes to read-only numpy arrays."""
        if v is None:
            return v
        if isinstance(v, pd.Series):
            v = v.to_numpy()
        arr = _as_readonly(v)
        if arr.ndim != 1:
            raise ValueError("Observation columns must be one-dimensional")
        if len(arr) == 0:
            raise ValueError("Observation columns cannot be empty")
        return arr

    @field_validator("covariates", mode="before")
    @classmethod
    def coerce_covariates(cls, v: Any) -> pd.DataFrame:
        """Accept a DataFrame or 2D array of covariates."""
        if v is None:
            return pd.DataFrame()
        if isinstance(v, pd.DataFrame):
            frame = v.reset_index(drop=True).copy()
        else:
            arr = np.asarray(v, dtype=float)
            if arr.ndim == 1:
                arr = arr.reshape(-1, 1)
            frame = pd.DataFrame(arr, columns=[f"W{i + 1}" for i in range(arr.shape[1])])
        frame.columns = [str(c) for c in frame.columns]
        return frame

    @model_validator(mode="after")
    def validate_observations(self) -> SurvivalData:
        """Validate cross-column constraints of the observation table."""
        n = len(self.ftime)
        if len(self.ftype) != n or len(self.trt) != n:
            raise ValueError(
                f"ftime ({n}), ftype ({len(self.ftype)}) and trt ({len(self.trt)}) "
                "must have the same length"
            )
        if self.ids is not None and len(self.ids) != n:
            raise ValueError("ids must have one entry per observation")
        if len(self.covariates.columns) > 0 and len(self.covariates) != n:
            raise ValueError(
                f"Covariates ({len(self.covariates)}) must have the same number "
                f"of rows as ftime ({n})"
            )

        ftime = np.asarray(self.ftime, dtype=float)
        if not np.all(np.isfinite(ftime)):
            raise ValueError("Failure times cannot contain missing values")
        if np.any(ftime != np.round(ftime)):
            raise ValueError("Failure times must be integer valued")
        if np.any(ftime < 1):
            raise ValueError("Failure times must be positive integers")

        ftype = np.asarray(self.ftype, dtype=float)
        if not np.all(np.isfinite(ftype)) or np.any(ftype != np.round(ftype)):
            raise ValueError("Failure types must be integers")
        if np.any(ftype < 0):
            raise ValueError("Failure types must be 0 (censored) or a positive cause")

        trt_values = set(np.unique(self.trt).tolist())
        if not trt_values.issubset({0, 1}):
            raise ValueError(f"Treatment must be coded 0/1, found {sorted(trt_values)}")
        if trt_values != {0, 1}:
            raise ValueError("Binary treatment must have both treated and control units")

        if len(self.covariates.columns) > 0:
            non_numeric = [
                c
                for c in self.covariates.columns
                if not pd.api.types.is_numeric_dtype(self.covariates[c])
            ]
            if non_numeric:
                raise ValueError(f"Covariates must be numeric, got {non_numeric}")
            if self.covariates.isna().any().any():
                raise ValueError("Covariates cannot contain missing values")
            reserved = {"t", "trt"} & set(self.covariates.columns)
            if reserved:
                raise ValueError(f"Covariate names {sorted(reserved)} are reserved")
        return self

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        ftime: str = "ftime",
        ftype: str = "ftype",
        trt: str = "trt",
        covariates: list[str] | None = None,
        id_col: str | None = None,
    ) -> SurvivalData:
        """Build observations from a data frame.

        Args:
            df: One row per subject
            ftime: Column holding follow-up times
            ftype: Column holding event types
            trt: Column holding the binary treatment
            covariates: Covariate columns; defaults to every remaining column
            id_col: Optional subject identifier column

        Returns:
            Validated SurvivalData

        Raises:
            InputError: If a column is missing or the table fails validation
        """
        required = [ftime, ftype, trt] + ([id_col] if id_col else [])
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise InputError(f"Observation table is missing columns {missing}")
        if covariates is None:
            covariates = [c for c in df.columns if c not in required]
        missing = [c for c in covariates if c not in df.columns]
        if missing:
            raise InputError(f"Observation table is missing covariates {missing}")

        try:
            return cls(
                ftime=df[ftime],
                ftype=df[ftype],
                trt=df[trt],
                covariates=df[covariates],
                ids=df[id_col] if id_col else None,
            )
        except ValidationError as e:
            raise InputError(f"Invalid observation table: {e}") from e

    @property
    def n(self) -> int:
        """Number of subjects."""
        return len(self.ftime)

    @property
    def causes(self) -> list[int]:
        """Observed failure causes, excluding the censoring code."""
        return sorted(int(j) for j in np.unique(self.ftype) if j > 0)

    @property
    def max_time(self) -> int:
        """Largest observed follow-up time."""
        return int(np.max(self.ftime))

    @property
    def has_censoring(self) -> bool:
        """Whether any subject is censored."""
        return bool(np.any(self.ftype == 0))

    @property
    def covariate_names(self) -> list[str]:
        """Names of the baseline covariates."""
        return list(self.covariates.columns)

    def baseline_frame(self, trt: int | None = None) -> pd.DataFrame:
        """Covariates with a treatment column, optionally set to a fixed arm."""
        if len(self.covariates.columns) == 0:
            frame = pd.DataFrame(index=pd.RangeIndex(self.n))
        else:
            frame = self.covariates.copy()
        frame["trt"] = np.asarray(self.trt, dtype=float) if trt is None else float(trt)
        return frame


class Bounds(BaseModel):
    """Per-time box constraints on conditional means or hazards.

    Wraps a table with a ``t`` column plus one ``l{j}``/``u{j}`` column pair for
    each failure type ``j`` it constrains.
    """

    table: pd.DataFrame = Field(..., description="Bounds table keyed by time")

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: pd.DataFrame) -> pd.DataFrame:
        """Validate the layout and ranges of the bounds table."""
        if "t" not in v.columns:
            raise ValueError("Bounds table must have a 't' column")
        if v["t"].duplicated().any():
            raise ValueError("Bounds table has duplicated times")
        for col in v.columns:
            if col == "t":
                continue
            if not isinstance(col, str) or col[:1] not in ("l", "u") or not col[1:].isdigit():
                raise ValueError(f"Unexpected bounds column '{col}'")
            partner = ("u" if col[0] == "l" else "l") + col[1:]
            if partner not in v.columns:
                raise ValueError(f"Bounds column '{col}' has no matching '{partner}'")
        frame = v.copy()
        frame["t"] = frame["t"].astype(int)
        for j in cls._types_in(frame):
            lower = frame[f"l{j}"].to_numpy(dtype=float)
            upper = frame[f"u{j}"].to_numpy(dtype=float)
            mask = ~(np.isnan(lower) | np.isnan(upper))
            if np.any(lower[mask] < 0) or np.any(upper[mask] > 1):
                raise ValueError(f"Bounds for type {j} must lie in [0, 1]")
            if np.any(lower[mask] >= upper[mask]):
                raise ValueError(f"Lower bounds for type {j} must be below upper bounds")
        return frame.set_index("t", drop=False).sort_index()

    @staticmethod
    def _types_in(frame: pd.DataFrame) -> list[int]:
        return sorted(int(c[1:]) for c in frame.columns if c.startswith("l"))

    @property
    def failure_types(self) -> list[int]:
        """Failure types constrained by this table."""
        return self._types_in(self.table)

    def limits(self, failure_type: int, times: NDArray[Any]) -> tuple[NDArray[Any], NDArray[Any]]:
        """Lower and upper bounds for one failure type at the given times."""
        idx = np.asarray(times, dtype=int)
        lower = self.table[f"l{failure_type}"].reindex(idx).to_numpy(dtype=float)
        upper = self.table[f"u{failure_type}"].reindex(idx).to_numpy(dtype=float)
        return lower, upper


@dataclass
class EstimateRecord:
    """Result for one (treatment arm, failure type) target at a horizon."""

    arm: int
    failure_type: int
    horizon: int
    estimate: float
    eic: NDArray[Any]
    variance: float
    std_error: float
    ci_lower: float
    ci_upper: float
    confidence_level: float = 0.95
    method: str = "hazard"

    # Hazard method only
    n_iterations: int | None = None
    converged: bool | None = None

    # Times (mean method) or iterations (hazard method) whose fluctuation was skipped
    degenerate_steps: list[int] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the estimate after initialization."""
        if self.ci_lower > self.ci_upper:
            raise ValueError("Lower confidence bound cannot exceed upper bound")
        if self.confidence_level <= 0 or self.confidence_level >= 1:
            raise ValueError("Confidence level must be between 0 and 1")

    @property
    def target(self) -> tuple[int, int]:
        """The (arm, failure type) pair this record estimates."""
        return (self.arm, self.failure_type)

    @property
    def mean_eic(self) -> float:
        """Empirical mean of the efficient influence curve."""
        return float(np.mean(self.eic))

    @property
    def fluctuation_degenerate(self) -> bool:
        """Whether any fluctuation step was skipped."""
        return len(self.degenerate_steps) > 0

    @property
    def confidence_interval(self) -> tuple[float, float]:
        """Confidence interval as a tuple."""
        return (self.ci_lower, self.ci_upper)


@dataclass
class SurvivalTMLEResult:
    """Collection of estimate records from one estimation call."""

    records: dict[tuple[int, int], EstimateRecord]
    covariance: pd.DataFrame
    method: str
    horizon: int
    n_observations: int
    fits: FitBundle | None = None

    def __getitem__(self, target: tuple[int, int]) -> EstimateRecord:
        return self.records[target]

    @property
    def estimates(self) -> dict[tuple[int, int], float]:
        """Point estimates keyed by (arm, failure type)."""
        return {key: rec.estimate for key, rec in self.records.items()}

    @property
    def converged(self) -> bool:
        """Whether every target met the convergence criterion."""
        return all(rec.converged is not False for rec in self.records.values())

    def to_frame(self) -> pd.DataFrame:
        """Tabulate the records, one row per target."""
        rows = []
        for (arm, ftype), rec in sorted(self.records.items()):
            rows.append(
                {
                    "trt": arm,
                    "ftype": ftype,
                    "horizon": rec.horizon,
                    "estimate": rec.estimate,
                    "std_error": rec.std_error,
                    "ci_lower": rec.ci_lower,
                    "ci_upper": rec.ci_upper,
                    "mean_eic": rec.mean_eic,
                    "converged": rec.converged,
                    "n_iterations": rec.n_iterations,
                }
            )
        return pd.DataFrame(rows)


def target_label(arm: int, failure_type: int) -> str:
    """Label used for a target in covariance tables."""
    return f"trt{arm}_ftype{failure_type}"
