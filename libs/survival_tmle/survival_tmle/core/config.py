"""Configuration for survival TMLE estimation.

Estimator options are explicit pydantic models passed by value into each
component. Process-level defaults can be supplied through environment
variables (``SURVIVAL_TMLE_*``) or a ``.env`` file via ``SurvivalTMLESettings``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hazards are clipped to [0, 1 - HAZARD_CLIP_EPS] so survival stays positive.
HAZARD_CLIP_EPS = 1e-8


class Environment(str, Enum):
    """Supported deployment environments."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class HazardTMLEConfig(BaseModel):
    """Options for the iterative hazard-based targeting loop.

    Attributes:
        tol: Convergence tolerance on max |mean EIC|; ``None`` uses 1/n
        max_iter: Maximum number of fluctuation steps
    """

    tol: Optional[float] = Field(
        default=None, gt=0.0, description="Tolerance on max |mean EIC| (None -> 1/n)"
    )
    max_iter: int = Field(default=10, ge=1, le=10_000, description="Iteration cap")

    model_config = {"frozen": True}

    @property
    def hazard_clip_eps(self) -> float:
        """Fixed clipping constant applied to every hazard."""
        return HAZARD_CLIP_EPS

    def resolve_tol(self, n: int) -> float:
        """Tolerance to use for a sample of size n."""
        return self.tol if self.tol is not None else 1.0 / n


class EstimationConfig(BaseModel):
    """Options shared by the mean- and hazard-based estimators.

    Attributes:
        confidence_level: Level of the Wald confidence intervals
        g_tol: Lower truncation of g_a(W) * G(t-1 | a, W) in clever covariates
        hazard: Targeting loop options for the hazard method
        n_jobs: Parallel jobs across mean-method targets
        verbose: Log progress at INFO level instead of DEBUG
    """

    confidence_level: float = Field(default=0.95, gt=0.0, lt=1.0)
    g_tol: float = Field(default=1e-3, gt=0.0, lt=1.0)
    hazard: HazardTMLEConfig = Field(default_factory=HazardTMLEConfig)
    n_jobs: int = Field(default=1, description="joblib n_jobs for mean-method targets")
    verbose: bool = Field(default=False)

    model_config = {"frozen": True}

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v: int) -> int:
        """Validate n_jobs follows the joblib convention."""
        if v == 0:
            raise ValueError("n_jobs cannot be 0")
        return v

    @classmethod
    def from_settings(cls, settings: SurvivalTMLESettings | None = None) -> EstimationConfig:
        """Build a configuration from environment-level settings."""
        if settings is None:
            settings = SurvivalTMLESettings()
        return cls(
            confidence_level=settings.confidence_level,
            g_tol=settings.g_tol,
            hazard=HazardTMLEConfig(tol=settings.tol, max_iter=settings.max_iter),
        )


class SurvivalTMLESettings(BaseSettings):
    """Environment-driven defaults for survival TMLE."""

    model_config = SettingsConfigDict(
        env_prefix="SURVIVAL_TMLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Current deployment environment"
    )
    log_level: Optional[str] = Field(
        default=None, description="Explicit log level; overrides the environment default"
    )
    confidence_level: float = Field(default=0.95, gt=0.0, lt=1.0)
    g_tol: float = Field(default=1e-3, gt=0.0, lt=1.0)
    tol: Optional[float] = Field(default=None, gt=0.0)
    max_iter: int = Field(default=10, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: Optional[str]) -> Optional[str]:
        """Normalize and validate the log level name."""
        if v is None:
            return v
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level
