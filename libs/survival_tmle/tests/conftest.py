"""Shared test fixtures for the survival TMLE library.

This module provides reusable simulated data sets, bounds tables and
estimation configurations for testing the estimators and their components.
"""

import numpy as np
import pandas as pd
import pytest

from survival_tmle.core.base import SurvivalData
from survival_tmle.core.config import EstimationConfig, HazardTMLEConfig
from survival_tmle.data.synthetic import CompetingRisksGenerator
from survival_tmle.ml.specs import NuisanceSpecs, Parametric


@pytest.fixture
def random_state():
    """Provide a consistent random state for reproducible tests."""
    return 42


@pytest.fixture
def tiny_data():
    """Hand-built observations with censoring and two causes."""
    return SurvivalData(
        ftime=np.array([1, 2, 2, 3, 3, 4, 1, 4]),
        ftype=np.array([1, 0, 2, 1, 0, 0, 2, 1]),
        trt=np.array([0, 1, 0, 1, 0, 1, 1, 0]),
        covariates=pd.DataFrame({"W1": [0.1, -0.4, 1.2, 0.3, -1.0, 0.7, 0.0, 0.5]}),
    )


@pytest.fixture
def single_cause_generator(random_state):
    """Confounded single-cause generator without censoring, 6 time points."""
    return CompetingRisksGenerator(n_causes=1, max_time=6, random_state=random_state)


@pytest.fixture
def single_cause_data(single_cause_generator):
    """n=200 single cause, no censoring before the end of follow-up."""
    return single_cause_generator.generate_data(200)


@pytest.fixture
def competing_generator(random_state):
    """Two competing causes with covariate-dependent censoring."""
    return CompetingRisksGenerator(
        n_causes=2, max_time=5, censoring_logit=-2.5, random_state=random_state
    )


@pytest.fixture
def competing_data(competing_generator):
    """n=300 competing risks observations with censoring."""
    return competing_generator.generate_data(300)


@pytest.fixture
def randomized_data(random_state):
    """Randomized single-cause data whose hazards ignore covariates and time."""
    generator = CompetingRisksGenerator(
        n_causes=1,
        max_time=6,
        covariate_effects=(0.0, 0.0),
        confounding=0.0,
        random_state=random_state,
    )
    return generator.generate_data(500)


@pytest.fixture
def glm_specs():
    """Main-terms logistic regressions on every covariate."""
    return NuisanceSpecs()


@pytest.fixture
def marginal_specs():
    """Intercept-only (plus treatment) specifications."""
    marginal = Parametric(columns=())
    return NuisanceSpecs(treatment=marginal, censoring=marginal, failure=marginal)


@pytest.fixture
def tight_config():
    """Configuration iterating the hazard loop to a tight tolerance."""
    return EstimationConfig(hazard=HazardTMLEConfig(tol=1e-6, max_iter=50))


def make_bounds(horizon, failure_types, lower=0.01, upper=0.6):
    """Constant bounds table covering times 1..horizon."""
    table = {"t": np.arange(1, horizon + 1)}
    for j in failure_types:
        table[f"l{j}"] = np.full(horizon, lower)
        table[f"u{j}"] = np.full(horizon, upper)
    return pd.DataFrame(table)


@pytest.fixture
def bounds_factory():
    """Factory for constant bounds tables."""
    return make_bounds
