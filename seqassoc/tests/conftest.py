"""Shared fixtures for pytest tests."""

import sys
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import numpy as np
import pytest
from seqassoc.models import (
    GaussianLikelihoodModel,
    GenerativeAssociationModel,
    ObservationSet,
    TabularLikelihoodModel,
    TargetSet,
    uniform_log_density
)


@pytest.fixture
def rng():
    """Fixed random seed for reproducibility."""
    return np.random.default_rng(42)


@pytest.fixture
def poisson_model():
    """Poisson clutter (0.1) and births (0.05), P_D = 0.9."""
    return GenerativeAssociationModel.poisson(clutter_rate=0.1, birth_rate=0.05, detection_prob=0.9)


@pytest.fixture
def busy_model():
    """Model with frequent clutter and births so every hypothesis is likely."""
    return GenerativeAssociationModel.poisson(clutter_rate=1.0, birth_rate=0.5, detection_prob=0.7)


@pytest.fixture
def two_targets():
    """Two existing targets (IDs 10, 20) in the plane."""
    return TargetSet(ids=[10, 20], means=np.array([[0.0, 0.0], [5.0, 5.0]]))


@pytest.fixture
def gaussian_likelihood():
    """Identity observation of 2D positions on the box [-10, 10]^2."""
    log_density = uniform_log_density([-10.0, -10.0], [10.0, 10.0])
    return GaussianLikelihoodModel(np.eye(2), 0.5 * np.eye(2), log_density, log_density)


@pytest.fixture
def line_observations():
    """Four observations on a line."""
    return ObservationSet(np.array([[0.0, 0.0], [1.0, 0.0], [3.0, 0.0], [6.0, 0.0]]))


@pytest.fixture
def random_table(rng):
    """Random log-likelihood table for four observations and two targets."""
    return TabularLikelihoodModel(rng.normal(scale=2.0, size=(4, 4)))


@pytest.fixture
def flat_table():
    """Flat log-likelihood table for four observations and two targets."""
    return TabularLikelihoodModel(np.zeros((4, 4)))
