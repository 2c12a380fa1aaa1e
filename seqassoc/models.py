"""
Generative and likelihood models for sequential data association.

This module provides:
1. ObservationSet / TargetSet - Observations and existing target predictions of one time step
2. GenerativeAssociationModel - Clutter/newborn count pmfs and detection probability
3. LikelihoodModel - Abstract base class for per-observation log-likelihoods
4. GaussianLikelihoodModel - Gaussian target likelihoods, constant clutter/newborn densities
5. TabularLikelihoodModel - Precomputed log-likelihood table
6. Exact reference computations (association prior, posterior by enumeration)
7. generate_frame - Simulation of one frame of observations with ground truth
"""

import numpy as np
from abc import ABC, abstractmethod
from itertools import product
from typing import Callable, Dict, Iterator, Optional, Sequence, Tuple, Union
from scipy.spatial.distance import cdist
from scipy.special import gammaln
from scipy.stats import binom, multivariate_normal, poisson

from .association import DataAssociation
from .numerics import CategoricalDistribution, log_sum_p_array


LogPmf = Union[Callable[[int], float], Sequence[float], np.ndarray]


class ConstructionError(ValueError):
    """Invalid model parameters or mismatched input sizes."""


class ObservationSet:
    """
    Observations of one time step.

    Holds the observation positions, optionally a precomputed matrix of
    pairwise distances and optional per-observation tags.
    """

    def __init__(self, positions, distances: Optional[np.ndarray] = None,
                 tags: Optional[Sequence] = None):
        """
        Initialize the observation set.

        Args:
            positions: Observation vectors, shape (M, d)
            distances: Optional precomputed distances, shape (M, M)
            tags: Optional sequence of M tags
        """
        positions = np.asarray(positions, dtype=float)
        if positions.ndim == 1:
            positions = positions.reshape(-1, 1)
        if positions.ndim != 2:
            raise ConstructionError(f"positions must be (M, d), got {positions.shape}")
        self.positions = positions

        M = positions.shape[0]
        if distances is not None:
            distances = np.asarray(distances, dtype=float)
            if distances.shape != (M, M):
                raise ConstructionError(f"distances must be ({M}, {M}), got {distances.shape}")
        self.distances = distances

        if tags is not None and len(tags) != M:
            raise ConstructionError(f"tags must have length {M}, got {len(tags)}")
        self.tags = list(tags) if tags is not None else None

    def __len__(self) -> int:
        return self.positions.shape[0]

    @property
    def dim(self) -> int:
        return self.positions.shape[1]

    def pairwise_distances(self) -> np.ndarray:
        """Euclidean distances between observations (precomputed if available)."""
        if self.distances is None:
            self.distances = cdist(self.positions, self.positions)
        return self.distances


class TargetSet:
    """
    Predictions of the existing targets of one time step.

    The means (and covariances) feed the likelihood model and diagnostics;
    the association prior only depends on the number of targets.
    """

    def __init__(self, ids: Sequence[int], means, covs: Optional[np.ndarray] = None):
        """
        Initialize the target set.

        Args:
            ids: Stable target IDs, shape (N,)
            means: Predicted mean states, shape (N, state_dim)
            covs: Optional predicted covariances, shape (N, state_dim, state_dim)
        """
        ids = np.asarray(ids, dtype=int).reshape(-1)
        means = np.asarray(means, dtype=float)
        if means.size == 0:
            means = means.reshape(0, means.shape[-1] if means.ndim == 2 else 0)
        if means.ndim == 1:
            means = means.reshape(-1, 1)
        if means.shape[0] != ids.shape[0]:
            raise ConstructionError(f"means must have {ids.shape[0]} rows, got {means.shape[0]}")
        if len(np.unique(ids)) != len(ids):
            raise ConstructionError(f"target IDs must be unique, got {ids.tolist()}")

        if covs is not None:
            covs = np.asarray(covs, dtype=float)
            s = means.shape[1]
            if covs.shape != (ids.shape[0], s, s):
                raise ConstructionError(f"covs must be ({ids.shape[0]}, {s}, {s}), got {covs.shape}")

        self.ids = ids
        self.means = means
        self.covs = covs

    def __len__(self) -> int:
        return self.ids.shape[0]

    @property
    def state_dim(self) -> int:
        return self.means.shape[1]

    def index_of(self, target_id: int) -> int:
        """Index of a target ID, -1 if unknown."""
        matches = np.flatnonzero(self.ids == target_id)
        return int(matches[0]) if matches.size else -1


class GenerativeAssociationModel:
    """
    Generative model of how the observations of one time step are formed.

    Model:
        K ~ Binomial(N, P_D)   detections of the N existing targets
        B ~ nu                 observations of newborn targets
        C ~ mu                 clutter observations
    conditioned on K + B + C = M. Given the counts, every labelled
    association consistent with them is equally likely.
    """

    def __init__(self, clutter_log_pmf: LogPmf, newborn_log_pmf: LogPmf, detection_prob: float):
        """
        Initialize the model.

        Args:
            clutter_log_pmf: log mu(n), as callable n -> log p or as table over n = 0, 1, ...
            newborn_log_pmf: log nu(n), as callable n -> log p or as table over n = 0, 1, ...
            detection_prob: Detection probability P_D in [0, 1]
        """
        if not 0.0 <= detection_prob <= 1.0:
            raise ConstructionError(f"detection_prob must be in [0, 1], got {detection_prob}")

        self.clutter_log_pmf = clutter_log_pmf
        self.newborn_log_pmf = newborn_log_pmf
        self.detection_prob = float(detection_prob)

    @classmethod
    def poisson(cls, clutter_rate: float, birth_rate: float,
                detection_prob: float) -> 'GenerativeAssociationModel':
        """Model with Poisson distributed clutter and newborn counts."""
        if clutter_rate < 0:
            raise ConstructionError(f"clutter_rate must be non-negative, got {clutter_rate}")
        if birth_rate < 0:
            raise ConstructionError(f"birth_rate must be non-negative, got {birth_rate}")
        return cls(lambda n: poisson.logpmf(n, clutter_rate),
                   lambda n: poisson.logpmf(n, birth_rate),
                   detection_prob)

    @staticmethod
    def _tabulate(log_pmf: LogPmf, n_max: int, name: str) -> np.ndarray:
        if callable(log_pmf):
            return np.array([log_pmf(n) for n in range(n_max + 1)], dtype=float)

        values = np.asarray(log_pmf, dtype=float)
        if values.ndim != 1 or len(values) < n_max + 1:
            raise ConstructionError(f"{name} log-pmf must be defined on [0, {n_max}], "
                                    f"got {len(values)} values")
        return values[:n_max + 1].copy()

    def log_clutter_pmf(self, n_max: int) -> np.ndarray:
        """log mu(n) for n = 0..n_max."""
        return self._tabulate(self.clutter_log_pmf, n_max, "clutter")

    def log_newborn_pmf(self, n_max: int) -> np.ndarray:
        """log nu(n) for n = 0..n_max."""
        return self._tabulate(self.newborn_log_pmf, n_max, "newborn")

    def log_detection_pmf(self, n_targets: int, k_max: Optional[int] = None) -> np.ndarray:
        """
        log Binomial(k; N, P_D) for k = 0..min(k_max, N).

        Args:
            n_targets: Number of existing targets N
            k_max: Largest detection count needed (default N)

        Returns:
            Array of log-probabilities
        """
        if k_max is None or k_max > n_targets:
            k_max = n_targets
        if n_targets == 0:
            return np.zeros(1)
        k = np.arange(k_max + 1)
        with np.errstate(divide='ignore'):
            return np.asarray(binom.logpmf(k, n_targets, self.detection_prob), dtype=float)

    def log_count_normalizer(self, n_observations: int, n_targets: int) -> float:
        """
        log P(M | N): total mass of all count splits K + B + C = M.

        Args:
            n_observations: Number of observations M
            n_targets: Number of existing targets N

        Returns:
            log sum_{K+B+C=M} Binom(K) nu(B) mu(C)
        """
        M = n_observations
        log_binom = self.log_detection_pmf(n_targets, M)
        log_nu = self.log_newborn_pmf(M)
        log_mu = np.append(self.log_clutter_pmf(M), -np.inf)

        K = np.arange(len(log_binom))[:, None]
        B = np.arange(M + 1)[None, :]
        C = np.where(M - K - B >= 0, M - K - B, M + 1)
        return log_sum_p_array(log_binom[:, None] + log_nu[None, :] + log_mu[C])

    def _sample_count(self, log_pmf: LogPmf, random_state: np.random.Generator, n_max: int) -> int:
        distribution = CategoricalDistribution(self._tabulate(log_pmf, n_max, "count"))
        return distribution.sample(random_state)

    def sample_clutter_count(self, random_state: np.random.Generator, n_max: int = 50) -> int:
        """Draw a clutter count from mu truncated to [0, n_max]."""
        return self._sample_count(self.clutter_log_pmf, random_state, n_max)

    def sample_newborn_count(self, random_state: np.random.Generator, n_max: int = 50) -> int:
        """Draw a newborn count from nu truncated to [0, n_max]."""
        return self._sample_count(self.newborn_log_pmf, random_state, n_max)


class LikelihoodModel(ABC):
    """
    Abstract base class for observation likelihoods.

    For every observation the model yields a log-likelihood under each
    hypothesis: clutter, each existing target, newborn target.
    """

    @abstractmethod
    def log_clutter_likelihood(self, observations: ObservationSet, m: int) -> float:
        """Log-likelihood of observation m being clutter."""
        pass

    @abstractmethod
    def log_newborn_likelihood(self, observations: ObservationSet, m: int) -> float:
        """Log-likelihood of observation m stemming from a newborn target."""
        pass

    @abstractmethod
    def log_target_likelihood(self, observations: ObservationSet, m: int,
                              targets: TargetSet, n: int) -> float:
        """Log-likelihood of observation m stemming from existing target n."""
        pass

    def log_likelihood_table(self, observations: ObservationSet, targets: TargetSet) -> np.ndarray:
        """
        Log-likelihoods of all observations under all hypotheses.

        Args:
            observations: Observations of the time step
            targets: Existing target predictions

        Returns:
            Array of shape (M, N + 2); column 0 is clutter, columns 1..N the
            targets and column N + 1 a newborn target
        """
        M, N = len(observations), len(targets)
        table = np.empty((M, N + 2))
        for m in range(M):
            table[m, 0] = self.log_clutter_likelihood(observations, m)
            for n in range(N):
                table[m, n + 1] = self.log_target_likelihood(observations, m, targets, n)
            table[m, N + 1] = self.log_newborn_likelihood(observations, m)
        return table


class GaussianLikelihoodModel(LikelihoodModel):
    """
    Linear-Gaussian observation model with constant clutter/newborn densities.

    Model:
        z = H·x_n + v,  v ~ N(0, R)        for an observation of target n
        p(z | clutter) = exp(clutter_log_density)
        p(z | newborn) = exp(newborn_log_density)

    The likelihood of target n integrates over its predicted state
    N(x_n, P_n): N(z; H·x_n, H·P_n·H^T + R).
    """

    def __init__(self, H: np.ndarray, R: np.ndarray,
                 clutter_log_density: float, newborn_log_density: float):
        """
        Initialize the model.

        Args:
            H: Observation matrix (obs_dim, state_dim)
            R: Observation noise covariance (obs_dim, obs_dim)
            clutter_log_density: Log density of clutter observations
            newborn_log_density: Log density of newborn observations
        """
        H = np.atleast_2d(np.asarray(H, dtype=float))
        R = np.atleast_2d(np.asarray(R, dtype=float))
        if R.shape != (H.shape[0], H.shape[0]):
            raise ConstructionError(f"R must be ({H.shape[0]}, {H.shape[0]}), got {R.shape}")

        self.H = H
        self.R = R
        self.clutter_log_density = float(clutter_log_density)
        self.newborn_log_density = float(newborn_log_density)

    @property
    def obs_dim(self) -> int:
        return self.H.shape[0]

    def _predicted_observation(self, targets: TargetSet, n: int) -> Tuple[np.ndarray, np.ndarray]:
        if targets.state_dim != self.H.shape[1]:
            raise ConstructionError(f"target states must have dimension {self.H.shape[1]}, "
                                    f"got {targets.state_dim}")
        mean = self.H @ targets.means[n]
        cov = self.R
        if targets.covs is not None:
            cov = self.H @ targets.covs[n] @ self.H.T + self.R
        return mean, cov

    def log_clutter_likelihood(self, observations: ObservationSet, m: int) -> float:
        return self.clutter_log_density

    def log_newborn_likelihood(self, observations: ObservationSet, m: int) -> float:
        return self.newborn_log_density

    def log_target_likelihood(self, observations: ObservationSet, m: int,
                              targets: TargetSet, n: int) -> float:
        mean, cov = self._predicted_observation(targets, n)
        return float(multivariate_normal.logpdf(observations.positions[m], mean=mean, cov=cov))

    def sample_target_observation(self, targets: TargetSet, n: int,
                                  random_state: np.random.Generator) -> np.ndarray:
        """Sample an observation of target n."""
        mean, cov = self._predicted_observation(targets, n)
        return random_state.multivariate_normal(mean, cov)


class TabularLikelihoodModel(LikelihoodModel):
    """Likelihood model backed by a precomputed (M, N + 2) log-likelihood table."""

    def __init__(self, table: np.ndarray):
        table = np.asarray(table, dtype=float)
        if table.ndim != 2 or table.shape[1] < 2:
            raise ConstructionError(f"table must be (M, N + 2), got {table.shape}")
        self.table = table

    def log_clutter_likelihood(self, observations: ObservationSet, m: int) -> float:
        return float(self.table[m, 0])

    def log_newborn_likelihood(self, observations: ObservationSet, m: int) -> float:
        return float(self.table[m, -1])

    def log_target_likelihood(self, observations: ObservationSet, m: int,
                              targets: TargetSet, n: int) -> float:
        return float(self.table[m, n + 1])

    def log_likelihood_table(self, observations: ObservationSet, targets: TargetSet) -> np.ndarray:
        expected = (len(observations), len(targets) + 2)
        if self.table.shape != expected:
            raise ConstructionError(f"likelihood table must be {expected}, got {self.table.shape}")
        return self.table.copy()


def uniform_log_density(low: Sequence[float], high: Sequence[float]) -> float:
    """Log density of the uniform distribution on the box [low, high]."""
    extent = np.asarray(high, dtype=float) - np.asarray(low, dtype=float)
    if np.any(extent <= 0):
        raise ValueError(f"high must exceed low in every dimension, got {low} and {high}")
    return float(-np.sum(np.log(extent)))


def enumerate_associations(n_observations: int, n_targets: int) -> Iterator[Tuple[int, ...]]:
    """
    Enumerate all exclusive associations as tuples of categorical columns.

    Only feasible for small problems: there are up to (N + 2)^M candidates.

    Args:
        n_observations: Number of observations M
        n_targets: Number of existing targets N

    Yields:
        Tuple of M columns (0 = clutter, 1..N = target, N + 1 = newborn)
    """
    for columns in product(range(n_targets + 2), repeat=n_observations):
        claimed = [c for c in columns if 1 <= c <= n_targets]
        if len(claimed) == len(set(claimed)):
            yield columns


def log_association_prior(columns: Sequence[int], model: GenerativeAssociationModel,
                          n_targets: int, log_normalizer: Optional[float] = None) -> float:
    """
    Exact prior log-probability of a complete association.

    P(c) = Binom(K) nu(B) mu(C) K! B! C! (N-K)! / (M! N! P(M | N))

    Args:
        columns: Categorical column of every observation
        model: Generative association model
        n_targets: Number of existing targets N
        log_normalizer: Precomputed log P(M | N) (computed if None)

    Returns:
        Log prior probability
    """
    M, N = len(columns), n_targets
    columns = np.asarray(columns, dtype=int)
    K = int(np.sum((columns >= 1) & (columns <= N)))
    B = int(np.sum(columns == N + 1))
    C = M - K - B

    if log_normalizer is None:
        log_normalizer = model.log_count_normalizer(M, N)

    log_counts = (model.log_detection_pmf(N)[K]
                  + model.log_newborn_pmf(M)[B]
                  + model.log_clutter_pmf(M)[C])
    log_arrangements = (gammaln(K + 1) + gammaln(B + 1) + gammaln(C + 1) + gammaln(N - K + 1)
                        - gammaln(M + 1) - gammaln(N + 1))
    return float(log_counts + log_arrangements - log_normalizer)


def exact_association_posterior(model: GenerativeAssociationModel,
                                log_likelihood_table: np.ndarray) -> Dict[Tuple[int, ...], float]:
    """
    Exact posterior over all associations by enumeration.

    Args:
        model: Generative association model
        log_likelihood_table: Log-likelihoods, shape (M, N + 2)

    Returns:
        Dictionary mapping column tuples to posterior log-probabilities
    """
    M, width = log_likelihood_table.shape
    N = width - 2
    log_normalizer = model.log_count_normalizer(M, N)

    log_joint = {}
    for columns in enumerate_associations(M, N):
        log_lik = sum(log_likelihood_table[m, c] for m, c in enumerate(columns))
        log_joint[columns] = log_association_prior(columns, model, N, log_normalizer) + log_lik

    log_evidence = log_sum_p_array(list(log_joint.values()))
    return {columns: value - log_evidence for columns, value in log_joint.items()}


def generate_frame(model: GenerativeAssociationModel, targets: TargetSet,
                   likelihood: GaussianLikelihoodModel,
                   low: Sequence[float], high: Sequence[float],
                   random_state: Optional[np.random.Generator] = None) -> Tuple[ObservationSet, DataAssociation]:
    """
    Simulate the observations of one time step.

    Each target is detected with probability P_D and observed through the
    likelihood model; newborn and clutter observations are placed uniformly
    in the box [low, high]. Observations are shuffled.

    Args:
        model: Generative association model
        targets: Existing target predictions (used as true states)
        likelihood: Gaussian observation model
        low: Lower corner of the observation domain
        high: Upper corner of the observation domain
        random_state: Optional numpy random generator for reproducibility

    Returns:
        Tuple of (observations, ground_truth) where newborn IDs start at
        max(target IDs) + 1
    """
    if random_state is None:
        random_state = np.random.default_rng()
    low = np.asarray(low, dtype=float)
    high = np.asarray(high, dtype=float)

    positions = []
    sources = []    # target ID, 'newborn' or None (clutter)

    for n in range(len(targets)):
        if random_state.random() < model.detection_prob:
            positions.append(likelihood.sample_target_observation(targets, n, random_state))
            sources.append(int(targets.ids[n]))

    for _ in range(model.sample_newborn_count(random_state)):
        positions.append(random_state.uniform(low, high))
        sources.append('newborn')

    for _ in range(model.sample_clutter_count(random_state)):
        positions.append(random_state.uniform(low, high))
        sources.append(None)

    order = random_state.permutation(len(positions))
    if positions:
        observations = ObservationSet(np.array(positions)[order])
    else:
        observations = ObservationSet(np.zeros((0, len(low))))

    ground_truth = DataAssociation()
    next_id = int(np.max(targets.ids)) + 1 if len(targets) else 1
    for m, idx in enumerate(order):
        source = sources[idx]
        if source == 'newborn':
            ground_truth.set_association(next_id, m, newborn=True)
            next_id += 1
        elif source is not None:
            ground_truth.set_association(source, m)

    return observations, ground_truth
