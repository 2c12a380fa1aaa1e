"""
Sequential sampling of exclusive data associations.

This module provides:
1. SequentialAssociationSampler - Draws a data association one observation
   at a time from incrementally updated association priors combined with
   the observation likelihoods
"""

import logging
import numpy as np
from typing import List, Optional, TextIO, Tuple

from .association import AssociationHypothesis, DataAssociation, HypothesisType
from .models import (
    ConstructionError,
    GenerativeAssociationModel,
    LikelihoodModel,
    ObservationSet,
    TargetSet
)
from .numerics import CategoricalDistribution, log_sum_p_array


class SequentialAssociationSampler:
    """
    Sequential sampler of data associations for one time step.

    The association variable c_m of every observation is drawn in turn from

        p(c_m | c_{1:m-1}, Z) ∝ p(z_m | c_m) · p(c_m | c_{1:m-1}, M, N)

    where the prior term is the exact marginal over every way the remaining
    observations can be split into clutter (mu), newborn targets (nu) and
    detections of the unclaimed targets (Binomial(N, P_D)).

    With k claimed targets, b newborns and c clutter observations committed,
    the completion sum

        S(k, b, c) = sum_{K,B} Binom(K)·K!/(K-k)! · nu(B)·B!/(B-b)! · mu(C)·C!/(C-c)!

    (C = M - K - B) gives the priors S(k,b,c+1)/T for clutter,
    S(k+1,b,c)/(T·(N-k)) for each unclaimed target and S(k,b+1,c)/T for a
    newborn, with T the sum of the three. The factors over K, B and C are
    kept in double-buffered log tables (current count, count + 1) that are
    updated by one multiplication when a branch is taken.

    Only the likelihood of the current observation enters each step, so the
    path probability is that of the proposal, not the exact posterior.
    """

    def __init__(self, model: GenerativeAssociationModel,
                 observations: ObservationSet,
                 targets: TargetSet,
                 likelihood: LikelihoodModel,
                 random_state: Optional[np.random.Generator] = None,
                 max_observations: Optional[int] = None):
        """
        Initialize the sampler.

        Args:
            model: Generative association model (mu, nu, P_D)
            observations: Observations of the time step (ObservationSet or (M, d) array)
            targets: Predictions of the existing targets
            likelihood: Observation likelihood model
            random_state: Optional numpy random generator
            max_observations: Largest number of observations expected over the
                sampler's lifetime; count pmfs are tabulated once up to it
        """
        if not 0.0 <= model.detection_prob <= 1.0:
            raise ConstructionError(f"detection_prob must be in [0, 1], got {model.detection_prob}")
        if max_observations is not None and max_observations < 0:
            raise ConstructionError(f"max_observations must be non-negative, got {max_observations}")

        self.model = model
        self.max_observations = max_observations
        self.random_state = random_state if random_state is not None else np.random.default_rng()
        self._newborn_start_id = None
        self.logger = logging.getLogger(__name__)

        # Tabulated count pmfs
        self._log_mu = None
        self._log_nu = None
        if max_observations is not None:
            self._tabulate_count_pmfs(max_observations)

        # Last draw
        self.step_distributions: List[CategoricalDistribution] = []
        self.step_log_probs: List[float] = []
        self.step_hypotheses: List[AssociationHypothesis] = []
        self._last_sample = None
        self._last_log_p = np.nan

        self.set_new_observations(observations, targets, likelihood)

    @property
    def newborn_start_id(self) -> int:
        """
        First ID minted for newborn targets.

        Defaults to one above the largest existing target ID (1 without
        targets) unless set explicitly with set_newborn_start_id().
        """
        if self._newborn_start_id is not None:
            return self._newborn_start_id
        return int(np.max(self.targets.ids)) + 1 if len(self.targets) else 1

    def set_newborn_start_id(self, start_id: Optional[int]):
        """
        Set the first ID minted for newborn targets in subsequent draws.

        Args:
            start_id: Start ID, must exceed every existing target ID
                (None restores the default)
        """
        if start_id is not None:
            start_id = int(start_id)
            self._check_newborn_start_id(start_id, self.targets)
        self._newborn_start_id = start_id

    @staticmethod
    def _check_newborn_start_id(start_id: Optional[int], targets: TargetSet):
        if start_id is not None and len(targets) and start_id <= np.max(targets.ids):
            raise ConstructionError(f"newborn start ID {start_id} collides with existing "
                                    f"target IDs up to {int(np.max(targets.ids))}")

    def set_new_observations(self, observations: ObservationSet, targets: TargetSet,
                             likelihood: LikelihoodModel):
        """
        Replace observations, target predictions and likelihood model.

        Rebuilds the likelihood table and all cached state and invalidates
        the probability of the last sample.

        Args:
            observations: Observations of the new time step
            targets: Predictions of the existing targets
            likelihood: Observation likelihood model
        """
        if not isinstance(observations, ObservationSet):
            observations = ObservationSet(observations)

        table = np.asarray(likelihood.log_likelihood_table(observations, targets), dtype=float)
        expected = (len(observations), len(targets) + 2)
        if table.shape != expected:
            raise ConstructionError(f"likelihood table must be {expected}, got {table.shape}")
        self._check_newborn_start_id(self._newborn_start_id, targets)

        self.observations = observations
        self.targets = targets
        self.likelihood = likelihood
        self.log_likelihoods = table
        self.M = len(observations)
        self.N = len(targets)

        self._reset()

    def _tabulate_count_pmfs(self, n_max: int):
        self._log_mu = self.model.log_clutter_pmf(n_max)
        self._log_nu = self.model.log_newborn_pmf(n_max)

    def _reset(self):
        """Rebuild the tables that depend on M and N."""
        M, N = self.M, self.N
        self.min_mn = min(M, N)

        if self._log_mu is None or len(self._log_mu) < M + 1:
            if self.max_observations is not None:
                self.logger.warning(f"{M} observations exceed max_observations="
                                    f"{self.max_observations}, re-tabulating count distributions")
            self._tabulate_count_pmfs(M)

        self._log_binom = self.model.log_detection_pmf(N, self.min_mn)

        with np.errstate(divide='ignore'):
            self._log_int = np.log(np.arange(M + 1, dtype=float))

        # (K, B) -> C = M - K - B; infeasible pairs point at a trailing -inf slot
        K = np.arange(self.min_mn + 1)[:, None]
        B = np.arange(M + 1)[None, :]
        self._clutter_index = np.where(M - K - B >= 0, M - K - B, M + 1)

        # Double buffers: row [i] holds count j, row [1 - i] count j + 1
        self._f = np.full((2, self.min_mn + 1), -np.inf)
        self._g = np.full((2, M + 1), -np.inf)
        self._h = np.full((2, M + 2), -np.inf)
        self._fi = self._gi = self._hi = 0

        self._last_sample = None
        self._last_log_p = np.nan

        self.logger.debug(f"Reset association sampler for M={M} observations, N={N} targets")

    def _completion_sum(self, f: np.ndarray, g: np.ndarray, h: np.ndarray) -> float:
        """log sum_{K,B} f[K] + g[B] + h[M - K - B] in the log domain."""
        return log_sum_p_array(f[:, None] + g[None, :] + h[self._clutter_index])

    def _begin_draw(self):
        """Initialize the recursion tables for k = b = c = 0."""
        M = self.M
        f, g, h = self._f, self._g, self._h
        self._fi = self._gi = self._hi = 0

        f[0] = self._log_binom
        f[1] = self._log_binom + self._log_int[:self.min_mn + 1]
        g[0] = self._log_nu[:M + 1]
        g[1] = g[0] + self._log_int
        h[0, :M + 1] = self._log_mu[:M + 1]
        h[1, :M + 1] = h[0, :M + 1] + self._log_int

    def _advance_table(self, table: np.ndarray, current: int, count: int) -> int:
        """
        Move a double-buffered table to a new committed count.

        The buffer for `count` becomes current and the spare buffer is
        refilled for count + 1: t_{j+1}(n) = t_j(n) + log(n - j).

        Returns:
            Index of the new current buffer
        """
        new_current = 1 - current
        shift = np.clip(np.arange(table.shape[1]) - count, 0, self.M)
        table[current] = table[new_current] + self._log_int[shift]
        return new_current

    def macro_log_priors(self, k: int) -> Tuple[float, float, float]:
        """
        Prior log-probabilities of the three hypothesis classes for the next observation.

        Args:
            k: Number of targets claimed so far

        Returns:
            Tuple of (clutter, per unclaimed existing target, newborn)
        """
        f, g, h = self._f, self._g, self._h
        fi, gi, hi = self._fi, self._gi, self._hi

        s_clutter = self._completion_sum(f[fi], g[gi], h[1 - hi])
        s_newborn = self._completion_sum(f[fi], g[1 - gi], h[hi])
        s_exist = self._completion_sum(f[1 - fi], g[gi], h[hi]) if k < self.N else -np.inf

        log_total = log_sum_p_array([s_clutter, s_exist, s_newborn])
        if not np.isfinite(log_total):
            raise ValueError("Association prefix has zero prior probability; "
                             "check that mu, nu and P_D admit the number of observations")

        log_exist = s_exist - log_total - np.log(self.N - k) if k < self.N else -np.inf
        return s_clutter - log_total, log_exist, s_newborn - log_total

    def _step_log_weights(self, m: int, k: int, b: int, claimed: np.ndarray) -> np.ndarray:
        """
        Unnormalized log-weights of observation m over [clutter, targets, newborn].

        Args:
            m: Observation index
            k: Number of claimed targets
            b: Number of minted newborns
            claimed: Boolean mask of claimed targets, shape (N,)

        Returns:
            Log-weights, shape (N + 2,)
        """
        log_clutter, log_exist, log_newborn = self.macro_log_priors(k)
        row = self.log_likelihoods[m]

        weights = np.empty(self.N + 2)
        weights[0] = row[0] + log_clutter
        weights[1:-1] = np.where(claimed, -np.inf, row[1:-1] + log_exist)
        weights[-1] = row[-1] + log_newborn
        return weights

    def _commit(self, m: int, hypothesis: AssociationHypothesis, k: int, b: int):
        """
        Update the recursion state after observation m was assigned.

        Args:
            m: Observation index
            hypothesis: Sampled hypothesis
            k: Number of claimed targets including observation m
            b: Number of minted newborns including observation m
        """
        if hypothesis.kind is HypothesisType.CLUTTER:
            self._hi = self._advance_table(self._h, self._hi, m + 1 - k - b)
        elif hypothesis.kind is HypothesisType.EXISTING:
            self._fi = self._advance_table(self._f, self._fi, k)
        else:
            self._gi = self._advance_table(self._g, self._gi, b)

    def draw_sample(self) -> DataAssociation:
        """
        Draw a data association.

        Returns:
            DataAssociation mapping target IDs (existing and newly minted)
            to observation indices; clutter observations are absent
        """
        return self.draw_sample_debug(None, None)

    def draw_sample_debug(self, ground_truth: Optional[DataAssociation] = None,
                          sink: Optional[TextIO] = None) -> DataAssociation:
        """
        Draw a data association, reporting disagreements with a reference.

        Sampling is identical to draw_sample(). If both ground_truth and
        sink are given, one report is written to sink for every observation
        whose sampled hypothesis differs from the reference.

        Args:
            ground_truth: Optional reference association
            sink: Optional text stream for the reports

        Returns:
            Sampled DataAssociation
        """
        self._begin_draw()

        association = DataAssociation()
        claimed = np.zeros(self.N, dtype=bool)
        next_id = self.newborn_start_id
        k = b = 0
        log_path = 0.0

        expected = None
        if ground_truth is not None and sink is not None:
            expected = ground_truth.hypotheses(self.targets.ids, self.M)

        self.step_distributions = []
        self.step_log_probs = []
        self.step_hypotheses = []

        for m in range(self.M):
            distribution = CategoricalDistribution(self._step_log_weights(m, k, b, claimed))
            column = distribution.sample(self.random_state)
            hypothesis = AssociationHypothesis.from_column(column, self.N)

            if expected is not None and hypothesis != expected[m]:
                sink.write(self._mismatch_report(m, hypothesis, expected[m], next_id,
                                                 ground_truth, distribution))

            log_path += distribution.log_p(column)
            self.step_distributions.append(distribution)
            self.step_log_probs.append(distribution.log_p(column))
            self.step_hypotheses.append(hypothesis)

            if hypothesis.kind is HypothesisType.EXISTING:
                association.set_association(self.targets.ids[hypothesis.target], m)
                claimed[hypothesis.target] = True
                k += 1
            elif hypothesis.kind is HypothesisType.NEWBORN:
                association.set_association(next_id, m, newborn=True)
                next_id += 1
                b += 1

            self._commit(m, hypothesis, k, b)

        self._last_sample = association
        self._last_log_p = log_path

        self.logger.debug(f"Sampled association with {k} detections, {b} newborns, "
                          f"{self.M - k - b} clutter; log p = {log_path:.4f}")
        return association

    def _label(self, hypothesis: AssociationHypothesis, newborn_id: Optional[int]) -> str:
        if hypothesis.kind is HypothesisType.CLUTTER:
            return "0 (clutter)"
        if hypothesis.kind is HypothesisType.EXISTING:
            return f"{self.targets.ids[hypothesis.target]} ({hypothesis.target})"
        return f"{newborn_id} (newborn)"

    def _mismatch_report(self, m: int, hypothesis: AssociationHypothesis,
                         expected: AssociationHypothesis, next_id: int,
                         ground_truth: DataAssociation,
                         distribution: CategoricalDistribution) -> str:
        sampled_label = self._label(hypothesis, next_id)
        expected_label = self._label(expected, ground_truth.target_of(m))
        return (f"Observation {m} incorrectly associated to {sampled_label} "
                f"instead of {expected_label}\n{distribution}\n")

    def p(self, x: DataAssociation) -> float:
        """
        Probability of the path that produced x.

        Only valid for the object returned by the most recent draw on this
        sampler; for any other object -1 is returned.
        """
        if self._last_sample is None or x is not self._last_sample:
            return -1.0
        return float(np.exp(self._last_log_p))

    def log_p(self, x: DataAssociation) -> float:
        """
        Log-probability of the path that produced x.

        Only valid for the object returned by the most recent draw on this
        sampler; for any other object NaN is returned.
        """
        if self._last_sample is None or x is not self._last_sample:
            return np.nan
        return float(self._last_log_p)

    def get_diagnostics(self) -> dict:
        """
        Return diagnostic information about the last draw.

        Returns:
            Dictionary containing:
            - log_path_probability: Log-probability of the sampled path
            - step_log_probs: Log-probability of each chosen hypothesis
            - step_entropy: Entropy of each step's categorical distribution
            - n_clutter, n_existing, n_newborn: Hypothesis counts
        """
        kinds = [h.kind for h in self.step_hypotheses]
        entropy = [float(-np.sum(d.probs[d.probs > 0] * d.log_probs[d.probs > 0]))
                   for d in self.step_distributions]
        return {
            'log_path_probability': self._last_log_p,
            'step_log_probs': np.array(self.step_log_probs),
            'step_entropy': np.array(entropy),
            'n_clutter': kinds.count(HypothesisType.CLUTTER),
            'n_existing': kinds.count(HypothesisType.EXISTING),
            'n_newborn': kinds.count(HypothesisType.NEWBORN)
        }
