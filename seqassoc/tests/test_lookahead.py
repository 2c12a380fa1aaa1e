"""Tests for the lookahead sampler, its windows and probability tree."""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import numpy as np
import pytest
from seqassoc.association import HypothesisType
from seqassoc.lookahead import NeighborLookaheadSampler, ProbabilityTree, neighbor_windows
from seqassoc.models import (
    ObservationSet,
    TabularLikelihoodModel,
    exact_association_posterior
)
from seqassoc.samplers import SequentialAssociationSampler


class TestNeighborWindows:
    """Tests for neighbor_windows."""

    def test_nearest_successors(self, line_observations):
        """Test windows hold the nearest later observations."""
        windows = neighbor_windows(line_observations.pairwise_distances(), max_neighbors=2)
        assert windows[0].tolist() == [1, 2]
        assert windows[1].tolist() == [2, 3]
        assert windows[2].tolist() == [3]
        assert windows[3].tolist() == []

    def test_distance_cap(self, line_observations):
        """Test the distance cap drops far observations."""
        distances = line_observations.pairwise_distances()
        assert neighbor_windows(distances, max_distance=2.0)[0].tolist() == [1]
        assert neighbor_windows(distances, max_neighbors=3, max_distance=3.0)[0].tolist() == [1, 2]

    def test_negative_cap_is_unbounded(self, line_observations):
        """Test a negative cap leaves that dimension unbounded."""
        distances = line_observations.pairwise_distances()
        assert neighbor_windows(distances, max_neighbors=-1, max_distance=3.0)[0].tolist() == [1, 2]
        assert neighbor_windows(distances, max_neighbors=-1, max_distance=-1.0)[0].tolist() == [1, 2, 3]

    def test_disabled(self, line_observations):
        """Test zero caps and missing caps disable lookahead."""
        distances = line_observations.pairwise_distances()
        for kwargs in ({}, {'max_neighbors': 0}, {'max_distance': 0}, {'max_neighbors': 0, 'max_distance': 5.0}):
            assert all(len(w) == 0 for w in neighbor_windows(distances, **kwargs))

    def test_ties_keep_index_order(self):
        """Test equally distant successors are ordered by index."""
        obs = ObservationSet(np.array([[0.0], [1.0], [-1.0], [2.0]]))
        windows = neighbor_windows(obs.pairwise_distances(), max_neighbors=2)
        assert windows[0].tolist() == [1, 2]

    def test_empty(self):
        """Test no observations yields no windows."""
        assert neighbor_windows(np.zeros((0, 0)), max_neighbors=2) == []


class TestProbabilityTree:
    """Tests for ProbabilityTree."""

    def build_tree(self):
        tree = ProbabilityTree()
        tree.root = tree.add_node(0, 0, 0, 0.0)
        clutter = tree.add_node(1, 0, 0, -1.0, HypothesisType.CLUTTER)
        existing = tree.add_node(1, 1, 0, -0.5, HypothesisType.EXISTING)
        newborn = tree.add_node(1, 0, 1, -2.0, HypothesisType.NEWBORN)
        for node in (clutter, existing, newborn):
            tree.set_child(tree.root, tree.hypothesis[node], node)
        grandchild = tree.add_node(2, 1, 1, -3.0, HypothesisType.NEWBORN)
        tree.set_child(existing, HypothesisType.NEWBORN, grandchild)
        tree.add_node(2, 0, 0, -4.0, HypothesisType.CLUTTER)
        tree.set_child(clutter, HypothesisType.CLUTTER, 5)
        return tree

    def test_structure(self):
        """Test node bookkeeping."""
        tree = self.build_tree()
        assert len(tree) == 6
        assert tree.is_expanded(tree.root)
        assert tree.child(tree.root, HypothesisType.EXISTING) == 2
        assert tree.subtree(2) == [2, 4]
        assert tree.subtree(0) == [0, 1, 5, 2, 4, 3]

    def test_advance_keeps_chosen_subtree(self):
        """Test advancing compacts the arena to the chosen subtree."""
        tree = self.build_tree()
        root = tree.advance(HypothesisType.EXISTING)

        assert root == 0
        assert len(tree) == 2
        assert tree.n_existing == [1, 1]
        assert tree.step == [1, 2]
        assert tree.log_prior == [-0.5, -3.0]
        assert tree.child(0, HypothesisType.NEWBORN) == 1
        assert tree.child(0, HypothesisType.CLUTTER) == -1
        assert not tree.is_expanded(1)

    def test_advance_missing_child_raises(self):
        """Test advancing to a child that does not exist."""
        tree = ProbabilityTree()
        tree.root = tree.add_node(0, 0, 0, 0.0)
        with pytest.raises(ValueError):
            tree.advance(HypothesisType.CLUTTER)

    def test_copy_is_independent(self):
        """Test advancing a copy leaves the original untouched."""
        tree = self.build_tree()
        other = tree.copy()
        other.advance(HypothesisType.EXISTING)

        assert len(other) == 2
        assert len(tree) == 6
        assert tree.root == 0
        assert tree.child(tree.root, HypothesisType.EXISTING) == 2
        assert tree.log_prior == [0.0, -1.0, -0.5, -2.0, -3.0, -4.0]

    def test_clear(self):
        """Test clearing drops every node."""
        tree = self.build_tree()
        tree.clear()
        assert len(tree) == 0
        assert tree.root == -1


class TestNeighborLookaheadSampler:
    """Tests for NeighborLookaheadSampler."""

    @pytest.fixture
    def gaussian_scene(self, two_targets, gaussian_likelihood):
        """Five observations, some near the targets."""
        observations = ObservationSet(np.array([[0.2, 0.1], [5.3, 4.8], [0.5, -0.4],
                                                [9.0, -9.0], [4.6, 5.2]]))
        return observations, two_targets, gaussian_likelihood

    def test_initialization(self, busy_model, gaussian_scene, rng):
        """Test windows are built on construction."""
        observations, targets, likelihood = gaussian_scene
        sampler = NeighborLookaheadSampler(busy_model, observations, targets, likelihood,
                                           max_neighbors=2, random_state=rng)
        assert len(sampler.windows) == 5
        assert all(len(w) <= 2 for w in sampler.windows)
        assert len(sampler.windows[-1]) == 0

    def test_without_lookahead_matches_base(self, busy_model, gaussian_scene):
        """Test empty windows reproduce the base sampler draw for draw."""
        observations, targets, likelihood = gaussian_scene
        for kwargs in ({}, {'max_neighbors': 0}, {'max_distance': 0}):
            base = SequentialAssociationSampler(busy_model, observations, targets, likelihood,
                                                random_state=np.random.default_rng(3))
            lookahead = NeighborLookaheadSampler(busy_model, observations, targets, likelihood,
                                                 random_state=np.random.default_rng(3), **kwargs)
            base.set_newborn_start_id(100)
            lookahead.set_newborn_start_id(100)

            for _ in range(10):
                x = base.draw_sample()
                y = lookahead.draw_sample()
                assert x == y
                for d_base, d_lookahead in zip(base.step_distributions, lookahead.step_distributions):
                    assert np.allclose(d_base.probs, d_lookahead.probs)
                assert np.isclose(base.log_p(x), lookahead.log_p(y))

    def test_full_window_samples_exact_posterior(self, busy_model, two_targets, random_table, rng):
        """Test lookahead over all later observations gives the exact posterior."""
        observations = ObservationSet(rng.normal(size=(4, 2)))
        sampler = NeighborLookaheadSampler(busy_model, observations, two_targets, random_table,
                                           max_neighbors=4, random_state=rng)
        sampler.set_newborn_start_id(100)
        posterior = exact_association_posterior(busy_model, sampler.log_likelihoods)

        for _ in range(20):
            x = sampler.draw_sample()
            columns = x.to_columns(two_targets.ids, 4)
            assert np.isclose(sampler.log_p(x), posterior[columns])

    def test_full_window_first_step_marginal(self, busy_model, two_targets, random_table, rng):
        """Test the first categorical is the posterior marginal of observation 0."""
        observations = ObservationSet(rng.normal(size=(4, 2)))
        sampler = NeighborLookaheadSampler(busy_model, observations, two_targets, random_table,
                                           max_neighbors=-1, max_distance=-1.0, random_state=rng)
        sampler.set_newborn_start_id(100)
        sampler.draw_sample()

        posterior = exact_association_posterior(busy_model, sampler.log_likelihoods)
        marginal = np.zeros(4)
        for columns, log_p in posterior.items():
            marginal[columns[0]] += np.exp(log_p)
        assert np.allclose(sampler.step_distributions[0].probs, marginal)

    def test_partial_window_valid_samples(self, busy_model, gaussian_scene, rng):
        """Test lookahead samples are exclusive and normalized."""
        observations, targets, likelihood = gaussian_scene
        sampler = NeighborLookaheadSampler(busy_model, observations, targets, likelihood,
                                           max_neighbors=2, max_distance=4.0, random_state=rng)
        sampler.set_newborn_start_id(100)
        for _ in range(20):
            x = sampler.draw_sample()
            assert len(set(x.targets.values())) == len(x)
            assert sampler.log_p(x) <= 0.0
            for d in sampler.step_distributions:
                assert abs(np.sum(d.probs) - 1.0) < 1e-9

    def test_tree_follows_sampled_path(self, busy_model, gaussian_scene, rng):
        """Test the tree root tracks the committed counts."""
        observations, targets, likelihood = gaussian_scene
        sampler = NeighborLookaheadSampler(busy_model, observations, targets, likelihood,
                                           max_neighbors=2, random_state=rng)
        sampler.set_newborn_start_id(100)
        x = sampler.draw_sample()

        tree = sampler.tree
        assert tree.root == 0
        assert tree.step[0] == 5
        assert tree.n_existing[0] == x.n_existing
        assert tree.n_newborn[0] == x.n_newborn

    def test_initial_tree_reused_across_draws(self, busy_model, gaussian_scene, rng):
        """Test the tree under the initial root is built once per observation set."""
        observations, targets, likelihood = gaussian_scene
        sampler = NeighborLookaheadSampler(busy_model, observations, targets, likelihood,
                                           max_neighbors=2, random_state=rng)
        sampler.set_newborn_start_id(100)
        assert sampler._initial_tree is None

        sampler.draw_sample()
        initial = sampler._initial_tree
        assert initial is not None
        assert initial.root == 0
        assert initial.step[0] == 0
        assert initial.is_expanded(initial.root)
        size = len(initial)
        first_probs = sampler.step_distributions[0].probs.copy()

        for _ in range(5):
            sampler.draw_sample()
            assert sampler._initial_tree is initial
            assert len(initial) == size
            assert sampler.tree is not initial
            assert np.allclose(sampler.step_distributions[0].probs, first_probs)

    def test_prior_memo_reset_on_new_observations(self, busy_model, two_targets, rng):
        """Test new observations rebuild the windows and cached priors."""
        sampler = NeighborLookaheadSampler(busy_model, ObservationSet(np.zeros((2, 2))), two_targets,
                                           TabularLikelihoodModel(np.zeros((2, 4))),
                                           max_neighbors=1, random_state=rng)
        sampler.set_newborn_start_id(100)
        sampler.draw_sample()
        assert len(sampler._prior_memo) > 0

        sampler.set_new_observations(ObservationSet(rng.normal(size=(5, 2))), two_targets,
                                     TabularLikelihoodModel(np.zeros((5, 4))))
        assert len(sampler._prior_memo) == 0
        assert sampler._initial_tree is None
        assert len(sampler.windows) == 5
        x = sampler.draw_sample()
        assert sampler.p(x) > 0.0

    def test_no_observations(self, poisson_model, two_targets, rng):
        """Test M = 0 with lookahead enabled."""
        sampler = NeighborLookaheadSampler(poisson_model, ObservationSet(np.zeros((0, 2))),
                                           two_targets, TabularLikelihoodModel(np.zeros((0, 4))),
                                           max_neighbors=3, random_state=rng)
        x = sampler.draw_sample()
        assert len(x) == 0
        assert sampler.log_p(x) == 0.0
