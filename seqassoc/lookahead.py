"""
Sequential association sampling with lookahead over neighboring observations.

This module provides:
1. neighbor_windows - Nearest later observations of every observation
2. ProbabilityTree - Arena of lookahead nodes with cached association priors
3. NeighborLookaheadSampler - Sequential sampler that marginalizes over the
   associations of spatially close, not yet processed observations
"""

import numpy as np
from typing import List, Optional

from .association import AssociationHypothesis, HypothesisType
from .models import GenerativeAssociationModel, LikelihoodModel, ObservationSet, TargetSet
from .numerics import LogFactorialCache, log_sum_p_array
from .samplers import SequentialAssociationSampler


def neighbor_windows(distances: np.ndarray, max_neighbors: Optional[int] = None,
                     max_distance: Optional[float] = None) -> List[np.ndarray]:
    """
    Lookahead window of every observation.

    The window of observation m holds the later observations m' > m sorted
    by distance to m, truncated to the max_neighbors nearest and to those
    within max_distance. A cap of 0 disables lookahead, a negative cap (or
    None) is not applied; if both caps are None there is no lookahead.

    Args:
        distances: Pairwise observation distances, shape (M, M)
        max_neighbors: Maximum window size
        max_distance: Maximum distance of a window member

    Returns:
        List of M integer arrays of observation indices
    """
    M = distances.shape[0]
    windows = [np.empty(0, dtype=int) for _ in range(M)]

    if max_neighbors is None and max_distance is None:
        return windows
    if max_neighbors == 0 or max_distance == 0:
        return windows

    for m in range(M - 1):
        successors = np.arange(m + 1, M)
        dist = distances[m, m + 1:]
        order = np.argsort(dist, kind='stable')
        successors, dist = successors[order], dist[order]

        if max_neighbors is not None and max_neighbors > 0:
            successors, dist = successors[:max_neighbors], dist[:max_neighbors]
        if max_distance is not None and max_distance > 0:
            successors = successors[dist <= max_distance]

        windows[m] = successors
    return windows


class ProbabilityTree:
    """
    Arena of lookahead nodes addressed by integer index.

    Node i stands for the association state after step[i] committed
    observations with n_existing[i] claimed targets and n_newborn[i] minted
    newborns. log_prior[i] is the conditional prior log-probability of the
    hypothesis leading into the node (per specific target for EXISTING).
    Child slots are indexed by HypothesisType value; -1 marks a missing child.
    """

    def __init__(self):
        self.clear()

    def clear(self):
        """Drop all nodes."""
        self.step: List[int] = []
        self.n_existing: List[int] = []
        self.n_newborn: List[int] = []
        self.log_prior: List[float] = []
        self.hypothesis: List[Optional[HypothesisType]] = []
        self.children: List[List[int]] = []
        self.root = -1

    def __len__(self) -> int:
        return len(self.step)

    def copy(self) -> "ProbabilityTree":
        """Independent copy of the arena and its root."""
        other = ProbabilityTree()
        other.step = list(self.step)
        other.n_existing = list(self.n_existing)
        other.n_newborn = list(self.n_newborn)
        other.log_prior = list(self.log_prior)
        other.hypothesis = list(self.hypothesis)
        other.children = [list(c) for c in self.children]
        other.root = self.root
        return other

    def add_node(self, step: int, n_existing: int, n_newborn: int, log_prior: float,
                 hypothesis: Optional[HypothesisType] = None) -> int:
        """Append a node and return its index."""
        self.step.append(step)
        self.n_existing.append(n_existing)
        self.n_newborn.append(n_newborn)
        self.log_prior.append(log_prior)
        self.hypothesis.append(hypothesis)
        self.children.append([-1, -1, -1])
        return len(self.step) - 1

    def child(self, node: int, kind: HypothesisType) -> int:
        return self.children[node][kind.value]

    def set_child(self, node: int, kind: HypothesisType, child: int):
        self.children[node][kind.value] = child

    def is_expanded(self, node: int) -> bool:
        return self.children[node][HypothesisType.CLUTTER.value] != -1

    def subtree(self, node: int) -> List[int]:
        """Indices of node and all its descendants (pre-order)."""
        result = []
        stack = [node]
        while stack:
            current = stack.pop()
            result.append(current)
            stack.extend(c for c in reversed(self.children[current]) if c != -1)
        return result

    def advance(self, kind: HypothesisType) -> int:
        """
        Make the root's child for `kind` the new root.

        The old root and the subtrees not taken are dropped; the arena is
        compacted so that the new root has index 0.

        Returns:
            Index of the new root
        """
        new_root = self.child(self.root, kind)
        if new_root == -1:
            raise ValueError(f"Root has no {kind.name} child")

        keep = self.subtree(new_root)
        remap = {old: new for new, old in enumerate(keep)}

        self.step = [self.step[i] for i in keep]
        self.n_existing = [self.n_existing[i] for i in keep]
        self.n_newborn = [self.n_newborn[i] for i in keep]
        self.log_prior = [self.log_prior[i] for i in keep]
        self.hypothesis = [self.hypothesis[i] for i in keep]
        self.children = [[remap[c] if c != -1 else -1 for c in self.children[i]] for i in keep]
        self.root = 0
        return self.root


class NeighborLookaheadSampler(SequentialAssociationSampler):
    """
    Sequential association sampler with lookahead.

    Before observation m is sampled, the associations of its nearest later
    observations (its window) are marginalized out:

        w(c_m) = p(z_m | c_m) p(c_m | c_{1:m-1})
                 · sum_{c_W} p(c_W | c_{1:m}) prod_{j in W} p(z_j | c_j)

    The priors p(c_W | c_{1:m}) only depend on the committed counts, so they
    are cached in a probability tree whose depth-d nodes stand for "d more
    observations committed". After sampling, the chosen child becomes the new
    root and its subtree is reused for the next observation. The tree grown
    under the initial root for the first observation is kept between draws
    and only rebuilt when set_new_observations() changes the inputs.

    The sum over c_W enumerates every assignment of unclaimed targets to the
    window observations and grows as (N + 2)^|W|; max_neighbors bounds it.
    With empty windows the sampler reduces to SequentialAssociationSampler;
    with windows covering all later observations it samples the exact
    posterior.
    """

    def __init__(self, model: GenerativeAssociationModel,
                 observations: ObservationSet,
                 targets: TargetSet,
                 likelihood: LikelihoodModel,
                 max_neighbors: Optional[int] = None,
                 max_distance: Optional[float] = None,
                 random_state: Optional[np.random.Generator] = None,
                 max_observations: Optional[int] = None):
        """
        Initialize the lookahead sampler.

        Args:
            model: Generative association model (mu, nu, P_D)
            observations: Observations of the time step
            targets: Predictions of the existing targets
            likelihood: Observation likelihood model
            max_neighbors: Maximum number of lookahead observations (0 = no lookahead)
            max_distance: Maximum Euclidean distance of lookahead observations (0 = no lookahead)
            random_state: Optional numpy random generator
            max_observations: Largest number of observations expected
        """
        self.max_neighbors = max_neighbors
        self.max_distance = max_distance
        self.log_factorials = LogFactorialCache(max_observations if max_observations is not None else 16)
        self.tree = ProbabilityTree()
        self.windows: List[np.ndarray] = []
        self._prior_memo = {}
        self._initial_tree: Optional[ProbabilityTree] = None

        super().__init__(model, observations, targets, likelihood,
                         random_state=random_state, max_observations=max_observations)

    def _reset(self):
        super()._reset()

        # Priors depend on M and N, windows on the observation positions
        self._prior_memo = {}
        self._initial_tree = None
        self.tree.clear()
        self.windows = neighbor_windows(self.observations.pairwise_distances(),
                                        self.max_neighbors, self.max_distance)

        sizes = [len(w) for w in self.windows]
        self.logger.debug(f"Built lookahead windows for {self.M} observations "
                          f"(largest window {max(sizes) if sizes else 0})")

    def _log_completion(self, k: int, b: int, c: int) -> float:
        """Closed-form log S(k, b, c), memoized per observation set."""
        key = (k, b, c)
        if key not in self._prior_memo:
            M = self.M
            counts = np.arange(M + 1)
            f = self._log_binom + self.log_factorials.log_falling_factorial(
                np.arange(self.min_mn + 1), k)
            g = self._log_nu[:M + 1] + self.log_factorials.log_falling_factorial(counts, b)
            h = np.append(self._log_mu[:M + 1] + self.log_factorials.log_falling_factorial(counts, c),
                          -np.inf)
            self._prior_memo[key] = self._completion_sum(f, g, h)
        return self._prior_memo[key]

    def _child_log_priors(self, step: int, k: int, b: int):
        """Conditional log-priors (clutter, per existing target, newborn) after `step` observations."""
        c = step - k - b
        s_clutter = self._log_completion(k, b, c + 1)
        s_newborn = self._log_completion(k, b + 1, c)
        s_exist = self._log_completion(k + 1, b, c) if k < self.N else -np.inf

        log_total = log_sum_p_array([s_clutter, s_exist, s_newborn])
        if not np.isfinite(log_total):
            raise ValueError("Association prefix has zero prior probability; "
                             "check that mu, nu and P_D admit the number of observations")

        log_exist = s_exist - log_total - np.log(self.N - k) if k < self.N else -np.inf
        return s_clutter - log_total, log_exist, s_newborn - log_total

    def _expand(self, node: int, depth: int):
        """Make sure the feasible descendants of node exist `depth` levels deep."""
        if depth == 0:
            return

        tree = self.tree
        if not tree.is_expanded(node):
            step, k, b = tree.step[node], tree.n_existing[node], tree.n_newborn[node]
            log_clutter, log_exist, log_newborn = self._child_log_priors(step, k, b)

            tree.set_child(node, HypothesisType.CLUTTER,
                           tree.add_node(step + 1, k, b, log_clutter, HypothesisType.CLUTTER))
            tree.set_child(node, HypothesisType.NEWBORN,
                           tree.add_node(step + 1, k, b + 1, log_newborn, HypothesisType.NEWBORN))
            if k < self.N:
                tree.set_child(node, HypothesisType.EXISTING,
                               tree.add_node(step + 1, k + 1, b, log_exist, HypothesisType.EXISTING))

        for child in list(tree.children[node]):
            if child != -1 and tree.log_prior[child] > -np.inf:
                self._expand(child, depth - 1)

    def _log_lookahead(self, node: int, window: np.ndarray, depth: int, available: List[int]) -> float:
        """
        log sum over all associations of window[depth:] below node.

        Args:
            node: Tree node of the state before window[depth]
            window: Lookahead observation indices
            depth: Position in the window
            available: Unclaimed target indices (restored on return)

        Returns:
            Log of the summed prior-weighted likelihoods (0 for an empty rest)
        """
        if depth == len(window):
            return 0.0

        tree = self.tree
        row = self.log_likelihoods[window[depth]]
        terms = []

        for kind, column in ((HypothesisType.CLUTTER, 0), (HypothesisType.NEWBORN, self.N + 1)):
            child = tree.child(node, kind)
            term = row[column] + tree.log_prior[child]
            if term > -np.inf:
                terms.append(term + self._log_lookahead(child, window, depth + 1, available))

        child = tree.child(node, HypothesisType.EXISTING)
        if child != -1 and tree.log_prior[child] > -np.inf:
            for pos in range(len(available)):
                n = available[pos]
                term = row[n + 1] + tree.log_prior[child]
                if term == -np.inf:
                    continue
                del available[pos]
                terms.append(term + self._log_lookahead(child, window, depth + 1, available))
                available.insert(pos, n)

        return log_sum_p_array(terms)

    def _branch_log_weight(self, log_likelihood: float, node: int, window: np.ndarray,
                           available: List[int]) -> float:
        weight = log_likelihood + self.tree.log_prior[node]
        if weight == -np.inf:
            return -np.inf
        return weight + self._log_lookahead(node, window, 0, available)

    def _begin_draw(self):
        if self._initial_tree is not None:
            self.tree = self._initial_tree.copy()
            return
        self.tree.clear()
        self.tree.root = self.tree.add_node(0, 0, 0, 0.0)

    def _step_log_weights(self, m: int, k: int, b: int, claimed: np.ndarray) -> np.ndarray:
        window = self.windows[m]
        tree = self.tree
        root = tree.root
        self._expand(root, 1 + len(window))
        if m == 0 and self._initial_tree is None:
            self._initial_tree = tree.copy()

        row = self.log_likelihoods[m]
        available = [n for n in range(self.N) if not claimed[n]]
        weights = np.full(self.N + 2, -np.inf)

        weights[0] = self._branch_log_weight(row[0], tree.child(root, HypothesisType.CLUTTER),
                                             window, available)
        weights[-1] = self._branch_log_weight(row[-1], tree.child(root, HypothesisType.NEWBORN),
                                              window, available)

        existing = tree.child(root, HypothesisType.EXISTING)
        if existing != -1:
            for pos, n in enumerate(available):
                rest = available[:pos] + available[pos + 1:]
                weights[n + 1] = self._branch_log_weight(row[n + 1], existing, window, rest)
        return weights

    def _commit(self, m: int, hypothesis: AssociationHypothesis, k: int, b: int):
        self.tree.advance(hypothesis.kind)
