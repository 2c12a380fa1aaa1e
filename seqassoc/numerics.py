"""
Numerical helpers for log-domain probability arithmetic.

This module provides:
1. log_sum_p - Stable log(exp(a) + exp(b))
2. log_sum_p_array - Stable log-sum-exp reduction over arrays
3. LogFactorialCache - Memoized log(n!) and log-factorial ratios
4. CategoricalDistribution - Discrete distribution over log-weights with sampling
5. sample_categorical - One-shot categorical draw from log-weights
"""

import numpy as np
from typing import Optional, Sequence, Union
from scipy.special import gammaln, logsumexp


def log_sum_p(a: float, b: float) -> float:
    """
    Compute log(exp(a) + exp(b)) without leaving the log domain.

    -inf (probability zero) is the identity element.

    Args:
        a: First log-probability
        b: Second log-probability

    Returns:
        log(exp(a) + exp(b))
    """
    if a == -np.inf:
        return float(b)
    if b == -np.inf:
        return float(a)
    if a >= b:
        return float(a + np.log1p(np.exp(b - a)))
    return float(b + np.log1p(np.exp(a - b)))


def log_sum_p_array(values: Union[np.ndarray, Sequence[float]], axis: Optional[int] = None):
    """
    Log-sum-exp reduction that returns -inf for empty or all -inf input.

    Args:
        values: Log-probabilities
        axis: Axis to reduce over (None = all)

    Returns:
        Reduced log-probability (float, or array if axis is given)
    """
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return -np.inf
    with np.errstate(divide='ignore', invalid='ignore'):
        result = logsumexp(values, axis=axis)
    if axis is None:
        return float(result)
    return result


class LogFactorialCache:
    """
    Memoized table of log(n!).

    The table is pre-sized from an expected maximum and grown lazily
    (doubling) when a larger argument is requested.
    """

    def __init__(self, n_max: int = 16):
        """
        Initialize the cache.

        Args:
            n_max: Largest n expected (table holds log(0!) .. log(n_max!))
        """
        if n_max < 0:
            raise ValueError(f"n_max must be non-negative, got {n_max}")
        self._values = gammaln(np.arange(n_max + 1) + 1.0)

    @property
    def size(self) -> int:
        """Number of cached entries."""
        return len(self._values)

    def _ensure(self, n_max: int):
        if n_max >= len(self._values):
            size = max(n_max + 1, 2 * len(self._values))
            self._values = gammaln(np.arange(size) + 1.0)

    def log_factorial(self, n):
        """
        log(n!) for a scalar or an integer array.

        Args:
            n: Non-negative integer (or array of them)

        Returns:
            log(n!) as float (or array)
        """
        n_arr = np.asarray(n, dtype=int)
        if n_arr.size and np.min(n_arr) < 0:
            raise ValueError(f"log_factorial requires non-negative arguments, got {n}")
        if n_arr.size:
            self._ensure(int(np.max(n_arr)))
        values = self._values[n_arr]
        if n_arr.ndim == 0:
            return float(values)
        return values

    def log_factorial_ratio(self, a, b):
        """log(a! / b!)."""
        return self.log_factorial(a) - self.log_factorial(b)

    def log_falling_factorial(self, n, j):
        """
        log(n! / (n - j)!), the log of n·(n-1)···(n-j+1).

        Returns -inf wherever j > n (the product contains a zero factor).

        Args:
            n: Non-negative integer(s)
            j: Non-negative integer(s), broadcast against n

        Returns:
            Log falling factorial as float (or array)
        """
        n_arr, j_arr = np.broadcast_arrays(np.asarray(n, dtype=int), np.asarray(j, dtype=int))
        if n_arr.size and np.min(j_arr) < 0:
            raise ValueError(f"log_falling_factorial requires j >= 0, got {j}")
        feasible = j_arr <= n_arr
        diff = np.where(feasible, n_arr - j_arr, 0)
        values = np.where(feasible,
                          self.log_factorial(n_arr) - self.log_factorial(diff),
                          -np.inf)
        if values.ndim == 0:
            return float(values)
        return values


class CategoricalDistribution:
    """
    Categorical distribution defined by unnormalized log-weights.

    Entries may be -inf for infeasible outcomes. Sampling consumes exactly
    one uniform variate from the supplied generator, so draws are
    deterministic given the generator state.
    """

    def __init__(self, log_weights: Union[np.ndarray, Sequence[float]]):
        """
        Initialize from log-weights.

        Args:
            log_weights: Unnormalized log-weights, shape (K,)
        """
        log_weights = np.asarray(log_weights, dtype=float)
        if log_weights.ndim != 1 or log_weights.size == 0:
            raise ValueError(f"log_weights must be a non-empty vector, got shape {log_weights.shape}")
        if np.any(np.isnan(log_weights)):
            raise ValueError("log_weights must not contain NaN")

        log_norm = log_sum_p_array(log_weights)
        if not np.isfinite(log_norm):
            raise ValueError("Categorical distribution has no outcome with positive probability")

        self.log_weights = log_weights
        self.log_probs = log_weights - log_norm
        self.probs = np.exp(self.log_probs)
        self._cdf = np.cumsum(self.probs)
        self._last_feasible = int(np.flatnonzero(self.probs > 0)[-1])

    def __len__(self) -> int:
        return len(self.probs)

    def sample(self, random_state: np.random.Generator) -> int:
        """
        Draw an outcome index by inverse-CDF sampling.

        Args:
            random_state: numpy random generator

        Returns:
            Sampled index
        """
        u = random_state.random() * self._cdf[-1]
        idx = int(np.searchsorted(self._cdf, u, side='right'))
        # Rounding in the cumulative sum can push u past the last feasible entry
        return min(idx, self._last_feasible)

    def log_p(self, idx: int) -> float:
        """Normalized log-probability of outcome idx."""
        return float(self.log_probs[idx])

    def p(self, idx: int) -> float:
        """Normalized probability of outcome idx."""
        return float(self.probs[idx])

    def __str__(self) -> str:
        entries = " ".join(f"{i}:{p:.4g}" for i, p in enumerate(self.probs))
        return f"Categorical[{entries}]"

    def __repr__(self) -> str:
        return f"CategoricalDistribution(n={len(self)})"


def sample_categorical(log_weights: Union[np.ndarray, Sequence[float]],
                       random_state: np.random.Generator) -> int:
    """
    Draw an index from unnormalized log-weights.

    Args:
        log_weights: Unnormalized log-weights
        random_state: numpy random generator

    Returns:
        Sampled index
    """
    return CategoricalDistribution(log_weights).sample(random_state)
