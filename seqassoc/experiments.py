"""
Helper functions for numerical experiments with association samplers.

This module provides:
1. Benchmarking utilities (runtime, memory)
2. Sample quality metrics (accuracy against ground truth, hypothesis frequencies)
3. Sampler comparison and summary printing
"""

import logging
import numpy as np
import time
import tracemalloc
from typing import Any, Callable, Dict, List, Optional, Sequence

from .association import DataAssociation, HypothesisType

logger = logging.getLogger(__name__)


def benchmark_sampler(sample_func: Callable, *args, **kwargs) -> Dict[str, Any]:
    """
    Benchmark a sampling function's runtime and memory usage.

    Args:
        sample_func: Function to benchmark
        *args, **kwargs: Arguments to pass to sample_func

    Returns:
        Dictionary with 'runtime' (seconds), 'memory_mb' (MB) and 'result'
    """
    tracemalloc.start()

    start_time = time.time()
    result = sample_func(*args, **kwargs)
    end_time = time.time()

    current, peak = tracemalloc.get_traced_memory()
    tracemalloc.stop()

    return {
        'runtime': end_time - start_time,
        'memory_mb': peak / (1024 * 1024),
        'result': result
    }


def draw_samples(sampler, n_samples: int) -> Dict[str, Any]:
    """
    Draw repeated associations from a sampler.

    Args:
        sampler: SequentialAssociationSampler (or subclass)
        n_samples: Number of draws

    Returns:
        Dictionary with 'samples' (list of DataAssociation), 'columns'
        (list of column tuples) and 'log_probs' (path log-probabilities)
    """
    samples, columns, log_probs = [], [], []
    target_ids = sampler.targets.ids
    for _ in range(n_samples):
        x = sampler.draw_sample()
        samples.append(x)
        columns.append(x.to_columns(target_ids, sampler.M))
        log_probs.append(sampler.log_p(x))
    return {'samples': samples, 'columns': columns, 'log_probs': np.array(log_probs)}


def association_accuracy(samples: Sequence[DataAssociation], ground_truth: DataAssociation,
                         target_ids: Sequence[int], n_observations: int) -> float:
    """
    Fraction of observations whose sampled hypothesis matches the ground truth.

    Newborn IDs are not compared, only the hypothesis class and, for
    existing targets, the target.

    Args:
        samples: Sampled associations
        ground_truth: Reference association
        target_ids: IDs of the existing targets in index order
        n_observations: Number of observations

    Returns:
        Accuracy averaged over samples and observations (1.0 if there is
        nothing to compare)
    """
    if len(samples) == 0 or n_observations == 0:
        return 1.0
    expected = ground_truth.hypotheses(target_ids, n_observations)
    correct = 0
    for x in samples:
        hypotheses = x.hypotheses(target_ids, n_observations)
        correct += sum(h == e for h, e in zip(hypotheses, expected))
    return correct / (len(samples) * n_observations)


def hypothesis_frequencies(samples: Sequence[DataAssociation], target_ids: Sequence[int],
                           n_observations: int) -> np.ndarray:
    """
    Empirical per-observation hypothesis frequencies.

    Returns:
        Array of shape (M, N + 2) over columns [clutter, targets, newborn]
    """
    n_targets = len(target_ids)
    counts = np.zeros((n_observations, n_targets + 2))
    for x in samples:
        for m, column in enumerate(x.to_columns(target_ids, n_observations)):
            counts[m, column] += 1
    return counts / max(len(samples), 1)


def full_detection_frequency(samples: Sequence[DataAssociation], n_targets: int) -> float:
    """Fraction of samples in which every existing target is detected."""
    if len(samples) == 0:
        return 0.0
    return float(np.mean([x.n_existing == n_targets for x in samples]))


def compare_samplers(sampler_results: Dict[str, Dict[str, Any]],
                     performance_metrics: Dict[str, Dict[str, float]],
                     ground_truth: DataAssociation,
                     target_ids: Sequence[int],
                     n_observations: int) -> Dict[str, Dict[str, float]]:
    """
    Compare multiple samplers using various metrics.

    Args:
        sampler_results: Dictionary mapping sampler names to draw_samples() output
        performance_metrics: Dictionary mapping sampler names to performance:
            {'sampler_name': {'runtime': ..., 'memory_mb': ...}}
        ground_truth: Reference association of the frame
        target_ids: IDs of the existing targets in index order
        n_observations: Number of observations

    Returns:
        Dictionary mapping sampler names to comparison metrics:
            {'sampler_name': {'accuracy': ..., 'full_detection': ..., 'mean_log_p': ...,
                              'distinct': ..., 'runtime': ..., 'memory_mb': ...}}
    """
    comparison = {}
    n_targets = len(target_ids)

    for name, results in sampler_results.items():
        samples = results['samples']
        comparison[name] = {
            'accuracy': association_accuracy(samples, ground_truth, target_ids, n_observations),
            'full_detection': full_detection_frequency(samples, n_targets),
            'mean_log_p': float(np.mean(results['log_probs'])) if len(samples) else np.nan,
            'distinct': len(set(results['columns'])),
            'runtime': performance_metrics[name].get('runtime', 0),
            'memory_mb': performance_metrics[name].get('memory_mb', 0)
        }

    return comparison


def print_comparison_summary(comparison: Dict[str, Dict[str, float]]):
    """
    Print a formatted summary of sampler comparison.

    Args:
        comparison: Dictionary from compare_samplers()
    """
    print("\n" + "="*90)
    print("SAMPLER COMPARISON SUMMARY")
    print("="*90)

    print(f"{'Sampler':<12} {'Accuracy':<10} {'Full det.':<10} {'Mean log p':<12} "
          f"{'Distinct':<10} {'Runtime (s)':<15} {'Memory (MB)':<15}")
    print("-"*90)

    for name, metrics in comparison.items():
        print(f"{name:<12} "
              f"{metrics['accuracy']:<10.4f} "
              f"{metrics['full_detection']:<10.4f} "
              f"{metrics['mean_log_p']:<12.4f} "
              f"{metrics['distinct']:<10d} "
              f"{metrics['runtime']:<15.4f} "
              f"{metrics['memory_mb']:<15.2f}")

    print("="*90)


def run_comparison(n_targets: int = 4, n_samples: int = 500,
                   max_neighbors: int = 2,
                   random_state: Optional[np.random.Generator] = None) -> Dict[str, Dict[str, float]]:
    """
    Simulate one frame and compare the base and lookahead samplers on it.

    Args:
        n_targets: Number of existing targets
        n_samples: Draws per sampler
        max_neighbors: Lookahead window size of the lookahead sampler
        random_state: Optional numpy random generator

    Returns:
        Output of compare_samplers()
    """
    from .lookahead import NeighborLookaheadSampler
    from .models import (GaussianLikelihoodModel, GenerativeAssociationModel, TargetSet,
                        generate_frame, uniform_log_density)
    from .samplers import SequentialAssociationSampler

    if random_state is None:
        random_state = np.random.default_rng()

    low, high = [0.0, 0.0], [20.0, 20.0]
    model = GenerativeAssociationModel.poisson(clutter_rate=1.0, birth_rate=0.2, detection_prob=0.9)
    targets = TargetSet(ids=np.arange(1, n_targets + 1),
                        means=random_state.uniform(low, high, size=(n_targets, 2)))
    log_density = uniform_log_density(low, high)
    likelihood = GaussianLikelihoodModel(np.eye(2), 0.25 * np.eye(2), log_density, log_density)

    observations, ground_truth = generate_frame(model, targets, likelihood, low, high, random_state)
    logger.info(f"Simulated frame with {len(observations)} observations, "
                f"{ground_truth.n_existing} detections, {ground_truth.n_newborn} newborns")

    samplers = {
        'sequential': SequentialAssociationSampler(model, observations, targets, likelihood,
                                                   random_state=random_state),
        'lookahead': NeighborLookaheadSampler(model, observations, targets, likelihood,
                                              max_neighbors=max_neighbors,
                                              random_state=random_state)
    }

    results: Dict[str, Dict[str, Any]] = {}
    performance: Dict[str, Dict[str, float]] = {}
    for name, sampler in samplers.items():
        sampler.set_newborn_start_id(n_targets + 1)
        bench = benchmark_sampler(draw_samples, sampler, n_samples)
        results[name] = bench['result']
        performance[name] = {'runtime': bench['runtime'], 'memory_mb': bench['memory_mb']}
        logger.info(f"{name}: {n_samples} draws in {bench['runtime']:.3f}s")

    return compare_samplers(results, performance, ground_truth, targets.ids, len(observations))


def count_hypotheses(samples: Sequence[DataAssociation], n_observations: int) -> Dict[str, List[int]]:
    """Per-sample counts of clutter, existing and newborn hypotheses."""
    return {
        HypothesisType.CLUTTER.name: [n_observations - len(x) for x in samples],
        HypothesisType.EXISTING.name: [x.n_existing for x in samples],
        HypothesisType.NEWBORN.name: [x.n_newborn for x in samples]
    }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print_comparison_summary(run_comparison(random_state=np.random.default_rng(42)))
