"""
test_permutation.py - Parallel label-permutation engine

How to run:
    pytest tests/test_permutation.py -v
"""

import threading

import numpy as np
import pytest
from joblib import cpu_count

from neighborhood_analysis import (
    CountOverflowError,
    KNNTopology,
    PermutationTrialError,
    ValidationError,
)
from neighborhood_analysis.spatial import (
    CompositionCounter,
    PermutationEngine,
    build_neighbor_graph,
    resolve_n_jobs,
)


@pytest.fixture
def counter(random_points):
    graph = build_neighbor_graph(random_points, KNNTopology(k=5))
    return CompositionCounter(graph, random_points.n_labels)


# ===========================================================================
# SECTION 1 — Reproducibility
# ===========================================================================


class TestDeterminism:

    @pytest.mark.parametrize('n_jobs', [2, 3, 8])
    def test_bit_identical_across_workers(self, counter, random_points, many_cpus, n_jobs):
        """A fixed seed gives the same null for any number of threads."""
        serial = PermutationEngine(counter.count, 97, seed=11, n_jobs=1)
        parallel = PermutationEngine(counter.count, 97, seed=11, n_jobs=n_jobs)
        assert parallel.n_jobs == n_jobs
        assert len(parallel._batches()) > len(serial._batches())

        ref = serial.run(random_points.codes)
        other = parallel.run(random_points.codes)
        assert np.array_equal(ref.sums, other.sums)
        assert np.array_equal(ref.sums_sq, other.sums_sq)
        assert np.array_equal(ref.samples, other.samples)
        assert np.array_equal(ref.mean, other.mean)
        assert np.array_equal(ref.std, other.std)

    def test_different_seeds_differ(self, counter, random_points):
        a = PermutationEngine(counter.count, 50, seed=1, n_jobs=2).run(random_points.codes)
        b = PermutationEngine(counter.count, 50, seed=2, n_jobs=2).run(random_points.codes)
        assert not np.array_equal(a.samples, b.samples)

    def test_unseeded_run_can_be_replayed(self, counter, random_points):
        """seed=None records its entropy; passing it back reproduces the run."""
        first = PermutationEngine(counter.count, 40, seed=None, n_jobs=2).run(random_points.codes)
        again = PermutationEngine(counter.count, 40, seed=first.entropy, n_jobs=3).run(random_points.codes)
        assert np.array_equal(first.samples, again.samples)


# ===========================================================================
# SECTION 2 — Shuffle semantics and accumulation
# ===========================================================================


class TestShuffle:

    def test_label_multiset_preserved(self, random_points):
        """Every trial is a shuffle: label frequencies never change."""
        L = random_points.n_labels
        expected = np.bincount(random_points.codes, minlength=L)
        engine = PermutationEngine(lambda perm: np.bincount(perm, minlength=L), 60, seed=0, n_jobs=2)
        null = engine.run(random_points.codes)
        assert null.samples.shape == (60, L)
        assert (null.samples == expected).all()

    def test_moments_match_samples(self, counter, random_points):
        samples = PermutationEngine(counter.count, 80, seed=5, retain_samples=True).run(random_points.codes)
        moments = PermutationEngine(counter.count, 80, seed=5, retain_samples=False).run(random_points.codes)
        assert moments.samples is None
        assert np.array_equal(samples.mean, moments.mean)
        assert np.array_equal(samples.std, moments.std)
        assert np.allclose(samples.mean, samples.samples.mean(axis=0))
        assert np.allclose(samples.std, samples.samples.std(axis=0))

    def test_constant_statistic_has_exactly_zero_variance(self, random_points):
        null = PermutationEngine(lambda perm: np.array([[7]]), 30, seed=0).run(random_points.codes)
        assert null.var[0, 0] == 0.0
        assert null.mean[0, 0] == 7.0

    def test_null_std_stabilizes_with_more_trials(self, counter, random_points):
        """The spread of the std estimate over seeds shrinks as trials grow."""
        def spread(n_trials):
            estimates = [
                PermutationEngine(counter.count, n_trials, seed=s, n_jobs=2)
                .run(random_points.codes).std[0, 0]
                for s in range(8)
            ]
            return np.std(estimates)

        assert spread(400) < spread(20)


# ===========================================================================
# SECTION 3 — Cancellation and failures
# ===========================================================================


class TestCancellation:

    def test_cancel_before_start(self, counter, random_points):
        event = threading.Event()
        event.set()
        with pytest.warns(RuntimeWarning, match='cancelled'):
            null = PermutationEngine(counter.count, 20, seed=0).run(random_points.codes, cancel_event=event)
        assert null.n_completed == 0
        assert null.cancelled
        assert np.isnan(null.mean).all()

    def test_cancel_keeps_completed_trials(self, counter, random_points, countdown_event):
        event = countdown_event(10)
        with pytest.warns(RuntimeWarning):
            null = PermutationEngine(counter.count, 100, seed=0, n_jobs=1).run(
                random_points.codes, cancel_event=event)
        assert null.n_requested == 100
        assert null.n_completed == 10
        assert null.samples.shape[0] == 10

        full = PermutationEngine(counter.count, 100, seed=0, n_jobs=1).run(random_points.codes)
        assert np.array_equal(null.samples, full.samples[:10])

    def test_failing_trial_is_fatal(self, random_points):
        calls = {'n': 0}

        def flaky(perm):
            calls['n'] += 1
            if calls['n'] == 5:
                raise ValueError('boom')
            return np.zeros((1, 1), dtype=np.int64)

        with pytest.raises(PermutationTrialError):
            PermutationEngine(flaky, 20, seed=0, n_jobs=1).run(
                random_points.codes, observed=np.zeros((1, 1)))

    def test_overflowing_count_is_fatal(self, random_points):
        def huge(perm):
            return np.array([10 ** 9], dtype=np.int64)

        with pytest.raises(PermutationTrialError) as info:
            PermutationEngine(huge, 1000, seed=0, n_jobs=1).run(random_points.codes)
        assert isinstance(info.value.__cause__, CountOverflowError)


# ===========================================================================
# SECTION 4 — Configuration
# ===========================================================================


class TestEngineConfig:

    def test_workers_degrade_to_available(self):
        assert resolve_n_jobs(10 ** 6) == max(1, cpu_count())
        assert resolve_n_jobs(None) == max(1, cpu_count())
        assert resolve_n_jobs(-1) == max(1, cpu_count())
        assert resolve_n_jobs(1) == 1

    @pytest.mark.parametrize('n_jobs', [0, -2, 1.5])
    def test_invalid_workers(self, n_jobs):
        with pytest.raises(ValidationError):
            resolve_n_jobs(n_jobs)

    @pytest.mark.parametrize('n', [0, -5, 2.5])
    def test_invalid_trial_count(self, counter, n):
        with pytest.raises(ValidationError):
            PermutationEngine(counter.count, n)
