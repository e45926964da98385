"""
permutation.py - Parallel label-permutation engine

Builds the null distribution of an integer statistic (a label-pair count
matrix, or a single marker-pair count) by shuffling labels over a fixed
graph.

Reproducibility
---------------
Trial t draws from its own generator, seeded with the t-th child of
``SeedSequence(seed)``. Trials are grouped into contiguous batches and
run on a thread pool; each batch merges its partial integer sums into
the shared accumulator once, under a lock. Integer addition is exact,
so the merged sums (and the samples, stored by trial index) are
identical for any number of workers and any scheduling order.
"""
from __future__ import annotations

import logging
import math
import threading
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from joblib import Parallel, cpu_count, delayed

from ..data.config import (
    CountOverflowError,
    PermutationTrialError,
    ValidationError,
)

logger = logging.getLogger(__name__)

INT64_MAX = int(np.iinfo(np.int64).max)

# Trial batches queued per worker thread
BATCHES_PER_WORKER = 4


def resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """
    Number of worker threads to use.

    None and -1 mean every available CPU. Requests above the CPU count
    degrade to the CPU count.
    """
    available = max(1, cpu_count())
    if n_jobs is None or n_jobs == -1:
        return available
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, (int, np.integer)) or n_jobs < 1:
        raise ValidationError(f"n_jobs must be a positive integer, -1 or None, got {n_jobs!r}")
    if n_jobs > available:
        logger.warning(f"  ⚠ n_jobs={n_jobs} exceeds {available} available CPUs; "
                       f"using {available}")
        return available
    return int(n_jobs)


def trial_seeds(seed: Optional[int], n_trials: int) -> tuple[List[np.random.SeedSequence], int]:
    """
    One independent seed sequence per trial.

    Returns the children and the root entropy, so a run with ``seed=None``
    can be replayed by passing the entropy back as the seed.
    """
    root = np.random.SeedSequence(seed)
    return root.spawn(n_trials), root.entropy


@dataclass
class NullDistribution:
    """
    Accumulated null distribution of an integer statistic.

    Attributes
    ----------
    n_requested : int
        Trials asked for.
    n_completed : int
        Trials that finished (fewer than requested after cancellation).
    sums, sums_sq : np.ndarray
        Exact int64 sum and sum of squares over completed trials.
    samples : np.ndarray, optional
        (n_completed, *shape) per-trial values in trial order, or None
        for the moments-only model.
    entropy : int
        Root seed entropy; equals the seed when one was given.
    """
    n_requested: int
    n_completed: int
    sums: np.ndarray
    sums_sq: np.ndarray
    samples: Optional[np.ndarray]
    entropy: int

    @property
    def cancelled(self) -> bool:
        return self.n_completed < self.n_requested

    @property
    def mean(self) -> np.ndarray:
        if self.n_completed == 0:
            return np.full(self.sums.shape, np.nan)
        return self.sums / self.n_completed

    @property
    def var(self) -> np.ndarray:
        """Population variance, from an exact integer numerator."""
        t = self.n_completed
        if t == 0:
            return np.full(self.sums.shape, np.nan)
        s = self.sums.astype(object)
        numerator = t * self.sums_sq.astype(object) - s * s
        return np.asarray(numerator, dtype=np.float64) / float(t * t)

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.var)


class _Accumulator:
    """Lock-protected merge target shared by all batches."""

    def __init__(self, shape: tuple, n_trials: int, retain_samples: bool):
        self.lock = threading.Lock()
        self.sums = np.zeros(shape, dtype=np.int64)
        self.sums_sq = np.zeros(shape, dtype=np.int64)
        self.done = np.zeros(n_trials, dtype=bool)
        self.samples = np.zeros((n_trials,) + shape, dtype=np.int64) if retain_samples else None

    def merge(self, trials: np.ndarray, sums: np.ndarray, sums_sq: np.ndarray,
              values: Optional[np.ndarray]) -> None:
        with self.lock:
            self.sums += sums
            self.sums_sq += sums_sq
            self.done[trials] = True
            if self.samples is not None and len(trials):
                self.samples[trials] = values


class PermutationEngine:
    """
    Run label-permutation trials in parallel.

    Parameters
    ----------
    statistic : callable
        ``statistic(permuted_values) -> int or int array``. Must not
        mutate shared state; called concurrently from worker threads.
    n_permutations : int
        Number of trials (>= 1).
    seed : int, optional
        Base seed. None draws fresh entropy.
    n_jobs : int, optional
        Worker threads. None or -1 uses every available CPU.
    retain_samples : bool
        Keep every trial's value (needed for empirical p-values).

    Examples
    --------
    >>> engine = PermutationEngine(counter.count, n_permutations=1000, seed=0)
    >>> null = engine.run(points.codes)
    >>> null.mean.shape
    (n_labels, n_labels)
    """

    def __init__(self,
                 statistic: Callable[[np.ndarray], np.ndarray],
                 n_permutations: int = 1000,
                 seed: Optional[int] = None,
                 n_jobs: Optional[int] = None,
                 retain_samples: bool = True):
        if isinstance(n_permutations, bool) or not isinstance(n_permutations, (int, np.integer)) \
                or n_permutations < 1:
            raise ValidationError(f"n_permutations must be an integer >= 1, got {n_permutations!r}")
        self.statistic = statistic
        self.n_permutations = int(n_permutations)
        self.seed = seed
        self.n_jobs = resolve_n_jobs(n_jobs)
        self.retain_samples = retain_samples

    def _batches(self) -> List[range]:
        n_batches = min(self.n_permutations, self.n_jobs * BATCHES_PER_WORKER)
        bounds = np.linspace(0, self.n_permutations, n_batches + 1).astype(int)
        return [range(a, b) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]

    def _run_batch(self,
                   trials: range,
                   values: np.ndarray,
                   seeds: List[np.random.SeedSequence],
                   shape: tuple,
                   max_value: int,
                   acc: _Accumulator,
                   cancel_event: Optional[threading.Event]) -> int:
        sums = np.zeros(shape, dtype=np.int64)
        sums_sq = np.zeros(shape, dtype=np.int64)
        finished = []
        kept = [] if acc.samples is not None else None

        for t in trials:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                rng = np.random.default_rng(seeds[t])
                result = np.asarray(self.statistic(rng.permutation(values)), dtype=np.int64)
                if result.shape != shape:
                    raise ValueError(f"statistic returned shape {result.shape}, expected {shape}")
                if result.size and (result.min() < 0 or result.max() > max_value):
                    raise CountOverflowError(
                        f"count {int(result.max())} exceeds the exact accumulation "
                        f"limit {max_value} for {self.n_permutations} trials"
                    )
                sums += result
                sums_sq += result * result
            except (ArithmeticError, ValueError, TypeError, IndexError) as e:
                raise PermutationTrialError(t, e) from e
            finished.append(t)
            if kept is not None:
                kept.append(result)

        values_out = np.stack(kept) if kept else None
        acc.merge(np.asarray(finished, dtype=np.int64), sums, sums_sq, values_out)
        return len(finished)

    def run(self,
            values: np.ndarray,
            observed: Optional[np.ndarray] = None,
            cancel_event: Optional[threading.Event] = None) -> NullDistribution:
        """
        Shuffle ``values`` n_permutations times and accumulate the statistic.

        Parameters
        ----------
        values : np.ndarray
            The labeling to permute (label codes or marker status).
        observed : np.ndarray, optional
            Statistic of the unpermuted labeling, used for its shape.
            Computed if not given.
        cancel_event : threading.Event, optional
            Checked between trials. When set, running batches stop after
            their current trial and completed trials are kept.

        Returns
        -------
        NullDistribution
        """
        values = np.asarray(values)
        if observed is None:
            observed = self.statistic(values)
        shape = np.asarray(observed).shape
        max_value = math.isqrt(INT64_MAX // self.n_permutations)

        seeds, entropy = trial_seeds(self.seed, self.n_permutations)
        acc = _Accumulator(shape, self.n_permutations, self.retain_samples)

        logger.info(f"  Running {self.n_permutations} permutations on {self.n_jobs} threads...")
        Parallel(n_jobs=self.n_jobs, prefer='threads')(
            delayed(self._run_batch)(batch, values, seeds, shape, max_value, acc, cancel_event)
            for batch in self._batches()
        )

        n_completed = int(acc.done.sum())
        samples = acc.samples[acc.done] if acc.samples is not None else None

        null = NullDistribution(
            n_requested=self.n_permutations,
            n_completed=n_completed,
            sums=acc.sums,
            sums_sq=acc.sums_sq,
            samples=samples,
            entropy=entropy,
        )

        if null.cancelled:
            msg = (f"Permutation run cancelled after {n_completed} of "
                   f"{self.n_permutations} trials; null estimates use fewer trials")
            logger.warning(f"  ⚠ {msg}")
            warnings.warn(msg, RuntimeWarning, stacklevel=2)
        else:
            logger.info(f"  ✓ {n_completed} permutations complete")
        return null
