"""
enrichment.py - Neighborhood enrichment scoring

Tests whether label pairs are spatial neighbors more or less often than
expected under random label assignment: compare the observed label-pair
edge counts with a permutation null distribution built over the same
graph.

Pipeline
--------
    UNBUILT -> INDEXED_GRAPH -> OBSERVED_COUNTED -> PERMUTING -> SCORED

A pipeline is single-use. Any fatal error moves it to FAILED and no
partial score matrix is ever returned.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from ..data.config import (
    EnrichmentConfig,
    PipelineStateError,
    ValidationError,
)
from ..data.points import PointSet
from .graph import PointSpatialGraph, build_neighbor_graph
from .neighborhoods import CompositionCounter
from .permutation import NullDistribution, PermutationEngine

logger = logging.getLogger(__name__)

# z-score reported when the null standard deviation is (near) zero
ZERO_VARIANCE_SENTINEL = np.nan
ZERO_VARIANCE_TOL = 1e-12

RECORD_COLUMNS = [
    'label_a', 'label_b', 'observed_count', 'null_mean',
    'null_stddev', 'z_score', 'p_value', 'call',
]


def zscore(observed: np.ndarray, mean: np.ndarray, std: np.ndarray) -> np.ndarray:
    """
    (observed - mean) / std, with ZERO_VARIANCE_SENTINEL where std is ~0.

    Never returns an infinity.
    """
    observed = np.asarray(observed, dtype=np.float64)
    valid = np.isfinite(std) & (std > ZERO_VARIANCE_TOL)
    with np.errstate(divide='ignore', invalid='ignore'):
        z = (observed - mean) / std
    return np.where(valid, z, ZERO_VARIANCE_SENTINEL)


def empirical_pvalues(observed: np.ndarray, null: NullDistribution) -> dict:
    """
    Empirical p-values from retained samples.

    Returns
    -------
    dict with keys:
        'two_sided' : fraction of trials at least as far from the null mean
        'greater'   : fraction of trials >= observed (association)
        'less'      : fraction of trials <= observed (avoidance)
    All use the (count + 1) / (T + 1) correction.
    """
    if null.samples is None:
        raise ValidationError("Empirical p-values need the 'samples' null model")
    samples = null.samples
    t = samples.shape[0]
    mean = null.mean
    extreme = np.sum(np.abs(samples - mean) >= np.abs(observed - mean), axis=0)
    greater = np.sum(samples >= observed, axis=0)
    less = np.sum(samples <= observed, axis=0)
    return {
        'two_sided': (extreme + 1) / (t + 1),
        'greater': (greater + 1) / (t + 1),
        'less': (less + 1) / (t + 1),
    }


def significance_call(p_greater: np.ndarray, p_less: np.ndarray, threshold: float) -> np.ndarray:
    """+1 association, -1 avoidance, 0 not significant."""
    call = np.zeros(np.shape(p_greater), dtype=np.int64)
    call = np.where((p_greater < p_less) & (p_greater < threshold), 1, call)
    call = np.where((p_less < p_greater) & (p_less < threshold), -1, call)
    return call


@dataclass(frozen=True, eq=False)
class EnrichmentResult:
    """
    Score matrix of one enrichment run.

    All matrices are (n_labels x n_labels) DataFrames indexed by label,
    symmetric. ``zscore`` holds ZERO_VARIANCE_SENTINEL (NaN) for pairs
    whose null distribution has no variance. The p-value matrices are
    None under the 'moments' null model.
    """
    observed: pd.DataFrame
    null_mean: pd.DataFrame
    null_std: pd.DataFrame
    zscore: pd.DataFrame
    pvalue: Optional[pd.DataFrame]
    p_greater: Optional[pd.DataFrame]
    p_less: Optional[pd.DataFrame]
    call: Optional[pd.DataFrame]
    n_permutations: int
    n_completed: int
    seed_entropy: int
    graph_summary: dict
    ordered_pairs: bool = False

    @property
    def cancelled(self) -> bool:
        return self.n_completed < self.n_permutations

    @property
    def labels(self) -> pd.Index:
        return self.observed.index

    def to_records(self) -> pd.DataFrame:
        """
        One row per label pair.

        Unordered pairs (A, B) with A <= B in label order by default;
        both orientations when the run used ``ordered_pairs=True``.
        """
        labels = list(self.labels)
        n = len(labels)
        rows = []
        for i in range(n):
            for j in range(n) if self.ordered_pairs else range(i, n):
                rows.append({
                    'label_a': labels[i],
                    'label_b': labels[j],
                    'observed_count': int(self.observed.iat[i, j]),
                    'null_mean': float(self.null_mean.iat[i, j]),
                    'null_stddev': float(self.null_std.iat[i, j]),
                    'z_score': float(self.zscore.iat[i, j]),
                    'p_value': float(self.pvalue.iat[i, j]) if self.pvalue is not None else np.nan,
                    'call': int(self.call.iat[i, j]) if self.call is not None else 0,
                })
        return pd.DataFrame(rows, columns=RECORD_COLUMNS)

    def top_pairs(self, n: int = 3, direction: str = 'enriched') -> pd.DataFrame:
        """Label pairs with the highest ('enriched') or lowest ('depleted') z-scores."""
        if direction not in ('enriched', 'depleted'):
            raise ValueError(f"Unknown direction: {direction}. Use 'enriched' or 'depleted'.")
        records = self.to_records().dropna(subset=['z_score'])
        return records.sort_values(
            'z_score', ascending=(direction == 'depleted'), kind='mergesort'
        ).head(n).reset_index(drop=True)


def score_enrichment(observed: np.ndarray,
                     null: NullDistribution,
                     categories: pd.Index,
                     pval_threshold: float = 0.05,
                     ordered_pairs: bool = False,
                     graph_summary: Optional[dict] = None) -> EnrichmentResult:
    """
    Compare observed label-pair counts with the permutation null.

    Parameters
    ----------
    observed : np.ndarray
        (L x L) observed count matrix.
    null : NullDistribution
        Null distribution over the same graph and label set.
    categories : pd.Index
        Label for each row/column.
    pval_threshold : float
        Threshold for the association/avoidance call.
    ordered_pairs : bool
        Forwarded to the result's record table.
    graph_summary : dict, optional
        Stored on the result for reference.

    Returns
    -------
    EnrichmentResult
    """
    if null.n_completed == 0:
        raise PipelineStateError("No permutation trials completed; nothing to score")
    if observed.shape != null.sums.shape:
        raise ValidationError(
            f"Observed shape {observed.shape} does not match null shape {null.sums.shape}"
        )

    mean = null.mean
    std = null.std
    z = zscore(observed, mean, std)

    def frame(values):
        return pd.DataFrame(values, index=categories, columns=categories)

    if null.samples is not None:
        p = empirical_pvalues(observed, null)
        pvalue = frame(p['two_sided'])
        p_greater = frame(p['greater'])
        p_less = frame(p['less'])
        call = frame(significance_call(p['greater'], p['less'], pval_threshold))
    else:
        pvalue = p_greater = p_less = call = None

    n_undefined = int(np.isnan(z[np.triu_indices(len(categories))]).sum())
    if n_undefined:
        logger.info(f"  → {n_undefined} label pairs have a zero-variance null "
                    f"(z-score undefined)")

    return EnrichmentResult(
        observed=frame(observed.astype(np.int64)),
        null_mean=frame(mean),
        null_std=frame(std),
        zscore=frame(z),
        pvalue=pvalue,
        p_greater=p_greater,
        p_less=p_less,
        call=call,
        n_permutations=null.n_requested,
        n_completed=null.n_completed,
        seed_entropy=null.entropy,
        graph_summary=dict(graph_summary or {}),
        ordered_pairs=ordered_pairs,
    )


class PipelineState(Enum):
    UNBUILT = 'unbuilt'
    INDEXED_GRAPH = 'indexed_graph'
    OBSERVED_COUNTED = 'observed_counted'
    PERMUTING = 'permuting'
    SCORED = 'scored'
    FAILED = 'failed'


class NeighborhoodEnrichment:
    """
    Single-use neighborhood enrichment pipeline.

    Parameters
    ----------
    points : PointSet
        Labelled points.
    config : EnrichmentConfig, optional
        Topology, trial count, seed, workers and null model.

    Examples
    --------
    >>> pipe = NeighborhoodEnrichment(points, EnrichmentConfig(KNNTopology(k=6), seed=0))
    >>> pipe.build_graph()
    >>> pipe.count_observed()
    >>> pipe.permute()
    >>> result = pipe.score()
    >>> result.zscore.loc['Tumor', 'T_cell']

    Each step must follow the previous one; call ``run()`` to do all four.
    """

    def __init__(self, points: PointSet, config: Optional[EnrichmentConfig] = None):
        if not isinstance(points, PointSet):
            raise ValidationError(f"points must be a PointSet, got {type(points).__name__}")
        self.points = points
        self.config = config if config is not None else EnrichmentConfig()
        self.config.topology.validate_for(points)

        self.state = PipelineState.UNBUILT
        self.graph: Optional[PointSpatialGraph] = None
        self.observed: Optional[np.ndarray] = None
        self.null: Optional[NullDistribution] = None
        self.result: Optional[EnrichmentResult] = None
        self._counter: Optional[CompositionCounter] = None

    def _advance(self, expected: PipelineState, action: str) -> None:
        if self.state is not expected:
            raise PipelineStateError(
                f"Cannot {action} in state '{self.state.value}'; "
                f"expected '{expected.value}'"
            )

    def _fail(self) -> None:
        self.state = PipelineState.FAILED

    def build_graph(self) -> PointSpatialGraph:
        """Index the points and build the neighbor graph (once)."""
        self._advance(PipelineState.UNBUILT, 'build the graph')
        try:
            self.graph = build_neighbor_graph(self.points, self.config.topology)
            self._counter = CompositionCounter(self.graph, self.points.n_labels)
        except Exception:
            self._fail()
            raise
        self.state = PipelineState.INDEXED_GRAPH
        return self.graph

    def count_observed(self) -> pd.DataFrame:
        """Count label-pair edges for the true labeling."""
        self._advance(PipelineState.INDEXED_GRAPH, 'count observed pairs')
        try:
            self.observed = self._counter.count(self.points.codes)
        except Exception:
            self._fail()
            raise
        self.state = PipelineState.OBSERVED_COUNTED
        return pd.DataFrame(self.observed, index=self.points.categories,
                            columns=self.points.categories)

    def permute(self, cancel_event: Optional[threading.Event] = None) -> NullDistribution:
        """
        Build the null distribution over the same graph.

        Parameters
        ----------
        cancel_event : threading.Event, optional
            Set it from another thread to stop between trials. Completed
            trials are kept and the result reports the reduced count.
        """
        self._advance(PipelineState.OBSERVED_COUNTED, 'start permutations')
        self.state = PipelineState.PERMUTING
        engine = PermutationEngine(
            self._counter.count,
            n_permutations=self.config.n_permutations,
            seed=self.config.seed,
            n_jobs=self.config.n_jobs,
            retain_samples=self.config.retain_samples,
        )
        try:
            self.null = engine.run(self.points.codes, observed=self.observed,
                                   cancel_event=cancel_event)
        except Exception:
            self._fail()
            raise
        return self.null

    def score(self) -> EnrichmentResult:
        """Score every label pair against the null distribution."""
        self._advance(PipelineState.PERMUTING, 'score')
        if self.null is None:
            raise PipelineStateError("Permutations have not finished")
        try:
            self.result = score_enrichment(
                self.observed,
                self.null,
                self.points.categories,
                pval_threshold=self.config.pval_threshold,
                ordered_pairs=self.config.ordered_pairs,
                graph_summary=self.graph.summary(),
            )
        except Exception:
            self._fail()
            raise
        self.state = PipelineState.SCORED
        _report(self.result)
        return self.result

    def run(self, cancel_event: Optional[threading.Event] = None) -> EnrichmentResult:
        """Run every remaining step, from UNBUILT to SCORED."""
        self.build_graph()
        self.count_observed()
        self.permute(cancel_event=cancel_event)
        return self.score()


def _report(result: EnrichmentResult) -> None:
    n_types = len(result.labels)
    logger.info(f"  ✓ Neighborhood enrichment: {n_types} labels, "
                f"{result.n_completed} permutations")
    enriched = result.top_pairs(1, 'enriched')
    depleted = result.top_pairs(1, 'depleted')
    if len(enriched):
        row = enriched.iloc[0]
        logger.info(f"    Top enriched:  ({row.label_a}, {row.label_b}) (z={row.z_score:.2f})")
    if len(depleted):
        row = depleted.iloc[0]
        logger.info(f"    Top depleted:  ({row.label_a}, {row.label_b}) (z={row.z_score:.2f})")


def neighborhood_enrichment(points: PointSet,
                            config: Optional[EnrichmentConfig] = None,
                            cancel_event: Optional[threading.Event] = None,
                            **overrides) -> EnrichmentResult:
    """
    Test whether label pairs co-locate more/less than expected.

    Builds the graph, counts observed pairs, shuffles labels
    ``n_permutations`` times and scores every pair.

    Parameters
    ----------
    points : PointSet
        Labelled points.
    config : EnrichmentConfig, optional
        Base configuration. Defaults to ``EnrichmentConfig()``.
    cancel_event : threading.Event, optional
        Cooperative cancellation between trials.
    **overrides
        Replace individual config fields, e.g. ``seed=0, n_jobs=4``.

    Returns
    -------
    EnrichmentResult

    Examples
    --------
    >>> result = neighborhood_enrichment(points, topology=KNNTopology(k=10), seed=0)
    >>> result.to_records().head()
    """
    config = config if config is not None else EnrichmentConfig()
    if overrides:
        try:
            config = dataclasses.replace(config, **overrides)
        except TypeError as e:
            raise ValidationError(f"Invalid configuration override: {e}") from e
    return NeighborhoodEnrichment(points, config).run(cancel_event=cancel_event)


@dataclass(frozen=True)
class MarkerColocalization:
    """Co-localization score between two marker-positive populations."""
    observed: int
    null_mean: float
    null_std: float
    z_score: float
    p_value: float
    n_permutations: int
    n_completed: int
    seed_entropy: int


def marker_colocalization(graph: PointSpatialGraph,
                          x_status,
                          y_status,
                          n_permutations: int = 500,
                          seed: Optional[int] = None,
                          n_jobs: Optional[int] = None,
                          cancel_event: Optional[threading.Event] = None) -> MarkerColocalization:
    """
    Test spatial co-localization between marker X and marker Y.

    A point may be X-positive and/or Y-positive. The statistic is the
    number of directed neighbor pairs (p, q) with p X-positive and q
    Y-positive; the null shuffles the Y status across points.

    Parameters
    ----------
    graph : PointSpatialGraph
        Pre-built spatial graph.
    x_status, y_status : array-like of bool
        Marker positivity per point.
    n_permutations : int
        Number of Y-status shuffles.
    seed : int, optional
        Random seed for reproducibility.
    n_jobs : int, optional
        Worker threads.

    Returns
    -------
    MarkerColocalization
    """
    x = np.asarray(x_status)
    y = np.asarray(y_status)
    for name, arr in (('x_status', x), ('y_status', y)):
        if arr.shape != (graph.n_points,):
            raise ValidationError(f"{name} needs {graph.n_points} values, got shape {arr.shape}")
        if arr.dtype != bool and not np.isin(arr, (0, 1)).all():
            raise ValidationError(f"{name} must be boolean")
    x = x.astype(bool)
    y = y.astype(bool)

    counter = CompositionCounter(graph, n_labels=1)

    def statistic(y_perm):
        return counter.count_marker_pairs(x, y_perm)

    observed = statistic(y)
    null = PermutationEngine(
        statistic, n_permutations=n_permutations, seed=seed,
        n_jobs=n_jobs, retain_samples=True,
    ).run(y, observed=np.asarray(observed), cancel_event=cancel_event)
    if null.n_completed == 0:
        raise PipelineStateError("No permutation trials completed; nothing to score")

    mean = float(null.mean)
    std = float(null.std)
    z = float(zscore(np.asarray(observed), np.asarray(mean), np.asarray(std)))
    p = float(empirical_pvalues(np.asarray(observed), null)['two_sided'])

    logger.info(f"  ✓ Marker co-localization: observed={observed}, "
                f"expected={mean:.1f}, z={z:.2f}")

    return MarkerColocalization(
        observed=int(observed),
        null_mean=mean,
        null_std=std,
        z_score=z,
        p_value=p,
        n_permutations=null.n_requested,
        n_completed=null.n_completed,
        seed_entropy=null.entropy,
    )
