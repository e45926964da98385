"""
neighborhoods.py - Label composition of spatial neighborhoods

Counts how often each label combination occurs across the edges of a
fixed neighbor graph. The counter is built once from the graph and then
called with as many labelings as needed (the observed one and every
permuted one); it never touches the graph again.
"""
from __future__ import annotations

import logging
from typing import Dict, List

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.config import RadiusTopology, ValidationError
from ..data.points import PointSet
from .graph import PointSpatialGraph, SpatialIndex

logger = logging.getLogger(__name__)


class CompositionCounter:
    """
    Label-pair edge counts over a fixed graph.

    ``count(codes)[a, b]`` is the number of undirected edges whose two
    endpoints carry labels {a, b}; the matrix is symmetric and the
    diagonal holds same-label edges. Each edge is counted exactly once::

        trace(M) + triu(M, 1).sum() == n_edges

    Parameters
    ----------
    graph : PointSpatialGraph
        Pre-built spatial graph. Only its edge list is kept.
    n_labels : int
        Number of label codes (L). Codes must lie in [0, L).
    """

    def __init__(self, graph: PointSpatialGraph, n_labels: int):
        if n_labels < 1:
            raise ValidationError(f"n_labels must be >= 1, got {n_labels}")
        self.n_points = graph.n_points
        self.n_labels = int(n_labels)
        self._src = graph.edges[:, 0].copy()
        self._dst = graph.edges[:, 1].copy()
        self._src.setflags(write=False)
        self._dst.setflags(write=False)

    @property
    def n_edges(self) -> int:
        return len(self._src)

    def _check_codes(self, codes: np.ndarray) -> np.ndarray:
        codes = np.asarray(codes)
        if codes.shape != (self.n_points,):
            raise ValidationError(
                f"Expected {self.n_points} label codes, got shape {codes.shape}"
            )
        return codes

    def count(self, codes: np.ndarray) -> np.ndarray:
        """
        Symmetric (L x L) int64 count matrix for one labeling. O(E).
        """
        codes = self._check_codes(codes)
        L = self.n_labels
        a = codes[self._src]
        b = codes[self._dst]
        lo = np.minimum(a, b)
        hi = np.maximum(a, b)

        upper = np.bincount(lo * L + hi, minlength=L * L).astype(np.int64).reshape(L, L)
        return upper + upper.T - np.diag(np.diag(upper))

    def count_marker_pairs(self, x_status: np.ndarray, y_status: np.ndarray) -> int:
        """
        Number of directed neighbor pairs (p, q) with p marked X and q marked Y.

        Every undirected edge contributes up to twice, once per direction.
        """
        x = self._check_codes(x_status).astype(bool)
        y = self._check_codes(y_status).astype(bool)
        forward = np.count_nonzero(x[self._src] & y[self._dst])
        backward = np.count_nonzero(x[self._dst] & y[self._src])
        return int(forward + backward)


def composition_matrix(graph: PointSpatialGraph, points: PointSet) -> pd.DataFrame:
    """
    Observed label-pair edge counts as a labelled DataFrame.

    >>> composition_matrix(graph, pts).loc['A', 'B']
    """
    counter = CompositionCounter(graph, points.n_labels)
    counts = counter.count(points.codes)
    return pd.DataFrame(counts, index=points.categories, columns=points.categories)


def neighborhood_composition(
    graph: PointSpatialGraph,
    points: PointSet,
    normalize: bool = True,
) -> pd.DataFrame:
    """
    Compute label composition of each point's neighborhood.

    For each point, counts (or proportions of) each label among its
    graph neighbors.

    Parameters
    ----------
    graph : PointSpatialGraph
        Pre-built spatial graph.
    points : PointSet
        Points the graph was built from.
    normalize : bool
        If True, return proportions. If False, return raw counts.

    Returns
    -------
    pd.DataFrame
        (n_points x n_labels). Each row sums to 1 if normalized, except
        isolated points which stay all-zero.
    """
    if graph.n_points != points.n_points:
        raise ValidationError(
            f"Graph has {graph.n_points} points but PointSet has {points.n_points}"
        )

    n_points = points.n_points
    onehot = sparse.csr_matrix(
        (np.ones(n_points), (np.arange(n_points), points.codes)),
        shape=(n_points, points.n_labels),
    )

    # adjacency @ onehot -> neighbor label counts
    counts = graph.adjacency.astype(np.float64).dot(onehot).toarray()

    result = pd.DataFrame(counts, columns=points.categories)

    if normalize:
        row_sums = result.sum(axis=1)
        result = result.div(row_sums.replace(0, np.nan), axis=0).fillna(0)

    logger.info(f"  ✓ Neighborhood composition: {n_points} points × {points.n_labels} labels"
                f" ({'proportions' if normalize else 'counts'})")
    return result


def radius_neighbors(coords: np.ndarray, r: float) -> Dict[int, List[int]]:
    """
    Neighbors of every point within radius r, without building a graph.

    Parameters
    ----------
    coords : array-like
        (n, 2) coordinates.
    r : float
        Search radius (inclusive).

    Returns
    -------
    dict
        Point identity -> sorted list of neighbor identities (self excluded).
    """
    r = RadiusTopology(radius=r).radius
    coords = np.asarray(coords, dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise ValidationError(f"Expected (n, 2) coordinates, got shape {coords.shape}")
    if not np.isfinite(coords).all():
        raise ValidationError("Coordinates contain NaN or infinite values")

    result: Dict[int, List[int]] = {i: [] for i in range(coords.shape[0])}
    if coords.shape[0] < 2:
        return result

    sources, targets, _ = SpatialIndex(coords).radius(r)
    for i, j in zip(sources.tolist(), targets.tolist()):
        result[i].append(j)
    for i in result:
        result[i].sort()
    return result
