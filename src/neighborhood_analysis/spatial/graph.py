"""
graph.py - Spatial index and neighbor graph construction

Builds the undirected point-point adjacency relation from coordinates.
The graph depends only on geometry, never on labels, so it is built once
per analysis and shared read-only by every permutation trial.

Conventions
-----------
- No self-loops. A point's duplicate (same coordinates, different
  identity) is a distinct point at distance 0.
- k-NN ties at the k-th distance go to the lowest point identity.
- Directed neighbor lists are symmetrized by union: edge (p, q) exists
  if p reports q or q reports p.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial import Delaunay, QhullError
from sklearn.neighbors import NearestNeighbors

from ..data.config import (
    DegenerateGeometryError,
    DelaunayTopology,
    KNNTopology,
    RadiusTopology,
    Topology,
    ValidationError,
)
from ..data.points import PointSet

logger = logging.getLogger(__name__)


@dataclass
class PointSpatialGraph:
    """
    Container for a spatial graph built from point coordinates.

    Attributes
    ----------
    adjacency : sparse.csr_matrix
        Symmetric binary adjacency matrix (n_points x n_points), int8.
    distances : sparse.csr_matrix
        Edge lengths, same sparsity as adjacency. Zero-length edges
        between coincident points are stored explicitly.
    edges : np.ndarray
        (n_edges, 2) array of undirected edges, i < j, sorted.
    n_points : int
        Number of points (graph order).
    method : str
        Construction method ('knn', 'radius', 'delaunay').
    params : dict
        Parameters used (e.g., {'k': 10}).
    """
    adjacency: sparse.csr_matrix
    distances: sparse.csr_matrix
    edges: np.ndarray
    n_points: int
    method: str
    params: dict = field(default_factory=dict)

    @property
    def n_edges(self) -> int:
        """Undirected edge count."""
        return self.edges.shape[0]

    @property
    def mean_degree(self) -> float:
        if self.n_points == 0:
            return 0.0
        return 2.0 * self.n_edges / self.n_points

    def is_symmetric(self) -> bool:
        return (self.adjacency != self.adjacency.T).nnz == 0

    def get_neighbors(self, point: int) -> np.ndarray:
        """Get neighbor identities for a given point."""
        start, end = self.adjacency.indptr[point], self.adjacency.indptr[point + 1]
        return np.sort(self.adjacency.indices[start:end])

    def get_neighbor_distances(self, point: int) -> pd.Series:
        """Get distances to neighbors for a given point."""
        neighbors = self.get_neighbors(point)
        row = self.distances.getrow(point).toarray().ravel()
        dists = row[neighbors]
        return pd.Series(dists, index=neighbors, name='distance')

    def edge_lengths(self) -> np.ndarray:
        """Length of every undirected edge, aligned with ``edges``."""
        if self.n_edges == 0:
            return np.zeros(0, dtype=np.float64)
        return np.asarray(self.distances[self.edges[:, 0], self.edges[:, 1]]).ravel()

    def degree_series(self) -> pd.Series:
        """Degree (neighbor count) for every point."""
        degrees = np.diff(self.adjacency.indptr).astype(int)
        return pd.Series(degrees, name='degree')

    def summary(self) -> dict:
        degrees = np.diff(self.adjacency.indptr)
        dists = self.edge_lengths()
        return {
            'method': self.method,
            'params': dict(self.params),
            'n_points': self.n_points,
            'n_edges': self.n_edges,
            'mean_degree': self.mean_degree,
            'min_degree': int(degrees.min()) if len(degrees) else 0,
            'max_degree': int(degrees.max()) if len(degrees) else 0,
            'n_isolated': int((degrees == 0).sum()),
            'mean_edge_distance': float(dists.mean()) if len(dists) > 0 else 0.0,
            'max_edge_distance': float(dists.max()) if len(dists) > 0 else 0.0,
        }

    def __repr__(self) -> str:
        return (
            f"PointSpatialGraph (method={self.method}, "
            f"{self.n_points} points, {self.n_edges} edges, "
            f"mean degree={self.mean_degree:.1f})"
        )


class SpatialIndex:
    """
    Queryable index over a fixed set of 2D points.

    Wraps a kd-tree for k-NN and radius queries and a qhull
    triangulation for Delaunay adjacency. Every query returns directed
    (source, target, distance) arrays; symmetrization happens in
    :func:`build_neighbor_graph`.
    """

    def __init__(self, coords: np.ndarray):
        self.coords = np.asarray(coords, dtype=np.float64)
        self.n_points = self.coords.shape[0]
        self._nn = NearestNeighbors(algorithm='kd_tree', metric='euclidean')
        self._nn.fit(self.coords)

    def knn(self, k: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        k nearest other points of every point.

        The query window starts at k + 2: the point itself plus k others,
        and one more column to see whether the k-th distance is tied.
        Rows whose window ends inside the tie group at the k-th distance
        are re-queried with a doubled window until the whole tie group is
        visible, then ordered by (distance, identity).
        """
        n = self.n_points
        if not 1 <= k < n:
            raise ValidationError(f"k must satisfy 1 <= k < n_points ({n}), got {k}")

        neighbors = np.empty((n, k), dtype=np.int64)
        distances = np.empty((n, k), dtype=np.float64)

        rows = np.arange(n)
        window = min(k + 2, n)
        while rows.size:
            dist, idx = self._nn.kneighbors(self.coords[rows], n_neighbors=window)
            # self sits at distance 0, so column k holds the k-th distance to another point
            kth = dist[:, k]
            complete = (dist[:, -1] > kth) | (window == n)

            done = rows[complete]
            d = dist[complete].copy()
            j = idx[complete]
            d[j == done[:, None]] = np.inf
            order = np.lexsort((j, d), axis=-1)[:, :k]
            neighbors[done] = np.take_along_axis(j, order, axis=1)
            distances[done] = np.take_along_axis(d, order, axis=1)

            rows = rows[~complete]
            window = min(2 * window, n)

        sources = np.repeat(np.arange(n), k)
        return sources, neighbors.ravel(), distances.ravel()

    def radius(self, r: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """All other points within distance r (inclusive) of every point."""
        if not r > 0:
            raise ValidationError(f"radius must be positive, got {r}")
        dist, idx = self._nn.radius_neighbors(self.coords, radius=r, return_distance=True)
        lengths = np.fromiter((len(a) for a in idx), dtype=np.int64, count=self.n_points)
        sources = np.repeat(np.arange(self.n_points), lengths)
        targets = np.concatenate(idx).astype(np.int64) if lengths.sum() else np.zeros(0, np.int64)
        d = np.concatenate(dist).astype(np.float64) if lengths.sum() else np.zeros(0)
        keep = sources != targets
        return sources[keep], targets[keep], d[keep]

    def delaunay(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Delaunay triangulation edges.

        qhull drops coincident duplicates from the triangulation and
        reports them as coplanar points with their nearest vertex. Each
        dropped point is joined to that vertex, to the vertex's other
        duplicates, and to every triangulation neighbor of the vertex.
        """
        if self.n_points < 3:
            raise ValidationError(
                f"Need at least 3 points for Delaunay triangulation, got {self.n_points}"
            )
        try:
            tri = Delaunay(self.coords)
        except QhullError as e:
            raise DegenerateGeometryError(f"Delaunay triangulation failed: {e}") from e

        s = tri.simplices
        pairs = np.vstack([s[:, [0, 1]], s[:, [1, 2]], s[:, [0, 2]]]).astype(np.int64)

        if len(tri.coplanar):
            pairs = np.vstack([pairs, self._attach_duplicates(pairs, tri.coplanar)])

        sources, targets = pairs[:, 0], pairs[:, 1]
        d = np.hypot(*(self.coords[sources] - self.coords[targets]).T)
        return sources, targets, d

    def _attach_duplicates(self, pairs: np.ndarray, coplanar: np.ndarray) -> np.ndarray:
        adj = sparse.coo_matrix(
            (np.ones(len(pairs), dtype=np.int8), (pairs[:, 0], pairs[:, 1])),
            shape=(self.n_points, self.n_points),
        ).tocsr()
        adj = ((adj + adj.T) > 0).tocsr()

        groups: dict[int, list[int]] = {}
        for point, _, vertex in coplanar:
            groups.setdefault(int(vertex), []).append(int(point))

        extra = []
        for vertex, dups in groups.items():
            members = [vertex] + dups
            for a in range(len(members)):
                for b in range(a + 1, len(members)):
                    extra.append((members[a], members[b]))
            vertex_nbrs = adj.indices[adj.indptr[vertex]:adj.indptr[vertex + 1]]
            for p in dups:
                extra.extend((p, int(q)) for q in vertex_nbrs)

        if not extra:
            return np.zeros((0, 2), dtype=np.int64)
        logger.info(f"  → Attached {sum(map(len, groups.values()))} coincident points "
                    f"to their triangulation vertices")
        return np.asarray(extra, dtype=np.int64)


def _symmetrize(sources: np.ndarray,
                targets: np.ndarray,
                dists: np.ndarray,
                n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Union of directed edges -> unique undirected (i < j) edges and lengths."""
    keep = sources != targets
    sources, targets, dists = sources[keep], targets[keep], dists[keep]

    lo = np.minimum(sources, targets)
    hi = np.maximum(sources, targets)
    keys = lo * np.int64(n_points) + hi
    keys, first = np.unique(keys, return_index=True)

    edges = np.column_stack([keys // n_points, keys % n_points]).astype(np.int64)
    return edges, dists[first]


def _to_sparse(edges: np.ndarray, values: np.ndarray, n_points: int, dtype) -> sparse.csr_matrix:
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.concatenate([values, values]).astype(dtype)
    m = sparse.csr_matrix((data, (rows, cols)), shape=(n_points, n_points))
    m.sort_indices()
    return m


def build_neighbor_graph(points: Union[PointSet, np.ndarray],
                         topology: Topology) -> PointSpatialGraph:
    """
    Build the undirected neighbor graph for a topology.

    Parameters
    ----------
    points : PointSet or array-like
        Points to connect. A bare (n, 2) coordinate array is accepted
        and validated like a PointSet.
    topology : KNNTopology, RadiusTopology or DelaunayTopology
        Neighbor definition.

    Returns
    -------
    PointSpatialGraph

    Examples
    --------
    >>> graph = build_neighbor_graph(pts, KNNTopology(k=6))
    >>> graph.summary()['n_edges']
    """
    if not isinstance(points, PointSet):
        coords = np.asarray(points, dtype=np.float64)
        if coords.ndim != 2 or coords.shape[1] != 2:
            raise ValidationError(f"Expected (n, 2) coordinates, got shape {coords.shape}")
        points = PointSet(coords[:, 0], coords[:, 1], np.zeros(coords.shape[0], dtype=int))

    topology.validate_for(points)
    index = SpatialIndex(points.coords)
    n = points.n_points

    if isinstance(topology, KNNTopology):
        sources, targets, dists = index.knn(topology.k)
    elif isinstance(topology, RadiusTopology):
        sources, targets, dists = index.radius(topology.radius)
    elif isinstance(topology, DelaunayTopology):
        sources, targets, dists = index.delaunay()
    else:
        raise ValidationError(f"Unknown topology: {topology!r}")

    edges, lengths = _symmetrize(sources, targets, dists, n)

    if isinstance(topology, DelaunayTopology) and topology.max_edge_length is not None:
        keep = lengths <= topology.max_edge_length
        logger.info(f"  → Pruned {int((~keep).sum())} edges longer than "
                    f"{topology.max_edge_length}")
        edges, lengths = edges[keep], lengths[keep]

    graph = PointSpatialGraph(
        adjacency=_to_sparse(edges, np.ones(len(edges)), n, np.int8),
        distances=_to_sparse(edges, lengths, n, np.float64),
        edges=edges,
        n_points=n,
        method=topology.method,
        params=topology.params,
    )

    if topology.method == 'radius' and graph.mean_degree > 100:
        logger.warning(f"  ⚠ Very dense graph (mean degree={graph.mean_degree:.0f}). "
                       f"Consider a smaller radius.")

    logger.info(f"  ✓ {topology.method} graph: {graph.params}, {graph.n_edges} edges, "
                f"mean degree={graph.mean_degree:.1f}")
    return graph
