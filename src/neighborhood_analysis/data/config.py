"""
config.py - Configuration and error types for neighborhood_analysis

Contains:
- KNNTopology, RadiusTopology, DelaunayTopology: neighbor definitions
- EnrichmentConfig: settings for one enrichment run
- Exception hierarchy shared by every module
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

import numpy as np

if TYPE_CHECKING:
    from .points import PointSet


class NeighborhoodAnalysisError(Exception):
    """Base exception for neighborhood_analysis errors."""
    pass


class ValidationError(NeighborhoodAnalysisError, ValueError):
    """Raised when input points or configuration are invalid."""
    pass


class DegenerateGeometryError(ValidationError):
    """Raised when points cannot be triangulated (collinear or coincident)."""
    pass


class PipelineStateError(NeighborhoodAnalysisError, RuntimeError):
    """Raised when a pipeline step is called out of order."""
    pass


class PermutationTrialError(NeighborhoodAnalysisError):
    """Raised when a single permutation trial fails."""
    def __init__(self, trial: int, cause: BaseException):
        self.trial = trial
        super().__init__(f"Permutation trial {trial} failed: {cause}")


class CountOverflowError(NeighborhoodAnalysisError, ArithmeticError):
    """Raised when counts exceed what the exact accumulator can hold."""
    pass


# ---------------------------------------------------------------------------
# Topology variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KNNTopology:
    """
    Connect every point to its k nearest other points.

    Ties at the k-th distance are resolved by lowest point identity.
    The directed relation is symmetrized by union.
    """
    k: int = 6

    method = 'knn'

    def __post_init__(self):
        if isinstance(self.k, bool) or not isinstance(self.k, (int, np.integer)):
            raise ValidationError(f"k must be an integer, got {self.k!r}")
        if self.k < 1:
            raise ValidationError(f"k must be >= 1, got {self.k}")

    @property
    def params(self) -> dict:
        return {'k': int(self.k)}

    def validate_for(self, points: PointSet) -> None:
        if self.k >= points.n_points:
            raise ValidationError(
                f"k={self.k} requires more than {self.k} points, "
                f"got {points.n_points}"
            )


@dataclass(frozen=True)
class RadiusTopology:
    """Connect every pair of points within ``radius`` (inclusive)."""
    radius: float = 50.0

    method = 'radius'

    def __post_init__(self):
        if isinstance(self.radius, bool) or not isinstance(self.radius, (int, float, np.integer, np.floating)):
            raise ValidationError(f"radius must be a number, got {self.radius!r}")
        r = float(self.radius)
        if not np.isfinite(r) or r <= 0:
            raise ValidationError(f"radius must be positive and finite, got {self.radius}")

    @property
    def params(self) -> dict:
        return {'radius': float(self.radius)}

    def validate_for(self, points: PointSet) -> None:
        pass


@dataclass(frozen=True)
class DelaunayTopology:
    """
    Connect points that share an edge of the Delaunay triangulation.

    Parameters
    ----------
    max_edge_length : float, optional
        Prune edges longer than this. Removes spurious long-range
        connections along the convex hull.
    """
    max_edge_length: Optional[float] = None

    method = 'delaunay'

    def __post_init__(self):
        if self.max_edge_length is not None:
            m = float(self.max_edge_length)
            if not np.isfinite(m) or m <= 0:
                raise ValidationError(
                    f"max_edge_length must be positive, got {self.max_edge_length}"
                )

    @property
    def params(self) -> dict:
        if self.max_edge_length is None:
            return {}
        return {'max_edge_length': float(self.max_edge_length)}

    def validate_for(self, points: PointSet) -> None:
        if points.n_points < 3:
            raise ValidationError(
                f"Need at least 3 points for Delaunay triangulation, "
                f"got {points.n_points}"
            )
        if not points.spans_plane():
            raise DegenerateGeometryError(
                "Delaunay triangulation needs non-collinear points; "
                "all points are collinear or coincident"
            )


Topology = Union[KNNTopology, RadiusTopology, DelaunayTopology]

TOPOLOGIES = (KNNTopology, RadiusTopology, DelaunayTopology)

NULL_MODELS = ('samples', 'moments')


def make_topology(method: str, **params) -> Topology:
    """
    Build a topology from its method name.

    >>> make_topology('knn', k=10)
    KNNTopology(k=10)
    """
    if method == 'knn':
        return KNNTopology(**params)
    elif method == 'radius':
        return RadiusTopology(**params)
    elif method == 'delaunay':
        return DelaunayTopology(**params)
    else:
        raise ValidationError(
            f"Unknown topology: {method}. Use 'knn', 'radius' or 'delaunay'."
        )


@dataclass(frozen=True)
class EnrichmentConfig:
    """
    Settings for one neighborhood enrichment run.

    Attributes
    ----------
    topology : KNNTopology, RadiusTopology or DelaunayTopology
        Neighbor definition.
    n_permutations : int
        Number of label shuffles in the null distribution.
    seed : int, optional
        Base seed. None draws fresh entropy (recorded on the result).
    n_jobs : int, optional
        Worker threads. None or -1 uses every available CPU. Values above
        the CPU count are clamped.
    null_model : str
        'samples' keeps every permuted count (enables empirical p-values),
        'moments' keeps only exact sums (z-scores only, O(L^2) memory).
    pval_threshold : float
        Threshold for the association/avoidance call.
    ordered_pairs : bool
        If True, ``to_records()`` lists both (A, B) and (B, A).
    """
    topology: Topology = KNNTopology()
    n_permutations: int = 1000
    seed: Optional[int] = None
    n_jobs: Optional[int] = None
    null_model: str = 'samples'
    pval_threshold: float = 0.05
    ordered_pairs: bool = False

    def __post_init__(self):
        if not isinstance(self.topology, TOPOLOGIES):
            raise ValidationError(f"Invalid topology: {self.topology!r}")

        n = self.n_permutations
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n < 1:
            raise ValidationError(f"n_permutations must be an integer >= 1, got {n!r}")

        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, (int, np.integer))
            or self.seed < 0
        ):
            raise ValidationError(f"seed must be a non-negative integer or None, got {self.seed!r}")

        if self.n_jobs is not None and (
            isinstance(self.n_jobs, bool) or not isinstance(self.n_jobs, (int, np.integer))
            or (self.n_jobs < 1 and self.n_jobs != -1)
        ):
            raise ValidationError(f"n_jobs must be a positive integer, -1 or None, got {self.n_jobs!r}")

        if self.null_model not in NULL_MODELS:
            raise ValidationError(
                f"Unknown null_model: {self.null_model}. Use 'samples' or 'moments'."
            )

        p = self.pval_threshold
        if isinstance(p, bool) or not isinstance(p, (int, float, np.integer, np.floating)) \
                or not 0 < p < 1:
            raise ValidationError(f"pval_threshold must be in (0, 1), got {self.pval_threshold}")

    @property
    def retain_samples(self) -> bool:
        return self.null_model == 'samples'
