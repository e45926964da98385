"""
data - Input points and configuration
"""

from .points import PointSet
from .config import (
    EnrichmentConfig,
    KNNTopology,
    RadiusTopology,
    DelaunayTopology,
    Topology,
    make_topology,
    NeighborhoodAnalysisError,
    ValidationError,
    DegenerateGeometryError,
    PipelineStateError,
    PermutationTrialError,
    CountOverflowError,
)

__all__ = [
    'PointSet',
    'EnrichmentConfig',
    'KNNTopology',
    'RadiusTopology',
    'DelaunayTopology',
    'Topology',
    'make_topology',
    'NeighborhoodAnalysisError',
    'ValidationError',
    'DegenerateGeometryError',
    'PipelineStateError',
    'PermutationTrialError',
    'CountOverflowError',
]
