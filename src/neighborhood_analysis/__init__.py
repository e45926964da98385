# src/neighborhood_analysis/__init__.py

"""
neighborhood_analysis - Spatial neighborhood enrichment for labelled points
"""

# Core data structures
from .data.points import PointSet
from .data.config import (
    EnrichmentConfig,
    KNNTopology,
    RadiusTopology,
    DelaunayTopology,
    make_topology,
    NeighborhoodAnalysisError,
    ValidationError,
    DegenerateGeometryError,
    PipelineStateError,
    PermutationTrialError,
    CountOverflowError,
)
from .spatial.enrichment import (
    NeighborhoodEnrichment,
    EnrichmentResult,
    neighborhood_enrichment,
    marker_colocalization,
)

# Import submodules
from . import data
from . import spatial

__version__ = '0.3.0'

__all__ = [
    # Core classes
    'PointSet',
    'EnrichmentConfig',
    'KNNTopology',
    'RadiusTopology',
    'DelaunayTopology',
    'make_topology',
    'NeighborhoodEnrichment',
    'EnrichmentResult',

    # Entry points
    'neighborhood_enrichment',
    'marker_colocalization',

    # Errors
    'NeighborhoodAnalysisError',
    'ValidationError',
    'DegenerateGeometryError',
    'PipelineStateError',
    'PermutationTrialError',
    'CountOverflowError',

    # Submodules
    'data',
    'spatial',
]
