"""
spatial - Neighbor graphs and permutation-based enrichment

Modules
-------
- graph: Spatial index and graph construction (k-NN, radius, Delaunay)
- neighborhoods: Label-pair counting over a fixed graph
- permutation: Parallel, reproducible label-permutation null
- enrichment: z-scores, empirical p-values and the analysis pipeline

Quick Start
-----------
>>> import neighborhood_analysis as na
>>>
>>> points = na.PointSet.from_dataframe(df, x_col='x', y_col='y', label_col='cell_type')
>>> result = na.neighborhood_enrichment(
...     points, topology=na.KNNTopology(k=6), n_permutations=1000, seed=0
... )
>>> result.zscore
>>> result.to_records()

Step by step
------------
>>> graph = na.spatial.build_neighbor_graph(points, na.DelaunayTopology())
>>> print(graph.summary())
>>> counts = na.spatial.composition_matrix(graph, points)
>>> comp = na.spatial.neighborhood_composition(graph, points, normalize=True)
"""

from .graph import (
    PointSpatialGraph,
    SpatialIndex,
    build_neighbor_graph,
)

from .neighborhoods import (
    CompositionCounter,
    composition_matrix,
    neighborhood_composition,
    radius_neighbors,
)

from .permutation import (
    NullDistribution,
    PermutationEngine,
    resolve_n_jobs,
    trial_seeds,
)

from .enrichment import (
    ZERO_VARIANCE_SENTINEL,
    EnrichmentResult,
    MarkerColocalization,
    NeighborhoodEnrichment,
    PipelineState,
    empirical_pvalues,
    marker_colocalization,
    neighborhood_enrichment,
    score_enrichment,
    significance_call,
    zscore,
)

__all__ = [
    # Graph construction
    'PointSpatialGraph',
    'SpatialIndex',
    'build_neighbor_graph',

    # Counting
    'CompositionCounter',
    'composition_matrix',
    'neighborhood_composition',
    'radius_neighbors',

    # Permutation
    'NullDistribution',
    'PermutationEngine',
    'resolve_n_jobs',
    'trial_seeds',

    # Scoring
    'ZERO_VARIANCE_SENTINEL',
    'EnrichmentResult',
    'MarkerColocalization',
    'NeighborhoodEnrichment',
    'PipelineState',
    'empirical_pvalues',
    'marker_colocalization',
    'neighborhood_enrichment',
    'score_enrichment',
    'significance_call',
    'zscore',
]
