"""
test_counting.py - Label-pair counting over a fixed graph

How to run:
    pytest tests/test_counting.py -v
"""

import numpy as np
import pytest

from neighborhood_analysis import (
    DelaunayTopology,
    KNNTopology,
    PointSet,
    RadiusTopology,
    ValidationError,
)
from neighborhood_analysis.spatial import (
    CompositionCounter,
    build_neighbor_graph,
    composition_matrix,
    neighborhood_composition,
)


# ===========================================================================
# SECTION 1 — Count matrix
# ===========================================================================


class TestCompositionCounter:

    def test_unit_square_counts(self, square_points):
        """Edges {0,1}, {0,2}, {1,3} -> one A-B, one A-A, one B-B edge."""
        graph = build_neighbor_graph(square_points, KNNTopology(k=1))
        counts = composition_matrix(graph, square_points)
        assert counts.loc['A', 'B'] == 1
        assert counts.loc['B', 'A'] == 1
        assert counts.loc['A', 'A'] == 1
        assert counts.loc['B', 'B'] == 1

    @pytest.mark.parametrize('topology', [KNNTopology(k=3), RadiusTopology(radius=15.0), DelaunayTopology()],
                             ids=['knn', 'radius', 'delaunay'])
    def test_count_conservation(self, random_points, topology):
        """Diagonal plus one off-diagonal triangle equals the edge count."""
        graph = build_neighbor_graph(random_points, topology)
        m = CompositionCounter(graph, random_points.n_labels).count(random_points.codes)
        assert np.trace(m) + np.triu(m, k=1).sum() == graph.n_edges
        assert m.sum() + np.trace(m) == 2 * graph.n_edges

    def test_matrix_is_symmetric(self, random_points):
        graph = build_neighbor_graph(random_points, KNNTopology(k=4))
        m = CompositionCounter(graph, random_points.n_labels).count(random_points.codes)
        assert np.array_equal(m, m.T)
        assert m.dtype == np.int64

    def test_reusable_with_other_labelings(self, random_points):
        """Counting a different labeling leaves the edge count unchanged."""
        graph = build_neighbor_graph(random_points, KNNTopology(k=4))
        counter = CompositionCounter(graph, random_points.n_labels)
        first = counter.count(random_points.codes)
        shuffled = np.random.default_rng(0).permutation(random_points.codes)
        second = counter.count(shuffled)
        assert np.trace(first) + np.triu(first, 1).sum() == np.trace(second) + np.triu(second, 1).sum()
        assert np.array_equal(counter.count(random_points.codes), first)

    def test_empty_graph_counts_are_zero(self, square_points):
        graph = build_neighbor_graph(square_points, RadiusTopology(radius=0.1))
        m = CompositionCounter(graph, 2).count(square_points.codes)
        assert m.shape == (2, 2)
        assert not m.any()

    def test_zero_occurrence_label_is_kept(self):
        pts = PointSet(x=[0, 1, 0, 1], y=[0, 0, 1, 1], labels=list('ABAB'),
                       categories=['A', 'B', 'C'])
        graph = build_neighbor_graph(pts, KNNTopology(k=1))
        counts = composition_matrix(graph, pts)
        assert list(counts.index) == ['A', 'B', 'C']
        assert counts.loc['C'].sum() == 0

    def test_wrong_length_codes(self, square_points):
        graph = build_neighbor_graph(square_points, KNNTopology(k=1))
        counter = CompositionCounter(graph, 2)
        with pytest.raises(ValidationError):
            counter.count(np.zeros(3, dtype=int))

    def test_marker_pairs(self, square_points):
        """
        Radius 1 on the square: edges {0,1}, {0,2}, {1,3}, {2,3}.
        X = {0}, Y = {1, 2}: directed pairs 0->1 and 0->2.
        """
        graph = build_neighbor_graph(square_points, RadiusTopology(radius=1.0))
        counter = CompositionCounter(graph, 1)
        x = np.array([True, False, False, False])
        y = np.array([False, True, True, False])
        assert counter.count_marker_pairs(x, y) == 2
        assert counter.count_marker_pairs(y, x) == 2
        assert counter.count_marker_pairs(y, y) == 0


# ===========================================================================
# SECTION 2 — Per-point neighborhood composition
# ===========================================================================


class TestNeighborhoodComposition:

    def test_proportions_sum_to_one(self, random_points):
        graph = build_neighbor_graph(random_points, KNNTopology(k=5))
        comp = neighborhood_composition(graph, random_points, normalize=True)
        assert comp.shape == (random_points.n_points, random_points.n_labels)
        assert np.allclose(comp.sum(axis=1), 1.0)

    def test_counts_match_degree(self, random_points):
        graph = build_neighbor_graph(random_points, KNNTopology(k=5))
        comp = neighborhood_composition(graph, random_points, normalize=False)
        assert np.array_equal(comp.sum(axis=1).to_numpy(), graph.degree_series().to_numpy())

    def test_isolated_points_stay_zero(self, square_points):
        graph = build_neighbor_graph(square_points, RadiusTopology(radius=0.1))
        comp = neighborhood_composition(graph, square_points)
        assert (comp.to_numpy() == 0).all()


# ===========================================================================
# SECTION 3 — PointSet validation
# ===========================================================================


class TestPointSet:

    def test_label_encoding(self, square_points):
        assert list(square_points.categories) == ['A', 'B']
        assert square_points.codes.tolist() == [0, 1, 0, 1]
        assert square_points.label_counts().to_dict() == {'A': 2, 'B': 2}

    def test_points_are_read_only(self, square_points):
        with pytest.raises(ValueError):
            square_points.coords[0, 0] = 5.0

    @pytest.mark.parametrize('x, y, labels', [
        ([], [], []),
        ([0.0], [0.0], ['A']),
        ([0.0, np.nan], [0.0, 1.0], ['A', 'B']),
        ([0.0, 1.0], [np.inf, 1.0], ['A', 'B']),
        ([0.0, 1.0], [0.0], ['A', 'B']),
        ([0.0, 1.0], [0.0, 1.0], ['A', None]),
    ], ids=['empty', 'single', 'nan', 'inf', 'length', 'missing-label'])
    def test_invalid_input(self, x, y, labels):
        with pytest.raises(ValidationError):
            PointSet(x, y, labels)

    def test_label_outside_categories(self):
        with pytest.raises(ValidationError):
            PointSet([0, 1], [0, 1], ['A', 'Z'], categories=['A', 'B'])

    def test_from_dataframe(self):
        import pandas as pd
        df = pd.DataFrame({'x': [0, 1, 2], 'y': [0, 1, 0], 'cell_type': ['T', 'B', 'T']})
        pts = PointSet.from_dataframe(df)
        assert pts.n_points == 3
        assert list(pts.labels) == ['T', 'B', 'T']
        with pytest.raises(ValidationError):
            PointSet.from_dataframe(df, label_col='missing')

    def test_from_records(self):
        pts = PointSet.from_records([(0, 0, 1), (1, 1, 2), (2, 0, 1)])
        assert list(pts.categories) == [1, 2]
