"""
conftest.py - Shared test fixtures for neighborhood_analysis

pytest reads this file before running any test. Every fixture defined
here is available to all test files by name, no import needed.

    @pytest.fixture
    def my_fixture():
        return something_useful

    def test_something(my_fixture):   <- pytest injects it
        assert my_fixture == expected
"""

import threading

import numpy as np
import pytest

from neighborhood_analysis import PointSet

# ===========================================================================
# Constants
# ===========================================================================

N_PER_CLUSTER = 60  # points per label in the clustered fixture
N_RANDOM = 150      # points in the random fixture


# ===========================================================================
# Fixture 1: the unit square
# ===========================================================================


@pytest.fixture
def square_points():
    """
    4 points on the unit square, labelled A, B, A, B.

        2 (A) ---- 3 (B)
          |          |
        0 (A) ---- 1 (B)

    Every point has two neighbors at distance 1, so k=1 must break a tie.
    """
    return PointSet(
        x=[0.0, 1.0, 0.0, 1.0],
        y=[0.0, 0.0, 1.0, 1.0],
        labels=['A', 'B', 'A', 'B'],
    )


# ===========================================================================
# Fixture 2: two well separated clusters
# ===========================================================================


@pytest.fixture
def clustered_points():
    """
    Label A fills the square [0, 10]^2, label B fills [30, 40] x [0, 10].

    Neighbors are (almost) always same-label: A-A and B-B are enriched,
    A-B is depleted.
    """
    rng = np.random.default_rng(42)
    a = rng.uniform(0, 10, size=(N_PER_CLUSTER, 2))
    b = rng.uniform(0, 10, size=(N_PER_CLUSTER, 2)) + np.array([30.0, 0.0])
    coords = np.vstack([a, b])
    labels = ['A'] * N_PER_CLUSTER + ['B'] * N_PER_CLUSTER
    return PointSet(coords[:, 0], coords[:, 1], labels)


# ===========================================================================
# Fixture 3: random points, three labels
# ===========================================================================


@pytest.fixture
def random_points():
    """Uniform random points in [0, 100]^2 with labels T, B and Tumor."""
    rng = np.random.default_rng(7)
    coords = rng.uniform(0, 100, size=(N_RANDOM, 2))
    labels = rng.choice(['T', 'B', 'Tumor'], size=N_RANDOM)
    return PointSet(coords[:, 0], coords[:, 1], labels)


# ===========================================================================
# Fixture 4: a single label everywhere
# ===========================================================================


@pytest.fixture
def single_label_points():
    """20 random points, every one labelled A."""
    rng = np.random.default_rng(3)
    coords = rng.uniform(0, 50, size=(20, 2))
    return PointSet(coords[:, 0], coords[:, 1], ['A'] * 20)


# ===========================================================================
# Helper: an event that turns itself on
# ===========================================================================


class CountdownEvent(threading.Event):
    """
    Cancellation event that reports 'set' after ``n_checks`` checks.

    The permutation engine checks the event once before every trial, so
    with a single worker exactly ``n_checks`` trials run.
    """

    def __init__(self, n_checks):
        super().__init__()
        self._remaining = n_checks
        self._lock = threading.Lock()

    def is_set(self):
        with self._lock:
            if self._remaining <= 0:
                return True
            self._remaining -= 1
            return False


@pytest.fixture
def countdown_event():
    """Factory: countdown_event(n) -> CountdownEvent(n)."""
    return CountdownEvent


# ===========================================================================
# Helper: pretend the machine has more CPUs
# ===========================================================================


@pytest.fixture
def many_cpus(monkeypatch):
    """
    Report 8 CPUs to the permutation engine.

    Worker requests are clamped to the CPU count, so without this a
    small runner would turn every n_jobs > 1 run into a serial one.
    """
    monkeypatch.setattr('neighborhood_analysis.spatial.permutation.cpu_count', lambda: 8)
    return 8
