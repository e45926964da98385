"""
points.py - Validated point/label input

PointSet holds the fixed-size, fixed-order collection of points for one
analysis run. Point identity is the position 0..N-1. Labels are encoded
to dense integer codes once, so every downstream step counts integers.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from .config import ValidationError


# Relative tolerance for the collinearity check
COLLINEAR_RTOL = 1e-12


class PointSet:
    """
    Immutable collection of labelled 2D points.

    Parameters
    ----------
    x, y : array-like
        Coordinates, one value per point. Must be finite.
    labels : array-like
        One category label (string or integer) per point.
    categories : sequence, optional
        Full label set. Labels listed here but absent from ``labels``
        still appear in every result with zero counts. Default: the
        sorted unique labels.

    Examples
    --------
    >>> pts = PointSet([0, 1, 0, 1], [0, 0, 1, 1], ['A', 'B', 'A', 'B'])
    >>> pts.n_points, pts.n_labels
    (4, 2)
    """

    def __init__(self,
                 x: Sequence[float],
                 y: Sequence[float],
                 labels: Sequence,
                 categories: Optional[Sequence] = None):
        try:
            x = np.asarray(x, dtype=np.float64).ravel()
            y = np.asarray(y, dtype=np.float64).ravel()
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Coordinates must be numeric: {e}") from e
        labels = np.asarray(labels, dtype=object).ravel()

        lengths = [len(x), len(y), len(labels)]
        if len(set(lengths)) != 1:
            raise ValidationError(f"x, y and labels have different lengths: {lengths}")
        if lengths[0] == 0:
            raise ValidationError("Point set is empty")
        if lengths[0] < 2:
            raise ValidationError(f"Need at least 2 points, got {lengths[0]}")

        bad = ~(np.isfinite(x) & np.isfinite(y))
        if bad.any():
            first = int(np.flatnonzero(bad)[0])
            raise ValidationError(
                f"{int(bad.sum())} points have NaN or infinite coordinates "
                f"(first at index {first})"
            )

        if pd.isna(labels).any():
            raise ValidationError("Every point needs a label; found missing labels")

        if categories is not None:
            categories = list(categories)
            if len(set(categories)) != len(categories):
                raise ValidationError("categories contain duplicates")
            unknown = set(labels) - set(categories)
            if unknown:
                raise ValidationError(f"Labels not in categories: {sorted(map(str, unknown))}")

        cat = pd.Categorical(labels, categories=categories)

        self._coords = np.column_stack([x, y])
        self._coords.setflags(write=False)
        self._codes = np.asarray(cat.codes, dtype=np.int64)
        self._codes.setflags(write=False)
        self._categories = cat.categories

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_dataframe(cls,
                       df: pd.DataFrame,
                       x_col: str = 'x',
                       y_col: str = 'y',
                       label_col: str = 'cell_type',
                       categories: Optional[Sequence] = None) -> 'PointSet':
        """
        Create from a DataFrame with coordinate and label columns.

        Row order defines point identity.
        """
        missing = [c for c in (x_col, y_col, label_col) if c not in df.columns]
        if missing:
            raise ValidationError(f"Missing columns in DataFrame: {missing}")

        if categories is None and isinstance(df[label_col].dtype, pd.CategoricalDtype):
            categories = list(df[label_col].cat.categories)

        return cls(
            x=df[x_col].to_numpy(),
            y=df[y_col].to_numpy(),
            labels=df[label_col].to_numpy(dtype=object),
            categories=categories,
        )

    @classmethod
    def from_records(cls, records: Iterable[tuple], categories: Optional[Sequence] = None) -> 'PointSet':
        """Create from an iterable of ``(x, y, label)`` tuples."""
        records = list(records)
        if not records:
            raise ValidationError("Point set is empty")
        try:
            x, y, labels = zip(*records)
        except ValueError as e:
            raise ValidationError(f"Records must be (x, y, label) tuples: {e}") from e
        return cls(x, y, labels, categories=categories)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def n_points(self) -> int:
        return self._coords.shape[0]

    @property
    def coords(self) -> np.ndarray:
        """Read-only (n_points, 2) coordinate array."""
        return self._coords

    @property
    def codes(self) -> np.ndarray:
        """Read-only integer label code per point."""
        return self._codes

    @property
    def categories(self) -> pd.Index:
        return self._categories

    @property
    def n_labels(self) -> int:
        return len(self._categories)

    @property
    def labels(self) -> np.ndarray:
        return np.asarray(self._categories)[self._codes]

    def label_counts(self) -> pd.Series:
        """Number of points per label, including zero-count labels."""
        counts = np.bincount(self._codes, minlength=self.n_labels)
        return pd.Series(counts, index=self._categories, name='n_points')

    def spans_plane(self) -> bool:
        """True if the points are neither all collinear nor all coincident."""
        centered = self._coords - self._coords.mean(axis=0)
        scale = np.abs(centered).max()
        if scale == 0:
            return False
        s = np.linalg.svd(centered / scale, compute_uv=False)
        return bool(s[-1] > COLLINEAR_RTOL * s[0] * np.sqrt(self.n_points))

    def __len__(self) -> int:
        return self.n_points

    def __repr__(self) -> str:
        return f"PointSet ({self.n_points} points, {self.n_labels} labels)"
