"""
RandomBinaryProjectionSearcher - approximate nearest neighbor search using
random binary projections.

Each point is hashed into a bin by the signs of its projections onto a set of
random hyperplanes. A query collects the points of the bins within a given
Hamming distance of its own bin and ranks them by exact Euclidean distance.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NamedTuple, Optional

import numpy as np
import pandas as pd

from neighborstore.serialization.dtypes import dtype_to_string

if TYPE_CHECKING:
    from neighborstore.store.base import NeighborSearchStore
    from neighborstore.store.sqlite import SQLiteNeighborSearchStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Bin IDs must fit in a signed 64-bit SQLite INTEGER.
MAX_DIGIT_CAPACITY = 62


class Neighbor(NamedTuple):
    """A query result: the point's row index and its distance to the query."""

    index: int
    distance: float


@dataclass
class RandomBinaryProjectionSearcher:
    """
    A trained random binary projection index.

    Instances are built with train_searcher() or reconstructed by a store.
    random_vectors has shape (digit_capacity, column_count); bins maps each
    bin ID to the indices of the points hashed into it.

    Example:
        >>> import pandas as pd
        >>> data = pd.DataFrame([[1, 2, 3], [4, 5, 6], [7, 8, 9]], columns=["x", "y", "z"])
        >>> searcher = train_searcher(data, digit_capacity=4, seed=10)
        >>> searcher.query([2, 3, 4], k=2, search_radius=2)
    """

    columns: list[str]
    points: np.ndarray
    digit_capacity: int
    seed: Optional[int] = None
    schema_version: int = SCHEMA_VERSION
    random_vectors: Optional[np.ndarray] = None
    bins: dict[int, list[int]] = field(default_factory=dict)

    @property
    def dtype(self) -> np.dtype:
        return self.points.dtype

    @property
    def precision(self) -> str:
        return dtype_to_string(self.points.dtype)

    @property
    def column_count(self) -> int:
        return self.points.shape[1]

    @property
    def point_count(self) -> int:
        return self.points.shape[0]

    def bin_id(self, vector: np.ndarray) -> int:
        """
        Compute the bin ID of a single vector.

        Bit i of the ID is set when the projection onto hyperplane i is positive.
        """
        projection = self.random_vectors.astype(np.float64) @ np.asarray(vector, dtype=np.float64)
        bits = (projection > 0).astype(np.int64)
        return int(bits @ _bit_weights(self.digit_capacity))

    def query(self, point, k: int, search_radius: int = 1) -> list[Neighbor]:
        """
        Find up to k nearest neighbors of a point.

        Args:
            point: 1D array-like of length column_count.
            k: Maximum number of neighbors to return.
            search_radius: Maximum Hamming distance between the query's bin
                and the bins whose points are considered.

        Returns:
            Neighbors sorted by ascending distance, ties broken by index.
        """
        if self.random_vectors is None:
            raise ValueError("Searcher has no random vectors; train it first")

        query_vector = np.asarray(point, dtype=self.points.dtype).flatten()
        if query_vector.shape[0] != self.column_count:
            raise ValueError(
                f"Query vector dimension {query_vector.shape[0]} "
                f"does not match index dimension {self.column_count}"
            )
        if k <= 0:
            return []

        candidate_ids = []
        for bin_id in self._nearby_bins(self.bin_id(query_vector), search_radius):
            candidate_ids.extend(self.bins.get(bin_id, ()))

        if not candidate_ids:
            return []

        candidate_ids = np.asarray(candidate_ids, dtype=np.int64)
        candidates = self.points[candidate_ids].astype(np.float64)
        distances = np.linalg.norm(candidates - query_vector.astype(np.float64), axis=1)

        # Sort by distance, then by point index
        order = np.lexsort((candidate_ids, distances))[:k]
        return [Neighbor(int(candidate_ids[i]), float(distances[i])) for i in order]

    def _nearby_bins(self, bin_id: int, search_radius: int):
        """Yield every bin ID within search_radius bit flips of bin_id."""
        radius = max(0, min(search_radius, self.digit_capacity))
        for distance in range(radius + 1):
            for positions in itertools.combinations(range(self.digit_capacity), distance):
                flipped = bin_id
                for position in positions:
                    flipped ^= 1 << position
                yield flipped

    def save_to_store(
        self, store: "NeighborSearchStore", searcher_id: Optional[str] = None
    ) -> str:
        """Save this searcher to a store and return its ID."""
        return store.save_searcher(self, searcher_id=searcher_id)

    @classmethod
    def load_from_store(
        cls, store: "NeighborSearchStore", searcher_id: str
    ) -> Optional["RandomBinaryProjectionSearcher"]:
        """Load a searcher from a store, or return None if it does not exist."""
        return store.load_searcher(searcher_id)

    @classmethod
    def train_from_store(
        cls,
        store: "SQLiteNeighborSearchStore",
        searcher_id: str,
        digit_capacity: int,
        seed: Optional[int] = None,
        dtype=np.float32,
    ) -> "RandomBinaryProjectionSearcher":
        """Train a new searcher from the data of a stored one."""
        return store.retrain_searcher(
            searcher_id, digit_capacity=digit_capacity, seed=seed, dtype=dtype
        )


def _bit_weights(digit_capacity: int) -> np.ndarray:
    return np.left_shift(np.int64(1), np.arange(digit_capacity, dtype=np.int64))


def _to_matrix(data) -> tuple[np.ndarray, list[str]]:
    if isinstance(data, pd.DataFrame):
        return data.to_numpy(dtype=np.float64), [str(c) for c in data.columns]

    matrix = np.asarray(data, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError(f"Data must be 2D, got shape {matrix.shape}")
    return matrix, [f"col_{i}" for i in range(matrix.shape[1])]


def compute_bins(
    points: np.ndarray, random_vectors: np.ndarray
) -> dict[int, list[int]]:
    """Assign every point to the bin given by the signs of its projections."""
    projections = points.astype(np.float64) @ random_vectors.astype(np.float64).T
    bits = (projections > 0).astype(np.int64)
    bin_ids = bits @ _bit_weights(random_vectors.shape[0])

    bins: dict[int, list[int]] = {}
    for point_index, bin_id in enumerate(bin_ids.tolist()):
        bins.setdefault(bin_id, []).append(point_index)
    return bins


def train_searcher(
    data,
    digit_capacity: int,
    seed: Optional[int] = None,
    dtype=np.float32,
) -> RandomBinaryProjectionSearcher:
    """
    Train a searcher on tabular data.

    Args:
        data: pandas DataFrame (its column labels become the searcher's
            columns) or a 2D array-like.
        digit_capacity: Number of random hyperplanes, i.e. bits per bin ID.
        seed: Seed for the hyperplane generator. None draws fresh entropy.
        dtype: numpy.float32 or numpy.float64.

    Returns:
        The trained searcher.

    Raises:
        ValueError: If data is empty or not 2D, or digit_capacity is out of range.
    """
    if not 1 <= digit_capacity <= MAX_DIGIT_CAPACITY:
        raise ValueError(
            f"digit_capacity must be between 1 and {MAX_DIGIT_CAPACITY}, got {digit_capacity}"
        )

    dtype = np.dtype(dtype)
    precision = dtype_to_string(dtype)

    matrix, columns = _to_matrix(data)
    if matrix.shape[0] == 0 or matrix.shape[1] == 0:
        raise ValueError(f"Cannot train a searcher on empty data of shape {matrix.shape}")

    points = matrix.astype(dtype)
    rng = np.random.default_rng(seed)
    random_vectors = rng.standard_normal(
        size=(digit_capacity, points.shape[1])
    ).astype(dtype)

    bins = compute_bins(points, random_vectors)
    logger.debug(
        "Trained %s searcher on %d points x %d columns into %d bins",
        precision, points.shape[0], points.shape[1], len(bins),
    )

    return RandomBinaryProjectionSearcher(
        columns=columns,
        points=points,
        digit_capacity=digit_capacity,
        seed=seed,
        random_vectors=random_vectors,
        bins=bins,
    )
