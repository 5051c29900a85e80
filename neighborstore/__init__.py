"""
neighborstore - SQLite persistence for random binary projection searchers.

neighborstore saves approximate nearest neighbor indexes built from random
hyperplane sign patterns into SQLite, loads them back with identical query
behaviour, and retrains them from stored points or from your own tables.
"""

from neighborstore.__version__ import __version__
from neighborstore.errors import (
    EmptySourceTableError,
    InvalidIdentifierError,
    MalformedPayloadError,
    NeighborStoreError,
    NonNumericColumnError,
    NotFoundError,
    StoreClosedError,
    StoreCorruptionError,
    UnknownPrecisionTagError,
)
from neighborstore.searcher import Neighbor, RandomBinaryProjectionSearcher, train_searcher
from neighborstore.store import NeighborSearchStore, SearcherMetadata, SQLiteNeighborSearchStore

__all__ = [
    "EmptySourceTableError",
    "InvalidIdentifierError",
    "MalformedPayloadError",
    "NeighborSearchStore",
    "NeighborStoreError",
    "Neighbor",
    "NonNumericColumnError",
    "NotFoundError",
    "RandomBinaryProjectionSearcher",
    "SQLiteNeighborSearchStore",
    "SearcherMetadata",
    "StoreClosedError",
    "StoreCorruptionError",
    "UnknownPrecisionTagError",
    "__version__",
    "train_searcher",
]
