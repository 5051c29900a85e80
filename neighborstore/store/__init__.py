"""
Persistent storage for random binary projection searchers.
"""

from neighborstore.store.base import NeighborSearchStore, SearcherMetadata
from neighborstore.store.sqlite import SQLiteNeighborSearchStore

__all__ = [
    "NeighborSearchStore",
    "SQLiteNeighborSearchStore",
    "SearcherMetadata",
]
