"""
Random binary projection searcher.

Points are hashed into bins by the sign pattern of their projections onto
random hyperplanes; queries rank the points of nearby bins by exact distance.
"""

from neighborstore.searcher.projection import (
    SCHEMA_VERSION,
    Neighbor,
    RandomBinaryProjectionSearcher,
    train_searcher,
)

__all__ = [
    "SCHEMA_VERSION",
    "Neighbor",
    "RandomBinaryProjectionSearcher",
    "train_searcher",
]
