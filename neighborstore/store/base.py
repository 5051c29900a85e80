"""
Abstract interface for searcher stores.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from neighborstore.searcher import RandomBinaryProjectionSearcher


@dataclass
class SearcherMetadata:
    """Shape and parameters of a stored searcher, readable without loading it."""

    digit_capacity: int
    seed: Optional[int]
    schema_version: int
    dtype: str
    column_count: int
    point_count: int
    created_at: str
    columns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NeighborSearchStore(ABC):
    """
    Saves, loads, deletes and lists RandomBinaryProjectionSearcher instances.

    Read operations return None for unknown IDs instead of raising.
    """

    @abstractmethod
    def save_searcher(
        self,
        searcher: RandomBinaryProjectionSearcher,
        searcher_id: Optional[str] = None,
    ) -> str:
        """
        Save a searcher, replacing any searcher stored under the same ID.

        Returns:
            The given searcher_id, or a generated one if None.
        """

    @abstractmethod
    def load_searcher(self, searcher_id: str) -> Optional[RandomBinaryProjectionSearcher]:
        """Load a searcher, or return None if it does not exist."""

    @abstractmethod
    def delete_searcher(self, searcher_id: str) -> bool:
        """Delete a searcher. Returns False if it did not exist."""

    @abstractmethod
    def list_searchers(self) -> list[str]:
        """Return all searcher IDs, oldest first."""

    @abstractmethod
    def get_searcher_metadata(self, searcher_id: str) -> Optional[SearcherMetadata]:
        """Return a searcher's metadata without loading its points, or None."""
