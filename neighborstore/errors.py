"""
Exceptions raised by neighborstore.

Read paths report a missing searcher by returning None; the exceptions below
are reserved for conditions where no sensible result exists.
"""


class NeighborStoreError(Exception):
    """Base class for all neighborstore errors."""


class NotFoundError(NeighborStoreError, KeyError):
    """The requested searcher ID does not exist in the store."""

    def __init__(self, searcher_id: str):
        self.searcher_id = searcher_id
        super().__init__(f"Searcher with ID {searcher_id!r} not found")

    def __str__(self) -> str:
        return self.args[0]


class StoreCorruptionError(NeighborStoreError):
    """Persisted rows disagree with the recorded searcher metadata."""


class MalformedPayloadError(NeighborStoreError, ValueError):
    """A vector payload could not be decoded."""


class NonNumericColumnError(NeighborStoreError, ValueError):
    """A training table cell could not be coerced to a number."""

    def __init__(self, column: str, value: object):
        self.column = column
        self.value = value
        super().__init__(f"Column {column} contains non-numeric value: {value!r}")


class EmptySourceTableError(NeighborStoreError):
    """A training query selected no rows."""


class UnknownPrecisionTagError(NeighborStoreError, ValueError):
    """A persisted precision label or tag is not recognized."""


class StoreClosedError(NeighborStoreError):
    """The store was used after close()."""


class InvalidIdentifierError(NeighborStoreError, ValueError):
    """A table name, column name or filter fragment failed validation."""
