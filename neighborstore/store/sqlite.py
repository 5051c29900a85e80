"""
SQLiteNeighborSearchStore - persistent storage for random binary projection
searchers.

A searcher is spread over five tables (see neighborstore.store.schema):
metadata, column names, points, random vectors and bins. Vectors are stored
one row per BLOB using the format in neighborstore.serialization.vectors.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Sequence

import numpy as np
import pandas as pd

from neighborstore.errors import (
    EmptySourceTableError,
    NotFoundError,
    StoreClosedError,
    StoreCorruptionError,
)
from neighborstore.searcher import RandomBinaryProjectionSearcher, train_searcher
from neighborstore.serialization import (
    decode_matrix,
    dtype_to_string,
    encode_matrix,
    flatten_bins,
    reconstruct_bins,
    string_to_dtype,
    validate_bins,
)
from neighborstore.store.base import NeighborSearchStore, SearcherMetadata
from neighborstore.store.query import build_training_query, coerce_numeric
from neighborstore.store.schema import (
    BINS_TABLE,
    COLUMNS_TABLE,
    POINTS_TABLE,
    RANDOM_VECTORS_TABLE,
    SEARCHERS_TABLE,
    create_schema,
)

logger = logging.getLogger(__name__)


class SQLiteNeighborSearchStore(NeighborSearchStore):
    """
    Stores RandomBinaryProjectionSearcher instances in a SQLite database.

    The store owns a single connection. Saves run in one transaction, so a
    failed save leaves the database exactly as it was. Writers must be
    serialized by the caller.

    Example:
        >>> store = SQLiteNeighborSearchStore("searchers.db")
        >>> searcher_id = store.save_searcher(searcher)
        >>> loaded = store.load_searcher(searcher_id)
        >>> loaded.query([0.2, 0.3, 0.4], k=2, search_radius=2)
        >>> store.close()
    """

    def __init__(self, db_path: str = "neighborstore.db", timeout: float = 5.0):
        """
        Open (or create) the store.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait for a database lock before failing.
        """
        self.db_path = db_path
        self.timeout = timeout
        self._last_timestamp = 0

        # Transactions are managed explicitly, see _transaction()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            db_path, timeout=timeout, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")

        with self._transaction() as cursor:
            create_schema(cursor)

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError(f"Store {self.db_path} is closed")
        return self._conn

    @contextmanager
    def _transaction(self, immediate: bool = True) -> Iterator[sqlite3.Cursor]:
        """Run a block in a transaction, rolling back if it raises."""
        conn = self._get_conn()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield cursor
        except BaseException:
            # SQLite may already have rolled back, e.g. after SQLITE_FULL
            if conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise
        else:
            cursor.execute("COMMIT")
        finally:
            cursor.close()

    def _generate_id(self) -> str:
        """Generate a searcher ID from a strictly increasing millisecond timestamp."""
        timestamp = int(time.time() * 1000)
        if timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + 1
        self._last_timestamp = timestamp
        return f"searcher_{timestamp}_{timestamp % 1000000:06d}"

    def save_searcher(
        self,
        searcher: RandomBinaryProjectionSearcher,
        searcher_id: Optional[str] = None,
    ) -> str:
        """
        Save a searcher, replacing any searcher stored under the same ID.

        Args:
            searcher: The searcher to persist.
            searcher_id: ID to save under. Generated if None.

        Returns:
            The ID the searcher was saved under.

        Raises:
            ValueError: If the searcher has not been trained or its fields
                are inconsistent. Nothing is written in that case.
        """
        self._get_conn()
        self._check_saveable(searcher)

        searcher_id = searcher_id if searcher_id is not None else self._generate_id()
        dtype = searcher.points.dtype
        dtype_name = dtype_to_string(dtype)

        try:
            with self._transaction() as cursor:
                # Replacing the searcher row cascades to all rows of the old version
                cursor.execute(f"DELETE FROM {SEARCHERS_TABLE} WHERE id = ?", (searcher_id,))

                cursor.execute(
                    f"""
                    INSERT INTO {SEARCHERS_TABLE}
                    (id, digit_capacity, seed, schema_version, dtype,
                     column_count, point_count, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        searcher_id,
                        int(searcher.digit_capacity),
                        None if searcher.seed is None else int(searcher.seed),
                        int(searcher.schema_version),
                        dtype_name,
                        searcher.column_count,
                        searcher.point_count,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )

                cursor.executemany(
                    f"INSERT INTO {COLUMNS_TABLE} (searcher_id, column_index, column_name) "
                    "VALUES (?, ?, ?)",
                    [(searcher_id, i, str(name)) for i, name in enumerate(searcher.columns)],
                )

                cursor.executemany(
                    f"INSERT INTO {POINTS_TABLE} (searcher_id, point_index, vector_data) "
                    "VALUES (?, ?, ?)",
                    [
                        (searcher_id, i, blob)
                        for i, blob in enumerate(encode_matrix(searcher.points, dtype))
                    ],
                )

                cursor.executemany(
                    f"INSERT INTO {RANDOM_VECTORS_TABLE} (searcher_id, vector_index, vector_data) "
                    "VALUES (?, ?, ?)",
                    [
                        (searcher_id, i, blob)
                        for i, blob in enumerate(encode_matrix(searcher.random_vectors, dtype))
                    ],
                )

                cursor.executemany(
                    f"INSERT INTO {BINS_TABLE} (searcher_id, bin_id, point_index) "
                    "VALUES (?, ?, ?)",
                    [
                        (searcher_id, bin_id, point_index)
                        for bin_id, point_index in flatten_bins(searcher.bins)
                    ],
                )
        except Exception:
            logger.warning("Saving searcher %s failed; transaction rolled back", searcher_id)
            raise

        logger.info(
            "Saved searcher %s (%d points x %d columns, %d bins)",
            searcher_id, searcher.point_count, searcher.column_count, len(searcher.bins),
        )
        return searcher_id

    @staticmethod
    def _check_saveable(searcher: RandomBinaryProjectionSearcher) -> None:
        """Reject a searcher that load_searcher() could not reconstruct."""
        if searcher.random_vectors is None:
            raise ValueError("Cannot save a searcher without random vectors")

        if len(searcher.columns) != searcher.column_count:
            raise ValueError(
                f"Searcher has {len(searcher.columns)} column names "
                f"for {searcher.column_count} columns"
            )
        if len(set(searcher.columns)) != len(searcher.columns):
            raise ValueError(f"Searcher column names are not unique: {searcher.columns}")

        expected_shape = (searcher.digit_capacity, searcher.column_count)
        if searcher.random_vectors.shape != expected_shape:
            raise ValueError(
                f"Random vectors have shape {searcher.random_vectors.shape}, "
                f"expected {expected_shape}"
            )

        try:
            validate_bins(searcher.bins, searcher.point_count)
        except StoreCorruptionError as e:
            raise ValueError(str(e)) from None

    def load_searcher(self, searcher_id: str) -> Optional[RandomBinaryProjectionSearcher]:
        """
        Load a searcher.

        Returns:
            The reconstructed searcher, or None if the ID is unknown.

        Raises:
            StoreCorruptionError: If the stored rows disagree with the metadata.
            MalformedPayloadError: If a vector BLOB cannot be decoded.
            UnknownPrecisionTagError: If the stored dtype label is unknown.
        """
        with self._transaction(immediate=False) as cursor:
            row = self._fetch_metadata_row(cursor, searcher_id)
            if row is None:
                logger.debug("Searcher %s not found", searcher_id)
                return None

            dtype = string_to_dtype(row["dtype"])
            digit_capacity = row["digit_capacity"]
            column_count = row["column_count"]
            point_count = row["point_count"]

            columns = self._fetch_columns(cursor, searcher_id)
            if len(columns) != column_count:
                raise StoreCorruptionError(
                    f"Searcher {searcher_id}: expected {column_count} column names, "
                    f"but found {len(columns)}"
                )

            point_blobs = self._fetch_blobs(cursor, POINTS_TABLE, "point_index", searcher_id)
            if len(point_blobs) != point_count:
                raise StoreCorruptionError(
                    f"Searcher {searcher_id}: expected {point_count} points, "
                    f"but found {len(point_blobs)}"
                )

            vector_blobs = self._fetch_blobs(
                cursor, RANDOM_VECTORS_TABLE, "vector_index", searcher_id
            )
            if len(vector_blobs) != digit_capacity:
                raise StoreCorruptionError(
                    f"Searcher {searcher_id}: expected {digit_capacity} random vectors, "
                    f"but found {len(vector_blobs)}"
                )

            cursor.execute(
                f"SELECT bin_id, point_index FROM {BINS_TABLE} "
                "WHERE searcher_id = ? ORDER BY bin_id, point_index",
                (searcher_id,),
            )
            pairs = [(r["bin_id"], r["point_index"]) for r in cursor.fetchall()]

        points = decode_matrix(point_blobs, column_count).astype(dtype)
        random_vectors = decode_matrix(vector_blobs, column_count).astype(dtype)
        bins = reconstruct_bins(pairs)
        validate_bins(bins, point_count)

        logger.debug("Loaded searcher %s (%d points)", searcher_id, point_count)
        return RandomBinaryProjectionSearcher(
            columns=columns,
            points=points,
            digit_capacity=digit_capacity,
            seed=row["seed"],
            schema_version=row["schema_version"],
            random_vectors=random_vectors,
            bins=bins,
        )

    def delete_searcher(self, searcher_id: str) -> bool:
        """
        Delete a searcher and, through the cascade, all of its rows.

        Returns:
            True if the searcher existed and was deleted, False otherwise.
        """
        with self._transaction() as cursor:
            if self._fetch_metadata_row(cursor, searcher_id) is None:
                return False
            cursor.execute(f"DELETE FROM {SEARCHERS_TABLE} WHERE id = ?", (searcher_id,))

        logger.info("Deleted searcher %s", searcher_id)
        return True

    def list_searchers(self) -> list[str]:
        """Return all searcher IDs ordered by creation time."""
        cursor = self._get_conn().execute(
            f"SELECT id FROM {SEARCHERS_TABLE} ORDER BY created_at, rowid"
        )
        return [row["id"] for row in cursor.fetchall()]

    def get_searcher_metadata(self, searcher_id: str) -> Optional[SearcherMetadata]:
        """
        Read a searcher's metadata and column names without touching its
        points, random vectors or bins.

        Returns:
            The metadata, or None if the ID is unknown.
        """
        with self._transaction(immediate=False) as cursor:
            row = self._fetch_metadata_row(cursor, searcher_id)
            if row is None:
                return None
            columns = self._fetch_columns(cursor, searcher_id)

        return SearcherMetadata(
            digit_capacity=row["digit_capacity"],
            seed=row["seed"],
            schema_version=row["schema_version"],
            dtype=row["dtype"],
            column_count=row["column_count"],
            point_count=row["point_count"],
            created_at=row["created_at"],
            columns=columns,
        )

    def load_searcher_data(self, searcher_id: str) -> Optional[pd.DataFrame]:
        """
        Load only the points of a stored searcher as a DataFrame.

        The DataFrame's columns are the searcher's column names and its values
        are float64, whatever dtype the searcher was stored with.

        Returns:
            The data, or None if the searcher is unknown or has no points.
        """
        with self._transaction(immediate=False) as cursor:
            columns = self._fetch_columns(cursor, searcher_id)
            point_blobs = self._fetch_blobs(cursor, POINTS_TABLE, "point_index", searcher_id)

        if not point_blobs:
            return None

        return pd.DataFrame(decode_matrix(point_blobs, len(columns)), columns=columns)

    def train_from_table(
        self,
        table_name: str,
        embedding_columns: Sequence[str],
        digit_capacity: int,
        seed: Optional[int] = None,
        dtype=np.float32,
        where: Optional[str] = None,
        where_args: Optional[Sequence[Any]] = None,
        filter_dict: Optional[dict[str, Any]] = None,
    ) -> RandomBinaryProjectionSearcher:
        """
        Train a new searcher from vectors stored in a table of this database.

        The searcher is not saved; call save_searcher() to persist it.

        Args:
            table_name: Table holding the vectors.
            embedding_columns: Columns that make up each vector, in order.
            digit_capacity: Number of random hyperplanes.
            seed: Optional seed for the hyperplanes.
            dtype: numpy.float32 or numpy.float64.
            where: Optional condition with "?" placeholders, e.g.
                "source_lang = ? AND target_lang = ?".
            where_args: Values bound to the placeholders in where.
            filter_dict: Optional filters such as {"lang": "en", "score": [(">=", 0.5)]}.

        Returns:
            The newly trained searcher.

        Raises:
            InvalidIdentifierError: If a name or the where clause is rejected.
            NonNumericColumnError: If a selected cell is not numeric.
            EmptySourceTableError: If no rows match.
        """
        sql, params = build_training_query(
            table_name,
            embedding_columns,
            where=where,
            where_args=where_args,
            filter_dict=filter_dict,
        )

        cursor = self._get_conn().execute(sql, params)
        rows = [
            [coerce_numeric(column, value) for column, value in zip(embedding_columns, row)]
            for row in cursor.fetchall()
        ]

        if not rows:
            raise EmptySourceTableError(f"No data found in table {table_name}")

        logger.debug("Training searcher from %d rows of table %s", len(rows), table_name)
        data = pd.DataFrame(rows, columns=list(embedding_columns))
        return train_searcher(data, digit_capacity, seed=seed, dtype=dtype)

    def retrain_searcher(
        self,
        searcher_id: str,
        digit_capacity: int,
        seed: Optional[int] = None,
        dtype=np.float32,
    ) -> RandomBinaryProjectionSearcher:
        """
        Train a new searcher from the points of a stored one.

        The stored searcher is left untouched; save the result under the same
        ID to replace it, or under a new ID to keep both.

        Raises:
            NotFoundError: If no data is stored for searcher_id.
        """
        data = self.load_searcher_data(searcher_id)
        if data is None:
            raise NotFoundError(searcher_id)

        logger.debug("Retraining searcher %s with digit_capacity=%d", searcher_id, digit_capacity)
        return train_searcher(data, digit_capacity, seed=seed, dtype=dtype)

    def _fetch_metadata_row(
        self, cursor: sqlite3.Cursor, searcher_id: str
    ) -> Optional[sqlite3.Row]:
        cursor.execute(
            f"""
            SELECT digit_capacity, seed, schema_version, dtype,
                   column_count, point_count, created_at
            FROM {SEARCHERS_TABLE}
            WHERE id = ?
            """,
            (searcher_id,),
        )
        return cursor.fetchone()

    def _fetch_columns(self, cursor: sqlite3.Cursor, searcher_id: str) -> list[str]:
        cursor.execute(
            f"SELECT column_name FROM {COLUMNS_TABLE} "
            "WHERE searcher_id = ? ORDER BY column_index",
            (searcher_id,),
        )
        return [row["column_name"] for row in cursor.fetchall()]

    def _fetch_blobs(
        self, cursor: sqlite3.Cursor, table: str, order_column: str, searcher_id: str
    ) -> list[bytes]:
        cursor.execute(
            f"SELECT vector_data FROM {table} WHERE searcher_id = ? ORDER BY {order_column}",
            (searcher_id,),
        )
        return [row["vector_data"] for row in cursor.fetchall()]

    def close(self) -> None:
        """Close the database connection. Further operations raise StoreClosedError."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SQLiteNeighborSearchStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
