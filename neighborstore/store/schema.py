"""
SQLite schema for persisted searchers.

One row in neighbor_searchers per searcher; every other table is keyed by
searcher_id and cascades on delete, so removing the searcher row removes all
of its columns, points, random vectors and bins.
"""

import sqlite3

SEARCHERS_TABLE = "neighbor_searchers"
COLUMNS_TABLE = "searcher_columns"
POINTS_TABLE = "searcher_points"
RANDOM_VECTORS_TABLE = "searcher_random_vectors"
BINS_TABLE = "searcher_bins"

DEPENDENT_TABLES = (COLUMNS_TABLE, POINTS_TABLE, RANDOM_VECTORS_TABLE, BINS_TABLE)


def create_schema(cursor: sqlite3.Cursor) -> None:
    """Create all tables and indexes if they do not exist yet."""
    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {SEARCHERS_TABLE} (
            id TEXT PRIMARY KEY,
            digit_capacity INTEGER NOT NULL,
            seed INTEGER,
            schema_version INTEGER NOT NULL,
            dtype TEXT NOT NULL,
            column_count INTEGER NOT NULL,
            point_count INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            metadata TEXT
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {COLUMNS_TABLE} (
            searcher_id TEXT NOT NULL,
            column_index INTEGER NOT NULL,
            column_name TEXT NOT NULL,
            PRIMARY KEY (searcher_id, column_index),
            FOREIGN KEY (searcher_id) REFERENCES {SEARCHERS_TABLE} (id) ON DELETE CASCADE
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {POINTS_TABLE} (
            searcher_id TEXT NOT NULL,
            point_index INTEGER NOT NULL,
            vector_data BLOB NOT NULL,
            PRIMARY KEY (searcher_id, point_index),
            FOREIGN KEY (searcher_id) REFERENCES {SEARCHERS_TABLE} (id) ON DELETE CASCADE
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {RANDOM_VECTORS_TABLE} (
            searcher_id TEXT NOT NULL,
            vector_index INTEGER NOT NULL,
            vector_data BLOB NOT NULL,
            PRIMARY KEY (searcher_id, vector_index),
            FOREIGN KEY (searcher_id) REFERENCES {SEARCHERS_TABLE} (id) ON DELETE CASCADE
        )
    """)

    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {BINS_TABLE} (
            searcher_id TEXT NOT NULL,
            bin_id INTEGER NOT NULL,
            point_index INTEGER NOT NULL,
            PRIMARY KEY (searcher_id, bin_id, point_index),
            FOREIGN KEY (searcher_id) REFERENCES {SEARCHERS_TABLE} (id) ON DELETE CASCADE
        )
    """)

    # Indexes
    cursor.execute(
        f"CREATE INDEX IF NOT EXISTS idx_searcher_points ON {POINTS_TABLE} (searcher_id, point_index)"
    )
    cursor.execute(
        f"CREATE INDEX IF NOT EXISTS idx_searcher_bins ON {BINS_TABLE} (searcher_id, bin_id)"
    )
    cursor.execute(
        f"CREATE INDEX IF NOT EXISTS idx_searcher_random_vectors ON {RANDOM_VECTORS_TABLE} (searcher_id)"
    )
    cursor.execute(
        f"CREATE INDEX IF NOT EXISTS idx_searchers_created ON {SEARCHERS_TABLE} (created_at)"
    )
