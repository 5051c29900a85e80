"""
Tests for SQLiteNeighborSearchStore save, load, delete, list and metadata.
"""

import os
import sqlite3
import tempfile

import numpy as np
import pytest

from neighborstore import (
    MalformedPayloadError,
    RandomBinaryProjectionSearcher,
    SQLiteNeighborSearchStore,
    StoreClosedError,
    StoreCorruptionError,
    UnknownPrecisionTagError,
    train_searcher,
)
from neighborstore.serialization import flatten_bins
from neighborstore.store.schema import DEPENDENT_TABLES


@pytest.fixture
def temp_db():
    """Create a temporary database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    try:
        os.unlink(path)
    except OSError:
        pass


@pytest.fixture
def store(temp_db):
    store = SQLiteNeighborSearchStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def small_searcher():
    """Searcher over 6 rows x 3 columns."""
    data = [
        [1, 2, 3],
        [4, 5, 6],
        [7, 8, 9],
        [10, 11, 12],
        [13, 14, 15],
        [16, 17, 18],
    ]
    return train_searcher(data, digit_capacity=4, seed=10)


@pytest.fixture
def large_searcher():
    rng = np.random.default_rng(42)
    return train_searcher(rng.standard_normal(size=(200, 16)), digit_capacity=6, seed=99)


def count_rows(db_path, searcher_id):
    """Count rows per dependent table for a searcher, using a separate connection."""
    conn = sqlite3.connect(db_path)
    try:
        return {
            table: conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE searcher_id = ?", (searcher_id,)
            ).fetchone()[0]
            for table in DEPENDENT_TABLES
        }
    finally:
        conn.close()


def execute_raw(db_path, sql, params=()):
    """Modify the database behind the store's back."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def assert_same_searcher(loaded: RandomBinaryProjectionSearcher, original: RandomBinaryProjectionSearcher):
    assert loaded.columns == original.columns
    assert loaded.digit_capacity == original.digit_capacity
    assert loaded.seed == original.seed
    assert loaded.schema_version == original.schema_version
    assert loaded.points.dtype == original.points.dtype
    np.testing.assert_array_equal(loaded.points, original.points)
    np.testing.assert_array_equal(loaded.random_vectors, original.random_vectors)
    assert {k: sorted(v) for k, v in loaded.bins.items()} == {
        k: sorted(v) for k, v in original.bins.items()
    }


class TestSaveAndLoad:
    """Test persisting and reconstructing searchers."""

    def test_round_trip(self, store, small_searcher):
        """Test that every persisted field survives a round trip."""
        searcher_id = store.save_searcher(small_searcher)
        loaded = store.load_searcher(searcher_id)

        assert loaded is not None
        assert_same_searcher(loaded, small_searcher)

    def test_round_trip_float64(self, store):
        """Test that double precision values are stored exactly."""
        rng = np.random.default_rng(0)
        searcher = train_searcher(rng.standard_normal(size=(30, 5)), 5, seed=1, dtype=np.float64)

        loaded = store.load_searcher(store.save_searcher(searcher))

        assert loaded.points.dtype == np.float64
        assert_same_searcher(loaded, searcher)

    def test_round_trip_without_seed(self, store, small_searcher):
        """Test that a missing seed is stored as NULL."""
        searcher = train_searcher(small_searcher.points, digit_capacity=4)
        searcher_id = store.save_searcher(searcher)

        assert store.load_searcher(searcher_id).seed is None
        assert store.get_searcher_metadata(searcher_id).seed is None

    def test_custom_id(self, store, small_searcher):
        """Test saving under a caller-chosen ID."""
        searcher_id = store.save_searcher(small_searcher, searcher_id="my-searcher")

        assert searcher_id == "my-searcher"
        assert store.load_searcher("my-searcher") is not None

    def test_generated_ids(self, store, small_searcher):
        """Test the format and uniqueness of generated IDs."""
        ids = [store.save_searcher(small_searcher) for _ in range(5)]

        assert len(set(ids)) == 5
        for searcher_id in ids:
            prefix, timestamp, suffix = searcher_id.split("_")
            assert prefix == "searcher"
            assert timestamp.isdigit()
            assert len(suffix) == 6
            assert int(suffix) == int(timestamp) % 1000000

    def test_load_missing(self, store):
        """Test that an unknown ID loads as None."""
        assert store.load_searcher("non-existent") is None

    def test_query_equivalence(self, store, large_searcher):
        """Test that queries return the same neighbors after a round trip."""
        loaded = store.load_searcher(store.save_searcher(large_searcher))
        rng = np.random.default_rng(7)

        for query in rng.standard_normal(size=(10, 16)):
            for search_radius in [0, 1, 3]:
                original = large_searcher.query(query, k=10, search_radius=search_radius)
                restored = loaded.query(query, k=10, search_radius=search_radius)

                assert [n.index for n in restored] == [n.index for n in original]
                for a, b in zip(restored, original):
                    assert a.distance == pytest.approx(b.distance, abs=1e-6)

    def test_bins_cover_all_points(self, store, large_searcher):
        """Test that loaded bins partition the point indices."""
        loaded = store.load_searcher(store.save_searcher(large_searcher))

        assigned = sorted(i for members in loaded.bins.values() for i in members)
        assert assigned == list(range(200))

    def test_save_to_store_helpers(self, store, small_searcher):
        """Test the searcher-side convenience methods."""
        searcher_id = small_searcher.save_to_store(store, searcher_id="helper")
        loaded = RandomBinaryProjectionSearcher.load_from_store(store, searcher_id)

        assert searcher_id == "helper"
        assert_same_searcher(loaded, small_searcher)

    def test_untrained_searcher_rejected(self, store):
        """Test that a searcher without random vectors cannot be saved."""
        searcher = RandomBinaryProjectionSearcher(
            columns=["a"], points=np.zeros((1, 1), dtype=np.float32), digit_capacity=1
        )

        with pytest.raises(ValueError):
            store.save_searcher(searcher)
        assert store.list_searchers() == []

    def test_persists_across_connections(self, temp_db, small_searcher):
        """Test that a searcher saved by one store opens in another."""
        with SQLiteNeighborSearchStore(temp_db) as first:
            searcher_id = first.save_searcher(small_searcher)

        with SQLiteNeighborSearchStore(temp_db) as second:
            assert_same_searcher(second.load_searcher(searcher_id), small_searcher)


class TestOverwrite:
    """Test saving under an existing ID."""

    def test_overwrite_replaces_all_rows(self, temp_db, store, large_searcher, small_searcher):
        """Test that a second save leaves no rows of the first."""
        store.save_searcher(large_searcher, searcher_id="shared")
        store.save_searcher(small_searcher, searcher_id="shared")

        assert store.list_searchers() == ["shared"]
        assert_same_searcher(store.load_searcher("shared"), small_searcher)
        assert count_rows(temp_db, "shared") == {
            "searcher_columns": 3,
            "searcher_points": 6,
            "searcher_random_vectors": 4,
            "searcher_bins": 6,
        }

    def test_failed_save_rolls_back(self, temp_db, store, monkeypatch, small_searcher, large_searcher):
        """Test that a failure mid-write leaves the previous version intact."""
        store.save_searcher(small_searcher, searcher_id="stable")
        before = count_rows(temp_db, "stable")

        # A repeated (bin, point) pair violates the bins primary key after
        # the metadata, points and random vectors have been written
        def duplicate_first_pair(bins):
            pairs = flatten_bins(bins)
            return pairs + pairs[:1]

        monkeypatch.setattr("neighborstore.store.sqlite.flatten_bins", duplicate_first_pair)

        with pytest.raises(sqlite3.IntegrityError):
            store.save_searcher(large_searcher, searcher_id="stable")

        assert count_rows(temp_db, "stable") == before
        assert store.get_searcher_metadata("stable").point_count == 6
        assert_same_searcher(store.load_searcher("stable"), small_searcher)

    def test_failed_save_of_new_id_leaves_nothing(self, temp_db, store, monkeypatch, large_searcher):
        """Test that a failed first save leaves no entry."""
        monkeypatch.setattr(
            "neighborstore.store.sqlite.flatten_bins",
            lambda bins: flatten_bins(bins) * 2,
        )

        with pytest.raises(sqlite3.IntegrityError):
            store.save_searcher(large_searcher, searcher_id="ghost")

        assert store.list_searchers() == []
        assert store.get_searcher_metadata("ghost") is None
        assert set(count_rows(temp_db, "ghost").values()) == {0}

    def test_store_usable_after_failed_save(self, store, monkeypatch, small_searcher):
        """Test that the connection is left outside any transaction."""
        with monkeypatch.context() as patch:
            patch.setattr(
                "neighborstore.store.sqlite.flatten_bins",
                lambda bins: flatten_bins(bins) * 2,
            )
            with pytest.raises(sqlite3.IntegrityError):
                store.save_searcher(small_searcher, searcher_id="retry")

        assert not store._get_conn().in_transaction
        assert store.save_searcher(small_searcher, searcher_id="retry") == "retry"
        assert_same_searcher(store.load_searcher("retry"), small_searcher)

    def test_original_error_kept_when_sqlite_already_rolled_back(self, store, small_searcher):
        """Test that a transaction ended by SQLite itself does not mask the error."""
        with pytest.raises(RuntimeError, match="disk full"):
            with store._transaction() as cursor:
                cursor.execute("ROLLBACK")
                raise RuntimeError("disk full")

        assert not store._get_conn().in_transaction
        assert store.save_searcher(small_searcher, searcher_id="after") == "after"


class TestSaveValidation:
    """Test that inconsistent searchers are rejected before anything is written."""

    def rebuild(self, searcher, **changes):
        fields = dict(
            columns=list(searcher.columns),
            points=searcher.points,
            digit_capacity=searcher.digit_capacity,
            seed=searcher.seed,
            random_vectors=searcher.random_vectors,
            bins={k: list(v) for k, v in searcher.bins.items()},
        )
        fields.update(changes)
        return RandomBinaryProjectionSearcher(**fields)

    def assert_rejected_and_intact(self, temp_db, store, broken, good):
        store.save_searcher(good, searcher_id="x")
        before = count_rows(temp_db, "x")

        with pytest.raises(ValueError):
            store.save_searcher(broken, searcher_id="x")

        assert count_rows(temp_db, "x") == before
        assert store.list_searchers() == ["x"]
        assert_same_searcher(store.load_searcher("x"), good)

    def test_bins_missing_points(self, temp_db, store, small_searcher):
        """Test that bins covering only some points are rejected."""
        broken = self.rebuild(small_searcher, bins={0: [0, 1]})
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

    def test_bins_with_repeated_point(self, temp_db, store, small_searcher):
        """Test that a point assigned to two bins is rejected."""
        bins = {k: list(v) for k, v in small_searcher.bins.items()}
        bins[max(bins) + 1] = [0]
        broken = self.rebuild(small_searcher, bins=bins)
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

    def test_bins_out_of_range(self, temp_db, store, small_searcher):
        """Test that a bin referencing a nonexistent point is rejected."""
        bins = {k: list(v) for k, v in small_searcher.bins.items()}
        next(iter(bins.values())).append(6)
        broken = self.rebuild(small_searcher, bins=bins)
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

    def test_column_name_count(self, temp_db, store, small_searcher):
        """Test that the column names must match the point width."""
        broken = self.rebuild(small_searcher, columns=["a", "b"])
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

    def test_duplicate_column_names(self, temp_db, store, small_searcher):
        broken = self.rebuild(small_searcher, columns=["a", "a", "b"])
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

    def test_random_vector_shape(self, temp_db, store, small_searcher):
        """Test that the hyperplanes must be digit_capacity x column_count."""
        broken = self.rebuild(small_searcher, random_vectors=small_searcher.random_vectors[:3])
        self.assert_rejected_and_intact(temp_db, store, broken, small_searcher)

        wrong_capacity = self.rebuild(small_searcher, digit_capacity=5)
        with pytest.raises(ValueError):
            store.save_searcher(wrong_capacity, searcher_id="x")
        assert_same_searcher(store.load_searcher("x"), small_searcher)

    def test_rejected_new_id_leaves_nothing(self, temp_db, store, small_searcher):
        """Test that a rejected first save creates no entry."""
        broken = self.rebuild(small_searcher, bins={0: [0, 1]})

        with pytest.raises(ValueError):
            store.save_searcher(broken, searcher_id="ghost")

        assert store.list_searchers() == []
        assert set(count_rows(temp_db, "ghost").values()) == {0}


class TestDelete:
    """Test deleting searchers."""

    def test_delete(self, temp_db, store, small_searcher):
        """Test that deletion cascades to every dependent table."""
        searcher_id = store.save_searcher(small_searcher)
        assert store.load_searcher(searcher_id) is not None

        assert store.delete_searcher(searcher_id) is True

        assert store.load_searcher(searcher_id) is None
        assert store.get_searcher_metadata(searcher_id) is None
        assert store.load_searcher_data(searcher_id) is None
        assert set(count_rows(temp_db, searcher_id).values()) == {0}

    def test_delete_missing(self, store):
        """Test that deleting an unknown ID is a no-op."""
        assert store.delete_searcher("non-existent") is False

    def test_delete_leaves_others(self, store, small_searcher, large_searcher):
        """Test that only the targeted searcher is removed."""
        store.save_searcher(small_searcher, searcher_id="a")
        store.save_searcher(large_searcher, searcher_id="b")

        store.delete_searcher("a")

        assert store.list_searchers() == ["b"]
        assert_same_searcher(store.load_searcher("b"), large_searcher)


class TestListAndMetadata:
    """Test listing searchers and reading their metadata."""

    def test_list_empty(self, store):
        assert store.list_searchers() == []

    def test_list_in_creation_order(self, store, small_searcher):
        """Test that IDs are listed oldest first."""
        for searcher_id in ["c", "a", "b"]:
            store.save_searcher(small_searcher, searcher_id=searcher_id)

        assert store.list_searchers() == ["c", "a", "b"]

    def test_metadata(self, store, small_searcher):
        """Test every metadata field."""
        searcher_id = store.save_searcher(small_searcher)
        metadata = store.get_searcher_metadata(searcher_id)

        assert metadata.digit_capacity == 4
        assert metadata.seed == 10
        assert metadata.schema_version == small_searcher.schema_version
        assert metadata.dtype == "float32"
        assert metadata.column_count == 3
        assert metadata.point_count == 6
        assert metadata.columns == ["col_0", "col_1", "col_2"]
        assert isinstance(metadata.created_at, str)
        assert metadata.created_at.endswith("+00:00")
        assert metadata.to_dict()["point_count"] == 6

    def test_metadata_missing(self, store):
        assert store.get_searcher_metadata("non-existent") is None

    def test_metadata_without_points(self, temp_db, store, small_searcher):
        """Test that metadata stays readable when point rows are damaged."""
        searcher_id = store.save_searcher(small_searcher)
        execute_raw(
            temp_db,
            "DELETE FROM searcher_points WHERE searcher_id = ? AND point_index = 0",
            (searcher_id,),
        )

        metadata = store.get_searcher_metadata(searcher_id)
        assert metadata.point_count == 6
        assert metadata.column_count == 3
        assert metadata.digit_capacity == 4

        with pytest.raises(StoreCorruptionError):
            store.load_searcher(searcher_id)


class TestCorruption:
    """Test that damaged entries are never silently loaded."""

    def test_missing_bin_row(self, temp_db, store, small_searcher):
        """Test that an unassigned point is detected."""
        searcher_id = store.save_searcher(small_searcher)
        execute_raw(
            temp_db,
            "DELETE FROM searcher_bins WHERE searcher_id = ? AND point_index = 2",
            (searcher_id,),
        )

        with pytest.raises(StoreCorruptionError):
            store.load_searcher(searcher_id)

    def test_missing_random_vector(self, temp_db, store, small_searcher):
        """Test that a missing hyperplane is detected."""
        searcher_id = store.save_searcher(small_searcher)
        execute_raw(
            temp_db,
            "DELETE FROM searcher_random_vectors WHERE searcher_id = ? AND vector_index = 1",
            (searcher_id,),
        )

        with pytest.raises(StoreCorruptionError):
            store.load_searcher(searcher_id)

    def test_malformed_point(self, temp_db, store, small_searcher):
        """Test that a truncated BLOB is reported."""
        searcher_id = store.save_searcher(small_searcher)
        execute_raw(
            temp_db,
            "UPDATE searcher_points SET vector_data = ? WHERE searcher_id = ? AND point_index = 3",
            (b"\x03\x00\x00\x00\x00\x01", searcher_id),
        )

        with pytest.raises(MalformedPayloadError):
            store.load_searcher(searcher_id)

    def test_unknown_dtype_label(self, temp_db, store, small_searcher):
        """Test that an unrecognized dtype label is reported."""
        searcher_id = store.save_searcher(small_searcher)
        execute_raw(
            temp_db, "UPDATE neighbor_searchers SET dtype = 'float16' WHERE id = ?", (searcher_id,)
        )

        with pytest.raises(UnknownPrecisionTagError):
            store.load_searcher(searcher_id)


class TestClose:
    """Test store lifecycle."""

    def test_operations_after_close(self, temp_db, small_searcher):
        """Test that every operation fails once the store is closed."""
        store = SQLiteNeighborSearchStore(temp_db)
        searcher_id = store.save_searcher(small_searcher)
        store.close()

        with pytest.raises(StoreClosedError):
            store.save_searcher(small_searcher)
        with pytest.raises(StoreClosedError):
            store.load_searcher(searcher_id)
        with pytest.raises(StoreClosedError):
            store.delete_searcher(searcher_id)
        with pytest.raises(StoreClosedError):
            store.list_searchers()
        with pytest.raises(StoreClosedError):
            store.get_searcher_metadata(searcher_id)
        with pytest.raises(StoreClosedError):
            store.load_searcher_data(searcher_id)
        with pytest.raises(StoreClosedError):
            store.retrain_searcher(searcher_id, digit_capacity=4)

    def test_close_twice(self, temp_db):
        store = SQLiteNeighborSearchStore(temp_db)
        store.close()
        store.close()

    def test_context_manager(self, temp_db):
        """Test that leaving the with block closes the store."""
        with SQLiteNeighborSearchStore(temp_db) as store:
            assert store.list_searchers() == []

        with pytest.raises(StoreClosedError):
            store.list_searchers()


class TestEndToEnd:
    """Test the full lifecycle of a searcher."""

    def test_train_save_inspect_delete(self, store, small_searcher):
        """Train, save, list, inspect, delete, then confirm it is gone."""
        searcher_id = store.save_searcher(small_searcher)

        assert store.list_searchers() == [searcher_id]

        metadata = store.get_searcher_metadata(searcher_id)
        assert metadata.point_count == 6
        assert metadata.column_count == 3

        assert store.delete_searcher(searcher_id) is True
        assert store.load_searcher(searcher_id) is None
        assert store.list_searchers() == []

    def test_large_dataset(self, store):
        """Test a 1000-point searcher survives storage and answers queries."""
        data = [[i * 1.0, i * 2.0, i * 3.0, i * 4.0] for i in range(1000)]
        searcher = train_searcher(data, digit_capacity=6, seed=42)

        loaded = store.load_searcher(store.save_searcher(searcher))

        assert loaded.point_count == 1000
        assert loaded.column_count == 4
        neighbors = loaded.query([500.0, 1000.0, 1500.0, 2000.0], k=10, search_radius=3)
        assert len(neighbors) == 10
        assert neighbors[0].index == 500
