"""
Tests for storage backends and transaction support
"""

import sqlite3
import threading

import pytest
import tempfile
from pathlib import Path

from procurement_approvals.exceptions import ConflictError, DuplicateKeyError, NotFoundError
from procurement_approvals.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        storage = InMemoryStorage()
        yield storage
        storage.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            yield storage
            storage.close()


record = {"id": "rec-1", "name": "Test Record", "amount": "100.50", "version": 1}


class TestStorageInterface:
    """Test basic CRUD behaviour shared by the backends"""

    def test_basic_operations(self, backend):
        """Test save, load, find, count and delete"""
        backend.save("things", "rec-1", record)
        assert backend.load("things", "rec-1") == record
        assert backend.exists("things", "rec-1")
        assert not backend.exists("things", "missing")

        backend.save("things", "rec-2", {"id": "rec-2", "name": "Other"})
        assert len(backend.load_all("things")) == 2
        assert backend.count("things") == 2

        results = backend.find("things", {"name": "Other"})
        assert len(results) == 1
        assert results[0]["id"] == "rec-2"

        assert backend.delete("things", "rec-1")
        assert not backend.delete("things", "rec-1")
        assert backend.load("things", "rec-1") is None

        backend.clear_table("things")
        assert backend.count("things") == 0

    def test_loaded_records_are_copies(self, backend):
        backend.save("things", "rec-1", record)
        loaded = backend.load("things", "rec-1")
        loaded["name"] = "Mutated"
        assert backend.load("things", "rec-1")["name"] == "Test Record"


class TestUniqueKeys:
    """Test uniqueness enforced by insert"""

    def test_duplicate_unique_key_rejected(self, backend):
        backend.insert("instances", "a", {"id": "a", "version": 1}, unique_key="VENDOR:42")

        with pytest.raises(DuplicateKeyError) as exc_info:
            backend.insert("instances", "b", {"id": "b", "version": 1}, unique_key="VENDOR:42")

        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.unique_key == "VENDOR:42"
        assert backend.count("instances") == 1

    def test_duplicate_id_rejected(self, backend):
        backend.insert("instances", "a", {"id": "a"})
        with pytest.raises(DuplicateKeyError):
            backend.insert("instances", "a", {"id": "a"})

    def test_unique_key_released_on_delete(self, backend):
        backend.insert("instances", "a", {"id": "a"}, unique_key="VENDOR:42")
        backend.delete("instances", "a")

        backend.insert("instances", "b", {"id": "b"}, unique_key="VENDOR:42")
        assert backend.exists("instances", "b")


class TestOptimisticConcurrency:
    """Test version-checked updates"""

    def test_update_bumps_version(self, backend):
        backend.insert("instances", "a", {"id": "a", "status": "PENDING", "version": 1})

        new_version = backend.update("instances", "a", {"id": "a", "status": "IN_PROGRESS"}, 1)

        assert new_version == 2
        stored = backend.load("instances", "a")
        assert stored["status"] == "IN_PROGRESS"
        assert stored["version"] == 2

    def test_stale_version_raises_conflict(self, backend):
        backend.insert("instances", "a", {"id": "a", "version": 1})
        backend.update("instances", "a", {"id": "a", "status": "first"}, 1)

        with pytest.raises(ConflictError):
            backend.update("instances", "a", {"id": "a", "status": "second"}, 1)

        assert backend.load("instances", "a")["status"] == "first"

    def test_update_missing_record(self, backend):
        with pytest.raises(NotFoundError):
            backend.update("instances", "missing", {"id": "missing"}, 1)


class TestTransactionSupport:
    """Test atomic transaction support"""

    def test_commit(self, backend):
        with backend.atomic():
            backend.insert("things", "a", {"id": "a"})
            backend.insert("things", "b", {"id": "b"})

        assert backend.count("things") == 2

    def test_rollback_restores_state(self, backend):
        backend.insert("things", "a", {"id": "a", "version": 1}, unique_key="k-a")

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.update("things", "a", {"id": "a", "touched": True}, 1)
                backend.insert("things", "b", {"id": "b"}, unique_key="k-b")
                raise RuntimeError("Simulated failure")

        assert backend.load("things", "a") == {"id": "a", "version": 1}
        assert not backend.exists("things", "b")

        # the unique key taken inside the rolled back transaction is free again
        backend.insert("things", "c", {"id": "c"}, unique_key="k-b")

    def test_nested_transactions(self, backend):
        with pytest.raises(ValueError):
            with backend.atomic():
                backend.insert("things", "a", {"id": "a"})
                with backend.atomic():
                    backend.insert("things", "b", {"id": "b"})
                raise ValueError("outer failure")

        assert backend.count("things") == 0

    def test_duplicate_inside_transaction_rolls_back(self, backend):
        backend.insert("things", "a", {"id": "a"}, unique_key="dup")

        with pytest.raises(DuplicateKeyError):
            with backend.atomic():
                backend.insert("things", "b", {"id": "b"})
                backend.insert("things", "c", {"id": "c"}, unique_key="dup")

        assert backend.count("things") == 1

    def test_table_first_used_in_rolled_back_transaction(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.insert("fresh", "a", {"id": "a"})
                raise RuntimeError("Simulated failure")

        backend.insert("fresh", "b", {"id": "b"})
        assert [r["id"] for r in backend.load_all("fresh")] == ["b"]


class TestSQLiteLocking:
    """Two connections sharing one database file"""

    def test_failed_begin_releases_lock(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "shared.db"
            writer = SQLiteStorage(path)
            other = SQLiteStorage(path, timeout=0.1)
            other.insert("things", "a", {"id": "a"})

            writer.begin_transaction()
            with pytest.raises(sqlite3.OperationalError):
                with other.atomic():
                    other.insert("things", "b", {"id": "b"})
            writer.commit()

            worker = threading.Thread(
                target=other.insert, args=("things", "c", {"id": "c"}), daemon=True
            )
            worker.start()
            worker.join(timeout=2)

            assert not worker.is_alive()
            assert other.exists("things", "c")
            assert not other.exists("things", "b")

            other.close()
            writer.close()


class TestStorageFactory:

    def test_create_storage(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage("sqlite", Path(temp_dir) / "approvals.db")
            assert isinstance(storage, SQLiteStorage)
            storage.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage("postgres")
