"""
Tests for storage backends and unit-of-work support
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from user_banking.storage import (
    InMemoryStorage, SQLiteStorage, StorageError, StorageRecord,
    UniqueConstraintError, create_storage
)


def record(record_id, **fields):
    now = datetime.now(timezone.utc).isoformat()
    data = {"id": record_id, "created_at": now, "updated_at": now}
    data.update(fields)
    return data


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by both backends"""

    def test_save_and_load(self, storage):
        storage.save("things", 1, record(1, name="first"))
        loaded = storage.load("things", 1)
        assert loaded["name"] == "first"
        assert storage.exists("things", 1)
        assert not storage.exists("things", 2)
        assert storage.load("things", 2) is None

    def test_save_overwrites(self, storage):
        storage.save("things", 1, record(1, name="first"))
        storage.save("things", 1, record(1, name="renamed"))
        assert storage.load("things", 1)["name"] == "renamed"
        assert storage.count("things") == 1

    def test_load_all_ordered_by_id(self, storage):
        for record_id in (3, 1, 2):
            storage.save("things", record_id, record(record_id))
        assert [r["id"] for r in storage.load_all("things")] == [1, 2, 3]

    def test_find(self, storage):
        storage.save("things", 1, record(1, owner=10, kind="a"))
        storage.save("things", 2, record(2, owner=10, kind="b"))
        storage.save("things", 3, record(3, owner=11, kind="a"))

        assert [r["id"] for r in storage.find("things", {"owner": 10})] == [1, 2]
        assert [r["id"] for r in storage.find("things", {"owner": 10, "kind": "a"})] == [1]
        assert storage.find("things", {"owner": 99}) == []

    def test_delete(self, storage):
        storage.save("things", 1, record(1))
        assert storage.delete("things", 1)
        assert not storage.delete("things", 1)
        assert storage.count("things") == 0

    def test_next_id_increments_per_table(self, storage):
        assert storage.next_id("things") == 1
        assert storage.next_id("things") == 2
        assert storage.next_id("others") == 1

    def test_clear_table(self, storage):
        storage.save("things", 1, record(1))
        storage.clear_table("things")
        assert storage.load_all("things") == []

    def test_loaded_records_are_copies(self, storage):
        storage.save("things", 1, record(1, tags=["a"]))
        loaded = storage.load("things", 1)
        loaded["tags"].append("b")
        assert storage.load("things", 1)["tags"] == ["a"]


class TestUniqueConstraints:

    def test_duplicate_rejected(self, storage):
        storage.add_unique_constraint("people", "email")
        storage.save("people", 1, record(1, email="a@x.com"))
        with pytest.raises(UniqueConstraintError) as exc:
            storage.save("people", 2, record(2, email="a@x.com"))
        assert exc.value.field == "email"
        assert storage.count("people") == 1

    def test_resaving_same_record_allowed(self, storage):
        storage.add_unique_constraint("people", "email")
        storage.save("people", 1, record(1, email="a@x.com"))
        storage.save("people", 1, record(1, email="a@x.com", name="renamed"))
        assert storage.load("people", 1)["name"] == "renamed"

    def test_unique_error_is_storage_error(self):
        assert issubclass(UniqueConstraintError, StorageError)


class TestUnitOfWork:
    """Atomic commit and rollback"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("things", 1, record(1))
            storage.save("things", 2, record(2))
        assert storage.count("things") == 2

    def test_rollback_discards_every_write(self, storage):
        storage.save("things", 1, record(1, name="before"))
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("things", 1, record(1, name="during"))
                storage.save("things", 2, record(2))
                raise RuntimeError("boom")
        assert storage.load("things", 1)["name"] == "before"
        assert not storage.exists("things", 2)

    def test_rollback_restores_deletes(self, storage):
        storage.save("things", 1, record(1))
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.delete("things", 1)
                raise RuntimeError("boom")
        assert storage.exists("things", 1)

    def test_table_first_created_in_rolled_back_unit(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", 1, record(1))
                raise RuntimeError("boom")
        storage.save("fresh", 1, record(1))
        assert storage.exists("fresh", 1)

    def test_nested_failure_rolls_back_outer_unit(self, storage):
        with pytest.raises(StorageError):
            with storage.atomic():
                storage.save("things", 1, record(1))
                try:
                    with storage.atomic():
                        storage.save("things", 2, record(2))
                        raise ValueError("inner")
                except ValueError:
                    pass
        assert storage.count("things") == 0

    def test_nested_success_commits_with_outer(self, storage):
        with storage.atomic():
            storage.save("things", 1, record(1))
            with storage.atomic():
                storage.save("things", 2, record(2))
        assert storage.count("things") == 2


class TestStorageRecord:

    def test_round_trip_converts_types(self):
        now = datetime.now(timezone.utc)

        from dataclasses import dataclass

        @dataclass
        class Widget(StorageRecord):
            price: Decimal

        data = Widget(id=1, created_at=now, updated_at=now, price=Decimal("12.50")).to_dict()
        assert data["price"] == "12.50"
        assert data["created_at"] == now.isoformat()

        restored = Widget.from_dict(data)
        assert restored.created_at == now


class TestCreateStorage:

    def test_memory_backend(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_backend(self, tmp_path):
        backend = create_storage("sqlite", str(tmp_path / "db.sqlite"))
        assert isinstance(backend, SQLiteStorage)
        backend.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage("postgres")
