"""
Tests for the storage backends

Both backends are run through the same cases: CRUD, filtered lookups,
insert-only writes, conditional updates and atomic blocks with deferred
commit callbacks.
"""

import threading

import pytest

from loan_servicing.errors import StorageConflictError
from loan_servicing.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "test.db")
    yield store
    store.close()


def record(record_id, status="PENDING", **extra):
    data = {
        "id": record_id,
        "created_at": "2025-01-01T00:00:00+00:00",
        "updated_at": "2025-01-01T00:00:00+00:00",
        "status": status
    }
    data.update(extra)
    return data


class TestBasicOperations:
    def test_save_and_load(self, backend):
        backend.save("items", "a", record("a", amount="9026"))

        loaded = backend.load("items", "a")
        assert loaded["amount"] == "9026"
        assert backend.exists("items", "a")
        assert backend.count("items") == 1

    def test_load_missing(self, backend):
        assert backend.load("items", "missing") is None
        assert not backend.exists("items", "missing")

    def test_loaded_copy_is_detached(self, backend):
        backend.save("items", "a", record("a", notes=[]))

        loaded = backend.load("items", "a")
        loaded["notes"].append("changed")

        assert backend.load("items", "a")["notes"] == []

    def test_delete(self, backend):
        backend.save("items", "a", record("a"))

        assert backend.delete("items", "a")
        assert not backend.delete("items", "a")

    def test_find_equality(self, backend):
        backend.save("items", "a", record("a", owner="u1"))
        backend.save("items", "b", record("b", owner="u2"))

        found = backend.find("items", {"owner": "u1"})
        assert [r["id"] for r in found] == ["a"]

    def test_find_one_of(self, backend):
        backend.save("items", "a", record("a", "PENDING"))
        backend.save("items", "b", record("b", "OVERDUE"))
        backend.save("items", "c", record("c", "PAID"))

        found = backend.find("items", {"status": ["PENDING", "OVERDUE"]})
        assert sorted(r["id"] for r in found) == ["a", "b"]

    def test_clear_table(self, backend):
        backend.save("items", "a", record("a"))
        backend.clear_table("items")

        assert backend.load_all("items") == []


class TestInsert:
    def test_insert_new(self, backend):
        backend.insert("items", "a", record("a"))
        assert backend.exists("items", "a")

    def test_insert_existing_rejected(self, backend):
        backend.insert("items", "a", record("a"))

        with pytest.raises(StorageConflictError):
            backend.insert("items", "a", record("a", "PAID"))

        assert backend.load("items", "a")["status"] == "PENDING"


class TestUpdateIf:
    """Test the conditional update"""

    def test_applies_when_matching(self, backend):
        backend.save("items", "a", record("a"))

        updated = backend.update_if("items", "a", {"status": "PENDING"}, {"status": "PAID"})

        assert updated["status"] == "PAID"
        assert backend.load("items", "a")["status"] == "PAID"

    def test_skips_when_not_matching(self, backend):
        backend.save("items", "a", record("a", "PAID"))

        assert backend.update_if("items", "a", {"status": "PENDING"}, {"status": "OVERDUE"}) is None
        assert backend.load("items", "a")["status"] == "PAID"

    def test_one_of_expectation(self, backend):
        backend.save("items", "a", record("a", "OVERDUE"))

        updated = backend.update_if("items", "a", {"status": ["PENDING", "OVERDUE"]}, {"status": "PAID"})
        assert updated is not None

    def test_missing_record(self, backend):
        assert backend.update_if("items", "missing", {}, {"status": "PAID"}) is None

    def test_only_one_racer_wins(self, backend):
        backend.save("items", "a", record("a"))
        results = []

        def settle(tag):
            results.append(backend.update_if("items", "a", {"status": "PENDING"},
                                             {"status": "PAID", "by": tag}))

        threads = [threading.Thread(target=settle, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert backend.load("items", "a")["by"] == winners[0]["by"]


class TestAtomic:
    """Test multi-record atomic blocks"""

    def test_commit(self, backend):
        with backend.atomic():
            backend.save("items", "a", record("a"))
            backend.save("other", "b", record("b"))

        assert backend.exists("items", "a")
        assert backend.exists("other", "b")

    def test_rollback_discards_all_writes(self, backend):
        backend.save("items", "a", record("a"))

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.update_if("items", "a", {}, {"status": "PAID"})
                backend.save("items", "b", record("b"))
                raise RuntimeError("boom")

        assert backend.load("items", "a")["status"] == "PENDING"
        assert not backend.exists("items", "b")

    def test_nested_blocks_join_outer(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                with backend.atomic():
                    backend.save("items", "a", record("a"))
                raise RuntimeError("boom")

        assert not backend.exists("items", "a")

    def test_on_commit_runs_after_commit(self, backend):
        calls = []
        with backend.atomic():
            backend.save("items", "a", record("a"))
            backend.on_commit(lambda: calls.append(backend.exists("items", "a")))
            assert calls == []

        assert calls == [True]

    def test_on_commit_discarded_on_rollback(self, backend):
        calls = []
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.on_commit(lambda: calls.append("ran"))
                raise RuntimeError("boom")

        assert calls == []

    def test_on_commit_outside_block_runs_now(self, backend):
        calls = []
        backend.on_commit(lambda: calls.append("ran"))
        assert calls == ["ran"]

    def test_usable_after_rollback(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("fresh", "a", record("a"))
                raise RuntimeError("boom")

        backend.save("fresh", "b", record("b"))
        assert [r["id"] for r in backend.load_all("fresh")] == ["b"]


class TestCreateStorage:
    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite(self, tmp_path):
        store = create_storage("sqlite", str(tmp_path / "db.sqlite"))
        assert isinstance(store, SQLiteStorage)
        store.close()

    def test_unknown(self):
        with pytest.raises(ValueError):
            create_storage("mongo")
