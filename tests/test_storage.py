"""
Tests for storage backends and transaction support
"""

import pytest
import threading
from decimal import Decimal

from microcredit.errors import ConcurrencyError, NotFoundError, RemoteIOError
from microcredit.storage import (
    InMemoryStorage, SQLiteStorage, StorageTransaction, VERSION_FIELD, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Every test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageInterface:
    """Test basic document operations"""

    def test_basic_operations(self, storage):
        storage.save("plans", "p1", {"clienteId": "c1", "saldoActual": "100.00"})
        storage.save("plans", "p2", {"clienteId": "c2", "saldoActual": "50.00"})

        loaded = storage.load("plans", "p1")
        assert loaded["saldoActual"] == "100.00"
        assert storage.exists("plans", "p1")
        assert not storage.exists("plans", "missing")
        assert storage.load("plans", "missing") is None
        assert storage.count("plans") == 2
        assert len(storage.load_all("plans")) == 2

        assert storage.delete("plans", "p1")
        assert not storage.delete("plans", "p1")
        assert storage.count("plans") == 1

        storage.clear_table("plans")
        assert storage.count("plans") == 0

    def test_find_matches_every_filter(self, storage):
        storage.save("deposits", "d1", {"clienteId": "c1", "numeroCartola": 1, "estado": "Confirmado"})
        storage.save("deposits", "d2", {"clienteId": "c1", "numeroCartola": 2, "estado": "Confirmado"})
        storage.save("deposits", "d3", {"clienteId": "c2", "numeroCartola": 1, "estado": "Rechazado"})

        assert len(storage.find("deposits", {"clienteId": "c1"})) == 2
        assert len(storage.find("deposits", {"clienteId": "c1", "numeroCartola": 1})) == 1
        assert storage.find("deposits", {"estado": "Nope"}) == []

    def test_save_bumps_version(self, storage):
        storage.save("plans", "p1", {"a": 1})
        assert storage.version_of("plans", "p1") == 1
        storage.save("plans", "p1", {"a": 2})
        assert storage.version_of("plans", "p1") == 2
        assert storage.load("plans", "p1")[VERSION_FIELD] == 2
        assert storage.version_of("plans", "missing") == 0

    def test_loaded_documents_are_copies(self, storage):
        storage.save("plans", "p1", {"tags": ["a"]})
        loaded = storage.load("plans", "p1")
        loaded["tags"].append("b")
        assert storage.load("plans", "p1")["tags"] == ["a"]


class TestAtomic:
    """Test atomic blocks and array union"""

    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("plans", "p1", {"a": 1})
            storage.save("plans", "p2", {"a": 2})
        assert storage.count("plans") == 2

    def test_atomic_rolls_back_on_error(self, storage):
        storage.save("plans", "p1", {"a": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("plans", "p1", {"a": 99})
                storage.save("plans", "p2", {"a": 2})
                raise RuntimeError("boom")

        assert storage.load("plans", "p1")["a"] == 1
        assert not storage.exists("plans", "p2")

    def test_array_union_appends_without_duplicates(self, storage):
        storage.save("loans", "l1", {"statusHistory": [{"status": "DESEMBOLSADO"}]})

        storage.array_union("loans", "l1", "statusHistory", [{"status": "COMPLETADO"}])
        storage.array_union("loans", "l1", "statusHistory", [{"status": "COMPLETADO"}])

        history = storage.load("loans", "l1")["statusHistory"]
        assert history == [{"status": "DESEMBOLSADO"}, {"status": "COMPLETADO"}]

    def test_array_union_missing_document(self, storage):
        with pytest.raises(NotFoundError):
            storage.array_union("loans", "missing", "statusHistory", [1])


class TestRunTransaction:
    """Test optimistic read-modify-write with retry"""

    def test_read_your_writes_and_commit(self, storage):
        storage.save("plans", "p1", {"saldo": "10"})

        def fn(txn: StorageTransaction):
            doc = txn.get("plans", "p1")
            doc["saldo"] = "20"
            txn.set("plans", "p1", doc)
            assert txn.get("plans", "p1")["saldo"] == "20"
            txn.set("plans", "p2", {"saldo": "5"})
            return "done"

        assert storage.run_transaction(fn) == "done"
        assert storage.load("plans", "p1")["saldo"] == "20"
        assert storage.load("plans", "p2")["saldo"] == "5"

    def test_update_requires_existing_document(self, storage):
        def fn(txn):
            txn.update("plans", "missing", {"saldo": "1"})

        with pytest.raises(NotFoundError):
            storage.run_transaction(fn)

    def test_callback_error_writes_nothing(self, storage):
        storage.save("plans", "p1", {"saldo": "10"})

        def fn(txn):
            txn.set("plans", "p1", {"saldo": "999"})
            txn.delete("plans", "p1")
            raise ValueError("invalid")

        with pytest.raises(ValueError):
            storage.run_transaction(fn)
        assert storage.load("plans", "p1")["saldo"] == "10"

    def test_conflict_is_retried(self, storage):
        storage.save("plans", "p1", {"saldo": "0"})
        attempts = []

        def fn(txn):
            doc = txn.get("plans", "p1")
            attempts.append(doc["saldo"])
            if len(attempts) == 1:
                # Concurrent writer lands between our read and our commit
                storage.save("plans", "p1", {"saldo": "50"})
            doc["saldo"] = str(Decimal(doc["saldo"]) + 100)
            txn.set("plans", "p1", doc)

        storage.run_transaction(fn)

        assert attempts == ["0", "50"]
        assert storage.load("plans", "p1")["saldo"] == "150"

    def test_exhausted_retries_raise(self, storage):
        storage.save("plans", "p1", {"n": 0})
        attempts = []

        def fn(txn):
            doc = txn.get("plans", "p1")
            attempts.append(1)
            storage.save("plans", "p1", {"n": len(attempts)})
            txn.set("plans", "p1", {"n": -1})

        with pytest.raises(ConcurrencyError):
            storage.run_transaction(fn, max_attempts=3)

        assert len(attempts) == 3
        assert storage.load("plans", "p1")["n"] == 3

    def test_deleted_document_conflicts(self, storage):
        storage.save("plans", "p1", {"n": 0})
        txn = StorageTransaction(storage)
        txn.get("plans", "p1")
        storage.delete("plans", "p1")
        txn.set("plans", "p1", {"n": 1})

        with pytest.raises(ConcurrencyError):
            txn.commit()
        assert not storage.exists("plans", "p1")

    def test_transaction_commits_once(self, storage):
        txn = StorageTransaction(storage)
        txn.set("plans", "p1", {"n": 1})
        txn.commit()
        with pytest.raises(RuntimeError):
            txn.commit()

    def test_concurrent_increments_are_not_lost(self):
        storage = InMemoryStorage()
        storage.save("counters", "c1", {"n": 0})
        workers = 8

        def increment():
            def fn(txn):
                doc = txn.get("counters", "c1")
                doc["n"] += 1
                txn.set("counters", "c1", doc)
            # Each conflict implies another worker committed, so `workers` attempts always suffice
            storage.run_transaction(fn, max_attempts=workers)

        threads = [threading.Thread(target=increment) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert storage.load("counters", "c1")["n"] == workers


class TestBackends:
    """Backend selection and failure surfacing"""

    def test_create_storage_from_url(self, tmp_path):
        assert isinstance(create_storage("memory://"), InMemoryStorage)
        in_memory_sqlite = create_storage("sqlite://")
        assert isinstance(in_memory_sqlite, SQLiteStorage)
        assert in_memory_sqlite.db_path == ":memory:"

        file_backed = create_storage(f"sqlite:///{tmp_path / 'portal.db'}")
        assert file_backed.db_path == str(tmp_path / "portal.db")
        file_backed.close()

        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/portal")

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("plans", "p1", {"saldoActual": "42.00"})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("plans", "p1")["saldoActual"] == "42.00"
        second.close()

    def test_sqlite_errors_are_wrapped(self):
        storage = SQLiteStorage(":memory:")
        with pytest.raises(RemoteIOError) as exc_info:
            storage.save("bad table", "x", {"a": 1})
        assert exc_info.value.__cause__ is not None

        storage.close()
        with pytest.raises(RemoteIOError):
            storage.load("plans", "p1")
