"""Tests for the Connection Manager: init guard, both backends, failures."""

import asyncio
import json

import pytest

import database as database_module
from database import Database, KeyValueBackend, RunResult, SqliteBackend, create_backend
from config import Settings
from errors import DatabaseError, UnsupportedStatementError
from kvstore import KeyValueStore
from statements import Insert, Select

pytestmark = pytest.mark.anyio

INSERT_USER = "INSERT INTO users (id, name, email, password, created_at) VALUES (?, ?, ?, ?, ?)"


class CountingBackend(KeyValueBackend):
    def __init__(self, store, fail_first=False):
        super().__init__(store)
        self.opens = 0
        self.fail_first = fail_first

    async def open(self):
        self.opens += 1
        await asyncio.sleep(0.01)
        if self.fail_first and self.opens == 1:
            raise OSError("storage unavailable")
        await super().open()


def settings(**overrides):
    data = dict(
        storage_backend="sqlite",
        database_name="cookie_app.db",
        storage_path=None,
        auth_salt="",
        log_level="INFO",
        port=8000,
    )
    data.update(overrides)
    return Settings(**data)


class TestInitialization:
    async def test_concurrent_callers_share_one_attempt(self):
        backend = CountingBackend(KeyValueStore())
        db = Database(backend)
        await asyncio.gather(
            db.initialize(),
            db.initialize(),
            db.query("SELECT * FROM users"),
            db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"]),
        )
        assert backend.opens == 1
        assert db.is_ready

    async def test_failure_resets_state_and_allows_retry(self):
        backend = CountingBackend(KeyValueStore(), fail_first=True)
        db = Database(backend)
        with pytest.raises(DatabaseError, match="Failed to initialize database: storage unavailable"):
            await db.initialize()
        assert not db.is_ready

        assert await db.query("SELECT * FROM users") == []
        assert backend.opens == 2
        assert db.is_ready

    async def test_keyvalue_seeds_empty_buckets_without_overwriting(self):
        store = KeyValueStore({"cookie_app_users": json.dumps([{"id": "U1"}])})
        db = Database(KeyValueBackend(store))
        await db.initialize()
        assert json.loads(store.get_item("cookie_app_users")) == [{"id": "U1"}]
        for key in database_module.STORAGE_KEYS.values():
            assert store.get_item(key) is not None

    async def test_sqlite_resumes_open_connection(self, tmp_path):
        name = str(tmp_path / "shared.db")
        first = SqliteBackend(name)
        second = SqliteBackend(name)
        db1, db2 = Database(first), Database(second)
        await db1.initialize()
        await db2.initialize()
        assert first.conn is second.conn
        await db1.close()
        assert name not in database_module._connections

    async def test_sqlite_creates_tables_and_indexes(self, tmp_path):
        db = Database(SqliteBackend(str(tmp_path / "schema.db")))
        await db.initialize()
        backend = db.backend
        names = {row[0] for row in backend.conn.execute("SELECT name FROM sqlite_master")}
        assert {"users", "cart_items", "favorites", "orders", "order_items"} <= names
        assert {"idx_cart_user_id", "idx_orders_status", "idx_order_items_order_id"} <= names
        await db.close()


class TestSharedContract:
    async def test_raw_sql_round_trip(self, database):
        await database.run(INSERT_USER, ["U1", "Jane", "Jane@X.com", "secret1", "2024-01-01"])

        rows = await database.query("SELECT * FROM users WHERE LOWER(email) = ?", ["jane@x.com"])
        assert [r["id"] for r in rows] == ["U1"]

        rows = await database.query(
            "SELECT * FROM users WHERE LOWER(TRIM(email)) = ? AND password = ?", ["jane@x.com", "secret1"]
        )
        assert len(rows) == 1
        rows = await database.query(
            "SELECT * FROM users WHERE LOWER(TRIM(email)) = ? AND password = ?", ["jane@x.com", "wrong"]
        )
        assert rows == []

        result = await database.run("UPDATE users SET name = ?, phone = ? WHERE id = ?", ["Janet", "555", "U1"])
        assert result.changes == 1
        rows = await database.query("SELECT * FROM users WHERE id = ?", ["U1"])
        assert rows[0]["name"] == "Janet"
        assert rows[0]["phone"] == "555"

        result = await database.run("DELETE FROM users WHERE id = ?", ["U1"])
        assert result.changes == 1
        assert await database.query("SELECT * FROM users") == []

    async def test_insert_reports_row_id(self, database):
        result = await database.run(Insert("users", {
            "id": "U9", "name": "A", "email": "a@b.com", "password": "pw", "created_at": "t",
        }))
        assert result == RunResult(changes=1, last_id="U9")

    async def test_conjunction_filters_in_parameter_order(self, database):
        for i, (user, product) in enumerate([("U1", "P1"), ("U1", "P2"), ("U2", "P1")]):
            await database.run(INSERT_USER, [user + str(i), "n", f"{i}@x.com", "pw", "t"])
            await database.run(
                "INSERT INTO favorites (id, user_id, product_id, added_at) VALUES (?, ?, ?, ?)",
                [f"F{i}", user + str(i), product, "t"],
            )
        rows = await database.query(
            "SELECT * FROM favorites WHERE user_id = ? AND product_id = ?", ["U11", "P2"]
        )
        assert [r["id"] for r in rows] == ["F1"]

    async def test_update_without_match_reports_zero(self, database):
        result = await database.run("UPDATE cart_items SET quantity = ? WHERE id = ?", [2, "missing"])
        assert result.changes == 0

    async def test_typed_statement_rejects_extra_params(self, database):
        with pytest.raises(UnsupportedStatementError, match="Query failed"):
            await database.query(Select("users"), ["x"])

    async def test_query_rejects_writes(self, database):
        with pytest.raises(UnsupportedStatementError):
            await database.query(Insert("users", {"id": "U1"}))

    async def test_clear_all_data_and_counts(self, database):
        await database.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        assert (await database.counts())["users"] == 1
        await database.clear_all_data()
        assert set((await database.counts()).values()) == {0}


class TestKeyValueBackend:
    async def test_aggregates_are_rejected(self):
        db = Database(KeyValueBackend(KeyValueStore()))
        with pytest.raises(UnsupportedStatementError, match="Query failed"):
            await db.query("SELECT SUM(quantity) as total FROM cart_items WHERE user_id = ?", ["U1"])

    async def test_execute_is_a_no_op(self):
        store = KeyValueStore()
        db = Database(KeyValueBackend(store))
        await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        result = await db.execute("DELETE FROM users;")
        assert result.changes == 0
        assert len(json.loads(store.get_item("cookie_app_users"))) == 1

    async def test_every_write_rewrites_the_bucket(self):
        store = KeyValueStore()
        db = Database(KeyValueBackend(store))
        await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        await db.run(INSERT_USER, ["U2", "John", "john@x.com", "pw", "t"])
        rows = json.loads(store.get_item("cookie_app_users"))
        assert [r["id"] for r in rows] == ["U1", "U2"]

    async def test_transaction_has_no_rollback(self):
        db = Database(KeyValueBackend(KeyValueStore()))

        async def write():
            await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
            raise RuntimeError("boom")

        with pytest.raises(DatabaseError, match="Transaction failed: boom"):
            await db.transaction(write)
        assert len(await db.query("SELECT * FROM users")) == 1


class TestSqliteBackend:
    @pytest.fixture
    async def db(self, tmp_path):
        db = Database(SqliteBackend(str(tmp_path / "tx.db")))
        yield db
        await db.close()

    async def test_transaction_rolls_back_on_error(self, db):
        async def write():
            await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
            raise RuntimeError("boom")

        with pytest.raises(DatabaseError, match="Transaction failed: boom"):
            await db.transaction(write)
        assert await db.query("SELECT * FROM users") == []

    async def test_transaction_commits_and_returns_result(self, db):
        async def write():
            await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
            return "done"

        assert await db.transaction(write) == "done"
        assert len(await db.query("SELECT * FROM users")) == 1

    async def test_backend_errors_are_wrapped(self, db):
        await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        with pytest.raises(DatabaseError, match="^Run failed: UNIQUE constraint failed"):
            await db.run(INSERT_USER, ["U2", "Jane", "jane@x.com", "pw", "t"])
        with pytest.raises(DatabaseError, match="^Query failed: no such table"):
            await db.query("SELECT * FROM products")

    async def test_execute_runs_multiple_statements(self, db):
        await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        await db.run(INSERT_USER, ["U2", "John", "john@x.com", "pw", "t"])
        result = await db.execute("DELETE FROM users WHERE id = 'U1'; DELETE FROM users WHERE id = 'U2';")
        assert result.changes == 2

    async def test_check_constraints_hold(self, db):
        await db.run(INSERT_USER, ["U1", "Jane", "jane@x.com", "pw", "t"])
        with pytest.raises(DatabaseError, match="CHECK constraint failed"):
            await db.run(
                "INSERT INTO cart_items (id, user_id, product_id, quantity, added_at) VALUES (?, ?, ?, ?, ?)",
                ["C1", "U1", "P1", 0, "t"],
            )


def test_create_backend_follows_settings():
    assert isinstance(create_backend(settings()), SqliteBackend)
    store = KeyValueStore()
    backend = create_backend(settings(storage_backend="keyvalue"), store)
    assert isinstance(backend, KeyValueBackend)
    assert backend.store is store
