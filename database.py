"""
Connection Manager

One SQL-shaped interface (query / run / execute / transaction) over two
storage backends, chosen once at startup from Settings.storage_backend:

- "sqlite":   embedded relational engine with the full schema.
- "keyvalue": five JSON buckets in a KeyValueStore, with SELECT / INSERT /
              UPDATE / DELETE interpreted by statements.parse().

Every public method waits on the init guard first, so callers never need
to call initialize() themselves.
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from config import Settings
from errors import DatabaseError, UnsupportedStatementError
from kvstore import KeyValueStore, open_store
from statements import TABLES, Insert, Select, Statement, Update, matches_all, parse

logger = logging.getLogger(__name__)

T = TypeVar("T")

SqlOrStatement = Union[str, Statement]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  email TEXT UNIQUE NOT NULL,
  password TEXT NOT NULL,
  profile_image TEXT,
  phone TEXT,
  address TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cart_items (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  quantity INTEGER NOT NULL CHECK(quantity > 0),
  added_at TEXT NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
  UNIQUE(user_id, product_id)
);

CREATE TABLE IF NOT EXISTS favorites (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  added_at TEXT NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
  UNIQUE(user_id, product_id)
);

CREATE TABLE IF NOT EXISTS orders (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  date TEXT NOT NULL,
  subtotal REAL NOT NULL CHECK(subtotal >= 0),
  tax REAL NOT NULL CHECK(tax >= 0),
  shipping REAL NOT NULL CHECK(shipping >= 0),
  total REAL NOT NULL CHECK(total >= 0),
  status TEXT NOT NULL CHECK(status IN ('pending', 'processing', 'shipped', 'delivered', 'cancelled')),
  shipping_address TEXT NOT NULL,
  payment_method TEXT NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS order_items (
  id TEXT PRIMARY KEY,
  order_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  name TEXT NOT NULL,
  price REAL NOT NULL CHECK(price >= 0),
  quantity INTEGER NOT NULL CHECK(quantity > 0),
  image TEXT NOT NULL,
  FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_cart_user_id ON cart_items(user_id);
CREATE INDEX IF NOT EXISTS idx_cart_product_id ON cart_items(product_id);
CREATE INDEX IF NOT EXISTS idx_favorites_user_id ON favorites(user_id);
CREATE INDEX IF NOT EXISTS idx_favorites_product_id ON favorites(product_id);
CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items(order_id);
"""

# children before parents so foreign keys never block the wipe
CLEAR_ORDER = ("order_items", "orders", "favorites", "cart_items", "users")

STORAGE_KEYS = {
    "users": "cookie_app_users",
    "cart_items": "cookie_app_cart_items",
    "favorites": "cookie_app_favorites",
    "orders": "cookie_app_orders",
    "order_items": "cookie_app_order_items",
}


@dataclass(frozen=True)
class RunResult:
    changes: int = 0
    last_id: Optional[Any] = None


class StorageBackend(ABC):
    name: str = ""

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def query(self, statement: SqlOrStatement, params: List[Any]) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def run(self, statement: SqlOrStatement, params: List[Any]) -> RunResult: ...

    @abstractmethod
    async def execute(self, sql: str) -> RunResult: ...

    @abstractmethod
    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T: ...

    @abstractmethod
    async def count(self, table: str) -> int: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


# ===============================
# SQLite
# ===============================

# Open connections by database name. A second backend for the same name
# resumes the existing handle instead of opening a new one.
_connections: Dict[str, sqlite3.Connection] = {}


def _is_alive(conn: sqlite3.Connection) -> bool:
    try:
        conn.execute("SELECT 1")
        return True
    except sqlite3.ProgrammingError:
        return False


class SqliteBackend(StorageBackend):
    """
    Relational backend on one sqlite3 connection.

    Calls into sqlite3 run inline on the event loop. Each one is a short
    statement against a local file, and transaction() relies on every
    statement of a transaction going through the same connection in order.
    Moving them to worker threads would need a connection lock first.
    """

    name = "sqlite"

    def __init__(self, database_name: str):
        self.database_name = database_name
        self._conn: Optional[sqlite3.Connection] = None
        self._in_transaction = False

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Database connection not established")
        return self._conn

    async def open(self) -> None:
        conn = _connections.get(self.database_name)
        if conn is not None and _is_alive(conn):
            logger.info(f"Retrieving existing connection to {self.database_name}")
        else:
            logger.info(f"Creating new connection to {self.database_name}")
            # isolation_level=None: BEGIN/COMMIT are issued explicitly by transaction()
            conn = sqlite3.connect(self.database_name, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            _connections[self.database_name] = conn
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            _connections.pop(self.database_name, None)
            conn.close()
            raise DatabaseError(f"Failed to create tables: {e}") from e
        self._conn = conn

    @staticmethod
    def _compile(statement: SqlOrStatement, params: List[Any]):
        if isinstance(statement, str):
            return statement, params
        if params:
            raise UnsupportedStatementError("Typed statements carry their own parameters")
        return statement.to_sql()

    async def query(self, statement, params):
        if not isinstance(statement, (str, Select)):
            raise UnsupportedStatementError("query() expects a SELECT statement")
        sql, args = self._compile(statement, params)
        cur = self.conn.execute(sql, args)
        return [dict(row) for row in cur.fetchall()]

    async def run(self, statement, params):
        if isinstance(statement, Select):
            raise UnsupportedStatementError("run() expects INSERT, UPDATE or DELETE")
        sql, args = self._compile(statement, params)
        cur = self.conn.execute(sql, args)
        last_id = statement.values.get("id") if isinstance(statement, Insert) else None
        return RunResult(changes=cur.rowcount, last_id=last_id if last_id is not None else cur.lastrowid)

    async def execute(self, sql):
        before = self.conn.total_changes
        self.conn.executescript(sql)
        return RunResult(changes=self.conn.total_changes - before)

    async def transaction(self, fn):
        if self._in_transaction:
            return await fn()
        self.conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            result = await fn()
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
            return result
        finally:
            self._in_transaction = False

    async def count(self, table):
        if table not in TABLES:
            raise UnsupportedStatementError(f"Unknown table: {table}")
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    async def clear(self):
        self.conn.executescript("".join(f"DELETE FROM {t};" for t in CLEAR_ORDER))

    async def close(self):
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        if _connections.get(self.database_name) is conn:
            del _connections[self.database_name]
        conn.close()
        logger.info(f"Database connection to {self.database_name} closed")


# ===============================
# Key/value emulation
# ===============================

class KeyValueBackend(StorageBackend):
    """
    SQL over a key/value store. Each table is one bucket holding the JSON
    list of its rows; every write rewrites the whole bucket. There are no
    constraints, cascades or transactions here: the repository layer
    supplies what it needs of those.
    """

    name = "keyvalue"

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def open(self) -> None:
        for key in STORAGE_KEYS.values():
            if self.store.get_item(key) is None:
                self.store.set_item(key, json.dumps([]))
        logger.info("Key/value buckets initialized")

    def _load(self, table: str) -> List[Dict[str, Any]]:
        return json.loads(self.store.get_item(STORAGE_KEYS[table]) or "[]")

    def _save(self, table: str, rows: List[Dict[str, Any]]) -> None:
        self.store.set_item(STORAGE_KEYS[table], json.dumps(rows))

    @staticmethod
    def _statement(statement: SqlOrStatement, params: List[Any]) -> Statement:
        if isinstance(statement, str):
            return parse(statement, params)
        if params:
            raise UnsupportedStatementError("Typed statements carry their own parameters")
        return statement

    async def query(self, statement, params):
        stmt = self._statement(statement, params)
        if not isinstance(stmt, Select):
            raise UnsupportedStatementError("query() expects a SELECT statement")
        return stmt.apply(self._load(stmt.table))

    async def run(self, statement, params):
        stmt = self._statement(statement, params)
        if isinstance(stmt, Select):
            raise UnsupportedStatementError("run() expects INSERT, UPDATE or DELETE")
        rows = self._load(stmt.table)
        if isinstance(stmt, Insert):
            row = dict(stmt.values)
            rows.append(row)
            self._save(stmt.table, rows)
            return RunResult(changes=1, last_id=row.get("id"))
        if isinstance(stmt, Update):
            changes = 0
            for row in rows:
                if matches_all(stmt.where, row):
                    row.update(stmt.values)
                    changes += 1
            self._save(stmt.table, rows)
            return RunResult(changes=changes)
        kept = [row for row in rows if not matches_all(stmt.where, row)]
        self._save(stmt.table, kept)
        return RunResult(changes=len(rows) - len(kept))

    async def execute(self, sql):
        logger.warning("execute() is not supported on the key/value backend; ignoring")
        return RunResult(changes=0)

    async def transaction(self, fn):
        return await fn()

    async def count(self, table):
        if table not in STORAGE_KEYS:
            raise UnsupportedStatementError(f"Unknown table: {table}")
        return len(self._load(table))

    async def clear(self):
        for table in CLEAR_ORDER:
            self._save(table, [])

    async def close(self):
        pass


def create_backend(settings: Settings, store: Optional[KeyValueStore] = None) -> StorageBackend:
    if settings.storage_backend == "keyvalue":
        return KeyValueBackend(store if store is not None else open_store(settings.storage_path))
    return SqliteBackend(settings.database_name)


# ===============================
# Facade
# ===============================

@contextmanager
def _failures(kind: str):
    try:
        yield
    except UnsupportedStatementError as e:
        raise UnsupportedStatementError(f"{kind} failed: {e}") from e
    except DatabaseError:
        raise
    except Exception as e:
        logger.exception(f"{kind} error")
        raise DatabaseError(f"{kind} failed: {e}") from e


class Database:
    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._initialized = False
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_ready(self) -> bool:
        return self._initialized

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def initialize(self) -> None:
        """Idempotent; concurrent callers share one in-flight attempt."""
        if self._initialized:
            return
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._initialize())
        pending = self._pending
        try:
            await asyncio.shield(pending)
        finally:
            if self._pending is pending and pending.done():
                self._pending = None

    async def _initialize(self) -> None:
        logger.info(f"Database initialization started, backend: {self.backend.name}")
        try:
            await self.backend.open()
        except Exception as e:
            self._initialized = False
            logger.exception("Error initializing database")
            raise DatabaseError(f"Failed to initialize database: {e}") from e
        self._initialized = True
        logger.info("Database initialized successfully")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def query(self, statement: SqlOrStatement, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        with _failures("Query"):
            return await self.backend.query(statement, list(params or []))

    async def run(self, statement: SqlOrStatement, params: Optional[Sequence[Any]] = None) -> RunResult:
        await self._ensure_initialized()
        with _failures("Run"):
            return await self.backend.run(statement, list(params or []))

    async def execute(self, sql: str) -> RunResult:
        await self._ensure_initialized()
        with _failures("Execute"):
            return await self.backend.execute(sql)

    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        await self._ensure_initialized()
        try:
            return await self.backend.transaction(fn)
        except Exception as e:
            logger.error(f"Transaction error: {e}")
            raise DatabaseError(f"Transaction failed: {e}") from e

    async def counts(self) -> Dict[str, int]:
        await self._ensure_initialized()
        with _failures("Query"):
            return {table: await self.backend.count(table) for table in TABLES}

    async def clear_all_data(self) -> None:
        await self._ensure_initialized()
        with _failures("Execute"):
            await self.backend.clear()

    async def close(self) -> None:
        try:
            await self.backend.close()
        finally:
            self._initialized = False
