"""Shared pytest fixtures for the storage layer tests."""

import pytest

from database import Database, KeyValueBackend, SqliteBackend
from kvstore import KeyValueStore
from schemas import Product
from session import Session
from storage import StorageService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    """In-memory key/value store shared by the backend and the session."""
    return KeyValueStore()


@pytest.fixture(params=["sqlite", "keyvalue"])
async def database(request, store, tmp_path):
    """A Database on each backend, so every test runs against both."""
    if request.param == "sqlite":
        backend = SqliteBackend(str(tmp_path / "cookie_app.db"))
    else:
        backend = KeyValueBackend(store)
    db = Database(backend)
    yield db
    await db.close()


@pytest.fixture
def storage(database, store):
    return StorageService(database, Session(store))


@pytest.fixture
def products():
    return [
        Product(id="1", name="DULCE DE COOKIES", price=4.5, image="https://img.example/1.png"),
        Product(id="2", name="TURKISH MOCHA", price=5.0, image="https://img.example/2.png"),
        Product(id="3", name="SPICY PB CARAMEL", price=5.25, image="https://img.example/3.png"),
    ]
