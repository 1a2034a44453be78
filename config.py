import os
from dataclasses import dataclass
from typing import Optional

BACKENDS = ("sqlite", "keyvalue")


@dataclass(frozen=True)
class Settings:
    storage_backend: str
    database_name: str
    storage_path: Optional[str]
    auth_salt: str
    log_level: str
    port: int


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name, default)
    if v is None:
        return None
    v = v.strip()
    return v if v else None


def default_storage_path(database_name: str) -> str:
    if database_name == ":memory:":
        return database_name
    # session slot and key/value buckets live beside the SQLite file
    return os.path.splitext(database_name)[0] + ".json"


def get_settings() -> Settings:
    """Environment variables are read here and nowhere else."""
    backend = (_getenv("STORAGE_BACKEND", "sqlite") or "sqlite").lower()
    if backend not in BACKENDS:
        raise ValueError(f"STORAGE_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}")
    database_name = _getenv("DATABASE_NAME", "cookie_app.db") or "cookie_app.db"
    return Settings(
        storage_backend=backend,
        database_name=database_name,
        storage_path=_getenv("STORAGE_PATH") or default_storage_path(database_name),
        auth_salt=os.getenv("AUTH_SALT", ""),
        log_level=(_getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
        port=int(_getenv("PORT", "8000") or 8000),
    )
