"""
Key/value stores

String-keyed, string-valued stores standing in for browser localStorage.
Callers serialize their own values (the emulation backend writes whole
JSON lists per bucket, the session writes one JSON record).
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)


class KeyValueStore:
    """In-memory store. Also the base class for persisted variants."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def keys(self) -> Iterator[str]:
        return iter(list(self._items))

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def _flush(self) -> None:
        pass


class JsonFileKeyValueStore(KeyValueStore):
    """Store persisted as one JSON object on disk, rewritten on every change."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(self._read())

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt key/value file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Corrupt key/value file {self.path}: expected an object")
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._items), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.debug(f"Flushed {len(self._items)} keys to {self.path}")


MEMORY = ":memory:"


def open_store(path: Optional[str]) -> KeyValueStore:
    if path and path != MEMORY:
        return JsonFileKeyValueStore(path)
    return KeyValueStore()
