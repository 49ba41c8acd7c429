"""
Client-side key/value storage for credentials, PKCE state and settings.

The token manager and settings provider only need ``get``/``set``/``delete``
by key, so both accept any object with that shape. ``MemoryStore`` backs
tests; ``JsonFileStore`` persists to a single JSON document on disk.
"""

import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from loguru import logger


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Durable store backed by one JSON file, rewritten atomically on each change."""

    def __init__(self, path: str, namespace: str = "invoice_sync"):
        self.path = Path(path)
        self.namespace = namespace
        self._lock = threading.Lock()

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"State store {self.path} unreadable, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(self._key(key))

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[self._key(key)] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(self._key(key), None) is not None:
                self._write(data)
