"""
ClaimJoin - Durable Store

Namespaced key-value store kept in one JSON file. Every save rewrites the
file atomically so that a crash never leaves a half-written snapshot.
"""

import json
import logging
import os
import threading
from typing import Any, Dict

log = logging.getLogger(__name__)


class JsonStore:
    """
    Usage:
        store = JsonStore("/path/to/claimjoin.json")
        store.save("ClaimJoin", "MyRole", "initiator")
        role = store.load("ClaimJoin", "MyRole", "none")
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"Failed to read store {self.path}: {e}")
            return {}

    def _write(self, data: dict):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def save(self, namespace: str, key: str, value: Any):
        """Persist a JSON-serializable value."""
        self.save_many(namespace, {key: value})

    def save_many(self, namespace: str, values: Dict[str, Any]):
        """Persist several values of one namespace in a single write."""
        with self._lock:
            data = dict(self._data)
            data[namespace] = {**data.get(namespace, {}), **values}
            self._write(data)
            self._data = data

    def load(self, namespace: str, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(namespace, {}).get(key, default)
