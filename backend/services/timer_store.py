"""
Key-value stores for display client state.

Countdown deadlines, fired-alert flags, sound settings and the selected
categories all live in a small string key-value store so a restart of the
display picks up where it left off. Tests use MemoryStore; the display uses
JsonFileStore.
"""

import json
import logging
import os
from typing import Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Iterator[str]: ...


class MemoryStore:
    """Dict-backed store. Nothing survives the process."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self):
        return len(self._data)


class JsonFileStore(MemoryStore):
    """
    Store persisted to a JSON file, rewritten on every change.

    Writes go to a temporary file first and are moved into place, so a crash
    mid-write leaves the previous state intact.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(self._load())

    def _load(self) -> dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {self.path}: expected an object")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def set(self, key: str, value: str) -> None:
        if self._data.get(key) == str(value):
            return
        super().set(key, value)
        self._flush()

    def delete(self, key: str) -> None:
        if key not in self._data:
            return
        super().delete(key)
        self._flush()
