"""
Persistent key/value storage for widget scripts and path resolution for
the `files` module.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from aioemu.aioemu_serialize import deserialize, serialize

DEFAULT_STORAGE_PATH = os.path.join(".widget-storage", "data.json")


def resolve_path(path: str, base_dir: Optional[str]) -> str:
    # Absolute filesystem path
    if path.startswith("/"):
        return os.path.normpath(path)
    # Home directory
    if path.startswith("~"):
        return os.path.expanduser(path)
    # Working directory relative
    if path.startswith("./"):
        return os.path.normpath(os.path.join(os.getcwd(), path[2:]))
    # Default: relative to the script's directory (or CWD)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


class KeyValueStore:
    """Process-wide key/value store mirrored to a JSON document.

    The document is read once at construction and rewritten in full after
    every set/delete/clear. Values go through the JSON encoding on the way
    in, so what a guest reads back is exactly what `json.encode` would have
    produced. Two stores on the same file resolve conflicts last-write-wins.
    With `path=None` the store lives in memory only.
    """

    def __init__(self, path: Optional[str | os.PathLike] = DEFAULT_STORAGE_PATH):
        self.path = Path(path) if path is not None else None
        self._data: Dict[str, Any] = {}
        self.load_error: Optional[str] = None
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            loaded = deserialize(self.path.read_bytes(), fmt="json")
        except (OSError, ValueError) as e:
            self.load_error = str(e)
            return
        if isinstance(loaded, dict):
            self._data = loaded
        else:
            self.load_error = f"expected a JSON object in {self.path}, got {type(loaded).__name__}"

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(serialize(self._data), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        # Raises TypeError/ValueError for values JSON cannot carry.
        encoded = deserialize(serialize(value, pretty=False), fmt="json")
        self._data[key] = encoded
        self._save()

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        self._save()
        return True

    def has(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def clear(self) -> None:
        self._data = {}
        self._save()

    def all(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def __len__(self) -> int:
        return len(self._data)
