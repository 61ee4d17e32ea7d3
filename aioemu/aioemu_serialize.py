"""
JSON and YAML documents: fixtures, config files, the storage file and the
guest's `json` module all go through here.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional
import collections.abc

import yaml


def _norm_text(data: bytes | bytearray | str) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Tuples and mapping views become plain lists/dicts
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    return obj


def format_for_path(path: str) -> Optional[str]:
    lower = str(path).lower()
    if lower.endswith(".json"):
        return 'json'
    if lower.endswith((".yaml", ".yml")):
        return 'yaml'
    return None


def deserialize(data: bytes | bytearray | str, *, fmt: str) -> Any:
    """
    Parse a 'json' or 'yaml' document. Parser errors propagate
    (ValueError for JSON, yaml.YAMLError for YAML).
    """
    text = _norm_text(data)
    if fmt == 'json':
        return json.loads(text)
    if fmt == 'yaml':
        return yaml.safe_load(text)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any, *, pretty: bool = True, default: Optional[Callable[[Any], Any]] = None) -> str:
    """
    Convert a native Python value into JSON text.
    - pretty=False gives the compact form used on the wire
    - default is passed to json.dumps for values it cannot encode
    """
    built = _to_builtin(value)
    if pretty:
        return json.dumps(built, ensure_ascii=False, indent=2, default=default)
    return json.dumps(built, ensure_ascii=False, separators=(",", ":"), default=default)


__all__ = [
    "deserialize",
    "serialize",
    "format_for_path",
]
