"""
Emulator settings.

Lowest to highest precedence: dataclass defaults, a YAML/JSON config file,
`AIOEMU_*` environment variables, then explicit overrides (CLI flags).
File keys may be written kebab-case (`http-mode`) or snake_case.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from aioemu.aioemu_http import DEFAULT_MOCK_LATENCY, DEFAULT_TIMEOUT, MODES
from aioemu.aioemu_serialize import deserialize, format_for_path
from aioemu.aioemu_storage import DEFAULT_STORAGE_PATH

ENV_PREFIX = "AIOEMU_"

# How long a session waits for outstanding requests after an entry point.
MOCK_SETTLE_TIMEOUT = 5.0
REAL_SETTLE_TIMEOUT = DEFAULT_TIMEOUT + 5.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass
class EmulatorConfig:
    http_mode: str = "mock"
    request_timeout: float = DEFAULT_TIMEOUT
    mock_latency: float = DEFAULT_MOCK_LATENCY
    retries: int = 0
    backoff: float = 0.2
    settle_timeout: Optional[float] = None
    storage_path: Optional[str] = DEFAULT_STORAGE_PATH
    fixtures: Optional[str] = None
    debug: bool = False

    @property
    def effective_settle_timeout(self) -> float:
        if self.settle_timeout is not None:
            return self.settle_timeout
        return REAL_SETTLE_TIMEOUT if self.http_mode == "real" else MOCK_SETTLE_TIMEOUT

    # ------------------------------------------------------------------
    # sources
    # ------------------------------------------------------------------
    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["EmulatorConfig"] = None) -> "EmulatorConfig":
        cfg = dataclasses.replace(base) if base is not None else cls()
        known = {f.name: f for f in fields(cls)}
        for raw_key, value in data.items():
            key = str(raw_key).replace("-", "_").lower()
            if key not in known:
                raise ValueError(f"unknown config key {raw_key!r}")
            setattr(cfg, key, cls._coerce(key, value))
        return cfg

    @classmethod
    def from_file(cls, path: str | os.PathLike, base: Optional["EmulatorConfig"] = None) -> "EmulatorConfig":
        p = Path(path)
        data = deserialize(p.read_bytes(), fmt=format_for_path(str(p)) or "yaml")
        if data is None:
            data = {}
        if not isinstance(data, collections.abc.Mapping):
            raise ValueError(f"config file {p} must contain a mapping")
        return cls.from_mapping(data, base)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 base: Optional["EmulatorConfig"] = None) -> "EmulatorConfig":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            name = ENV_PREFIX + f.name.upper()
            if name in environ:
                values[f.name] = environ[name]
        return cls.from_mapping(values, base)

    @classmethod
    def load(cls, config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None,
             **overrides: Any) -> "EmulatorConfig":
        """Resolve the full precedence chain."""
        cfg = cls()
        if config_file:
            cfg = cls.from_file(config_file, cfg)
        cfg = cls.from_env(environ, cfg)
        return cfg.merged(**overrides).validate()

    def merged(self, **overrides: Any) -> "EmulatorConfig":
        """Copy with every non-None override applied."""
        return self.from_mapping({k: v for k, v in overrides.items() if v is not None}, self)

    # ------------------------------------------------------------------
    # checks
    # ------------------------------------------------------------------
    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        match key:
            case "request_timeout" | "mock_latency" | "backoff":
                return float(value)
            case "settle_timeout":
                return None if value in (None, "") else float(value)
            case "retries":
                return int(value)
            case "debug":
                return _to_bool(value)
            case "http_mode":
                return str(value).strip().lower()
            case "storage_path" | "fixtures":
                return None if value in (None, "") else str(value)
        return value

    def validate(self) -> "EmulatorConfig":
        if self.http_mode not in MODES:
            raise ValueError(f"http_mode must be one of {', '.join(MODES)}, got {self.http_mode!r}")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.mock_latency < 0:
            raise ValueError("mock_latency must not be negative")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.settle_timeout is not None and self.settle_timeout <= 0:
            raise ValueError("settle_timeout must be positive")
        return self
