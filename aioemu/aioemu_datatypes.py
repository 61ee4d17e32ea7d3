"""
Defines the core data types shared by the emulator runtime.

Guest values live inside a Lua interpreter; host values are plain Python
objects. `GuestKind` is the explicit tag used to dispatch conversions between
the two, and the result/record dataclasses here are what the runtime hands
back to callers.
"""

from __future__ import annotations

import enum
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import lupa


class GuestLoadError(Exception):
    """Raised when guest source cannot be compiled or its top level fails."""

    def __init__(self, message: str, *, kind: str = "syntax", line: Optional[int] = None, context: str = ""):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.line = line
        self.context = context

    def format_error(self) -> str:
        label = "SyntaxError" if self.kind == "syntax" else "LoadError"
        msg = f"{label}: {self.message}"
        if self.line is not None:
            msg = f"{msg} (line {self.line})"
        if self.context:
            msg = f"{msg}\n{self.context}"
        return msg


class BridgeError(Exception):
    """A value could not be carried across the host/guest boundary."""


class FixtureError(Exception):
    """A mock fixture document is malformed."""


def dbg(*args) -> None:
    if os.environ.get("AIOEMU_DEBUG"):
        print("[DBG]", *args, file=sys.stderr)


# =================================================================
# Guest value tags
# =================================================================

class GuestKind(enum.Enum):
    NIL = "nil"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    TABLE = "table"
    CALLABLE = "function"
    OTHER = "other"


def guest_kind(value: Any) -> GuestKind:
    """Classify a value as seen from the Lua side of the boundary."""
    lt = lupa.lua_type(value)
    match lt:
        case "table":
            return GuestKind.TABLE
        case "function":
            return GuestKind.CALLABLE
        case "userdata" | "thread":
            return GuestKind.OTHER
    # Plain Python scalars are how lupa hands Lua scalars to us.
    match value:
        case None:
            return GuestKind.NIL
        case bool():
            return GuestKind.BOOLEAN
        case int() | float():
            return GuestKind.NUMBER
        case str() | bytes():
            return GuestKind.STRING
    return GuestKind.OTHER


# =================================================================
# Records
# =================================================================

Effect = Dict[str, Any]


@dataclass
class CallResult:
    """The structured result of invoking one guest entry point."""
    status: Literal['success', 'error', 'not-found']
    entry_point: str
    value: Any = None
    error_message: Optional[str] = None
    side_effects: List[Effect] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.status != 'not-found'

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return f"Error in {self.entry_point}: {self.error_message or 'Unknown error'}"


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None


class Outcome(enum.Enum):
    PENDING = "pending"
    MOCK_HIT = "mock-hit"
    MOCK_MISS = "mock-miss"
    REAL_SUCCESS = "real-success"
    REAL_ERROR = "real-error"
    # The fixture matched but could not be turned into a response.
    MOCK_ERROR = "mock-error"


class ErrorKind(enum.Enum):
    DNS = "dns"
    REFUSED = "refused"
    RESET = "reset"
    TLS = "tls"
    TIMEOUT = "timeout"
    # CORS-equivalent: the client refused to send the request at all.
    BLOCKED = "blocked"
    GENERIC = "generic"


@dataclass
class HttpResponse:
    """What a request resolved to. The guest only ever sees (body, status)."""
    body: Optional[str]
    status: int
    outcome: Outcome
    headers: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    fixture_key: Optional[str] = None
    available_keys: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.outcome in (Outcome.REAL_ERROR, Outcome.MOCK_ERROR)


@dataclass
class HttpExchange:
    """One request as recorded by the network facade."""
    request_id: int
    request: HttpRequest
    mode: str
    response: Optional[HttpResponse] = None

    @property
    def outcome(self) -> Outcome:
        return self.response.outcome if self.response else Outcome.PENDING


__all__ = [
    "GuestLoadError",
    "BridgeError",
    "FixtureError",
    "dbg",
    "GuestKind",
    "guest_kind",
    "CallResult",
    "HttpRequest",
    "HttpResponse",
    "HttpExchange",
    "Outcome",
    "ErrorKind",
]
