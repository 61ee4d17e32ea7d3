"""
Bidirectional value conversion between Python and the embedded Lua state.

Every crossing materializes a fresh structure: guest tables become new
dicts/lists and host containers become new Lua tables. Nothing on one side
ever aliases a container on the other.
"""

from __future__ import annotations

import collections.abc
from typing import Any, Callable, Dict, List, Optional

import lupa

from aioemu.aioemu_callbacks import CallbackRegistry, GuestCallable
from aioemu.aioemu_datatypes import BridgeError, GuestKind, guest_kind
from aioemu.aioemu_printer import Printer

# Lua has one number type for interchange purposes; integers above this lose precision.
SAFE_INTEGER = 2 ** 53
MAX_DEPTH = 64

# Helpers are created before any guest code runs, so the builtins they
# capture cannot be replaced by the guest afterwards.
_ARRAY_HELPERS = """
(function()
  local mt = {__name = "array"}
  local setmt, rawequal = setmetatable, rawequal
  local getmt = (debug and debug.getmetatable) or getmetatable
  return function(t) return setmt(t, mt) end,
         function(t) return rawequal(getmt(t), mt) end
end)()
"""

# Drops the implicit self argument of `module:fn(...)` / `module.fn(module, ...)`.
_METHOD_SHIM = """
(function()
  local select, rawequal = select, rawequal
  return function(module, fn)
    return function(...)
      if select('#', ...) > 0 and rawequal((...), module) then
        return fn(select(2, ...))
      end
      return fn(...)
    end
  end
end)()
"""


def lua_tostring(value: Any) -> str:
    """Render a host value the way Lua's tostring would."""
    match value:
        case None:
            return "nil"
        case bool():
            return "true" if value else "false"
        case int():
            return str(value)
        case float():
            text = "%.14g" % value
            # Integral floats keep a ".0" unless printed with an exponent
            if text.lstrip("-").isdigit():
                text += ".0"
            return text
        case str():
            return value
        case GuestCallable():
            return "function"
        case collections.abc.Mapping() | list() | tuple():
            return "table"
    return str(value)


class ValueBridge:
    """Converts values for one Lua runtime."""

    def __init__(self, lua: Any, registry: CallbackRegistry, report: Optional[Callable[[str, str], None]] = None):
        self.lua = lua
        self.registry = registry
        registry.bridge = self
        self._report = report or (lambda topic, message: None)
        self._printer = Printer()
        # Guest functions converted during the current host call, if any.
        self._crossing: Optional[List[GuestCallable]] = None
        self._mark_array, self._is_array = lua.eval(_ARRAY_HELPERS)
        self._bind_method = lua.eval(_METHOD_SHIM)

    # ------------------------------------------------------------------
    # host -> guest
    # ------------------------------------------------------------------
    def to_guest(self, value: Any, _depth: int = 0) -> Any:
        if _depth > MAX_DEPTH:
            raise BridgeError("value nested too deeply to convert (cyclic?)")
        # Already a Lua object: hand it back untouched.
        if lupa.lua_type(value) is not None:
            return value
        match value:
            case None:
                return None
            case bool():
                return value
            case int():
                return value if -SAFE_INTEGER <= value <= SAFE_INTEGER else float(value)
            case float():
                return value
            case str():
                # Lua strings are bytes; the runtime does no implicit encoding.
                return value.encode("utf-8")
            case bytes() | bytearray():
                return bytes(value)
            case GuestCallable():
                return value.function
            case collections.abc.Mapping():
                table = self.lua.table()
                for k, v in value.items():
                    if v is None:
                        continue
                    table[self._key_to_guest(k)] = self.to_guest(v, _depth + 1)
                return table
            case list() | tuple():
                table = self.lua.table()
                for i, v in enumerate(value, start=1):
                    table[i] = self.to_guest(v, _depth + 1)
                self._mark_array(table)
                return table
        if callable(value):
            return self.export(value, getattr(value, "__name__", "host function"))
        raise BridgeError(f"cannot convert {type(value).__name__} for the guest")

    def _key_to_guest(self, key: Any) -> Any:
        match key:
            case bool() | float():
                return key
            case int() | str():
                return self.to_guest(key)
        return str(key).encode("utf-8")

    # ------------------------------------------------------------------
    # guest -> host
    # ------------------------------------------------------------------
    def to_host(self, value: Any, label: str = "", _depth: int = 0) -> Any:
        kind = guest_kind(value)
        match kind:
            case GuestKind.NIL:
                return None
            case GuestKind.BOOLEAN | GuestKind.NUMBER:
                return value
            case GuestKind.STRING:
                if isinstance(value, bytes):
                    return value.decode("utf-8", errors="replace")
                return value
            case GuestKind.CALLABLE:
                callable_ = GuestCallable(self.registry.retain(value, label), self.registry)
                if self._crossing is not None:
                    self._crossing.append(callable_)
                return callable_
            case GuestKind.TABLE:
                return self._table_to_host(value, label, _depth)
        # Python objects that went through Lua come back as themselves.
        if lupa.lua_type(value) is None:
            return value
        return None

    def _table_to_host(self, table: Any, label: str, depth: int) -> Any:
        if depth >= MAX_DEPTH:
            raise BridgeError("table nested too deeply to convert (cyclic?)")
        entries: Dict[Any, Any] = {}
        for k, v in table.items():
            key = self._key_to_host(k)
            if key is None:
                continue
            entries[key] = self.to_host(v, label, depth + 1)

        n = len(entries)
        if all(type(k) is int for k in entries) and set(entries) == set(range(1, n + 1)):
            if n > 0 or self._is_array(table):
                return [entries[i] for i in range(1, n + 1)]

        numeric = sorted(k for k in entries if type(k) in (int, float))
        strings = sorted(k for k in entries if isinstance(k, str))
        rest = [k for k in entries if type(k) not in (int, float, str)]
        return {k: entries[k] for k in numeric + strings + rest}

    def _key_to_host(self, key: Any) -> Any:
        match guest_kind(key):
            case GuestKind.STRING:
                return key.decode("utf-8", errors="replace") if isinstance(key, bytes) else key
            case GuestKind.NUMBER | GuestKind.BOOLEAN:
                return key
        # Tables, functions and userdata cannot be dict keys on the host.
        return None

    # ------------------------------------------------------------------
    # functions
    # ------------------------------------------------------------------
    def export(self, fn: Callable[..., Any], label: str) -> Callable[..., Any]:
        """Wrap a host function so the guest can call it safely.

        Arguments are converted to host values, the result back to a guest
        value. Any exception stops at this boundary: it is reported and the
        guest receives nil. Guest functions passed in are released when the
        call returns unless the host function kept them.
        """
        def exported(*args):
            host_args = []
            outer, self._crossing = self._crossing, []
            try:
                for i, a in enumerate(args, start=1):
                    host_args.append(self.to_host(a, f"{label} argument {i}"))
                return self.to_guest(fn(*host_args))
            except Exception as e:
                self._report("stderr", f"Error in {label}({self._printer.pformat_args(host_args)}): {e}")
                return None
            finally:
                crossed, self._crossing = self._crossing, outer
                for callable_ in crossed:
                    if not callable_.kept:
                        callable_.release()
        exported.__name__ = label
        return exported

    def install_module(self, namespace: str, functions: Dict[str, Callable[..., Any]]) -> Any:
        """Create the guest global `namespace` holding the given host functions."""
        module = self.lua.table()
        for name, fn in functions.items():
            module[self._key_to_guest(name)] = self._bind_method(module, self.export(fn, f"{namespace}.{name}"))
        self.set_global(namespace, module)
        return module

    def get_global(self, name: str) -> Any:
        """The raw guest value of global `name`."""
        return self.lua.globals()[self._key_to_guest(name)]

    def set_global(self, name: str, value: Any) -> None:
        """Bind an already-converted guest value to global `name`."""
        self.lua.globals()[self._key_to_guest(name)] = value

    def call(self, fn: Any, *args: Any) -> Any:
        """Call a guest function with host arguments; LuaError propagates."""
        result = fn(*[self.to_guest(a) for a in args])
        if isinstance(result, tuple):
            return [self.to_host(r) for r in result]
        return self.to_host(result)
