"""
Loads one widget script into a fresh Lua state and drives its entry points.

A `GuestRuntime` owns everything that must not leak between two loads: the
`LuaRuntime`, its globals, the callback registry, the value bridge and the
capability objects. The network facade and the key/value store are passed in
and may be shared.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from lupa import LuaError, LuaRuntime

from aioemu.aioemu_bridge import ValueBridge, lua_tostring
from aioemu.aioemu_callbacks import CallbackRegistry, GuestCallable
from aioemu.aioemu_capabilities import (
    AndroidCapability,
    Capability,
    FilesCapability,
    HttpCapability,
    JsonCapability,
    StorageCapability,
    SystemCapability,
    UiCapability,
)
from aioemu.aioemu_datatypes import CallResult, GuestKind, GuestLoadError, dbg, guest_kind
from aioemu.aioemu_http import NetworkFacade
from aioemu.aioemu_printer import Printer
from aioemu.aioemu_storage import KeyValueStore

MENU_ENTRY_POINTS = ("on_context_menu_click", "on_menu_select", "on_menu")

_LINE_RE = re.compile(r"\]:(\d+):")
_META_RE = re.compile(r"^--\s*([A-Za-z_][\w-]*)\s*=\s*(.*?)\s*$")


def parse_metadata(source: str) -> Dict[str, str]:
    """Read the `-- key = "value"` header block at the top of a widget script."""
    meta: Dict[str, str] = {}
    for line in source.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--"):
            break
        m = _META_RE.match(stripped)
        if not m:
            continue
        key, value = m.group(1), m.group(2)
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        meta[key] = value
    return meta


def _error_line(message: str) -> Optional[int]:
    m = _LINE_RE.search(message)
    return int(m.group(1)) if m else None


def _strip_chunk_name(message: str) -> str:
    """'[string "<python>"]:3: boom' -> 'line 3: boom', without the Lua traceback."""
    message = message.split("\nstack traceback:", 1)[0]
    return re.sub(r'\[string "[^"]*"\]:(\d+):', r"line \1:", message)


def _deny_attributes(obj, attr_name, is_setting):
    # Host objects handed to the guest are opaque.
    raise AttributeError(f"access to {attr_name!r} is not allowed")


def _source_context(source: str, line: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        if i == line:
            out.append(f"  {' ' * width} | ^")
    return "\n".join(out)


class GuestRuntime:
    """One loaded widget script and the host objects it can reach."""

    def __init__(self, facade: Optional[NetworkFacade] = None, store: Optional[KeyValueStore] = None,
                 source_dir: Optional[str] = None, android_data: Optional[Dict[str, Any]] = None):
        self.side_effects: List[Dict[str, Any]] = []
        self.meta: Dict[str, str] = {}
        self.source = ""
        self.closed = False
        self.facade = facade if facade is not None else NetworkFacade()
        self.store = store if store is not None else KeyValueStore(None)
        self._printer = Printer()

        # Guest strings cross as raw bytes; the bridge does the decoding.
        self.lua = LuaRuntime(encoding=None, unpack_returned_tuples=True, register_eval=False,
                              register_builtins=False, attribute_filter=_deny_attributes)
        self.registry = CallbackRegistry(report=self.report)
        self.bridge = ValueBridge(self.lua, self.registry, report=self.report)

        self.ui = UiCapability()
        self.http = HttpCapability(self.facade)
        self.system = SystemCapability()
        self.android = AndroidCapability(android_data)
        self.capabilities: Dict[str, Capability] = {}
        for cap in (self.ui, self.http, JsonCapability(), StorageCapability(self.store),
                    FilesCapability(source_dir), self.system, self.android):
            self.install(cap)
        self.bridge.set_global("print", self.bridge.export(self._print, "print"))

    def report(self, topic: str, message: str) -> None:
        dbg(topic, message)
        self.side_effects.append({"topics": [topic], "message": message})

    def install(self, capability: Capability) -> None:
        """Expose a capability's @guest_api methods under its namespace."""
        capability.attach(self)
        self.bridge.install_module(capability.namespace, capability.guest_functions())
        self.capabilities[capability.namespace] = capability

    def _print(self, *args):
        self.report("stdout", "\t".join(lua_tostring(a) for a in args))

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------
    @classmethod
    def load(cls, source: str, **kwargs) -> "GuestRuntime":
        """Compile and run `source` in a fresh runtime; raises GuestLoadError."""
        runtime = cls(**kwargs)
        try:
            runtime._exec(source)
        except GuestLoadError:
            runtime.close()
            raise
        return runtime

    def _exec(self, source: str) -> None:
        self.source = source
        self.meta = parse_metadata(source)
        try:
            chunk = self.lua.compile(source)
        except LuaError as e:
            raise self._load_error(str(e), "syntax") from e
        try:
            chunk()
        except LuaError as e:
            raise self._load_error(str(e), "runtime") from e
        except Exception as e:
            # Host exceptions re-raised by lupa through the Lua call stack
            raise GuestLoadError(f"{type(e).__name__}: {e}", kind="runtime") from e

    def _load_error(self, raw: str, kind: str) -> GuestLoadError:
        line = _error_line(raw)
        return GuestLoadError(
            _strip_chunk_name(raw),
            kind=kind,
            line=line,
            context=_source_context(self.source, line),
        )

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------
    def has_entry_point(self, name: str) -> bool:
        return guest_kind(self.bridge.get_global(name)) is GuestKind.CALLABLE

    def get_global(self, name: str) -> Any:
        """The host value of guest global `name`."""
        return self.bridge.to_host(self.bridge.get_global(name), name)

    def call(self, name: str, *args: Any) -> CallResult:
        """Invoke the guest global `name`; guest errors are contained."""
        start = len(self.side_effects)
        if self.closed:
            return CallResult('error', name, error_message="runtime is closed")
        value = self.bridge.get_global(name)
        kind = guest_kind(value)
        if kind is GuestKind.NIL:
            dbg("no entry point", name)
            return CallResult('not-found', name)
        if kind is not GuestKind.CALLABLE:
            msg = f"'{name}' is a {kind.value}, not a function"
            self.report("stderr", f"Error in {name}: {msg}")
            return CallResult('error', name, error_message=msg, side_effects=self.side_effects[start:])
        return self._invoke(name, value, args, start)

    def _invoke(self, label: str, fn: Any, args, start: int) -> CallResult:
        try:
            result = self.bridge.call(fn, *args)
        except LuaError as e:
            msg = _strip_chunk_name(str(e))
            self.report("stderr", f"Error in {label}({self._printer.pformat_args(list(args))}): {msg}")
            return CallResult('error', label, error_message=msg, side_effects=self.side_effects[start:])
        except Exception as e:
            msg = f"{type(e).__name__}: {e}"
            self.report("stderr", f"Error in {label}: {msg}")
            return CallResult('error', label, error_message=msg, side_effects=self.side_effects[start:])
        return CallResult('success', label, value=result, side_effects=self.side_effects[start:])

    def deliver_menu_selection(self, index: int) -> CallResult:
        """Route a 1-based menu choice to the handler recorded with the menu.

        Without a handler the first defined menu entry point receives it.
        """
        start = len(self.side_effects)
        _, handler = self.ui.take_menu()
        match handler:
            case GuestCallable():
                fn = handler.function
                label = handler.handle.describe() or "context menu handler"
                try:
                    if fn is None:
                        return CallResult('not-found', label)
                    return self._invoke(label, fn, (index,), start)
                finally:
                    handler.release()
            case str():
                return self.call(handler, index)
        for name in MENU_ENTRY_POINTS:
            if self.has_entry_point(name):
                return self.call(name, index)
        self.report("stderr", f"Menu item {index} selected but no handler is defined")
        return CallResult('not-found', MENU_ENTRY_POINTS[0], side_effects=self.side_effects[start:])

    # ------------------------------------------------------------------
    # host-side views
    # ------------------------------------------------------------------
    @property
    def output(self) -> str:
        return self.ui.rendered

    @property
    def menu_items(self) -> List[str]:
        return list(self.ui.menu_items)

    @property
    def has_menu(self) -> bool:
        return self.ui.has_menu

    async def settle(self, timeout: Optional[float] = None) -> bool:
        return await self.facade.settle(timeout)

    def close(self) -> None:
        if self.closed:
            return
        for cap in self.capabilities.values():
            cap.close()
        released = self.registry.release_all()
        dbg("closed runtime; released", released, "callbacks")
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
