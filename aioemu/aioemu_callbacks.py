"""
Keeps guest functions alive while the host still intends to call them.

A guest function that crosses into the host is stored here under an integer
handle. lupa pins every Lua object it wraps in the Lua registry, so holding
the wrapper in `_functions` is what stops the guest collector from
reclaiming it. Handles are invoked any number of times and are dropped
explicitly or when the owning runtime closes.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from lupa import LuaError


@dataclass(frozen=True)
class CallbackHandle:
    id: int
    label: str = ""

    def describe(self) -> str:
        return self.label or f"callback #{self.id}"


class CallbackRegistry:
    """Handle table for retained guest functions."""

    def __init__(self, report: Optional[Callable[[str, str], None]] = None):
        self._functions: Dict[int, Any] = {}
        self._ids = itertools.count(1)
        self._report = report or (lambda topic, message: None)
        # Set by ValueBridge; conversions need the bridge and the bridge needs us.
        self.bridge = None

    def __contains__(self, handle: CallbackHandle) -> bool:
        return handle.id in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    @property
    def live(self) -> int:
        return len(self._functions)

    def retain(self, fn: Any, label: str = "") -> CallbackHandle:
        handle = CallbackHandle(next(self._ids), label)
        self._functions[handle.id] = fn
        return handle

    def get(self, handle: CallbackHandle) -> Any:
        return self._functions.get(handle.id)

    def invoke(self, handle: CallbackHandle, *args: Any) -> Any:
        """Call the guest function behind `handle` in protected mode.

        Arguments are host values and are converted on every call; the stored
        function is looked up fresh each time. Guest errors are reported and
        swallowed, so the return value is None on failure.
        """
        fn = self._functions.get(handle.id)
        if fn is None:
            self._report("stderr", f"{handle.describe()} was released; call dropped")
            return None
        bridge = self.bridge
        try:
            guest_args = [bridge.to_guest(a) for a in args] if bridge else list(args)
            result = fn(*guest_args)
            if bridge is None:
                return result
            if isinstance(result, tuple):
                return [bridge.to_host(r) for r in result]
            return bridge.to_host(result)
        except LuaError as e:
            self._report("stderr", f"Lua callback error in {handle.describe()}{self._fmt_args(args)}: {e}")
        except Exception as e:
            self._report("stderr", f"Host error while calling {handle.describe()}{self._fmt_args(args)}: {e}")
        return None

    def release(self, handle: CallbackHandle) -> bool:
        return self._functions.pop(handle.id, None) is not None

    def release_all(self) -> int:
        count = len(self._functions)
        self._functions.clear()
        return count

    def _fmt_args(self, args) -> str:
        from aioemu.aioemu_printer import Printer  # lazy import to avoid cycles
        return f" with ({Printer().pformat_args(args)})"


class GuestCallable:
    """Host-callable closure over a retained guest function."""

    __slots__ = ("handle", "_registry", "kept")

    def __init__(self, handle: CallbackHandle, registry: CallbackRegistry):
        self.handle = handle
        self._registry = registry
        # Set by a capability that holds on to the function past the call.
        self.kept = False

    def __call__(self, *args: Any) -> Any:
        return self._registry.invoke(self.handle, *args)

    def __repr__(self):
        state = "released" if self.released else "live"
        return f"<GuestCallable {self.handle.describe()} ({state})>"

    @property
    def function(self) -> Any:
        return self._registry.get(self.handle)

    @property
    def released(self) -> bool:
        return self.handle not in self._registry

    def keep(self) -> "GuestCallable":
        self.kept = True
        return self

    def release(self) -> bool:
        return self._registry.release(self.handle)
