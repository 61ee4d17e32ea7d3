"""
Drives a widget through the launcher lifecycle.

load -> on_resume -> on_click / on_long_click -> menu selection, waiting for
outstanding network requests after every step so callbacks have run before
the next one starts.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pystache

from aioemu.aioemu_callbacks import GuestCallable
from aioemu.aioemu_config import EmulatorConfig
from aioemu.aioemu_datatypes import CallResult
from aioemu.aioemu_http import NetworkFacade
from aioemu.aioemu_mocks import MockFixtures
from aioemu.aioemu_runtime import GuestRuntime
from aioemu.aioemu_storage import KeyValueStore

REPORT_TEMPLATE = """\
{{#name}}== {{name}} ==
{{/name}}Output:
{{output}}
{{#has_menu}}
Menu:
{{#menu}}
  {{index}}. {{label}}
{{/menu}}
{{/has_menu}}
Network ({{mode}} mode): {{request_count}} request(s), {{pending}} pending
{{#requests}}
  #{{id}} {{method}} {{url}} -> {{outcome}} {{status}}
{{/requests}}
{{#errors}}
Errors:
{{#lines}}
  {{.}}
{{/lines}}
{{/errors}}
"""

Action = Union[str, int]


class Session:
    """One widget script plus the host state it runs against."""

    def __init__(self, config: Optional[EmulatorConfig] = None, *, fixtures: Optional[MockFixtures] = None,
                 store: Optional[KeyValueStore] = None, facade: Optional[NetworkFacade] = None,
                 android_data: Optional[Dict[str, Any]] = None):
        self.config = config or EmulatorConfig()
        if fixtures is None and self.config.fixtures:
            fixtures = MockFixtures.from_file(self.config.fixtures)
        self.facade = facade or NetworkFacade(
            fixtures,
            mode=self.config.http_mode,
            timeout=self.config.request_timeout,
            mock_latency=self.config.mock_latency,
            retries=self.config.retries,
            backoff=self.config.backoff,
        )
        self.store = store if store is not None else KeyValueStore(self.config.storage_path)
        self.android_data = android_data
        self.runtime: Optional[GuestRuntime] = None
        self.script_path: Optional[Path] = None
        self.source: Optional[str] = None
        self.settled = True

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------
    def load(self, source: str, *, source_dir: Optional[str] = None) -> GuestRuntime:
        """Replace the current script; raises GuestLoadError."""
        if self.runtime is not None:
            self.runtime.close()
            self.runtime = None
        if source_dir is None and self.script_path is not None:
            source_dir = str(self.script_path.parent)
        self.runtime = GuestRuntime.load(
            source,
            facade=self.facade,
            store=self.store,
            source_dir=source_dir,
            android_data=self.android_data,
        )
        self.source = source
        return self.runtime

    def load_file(self, path: str | os.PathLike) -> GuestRuntime:
        p = Path(path).resolve()
        source = p.read_text(encoding="utf-8")
        self.script_path = p
        return self.load(source, source_dir=str(p.parent))

    def reload(self, source: Optional[str] = None) -> GuestRuntime:
        """Load edited source (or re-read the script file) into a fresh runtime."""
        if source is not None:
            return self.load(source)
        if self.script_path is not None:
            return self.load_file(self.script_path)
        if self.source is None:
            raise RuntimeError("nothing to reload")
        return self.load(self.source)

    def _require_runtime(self) -> GuestRuntime:
        if self.runtime is None:
            raise RuntimeError("no script loaded")
        return self.runtime

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def invoke(self, entry_point: str, *args: Any) -> CallResult:
        """Call an entry point, then wait for the requests it started."""
        runtime = self._require_runtime()
        start = len(runtime.side_effects)
        result = runtime.call(entry_point, *args)
        await self.settle()
        result.side_effects = runtime.side_effects[start:]
        return result

    async def resume(self) -> CallResult:
        return await self.invoke("on_resume")

    async def click(self) -> CallResult:
        return await self.invoke("on_click")

    async def long_click(self) -> CallResult:
        return await self.invoke("on_long_click")

    async def select_menu(self, index: int) -> CallResult:
        """Choose menu item `index` (1-based); 0 cancels the menu."""
        runtime = self._require_runtime()
        start = len(runtime.side_effects)
        if not runtime.has_menu:
            runtime.report("stderr", "No context menu is showing")
            return CallResult('not-found', "menu", side_effects=runtime.side_effects[start:])
        count = len(runtime.menu_items)
        if index == 0:
            _, handler = runtime.ui.take_menu()
            if isinstance(handler, GuestCallable):
                handler.release()
            runtime.report("menu", "Menu cancelled")
            return CallResult('success', "menu", side_effects=runtime.side_effects[start:])
        if not 1 <= index <= count:
            msg = f"menu index {index} out of range 1..{count}"
            runtime.report("stderr", msg)
            return CallResult('error', "menu", error_message=msg, side_effects=runtime.side_effects[start:])
        result = runtime.deliver_menu_selection(int(index))
        await self.settle()
        result.side_effects = runtime.side_effects[start:]
        return result

    async def settle(self) -> bool:
        timeout = self.config.effective_settle_timeout
        self.settled = await self.facade.settle(timeout)
        if not self.settled and self.runtime is not None:
            self.runtime.report(
                "stderr",
                f"{len(self.facade.pending)} request(s) still pending after {timeout:g}s",
            )
        return self.settled

    async def run_script(self, entry_point: Optional[str] = None, actions: Iterable[Action] = ()) -> List[CallResult]:
        """Batch run: on_resume, the optional entry point, then each action.

        Actions are "click", "long_click", "resume", an entry point name, or
        an int / "menu N" / "select N" choosing a menu item.
        """
        results = [await self.resume()]
        if entry_point and entry_point != "on_resume":
            results.append(await self.invoke(entry_point))
        for action in actions:
            results.append(await self._run_action(action))
        return results

    async def _run_action(self, action: Action) -> CallResult:
        match action:
            case int():
                return await self.select_menu(action)
            case "click":
                return await self.click()
            case "long_click" | "long-click":
                return await self.long_click()
            case "resume":
                return await self.resume()
            case str() if action.split(maxsplit=1)[0] in ("menu", "select") and len(action.split()) == 2:
                return await self.select_menu(int(action.split()[1]))
            case str():
                return await self.invoke(action)
        raise TypeError(f"unsupported action {action!r}")

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------
    @property
    def output(self) -> str:
        return self.runtime.output if self.runtime else ""

    @property
    def has_menu(self) -> bool:
        return bool(self.runtime and self.runtime.has_menu)

    @property
    def menu_items(self) -> List[str]:
        return self.runtime.menu_items if self.runtime else []

    @property
    def side_effects(self) -> List[Dict[str, Any]]:
        return self.runtime.side_effects if self.runtime else []

    def report(self) -> str:
        """Human-readable summary of the widget's state and network traffic."""
        runtime = self.runtime
        errors = [e["message"] for e in self.side_effects if "stderr" in e["topics"]]
        context = {
            "name": (runtime.meta.get("name") if runtime else None) or (
                self.script_path.name if self.script_path else None),
            "output": self.output or "(empty)",
            "has_menu": self.has_menu,
            "menu": [{"index": i, "label": label} for i, label in enumerate(self.menu_items, start=1)],
            "mode": self.facade.mode,
            "request_count": len(self.facade.history),
            "pending": len(self.facade.pending),
            "requests": [
                {
                    "id": ex.request_id,
                    "method": ex.request.method,
                    "url": ex.request.url,
                    "outcome": ex.outcome.value,
                    "status": ex.response.status if ex.response else "",
                }
                for ex in self.facade.history
            ],
            "errors": {"lines": errors} if errors else None,
        }
        renderer = pystache.Renderer(escape=lambda u: u)
        return renderer.render(REPORT_TEMPLATE, context)

    def close(self) -> None:
        if self.runtime is not None:
            self.runtime.close()
        self.facade.cancel()
