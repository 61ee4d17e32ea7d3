"""
The fixed catalog of host objects a widget script can call.

Each capability is a Python class; methods marked with `@guest_api` become
functions of one Lua global table named after `namespace`. Arguments arrive
already converted to host values (GuestCallable for guest functions) and
return values are converted back by the bridge. Misuse never raises past the
bridge: it is reported and the guest sees nil.
"""

from __future__ import annotations

import collections.abc
import copy
import hashlib
import hmac
import inspect
import os
from abc import ABC
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from aioemu.aioemu_bridge import lua_tostring
from aioemu.aioemu_callbacks import GuestCallable
from aioemu.aioemu_datatypes import HttpRequest, HttpResponse, Outcome
from aioemu.aioemu_serialize import deserialize, serialize
from aioemu.aioemu_storage import KeyValueStore, resolve_path


def guest_api(func=None, *, name: Optional[str] = None):
    """Mark a capability method as callable from guest code.

    `name` overrides the guest-visible name (defaults to the method name).
    """
    def mark(f):
        f._is_guest_api = True
        f._guest_name = name or f.__name__
        return f
    if func is not None:
        return mark(func)
    return mark


class Capability(ABC):
    """The required base class for any Python object exposed to guest code."""

    namespace: str = ""

    def __init__(self):
        self.runtime = None

    def attach(self, runtime) -> None:
        self.runtime = runtime

    def report(self, topic: str, message: str) -> None:
        if self.runtime is not None:
            self.runtime.report(topic, message)

    def guest_functions(self) -> Dict[str, Callable[..., Any]]:
        """Collect @guest_api methods keyed by their guest-visible name."""
        out: Dict[str, Callable[..., Any]] = {}
        for _, member in inspect.getmembers(self):
            if not callable(member):
                continue
            func = getattr(member, "__func__", member)
            if getattr(func, "_is_guest_api", False):
                out[func._guest_name] = member
        return out

    def close(self) -> None:
        pass


# ===================================================================
# ui
# ===================================================================

CHART_HEIGHT = 5
PROGRESS_WIDTH = 20


def _menu_label(item: Any) -> str:
    match item:
        case str():
            return item
        case collections.abc.Mapping():
            for key in ("text", "label", "title", "name"):
                if key in item:
                    return lua_tostring(item[key])
            return lua_tostring(item)
        case list():
            # {icon, label} pairs: the label is the last string element
            strings = [x for x in item if isinstance(x, str)]
            return strings[-1] if strings else ""
    return lua_tostring(item)


def _as_list(value: Any) -> List[Any]:
    match value:
        case list():
            return value
        case collections.abc.Mapping():
            # Sparse guest arrays arrive as dicts with integer keys
            return [value[k] for k in value if isinstance(k, int)]
    return []


class UiCapability(Capability):
    namespace = "ui"

    def __init__(self):
        super().__init__()
        self.output: List[str] = []
        self.title: Optional[str] = None
        self.menu_items: List[str] = []
        self.menu_handler: Any = None
        self.toasts: List[str] = []
        self.expandable = False
        self.progress: Optional[float] = None

    # --- host side ---
    @property
    def rendered(self) -> str:
        return "\n".join(self.output)

    @property
    def has_menu(self) -> bool:
        return bool(self.menu_items)

    def take_menu(self):
        """Return (items, handler) and forget the current menu."""
        items, handler = self.menu_items, self.menu_handler
        self.menu_items, self.menu_handler = [], None
        return items, handler

    def clear(self) -> None:
        self.output = []

    def _render(self, lines: List[str]) -> None:
        self.output = lines
        self.report("stdout", "\n".join(lines))

    # --- guest side ---
    @guest_api
    def show_text(self, text=None):
        # Replaces the whole buffer, never appends.
        self._render([lua_tostring(text) if text is not None else ""])

    @guest_api
    def show_lines(self, lines=None, senders=None):
        senders = _as_list(senders)
        out = []
        for i, line in enumerate(_as_list(lines)):
            sender = senders[i] if i < len(senders) and senders[i] else None
            prefix = f"{lua_tostring(sender)}: " if sender is not None else ""
            out.append(prefix + lua_tostring(line))
        self._render(out)

    @guest_api
    def show_buttons(self, names=None, colors=None):
        buttons = [f"[ {lua_tostring(n)} ]" for n in _as_list(names)]
        self._render(["  ".join(buttons)] if buttons else [])

    @guest_api
    def show_table(self, rows=None, main_column=None, centering=None):
        out = []
        for row in _as_list(rows):
            if isinstance(row, (list, collections.abc.Mapping)):
                out.append(" │ ".join(lua_tostring(c) for c in _as_list(row)))
            else:
                out.append(lua_tostring(row))
        self._render(out)

    @guest_api
    def show_progress_bar(self, text=None, current=0, max_value=100, color=None):
        try:
            percent = (float(current) / float(max_value)) * 100.0
        except (TypeError, ValueError, ZeroDivisionError):
            percent = 0.0
        percent = min(100.0, max(0.0, percent))
        filled = int((percent / 100.0) * PROGRESS_WIDTH)
        bar = "█" * filled + "░" * (PROGRESS_WIDTH - filled)
        self._render([lua_tostring(text) if text is not None else "", f"[{bar}] {percent:.1f}%"])

    @guest_api
    def show_chart(self, points=None, fmt=None, title=None, show_grid=None, *rest):
        values = [p for p in _as_list(points) if isinstance(p, (int, float)) and not isinstance(p, bool)]
        out = [lua_tostring(title)] if title else []
        if values:
            hi, lo = max(values), min(values)
            for row in range(CHART_HEIGHT, -1, -1):
                threshold = lo + ((hi - lo) * row / CHART_HEIGHT)
                out.append("".join("█" if v >= threshold else " " for v in values))
        self._render(out)

    @guest_api
    def show_toast(self, message=None):
        text = lua_tostring(message)
        self.toasts.append(text)
        self.report("toast", text)

    @guest_api
    def set_title(self, title=None):
        self.title = lua_tostring(title) if title is not None else None

    @guest_api
    def set_expandable(self, value=True):
        self.expandable = value is not False

    @guest_api
    def is_folded(self):
        return False

    @guest_api
    def is_expanded(self):
        return True

    @guest_api
    def set_progress(self, value=None):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            self.progress = float(value)
            self.report("ui", f"progress {self.progress * 100:.0f}%")

    @guest_api
    def show_context_menu(self, items=None, handler=None):
        """Record the menu; the choice arrives later through a menu entry point."""
        labels = [_menu_label(item) for item in _as_list(items)]
        if not labels:
            self.report("stderr", "ui.show_context_menu: expected a non-empty list of items")
            return False
        if isinstance(self.menu_handler, GuestCallable):
            self.menu_handler.release()
        self.menu_items = labels
        self.menu_handler = handler if isinstance(handler, (GuestCallable, str)) else None
        if isinstance(handler, GuestCallable):
            handler.keep()
        lines = [f"  {i}. {label}" for i, label in enumerate(labels, start=1)]
        self.report("menu", "\n".join(["Context menu:"] + lines + ["  0. Cancel"]))
        return True


# ===================================================================
# http
# ===================================================================

@dataclass
class RequestArgs:
    callback: Optional[GuestCallable] = None
    headers: Optional[Dict[str, Any]] = None
    tag: Optional[str] = None
    content_type: Optional[str] = None


def split_request_args(rest, *, allow_content_type: bool = False) -> RequestArgs:
    """Sort the trailing arguments of http.get/http.post by what they are.

    The first guest function is the callback wherever it sits, the first
    table is the header map. Without a callback, the last non-empty string
    names the request (`on_network_result_<name>`); for POST a leading string
    containing '/' is the content type.
    """
    args = RequestArgs()
    strings: List[str] = []
    for arg in rest:
        match arg:
            case GuestCallable():
                if args.callback is None:
                    args.callback = arg
            case collections.abc.Mapping():
                if args.headers is None:
                    args.headers = dict(arg)
            case str() if arg:
                strings.append(arg)
    if allow_content_type and strings and "/" in strings[0]:
        args.content_type = strings.pop(0)
    if args.callback is None and strings:
        args.tag = strings[-1]
    return args


def merge_headers(base: Dict[str, str], override: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Request headers win over global ones, names compared case-insensitively."""
    merged = dict(base)
    for name, value in (override or {}).items():
        name = str(name)
        for existing in [h for h in merged if h.lower() == name.lower()]:
            del merged[existing]
        merged[name] = lua_tostring(value)
    return merged


class HttpCapability(Capability):
    namespace = "http"

    def __init__(self, facade):
        super().__init__()
        self.facade = facade
        self.global_headers: Dict[str, str] = {}

    @guest_api
    def set_headers(self, headers=None):
        if headers is None:
            self.global_headers = {}
            return True
        if not isinstance(headers, collections.abc.Mapping):
            self.report("stderr", "http.set_headers: expected a table of headers")
            return False
        self.global_headers = merge_headers({}, headers)
        return True

    @guest_api
    def get(self, url=None, *rest):
        return self._request("GET", url, None, split_request_args(rest))

    @guest_api
    def post(self, url=None, body=None, *rest):
        return self._request("POST", url, body, split_request_args(rest, allow_content_type=True))

    def _request(self, method: str, url, body, args: RequestArgs):
        if not isinstance(url, str) or not url:
            self.report("stderr", f"http.{method.lower()}: url must be a non-empty string")
            if args.callback is not None:
                args.callback.release()
            return None

        headers = dict(self.global_headers)
        payload = None
        if method == "POST":
            payload = self._encode_body(body)
            if args.content_type:
                headers = merge_headers(headers, {"Content-Type": args.content_type})
        headers = merge_headers(headers, args.headers)
        if method == "POST" and not any(h.lower() == "content-type" for h in headers):
            headers["Content-Type"] = "application/json"

        request = HttpRequest(method, url, headers, payload)
        try:
            request_id = self.facade.submit(
                request,
                lambda response: self._deliver(request, response, args),
                owner=self,
            )
        except RuntimeError as e:
            self.report("stderr", f"http.{method.lower()}: cannot schedule request: {e}")
            if args.callback is not None:
                args.callback.release()
            return None

        if args.callback is not None:
            args.callback.keep()
        line = f"{method} {url} (#{request_id}, {self.facade.mode})"
        if headers:
            line += f" headers={headers}"
        if payload is not None:
            line += f" body={payload[:200]}"
        self.report("http", line)
        return None

    def _encode_body(self, body) -> Optional[str]:
        match body:
            case None:
                return None
            case str():
                return body
            case collections.abc.Mapping() | list():
                return serialize(body, pretty=False)
        return lua_tostring(body)

    def _deliver(self, request: HttpRequest, response: HttpResponse, args: RequestArgs) -> None:
        self._report_response(request, response)
        if args.callback is not None:
            try:
                args.callback(response.body, response.status)
            finally:
                args.callback.release()
            return
        runtime = self.runtime
        if runtime is None or runtime.closed:
            return
        suffix = f"_{args.tag}" if args.tag else ""
        if response.failed and runtime.has_entry_point(f"on_network_error{suffix}"):
            runtime.call(f"on_network_error{suffix}", response.error_message or "network error")
            return
        runtime.call(f"on_network_result{suffix}", response.body, response.status)

    def _report_response(self, request: HttpRequest, response: HttpResponse) -> None:
        match response.outcome:
            case Outcome.MOCK_HIT:
                self.report("http", f"mock hit [{response.fixture_key}] {request.url} -> {response.status}")
            case Outcome.MOCK_MISS:
                keys = ", ".join(response.available_keys) or "(none)"
                self.report("http", f"no mock for {request.url} -> 404; available mocks: {keys}")
            case Outcome.REAL_SUCCESS:
                preview = (response.body or "")[:100]
                self.report("http", f"{request.url} -> {response.status}: {preview}")
            case Outcome.MOCK_ERROR:
                self.report("stderr", f"{request.method} {request.url}: {response.error_message}")
            case Outcome.REAL_ERROR:
                kind = response.error_kind.value if response.error_kind else "generic"
                self.report("stderr", f"{request.method} {request.url} failed ({kind}): {response.error_message}")

    def close(self) -> None:
        self.facade.cancel(owner=self)


# ===================================================================
# json
# ===================================================================

class JsonCapability(Capability):
    namespace = "json"

    @guest_api
    def decode(self, text=None):
        if text is None or text == "":
            return None
        if isinstance(text, (collections.abc.Mapping, list)):
            return text
        if not isinstance(text, str):
            return None
        try:
            return deserialize(text, fmt="json")
        except ValueError as e:
            self.report("stderr", f"json.decode: {e}")
            return None

    @guest_api
    def encode(self, value=None):
        try:
            return serialize(value, pretty=False)
        except (TypeError, ValueError) as e:
            self.report("stderr", f"json.encode: {e}")
            return "{}"


# ===================================================================
# storage / files
# ===================================================================

def _storage_key(key: Any) -> Optional[str]:
    match key:
        case bool() | None:
            return None
        case str():
            return key
        case int() | float():
            return lua_tostring(key)
    return None


class StorageCapability(Capability):
    namespace = "storage"

    def __init__(self, store: KeyValueStore):
        super().__init__()
        self.store = store

    @guest_api
    def get(self, key=None):
        k = _storage_key(key)
        return self.store.get(k) if k is not None else None

    @guest_api
    def set(self, key=None, value=None):
        k = _storage_key(key)
        if k is None:
            self.report("stderr", "storage.set: key must be a string")
            return False
        try:
            self.store.set(k, value)
        except (TypeError, ValueError) as e:
            self.report("stderr", f"storage.set({k!r}): value is not storable: {e}")
            return False
        self.report("storage", f"set {k}")
        return True

    @guest_api
    def put(self, key=None, value=None):
        return self.set(key, value)

    @guest_api
    def delete(self, key=None):
        k = _storage_key(key)
        if k is None:
            return False
        removed = self.store.delete(k)
        if removed:
            self.report("storage", f"delete {k}")
        return removed

    @guest_api
    def has(self, key=None):
        k = _storage_key(key)
        return k is not None and self.store.has(k)

    @guest_api
    def keys(self):
        return self.store.keys()

    @guest_api
    def clear(self):
        self.store.clear()
        self.report("storage", "cleared")
        return True


class FilesCapability(Capability):
    namespace = "files"

    def __init__(self, base_dir: Optional[str] = None):
        super().__init__()
        self.base_dir = base_dir

    @guest_api
    def read(self, path=None):
        if not isinstance(path, str) or not path:
            return None
        full = resolve_path(path, self.base_dir)
        try:
            with open(full, "r", encoding="utf-8") as f:
                data = f.read()
        except OSError as e:
            self.report("files", f"read({path!r}) failed: {e}")
            return None
        self.report("files", f"read({path!r}) - {len(data)} bytes")
        return data

    @guest_api
    def write(self, path=None, data=None, append=False):
        if not isinstance(path, str) or not path or data is None:
            return False
        text = data if isinstance(data, str) else lua_tostring(data)
        full = resolve_path(path, self.base_dir)
        try:
            with open(full, "a" if append else "w", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            self.report("files", f"write({path!r}) failed: {e}")
            return False
        self.report("files", f"write({path!r}) - {len(text)} bytes")
        return True

    @guest_api
    def exists(self, path=None):
        if not isinstance(path, str) or not path:
            return False
        return os.path.exists(resolve_path(path, self.base_dir))


# ===================================================================
# system / android
# ===================================================================

class SystemCapability(Capability):
    namespace = "system"

    def __init__(self):
        super().__init__()
        self.opened_urls: List[str] = []
        self.toasts: List[str] = []
        self.clipboard_text = ""

    @guest_api
    def open_browser(self, url=None):
        if not isinstance(url, str):
            return False
        self.opened_urls.append(url)
        self.report("system", f"Would open browser: {url}")
        return True

    @guest_api
    def toast(self, message=None):
        text = lua_tostring(message)
        self.toasts.append(text)
        self.report("toast", text)

    @guest_api
    def copy_to_clipboard(self, text=None):
        self.clipboard_text = lua_tostring(text) if text is not None else ""
        self.report("system", f"Copied {len(self.clipboard_text)} chars to clipboard")
        return True

    @guest_api
    def clipboard(self):
        return self.clipboard_text

    @guest_api
    def hmac_sha256(self, key=None, data=None):
        if not isinstance(key, str) or data is None:
            return None
        message = data if isinstance(data, str) else lua_tostring(data)
        return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


DEFAULT_ANDROID_DATA: Dict[str, Any] = {
    "wifi": {
        "enabled": True,
        "connectedSSID": "MyNetwork",
        "networks": [
            {"ssid": "MyNetwork", "bssid": "00:11:22:33:44:55", "rssi": -45, "frequency": 5180, "capabilities": "WPA2-PSK"},
            {"ssid": "NeighborWiFi", "bssid": "AA:BB:CC:DD:EE:FF", "rssi": -67, "frequency": 2437, "capabilities": "WPA2-PSK"},
            {"ssid": "CoffeeShop_Free", "bssid": "11:22:33:44:55:66", "rssi": -72, "frequency": 2412, "capabilities": "Open"},
        ],
    },
    "location": {"latitude": 40.7128, "longitude": -74.0060, "accuracy": 15, "provider": "gps", "permissionGranted": True},
    "battery": {"level": 75, "isCharging": False, "health": "good", "temperature": 28.5, "voltage": 3.85},
    "device": {
        "model": "Pixel 7 Pro", "manufacturer": "Google", "osVersion": "14", "sdkVersion": 34,
        "screenWidth": 1440, "screenHeight": 3120, "density": 3.5,
    },
    "sensors": {
        "accelerometer": {"x": 0.1, "y": 0.2, "z": 9.8},
        "gyroscope": {"x": 0.0, "y": 0.0, "z": 0.0},
        "magnetometer": {"x": 25.3, "y": -15.7, "z": 42.1},
        "light": 450,
        "proximity": 5.0,
    },
    "brightness": 80,
}


class AndroidCapability(Capability):
    """Device-info stubs backed by editable mock data."""

    namespace = "android"

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.data = copy.deepcopy(DEFAULT_ANDROID_DATA)
        for category, values in (data or {}).items():
            self.set_mock_data(category, values)

    def set_mock_data(self, category: str, values: Any) -> None:
        current = self.data.get(category)
        if isinstance(current, dict) and isinstance(values, collections.abc.Mapping):
            current.update(values)
        else:
            self.data[category] = values

    @guest_api(name="getBattery")
    def get_battery(self):
        return self.data["battery"]

    @guest_api(name="getBatteryLevel")
    def get_battery_level(self):
        return self.data["battery"]["level"]

    @guest_api(name="isCharging")
    def is_charging(self):
        return self.data["battery"]["isCharging"]

    @guest_api(name="getWifiList")
    def get_wifi_list(self):
        return self.data["wifi"]["networks"]

    @guest_api(name="getWifiSignal")
    def get_wifi_signal(self):
        networks = self.data["wifi"]["networks"]
        return networks[0]["rssi"] if networks else -100

    @guest_api(name="getConnectedSSID")
    def get_connected_ssid(self):
        return self.data["wifi"]["connectedSSID"]

    @guest_api(name="isWifiEnabled")
    def is_wifi_enabled(self):
        return self.data["wifi"]["enabled"]

    @guest_api(name="getLocation")
    def get_location(self):
        return self.data["location"]

    @guest_api(name="getDeviceInfo")
    def get_device_info(self):
        return self.data["device"]

    @guest_api(name="getDeviceModel")
    def get_device_model(self):
        return self.data["device"]["model"]

    @guest_api(name="getOSVersion")
    def get_os_version(self):
        return self.data["device"]["osVersion"]

    @guest_api(name="getScreenSize")
    def get_screen_size(self):
        device = self.data["device"]
        return {"width": device["screenWidth"], "height": device["screenHeight"], "density": device["density"]}

    @guest_api(name="getSensorData")
    def get_sensor_data(self, sensor=None):
        if sensor is None:
            return self.data["sensors"]
        return self.data["sensors"].get(sensor)

    @guest_api(name="getScreenBrightness")
    def get_screen_brightness(self):
        return self.data["brightness"]

    @guest_api(name="setScreenBrightness")
    def set_screen_brightness(self, level=None):
        if not isinstance(level, (int, float)) or isinstance(level, bool):
            return False
        self.data["brightness"] = min(100, max(0, level))
        return True

    @guest_api(name="vibrate")
    def vibrate(self, duration=None):
        self.report("system", f"Vibrating for {lua_tostring(duration)}ms")

    @guest_api(name="toast")
    def toast(self, message=None):
        self.report("toast", lua_tostring(message))
