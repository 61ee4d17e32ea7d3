import hashlib
import hmac

import pytest

from aioemu.aioemu_callbacks import CallbackRegistry, GuestCallable
from aioemu.aioemu_capabilities import (
    AndroidCapability,
    JsonCapability,
    UiCapability,
    guest_api,
    merge_headers,
    split_request_args,
)
from aioemu.aioemu_runtime import GuestRuntime
from aioemu.aioemu_storage import KeyValueStore


def run(src: str, entry: str = "on_resume", **kwargs):
    rt = GuestRuntime.load(src, **kwargs)
    res = rt.call(entry)
    return rt, res


def assert_ok(res, expected=None):
    assert res.status == 'success', f"Expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected, f"Expected {expected!r}, got {res.value!r}"


def messages(rt, topic):
    return [e["message"] for e in rt.side_effects if topic in e["topics"]]


# --- framework ---

def test_guest_api_collects_marked_methods_under_guest_names():
    cap = AndroidCapability()
    names = cap.guest_functions()
    assert "getBatteryLevel" in names
    assert "get_battery_level" not in names
    assert "set_mock_data" not in names


def test_guest_api_decorator_without_arguments_keeps_name():
    @guest_api
    def ping():
        return "pong"
    assert ping._guest_name == "ping"
    assert ping() == "pong"


# --- ui ---

def test_show_text_replaces_output_buffer():
    src = """
    function on_resume()
      ui.show_text("first")
      ui.show_text("second")
    end
    """
    rt, res = run(src)
    assert_ok(res)
    assert rt.output == "second"
    assert messages(rt, "stdout") == ["first", "second"]


def test_show_text_with_colon_call_and_number():
    rt, res = run("function on_resume() ui:show_text(42) end")
    assert_ok(res)
    assert rt.output == "42"


def test_show_lines_with_senders():
    src = 'function on_resume() ui.show_lines({"up", "down"}, {"eth0", "eth1"}) end'
    rt, _ = run(src)
    assert rt.output == "eth0: up\neth1: down"


def test_show_table_and_buttons():
    rt, _ = run('function on_resume() ui.show_table({{"a", 1}, {"b", 2}}) end')
    assert rt.output == "a │ 1\nb │ 2"
    rt, _ = run('function on_resume() ui.show_buttons({"Reboot", "Refresh"}) end')
    assert rt.output == "[ Reboot ]  [ Refresh ]"


def test_show_progress_bar_is_deterministic():
    rt, _ = run('function on_resume() ui.show_progress_bar("CPU", 25, 100) end')
    lines = rt.output.splitlines()
    assert lines[0] == "CPU"
    assert lines[1] == "[" + "█" * 5 + "░" * 15 + "] 25.0%"


def test_show_progress_bar_with_zero_max_is_zero():
    rt, res = run('function on_resume() ui.show_progress_bar("x", 5, 0) end')
    assert_ok(res)
    assert rt.output.endswith("0.0%")


def test_show_chart_renders_fixed_height():
    rt, _ = run('function on_resume() ui.show_chart({1, 5, 3}, nil, "Load") end')
    lines = rt.output.splitlines()
    assert lines[0] == "Load"
    assert len(lines) == 1 + 6
    assert lines[-1] == "███"


def test_context_menu_records_labels_and_handler():
    src = """
    function on_resume()
      ui.show_context_menu({{"fa:power", "Reboot"}, "Refresh", {text = "Settings"}}, function(i) end)
    end
    """
    rt, res = run(src)
    assert_ok(res)
    assert rt.menu_items == ["Reboot", "Refresh", "Settings"]
    assert isinstance(rt.ui.menu_handler, GuestCallable)
    assert "Context menu:" in messages(rt, "menu")[0]


def test_context_menu_with_invalid_handler_keeps_items_only():
    rt, res = run('function on_resume() ui.show_context_menu({"a", "b"}, 42) end')
    assert_ok(res)
    assert rt.menu_items == ["a", "b"]
    assert rt.ui.menu_handler is None


def test_context_menu_without_items_returns_false():
    rt = GuestRuntime.load("function on_resume() return ui.show_context_menu({}) end")
    res = rt.call("on_resume")
    assert_ok(res, False)
    assert not rt.has_menu


def test_replacing_menu_releases_previous_handler():
    src = """
    function on_resume()
      ui.show_context_menu({"a"}, function() end)
      ui.show_context_menu({"b"}, function() end)
    end
    """
    rt, _ = run(src)
    assert rt.registry.live == 1
    assert rt.menu_items == ["b"]


def test_ui_host_side_take_menu_clears_state():
    ui = UiCapability()
    ui.menu_items, ui.menu_handler = ["x"], "on_pick"
    assert ui.take_menu() == (["x"], "on_pick")
    assert not ui.has_menu


def test_fold_state_and_title():
    src = """
    function on_resume()
      ui.set_title("My widget")
      ui.set_expandable(true)
      return ui.is_folded(), ui.is_expanded()
    end
    """
    rt, res = run(src)
    assert_ok(res, [False, True])
    assert rt.ui.title == "My widget"
    assert rt.ui.expandable is True


# --- json ---

def test_json_decode_object_and_array():
    src = """
    function on_resume()
      local obj = json.decode('{"a": [1, 2, 3], "b": {"c": "d"}}')
      return #obj.a, obj.b.c
    end
    """
    _, res = run(src)
    assert_ok(res, [3, "d"])


@pytest.mark.parametrize("text", ["", "{not json", None])
def test_json_decode_failure_is_nil(text):
    cap = JsonCapability()
    assert cap.decode(text) is None


def test_json_decode_in_guest_never_raises():
    rt, res = run('function on_resume() return json.decode("{oops") == nil end')
    assert_ok(res, True)
    assert any("json.decode" in m for m in messages(rt, "stderr"))


def test_json_encode_uses_compact_form():
    _, res = run('function on_resume() return json.encode({1, 2, {x = true}}) end')
    assert_ok(res, '[1,2,{"x":true}]')


def test_json_encode_empty_array_stays_array():
    cap = JsonCapability()
    assert cap.encode([]) == "[]"
    assert cap.encode({}) == "{}"


# --- storage ---

def test_storage_set_get_and_put_alias(tmp_path):
    store = KeyValueStore(tmp_path / "data.json")
    src = """
    function on_resume()
      storage.set("count", 3)
      storage:put("config", {host = "10.0.0.1", ports = {80, 443}})
      return storage.get("count"), storage.get("config").ports[2], storage.has("config")
    end
    """
    rt, res = run(src, store=store)
    assert_ok(res, [3, 443, True])
    assert store.get("config") == {"host": "10.0.0.1", "ports": [80, 443]}
    assert "set count" in messages(rt, "storage")


def test_storage_delete_keys_and_clear():
    store = KeyValueStore(None)
    store.set("a", 1)
    store.set("b", 2)
    src = """
    function on_resume()
      local removed = storage.delete("a")
      local missing = storage.delete("zzz")
      local keys = storage.keys()
      storage.clear()
      return removed, missing, #keys, storage.get("b")
    end
    """
    _, res = run(src, store=store)
    assert_ok(res, [True, False, 1, None])
    assert len(store) == 0


def test_storage_set_with_invalid_key_returns_false():
    rt, res = run("function on_resume() return storage.set({}, 1) end")
    assert_ok(res, False)
    assert messages(rt, "stderr")


# --- files ---

def test_files_read_write_relative_to_script_dir(tmp_path):
    src = """
    function on_resume()
      files.write("notes.txt", "hello")
      files.write("notes.txt", " world", true)
      return files.read("notes.txt"), files.exists("notes.txt"), files.exists("nope.txt")
    end
    """
    _, res = run(src, source_dir=str(tmp_path))
    assert_ok(res, ["hello world", True, False])
    assert (tmp_path / "notes.txt").read_text() == "hello world"


def test_files_read_missing_is_nil(tmp_path):
    rt, res = run('function on_resume() return files.read("missing.txt") end', source_dir=str(tmp_path))
    assert_ok(res)
    assert res.value is None
    assert any("failed" in m for m in messages(rt, "files"))


# --- system / android ---

def test_system_browser_toast_and_clipboard():
    src = """
    function on_resume()
      system.open_browser("https://example.com")
      system.toast("saved")
      system.copy_to_clipboard("abc")
      return system.clipboard()
    end
    """
    rt, res = run(src)
    assert_ok(res, "abc")
    assert rt.system.opened_urls == ["https://example.com"]
    assert messages(rt, "toast") == ["saved"]


def test_system_hmac_sha256():
    _, res = run('function on_resume() return system.hmac_sha256("key", "payload") end')
    expected = hmac.new(b"key", b"payload", hashlib.sha256).hexdigest()
    assert_ok(res, expected)


def test_android_stubs_use_mock_data():
    src = """
    function on_resume()
      return android.getBatteryLevel(), android.getDeviceModel(), #android.getWifiList()
    end
    """
    _, res = run(src, android_data={"battery": {"level": 12}})
    assert_ok(res, [12, "Pixel 7 Pro", 3])


def test_android_set_brightness_clamps():
    cap = AndroidCapability()
    assert cap.set_screen_brightness(150) is True
    assert cap.get_screen_brightness() == 100
    assert cap.set_screen_brightness("bright") is False


# --- http argument handling ---

def test_split_request_args_finds_callback_anywhere():
    registry = CallbackRegistry()
    cb = GuestCallable(registry.retain(print), registry)
    args = split_request_args(({"X-Key": "1"}, cb))
    assert args.callback is cb
    assert args.headers == {"X-Key": "1"}
    assert args.tag is None


def test_split_request_args_tag_and_content_type():
    args = split_request_args(("text/plain", "upload"), allow_content_type=True)
    assert args.content_type == "text/plain"
    assert args.tag == "upload"
    assert split_request_args(("text/plain",)).tag == "text/plain"


def test_merge_headers_overrides_case_insensitively():
    merged = merge_headers({"Authorization": "Basic a", "Accept": "*/*"}, {"authorization": "Bearer b"})
    assert merged == {"Accept": "*/*", "authorization": "Bearer b"}


def test_guest_functions_handed_to_capabilities_are_not_retained():
    src = """
    function on_resume()
      for i = 1, 100 do
        json.encode({f = function() end})
        storage.set("k", function() end)
        ui.show_text(function() end)
      end
    end
    """
    rt, res = run(src)
    assert_ok(res)
    assert rt.registry.live == 0


def test_show_text_with_invalid_utf8_byte():
    rt, res = run('function on_resume() ui.show_text("a" .. string.char(255) .. "b") end')
    assert_ok(res)
    assert rt.output == "a\ufffdb"
