import pytest

from aioemu.aioemu_datatypes import GuestLoadError
from aioemu.aioemu_runtime import GuestRuntime, parse_metadata


def assert_ok(res, expected=None):
    assert res.status == 'success', f"Expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected, f"Expected {expected!r}, got {res.value!r}"


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"Expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


COUNTER_SRC = """
counter = 0
function on_click()
  counter = counter + 1
  return counter
end
"""


def test_two_loads_do_not_share_globals():
    a = GuestRuntime.load(COUNTER_SRC)
    b = GuestRuntime.load(COUNTER_SRC)
    assert_ok(a.call("on_click"), 1)
    assert_ok(b.call("on_click"), 1)
    assert a.get_global("counter") == 1
    assert b.get_global("counter") == 1


def test_syntax_error_raises_load_error_with_line_and_context():
    src = "function on_resume()\n  ui.show_text('x'\nend\n"
    with pytest.raises(GuestLoadError) as info:
        GuestRuntime.load(src)
    err = info.value
    assert err.kind == "syntax"
    assert err.line == 3
    assert "> 3 | end" in err.context
    assert err.format_error().startswith("SyntaxError: ")


def test_top_level_runtime_error_raises_load_error():
    src = "local x = nil\nlocal y = x.field\n"
    with pytest.raises(GuestLoadError) as info:
        GuestRuntime.load(src)
    assert info.value.kind == "runtime"
    assert info.value.line == 2
    assert info.value.format_error().startswith("LoadError: ")


def test_missing_entry_point_is_not_found():
    rt = GuestRuntime.load("x = 1")
    res = rt.call("on_click")
    assert res.status == 'not-found'
    assert not res.found
    assert res.side_effects == []


def test_non_function_global_is_type_error():
    rt = GuestRuntime.load("on_click = 42")
    res = rt.call("on_click")
    assert_error(res, "is a number, not a function")
    assert res.format_error() == "Error in on_click: 'on_click' is a number, not a function"


def test_guest_runtime_error_is_contained_and_reported():
    rt = GuestRuntime.load("function on_click() error('kaboom') end")
    res = rt.call("on_click")
    assert_error(res, "kaboom")
    assert "line 1:" in res.error_message
    assert res.side_effects[0]["topics"] == ["stderr"]
    assert res.side_effects[0]["message"].startswith("Error in on_click()")
    # still usable afterwards
    assert rt.call("on_click").status == 'error'


def test_entry_point_receives_host_arguments():
    rt = GuestRuntime.load("function on_menu(i, extra) return math.type(i), extra.name end")
    assert_ok(rt.call("on_menu", 2, {"name": "x"}), ["integer", "x"])


def test_call_result_carries_only_its_own_effects():
    rt = GuestRuntime.load("""
    function on_resume() ui.show_text("resume") end
    function on_click() ui.show_text("click") end
    """)
    rt.call("on_resume")
    res = rt.call("on_click")
    assert [e["message"] for e in res.side_effects] == ["click"]
    assert len(rt.side_effects) == 2


def test_print_goes_to_stdout_effects():
    rt = GuestRuntime.load('print("hello", 1, nil, true)')
    assert rt.side_effects == [{"topics": ["stdout"], "message": "hello\t1\tnil\ttrue"}]


def test_python_builtins_are_not_reachable():
    rt = GuestRuntime.load("function on_click() return python == nil end")
    assert_ok(rt.call("on_click"), True)


def test_host_functions_are_opaque_to_the_guest():
    rt = GuestRuntime.load("function on_click() return print.__globals__ end")
    res = rt.call("on_click")
    assert res.status == 'error'


def test_metadata_header_is_parsed():
    src = '-- name = "MikroTik Monitor"\n-- type = "widget"\n-- author=someone\n\nfunction on_resume() end\n-- late = "x"\n'
    assert parse_metadata(src) == {"name": "MikroTik Monitor", "type": "widget", "author": "someone"}
    rt = GuestRuntime.load(src)
    assert rt.meta["name"] == "MikroTik Monitor"


def test_menu_selection_goes_to_recorded_handler():
    rt = GuestRuntime.load("""
    function on_resume()
      ui.show_context_menu({"a", "b", "c"}, function(idx) picked = idx end)
    end
    """)
    rt.call("on_resume")
    res = rt.deliver_menu_selection(2)
    assert_ok(res)
    assert rt.get_global("picked") == 2
    assert not rt.has_menu
    assert rt.registry.live == 0


def test_menu_selection_to_named_entry_point():
    rt = GuestRuntime.load("""
    function on_resume() ui.show_context_menu({"a", "b"}, "handle_menu") end
    function handle_menu(idx) picked = idx end
    """)
    rt.call("on_resume")
    assert_ok(rt.deliver_menu_selection(1))
    assert rt.get_global("picked") == 1


def test_menu_selection_falls_back_to_menu_entry_points():
    rt = GuestRuntime.load("""
    function on_resume() ui.show_context_menu({"a", "b"}) end
    function on_menu_select(idx) picked = idx end
    function on_menu(idx) picked = -1 end
    """)
    rt.call("on_resume")
    res = rt.deliver_menu_selection(2)
    assert res.entry_point == "on_menu_select"
    assert rt.get_global("picked") == 2


def test_menu_selection_without_any_handler_is_not_found():
    rt = GuestRuntime.load('function on_resume() ui.show_context_menu({"a"}) end')
    rt.call("on_resume")
    res = rt.deliver_menu_selection(1)
    assert res.status == 'not-found'
    assert any("no handler" in e["message"] for e in res.side_effects)


def test_closed_runtime_refuses_calls():
    with GuestRuntime.load(COUNTER_SRC) as rt:
        assert_ok(rt.call("on_click"), 1)
    assert rt.closed
    assert_error(rt.call("on_click"), "closed")


def test_non_ascii_strings_cross_both_ways():
    rt = GuestRuntime.load('greeting = "héllo"\nfunction on_click(name) return name .. "!", #name end')
    assert rt.get_global("greeting") == "héllo"
    assert_ok(rt.call("on_click", "café"), ["café!", 5])


def test_debug_output_is_gated_by_environment(monkeypatch, capsys):
    rt = GuestRuntime.load("x = 1")
    rt.call("on_click")
    assert "[DBG]" not in capsys.readouterr().err
    monkeypatch.setenv("AIOEMU_DEBUG", "1")
    rt.call("on_click")
    assert "[DBG] no entry point on_click" in capsys.readouterr().err
