import pytest

from aioemu.aioemu_printer import Printer


@pytest.fixture
def printer():
    return Printer()


FORMAT_TEST_CASES = [
    ("str", "hello", "'hello'"),
    ("str_quote", "it's", "'it\\'s'"),
    ("str_newline", "a\nb", "'a\\nb'"),
    ("int", 123, "123"),
    ("float", -1.5, "-1.5"),
    ("float_integral", 2.0, "2"),
    ("bool_true", True, "true"),
    ("bool_false", False, "false"),
    ("none", None, "nil"),
    ("list", [1, "a"], "{1, 'a'}"),
    ("dict", {"name": "x", "n": 1}, "{name = 'x', n = 1}"),
    ("dict_odd_keys", {1: "a", "has space": 2}, "{[1] = 'a', ['has space'] = 2}"),
    ("callable", print, "function"),
]


@pytest.mark.parametrize("case_id, obj, expected", FORMAT_TEST_CASES, ids=[c[0] for c in FORMAT_TEST_CASES])
def test_pformat(printer, case_id, obj, expected):
    assert printer.pformat(obj) == expected


def test_long_strings_are_truncated():
    p = Printer(max_string=5)
    assert p.pformat("abcdefgh") == "'abcde...'"


def test_long_lists_are_truncated():
    p = Printer(max_items=2)
    assert p.pformat([1, 2, 3]) == "{1, 2, ...}"


def test_deep_nesting_is_elided(printer):
    assert printer.pformat([[[[1]]]]) == "{{{{...}}}}"


def test_pformat_args(printer):
    assert printer.pformat_args(["x", 2, None]) == "'x', 2, nil"
