"""
A pretty-printer for values crossing the host/guest boundary.

Output reads like Lua source so diagnostics show what the guest passed.
"""
import collections.abc


class Printer:
    """Formats host-side values as short Lua-literal strings."""

    def __init__(self, max_string=60, max_items=8):
        self._max_string = max_string
        self._max_items = max_items
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def pformat_args(self, args):
        return ", ".join(self.pformat(a) for a in args)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        if callable(obj): return self._pformat_callable
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            dict: self._pformat_dict,
            list: self._pformat_list,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        if obj.is_integer():
            return str(int(obj))
        return repr(obj)

    def _pformat_str(self, obj, level):
        text = obj
        if len(text) > self._max_string:
            text = text[:self._max_string] + "..."
        text = text.replace("\\", "\\\\").replace("\n", "\\n").replace("'", "\\'")
        return f"'{text}'"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'nil'

    def _pformat_callable(self, obj, level):
        return 'function'

    def _pformat_list(self, obj, level):
        if level > 2:
            return "{...}"
        items = [self.pformat(x, level + 1) for x in list(obj)[:self._max_items]]
        if len(obj) > self._max_items:
            items.append("...")
        return "{" + ", ".join(items) + "}"

    def _pformat_dict(self, obj, level):
        if level > 2:
            return "{...}"
        parts = []
        for i, (k, v) in enumerate(obj.items()):
            if i >= self._max_items:
                parts.append("...")
                break
            if isinstance(k, str) and k.isidentifier():
                key = k
            else:
                key = f"[{self.pformat(k, level + 1)}]"
            parts.append(f"{key} = {self.pformat(v, level + 1)}")
        return "{" + ", ".join(parts) + "}"
