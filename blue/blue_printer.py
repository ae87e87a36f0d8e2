"""
Renders Blue values as text (`inspect()`, `str()`, string interpolation).
"""
import math

from blue.blue_datatypes import (
    BigFloat, BigInteger, Boolean, Builtin, BuiltinObj, Bytes, ErrorValue, Float, Function,
    Integer, ListValue, MapValue, Module, Null, Regex, ReturnValue, SetValue, String,
    StructValue, UInteger, _LoopSignal,
)
from blue.blue_process import Process, Subscriber


class Printer:
    """Formats Blue values into their display strings."""

    def __init__(self):
        self._handlers = self._create_handlers()
        self._active: set = set()

    def pformat(self, obj) -> str:
        """Public entry point to format a value."""
        handler = self._handlers.get(type(obj))
        if handler is None:
            return repr(obj)
        return handler(obj)

    def _create_handlers(self):
        return {
            Integer: self._pformat_integer,
            BigInteger: self._pformat_integer,
            UInteger: self._pformat_integer,
            Float: self._pformat_float,
            BigFloat: lambda o: str(o.value),
            Boolean: lambda o: "true" if o.value else "false",
            Null: lambda o: "null",
            String: lambda o: o.value,
            Bytes: lambda o: repr(o.value),
            Regex: lambda o: "r/" + o.pattern.replace("/", "\\/") + "/",
            ListValue: self._pformat_list,
            MapValue: self._pformat_map,
            SetValue: self._pformat_set,
            StructValue: self._pformat_struct,
            Function: lambda o: o.to_string(),
            Builtin: lambda o: "builtin function",
            BuiltinObj: lambda o: self.pformat(o.value),
            Module: lambda o: f"Module '{o.name}'",
            ErrorValue: lambda o: f"EvaluatorError: {o.text}",
            ReturnValue: lambda o: self.pformat(o.value),
            _LoopSignal: lambda o: o.type_tag.value.lower(),
            Process: lambda o: f"Process{{id: {o.id}, node: {o.node_name}}}",
            Subscriber: self._pformat_subscriber,
        }

    def _pformat_integer(self, obj) -> str:
        return str(obj.value)

    def _pformat_float(self, obj) -> str:
        value = obj.value
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        return "%f" % value

    def _guarded(self, obj, placeholder: str, render) -> str:
        # Containers may hold themselves; render a placeholder on re-entry.
        key = id(obj)
        if key in self._active:
            return placeholder
        self._active.add(key)
        try:
            return render()
        finally:
            self._active.discard(key)

    def _pformat_list(self, obj: ListValue) -> str:
        return self._guarded(obj, "[...]", lambda: "[" + ", ".join(self.pformat(e) for e in obj.elements) + "]")

    def _pformat_map(self, obj: MapValue) -> str:
        def render():
            pairs = (f"{self.pformat(k.value)}: {self.pformat(v)}" for k, v in obj.pairs.items())
            return "{" + ", ".join(pairs) + "}"
        return self._guarded(obj, "{...}", render)

    def _pformat_set(self, obj: SetValue) -> str:
        return self._guarded(obj, "{...}", lambda: "{" + ", ".join(self.pformat(k.value) for k in obj.elements) + "}")

    def _pformat_struct(self, obj: StructValue) -> str:
        def render():
            return "@{" + ", ".join(f"{k}: {self.pformat(v)}" for k, v in obj.fields.items()) + "}"
        return self._guarded(obj, "@{...}", render)

    def _pformat_subscriber(self, obj: Subscriber) -> str:
        topics = ", ".join(sorted(obj.topics))
        return f"Subscriber{{id: {obj.id}, topics: [{topics}]}}"

    def help_text(self, obj) -> str:
        """Text shown by `help(value)`."""
        match obj:
            case Builtin() | BuiltinObj():
                return obj.help or f"{obj.type_tag.value}\n"
            case Function():
                return obj.to_string()
            case Module():
                names = ", ".join(sorted(n for n in obj.env.store if not n.startswith("_")))
                return f"Module '{obj.name}'\n    Names: {names}\n"
            case _:
                return obj.type_tag.value
