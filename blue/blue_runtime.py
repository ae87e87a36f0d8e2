"""
The standard library of builtins, the builtin registry, and the script runner.
"""
import asyncio
import functools
import inspect
import os
import re
import sys
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Literal, Optional

import pystache

from blue import blue_http
from blue.blue_datatypes import (
    NULL,
    ArityError, BigFloat, BigInteger, BlueAssertionError, BlueArithmeticError, BlueError,
    BlueObject, BlueTypeError, Boolean, Builtin, Bytes, Env, ErrorValue, Float, HashKey, Integer,
    ListValue, MapValue, Null, RangeError, Regex, SetValue, String, StructValue, UInteger,
    HostError, UserError, is_truthy, make_map, native_bool,
)
from blue.blue_host import AsyncioScheduler, FileSourceLoader, SystemClock
from blue.blue_interpreter import Evaluator
from blue.blue_operators import compare_values, make_integer, make_unsigned
from blue.blue_parser import ParseError, ParseErrors, parse
from blue.blue_process import BROKER, KV_STORE, PROCESS_TABLE, Process, Subscriber, current_process
from blue.blue_serialize import from_json, from_python, from_yaml, is_valid_json, to_json, to_python, to_yaml
from blue.blue_token import Token, TokenType

RECURSION_LIMIT = 6000

_INTEGERS = (Integer, UInteger, BigInteger)
_NUMBERS = (Integer, UInteger, BigInteger, Float, BigFloat)


def help_string(explanation: str, signature: str, errors: str = "", example: str = "") -> str:
    return (f"{explanation}\n"
            f"    Signature:  {signature}\n"
            f"    Error(s):   {errors}\n"
            f"    Example(s): {example}\n")


def blue_builtin(explanation: str, signature: str, errors: str = "", example: str = "", *,
                 mutates: bool = False, named: bool = False):
    """Attaches help text and call flags to a StdLib method."""
    def decorate(func):
        func._blue_help = help_string(explanation, signature, errors, example)
        func._blue_mutates = mutates
        func._blue_named = named
        return func
    return decorate


# --- argument helpers (module level so StdLib only exposes builtins) ---

def _given(value) -> bool:
    return value is not None and not isinstance(value, Null)


def _expect(name: str, index: int, value: BlueObject, *types, label: Optional[str] = None):
    if not isinstance(value, types):
        expected = label or " or ".join(t.type_tag.value for t in types)
        raise BlueTypeError(f"`{name}` expects argument {index} to be {expected}. got={value.type_tag.value}")


def _int_arg(name: str, index: int, value: BlueObject) -> int:
    _expect(name, index, value, *_INTEGERS, label="INTEGER")
    return value.value


def _ms_arg(name: str, index: int, value: BlueObject) -> float:
    _expect(name, index, value, Integer, UInteger, Float, label="INTEGER or FLOAT")
    return float(value.value)


def _topic_list(name: str, index: int, value: BlueObject) -> List[str]:
    if isinstance(value, String):
        return [value.value]
    _expect(name, index, value, ListValue, label="STRING or LIST")
    topics = []
    for t in value.elements:
        _expect(name, index, t, String, label="LIST of STRING")
        topics.append(t.value)
    return topics


def _clone(value: BlueObject) -> BlueObject:
    match value:
        case ListValue():
            return ListValue([_clone(e) for e in value.elements])
        case MapValue():
            result = MapValue()
            for k, v in value.items():
                result.set(k, _clone(v))
            return result
        case SetValue():
            return SetValue(dict(value.elements))
        case StructValue():
            return StructValue({k: _clone(v) for k, v in value.fields.items()})
        case _:
            return value


_FORMAT_VERB = re.compile(r"%([-+ 0#]*)(\d*)(?:\.(\d+))?([bcdoxXeEfgGsv%])")


def _go_format(template: str, value: BlueObject) -> str:
    def render(m):
        flags, width, precision, verb = m.groups()
        if verb == "%":
            return "%"
        if verb in "sv" or not isinstance(value, _NUMBERS):
            text = value.inspect()
            return format(text, f"{'<' if '-' in flags else '>'}{width}")
        spec = ""
        if "-" in flags:
            spec += "<"
        if "+" in flags:
            spec += "+"
        elif " " in flags:
            spec += " "
        if "#" in flags:
            spec += "#"
        if "0" in flags and "-" not in flags:
            spec += "0"
        spec += width
        if precision:
            spec += "." + precision
        number = value.value
        if verb in "bcdoxX" and not isinstance(number, int):
            number = int(number)
        return format(number, spec + verb)
    return _FORMAT_VERB.sub(render, template)


def _checked(name: str, func: Callable) -> Callable:
    """Wraps a builtin with the arity and named-argument checks."""
    sig = inspect.signature(func)
    positional = [p for p in sig.parameters.values()
                  if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
    variadic = any(p.kind == p.VAR_POSITIONAL for p in sig.parameters.values())
    low = sum(1 for p in positional if p.default is p.empty)
    high = None if variadic else len(positional)
    if high is None:
        want = f"at least {low}"
    elif low == high:
        want = str(low)
    else:
        want = f"{low}..{high}"
    names = {p.name for p in positional}

    @functools.wraps(func)
    def call(*args, **named):
        if len(args) < low or (high is not None and len(args) > high):
            raise ArityError(f"`{name}` wrong number of args. got={len(args)}, want={want}")
        for key in named:
            if key not in names:
                raise ArityError(f"`{name}` got an unexpected named argument '{key}'")
        return func(*args, **named)
    return call


class StdLib:
    """Python implementations of the Blue builtins. Every `_name` method becomes builtin `name`."""

    def __init__(self, evaluator: Evaluator, echo: bool = False, allow_exec: bool = False):
        self.evaluator = evaluator
        self.echo = echo
        self.allow_exec = allow_exec

    # --- Introspection ---
    @blue_builtin("`help` returns the help text of the given value", "help(arg: any) -> str",
                  "InvalidArgCount", "help(len)")
    def _help(self, value):
        return String(self.evaluator.printer.help_text(value))

    @blue_builtin("`type` returns the type name of the given value", "type(arg: any) -> str",
                  "InvalidArgCount", "type(1) => 'INTEGER'")
    def _type(self, value):
        return String(value.type_tag.value)

    @blue_builtin("`str` returns the display string of the given value", "str(arg: any) -> str",
                  "InvalidArgCount", "str([1, 2]) => '[1, 2]'")
    def _str(self, value):
        return value if isinstance(value, String) else String(value.inspect())

    # --- Collections ---
    @blue_builtin("`new` returns a cloned MAP, LIST, SET or STRUCT", "new(arg: map|list|set|struct) -> same",
                  "InvalidArgCount,PositionalType", "new({'x': 1}) => {x: 1}")
    def _new(self, value):
        _expect("new", 1, value, MapValue, ListValue, SetValue, StructValue)
        return _clone(value)

    @blue_builtin("`keys` returns the LIST of keys of a MAP or field names of a STRUCT",
                  "keys(arg: map|struct) -> list[any]", "InvalidArgCount,PositionalType",
                  "keys({'a': 1}) => ['a']")
    def _keys(self, value):
        _expect("keys", 1, value, MapValue, StructValue)
        if isinstance(value, StructValue):
            return ListValue([String(k) for k in value.fields])
        return ListValue(value.keys())

    @blue_builtin("`values` returns the LIST of values of a MAP or STRUCT",
                  "values(arg: map|struct) -> list[any]", "InvalidArgCount,PositionalType",
                  "values({'a': 1}) => [1]")
    def _values(self, value):
        _expect("values", 1, value, MapValue, StructValue)
        if isinstance(value, StructValue):
            return ListValue(list(value.fields.values()))
        return ListValue([v for _, v in value.items()])

    @blue_builtin("`del` deletes a key from a MAP, an index from a LIST or an element from a SET",
                  "del(m: map|list|set, key: any|int) -> null", "InvalidArgCount,PositionalType,Range",
                  "del({'a': 1, 'B': 2}, 'a') => null - side effect: {B: 2}", mutates=True)
    def _del(self, container, key):
        match container:
            case MapValue():
                container.delete(key)
            case SetValue():
                container.elements.pop(HashKey(key), None)
            case ListValue():
                i = _int_arg("del", 2, key)
                n = len(container.elements)
                if i < 0:
                    i += n
                if not 0 <= i < n:
                    raise RangeError(f"`del` index out of range: {key.value} (length {n})")
                del container.elements[i]
            case _:
                _expect("del", 1, container, MapValue, ListValue, SetValue)
        return NULL

    @blue_builtin("`len` returns the length of a STRING, LIST, MAP, SET, BYTES or STRUCT",
                  "len(arg: str|list|map|set|bytes|struct) -> int", "InvalidArgCount,PositionalType",
                  "len('hello') => 5")
    def _len(self, value):
        match value:
            case String() | Bytes():
                return Integer(len(value.value))
            case ListValue():
                return Integer(len(value.elements))
            case MapValue():
                return Integer(len(value.pairs))
            case SetValue():
                return Integer(len(value.elements))
            case StructValue():
                return Integer(len(value.fields))
        _expect("len", 1, value, String, ListValue, MapValue, SetValue, Bytes, StructValue)

    @blue_builtin("`append` returns a new LIST with the given args at the end",
                  "append(arg0: list, args...: any) -> list[any]", "InvalidArgCount,PositionalType",
                  "append([1, 2, 3], 4) => [1, 2, 3, 4]")
    def _append(self, lst, *items):
        _expect("append", 1, lst, ListValue)
        return ListValue(lst.elements + list(items))

    @blue_builtin("`prepend` returns a new LIST with the given args at the front",
                  "prepend(arg0: list, args...: any) -> list[any]", "InvalidArgCount,PositionalType",
                  "prepend([1, 2, 3], 4) => [4, 1, 2, 3]")
    def _prepend(self, lst, *items):
        _expect("prepend", 1, lst, ListValue)
        return ListValue(list(items) + lst.elements)

    @blue_builtin("`push` puts the given args at the end of the LIST and mutates it. "
                  "The value returned is the length after pushing",
                  "push(arg0: list[any], args...: any) -> int", "InvalidArgCount,PositionalType",
                  "push([1, 2, 3], 1) => 4", mutates=True)
    def _push(self, lst, *items):
        _expect("push", 1, lst, ListValue)
        lst.elements.extend(items)
        return Integer(len(lst.elements))

    @blue_builtin("`pop` returns the last element of the LIST and mutates it",
                  "pop(arg0: list[any]) -> any", "InvalidArgCount,PositionalType,Range",
                  "pop([1, 2, 3]) => 3", mutates=True)
    def _pop(self, lst):
        _expect("pop", 1, lst, ListValue)
        if not lst.elements:
            raise RangeError("`pop` on an empty list")
        return lst.elements.pop()

    @blue_builtin("`unshift` prepends the LIST with the given arguments and mutates it. "
                  "The new length is returned",
                  "unshift(arg0: list[any], args...: any) -> int", "InvalidArgCount,PositionalType",
                  "unshift([1, 2, 3], 1) => 4", mutates=True)
    def _unshift(self, lst, *items):
        _expect("unshift", 1, lst, ListValue)
        lst.elements[0:0] = items
        return Integer(len(lst.elements))

    @blue_builtin("`shift` returns the first element of the LIST and mutates it",
                  "shift(arg0: list[any]) -> any", "InvalidArgCount,PositionalType,Range",
                  "shift([1, 2, 3]) => 1", mutates=True)
    def _shift(self, lst):
        _expect("shift", 1, lst, ListValue)
        if not lst.elements:
            raise RangeError("`shift` on an empty list")
        return lst.elements.pop(0)

    @blue_builtin("`concat` merges 2 or more LISTs together and returns the result",
                  "concat(arg0: list[any], args...: list[any]) -> list[any]",
                  "InvalidArgCount,PositionalType", "concat([1, 2, 3], [1]) => [1, 2, 3, 1]")
    def _concat(self, first, *rest):
        result = []
        for i, lst in enumerate((first,) + rest, 1):
            _expect("concat", i, lst, ListValue)
            result.extend(lst.elements)
        return ListValue(result)

    @blue_builtin("`reverse` reverses a STRING or LIST", "reverse(arg: list[any]|str) -> list[any]|str",
                  "InvalidArgCount,PositionalType", "reverse([1, 2, 3]) => [3, 2, 1]")
    def _reverse(self, value):
        _expect("reverse", 1, value, ListValue, String)
        if isinstance(value, String):
            return String(value.value[::-1])
        return ListValue(value.elements[::-1])

    @blue_builtin("`set` returns the SET version of a LIST, or an empty set with no args",
                  "set(arg: list[any]|none) -> set[any]", "InvalidArgCount,PositionalType",
                  "set([1, 2, 2, 3]) => {1, 2, 3}")
    def _set(self, value=None):
        if value is None:
            return SetValue()
        _expect("set", 1, value, ListValue, SetValue, String)
        return SetValue.of(self.evaluator.iteration_items(value, False))

    @blue_builtin("`to_list` returns a LIST from the given SET, MAP keys, STRING characters or LIST",
                  "to_list(arg: set[any]|map|str|list) -> list[any]", "InvalidArgCount,PositionalType",
                  "to_list({1, 2, 3}) => [1, 2, 3]")
    def _to_list(self, value):
        _expect("to_list", 1, value, SetValue, MapValue, String, ListValue)
        return ListValue(list(self.evaluator.iteration_items(value, False)))

    @blue_builtin("`sort` sorts the LIST in place and returns it", "sort(arg: list[any]) -> list[any]",
                  "InvalidArgCount,PositionalType,Type", "sort([3, 1, 2]) => [1, 2, 3]", mutates=True)
    def _sort(self, lst, reverse=None):
        _expect("sort", 1, lst, ListValue)
        lst.elements.sort(key=functools.cmp_to_key(compare_values),
                          reverse=_given(reverse) and is_truthy(reverse))
        return lst

    @blue_builtin("`sorted` returns a sorted copy of the LIST or SET",
                  "sorted(arg: list[any]|set[any], reverse: bool = false) -> list[any]",
                  "InvalidArgCount,PositionalType,Type", "sorted({3, 1, 2}) => [1, 2, 3]")
    def _sorted(self, value, reverse=None):
        _expect("sorted", 1, value, ListValue, SetValue)
        items = sorted(self.evaluator.iteration_items(value, False),
                       key=functools.cmp_to_key(compare_values),
                       reverse=_given(reverse) and is_truthy(reverse))
        return ListValue(items)

    # --- Higher order ---
    @blue_builtin("`map` applies the function to every element and returns the LIST of results",
                  "map(arg0: list|set, fn: fun) -> list[any]", "InvalidArgCount,PositionalType",
                  "[1, 2].map(|x| => { x * 2 }) => [2, 4]")
    async def _map(self, collection, fn):
        _expect("map", 1, collection, ListValue, SetValue)
        out = []
        for item in self.evaluator.iteration_items(collection, False):
            out.append(await self.evaluator.call_function(fn, [item]))
        return ListValue(out)

    @blue_builtin("`filter` keeps the elements for which the function returns a truthy value",
                  "filter(arg0: list|set, fn: fun) -> list[any]|set[any]", "InvalidArgCount,PositionalType",
                  "[1, 2, 3].filter(|x| => { x > 1 }) => [2, 3]")
    async def _filter(self, collection, fn):
        _expect("filter", 1, collection, ListValue, SetValue)
        kept = []
        for item in self.evaluator.iteration_items(collection, False):
            if is_truthy(await self.evaluator.call_function(fn, [item])):
                kept.append(item)
        return SetValue.of(kept) if isinstance(collection, SetValue) else ListValue(kept)

    @blue_builtin("`reduce` folds the elements with the function, starting from the initial value "
                  "or the first element",
                  "reduce(arg0: list|set, fn: fun, initial: any = first) -> any",
                  "InvalidArgCount,PositionalType,Type", "[1, 2, 3].reduce(|a, b| => { a + b }) => 6")
    async def _reduce(self, collection, fn, initial=None):
        _expect("reduce", 1, collection, ListValue, SetValue)
        items = list(self.evaluator.iteration_items(collection, False))
        if initial is None:
            if not items:
                raise BlueTypeError("`reduce` of an empty collection with no initial value")
            acc, items = items[0], items[1:]
        else:
            acc = initial
        for item in items:
            acc = await self.evaluator.call_function(fn, [acc, item])
        return acc

    # --- Output ---
    @blue_builtin("`print` writes the display form of the args separated by spaces",
                  "print(args...: any) -> null", "", "print('a', 1) => prints 'a 1'")
    def _print(self, *args):
        text = " ".join(a.inspect() for a in args)
        self.evaluator.emit("stdout", text)
        if self.echo:
            sys.stdout.write(text)
        return NULL

    @blue_builtin("`println` writes the display form of the args separated by spaces and a newline",
                  "println(args...: any) -> null", "", "println('hello') => prints 'hello\\n'")
    def _println(self, *args):
        text = " ".join(a.inspect() for a in args) + "\n"
        self.evaluator.emit("stdout", text)
        if self.echo:
            sys.stdout.write(text)
        return NULL

    # --- Conversions ---
    @blue_builtin("`int` converts a number, boolean or numeric STRING to an INTEGER",
                  "int(arg: number|bool|str) -> int", "InvalidArgCount,PositionalType",
                  "int('12') => 12")
    def _int(self, value):
        match value:
            case Integer() | UInteger() | BigInteger():
                return make_integer(value.value)
            case Float() | BigFloat():
                try:
                    return make_integer(int(value.value))
                except (ValueError, OverflowError, InvalidOperation):
                    raise BlueArithmeticError(f"`int` cannot convert {value.inspect()}") from None
            case Boolean():
                return Integer(int(value.value))
            case String():
                text = value.value.strip().replace("_", "")
                try:
                    return make_integer(int(text, 10))
                except ValueError:
                    pass
                try:
                    return make_integer(int(text, 0))
                except ValueError:
                    raise BlueTypeError(f"`int` could not parse {value.value!r}") from None
        _expect("int", 1, value, Integer, Float, Boolean, String)

    @blue_builtin("`float` converts a number or numeric STRING to a FLOAT",
                  "float(arg: number|str) -> float", "InvalidArgCount,PositionalType", "float('1.5') => 1.500000")
    def _float(self, value):
        match value:
            case Integer() | UInteger() | BigInteger() | Float() | BigFloat():
                return Float(float(value.value))
            case String():
                try:
                    return Float(float(value.value.replace("_", "")))
                except ValueError:
                    raise BlueTypeError(f"`float` could not parse {value.value!r}") from None
        _expect("float", 1, value, Integer, Float, String)

    @blue_builtin("`bigint` converts a number or numeric STRING to a BIG_INTEGER",
                  "bigint(arg: number|str) -> bigint", "InvalidArgCount,PositionalType", "bigint('12') => 12")
    def _bigint(self, value):
        result = self._int(value)
        return BigInteger(result.value)

    @blue_builtin("`bigfloat` converts a number or numeric STRING to a BIG_FLOAT",
                  "bigfloat(arg: number|str) -> bigfloat", "InvalidArgCount,PositionalType",
                  "bigfloat('1.25') => 1.25")
    def _bigfloat(self, value):
        match value:
            case Integer() | UInteger() | BigInteger():
                return BigFloat(Decimal(value.value))
            case Float():
                return BigFloat(Decimal(repr(value.value)))
            case BigFloat():
                return value
            case String():
                try:
                    return BigFloat(Decimal(value.value.replace("_", "")))
                except InvalidOperation:
                    raise BlueTypeError(f"`bigfloat` could not parse {value.value!r}") from None
        _expect("bigfloat", 1, value, Integer, Float, String)

    @blue_builtin("`uint` converts a non-negative number or numeric STRING to a UINTEGER",
                  "uint(arg: number|str) -> uint", "InvalidArgCount,PositionalType,Type", "uint(3) => 3")
    def _uint(self, value):
        result = self._int(value)
        if result.value < 0:
            raise BlueTypeError(f"`uint` expects a non-negative value. got={result.value}")
        unsigned = make_unsigned(result.value)
        if not isinstance(unsigned, UInteger):
            raise RangeError(f"`uint` value out of range: {result.value}")
        return unsigned

    @blue_builtin("`to_bytes` returns the BYTES of a STRING (UTF-8) or of a LIST of integers",
                  "to_bytes(arg: str|list[int]) -> bytes", "InvalidArgCount,PositionalType,Range",
                  "to_bytes('hi') => b'hi'")
    def _to_bytes(self, value):
        match value:
            case String():
                return Bytes(value.value.encode("utf-8"))
            case Bytes():
                return value
            case ListValue():
                data = [_int_arg("to_bytes", 1, e) for e in value.elements]
                if any(not 0 <= b < 256 for b in data):
                    raise RangeError("`to_bytes` list elements must be in 0..255")
                return Bytes(bytes(data))
        _expect("to_bytes", 1, value, String, ListValue)

    @blue_builtin("`fmt` returns the formatted version of the given value",
                  "fmt(arg: int|float|any, fmtStr: str) -> str", "InvalidArgCount,PositionalType",
                  "fmt(3, '%04b') => '0011'")
    def _fmt(self, value, template):
        _expect("fmt", 2, template, String)
        try:
            return String(_go_format(template.value, value))
        except ValueError as e:
            raise BlueTypeError(f"`fmt` invalid format {template.value!r}: {e}") from None

    # --- Errors ---
    @blue_builtin("`error` raises an error with the given message (or re-raises a caught error)",
                  "error(arg: str|error) -> never", "InvalidArgCount,PositionalType",
                  "error('boom') => Error: boom")
    def _error(self, value):
        if isinstance(value, ErrorValue):
            raise UserError(value.message, kind=value.kind)
        _expect("error", 1, value, String)
        raise UserError(value.value, kind="Error")

    @blue_builtin("`assert` raises an AssertionError when the condition is falsey",
                  "assert(cond: any, msg: str = 'assertion failed') -> null", "InvalidArgCount,Assertion",
                  "assert(1 == 1) => null")
    def _assert(self, condition, message=None):
        if not is_truthy(condition):
            text = message.inspect() if _given(message) else "assertion failed"
            raise BlueAssertionError(text)
        return NULL

    # --- Strings ---
    @blue_builtin("`split` splits a STRING on the separator, or on whitespace without one",
                  "split(arg: str, sep: str = whitespace) -> list[str]", "InvalidArgCount,PositionalType",
                  "split('a,b', ',') => ['a', 'b']")
    def _split(self, text, sep=None):
        _expect("split", 1, text, String)
        if not _given(sep):
            return ListValue([String(p) for p in text.value.split()])
        _expect("split", 2, sep, String)
        if not sep.value:
            return ListValue([String(ch) for ch in text.value])
        return ListValue([String(p) for p in text.value.split(sep.value)])

    @blue_builtin("`join` joins the display forms of the LIST elements with the separator",
                  "join(arg: list[any], sep: str = '') -> str", "InvalidArgCount,PositionalType",
                  "join(['a', 'b'], '-') => 'a-b'")
    def _join(self, lst, sep=None):
        _expect("join", 1, lst, ListValue, SetValue)
        separator = ""
        if _given(sep):
            _expect("join", 2, sep, String)
            separator = sep.value
        items = self.evaluator.iteration_items(lst, False)
        return String(separator.join(e.inspect() for e in items))

    @blue_builtin("`replace` replaces every occurrence of a STRING or REGEX match",
                  "replace(arg: str, old: str|regex, new: str) -> str", "InvalidArgCount,PositionalType",
                  "replace('aXbX', 'X', '-') => 'a-b-'")
    def _replace(self, text, old, new):
        _expect("replace", 1, text, String)
        _expect("replace", 3, new, String)
        if isinstance(old, Regex):
            return String(old.compiled.sub(new.value, text.value))
        _expect("replace", 2, old, String, Regex)
        return String(text.value.replace(old.value, new.value))

    @blue_builtin("`upper` returns the STRING in upper case", "upper(arg: str) -> str",
                  "InvalidArgCount,PositionalType", "upper('a') => 'A'")
    def _upper(self, text):
        _expect("upper", 1, text, String)
        return String(text.value.upper())

    @blue_builtin("`lower` returns the STRING in lower case", "lower(arg: str) -> str",
                  "InvalidArgCount,PositionalType", "lower('A') => 'a'")
    def _lower(self, text):
        _expect("lower", 1, text, String)
        return String(text.value.lower())

    @blue_builtin("`trim` strips leading and trailing whitespace (or the given characters)",
                  "trim(arg: str, chars: str = whitespace) -> str", "InvalidArgCount,PositionalType",
                  "trim('  a ') => 'a'")
    def _trim(self, text, chars=None):
        _expect("trim", 1, text, String)
        if _given(chars):
            _expect("trim", 2, chars, String)
            return String(text.value.strip(chars.value))
        return String(text.value.strip())

    @blue_builtin("`startswith` reports whether the STRING starts with the prefix",
                  "startswith(arg: str, prefix: str) -> bool", "InvalidArgCount,PositionalType",
                  "startswith('abc', 'ab') => true")
    def _startswith(self, text, prefix):
        _expect("startswith", 1, text, String)
        _expect("startswith", 2, prefix, String)
        return native_bool(text.value.startswith(prefix.value))

    @blue_builtin("`endswith` reports whether the STRING ends with the suffix",
                  "endswith(arg: str, suffix: str) -> bool", "InvalidArgCount,PositionalType",
                  "endswith('abc', 'bc') => true")
    def _endswith(self, text, suffix):
        _expect("endswith", 1, text, String)
        _expect("endswith", 2, suffix, String)
        return native_bool(text.value.endswith(suffix.value))

    @blue_builtin("`re` compiles a STRING into a REGEX", "re(arg: str) -> regex",
                  "InvalidArgCount,PositionalType", "re('a+') => r/a+/")
    def _re(self, pattern):
        _expect("re", 1, pattern, String)
        try:
            return Regex(pattern.value)
        except re.error as e:
            raise BlueTypeError(f"`re` invalid regex {pattern.value!r}: {e}") from None

    @blue_builtin("`matches` reports whether the REGEX matches anywhere in the STRING",
                  "matches(arg: str, pattern: regex|str) -> bool", "InvalidArgCount,PositionalType",
                  "matches('abc', r/b+/) => true")
    def _matches(self, text, pattern):
        _expect("matches", 1, text, String)
        if isinstance(pattern, String):
            pattern = self._re(pattern)
        _expect("matches", 2, pattern, Regex, String)
        return native_bool(pattern.compiled.search(text.value) is not None)

    # --- Processes ---
    @blue_builtin("`send` puts a value in the mailbox of the process",
                  "send(p: process, value: any) -> null", "InvalidArgCount,PositionalType,Process",
                  "send(p, 1) => null")
    def _send(self, proc, value):
        _expect("send", 1, proc, Process)
        proc.send(value)
        return NULL

    @blue_builtin("`recv` waits for the next message in the mailbox of the process "
                  "(the current process by default), optionally with a timeout in milliseconds",
                  "recv(p: process = self(), timeout_ms: int = none) -> any",
                  "InvalidArgCount,PositionalType,Process", "recv(self(), 100)")
    async def _recv(self, proc=None, timeout=None):
        if not _given(proc):
            proc = current_process.get()
            if proc is None:
                raise BlueTypeError("`recv` called outside of a process")
        _expect("recv", 1, proc, Process)
        timeout_ms = _ms_arg("recv", 2, timeout) if _given(timeout) else None
        return await proc.recv(timeout_ms)

    @blue_builtin("`is_alive` reports whether the process is still running",
                  "is_alive(p: process) -> bool", "InvalidArgCount,PositionalType", "is_alive(p) => true")
    def _is_alive(self, proc):
        _expect("is_alive", 1, proc, Process)
        return native_bool(PROCESS_TABLE.is_alive(proc))

    @blue_builtin("`wait` suspends until all the given processes (or lists of processes) have finished",
                  "wait(args...: process|list[process]) -> null", "PositionalType",
                  "wait(p1, [p2, p3]) => null")
    async def _wait(self, *procs):
        tasks = []
        for i, arg in enumerate(procs, 1):
            items = arg.elements if isinstance(arg, ListValue) else [arg]
            for p in items:
                _expect("wait", i, p, Process)
                if p.task is not None:
                    tasks.append(p.task)
        if tasks:
            await asyncio.wait(tasks)
        return NULL

    @blue_builtin("`sleep` suspends the current process for the given milliseconds",
                  "sleep(ms: int|float) -> null", "InvalidArgCount,PositionalType", "sleep(10) => null")
    async def _sleep(self, ms):
        await self.evaluator.clock.sleep(_ms_arg("sleep", 1, ms))
        return NULL

    @blue_builtin("`now_ms` returns the current time in milliseconds since the epoch",
                  "now_ms() -> int", "InvalidArgCount", "now_ms() => 1700000000000")
    def _now_ms(self):
        return Integer(self.evaluator.clock.now_ms())

    # --- Pub/sub ---
    @blue_builtin("`publish` delivers {topic, msg} to every subscriber of the topic; "
                  "returns the number of deliveries",
                  "publish(topic: str, value: any) -> int", "InvalidArgCount,PositionalType",
                  "publish('news', 1) => 2")
    def _publish(self, topic, value):
        _expect("publish", 1, topic, String)
        return Integer(BROKER.publish(topic.value, value))

    @blue_builtin("`broadcast` delivers the value to every subscriber, or to the subscribers "
                  "of the given topics",
                  "broadcast(value: any, topics: list[str] = all) -> int", "InvalidArgCount,PositionalType",
                  "broadcast('hi') => 3")
    def _broadcast(self, value, topics=None):
        names = _topic_list("broadcast", 2, topics) if _given(topics) else None
        return Integer(BROKER.broadcast(value, names))

    @blue_builtin("`subscribe` returns a SUBSCRIBER for the given topics",
                  "subscribe(topics...: str|list[str]) -> subscriber", "PositionalType",
                  "val s = subscribe('news'); s.recv()")
    def _subscribe(self, *topics):
        names = []
        for i, t in enumerate(topics, 1):
            names.extend(_topic_list("subscribe", i, t))
        return BROKER.subscribe(names)

    @blue_builtin("`unsubscribe` deactivates the SUBSCRIBER and closes its channel",
                  "unsubscribe(sub: subscriber) -> null", "InvalidArgCount,PositionalType",
                  "unsubscribe(s) => null")
    def _unsubscribe(self, sub):
        _expect("unsubscribe", 1, sub, Subscriber)
        BROKER.unsubscribe(sub)
        return NULL

    @blue_builtin("`add_topic` subscribes the SUBSCRIBER to another topic",
                  "add_topic(sub: subscriber, topic: str) -> null", "InvalidArgCount,PositionalType",
                  "add_topic(s, 'sports') => null")
    def _add_topic(self, sub, topic):
        _expect("add_topic", 1, sub, Subscriber)
        _expect("add_topic", 2, topic, String)
        sub.add_topic(topic.value)
        return NULL

    @blue_builtin("`remove_topic` unsubscribes the SUBSCRIBER from a topic",
                  "remove_topic(sub: subscriber, topic: str) -> null", "InvalidArgCount,PositionalType",
                  "remove_topic(s, 'sports') => null")
    def _remove_topic(self, sub, topic):
        _expect("remove_topic", 1, sub, Subscriber)
        _expect("remove_topic", 2, topic, String)
        sub.remove_topic(topic.value)
        return NULL

    @blue_builtin("`subscriber_count` returns the number of active subscribers, optionally for one topic",
                  "subscriber_count(topic: str = all) -> int", "InvalidArgCount,PositionalType",
                  "subscriber_count('news') => 2")
    def _subscriber_count(self, topic=None):
        if _given(topic):
            _expect("subscriber_count", 1, topic, String)
            return Integer(BROKER.subscriber_count(topic.value))
        return Integer(BROKER.subscriber_count())

    # --- KV store ---
    @blue_builtin("`kv_put` stores the value under the key in the shared KV store",
                  "kv_put(key: any, value: any) -> null", "InvalidArgCount,Type", "kv_put('a', 1) => null")
    def _kv_put(self, key, value):
        KV_STORE.put(key, value)
        return NULL

    @blue_builtin("`kv_get` returns the value stored under the key, or null",
                  "kv_get(key: any) -> any", "InvalidArgCount,Type", "kv_get('a') => 1")
    def _kv_get(self, key):
        found = KV_STORE.get(key)
        return NULL if found is None else found

    @blue_builtin("`kv_delete` removes the key from the shared KV store and returns its value, or null",
                  "kv_delete(key: any) -> any", "InvalidArgCount,Type", "kv_delete('a') => 1")
    def _kv_delete(self, key):
        found = KV_STORE.delete(key)
        return NULL if found is None else found

    # --- Serialization ---
    @blue_builtin("`to_json` returns the JSON text of the value",
                  "to_json(arg: any, pretty: bool = false) -> str", "InvalidArgCount,Type",
                  "to_json({'a': 1}) => '{\"a\": 1}'")
    def _to_json(self, value, pretty=None):
        return String(to_json(value, pretty=_given(pretty) and is_truthy(pretty)))

    @blue_builtin("`from_json` parses JSON text into a value", "from_json(arg: str) -> any",
                  "InvalidArgCount,PositionalType,Host", "from_json('[1, 2]') => [1, 2]")
    def _from_json(self, text):
        _expect("from_json", 1, text, String)
        return from_json(text.value)

    @blue_builtin("`is_valid_json` reports whether the STRING is valid JSON",
                  "is_valid_json(arg: str) -> bool", "InvalidArgCount,PositionalType",
                  "is_valid_json('{}') => true")
    def _is_valid_json(self, text):
        _expect("is_valid_json", 1, text, String)
        return native_bool(is_valid_json(text.value))

    @blue_builtin("`to_yaml` returns the YAML text of the value", "to_yaml(arg: any) -> str",
                  "InvalidArgCount,Type", "to_yaml({'a': 1}) => 'a: 1\\n'")
    def _to_yaml(self, value):
        return String(to_yaml(value))

    @blue_builtin("`from_yaml` parses YAML text into a value", "from_yaml(arg: str) -> any",
                  "InvalidArgCount,PositionalType,Host", "from_yaml('a: 1') => {a: 1}")
    def _from_yaml(self, text):
        _expect("from_yaml", 1, text, String)
        return from_yaml(text.value)

    @blue_builtin("`eval_template` renders a Mustache template with the given MAP",
                  "eval_template(template: str, data: map) -> str", "InvalidArgCount,PositionalType",
                  "eval_template('hi {{name}}', {'name': 'bo'}) => 'hi bo'")
    def _eval_template(self, template, data):
        _expect("eval_template", 1, template, String)
        _expect("eval_template", 2, data, MapValue, StructValue)
        renderer = pystache.Renderer(escape=lambda u: u)
        return String(renderer.render(template.value, to_python(data)))

    # --- Host ---
    @blue_builtin("`fetch` performs an HTTP request and returns the body, or {status, headers, body} "
                  "with full = true",
                  "fetch(url: str, method: str = 'GET', headers: map = {}, body: any = null, "
                  "full: bool = false, timeout: float = 5, retries: int = 2) -> str|map",
                  "InvalidArgCount,PositionalType,Host", "fetch('https://example.com', full = true)",
                  named=True)
    async def _fetch(self, url, method=None, headers=None, body=None, full=None, timeout=None, retries=None):
        _expect("fetch", 1, url, String)
        method_name = "GET"
        if _given(method):
            _expect("fetch", 2, method, String)
            method_name = method.value
        header_map = {}
        if _given(headers):
            _expect("fetch", 3, headers, MapValue)
            header_map = {str(k): v if isinstance(v, str) else str(v) for k, v in to_python(headers).items()}
        data = None
        if _given(body):
            data = body.value if isinstance(body, String) else to_json(body)
        want_full = _given(full) and is_truthy(full)
        options = {}
        if _given(timeout):
            options["timeout"] = _ms_arg("fetch", 6, timeout)
        if _given(retries):
            options["retries"] = _int_arg("fetch", 7, retries)
        status, text, resp_headers = await blue_http.http_request(
            method_name, url.value, headers=header_map, data=data, raise_for_status=not want_full, **options)
        if want_full:
            return make_map({
                "status": Integer(status),
                "headers": from_python(resp_headers),
                "body": String(text),
            })
        return String(text)

    @blue_builtin("`exec` runs a shell command and returns its standard output "
                  "(only when the runner allows it)",
                  "exec(cmd: str) -> str", "InvalidArgCount,PositionalType,Host", "exec('echo hi') => 'hi\\n'")
    async def _exec(self, command):
        _expect("exec", 1, command, String)
        if not self.allow_exec:
            raise HostError("exec is disabled; create the runner with allow_exec=True")
        self.evaluator._dbg("exec", command.value)
        proc = await asyncio.create_subprocess_shell(
            command.value, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        out, err = await proc.communicate()
        if proc.returncode != 0:
            detail = err.decode("utf-8", errors="replace").strip()
            raise HostError(f"`exec` command exited with status {proc.returncode}: {detail}")
        return String(out.decode("utf-8", errors="replace"))


class BuiltinRegistry:
    """Thread-safe name -> Builtin map; frozen once the runtime is set up."""

    def __init__(self):
        self._lock = threading.Lock()
        self._builtins: Dict[str, Builtin] = {}
        self._frozen = False

    def register(self, builtin: Builtin):
        with self._lock:
            if self._frozen:
                raise RuntimeError(f"builtin registry is frozen; cannot register '{builtin.name}'")
            self._builtins[builtin.name] = builtin

    def load(self, stdlib: StdLib):
        for attr, member in inspect.getmembers(stdlib):
            if attr.startswith('_') and not attr.startswith('__') and callable(member):
                name = attr[1:]
                self.register(Builtin(
                    name,
                    _checked(name, member),
                    help=getattr(member, "_blue_help", ""),
                    mutates=getattr(member, "_blue_mutates", False),
                    accepts_named=getattr(member, "_blue_named", False),
                ))

    def freeze(self):
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[Builtin]:
        with self._lock:
            return self._builtins.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._builtins)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._builtins)


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token is not None and not msg.startswith("Error on line "):
            return f"Error on line {self.error_token.line}, col {self.error_token.column}: {msg}"
        return msg


def _color_enabled() -> bool:
    if os.environ.get("NO_COLOR") or os.environ.get("BLUE_NO_COLOR"):
        return False
    return os.environ.get("BLUE_COLOR") == "1"


class ScriptRunner:
    """Parses and executes Blue scripts against one evaluator and global environment."""

    def __init__(self, loader=None, scheduler=None, clock=None, node_name: str = "local",
                 echo: bool = False, allow_exec: bool = False):
        self.loader = loader if loader is not None else FileSourceLoader()
        self.scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self.clock = clock if clock is not None else SystemClock()
        self.node_name = node_name
        self.echo = echo
        self.color = _color_enabled()

        if sys.getrecursionlimit() < RECURSION_LIMIT:
            sys.setrecursionlimit(RECURSION_LIMIT)

        self.registry = BuiltinRegistry()
        self.evaluator = Evaluator(self.registry, self.loader, self.scheduler, self.clock, node_name)
        self.stdlib = StdLib(self.evaluator, echo=echo, allow_exec=allow_exec)
        self.registry.load(self.stdlib)
        self.registry.freeze()

        self.global_env = Env(self.evaluator.core_env)
        # The root script is itself a process so that self() and recv() work at top level.
        self.root_process = PROCESS_TABLE.new_process(node_name)

    @property
    def side_effects(self) -> List[Dict]:
        return self.evaluator.side_effects

    def _paint(self, text: str) -> str:
        return f"\x1b[31m{text}\x1b[0m" if self.color else text

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_parse_errors(self, errors: List[ParseError], source: str) -> str:
        blocks = []
        for err in errors:
            head, _, location = str(err).partition("\n")
            block = f"{self._paint(head)}\n{location}"
            context = self._source_context(source, err.line, err.column)
            if context:
                block += "\n" + context
            blocks.append(block)
        return "\n".join(blocks)

    def _format_runtime_error(self, e: BlueError) -> str:
        msg = self._paint(f"EvaluatorError: {e}")
        tok = e.token
        if tok is not None:
            msg += f"\n{tok.file_path}:{tok.line}:{tok.column}"
            context = self._source_context(self.evaluator.sources.get(tok.file_path, ""), tok.line, tok.column)
            if context:
                msg += "\n" + context
        if e.trace:
            frames = []
            for t in e.trace:
                lines = self.evaluator.sources.get(t.file_path, "").splitlines()
                text = lines[t.line - 1].strip() if 0 < t.line <= len(lines) else ""
                frames.append(f"  at {t.file_path}:{t.line}:{t.column}: {text}")
            msg += "\nTrace (most recent first):\n" + "\n".join(frames)
        return msg

    def _error_result(self, message: str, token: Optional[Token]) -> ExecutionResult:
        self.evaluator.emit("stderr", message)
        return ExecutionResult(
            status='error',
            error_message=message,
            error_token=token,
            side_effects=list(self.evaluator.side_effects),
        )

    async def handle_script(self, source_code: str, file_path: str = "<script>") -> ExecutionResult:
        """The main entry point to execute a script."""
        self.evaluator.side_effects.clear()
        self.evaluator.sources[file_path] = source_code

        # 1. Parse
        try:
            program = parse(source_code, file_path)
        except ParseErrors as e:
            first = e.errors[0]
            token = Token(TokenType.ILLEGAL, "", first.file_path, first.line, first.column)
            return self._error_result(self._format_parse_errors(e.errors, source_code), token)
        except RecursionError:
            return self._error_result(
                self._paint("ParserError: RecursionError: expression nested too deeply"), None)

        # 2. Evaluate
        reset = current_process.set(self.root_process)
        try:
            result = await self.evaluator.run(program, self.global_env)
        except BlueError as e:
            return self._error_result(self._format_runtime_error(e), e.token)
        except RecursionError:
            return self._error_result(
                self._paint("EvaluatorError: RecursionError: maximum recursion depth exceeded"), None)
        finally:
            current_process.reset(reset)

        return ExecutionResult(status='success', value=result, side_effects=list(self.evaluator.side_effects))

    def cancel_tasks(self) -> int:
        return self.evaluator.cancel_tasks()

    def close(self):
        """Cancels spawned processes and retires the root process."""
        self.cancel_tasks()
        self.root_process.close()
        PROCESS_TABLE.remove(self.root_process)
