"""
Runtime values, the environment, and the error hierarchy of the Blue interpreter.
"""
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from blue.blue_token import Token

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
UINT64_LIMIT = 2 ** 64
MASK64 = UINT64_LIMIT - 1

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3


def fnv1a64(data: bytes) -> int:
    h = _FNV_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & MASK64
    return h


def _combine(hashes: Iterable[int]) -> int:
    return fnv1a64(b"".join(h.to_bytes(8, "little") for h in hashes))


class TypeTag(str, Enum):
    INTEGER = "INTEGER"
    BIG_INTEGER = "BIG_INTEGER"
    UINTEGER = "UINTEGER"
    FLOAT = "FLOAT"
    BIG_FLOAT = "BIG_FLOAT"
    BOOLEAN = "BOOLEAN"
    NULL = "NULL"
    STRING = "STRING"
    BYTES = "BYTES"
    REGEX = "REGEX"
    LIST = "LIST"
    MAP = "MAP"
    SET = "SET"
    STRUCT = "STRUCT"
    FUNCTION = "FUNCTION"
    BUILTIN = "BUILTIN"
    BUILTIN_OBJ = "BUILTIN_OBJ"
    MODULE = "MODULE"
    PROCESS = "PROCESS"
    SUBSCRIBER = "SUBSCRIBER"
    ERROR = "ERROR"
    RETURN_VALUE = "RETURN_VALUE"
    BREAK = "BREAK"
    CONTINUE = "CONTINUE"


# ===================================================================
# Base value and errors
# ===================================================================

@dataclass(eq=False)
class BlueObject:
    """Base class of every runtime value."""
    type_tag = TypeTag.NULL

    def inspect(self) -> str:
        from blue.blue_printer import Printer
        return Printer().pformat(self)

    def hash_key(self) -> int:
        raise BlueTypeError(f"unusable as hash key: {self.type_tag.value}")


@dataclass(eq=False)
class ErrorValue(BlueObject):
    """An error as seen by scripts: `e.kind`, `e.message`."""
    type_tag = TypeTag.ERROR
    kind: Optional[str]
    message: str

    @property
    def text(self) -> str:
        return f"{self.kind}: {self.message}" if self.kind else self.message


class BlueError(Exception):
    """Base of all evaluation errors; carries the failing node's token."""
    kind: Optional[str] = "Error"

    def __init__(self, message: str, token: Optional[Token] = None):
        super().__init__(message)
        self.message = message
        self.token = token
        self.trace: Optional[List[Token]] = None

    @property
    def value(self) -> ErrorValue:
        return ErrorValue(self.kind, self.message)

    def __str__(self) -> str:
        return self.value.text


class BlueNameError(BlueError):
    kind = "NameError"


class BlueTypeError(BlueError):
    kind = "TypeError"


class ArityError(BlueError):
    kind = "ArityError"


class RangeError(BlueError):
    kind = "RangeError"


class BlueArithmeticError(BlueError):
    kind = "ArithmeticError"


class ProcessError(BlueError):
    kind = "ProcessError"


class BlueImportError(BlueError):
    kind = "ImportError"


class BlueParseError(BlueError):
    kind = "ParserError"


class HostError(BlueError):
    kind = "HostError"


class BlueAssertionError(BlueError):
    kind = "AssertionError"


class UserError(BlueError):
    """Raised by `error(...)`; re-raising a caught error keeps its kind."""
    kind = None

    def __init__(self, message: str, token: Optional[Token] = None, kind: Optional[str] = None):
        super().__init__(message, token)
        self.kind = kind


# ===================================================================
# Scalars
# ===================================================================

def _number_hash(value) -> int:
    if isinstance(value, float) and math.isnan(value):
        return fnv1a64(b"NaN")
    if isinstance(value, Decimal) and value.is_nan():
        return fnv1a64(b"NaN")
    # Python's numeric hash agrees across int, float and Decimal for equal values.
    return hash(value) & MASK64


@dataclass
class Integer(BlueObject):
    type_tag = TypeTag.INTEGER
    value: int

    def hash_key(self) -> int:
        return _number_hash(self.value)


@dataclass
class BigInteger(BlueObject):
    type_tag = TypeTag.BIG_INTEGER
    value: int

    def hash_key(self) -> int:
        return _number_hash(self.value)


@dataclass
class UInteger(BlueObject):
    type_tag = TypeTag.UINTEGER
    value: int

    def hash_key(self) -> int:
        return _number_hash(self.value)


@dataclass
class Float(BlueObject):
    type_tag = TypeTag.FLOAT
    value: float

    def hash_key(self) -> int:
        return _number_hash(self.value)


@dataclass
class BigFloat(BlueObject):
    type_tag = TypeTag.BIG_FLOAT
    value: Decimal

    def hash_key(self) -> int:
        return _number_hash(self.value)


@dataclass
class Boolean(BlueObject):
    type_tag = TypeTag.BOOLEAN
    value: bool

    def hash_key(self) -> int:
        return fnv1a64(b"true" if self.value else b"false")


@dataclass
class Null(BlueObject):
    type_tag = TypeTag.NULL

    def hash_key(self) -> int:
        return fnv1a64(b"null")


TRUE = Boolean(True)
FALSE = Boolean(False)
NULL = Null()


def native_bool(value: bool) -> Boolean:
    return TRUE if value else FALSE


@dataclass
class String(BlueObject):
    type_tag = TypeTag.STRING
    value: str

    def hash_key(self) -> int:
        return fnv1a64(self.value.encode("utf-8"))


@dataclass
class Bytes(BlueObject):
    type_tag = TypeTag.BYTES
    value: bytes

    def hash_key(self) -> int:
        return fnv1a64(self.value)


@dataclass(eq=False)
class Regex(BlueObject):
    type_tag = TypeTag.REGEX
    pattern: str
    compiled: re.Pattern = field(repr=False, default=None)

    def __post_init__(self):
        if self.compiled is None:
            self.compiled = re.compile(self.pattern)

    def hash_key(self) -> int:
        return fnv1a64(b"r/" + self.pattern.encode("utf-8"))


# ===================================================================
# Collections
# ===================================================================

class HashKey:
    """Wraps a hashable value so that Python dicts use Blue hashing and equality."""
    __slots__ = ("value", "_hash")

    def __init__(self, value: BlueObject):
        self.value = value
        self._hash = value.hash_key()

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other) -> bool:
        return isinstance(other, HashKey) and values_equal(self.value, other.value)

    def __repr__(self) -> str:
        return f"HashKey({self.value!r})"


@dataclass
class ListValue(BlueObject):
    type_tag = TypeTag.LIST
    elements: List[BlueObject] = field(default_factory=list)

    def hash_key(self) -> int:
        return _combine(e.hash_key() for e in self.elements)


@dataclass
class MapValue(BlueObject):
    type_tag = TypeTag.MAP
    pairs: Dict[HashKey, BlueObject] = field(default_factory=dict)

    def get(self, key: BlueObject) -> Optional[BlueObject]:
        return self.pairs.get(HashKey(key))

    def set(self, key: BlueObject, value: BlueObject):
        self.pairs[HashKey(key)] = value

    def delete(self, key: BlueObject) -> Optional[BlueObject]:
        return self.pairs.pop(HashKey(key), None)

    def keys(self) -> List[BlueObject]:
        return [k.value for k in self.pairs]

    def items(self):
        return [(k.value, v) for k, v in self.pairs.items()]

    def hash_key(self) -> int:
        return _combine(sorted(k.value.hash_key() ^ v.hash_key() for k, v in self.pairs.items()))


@dataclass
class SetValue(BlueObject):
    type_tag = TypeTag.SET
    elements: Dict[HashKey, None] = field(default_factory=dict)

    @classmethod
    def of(cls, values: Iterable[BlueObject]) -> "SetValue":
        return cls({HashKey(v): None for v in values})

    def add(self, value: BlueObject):
        self.elements[HashKey(value)] = None

    def contains(self, value: BlueObject) -> bool:
        return HashKey(value) in self.elements

    def values(self) -> List[BlueObject]:
        return [k.value for k in self.elements]

    def hash_key(self) -> int:
        return _combine(sorted(k.value.hash_key() for k in self.elements))


@dataclass
class StructValue(BlueObject):
    type_tag = TypeTag.STRUCT
    fields: Dict[str, BlueObject] = field(default_factory=dict)

    def hash_key(self) -> int:
        return _combine(sorted(fnv1a64(k.encode("utf-8")) ^ v.hash_key() for k, v in self.fields.items()))


def make_map(entries: Dict[str, BlueObject]) -> MapValue:
    """Builds a map with String keys from a Python dict."""
    m = MapValue()
    for k, v in entries.items():
        m.set(String(k), v)
    return m


# ===================================================================
# Callables, modules and control flow
# ===================================================================

@dataclass(eq=False)
class Function(BlueObject):
    type_tag = TypeTag.FUNCTION
    params: tuple
    defaults: tuple
    body: Any
    env: "Env" = field(repr=False)
    name: Optional[str] = None

    def to_string(self) -> str:
        from blue.blue_ast import _params_string
        return f"fun({_params_string(self.params, self.defaults)}) {self.body.to_string()}"

    def hash_key(self) -> int:
        return fnv1a64(self.to_string().encode("utf-8"))


@dataclass(eq=False)
class Builtin(BlueObject):
    """A host callable; `fn` may be a coroutine function."""
    type_tag = TypeTag.BUILTIN
    name: str
    fn: Callable = field(repr=False)
    help: str = ""
    mutates: bool = False
    accepts_named: bool = False


@dataclass(eq=False)
class BuiltinObj(BlueObject):
    type_tag = TypeTag.BUILTIN_OBJ
    value: BlueObject
    help: str = ""


@dataclass(eq=False)
class Module(BlueObject):
    type_tag = TypeTag.MODULE
    name: str
    env: "Env" = field(repr=False)


@dataclass(eq=False)
class ReturnValue(BlueObject):
    type_tag = TypeTag.RETURN_VALUE
    value: BlueObject


class _LoopSignal(BlueObject):
    def __init__(self, tag: TypeTag):
        self.type_tag = tag

    def __repr__(self) -> str:
        return self.type_tag.value


BREAK = _LoopSignal(TypeTag.BREAK)
CONTINUE = _LoopSignal(TypeTag.CONTINUE)


def unwrap_return(value: BlueObject) -> BlueObject:
    return value.value if isinstance(value, ReturnValue) else value


# ===================================================================
# Equality and truthiness
# ===================================================================

NUMERIC_TAGS = frozenset({
    TypeTag.INTEGER, TypeTag.BIG_INTEGER, TypeTag.UINTEGER, TypeTag.FLOAT, TypeTag.BIG_FLOAT,
})


def is_number(value: BlueObject) -> bool:
    return value.type_tag in NUMERIC_TAGS


def values_equal(a: BlueObject, b: BlueObject) -> bool:
    """Structural equality; values of unrelated types are simply unequal."""
    if a is b:
        return not (is_number(a) and a.value != a.value)
    if is_number(a) and is_number(b):
        # int, float and Decimal compare exactly with each other.
        return a.value == b.value
    if type(a) is not type(b):
        return False
    match a:
        case String() | Bytes() | Boolean():
            return a.value == b.value
        case Null():
            return True
        case Regex():
            return a.pattern == b.pattern
        case ListValue():
            return len(a.elements) == len(b.elements) and all(
                values_equal(x, y) for x, y in zip(a.elements, b.elements))
        case MapValue():
            if len(a.pairs) != len(b.pairs):
                return False
            for k, v in a.pairs.items():
                other = b.pairs.get(k)
                if other is None or not values_equal(v, other):
                    return False
            return True
        case SetValue():
            return len(a.elements) == len(b.elements) and all(k in b.elements for k in a.elements)
        case StructValue():
            return a.fields.keys() == b.fields.keys() and all(
                values_equal(v, b.fields[k]) for k, v in a.fields.items())
        case ErrorValue():
            return a.kind == b.kind and a.message == b.message
        case _:
            return False


def is_truthy(value: BlueObject) -> bool:
    match value:
        case Null():
            return False
        case Boolean():
            return value.value
        case ListValue():
            return bool(value.elements)
        case MapValue():
            return bool(value.pairs)
        case SetValue():
            return bool(value.elements)
        case _:
            return True


# ===================================================================
# Environment
# ===================================================================

class Env:
    """A frame of bindings with an optional enclosing frame."""

    def __init__(self, enclosing: Optional["Env"] = None):
        self.store: Dict[str, BlueObject] = {}
        self.immutable: Set[str] = set()
        self.enclosing = enclosing

    def get(self, name: str) -> Optional[BlueObject]:
        env = self
        while env is not None:
            value = env.store.get(name)
            if value is not None:
                return value
            env = env.enclosing
        return None

    def owner(self, name: str) -> Optional["Env"]:
        env = self
        while env is not None:
            if name in env.store:
                return env
            env = env.enclosing
        return None

    def set(self, name: str, value: BlueObject) -> BlueObject:
        target = self.owner(name) or self
        if name in target.immutable:
            raise BlueNameError(f"'{name}' is immutable and cannot be reassigned")
        target.store[name] = value
        return value

    def define(self, name: str, value: BlueObject) -> BlueObject:
        if name in self.immutable:
            raise BlueNameError(f"'{name}' is immutable and cannot be reassigned")
        self.store[name] = value
        return value

    def mark_immutable(self, name: str):
        self.immutable.add(name)

    def is_immutable(self, name: str) -> bool:
        env = self.owner(name)
        return env is not None and name in env.immutable

    def remove(self, name: str):
        self.store.pop(name, None)
        self.immutable.discard(name)

    def clone(self) -> "Env":
        enclosing = self.enclosing.clone() if self.enclosing is not None else None
        copy = Env(enclosing)
        copy.store = dict(self.store)
        copy.immutable = set(self.immutable)
        return copy

    def __contains__(self, name: str) -> bool:
        return self.owner(name) is not None

    def __repr__(self) -> str:
        return f"<Env names={list(self.store)} enclosing={self.enclosing is not None}>"
