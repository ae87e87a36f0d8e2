"""
Conversion between Blue values and JSON/YAML text.
"""
import json
from decimal import Decimal
from typing import Any, Optional

import yaml

from blue.blue_datatypes import (
    NULL, BigFloat, BigInteger, BlueObject, BlueTypeError, Boolean, Bytes, Float, Integer,
    ListValue, MapValue, Null, Regex, SetValue, String, StructValue, UInteger, native_bool,
)
from blue.blue_operators import make_integer


def _key_text(key: BlueObject) -> str:
    # JSON object keys must be strings; other scalars use their display form.
    if isinstance(key, String):
        return key.value
    match key:
        case Integer() | BigInteger() | UInteger() | Float() | BigFloat() | Boolean() | Null():
            return key.inspect()
    raise BlueTypeError(f"cannot serialize a {key.type_tag.value} map key")


def to_python(value: BlueObject, _active: Optional[set] = None) -> Any:
    """Converts a Blue value into plain Python data (dict/list/str/int/float/bool/None)."""
    active = _active if _active is not None else set()
    match value:
        case Null():
            return None
        case Boolean():
            return value.value
        case Integer() | BigInteger() | UInteger():
            return value.value
        case Float():
            return value.value
        case BigFloat():
            return float(value.value)
        case String():
            return value.value
        case Bytes():
            return value.value.decode("utf-8", errors="replace")
        case Regex():
            return value.pattern

    if id(value) in active:
        raise BlueTypeError("cannot serialize a value that contains itself")
    active.add(id(value))
    try:
        match value:
            case ListValue():
                return [to_python(e, active) for e in value.elements]
            case SetValue():
                return [to_python(e, active) for e in value.values()]
            case MapValue():
                return {_key_text(k): to_python(v, active) for k, v in value.items()}
            case StructValue():
                return {k: to_python(v, active) for k, v in value.fields.items()}
    finally:
        active.discard(id(value))
    raise BlueTypeError(f"cannot serialize a {value.type_tag.value}")


def from_python(obj: Any) -> BlueObject:
    """Converts plain Python data (as produced by json/yaml loaders) into Blue values."""
    match obj:
        case None:
            return NULL
        case bool():
            return native_bool(obj)
        case int():
            return make_integer(obj)
        case float():
            return Float(obj)
        case Decimal():
            return BigFloat(obj)
        case str():
            return String(obj)
        case bytes() | bytearray():
            return Bytes(bytes(obj))
        case list() | tuple():
            return ListValue([from_python(x) for x in obj])
        case set() | frozenset():
            return SetValue.of(from_python(x) for x in obj)
        case dict():
            result = MapValue()
            for k, v in obj.items():
                result.set(from_python(k), from_python(v))
            return result
        case _:
            # yaml timestamps and the like
            return String(str(obj))


def to_json(value: BlueObject, pretty: bool = False) -> str:
    return json.dumps(to_python(value), ensure_ascii=False, indent=2 if pretty else None)


def from_json(text: str) -> BlueObject:
    return from_python(json.loads(text))


def is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def to_yaml(value: BlueObject) -> str:
    return yaml.safe_dump(to_python(value), sort_keys=False, allow_unicode=True)


def from_yaml(text: str) -> BlueObject:
    return from_python(yaml.safe_load(text))


__all__ = [
    "from_json",
    "from_python",
    "from_yaml",
    "is_valid_json",
    "to_json",
    "to_python",
    "to_yaml",
]
