"""
Operator semantics: the numeric promotion ladder and the binary operator
dispatch table keyed by (left type, right type).
"""
import math
import sys
from decimal import ROUND_FLOOR, Context, Decimal, DecimalException, localcontext
from typing import Callable, Dict, Optional, Tuple

from blue.blue_datatypes import (
    INT64_MAX, INT64_MIN, UINT64_LIMIT, MASK64,
    BigFloat, BigInteger, BlueArithmeticError, BlueObject, BlueTypeError, Bytes, Float, Integer,
    ListValue, MapValue, RangeError, SetValue, String, StructValue, TypeTag, UInteger,
    is_truthy, native_bool, values_equal,
)

_BIGFLOAT_CONTEXT = Context(prec=100)
# Largest integer magnitude that converts to float without overflow.
_FLOAT_INT_LIMIT = 2 ** 1023

COMPARISONS = frozenset({"<", "<=", ">", ">="})
_BITWISE = frozenset({"&", "|", "^", "<<", ">>"})
_RANGES = frozenset({"..", "..<"})
_INTEGER_DOMAINS = frozenset({TypeTag.INTEGER, TypeTag.UINTEGER, TypeTag.BIG_INTEGER})


def make_integer(value: int) -> BlueObject:
    """Integer when the value fits in 64 signed bits, else BigInteger."""
    if INT64_MIN <= value <= INT64_MAX:
        return Integer(value)
    return BigInteger(value)


def make_unsigned(value: int) -> BlueObject:
    if 0 <= value < UINT64_LIMIT:
        return UInteger(value)
    return BigInteger(value)


def to_decimal(value) -> Decimal:
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def _is_nan(value) -> bool:
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, Decimal):
        return value.is_nan()
    return False


def _compare(op: str, x, y) -> BlueObject:
    if _is_nan(x) or _is_nan(y):
        return native_bool(False)
    match op:
        case "<":
            return native_bool(x < y)
        case "<=":
            return native_bool(x <= y)
        case ">":
            return native_bool(x > y)
        case ">=":
            return native_bool(x >= y)


def integer_range(start: int, end: int, inclusive: bool) -> range:
    """Ascending or descending range between two integers."""
    if start <= end:
        return range(start, end + 1 if inclusive else end)
    return range(start, end - 1 if inclusive else end, -1)


def _numeric_domain(left: BlueObject, right: BlueObject) -> TypeTag:
    tags = {left.type_tag, right.type_tag}
    if TypeTag.BIG_FLOAT in tags:
        return TypeTag.BIG_FLOAT
    if TypeTag.FLOAT in tags:
        return TypeTag.BIG_FLOAT if TypeTag.BIG_INTEGER in tags else TypeTag.FLOAT
    if TypeTag.BIG_INTEGER in tags:
        return TypeTag.BIG_INTEGER
    if TypeTag.UINTEGER in tags:
        return TypeTag.UINTEGER
    return TypeTag.INTEGER


def _check_unsigned(op: str, x: int, y: int):
    if x < 0 or y < 0:
        raise BlueTypeError(f"negative Integer is not allowed for unsigned operation {op}")


def _integer_arith(op: str, x: int, y: int, wrap: Callable[[int], BlueObject]) -> Optional[BlueObject]:
    match op:
        case "+":
            return wrap(x + y)
        case "-":
            return wrap(x - y)
        case "*":
            return wrap(x * y)
        case "/":
            if y == 0:
                raise BlueArithmeticError("division by zero")
            q = abs(x) // abs(y)
            return wrap(q if (x < 0) == (y < 0) else -q)
        case "//":
            if y == 0:
                raise BlueArithmeticError("floor division by zero")
            return wrap(x // y)
        case "%":
            if y == 0:
                raise BlueArithmeticError("modulus by zero")
            return wrap(x % abs(y))
        case "**":
            if y < 0:
                if x == 0:
                    raise BlueArithmeticError("zero cannot be raised to a negative power")
                if abs(x) < _FLOAT_INT_LIMIT and -y < _FLOAT_INT_LIMIT:
                    return Float(float(x) ** y)
                try:
                    with localcontext(_BIGFLOAT_CONTEXT):
                        return BigFloat(Decimal(x) ** y)
                except DecimalException as e:
                    raise BlueArithmeticError(f"{x} ** {y} is out of range") from e
            return wrap(x ** y)
    return None


def _float_arith(op: str, x: float, y: float) -> Optional[BlueObject]:
    match op:
        case "+":
            return Float(x + y)
        case "-":
            return Float(x - y)
        case "*":
            return Float(x * y)
        case "/" | "//" | "%" if y == 0:
            if op == "%" or x == 0 or math.isnan(x):
                return Float(math.nan)
            return Float(math.copysign(math.inf, x) * math.copysign(1.0, y))
        case "/":
            return Float(x / y)
        case "//":
            return Float(x // y)
        case "%":
            return Float(x % y)
        case "**":
            try:
                return Float(math.pow(x, y))
            except OverflowError:
                return Float(math.inf)
            except ValueError:
                return Float(math.nan)
    return None


def _bigfloat_arith(op: str, x: Decimal, y: Decimal) -> Optional[BlueObject]:
    try:
        with localcontext(_BIGFLOAT_CONTEXT):
            match op:
                case "+":
                    return BigFloat(x + y)
                case "-":
                    return BigFloat(x - y)
                case "*":
                    return BigFloat(x * y)
                case "/" | "//" | "%" if y == 0:
                    raise BlueArithmeticError("division by zero")
                case "/":
                    return BigFloat(x / y)
                case "//":
                    return BigFloat((x / y).to_integral_value(rounding=ROUND_FLOOR))
                case "%":
                    return BigFloat(x - y * (x / y).to_integral_value(rounding=ROUND_FLOOR))
                case "**":
                    return BigFloat(x ** y)
    except DecimalException as e:
        raise BlueArithmeticError(f"invalid BigFloat operation {op}: {type(e).__name__}") from e
    return None


def _bitwise(op: str, left: BlueObject, right: BlueObject, domain: TypeTag) -> Optional[BlueObject]:
    if domain not in _INTEGER_DOMAINS:
        return None
    x, y = left.value, right.value
    if domain == TypeTag.BIG_INTEGER:
        wrap = BigInteger
    else:
        _check_unsigned(op, x, y)
        wrap = make_unsigned
    match op:
        case "&":
            return wrap(x & y)
        case "|":
            return wrap(x | y)
        case "^":
            return wrap(x ^ y)
        case "<<":
            if y < 0:
                raise BlueArithmeticError("negative shift count")
            return wrap(x << y)
        case ">>":
            if y < 0:
                raise BlueArithmeticError("negative shift count")
            return wrap(x >> y)


def _numeric_infix(op: str, left: BlueObject, right: BlueObject) -> Optional[BlueObject]:
    x, y = left.value, right.value
    if op in COMPARISONS:
        return _compare(op, x, y)
    domain = _numeric_domain(left, right)
    if op in _RANGES:
        if domain not in _INTEGER_DOMAINS:
            return None
        return ListValue([make_integer(i) for i in integer_range(x, y, op == "..")])
    if op in _BITWISE:
        return _bitwise(op, left, right, domain)
    match domain:
        case TypeTag.INTEGER:
            return _integer_arith(op, x, y, make_integer)
        case TypeTag.BIG_INTEGER:
            return _integer_arith(op, x, y, BigInteger)
        case TypeTag.UINTEGER:
            _check_unsigned(op, x, y)
            return _integer_arith(op, x, y, make_unsigned)
        case TypeTag.FLOAT:
            return _float_arith(op, float(x), float(y))
        case TypeTag.BIG_FLOAT:
            return _bigfloat_arith(op, to_decimal(x), to_decimal(y))
    return None


def _char_range(left: str, right: str, inclusive: bool) -> ListValue:
    if len(left) != 1 or len(right) != 1:
        raise BlueTypeError("character ranges require single-character strings")
    return ListValue([String(chr(c)) for c in integer_range(ord(left), ord(right), inclusive)])


def _string_infix(op: str, left: String, right: String) -> Optional[BlueObject]:
    if op == "+":
        return String(left.value + right.value)
    if op in COMPARISONS:
        return _compare(op, left.value, right.value)
    if op in _RANGES:
        return _char_range(left.value, right.value, op == "..")
    return None


def _repeat(op: str, left: BlueObject, right: BlueObject) -> Optional[BlueObject]:
    if op != "*":
        return None
    seq, count = (left, right) if right.type_tag in _INTEGER_DOMAINS else (right, left)
    n = max(count.value, 0)
    if n > sys.maxsize:
        raise RangeError(f"repeat count too large: {n}")
    if isinstance(seq, String):
        return String(seq.value * n)
    return ListValue(list(seq.elements) * n)


def _list_infix(op: str, left: ListValue, right: ListValue) -> Optional[BlueObject]:
    if op == "+":
        return ListValue(left.elements + right.elements)
    return None


def _set_infix(op: str, left: SetValue, right: SetValue) -> Optional[BlueObject]:
    a, b = left.elements, right.elements
    match op:
        case "|" | "+":
            return SetValue({**a, **b})
        case "&":
            return SetValue({k: None for k in a if k in b})
        case "^":
            out = {k: None for k in a if k not in b}
            out.update((k, None) for k in b if k not in a)
            return SetValue(out)
        case "-":
            return SetValue({k: None for k in a if k not in b})
        case ">=":
            return native_bool(all(k in a for k in b))
        case "<=":
            return native_bool(all(k in b for k in a))
        case ">":
            return native_bool(len(a) > len(b) and all(k in a for k in b))
        case "<":
            return native_bool(len(a) < len(b) and all(k in b for k in a))
    return None


def _bytes_infix(op: str, left: Bytes, right: Bytes) -> Optional[BlueObject]:
    if op == "+":
        return Bytes(left.value + right.value)
    if op in ("&", "|", "^"):
        if len(left.value) != len(right.value):
            raise BlueTypeError(f"length of left and right bytes must match for {op}: "
                                f"{len(left.value)} != {len(right.value)}")
        fn = {"&": lambda p, q: p & q, "|": lambda p, q: p | q, "^": lambda p, q: p ^ q}[op]
        return Bytes(bytes(fn(p, q) for p, q in zip(left.value, right.value)))
    if op in COMPARISONS:
        return _compare(op, left.value, right.value)
    return None


Handler = Callable[[str, BlueObject, BlueObject], Optional[BlueObject]]


def _build_dispatch() -> Dict[Tuple[TypeTag, TypeTag], Handler]:
    table: Dict[Tuple[TypeTag, TypeTag], Handler] = {}
    numeric = (TypeTag.INTEGER, TypeTag.BIG_INTEGER, TypeTag.UINTEGER, TypeTag.FLOAT, TypeTag.BIG_FLOAT)
    for a in numeric:
        for b in numeric:
            table[(a, b)] = _numeric_infix
    table[(TypeTag.STRING, TypeTag.STRING)] = _string_infix
    table[(TypeTag.LIST, TypeTag.LIST)] = _list_infix
    table[(TypeTag.SET, TypeTag.SET)] = _set_infix
    table[(TypeTag.BYTES, TypeTag.BYTES)] = _bytes_infix
    for count in _INTEGER_DOMAINS:
        for seq in (TypeTag.STRING, TypeTag.LIST):
            table[(seq, count)] = _repeat
            table[(count, seq)] = _repeat
    return table


DISPATCH = _build_dispatch()


def contains(container: BlueObject, item: BlueObject) -> bool:
    match container:
        case String():
            if not isinstance(item, String):
                raise BlueTypeError(f"'in <string>' requires a string, got {item.type_tag.value}")
            return item.value in container.value
        case ListValue():
            return any(values_equal(item, e) for e in container.elements)
        case SetValue():
            return container.contains(item)
        case MapValue():
            return container.get(item) is not None
        case StructValue():
            return isinstance(item, String) and item.value in container.fields
        case Bytes():
            if isinstance(item, Bytes):
                return item.value in container.value
            if isinstance(item, (Integer, UInteger)):
                return 0 <= item.value <= 255 and item.value in container.value
    raise BlueTypeError(f"unknown operator: {item.type_tag.value} in {container.type_tag.value}")


def eval_infix(op: str, left: BlueObject, right: BlueObject) -> BlueObject:
    """Applies a binary operator other than the short-circuiting `and`/`or`."""
    if op == "==":
        return native_bool(values_equal(left, right))
    if op == "!=":
        return native_bool(not values_equal(left, right))
    if op in ("in", "notin"):
        found = contains(right, left)
        return native_bool(found if op == "in" else not found)
    if op == "+" and isinstance(left, SetValue) != isinstance(right, SetValue):
        target, item = (left, right) if isinstance(left, SetValue) else (right, left)
        out = SetValue(dict(target.elements))
        out.add(item)
        return out
    handler = DISPATCH.get((left.type_tag, right.type_tag))
    if handler is not None:
        result = handler(op, left, right)
        if result is not None:
            return result
    raise BlueTypeError(f"unknown operator: {left.type_tag.value} {op} {right.type_tag.value}")


def eval_prefix(op: str, right: BlueObject) -> BlueObject:
    if op in ("!", "not"):
        return native_bool(not is_truthy(right))
    if op == "-":
        match right:
            case Integer() | UInteger():
                return make_integer(-right.value)
            case BigInteger():
                return BigInteger(-right.value)
            case Float():
                return Float(-right.value)
            case BigFloat():
                return BigFloat(-right.value)
    if op == "~":
        match right:
            case Integer():
                return Integer(~right.value)
            case UInteger():
                return UInteger(right.value ^ MASK64)
            case BigInteger():
                return BigInteger(~right.value)
            case Bytes():
                return Bytes(bytes(b ^ 0xFF for b in right.value))
    raise BlueTypeError(f"unknown operator: {op}{right.type_tag.value}")


def compare_values(a: BlueObject, b: BlueObject) -> int:
    """Three-way comparison used for sorting."""
    if eval_infix("<", a, b) is native_bool(True):
        return -1
    if eval_infix(">", a, b) is native_bool(True):
        return 1
    return 0


def apply_compound(operator: str, current: BlueObject, value: BlueObject) -> BlueObject:
    """`x += v` and friends: strip the trailing `=` and apply the operator."""
    return eval_infix(operator[:-1], current, value)


__all__ = [
    "DISPATCH", "apply_compound", "compare_values", "contains", "eval_infix", "eval_prefix",
    "integer_range", "make_integer", "make_unsigned", "to_decimal",
]
