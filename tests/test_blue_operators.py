import math
import sys
from decimal import Decimal

import pytest

from blue.blue_datatypes import (
    BigFloat, BigInteger, BlueArithmeticError, BlueTypeError, Bytes, Float, Integer, ListValue,
    RangeError, SetValue, String, UInteger, TRUE, FALSE,
)
from blue.blue_operators import compare_values, eval_infix, eval_prefix, integer_range

INT64_MIN, INT64_MAX = -2 ** 63, 2 ** 63 - 1


def test_integer_overflow_promotes():
    assert eval_infix("+", Integer(INT64_MAX), Integer(1)) == BigInteger(2 ** 63)
    assert eval_infix("*", Integer(2 ** 40), Integer(2 ** 40)) == BigInteger(2 ** 80)
    assert eval_infix("**", Integer(2), Integer(64)) == BigInteger(2 ** 64)


def test_min_divided_by_minus_one_promotes():
    assert eval_infix("/", Integer(INT64_MIN), Integer(-1)) == BigInteger(2 ** 63)
    assert eval_prefix("-", Integer(INT64_MIN)) == BigInteger(2 ** 63)


def test_integer_division_truncates():
    assert eval_infix("/", Integer(7), Integer(2)) == Integer(3)
    assert eval_infix("/", Integer(-7), Integer(2)) == Integer(-3)
    assert eval_infix("/", Integer(1), Integer(5)) == Integer(0)
    assert eval_infix("//", Integer(-7), Integer(2)) == Integer(-4)


def test_modulo_is_euclidean():
    assert eval_infix("%", Integer(-7), Integer(3)) == Integer(2)
    assert eval_infix("%", Integer(7), Integer(-3)) == Integer(1)


@pytest.mark.parametrize("op", ["/", "//", "%"])
def test_integer_zero_divisor(op):
    with pytest.raises(BlueArithmeticError):
        eval_infix(op, Integer(1), Integer(0))


def test_float_division_by_zero():
    assert eval_infix("/", Float(1.0), Float(0.0)).value == math.inf
    assert eval_infix("/", Float(-1.0), Float(0.0)).value == -math.inf
    assert math.isnan(eval_infix("/", Float(0.0), Float(0.0)).value)


def test_negative_exponent_gives_float():
    assert eval_infix("**", Integer(2), Integer(-1)) == Float(0.5)


def test_negative_exponent_on_huge_integer_gives_big_float():
    result = eval_infix("**", BigInteger(10 ** 400), Integer(-1))
    assert isinstance(result, BigFloat)
    assert result.value == Decimal("1E-400")


def test_repeat_count_beyond_index_range():
    with pytest.raises(RangeError, match="repeat count too large"):
        eval_infix("*", String("a"), BigInteger(10 ** 30))
    with pytest.raises(RangeError):
        eval_infix("*", BigInteger(sys.maxsize + 1), ListValue([Integer(1)]))
    assert eval_infix("*", String("ab"), Integer(-2)) == String("")


def test_mixed_promotion():
    assert eval_infix("+", Integer(1), Float(0.5)) == Float(1.5)
    result = eval_infix("+", BigInteger(2 ** 70), Float(0.5))
    assert isinstance(result, BigFloat)
    assert result.value == Decimal(2 ** 70) + Decimal("0.5")
    assert eval_infix("+", UInteger(3), Integer(4)) == UInteger(7)


def test_unsigned_rejects_negative_operands():
    with pytest.raises(BlueTypeError):
        eval_infix("&", UInteger(3), Integer(-1))


def test_bitwise_and_shift():
    assert eval_infix("&", Integer(6), Integer(3)) == UInteger(2)
    assert eval_infix("|", UInteger(4), UInteger(1)) == UInteger(5)
    assert eval_infix("<<", Integer(1), Integer(64)) == BigInteger(2 ** 64)
    assert eval_prefix("~", UInteger(0)) == UInteger(2 ** 64 - 1)


def test_bytes_bitwise_requires_equal_length():
    assert eval_infix("^", Bytes(b"\x0f"), Bytes(b"\xff")) == Bytes(b"\xf0")
    with pytest.raises(BlueTypeError):
        eval_infix("&", Bytes(b"ab"), Bytes(b"a"))


def test_set_operators():
    a = SetValue.of([Integer(1), Integer(2)])
    b = SetValue.of([Integer(2), Integer(3)])
    assert [v.value for v in eval_infix("|", a, b).values()] == [1, 2, 3]
    assert [v.value for v in eval_infix("&", a, b).values()] == [2]
    assert [v.value for v in eval_infix("^", a, b).values()] == [1, 3]
    assert [v.value for v in eval_infix("-", a, b).values()] == [1]
    assert eval_infix(">=", a, SetValue.of([Integer(1)])) is TRUE
    assert eval_infix("<=", a, b) is FALSE
    assert [v.value for v in eval_infix("+", a, Integer(9)).values()] == [1, 2, 9]


def test_strings_and_lists():
    assert eval_infix("+", String("ab"), String("c")) == String("abc")
    assert eval_infix("<", String("abc"), String("abd")) is TRUE
    assert eval_infix("*", String("ab"), Integer(3)) == String("ababab")
    assert eval_infix("+", ListValue([Integer(1)]), ListValue([Integer(2)])) == ListValue([Integer(1), Integer(2)])
    assert eval_infix("in", String("b"), String("abc")) is TRUE
    assert eval_infix("notin", Integer(4), ListValue([Integer(1)])) is TRUE


def test_ranges():
    assert [v.value for v in eval_infix("..", Integer(1), Integer(3)).elements] == [1, 2, 3]
    assert [v.value for v in eval_infix("..<", Integer(3), Integer(0)).elements] == [3, 2, 1]
    assert [v.value for v in eval_infix("..", String("a"), String("c")).elements] == ["a", "b", "c"]
    assert list(integer_range(5, 5, False)) == []


def test_equality_across_types_never_raises():
    assert eval_infix("==", Integer(1), String("1")) is FALSE
    assert eval_infix("!=", Integer(1), Float(1.0)) is FALSE


def test_unknown_operator_message():
    with pytest.raises(BlueTypeError) as exc:
        eval_infix("-", String("a"), Integer(1))
    assert exc.value.message == "unknown operator: STRING - INTEGER"


def test_in_on_empty_collections_is_false():
    from blue.blue_datatypes import MapValue
    for empty in (ListValue([]), MapValue(), SetValue()):
        assert eval_infix("in", Integer(1), empty) is FALSE


def test_byte_membership_outside_byte_range_is_false():
    data = Bytes(b"ab")
    assert eval_infix("in", Integer(97), data) is TRUE
    assert eval_infix("in", Integer(300), data) is FALSE
    assert eval_infix("in", Integer(-1), data) is FALSE
    assert eval_infix("in", UInteger(2 ** 40), data) is FALSE


def test_compare_values_orders_mixed_numbers():
    assert compare_values(Integer(1), Float(1.5)) == -1
    assert compare_values(BigInteger(10 ** 30), Integer(1)) == 1
    assert compare_values(String("a"), String("a")) == 0
