from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from blue.blue_datatypes import (
    FALSE, NULL, TRUE,
    BigFloat, BigInteger, BlueNameError, BlueTypeError, Bytes, Env, Float, Function, HashKey,
    Integer, ListValue, MapValue, Module, SetValue, String, StructValue, UInteger, fnv1a64, is_truthy,
    make_map, values_equal,
)
from blue.blue_operators import eval_infix

INT64_MIN, INT64_MAX = -2 ** 63, 2 ** 63 - 1

int64s = st.integers(min_value=INT64_MIN, max_value=INT64_MAX)
scalars = st.one_of(
    int64s.map(Integer),
    st.integers().map(BigInteger),
    st.floats(allow_nan=False).map(Float),
    st.text().map(String),
    st.binary().map(Bytes),
    st.booleans().map(lambda b: TRUE if b else FALSE),
)
values = st.recursive(
    scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4).map(ListValue),
        st.lists(children, max_size=4).map(SetValue.of),
    ),
    max_leaves=10,
)


def test_fnv1a64_known_vectors():
    assert fnv1a64(b"") == 0xCBF29CE484222325
    assert fnv1a64(b"a") == 0xAF63DC4C8601EC8C


@given(int64s)
def test_numeric_tower_hashes_agree(n):
    variants = [Integer(n), BigInteger(n), BigFloat(Decimal(n))]
    if n >= 0:
        variants.append(UInteger(n))
    if float(n) == n:
        variants.append(Float(float(n)))
    for a in variants:
        for b in variants:
            assert values_equal(a, b)
            assert a.hash_key() == b.hash_key()


@given(values, values)
def test_equal_values_hash_equally(a, b):
    if values_equal(a, b):
        assert a.hash_key() == b.hash_key()


@given(st.lists(st.tuples(st.text(max_size=3), int64s), max_size=6))
def test_map_equality_and_hash_ignore_order(pairs):
    forward, backward = MapValue(), MapValue()
    for k, v in pairs:
        forward.set(String(k), Integer(v))
    for k, v in reversed(list(forward.items())):
        backward.set(k, v)
    assert values_equal(forward, backward)
    assert forward.hash_key() == backward.hash_key()


@given(int64s, int64s)
def test_integer_addition_never_wraps(a, b):
    result = eval_infix("+", Integer(a), Integer(b))
    assert result.value == a + b
    expected = Integer if INT64_MIN <= a + b <= INT64_MAX else BigInteger
    assert type(result) is expected


def test_set_hash_is_order_insensitive():
    a = SetValue.of([Integer(1), String("x"), Integer(3)])
    b = SetValue.of([Integer(3), Integer(1), String("x")])
    assert values_equal(a, b)
    assert a.hash_key() == b.hash_key()


def test_unhashable_values_raise_type_error():
    with pytest.raises(BlueTypeError):
        MapValue().set(Module("m", Env()), Integer(1))


def test_map_keeps_insertion_order_on_rebind():
    m = make_map({"b": Integer(1), "a": Integer(2)})
    m.set(String("b"), Integer(5))
    assert [k.value for k in m.keys()] == ["b", "a"]
    assert m.get(String("b")) == Integer(5)


def test_numeric_keys_collide_across_types():
    m = MapValue()
    m.set(Integer(1), String("one"))
    assert m.get(Float(1.0)) == String("one")
    assert HashKey(BigInteger(1)) == HashKey(Integer(1))


def test_unrelated_types_are_unequal():
    assert not values_equal(Integer(1), String("1"))
    assert not values_equal(NULL, FALSE)
    assert not values_equal(ListValue([]), SetValue())


def test_nan_is_not_equal_to_itself():
    nan = Float(float("nan"))
    assert not values_equal(nan, nan)


@pytest.mark.parametrize("value, truthy", [
    (NULL, False), (FALSE, False), (TRUE, True),
    (ListValue([]), False), (ListValue([NULL]), True),
    (MapValue(), False), (SetValue(), False),
    (Integer(0), True), (String(""), True),
    (StructValue({}), True),
])
def test_truthiness(value, truthy):
    assert is_truthy(value) is truthy


def test_env_lookup_and_immutability():
    outer = Env()
    outer.define("x", Integer(1))
    outer.mark_immutable("x")
    inner = Env(outer)
    assert inner.get("x") == Integer(1)
    assert inner.is_immutable("x")
    with pytest.raises(BlueNameError):
        inner.set("x", Integer(2))
    inner.define("y", Integer(3))
    assert outer.get("y") is None
    inner.set("y", Integer(4))
    assert inner.get("y") == Integer(4)


def test_env_set_updates_defining_frame():
    outer = Env()
    outer.define("n", Integer(1))
    inner = Env(outer)
    inner.set("n", Integer(2))
    assert outer.get("n") == Integer(2)
    assert "n" not in inner.store


def test_env_clone_is_deep_over_frames_but_shares_values():
    outer = Env()
    shared = ListValue([])
    outer.define("xs", shared)
    outer.define("k", Integer(1))
    outer.mark_immutable("k")
    inner = Env(outer)
    copy = inner.clone()
    copy.enclosing.define("new", Integer(1))
    assert outer.get("new") is None
    assert copy.get("xs") is shared
    assert copy.is_immutable("k")


def test_function_hash_is_textual():
    from blue.blue_parser import parse
    a = parse("fun(x) { x + 1 }").statements[0].expression
    b = parse("fun(x) {\n  x + 1\n}").statements[0].expression
    fa = Function(a.params, a.defaults, a.body, Env())
    fb = Function(b.params, b.defaults, b.body, Env())
    assert fa.hash_key() == fb.hash_key()
