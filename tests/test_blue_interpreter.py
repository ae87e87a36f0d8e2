import sys

import pytest

from blue import ScriptRunner
from blue.blue_datatypes import BigInteger, Integer, ListValue, String, TRUE, FALSE
from blue.blue_host import DictSourceLoader


async def run_blue(src: str):
    runner = ScriptRunner(loader=DictSourceLoader())
    try:
        return await runner.handle_script(src)
    finally:
        runner.close()


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


def shown(res) -> str:
    assert res.status == 'success', res.error_message
    return res.value.inspect()


# --- end to end scenarios ---

@pytest.mark.asyncio
async def test_recursive_fibonacci():
    src = """
    fun fib(n) {
      if n < 2 { return n }
      fib(n - 1) + fib(n - 2)
    }
    fib(10)
    """
    assert_ok(await run_blue(src), Integer(55))


@pytest.mark.asyncio
async def test_closure_captures_argument():
    src = """
    fun adder(n) { fun(x) { x + n } }
    val add90 = adder(90)
    add90(9)
    """
    assert_ok(await run_blue(src), Integer(99))


@pytest.mark.asyncio
async def test_doubling_loop_promotes_to_big_integer():
    src = "var a = 2; var i = 0; for i < 100 { a = a * 2; i = i + 1 }; a"
    assert_ok(await run_blue(src), BigInteger(2 ** 101))


@pytest.mark.asyncio
async def test_map_literal_prints_in_insertion_order():
    res = await run_blue("val m = {b: 1, a: 2, c: 3}; m")
    assert shown(res) == "{b: 1, a: 2, c: 3}"


@pytest.mark.asyncio
async def test_map_index_assignment_appends_new_keys():
    res = await run_blue('var m = {"b": 1, "a": 2}; m["c"] = 3; m')
    assert shown(res) == "{b: 1, a: 2, c: 3}"


@pytest.mark.asyncio
async def test_map_index_assignment_keeps_position_of_existing_key():
    res = await run_blue('var m = {"b": 1, "a": 2}; m["c"] = 3; m["b"] = 5; m')
    assert shown(res) == "{b: 5, a: 2, c: 3}"
    res = await run_blue('var m = {"b": 1, "a": 2}; m["b"] += 10; m')
    assert shown(res) == "{b: 11, a: 2}"


@pytest.mark.asyncio
async def test_reassigning_val_is_an_error():
    assert_error(await run_blue("val x = 1; x = 2"), "immutable")


@pytest.mark.asyncio
async def test_process_message_round_trip():
    src = """
    var p = spawn(fun() { var msg = recv(self()); send(msg.from, msg.value + 1) })
    send(p, {from: self(), value: 41})
    recv(self()).value
    """
    assert_ok(await run_blue(src), Integer(42))


# --- bindings and expressions ---

@pytest.mark.asyncio
async def test_string_interpolation_uses_display_form():
    res = await run_blue('val n = 3; val xs = [1, "a"]; "n=#{n + 1} xs=#{xs}"')
    assert_ok(res, String("n=4 xs=[1, a]"))


@pytest.mark.asyncio
async def test_val_cannot_be_shadowed_by_var():
    assert_error(await run_blue("val x = 1; var x = 2"), "'x' is immutable")


@pytest.mark.asyncio
async def test_mutating_builtin_rejects_val_receiver():
    res = await run_blue("val xs = [1]; push(xs, 2)")
    assert_error(res, "'xs' is immutable and cannot be modified by push")


@pytest.mark.asyncio
async def test_index_assignment_on_val_is_rejected():
    assert_error(await run_blue('val m = {"a": 1}; m["a"] = 2'), "immutable")


@pytest.mark.asyncio
async def test_undefined_identifier():
    assert_error(await run_blue("y + 1"), "identifier not found: y")


@pytest.mark.asyncio
async def test_compound_assignment():
    assert_ok(await run_blue("var x = 5; x *= 3; x -= 1; x"), Integer(14))


@pytest.mark.asyncio
async def test_or_returns_right_operand_after_null():
    res = await run_blue("[null or 5, false or 5, 1 and 0, null and 1]")
    assert res.value == ListValue([Integer(5), TRUE, TRUE, FALSE])


@pytest.mark.asyncio
async def test_indexing_and_slices():
    src = 'val xs = [1, 2, 3, 4]; [xs[-1], xs[1..2], xs[0..<2], "hello"[1..3]]'
    assert shown(await run_blue(src)) == "[4, [2, 3], [1, 2], ell]"


@pytest.mark.asyncio
async def test_index_out_of_range():
    assert_error(await run_blue("val xs = [1, 2]; xs[5]"), "RangeError: index out of range")


@pytest.mark.asyncio
async def test_list_index_assignment():
    src = "var xs = [1, 2, 3]; xs[0] = 9; xs[-1] += 1; xs"
    assert shown(await run_blue(src)) == "[9, 2, 4]"
    assert_error(await run_blue("var xs = [1, 2]; xs[2] = 5"), "RangeError: index out of range: 2 (length 2)")
    assert_error(await run_blue('var xs = [1]; xs["a"] = 5'), "index must be an integer")


@pytest.mark.asyncio
async def test_string_index_assignment_is_a_type_error():
    res = await run_blue('var s = "abc"; s[0] = "x"')
    assert_error(res, "TypeError: strings are immutable; index assignment is not supported")


@pytest.mark.asyncio
async def test_struct_fields_can_be_updated_but_not_added():
    assert_ok(await run_blue("var p = @{x: 1, y: 2}; p.x = 10; p.x + p.y"), Integer(12))
    assert_error(await run_blue("var p = @{x: 1}; p.z = 1"), "struct has no field")


@pytest.mark.asyncio
async def test_set_literal_union():
    assert shown(await run_blue("val s = {1, 2} | {2, 3}; s")) == "{1, 2, 3}"


@pytest.mark.asyncio
async def test_eval_runs_in_current_scope():
    assert_ok(await run_blue('val base = 40; eval("base + 2")'), Integer(42))


# --- control flow ---

@pytest.mark.asyncio
async def test_for_in_with_break_and_continue():
    src = """
    var out = []
    for x in 1..6 {
      if x == 2 { continue }
      if x == 5 { break }
      push(out, x)
    }
    out
    """
    assert shown(await run_blue(src)) == "[1, 3, 4]"


@pytest.mark.asyncio
async def test_for_in_destructures_index_and_value():
    src = "var total = 0; for [i, x] in [10, 20] { total += i * x }; total"
    assert_ok(await run_blue(src), Integer(20))


@pytest.mark.asyncio
async def test_c_style_for():
    src = "var s = 0; for (var i = 0; i < 4; i += 1) { s += i }; s"
    assert_ok(await run_blue(src), Integer(6))


@pytest.mark.asyncio
async def test_for_over_integer_and_string():
    src = 'var parts = []; for i in 3 { push(parts, i) }; for c in "ab" { push(parts, c) }; parts'
    assert shown(await run_blue(src)) == "[0, 1, 2, a, b]"


@pytest.mark.asyncio
async def test_for_over_huge_integer_stops_at_break():
    src = "var n = 0; for i in 10n ** 30 { n = i; if i == 2 { break } }; n"
    assert_ok(await run_blue(src), Integer(2))


@pytest.mark.asyncio
async def test_match_with_subject_and_wildcard():
    src = """
    fun describe(x) { match x { 1 => { "one" }, 2 => "two", _ => "many" } }
    [describe(1), describe(2), describe(9)]
    """
    assert shown(await run_blue(src)) == "[one, two, many]"


@pytest.mark.asyncio
async def test_match_without_subject_uses_truthiness():
    assert_ok(await run_blue('val x = 5; match { x > 3 => "big", _ => "small" }'), String("big"))


@pytest.mark.asyncio
async def test_comprehensions():
    assert shown(await run_blue("[x * x for x in 1..5 if x % 2 == 1]")) == "[1, 9, 25]"
    src = 'val m = {"a": 1, "b": 2}; val tens = {k: v * 10 for [k, v] in m}; tens'
    assert shown(await run_blue(src)) == "{a: 10, b: 20}"
    assert shown(await run_blue("val s = {x % 2 for x in [1, 2, 3]}; s")) == "{1, 0}"


@pytest.mark.asyncio
async def test_try_catch_finally():
    src = """
    var log = []
    var msg = null
    try { error("boom") } catch (e) { msg = e.kind + ": " + e.message } finally { push(log, "done") }
    [msg, log]
    """
    assert shown(await run_blue(src)) == "[Error: boom, [done]]"


@pytest.mark.asyncio
async def test_catch_exposes_error_kind():
    assert_ok(await run_blue("try { 1 / 0 } catch (e) { e.kind }"), String("ArithmeticError"))


@pytest.mark.asyncio
async def test_negative_power_of_huge_integer_is_big_float():
    res = await run_blue("try { type((10n ** 400) ** -1) } catch (e) { 'caught' }")
    assert_ok(res, String("BIG_FLOAT"))


@pytest.mark.asyncio
async def test_out_of_range_operands_are_catchable():
    assert_ok(await run_blue("try { 'a' * (10n ** 30) } catch (e) { e.kind }"), String("RangeError"))
    assert_ok(await run_blue("try { 300 in to_bytes('ab') } catch (e) { 'caught' }"), FALSE)
    assert_ok(await run_blue("97 in to_bytes('ab')"), TRUE)


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(sys, "get_int_max_str_digits"), reason="no int string limit")
async def test_host_value_errors_become_catchable_errors():
    assert_ok(await run_blue('try { "#{10n ** 5000}" } catch (e) { e.kind }'), String("ArithmeticError"))
    res = await run_blue('"#{10n ** 5000}"')
    assert_error(res, "ArithmeticError: Exceeds the limit")


@pytest.mark.asyncio
async def test_deeply_nested_source_is_an_error_result():
    depth = 5000
    res = await run_blue("(" * depth + "1" + ")" * depth)
    assert_error(res, "RecursionError")


@pytest.mark.asyncio
async def test_rethrown_error_keeps_its_kind():
    src = """
    val xs = [1]
    try {
      try { xs[5] } catch (e) { error(e) }
    } catch (outer) { outer.kind }
    """
    assert_ok(await run_blue(src), String("RangeError"))


@pytest.mark.asyncio
async def test_return_outside_function():
    assert_error(await run_blue("return 1"), "return outside function")


@pytest.mark.asyncio
async def test_break_outside_loop():
    assert_error(await run_blue("break"), "break outside loop")


# --- functions ---

@pytest.mark.asyncio
async def test_default_and_named_arguments():
    src = "fun area(w, h = 2) { w * h }; [area(3), area(3, 4), area(3, h = 5)]"
    assert shown(await run_blue(src)) == "[6, 12, 15]"


@pytest.mark.asyncio
async def test_user_function_arity_errors():
    assert_error(await run_blue("fun f(a) { a }; f(1, 2)"), "`f` wrong number of args. got=2, want=1")
    assert_error(await run_blue("fun f(a, b) { a }; f(1)"), "missing argument 'b'")
    assert_error(await run_blue("fun f(a) { a }; f(1, a = 2)"), "multiple values for argument 'a'")
    assert_error(await run_blue("fun f(a) { a }; f(b = 2)"), "unexpected named argument 'b'")


@pytest.mark.asyncio
async def test_builtins_reject_named_arguments():
    assert_error(await run_blue("len([1], x = 2)"), "`len` does not accept named arguments")


@pytest.mark.asyncio
async def test_uniform_call_syntax():
    src = "fun double(x) { x * 2 }; val n = 21; [n.double(), [3, 1, 2].sorted(), \"ab\".upper()]"
    assert shown(await run_blue(src)) == "[42, [1, 2, 3], AB]"


@pytest.mark.asyncio
async def test_map_member_function_is_called_without_receiver():
    src = 'val obj = {"greet": |name| => { "hi " + name }}; obj.greet("bo")'
    assert_ok(await run_blue(src), String("hi bo"))


@pytest.mark.asyncio
async def test_closures_share_mutable_state():
    src = """
    fun counter() {
      var n = 0
      fun() { n = n + 1; n }
    }
    val c = counter()
    c(); c(); c()
    """
    assert_ok(await run_blue(src), Integer(3))


@pytest.mark.asyncio
async def test_calling_a_non_function():
    assert_error(await run_blue("val x = 1; x()"), "not a function: INTEGER")
