import pytest

from blue import ScriptRunner
from blue.blue_host import DictSourceLoader


@pytest.fixture(autouse=True)
def no_color(monkeypatch):
    monkeypatch.delenv("BLUE_COLOR", raising=False)


def stderr_messages(res):
    return [e["message"] for e in res.side_effects if e.get("topics") == ["stderr"]]


@pytest.mark.asyncio
async def test_runtime_error_has_location_context_and_trace():
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script("val x = 1\nx = 2")
    assert res.status == 'error'
    msg = res.error_message or ''
    print(msg)
    assert msg.startswith("EvaluatorError: NameError: 'x' is immutable and cannot be reassigned")
    assert "<script>:2:" in msg
    assert "> 2 | x = 2" in msg
    assert "^" in msg
    assert "Trace (most recent first):" in msg
    assert stderr_messages(res) == [msg]
    assert res.error_token.line == 2
    assert res.format_error().startswith("Error on line 2, col ")


@pytest.mark.asyncio
async def test_trace_lists_the_call_chain():
    runner = ScriptRunner(loader=DictSourceLoader())
    script = """fun inner(x) { x / 0 }
fun outer(y) { inner(y) }
outer(5)
"""
    res = await runner.handle_script(script, file_path="chain.b")
    assert res.status == 'error', res.error_message
    msg = res.error_message or ''
    print(msg)
    assert "ArithmeticError: division by zero" in msg
    assert "chain.b:1:" in msg
    assert "x / 0" in msg
    assert "at chain.b:3:" in msg
    assert "outer(5)" in msg
    assert "inner(y)" in msg


@pytest.mark.asyncio
async def test_output_before_an_error_is_kept():
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script('println("before")\n1 / 0')
    assert res.status == 'error'
    topics = [e["topics"] for e in res.side_effects]
    assert topics == [["stdout"], ["stderr"]]
    assert res.side_effects[0]["message"] == "before\n"


@pytest.mark.asyncio
async def test_parse_error_emits_stderr():
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script("val = 1")
    assert res.status == 'error'
    msg = res.error_message or ''
    assert msg.startswith("ParserError: expected next token to be IDENT, got '=' instead")
    assert "<script>:1:5" in msg
    assert "> 1 | val = 1" in msg
    assert stderr_messages(res) == [msg]
    assert res.error_token.line == 1 and res.error_token.column == 5


@pytest.mark.asyncio
async def test_every_parse_error_is_reported():
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script("var = 1\nval y 2")
    assert res.status == 'error'
    assert res.error_message.count("ParserError:") == 2


@pytest.mark.asyncio
async def test_color_output_is_opt_in(monkeypatch):
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.delenv("BLUE_NO_COLOR", raising=False)
    monkeypatch.setenv("BLUE_COLOR", "1")
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script("1 / 0")
    assert res.error_message.startswith("\x1b[31mEvaluatorError:")
    monkeypatch.setenv("NO_COLOR", "1")
    plain = ScriptRunner(loader=DictSourceLoader())
    res = await plain.handle_script("1 / 0")
    assert res.error_message.startswith("EvaluatorError:")


@pytest.mark.asyncio
async def test_side_effects_of_earlier_runs_are_not_rewritten():
    runner = ScriptRunner(loader=DictSourceLoader())
    first = await runner.handle_script('print("one")')
    second = await runner.handle_script('print("two")')
    assert [e["message"] for e in first.side_effects] == ["one"]
    assert [e["message"] for e in second.side_effects] == ["two"]


def test_format_error_is_empty_on_success():
    from blue.blue_runtime import ExecutionResult
    assert ExecutionResult(status='success', value=None).format_error() == ""
