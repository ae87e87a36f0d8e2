import asyncio

import pytest

from blue import ScriptRunner
from blue.blue_datatypes import Integer, ProcessError, String
from blue.blue_host import DictSourceLoader
from blue.blue_process import PROCESS_TABLE, Process


async def run_blue(src: str, runner: ScriptRunner | None = None):
    runner = runner or ScriptRunner(loader=DictSourceLoader())
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


@pytest.mark.asyncio
async def test_spawn_passes_extra_arguments():
    src = """
    val parent = self()
    spawn(|a, b| => { send(parent, a + b) }, 20, 22)
    recv()
    """
    assert_ok(await run_blue(src), Integer(42))


@pytest.mark.asyncio
async def test_ping_pong_keeps_message_order():
    src = """
    val p = spawn(fun() {
      for true {
        val m = recv()
        send(m.from, m["n"] * 2)
        if m["n"] == 3 { break }
      }
    })
    var results = []
    for n in 1..3 {
      send(p, {from: self(), "n": n})
      push(results, recv())
    }
    results
    """
    res = await run_blue(src)
    assert_ok(res)
    assert res.value.inspect() == "[2, 4, 6]"


@pytest.mark.asyncio
async def test_process_members():
    src = "val me = self(); me.send(7); [me.id, me.name, me.recv()]"
    res = await run_blue(src)
    assert_ok(res)
    assert res.value.inspect() == "[1, local, 7]"


@pytest.mark.asyncio
async def test_recv_timeout_raises_process_error():
    assert_error(await run_blue("recv(self(), 10)"), "ProcessError: recv timed out")


@pytest.mark.asyncio
async def test_wait_and_is_alive():
    src = """
    val p = spawn(fun() { sleep(5) })
    val before = is_alive(p)
    wait(p)
    [before, is_alive(p)]
    """
    res = await run_blue(src)
    assert_ok(res)
    assert res.value.inspect() == "[true, false]"


@pytest.mark.asyncio
async def test_wait_accepts_lists_of_processes():
    src = """
    val ps = [spawn(fun() { kv_put("a", 1) }), spawn(fun() { kv_put("b", 2) })]
    wait(ps)
    kv_get("a") + kv_get("b")
    """
    assert_ok(await run_blue(src), Integer(3))


@pytest.mark.asyncio
async def test_sending_to_finished_process_fails():
    src = "val p = spawn(fun() { 1 }); wait(p); send(p, 1)"
    assert_error(await run_blue(src), "channel is closed")


@pytest.mark.asyncio
async def test_failing_process_reports_on_stderr_without_failing_script():
    src = 'val p = spawn(fun() { error("bad") }); wait(p); "still running"'
    res = await run_blue(src)
    assert_ok(res, String("still running"))
    stderr = [e["message"] for e in res.side_effects if e["topics"] == ["stderr"]]
    assert stderr == ["process 2 exited with error: Error: bad"]


@pytest.mark.asyncio
async def test_process_operator_failure_reports_on_stderr():
    src = "val p = spawn(fun() { 'a' * (10n ** 30) }); wait(p); 'done'"
    res = await run_blue(src)
    assert_ok(res, String("done"))
    stderr = [e["message"] for e in res.side_effects if e["topics"] == ["stderr"]]
    assert stderr == ["process 2 exited with error: RangeError: repeat count too large: " + str(10 ** 30)]


@pytest.mark.asyncio
async def test_spawn_requires_a_function():
    assert_error(await run_blue("spawn(1)"), "spawn expects a function")


@pytest.mark.asyncio
async def test_spawned_process_gets_its_own_bindings():
    src = """
    var counter = 0
    val p = spawn(fun() { counter = 100; send(recv(), counter) })
    send(p, self())
    [recv(), counter]
    """
    res = await run_blue(src)
    assert_ok(res)
    assert res.value.inspect() == "[100, 0]"


@pytest.mark.asyncio
async def test_busy_loops_in_processes_interleave():
    src = """
    val me = self()
    fun worker(tag) {
      for i in 50 { kv_put(tag, i) }
      send(me, tag)
    }
    spawn(worker, "a")
    spawn(worker, "b")
    sorted([recv(), recv()])
    """
    res = await run_blue(src)
    assert_ok(res)
    assert res.value.inspect() == "[a, b]"


@pytest.mark.asyncio
async def test_cancel_tasks_stops_blocked_processes():
    runner = ScriptRunner(loader=DictSourceLoader())
    res = await runner.handle_script("spawn(fun() { recv() }); spawn(fun() { recv() }); 1")
    assert_ok(res)
    assert runner.cancel_tasks() == 2
    runner.close()


@pytest.mark.asyncio
async def test_closed_mailbox_wakes_waiting_receiver():
    proc = PROCESS_TABLE.new_process("local")
    waiter = asyncio.ensure_future(proc.recv())
    await asyncio.sleep(0)
    proc.close()
    with pytest.raises(ProcessError):
        await waiter
    with pytest.raises(ProcessError):
        proc.send(Integer(1))


@pytest.mark.asyncio
async def test_process_table_tracks_liveness():
    proc = PROCESS_TABLE.new_process("node-a")
    assert PROCESS_TABLE.get("node-a", proc.id) is proc
    assert PROCESS_TABLE.is_alive(proc)
    PROCESS_TABLE.remove(proc)
    assert not PROCESS_TABLE.is_alive(proc)
    assert isinstance(proc, Process)
