import pytest

from blue import ScriptRunner
from blue.blue_datatypes import Integer, ListValue, ProcessError, String
from blue.blue_host import DictSourceLoader
from blue.blue_process import BROKER, KV_STORE


async def run_blue(src: str):
    runner = ScriptRunner(loader=DictSourceLoader())
    try:
        return await runner.handle_script(src)
    finally:
        runner.close()


def shown(res) -> str:
    assert res.status == 'success', res.error_message
    return res.value.inspect()


@pytest.mark.asyncio
async def test_publish_reaches_topic_subscribers_only():
    src = """
    val s = subscribe("news")
    publish("news", 1)
    publish("other", 2)
    val m = s.recv()
    [m.topic, m.msg]
    """
    assert shown(await run_blue(src)) == "[news, 1]"


@pytest.mark.asyncio
async def test_publish_and_subscriber_counts():
    src = """
    val a = subscribe("t")
    val b = subscribe(["t", "u"])
    [publish("t", 0), publish("u", 0), subscriber_count(), subscriber_count("u")]
    """
    assert shown(await run_blue(src)) == "[2, 1, 2, 1]"


@pytest.mark.asyncio
async def test_broadcast_to_all_or_selected_topics():
    src = """
    val a = subscribe("x")
    val b = subscribe("y")
    val everyone = broadcast("hi")
    val some = broadcast("yo", ["y"])
    [everyone, some, a.recv().topic, b.recv().msg, b.recv().topic]
    """
    assert shown(await run_blue(src)) == "[2, 1, *, hi, y]"


@pytest.mark.asyncio
async def test_topics_can_be_added_and_removed():
    src = 'val s = subscribe("a"); add_topic(s, "b"); remove_topic(s, "a"); s.topics'
    assert shown(await run_blue(src)) == "[b]"


@pytest.mark.asyncio
async def test_unsubscribed_subscriber_is_closed():
    src = 'val s = subscribe("a"); unsubscribe(s); [publish("a", 1), subscriber_count("a")]'
    assert shown(await run_blue(src)) == "[0, 0]"
    res = await run_blue('val s = subscribe("a"); unsubscribe(s); s.recv()')
    assert res.status == 'error'
    assert "subscriber channel was closed" in res.error_message


@pytest.mark.asyncio
async def test_subscriber_poll_timeout():
    res = await run_blue('val s = subscribe("quiet"); s.poll(10)')
    assert res.status == 'error'
    assert "subscriber timed out" in res.error_message


@pytest.mark.asyncio
async def test_subscribe_rejects_non_string_topics():
    res = await run_blue("subscribe([1])")
    assert res.status == 'error'
    assert "`subscribe` expects argument 1 to be LIST of STRING. got=INTEGER" in res.error_message


@pytest.mark.asyncio
async def test_broker_delivers_topic_envelopes():
    sub = BROKER.subscribe(["jobs"])
    assert BROKER.publish("jobs", Integer(7)) == 1
    envelope = await sub.poll(100)
    assert envelope.get(String("topic")) == String("jobs")
    assert envelope.get(String("msg")) == Integer(7)
    BROKER.unsubscribe(sub)
    with pytest.raises(ProcessError):
        await sub.poll()


def test_broker_counts_only_active_subscribers():
    a = BROKER.subscribe(["x"])
    BROKER.subscribe(["x", "y"])
    assert BROKER.subscriber_count("x") == 2
    BROKER.unsubscribe(a)
    assert BROKER.subscriber_count("x") == 1
    assert BROKER.subscriber_count() == 1


@pytest.mark.asyncio
async def test_kv_store_is_shared_between_runners():
    res = await run_blue('kv_put("shared", [1, 2]); kv_get("missing")')
    assert shown(res) == "null"
    assert shown(await run_blue('kv_get("shared")')) == "[1, 2]"
    assert shown(await run_blue('[kv_delete("shared"), kv_get("shared")]')) == "[[1, 2], null]"


def test_kv_store_uses_value_equality_for_keys():
    KV_STORE.put(ListValue([Integer(1)]), String("list key"))
    assert KV_STORE.get(ListValue([Integer(1)])) == String("list key")
    assert KV_STORE.get(Integer(1)) is None
