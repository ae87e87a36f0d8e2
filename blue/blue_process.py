"""
Lightweight processes, the pub/sub broker, and the shared key/value store.

All three are process-wide state, created once at import and reset only by
`clear_global_state()`.
"""
import asyncio
import itertools
import os
import sys
import threading
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from blue.blue_datatypes import (
    BlueObject, HashKey, ProcessError, String, TypeTag, make_map,
)

_CLOSED = object()


def _dbg(*parts):
    if os.environ.get("BLUE_DEBUG"):
        print("[DBG]", *parts, file=sys.stderr)


async def _next_item(queue: asyncio.Queue, timeout_ms: Optional[float], what: str,
                     waiter: Optional[str] = None):
    if timeout_ms is None:
        item = await queue.get()
    else:
        try:
            item = await asyncio.wait_for(queue.get(), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise ProcessError(f"{waiter or what} timed out") from None
    if item is _CLOSED:
        # Leave the marker for any other receiver waiting on the same queue.
        queue.put_nowait(_CLOSED)
        raise ProcessError(f"{what} channel was closed")
    return item


@dataclass(eq=False)
class Process(BlueObject):
    """A spawned task and its mailbox."""
    type_tag = TypeTag.PROCESS
    id: int
    node_name: str
    mailbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    closed: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def send(self, value: BlueObject):
        if self.closed:
            raise ProcessError(f"cannot send to process {self.id}: channel is closed")
        self.mailbox.put_nowait(value)

    async def recv(self, timeout_ms: Optional[float] = None) -> BlueObject:
        if self.closed and self.mailbox.empty():
            raise ProcessError("process channel was closed")
        return await _next_item(self.mailbox, timeout_ms, "process", "recv")

    def close(self):
        if not self.closed:
            self.closed = True
            self.mailbox.put_nowait(_CLOSED)


class ProcessTable:
    """Live processes keyed by (node name, id)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._procs: Dict[Tuple[str, int], Process] = {}
        self._ids = itertools.count(1)

    def new_process(self, node_name: str = "local") -> Process:
        with self._lock:
            proc = Process(next(self._ids), node_name)
            self._procs[(node_name, proc.id)] = proc
        _dbg("process new", node_name, proc.id)
        return proc

    def remove(self, proc: Process):
        with self._lock:
            self._procs.pop((proc.node_name, proc.id), None)
        _dbg("process exit", proc.node_name, proc.id)

    def get(self, node_name: str, pid: int) -> Optional[Process]:
        with self._lock:
            return self._procs.get((node_name, pid))

    def is_alive(self, proc: Process) -> bool:
        with self._lock:
            return self._procs.get((proc.node_name, proc.id)) is proc

    def clear(self):
        with self._lock:
            self._procs.clear()
            self._ids = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)


@dataclass(eq=False)
class Subscriber(BlueObject):
    """A broker subscription with its own message queue."""
    type_tag = TypeTag.SUBSCRIBER
    id: int
    topics: Set[str] = field(default_factory=set)
    mailbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    active: bool = True
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_topic(self, topic: str):
        with self._lock:
            self.topics.add(topic)

    def remove_topic(self, topic: str):
        with self._lock:
            self.topics.discard(topic)

    def has_topic(self, topic: str) -> bool:
        with self._lock:
            return topic in self.topics

    def deliver(self, message: BlueObject):
        if self.active:
            self.mailbox.put_nowait(message)

    async def poll(self, timeout_ms: Optional[float] = None) -> BlueObject:
        if not self.active and self.mailbox.empty():
            raise ProcessError("subscriber channel was closed")
        return await _next_item(self.mailbox, timeout_ms, "subscriber")

    def close(self):
        if self.active:
            self.active = False
            self.mailbox.put_nowait(_CLOSED)


class Broker:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count(1)

    def subscribe(self, topics: Iterable[str]) -> Subscriber:
        with self._lock:
            sub = Subscriber(next(self._ids), set(topics))
            self._subscribers[sub.id] = sub
        _dbg("broker subscribe", sub.id, sorted(sub.topics))
        return sub

    def unsubscribe(self, sub: Subscriber):
        with self._lock:
            self._subscribers.pop(sub.id, None)
        sub.close()
        _dbg("broker unsubscribe", sub.id)

    def _active(self) -> List[Subscriber]:
        with self._lock:
            return [s for s in self._subscribers.values() if s.active]

    def publish(self, topic: str, value: BlueObject) -> int:
        """Delivers `{topic, msg}` to every subscriber of `topic`; returns the count."""
        count = 0
        for sub in self._active():
            if sub.has_topic(topic):
                sub.deliver(make_map({"topic": String(topic), "msg": value}))
                count += 1
        _dbg("broker publish", topic, "delivered", count)
        return count

    def broadcast(self, value: BlueObject, topics: Optional[List[str]] = None) -> int:
        count = 0
        for sub in self._active():
            if topics is None:
                sub.deliver(make_map({"topic": String("*"), "msg": value}))
                count += 1
                continue
            for topic in topics:
                if sub.has_topic(topic):
                    sub.deliver(make_map({"topic": String(topic), "msg": value}))
                    count += 1
        return count

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        subs = self._active()
        if topic is None:
            return len(subs)
        return sum(1 for s in subs if s.has_topic(topic))

    def clear(self):
        with self._lock:
            subs = list(self._subscribers.values())
            self._subscribers.clear()
            self._ids = itertools.count(1)
        for sub in subs:
            sub.close()


class KVStore:
    """A process-wide map shared by every script on this interpreter."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[HashKey, BlueObject] = {}

    def put(self, key: BlueObject, value: BlueObject):
        with self._lock:
            self._data[HashKey(key)] = value

    def get(self, key: BlueObject) -> Optional[BlueObject]:
        with self._lock:
            return self._data.get(HashKey(key))

    def delete(self, key: BlueObject) -> Optional[BlueObject]:
        with self._lock:
            return self._data.pop(HashKey(key), None)

    def clear(self):
        with self._lock:
            self._data.clear()


PROCESS_TABLE = ProcessTable()
BROKER = Broker()
KV_STORE = KVStore()

current_process: ContextVar[Optional[Process]] = ContextVar("blue_current_process", default=None)


def clear_global_state():
    """Resets the process table, broker and KV store (used between tests)."""
    PROCESS_TABLE.clear()
    BROKER.clear()
    KV_STORE.clear()
