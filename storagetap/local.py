"""In-process pipe passing messages between threads through bounded channels."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Iterable, Optional

from storagetap.pipe import (Consumer, Pipe, PipeConfig, PipeError, Producer,
                             register_plugin)

_POLL_INTERVAL = 0.05


def _stopped(stops: Iterable[threading.Event]) -> bool:
    return any(event.is_set() for event in stops)


class _Channel:
    """Bounded FIFO; capacity 0 makes a sender wait until its item is taken."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: deque[Any] = deque()
        self._cond = threading.Condition()
        self._sent = 0
        self._taken = 0

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def put(self, item: Any, stops: tuple[threading.Event, ...]) -> bool:
        limit = max(self._capacity, 1)
        with self._cond:
            while len(self._items) >= limit:
                if _stopped(stops):
                    return False
                self._cond.wait(_POLL_INTERVAL)
            self._items.append(item)
            seq = self._sent
            self._sent += 1
            self._cond.notify_all()
            if self._capacity:
                return True
            while self._taken <= seq:
                if _stopped(stops):
                    # Nobody took it: withdraw the only buffered item, ours.
                    self._items.pop()
                    self._sent -= 1
                    self._cond.notify_all()
                    return False
                self._cond.wait(_POLL_INTERVAL)
            return True

    def get(self, stops: tuple[threading.Event, ...]) -> tuple[bool, Any]:
        with self._cond:
            while not self._items:
                if _stopped(stops):
                    return False, None
                self._cond.wait(_POLL_INTERVAL)
            item = self._items.popleft()
            self._taken += 1
            self._cond.notify_all()
            return True, item


class LocalProducerConsumer(Producer, Consumer):
    """Both ends of a local pipe; pushing ``None`` signals end of stream."""

    def __init__(self, channel: _Channel, cancel: threading.Event) -> None:
        self._channel = channel
        self._cancel = cancel
        self._closed = threading.Event()
        self._msg: Any = None

    def _stops(self) -> tuple[threading.Event, ...]:
        return (self._cancel, self._closed)

    def push(self, data: Any) -> None:
        if not self._channel.put(data, self._stops()):
            raise PipeError("Context canceled")

    def push_k(self, key: str, data: Any) -> None:
        self.push(data)

    def push_batch(self, key: str, data: Any) -> None:
        self.push(data)

    def push_batch_commit(self) -> None:
        """Nothing to do: batched messages are sent immediately."""

    def push_schema(self, key: str, data: bytes) -> None:
        self.push_batch(key, data)

    def fetch_next(self) -> bool:
        ok, msg = self._channel.get(self._stops())
        if not ok:
            return False
        self._msg = msg
        return msg is not None

    def pop(self) -> Any:
        return self._msg

    def close(self) -> None:
        self._closed.set()
        self._channel.wake()

    def close_on_failure(self) -> None:
        self.close()

    def save_offset(self) -> None:
        """Local pipes keep no offsets."""

    def set_format(self, fmt: str) -> None:
        """Local pipes pass messages through unchanged."""


class LocalPipe(Pipe):
    """Pipe whose topics are in-memory channels of ``batch_size`` slots."""

    def __init__(self, batch_size: int, cancel: Optional[threading.Event] = None) -> None:
        self.batch_size = batch_size
        self._cancel = cancel if cancel is not None else threading.Event()
        self._lock = threading.Lock()
        self._channels: dict[str, _Channel] = {}

    def type(self) -> str:
        return "local"

    def _register(self, topic: str) -> LocalProducerConsumer:
        with self._lock:
            channel = self._channels.get(topic)
            if channel is None:
                channel = _Channel(self.batch_size)
                self._channels[topic] = channel
        return LocalProducerConsumer(channel, self._cancel)

    def new_consumer(self, topic: str) -> LocalProducerConsumer:
        return self._register(topic)

    def new_producer(self, topic: str) -> LocalProducerConsumer:
        return self._register(topic)


def init_local_pipe(batch_size: int, cfg: Optional[PipeConfig] = None, db: Any = None,
                    cancel: Optional[threading.Event] = None) -> LocalPipe:
    """Construct a local pipe."""
    return LocalPipe(batch_size, cancel)


register_plugin("local", init_local_pipe)