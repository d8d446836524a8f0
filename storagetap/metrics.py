"""Monitoring counters, process counters and timers over a pluggable backend.

A backend factory hands out low-level counter and timer objects by name.
The default factory reports nothing anywhere; its backends only keep the
last value they were given. :func:`init_metrics` builds the process-wide
:class:`Metrics` instance that :func:`get_global` returns.
"""

from __future__ import annotations

import datetime
import threading
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Protocol, Union

Tags = Optional[Mapping[str, str]]
Duration = Union[datetime.timedelta, float, int]


class CounterBackend(Protocol):
    def update(self, value: int) -> None: ...

    def tag(self, tags: Mapping[str, str]) -> None: ...


class TimerBackend(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def record(self, duration: datetime.timedelta) -> None: ...

    def tag(self, tags: Mapping[str, str]) -> None: ...


class MetricsFactory(Protocol):
    def init_counter(self, name: str) -> CounterBackend: ...

    def init_timer(self, name: str) -> TimerBackend: ...


class NoopCounterBackend:
    """Counter backend that reports nowhere, keeping only the last value."""

    def __init__(self) -> None:
        self.value = 0
        self.tags: dict[str, str] = {}

    def update(self, value: int) -> None:
        self.value = value

    def tag(self, tags: Mapping[str, str]) -> None:
        self.tags.update(tags)


class NoopTimerBackend:
    """Timer backend that reports nowhere, keeping only its last state."""

    def __init__(self) -> None:
        self.running = False
        self.last: Optional[datetime.timedelta] = None
        self.tags: dict[str, str] = {}

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def record(self, duration: datetime.timedelta) -> None:
        self.last = duration

    def tag(self, tags: Mapping[str, str]) -> None:
        self.tags.update(tags)


class NoopMetricsFactory:
    """Factory producing backends that report nothing."""

    def init_counter(self, name: str) -> NoopCounterBackend:
        return NoopCounterBackend()

    def init_timer(self, name: str) -> NoopTimerBackend:
        return NoopTimerBackend()


class Counter:
    """Thread-safe gauge whose value is reported on every change."""

    def __init__(self, factory: MetricsFactory, name: str, tags: Tags = None) -> None:
        self.name = name
        self._backend = factory.init_counter(name)
        if tags is not None:
            self._backend.tag(tags)
        self._lock = threading.Lock()
        self._value = 0

    def tag(self, tags: Mapping[str, str]) -> None:
        """Attach tags to the metric."""
        self._backend.tag(tags)

    def _change(self, new_value: Callable[[int], int]) -> None:
        with self._lock:
            self._value = new_value(self._value)
            current = self._value
        self._backend.update(current)

    def inc(self, value: int) -> None:
        """Increase the value by ``value``."""
        self._change(lambda v: v + value)

    def dec(self, value: int) -> None:
        """Decrease the value by ``value``."""
        self._change(lambda v: v - value)

    def set(self, value: int) -> None:
        """Set the value outright."""
        self._change(lambda _: value)

    def get(self) -> int:
        """Return the current value."""
        with self._lock:
            return self._value

    def emit(self) -> None:
        """Report the current value again."""
        self._backend.update(self.get())


class ProcessCounter:
    """Counts started, finished and currently running processes."""

    def __init__(self, factory: MetricsFactory, name: str, tags: Tags = None) -> None:
        self.name = name
        self.m_started = Counter(factory, name + "_started", tags)
        self.m_finished = Counter(factory, name + "_finished", tags)
        self.m_running = Counter(factory, name + "_running", tags)
        self._lock = threading.Lock()
        self.started = 0
        self.finished = 0

    def tag(self, tags: Mapping[str, str]) -> None:
        """Attach tags to all three underlying metrics."""
        self.m_started.tag(tags)
        self.m_finished.tag(tags)
        self.m_running.tag(tags)

    def inc(self) -> None:
        """Record a process start."""
        with self._lock:
            self.started += 1
            started, running = self.started, self.started - self.finished
        self.m_started.set(started)
        self.m_running.set(running)

    def dec(self) -> None:
        """Record a process finish."""
        with self._lock:
            self.finished += 1
            finished, running = self.finished, self.started - self.finished
        self.m_finished.set(finished)
        self.m_running.set(running)

    def emit(self) -> None:
        """Report all current values again."""
        with self._lock:
            started, finished = self.started, self.finished
        self.m_started.set(started)
        self.m_finished.set(finished)
        self.m_running.set(started - finished)

    def get(self) -> int:
        """Return the number of currently running processes."""
        with self._lock:
            return self.started - self.finished


class Timer:
    """Thin wrapper over a timer backend."""

    def __init__(self, factory: MetricsFactory, name: str, tags: Tags = None) -> None:
        self.name = name
        self._backend = factory.init_timer(name)
        if tags is not None:
            self._backend.tag(tags)

    def tag(self, tags: Mapping[str, str]) -> None:
        """Attach tags to the metric."""
        self._backend.tag(tags)

    def start(self) -> None:
        """Start measuring."""
        self._backend.start()

    def stop(self) -> None:
        """Stop measuring."""
        self._backend.stop()

    def record(self, duration: Duration) -> None:
        """Record a duration; plain numbers are taken as seconds."""
        if not isinstance(duration, datetime.timedelta):
            duration = datetime.timedelta(seconds=duration)
        self._backend.record(duration)


@dataclass
class Metrics:
    """Process-wide statistics reported for monitoring."""

    factory: MetricsFactory = field(default_factory=NoopMetricsFactory)
    num_tables_registered: Optional[Counter] = None
    idle_workers: Optional[ProcessCounter] = None


@dataclass
class Events:
    """Metrics shared by every event-processing component."""

    num_workers: ProcessCounter
    events_read: Counter
    events_written: Counter
    bytes_read: Counter
    bytes_written: Counter
    batch_size: Timer
    read_latency: Timer
    produce_latency: Timer


@dataclass
class SnapshotMetrics(Events):
    """Metrics of the snapshot reader."""


@dataclass
class StreamerMetrics(Events):
    """Metrics of the event streamer."""

    time_in_buffer: Timer


@dataclass
class BinlogReaderMetrics(Events):
    """Metrics of the binlog reader."""

    binlog_row_events_written: Counter
    binlog_query_events_written: Counter
    binlog_unhandled_events: Counter
    time_to_encounter: Timer
    num_tables_ingesting: Counter


MetricsConstructor = Callable[[Metrics], None]


def noop_metrics_init(metrics: Metrics) -> None:
    """Install the reporting-nothing factory into ``metrics``."""
    metrics.factory = NoopMetricsFactory()


_global: Optional[Metrics] = None


def init_metrics(constructor: Optional[MetricsConstructor] = None) -> Metrics:
    """Build the global metrics; ``constructor`` installs the backend factory."""
    global _global
    metrics = Metrics()
    (constructor or noop_metrics_init)(metrics)
    metrics.idle_workers = ProcessCounter(metrics.factory, "idle")
    metrics.num_tables_registered = Counter(metrics.factory, "num_tables_registered")
    _global = metrics
    return metrics


def get_global() -> Optional[Metrics]:
    """Return the global metrics, or None before :func:`init_metrics`."""
    return _global


def _factory() -> MetricsFactory:
    if _global is None:
        raise RuntimeError("metrics are not initialized; call init_metrics first")
    return _global.factory


def _events_fields(factory: MetricsFactory, process: str, tags: Tags) -> dict:
    return {
        "num_workers": ProcessCounter(factory, f"num_{process}_workers", tags),
        "events_read": Counter(factory, f"{process}_events_read", tags),
        "events_written": Counter(factory, f"{process}_events_written", tags),
        "bytes_read": Counter(factory, f"{process}_bytes_read", tags),
        "bytes_written": Counter(factory, f"{process}_bytes_written", tags),
        "batch_size": Timer(factory, f"{process}_batch_size", tags),
        "read_latency": Timer(factory, f"{process}_read_latency", tags),
        "produce_latency": Timer(factory, f"{process}_produce_latency", tags),
    }


def get_binlog_reader_metrics(tags: Tags = None) -> BinlogReaderMetrics:
    """Create the binlog reader metrics."""
    factory = _factory()
    return BinlogReaderMetrics(
        **_events_fields(factory, "binlog", tags),
        binlog_row_events_written=Counter(factory, "binlog_row_events_written", tags),
        binlog_query_events_written=Counter(factory, "binlog_query_events_written", tags),
        binlog_unhandled_events=Counter(factory, "binlog_unhandled_events", tags),
        time_to_encounter=Timer(factory, "time_to_encounter", tags),
        num_tables_ingesting=Counter(factory, "num_tables_ingesting", tags),
    )


def get_streamer_metrics(tags: Tags = None) -> StreamerMetrics:
    """Create the streamer metrics."""
    factory = _factory()
    return StreamerMetrics(
        **_events_fields(factory, "streamer", tags),
        time_in_buffer=Timer(factory, "time_in_buffer", tags),
    )


def get_snapshot_metrics(tags: Tags = None) -> SnapshotMetrics:
    """Create the snapshot reader metrics."""
    return SnapshotMetrics(**_events_fields(_factory(), "snapshot", tags))