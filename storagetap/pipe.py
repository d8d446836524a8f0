"""Named producer/consumer pipes and the registry of pipe implementations."""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional


class PipeError(Exception):
    """Raised when a pipe cannot be created or an operation on it fails."""


@dataclass
class PipeConfig:
    """Settings that pipe implementations read at creation time."""

    data_dir: str = ""
    max_file_size: int = 0
    pipe_aes256_key: str = ""
    pipe_hmac_key: str = ""
    pipe_verify_hmac: bool = False
    pipe_compression: bool = False
    pipe_file_no_header: bool = False


class Consumer(abc.ABC):
    """Receiving end of a pipe."""

    @abc.abstractmethod
    def fetch_next(self) -> bool:
        """Block until a message arrives; False means end of stream.

        The message is then retrieved with :meth:`pop`.
        """

    @abc.abstractmethod
    def pop(self) -> Any:
        """Return the message fetched by :meth:`fetch_next`.

        Raises the error met while fetching, if there was one.
        """

    @abc.abstractmethod
    def close(self) -> None:
        """Close the consumer, persisting its position."""

    @abc.abstractmethod
    def close_on_failure(self) -> None:
        """Close the consumer without persisting its position."""

    @abc.abstractmethod
    def save_offset(self) -> None:
        """Persist the current position explicitly."""

    @abc.abstractmethod
    def set_format(self, fmt: str) -> None:
        """Tell the consumer the message format when the stream does not."""

    def __enter__(self) -> "Consumer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.close_on_failure()


class Producer(abc.ABC):
    """Sending end of a pipe."""

    @abc.abstractmethod
    def push(self, data: Any) -> None:
        """Send a message."""

    @abc.abstractmethod
    def push_k(self, key: str, data: Any) -> None:
        """Send a keyed message."""

    @abc.abstractmethod
    def push_schema(self, key: str, data: bytes) -> None:
        """Send a schema message for ``key``."""

    @abc.abstractmethod
    def push_batch(self, key: str, data: Any) -> None:
        """Queue a keyed message to be sent by :meth:`push_batch_commit`."""

    @abc.abstractmethod
    def push_batch_commit(self) -> None:
        """Send every message queued by :meth:`push_batch`."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the producer."""

    @abc.abstractmethod
    def set_format(self, fmt: str) -> None:
        """Tell the producer the format of the messages it sends."""

    def __enter__(self) -> "Producer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class Pipe(abc.ABC):
    """Connects named producers and consumers."""

    @abc.abstractmethod
    def new_consumer(self, topic: str) -> Consumer:
        """Register a consumer of ``topic``."""

    @abc.abstractmethod
    def new_producer(self, topic: str) -> Producer:
        """Register a producer to ``topic``."""

    @abc.abstractmethod
    def type(self) -> str:
        """Return the name of the pipe type."""


PipeConstructor = Callable[
    [int, Optional[PipeConfig], Any, Optional[threading.Event]], Pipe
]

_pipes: dict[str, PipeConstructor] = {}


def register_plugin(name: str, constructor: PipeConstructor) -> None:
    """Make a pipe constructor available to :func:`create` under ``name``."""
    _pipes[name] = constructor


def registered_pipes() -> dict[str, PipeConstructor]:
    """Return a copy of the registry of pipe constructors."""
    return dict(_pipes)


def create(pipe_type: str, batch_size: int, cfg: Optional[PipeConfig] = None,
           db: Any = None, cancel: Optional[threading.Event] = None) -> Pipe:
    """Create a pipe of the given type with the given buffer size.

    ``cancel``, once set, unblocks calls waiting inside the pipe.
    """
    name = pipe_type.lower()
    constructor = _pipes.get(name)
    if constructor is None:
        raise PipeError(f"Unsupported pipe: {name}")
    return constructor(batch_size, cfg, db, cancel)