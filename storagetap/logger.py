"""Pluggable levelled logging with a process-wide default logger.

Messages use printf-style formatting: ``infof("got %s rows", n)``.
"""

from __future__ import annotations

import abc
import datetime
import json
import sys
from enum import IntEnum
from typing import Any, Callable, Mapping, Optional, TextIO


class Level(IntEnum):
    """Log levels; a logger emits messages whose level is at or below its own."""

    PANIC = 0
    FATAL = 1
    ERROR = 2
    WARN = 3
    INFO = 4
    DEBUG = 5


_LEVEL_NAMES = {level.name.lower(): level for level in Level}


class LoggerPanic(RuntimeError):
    """Raised by ``panicf`` after the message has been logged."""


def _format(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


class Logger(abc.ABC):
    """Contract every logger plugin fulfils."""

    @abc.abstractmethod
    def debugf(self, fmt: str, *args: Any) -> None:
        """Log at debug level."""

    @abc.abstractmethod
    def infof(self, fmt: str, *args: Any) -> None:
        """Log at info level."""

    @abc.abstractmethod
    def warnf(self, fmt: str, *args: Any) -> None:
        """Log at warning level."""

    @abc.abstractmethod
    def errorf(self, fmt: str, *args: Any) -> None:
        """Log at error level."""

    @abc.abstractmethod
    def fatalf(self, fmt: str, *args: Any) -> None:
        """Log at fatal level, then terminate the process."""

    @abc.abstractmethod
    def panicf(self, fmt: str, *args: Any) -> None:
        """Log at panic level, then raise a recoverable error."""

    @abc.abstractmethod
    def with_fields(self, fields: Mapping[str, Any]) -> "Logger":
        """Return a logger that attaches ``fields`` to every message."""


LoggerConstructor = Callable[[int, bool], Logger]


class StdLogger(Logger):
    """Plain line logger writing to a stream (standard error by default)."""

    def __init__(self, level: int = Level.INFO, stream: Optional[TextIO] = None,
                 prefix: str = "") -> None:
        self.level = int(level)
        self.stream = stream
        self.prefix = prefix

    def _output(self, level: Level, fmt: str, args: tuple) -> None:
        if self.level >= level:
            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(f"{self.prefix}{_format(fmt, args)}\n")
            stream.flush()

    def debugf(self, fmt: str, *args: Any) -> None:
        self._output(Level.DEBUG, fmt, args)

    def infof(self, fmt: str, *args: Any) -> None:
        self._output(Level.INFO, fmt, args)

    def warnf(self, fmt: str, *args: Any) -> None:
        self._output(Level.WARN, fmt, args)

    def errorf(self, fmt: str, *args: Any) -> None:
        self._output(Level.ERROR, fmt, args)

    def fatalf(self, fmt: str, *args: Any) -> None:
        self._output(Level.FATAL, fmt, args)
        raise SystemExit(1)

    def panicf(self, fmt: str, *args: Any) -> None:
        self._output(Level.PANIC, fmt, args)
        raise LoggerPanic(_format(fmt, args))

    def with_fields(self, fields: Mapping[str, Any]) -> Logger:
        if not fields:
            return StdLogger(self.level, self.stream)
        prefix = self.prefix
        for key, value in fields.items():
            if prefix:
                prefix += ", "
            prefix += f"{key}: {value}"
        return StdLogger(self.level, self.stream, prefix + ": ")


_STRUCTURED_NAMES = {
    Level.PANIC: "panic",
    Level.FATAL: "fatal",
    Level.ERROR: "error",
    Level.WARN: "warning",
    Level.INFO: "info",
    Level.DEBUG: "debug",
}

_PLAIN_CHARS = set("-._/@^+")


def _quote(value: Any) -> str:
    text = str(value)
    if text and all(ch.isalnum() or ch in _PLAIN_CHARS for ch in text):
        return text
    return json.dumps(text)


class StructuredLogger(Logger):
    """Key/value logger: text records in development, JSON in production."""

    def __init__(self, level: int = Level.INFO, production: bool = False,
                 stream: Optional[TextIO] = None,
                 fields: Optional[Mapping[str, Any]] = None) -> None:
        self.level = int(level)
        self.production = production
        self.stream = stream
        self.fields = dict(fields or {})

    def _render(self, level: Level, message: str) -> str:
        now = datetime.datetime.now(datetime.timezone.utc).astimezone().isoformat(
            timespec="seconds")
        name = _STRUCTURED_NAMES[level]
        if self.production:
            record = {**self.fields, "level": name, "msg": message, "time": now}
            return json.dumps(record, sort_keys=True, default=str)
        parts = [f"time={_quote(now)}", f"level={name}", f"msg={_quote(message)}"]
        parts.extend(f"{_quote(k)}={_quote(v)}" for k, v in sorted(self.fields.items()))
        return " ".join(parts)

    def _emit(self, level: Level, fmt: str, args: tuple) -> str:
        message = _format(fmt, args)
        if level <= self.level:
            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(self._render(level, message) + "\n")
            stream.flush()
        return message

    def debugf(self, fmt: str, *args: Any) -> None:
        self._emit(Level.DEBUG, fmt, args)

    def infof(self, fmt: str, *args: Any) -> None:
        self._emit(Level.INFO, fmt, args)

    def warnf(self, fmt: str, *args: Any) -> None:
        self._emit(Level.WARN, fmt, args)

    def errorf(self, fmt: str, *args: Any) -> None:
        self._emit(Level.ERROR, fmt, args)

    def fatalf(self, fmt: str, *args: Any) -> None:
        self._emit(Level.FATAL, fmt, args)
        raise SystemExit(1)

    def panicf(self, fmt: str, *args: Any) -> None:
        raise LoggerPanic(self._emit(Level.PANIC, fmt, args))

    def with_fields(self, fields: Mapping[str, Any]) -> Logger:
        return StructuredLogger(self.level, self.production, self.stream,
                                {**self.fields, **fields})


def configure_std(level: int, production: bool) -> Logger:
    """Construct the plain standard-error logger."""
    return StdLogger(level)


def configure_structured(level: int, production: bool) -> Logger:
    """Construct the structured logger; JSON output when ``production``."""
    return StructuredLogger(level, production)


_loggers: dict[str, LoggerConstructor] = {}


def register_plugin(name: str, constructor: LoggerConstructor) -> None:
    """Make a logger constructor available to :func:`configure` under ``name``."""
    _loggers[name] = constructor


register_plugin("std", configure_std)
register_plugin("structured", configure_structured)
register_plugin("logrus", configure_structured)

_default: Logger = StdLogger(Level.INFO)


def parse_level(name: str) -> Level:
    """Convert a level name to a :class:`Level`; unknown names give INFO."""
    return _LEVEL_NAMES.get(name.lower(), Level.INFO)


def configure(log_type: str, log_level: str, production: bool) -> None:
    """Install the default logger of the given type and level."""
    global _default
    constructor = _loggers.get(log_type.lower())
    if constructor is None:
        print(f"Logger '{log_type}' is not registered, falling back to 'std'")
        constructor = configure_std
    try:
        _default = constructor(parse_level(log_level), production)
    except Exception as exc:
        print(f"Error configuring logger: {exc}")
        raise SystemExit(1) from exc
    debugf("Configured logger: %s, level: %s", log_type, log_level)


def default_logger() -> Logger:
    """Return the current default logger."""
    return _default


def set_default_logger(logger: Logger) -> Logger:
    """Replace the default logger and return the one it replaced."""
    global _default
    if not isinstance(logger, Logger):
        raise TypeError(f"expected a Logger, got {type(logger).__name__}")
    previous = _default
    _default = logger
    return previous


def e(err: Optional[BaseException]) -> bool:
    """Log ``err`` at error level if present; return whether it was present."""
    if err is not None:
        _default.errorf(str(err))
    return err is not None


def f(err: Optional[BaseException]) -> None:
    """Log ``err`` at fatal level if present, terminating the process."""
    if err is not None:
        _default.fatalf(str(err))


def el(logger: Logger, err: Optional[BaseException]) -> bool:
    """Like :func:`e` but with the given logger."""
    if err is not None:
        logger.errorf(str(err))
    return err is not None


def debugf(fmt: str, *args: Any) -> None:
    _default.debugf(fmt, *args)


def infof(fmt: str, *args: Any) -> None:
    _default.infof(fmt, *args)


def warnf(fmt: str, *args: Any) -> None:
    _default.warnf(fmt, *args)


def errorf(fmt: str, *args: Any) -> None:
    _default.errorf(fmt, *args)


def fatalf(fmt: str, *args: Any) -> None:
    _default.fatalf(fmt, *args)


def panicf(fmt: str, *args: Any) -> None:
    _default.panicf(fmt, *args)


def with_fields(fields: Mapping[str, Any]) -> Logger:
    """Return the default logger with ``fields`` attached."""
    return _default.with_fields(fields)