"""Pipe storing messages in files of a topic directory.

Producers are :class:`~storagetap.fileproducer.FileProducer`. Consumers read
finished files in name order and poll the directory for new ones.
"""

from __future__ import annotations

import hashlib
import hmac
import threading
import zlib
from typing import Any, BinaryIO, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from storagetap import logger
from storagetap.fileproducer import (OPEN_SUFFIX, FilePipeOptions, FileProducer,
                                     LocalFileSystem, topic_path)
from storagetap.header import DELIMITER, Header, read_header
from storagetap.pipe import Consumer, Pipe, PipeConfig, PipeError, register_plugin

OFFSET_NEWEST = -1
OFFSET_OLDEST = -2

# Whether pipes built by init_file_pipe write delimited messages.
DELIMITED = False

_TEXT_FORMATS = ("json", "text")
_POLL_INTERVAL = 0.2
_CHUNK = 32768
_MAX_VARINT_LEN = 10


class _UnexpectedEOF(PipeError):
    """A message was cut short by the end of the file."""


def _skip_header(handle: BinaryIO) -> None:
    if not handle.readline().endswith(DELIMITER):
        raise EOFError("file header is not terminated")


class _MessageReader:
    """Buffered reader over a file, optionally decrypting and decompressing."""

    def __init__(self, source: BinaryIO, decryptor: Any = None,
                 decompressor: Any = None) -> None:
        self._source = source
        self._decryptor = decryptor
        self._decompressor = decompressor
        self._buf = bytearray()

    def _fill(self) -> bool:
        chunk = self._source.read(_CHUNK)
        if not chunk:
            return False
        if self._decryptor is not None:
            chunk = self._decryptor.update(chunk)
        if self._decompressor is not None:
            chunk = self._decompressor.decompress(chunk)
        self._buf += chunk
        return True

    def _take(self, size: int) -> bytes:
        data = bytes(self._buf[:size])
        del self._buf[:size]
        return data

    def read_uvarint(self) -> Optional[int]:
        """Return the next varint, or None at a clean end of file."""
        value = shift = 0
        for count in range(_MAX_VARINT_LEN):
            while not self._buf:
                if not self._fill():
                    if count:
                        raise _UnexpectedEOF("unexpected EOF")
                    return None
            byte = self._buf[0]
            del self._buf[0]
            value |= (byte & 0x7F) << shift
            if byte < 0x80:
                return value
            shift += 7
        raise PipeError("varint overflows a 64-bit integer")

    def read_exact(self, size: int) -> Optional[bytes]:
        """Return exactly ``size`` bytes, or None at a clean end of file."""
        while len(self._buf) < size and self._fill():
            pass
        if len(self._buf) >= size:
            return self._take(size)
        if not self._buf:
            return None
        raise _UnexpectedEOF("unexpected EOF")

    def read_line(self) -> tuple[bytes, bool]:
        """Return the next line without delimiter and whether it was complete."""
        while True:
            index = self._buf.find(DELIMITER)
            if index >= 0:
                return self._take(index + 1)[:-1], True
            if not self._fill():
                return self._take(len(self._buf)), False


class FileConsumer(Consumer):
    """Reads messages from the files of a topic, oldest file first."""

    def __init__(self, options: FilePipeOptions, topic: str, fs: Any = None,
                 initial_offset: int = OFFSET_NEWEST,
                 cancel: Optional[threading.Event] = None) -> None:
        self.options = options
        self.topic = topic
        self.fs = fs if fs is not None else LocalFileSystem()
        self.header = Header()
        self.text = False
        self.name = ""
        self._cancel = cancel
        self._closed = threading.Event()
        self._file: Optional[BinaryIO] = None
        self._reader: Optional[_MessageReader] = None
        self._msg: bytes = b""
        self._err: Optional[Exception] = None

        first, offset = self._seek(initial_offset)
        if first:
            self._open_file(first, offset)

    def _topic_path(self) -> str:
        return topic_path(self.options.datadir, self.topic)

    def _entries(self) -> list:
        try:
            return self.fs.read_dir(self._topic_path())
        except FileNotFoundError:
            return []

    def _seek(self, offset: int) -> tuple[str, int]:
        entries = self._entries()
        if not entries:
            return "", 0
        if offset == OFFSET_OLDEST:
            return entries[0].name, 0
        if offset == OFFSET_NEWEST:
            return entries[-1].name, entries[-1].size
        raise PipeError("Arbitrary offsets not supported, "
                        "only OffsetOldest and OffsetNewest offsets supported")

    def _next_file(self) -> str:
        prefix = self._topic_path()
        for entry in self._entries():
            if prefix + entry.name > self.name:
                logger.debugf("NextFile: %s,  CurFile: %s", entry.name, self.name)
                return entry.name
        return ""

    def _close_handle(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as exc:
                logger.e(exc)
        self._file = None
        self._reader = None

    def _check_hmac(self, path: str, reference: str) -> None:
        mac = hmac.new(self.options.hmac_key.encode(), digestmod=hashlib.sha256)
        with self.fs.open_read(path, 0) as handle:
            if not self.options.no_header:
                _skip_header(handle)
            for chunk in iter(lambda: handle.read(_CHUNK), b""):
                mac.update(chunk)
        if mac.hexdigest() != reference:
            raise PipeError("File authentication failed")
        logger.debugf("HMAC successfully verified for: %s", path)

    def _init_filters(self) -> _MessageReader:
        iv = bytes.fromhex(self.header.iv)
        decryptor = decompressor = None
        if self.options.aes_key or self.options.compression:
            self._file.close()
            self._file = self.fs.open_read(self.name, 0)
            if not self.options.no_header:
                _skip_header(self._file)
            if self.options.aes_key:
                cipher = Cipher(algorithms.AES(self.options.aes_key.encode()), modes.CFB(iv))
                decryptor = cipher.decryptor()
            if self.options.compression:
                decompressor = zlib.decompressobj()
        return _MessageReader(self._file, decryptor, decompressor)

    def _open_file_low(self, path: str, offset: int) -> None:
        self.header.delimited = self.options.delimited
        if not self.options.no_header:
            self.header = read_header(self._file)
        if not self.header.delimited:
            raise PipeError("cannot consume non delimited file")
        self.text = self.header.format in _TEXT_FORMATS
        if self.options.verify_hmac:
            self._check_hmac(path, self.header.hmac)
        if offset:
            self._file.close()
            self._file = self.fs.open_read(path, offset)
        self.name = path
        self._reader = self._init_filters()

    def _open_file(self, next_fn: str, offset: int) -> None:
        path = self._topic_path() + next_fn
        try:
            self._file = self.fs.open_read(path, 0)
        except OSError as exc:
            logger.e(exc)
            self._err = exc
            return
        try:
            self._open_file_low(path, offset)
        except (OSError, ValueError, EOFError, PipeError) as exc:
            logger.e(exc)
            self._err = exc
            self._close_handle()
            return
        self._err = None
        logger.debugf("Consumer opened: %s, header: %s", self.name, self.header)

    def _fetch_next_low(self) -> bool:
        if self._reader is None:
            return False
        try:
            if self.text:
                msg, complete = self._reader.read_line()
                self._msg = msg
                if complete:
                    logger.debugf("Consumed message: %s", msg)
                    self._err = None
                    return True
            else:
                size = self._reader.read_uvarint()
                if size is not None:
                    data = self._reader.read_exact(size)
                    if data is not None:
                        self._msg = data
                        logger.debugf("Consumed message: %s", data.hex())
                        self._err = None
                        return True
        except _UnexpectedEOF as exc:
            if not self.options.compression:
                logger.e(exc)
                self._err = exc
                return True
        except (OSError, ValueError, zlib.error, PipeError) as exc:
            logger.e(exc)
            self._err = exc
            return True

        self._close_handle()
        logger.debugf("Consumer closed: %s", self.name)
        if self.text and self.options.delimited and self._msg:
            text = self._msg.decode("utf-8", errors="replace")
            self._err = PipeError(f"Corrupted file. Not ending with delimiter: {self.name} {text}")
            return True
        self._err = None
        return False

    def _cancelled_while_waiting(self) -> bool:
        if self._closed.wait(_POLL_INTERVAL):
            return True
        return self._cancel is not None and self._cancel.is_set()

    def _wait_and_open_next_file(self) -> bool:
        """Open the next finished file; False when cancelled while waiting."""
        while True:
            try:
                next_fn = self._next_file()
            except OSError as exc:
                logger.e(exc)
                self._err = exc
                return True
            if next_fn and not next_fn.endswith(OPEN_SUFFIX):
                self._open_file(next_fn, 0)
                return True
            if self._cancelled_while_waiting():
                return False

    def fetch_next(self) -> bool:
        while True:
            if self._fetch_next_low():
                return True
            if not self._wait_and_open_next_file():
                return False
            if self._err is not None:
                return True

    def pop(self) -> bytes:
        if self._err is not None:
            if isinstance(self._err, PipeError):
                raise self._err
            raise PipeError(str(self._err)) from self._err
        return self._msg

    def close(self) -> None:
        logger.debugf("Close consumer: %s", self.topic)
        self._closed.set()
        if self._file is not None:
            try:
                self._file.close()
            except OSError as exc:
                logger.e(exc)

    def close_on_failure(self) -> None:
        self.close()

    def save_offset(self) -> None:
        """File consumers keep no offsets."""

    def set_format(self, fmt: str) -> None:
        self.header.format = fmt
        self.text = fmt in _TEXT_FORMATS


class FilePipe(Pipe):
    """Pipe whose topics are directories of message files."""

    def __init__(self, options: Optional[FilePipeOptions] = None, fs: Any = None,
                 cancel: Optional[threading.Event] = None,
                 initial_offset: int = OFFSET_NEWEST) -> None:
        self.options = options if options is not None else FilePipeOptions()
        self.fs = fs if fs is not None else LocalFileSystem()
        self.cancel = cancel
        self.initial_offset = initial_offset

    def type(self) -> str:
        return "file"

    def new_producer(self, topic: str) -> FileProducer:
        return FileProducer(self.options, topic, self.fs)

    def new_consumer(self, topic: str) -> FileConsumer:
        return FileConsumer(self.options, topic, self.fs, self.initial_offset, self.cancel)


def init_file_pipe(batch_size: int, cfg: Optional[PipeConfig] = None, db: Any = None,
                   cancel: Optional[threading.Event] = None) -> FilePipe:
    """Construct a file pipe from the configuration."""
    cfg = cfg if cfg is not None else PipeConfig()
    options = FilePipeOptions(
        datadir=cfg.data_dir,
        max_file_size=cfg.max_file_size,
        aes_key=cfg.pipe_aes256_key,
        hmac_key=cfg.pipe_hmac_key,
        verify_hmac=cfg.pipe_verify_hmac,
        compression=cfg.pipe_compression,
        no_header=cfg.pipe_file_no_header,
        delimited=DELIMITED,
    )
    return FilePipe(options, cancel=cancel)


register_plugin("file", init_file_pipe)