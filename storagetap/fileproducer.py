"""Producer writing pipe messages to rotating files in a topic directory."""

from __future__ import annotations

import dataclasses
import hashlib
import hmac
import os
import time
import zlib
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, NamedTuple, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from storagetap import logger
from storagetap.header import DELIMITER, Header, write_header
from storagetap.pipe import PipeError, Producer

OPEN_SUFFIX = ".open"
AES_BLOCK_SIZE = 16
_BUFFER_SIZE = 4096


@dataclass
class FilePipeOptions:
    """Settings shared by file producers and consumers."""

    datadir: str = ""
    max_file_size: int = 0
    aes_key: str = ""
    hmac_key: str = ""
    verify_hmac: bool = False
    compression: bool = False
    no_header: bool = False
    delimited: bool = False


class _DirEntry(NamedTuple):
    name: str
    size: int


class LocalFileSystem:
    """File operations on the local disk."""

    def mkdir_all(self, path: str) -> None:
        if path:
            os.makedirs(path, mode=0o770, exist_ok=True)

    def rename(self, old: str, new: str) -> None:
        os.rename(old, new)

    def read_dir(self, dirname: str) -> list[_DirEntry]:
        """Return the directory's entries sorted by name."""
        with os.scandir(dirname or ".") as entries:
            found = [_DirEntry(entry.name, entry.stat().st_size) for entry in entries]
        return sorted(found, key=lambda entry: entry.name)

    def open_read(self, name: str, offset: int) -> BinaryIO:
        handle = open(name, "rb")
        try:
            handle.seek(offset)
        except OSError:
            handle.close()
            raise
        return handle

    def open_write(self, name: str) -> BinaryIO:
        """Open for writing, creating the file but never truncating it."""
        fd = os.open(name, os.O_WRONLY | os.O_CREAT, 0o640)
        try:
            return os.fdopen(fd, "wb")
        except Exception:
            os.close(fd)
            raise


def topic_path(datadir: str, topic: str) -> str:
    """Return the directory prefix, with trailing slash, for ``topic``."""
    path = ""
    if datadir:
        path += datadir + "/"
    if topic:
        path += topic + "/"
    return path


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


@dataclass
class _OpenFile:
    name: str
    handle: BinaryIO
    seekable: bool
    offset: int
    header: Header
    mac: Any
    encryptor: Any = None
    compressor: Any = None
    pending: bytearray = dataclasses.field(default_factory=bytearray)

    def _emit(self, data: bytes) -> None:
        if not data:
            return
        if self.encryptor is not None:
            data = self.encryptor.update(data)
        self.mac.update(data)
        self.handle.write(data)

    def write(self, data: bytes) -> None:
        if self.compressor is not None:
            self._emit(self.compressor.compress(data))
            return
        self.pending += data
        if len(self.pending) >= _BUFFER_SIZE:
            self._emit(bytes(self.pending))
            self.pending.clear()

    def flush(self) -> None:
        if self.compressor is not None:
            self._emit(self.compressor.flush(zlib.Z_SYNC_FLUSH))
        else:
            self._emit(bytes(self.pending))
            self.pending.clear()
        self.handle.flush()


class FileProducer(Producer):
    """Writes messages to per-key files of a topic, rotating at the size limit.

    Files are created with an ``.open`` suffix, dropped when the file is closed.
    """

    def __init__(self, options: FilePipeOptions, topic: str, fs: Any = None) -> None:
        self.options = options
        self.topic = topic
        self.fs = fs if fs is not None else LocalFileSystem()
        self.header = Header()
        self.text = False
        self._files: dict[str, _OpenFile] = {}
        self._seqno = 0

    def _topic_path(self) -> str:
        return topic_path(self.options.datadir, self.topic)

    def _new_file_name(self, key: str) -> str:
        self._seqno += 1
        return f"{self._topic_path()}{int(time.time()):010d}.{self._seqno:03d}.{key}{OPEN_SUFFIX}"

    def _new_file(self, key: str) -> _OpenFile:
        opts = self.options
        self.fs.mkdir_all(self._topic_path())

        iv = bytes(AES_BLOCK_SIZE)
        encryptor = None
        if opts.aes_key:
            iv = os.urandom(AES_BLOCK_SIZE)
            try:
                encryptor = Cipher(algorithms.AES(opts.aes_key.encode()), modes.CFB(iv)).encryptor()
            except ValueError as exc:
                raise PipeError(f"invalid AES key: {exc}") from exc
            self.header.iv = iv.hex()

        name = self._new_file_name(key)
        handle = self.fs.open_write(name)
        seekable = handle.seekable()
        offset = handle.seek(0, os.SEEK_END) if seekable else 0

        if offset == 0 and not opts.no_header:
            self.header.delimited = opts.delimited
            self.header.filters = []
            if opts.aes_key:
                self.header.filters.append("aes256-cfb")
            if opts.compression:
                self.header.filters.append("zlib")
        file_header = dataclasses.replace(self.header, filters=list(self.header.filters))
        if offset == 0 and not opts.no_header:
            digest = bytes(hashlib.sha256().digest_size) if seekable else b""
            write_header(file_header, digest, handle)
            handle.flush()

        opened = _OpenFile(
            name=name,
            handle=handle,
            seekable=seekable,
            offset=offset,
            header=file_header,
            mac=hmac.new(opts.hmac_key.encode(), digestmod=hashlib.sha256),
            encryptor=encryptor,
            compressor=zlib.compressobj() if opts.compression else None,
        )

        self._close_file(self._files.get(key))
        logger.debugf("Opened: %s, %s compression: %s", key, name, opts.compression)
        self._files[key] = opened
        return opened

    def _get_file(self, key: str) -> _OpenFile:
        opened = self._files.get(key)
        if opened is None:
            opened = self._new_file(key)
        return opened

    def _close_file(self, opened: Optional[_OpenFile]) -> Optional[Exception]:
        """Finish a file; returns the last error met, after logging each."""
        if opened is None:
            return None
        error: Optional[Exception] = None

        def attempt(action: Callable[[], Any]) -> None:
            nonlocal error
            try:
                action()
            except (OSError, ValueError) as exc:
                logger.e(exc)
                error = exc

        attempt(opened.flush)
        if opened.seekable and not self.options.no_header:
            attempt(lambda: opened.handle.seek(0))
            attempt(lambda: write_header(opened.header, opened.mac.digest(), opened.handle))
        attempt(opened.handle.close)
        attempt(lambda: self.fs.rename(opened.name, opened.name.removesuffix(OPEN_SUFFIX)))
        logger.debugf("Closed: %s", opened.name)
        return error

    def _push(self, key: str, data: Any, batch: bool) -> None:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise PipeError("File pipe can handle binary arrays only")
        payload = bytes(data)

        opened = self._get_file(key)

        if not self.text and self.options.delimited:
            opened.write(_uvarint(len(payload)))
        opened.write(payload)
        if self.text and self.options.delimited:
            opened.write(DELIMITER)

        logger.debugf("Push: %s, len=%s", key, len(payload))

        if not batch:
            try:
                opened.flush()
            except OSError as exc:
                logger.e(exc)

        opened.offset += len(payload) + 1
        if opened.offset >= self.options.max_file_size:
            if batch:
                opened.flush()
            self._close_file(self._files.pop(key))

    def push(self, data: Any) -> None:
        self._push("default", data, False)

    def push_k(self, key: str, data: Any) -> None:
        self._push(key, data, False)

    def push_batch(self, key: str, data: Any) -> None:
        self._push(key, data, True)

    def push_batch_commit(self) -> None:
        for opened in self._files.values():
            try:
                opened.flush()
            except OSError as exc:
                logger.e(exc)

    def push_schema(self, key: str, data: bytes) -> None:
        """Start a new file for ``key`` whose header and first message carry ``data``."""
        self.push_batch_commit()
        if not key:
            key = "default"
        self._close_file(self._files.pop(key, None))
        if not data:
            return
        self.header.schema = bytes(data)
        self._push(key, data, False)

    def close(self) -> None:
        """Close every open file, in key order so consumers see them in order."""
        error: Optional[Exception] = None
        for key in sorted(self._files):
            err = self._close_file(self._files[key])
            if err is not None:
                error = err
        self._files.clear()
        if error is not None:
            raise PipeError(str(error)) from error

    def set_format(self, fmt: str) -> None:
        self.header.format = fmt
        self.text = fmt in ("json", "text")