"""Metadata line written at the start of every pipe file."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Union

DELIMITER = b"\n"

# Lower-cased JSON key -> attribute name. Keys are matched case-insensitively.
_FIELDS = {
    "format": "format",
    "filters": "filters",
    "schema": "schema",
    "delimited": "delimited",
    "hmac-sha256": "hmac",
    "aes256-cfb-iv": "iv",
}

_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _escape(text: str) -> str:
    for char, escaped in _ESCAPES.items():
        text = text.replace(char, escaped)
    return text


def _convert(attr: str, value: Any) -> Any:
    if attr in ("format", "hmac", "iv"):
        if not isinstance(value, str):
            raise ValueError(f"header field {attr!r} must be a string")
        return value
    if attr == "delimited":
        if not isinstance(value, bool):
            raise ValueError("header field 'delimited' must be a boolean")
        return value
    if attr == "filters":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError("header field 'filters' must be a list of strings")
        return list(value)
    if not isinstance(value, str):
        raise ValueError("header field 'schema' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"header schema is not valid base64: {exc}") from exc


@dataclass
class Header:
    """File metadata: message format, filters applied, schema and integrity data."""

    format: str = ""
    filters: list[str] = field(default_factory=list)
    schema: bytes = b""
    delimited: bool = False
    hmac: str = ""
    iv: str = ""

    def to_json(self) -> bytes:
        """Serialize to compact JSON; empty optional fields are left out."""
        record: dict[str, Any] = {"Format": self.format}
        if self.filters:
            record["Filters"] = list(self.filters)
        if self.schema:
            record["Schema"] = base64.b64encode(bytes(self.schema)).decode("ascii")
        if self.delimited:
            record["Delimited"] = True
        if self.hmac:
            record["HMAC-SHA256"] = self.hmac
        if self.iv:
            record["AES256-CFB-IV"] = self.iv
        text = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
        return _escape(text).encode("utf-8")

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "Header":
        """Parse a header; unknown fields are ignored, nulls keep defaults."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("header must be a JSON object")
        values: dict[str, Any] = {}
        for key, value in obj.items():
            attr = _FIELDS.get(key.lower())
            if attr is None or value is None:
                continue
            values[attr] = _convert(attr, value)
        return cls(**values)


def write_header(header: Header, digest: bytes, stream: BinaryIO) -> None:
    """Write ``header`` as one line; a non-empty ``digest`` is stored as its HMAC."""
    if digest:
        header.hmac = bytes(digest).hex()
    stream.write(header.to_json() + DELIMITER)


def read_header(stream: BinaryIO) -> Header:
    """Read the header line, leaving ``stream`` at the first byte after it."""
    line = stream.readline()
    if not line.endswith(DELIMITER):
        raise EOFError("file header is not terminated")
    return Header.from_json(line)