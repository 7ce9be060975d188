"""
Wire codec for the KeyVal REST protocol.

JSON cannot carry every value the store understands, so a few values travel
as explicit tagged variants:

    BigInt      {"__type": "bigint", "value": "<decimal>"}
    bytes       {"__type": "bytes",  "value": "<base64>"}
    ServerNow   {"$now": true} / {"$now": true, "offset": <ms>}
    CommitVersionstamp  {"__type": "commitVersionstamp"}   (mutation keys only)

Plain ints beyond the float-safe range (2**53 - 1) are promoted to BigInt on
the way out so no precision is lost on the other side. ServerNow is resolved
by the server at evaluation time, never by the client clock; likewise
CommitVersionstamp is replaced by the versionstamp of the commit it is part of.

A tagged variant whose payload has the wrong shape raises ProtocolError.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from .errors import ProtocolError
from .utils import Duration, parse_duration_ms

MAX_SAFE_INTEGER = 2**53 - 1

TYPE_FIELD = "__type"
NOW_FIELD = "$now"


@dataclass(frozen=True)
class BigInt:
    """Arbitrary-precision integer, always tagged on the wire."""

    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"BigInt requires an int, got {type(self.value).__name__}")

    def __int__(self) -> int:
        return self.value


@dataclass(frozen=True)
class ServerNow:
    """Placeholder for the server's current time (ms since epoch) plus an offset."""

    offset: int = 0

    def add(self, duration: Duration) -> "ServerNow":
        return ServerNow(self.offset + parse_duration_ms(duration))

    def sub(self, duration: Duration) -> "ServerNow":
        return ServerNow(self.offset - parse_duration_ms(duration))


@dataclass(frozen=True)
class CommitVersionstamp:
    """Key part resolved to the committing versionstamp, for time-ordered indexes."""


def encode_value(value: Any) -> Any:
    """Convert a Python value into its JSON-ready wire form (recursive)."""
    if isinstance(value, BigInt):
        return {TYPE_FIELD: "bigint", "value": str(value.value)}
    if isinstance(value, ServerNow):
        if value.offset:
            return {NOW_FIELD: True, "offset": value.offset}
        return {NOW_FIELD: True}
    if isinstance(value, CommitVersionstamp):
        return {TYPE_FIELD: "commitVersionstamp"}
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            return {TYPE_FIELD: "bigint", "value": str(value)}
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {TYPE_FIELD: "bytes", "value": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Inverse of ``encode_value`` over parsed JSON (recursive)."""
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    if isinstance(value, dict):
        tag = value.get(TYPE_FIELD)
        try:
            if tag == "bigint" and "value" in value:
                return int(str(value["value"]))
            if tag == "bytes" and "value" in value:
                return base64.b64decode(value["value"], validate=True)
            if value.get(NOW_FIELD) is True:
                return ServerNow(int(value.get("offset") or 0))
        except (TypeError, ValueError, binascii.Error) as e:
            raise ProtocolError(f"malformed {tag or NOW_FIELD} value: {e}") from e
        return {k: decode_value(v) for k, v in value.items()}
    return value


def dumps(value: Any) -> str:
    """Serialize to a JSON string using the wire codec."""
    return json.dumps(encode_value(value), separators=(",", ":"))


def loads(text: str | bytes) -> Any:
    """Parse a JSON string and decode tagged variants."""
    return decode_value(json.loads(text))
