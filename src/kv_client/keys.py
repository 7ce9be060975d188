"""
Key model for the KeyVal client.

A key is an ordered sequence of parts. Each part is one of:

    bytes < str < float < int < bool        (type rank, ascending)

Keys compare part by part, by type rank and then by value; a key that is a
strict prefix of another sorts first. ``encode_key`` produces a binary form
whose byte order matches that ordering, and whose byte prefixes match key
prefixes, so it doubles as a cache / buffer identity.

Encoding per part (self-delimiting, no separators):
    bytes  0x01 + payload + 0x00   (0x00 in payload escaped as 0x00 0xFF)
    str    0x02 + utf-8   + 0x00   (same escaping)
    float  0x03 + 8 bytes IEEE-754 big-endian, sign bit flipped (all bits if negative)
    int    0x04 + 8 bytes big-endian, offset by 2**63
    bool   0x05 + 0x01 (False) | 0x02 (True)
"""

from __future__ import annotations

import base64
import math
import struct
from typing import Iterable, Sequence, Tuple, Union
from urllib.parse import quote, unquote

from .encoding import CommitVersionstamp
from .errors import InvalidKeyError

KeyPart = Union[bytes, str, float, int, bool]
Key = Tuple[KeyPart, ...]

TAG_BYTES = 0x01
TAG_STRING = 0x02
TAG_DOUBLE = 0x03
TAG_INT = 0x04
TAG_BOOL = 0x05

_TERM = 0x00
_ESCAPED_TERM = b"\x00\xff"

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def validate_key(key: Iterable[KeyPart], *, allow_versionstamp: bool = False) -> Key:
    """Normalize a key to a tuple, rejecting unsupported parts.

    ``allow_versionstamp`` admits ``CommitVersionstamp`` placeholders, which
    only mutation keys may carry.
    """
    if isinstance(key, (str, bytes)):
        raise InvalidKeyError(f"Key must be a sequence of parts, got {type(key).__name__}")
    try:
        parts = tuple(key)
    except TypeError:
        raise InvalidKeyError(f"Key must be a sequence of parts, got {type(key).__name__}")
    for part in parts:
        if allow_versionstamp and isinstance(part, CommitVersionstamp):
            continue
        _check_part(part)
    return parts


def _check_part(part: object) -> None:
    if isinstance(part, bool):
        return
    if isinstance(part, int):
        if not INT64_MIN <= part <= INT64_MAX:
            raise InvalidKeyError(f"Integer key part out of 64-bit range: {part}")
        return
    if isinstance(part, float):
        if math.isnan(part):
            raise InvalidKeyError("NaN is not a valid key part")
        return
    if isinstance(part, str):
        return
    if isinstance(part, (bytes, bytearray, memoryview)):
        return
    raise InvalidKeyError(f"Unsupported key part type: {type(part).__name__}")


def type_rank(part: KeyPart) -> int:
    """Rank of a part's type in the key ordering."""
    if isinstance(part, bool):
        return TAG_BOOL
    if isinstance(part, int):
        return TAG_INT
    if isinstance(part, float):
        return TAG_DOUBLE
    if isinstance(part, str):
        return TAG_STRING
    if isinstance(part, (bytes, bytearray, memoryview)):
        return TAG_BYTES
    raise InvalidKeyError(f"Unsupported key part type: {type(part).__name__}")


def _encode_part(part: KeyPart) -> bytes:
    rank = type_rank(part)
    if rank == TAG_BOOL:
        return bytes([TAG_BOOL, 0x02 if part else 0x01])
    if rank == TAG_INT:
        return bytes([TAG_INT]) + struct.pack(">Q", part - INT64_MIN)  # type: ignore[operator]
    if rank == TAG_DOUBLE:
        raw = bytearray(struct.pack(">d", part))
        if raw[0] & 0x80:
            raw = bytearray(b ^ 0xFF for b in raw)
        else:
            raw[0] ^= 0x80
        return bytes([TAG_DOUBLE]) + bytes(raw)
    if rank == TAG_STRING:
        payload = part.encode("utf-8")  # type: ignore[union-attr]
    else:
        payload = bytes(part)  # type: ignore[arg-type]
    return bytes([rank]) + payload.replace(b"\x00", _ESCAPED_TERM) + b"\x00"


def encode_key(key: Sequence[KeyPart]) -> bytes:
    """Order-preserving binary encoding of a key."""
    return b"".join(_encode_part(p) for p in validate_key(key))


def decode_key(data: bytes) -> Key:
    """Inverse of ``encode_key``."""
    parts: list[KeyPart] = []
    i = 0
    n = len(data)
    while i < n:
        tag = data[i]
        i += 1
        if tag == TAG_BOOL:
            if i >= n:
                raise InvalidKeyError("Truncated boolean key part")
            parts.append(data[i] == 0x02)
            i += 1
        elif tag == TAG_INT:
            if i + 8 > n:
                raise InvalidKeyError("Truncated integer key part")
            parts.append(struct.unpack(">Q", data[i : i + 8])[0] + INT64_MIN)
            i += 8
        elif tag == TAG_DOUBLE:
            if i + 8 > n:
                raise InvalidKeyError("Truncated double key part")
            raw = bytearray(data[i : i + 8])
            if raw[0] & 0x80:
                raw[0] ^= 0x80
            else:
                raw = bytearray(b ^ 0xFF for b in raw)
            parts.append(struct.unpack(">d", bytes(raw))[0])
            i += 8
        elif tag in (TAG_STRING, TAG_BYTES):
            buf = bytearray()
            while True:
                if i >= n:
                    raise InvalidKeyError("Unterminated key part")
                b = data[i]
                if b == _TERM:
                    if i + 1 < n and data[i + 1] == 0xFF:
                        buf.append(0x00)
                        i += 2
                        continue
                    i += 1
                    break
                buf.append(b)
                i += 1
            parts.append(buf.decode("utf-8") if tag == TAG_STRING else bytes(buf))
        else:
            raise InvalidKeyError(f"Unknown key type tag: {tag:#x}")
    return tuple(parts)


def compare_keys(a: Sequence[KeyPart], b: Sequence[KeyPart]) -> int:
    """Three-way comparison in key order: -1, 0 or 1."""
    ea, eb = encode_key(a), encode_key(b)
    return (ea > eb) - (ea < eb)


def key_covers(prefix: Sequence[KeyPart], key: Sequence[KeyPart]) -> bool:
    """True iff ``key`` starts with exactly the parts of ``prefix`` (type-sensitive)."""
    return encode_key(key).startswith(encode_key(prefix))


# --- URL path form -----------------------------------------------------------


def _part_to_path(part: KeyPart) -> str:
    if isinstance(part, bool):
        return "true" if part else "false"
    if isinstance(part, int):
        return str(part)
    if isinstance(part, float):
        if math.isfinite(part) and part.is_integer() and abs(part) < 1e21:
            return str(int(part))
        return repr(part)
    if isinstance(part, str):
        return quote(part, safe="")
    return base64.urlsafe_b64encode(bytes(part)).rstrip(b"=").decode("ascii")


def key_to_path(key: Sequence[KeyPart]) -> str:
    """Slash-joined URL path form of a key, as used by the REST endpoints."""
    return "/".join(_part_to_path(p) for p in validate_key(key))


def keys_to_param(keys: Iterable[Sequence[KeyPart]]) -> str:
    """Comma-joined key paths for multi-key query parameters."""
    return ",".join(key_to_path(k) for k in keys)


def parse_key_path(path: str) -> Key:
    """
    Parse a human-typed key path ("users/42/profile").

    Integer-looking segments become ints, "true"/"false" become bools,
    everything else is a percent-decoded string.
    """
    parts: list[KeyPart] = []
    for seg in path.strip("/").split("/"):
        if seg == "":
            continue
        if seg in ("true", "false"):
            parts.append(seg == "true")
            continue
        try:
            parts.append(int(seg))
            continue
        except ValueError:
            pass
        parts.append(unquote(seg))
    return validate_key(parts)
