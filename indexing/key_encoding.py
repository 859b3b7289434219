"""
Wrangler Key Encoding
=====================
Order-preserving text encoding for secondary-index values, plus the
composite index-key codec.

Index keys are `attr + SEP + encode_value(value)`. The default SEP is
0xFF, a byte that never occurs in UTF-8, so every encoding below is
plain UTF-8/ASCII and can never contain it. Range scans bounded by
`attr + SEP + 0x00` .. `attr + SEP + 0xFF` therefore enumerate exactly
one attribute's entries.

Encoding rules (1-byte type tag, then payload):
  BOOL    → b"b" + b"0" / b"1"
  FLOAT   → b"f" + 16 hex digits of the IEEE 754 sortable transform.
            NaN is NOT indexable. +0 and -0 normalize to one encoding.
  INT     → b"i" + 16 hex digits of sign-flipped big-endian int64.
            Values outside int64 are not indexable.
  STRING  → b"s" + UTF-8 bytes.
  None    → never indexed (caller filters before encoding).

Within a type, bytewise order == value order. Across types the tag
decides (bool < float < int < str); ints and floats are not interleaved.
"""

import math
import struct
from typing import Any, Tuple

# ─── Type tags ──────────────────────────────────────────────────────────────

TAG_BOOL = b"b"
TAG_FLOAT = b"f"
TAG_INT = b"i"
TAG_STRING = b"s"

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


# ─── Encode ─────────────────────────────────────────────────────────────────

def is_indexable(value: Any) -> bool:
    """True if value has an index encoding (None never does)."""
    if value is None:
        return False
    try:
        encode_value(value)
    except ValueError:
        return False
    return True


def same_value(a: Any, b: Any) -> bool:
    """True if a and b map to the same index entry (1, 1.0 and True do not)."""
    return type(a) is type(b) and a == b


def encode_value(value: Any) -> bytes:
    """
    Encode an attribute value to an order-preserving index key part.

    Raises ValueError if value is None (NULLs not indexed), NaN,
    an out-of-range int, or of an unsupported type.
    """
    if value is None:
        raise ValueError("NULL values cannot be indexed")

    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return TAG_BOOL + (b"1" if value else b"0")

    if isinstance(value, int):
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise ValueError(f"Integer {value} is outside the indexable int64 range")
        return TAG_INT + _encode_int(value)

    if isinstance(value, float):
        if math.isnan(value):
            raise ValueError("NaN values cannot be indexed")
        # Normalize -0.0 to +0.0
        if value == 0.0:
            value = 0.0
        return TAG_FLOAT + _encode_float(value)

    if isinstance(value, str):
        return TAG_STRING + value.encode("utf-8")

    raise ValueError(f"Unsupported index value type: {type(value).__name__}")


def _encode_int(val: int) -> bytes:
    """
    INT encoding: XOR the sign bit of a big-endian int64, hex encoded.
    MIN → 0000000000000000, 0 → 8000000000000000, MAX → ffffffffffffffff.
    """
    raw = bytearray(struct.pack(">q", val))
    raw[0] ^= 0x80
    return raw.hex().encode("ascii")


def _encode_float(val: float) -> bytes:
    """
    FLOAT encoding: IEEE 754 sortable transform, hex encoded.
    Positive: flip the sign bit. Negative: flip ALL bits.
    """
    raw = bytearray(struct.pack(">d", val))
    if raw[0] & 0x80:
        for i in range(8):
            raw[i] ^= 0xFF
    else:
        raw[0] ^= 0x80
    return raw.hex().encode("ascii")


# ─── Decode ─────────────────────────────────────────────────────────────────

def decode_value(data: bytes) -> Any:
    """Reverse encode_value()."""
    if not data:
        raise ValueError("Empty index value")
    tag, payload = data[:1], data[1:]

    if tag == TAG_STRING:
        return payload.decode("utf-8")

    if tag == TAG_INT:
        raw = bytearray(bytes.fromhex(payload.decode("ascii")))
        raw[0] ^= 0x80
        return struct.unpack(">q", bytes(raw))[0]

    if tag == TAG_FLOAT:
        raw = bytearray(bytes.fromhex(payload.decode("ascii")))
        if raw[0] & 0x80:
            raw[0] ^= 0x80
        else:
            for i in range(8):
                raw[i] ^= 0xFF
        return struct.unpack(">d", bytes(raw))[0]

    if tag == TAG_BOOL:
        return payload == b"1"

    raise ValueError(f"Unknown index value tag {tag!r}")


# ─── Composite index keys ───────────────────────────────────────────────────

class IndexKeyCodec:
    """
    Builds and splits `attr + SEP + encoded value` keys.

    The separator is configuration, passed in by whoever owns the
    store layout (see WranglerConfig.sep).
    """

    __slots__ = ("_sep",)

    def __init__(self, sep: bytes = b"\xff"):
        if not isinstance(sep, bytes) or not sep:
            raise ValueError("Index separator must be non-empty bytes")
        self._sep = sep

    @property
    def sep(self) -> bytes:
        return self._sep

    def attr_prefix(self, attr: str) -> bytes:
        name = attr.encode("utf-8")
        if not name or self._sep in name:
            raise ValueError(f"Attribute name {attr!r} cannot be used in an index key")
        return name + self._sep

    def index_key(self, attr: str, value: Any) -> bytes:
        """Composite key for (attr, value). Raises ValueError if not indexable."""
        encoded = encode_value(value)
        if self._sep in encoded:
            raise ValueError(
                f"Value {value!r} of '{attr}' contains the index separator"
            )
        return self.attr_prefix(attr) + encoded

    def attr_range(self, attr: str, start: Any = None,
                   end: Any = None) -> Tuple[bytes, bytes]:
        """
        Relative scan bounds for one attribute: [attr SEP 0x00, attr SEP 0xFF),
        narrowed to [start, end) when given.
        """
        prefix = self.attr_prefix(attr)
        lo = prefix + b"\x00" if start is None else self.index_key(attr, start)
        hi = prefix + b"\xff" if end is None else self.index_key(attr, end)
        return lo, hi

    def split(self, key: bytes) -> Tuple[str, Any]:
        """Split a composite key back into (attr, value)."""
        attr, sep, encoded = key.partition(self._sep)
        if not sep:
            raise ValueError(f"Not an index key: {key!r}")
        return attr.decode("utf-8"), decode_value(encoded)

    def __repr__(self) -> str:
        return f"IndexKeyCodec(sep={self._sep!r})"
