"""
Deterministic bucketing of session identifiers.

The same identifier always lands in the same bucket, across calls and
across process restarts: no seed, no clock. The hash is the 31-multiplier
polynomial hash the web client uses, kept in 32-bit signed arithmetic so a
server-side assignment agrees with one computed in the browser.
"""

BUCKET_COUNT = 100

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


def _to_int32(value: int) -> int:
    value &= _INT32_MASK
    return value - (1 << 32) if value & _INT32_SIGN else value


def hash_identifier(identifier: str) -> int:
    """
    Non-negative polynomial hash of ``identifier`` (h = h * 31 + code, wrapped to int32).

    Codes are UTF-16 code units, so characters above U+FFFF contribute
    their surrogate pair as JavaScript ``charCodeAt`` does.
    """
    data = identifier.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = _to_int32((h << 5) - h + code)
    return abs(h)


def bucket(identifier: str) -> int:
    """Map ``identifier`` to a stable bucket in [0, 99]."""
    return hash_identifier(identifier) % BUCKET_COUNT


def bucket_for(identifier: str, salt: str) -> int:
    """Bucket ``identifier`` independently of :func:`bucket` by mixing in a salt."""
    return bucket(f"{identifier}:{salt}")
