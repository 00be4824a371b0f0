"""
Short, human-typable identifiers derived from full record ids.

A shortcode is 6 symbols from a 33-symbol alphabet (uppercase letters and
digits without I, O and 0). It is derived from the SHA-256 of the full id,
so the same id always yields the same code until a collision forces a
perturbation. Uniqueness holds only against the cache the caller passes in.
"""

import hashlib
from typing import Optional

CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ123456789"
SHORTCODE_LENGTH = 6


def _encode(value: int) -> str:
    """Render the low SHORTCODE_LENGTH base-33 digits of value, most significant first."""
    base = len(CHARSET)
    symbols = []
    for _ in range(SHORTCODE_LENGTH):
        value, remainder = divmod(value, base)
        symbols.append(CHARSET[remainder])
    return "".join(reversed(symbols))


def generate_shortcode(full_id: str, cache: Optional[set[str]] = None) -> str:
    """
    Derive a shortcode for full_id that is not already in cache.

    On collision the hash integer is incremented and the code re-derived
    until a fresh one is found. The result is added to cache.

    Args:
        full_id: The record's full identifier
        cache: Codes already issued in this process (mutated)

    Returns:
        A 6-character code
    """
    if cache is None:
        cache = set()
    value = int.from_bytes(hashlib.sha256(full_id.encode("utf-8")).digest(), "big")
    while True:
        code = _encode(value)
        if code not in cache:
            cache.add(code)
            return code
        value += 1


def is_shortcode(text: str) -> bool:
    """Check whether text has the shape of a shortcode (case-insensitive, optional '#')."""
    text = text.lstrip("#").upper()
    return len(text) == SHORTCODE_LENGTH and all(c in CHARSET for c in text)
