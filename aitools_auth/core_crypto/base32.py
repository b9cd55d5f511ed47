"""
Base32 Codec (RFC 4648)

Encodes shared secrets between raw bytes and the 32-character
alphabet used by authenticator apps (A-Z, 2-7).

- Encoding never emits '=' padding
- Decoding is strict: characters outside the alphabet are rejected
- Spaces and '-' are ignored so grouped secrets can be typed back in
"""

import base64
import binascii

from ..errors import InvalidEncoding


ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_ALPHABET_SET = frozenset(ALPHABET)
_SEPARATORS = (" ", "-", "\t")

# Unpadded lengths (mod 8) that cannot come from any byte string
_INVALID_REMAINDERS = (1, 3, 6)


def encode(data: bytes) -> str:
    """
    Encode bytes as unpadded base32.

    Args:
        data: Raw bytes

    Returns:
        Uppercase base32 string without '=' padding
    """
    return base64.b32encode(data).decode('ascii').rstrip('=')


def normalize(text: str) -> str:
    """Upper-case a base32 string and drop grouping separators."""
    for sep in _SEPARATORS:
        text = text.replace(sep, '')
    return text.upper()


def decode(text: str) -> bytes:
    """
    Decode an unpadded base32 string.

    Args:
        text: Base32 string (case-insensitive, may contain spaces or dashes)

    Returns:
        Raw bytes

    Raises:
        InvalidEncoding: On characters outside the alphabet, padding,
            or a length no byte string encodes to
    """
    if not isinstance(text, str):
        raise InvalidEncoding("Base32 input must be a string")
    # upper() would turn e.g. 'ß' into 'SS'
    if not text.isascii():
        raise InvalidEncoding("Base32 input must be ASCII")

    cleaned = normalize(text)

    bad = sorted(set(cleaned) - _ALPHABET_SET)
    if bad:
        raise InvalidEncoding(f"Invalid base32 character(s): {''.join(bad)!r}")

    if len(cleaned) % 8 in _INVALID_REMAINDERS:
        raise InvalidEncoding(f"Invalid base32 length: {len(cleaned)}")

    padded = cleaned + '=' * (-len(cleaned) % 8)
    try:
        return base64.b32decode(padded)
    except binascii.Error as e:
        raise InvalidEncoding(str(e)) from e


def is_valid(text: str) -> bool:
    """Check whether a string decodes as strict base32."""
    try:
        decode(text)
    except InvalidEncoding:
        return False
    return True
