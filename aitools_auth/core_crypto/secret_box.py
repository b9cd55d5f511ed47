"""
Secret Box - AES-256-GCM encryption for secrets at rest

TOTP secrets are stored encrypted so a leaked account store does not
leak the shared secrets. The account id is bound as associated data,
so a token copied onto another account fails to decrypt.

Token format: base64(nonce || ciphertext || tag)
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import SecretDecryptionError


AES_KEY_SIZE = 32   # 256-bit key
NONCE_SIZE = 12     # 96-bit nonce for GCM


def generate_key() -> bytes:
    """Generate a fresh 256-bit master key."""
    return AESGCM.generate_key(bit_length=256)


def key_from_base64(raw: str) -> bytes:
    """
    Decode a base64 master key from configuration.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes
    """
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise ValueError("Master key must be base64-encoded") from e
    if len(key) != AES_KEY_SIZE:
        raise ValueError(f"Master key must be {AES_KEY_SIZE} bytes (base64-encoded)")
    return key


class SecretBox:
    """
    Encrypts and decrypts short strings with AES-256-GCM.

    Example:
        >>> box = SecretBox(generate_key())
        >>> token = box.encrypt("JBSWY3DPEHPK3PXP", context="acct-1")
        >>> box.decrypt(token, context="acct-1")
        'JBSWY3DPEHPK3PXP'
    """

    def __init__(self, key: bytes):
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str, context: Optional[str] = None) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Value to protect
            context: Optional associated data (authenticated, not encrypted)

        Returns:
            base64 token containing nonce and ciphertext
        """
        nonce = os.urandom(NONCE_SIZE)
        aad = context.encode() if context is not None else None
        ct = self._aesgcm.encrypt(nonce, plaintext.encode(), aad)
        return base64.b64encode(nonce + ct).decode('ascii')

    def decrypt(self, token: str, context: Optional[str] = None) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            SecretDecryptionError: Wrong key, wrong context or tampered token
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except binascii.Error as e:
            raise SecretDecryptionError("Stored secret is not valid base64") from e

        if len(raw) <= NONCE_SIZE:
            raise SecretDecryptionError("Stored secret is truncated")

        nonce, ct = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        aad = context.encode() if context is not None else None
        try:
            return self._aesgcm.decrypt(nonce, ct, aad).decode()
        except InvalidTag as e:
            raise SecretDecryptionError("Stored secret failed authentication") from e
