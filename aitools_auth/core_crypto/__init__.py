# Core Cryptography Module
"""
Low-level building blocks for the two-factor subsystem:
- Base32 codec (RFC 4648, strict decoding)
- AES-256-GCM secret box for secrets at rest
"""

from . import base32
from .secret_box import SecretBox, generate_key, key_from_base64

__all__ = [
    'base32',
    'SecretBox',
    'generate_key',
    'key_from_base64',
]
