"""
Backup (Recovery) Codes

Issued once at enrollment so a user who loses their authenticator can
still sign in or switch 2FA off. Each code is single-use.

Security considerations:
- Codes come from a cryptographically secure random source
- Only Argon2id hashes are stored, never the codes themselves
- Matching walks the whole set so timing does not reveal the position
"""

import re
import secrets
from typing import List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from .totp import TOTP_DIGITS
from ..core_crypto import base32
from ..errors import SecretGenerationFailure


BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 4

# Backup codes are short and random, so cheaper Argon2id parameters
# than the password defaults keep verification of a full set fast.
BACKUP_HASH_CONFIG = {
    'time_cost': 2,
    'memory_cost': 19456,    # 19 MiB
    'parallelism': 1,
    'hash_len': 32,
    'salt_len': 16,
    'type': Type.ID,
}

_MAX_GENERATION_ROUNDS = 1000


def normalize_backup_code(code: str) -> str:
    """Upper-case a backup code and drop spaces and dashes."""
    return base32.normalize(''.join(str(code).split()))


def is_backup_code_format(code: str, length: int = BACKUP_CODE_LENGTH) -> bool:
    """True if code has the shape of a backup code (base32 characters of the right length)."""
    return bool(re.fullmatch('[A-Z2-7]{%d}' % length, normalize_backup_code(code)))


def generate_backup_codes(count: int = BACKUP_CODE_COUNT,
                          length: int = BACKUP_CODE_LENGTH,
                          random_bytes=secrets.token_bytes) -> List[str]:
    """
    Generate a set of unique backup codes.

    Args:
        count: Number of codes
        length: Characters per code
        random_bytes: Secure random source taking a byte count

    Returns:
        List of uppercase base32 codes, no duplicates and none that
        looks like a TOTP code

    Raises:
        SecretGenerationFailure: If the random source is unavailable
    """
    nbytes = (length * 5 + 7) // 8
    codes: List[str] = []
    seen = set()

    for _ in range(_MAX_GENERATION_ROUNDS):
        if len(codes) == count:
            break
        try:
            raw = random_bytes(nbytes)
        except (OSError, NotImplementedError) as e:
            raise SecretGenerationFailure("Secure random source unavailable") from e
        code = base32.encode(raw)[:length]
        if length == TOTP_DIGITS and code.isdigit():
            # Would be read as a TOTP code and could never be redeemed
            continue
        if code not in seen:
            seen.add(code)
            codes.append(code)

    if len(codes) != count:
        raise SecretGenerationFailure("Could not generate enough unique backup codes")

    return codes


class BackupCodeHasher:
    """
    Hashes and matches backup codes with Argon2id.

    Example:
        >>> hasher = BackupCodeHasher()
        >>> hashes = [hasher.hash_code(c) for c in ["ABCD", "EFGH"]]
        >>> hasher.find_match("efgh", hashes)
        1
    """

    def __init__(self, **kwargs):
        """
        Args:
            **kwargs: Override default Argon2 parameters
        """
        config = BACKUP_HASH_CONFIG.copy()
        config.update(kwargs)
        self._hasher = PasswordHasher(**config)

    def hash_code(self, code: str) -> str:
        """Hash a single backup code."""
        return self._hasher.hash(normalize_backup_code(code))

    def hash_codes(self, codes: Sequence[str]) -> List[str]:
        return [self.hash_code(c) for c in codes]

    def verify(self, code: str, code_hash: str) -> bool:
        """Check one code against one stored hash."""
        try:
            return self._hasher.verify(code_hash, normalize_backup_code(code))
        except VerificationError:
            return False
        except InvalidHashError:
            return False

    def find_match(self, code: str, hashes: Sequence[str]) -> Optional[int]:
        """
        Find which stored hash a code matches.

        Args:
            code: Candidate backup code
            hashes: Stored hashes of unused codes

        Returns:
            Index of the matching hash, or None
        """
        match = None
        for i, code_hash in enumerate(hashes):
            if self.verify(code, code_hash) and match is None:
                match = i
        return match
