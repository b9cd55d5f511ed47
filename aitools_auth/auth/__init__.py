# Authentication Module
"""
Two-factor authentication for AI Productivity Tools accounts:
- TOTP/HOTP (RFC 6238 / RFC 4226) - totp.py
- Backup codes (Argon2id hashed, single-use) - backup_codes.py
- Failed-attempt rate limiting - rate_limit.py
- Account store - store.py
- Enrollment / step-up service - two_factor.py

Security features:
- HMAC-SHA1 from the standard library, one code path
- Constant-time comparison for codes and secrets
- Cryptographically secure random secrets and backup codes
- Per-account locking so backup codes are spent at most once
"""

from .totp import (
    SecretSetup,
    TOTPGenerator,
    generate_secret,
    generate_setup,
    hotp,
    provisioning_uri,
    verify,
)

from .backup_codes import (
    BackupCodeHasher,
    generate_backup_codes,
    is_backup_code_format,
)

from .rate_limit import RateLimiter

from .store import (
    AccountStore,
    InMemoryAccountStore,
    JSONFileAccountStore,
    TwoFactorRecord,
    TwoFactorState,
)

from .two_factor import (
    ActionKind,
    EnrollmentResult,
    TwoFactorService,
    VerificationResult,
)

__all__ = [
    # TOTP
    'SecretSetup',
    'TOTPGenerator',
    'generate_secret',
    'generate_setup',
    'hotp',
    'provisioning_uri',
    'verify',
    # Backup codes
    'BackupCodeHasher',
    'generate_backup_codes',
    'is_backup_code_format',
    # Rate limiting
    'RateLimiter',
    # Store
    'AccountStore',
    'InMemoryAccountStore',
    'JSONFileAccountStore',
    'TwoFactorRecord',
    'TwoFactorState',
    # Service
    'ActionKind',
    'EnrollmentResult',
    'TwoFactorService',
    'VerificationResult',
]
