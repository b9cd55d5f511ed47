"""
Two-Factor Error Taxonomy

Every failure raised by the two-factor subsystem derives from
TwoFactorError so that request handlers can catch one type.

Verification failures (format, mismatch, step-up) share a single
user-facing message. Callers may show str(exc) to the user without
revealing whether a code was malformed, expired or an already-used
backup code.
"""

from typing import Optional


USER_MESSAGE = "Invalid code"


class TwoFactorError(Exception):
    """Base class for all two-factor errors."""


class InvalidEncoding(TwoFactorError, ValueError):
    """A base32 secret contains characters outside the alphabet or has an impossible length."""


class SecretGenerationFailure(TwoFactorError):
    """
    The secure random source is unavailable.

    Fatal for the current setup request. Never retried with a weaker
    random source.
    """


class SecretDecryptionError(TwoFactorError):
    """A stored secret could not be decrypted (wrong master key or tampered record)."""


class VerificationError(TwoFactorError):
    """
    Base class for recoverable code verification failures.

    The message is always USER_MESSAGE. The precise reason is kept
    on the `reason` attribute for logging and tests only.
    """

    def __init__(self, reason: str = ""):
        super().__init__(USER_MESSAGE)
        self.reason = reason


class InvalidCodeFormat(VerificationError):
    """Candidate code is neither 6 digits nor a backup-code shape."""


class InvalidCode(VerificationError):
    """Code is well-formed but matches no tolerated step nor any unused backup code."""


class InvalidTwoFactorCode(VerificationError):
    """Step-up verification for a sensitive action failed."""


class NotEnrolled(TwoFactorError):
    """Operation requires two-factor authentication but the account has no secret."""

    def __init__(self, account_id: str):
        super().__init__("Two-factor authentication is not enabled for this account")
        self.account_id = account_id


class AlreadyEnrolled(TwoFactorError):
    """Setup was requested for an account that already has 2FA enabled."""

    def __init__(self, account_id: str):
        super().__init__("Two-factor authentication is already enabled for this account")
        self.account_id = account_id


class TooManyAttempts(TwoFactorError):
    """Too many failed verifications; the account is temporarily locked."""

    def __init__(self, retry_after: int, account_id: Optional[str] = None):
        super().__init__(f"Too many attempts. Try again in {retry_after} seconds.")
        self.retry_after = retry_after
        self.account_id = account_id


class ConcurrentModification(TwoFactorError):
    """The account record kept changing underneath a request; the request may be retried."""

    def __init__(self, account_id: str):
        super().__init__("Two-factor settings changed concurrently. Please try again.")
        self.account_id = account_id
