"""
TOTP (Time-based One-Time Password) Implementation

Implements RFC 4226 HOTP and RFC 6238 TOTP for two-factor authentication.

Features:
- Secret generation from a cryptographically secure random source
- HOTP dynamic truncation over HMAC-SHA1
- TOTP verification with a +/- time step tolerance window
- otpauth:// provisioning URIs and QR codes for authenticator apps

Compatible with Google Authenticator, Authy, Microsoft Authenticator
and any RFC 6238 authenticator using SHA1 / 6 digits / 30 seconds.
"""

import hmac
import hashlib
import io
import logging
import re
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from ..core_crypto import base32
from ..errors import SecretGenerationFailure


logger = logging.getLogger(__name__)

# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_SECRET_BYTES = 20    # Secret key length (160 bits for SHA-1)
TOTP_ALGORITHM = 'SHA1'   # Hash algorithm
TOTP_DRIFT_TOLERANCE = 1  # Accept codes from +/- this many time steps
DEFAULT_ISSUER = "AI Productivity Tools"
DISPLAY_GROUP_SIZE = 4

MAX_COUNTER = 2 ** 64 - 1
_CODE_PATTERN = re.compile(r'[0-9]{%d}' % TOTP_DIGITS)

RandomSource = Callable[[int], bytes]
Clock = Callable[[], float]


@dataclass(frozen=True)
class SecretSetup:
    """What the user sees once at enrollment."""
    secret: str
    provisioning_uri: str
    display_groups: List[str]

    def __repr__(self) -> str:
        # Keep the secret out of tracebacks and debug output
        return f"SecretSetup(provisioning_uri=<hidden>, groups={len(self.display_groups)})"


def generate_secret(random_bytes: RandomSource = secrets.token_bytes) -> str:
    """
    Generate a new shared secret.

    Args:
        random_bytes: Secure random source taking a byte count

    Returns:
        32-character base32 string (160 random bits, no padding)

    Raises:
        SecretGenerationFailure: If the random source is unavailable
    """
    try:
        raw = random_bytes(TOTP_SECRET_BYTES)
    except (OSError, NotImplementedError) as e:
        logger.error("Secure random source unavailable during secret generation")
        raise SecretGenerationFailure("Secure random source unavailable") from e

    if not isinstance(raw, (bytes, bytearray)) or len(raw) != TOTP_SECRET_BYTES:
        raise SecretGenerationFailure("Secure random source returned an unexpected value")

    return base32.encode(bytes(raw))


def display_groups(secret: str, size: int = DISPLAY_GROUP_SIZE) -> List[str]:
    """Split a secret into groups for manual entry ("ABCD EFGH ...")."""
    return [secret[i:i + size] for i in range(0, len(secret), size)]


def normalize_code(code: str) -> str:
    """Strip whitespace a user may type between digit groups."""
    return ''.join(str(code).split())


def is_code_format(code: str) -> bool:
    """True if code is exactly six ASCII digits (after whitespace removal)."""
    return bool(_CODE_PATTERN.fullmatch(normalize_code(code)))


def get_time_counter(timestamp: Optional[float] = None, time_step: int = TOTP_TIME_STEP) -> int:
    """
    Get the time counter value for TOTP.

    Args:
        timestamp: Unix timestamp (uses current time if None)
        time_step: Time step in seconds

    Returns:
        Time counter (T = floor(time / time_step))
    """
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp // time_step)


def hotp(secret: bytes, counter: int, digits: int = TOTP_DIGITS) -> str:
    """
    Generate HOTP (HMAC-based OTP) value.

    Implements RFC 4226 with HMAC-SHA1.

    Args:
        secret: Shared secret key (raw bytes)
        counter: Counter value (unsigned 64-bit)
        digits: Number of digits in OTP (default 6)

    Returns:
        OTP string with specified number of digits

    Raises:
        ValueError: If counter is outside the unsigned 64-bit range
    """
    if not 0 <= counter <= MAX_COUNTER:
        raise ValueError(f"Counter out of range: {counter}")

    # Pack counter as 8-byte big-endian integer
    counter_bytes = struct.pack('>Q', counter)

    hmac_hash = hmac.new(secret, counter_bytes, hashlib.sha1).digest()

    # Dynamic truncation: offset from the low nibble of the last byte
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack('>I', hmac_hash[offset:offset + 4])[0]
    truncated &= 0x7FFFFFFF

    otp = truncated % (10 ** digits)
    return str(otp).zfill(digits)


def totp(secret: str, timestamp: Optional[float] = None,
         time_step: int = TOTP_TIME_STEP) -> str:
    """
    Generate the TOTP value for a base32 secret.

    Args:
        secret: Base32-encoded shared secret
        timestamp: Unix timestamp (uses current time if None)
        time_step: Time step in seconds

    Returns:
        Six-digit code
    """
    counter = get_time_counter(timestamp, time_step)
    return hotp(base32.decode(secret), counter)


def verify(code: str, secret: str,
           tolerance_steps: int = TOTP_DRIFT_TOLERANCE,
           timestamp: Optional[float] = None,
           time_step: int = TOTP_TIME_STEP) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Checks steps T-tolerance .. T+tolerance around the current step.
    A malformed code is rejected before any HMAC is computed.

    Args:
        code: Candidate code from the user
        secret: Base32-encoded shared secret
        tolerance_steps: Number of time steps to accept in each direction
        timestamp: Unix timestamp (uses current time if None)
        time_step: Time step in seconds

    Returns:
        True if code is valid, False otherwise

    Raises:
        InvalidEncoding: If the secret is not valid base32
    """
    if tolerance_steps < 0:
        raise ValueError("tolerance_steps must be non-negative")

    key = base32.decode(secret)

    candidate = normalize_code(code)
    if not _CODE_PATTERN.fullmatch(candidate):
        return False

    current_counter = get_time_counter(timestamp, time_step)

    for offset in range(-tolerance_steps, tolerance_steps + 1):
        counter = current_counter + offset
        if counter < 0 or counter > MAX_COUNTER:
            continue
        if hmac.compare_digest(candidate, hotp(key, counter)):
            return True

    return False


def get_remaining_seconds(timestamp: Optional[float] = None,
                          time_step: int = TOTP_TIME_STEP) -> int:
    """Seconds until the current code rolls over."""
    if timestamp is None:
        timestamp = time.time()
    return time_step - (int(timestamp) % time_step)


def provisioning_uri(secret: str, account_label: str,
                     issuer: str = DEFAULT_ISSUER) -> str:
    """
    Build the otpauth:// URI scanned by authenticator apps.

    otpauth://totp/{issuer}:{label}?secret=..&issuer=..&algorithm=SHA1&digits=6&period=30
    """
    issuer_q = quote(issuer, safe='')
    label_q = quote(account_label, safe='')
    return (
        f"otpauth://totp/{issuer_q}:{label_q}"
        f"?secret={secret}"
        f"&issuer={issuer_q}"
        f"&algorithm={TOTP_ALGORITHM}"
        f"&digits={TOTP_DIGITS}"
        f"&period={TOTP_TIME_STEP}"
    )


def generate_setup(account_label: str, issuer: str = DEFAULT_ISSUER,
                   random_bytes: RandomSource = secrets.token_bytes) -> SecretSetup:
    """
    Create everything needed to show an enrollment screen.

    Pure: nothing is persisted. The caller stores the secret only
    after the user proves they can generate codes.
    """
    secret = generate_secret(random_bytes)
    return SecretSetup(
        secret=secret,
        provisioning_uri=provisioning_uri(secret, account_label, issuer),
        display_groups=display_groups(secret),
    )


def make_qr(uri: str) -> qrcode.QRCode:
    """Build a QR code object for a provisioning URI."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    return qr


def qr_ascii(uri: str) -> str:
    """Render a provisioning URI as a terminal-printable QR code."""
    out = io.StringIO()
    make_qr(uri).print_ascii(out=out)
    return out.getvalue()


class TOTPGenerator:
    """
    TOTP generator and verifier for a specific secret.

    Example:
        >>> gen = TOTPGenerator(account_label="alice@example.com")
        >>> code = gen.generate()
        >>> gen.verify(code)
        True
    """

    def __init__(self, secret: Optional[str] = None,
                 issuer: str = DEFAULT_ISSUER,
                 account_label: str = "user",
                 time_step: int = TOTP_TIME_STEP,
                 tolerance_steps: int = TOTP_DRIFT_TOLERANCE,
                 clock: Clock = time.time):
        """
        Initialize TOTP generator.

        Args:
            secret: Base32 shared secret (generated if None)
            issuer: Service name for authenticator apps
            account_label: Account identifier, usually the email address
            time_step: Time step in seconds
            tolerance_steps: Accepted drift in steps each direction
            clock: Callable returning the current Unix time
        """
        if secret is None:
            secret = generate_secret()
        else:
            base32.decode(secret)  # fail early on a malformed secret
        self._secret = secret
        self._issuer = issuer
        self._account_label = account_label
        self._time_step = time_step
        self._tolerance_steps = tolerance_steps
        self._clock = clock

    @property
    def secret(self) -> str:
        """Base32-encoded secret."""
        return self._secret

    def generate(self, timestamp: Optional[float] = None) -> str:
        """Generate the code for the given (or current) time."""
        if timestamp is None:
            timestamp = self._clock()
        return totp(self._secret, timestamp, self._time_step)

    def verify(self, code: str, timestamp: Optional[float] = None) -> bool:
        """Verify a code at the given (or current) time."""
        if timestamp is None:
            timestamp = self._clock()
        return verify(code, self._secret, self._tolerance_steps,
                      timestamp, self._time_step)

    def provisioning_uri(self) -> str:
        return provisioning_uri(self._secret, self._account_label, self._issuer)

    def qr_code_ascii(self) -> str:
        """ASCII QR code for terminal display."""
        return qr_ascii(self.provisioning_uri())

    def remaining_seconds(self) -> int:
        """Get seconds until next code."""
        return get_remaining_seconds(self._clock(), self._time_step)

    def __repr__(self) -> str:
        return f"TOTPGenerator(issuer='{self._issuer}', account='{self._account_label}')"


# Self-test when run directly
if __name__ == "__main__":
    print("HOTP (RFC 4226) test vectors")
    print("=" * 60)

    test_secret = b"12345678901234567890"
    expected_hotp = [
        "755224", "287082", "359152", "969429", "338314",
        "254676", "287922", "162583", "399871", "520489"
    ]

    all_passed = True
    for counter, expected in enumerate(expected_hotp):
        result = hotp(test_secret, counter)
        passed = result == expected
        all_passed = all_passed and passed
        print(f"  Counter {counter}: {result} {'✓' if passed else '✗ expected ' + expected}")

    print(f"\nOverall: {'All tests passed!' if all_passed else 'Some tests failed!'}")
