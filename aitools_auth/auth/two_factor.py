"""
Two-Factor Authentication Service

Enrollment, login verification, step-up checks and disabling of TOTP
two-factor authentication for application accounts.

State machine:
    DISABLED --begin_setup--> PENDING_SETUP --enable(ok)--> ENABLED
    ENABLED --disable(ok)--> DISABLED (secret and backup codes erased)

Failed checks never change the stored record.

Concurrency:
    Every change to an account record is committed with the store's
    compare_and_swap(). If another request (in this process or another
    one sharing the store) changed the record first, the change is
    re-checked against the fresh record. A backup code that was spent
    meanwhile is gone from the fresh record, so it can never be spent
    twice. A per-account lock additionally serializes requests inside
    one service instance.
"""

import hmac
import logging
import secrets
import threading
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from . import totp
from .backup_codes import (
    BACKUP_CODE_COUNT,
    BACKUP_CODE_LENGTH,
    BackupCodeHasher,
    generate_backup_codes,
    is_backup_code_format,
)
from .rate_limit import RateLimiter
from .store import AccountStore, TwoFactorRecord, TwoFactorState
from ..core_crypto import base32
from ..core_crypto.secret_box import SecretBox
from ..errors import (
    AlreadyEnrolled,
    ConcurrentModification,
    InvalidCode,
    InvalidCodeFormat,
    InvalidTwoFactorCode,
    NotEnrolled,
    TooManyAttempts,
    VerificationError,
)
from ..integration.event_logger import EventLogger, EventType


logger = logging.getLogger(__name__)

METHOD_TOTP = "totp"
METHOD_BACKUP_CODE = "backup_code"

# Attempts at committing one change before giving up
MAX_COMMIT_ATTEMPTS = 5

# Returned by a change function that leaves the record as it is
_UNCHANGED = object()


class ActionKind(Enum):
    """Kinds of user actions, for deciding whether step-up is needed."""
    PURCHASE = "purchase"
    SETTINGS = "settings"
    WITHDRAW = "withdraw"
    OTHER = "other"


STEP_UP_ACTIONS = frozenset({ActionKind.PURCHASE, ActionKind.SETTINGS, ActionKind.WITHDRAW})


@dataclass(frozen=True)
class EnrollmentResult:
    """Returned once when 2FA is switched on. The only time backup codes are shown."""
    backup_codes: List[str]

    def __repr__(self) -> str:
        return f"EnrollmentResult(backup_codes=<{len(self.backup_codes)} hidden>)"


@dataclass(frozen=True)
class VerificationResult:
    method: str
    backup_codes_remaining: int


class _AccountLock:
    """Per-account mutex. A plain object so it can be weakly referenced."""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self) -> '_AccountLock':
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class TwoFactorService:
    """
    Stateless two-factor verifier over an injected account store.

    All collaborators are passed in; nothing is read from globals.

    Example:
        >>> service = TwoFactorService(InMemoryAccountStore())
        >>> setup = service.begin_setup("acct-1", "alice@example.com")
        >>> code = totp.totp(setup.secret)
        >>> result = service.enable("acct-1", code, setup.secret)
        >>> len(result.backup_codes)
        10
    """

    def __init__(self, store: AccountStore, *,
                 issuer: str = totp.DEFAULT_ISSUER,
                 tolerance_steps: int = totp.TOTP_DRIFT_TOLERANCE,
                 clock: Callable[[], float] = time.time,
                 random_bytes: Callable[[int], bytes] = secrets.token_bytes,
                 secret_box: Optional[SecretBox] = None,
                 backup_hasher: Optional[BackupCodeHasher] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 event_logger: Optional[EventLogger] = None,
                 backup_code_count: int = BACKUP_CODE_COUNT,
                 backup_code_length: int = BACKUP_CODE_LENGTH):
        """
        Initialize the service.

        Args:
            store: Where per-account records live
            issuer: Name shown in authenticator apps
            tolerance_steps: Accepted clock drift, in 30 second steps
            clock: Callable returning the current Unix time
            random_bytes: Secure random source taking a byte count
            secret_box: Encrypts secrets at rest (plain base32 if None)
            backup_hasher: Hashes backup codes (Argon2id defaults if None)
            rate_limiter: Failed-attempt limiter (5 tries / 5 minutes if None)
            event_logger: Audit trail (a private one if None)
            backup_code_count: Codes issued per enrollment
            backup_code_length: Characters per backup code
        """
        self._store = store
        self._issuer = issuer
        self._tolerance_steps = tolerance_steps
        self._clock = clock
        self._random_bytes = random_bytes
        self._secret_box = secret_box
        self._backup_hasher = backup_hasher or BackupCodeHasher()
        self._rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self._events = event_logger or EventLogger(clock=clock)
        self._backup_code_count = backup_code_count
        self._backup_code_length = backup_code_length

        # Entries disappear once no request holds the lock
        self._locks: 'weakref.WeakValueDictionary[str, _AccountLock]' = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ========================================================================
    # Internals
    # ========================================================================

    def _account_lock(self, account_id: str) -> _AccountLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = _AccountLock()
                self._locks[account_id] = lock
            return lock

    def _update(self, account_id: str,
                change: Callable[[Optional[TwoFactorRecord]], Tuple[Any, Any]]) -> Any:
        """
        Apply `change` to the current record and commit it with compare-and-swap.

        `change` receives a private copy of the record (or None) and
        returns (new_record, result). new_record may be None to delete
        the record or _UNCHANGED to skip the write. On a lost race the
        change is run again against the fresh record.

        Raises:
            ConcurrentModification: If every commit attempt lost a race
        """
        with self._account_lock(account_id):
            for _ in range(MAX_COMMIT_ATTEMPTS):
                current = self._store.get(account_id)
                new, result = change(current.copy() if current else None)
                if new is _UNCHANGED:
                    return result
                if self._store.compare_and_swap(account_id, current, new):
                    return result
                logger.debug("Retrying change for account %s after concurrent update", account_id)
        raise ConcurrentModification(account_id)

    def _seal(self, account_id: str, secret: str) -> str:
        if self._secret_box is None:
            return secret
        return self._secret_box.encrypt(secret, context=account_id)

    def _unseal(self, record: TwoFactorRecord) -> str:
        if self._secret_box is None:
            return record.secret
        return self._secret_box.decrypt(record.secret, context=record.account_id)

    def _classify(self, code: Optional[str]) -> Tuple[str, str]:
        """Decide whether a candidate is a TOTP code or a backup code, before any crypto."""
        if code is None:
            raise InvalidCodeFormat("missing")
        if totp.is_code_format(code):
            return METHOD_TOTP, totp.normalize_code(code)
        if is_backup_code_format(code, self._backup_code_length):
            return METHOD_BACKUP_CODE, code
        raise InvalidCodeFormat("shape")

    def _check_rate_limit(self, account_id: str) -> None:
        locked, remaining = self._rate_limiter.is_locked_out(account_id)
        if locked:
            self._events.log(EventType.LOCKED_OUT, account_id, retry_after=remaining)
            raise TooManyAttempts(remaining, account_id)

    def _verify_totp(self, code: str, secret: str) -> bool:
        return totp.verify(code, secret, self._tolerance_steps, timestamp=self._clock())

    def _fail(self, account_id: str, reason: str, method: Optional[str] = None) -> InvalidCode:
        self._rate_limiter.record_attempt(account_id, success=False)
        self._events.log(EventType.TOTP_FAILED, account_id, method=method or "unknown")
        return InvalidCode(reason)

    def _check_code(self, record: TwoFactorRecord, code: Optional[str],
                    allow_backup: bool = True) -> str:
        """
        Verify a code against an enabled record.

        A matching backup code is removed from `record`; the caller
        must commit the record for the code to count as spent.

        Returns:
            The method that matched (METHOD_TOTP or METHOD_BACKUP_CODE)
        """
        account_id = record.account_id
        self._check_rate_limit(account_id)

        try:
            method, candidate = self._classify(code)
        except InvalidCodeFormat:
            self._fail(account_id, "format")
            raise

        if method == METHOD_TOTP:
            if not self._verify_totp(candidate, self._unseal(record)):
                raise self._fail(account_id, "mismatch", method)
        else:
            if not allow_backup:
                raise self._fail(account_id, "backup code not accepted", method)
            index = self._backup_hasher.find_match(candidate, record.backup_code_hashes)
            if index is None:
                # Unknown and already-consumed codes are indistinguishable here
                raise self._fail(account_id, "mismatch", method)
            del record.backup_code_hashes[index]

        self._rate_limiter.record_attempt(account_id, success=True)
        return method

    @staticmethod
    def _require_enabled(account_id: str, record: Optional[TwoFactorRecord]) -> TwoFactorRecord:
        if record is None or record.state is not TwoFactorState.ENABLED:
            raise NotEnrolled(account_id)
        return record

    def _issue_backup_codes(self) -> Tuple[List[str], List[str]]:
        codes = generate_backup_codes(self._backup_code_count, self._backup_code_length,
                                      self._random_bytes)
        return codes, self._backup_hasher.hash_codes(codes)

    def _log_backup_use(self, account_id: str, method: str, remaining: int) -> None:
        if method == METHOD_BACKUP_CODE:
            self._events.log(EventType.BACKUP_CODE_USED, account_id, remaining=remaining)

    # ========================================================================
    # Enrollment
    # ========================================================================

    def generate_secret(self, account_label: str) -> totp.SecretSetup:
        """
        Create a secret and provisioning URI. Nothing is persisted.

        Args:
            account_label: Shown in the authenticator app, usually the email

        Raises:
            SecretGenerationFailure: If the secure random source fails
        """
        return totp.generate_setup(account_label, self._issuer, self._random_bytes)

    def begin_setup(self, account_id: str, account_label: str) -> totp.SecretSetup:
        """
        Start enrollment: DISABLED or PENDING_SETUP -> PENDING_SETUP.

        A new pending secret replaces any earlier unfinished one.

        Raises:
            AlreadyEnrolled: If 2FA is already enabled
        """
        setup = self.generate_secret(account_label)
        sealed = self._seal(account_id, setup.secret)

        def change(existing):
            if existing is not None and existing.state is TwoFactorState.ENABLED:
                raise AlreadyEnrolled(account_id)
            now = self._clock()
            return TwoFactorRecord(
                account_id=account_id,
                state=TwoFactorState.PENDING_SETUP,
                secret=sealed,
                created_at=now,
                updated_at=now,
            ), None

        self._update(account_id, change)
        self._events.log(EventType.SETUP_STARTED, account_id)
        return setup

    def cancel_setup(self, account_id: str) -> bool:
        """Abandon a pending enrollment. Returns True if one was pending."""
        def change(record):
            if record is None or record.state is not TwoFactorState.PENDING_SETUP:
                return _UNCHANGED, False
            return None, True

        cancelled = self._update(account_id, change)
        if cancelled:
            self._events.log(EventType.SETUP_CANCELLED, account_id)
        return cancelled

    def enable(self, account_id: str, code: str, secret: str) -> EnrollmentResult:
        """
        Confirm enrollment with a code from the authenticator app.

        On success the secret and hashed backup codes are stored and the
        plaintext backup codes are returned. This is the only time
        they can be shown.

        Args:
            account_id: Account being enrolled
            code: Current six-digit code
            secret: Base32 secret from generate_secret()/begin_setup()

        Returns:
            EnrollmentResult with the backup codes

        Raises:
            InvalidCodeFormat: Code is not six digits
            InvalidCode: Code does not match, or secret differs from the pending one
            InvalidEncoding: Secret is not valid base32
            AlreadyEnrolled: 2FA is already enabled
            TooManyAttempts: Account is locked after repeated failures
        """
        base32.decode(secret)
        secret = base32.normalize(secret)
        issued: List[Tuple[List[str], List[str]]] = []

        def change(existing):
            if existing is not None and existing.state is TwoFactorState.ENABLED:
                raise AlreadyEnrolled(account_id)

            self._check_rate_limit(account_id)

            if not totp.is_code_format(code):
                self._fail(account_id, "format")
                raise InvalidCodeFormat("format")

            if existing is not None and existing.state is TwoFactorState.PENDING_SETUP:
                pending = self._unseal(existing)
                if not hmac.compare_digest(pending.encode(), secret.encode()):
                    raise self._fail(account_id, "secret differs from pending setup", METHOD_TOTP)

            if not self._verify_totp(code, secret):
                raise self._fail(account_id, "mismatch", METHOD_TOTP)

            self._rate_limiter.record_attempt(account_id, success=True)

            if not issued:
                issued.append(self._issue_backup_codes())
            codes, hashes = issued[0]
            now = self._clock()
            return TwoFactorRecord(
                account_id=account_id,
                state=TwoFactorState.ENABLED,
                secret=self._seal(account_id, secret),
                backup_code_hashes=list(hashes),
                created_at=existing.created_at if existing else now,
                enabled_at=now,
                updated_at=now,
            ), codes

        codes = self._update(account_id, change)
        self._events.log(EventType.TOTP_VERIFIED, account_id, method=METHOD_TOTP)
        self._events.log(EventType.ENABLED, account_id, backup_codes=len(codes))
        return EnrollmentResult(backup_codes=codes)

    def disable(self, account_id: str, code: str) -> None:
        """
        Switch 2FA off: ENABLED -> DISABLED.

        Accepts a current TOTP code or an unused backup code. Erases
        the secret and all backup codes.

        Raises:
            NotEnrolled: 2FA is not enabled
            InvalidCodeFormat / InvalidCode: Verification failed (state unchanged)
            TooManyAttempts: Account is locked after repeated failures
        """
        def change(record):
            record = self._require_enabled(account_id, record)
            method = self._check_code(record, code)
            return None, (method, len(record.backup_code_hashes))

        method, remaining = self._update(account_id, change)
        self._log_backup_use(account_id, method, remaining)
        self._events.log(EventType.DISABLED, account_id, method=method)

    def regenerate_backup_codes(self, account_id: str, code: str) -> List[str]:
        """
        Replace the whole backup-code set. Requires a current TOTP code.

        Returns:
            The new plaintext backup codes
        """
        issued: List[Tuple[List[str], List[str]]] = []

        def change(record):
            record = self._require_enabled(account_id, record)
            self._check_code(record, code, allow_backup=False)
            if not issued:
                issued.append(self._issue_backup_codes())
            codes, hashes = issued[0]
            record.backup_code_hashes = list(hashes)
            record.updated_at = self._clock()
            return record, codes

        codes = self._update(account_id, change)
        self._events.log(EventType.BACKUP_CODES_REGENERATED, account_id, backup_codes=len(codes))
        return codes

    # ========================================================================
    # Queries
    # ========================================================================

    def get_state(self, account_id: str) -> TwoFactorState:
        record = self._store.get(account_id)
        return record.state if record else TwoFactorState.DISABLED

    def is_enabled(self, account_id: str) -> bool:
        return self.get_state(account_id) is TwoFactorState.ENABLED

    def remaining_backup_codes(self, account_id: str) -> int:
        """Number of unused backup codes (0 when 2FA is not enabled)."""
        record = self._store.get(account_id)
        if record is None or record.state is not TwoFactorState.ENABLED:
            return 0
        return len(record.backup_code_hashes)

    # ========================================================================
    # Verification
    # ========================================================================

    def verify_login(self, account_id: str, code: str) -> VerificationResult:
        """
        Second factor at sign-in. Accepts a TOTP code or an unused backup code.

        Raises:
            NotEnrolled: 2FA is not enabled
            InvalidCodeFormat / InvalidCode: Verification failed
            TooManyAttempts: Account is locked after repeated failures
        """
        def change(record):
            record = self._require_enabled(account_id, record)
            method = self._check_code(record, code)
            remaining = len(record.backup_code_hashes)
            if method == METHOD_TOTP:
                return _UNCHANGED, (method, remaining)
            record.updated_at = self._clock()
            return record, (method, remaining)

        method, remaining = self._update(account_id, change)
        self._log_backup_use(account_id, method, remaining)
        self._events.log(EventType.TOTP_VERIFIED, account_id, method=method)
        return VerificationResult(method=method, backup_codes_remaining=remaining)

    @staticmethod
    def requires_step_up(action_kind: Union[ActionKind, str]) -> bool:
        """
        Whether an action needs a fresh second factor.

        Raises:
            ValueError: If action_kind is not a known kind
        """
        return ActionKind(action_kind) in STEP_UP_ACTIONS

    def step_up(self, account_id: str, code: Optional[str]) -> VerificationResult:
        """
        Verify a code before a sensitive action.

        Raises:
            NotEnrolled: 2FA is not enabled
            InvalidTwoFactorCode: Code missing, malformed or wrong
            TooManyAttempts: Account is locked after repeated failures
        """
        try:
            result = self.verify_login(account_id, code)
        except VerificationError as e:
            self._events.log(EventType.STEP_UP_DENIED, account_id)
            raise InvalidTwoFactorCode(e.reason) from e

        self._events.log(EventType.STEP_UP_GRANTED, account_id, method=result.method)
        return result

    def authorize_action(self, account_id: str, action_kind: Union[ActionKind, str],
                         code: Optional[str] = None) -> Optional[VerificationResult]:
        """
        Gate an action on step-up verification when required.

        Returns None when no verification was needed (action is not
        sensitive, or the account has no 2FA). Otherwise returns the
        verification result or raises InvalidTwoFactorCode.
        """
        if not self.requires_step_up(action_kind) or not self.is_enabled(account_id):
            return None
        logger.debug("Step-up required for %s", ActionKind(action_kind).value)
        return self.step_up(account_id, code)
