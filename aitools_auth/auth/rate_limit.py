"""
Failed-Attempt Rate Limiting

A six-digit code has only a million values, and the tolerance window
accepts three of them at once. Without a limit an attacker could walk
the code space. Failed two-factor attempts are therefore counted per
account and the account is locked for a while once the limit is hit.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Tuple


MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION_SECONDS = 300  # 5 minutes
ATTEMPT_WINDOW_SECONDS = 300    # 5 minute window for counting attempts


@dataclass
class AttemptRecord:
    """Track failed attempts for one identifier."""
    attempts: int = 0
    first_attempt_time: float = 0.0
    lockout_until: float = 0.0


class RateLimiter:
    """
    Rate limiter for two-factor code attempts.

    Tracks failed attempts per account and enforces a lockout
    after too many failures inside the counting window.
    """

    def __init__(self, max_attempts: int = MAX_FAILED_ATTEMPTS,
                 lockout_duration: int = LOCKOUT_DURATION_SECONDS,
                 window_seconds: int = ATTEMPT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize rate limiter.

        Args:
            max_attempts: Maximum failed attempts before lockout
            lockout_duration: Lockout duration in seconds
            window_seconds: Time window for counting attempts
            clock: Callable returning the current Unix time
        """
        self._attempts: Dict[str, AttemptRecord] = defaultdict(AttemptRecord)
        self._max_attempts = max_attempts
        self._lockout_duration = lockout_duration
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_prune = 0.0

    def _expired(self, attempt: AttemptRecord, now: float) -> bool:
        return (attempt.lockout_until <= now
                and now - attempt.first_attempt_time > self._window_seconds)

    def _prune(self, now: float) -> None:
        """Forget identifiers whose window and lockout have both run out. Lock must be held."""
        for identifier in [k for k, a in self._attempts.items() if self._expired(a, now)]:
            del self._attempts[identifier]
        self._last_prune = now

    def is_locked_out(self, identifier: str) -> Tuple[bool, int]:
        """
        Check if an identifier is locked out.

        Returns:
            Tuple of (is_locked, seconds_remaining)
        """
        with self._lock:
            attempt = self._attempts.get(identifier)
            if not attempt:
                return False, 0

            now = self._clock()

            if attempt.lockout_until > now:
                # Round up so a caller never sees 0 while still locked
                remaining = int(attempt.lockout_until - now + 0.999)
                return True, max(1, remaining)

            if now - attempt.first_attempt_time > self._window_seconds:
                del self._attempts[identifier]

            return False, 0

    def record_attempt(self, identifier: str, success: bool) -> None:
        """
        Record a verification attempt.

        Args:
            identifier: Account identifier
            success: Whether the code was accepted
        """
        with self._lock:
            if success:
                self._attempts.pop(identifier, None)
                return

            now = self._clock()
            if now - self._last_prune > self._window_seconds:
                self._prune(now)
            attempt = self._attempts[identifier]

            if now - attempt.first_attempt_time > self._window_seconds:
                attempt = AttemptRecord()
                self._attempts[identifier] = attempt

            if attempt.attempts == 0:
                attempt.first_attempt_time = now

            attempt.attempts += 1

            if attempt.attempts >= self._max_attempts:
                attempt.lockout_until = now + self._lockout_duration

    def get_remaining_attempts(self, identifier: str) -> int:
        """Get number of remaining attempts before lockout."""
        with self._lock:
            attempt = self._attempts.get(identifier)
            if not attempt:
                return self._max_attempts

            if self._clock() - attempt.first_attempt_time > self._window_seconds:
                return self._max_attempts

            return max(0, self._max_attempts - attempt.attempts)

    def __len__(self) -> int:
        """Number of identifiers currently tracked."""
        with self._lock:
            return len(self._attempts)
