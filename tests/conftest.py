"""Shared fixtures: a controllable clock and a fast-hashing service."""

import pytest

from aitools_auth.auth import totp
from aitools_auth.auth.backup_codes import BackupCodeHasher
from aitools_auth.auth.rate_limit import RateLimiter
from aitools_auth.auth.store import InMemoryAccountStore
from aitools_auth.auth.two_factor import TwoFactorService
from aitools_auth.integration.event_logger import EventLogger


# RFC 4226 / RFC 6238 shared secret "12345678901234567890"
RFC_SECRET_BYTES = b"12345678901234567890"
RFC_SECRET_B32 = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

START_TIME = 1_700_000_000.0


class FakeClock:
    """Clock returning a settable Unix time."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_hasher() -> BackupCodeHasher:
    return BackupCodeHasher(time_cost=1, memory_cost=1024)


def wrong_code(secret: str, timestamp: float) -> str:
    """A well-formed code that is not valid anywhere in the tolerance window."""
    valid = {totp.totp(secret, timestamp + d * totp.TOTP_TIME_STEP) for d in (-1, 0, 1)}
    candidate = 0
    while f"{candidate:06d}" in valid:
        candidate += 1
    return f"{candidate:06d}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryAccountStore()


@pytest.fixture
def events(clock):
    return EventLogger(clock=clock)


@pytest.fixture
def service(store, clock, events):
    return TwoFactorService(
        store,
        clock=clock,
        backup_hasher=fast_hasher(),
        rate_limiter=RateLimiter(max_attempts=20, clock=clock),
        event_logger=events,
    )


@pytest.fixture
def enrolled(service, clock):
    """An account with 2FA enabled. Returns (account_id, secret, backup_codes)."""
    setup = service.begin_setup("acct-1", "alice@example.com")
    result = service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret)
    return "acct-1", setup.secret, result.backup_codes
