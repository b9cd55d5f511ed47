"""
Security tests for the two-factor subsystem.

Tests specifically for security-related scenarios:
- Invalid inputs
- Generic error messages (no enumeration)
- Backup code double-spend under concurrency
- Brute-force lockout
- Secrets encrypted at rest and absent from logs
"""

import gc
import logging
import re
import threading

import pytest

from aitools_auth.auth import totp
from aitools_auth.auth.rate_limit import RateLimiter
from aitools_auth.auth.store import InMemoryAccountStore, JSONFileAccountStore
from aitools_auth.auth.two_factor import TwoFactorService
from aitools_auth.core_crypto.secret_box import SecretBox, generate_key
from aitools_auth.errors import (
    USER_MESSAGE,
    ConcurrentModification,
    InvalidCode,
    InvalidCodeFormat,
    InvalidTwoFactorCode,
    NotEnrolled,
    SecretDecryptionError,
    TooManyAttempts,
    VerificationError,
)
from tests.conftest import FakeClock, fast_hasher, wrong_code


class InterleavingStore(InMemoryAccountStore):
    """Runs a hook once, just before the next compare-and-swap."""

    def __init__(self):
        super().__init__()
        self.before_swap = None

    def compare_and_swap(self, account_id, expected, new):
        hook, self.before_swap = self.before_swap, None
        if hook is not None:
            hook()
        return super().compare_and_swap(account_id, expected, new)


class TestInvalidCodes:
    """Malformed and wrong codes are rejected before and during verification."""

    @pytest.mark.parametrize("bad", [
        "", "12345", "1234567", "abcdef", "12ab56",
        "1' OR '1'='1", "'; DROP TABLE users;--", "１２３４５６",
    ])
    def test_malformed_codes(self, service, enrolled, bad):
        account_id, _, _ = enrolled
        with pytest.raises(InvalidCodeFormat):
            service.verify_login(account_id, bad)
        assert service.remaining_backup_codes(account_id) == 10

    def test_none_code(self, service, enrolled):
        account_id, _, _ = enrolled
        with pytest.raises(InvalidCodeFormat):
            service.verify_login(account_id, None)

    def test_wrong_totp_codes(self, service, enrolled, clock):
        account_id, secret, _ = enrolled
        valid = {totp.totp(secret, clock() + d * 30) for d in (-1, 0, 1)}
        for wrong in ["000000", "111111", "999999", "123456", "654321"]:
            if wrong not in valid:
                with pytest.raises(InvalidCode):
                    service.verify_login(account_id, wrong)

    def test_code_for_other_secret_rejected(self, service, enrolled, clock):
        account_id, secret, _ = enrolled
        other = totp.generate_secret()
        code = totp.totp(other, clock())
        if not totp.verify(code, secret, timestamp=clock()):
            with pytest.raises(InvalidCode):
                service.verify_login(account_id, code)

    def test_verify_malformed_returns_false(self):
        """The pure verifier never raises for a bad candidate."""
        secret = totp.generate_secret()
        assert not totp.verify("", secret)
        assert not totp.verify("12345", secret)
        assert not totp.verify("abcdef", secret)


class TestGenericMessages:
    """Users cannot tell format, expiry and consumed-code failures apart."""

    def test_same_message_for_all_failures(self, service, enrolled, clock):
        account_id, secret, backup_codes = enrolled
        service.verify_login(account_id, backup_codes[0])

        failures = []
        for candidate in ["12", wrong_code(secret, clock()), backup_codes[0]]:
            with pytest.raises(VerificationError) as exc_info:
                service.verify_login(account_id, candidate)
            failures.append(exc_info.value)

        assert {str(e) for e in failures} == {USER_MESSAGE}

    def test_step_up_message(self, service, enrolled):
        account_id, _, _ = enrolled
        with pytest.raises(InvalidTwoFactorCode) as exc_info:
            service.authorize_action(account_id, "withdraw", "nope")
        assert str(exc_info.value) == USER_MESSAGE


class TestBackupCodeDoubleSpend:
    """A backup code can be spent once, even by racing requests."""

    def test_sequential_reuse_fails(self, service, enrolled):
        account_id, _, backup_codes = enrolled
        service.verify_login(account_id, backup_codes[5])
        with pytest.raises(InvalidCode):
            service.verify_login(account_id, backup_codes[5])
        with pytest.raises(InvalidCode):
            service.disable(account_id, backup_codes[5])
        assert service.is_enabled(account_id)

    def test_concurrent_reuse_fails(self, service, enrolled):
        account_id, _, backup_codes = enrolled
        code = backup_codes[2]
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                service.verify_login(account_id, code)
                result = "ok"
            except InvalidCode:
                result = "rejected"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == workers - 1
        assert service.remaining_backup_codes(account_id) == 9

    def test_concurrent_disable_and_login(self, service, enrolled):
        """Disable and login racing on one backup code: exactly one wins."""
        account_id, _, backup_codes = enrolled
        code = backup_codes[7]
        barrier = threading.Barrier(2)
        outcomes = []

        def run(fn):
            barrier.wait()
            try:
                fn(account_id, code)
                outcomes.append("ok")
            except (InvalidCode, NotEnrolled):
                outcomes.append("rejected")

        threads = [
            threading.Thread(target=run, args=(service.disable,)),
            threading.Thread(target=run, args=(service.verify_login,)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]

    @pytest.mark.parametrize("backend", ["memory", "json"])
    def test_two_services_share_one_store(self, tmp_path, backend):
        """Separate service instances (e.g. worker processes) over one store."""
        clock = FakeClock()
        if backend == "memory":
            store = InMemoryAccountStore()
        else:
            store = JSONFileAccountStore(str(tmp_path / "2fa.json"))
        first, second = (TwoFactorService(store, clock=clock, backup_hasher=fast_hasher())
                         for _ in range(2))

        setup = first.begin_setup("acct-1", "alice@example.com")
        code = first.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret).backup_codes[0]

        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(service):
            barrier.wait()
            try:
                service.verify_login("acct-1", code)
                outcomes.append("ok")
            except InvalidCode:
                outcomes.append("rejected")

        threads = [threading.Thread(target=attempt, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        assert first.remaining_backup_codes("acct-1") == 9

    def test_code_spent_by_other_instance_between_read_and_write(self, clock):
        """The slower instance re-checks against the fresh record and fails."""
        store = InterleavingStore()
        first, second = (TwoFactorService(store, clock=clock, backup_hasher=fast_hasher())
                         for _ in range(2))
        setup = first.begin_setup("acct-1", "alice@example.com")
        code = first.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret).backup_codes[0]

        results = []
        store.before_swap = lambda: results.append(second.verify_login("acct-1", code))

        with pytest.raises(InvalidCode):
            first.verify_login("acct-1", code)
        assert [r.method for r in results] == ["backup_code"]
        assert first.remaining_backup_codes("acct-1") == 9

    def test_endless_conflicts_give_up(self, service, store, enrolled):
        account_id, _, backup_codes = enrolled
        before = store.get(account_id)
        store.compare_and_swap = lambda *args: False

        with pytest.raises(ConcurrentModification):
            service.verify_login(account_id, backup_codes[0])
        assert store.get(account_id) == before

    def test_lock_table_does_not_grow(self, service, enrolled, clock):
        account_id, secret, _ = enrolled
        for i in range(20):
            with pytest.raises(NotEnrolled):
                service.verify_login(f"stranger-{i}", "123456")
        service.verify_login(account_id, totp.totp(secret, clock()))
        gc.collect()
        assert len(service._locks) == 0


class TestStepUpSecurity:
    """Failed step-up leaves state untouched."""

    def test_failed_step_up_consumes_nothing(self, service, store, enrolled, clock):
        account_id, secret, _ = enrolled
        before = store.get(account_id)

        for candidate in (None, "", "abc", wrong_code(secret, clock())):
            with pytest.raises(InvalidTwoFactorCode):
                service.authorize_action(account_id, "purchase", candidate)

        after = store.get(account_id)
        assert after.backup_code_hashes == before.backup_code_hashes
        assert after.secret == before.secret

    def test_step_up_with_totp(self, service, enrolled, clock):
        account_id, secret, _ = enrolled
        result = service.authorize_action(account_id, "settings", totp.totp(secret, clock()))
        assert result.method == "totp"

    def test_step_up_with_backup_code_consumes_it(self, service, enrolled):
        account_id, _, backup_codes = enrolled
        service.authorize_action(account_id, "withdraw", backup_codes[1])
        assert service.remaining_backup_codes(account_id) == 9
        with pytest.raises(InvalidTwoFactorCode):
            service.authorize_action(account_id, "withdraw", backup_codes[1])

    def test_other_actions_not_gated(self, service, enrolled):
        account_id, _, _ = enrolled
        assert service.authorize_action(account_id, "other") is None

    def test_accounts_without_2fa_not_gated(self, service):
        assert service.authorize_action("acct-no-2fa", "purchase") is None

    def test_explicit_step_up_requires_enrollment(self, service):
        with pytest.raises(NotEnrolled):
            service.step_up("acct-no-2fa", "123456")


class TestBruteForce:
    """Repeated failures lock the account."""

    def _service(self, clock):
        return TwoFactorService(
            InMemoryAccountStore(),
            clock=clock,
            backup_hasher=fast_hasher(),
            rate_limiter=RateLimiter(max_attempts=3, lockout_duration=120,
                                     window_seconds=300, clock=clock),
        )

    def test_lockout_blocks_correct_code(self):
        clock = FakeClock()
        service = self._service(clock)
        setup = service.begin_setup("acct-1", "alice@example.com")
        service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret)

        bad = wrong_code(setup.secret, clock())
        for _ in range(3):
            with pytest.raises(InvalidCode):
                service.verify_login("acct-1", bad)

        with pytest.raises(TooManyAttempts) as exc_info:
            service.verify_login("acct-1", totp.totp(setup.secret, clock()))
        assert 0 < exc_info.value.retry_after <= 120

        clock.advance(121)
        service.verify_login("acct-1", totp.totp(setup.secret, clock()))

    def test_malformed_codes_count(self):
        clock = FakeClock()
        service = self._service(clock)
        setup = service.begin_setup("acct-1", "alice@example.com")
        for _ in range(3):
            with pytest.raises(InvalidCodeFormat):
                service.enable("acct-1", "xx", setup.secret)
        with pytest.raises(TooManyAttempts):
            service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret)

    def test_lockout_does_not_consume_backup_codes(self):
        clock = FakeClock()
        service = self._service(clock)
        setup = service.begin_setup("acct-1", "alice@example.com")
        codes = service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret).backup_codes

        for _ in range(3):
            with pytest.raises(InvalidCode):
                service.verify_login("acct-1", wrong_code(setup.secret, clock()))
        with pytest.raises(TooManyAttempts):
            service.verify_login("acct-1", codes[0])
        assert service.remaining_backup_codes("acct-1") == 10


class TestSecretsAtRest:
    """Secrets are encrypted in the store and never logged."""

    def test_secret_encrypted_in_store(self, clock):
        store = InMemoryAccountStore()
        box = SecretBox(generate_key())
        service = TwoFactorService(store, clock=clock, secret_box=box, backup_hasher=fast_hasher())

        setup = service.begin_setup("acct-1", "alice@example.com")
        codes = service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret).backup_codes

        record = store.get("acct-1")
        assert record.secret != setup.secret
        assert setup.secret not in record.secret
        assert box.decrypt(record.secret, context="acct-1") == setup.secret
        assert all(h.startswith("$argon2id$") for h in record.backup_code_hashes)
        assert len(codes) == len(record.backup_code_hashes)

        service.verify_login("acct-1", totp.totp(setup.secret, clock()))

    def test_wrong_master_key_fails_loudly(self, clock):
        store = InMemoryAccountStore()
        writer = TwoFactorService(store, clock=clock, secret_box=SecretBox(generate_key()),
                                  backup_hasher=fast_hasher())
        setup = writer.begin_setup("acct-1", "alice@example.com")
        writer.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret)

        reader = TwoFactorService(store, clock=clock, secret_box=SecretBox(generate_key()),
                                  backup_hasher=fast_hasher())
        with pytest.raises(SecretDecryptionError):
            reader.verify_login("acct-1", totp.totp(setup.secret, clock()))

    def test_secrets_and_codes_never_logged(self, service, events, clock, caplog):
        caplog.set_level(logging.DEBUG)
        setup = service.begin_setup("acct-1", "alice@example.com")
        codes = service.enable("acct-1", totp.totp(setup.secret, clock()), setup.secret).backup_codes
        service.verify_login("acct-1", codes[0])
        with pytest.raises(InvalidCode):
            service.verify_login("acct-1", wrong_code(setup.secret, clock()))

        exported = events.export_log()
        for text in (caplog.text, exported):
            assert setup.secret not in text
            for code in codes:
                assert not re.search(rf"\b{code}\b", text)

    def test_record_repr_hides_secret(self, service, store, enrolled):
        account_id, secret, _ = enrolled
        assert secret not in repr(store.get(account_id))
