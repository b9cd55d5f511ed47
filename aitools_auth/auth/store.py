"""
Two-Factor Account Store

Persistence for per-account two-factor state. The service owns all
state transitions; a store reads whole records and swaps them
only when they are unchanged since they were read.

Implementations:
- InMemoryAccountStore: dict-backed, for tests and single-process use
- JSONFileAccountStore: one JSON document on disk, atomic rewrites,
  shared between processes through a file lock
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1


class TwoFactorState(Enum):
    """Two-factor lifecycle of an account."""
    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


@dataclass
class TwoFactorRecord:
    """
    Stored two-factor state for one account.

    `secret` holds the stored form of the shared secret: an AES-GCM
    token when the service has a secret box, otherwise the base32
    string. It is present exactly when state is not DISABLED.
    """
    account_id: str
    state: TwoFactorState = TwoFactorState.DISABLED
    secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: float = 0.0
    enabled_at: Optional[float] = None
    updated_at: float = 0.0

    def __post_init__(self):
        if (self.secret is None) != (self.state is TwoFactorState.DISABLED):
            raise ValueError(
                f"Inconsistent two-factor record for {self.account_id}: "
                f"state={self.state.value}, secret {'missing' if self.secret is None else 'present'}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'state': self.state.value,
            'secret': self.secret,
            'backup_code_hashes': list(self.backup_code_hashes),
            'created_at': self.created_at,
            'enabled_at': self.enabled_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TwoFactorRecord':
        return cls(
            account_id=data['account_id'],
            state=TwoFactorState(data.get('state', TwoFactorState.DISABLED.value)),
            secret=data.get('secret'),
            backup_code_hashes=list(data.get('backup_code_hashes', [])),
            created_at=data.get('created_at', 0.0),
            enabled_at=data.get('enabled_at'),
            updated_at=data.get('updated_at', 0.0),
        )

    def __repr__(self) -> str:
        return (
            f"TwoFactorRecord(account_id={self.account_id!r}, state={self.state.value}, "
            f"backup_codes={len(self.backup_code_hashes)})"
        )



    def copy(self) -> 'TwoFactorRecord':
        return TwoFactorRecord.from_dict(self.to_dict())


def _same(stored: Optional[Dict[str, Any]], expected: Optional[TwoFactorRecord]) -> bool:
    if expected is None:
        return stored is None
    return stored == expected.to_dict()


class AccountStore(ABC):
    """
    Interface the two-factor service persists through.

    State changes go through compare_and_swap() so that service
    instances in different threads or processes sharing one store
    cannot both apply a change derived from the same record.
    """

    @abstractmethod
    def get(self, account_id: str) -> Optional[TwoFactorRecord]:
        """Return the record for an account, or None if it has never enrolled."""

    @abstractmethod
    def compare_and_swap(self, account_id: str,
                         expected: Optional[TwoFactorRecord],
                         new: Optional[TwoFactorRecord]) -> bool:
        """
        Replace the stored record only if it still equals `expected`.

        Args:
            account_id: Account whose record is replaced
            expected: Record previously read (None: no record may exist)
            new: Replacement (None: delete the record)

        Returns:
            True if the swap happened, False if the record changed meanwhile
        """

    def save(self, record: TwoFactorRecord) -> None:
        """Insert or replace a record unconditionally."""
        while not self.compare_and_swap(record.account_id, self.get(record.account_id), record):
            pass

    def delete(self, account_id: str) -> bool:
        """Remove a record. Returns True if one existed."""
        while True:
            current = self.get(account_id)
            if current is None:
                return False
            if self.compare_and_swap(account_id, current, None):
                return True


class InMemoryAccountStore(AccountStore):
    """Dict-backed store. Records are copied in and out so callers cannot mutate stored state."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, account_id: str) -> Optional[TwoFactorRecord]:
        with self._lock:
            data = self._records.get(account_id)
        return TwoFactorRecord.from_dict(data) if data else None

    def compare_and_swap(self, account_id: str,
                         expected: Optional[TwoFactorRecord],
                         new: Optional[TwoFactorRecord]) -> bool:
        with self._lock:
            if not _same(self._records.get(account_id), expected):
                return False
            if new is None:
                self._records.pop(account_id, None)
            else:
                self._records[account_id] = new.to_dict()
            return True


class JSONFileAccountStore(AccountStore):
    """
    Store backed by a single JSON file.

    Every change rewrites the file through a temporary file and
    os.replace(), so readers never observe a half-written document.
    Changes hold an exclusive flock() on a sibling ".lock" file, so
    several processes can share one document (POSIX only).
    """

    def __init__(self, path: str):
        """
        Args:
            path: Location of the JSON document (created on first save)
        """
        self._path = path
        self._lock_path = path + '.lock'
        self._lock = threading.Lock()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the in-process lock and the inter-process file lock."""
        with self._lock:
            os.makedirs(os.path.dirname(os.path.abspath(self._path)), exist_ok=True)
            with open(self._lock_path, 'a') as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self._path):
            return {}
        with open(self._path, 'r', encoding='utf-8') as f:
            doc = json.load(f)
        version = doc.get('version')
        if version != STORE_FORMAT_VERSION:
            raise ValueError(f"Unsupported store format version: {version}")
        return doc.get('accounts', {})

    def _write(self, accounts: Dict[str, Dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.2fa-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'version': STORE_FORMAT_VERSION, 'accounts': accounts}, f, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, account_id: str) -> Optional[TwoFactorRecord]:
        # os.replace() is atomic, so reads need no lock
        data = self._load().get(account_id)
        return TwoFactorRecord.from_dict(data) if data else None

    def compare_and_swap(self, account_id: str,
                         expected: Optional[TwoFactorRecord],
                         new: Optional[TwoFactorRecord]) -> bool:
        with self._exclusive():
            accounts = self._load()
            if not _same(accounts.get(account_id), expected):
                logger.debug("Record for account %s changed concurrently", account_id)
                return False
            if new is None:
                accounts.pop(account_id, None)
            else:
                accounts[account_id] = new.to_dict()
            self._write(accounts)
        logger.debug("Saved two-factor record for account %s", account_id)
        return True
