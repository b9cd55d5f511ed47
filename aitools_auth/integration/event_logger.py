"""
Event Logger Module

Security audit trail for two-factor authentication. Every enrollment,
verification and step-up decision is recorded as an event.

Features:
- Privacy-preserving account hashes (SHA-256), never raw account ids
- Tamper-evident hash chain: each entry commits to the previous one
- Mirrors every event to the standard `logging` module
- Secrets and codes are never part of an event

Author: AI Productivity Tools
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
GENESIS_HASH = "0" * 64


# ============================================================================
# Privacy Functions
# ============================================================================

def get_account_hash(account_id: str) -> str:
    """
    Compute privacy-preserving hash of an account id.

    Allows correlating events for the same account without storing
    the identifier itself.

    Args:
        account_id: The plaintext account id

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(account_id.encode()).hexdigest()


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of two-factor security events."""

    # Enrollment
    SETUP_STARTED = "2fa_setup_started"
    SETUP_CANCELLED = "2fa_setup_cancelled"
    ENABLED = "2fa_enabled"
    DISABLED = "2fa_disabled"
    BACKUP_CODES_REGENERATED = "2fa_backup_codes_regenerated"

    # Verification
    TOTP_VERIFIED = "totp_verified"
    TOTP_FAILED = "totp_failed"
    BACKUP_CODE_USED = "backup_code_used"
    STEP_UP_GRANTED = "step_up_granted"
    STEP_UP_DENIED = "step_up_denied"
    LOCKED_OUT = "2fa_locked_out"


_WARNING_EVENTS = frozenset({
    EventType.TOTP_FAILED,
    EventType.STEP_UP_DENIED,
    EventType.LOCKED_OUT,
})


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    Represents a security event in the audit trail.

    All account-identifying information is hashed for privacy.
    """
    event_type: EventType
    account_hash: str
    timestamp: int
    details: Dict[str, Any] = field(default_factory=dict)
    prev_hash: str = GENESIS_HASH

    def payload(self) -> str:
        """Canonical JSON of the event (used for hashing and export)."""
        return json.dumps({
            'version': EVENT_VERSION,
            'type': self.event_type.value,
            'account': self.account_hash[:16],
            'time': self.timestamp,
            'iso_time': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'details': self.details,
            'prev': self.prev_hash,
        }, separators=(',', ':'), sort_keys=True)

    @property
    def entry_hash(self) -> str:
        return hashlib.sha256(self.payload().encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = json.loads(self.payload())
        data['hash'] = self.entry_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityEvent':
        return cls(
            event_type=EventType(data['type']),
            account_hash=data['account'],
            timestamp=data['time'],
            details=data.get('details', {}),
            prev_hash=data.get('prev', GENESIS_HASH),
        )

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} | "
            f"account:{self.account_hash[:8]}..."
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    Hash-chained audit logger for two-factor events.

    Each appended event stores the hash of the previous event, so
    editing or removing an entry breaks verify_integrity().
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 events: Optional[List[SecurityEvent]] = None):
        """
        Initialize the event logger.

        Args:
            clock: Callable returning the current Unix time
            events: Existing chain to continue (see import_log)
        """
        self._clock = clock
        self._events: List[SecurityEvent] = list(events or [])
        self._callbacks: List[Callable[[SecurityEvent], None]] = []
        self._lock = threading.Lock()

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def log(self, event_type: EventType, account_id: str,
            **details: Any) -> SecurityEvent:
        """
        Append an event to the audit trail.

        Args:
            event_type: What happened
            account_id: Account involved (hashed before storage)
            **details: Extra non-secret fields

        Returns:
            The logged event
        """
        with self._lock:
            prev = self._events[-1].entry_hash if self._events else GENESIS_HASH
            event = SecurityEvent(
                event_type=event_type,
                account_hash=get_account_hash(account_id),
                timestamp=int(self._clock()),
                details=details,
                prev_hash=prev,
            )
            self._events.append(event)

        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        logger.log(level, "%s account=%s %s", event_type.value,
                   event.account_hash[:16], details or "")

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not stop auditing
                logger.exception("Audit callback failed for %s", event_type.value)

        return event

    # ========================================================================
    # Retrieval
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def get_account_events(self, account_id: str) -> List[SecurityEvent]:
        """Get all events for a specific account."""
        account_hash = get_account_hash(account_id)
        return [e for e in self.get_all_events() if e.account_hash[:16] == account_hash[:16]]

    def get_events_by_type(self, event_type: EventType) -> List[SecurityEvent]:
        """Get all events of a specific type."""
        return [e for e in self.get_all_events() if e.event_type == event_type]

    def get_recent_events(self, count: int = 10) -> List[SecurityEvent]:
        """Get the most recent events."""
        return self.get_all_events()[-count:]

    def verify_integrity(self) -> bool:
        """Check that every event links to the hash of its predecessor."""
        prev = GENESIS_HASH
        for event in self.get_all_events():
            if event.prev_hash != prev:
                return False
            prev = event.entry_hash
        return True

    def export_log(self) -> str:
        """Export the entire audit log as JSON."""
        return json.dumps([e.to_dict() for e in self.get_all_events()], indent=2)

    @classmethod
    def import_log(cls, json_str: str,
                   clock: Callable[[], float] = time.time) -> 'EventLogger':
        """
        Import an audit log from JSON.

        Raises:
            ValueError: If a stored hash does not match its event
        """
        events = []
        for data in json.loads(json_str):
            event = SecurityEvent.from_dict(data)
            if 'hash' in data and data['hash'] != event.entry_hash:
                raise ValueError(f"Audit entry hash mismatch at position {len(events)}")
            events.append(event)
        return cls(clock=clock, events=events)

    def __len__(self) -> int:
        return len(self._events)
