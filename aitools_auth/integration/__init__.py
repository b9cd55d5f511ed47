# Integration Module
"""
Security audit trail for the two-factor subsystem.
"""

from .event_logger import (
    EventLogger,
    EventType,
    SecurityEvent,
    get_account_hash,
)

__all__ = [
    'EventLogger',
    'EventType',
    'SecurityEvent',
    'get_account_hash',
]
