"""Central configuration loaded from environment variables (prefix AITOOLS_2FA_) and an optional .env file."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .auth.backup_codes import BACKUP_CODE_COUNT, BACKUP_CODE_LENGTH, BackupCodeHasher
from .auth.rate_limit import LOCKOUT_DURATION_SECONDS, MAX_FAILED_ATTEMPTS, RateLimiter
from .auth.store import AccountStore, InMemoryAccountStore, JSONFileAccountStore
from .auth.totp import DEFAULT_ISSUER, TOTP_DRIFT_TOLERANCE
from .auth.two_factor import TwoFactorService
from .core_crypto.secret_box import SecretBox, key_from_base64
from .integration.event_logger import EventLogger


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AITOOLS_2FA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Authenticator display
    issuer: str = DEFAULT_ISSUER

    # Verification
    tolerance_steps: int = Field(default=TOTP_DRIFT_TOLERANCE, ge=0, le=10)
    max_failed_attempts: int = Field(default=MAX_FAILED_ATTEMPTS, ge=1)
    lockout_seconds: int = Field(default=LOCKOUT_DURATION_SECONDS, ge=1)

    # Backup codes
    backup_code_count: int = Field(default=BACKUP_CODE_COUNT, ge=1, le=50)
    backup_code_length: int = Field(default=BACKUP_CODE_LENGTH, ge=4, le=16)

    # Persistence (in-memory when unset)
    store_path: Optional[Path] = None

    # Encryption of secrets at rest: base64 32-byte key, empty = store plain base32
    master_key: str = ""


def build_store(settings: Settings) -> AccountStore:
    if settings.store_path is None:
        return InMemoryAccountStore()
    return JSONFileAccountStore(str(settings.store_path))


def build_service(settings: Optional[Settings] = None,
                  store: Optional[AccountStore] = None,
                  event_logger: Optional[EventLogger] = None) -> TwoFactorService:
    """
    Wire a TwoFactorService from configuration.

    Raises:
        ValueError: If master_key is set but is not a base64 32-byte key
    """
    settings = settings or Settings()
    secret_box = SecretBox(key_from_base64(settings.master_key)) if settings.master_key else None
    return TwoFactorService(
        store or build_store(settings),
        issuer=settings.issuer,
        tolerance_steps=settings.tolerance_steps,
        secret_box=secret_box,
        backup_hasher=BackupCodeHasher(),
        rate_limiter=RateLimiter(
            max_attempts=settings.max_failed_attempts,
            lockout_duration=settings.lockout_seconds,
        ),
        event_logger=event_logger,
        backup_code_count=settings.backup_code_count,
        backup_code_length=settings.backup_code_length,
    )
