"""Two-factor enrollment and verification state machine.

``NOT_ENROLLED -> PENDING_VERIFICATION -> ENABLED -> (disabled: NOT_ENROLLED)``

Wrong codes never revoke anything; they are recorded so an outer
rate-limiting layer can read :meth:`TwoFactorOrchestrator.recent_failures`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from sessionguard.logging import get_logger, mask_identity
from sessionguard.service.backup_codes import BackupCodeManager
from sessionguard.service.errors import ConflictError, ValidationError
from sessionguard.service.totp import TotpEngine
from sessionguard.storage.common import TokenStore
from sessionguard.storage.models import TwoFactorAuth
from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorState(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


@dataclass(frozen=True)
class TwoFactorSetup:
    """Shown to the user exactly once; nothing here is recoverable later."""

    secret: str
    qr_payload: str
    qr_image: str
    manual_entry_key: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TwoFactorVerification:
    success: bool
    method: Optional[str] = None
    remaining_backup_codes: Optional[int] = None

    def __bool__(self) -> bool:
        return self.success


class TwoFactorOrchestrator:
    def __init__(
        self,
        store: TokenStore,
        totp: TotpEngine,
        backup_codes: BackupCodeManager,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        failure_window_seconds: int = 900,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.totp = totp
        self.backup_codes = backup_codes
        self.cache = cache
        self.failure_window = timedelta(seconds=failure_window_seconds)
        self._clock = clock or _utcnow
        # In-memory fallback for failure tracking when Redis is unavailable
        self._state_lock = threading.Lock()
        self._failures: Dict[str, List[datetime]] = {}

    def _now(self) -> datetime:
        return self._clock()

    def state(self, identity: str) -> TwoFactorState:
        return self._state_of(self.store.get_two_factor(identity))

    @staticmethod
    def _state_of(record: Optional[TwoFactorAuth]) -> TwoFactorState:
        if record is None:
            return TwoFactorState.NOT_ENROLLED
        if record.is_verified:
            return TwoFactorState.ENABLED
        return TwoFactorState.PENDING_VERIFICATION

    async def begin_setup(
        self, identity: str, account_name: Optional[str] = None
    ) -> TwoFactorSetup:
        """Generate a seed and backup codes and store them unverified.

        Restarting a pending setup replaces the previous seed and codes.
        """
        existing = self.store.get_two_factor(identity)
        if existing is not None and existing.is_verified:
            raise ConflictError("two-factor authentication is already enabled")
        totp_setup = self.totp.setup(account_name or identity)
        codes = self.backup_codes.generate()
        self.store.save_two_factor(
            TwoFactorAuth(
                user_id=identity,
                secret=totp_setup.secret,
                setup_at=self._now(),
                is_verified=False,
                backup_codes={BackupCodeManager.hash_code(c) for c in codes},
            )
        )
        logger.info(
            "two_factor_setup_started",
            user_id=mask_identity(identity),
            restarted=existing is not None,
        )
        return TwoFactorSetup(
            secret=totp_setup.secret,
            qr_payload=totp_setup.provisioning_uri,
            qr_image=totp_setup.qr_image,
            manual_entry_key=totp_setup.manual_entry_key,
            backup_codes=codes,
        )

    async def complete_setup(self, identity: str, code: str) -> bool:
        record = self.store.get_two_factor(identity)
        if self._state_of(record) is not TwoFactorState.PENDING_VERIFICATION:
            return False
        now = self._now()
        if not self.totp.verify(record.secret, code, now):
            await self._record_failure(identity, now, stage="setup")
            return False
        if not self.store.set_two_factor_verified(identity, record.secret, now):
            # A restarted setup replaced the secret this code was checked against
            logger.info("two_factor_setup_superseded", user_id=mask_identity(identity))
            return False
        logger.info("two_factor_enabled", user_id=mask_identity(identity))
        return True

    async def verify(
        self,
        identity: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> TwoFactorVerification:
        if bool(code) == bool(backup_code):
            raise ValidationError("provide exactly one of code or backup_code")
        record = self.store.get_two_factor(identity)
        if self._state_of(record) is not TwoFactorState.ENABLED:
            logger.info("two_factor_not_enabled", user_id=mask_identity(identity))
            return TwoFactorVerification(success=False)
        now = self._now()
        if code:
            if self.totp.verify(record.secret, code, now):
                self.store.mark_two_factor_used(identity, now)
                return TwoFactorVerification(success=True, method="totp")
            await self._record_failure(identity, now, stage="totp")
            return TwoFactorVerification(success=False, method="totp")
        if self.backup_codes.consume(identity, backup_code):
            self.store.mark_two_factor_used(identity, now)
            return TwoFactorVerification(
                success=True,
                method="backup_code",
                remaining_backup_codes=self.backup_codes.remaining_count(identity),
            )
        await self._record_failure(identity, now, stage="backup_code")
        return TwoFactorVerification(success=False, method="backup_code")

    async def authenticate(
        self,
        identity: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> bool:
        return bool(await self.verify(identity, code=code, backup_code=backup_code))

    async def disable(self, identity: str, code: str) -> bool:
        """Remove two-factor after proof of possession of the TOTP seed.

        Backup codes are deliberately not accepted here.
        """
        record = self.store.get_two_factor(identity)
        if record is None:
            return False
        now = self._now()
        if not self.totp.verify(record.secret, code, now):
            await self._record_failure(identity, now, stage="disable")
            return False
        self.store.delete_two_factor(identity)
        logger.info("two_factor_disabled", user_id=mask_identity(identity))
        return True

    async def regenerate_backup_codes(self, identity: str) -> List[str]:
        return self.backup_codes.regenerate(identity)

    def remaining_backup_codes(self, identity: str) -> int:
        return self.backup_codes.remaining_count(identity)

    async def _record_failure(self, identity: str, now: datetime, *, stage: str) -> None:
        logger.warning(
            "two_factor_verification_failed", user_id=mask_identity(identity), stage=stage
        )
        if self.cache:
            await self.cache.record_two_factor_failure(
                identity, now, int(self.failure_window.total_seconds())
            )
            return
        cutoff = now - self.failure_window
        with self._state_lock:
            for other in [k for k, ts in self._failures.items() if not ts or ts[-1] <= cutoff]:
                del self._failures[other]
            history = [ts for ts in self._failures.get(identity, []) if ts > cutoff]
            history.append(now)
            self._failures[identity] = history

    async def recent_failures(self, identity: str) -> List[datetime]:
        """Timestamps of failed attempts inside the failure window, oldest first."""
        since = self._now() - self.failure_window
        if self.cache:
            return await self.cache.recent_two_factor_failures(identity, since)
        with self._state_lock:
            return [ts for ts in self._failures.get(identity, []) if ts > since]
