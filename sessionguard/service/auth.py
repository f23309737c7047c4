from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sessionguard.config import Settings
from sessionguard.logging import get_logger, mask_identity
from sessionguard.service.access import AccessTokenIssuer, Claims
from sessionguard.service.backup_codes import BackupCodeManager
from sessionguard.service.credentials import (
    Credential,
    Resolution,
    extract_credential,
)
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import AuthErrorKind, AuthFailure, ValidationError
from sessionguard.service.refresh import RefreshTokenRotator
from sessionguard.service.totp import TotpEngine
from sessionguard.service.two_factor import (
    TwoFactorOrchestrator,
    TwoFactorSetup,
    TwoFactorState,
    TwoFactorVerification,
)
from sessionguard.storage.common import TokenStore, hash_token
from sessionguard.storage.models import ApiKey, ApiToken, RefreshToken, as_utc
from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

API_KEY_PREFIX = "sgk_"
DEFAULT_PURGE_RETENTION = timedelta(days=90)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionTokens:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime
    refresh_expires_at: datetime
    token_id: str
    scopes: List[str] = field(default_factory=list)
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "token_id": self.token_id,
            "scopes": list(self.scopes),
        }


@dataclass(frozen=True)
class PendingTwoFactor:
    """Login halted at the second factor; ``pending_token`` is single use."""

    pending_token: str = field(repr=False)
    expires_at: datetime
    methods: Tuple[str, ...] = ("totp", "backup_code")


@dataclass(frozen=True)
class AccessTokenSummary:
    token_id: str
    description: str
    scopes: List[str]
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    last_used_at: Optional[datetime]
    usage_count: int
    days_until_expiry: int


class AuthService:
    """Entry point for the request layer: sessions, two-factor and credentials.

    Everything durable goes through ``store``; ``cache`` (Redis) only holds
    the denylist, pending logins and the two-factor failure window, with an
    in-process fallback when it is ``None``.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        entropy: Optional[SecretGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or _utcnow
        signing_key = settings.require_signing_key()
        self.entropy = entropy or SecretGenerator(
            backup_code_length=settings.backup_code_length
        )
        self.totp = TotpEngine(
            self.entropy,
            issuer=settings.totp_issuer,
            digits=settings.totp_digits,
            interval=settings.totp_interval_seconds,
            valid_window=settings.totp_valid_window,
            algorithm=settings.totp_algorithm,
        )
        self.backup_codes = BackupCodeManager(
            store, self.entropy, count=settings.backup_code_count, clock=self._clock
        )
        self.refresh = RefreshTokenRotator(
            store,
            self.entropy,
            ttl=timedelta(days=settings.refresh_token_ttl_days),
            lineage_max_depth=settings.lineage_max_depth,
            clock=self._clock,
        )
        self.access = AccessTokenIssuer(
            store,
            signing_key=signing_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            cache_ttl_seconds=settings.revocation_cache_ttl_seconds,
            clock=self._clock,
        )
        self.two_factor = TwoFactorOrchestrator(
            store,
            self.totp,
            self.backup_codes,
            cache=cache,
            failure_window_seconds=settings.failure_window_seconds,
            clock=self._clock,
        )
        # Thread-safe in-memory fallback state when Redis is unavailable
        self._state_lock = threading.Lock()
        self._pending_logins: Dict[str, Tuple[Dict[str, Any], datetime]] = {}
        self._denylist: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    # -- scopes ---------------------------------------------------------

    def resolve_scopes(self, requested: Optional[Iterable[str]] = None) -> List[str]:
        catalogue = set(self.settings.available_scopes)
        if requested is None:
            return sorted(s for s in self.settings.default_scopes if s in catalogue)
        granted = sorted({s for s in requested if s in catalogue})
        if not granted:
            raise ValidationError(
                "no valid scopes requested",
                detail={"available_scopes": sorted(catalogue)},
            )
        return granted

    # -- sessions -------------------------------------------------------

    def issue_initial_session(
        self,
        identity: str,
        context: Optional[str] = None,
        *,
        scopes: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> SessionTokens:
        """Start a new lineage for an identity verified upstream (OAuth, password)."""
        if not identity:
            raise ValidationError("identity is required")
        granted = self.resolve_scopes(scopes)
        refresh = self.refresh.issue(identity, context)
        return self._pair(identity, refresh, granted, description or "session")

    def _pair(
        self, identity: str, refresh: RefreshToken, scopes: List[str], description: str
    ) -> SessionTokens:
        access_token, record = self.access.mint(
            identity, scopes, refresh, description=description
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh.value or "",
            expires_at=record.access_expires_at,
            refresh_expires_at=refresh.expires_at,
            token_id=record.id,
            scopes=list(record.scopes),
        )

    async def refresh_session(
        self, presented: str, context: Optional[str] = None
    ) -> Union[SessionTokens, AuthFailure]:
        result = self.refresh.validate_and_rotate(presented, context)
        if isinstance(result, AuthFailure):
            if result.kind is AuthErrorKind.REUSE_DETECTED:
                lineage = self.store.list_refresh_lineage(result.detail["lineage_id"])
                await self._forget_access_for_refresh(t.id for t in lineage)
            return result
        previous = self.store.get_api_token_for_refresh(result.parent_id or "")
        if previous is not None:
            self.access.invalidate(previous.id)
            scopes, description = list(previous.scopes), previous.description
        else:
            scopes, description = self.resolve_scopes(None), "session"
        return self._pair(result.user_id, result, scopes, description)

    async def revoke_session(self, refresh_token: str, context: Optional[str] = None) -> bool:
        """Log out one lineage head; unknown or already revoked tokens are a no-op."""
        current = self.store.get_refresh_token_by_hash(hash_token(refresh_token or ""))
        if current is None:
            return False
        changed = self.refresh.revoke_by_id(current.id, context, reason="logout")
        await self._forget_access_for_refresh([current.id])
        return changed

    async def revoke_all_sessions(self, identity: str, context: Optional[str] = None) -> int:
        """Administrative log out everywhere for ``identity``."""
        records = self.store.list_api_tokens(identity)
        count = self.refresh.revoke_all(identity, context)
        await self._forget_access(records)
        return count

    def session_lineage(self, refresh_token_id: str) -> List[RefreshToken]:
        return self.refresh.trace_lineage(refresh_token_id)

    # -- access tokens --------------------------------------------------

    async def validate_access_token(
        self, token: str, context: Optional[str] = None
    ) -> Union[Claims, AuthFailure]:
        token_id = self.access.token_id_of(token or "")
        if token_id and await self._is_denylisted(token_id):
            logger.info("access_token_rejected", kind=AuthErrorKind.REVOKED.value, token_id=token_id)
            return AuthFailure(AuthErrorKind.REVOKED, {"token_id": token_id})
        return self.access.validate(token, context)

    def list_access_tokens(self, identity: str) -> List[AccessTokenSummary]:
        now = self._now()
        summaries = []
        for record in self.store.list_api_tokens(identity):
            if record.is_revoked or as_utc(record.refresh_expires_at) <= as_utc(now):
                continue
            remaining = as_utc(record.refresh_expires_at) - as_utc(now)
            summaries.append(
                AccessTokenSummary(
                    token_id=record.id,
                    description=record.description,
                    scopes=list(record.scopes),
                    issued_at=record.issued_at,
                    access_expires_at=record.access_expires_at,
                    refresh_expires_at=record.refresh_expires_at,
                    last_used_at=record.last_used_at,
                    usage_count=record.usage_count,
                    days_until_expiry=remaining.days,
                )
            )
        return summaries

    async def revoke_access_token(
        self, identity: str, token_id: str, context: Optional[str] = None
    ) -> bool:
        """Revoke one access credential and the refresh token it is bound to."""
        record = self.store.get_api_token(token_id)
        if record is None or record.user_id != identity:
            return False
        changed = self.refresh.revoke_by_id(
            record.refresh_token_id, context, reason="access_token_revoked"
        )
        if not changed and not record.is_revoked:
            changed = self.store.revoke_api_tokens_for_refresh(record.refresh_token_id, self._now()) > 0
        await self._forget_access([record])
        if changed:
            logger.info("access_token_revoked", user_id=mask_identity(identity), token_id=token_id)
        return changed

    async def _forget_access_for_refresh(self, refresh_ids: Iterable[str]) -> None:
        records = []
        for refresh_id in refresh_ids:
            record = self.store.get_api_token_for_refresh(refresh_id)
            if record is not None:
                records.append(record)
        await self._forget_access(records)

    async def _forget_access(self, records: Iterable[ApiToken]) -> None:
        now = self._now()
        for record in records:
            self.access.invalidate(record.id)
            ttl = int((as_utc(record.access_expires_at) - as_utc(now)).total_seconds())
            if ttl <= 0:
                continue
            if self.cache:
                await self.cache.denylist_access_token(record.id, ttl)
            else:
                with self._state_lock:
                    self._sweep_expired_locked(now)
                    self._denylist[record.id] = record.access_expires_at

    async def _is_denylisted(self, token_id: str) -> bool:
        if self.cache:
            return await self.cache.is_access_token_denylisted(token_id)
        now = self._now()
        with self._state_lock:
            until = self._denylist.get(token_id)
            if until is None:
                return False
            if as_utc(until) <= as_utc(now):
                self._denylist.pop(token_id, None)
                return False
            return True

    # -- login gate -----------------------------------------------------

    async def start_login(
        self,
        identity: str,
        context: Optional[str] = None,
        *,
        scopes: Optional[Iterable[str]] = None,
    ) -> Union[SessionTokens, PendingTwoFactor]:
        """Issue a session, or a two-factor challenge when 2FA is enabled."""
        if self.two_factor.state(identity) is not TwoFactorState.ENABLED:
            return self.issue_initial_session(identity, context, scopes=scopes)
        granted = self.resolve_scopes(scopes)
        pending_token = self.entropy.random_opaque_token()
        ttl = self.settings.pending_login_ttl_seconds
        expires_at = self._now() + timedelta(seconds=ttl)
        payload = {
            "user_id": identity,
            "context": context,
            "scopes": granted,
            "expires_at": expires_at.isoformat(),
        }
        await self._save_pending(hash_token(pending_token), payload, expires_at)
        logger.info("login_two_factor_required", user_id=mask_identity(identity))
        return PendingTwoFactor(pending_token=pending_token, expires_at=expires_at)

    async def _save_pending(
        self, token_hash: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        now = self._now()
        ttl = int((as_utc(expires_at) - as_utc(now)).total_seconds())
        if ttl <= 0:
            return
        if self.cache:
            await self.cache.set_pending_login(token_hash, payload, ttl)
            return
        with self._state_lock:
            self._sweep_expired_locked(now)
            self._pending_logins[token_hash] = (payload, expires_at)

    def _sweep_expired_locked(self, now: datetime) -> None:
        """Drop abandoned fallback entries; caller holds ``_state_lock``."""
        cutoff = as_utc(now)
        for key in [k for k, (_, until) in self._pending_logins.items() if as_utc(until) <= cutoff]:
            del self._pending_logins[key]
        for key in [k for k, until in self._denylist.items() if as_utc(until) <= cutoff]:
            del self._denylist[key]

    async def _load_pending(self, pending_token: str, *, pop: bool) -> Optional[Dict[str, Any]]:
        token_hash = hash_token(pending_token or "")
        if self.cache:
            if pop:
                return await self.cache.pop_pending_login(token_hash)
            return await self.cache.get_pending_login(token_hash)
        with self._state_lock:
            entry = self._pending_logins.get(token_hash)
            if entry is None:
                return None
            payload, expires_at = entry
            if as_utc(expires_at) <= as_utc(self._now()):
                self._pending_logins.pop(token_hash, None)
                return None
            if pop:
                self._pending_logins.pop(token_hash, None)
            return payload

    async def peek_pending_login(self, pending_token: str) -> Optional[str]:
        payload = await self._load_pending(pending_token, pop=False)
        return payload.get("user_id") if payload else None

    async def complete_login(
        self,
        pending_token: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Union[SessionTokens, AuthFailure]:
        """Finish a 2FA-gated login. A wrong code leaves the challenge open.

        The challenge is claimed before any factor is checked, so a racing
        completion of the same challenge is not recognized and cannot spend
        a second backup code.
        """
        payload = await self._load_pending(pending_token, pop=True)
        if payload is None:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        identity = payload["user_id"]
        verified = False
        try:
            verified = bool(
                await self.two_factor.verify(identity, code=code, backup_code=backup_code)
            )
        finally:
            if not verified:
                await self._save_pending(
                    hash_token(pending_token),
                    payload,
                    datetime.fromisoformat(payload["expires_at"]),
                )
        if not verified:
            return AuthFailure(AuthErrorKind.VALIDATION_FAILED)
        return self.issue_initial_session(
            identity, context or payload.get("context"), scopes=payload.get("scopes")
        )

    # -- two-factor -----------------------------------------------------

    def two_factor_state(self, identity: str) -> TwoFactorState:
        return self.two_factor.state(identity)

    async def begin_two_factor_setup(
        self, identity: str, account_name: Optional[str] = None
    ) -> TwoFactorSetup:
        return await self.two_factor.begin_setup(identity, account_name)

    async def complete_two_factor_setup(self, identity: str, code: str) -> bool:
        return await self.two_factor.complete_setup(identity, code)

    async def verify_two_factor(
        self,
        identity: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> TwoFactorVerification:
        return await self.two_factor.verify(identity, code=code, backup_code=backup_code)

    async def disable_two_factor(self, identity: str, code: str) -> bool:
        return await self.two_factor.disable(identity, code)

    async def regenerate_backup_codes(self, identity: str) -> List[str]:
        return await self.two_factor.regenerate_backup_codes(identity)

    def remaining_backup_codes(self, identity: str) -> int:
        return self.two_factor.remaining_backup_codes(identity)

    async def recent_two_factor_failures(self, identity: str) -> List[datetime]:
        return await self.two_factor.recent_failures(identity)

    # -- credentials ----------------------------------------------------

    def create_api_key(self, identity: str, description: str = "") -> Tuple[str, ApiKey]:
        """Mint a legacy static key; the plaintext is returned once and never stored."""
        if not identity:
            raise ValidationError("identity is required")
        plaintext = API_KEY_PREFIX + self.entropy.random_opaque_token()
        api_key = self.store.insert_api_key(
            ApiKey(
                id=str(uuid.uuid4()),
                user_id=identity,
                key_hash=hash_token(plaintext),
                description=description,
                created_at=self._now(),
            )
        )
        logger.info("api_key_created", user_id=mask_identity(identity), key_id=api_key.id)
        return plaintext, api_key

    def resolve_api_key(self, key: str, context: Optional[str] = None) -> Optional[ApiKey]:
        if not key:
            return None
        api_key = self.store.get_api_key_by_hash(hash_token(key))
        if api_key is not None:
            # No expiry, no rotation: kept for automation clients
            logger.warning(
                "legacy_api_key_used",
                user_id=mask_identity(api_key.user_id),
                key_id=api_key.id,
                presented_by=context,
            )
        return api_key

    async def resolve_credential(
        self, credential: Credential, context: Optional[str] = None
    ) -> Resolution:
        return await credential.resolve_identity(self, context)

    async def authenticate_request(
        self,
        headers: Mapping[str, str],
        cookies: Optional[Mapping[str, str]] = None,
        context: Optional[str] = None,
    ) -> Resolution:
        credential = extract_credential(headers, cookies)
        if credential is None:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        return await self.resolve_credential(credential, context)

    # -- housekeeping ---------------------------------------------------

    def purge_expired(self, retention: timedelta = DEFAULT_PURGE_RETENTION) -> int:
        """Drop refresh/access records that expired more than ``retention`` ago."""
        purged = self.store.purge_expired(self._now() - retention)
        logger.info("expired_tokens_purged", count=purged)
        return purged
