"""Refresh token rotation with reuse detection.

Every successful refresh revokes the presented token and issues a successor
in the same lineage. Presenting a token that is already revoked means a copy
of it leaked; the whole lineage is then revoked and the caller must force a
full re-authentication.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from sessionguard.logging import get_logger, mask_identity
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import AuthErrorKind, AuthFailure, ServerError
from sessionguard.storage.common import TokenStore, hash_token
from sessionguard.storage.models import RefreshToken

logger = get_logger(__name__)

DEFAULT_LINEAGE_MAX_DEPTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenRotator:
    def __init__(
        self,
        store: TokenStore,
        entropy: SecretGenerator,
        *,
        ttl: timedelta = timedelta(days=30),
        lineage_max_depth: int = DEFAULT_LINEAGE_MAX_DEPTH,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.entropy = entropy
        self.ttl = ttl
        self.lineage_max_depth = lineage_max_depth
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _new_token(
        self, identity: str, context: Optional[str], parent: Optional[RefreshToken] = None
    ) -> RefreshToken:
        value = self.entropy.random_opaque_token()
        return RefreshToken.new(
            identity,
            hash_token(value),
            now=self._now(),
            ttl=self.ttl,
            created_by=context,
            parent=parent,
            value=value,
        )

    def issue(self, identity: str, context: Optional[str] = None) -> RefreshToken:
        """Start a new lineage; the returned token carries its plaintext ``value``."""
        token = self._new_token(identity, context)
        self.store.insert_refresh_token(token)
        logger.info(
            "refresh_issued",
            user_id=mask_identity(identity),
            lineage_id=token.lineage_id,
        )
        return token

    def validate_and_rotate(
        self, presented: str, context: Optional[str] = None
    ) -> Union[RefreshToken, AuthFailure]:
        if not presented:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        current = self.store.get_refresh_token_by_hash(hash_token(presented))
        if current is None:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        if current.revoked_at is not None:
            return self._handle_reuse(current, context)
        now = self._now()
        if current.is_expired(now):
            logger.info("refresh_expired", user_id=mask_identity(current.user_id))
            return AuthFailure(AuthErrorKind.EXPIRED, {"token_id": current.id})

        successor = self._new_token(current.user_id, context, parent=current)
        if not self.store.rotate_refresh_token(current.id, successor, now, context):
            # Lost the compare-and-swap: another caller presented the same token first
            return self._handle_reuse(current, context)
        logger.info(
            "refresh_rotated",
            user_id=mask_identity(current.user_id),
            lineage_id=current.lineage_id,
            parent_id=current.id,
            token_id=successor.id,
        )
        return successor

    def _handle_reuse(self, token: RefreshToken, context: Optional[str]) -> AuthFailure:
        revoked = self.store.revoke_lineage(token.lineage_id, self._now(), context)
        lineage = self.store.list_refresh_lineage(token.lineage_id)
        logger.warning(
            "refresh_reuse_detected",
            user_id=mask_identity(token.user_id),
            lineage_id=token.lineage_id,
            lineage_size=len(lineage),
            newly_revoked=revoked,
            presented_by=context,
        )
        return AuthFailure(
            AuthErrorKind.REUSE_DETECTED,
            {"lineage_id": token.lineage_id, "revoked": revoked},
        )

    def revoke(self, presented: str, context: Optional[str] = None) -> bool:
        """Revoke a token by value. Unknown or already revoked tokens are a no-op."""
        if not presented:
            return False
        current = self.store.get_refresh_token_by_hash(hash_token(presented))
        if current is None:
            return False
        return self.revoke_by_id(current.id, context)

    def revoke_by_id(
        self, token_id: str, context: Optional[str] = None, *, reason: str = "revoked"
    ) -> bool:
        changed = self.store.revoke_refresh_token(token_id, self._now(), context, reason)
        if changed:
            logger.info("refresh_revoked", token_id=token_id, reason=reason)
        return changed

    def revoke_all(self, identity: str, context: Optional[str] = None) -> int:
        count = self.store.revoke_user_refresh_tokens(identity, self._now(), context)
        logger.info("refresh_revoked_all", user_id=mask_identity(identity), count=count)
        return count

    def trace_lineage(self, token_id: str) -> List[RefreshToken]:
        """Follow ``replaced_by_id`` pointers from ``token_id`` to the lineage head.

        Stops at the first token without a successor or at a missing link.
        A revisited id means the store is corrupt and raises ``ServerError``.
        """
        chain: List[RefreshToken] = []
        seen = set()
        next_id: Optional[str] = token_id
        while next_id is not None and len(chain) < self.lineage_max_depth:
            if next_id in seen:
                logger.error("refresh_lineage_cycle", token_id=next_id)
                raise ServerError("refresh token lineage is cyclic", detail={"token_id": next_id})
            seen.add(next_id)
            token = self.store.get_refresh_token(next_id)
            if token is None:
                break
            chain.append(token)
            next_id = token.replaced_by_id
        if next_id is not None and len(chain) >= self.lineage_max_depth:
            logger.warning(
                "refresh_lineage_truncated", token_id=token_id, depth=self.lineage_max_depth
            )
        return chain
