from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple, Union

from sessionguard.logging import get_logger, mask_identity
from sessionguard.service.errors import AuthErrorKind, AuthFailure, ConfigurationError
from sessionguard.storage.common import TokenStore, hash_token
from sessionguard.storage.models import ApiToken, RefreshToken

logger = get_logger(__name__)

_MAX_ACTIVITY_CACHE_SIZE = 10000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Claims:
    subject: str
    token_id: str
    scopes: FrozenSet[str]
    issued_at: datetime
    expires_at: datetime

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class AccessTokenIssuer:
    """Mints HS256 access tokens and checks them against their stored record.

    A valid signature is necessary but not sufficient: every validation also
    reads the ``ApiToken`` row and its bound refresh token, so server-side
    revocation takes effect before the token's own expiry. A positive result
    may be reused for at most ``cache_ttl_seconds`` (0 disables reuse).
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        signing_key: str,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(minutes=15),
        cache_ttl_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not signing_key:
            raise ConfigurationError("access tokens require a signing key")
        self.store = store
        self._signing_key = signing_key.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.cache_ttl = timedelta(seconds=max(cache_ttl_seconds, 0))
        self._clock = clock or _utcnow
        self._activity_cache: Dict[str, datetime] = {}
        self._cache_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    # -- minting --------------------------------------------------------

    def mint(
        self,
        identity: str,
        scopes: Iterable[str],
        bound_refresh: RefreshToken,
        *,
        description: str = "",
    ) -> Tuple[str, ApiToken]:
        now = self._now()
        issued_ts = int(now.timestamp())
        expires_ts = int((now + self.ttl).timestamp())
        token_id = str(uuid.uuid4())
        granted = sorted(set(scopes))
        token = self._encode_jwt(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": identity,
                "jti": token_id,
                "scopes": granted,
                "token_type": "access",
                "iat": issued_ts,
                "exp": expires_ts,
            }
        )
        record = ApiToken(
            id=token_id,
            user_id=identity,
            token_hash=hash_token(token),
            refresh_token_id=bound_refresh.id,
            refresh_token_hash=bound_refresh.token_hash,
            scopes=granted,
            issued_at=datetime.fromtimestamp(issued_ts, tz=timezone.utc),
            access_expires_at=datetime.fromtimestamp(expires_ts, tz=timezone.utc),
            refresh_expires_at=bound_refresh.expires_at,
            description=description,
        )
        self.store.insert_api_token(record)
        logger.info(
            "access_token_minted",
            user_id=mask_identity(identity),
            token_id=token_id,
            scopes=granted,
        )
        return token, record

    # -- validation -----------------------------------------------------

    def validate(
        self, token: str, context: Optional[str] = None
    ) -> Union[Claims, AuthFailure]:
        payload = self._decode_jwt(token or "")
        if payload is None:
            return self._reject(AuthErrorKind.BAD_SIGNATURE)
        now = self._now()
        if now.timestamp() >= float(payload["exp"]):
            return self._reject(AuthErrorKind.EXPIRED, token_id=payload["jti"])

        token_id = payload["jti"]
        if not self._cached_active(token_id, now):
            failure = self._check_record(token_id, token, now)
            if failure is not None:
                return failure
            self._remember_active(token_id, now)

        self.store.touch_api_token(token_id, now, context)
        return Claims(
            subject=str(payload["sub"]),
            token_id=token_id,
            scopes=frozenset(payload.get("scopes") or []),
            issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )

    def token_id_of(self, token: str) -> Optional[str]:
        """``jti`` of a token carrying our signature, expired or not."""
        payload = self._decode_jwt(token)
        return str(payload["jti"]) if payload else None

    def _check_record(self, token_id: str, token: str, now: datetime) -> Optional[AuthFailure]:
        record = self.store.get_api_token(token_id)
        if record is None or record.is_revoked:
            return self._reject(AuthErrorKind.REVOKED, token_id=token_id)
        if not hmac.compare_digest(record.token_hash, hash_token(token)):
            return self._reject(AuthErrorKind.BAD_SIGNATURE, token_id=token_id)
        bound = self.store.get_refresh_token(record.refresh_token_id)
        if bound is None or bound.is_revoked:
            return self._reject(AuthErrorKind.REVOKED, token_id=token_id)
        if bound.is_expired(now):
            return self._reject(AuthErrorKind.EXPIRED, token_id=token_id)
        return None

    def _reject(self, kind: AuthErrorKind, **detail: Any) -> AuthFailure:
        logger.info("access_token_rejected", kind=kind.value, **detail)
        return AuthFailure(kind, detail)

    # -- activity cache -------------------------------------------------

    def _cached_active(self, token_id: str, now: datetime) -> bool:
        if not self.cache_ttl:
            return False
        with self._cache_lock:
            until = self._activity_cache.get(token_id)
            if until is None:
                return False
            if until <= now:
                self._activity_cache.pop(token_id, None)
                return False
            return True

    def _remember_active(self, token_id: str, now: datetime) -> None:
        if not self.cache_ttl:
            return
        with self._cache_lock:
            if len(self._activity_cache) >= _MAX_ACTIVITY_CACHE_SIZE:
                # Drop ~10% of entries closest to expiry
                oldest = sorted(self._activity_cache.items(), key=lambda item: item[1])
                for stale_id, _ in oldest[: max(1, _MAX_ACTIVITY_CACHE_SIZE // 10)]:
                    self._activity_cache.pop(stale_id, None)
            self._activity_cache[token_id] = now + self.cache_ttl

    def invalidate(self, token_id: str) -> None:
        with self._cache_lock:
            self._activity_cache.pop(token_id, None)

    def invalidate_all(self) -> None:
        with self._cache_lock:
            self._activity_cache.clear()

    # -- JWT ------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._signing_key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-formed token signed by us, else ``None``.

        Expiry is not checked here so the caller can tell expired from forged.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject alg confusion (none, RS256 with our secret as public key)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != "access":
            return None
        if not payload.get("jti") or not payload.get("sub"):
            return None
        try:
            float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        return payload
