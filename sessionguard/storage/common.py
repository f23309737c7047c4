"""Common storage utilities shared between memory and postgres implementations.

Defines the store contract the services depend on and the helpers both
backends use for hashing credentials and encrypting TOTP seeds at rest.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from sessionguard.storage.models import ApiKey, ApiToken, RefreshToken, TwoFactorAuth


def hash_token(value: str) -> str:
    """One-way SHA-256 hex digest used for every credential stored at rest."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def parse_timestamp(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SecretCipher:
    """Fernet wrapper for TOTP seeds; key derived from configured material."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA cipher requires key material")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored TOTP secret cannot be decrypted with the configured key") from exc


class TokenStore(Protocol):
    """Persistence contract for the authentication core.

    ``rotate_refresh_token`` and ``consume_backup_code`` must each be a single
    atomic conditional update; callers rely on at most one concurrent winner.
    """

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_id: str,
        successor: RefreshToken,
        now: datetime,
        context: Optional[str] = None,
    ) -> bool: ...

    def revoke_refresh_token(
        self,
        token_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool: ...

    def list_refresh_lineage(self, lineage_id: str) -> List[RefreshToken]: ...

    def revoke_lineage(
        self,
        lineage_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "reuse_detected",
    ) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, context: Optional[str] = None
    ) -> int: ...

    # access token records
    def insert_api_token(self, record: ApiToken) -> ApiToken: ...

    def get_api_token(self, token_id: str) -> Optional[ApiToken]: ...

    def get_api_token_for_refresh(self, refresh_token_id: str) -> Optional[ApiToken]: ...

    def revoke_api_tokens_for_refresh(self, refresh_token_id: str, now: datetime) -> int: ...

    def touch_api_token(
        self, token_id: str, now: datetime, context: Optional[str] = None
    ) -> None: ...

    def list_api_tokens(self, user_id: str) -> List[ApiToken]: ...

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]: ...

    def save_two_factor(self, record: TwoFactorAuth) -> TwoFactorAuth: ...

    def set_two_factor_verified(self, user_id: str, secret: str, now: datetime) -> bool:
        """Enable the pending record only if it still holds ``secret``."""
        ...

    def mark_two_factor_used(self, user_id: str, now: datetime) -> None: ...

    def delete_two_factor(self, user_id: str) -> bool: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool: ...

    # legacy api keys
    def insert_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]: ...

    # housekeeping
    def purge_expired(self, before: datetime) -> int: ...
