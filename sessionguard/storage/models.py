from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, JSON snapshots) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class RefreshToken:
    """One link of a refresh-token lineage.

    Only ``token_hash`` is persisted; ``value`` is populated on the instance
    returned by issue/rotate so the caller can hand it to the client once.
    """

    id: str
    user_id: str
    token_hash: str
    lineage_id: str
    issued_at: datetime
    expires_at: datetime
    created_by: Optional[str] = None
    parent_id: Optional[str] = None
    replaced_by_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_reason: Optional[str] = None
    value: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        ttl: timedelta,
        created_by: Optional[str] = None,
        parent: Optional["RefreshToken"] = None,
        value: Optional[str] = None,
    ) -> "RefreshToken":
        token_id = str(uuid.uuid4())
        return cls(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            lineage_id=parent.lineage_id if parent else token_id,
            issued_at=now,
            expires_at=now + ttl,
            created_by=created_by,
            parent_id=parent.id if parent else None,
            value=value,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_rotated(self) -> bool:
        return self.replaced_by_id is not None

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.expires_at)

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class ApiToken:
    """Server-side record of a minted access token, keyed by its ``jti``."""

    id: str
    user_id: str
    token_hash: str
    refresh_token_id: str
    refresh_token_hash: str
    scopes: List[str]
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    description: str = ""
    last_used_at: Optional[datetime] = None
    last_used_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    usage_count: int = 0

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.access_expires_at)


@dataclass
class TwoFactorAuth:
    user_id: str
    secret: str
    setup_at: datetime
    is_verified: bool = False
    backup_codes: Set[str] = field(default_factory=set)
    used_backup_codes: Set[str] = field(default_factory=set)
    enabled_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class ApiKey:
    """Legacy static automation key: hash lookup only, no expiry or rotation."""

    id: str
    user_id: str
    key_hash: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
