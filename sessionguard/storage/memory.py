from __future__ import annotations

import json
import os
import secrets
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sessionguard.logging import get_logger, mask_identity
from sessionguard.storage.common import (
    SecretCipher,
    format_timestamp,
    parse_timestamp,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    ApiKey,
    ApiToken,
    RefreshToken,
    TwoFactorAuth,
    as_utc,
)


class MemoryStore:
    """In-process token store for tests and single-node development.

    Every compound mutation (rotate, consume, lineage revoke) runs under one
    lock acquisition so the conditional check and the write cannot interleave.
    Records are copied on the way in and out; callers never hold live rows.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.api_tokens: Dict[str, ApiToken] = {}
        self.two_factor: Dict[str, TwoFactorAuth] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        # RLock so helpers can be called while a compound operation holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(self._resolve_key_material(mfa_encryption_key))
        if self.fs_root is not None:
            self._load_state()

    def _resolve_key_material(self, key_material: str | None) -> str:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if material:
            return material
        if self.fs_root is None:
            # Nothing outlives the process, so an ephemeral key is sufficient
            return secrets.token_urlsafe(64)
        key_path = self.fs_root / ".mfa_key"
        try:
            material = key_path.read_text().strip()
        except FileNotFoundError:
            material = ""
        if not material:
            material = secrets.token_urlsafe(64)
            try:
                key_path.write_text(material)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
        return material

    # -- refresh tokens -------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self._insert_refresh_locked(token)
            self._persist_state()
        return self._copy_refresh(token)

    def _insert_refresh_locked(self, token: RefreshToken) -> None:
        if token.id in self.refresh_tokens or token.token_hash in self._refresh_by_hash:
            raise ConstraintViolation("refresh token exists", {"id": token.id})
        stored = self._copy_refresh(token)
        stored.value = None
        self.refresh_tokens[token.id] = stored
        self._refresh_by_hash[token.token_hash] = token.id

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return self._copy_refresh(token) if token else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return self._copy_refresh(token) if token else None

    def rotate_refresh_token(
        self,
        old_id: str,
        successor: RefreshToken,
        now: datetime,
        context: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(old_id)
            if current is None or current.revoked_at is not None:
                return False
            current.revoked_at = now
            current.revoked_by = context
            current.revoked_reason = "rotated"
            current.replaced_by_id = successor.id
            self._insert_refresh_locked(successor)
            self._revoke_api_tokens_locked({old_id}, now)
            self._persist_state()
            return True

    def revoke_refresh_token(
        self,
        token_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.revoked_at is not None:
                return False
            current.revoked_at = now
            current.revoked_by = context
            current.revoked_reason = reason
            self._revoke_api_tokens_locked({token_id}, now)
            self._persist_state()
            return True

    def list_refresh_lineage(self, lineage_id: str) -> List[RefreshToken]:
        with self._data_lock:
            members = [
                self._copy_refresh(t)
                for t in self.refresh_tokens.values()
                if t.lineage_id == lineage_id
            ]
        return sorted(members, key=lambda t: as_utc(t.issued_at))

    def revoke_lineage(
        self,
        lineage_id: str,
        now: datetime,
        context: Optional[str] = None,
        reason: str = "reuse_detected",
    ) -> int:
        with self._data_lock:
            members = [t for t in self.refresh_tokens.values() if t.lineage_id == lineage_id]
            revoked = 0
            for token in members:
                if token.revoked_at is None:
                    token.revoked_at = now
                    token.revoked_by = context
                    token.revoked_reason = reason
                    revoked += 1
            # Rotated members already point at a successor; their access records go too
            self._revoke_api_tokens_locked({t.id for t in members}, now)
            self._persist_state()
            return revoked

    def revoke_user_refresh_tokens(
        self, user_id: str, now: datetime, context: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            owned = set()
            for token in self.refresh_tokens.values():
                if token.user_id != user_id:
                    continue
                owned.add(token.id)
                if token.revoked_at is None:
                    token.revoked_at = now
                    token.revoked_by = context
                    token.revoked_reason = "revoke_all"
                    revoked += 1
            self._revoke_api_tokens_locked(owned, now)
            self._persist_state()
            return revoked

    # -- access token records -------------------------------------------

    def insert_api_token(self, record: ApiToken) -> ApiToken:
        with self._data_lock:
            if record.id in self.api_tokens:
                raise ConstraintViolation("api token exists", {"id": record.id})
            if record.refresh_token_id not in self.refresh_tokens:
                raise ConstraintViolation(
                    "api token must reference a refresh token",
                    {"refresh_token_id": record.refresh_token_id},
                )
            self.api_tokens[record.id] = self._copy_api_token(record)
            self._persist_state()
        return self._copy_api_token(record)

    def get_api_token(self, token_id: str) -> Optional[ApiToken]:
        with self._data_lock:
            record = self.api_tokens.get(token_id)
            return self._copy_api_token(record) if record else None

    def get_api_token_for_refresh(self, refresh_token_id: str) -> Optional[ApiToken]:
        with self._data_lock:
            for record in self.api_tokens.values():
                if record.refresh_token_id == refresh_token_id:
                    return self._copy_api_token(record)
        return None

    def revoke_api_tokens_for_refresh(self, refresh_token_id: str, now: datetime) -> int:
        with self._data_lock:
            count = self._revoke_api_tokens_locked({refresh_token_id}, now)
            self._persist_state()
            return count

    def _revoke_api_tokens_locked(self, refresh_ids: set, now: datetime) -> int:
        count = 0
        for record in self.api_tokens.values():
            if record.refresh_token_id in refresh_ids and record.revoked_at is None:
                record.revoked_at = now
                count += 1
        return count

    def touch_api_token(
        self, token_id: str, now: datetime, context: Optional[str] = None
    ) -> None:
        with self._data_lock:
            record = self.api_tokens.get(token_id)
            if record is None:
                return
            record.usage_count += 1
            record.last_used_at = now
            record.last_used_by = context
            self._persist_state()

    def list_api_tokens(self, user_id: str) -> List[ApiToken]:
        with self._data_lock:
            records = [
                self._copy_api_token(r) for r in self.api_tokens.values() if r.user_id == user_id
            ]
        return sorted(records, key=lambda r: as_utc(r.issued_at), reverse=True)

    # -- two-factor -----------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record is None:
                return None
            copied = self._copy_two_factor(record)
        copied.secret = self._cipher.decrypt(copied.secret)
        return copied

    def save_two_factor(self, record: TwoFactorAuth) -> TwoFactorAuth:
        stored = self._copy_two_factor(record)
        stored.secret = self._cipher.encrypt(record.secret)
        stored.backup_codes -= stored.used_backup_codes
        with self._data_lock:
            self.two_factor[record.user_id] = stored
            self._persist_state()
        return self._copy_two_factor(record)

    def set_two_factor_verified(self, user_id: str, secret: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record is None or record.is_verified:
                return False
            stored = self._cipher.decrypt(record.secret)
            if not secrets.compare_digest(stored.encode("utf-8"), secret.encode("utf-8")):
                return False
            record.is_verified = True
            if record.enabled_at is None:
                record.enabled_at = now
            self._persist_state()
            return True

    def mark_two_factor_used(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record is not None:
                record.last_used_at = now
                self._persist_state()

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record is None:
                raise ConstraintViolation("two-factor not configured", {"user_id": mask_identity(user_id)})
            record.backup_codes = set(code_hashes) - record.used_backup_codes
            self._persist_state()

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record is None or code_hash not in record.backup_codes:
                return False
            record.backup_codes.discard(code_hash)
            record.used_backup_codes.add(code_hash)
            record.last_used_at = now
            self._persist_state()
            return True

    # -- legacy api keys ------------------------------------------------

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if any(k.key_hash == api_key.key_hash for k in self.api_keys.values()):
                raise ConstraintViolation("api key exists", {"id": api_key.id})
            self.api_keys[api_key.id] = replace(api_key)
            self._persist_state()
        return replace(api_key)

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._data_lock:
            for api_key in self.api_keys.values():
                if api_key.key_hash == key_hash:
                    return replace(api_key)
        return None

    # -- housekeeping ---------------------------------------------------

    def purge_expired(self, before: datetime) -> int:
        cutoff = as_utc(before)
        with self._data_lock:
            doomed = {
                t.id for t in self.refresh_tokens.values() if as_utc(t.expires_at) < cutoff
            }
            for token_id in doomed:
                token = self.refresh_tokens.pop(token_id)
                self._refresh_by_hash.pop(token.token_hash, None)
            stale = [
                r.id
                for r in self.api_tokens.values()
                if r.refresh_token_id in doomed or as_utc(r.refresh_expires_at) < cutoff
            ]
            for record_id in stale:
                self.api_tokens.pop(record_id, None)
            if doomed or stale:
                self._persist_state()
            return len(doomed) + len(stale)

    # -- copies ---------------------------------------------------------

    @staticmethod
    def _copy_refresh(token: RefreshToken) -> RefreshToken:
        return replace(token)

    @staticmethod
    def _copy_api_token(record: ApiToken) -> ApiToken:
        return replace(record, scopes=list(record.scopes))

    @staticmethod
    def _copy_two_factor(record: TwoFactorAuth) -> TwoFactorAuth:
        return replace(
            record,
            backup_codes=set(record.backup_codes),
            used_backup_codes=set(record.used_backup_codes),
        )

    # -- snapshot -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "refresh_tokens": [self._serialize_refresh(t) for t in self.refresh_tokens.values()],
            "api_tokens": [self._serialize_api_token(r) for r in self.api_tokens.values()],
            "two_factor": [self._serialize_two_factor(r) for r in self.two_factor.values()],
            "api_keys": [
                {
                    "id": k.id,
                    "user_id": k.user_id,
                    "key_hash": k.key_hash,
                    "description": k.description,
                    "created_at": format_timestamp(k.created_at),
                }
                for k in self.api_keys.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist token store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("refresh_tokens", []):
            token = self._deserialize_refresh(raw)
            self.refresh_tokens[token.id] = token
            self._refresh_by_hash[token.token_hash] = token.id
        self.api_tokens = {
            r["id"]: self._deserialize_api_token(r) for r in data.get("api_tokens", [])
        }
        self.two_factor = {
            r["user_id"]: self._deserialize_two_factor(r) for r in data.get("two_factor", [])
        }
        self.api_keys = {
            k["id"]: ApiKey(
                id=k["id"],
                user_id=k["user_id"],
                key_hash=k["key_hash"],
                description=k.get("description", ""),
                created_at=parse_timestamp(k["created_at"]),
            )
            for k in data.get("api_keys", [])
        }
        self.logger.info(
            "token_store_loaded",
            refresh_tokens=len(self.refresh_tokens),
            api_tokens=len(self.api_tokens),
        )
        return True

    @staticmethod
    def _serialize_refresh(token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "lineage_id": token.lineage_id,
            "issued_at": format_timestamp(token.issued_at),
            "expires_at": format_timestamp(token.expires_at),
            "created_by": token.created_by,
            "parent_id": token.parent_id,
            "replaced_by_id": token.replaced_by_id,
            "revoked_at": format_timestamp(token.revoked_at),
            "revoked_by": token.revoked_by,
            "revoked_reason": token.revoked_reason,
        }

    @staticmethod
    def _deserialize_refresh(data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            lineage_id=data.get("lineage_id") or data["id"],
            issued_at=parse_timestamp(data["issued_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            created_by=data.get("created_by"),
            parent_id=data.get("parent_id"),
            replaced_by_id=data.get("replaced_by_id"),
            revoked_at=parse_timestamp(data.get("revoked_at")),
            revoked_by=data.get("revoked_by"),
            revoked_reason=data.get("revoked_reason"),
        )

    @staticmethod
    def _serialize_api_token(record: ApiToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "refresh_token_id": record.refresh_token_id,
            "refresh_token_hash": record.refresh_token_hash,
            "scopes": list(record.scopes),
            "issued_at": format_timestamp(record.issued_at),
            "access_expires_at": format_timestamp(record.access_expires_at),
            "refresh_expires_at": format_timestamp(record.refresh_expires_at),
            "description": record.description,
            "last_used_at": format_timestamp(record.last_used_at),
            "last_used_by": record.last_used_by,
            "revoked_at": format_timestamp(record.revoked_at),
            "usage_count": record.usage_count,
        }

    @staticmethod
    def _deserialize_api_token(data: dict) -> ApiToken:
        return ApiToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            refresh_token_id=data["refresh_token_id"],
            refresh_token_hash=data["refresh_token_hash"],
            scopes=list(data.get("scopes", [])),
            issued_at=parse_timestamp(data["issued_at"]),
            access_expires_at=parse_timestamp(data["access_expires_at"]),
            refresh_expires_at=parse_timestamp(data["refresh_expires_at"]),
            description=data.get("description", ""),
            last_used_at=parse_timestamp(data.get("last_used_at")),
            last_used_by=data.get("last_used_by"),
            revoked_at=parse_timestamp(data.get("revoked_at")),
            usage_count=int(data.get("usage_count", 0)),
        )

    @staticmethod
    def _serialize_two_factor(record: TwoFactorAuth) -> dict:
        # secret is already encrypted at rest in this map
        return {
            "user_id": record.user_id,
            "secret": record.secret,
            "setup_at": format_timestamp(record.setup_at),
            "is_verified": record.is_verified,
            "backup_codes": sorted(record.backup_codes),
            "used_backup_codes": sorted(record.used_backup_codes),
            "enabled_at": format_timestamp(record.enabled_at),
            "last_used_at": format_timestamp(record.last_used_at),
        }

    @staticmethod
    def _deserialize_two_factor(data: dict) -> TwoFactorAuth:
        return TwoFactorAuth(
            user_id=data["user_id"],
            secret=data["secret"],
            setup_at=parse_timestamp(data["setup_at"]),
            is_verified=bool(data.get("is_verified", False)),
            backup_codes=set(data.get("backup_codes", [])),
            used_backup_codes=set(data.get("used_backup_codes", [])),
            enabled_at=parse_timestamp(data.get("enabled_at")),
            last_used_at=parse_timestamp(data.get("last_used_at")),
        )
