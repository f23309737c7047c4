from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sessionguard.logging import get_logger, mask_identity
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import NotFoundError
from sessionguard.storage.common import TokenStore

logger = get_logger(__name__)

DEFAULT_BACKUP_CODE_COUNT = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupCodeManager:
    """Single-use recovery codes, stored only as SHA-256 digests."""

    def __init__(
        self,
        store: TokenStore,
        entropy: SecretGenerator,
        *,
        count: int = DEFAULT_BACKUP_CODE_COUNT,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if count <= 0:
            raise ValueError("backup code count must be positive")
        self.store = store
        self.entropy = entropy
        self.count = count
        self._clock = clock or _utcnow

    @staticmethod
    def normalize(code: str) -> str:
        return "".join((code or "").split()).replace("-", "").upper()

    @classmethod
    def hash_code(cls, code: str) -> str:
        return hashlib.sha256(cls.normalize(code).encode("utf-8")).hexdigest()

    def generate(self, count: Optional[int] = None, *, exclude: frozenset = frozenset()) -> List[str]:
        """Return ``count`` distinct plaintext codes whose hashes avoid ``exclude``."""
        wanted = self.count if count is None else count
        if wanted <= 0:
            raise ValueError("backup code count must be positive")
        codes: List[str] = []
        seen = set(exclude)
        while len(codes) < wanted:
            code = self.entropy.random_backup_code()
            digest = self.hash_code(code)
            if digest in seen:
                continue
            seen.add(digest)
            codes.append(code)
        return codes

    def regenerate(self, identity: str) -> List[str]:
        """Replace every unused code for ``identity``; used codes stay recorded."""
        record = self.store.get_two_factor(identity)
        if record is None:
            raise NotFoundError("two-factor authentication is not set up")
        codes = self.generate(exclude=frozenset(record.used_backup_codes))
        self.store.replace_backup_codes(identity, [self.hash_code(c) for c in codes])
        logger.info(
            "backup_codes_regenerated", user_id=mask_identity(identity), count=len(codes)
        )
        return codes

    def consume(self, identity: str, submitted: str) -> bool:
        if not self.normalize(submitted):
            return False
        consumed = self.store.consume_backup_code(
            identity, self.hash_code(submitted), self._clock()
        )
        if consumed:
            logger.info(
                "backup_code_consumed",
                user_id=mask_identity(identity),
                remaining=self.remaining_count(identity),
            )
        return consumed

    def remaining_count(self, identity: str) -> int:
        record = self.store.get_two_factor(identity)
        return len(record.backup_codes) if record else 0
