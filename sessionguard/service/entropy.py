"""Cryptographically secure secret generation.

All randomness comes from the operating system CSPRNG through :mod:`secrets`.
A failing entropy source raises :class:`EntropyError`; there is no fallback.
"""

from __future__ import annotations

import base64
import secrets

from sessionguard.service.errors import EntropyError

# Excludes 0/O, 1/I/L to keep codes unambiguous when read aloud or copied by hand
BACKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

MIN_OPAQUE_TOKEN_BYTES = 32


class SecretGenerator:
    """Process-wide source of secrets; stateless and safe to share across threads."""

    def __init__(self, *, backup_code_length: int = 10) -> None:
        if backup_code_length < 8 or backup_code_length % 2:
            raise ValueError("backup codes must have an even length of at least 8")
        self.backup_code_length = backup_code_length

    def random_secret(self, length: int) -> bytes:
        if length <= 0:
            raise ValueError("secret length must be positive")
        try:
            return secrets.token_bytes(length)
        except (OSError, NotImplementedError) as exc:
            raise EntropyError("operating system entropy source unavailable") from exc

    def random_base32_secret(self, length: int = 20) -> str:
        """TOTP seed: ``length`` random bytes, base32 without padding."""
        return base64.b32encode(self.random_secret(length)).decode("ascii").rstrip("=")

    def random_backup_code(self) -> str:
        """Human-readable recovery code such as ``K7PQM-X3NRA``."""
        raw = self.random_secret(self.backup_code_length)
        alphabet_size = len(BACKUP_CODE_ALPHABET)
        chars = []
        for byte in raw:
            # Rejection sampling keeps the distribution uniform
            while byte >= 256 - (256 % alphabet_size):
                byte = self.random_secret(1)[0]
            chars.append(BACKUP_CODE_ALPHABET[byte % alphabet_size])
        half = self.backup_code_length // 2
        return "".join(chars[:half]) + "-" + "".join(chars[half:])

    def random_opaque_token(self, nbytes: int = MIN_OPAQUE_TOKEN_BYTES) -> str:
        """URL-safe token with at least 256 bits of entropy."""
        return (
            base64.urlsafe_b64encode(self.random_secret(max(nbytes, MIN_OPAQUE_TOKEN_BYTES)))
            .decode("ascii")
            .rstrip("=")
        )
