"""RFC 6238 time-based one-time passwords.

Compatible with standard authenticator apps (SHA-1, 6 digits, 30 second step
by default). Verification accepts the current step and at most one adjacent
step on each side to absorb client clock drift.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import quote, urlencode

import segno

from sessionguard.logging import get_logger
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import ConfigurationError

logger = get_logger(__name__)

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

Timestamp = Union[datetime, float, int]


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    provisioning_uri: str
    manual_entry_key: str
    qr_image: str


def format_manual_entry_key(secret: str) -> str:
    """Group a base32 secret as ``ABCD EFGH ...`` for typing into an app."""
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def render_qr_png(payload: str, *, scale: int = 5, border: int = 4) -> str:
    """Base64 PNG of ``payload`` as a QR code, ready for a ``data:image/png`` URI."""
    buffer = io.BytesIO()
    segno.make(payload, error="m", micro=False).save(
        buffer, kind="png", scale=scale, border=border
    )
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class TotpEngine:
    def __init__(
        self,
        entropy: SecretGenerator,
        *,
        issuer: str = "SessionGuard",
        digits: int = 6,
        interval: int = 30,
        valid_window: int = 1,
        algorithm: str = "sha1",
        secret_bytes: int = 20,
    ) -> None:
        if algorithm not in _DIGESTS:
            raise ConfigurationError(f"unsupported TOTP algorithm: {algorithm}")
        if interval <= 0 or digits not in (6, 7, 8):
            raise ConfigurationError("TOTP interval must be positive and digits 6-8")
        self.entropy = entropy
        self.issuer = issuer
        self.digits = digits
        self.interval = interval
        self.valid_window = min(max(valid_window, 0), 1)
        self.algorithm = algorithm
        self.secret_bytes = secret_bytes

    def generate_secret(self) -> str:
        return self.entropy.random_base32_secret(self.secret_bytes)

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}", safe=":@")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": self.algorithm.upper(),
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def setup(self, account_name: str) -> TotpSetup:
        secret = self.generate_secret()
        uri = self.provisioning_uri(secret, account_name)
        return TotpSetup(
            secret=secret,
            provisioning_uri=uri,
            manual_entry_key=format_manual_entry_key(secret),
            qr_image=render_qr_png(uri),
        )

    def time_step(self, when: Timestamp) -> int:
        return int(self._epoch_seconds(when) // self.interval)

    def current_code(self, secret: str, when: Optional[Timestamp] = None) -> str:
        key = self._decode_secret(secret)
        step = self.time_step(when if when is not None else self._utcnow())
        return self._code_for_step(key, step)

    def verify(self, secret: str, code: str, when: Optional[Timestamp] = None) -> bool:
        """Check ``code`` against steps n-1, n and n+1.

        Every candidate is compared in constant time and the loop never exits
        early, so neither timing nor the return value reveals which step matched.
        """
        key = self._decode_secret(secret)
        submitted = (code or "").replace(" ", "").strip()
        if len(submitted) != self.digits or not submitted.isdigit():
            return False
        step = self.time_step(when if when is not None else self._utcnow())
        matched = False
        for offset in range(-self.valid_window, self.valid_window + 1):
            expected = self._code_for_step(key, step + offset)
            # SECURITY: constant-time comparison; accumulate instead of returning early
            matched |= hmac.compare_digest(expected.encode(), submitted.encode())
        return matched

    def _code_for_step(self, key: bytes, step: int) -> str:
        counter = max(step, 0).to_bytes(8, "big")
        digest = hmac.new(key, counter, _DIGESTS[self.algorithm]).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def _decode_secret(self, secret: str) -> bytes:
        normalized = (secret or "").replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError) as exc:
            logger.error("totp_secret_invalid")
            raise ConfigurationError("stored TOTP secret is not valid base32") from exc
        if not key:
            logger.error("totp_secret_invalid")
            raise ConfigurationError("stored TOTP secret is empty")
        return key

    @staticmethod
    def _epoch_seconds(when: Timestamp) -> float:
        if isinstance(when, datetime):
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return when.timestamp()
        return float(when)

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(timezone.utc)
