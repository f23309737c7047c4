from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. enrolling twice (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Fatal misconfiguration: missing signing key, malformed TOTP seed."""
    error_code = "configuration_error"


class EntropyError(ConfigurationError):
    """The operating system random source failed; never degrade to a weaker one."""
    error_code = "entropy_unavailable"


class AuthErrorKind(str, Enum):
    """Internal taxonomy of expected authentication failures."""

    NOT_RECOGNIZED = "not_recognized"
    EXPIRED = "expired"
    REUSE_DETECTED = "reuse_detected"
    REVOKED = "revoked"
    BAD_SIGNATURE = "bad_signature"
    VALIDATION_FAILED = "validation_failed"


_COMPROMISE_KINDS = frozenset({AuthErrorKind.REUSE_DETECTED, AuthErrorKind.BAD_SIGNATURE})


@dataclass(frozen=True)
class AuthFailure:
    """Expected authentication failure returned as a value.

    ``kind`` is for audit logging and security response only; callers facing
    a client should use :meth:`to_error`, which is identical for every kind.
    """

    kind: AuthErrorKind
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def compromised(self) -> bool:
        """True when every credential of the session must be discarded."""
        return self.kind in _COMPROMISE_KINDS

    @property
    def recoverable(self) -> bool:
        return self.kind is AuthErrorKind.VALIDATION_FAILED

    def to_error(self) -> AuthenticationError:
        return AuthenticationError("authentication required")

    def __bool__(self) -> bool:
        return False


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "EntropyError",
    "AuthErrorKind",
    "AuthFailure",
]
