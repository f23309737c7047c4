"""Credential variants accepted at the authorization boundary.

The request layer turns headers/cookies into exactly one :class:`Credential`
with :func:`extract_credential` and calls ``resolve_identity``; it never
branches on the credential type itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, Mapping, Optional, Union

from sessionguard.service.errors import AuthErrorKind, AuthFailure

if TYPE_CHECKING:
    from sessionguard.service.auth import AuthService

AUTHORIZATION_HEADER = "authorization"
API_KEY_HEADER = "x-api-key"
PENDING_HEADER = "x-two-factor-pending"
ACCESS_TOKEN_COOKIE = "access_token"
PENDING_COOKIE = "two_factor_pending"


@dataclass(frozen=True)
class ResolvedIdentity:
    identity: str
    method: str
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    two_factor_pending: bool = False
    token_id: Optional[str] = None
    # Legacy static keys never expire or rotate
    reduced_security: bool = False

    def has_scope(self, scope: str) -> bool:
        return not self.two_factor_pending and scope in self.scopes


Resolution = Union[ResolvedIdentity, AuthFailure]


@dataclass(frozen=True)
class BearerCredential:
    token: str = field(repr=False)

    async def resolve_identity(self, auth: "AuthService", context: Optional[str] = None) -> Resolution:
        result = await auth.validate_access_token(self.token, context)
        if isinstance(result, AuthFailure):
            return result
        return ResolvedIdentity(
            identity=result.subject,
            method="bearer",
            scopes=result.scopes,
            token_id=result.token_id,
        )


@dataclass(frozen=True)
class ApiKeyCredential:
    key: str = field(repr=False)

    async def resolve_identity(self, auth: "AuthService", context: Optional[str] = None) -> Resolution:
        api_key = auth.resolve_api_key(self.key, context)
        if api_key is None:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        return ResolvedIdentity(
            identity=api_key.user_id,
            method="api_key",
            scopes=frozenset(auth.settings.available_scopes),
            token_id=api_key.id,
            reduced_security=True,
        )


@dataclass(frozen=True)
class TwoFactorPendingCredential:
    """Password/OAuth step done, second factor outstanding: no scopes at all."""

    pending_token: str = field(repr=False)

    async def resolve_identity(self, auth: "AuthService", context: Optional[str] = None) -> Resolution:
        identity = await auth.peek_pending_login(self.pending_token)
        if identity is None:
            return AuthFailure(AuthErrorKind.NOT_RECOGNIZED)
        return ResolvedIdentity(identity=identity, method="two_factor_pending", two_factor_pending=True)


Credential = Union[BearerCredential, ApiKeyCredential, TwoFactorPendingCredential]


def _looks_like_jwt(value: str) -> bool:
    return value.count(".") == 2


def extract_credential(
    headers: Mapping[str, str], cookies: Optional[Mapping[str, str]] = None
) -> Optional[Credential]:
    """Pick the credential a request presents; ``None`` when it presents none.

    ``Authorization: Bearer`` carries either an access token (JWT shaped) or a
    legacy API key; the explicit ``X-API-Key`` header and cookies follow.
    """
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    cookies = cookies or {}
    authorization = (lowered.get(AUTHORIZATION_HEADER) or "").strip()
    if authorization:
        scheme, _, value = authorization.partition(" ")
        value = value.strip()
        if scheme.lower() == "bearer" and value:
            if _looks_like_jwt(value):
                return BearerCredential(value)
            return ApiKeyCredential(value)
    api_key = (lowered.get(API_KEY_HEADER) or "").strip()
    if api_key:
        return ApiKeyCredential(api_key)
    cookie_token = (cookies.get(ACCESS_TOKEN_COOKIE) or "").strip()
    if cookie_token:
        return BearerCredential(cookie_token)
    pending = (lowered.get(PENDING_HEADER) or cookies.get(PENDING_COOKIE) or "").strip()
    if pending:
        return TwoFactorPendingCredential(pending)
    return None
