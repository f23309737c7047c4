"""Tests for credential extraction and identity resolution."""

import pytest

from sessionguard.service.credentials import (
    ApiKeyCredential,
    BearerCredential,
    ResolvedIdentity,
    TwoFactorPendingCredential,
    extract_credential,
)
from sessionguard.service.errors import AuthErrorKind, AuthFailure, ValidationError


class TestExtractCredential:
    def test_bearer_jwt(self):
        credential = extract_credential({"Authorization": "Bearer aaa.bbb.ccc"})
        assert credential == BearerCredential("aaa.bbb.ccc")

    def test_bearer_opaque_value_is_api_key(self):
        credential = extract_credential({"authorization": "bearer sgk_abcdef"})
        assert credential == ApiKeyCredential("sgk_abcdef")

    def test_api_key_header(self):
        assert extract_credential({"X-API-Key": "sgk_abcdef"}) == ApiKeyCredential("sgk_abcdef")

    def test_access_token_cookie(self):
        credential = extract_credential({}, {"access_token": "aaa.bbb.ccc"})
        assert credential == BearerCredential("aaa.bbb.ccc")

    def test_pending_header_and_cookie(self):
        assert extract_credential({"X-Two-Factor-Pending": "p1"}) == TwoFactorPendingCredential("p1")
        assert extract_credential({}, {"two_factor_pending": "p2"}) == TwoFactorPendingCredential("p2")

    def test_authorization_header_wins(self):
        credential = extract_credential(
            {"Authorization": "Bearer aaa.bbb.ccc", "X-API-Key": "sgk_other"},
            {"access_token": "ddd.eee.fff"},
        )
        assert credential == BearerCredential("aaa.bbb.ccc")

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Basic dXNlcjpwYXNz"}, {"Authorization": "Bearer "}],
    )
    def test_no_credential(self, headers):
        assert extract_credential(headers) is None

    def test_repr_hides_secret(self):
        assert "aaa.bbb.ccc" not in repr(BearerCredential("aaa.bbb.ccc"))


class TestResolveIdentity:
    async def test_bearer_resolves_scopes(self, auth_service):
        tokens = auth_service.issue_initial_session("u1", scopes=["read:routes"])

        resolved = await auth_service.authenticate_request(
            {"Authorization": f"Bearer {tokens.access_token}"}, context="10.0.0.1"
        )

        assert isinstance(resolved, ResolvedIdentity)
        assert resolved.identity == "u1"
        assert resolved.method == "bearer"
        assert resolved.token_id == tokens.token_id
        assert resolved.has_scope("read:routes")
        assert not resolved.has_scope("write:routes")
        assert resolved.reduced_security is False

    async def test_revoked_bearer_fails(self, auth_service):
        tokens = auth_service.issue_initial_session("u1")
        await auth_service.revoke_session(tokens.refresh_token)

        result = await BearerCredential(tokens.access_token).resolve_identity(auth_service)
        assert isinstance(result, AuthFailure)
        assert result.kind is AuthErrorKind.REVOKED

    async def test_legacy_api_key_is_reduced_security(self, auth_service, settings):
        plaintext, api_key = auth_service.create_api_key("automation", "nightly export")

        resolved = await auth_service.authenticate_request({"X-API-Key": plaintext})

        assert resolved.identity == "automation"
        assert resolved.method == "api_key"
        assert resolved.token_id == api_key.id
        assert resolved.reduced_security is True
        assert resolved.scopes == frozenset(settings.available_scopes)

    async def test_api_key_plaintext_not_stored(self, auth_service, memory_store):
        plaintext, api_key = auth_service.create_api_key("automation")
        assert plaintext.startswith("sgk_")
        assert memory_store.api_keys[api_key.id].key_hash != plaintext

    async def test_unknown_api_key(self, auth_service):
        result = await ApiKeyCredential("sgk_unknown").resolve_identity(auth_service)
        assert result.kind is AuthErrorKind.NOT_RECOGNIZED

    def test_api_key_requires_identity(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.create_api_key("")

    async def test_unknown_pending_token(self, auth_service):
        result = await TwoFactorPendingCredential("nope").resolve_identity(auth_service)
        assert result.kind is AuthErrorKind.NOT_RECOGNIZED

    async def test_request_without_credential(self, auth_service):
        result = await auth_service.authenticate_request({})
        assert result.kind is AuthErrorKind.NOT_RECOGNIZED

    def test_pending_identity_has_no_scopes(self):
        resolved = ResolvedIdentity(
            identity="u2",
            method="two_factor_pending",
            scopes=frozenset({"read:routes"}),
            two_factor_pending=True,
        )
        assert not resolved.has_scope("read:routes")
