"""Tests for refresh token rotation and reuse detection."""

from datetime import timedelta

import pytest

from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import AuthErrorKind, AuthFailure, ServerError
from sessionguard.service.refresh import RefreshTokenRotator
from sessionguard.storage.common import hash_token


@pytest.fixture
def rotator(memory_store, clock):
    return RefreshTokenRotator(
        memory_store, SecretGenerator(), ttl=timedelta(days=30), clock=clock
    )


class TestIssue:
    def test_issue_returns_plaintext_once(self, rotator, memory_store):
        token = rotator.issue("u1", "10.0.0.1")
        stored = memory_store.get_refresh_token(token.id)

        assert token.value
        assert stored.value is None
        assert stored.token_hash == hash_token(token.value)
        assert stored.created_by == "10.0.0.1"

    def test_new_token_starts_its_own_lineage(self, rotator):
        token = rotator.issue("u1")
        assert token.lineage_id == token.id
        assert token.parent_id is None

    def test_expiry_uses_configured_lifetime(self, rotator, clock):
        token = rotator.issue("u1")
        assert token.expires_at == clock() + timedelta(days=30)


class TestRotate:
    def test_rotation_returns_successor_in_same_lineage(self, rotator, memory_store):
        original = rotator.issue("u1")
        successor = rotator.validate_and_rotate(original.value, "10.0.0.2")

        assert not isinstance(successor, AuthFailure)
        assert successor.value != original.value
        assert successor.lineage_id == original.lineage_id
        assert successor.parent_id == original.id

        old = memory_store.get_refresh_token(original.id)
        assert old.revoked_at is not None
        assert old.replaced_by_id == successor.id
        assert old.revoked_reason == "rotated"

    def test_successor_gets_fresh_expiry(self, rotator, clock):
        original = rotator.issue("u1")
        clock.advance(days=10)
        successor = rotator.validate_and_rotate(original.value)
        assert successor.expires_at == clock() + timedelta(days=30)

    def test_unknown_token_not_recognized(self, rotator):
        result = rotator.validate_and_rotate("never-issued")
        assert isinstance(result, AuthFailure)
        assert result.kind is AuthErrorKind.NOT_RECOGNIZED

    def test_empty_token_not_recognized(self, rotator):
        assert rotator.validate_and_rotate("").kind is AuthErrorKind.NOT_RECOGNIZED

    def test_expired_token(self, rotator, clock):
        token = rotator.issue("u1")
        clock.advance(days=30)
        result = rotator.validate_and_rotate(token.value)
        assert result.kind is AuthErrorKind.EXPIRED
        assert not result.compromised


class TestReuseDetection:
    def test_replay_of_rotated_token_revokes_lineage(self, rotator, memory_store):
        first = rotator.issue("u1")
        second = rotator.validate_and_rotate(first.value)
        third = rotator.validate_and_rotate(second.value)

        result = rotator.validate_and_rotate(first.value)

        assert result.kind is AuthErrorKind.REUSE_DETECTED
        assert result.compromised
        for member in memory_store.list_refresh_lineage(first.lineage_id):
            assert member.revoked_at is not None
        assert rotator.validate_and_rotate(third.value).kind is AuthErrorKind.REUSE_DETECTED

    def test_reuse_does_not_touch_other_lineages(self, rotator, memory_store):
        phone = rotator.issue("u1")
        laptop = rotator.issue("u1")
        rotator.validate_and_rotate(phone.value)
        rotator.validate_and_rotate(phone.value)

        successor = rotator.validate_and_rotate(laptop.value)
        assert not isinstance(successor, AuthFailure)

    def test_explicitly_revoked_token_counts_as_reuse(self, rotator):
        token = rotator.issue("u1")
        rotator.revoke(token.value)
        assert rotator.validate_and_rotate(token.value).kind is AuthErrorKind.REUSE_DETECTED


class TestRevoke:
    def test_revoke_is_idempotent(self, rotator, memory_store):
        token = rotator.issue("u1")
        assert rotator.revoke(token.value, "logout") is True
        first = memory_store.get_refresh_token(token.id).revoked_at
        assert rotator.revoke(token.value, "logout") is False
        assert memory_store.get_refresh_token(token.id).revoked_at == first

    def test_revoke_unknown_token_is_noop(self, rotator):
        assert rotator.revoke("never-issued") is False
        assert rotator.revoke("") is False

    def test_revoke_all_for_identity(self, rotator):
        a = rotator.issue("u1")
        b = rotator.issue("u1")
        other = rotator.issue("u9")

        assert rotator.revoke_all("u1") == 2
        assert rotator.validate_and_rotate(a.value).kind is AuthErrorKind.REUSE_DETECTED
        assert rotator.validate_and_rotate(b.value).kind is AuthErrorKind.REUSE_DETECTED
        assert not isinstance(rotator.validate_and_rotate(other.value), AuthFailure)


class TestLineageTrace:
    def test_chain_is_acyclic_and_finite(self, rotator):
        token = rotator.issue("u1")
        root_id = token.id
        for _ in range(5):
            token = rotator.validate_and_rotate(token.value)

        chain = rotator.trace_lineage(root_id)

        assert len(chain) == 6
        assert len({t.id for t in chain}) == 6
        assert chain[-1].id == token.id
        assert chain[-1].replaced_by_id is None
        for parent, child in zip(chain, chain[1:]):
            assert parent.replaced_by_id == child.id
            assert child.parent_id == parent.id

    def test_trace_is_bounded(self, memory_store, clock):
        rotator = RefreshTokenRotator(
            memory_store, SecretGenerator(), lineage_max_depth=3, clock=clock
        )
        token = rotator.issue("u1")
        root_id = token.id
        for _ in range(5):
            token = rotator.validate_and_rotate(token.value)
        assert len(rotator.trace_lineage(root_id)) == 3

    def test_trace_stops_at_missing_link(self, rotator):
        assert rotator.trace_lineage("missing") == []

    def test_cycle_is_reported(self, rotator, memory_store):
        a = rotator.issue("u1")
        b = rotator.validate_and_rotate(a.value)
        # Corrupt the store so the head points back at the root
        memory_store.refresh_tokens[b.id].replaced_by_id = a.id

        with pytest.raises(ServerError):
            rotator.trace_lineage(a.id)
