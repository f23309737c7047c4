"""Tests for the two-factor orchestrator state machine."""

import base64
from datetime import timedelta

import pytest

from sessionguard.service.backup_codes import BackupCodeManager
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import ConflictError, NotFoundError, ValidationError
from sessionguard.service.totp import TotpEngine
from sessionguard.service.two_factor import TwoFactorOrchestrator, TwoFactorState
from sessionguard.storage.models import TwoFactorAuth


@pytest.fixture
def orchestrator(memory_store, clock):
    entropy = SecretGenerator()
    return TwoFactorOrchestrator(
        memory_store,
        TotpEngine(entropy, issuer="SessionGuard"),
        BackupCodeManager(memory_store, entropy, count=10, clock=clock),
        failure_window_seconds=900,
        clock=clock,
    )


def code_for(orchestrator, secret, clock, *, offset_seconds=0):
    return orchestrator.totp.current_code(secret, clock() + timedelta(seconds=offset_seconds))


def wrong_code(orchestrator, secret, clock):
    valid = {code_for(orchestrator, secret, clock, offset_seconds=s) for s in (-30, 0, 30)}
    candidate = 0
    while str(candidate).zfill(6) in valid:
        candidate += 1
    return str(candidate).zfill(6)


async def enable(orchestrator, clock, identity="u2"):
    setup = await orchestrator.begin_setup(identity)
    assert await orchestrator.complete_setup(identity, code_for(orchestrator, setup.secret, clock))
    return setup


class TestSetup:
    async def test_begin_setup_stores_pending_record(self, orchestrator, memory_store):
        setup = await orchestrator.begin_setup("u2", "u2@example.com")

        assert len(setup.backup_codes) == 10
        assert setup.qr_payload.startswith("otpauth://totp/SessionGuard:u2@example.com?")
        assert base64.b64decode(setup.qr_image).startswith(b"\x89PNG")
        assert setup.manual_entry_key.replace(" ", "") == setup.secret
        record = memory_store.get_two_factor("u2")
        assert record.is_verified is False
        assert record.enabled_at is None
        assert orchestrator.state("u2") is TwoFactorState.PENDING_VERIFICATION

    async def test_wrong_code_keeps_setup_pending(self, orchestrator, memory_store, clock):
        """An incorrect completion leaves the account not enabled."""
        setup = await orchestrator.begin_setup("u2")

        assert await orchestrator.complete_setup("u2", wrong_code(orchestrator, setup.secret, clock)) is False
        assert orchestrator.state("u2") is TwoFactorState.PENDING_VERIFICATION
        assert memory_store.get_two_factor("u2").enabled_at is None

        assert await orchestrator.complete_setup("u2", code_for(orchestrator, setup.secret, clock))
        record = memory_store.get_two_factor("u2")
        assert record.is_verified is True
        assert record.enabled_at == clock()

    async def test_enabled_at_set_exactly_once(self, orchestrator, memory_store, clock):
        setup = await enable(orchestrator, clock)
        first = memory_store.get_two_factor("u2").enabled_at

        clock.advance(minutes=5)
        assert await orchestrator.complete_setup("u2", code_for(orchestrator, setup.secret, clock)) is False
        assert memory_store.get_two_factor("u2").enabled_at == first

    async def test_restarting_pending_setup_replaces_secret(self, orchestrator, clock):
        first = await orchestrator.begin_setup("u2")
        second = await orchestrator.begin_setup("u2")

        assert first.secret != second.secret
        assert await orchestrator.complete_setup("u2", code_for(orchestrator, second.secret, clock))

    async def test_restart_during_completion_does_not_enable_new_secret(
        self, orchestrator, memory_store, clock
    ):
        first = await orchestrator.begin_setup("u2")
        code = code_for(orchestrator, first.secret, clock)
        replacement = orchestrator.totp.generate_secret()
        verify = orchestrator.totp.verify

        def verify_then_restart(secret, presented, when=None):
            ok = verify(secret, presented, when)
            memory_store.save_two_factor(
                TwoFactorAuth(user_id="u2", secret=replacement, setup_at=clock())
            )
            return ok

        orchestrator.totp.verify = verify_then_restart

        assert await orchestrator.complete_setup("u2", code) is False
        record = memory_store.get_two_factor("u2")
        assert record.secret == replacement
        assert record.is_verified is False
        assert orchestrator.state("u2") is TwoFactorState.PENDING_VERIFICATION

    async def test_begin_setup_when_enabled_conflicts(self, orchestrator, clock):
        await enable(orchestrator, clock)
        with pytest.raises(ConflictError):
            await orchestrator.begin_setup("u2")

    async def test_complete_without_setup(self, orchestrator):
        assert await orchestrator.complete_setup("nobody", "123456") is False


class TestAuthenticate:
    async def test_totp_code_accepted(self, orchestrator, memory_store, clock):
        setup = await enable(orchestrator, clock)
        clock.advance(minutes=1)

        result = await orchestrator.verify("u2", code=code_for(orchestrator, setup.secret, clock))

        assert result.success and result.method == "totp"
        assert memory_store.get_two_factor("u2").last_used_at == clock()

    async def test_backup_code_reports_remaining(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)

        result = await orchestrator.verify("u2", backup_code=setup.backup_codes[0])

        assert result.success
        assert result.method == "backup_code"
        assert result.remaining_backup_codes == 9

    async def test_exactly_one_factor_required(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)
        with pytest.raises(ValidationError):
            await orchestrator.authenticate("u2")
        with pytest.raises(ValidationError):
            await orchestrator.authenticate(
                "u2",
                code=code_for(orchestrator, setup.secret, clock),
                backup_code=setup.backup_codes[0],
            )

    async def test_pending_setup_cannot_authenticate(self, orchestrator, clock):
        setup = await orchestrator.begin_setup("u2")
        assert await orchestrator.authenticate("u2", code=code_for(orchestrator, setup.secret, clock)) is False
        assert await orchestrator.authenticate("u2", backup_code=setup.backup_codes[0]) is False

    async def test_failures_are_recorded_and_revoke_nothing(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)
        bad = wrong_code(orchestrator, setup.secret, clock)

        for _ in range(3):
            assert await orchestrator.authenticate("u2", code=bad) is False
            clock.advance(seconds=1)
        assert await orchestrator.authenticate("u2", backup_code="AAAAA-AAAAA") is False

        failures = await orchestrator.recent_failures("u2")
        assert len(failures) == 4
        assert failures == sorted(failures)
        # The correct factor still works after repeated failures
        assert await orchestrator.authenticate("u2", backup_code=setup.backup_codes[1])

    async def test_failures_age_out_of_window(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)
        await orchestrator.authenticate("u2", code=wrong_code(orchestrator, setup.secret, clock))
        clock.advance(seconds=901)
        assert await orchestrator.recent_failures("u2") == []

    async def test_stale_failure_histories_are_swept(self, orchestrator, clock):
        first = await enable(orchestrator, clock, identity="u2")
        second = await enable(orchestrator, clock, identity="u3")
        await orchestrator.authenticate("u2", code=wrong_code(orchestrator, first.secret, clock))
        clock.advance(seconds=901)

        await orchestrator.authenticate("u3", code=wrong_code(orchestrator, second.secret, clock))
        assert list(orchestrator._failures) == ["u3"]


class TestDisable:
    async def test_disable_requires_totp(self, orchestrator, memory_store, clock):
        setup = await enable(orchestrator, clock)

        assert await orchestrator.disable("u2", setup.backup_codes[0]) is False
        assert orchestrator.state("u2") is TwoFactorState.ENABLED

        assert await orchestrator.disable("u2", code_for(orchestrator, setup.secret, clock))
        assert orchestrator.state("u2") is TwoFactorState.NOT_ENROLLED
        assert memory_store.get_two_factor("u2") is None

    async def test_disable_without_enrollment(self, orchestrator):
        assert await orchestrator.disable("nobody", "123456") is False

    async def test_can_enroll_again_after_disable(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)
        await orchestrator.disable("u2", code_for(orchestrator, setup.secret, clock))
        again = await orchestrator.begin_setup("u2")
        assert again.secret != setup.secret


class TestRegenerate:
    async def test_regenerate_invalidates_old_codes(self, orchestrator, clock):
        setup = await enable(orchestrator, clock)
        new_codes = await orchestrator.regenerate_backup_codes("u2")

        assert len(new_codes) == 10
        assert await orchestrator.authenticate("u2", backup_code=setup.backup_codes[0]) is False
        assert await orchestrator.authenticate("u2", backup_code=new_codes[0]) is True

    async def test_regenerate_requires_enrollment(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.regenerate_backup_codes("nobody")


class TestRedisFailureTracking:
    async def test_failures_go_to_cache_when_configured(self, memory_store, clock):
        class RecordingCache:
            def __init__(self):
                self.recorded = []

            async def record_two_factor_failure(self, user_id, at, window_seconds):
                self.recorded.append((user_id, at, window_seconds))

            async def recent_two_factor_failures(self, user_id, since):
                return [at for uid, at, _ in self.recorded if uid == user_id and at > since]

        cache = RecordingCache()
        entropy = SecretGenerator()
        orchestrator = TwoFactorOrchestrator(
            memory_store,
            TotpEngine(entropy),
            BackupCodeManager(memory_store, entropy, clock=clock),
            cache=cache,
            failure_window_seconds=60,
            clock=clock,
        )
        setup = await enable(orchestrator, clock)
        await orchestrator.authenticate("u2", code=wrong_code(orchestrator, setup.secret, clock))

        assert cache.recorded == [("u2", clock(), 60)]
        assert await orchestrator.recent_failures("u2") == [clock()]
