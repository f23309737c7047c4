"""Concurrent presentation of single-use credentials."""

import threading
from concurrent.futures import ThreadPoolExecutor

from sessionguard.service.backup_codes import BackupCodeManager
from sessionguard.service.entropy import SecretGenerator
from sessionguard.service.errors import AuthErrorKind, AuthFailure
from sessionguard.service.refresh import RefreshTokenRotator
from sessionguard.service.totp import TotpEngine
from sessionguard.service.two_factor import TwoFactorOrchestrator

WORKERS = 8


def _race(fn, *args):
    barrier = threading.Barrier(WORKERS)

    def attempt(_):
        barrier.wait()
        return fn(*args)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(attempt, range(WORKERS)))


class TestConcurrentRotation:
    def test_exactly_one_rotation_wins(self, memory_store, clock):
        rotator = RefreshTokenRotator(memory_store, SecretGenerator(), clock=clock)
        token = rotator.issue("u1")

        results = _race(rotator.validate_and_rotate, token.value)

        winners = [r for r in results if not isinstance(r, AuthFailure)]
        losers = [r for r in results if isinstance(r, AuthFailure)]
        assert len(winners) == 1
        assert all(r.kind is AuthErrorKind.REUSE_DETECTED for r in losers)
        # Only one successor was ever written for the presented token
        lineage = memory_store.list_refresh_lineage(token.lineage_id)
        assert len(lineage) == 2
        assert memory_store.get_refresh_token(token.id).replaced_by_id == winners[0].id

    def test_race_revokes_lineage(self, memory_store, clock):
        rotator = RefreshTokenRotator(memory_store, SecretGenerator(), clock=clock)
        token = rotator.issue("u1")

        _race(rotator.validate_and_rotate, token.value)

        for member in memory_store.list_refresh_lineage(token.lineage_id):
            assert member.revoked_at is not None


class TestConcurrentBackupCodes:
    async def test_code_consumed_exactly_once(self, memory_store, clock):
        entropy = SecretGenerator()
        manager = BackupCodeManager(memory_store, entropy, clock=clock)
        orchestrator = TwoFactorOrchestrator(
            memory_store, TotpEngine(entropy), manager, clock=clock
        )
        setup = await orchestrator.begin_setup("u2")
        memory_store.set_two_factor_verified("u2", setup.secret, clock())

        results = _race(manager.consume, "u2", setup.backup_codes[3])

        assert results.count(True) == 1
        assert manager.remaining_count("u2") == 9
