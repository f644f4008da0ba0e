import asyncio
from datetime import timedelta

from authcore.service.cleanup import CleanupService
from authcore.service.one_time_tokens import OneTimeTokenService
from authcore.service.sessions import SessionManager
from authcore.storage.common import generate_uuid
from authcore.storage.models import ApiKey, TokenPurpose, utcnow


async def _seed(store, tokens):
    user = store.create_user("cleanup@example.com")
    sessions = SessionManager(store, tokens)
    live = await sessions.create(user.id)
    stale = await sessions.create(user.id)
    store.sessions[stale.session.id].expires_at = utcnow() - timedelta(minutes=1)

    otts = OneTimeTokenService(store, reset_ttl=timedelta(minutes=15))
    await otts.generate(user.id, TokenPurpose.PASSWORD_RESET)
    for token in store.one_time_tokens.values():
        token.expires_at = utcnow() - timedelta(seconds=1)

    for expires_at in (None, utcnow() - timedelta(days=1)):
        store.create_api_key(
            ApiKey(
                id=generate_uuid(),
                user_id=user.id,
                name="k",
                short_token=generate_uuid()[:8],
                key_hash="h",
                salt="s",
                expires_at=expires_at,
            )
        )
    return user, live


class TestCleanupService:
    async def test_run_once_removes_only_expired(self, store, tokens):
        user, live = await _seed(store, tokens)

        report = await CleanupService(store).run_once()

        assert (report.sessions, report.one_time_tokens, report.api_keys) == (1, 1, 1)
        assert report.total == 3
        assert [s.id for s in store.list_sessions(user.id)] == [live.session.id]
        assert [k.expires_at for k in store.list_api_keys(user.id)] == [None]

    async def test_second_run_is_a_noop(self, store, tokens):
        await _seed(store, tokens)
        service = CleanupService(store)
        await service.run_once()
        assert (await service.run_once()).total == 0

    def test_interval_has_a_floor(self, store):
        assert CleanupService(store, interval_seconds=1).interval_seconds == 60

    async def test_start_runs_immediately_and_stop_cancels(self, store, tokens):
        await _seed(store, tokens)
        service = CleanupService(store, interval_seconds=3600)

        await service.start()
        for _ in range(50):
            if not store.one_time_tokens:
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert store.one_time_tokens == {}
        assert service._task is None

    async def test_loop_survives_failures(self, store):
        calls = []

        def _broken(_now):
            calls.append(1)
            raise RuntimeError("db down")

        store.delete_expired_sessions = _broken
        service = CleanupService(store)
        await service.start()
        for _ in range(50):
            if calls:
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert calls == [1]
