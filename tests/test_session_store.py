"""
Tests for the SQLite session store: claim-before-provision, guarded transitions,
queries and the monitoring audit tables.
"""

import asyncio
from datetime import timedelta

import pytest

from preview_orchestrator.container_tiers import ContainerTier
from preview_orchestrator.session_store import (
    DuplicateSessionError,
    SessionClaim,
    SessionStatus,
    SessionStore,
)


@pytest.mark.fast
class TestSessionClaim:
    def test_claim_key_from_project(self):
        claim = SessionClaim(user_id="u1", project_id="p1")

        assert claim.claim_key == "project:p1:u1"

    def test_idempotency_key_takes_precedence(self):
        claim = SessionClaim(user_id="u1", project_id="p1", idempotency_key="abc")

        assert claim.claim_key == "idem:u1:abc"


@pytest.mark.medium
class TestClaimAndCreate:
    @pytest.mark.asyncio
    async def test_claim_writes_creating_row_with_tier_budget(self, store, clock):
        session = await store.claim_and_create(
            SessionClaim(user_id="u1", project_id="p1", tier=ContainerTier.BASIC)
        )

        assert session.status == SessionStatus.CREATING
        assert session.tier == ContainerTier.BASIC
        assert session.limits.cpu_cores == 2
        assert session.limits.memory_mb == 512
        assert session.expires_at == clock() + timedelta(hours=4)
        assert session.machine_id is None

        stored = await store.get(session.id)
        assert stored == session

    @pytest.mark.asyncio
    async def test_second_live_claim_is_rejected(self, store):
        claim = SessionClaim(user_id="u1", project_id="p1", idempotency_key="k1")
        first = await store.claim_and_create(claim)

        with pytest.raises(DuplicateSessionError) as exc_info:
            await store.claim_and_create(claim)

        assert exc_info.value.existing_session_id == first.id

    @pytest.mark.asyncio
    async def test_concurrent_claims_produce_one_row(self, store):
        claim = SessionClaim(user_id="u1", project_id="p1", idempotency_key="k1")

        results = await asyncio.gather(
            *(store.claim_and_create(claim) for _ in range(5)), return_exceptions=True
        )

        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, DuplicateSessionError)]
        assert len(created) == 1
        assert len(rejected) == 4

    @pytest.mark.asyncio
    async def test_claim_is_free_again_after_session_ends(self, store):
        claim = SessionClaim(user_id="u1", project_id="p1")
        first = await store.claim_and_create(claim)
        await store.mark_ended(first.id)

        second = await store.claim_and_create(claim)

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_claims_shared_across_store_instances(self, store, tmp_path, clock):
        claim = SessionClaim(user_id="u1", project_id="p1")
        await store.claim_and_create(claim)

        other = SessionStore(tmp_path / "sessions.db", clock=clock)
        try:
            with pytest.raises(DuplicateSessionError):
                await other.claim_and_create(claim)
        finally:
            other.close()


@pytest.mark.medium
class TestTransitions:
    def setup_method(self):
        self.claim = SessionClaim(user_id="u1", project_id="p1")

    @pytest.mark.asyncio
    async def test_mark_active_records_machine(self, store):
        session = await store.claim_and_create(self.claim)

        assert await store.mark_active(session.id, "m-1", "https://preview.fly.dev") is True

        stored = await store.get(session.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.machine_id == "m-1"
        assert stored.machine_url == "https://preview.fly.dev"

    @pytest.mark.asyncio
    async def test_mark_active_only_from_creating(self, store):
        session = await store.claim_and_create(self.claim)
        await store.mark_ended(session.id)

        assert await store.mark_active(session.id, "m-1", "https://x") is False
        assert (await store.get(session.id)).status == SessionStatus.ENDED

    @pytest.mark.asyncio
    async def test_mark_error_keeps_machine_reference(self, store):
        session = await store.claim_and_create(self.claim)

        assert await store.mark_error(session.id, "timed out", machine_id="m-9") is True

        stored = await store.get(session.id)
        assert stored.status == SessionStatus.ERROR
        assert stored.error_message == "timed out"
        assert stored.machine_id == "m-9"

    @pytest.mark.asyncio
    async def test_clear_machine_only_on_error_rows(self, store):
        failed = await store.claim_and_create(self.claim)
        await store.mark_error(failed.id, "timed out", machine_id="m-9")
        live = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p2"))
        await store.mark_active(live.id, "m-1", "https://x")

        assert await store.clear_machine(failed.id) is True
        assert await store.clear_machine(live.id) is False

        stored = await store.get(failed.id)
        assert stored.status == SessionStatus.ERROR
        assert stored.machine_id is None
        assert (await store.get(live.id)).machine_id == "m-1"

    @pytest.mark.asyncio
    async def test_mark_ended_sets_end_time_once(self, store, clock):
        session = await store.claim_and_create(self.claim)
        await store.mark_active(session.id, "m-1", "https://x")
        clock.advance(minutes=5)

        assert await store.mark_ended(session.id) is True
        assert await store.mark_ended(session.id) is False

        stored = await store.get(session.id)
        assert stored.ended_at == clock()

    @pytest.mark.asyncio
    async def test_error_session_cannot_be_ended(self, store):
        session = await store.claim_and_create(self.claim)
        await store.mark_error(session.id, "failed")

        assert await store.mark_ended(session.id) is False

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        assert await store.get("missing") is None
        assert await store.mark_ended("missing") is False


@pytest.mark.medium
class TestQueries:
    @pytest.mark.asyncio
    async def test_list_expired_includes_boundary(self, store, clock):
        session = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p1"))

        assert await store.list_expired(clock() + timedelta(minutes=59)) == []
        expired = await store.list_expired(clock() + timedelta(hours=1))
        assert [s.id for s in expired] == [session.id]

    @pytest.mark.asyncio
    async def test_list_active_or_creating(self, store):
        creating = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p1"))
        active = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p2"))
        ended = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p3"))
        await store.mark_active(active.id, "m-1", "https://x")
        await store.mark_ended(ended.id)

        live = await store.list_active_or_creating()

        assert {s.id for s in live} == {creating.id, active.id}

    @pytest.mark.asyncio
    async def test_list_by_user_newest_first(self, store, clock):
        first = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p1"))
        clock.advance(seconds=1)
        second = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p2"))
        await store.claim_and_create(SessionClaim(user_id="u2", project_id="p1"))

        sessions = await store.list_by_user("u1")

        assert [s.id for s in sessions] == [second.id, first.id]
        assert len(await store.list_by_user("u1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_session_statistics(self, store, clock):
        free = await store.claim_and_create(SessionClaim(user_id="u1", project_id="p1"))
        await store.claim_and_create(
            SessionClaim(user_id="u1", project_id="p2", tier=ContainerTier.PRO)
        )
        ended = await store.claim_and_create(SessionClaim(user_id="u2", project_id="p3"))
        await store.mark_active(free.id, "m-1", "https://x")
        clock.advance(minutes=30)
        await store.mark_ended(ended.id)
        clock.advance(minutes=40)

        stats = await store.session_statistics(clock())

        assert stats["total"] == 3
        assert stats["by_status"] == {"creating": 1, "active": 1, "ended": 1, "error": 0}
        assert stats["live_by_tier"] == {"free": 1, "basic": 0, "pro": 1}
        assert stats["expired_live"] == 1
        assert stats["average_duration_minutes"] == 30.0


@pytest.mark.medium
class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_persist_event(self, store):
        await store.persist_event({
            "type": "session_creation_failed",
            "severity": "error",
            "data": {"session_id": "s-1"},
            "timestamp": "2026-01-01T12:00:00+00:00",
        })

        events = await store.list_persisted_events()

        assert len(events) == 1
        assert events[0]["event_type"] == "session_creation_failed"
        assert events[0]["data"] == {"session_id": "s-1"}

    @pytest.mark.asyncio
    async def test_persist_alert_upserts_resolution(self, store):
        alert = {
            "id": "high_memory-1",
            "type": "high_memory",
            "severity": "critical",
            "message": "High memory",
            "data": {},
            "resolved": False,
            "timestamp": "2026-01-01T12:00:00+00:00",
        }
        await store.persist_alert(alert)
        await store.persist_alert({**alert, "resolved": True, "resolution": "scaled up",
                                   "resolved_at": "2026-01-01T12:05:00+00:00"})

        alerts = await store.list_persisted_alerts()

        assert len(alerts) == 1
        assert alerts[0]["resolved"] == 1
        assert alerts[0]["resolution"] == "scaled up"
