"""
ContainerManager: orchestration core for preview sessions.

Ties the session store, the Fly machines adapter, the realtime registry and the
monitoring service together:

- create_session claims the session row before any machine exists, provisions,
  then transitions the row to active or error
- destroy_session verifies the machine is gone before ending the session
- monitor_all_sessions classifies every live machine and auto-destroys sessions
  that outlived their duration budget
- cleanup_expired_sessions and cleanup_orphaned_machines reclaim what the other
  paths left behind

Every batch operation isolates per-session failures: one bad session degrades to
a logged entry instead of aborting the pass.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from .fly_machines import (
    ACTION_AUTO_DESTROY,
    ACTION_REMOVE_FROM_MONITORING,
    FlyMachineError,
    FlyMachinesClient,
)
from .fly_types import Machine, MachineMonitorResult, MachineState, MonitorStatus
from .monitoring import MonitoringService, Severity
from .realtime import NullRealtimeRegistry, RealtimeRegistry
from .session_store import (
    PreviewSession,
    SessionClaim,
    SessionStatus,
    SessionStore,
    SessionStoreError,
)

logger = structlog.get_logger(__name__)

ORPHAN_THRESHOLD_MINUTES = 60


class ContainerManagerError(Exception):
    """Base class for orchestration failures."""


class SessionNotFoundError(ContainerManagerError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionProvisioningError(ContainerManagerError):
    """Provisioning failed; the session row was moved to error."""

    def __init__(self, session_id: str, message: str, machine_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id
        self.machine_id = machine_id


class MachineDestroyError(ContainerManagerError):
    """The machine could not be confirmed destroyed; the session stays live."""

    def __init__(self, session_id: str, machine_id: str):
        super().__init__(f"Failed to destroy machine {machine_id} for session {session_id}")
        self.session_id = session_id
        self.machine_id = machine_id


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    machine_id: str | None
    url: str | None
    status: SessionStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "machine_id": self.machine_id,
            "container_url": self.url,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class SessionMonitorResult:
    session_id: str
    machine_id: str | None
    tier: str
    status: MonitorStatus
    alerts: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()
    auto_destroyed: bool = False
    ended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "machine_id": self.machine_id,
            "tier": self.tier,
            "status": self.status.value,
            "alerts": list(self.alerts),
            "actions": list(self.actions),
            "auto_destroyed": self.auto_destroyed,
            "ended": self.ended,
        }


@dataclass
class CleanupStats:
    expired_found: int = 0
    sessions_ended: int = 0
    destroy_failures: int = 0
    orphans_cleaned: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "expired_found": self.expired_found,
            "sessions_ended": self.sessions_ended,
            "destroy_failures": self.destroy_failures,
            "orphans_cleaned": self.orphans_cleaned,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class EnforcementResult:
    success: bool
    status: MonitorStatus | None = None
    actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value if self.status else None,
            "actions": list(self.actions),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContainerManager:
    """
    Session lifecycle orchestration.

    Args:
        fly: Machines adapter for the preview app
        store: Session store gateway
        monitoring: Sink for metrics, events and alerts
        realtime: Best-effort realtime channel registry
        orphan_threshold_minutes: Age after which an unreferenced machine is reclaimed
        reconcile_after_seconds: Age after which a creating session with no machine
            is reconciled against the provider
    """

    def __init__(
        self,
        fly: FlyMachinesClient,
        store: SessionStore,
        monitoring: MonitoringService,
        realtime: RealtimeRegistry | None = None,
        *,
        orphan_threshold_minutes: float = ORPHAN_THRESHOLD_MINUTES,
        reconcile_after_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.fly = fly
        self.store = store
        self.monitoring = monitoring
        self.realtime = realtime or NullRealtimeRegistry()
        self.orphan_threshold_minutes = orphan_threshold_minutes
        self.reconcile_after_seconds = reconcile_after_seconds
        self._clock = clock

    # Lifecycle

    async def create_session(self, claim: SessionClaim) -> SessionHandle:
        """
        Claim, provision and activate a session.

        Raises:
            DuplicateSessionError: a live session already holds the claim
            SessionProvisioningError: the machine could not be brought up
        """
        session = await self.store.claim_and_create(claim)
        log = logger.bind(session_id=session.id, project_id=claim.project_id,
                          tier=session.tier.value)
        started = time.monotonic()

        try:
            machine, url = await self.fly.create_machine(
                claim.project_id,
                session.tier.value,
                claim.custom_config,
                session_id=session.id,
            )
        except Exception as e:
            machine_id = getattr(e, "machine_id", None)
            log.error("Provisioning failed", machine_id=machine_id, error=str(e))
            try:
                await self.store.mark_error(session.id, str(e), machine_id=machine_id)
            except SessionStoreError as store_error:
                log.error("Failed to record provisioning failure", error=str(store_error))
            self.monitoring.record_event(
                "session_creation_failed",
                {"session_id": session.id, "project_id": claim.project_id,
                 "machine_id": machine_id, "error": type(e).__name__},
                Severity.ERROR,
            )
            raise SessionProvisioningError(
                session.id, "Failed to provision preview container", machine_id
            ) from e

        try:
            landed = await self.store.mark_active(session.id, machine.id, url)
        except SessionStoreError as e:
            # The machine is up and tagged with the session id; the next
            # monitoring pass reconciles the row.
            log.error("Machine ready but session row not updated", machine_id=machine.id,
                      error=str(e))
            self.monitoring.record_event(
                "session_store_write_failed",
                {"session_id": session.id, "machine_id": machine.id},
                Severity.ERROR,
            )
            return SessionHandle(session.id, machine.id, url, SessionStatus.CREATING)

        if not landed:
            # Destroyed while provisioning; the new machine has no owner
            log.warning("Session ended during provisioning, releasing machine",
                        machine_id=machine.id)
            await self.fly.destroy_machine(machine.id)
            current = await self.store.get(session.id)
            status = current.status if current else SessionStatus.ENDED
            return SessionHandle(session.id, None, None, status)

        await self._register_realtime(claim.project_id, machine.id, url)

        elapsed = time.monotonic() - started
        self.monitoring.record_metric("session_provisioning_seconds", elapsed,
                                      {"tier": session.tier.value})
        self.monitoring.record_event("session_created", {
            "session_id": session.id,
            "machine_id": machine.id,
            "tier": session.tier.value,
        })
        log.info("Session active", machine_id=machine.id, seconds=round(elapsed, 2))
        return SessionHandle(session.id, machine.id, url, SessionStatus.ACTIVE)

    async def destroy_session(self, session_id: str) -> bool:
        """
        Destroy a session's machine and end the session.

        Returns False when the session had already ended, or is an error session
        whose machine is already gone, without any remote call.

        Raises:
            SessionNotFoundError: no such session
            MachineDestroyError: the machine could not be confirmed gone
            SessionStoreError: the machine is gone but the row could not be ended
        """
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status == SessionStatus.ENDED:
            logger.info("Session already ended", session_id=session_id)
            return False
        if session.status == SessionStatus.ERROR and not session.machine_id:
            logger.info("Error session has no machine", session_id=session_id)
            return False

        if session.machine_id:
            if session.status == SessionStatus.ACTIVE:
                await self._unregister_realtime(session)
            if not await self.fly.destroy_machine_verified(session.machine_id):
                self.monitoring.record_event(
                    "session_destroy_failed",
                    {"session_id": session_id, "machine_id": session.machine_id},
                    Severity.ERROR,
                )
                raise MachineDestroyError(session_id, session.machine_id)
            if session.status == SessionStatus.ERROR:
                await self.store.clear_machine(session_id)

        if session.status.is_live:
            await self.store.mark_ended(session_id)

        self.monitoring.record_event("session_destroyed", {
            "session_id": session_id,
            "machine_id": session.machine_id,
        })
        logger.info("Session destroyed", session_id=session_id, machine_id=session.machine_id)
        return True

    async def force_terminate_session(self, session_id: str) -> bool:
        """
        End a session with a single best-effort destroy.

        A machine that survives is left for the orphan sweep.
        """
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status == SessionStatus.ENDED:
            return False

        if session.machine_id:
            if session.status == SessionStatus.ACTIVE:
                await self._unregister_realtime(session)
            if not await self.fly.destroy_machine(session.machine_id):
                logger.warning("Force terminate left machine running",
                               session_id=session_id, machine_id=session.machine_id)
        if session.status.is_live:
            await self.store.mark_ended(session_id)

        self.monitoring.record_event("session_force_terminated", {
            "session_id": session_id,
            "machine_id": session.machine_id,
        }, Severity.WARNING)
        return True

    async def _register_realtime(self, project_id: str, machine_id: str, url: str) -> None:
        try:
            result = await self.realtime.register_container(project_id, machine_id, url)
        except Exception as e:
            logger.error("Realtime registration raised", machine_id=machine_id, error=str(e))
            return
        if not result.success:
            logger.warning("Realtime registration failed", machine_id=machine_id,
                           error=result.error)

    async def _unregister_realtime(self, session: PreviewSession) -> None:
        try:
            result = await self.realtime.unregister_container(session.project_id,
                                                              session.machine_id)
        except Exception as e:
            logger.error("Realtime unregistration raised", session_id=session.id, error=str(e))
            return
        if not result.success:
            logger.warning("Realtime unregistration failed", session_id=session.id,
                           machine_id=session.machine_id, error=result.error)

    # Queries

    async def get_session_status(self, session_id: str) -> PreviewSession:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_user_sessions(self, user_id: str, limit: int = 50) -> list[PreviewSession]:
        return await self.store.list_by_user(user_id, limit)

    async def get_session_metrics(self, session_id: str) -> dict[str, Any]:
        session = await self.get_session_status(session_id)
        result: dict[str, Any] = {"session": session.to_dict(), "machine": None, "health": None}
        if session.machine_id and session.status.is_live:
            result["machine"] = await self.fly.get_machine_metrics(session.machine_id)
            health = await self.fly.monitor_machine(
                session.machine_id, session.limits.max_duration_hours
            )
            result["health"] = health.to_dict()
        return result

    async def get_machine_status(self, machine_id: str) -> tuple[Machine, MachineMonitorResult] | None:
        machine = await self.fly.get_machine(machine_id)
        if machine is None:
            return None
        return machine, await self.fly.monitor_machine(machine_id)

    async def list_machines(self) -> list[Machine]:
        return await self.fly.list_machines()

    async def get_session_statistics(self) -> dict[str, Any]:
        return await self.store.session_statistics(self._clock())

    # Monitoring

    async def monitor_all_sessions(self) -> list[SessionMonitorResult]:
        """Classify every live session's machine, auto-destroying over-budget ones."""
        sessions = [s for s in await self.store.list_active_or_creating() if s.machine_id]
        results = await asyncio.gather(*(self._monitor_session(s) for s in sessions))
        return list(results)

    async def _monitor_session(self, session: PreviewSession) -> SessionMonitorResult:
        try:
            outcome = await self.fly.monitor_machine(
                session.machine_id, session.limits.max_duration_hours
            )
        except Exception as e:
            logger.error("Monitoring failed", session_id=session.id, error=str(e))
            return SessionMonitorResult(
                session_id=session.id,
                machine_id=session.machine_id,
                tier=session.tier.value,
                status=MonitorStatus.CRITICAL,
                alerts=(f"Monitoring failed: {type(e).__name__}",),
            )

        auto_destroyed = False
        if ACTION_AUTO_DESTROY in outcome.actions:
            try:
                auto_destroyed = await self.destroy_session(session.id)
            except (ContainerManagerError, SessionStoreError) as e:
                logger.error("Auto-destroy failed", session_id=session.id, error=str(e))
            else:
                logger.info("Session auto-destroyed", session_id=session.id,
                            machine_id=session.machine_id)

        ended = False
        if ACTION_REMOVE_FROM_MONITORING in outcome.actions:
            # Remote state wins: the machine is gone, so the session is over
            try:
                ended = await self.store.mark_ended(session.id)
            except SessionStoreError as e:
                logger.error("Failed to end session with missing machine",
                             session_id=session.id, error=str(e))
            if ended:
                await self._unregister_realtime(session)
                logger.warning("Machine gone, session ended", session_id=session.id,
                               machine_id=session.machine_id)
                self.monitoring.record_event(
                    "session_machine_lost",
                    {"session_id": session.id, "machine_id": session.machine_id},
                    Severity.WARNING,
                )

        return SessionMonitorResult(
            session_id=session.id,
            machine_id=session.machine_id,
            tier=session.tier.value,
            status=outcome.status,
            alerts=outcome.alerts,
            actions=outcome.actions,
            auto_destroyed=auto_destroyed,
            ended=ended,
        )

    async def enforce_session_limits(self, session_id: str) -> EnforcementResult:
        session = await self.get_session_status(session_id)
        if not session.machine_id or not session.status.is_live:
            return EnforcementResult(success=False, actions=("No running machine for session",))

        actions = []
        if not await self.fly.enforce_resource_limits(session.machine_id):
            actions.append("Resource drift reported for manual reconciliation")

        outcome = await self.fly.monitor_machine(
            session.machine_id, session.limits.max_duration_hours
        )
        if outcome.status == MonitorStatus.CRITICAL and ACTION_AUTO_DESTROY in outcome.actions:
            await self.destroy_session(session_id)
            actions.append("Session destroyed for exceeding limits")

        return EnforcementResult(success=True, status=outcome.status, actions=tuple(actions))

    async def reconcile_pending_sessions(self) -> int:
        """
        Settle sessions stuck in creating with no machine recorded.

        A tagged, started machine found for the session activates it; otherwise
        the session is moved to error and its machine, if any, becomes an orphan.
        """
        now = self._clock()
        pending = [
            s for s in await self.store.list_active_or_creating()
            if s.status == SessionStatus.CREATING and not s.machine_id
            and (now - s.created_at).total_seconds() > self.reconcile_after_seconds
        ]
        if not pending:
            return 0

        try:
            machines = await self.fly.list_machines()
        except FlyMachineError as e:
            logger.error("Cannot reconcile pending sessions", error=str(e))
            return 0

        by_session = {m.session_id: m for m in machines if m.is_preview_machine and m.session_id}
        reconciled = 0
        for session in pending:
            machine = by_session.get(session.id)
            try:
                if machine is not None and machine.state == MachineState.STARTED:
                    if await self.store.mark_active(session.id, machine.id, self.fly.machine_url):
                        reconciled += 1
                        logger.info("Reconciled session to active", session_id=session.id,
                                    machine_id=machine.id)
                elif await self.store.mark_error(
                    session.id, "Provisioning did not complete",
                    machine_id=machine.id if machine else None,
                ):
                    reconciled += 1
                    logger.warning("Reconciled stuck session to error", session_id=session.id)
            except SessionStoreError as e:
                logger.error("Reconciliation write failed", session_id=session.id, error=str(e))
        return reconciled

    # Cleanup

    async def cleanup_expired_sessions(self) -> CleanupStats:
        """End every live session past its expiry, then sweep orphaned machines."""
        stats = CleanupStats()
        expired = await self.store.list_expired(self._clock())
        stats.expired_found = len(expired)

        for session in expired:
            try:
                if session.machine_id:
                    if session.status == SessionStatus.ACTIVE:
                        await self._unregister_realtime(session)
                    if not await self.fly.destroy_machine(session.machine_id):
                        stats.destroy_failures += 1
                if await self.store.mark_ended(session.id):
                    stats.sessions_ended += 1
                    self.monitoring.record_event("session_expired", {
                        "session_id": session.id,
                        "machine_id": session.machine_id,
                        "tier": session.tier.value,
                    })
            except Exception as e:
                logger.error("Failed to clean up expired session", session_id=session.id,
                             error=str(e))
                stats.errors.append(f"{session.id}: {type(e).__name__}")

        stats.orphans_cleaned = await self.cleanup_orphaned_machines(self.orphan_threshold_minutes)
        if stats.expired_found or stats.orphans_cleaned:
            logger.info("Cleanup sweep finished", **stats.to_dict())
        return stats

    async def cleanup_orphaned_machines(self, max_age_minutes: float | None = None) -> int:
        live = await self.store.list_active_or_creating()
        return await self.fly.cleanup_orphaned_machines(
            self.orphan_threshold_minutes if max_age_minutes is None else max_age_minutes,
            referenced_machine_ids={s.machine_id for s in live if s.machine_id},
            referenced_session_ids={s.id for s in live},
        )

    async def run_monitoring_job(self) -> dict[str, Any]:
        """Reconcile, monitor, record session health metrics, then clean up."""
        reconciled = await self.reconcile_pending_sessions()
        results = await self.monitor_all_sessions()
        counts = Counter(result.status for result in results)

        healthy = counts[MonitorStatus.OK]
        warning = counts[MonitorStatus.WARNING]
        critical = counts[MonitorStatus.CRITICAL]
        self.monitoring.record_metric("healthy_sessions", healthy)
        self.monitoring.record_metric("warning_sessions", warning)
        self.monitoring.record_metric("critical_sessions", critical)
        logger.info("Monitoring pass finished", sessions=len(results), healthy=healthy,
                    warning=warning, critical=critical)

        cleanup = await self.cleanup_expired_sessions()
        return {
            "reconciled": reconciled,
            "monitored": len(results),
            "healthy": healthy,
            "warning": warning,
            "critical": critical,
            "auto_destroyed": [r.session_id for r in results if r.auto_destroyed],
            "results": [r.to_dict() for r in results],
            "cleanup": cleanup.to_dict(),
        }
