"""
Session store gateway backed by SQLite.

The only component that reads or writes persisted preview session rows. It
provides:
- claim-before-provision: a session row is written in ``creating`` status before
  any machine exists, and a partial unique index on the claim key rejects a second
  live claim for the same logical session, across processes sharing the file
- conditional state transitions guarded by the expected current status
- the durable audit tables for significant monitoring events and alerts

SQLite calls are blocking, so every public method runs its work in a worker
thread and the event loop is never held up by disk I/O.
"""

import asyncio
import json
import sqlite3
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import structlog

from .container_tiers import ContainerTier, get_container_tier

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SessionStoreError(Exception):
    """Raised when the session store cannot complete an operation."""


class DuplicateSessionError(SessionStoreError):
    """Raised when a live session already holds the requested claim key."""

    def __init__(self, claim_key: str, existing_session_id: str | None):
        super().__init__(f"A live session already exists for claim {claim_key}")
        self.claim_key = claim_key
        self.existing_session_id = existing_session_id


class SessionStatus(Enum):
    CREATING = "creating"
    ACTIVE = "active"
    ENDED = "ended"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value

    @property
    def is_live(self) -> bool:
        return self in (SessionStatus.CREATING, SessionStatus.ACTIVE)


LIVE_STATUSES = (SessionStatus.CREATING.value, SessionStatus.ACTIVE.value)


def to_db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class ResourceLimits:
    """Tier budget captured when the session was claimed."""

    cpu_cores: int
    memory_mb: int
    max_duration_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_cores": self.cpu_cores,
            "memory_mb": self.memory_mb,
            "max_duration_hours": self.max_duration_hours,
        }


@dataclass(frozen=True)
class SessionClaim:
    """A request to create a session, before any provisioning happens."""

    user_id: str
    project_id: str
    tier: ContainerTier = ContainerTier.FREE
    idempotency_key: str | None = None
    custom_config: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def claim_key(self) -> str:
        if self.idempotency_key:
            return f"idem:{self.user_id}:{self.idempotency_key}"
        return f"project:{self.project_id}:{self.user_id}"


@dataclass
class PreviewSession:
    id: str
    user_id: str
    project_id: str
    claim_key: str
    status: SessionStatus
    tier: ContainerTier
    limits: ResourceLimits
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    machine_id: str | None = None
    machine_url: str | None = None
    error_message: str | None = None
    ended_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "tier": self.tier.value,
            "container_id": self.machine_id,
            "container_url": self.machine_url,
            "resource_limits": self.limits.to_dict(),
            "expires_at": self.expires_at.isoformat(),
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """
    SQLite gateway for preview sessions and the monitoring audit trail.

    Args:
        db_path: Database file path, or ":memory:" for a private in-process store
        clock: Returns the current aware UTC time
    """

    def __init__(self, db_path: str | Path = "preview_sessions.db",
                 clock: Callable[[], datetime] = utc_now):
        self.db_path = str(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_database()

    def _init_database(self) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA busy_timeout=5000")
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS preview_sessions (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        project_id TEXT NOT NULL,
                        claim_key TEXT NOT NULL,
                        status TEXT NOT NULL,
                        tier TEXT NOT NULL,
                        container_id TEXT,
                        container_url TEXT,
                        cpu_cores INTEGER NOT NULL,
                        memory_mb INTEGER NOT NULL,
                        max_duration_hours REAL NOT NULL,
                        expires_at TEXT NOT NULL,
                        error_message TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        ended_at TEXT
                    )
                    """
                )
                # At most one live session per claim key
                self._conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_live_claim
                    ON preview_sessions(claim_key)
                    WHERE status IN ('creating', 'active')
                    """
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sessions_status_expiry "
                    "ON preview_sessions(status, expires_at)"
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON preview_sessions(user_id)"
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS system_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_type TEXT NOT NULL,
                        severity TEXT NOT NULL,
                        data TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS system_alerts (
                        id TEXT PRIMARY KEY,
                        alert_type TEXT NOT NULL,
                        severity TEXT NOT NULL,
                        message TEXT NOT NULL,
                        data TEXT,
                        resolved INTEGER NOT NULL DEFAULT 0,
                        resolution TEXT,
                        created_at TEXT NOT NULL,
                        resolved_at TEXT
                    )
                    """
                )
        except sqlite3.Error as e:
            logger.error("Session store initialization failed", db_path=self.db_path, error=str(e))
            raise SessionStoreError(f"Cannot initialize session store: {e}") from e
        logger.info("Session store ready", db_path=self.db_path)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                return func(*args)

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as e:
            logger.error("Session store operation failed", operation=func.__name__, error=str(e))
            raise SessionStoreError(f"Session store operation {func.__name__} failed") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Sessions

    async def claim_and_create(self, claim: SessionClaim) -> PreviewSession:
        """
        Insert a ``creating`` row for the claim.

        Raises:
            DuplicateSessionError: a live session already holds the claim key
        """
        return await self._run(self._claim_and_create, claim)

    def _claim_and_create(self, claim: SessionClaim) -> PreviewSession:
        now = self._clock()
        tier = get_container_tier(claim.tier)
        limits = ResourceLimits(
            cpu_cores=tier.guest.cpus,
            memory_mb=tier.guest.memory_mb,
            max_duration_hours=tier.max_duration_hours,
        )
        session = PreviewSession(
            id=str(uuid.uuid4()),
            user_id=claim.user_id,
            project_id=claim.project_id,
            claim_key=claim.claim_key,
            status=SessionStatus.CREATING,
            tier=tier.tier,
            limits=limits,
            expires_at=now + timedelta(hours=limits.max_duration_hours),
            created_at=now,
            updated_at=now,
        )
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO preview_sessions (
                        id, user_id, project_id, claim_key, status, tier,
                        cpu_cores, memory_mb, max_duration_hours,
                        expires_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id, session.user_id, session.project_id, session.claim_key,
                        session.status.value, session.tier.value,
                        limits.cpu_cores, limits.memory_mb, limits.max_duration_hours,
                        to_db_time(session.expires_at), to_db_time(now), to_db_time(now),
                    ),
                )
        except sqlite3.IntegrityError:
            row = self._conn.execute(
                "SELECT id FROM preview_sessions WHERE claim_key = ? AND status IN (?, ?)",
                (claim.claim_key, *LIVE_STATUSES),
            ).fetchone()
            raise DuplicateSessionError(claim.claim_key, row["id"] if row else None) from None

        logger.info("Session claimed", session_id=session.id, project_id=claim.project_id,
                    user_id=claim.user_id, tier=session.tier.value)
        return session

    def _transition(self, session_id: str, expected: tuple[str, ...],
                    assignments: dict[str, Any]) -> bool:
        now = to_db_time(self._clock())
        assignments = {**assignments, "updated_at": now}
        columns = ", ".join(f"{column} = ?" for column in assignments)
        placeholders = ", ".join("?" for _ in expected)
        with self._conn:
            cursor = self._conn.execute(
                f"UPDATE preview_sessions SET {columns} "
                f"WHERE id = ? AND status IN ({placeholders})",
                (*assignments.values(), session_id, *expected),
            )
        return cursor.rowcount == 1

    async def mark_active(self, session_id: str, machine_id: str, url: str) -> bool:
        return await self._run(
            self._transition, session_id, (SessionStatus.CREATING.value,),
            {"status": SessionStatus.ACTIVE.value, "container_id": machine_id,
             "container_url": url},
        )

    async def mark_error(self, session_id: str, message: str,
                         machine_id: str | None = None) -> bool:
        assignments: dict[str, Any] = {
            "status": SessionStatus.ERROR.value,
            "error_message": message,
        }
        if machine_id:
            assignments["container_id"] = machine_id
        return await self._run(
            self._transition, session_id, (SessionStatus.CREATING.value,), assignments
        )

    async def mark_ended(self, session_id: str) -> bool:
        return await self._run(
            self._transition, session_id, LIVE_STATUSES,
            {"status": SessionStatus.ENDED.value, "ended_at": to_db_time(self._clock())},
        )

    async def clear_machine(self, session_id: str) -> bool:
        """Forget an error session's machine once it is confirmed gone."""
        return await self._run(
            self._transition, session_id, (SessionStatus.ERROR.value,),
            {"container_id": None, "container_url": None},
        )

    async def get(self, session_id: str) -> PreviewSession | None:
        return await self._run(self._get, session_id)

    def _get(self, session_id: str) -> PreviewSession | None:
        row = self._conn.execute(
            "SELECT * FROM preview_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def _select(self, where: str, params: tuple[Any, ...]) -> list[PreviewSession]:
        rows = self._conn.execute(
            f"SELECT * FROM preview_sessions WHERE {where}", params
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def list_expired(self, now: datetime) -> list[PreviewSession]:
        return await self._run(
            self._select,
            "status IN (?, ?) AND expires_at <= ? ORDER BY expires_at",
            (*LIVE_STATUSES, to_db_time(now)),
        )

    async def list_active_or_creating(self) -> list[PreviewSession]:
        return await self._run(
            self._select, "status IN (?, ?) ORDER BY created_at", LIVE_STATUSES
        )

    async def list_by_user(self, user_id: str, limit: int = 50) -> list[PreviewSession]:
        return await self._run(
            self._select, "user_id = ? ORDER BY created_at DESC LIMIT ?", (user_id, limit)
        )

    async def session_statistics(self, now: datetime) -> dict[str, Any]:
        return await self._run(self._session_statistics, now)

    def _session_statistics(self, now: datetime) -> dict[str, Any]:
        by_status = {status.value: 0 for status in SessionStatus}
        for row in self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM preview_sessions GROUP BY status"
        ):
            by_status[row["status"]] = row["n"]

        by_tier = {tier.value: 0 for tier in ContainerTier}
        for row in self._conn.execute(
            "SELECT tier, COUNT(*) AS n FROM preview_sessions WHERE status IN (?, ?) GROUP BY tier",
            LIVE_STATUSES,
        ):
            by_tier[row["tier"]] = row["n"]

        live = self._conn.execute(
            "SELECT MIN(created_at) AS oldest, MAX(created_at) AS newest, "
            "SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired "
            "FROM preview_sessions WHERE status IN (?, ?)",
            (to_db_time(now), *LIVE_STATUSES),
        ).fetchone()

        durations = [
            (from_db_time(row["ended_at"]) - from_db_time(row["created_at"])).total_seconds()
            for row in self._conn.execute(
                "SELECT created_at, ended_at FROM preview_sessions "
                "WHERE status = ? AND ended_at IS NOT NULL",
                (SessionStatus.ENDED.value,),
            )
        ]
        average_minutes = round(sum(durations) / len(durations) / 60, 2) if durations else 0.0

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "live_by_tier": by_tier,
            "expired_live": live["expired"] or 0,
            "oldest_live_created_at": live["oldest"],
            "newest_live_created_at": live["newest"],
            "average_duration_minutes": average_minutes,
        }

    def _row_to_session(self, row: sqlite3.Row) -> PreviewSession:
        return PreviewSession(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            claim_key=row["claim_key"],
            status=SessionStatus(row["status"]),
            tier=ContainerTier(row["tier"]),
            limits=ResourceLimits(
                cpu_cores=row["cpu_cores"],
                memory_mb=row["memory_mb"],
                max_duration_hours=row["max_duration_hours"],
            ),
            expires_at=from_db_time(row["expires_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            machine_id=row["container_id"],
            machine_url=row["container_url"],
            error_message=row["error_message"],
            ended_at=from_db_time(row["ended_at"]),
        )

    # Audit trail

    async def persist_event(self, event: dict[str, Any]) -> None:
        await self._run(self._persist_event, event)

    def _persist_event(self, event: dict[str, Any]) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO system_events (event_type, severity, data, created_at) "
                "VALUES (?, ?, ?, ?)",
                (event["type"], event["severity"], json.dumps(event.get("data") or {}, default=str),
                 event["timestamp"]),
            )

    async def persist_alert(self, alert: dict[str, Any]) -> None:
        await self._run(self._persist_alert, alert)

    def _persist_alert(self, alert: dict[str, Any]) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO system_alerts (
                    id, alert_type, severity, message, data, resolved, resolution,
                    created_at, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    message = excluded.message,
                    data = excluded.data,
                    resolved = excluded.resolved,
                    resolution = excluded.resolution,
                    resolved_at = excluded.resolved_at
                """,
                (
                    alert["id"], alert["type"], alert["severity"], alert["message"],
                    json.dumps(alert.get("data") or {}, default=str),
                    int(bool(alert.get("resolved"))), alert.get("resolution"),
                    alert["timestamp"], alert.get("resolved_at"),
                ),
            )

    async def list_persisted_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._run(self._list_persisted, "system_events", limit)

    async def list_persisted_alerts(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._run(self._list_persisted, "system_alerts", limit)

    def _list_persisted(self, table: str, limit: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            f"SELECT * FROM {table} ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        records = []
        for row in rows:
            record = dict(row)
            record["data"] = json.loads(record["data"]) if record.get("data") else {}
            records.append(record)
        return records
