"""
Typed views over Fly Machines API payloads.

The provisioning API is the source of truth for machine state; these classes only
parse what it returns into something the orchestrator can reason about.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .container_tiers import GuestSpec

# Metadata keys stamped onto every machine for orphan attribution
METADATA_SERVICE = "preview-service"
METADATA_SESSION_ID = "preview-session-id"
METADATA_TIER = "preview-tier"
METADATA_PROJECT_ID = "preview-project-id"
METADATA_CREATED_AT = "preview-created-at"
SERVICE_TAG = "preview-container"


class MachineState(Enum):
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REPLACING = "replacing"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "MachineState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class CheckStatus(Enum):
    PASSING = "passing"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: str | None) -> "CheckStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.WARNING


class MonitorStatus(Enum):
    """Classification of a machine against its tier budget."""

    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class MachineCheck:
    name: str
    status: CheckStatus
    output: str = ""
    updated_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "MachineCheck":
        return cls(
            name=data.get("name", ""),
            status=CheckStatus.parse(data.get("status")),
            output=data.get("output") or "",
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class Machine:
    """A remote machine as reported by the provisioning API."""

    id: str
    name: str
    state: MachineState
    region: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    instance_id: str | None = None
    private_ip: str | None = None
    guest: GuestSpec | None = None
    checks: list[MachineCheck] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Machine":
        config = data.get("config") or {}
        guest_data = config.get("guest")
        guest = None
        if guest_data:
            guest = GuestSpec(
                cpu_kind=guest_data.get("cpu_kind", "shared"),
                cpus=int(guest_data.get("cpus", 1)),
                memory_mb=int(guest_data.get("memory_mb", 256)),
            )
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=MachineState.parse(data.get("state")),
            region=data.get("region", ""),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            instance_id=data.get("instance_id"),
            private_ip=data.get("private_ip"),
            guest=guest,
            checks=[MachineCheck.from_api(check) for check in data.get("checks") or []],
            metadata=dict(config.get("metadata") or {}),
            config=config,
        )

    @property
    def session_id(self) -> str | None:
        return self.metadata.get(METADATA_SESSION_ID)

    @property
    def tier_name(self) -> str | None:
        return self.metadata.get(METADATA_TIER)

    @property
    def is_preview_machine(self) -> bool:
        return self.metadata.get(METADATA_SERVICE) == SERVICE_TAG

    def age_seconds(self, now: datetime) -> float:
        if self.created_at is None:
            return 0.0
        return max(0.0, (now - self.created_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "region": self.region,
            "instance_id": self.instance_id,
            "private_ip": self.private_ip,
            "guest": self.guest.to_dict() if self.guest else None,
            "checks": [
                {"name": c.name, "status": c.status.value, "output": c.output}
                for c in self.checks
            ],
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class MachineMonitorResult:
    """Outcome of classifying one machine."""

    status: MonitorStatus
    alerts: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "alerts": list(self.alerts),
            "actions": list(self.actions),
        }
