"""
Container tier policy for preview sessions.

Maps the closed set of session tiers (free, basic, pro) to immutable resource,
duration and security budgets. Tier names arriving from callers are parsed once
at the boundary; anything unrecognised falls back to the free tier.

The hardening transform applied to every machine config also lives here since it
is driven entirely by tier data.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

HEALTH_CHECK_PORT = 8080
HEALTH_CHECK_PATH = "/health"


class ContainerTier(Enum):
    """Known session tiers."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def default(cls) -> "ContainerTier":
        return cls.FREE


@dataclass(frozen=True)
class GuestSpec:
    """CPU and memory allotment for a machine."""

    cpu_kind: str
    cpus: int
    memory_mb: int

    def to_dict(self) -> dict[str, Any]:
        return {"cpu_kind": self.cpu_kind, "cpus": self.cpus, "memory_mb": self.memory_mb}


@dataclass(frozen=True)
class AlertThresholds:
    """Usage percentages above which a tier's machine is considered unhealthy."""

    cpu_percent: float
    memory_percent: float
    disk_percent: float


@dataclass(frozen=True)
class TierConfig:
    """Immutable resource, duration and security budget for one tier."""

    tier: ContainerTier
    display_name: str
    description: str
    guest: GuestSpec
    swap_size_mb: int
    disk_size_gb: int
    max_duration_hours: float
    allowed_ports: tuple[int, ...]
    alert_thresholds: AlertThresholds
    health_check_interval_seconds: int = 30
    disk_iops: int | None = None
    blocked_regions: tuple[str, ...] = field(default_factory=tuple)
    enable_firewall: bool = True
    enable_monitoring: bool = True

    @property
    def name(self) -> str:
        return self.tier.value

    @property
    def max_duration_seconds(self) -> float:
        return self.max_duration_hours * 3600.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "guest": self.guest.to_dict(),
            "swap_size_mb": self.swap_size_mb,
            "disk_size_gb": self.disk_size_gb,
            "disk_iops": self.disk_iops,
            "max_duration_hours": self.max_duration_hours,
            "allowed_ports": list(self.allowed_ports),
            "blocked_regions": list(self.blocked_regions),
            "health_check_interval_seconds": self.health_check_interval_seconds,
            "alert_thresholds": {
                "cpu_percent": self.alert_thresholds.cpu_percent,
                "memory_percent": self.alert_thresholds.memory_percent,
                "disk_percent": self.alert_thresholds.disk_percent,
            },
        }


TIER_CONFIGS: dict[ContainerTier, TierConfig] = {
    ContainerTier.FREE: TierConfig(
        tier=ContainerTier.FREE,
        display_name="Free Tier",
        description="Basic preview container with limited resources",
        guest=GuestSpec(cpu_kind="shared", cpus=1, memory_mb=256),
        swap_size_mb=128,
        disk_size_gb=1,
        max_duration_hours=1,
        allowed_ports=(8080, 8081, 3000),
        alert_thresholds=AlertThresholds(cpu_percent=80, memory_percent=85, disk_percent=90),
        health_check_interval_seconds=30,
    ),
    ContainerTier.BASIC: TierConfig(
        tier=ContainerTier.BASIC,
        display_name="Basic Tier",
        description="Enhanced preview container with moderate resources",
        guest=GuestSpec(cpu_kind="shared", cpus=2, memory_mb=512),
        swap_size_mb=256,
        disk_size_gb=2,
        max_duration_hours=4,
        allowed_ports=(8080, 8081, 3000, 3001),
        alert_thresholds=AlertThresholds(cpu_percent=85, memory_percent=90, disk_percent=85),
        health_check_interval_seconds=30,
    ),
    ContainerTier.PRO: TierConfig(
        tier=ContainerTier.PRO,
        display_name="Pro Tier",
        description="High-performance preview container with dedicated resources",
        guest=GuestSpec(cpu_kind="dedicated", cpus=4, memory_mb=1024),
        swap_size_mb=512,
        disk_size_gb=4,
        disk_iops=3000,
        max_duration_hours=8,
        allowed_ports=(8080, 8081, 3000, 3001, 4000, 5000),
        alert_thresholds=AlertThresholds(cpu_percent=90, memory_percent=95, disk_percent=80),
        health_check_interval_seconds=15,
    ),
}


def parse_tier(name: str | ContainerTier | None) -> ContainerTier:
    """
    Parse a caller-supplied tier name.

    Unknown or missing names resolve to the default tier and are logged.
    """
    if isinstance(name, ContainerTier):
        return name
    if not name:
        return ContainerTier.default()
    try:
        return ContainerTier(str(name).strip().lower())
    except ValueError:
        logger.warning("Unknown container tier, using default", tier=name,
                       default=ContainerTier.default().value)
        return ContainerTier.default()


def get_container_tier(name: str | ContainerTier | None) -> TierConfig:
    return TIER_CONFIGS[parse_tier(name)]


def list_tiers() -> list[TierConfig]:
    return [TIER_CONFIGS[tier] for tier in ContainerTier]


def validate_resource_limits(cpus: int, memory_mb: int, disk_gb: int) -> tuple[bool, list[str]]:
    """Check a resource request against the platform-wide bounds."""
    errors = []
    if cpus < 1 or cpus > 8:
        errors.append("CPU count must be between 1 and 8")
    if memory_mb < 128 or memory_mb > 4096:
        errors.append("Memory must be between 128MB and 4096MB")
    if disk_gb < 1 or disk_gb > 10:
        errors.append("Disk size must be between 1GB and 10GB")
    return not errors, errors


PROTECTED_CONFIG_KEYS = ("image", "auto_destroy", "restart")


def validate_custom_config(custom_config: dict[str, Any], tier: TierConfig) -> list[str]:
    """
    Check caller overrides for a machine config against a tier's budget.

    Guest resources may be lowered but never raised above the tier's allotment,
    and the keys that keep previews disposable cannot be overridden at all.
    Returns the list of problems; empty means the overrides are acceptable.
    """
    errors = [f"{key} cannot be overridden" for key in PROTECTED_CONFIG_KEYS
              if key in custom_config]

    guest = custom_config.get("guest")
    if guest is None:
        return errors
    if not isinstance(guest, dict):
        return errors + ["guest must be an object"]

    cpus = guest.get("cpus", tier.guest.cpus)
    memory_mb = guest.get("memory_mb", tier.guest.memory_mb)
    if any(isinstance(v, bool) or not isinstance(v, int) for v in (cpus, memory_mb)):
        return errors + ["guest cpus and memory_mb must be integers"]

    errors.extend(validate_resource_limits(cpus, memory_mb, tier.disk_size_gb)[1])
    if cpus > tier.guest.cpus:
        errors.append(f"CPU count exceeds the {tier.name} tier limit of {tier.guest.cpus}")
    if memory_mb > tier.guest.memory_mb:
        errors.append(f"Memory exceeds the {tier.name} tier limit of {tier.guest.memory_mb}MB")
    if guest.get("cpu_kind", tier.guest.cpu_kind) != tier.guest.cpu_kind:
        errors.append(f"CPU kind must be {tier.guest.cpu_kind} for the {tier.name} tier")
    return errors


def apply_security_hardening(config: dict[str, Any], tier: TierConfig) -> dict[str, Any]:
    """
    Return a hardened copy of a machine config.

    Adds the standard HTTP health check, restricts exposed service ports to the
    tier's allowed list when the firewall is on, and stamps security metadata.
    The input dict is left untouched.
    """
    hardened = copy.deepcopy(config)

    if tier.enable_monitoring:
        checks = hardened.setdefault("checks", {})
        checks["health"] = {
            "type": "http",
            "port": HEALTH_CHECK_PORT,
            "method": "GET",
            "path": HEALTH_CHECK_PATH,
            "interval": f"{tier.health_check_interval_seconds}s",
            "timeout": "10s",
            "grace_period": "15s",
        }

    if tier.enable_firewall and hardened.get("services"):
        allowed = set(tier.allowed_ports)
        services = []
        for service in hardened["services"]:
            if service.get("internal_port") not in allowed:
                logger.warning("Dropping service on disallowed port",
                               port=service.get("internal_port"), tier=tier.name)
                continue
            services.append(service)
        hardened["services"] = services

    metadata = hardened.setdefault("metadata", {})
    metadata.update({
        "security-tier": "hardened",
        "monitoring-enabled": str(tier.enable_monitoring).lower(),
        "firewall-enabled": str(tier.enable_firewall).lower(),
        "allowed-ports": ",".join(str(port) for port in tier.allowed_ports),
    })
    return hardened
