"""Preview Orchestrator - on-demand preview containers on Fly Machines."""

__version__ = "0.1.0"

from .container_manager import (
    CleanupStats,
    ContainerManager,
    ContainerManagerError,
    MachineDestroyError,
    SessionHandle,
    SessionNotFoundError,
    SessionProvisioningError,
)
from .container_tiers import ContainerTier, TierConfig, get_container_tier, parse_tier
from .fly_machines import FlyMachineError, FlyMachinesClient, MachineTimeoutError, classify_machine
from .fly_types import Machine, MachineMonitorResult, MachineState, MonitorStatus

# Persistence and observability
from .monitoring import Alert, AlertRule, Event, Metric, MonitoringService, Severity
from .retry import AsyncRetryManager, FailureType, RetryConfig, RetryOutcome
from .scheduler import Scheduler, SchedulerConfig, UnknownJobError
from .session_store import (
    DuplicateSessionError,
    PreviewSession,
    SessionClaim,
    SessionStatus,
    SessionStore,
    SessionStoreError,
)

__all__ = [
    # Provisioning
    "FlyMachinesClient",
    "FlyMachineError",
    "MachineTimeoutError",
    "Machine",
    "MachineState",
    "MachineMonitorResult",
    "MonitorStatus",
    "classify_machine",
    # Tiers
    "ContainerTier",
    "TierConfig",
    "get_container_tier",
    "parse_tier",
    # Sessions
    "ContainerManager",
    "ContainerManagerError",
    "SessionHandle",
    "SessionNotFoundError",
    "SessionProvisioningError",
    "MachineDestroyError",
    "CleanupStats",
    "SessionStore",
    "SessionStoreError",
    "DuplicateSessionError",
    "PreviewSession",
    "SessionClaim",
    "SessionStatus",
    # Scheduling and monitoring
    "Scheduler",
    "SchedulerConfig",
    "UnknownJobError",
    "MonitoringService",
    "Metric",
    "Event",
    "Alert",
    "AlertRule",
    "Severity",
    # Retry
    "AsyncRetryManager",
    "RetryConfig",
    "RetryOutcome",
    "FailureType",
]
