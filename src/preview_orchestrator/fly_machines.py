"""
Fly Machines API adapter for preview containers.

Wraps the app-scoped machines endpoints of the Fly.io REST API:
- create with tier-derived guest spec, region selection and hardening
- wait-for-ready polling with a bounded number of polls
- best-effort destroy for sweeps, verified destroy for caller-initiated stops
- per-machine classification against the tier's time budget
- orphan sweep over every machine tagged as a preview container

Remote error bodies are logged at debug level and never placed in exception
messages, so they cannot leak through the API layer.
"""

import asyncio
import copy
import math
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from .container_tiers import (
    TierConfig,
    apply_security_hardening,
    get_container_tier,
)
from .fly_types import (
    METADATA_CREATED_AT,
    METADATA_PROJECT_ID,
    METADATA_SERVICE,
    METADATA_SESSION_ID,
    METADATA_TIER,
    SERVICE_TAG,
    CheckStatus,
    Machine,
    MachineMonitorResult,
    MachineState,
    MonitorStatus,
)
from .retry import AsyncRetryManager, RetryConfig, RetryOutcome

logger = structlog.get_logger(__name__)

DEFAULT_API_BASE_URL = "https://api.machines.dev/v1"
DEFAULT_IMAGE = "ghcr.io/preview-orchestrator/preview-container:latest"
PREFERRED_REGIONS = ("dfw", "iad", "lax", "sjc")
FALLBACK_REGION = "dfw"
CONTAINER_PORT = 8080

ACTION_AUTO_DESTROY = "Auto-destroy machine"
ACTION_NOTIFY_SHUTDOWN = "Notify user of impending shutdown"
ACTION_REPLACE = "Restart or replace machine"
ACTION_MANUAL_CHECK = "Check for manual intervention needed"
ACTION_INVESTIGATE_CHECKS = "Investigate health check failures"
ACTION_REMOVE_FROM_MONITORING = "Remove from monitoring"
ACTION_CHECK_MONITORING = "Check monitoring system"

# Fraction of the duration budget after which a machine is flagged
WARNING_AGE_FRACTION = 0.8


class FlyMachineError(Exception):
    """Raised when a provisioning API call fails."""

    def __init__(self, message: str, status_code: int | None = None,
                 machine_id: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.machine_id = machine_id


class MachineTimeoutError(FlyMachineError):
    """Raised when a machine does not become ready within the allowed wait."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def select_region(tier: TierConfig) -> str:
    """First preferred region the tier does not block, else the fallback."""
    for region in PREFERRED_REGIONS:
        if region not in tier.blocked_regions:
            return region
    return FALLBACK_REGION


def classify_machine(machine: Machine, max_duration_hours: float, now: datetime) -> MachineMonitorResult:
    """
    Classify a machine against its duration budget, state and health checks.

    Pure: the result depends only on the arguments.
    """
    alerts: list[str] = []
    actions: list[str] = []
    status = MonitorStatus.OK

    age_seconds = machine.age_seconds(now)
    max_age_seconds = max_duration_hours * 3600.0
    age_minutes = int(age_seconds // 60)
    max_minutes = int(max_age_seconds // 60)

    if age_seconds > max_age_seconds:
        status = MonitorStatus.CRITICAL
        alerts.append(f"Machine exceeded max duration: {age_minutes}m / {max_minutes}m")
        actions.append(ACTION_AUTO_DESTROY)
    elif age_seconds > max_age_seconds * WARNING_AGE_FRACTION:
        status = MonitorStatus.WARNING
        alerts.append(f"Machine approaching max duration: {age_minutes}m / {max_minutes}m")
        actions.append(ACTION_NOTIFY_SHUTDOWN)

    if machine.state == MachineState.FAILED:
        status = MonitorStatus.CRITICAL
        alerts.append("Machine is in failed state")
        actions.append(ACTION_REPLACE)
    elif machine.state in (MachineState.STOPPING, MachineState.STOPPED):
        alerts.append("Machine is stopping/stopped")
        actions.append(ACTION_MANUAL_CHECK)

    failed_checks = [c for c in machine.checks if c.status != CheckStatus.PASSING]
    if failed_checks:
        if any(c.status == CheckStatus.CRITICAL for c in failed_checks):
            status = MonitorStatus.CRITICAL
        elif status == MonitorStatus.OK:
            status = MonitorStatus.WARNING
        for check in failed_checks:
            alerts.append(f"Health check failed: {check.name} - {check.output}")
        actions.append(ACTION_INVESTIGATE_CHECKS)

    return MachineMonitorResult(status=status, alerts=tuple(alerts), actions=tuple(actions))


class FlyMachinesClient:
    """
    Async client for one Fly app's machines.

    Args:
        api_token: Fly API bearer token
        app_name: Fly app namespace all machines live in
        base_url: API root, overridable for tests
        transport: Optional httpx transport (tests pass httpx.MockTransport)
        clock: Returns the current aware UTC time
        sleep: Awaitable sleep used for polling and backoff
    """

    def __init__(
        self,
        api_token: str,
        app_name: str,
        base_url: str = DEFAULT_API_BASE_URL,
        *,
        image: str = DEFAULT_IMAGE,
        machine_env: dict[str, str] | None = None,
        request_timeout: float = 30.0,
        ready_timeout: float = 60.0,
        poll_interval: float = 2.0,
        graceful_stop_seconds: float = 2.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.app_name = app_name
        self.image = image
        self.machine_env = dict(machine_env or {})
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.graceful_stop_seconds = graceful_stop_seconds
        self._clock = clock
        self._sleep = sleep
        self._retry = AsyncRetryManager(retry_config, sleep=sleep)
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/apps/{app_name}",
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=request_timeout,
            transport=transport,
        )
        logger.info("FlyMachinesClient initialized", app_name=app_name)

    @property
    def machine_url(self) -> str:
        return f"https://{self.app_name}.fly.dev"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise FlyMachineError(f"{method} {path} failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.debug("Fly API error response", method=method, path=path,
                         status=response.status_code, body=response.text[:500])
            raise FlyMachineError(
                f"Fly API returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        return response

    def build_machine_config(
        self,
        project_id: str,
        tier: TierConfig,
        custom_config: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        config: dict[str, Any] = {
            "image": self.image,
            "env": {"NODE_ENV": "development", "PROJECT_ID": project_id, **self.machine_env},
            "guest": tier.guest.to_dict(),
            "services": [
                {
                    "protocol": "tcp",
                    "internal_port": CONTAINER_PORT,
                    "ports": [
                        {"port": 80, "handlers": ["http"]},
                        {"port": 443, "handlers": ["http", "tls"]},
                    ],
                }
            ],
            "restart": {"policy": "no"},
            "auto_destroy": True,
        }
        if custom_config:
            config = deep_merge(config, custom_config)

        # Attribution tags are stamped after overrides so they cannot be replaced
        metadata = config.setdefault("metadata", {})
        metadata.update({
            METADATA_SERVICE: SERVICE_TAG,
            METADATA_TIER: tier.name,
            METADATA_PROJECT_ID: project_id,
            METADATA_CREATED_AT: self._clock().isoformat(),
        })
        if session_id:
            metadata[METADATA_SESSION_ID] = session_id

        return apply_security_hardening(config, tier)

    async def create_machine(
        self,
        project_id: str,
        tier_name: str = "free",
        custom_config: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> tuple[Machine, str]:
        """
        Create a machine and wait until it is ready.

        A machine exists remotely as soon as the create call returns, so a
        failure while waiting carries the machine id on the raised error.
        """
        tier = get_container_tier(tier_name)
        request = {
            "name": f"preview-{project_id}-{int(self._clock().timestamp() * 1000)}",
            "region": select_region(tier),
            "config": self.build_machine_config(project_id, tier, custom_config, session_id),
        }
        logger.info("Creating machine", project_id=project_id, tier=tier.name,
                    region=request["region"], session_id=session_id)

        response = await self._request("POST", "/machines", json=request)
        machine = Machine.from_api(response.json())

        try:
            machine = await self.wait_for_machine_ready(machine.id)
        except FlyMachineError as e:
            e.machine_id = machine.id
            raise

        logger.info("Machine ready", machine_id=machine.id, session_id=session_id)
        return machine, self.machine_url

    async def wait_for_machine_ready(
        self,
        machine_id: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> Machine:
        timeout = self.ready_timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        polls = max(1, math.ceil(timeout / poll_interval))

        for _ in range(polls):
            machine = await self.get_machine(machine_id)
            if machine is None:
                raise FlyMachineError("Machine disappeared while starting", machine_id=machine_id)
            if machine.state == MachineState.STARTED and all(
                check.status == CheckStatus.PASSING for check in machine.checks
            ):
                return machine
            if machine.state in (MachineState.FAILED, MachineState.STOPPED, MachineState.DESTROYED):
                raise FlyMachineError(
                    f"Machine entered {machine.state.value} state while starting",
                    machine_id=machine_id,
                )
            await self._sleep(poll_interval)

        raise MachineTimeoutError(
            f"Machine {machine_id} failed to become ready within {timeout:g}s",
            machine_id=machine_id,
        )

    async def destroy_machine(self, machine_id: str) -> bool:
        """
        Stop, pause, then force-delete a machine.

        Never raises. Returns True when the delete landed or the machine was
        already gone.
        """
        try:
            await self._request("POST", f"/machines/{machine_id}/stop")
        except FlyMachineError as e:
            if e.status_code == 404:
                logger.info("Machine already gone", machine_id=machine_id)
                return True
            logger.warning("Stop before destroy failed", machine_id=machine_id, error=str(e))

        await self._sleep(self.graceful_stop_seconds)

        try:
            await self._request("DELETE", f"/machines/{machine_id}", params={"force": "true"})
        except FlyMachineError as e:
            if e.status_code == 404:
                return True
            logger.error("Failed to destroy machine", machine_id=machine_id, error=str(e))
            return False

        logger.info("Machine destroyed", machine_id=machine_id)
        return True

    async def destroy_machine_verified(self, machine_id: str, verify_polls: int = 3) -> bool:
        """Destroy with retries, then confirm the machine is absent or destroyed."""

        async def attempt() -> bool:
            if not await self.destroy_machine(machine_id):
                raise FlyMachineError("Destroy request failed", machine_id=machine_id)
            return True

        outcome, _, error = await self._retry.execute_with_retry(
            attempt, f"destroy machine {machine_id}"
        )
        if outcome != RetryOutcome.SUCCESS:
            logger.error("Destroy retries exhausted", machine_id=machine_id, error=str(error))

        for poll in range(max(1, verify_polls)):
            try:
                machine = await self.get_machine(machine_id)
            except FlyMachineError as e:
                logger.error("Could not verify destroy", machine_id=machine_id, error=str(e))
                return False
            if machine is None or machine.state == MachineState.DESTROYED:
                return True
            if machine.state != MachineState.DESTROYING or poll == verify_polls - 1:
                break
            await self._sleep(self.poll_interval)

        logger.warning("Machine still present after destroy", machine_id=machine_id,
                       state=machine.state.value)
        return False

    async def get_machine(self, machine_id: str) -> Machine | None:
        try:
            response = await self._request("GET", f"/machines/{machine_id}")
        except FlyMachineError as e:
            if e.status_code == 404:
                return None
            raise
        return Machine.from_api(response.json())

    async def list_machines(self) -> list[Machine]:
        response = await self._request("GET", "/machines")
        return [Machine.from_api(item) for item in response.json() or []]

    async def start_machine(self, machine_id: str) -> None:
        await self._request("POST", f"/machines/{machine_id}/start")

    async def stop_machine(self, machine_id: str) -> None:
        await self._request("POST", f"/machines/{machine_id}/stop")

    async def get_app_info(self) -> dict[str, Any] | None:
        try:
            response = await self._request("GET", "")
        except FlyMachineError as e:
            logger.error("Failed to get app info", app_name=self.app_name, error=str(e))
            return None
        return response.json()

    async def get_machine_metrics(self, machine_id: str) -> dict[str, Any] | None:
        """
        Resource snapshot for a machine.

        The machines API exposes no live usage counters, so only uptime is real.
        """
        try:
            machine = await self.get_machine(machine_id)
        except FlyMachineError as e:
            logger.error("Failed to get machine metrics", machine_id=machine_id, error=str(e))
            return None
        if machine is None:
            return None
        return {
            "cpu": 0,
            "memory": 0,
            "disk": 0,
            "network": {"in": 0, "out": 0},
            "uptime": machine.age_seconds(self._clock()),
        }

    async def monitor_machine(
        self, machine_id: str, max_duration_hours: float | None = None
    ) -> MachineMonitorResult:
        """
        Fetch and classify one machine.

        The duration budget defaults to the tier stamped on the machine.
        """
        try:
            machine = await self.get_machine(machine_id)
        except FlyMachineError as e:
            logger.error("Failed to monitor machine", machine_id=machine_id, error=str(e))
            return MachineMonitorResult(
                status=MonitorStatus.CRITICAL,
                alerts=(f"Monitoring error: {e}",),
                actions=(ACTION_CHECK_MONITORING,),
            )
        if machine is None:
            return MachineMonitorResult(
                status=MonitorStatus.CRITICAL,
                alerts=("Machine not found",),
                actions=(ACTION_REMOVE_FROM_MONITORING,),
            )
        if max_duration_hours is None:
            max_duration_hours = get_container_tier(machine.tier_name).max_duration_hours
        return classify_machine(machine, max_duration_hours, self._clock())

    async def enforce_resource_limits(self, machine_id: str) -> bool:
        """
        Compare the live guest spec with the tier's.

        Drift is reported for manual reconciliation; nothing is resized.
        """
        try:
            machine = await self.get_machine(machine_id)
        except FlyMachineError as e:
            logger.error("Failed to enforce resource limits", machine_id=machine_id, error=str(e))
            return False
        if machine is None:
            return False

        expected = get_container_tier(machine.tier_name).guest
        if machine.guest != expected:
            logger.warning(
                "Machine resources drifted from tier, manual reconciliation needed",
                machine_id=machine_id,
                tier=machine.tier_name,
                actual=machine.guest.to_dict() if machine.guest else None,
                expected=expected.to_dict(),
            )
            return False
        return True

    async def cleanup_orphaned_machines(
        self,
        max_age_minutes: float = 60,
        referenced_machine_ids: Iterable[str] = (),
        referenced_session_ids: Iterable[str] = (),
    ) -> int:
        """
        Destroy tagged machines older than the threshold that no live session references.

        A machine counts as referenced when its id is held by a live session, or
        when its metadata names a live session still being provisioned.

        Returns:
            Number of machines destroyed
        """
        try:
            machines = await self.list_machines()
        except FlyMachineError as e:
            logger.error("Failed to list machines for orphan cleanup", error=str(e))
            return 0

        referenced = set(referenced_machine_ids)
        live_sessions = set(referenced_session_ids)
        now = self._clock()
        cleaned = 0
        for machine in machines:
            if not machine.is_preview_machine or machine.id in referenced:
                continue
            if machine.session_id and machine.session_id in live_sessions:
                continue
            if machine.state == MachineState.DESTROYED:
                continue
            if machine.age_seconds(now) <= max_age_minutes * 60:
                continue
            logger.info("Destroying orphaned machine", machine_id=machine.id,
                        age_minutes=int(machine.age_seconds(now) // 60))
            if await self.destroy_machine(machine.id):
                cleaned += 1

        if cleaned:
            logger.info("Orphaned machines cleaned", count=cleaned)
        return cleaned
