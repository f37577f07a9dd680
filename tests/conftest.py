"""Shared fixtures: a controllable clock, an in-memory Fly Machines API and a temp store."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from preview_orchestrator.container_manager import ContainerManager
from preview_orchestrator.fly_machines import FlyMachinesClient
from preview_orchestrator.monitoring import MonitoringService
from preview_orchestrator.retry import RetryConfig
from preview_orchestrator.session_store import SessionStore

APP_NAME = "preview-test"
API_BASE_URL = "https://fly.test/v1"
APP_PATH = f"/v1/apps/{APP_NAME}"
START_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    for marker, description in (
        ("fast", "quick unit tests"),
        ("medium", "tests touching sqlite or several components"),
        ("unit", "isolated unit tests"),
        ("slow", "tests that wait on real timers"),
    ):
        config.addinivalue_line("markers", f"{marker}: {description}")


class FakeClock:
    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeFlyApi:
    """
    In-memory stand-in for the app-scoped machines endpoints.

    Knobs:
        create_state: state new machines report (``starting`` never becomes ready)
        create_checks: health checks new machines report
        fail_create_status / fail_delete_status / fail_list_status / fail_get_status:
            force error responses
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.machines: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self.create_state = "started"
        self.create_checks: list[dict[str, Any]] = []
        self.fail_create_status: int | None = None
        self.fail_delete_status: int | None = None
        self.fail_list_status: int | None = None
        self.fail_get_status: int | None = None
        self._counter = 0

    def add_machine(self, metadata: dict[str, str] | None = None, age_minutes: float = 0,
                    state: str = "started") -> str:
        self._counter += 1
        machine_id = f"m-{self._counter:04d}"
        created = self.clock() - timedelta(minutes=age_minutes)
        self.machines[machine_id] = {
            "id": machine_id,
            "name": f"machine-{self._counter}",
            "state": state,
            "region": "dfw",
            "created_at": created.isoformat().replace("+00:00", "Z"),
            "updated_at": created.isoformat().replace("+00:00", "Z"),
            "checks": list(self.create_checks),
            "config": {
                "guest": {"cpu_kind": "shared", "cpus": 1, "memory_mb": 256},
                "metadata": dict(metadata or {}),
            },
        }
        return machine_id

    def count(self, method: str, suffix: str = "") -> int:
        return sum(1 for m, path in self.requests if m == method and path.endswith(suffix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix(APP_PATH).rstrip("/")
        self.requests.append((request.method, path))
        parts = [part for part in path.split("/") if part]

        if not parts:
            return httpx.Response(200, json={"name": APP_NAME, "status": "deployed"})

        if parts == ["machines"]:
            if request.method == "GET":
                if self.fail_list_status:
                    return httpx.Response(self.fail_list_status, json={"error": "list failed"})
                return httpx.Response(200, json=list(self.machines.values()))
            if self.fail_create_status:
                return httpx.Response(self.fail_create_status, json={"error": "secret upstream detail"})
            return self._create(request)

        machine = self.machines.get(parts[1])
        if machine is None:
            return httpx.Response(404, json={"error": "machine not found"})

        if len(parts) == 2:
            if request.method == "DELETE":
                if self.fail_delete_status:
                    return httpx.Response(self.fail_delete_status, json={"error": "delete failed"})
                del self.machines[parts[1]]
                return httpx.Response(200, json={"ok": True})
            if self.fail_get_status:
                return httpx.Response(self.fail_get_status, json={"error": "get failed"})
            return httpx.Response(200, json=machine)

        if parts[2] == "stop":
            machine["state"] = "stopped"
        elif parts[2] == "start":
            machine["state"] = "started"
        return httpx.Response(200, json={"ok": True})

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self._counter += 1
        machine_id = f"m-{self._counter:04d}"
        now = self.clock().isoformat().replace("+00:00", "Z")
        self.machines[machine_id] = {
            "id": machine_id,
            "name": body["name"],
            "state": self.create_state,
            "region": body["region"],
            "created_at": now,
            "updated_at": now,
            "checks": list(self.create_checks),
            "config": body["config"],
        }
        return httpx.Response(200, json=self.machines[machine_id])


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fly_api(clock):
    return FakeFlyApi(clock)


@pytest.fixture
def fly_client(fly_api, clock):
    return FlyMachinesClient(
        "test-token",
        APP_NAME,
        API_BASE_URL,
        transport=httpx.MockTransport(fly_api.handler),
        retry_config=RetryConfig(max_retries=1, base_delay=0, jitter=False),
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def store(tmp_path, clock):
    session_store = SessionStore(tmp_path / "sessions.db", clock=clock)
    yield session_store
    session_store.close()


@pytest.fixture
def monitoring(store, clock):
    return MonitoringService(audit_sink=store, clock=clock)


@pytest.fixture
def manager(fly_client, store, monitoring, clock):
    return ContainerManager(fly_client, store, monitoring, clock=clock)
