"""
Realtime channel registration for preview containers.

Editors talk to running preview containers over a per-project realtime channel.
Registration goes through two database RPCs exposed over the PostgREST endpoint
of the realtime backend. Both calls are best-effort: they return a result the
caller logs, and never raise.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    success: bool
    channel_name: str | None = None
    error: str | None = None


class RealtimeRegistry(Protocol):
    async def register_container(
        self, project_id: str, machine_id: str, url: str
    ) -> RegistrationResult: ...

    async def unregister_container(self, project_id: str, machine_id: str) -> RegistrationResult: ...

    async def aclose(self) -> None: ...


class NullRealtimeRegistry:
    """Used when no realtime backend is configured."""

    async def register_container(self, project_id: str, machine_id: str,
                                 url: str) -> RegistrationResult:
        return RegistrationResult(success=True, channel_name=f"realtime:project:{project_id}")

    async def unregister_container(self, project_id: str, machine_id: str) -> RegistrationResult:
        return RegistrationResult(success=True)

    async def aclose(self) -> None:
        return None


class SupabaseRealtimeRegistry:
    """Registers containers via the ``register_preview_container`` RPC."""

    def __init__(self, base_url: str, service_key: str, timeout: float = 10.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1/rpc",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _rpc(self, function: str, params: dict[str, Any]) -> Any:
        response = await self._client.post(f"/{function}", json=params)
        response.raise_for_status()
        return response.json() if response.content else None

    async def register_container(self, project_id: str, machine_id: str,
                                 url: str) -> RegistrationResult:
        try:
            data = await self._rpc("register_preview_container", {
                "project_uuid": project_id,
                "container_id_param": machine_id,
                "container_url_param": url,
            })
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Realtime registration failed", machine_id=machine_id,
                           project_id=project_id, error=type(e).__name__)
            return RegistrationResult(success=False, error=type(e).__name__)

        channel_name = data.get("channel_name") if isinstance(data, dict) else None
        logger.info("Container registered for realtime", machine_id=machine_id,
                    channel=channel_name)
        return RegistrationResult(success=True, channel_name=channel_name)

    async def unregister_container(self, project_id: str, machine_id: str) -> RegistrationResult:
        try:
            await self._rpc("unregister_preview_container", {
                "project_uuid": project_id,
                "container_id_param": machine_id,
            })
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Realtime unregistration failed", machine_id=machine_id,
                           project_id=project_id, error=type(e).__name__)
            return RegistrationResult(success=False, error=type(e).__name__)
        return RegistrationResult(success=True)

    async def aclose(self) -> None:
        await self._client.aclose()
