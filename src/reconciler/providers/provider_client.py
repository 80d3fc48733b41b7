"""Async HTTP client for the cloud provider REST API.

Implements the ``ApplianceAPI`` and ``SharedParentAPI`` protocols over
JSON endpoints. Auth uses a static bearer token. The client does not
retry: every failure surfaces as a ``ProviderAPIError`` (a
``TransientAPIError``) and the pollers decide whether to try again.

Endpoints::

    POST   /appliance                       create appliance
    GET    /appliance/{id}                  appliance state
    PUT    /appliance/{id}                  update appliance
    DELETE /appliance/{id}                  delete appliance
    GET    /appliance/{id}/health           node health
    GET    /appliance/{id}/status           job-status feed
    PUT    /appliance/{id}/config           apply pending changes
    PUT    /appliance/{id}/parameters       set configuration parameters
    DELETE /appliance/{id}/power            stop instance
    POST   /appliance/{id}/nodes            add nodes
    POST   /internet/{pid}/subnet           add child to shared parent
    PUT    /internet/{pid}/subnet/{cid}     update child
    DELETE /internet/{pid}/subnet/{cid}     delete child
    GET    /subnet/{cid}                    read child
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from reconciler.provisioning.errors import RemoteNotFound, TransientAPIError
from reconciler.provisioning.models import (
    AddNodeRecord,
    ApplianceRequest,
    Availability,
    ChildResource,
    HealthStatus,
    InstanceStatus,
    JobRecord,
    JobStatus,
    JobStatusFeed,
    RemoteApplianceState,
)

logger = logging.getLogger(__name__)

_USER_AGENT = "appliance-reconciler"


# ── Exception hierarchy ─────────────────────────────────────────


class ProviderAPIError(TransientAPIError):
    """Base exception for provider API errors."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Provider API error {status_code}: {message}")


class ProviderNotFoundError(ProviderAPIError, RemoteNotFound):
    """Resource not found (404)."""

    def __init__(self, message: str = "Resource not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class ProviderTimeoutError(ProviderAPIError):
    """Request to the provider timed out."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Client ───────────────────────────────────────────────────────


class ProviderClient:
    """Async HTTP client for appliance and shared-parent endpoints."""

    def __init__(
        self,
        *,
        bearer_token: str,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 300.0,
        user_agent_suffix: str = "",
    ) -> None:
        if not bearer_token:
            raise ValueError("bearer_token is required")

        self._bearer_token = bearer_token
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._user_agent = (
            f"{_USER_AGENT} {user_agent_suffix}" if user_agent_suffix else _USER_AGENT
        )

    @classmethod
    def from_settings(
        cls, settings: Any, *, http_client: httpx.AsyncClient | None = None,
    ) -> ProviderClient:
        return cls(
            bearer_token=settings.api_token,
            base_url=settings.api_base_url,
            http_client=http_client,
            timeout_seconds=settings.request_timeout_seconds,
            user_agent_suffix=settings.user_agent_suffix,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._bearer_token}",
            "User-Agent": self._user_agent,
        }

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("error_msg", payload.get("message", message))
        except ValueError:
            pass

        if resp.status_code == 404:
            raise ProviderNotFoundError(message=message, response_body=body)

        raise ProviderAPIError(
            status_code=resp.status_code,
            message=message,
            response_body=body,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
    ) -> Any:
        """Execute one HTTP request and return the decoded JSON body (or None)."""
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                headers=self._headers(),
                json=json,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(str(e)) from e
        except httpx.TransportError as e:
            raise ProviderAPIError(0, f"transport error: {e}") from e

        self._raise_for_status(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderAPIError(
                resp.status_code, f"invalid JSON from {method} {path}",
            ) from e

    # ── Appliance reads ──────────────────────────────────────────

    async def read_appliance(self, appliance_id: str) -> RemoteApplianceState:
        payload = await self._request("GET", f"/appliance/{appliance_id}")
        return _parse_appliance(payload, appliance_id)

    async def read_health(self, appliance_id: str) -> HealthStatus:
        payload = await self._request("GET", f"/appliance/{appliance_id}/health")
        status = payload.get("status") if isinstance(payload, dict) else None
        return HealthStatus.parse(status)

    async def read_job_status(self, appliance_id: str) -> JobStatusFeed:
        payload = await self._request("GET", f"/appliance/{appliance_id}/status")
        return _parse_job_status(payload if payload is not None else {})

    # ── Appliance mutations ──────────────────────────────────────

    async def create_appliance(self, request: ApplianceRequest) -> str:
        payload = await self._request(
            "POST",
            "/appliance",
            json={"name": request.name, **dict(request.attributes)},
        )
        appliance_id = _require_id(payload, "POST /appliance")
        logger.info(
            "Appliance created: id=%s name=%s",
            appliance_id,
            request.name,
            extra={"resource_id": appliance_id},
        )
        return appliance_id

    async def update_appliance(
        self, appliance_id: str, request: ApplianceRequest,
    ) -> None:
        await self._request(
            "PUT",
            f"/appliance/{appliance_id}",
            json={"name": request.name, **dict(request.attributes)},
        )

    async def apply_changes(self, appliance_id: str) -> None:
        await self._request("PUT", f"/appliance/{appliance_id}/config")

    async def set_parameters(
        self, appliance_id: str, parameters: Mapping[str, str],
    ) -> None:
        await self._request(
            "PUT",
            f"/appliance/{appliance_id}/parameters",
            json={
                "parameters": [
                    {"name": name, "value": value}
                    for name, value in sorted(parameters.items())
                ],
            },
        )

    async def stop_instance(self, appliance_id: str) -> None:
        await self._request("DELETE", f"/appliance/{appliance_id}/power")

    async def delete_appliance(self, appliance_id: str) -> None:
        await self._request("DELETE", f"/appliance/{appliance_id}")
        logger.info(
            "Appliance deleted: id=%s",
            appliance_id,
            extra={"resource_id": appliance_id},
        )

    async def add_nodes(self, primary_id: str, request: ApplianceRequest) -> str:
        payload = await self._request(
            "POST",
            f"/appliance/{primary_id}/nodes",
            json={"name": request.name, **dict(request.attributes)},
        )
        return _require_id(payload, f"POST /appliance/{primary_id}/nodes")

    # ── Shared-parent children ───────────────────────────────────

    async def add_child(self, parent_id: str, attributes: Mapping[str, Any]) -> str:
        payload = await self._request(
            "POST", f"/internet/{parent_id}/subnet", json=dict(attributes),
        )
        return _require_id(payload, f"POST /internet/{parent_id}/subnet")

    async def update_child(
        self, parent_id: str, child_id: str, attributes: Mapping[str, Any],
    ) -> None:
        await self._request(
            "PUT", f"/internet/{parent_id}/subnet/{child_id}", json=dict(attributes),
        )

    async def delete_child(self, parent_id: str, child_id: str) -> None:
        await self._request("DELETE", f"/internet/{parent_id}/subnet/{child_id}")

    async def read_child(self, child_id: str) -> ChildResource:
        payload = await self._request("GET", f"/subnet/{child_id}")
        if not isinstance(payload, dict):
            raise ProviderAPIError(0, f"expected object from /subnet/{child_id}")
        attributes = {
            k: v for k, v in payload.items() if k not in ("id", "internet_id")
        }
        return ChildResource(
            id=str(payload.get("id", child_id)),
            parent_id=str(payload.get("internet_id", "")),
            attributes=attributes,
        )


# ── Payload parsing ──────────────────────────────────────────────


def _require_id(payload: Any, what: str) -> str:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ProviderAPIError(0, f"{what} returned no id")
    return str(payload["id"])


def _parse_appliance(payload: Any, appliance_id: str) -> RemoteApplianceState:
    if not isinstance(payload, dict):
        raise ProviderAPIError(0, f"expected object for appliance {appliance_id}")
    instance = payload.get("instance") or {}
    if not isinstance(instance, dict):
        raise ProviderAPIError(
            0, f"expected object for instance of appliance {appliance_id}",
        )
    try:
        return RemoteApplianceState(
            id=str(payload.get("id", appliance_id)),
            availability=Availability(payload.get("availability")),
            instance_status=InstanceStatus(instance.get("status")),
            health_status=HealthStatus.parse(instance.get("health")),
        )
    except ValueError as e:
        raise ProviderAPIError(
            0, f"unexpected appliance state for {appliance_id}: {e}",
        ) from e


def _parse_job_status(payload: Any) -> JobStatusFeed:
    if not isinstance(payload, dict):
        raise ProviderAPIError(0, "malformed job status feed: expected object")
    try:
        jobs = tuple(
            JobRecord(
                job_type=str(job["job_type"]),
                job_status=JobStatus(job["job_status"]),
            )
            for job in payload.get("jobs") or ()
        )
        add_nodes = tuple(
            AddNodeRecord(
                appliance_id=str(node["appliance_id"]),
                availability=Availability(node["availability"]),
            )
            for node in payload.get("add_nodes") or ()
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ProviderAPIError(0, f"malformed job status feed: {e}") from e
    return JobStatusFeed(jobs=jobs, add_nodes=add_nodes)
