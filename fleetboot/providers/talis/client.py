"""Async HTTP client for the fleet API."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fleetboot.api.model import InstanceInfo
from fleetboot.api.spec import InstanceSpec
from fleetboot.core.exceptions import ProviderError, ProviderNotFoundError
from fleetboot.infra.http import BearerAuth, HttpClient, HttpError

from .types import (
    DeleteInstancesRequest,
    InstanceRequest,
    InstanceResponse,
    InstancesListResponse,
    ProjectResponse,
    UserCreateResponse,
    UserGetResponse,
)

API_PREFIX = "/api/v1"

_TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})
_REJECTED_STATUSES = frozenset({429})
_IDEMPOTENT_METHODS = frozenset({"GET", "DELETE"})


def _retry_statuses(method: str) -> frozenset[int]:
    """Statuses safe to retry for ``method``.

    A gateway error on a non-idempotent request may follow a committed
    write, so only an explicit rejection (429) is retried there.
    """
    return _TRANSIENT_STATUSES if method.upper() in _IDEMPOTENT_METHODS else _REJECTED_STATUSES


def _is_not_found(e: HttpError) -> bool:
    return e.status == 404 or e.code == 404


def to_instance_info(data: InstanceResponse) -> InstanceInfo:
    payload = data.get("payload") or {}
    return InstanceInfo(
        id=int(data["id"]),
        name=data.get("name", ""),
        status=str(data.get("status", "unknown")).lower(),
        public_ip=data.get("public_ip") or "",
        created_at=data.get("created_at", ""),
        idempotency_key=payload.get("idempotency_key", ""),
    )


def build_instance_request(
    spec: InstanceSpec,
    *,
    request_name: str,
    owner_id: int,
    project: str,
    idempotency_key: str,
) -> InstanceRequest:
    return {
        "name": request_name,
        "owner_id": owner_id,
        "project_name": project,
        "provider": spec.provider,
        "number_of_instances": 1,
        "provision": False,
        "region": spec.region,
        "size": spec.size,
        "image": spec.image,
        "tags": list(spec.tags),
        "ssh_key_name": spec.ssh_key_name,
        "ssh_key_path": spec.ssh_key_path,
        "volumes": [{
            "name": spec.volume.name,
            "size_gb": spec.volume.size_gb,
            "mount_point": spec.volume.mount_point,
        }],
        "payload": {"idempotency_key": idempotency_key},
    }


class TalisClient:
    """Fleet API client.

    Implements the FleetProvider protocol. Transient responses (429, 5xx
    gateway errors) are retried with exponential backoff; a 404, either as
    HTTP status or as structured ``{"code": 404}`` body, becomes
    ProviderNotFoundError; everything else becomes ProviderError.
    """

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 30) -> None:
        self._http = HttpClient(base_url, BearerAuth(api_key), timeout=timeout)
        self._log = logger.bind(component="talis")

    async def __aenter__(self) -> TalisClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _do_request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        statuses = _retry_statuses(method)
        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(lambda e: isinstance(e, HttpError) and e.status in statuses),
            stop=stop_after_attempt(5),
            wait=wait_exponential(multiplier=0.5, max=10),
            reraise=True,
        ):
            with attempt:
                n = attempt.retry_state.attempt_number
                if n > 1:
                    self._log.debug("{method} {path}: attempt {n}", method=method, path=path, n=n)
                result = await self._http.request(method, f"{API_PREFIX}{path}", json=json, params=params)
        return result

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            return await self._do_request(method, path, json, params)
        except HttpError as e:
            if _is_not_found(e):
                raise ProviderNotFoundError(
                    f"{method} {path}: not found", status=e.status, code=e.code, body=e.body,
                ) from e
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status,
            )
            raise ProviderError(
                f"{method} {path} failed: {e}", status=e.status, code=e.code, body=e.body,
            ) from e

    # =========================================================================
    # Users & projects
    # =========================================================================

    async def get_user(self, username: str) -> int:
        result: UserGetResponse = await self._request("GET", "/users", params={"username": username})
        return int(result["user"]["id"])

    async def create_user(self, username: str) -> int:
        result: UserCreateResponse = await self._request("POST", "/users", {"username": username})
        return int(result["user_id"])

    async def get_project(self, name: str, owner_id: int) -> int:
        result: ProjectResponse = await self._request(
            "GET", f"/projects/{name}", params={"owner_id": owner_id},
        )
        return int(result["id"])

    async def create_project(self, name: str, description: str, owner_id: int) -> int:
        result: ProjectResponse = await self._request(
            "POST", "/projects",
            {"name": name, "description": description, "owner_id": owner_id},
        )
        return int(result["id"])

    # =========================================================================
    # Instances
    # =========================================================================

    async def create_instance(
        self,
        spec: InstanceSpec,
        *,
        request_name: str,
        owner_id: int,
        project: str,
        idempotency_key: str,
    ) -> None:
        request = build_instance_request(
            spec,
            request_name=request_name,
            owner_id=owner_id,
            project=project,
            idempotency_key=idempotency_key,
        )
        await self._request("POST", "/instances", [request])

    async def list_instances(
        self, project: str, owner_id: int, statuses: frozenset[str] | None = None,
    ) -> list[InstanceInfo]:
        result: InstancesListResponse | list[InstanceResponse] | None = await self._request(
            "GET", f"/projects/{project}/instances", params={"owner_id": owner_id},
        )
        match result:
            case {"instances": list() as items}:
                raw = items
            case list() as items:
                raw = items
            case _:
                raw = []
        instances = [to_instance_info(item) for item in raw]
        if statuses is not None:
            instances = [i for i in instances if i.status in statuses]
        return instances

    async def get_instance(self, instance_id: int) -> InstanceInfo:
        result: InstanceResponse = await self._request("GET", f"/instances/{instance_id}")
        return to_instance_info(result)

    async def delete_instances(self, project: str, owner_id: int, instance_ids: Sequence[int]) -> None:
        request: DeleteInstancesRequest = {
            "owner_id": owner_id,
            "project_name": project,
            "instance_ids": list(instance_ids),
        }
        await self._request("DELETE", "/instances", dict(request))
