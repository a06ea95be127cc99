"""Fleet API request and response types.

TypedDicts for API payloads - no conversion needed.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# =============================================================================
# Response Types
# =============================================================================


class UserResponse(TypedDict):
    id: int
    username: str


class UserGetResponse(TypedDict):
    user: UserResponse


class UserCreateResponse(TypedDict):
    user_id: int


class ProjectResponse(TypedDict):
    id: int
    name: str
    description: NotRequired[str]
    owner_id: NotRequired[int]


class InstanceResponse(TypedDict):
    id: int
    name: str
    status: str
    public_ip: NotRequired[str | None]
    created_at: NotRequired[str]
    payload: NotRequired[dict[str, str] | None]


class InstancesListResponse(TypedDict):
    instances: list[InstanceResponse]


# =============================================================================
# Request Types
# =============================================================================


class VolumeRequest(TypedDict):
    name: str
    size_gb: int
    mount_point: str


class InstanceRequest(TypedDict):
    name: str
    owner_id: int
    project_name: str
    provider: str
    number_of_instances: int
    provision: bool
    region: str
    size: str
    image: str
    tags: list[str]
    ssh_key_name: str
    ssh_key_path: str
    volumes: list[VolumeRequest]
    payload: dict[str, str]


class DeleteInstancesRequest(TypedDict):
    owner_id: int
    project_name: str
    instance_ids: list[int]
