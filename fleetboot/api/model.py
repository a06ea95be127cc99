from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

type InstanceStatus = Literal[
    "pending",
    "provisioning",
    "ready",
    "terminated",
    "unknown",
]

PENDING_STATUSES: frozenset[str] = frozenset({"pending", "provisioning"})


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """Persisted outcome of reconciling one InstanceSpec."""

    id: int
    name: str
    public_ip: str = ""

    @property
    def ready(self) -> bool:
        return bool(self.public_ip)

    def to_json(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "public_ip": self.public_ip}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> InstanceRecord:
        return cls(
            id=int(data.get("id") or 0),
            name=str(data.get("name") or ""),
            public_ip=str(data.get("public_ip") or ""),
        )


@dataclass(frozen=True, slots=True)
class PersistedState:
    """Top-level persisted aggregate.

    A missing or zero identifier means "not yet created", never "deleted".
    """

    user_id: int = 0
    projects: dict[str, int] = field(default_factory=dict)
    instances: dict[str, tuple[InstanceRecord, ...]] = field(default_factory=dict)

    def project_id(self, project: str) -> int:
        return self.projects.get(project, 0)

    def records(self, project: str) -> tuple[InstanceRecord, ...]:
        return self.instances.get(project, ())

    def find(self, project: str, name: str) -> InstanceRecord | None:
        return next((r for r in self.records(project) if r.name == name), None)

    def with_records(self, project: str, records: tuple[InstanceRecord, ...]) -> PersistedState:
        return replace(self, instances={**self.instances, project: records})

    def to_json(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "projects": dict(self.projects),
            "instances": {
                project: [r.to_json() for r in records]
                for project, records in self.instances.items()
            },
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> PersistedState:
        projects = data.get("projects") or {}
        instances = data.get("instances") or {}
        return cls(
            user_id=int(data.get("user_id") or 0),
            projects={str(k): int(v or 0) for k, v in projects.items()},
            instances={
                str(project): tuple(InstanceRecord.from_json(r) for r in (records or ()))
                for project, records in instances.items()
            },
        )


@dataclass(frozen=True, slots=True)
class InstanceInfo:
    """Instance as reported by the fleet provider."""

    id: int
    name: str
    status: str
    public_ip: str = ""
    created_at: str = ""
    idempotency_key: str = ""
