"""Provider-side records observed by the reconciliation engine.

These are read-only snapshots: the engine never mutates them, it only
re-reads them on every poll iteration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Availability(str, Enum):
    MIGRATING = 'migrating'
    AVAILABLE = 'available'
    FAILED = 'failed'


class InstanceStatus(str, Enum):
    UP = 'up'
    DOWN = 'down'


class HealthStatus(str, Enum):
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'
    UNKNOWN = 'unknown'

    @classmethod
    def parse(cls, value: str | None) -> HealthStatus:
        """Map any unrecognised provider value to ``unknown``."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class JobStatus(str, Enum):
    PENDING = 'Pending'
    RUNNING = 'Running'
    DONE = 'Done'
    FAILED = 'Failed'


# Job types reported by the provider status feed.
JOB_TYPE_UPDATE = 'Update'
JOB_TYPE_SET_PARAMETER = 'SetParameter'
JOB_TYPE_ADD_NODE = 'AddNode'


@dataclass(frozen=True, slots=True)
class RemoteApplianceState:
    """Snapshot returned by the appliance read endpoint."""

    id: str
    availability: Availability
    instance_status: InstanceStatus
    health_status: HealthStatus = HealthStatus.UNKNOWN

    def as_dict(self) -> dict[str, str]:
        return {
            'id': self.id,
            'availability': self.availability.value,
            'instance_status': self.instance_status.value,
            'health_status': self.health_status.value,
        }


@dataclass(frozen=True, slots=True)
class JobRecord:
    job_type: str
    job_status: JobStatus


@dataclass(frozen=True, slots=True)
class AddNodeRecord:
    appliance_id: str
    availability: Availability


@dataclass(frozen=True, slots=True)
class JobStatusFeed:
    """Job-status feed of one appliance.

    ``add_nodes`` is only populated while a node fan-out job is running.
    """

    jobs: tuple[JobRecord, ...] = ()
    add_nodes: tuple[AddNodeRecord, ...] = ()

    def is_done(self, job_type: str) -> bool:
        return any(
            job.job_type == job_type and job.job_status is JobStatus.DONE
            for job in self.jobs
        )

    def failed_nodes(self, appliance_id: str) -> list[AddNodeRecord]:
        return [
            node for node in self.add_nodes
            if node.appliance_id == appliance_id
            and node.availability is Availability.FAILED
        ]


@dataclass(frozen=True, slots=True)
class ApplianceRequest:
    """Create/update body for an appliance.

    ``attributes`` is the provider DTO body, already expanded from the
    caller's model. ``parameters`` are configuration parameters applied
    through a separate ``SetParameter`` job.
    """

    name: str
    attributes: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    parameters: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({}),
    )


@dataclass(frozen=True, slots=True)
class ChildResource:
    """A sub-resource living in a shared parent's child list."""

    id: str
    parent_id: str
    attributes: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}),
    )

    def as_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'parent_id': self.parent_id,
            **dict(self.attributes),
        }
