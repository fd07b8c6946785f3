"""Agent pool topology validation and normalization.

A cluster's node pools are submitted as ``agentPoolProfiles``. Exactly one
pool hosts system workloads, and at creation time that is always the first
pool: whatever mode the caller gave it is replaced with ``System``. The
remaining pools are passed through untouched.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from itertools import cycle, islice
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_POOL_NAME = "pool1"
DEFAULT_NODE_COUNT = 3
DEFAULT_VM_SIZE = "Standard_DS2_v2"

# AKS limits Linux pool names to 12 lowercase alphanumerics
VALID_POOL_NAME_PATTERN = r"^[a-z][a-z0-9]{0,11}$"


class PoolMode(str, Enum):
    SYSTEM = "System"
    USER = "User"


class OsType(str, Enum):
    LINUX = "Linux"
    WINDOWS = "Windows"


class TopologyError(Exception):
    """Base class for invalid topology specifications."""

    pass


class EmptyTopology(TopologyError):
    """Raised when a topology contains no agent pools."""

    pass


class DuplicateAgentPool(TopologyError):
    """Raised when two pools in a topology share a name."""

    pass


class AgentPoolSpec(BaseModel):
    """Caller-supplied agent pool specification.

    Unknown keys are kept and forwarded as-is, so any pool property the
    API accepts (availability zones, autoscaling, taints) can be passed.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Annotated[str, Field(pattern=VALID_POOL_NAME_PATTERN)]
    count: Annotated[int, Field(ge=0, alias="nodeCount")] = DEFAULT_NODE_COUNT
    vm_size: str = Field(DEFAULT_VM_SIZE, alias="vmSize")
    os_type: OsType = Field(OsType.LINUX, alias="osType")
    mode: PoolMode = PoolMode.USER
    disk_size_gb: Annotated[int | None, Field(ge=30, le=2048, alias="diskSizeGB")] = None

    @field_validator("vm_size")
    @classmethod
    def validate_vm_size(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("vmSize cannot be empty")
        return v

    def to_profile(self) -> dict[str, Any]:
        """Convert to an ARM ``agentPoolProfiles`` entry."""
        profile: dict[str, Any] = {
            "name": self.name,
            "count": self.count,
            "vmSize": self.vm_size,
            "osType": self.os_type.value,
            "mode": self.mode.value,
        }
        if self.disk_size_gb is not None:
            profile["osDiskSizeGB"] = self.disk_size_gb
        if self.model_extra:
            profile.update(self.model_extra)
        return profile


def default_topology() -> list[AgentPoolSpec]:
    """Single three-node Linux pool used when no topology is given."""
    return [AgentPoolSpec(name=DEFAULT_POOL_NAME, count=DEFAULT_NODE_COUNT)]


def agent_pools(
    names: Sequence[str],
    counts: Sequence[int],
    sizes: Sequence[str] = (DEFAULT_VM_SIZE,),
    os_types: Sequence[str] = (OsType.LINUX.value,),
) -> list[AgentPoolSpec]:
    """Build several pool specs from parallel sequences.

    ``sizes`` and ``os_types`` are recycled when shorter than ``names``.
    """
    if len(names) != len(counts):
        raise TopologyError("names and counts must have the same length")
    if not sizes or not os_types:
        raise TopologyError("sizes and os_types cannot be empty")

    return [
        AgentPoolSpec(name=name, count=count, vm_size=size, os_type=OsType(os_type))
        for name, count, size, os_type in zip(
            names,
            counts,
            islice(cycle(sizes), len(names)),
            islice(cycle(os_types), len(names)),
            strict=True,
        )
    ]


PoolInput = AgentPoolSpec | Mapping[str, Any]


def _coerce(pool: PoolInput) -> AgentPoolSpec:
    if isinstance(pool, AgentPoolSpec):
        return pool
    return AgentPoolSpec.model_validate(dict(pool))


def normalize_topology(pools: PoolInput | Sequence[PoolInput]) -> list[dict[str, Any]]:
    """Validate a topology and return request-ready pool profiles.

    Args:
        pools: One pool spec (or mapping), or an ordered sequence of them.

    Returns:
        ARM pool profiles in input order, the first forced to System mode.

    Raises:
        EmptyTopology: If the sequence is empty.
        DuplicateAgentPool: If two pools share a name.
        pydantic.ValidationError: If a pool mapping is malformed.
    """
    if isinstance(pools, (AgentPoolSpec, Mapping)):
        specs = [_coerce(pools)]
    else:
        specs = [_coerce(p) for p in pools]

    if not specs:
        raise EmptyTopology("A cluster needs at least one agent pool")

    seen: set[str] = set()
    for spec in specs:
        if spec.name in seen:
            raise DuplicateAgentPool(f"Agent pool name '{spec.name}' appears more than once")
        seen.add(spec.name)

    profiles = [spec.to_profile() for spec in specs]
    profiles[0]["mode"] = PoolMode.SYSTEM.value
    return profiles
