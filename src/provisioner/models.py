"""Pydantic models for caller-supplied specifications.

These models provide:
1. Type-safe parsing of YAML/JSON cluster and registry specs
2. Validation at the boundary (fail fast, fail loudly)
3. camelCase aliases matching the Resource Manager property names
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from .topology import AgentPoolSpec, OsType, default_topology

# Cluster names: 1-63 alphanumerics, hyphens and underscores
VALID_CLUSTER_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,62}$"
# Registry names: 5-50 alphanumerics
VALID_REGISTRY_NAME_PATTERN = r"^[a-zA-Z0-9]{5,50}$"

VALID_REGISTRY_SKUS = {"Basic", "Standard", "Premium"}

# Container group names: 1-63 lowercase alphanumerics and inner hyphens
VALID_CONTAINER_GROUP_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"

DEFAULT_CONTAINER_PORTS = (80, 443)


class ServicePrincipalSpec(BaseModel):
    """Existing application credentials for a service principal cluster."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    client_id: Annotated[str, Field(min_length=1, alias="clientId")]
    secret: SecretStr | None = None


class ClusterSpec(BaseModel):
    """Desired state of a managed Kubernetes cluster."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(pattern=VALID_CLUSTER_NAME_PATTERN)]
    resource_group: str | None = Field(None, alias="resourceGroup")
    location: str | None = None
    dns_prefix: str | None = Field(None, alias="dnsPrefix")
    kubernetes_version: str | None = Field(None, alias="kubernetesVersion")
    enable_rbac: bool = Field(False, alias="enableRbac")
    agent_pools: AgentPoolSpec | list[AgentPoolSpec] = Field(
        default_factory=default_topology, alias="agentPools"
    )

    login_user: str = Field("", alias="loginUser")
    login_passkey: str = Field("", alias="loginPasskey")

    # Identity: managed identity unless explicitly disabled
    managed_identity: bool = Field(True, alias="managedIdentity")
    service_principal: ServicePrincipalSpec | None = Field(None, alias="servicePrincipal")

    private_cluster: bool = Field(False, alias="privateCluster")

    # Deep-merged over the computed request properties; caller wins on conflicts
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    wait_for_completion: bool = Field(True, alias="waitForCompletion")

    @field_validator("location")
    @classmethod
    def normalize_location(cls, v: str | None) -> str | None:
        return v.replace(" ", "").lower() if v else v


class RegistrySpec(BaseModel):
    """Desired state of a container registry."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(pattern=VALID_REGISTRY_NAME_PATTERN)]
    resource_group: str | None = Field(None, alias="resourceGroup")
    location: str | None = None
    sku: str = "Standard"
    admin_user_enabled: bool = Field(False, alias="adminUserEnabled")
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    wait_for_completion: bool = Field(True, alias="waitForCompletion")

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        if v not in VALID_REGISTRY_SKUS:
            raise ValueError(f"sku must be one of {VALID_REGISTRY_SKUS}")
        return v


class PortProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"


class RestartPolicy(str, Enum):
    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    NEVER = "Never"


class ContainerPort(BaseModel):
    """A network port opened on a container group."""

    model_config = ConfigDict(extra="forbid")

    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: PortProtocol = PortProtocol.TCP

    def to_arm(self) -> dict[str, Any]:
        return {"port": self.port, "protocol": self.protocol.value}


def container_ports(
    ports: tuple[int, ...] | list[int] = DEFAULT_CONTAINER_PORTS,
    protocol: PortProtocol | str = PortProtocol.TCP,
) -> list[ContainerPort]:
    """Ports to open, all with the same protocol."""
    return [ContainerPort(port=port, protocol=PortProtocol(protocol)) for port in ports]


class ContainerGroupSpec(BaseModel):
    """Desired state of a single-container instance group.

    Secure environment variables are sent as ``secureValue`` and never
    echoed back by the service.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(pattern=VALID_CONTAINER_GROUP_NAME_PATTERN)]
    resource_group: str | None = Field(None, alias="resourceGroup")
    location: str | None = None
    container: str | None = None
    image: Annotated[str, Field(min_length=1)]
    cores: Annotated[float, Field(gt=0)] = 1
    memory_gb: Annotated[float, Field(gt=0, alias="memoryInGB")] = 8
    os_type: OsType = Field(OsType.LINUX, alias="osType")
    command: list[str] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict, alias="envVars")
    secure_env_vars: dict[str, SecretStr] = Field(default_factory=dict, alias="secureEnvVars")
    ports: list[ContainerPort] = Field(default_factory=container_ports)
    dns_name: str | None = Field(None, alias="dnsName")
    public_ip: bool = Field(True, alias="publicIp")
    restart_policy: RestartPolicy = Field(RestartPolicy.ALWAYS, alias="restartPolicy")

    # System-assigned identity unless explicitly disabled
    managed_identity: bool = Field(True, alias="managedIdentity")

    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    wait_for_completion: bool = Field(True, alias="waitForCompletion")

    @field_validator("location")
    @classmethod
    def normalize_location(cls, v: str | None) -> str | None:
        return v.replace(" ", "").lower() if v else v

    @field_validator("ports", mode="before")
    @classmethod
    def expand_port_numbers(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"port": item} if isinstance(item, int) else item for item in v]
        return v
