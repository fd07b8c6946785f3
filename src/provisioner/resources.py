"""Handles for deployed resources, parsed from Resource Manager responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .arm import parse_resource_id

MANAGED_CLUSTER_PROVIDER = "Microsoft.ContainerService"
MANAGED_CLUSTER_TYPE = "managedClusters"
AGENT_POOL_TYPE = "managedClusters/agentPools"
REGISTRY_PROVIDER = "Microsoft.ContainerRegistry"
REGISTRY_TYPE = "registries"
CONTAINER_GROUP_PROVIDER = "Microsoft.ContainerInstance"
CONTAINER_GROUP_TYPE = "containerGroups"

# Client id AKS reports in servicePrincipalProfile when a managed identity is used
MSI_CLIENT_ID = "msi"

TERMINAL_PROVISIONING_STATES = frozenset({"Succeeded", "Failed", "Canceled"})


class IdentityMode(str, Enum):
    """How a cluster manages its own infrastructure."""

    MANAGED = "Managed"
    SERVICE_PRINCIPAL = "ServicePrincipal"


@dataclass(frozen=True)
class ServicePrincipalProfile:
    client_id: str
    secret: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class AadProfile:
    """Directory-integration applications; separate from the management identity."""

    client_app_id: str | None = None
    server_app_id: str | None = None
    tenant_id: str | None = None
    managed: bool = False


@dataclass
class AgentPool:
    name: str
    count: int
    vm_size: str | None = None
    os_type: str | None = None
    mode: str | None = None
    disk_size_gb: int | None = None
    provisioning_state: str | None = None
    id: str | None = None

    @classmethod
    def from_arm(cls, data: dict[str, Any]) -> AgentPool:
        """Parse either a pool profile or an agentPools child resource."""
        props = data.get("properties", data)
        return cls(
            name=data.get("name", ""),
            count=props.get("count", 0),
            vm_size=props.get("vmSize"),
            os_type=props.get("osType"),
            mode=props.get("mode"),
            disk_size_gb=props.get("osDiskSizeGB"),
            provisioning_state=props.get("provisioningState"),
            id=data.get("id"),
        )


@dataclass
class ClusterResource:
    """A managed Kubernetes cluster as last read from Resource Manager."""

    name: str
    location: str
    resource_group: str
    subscription_id: str
    id: str = ""
    kubernetes_version: str | None = None
    rbac_enabled: bool = False
    private_cluster: bool = False
    identity_mode: IdentityMode = IdentityMode.MANAGED
    topology: list[AgentPool] = field(default_factory=list)
    service_principal_profile: ServicePrincipalProfile | None = None
    identity_profile: dict[str, Any] = field(default_factory=dict)
    aad_profile: AadProfile | None = None
    provisioning_state: str | None = None
    fqdn: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_provisioned(self) -> bool:
        return self.provisioning_state in TERMINAL_PROVISIONING_STATES

    @classmethod
    def from_arm(cls, data: dict[str, Any]) -> ClusterResource:
        """Build a handle from a managedClusters GET/PUT response body."""
        props: dict[str, Any] = data.get("properties") or {}
        id_parts = parse_resource_id(data.get("id", ""))

        sp_data = props.get("servicePrincipalProfile") or {}
        sp_profile = (
            ServicePrincipalProfile(client_id=sp_data["clientId"], secret=sp_data.get("secret"))
            if sp_data.get("clientId")
            else None
        )

        managed = bool(data.get("identity")) or (
            sp_profile is not None and sp_profile.client_id == MSI_CLIENT_ID
        )

        aad_data = props.get("aadProfile")
        aad_profile = (
            AadProfile(
                client_app_id=aad_data.get("clientAppID"),
                server_app_id=aad_data.get("serverAppID"),
                tenant_id=aad_data.get("tenantID"),
                managed=bool(aad_data.get("managed", False)),
            )
            if aad_data
            else None
        )

        api_access = props.get("apiServerAccessProfile") or {}

        return cls(
            name=data.get("name", id_parts.get("name", "")),
            location=data.get("location", ""),
            resource_group=id_parts.get("resource_group", ""),
            subscription_id=id_parts.get("subscription", ""),
            id=data.get("id", ""),
            kubernetes_version=props.get("kubernetesVersion"),
            rbac_enabled=bool(props.get("enableRBAC", False)),
            private_cluster=bool(api_access.get("enablePrivateCluster", False)),
            identity_mode=IdentityMode.MANAGED if managed else IdentityMode.SERVICE_PRINCIPAL,
            topology=[AgentPool.from_arm(p) for p in props.get("agentPoolProfiles") or []],
            service_principal_profile=sp_profile,
            identity_profile=props.get("identityProfile") or {},
            aad_profile=aad_profile,
            provisioning_state=props.get("provisioningState"),
            fqdn=props.get("fqdn") or props.get("privateFQDN"),
            tags=data.get("tags") or {},
            properties=props,
        )


@dataclass
class ContainerRegistry:
    name: str
    location: str
    resource_group: str
    id: str = ""
    login_server: str | None = None
    sku: str | None = None
    admin_user_enabled: bool = False
    provisioning_state: str | None = None

    @classmethod
    def from_arm(cls, data: dict[str, Any]) -> ContainerRegistry:
        props = data.get("properties") or {}
        id_parts = parse_resource_id(data.get("id", ""))
        return cls(
            name=data.get("name", ""),
            location=data.get("location", ""),
            resource_group=id_parts.get("resource_group", ""),
            id=data.get("id", ""),
            login_server=props.get("loginServer"),
            sku=(data.get("sku") or {}).get("name"),
            admin_user_enabled=bool(props.get("adminUserEnabled", False)),
            provisioning_state=props.get("provisioningState"),
        )


@dataclass
class ContainerGroup:
    """A container instance group as last read from Resource Manager."""

    name: str
    location: str
    resource_group: str
    id: str = ""
    os_type: str | None = None
    restart_policy: str | None = None
    image: str | None = None
    ip_address: str | None = None
    fqdn: str | None = None
    principal_id: str | None = None
    provisioning_state: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_arm(cls, data: dict[str, Any]) -> ContainerGroup:
        props = data.get("properties") or {}
        id_parts = parse_resource_id(data.get("id", ""))
        containers = props.get("containers") or []
        ip = props.get("ipAddress") or {}
        return cls(
            name=data.get("name", ""),
            location=data.get("location", ""),
            resource_group=id_parts.get("resource_group", ""),
            id=data.get("id", ""),
            os_type=props.get("osType"),
            restart_policy=props.get("restartPolicy"),
            image=(containers[0].get("properties") or {}).get("image") if containers else None,
            ip_address=ip.get("ip"),
            fqdn=ip.get("fqdn"),
            principal_id=(data.get("identity") or {}).get("principalId"),
            provisioning_state=props.get("provisioningState"),
            tags=data.get("tags") or {},
        )


@dataclass(frozen=True)
class RoleAssignment:
    id: str
    name: str
    scope: str
    principal_id: str
    role_definition_id: str
    role_name: str | None = None

    @classmethod
    def from_arm(cls, data: dict[str, Any], role_name: str | None = None) -> RoleAssignment:
        props = data.get("properties") or {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            scope=props.get("scope", ""),
            principal_id=props.get("principalId", ""),
            role_definition_id=props.get("roleDefinitionId", ""),
            role_name=role_name,
        )
