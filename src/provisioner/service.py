"""Public operation surface: clusters, agent pools, registries, container groups, roles.

ClusterProvisioningService is built from explicit collaborators rather
than reaching for globals, so tests can substitute any of them:

    credential = get_management_credential(config.managed_identity_client_id)
    service = ClusterProvisioningService.from_config(config, credential)
    cluster = service.create_cluster(ClusterSpec(name="mycluster"))
    registry = service.get_registry("myregistry")
    service.grant_role(registry, "AcrPull", cluster)
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential

from .arm import ArmClient, resource_group_path, resource_path
from .config import ProvisionerConfig
from .directory import DirectoryCredentialBroker, GraphDirectory
from .instances import ImageRegistryCredential, build_container_group_request
from .models import ClusterSpec, ContainerGroupSpec, RegistrySpec
from .paging import list_resources
from .principals import PrincipalRef, PrincipalResolver
from .provisioning import ProvisioningEngine, wait_for_deletion, wait_for_terminal_state
from .resources import (
    AGENT_POOL_TYPE,
    CONTAINER_GROUP_PROVIDER,
    CONTAINER_GROUP_TYPE,
    MANAGED_CLUSTER_PROVIDER,
    MANAGED_CLUSTER_TYPE,
    REGISTRY_PROVIDER,
    REGISTRY_TYPE,
    AgentPool,
    ClusterResource,
    ContainerGroup,
    ContainerRegistry,
    RoleAssignment,
)
from .roles import RoleAssignmentClient, RoleAssignmentOrchestrator
from .rotation import CredentialKind, CredentialRotator
from .topology import AgentPoolSpec, DuplicateAgentPool

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Resource collections the service can list."""

    MANAGED_CLUSTER = "managedClusters"
    REGISTRY = "registries"
    CONTAINER_GROUP = "containerGroups"

    @property
    def provider(self) -> str:
        return _KIND_PROVIDERS[self]


_KIND_PROVIDERS = {
    ResourceKind.MANAGED_CLUSTER: MANAGED_CLUSTER_PROVIDER,
    ResourceKind.REGISTRY: REGISTRY_PROVIDER,
    ResourceKind.CONTAINER_GROUP: CONTAINER_GROUP_PROVIDER,
}


class RegistryError(Exception):
    """Raised for registry operations the resource's configuration does not allow."""

    pass


class ClusterProvisioningService:
    """Provision clusters, registries and container groups and wire up access between them."""

    def __init__(
        self,
        arm: ArmClient,
        broker: DirectoryCredentialBroker,
        config: ProvisionerConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._arm = arm
        self._broker = broker
        self._config = config
        self._sleep = sleep
        self._clock = clock
        self._engine = ProvisioningEngine(arm, broker, config, sleep=sleep, clock=clock)
        self._roles = RoleAssignmentOrchestrator(
            PrincipalResolver(broker), RoleAssignmentClient(arm)
        )
        self._rotator = CredentialRotator(arm, broker, config, sleep=sleep, clock=clock)

    @classmethod
    def from_config(
        cls,
        config: ProvisionerConfig,
        credential: TokenCredential,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> ClusterProvisioningService:
        """Wire the service to live Resource Manager and Graph endpoints."""
        broker = DirectoryCredentialBroker(
            GraphDirectory(credential, config),
            secret_duration=timedelta(days=config.secret_duration_days),
            propagation_wait_seconds=config.directory_propagation_wait_seconds,
            sleep=sleep,
        )
        return cls(ArmClient(credential, config), broker, config, sleep=sleep, clock=clock)

    @property
    def engine(self) -> ProvisioningEngine:
        return self._engine

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _resource_group(self, resource_group: str | None) -> str:
        rg = resource_group or self._config.resource_group
        if not rg:
            raise ValueError("No resource group given and AZURE_RESOURCE_GROUP is not set")
        return rg

    def _location(self, location: str | None) -> str:
        loc = location or self._config.location
        if not loc:
            raise ValueError("No location given and AZURE_LOCATION is not set")
        return loc

    def _path(self, resource_group: str, provider: str, resource_type: str, name: str) -> str:
        return resource_path(self._arm.subscription_id, resource_group, provider, resource_type, name)

    def _wait(self, path: str, api_version: str) -> dict[str, Any]:
        return wait_for_terminal_state(
            self._arm,
            path,
            api_version,
            timeout_seconds=self._config.provision_timeout_seconds,
            poll_interval_seconds=self._config.provision_poll_interval_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _wait_deleted(self, path: str, api_version: str) -> None:
        wait_for_deletion(
            self._arm,
            path,
            api_version,
            timeout_seconds=self._config.provision_timeout_seconds,
            poll_interval_seconds=self._config.provision_poll_interval_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _cluster_api(self) -> str:
        return self._arm.api_version_for(MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE)

    def _pool_api(self) -> str:
        return self._arm.api_version_for(MANAGED_CLUSTER_PROVIDER, AGENT_POOL_TYPE)

    def _registry_api(self) -> str:
        return self._arm.api_version_for(REGISTRY_PROVIDER, REGISTRY_TYPE)

    def _container_group_api(self) -> str:
        return self._arm.api_version_for(CONTAINER_GROUP_PROVIDER, CONTAINER_GROUP_TYPE)

    # ------------------------------------------------------------------
    # clusters
    # ------------------------------------------------------------------

    def create_cluster(self, spec: ClusterSpec) -> ClusterResource:
        """Create a managed cluster (see ProvisioningEngine.provision)."""
        return self._engine.provision(
            spec, self._resource_group(spec.resource_group), self._location(spec.location)
        )

    def get_cluster(self, name: str, resource_group: str | None = None) -> ClusterResource:
        rg = self._resource_group(resource_group)
        body = self._arm.request(
            "GET",
            self._path(rg, MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE, name),
            api_version=self._cluster_api(),
        )
        return ClusterResource.from_arm(body)

    def delete_cluster(
        self, name: str, resource_group: str | None = None, wait: bool = False
    ) -> None:
        rg = self._resource_group(resource_group)
        path = self._path(rg, MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE, name)
        self._arm.request("DELETE", path, api_version=self._cluster_api())
        logger.info("Cluster deletion requested", extra={"cluster": name, "resource_group": rg})
        if wait:
            self._wait_deleted(path, self._cluster_api())

    def list_clusters(self, resource_group: str | None = None) -> list[ClusterResource]:
        """Clusters in a resource group, or in the whole subscription if none is set."""
        return [
            ClusterResource.from_arm(item)
            for item in self.list_resources(ResourceKind.MANAGED_CLUSTER, resource_group)
        ]

    def list_kubernetes_versions(self, location: str | None = None) -> list[str]:
        return self._engine.list_kubernetes_versions(self._location(location))

    def get_kubeconfig(self, cluster: ClusterResource, admin: bool = False) -> str:
        """Kubeconfig YAML for a cluster's user or admin credential."""
        operation = "listClusterAdminCredential" if admin else "listClusterUserCredential"
        path = self._path(
            cluster.resource_group, MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE, cluster.name
        )
        body = self._arm.request("POST", f"{path}/{operation}", api_version=self._cluster_api())
        kubeconfigs = body.get("kubeconfigs") or []
        if not kubeconfigs:
            raise ValueError(f"No kubeconfig returned for cluster '{cluster.name}'")
        return base64.b64decode(kubeconfigs[0]["value"]).decode("utf-8")

    # ------------------------------------------------------------------
    # agent pools
    # ------------------------------------------------------------------

    def _pool_path(self, cluster: ClusterResource, pool_name: str) -> str:
        return self._path(
            cluster.resource_group,
            MANAGED_CLUSTER_PROVIDER,
            AGENT_POOL_TYPE,
            f"{cluster.name}/{pool_name}",
        )

    def list_agent_pools(self, cluster: ClusterResource) -> list[AgentPool]:
        path = self._path(
            cluster.resource_group, MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE, cluster.name
        )
        items = list_resources(self._arm, f"{path}/agentPools", self._pool_api())
        return [AgentPool.from_arm(item) for item in items]

    def get_agent_pool(self, cluster: ClusterResource, pool_name: str) -> AgentPool:
        body = self._arm.request(
            "GET", self._pool_path(cluster, pool_name), api_version=self._pool_api()
        )
        return AgentPool.from_arm(body)

    def create_agent_pool(
        self, cluster: ClusterResource, spec: AgentPoolSpec, wait: bool = True
    ) -> AgentPool:
        """Add a pool to an existing cluster.

        Raises:
            DuplicateAgentPool: If the cluster already has a pool of that name.
        """
        existing = {pool.name for pool in self.list_agent_pools(cluster)}
        if spec.name in existing:
            raise DuplicateAgentPool(
                f"Cluster '{cluster.name}' already has an agent pool named '{spec.name}'"
            )

        profile = spec.to_profile()
        profile.pop("name")
        path = self._pool_path(cluster, spec.name)
        body = self._arm.request(
            "PUT", path, api_version=self._pool_api(), body={"properties": profile}
        )
        logger.info("Agent pool creation requested", extra={"cluster": cluster.name, "pool": spec.name})
        if wait:
            body = self._wait(path, self._pool_api())
        return AgentPool.from_arm(body)

    def delete_agent_pool(self, cluster: ClusterResource, pool_name: str, wait: bool = False) -> None:
        path = self._pool_path(cluster, pool_name)
        self._arm.request("DELETE", path, api_version=self._pool_api())
        logger.info("Agent pool deletion requested", extra={"cluster": cluster.name, "pool": pool_name})
        if wait:
            self._wait_deleted(path, self._pool_api())

    # ------------------------------------------------------------------
    # registries
    # ------------------------------------------------------------------

    def create_registry(self, spec: RegistrySpec) -> ContainerRegistry:
        rg = self._resource_group(spec.resource_group)
        path = self._path(rg, REGISTRY_PROVIDER, REGISTRY_TYPE, spec.name)
        body: dict[str, Any] = {
            "location": self._location(spec.location),
            "sku": {"name": spec.sku},
            "properties": {"adminUserEnabled": spec.admin_user_enabled, **spec.properties},
        }
        if spec.tags:
            body["tags"] = dict(spec.tags)

        result = self._arm.request("PUT", path, api_version=self._registry_api(), body=body)
        logger.info("Registry creation requested", extra={"registry": spec.name, "resource_group": rg})
        if spec.wait_for_completion:
            result = self._wait(path, self._registry_api())
        return ContainerRegistry.from_arm(result)

    def get_registry(self, name: str, resource_group: str | None = None) -> ContainerRegistry:
        rg = self._resource_group(resource_group)
        body = self._arm.request(
            "GET", self._path(rg, REGISTRY_PROVIDER, REGISTRY_TYPE, name), api_version=self._registry_api()
        )
        return ContainerRegistry.from_arm(body)

    def delete_registry(self, name: str, resource_group: str | None = None, wait: bool = False) -> None:
        rg = self._resource_group(resource_group)
        path = self._path(rg, REGISTRY_PROVIDER, REGISTRY_TYPE, name)
        self._arm.request("DELETE", path, api_version=self._registry_api())
        logger.info("Registry deletion requested", extra={"registry": name, "resource_group": rg})
        if wait:
            self._wait_deleted(path, self._registry_api())

    def list_registries(self, resource_group: str | None = None) -> list[ContainerRegistry]:
        return [
            ContainerRegistry.from_arm(item)
            for item in self.list_resources(ResourceKind.REGISTRY, resource_group)
        ]

    def list_registry_credentials(self, registry: ContainerRegistry) -> dict[str, Any]:
        """Admin username and passwords of a registry.

        Raises:
            RegistryError: If the admin user is disabled.
        """
        if not registry.admin_user_enabled:
            raise RegistryError(f"Admin user account is disabled on registry '{registry.name}'")
        path = self._path(registry.resource_group, REGISTRY_PROVIDER, REGISTRY_TYPE, registry.name)
        creds = self._arm.request("POST", f"{path}/listCredentials", api_version=self._registry_api())
        return {
            "username": creds.get("username"),
            "passwords": {p["name"]: p["value"] for p in creds.get("passwords") or []},
        }

    def get_registry_credential(self, registry: ContainerRegistry) -> ImageRegistryCredential:
        """Admin login for pulling from a registry, using its first password.

        Raises:
            RegistryError: If the admin user is disabled or no login is available.
        """
        if not registry.login_server:
            raise RegistryError(f"Registry '{registry.name}' has no login server")
        creds = self.list_registry_credentials(registry)
        passwords = list(creds["passwords"].values())
        if not creds["username"] or not passwords:
            raise RegistryError(f"Registry '{registry.name}' returned no admin credentials")
        return ImageRegistryCredential(
            server=registry.login_server, username=creds["username"], password=passwords[0]
        )

    def list_registry_policies(self, registry: ContainerRegistry) -> dict[str, Any]:
        path = self._path(registry.resource_group, REGISTRY_PROVIDER, REGISTRY_TYPE, registry.name)
        return self._arm.request("GET", f"{path}/listPolicies", api_version=self._registry_api())

    def list_registry_usages(self, registry: ContainerRegistry) -> list[dict[str, Any]]:
        """Storage and webhook quotas of a registry, one entry per metric."""
        path = self._path(registry.resource_group, REGISTRY_PROVIDER, REGISTRY_TYPE, registry.name)
        body = self._arm.request("GET", f"{path}/listUsages", api_version=self._registry_api())
        return list(body.get("value") or [])

    # ------------------------------------------------------------------
    # container groups
    # ------------------------------------------------------------------

    def create_container_group(
        self,
        spec: ContainerGroupSpec,
        registries: Sequence[ContainerRegistry | ImageRegistryCredential] = (),
    ) -> ContainerGroup:
        """Run a container, pulling from private registries where given.

        A ContainerRegistry in ``registries`` is resolved to its admin login
        (see get_registry_credential).

        Raises:
            RegistryError: If a registry's admin credentials cannot be read.
            ProvisioningFailed: If the group ends in a failed state.
        """
        rg = self._resource_group(spec.resource_group)
        credentials = [
            r if isinstance(r, ImageRegistryCredential) else self.get_registry_credential(r)
            for r in registries
        ]
        body = build_container_group_request(spec, self._location(spec.location), credentials)
        path = self._path(rg, CONTAINER_GROUP_PROVIDER, CONTAINER_GROUP_TYPE, spec.name)

        result = self._arm.request("PUT", path, api_version=self._container_group_api(), body=body)
        logger.info(
            "Container group creation requested",
            extra={"container_group": spec.name, "resource_group": rg, "image": spec.image},
        )
        if spec.wait_for_completion:
            result = self._wait(path, self._container_group_api())
        return ContainerGroup.from_arm(result)

    def get_container_group(self, name: str, resource_group: str | None = None) -> ContainerGroup:
        rg = self._resource_group(resource_group)
        body = self._arm.request(
            "GET",
            self._path(rg, CONTAINER_GROUP_PROVIDER, CONTAINER_GROUP_TYPE, name),
            api_version=self._container_group_api(),
        )
        return ContainerGroup.from_arm(body)

    def delete_container_group(
        self, name: str, resource_group: str | None = None, wait: bool = False
    ) -> None:
        rg = self._resource_group(resource_group)
        path = self._path(rg, CONTAINER_GROUP_PROVIDER, CONTAINER_GROUP_TYPE, name)
        self._arm.request("DELETE", path, api_version=self._container_group_api())
        logger.info(
            "Container group deletion requested", extra={"container_group": name, "resource_group": rg}
        )
        if wait:
            self._wait_deleted(path, self._container_group_api())

    def list_container_groups(self, resource_group: str | None = None) -> list[ContainerGroup]:
        return [
            ContainerGroup.from_arm(item)
            for item in self.list_resources(ResourceKind.CONTAINER_GROUP, resource_group)
        ]

    # ------------------------------------------------------------------
    # listing, roles, rotation
    # ------------------------------------------------------------------

    def list_resources(
        self, kind: ResourceKind, resource_group: str | None = None
    ) -> list[dict[str, Any]]:
        """Every resource of a kind, following all continuation links.

        Scoped to ``resource_group`` (or the configured default); the whole
        subscription when neither is set.

        Raises:
            PaginationError: If any page fails; nothing partial is returned.
        """
        rg = resource_group or self._config.resource_group
        if rg:
            base = resource_group_path(self._arm.subscription_id, rg)
        else:
            base = f"/subscriptions/{self._arm.subscription_id}"
        path = f"{base}/providers/{kind.provider}/{kind.value}"
        api_version = self._arm.api_version_for(kind.provider, kind.value)
        return list_resources(self._arm, path, api_version)

    def grant_role(
        self,
        scope: str | ClusterResource | ContainerRegistry | ContainerGroup,
        role_name: str,
        principal: str | ClusterResource | PrincipalRef,
    ) -> RoleAssignment:
        """Grant ``role_name`` on ``scope`` to a principal id or a cluster's identity."""
        scope_id = scope if isinstance(scope, str) else scope.id
        if not scope_id:
            raise ValueError("Role assignment scope has no resource ID")
        return self._roles.grant(scope_id, role_name, principal)

    def list_role_assignments(
        self, scope: str | ClusterResource | ContainerRegistry | ContainerGroup
    ) -> list[RoleAssignment]:
        scope_id = scope if isinstance(scope, str) else scope.id
        return RoleAssignmentClient(self._arm).list_assignments(scope_id)

    def rotate_credential(
        self,
        cluster: ClusterResource,
        kind: CredentialKind,
        name: str | None = None,
        duration: timedelta | None = None,
        wait: bool = True,
    ) -> str | None:
        return self._rotator.rotate(cluster, kind, name=name, duration=duration, wait=wait)
