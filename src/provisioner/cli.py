"""Container provisioner CLI.

Usage:
    provisioner create-cluster cluster.yaml
    provisioner create-registry registry.yaml
    provisioner create-container-group app.yaml --registry myregistry
    provisioner list clusters --resource-group rg-aks
    provisioner grant-role --scope <registry id> --role AcrPull --cluster aks1
    provisioner rotate-credential aks1 --kind cluster-management
    provisioner kubernetes-versions --location westeurope

Configuration is read from the environment (see ProvisionerConfig.from_env).
Results are printed as JSON on stdout; logs go to stderr.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError

from .config import ConfigurationError, ProvisionerConfig
from .directory import DirectoryError, MissingSecretError
from .main import setup_logging
from .paging import PaginationError
from .principals import PrincipalResolutionError
from .provisioning import ProvisioningExhausted, ProvisioningFailed
from .resources import ClusterResource, ContainerGroup, ContainerRegistry, RoleAssignment
from .roles import AuthorizationError
from .rotation import CredentialKind, RotationError
from .security import SecretlessViolationError, get_management_credential
from .service import ClusterProvisioningService, RegistryError, ResourceKind
from .spec_loader import (
    SpecLoadError,
    load_cluster_spec,
    load_container_group_spec,
    load_registry_spec,
)
from .topology import TopologyError

logger = logging.getLogger(__name__)

# Errors reported as a one-line CLI failure instead of a traceback
HANDLED_ERRORS: tuple[type[Exception], ...] = (
    ConfigurationError,
    SecretlessViolationError,
    SpecLoadError,
    TopologyError,
    MissingSecretError,
    DirectoryError,
    ProvisioningExhausted,
    ProvisioningFailed,
    PrincipalResolutionError,
    AuthorizationError,
    PaginationError,
    RotationError,
    RegistryError,
    AzureError,
    ValueError,
)

LIST_KINDS = {
    "clusters": ResourceKind.MANAGED_CLUSTER,
    "registries": ResourceKind.REGISTRY,
    "container-groups": ResourceKind.CONTAINER_GROUP,
}


def cluster_summary(cluster: ClusterResource) -> dict[str, Any]:
    return {
        "name": cluster.name,
        "id": cluster.id,
        "location": cluster.location,
        "resourceGroup": cluster.resource_group,
        "kubernetesVersion": cluster.kubernetes_version,
        "identityMode": cluster.identity_mode.value,
        "provisioningState": cluster.provisioning_state,
        "fqdn": cluster.fqdn,
        "agentPools": [pool.name for pool in cluster.topology],
    }


def registry_summary(registry: ContainerRegistry) -> dict[str, Any]:
    return {
        "name": registry.name,
        "id": registry.id,
        "location": registry.location,
        "resourceGroup": registry.resource_group,
        "loginServer": registry.login_server,
        "sku": registry.sku,
        "adminUserEnabled": registry.admin_user_enabled,
        "provisioningState": registry.provisioning_state,
    }


def container_group_summary(group: ContainerGroup) -> dict[str, Any]:
    return {
        "name": group.name,
        "id": group.id,
        "location": group.location,
        "resourceGroup": group.resource_group,
        "image": group.image,
        "osType": group.os_type,
        "ipAddress": group.ip_address,
        "fqdn": group.fqdn,
        "principalId": group.principal_id,
        "provisioningState": group.provisioning_state,
    }


def assignment_summary(assignment: RoleAssignment) -> dict[str, Any]:
    return {
        "id": assignment.id,
        "name": assignment.name,
        "scope": assignment.scope,
        "roleName": assignment.role_name,
        "roleDefinitionId": assignment.role_definition_id,
        "principalId": assignment.principal_id,
    }


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def get_service(ctx: click.Context) -> ClusterProvisioningService:
    """The service for this invocation, built from the environment on first use."""
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        config = ProvisionerConfig.from_env()
        credential = get_management_credential(config.managed_identity_client_id)
        obj["service"] = ClusterProvisioningService.from_config(config, credential)
    return obj["service"]


class ProvisionerGroup(click.Group):
    """Click group that turns domain errors into a clean non-zero exit."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except HANDLED_ERRORS as e:
            logger.error("Command failed", extra={"error": str(e), "error_type": type(e).__name__})
            raise click.ClickException(f"{type(e).__name__}: {e}") from e


@click.group(cls=ProvisionerGroup)
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Provision managed Kubernetes clusters, container registries and container groups on Azure."""
    ctx.ensure_object(dict)
    setup_logging(logging.DEBUG if verbose else logging.INFO)


# =============================================================================
# Clusters
# =============================================================================


@cli.command("create-cluster")
@click.argument("spec_file", type=click.Path(path_type=Path))
@click.option("--no-wait", is_flag=True, help="Return once the create request is accepted")
@click.pass_context
def create_cluster(ctx: click.Context, spec_file: Path, no_wait: bool) -> None:
    """Create a cluster from a YAML spec file."""
    spec = load_cluster_spec(spec_file)
    if no_wait:
        spec = spec.model_copy(update={"wait_for_completion": False})
    cluster = get_service(ctx).create_cluster(spec)
    echo_json(cluster_summary(cluster))


@cli.command("delete-cluster")
@click.argument("name")
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP")
@click.option("--wait", is_flag=True, help="Block until the cluster is gone")
@click.pass_context
def delete_cluster(ctx: click.Context, name: str, resource_group: str | None, wait: bool) -> None:
    """Delete a cluster."""
    get_service(ctx).delete_cluster(name, resource_group=resource_group, wait=wait)
    click.echo(f"Deleted cluster {name}" if wait else f"Deletion of cluster {name} requested")


@cli.command("kubeconfig")
@click.argument("cluster_name")
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP")
@click.option("--admin", is_flag=True, help="Fetch the cluster admin credential")
@click.pass_context
def kubeconfig(ctx: click.Context, cluster_name: str, resource_group: str | None, admin: bool) -> None:
    """Print a cluster's kubeconfig."""
    service = get_service(ctx)
    cluster = service.get_cluster(cluster_name, resource_group)
    click.echo(service.get_kubeconfig(cluster, admin=admin))


@cli.command("kubernetes-versions")
@click.option("--location", "-l", help="Defaults to AZURE_LOCATION")
@click.pass_context
def kubernetes_versions(ctx: click.Context, location: str | None) -> None:
    """List Kubernetes versions offered in a region."""
    for version in get_service(ctx).list_kubernetes_versions(location):
        click.echo(version)


# =============================================================================
# Registries
# =============================================================================


@cli.command("create-registry")
@click.argument("spec_file", type=click.Path(path_type=Path))
@click.pass_context
def create_registry(ctx: click.Context, spec_file: Path) -> None:
    """Create a container registry from a YAML spec file."""
    registry = get_service(ctx).create_registry(load_registry_spec(spec_file))
    echo_json(registry_summary(registry))


@cli.command("registry-usages")
@click.argument("name")
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP")
@click.pass_context
def registry_usages(ctx: click.Context, name: str, resource_group: str | None) -> None:
    """Show a registry's quota usage."""
    service = get_service(ctx)
    echo_json(service.list_registry_usages(service.get_registry(name, resource_group)))


# =============================================================================
# Container groups
# =============================================================================


@cli.command("create-container-group")
@click.argument("spec_file", type=click.Path(path_type=Path))
@click.option(
    "--registry",
    "registry_names",
    multiple=True,
    help="Registry to pull from with its admin login; repeatable",
)
@click.option("--no-wait", is_flag=True, help="Return once the create request is accepted")
@click.pass_context
def create_container_group(
    ctx: click.Context, spec_file: Path, registry_names: tuple[str, ...], no_wait: bool
) -> None:
    """Run a container group from a YAML spec file."""
    spec = load_container_group_spec(spec_file)
    if no_wait:
        spec = spec.model_copy(update={"wait_for_completion": False})
    service = get_service(ctx)
    registries = [service.get_registry(name, spec.resource_group) for name in registry_names]
    group = service.create_container_group(spec, registries=registries)
    echo_json(container_group_summary(group))


@cli.command("delete-container-group")
@click.argument("name")
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP")
@click.option("--wait", is_flag=True, help="Block until the group is gone")
@click.pass_context
def delete_container_group(
    ctx: click.Context, name: str, resource_group: str | None, wait: bool
) -> None:
    """Delete a container group."""
    get_service(ctx).delete_container_group(name, resource_group=resource_group, wait=wait)
    if wait:
        click.echo(f"Deleted container group {name}")
    else:
        click.echo(f"Deletion of container group {name} requested")


# =============================================================================
# Listing, roles, rotation
# =============================================================================


@cli.command("list")
@click.argument("kind", type=click.Choice(sorted(LIST_KINDS)))
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP, else the subscription")
@click.pass_context
def list_command(ctx: click.Context, kind: str, resource_group: str | None) -> None:
    """List clusters, registries or container groups."""
    service = get_service(ctx)
    match LIST_KINDS[kind]:
        case ResourceKind.MANAGED_CLUSTER:
            echo_json([cluster_summary(c) for c in service.list_clusters(resource_group)])
        case ResourceKind.REGISTRY:
            echo_json([registry_summary(r) for r in service.list_registries(resource_group)])
        case ResourceKind.CONTAINER_GROUP:
            echo_json(
                [container_group_summary(g) for g in service.list_container_groups(resource_group)]
            )


@cli.command("grant-role")
@click.option("--scope", required=True, help="Resource ID the role applies to")
@click.option("--role", "role_name", required=True, help="Role name (e.g. AcrPull) or GUID")
@click.option("--principal-id", help="Object ID of the principal")
@click.option("--cluster", "cluster_name", help="Grant to this cluster's identity")
@click.option("--resource-group", "-g", help="Resource group of --cluster")
@click.pass_context
def grant_role(
    ctx: click.Context,
    scope: str,
    role_name: str,
    principal_id: str | None,
    cluster_name: str | None,
    resource_group: str | None,
) -> None:
    """Assign a role to a principal or to a cluster's identity."""
    if bool(principal_id) == bool(cluster_name):
        raise click.UsageError("Pass exactly one of --principal-id or --cluster")

    service = get_service(ctx)
    principal: str | ClusterResource
    if cluster_name:
        principal = service.get_cluster(cluster_name, resource_group)
    else:
        principal = principal_id or ""
    echo_json(assignment_summary(service.grant_role(scope, role_name, principal)))


@cli.command("rotate-credential")
@click.argument("cluster_name")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in CredentialKind]),
    required=True,
    help="Which application's secret to rotate",
)
@click.option("--resource-group", "-g", help="Defaults to AZURE_RESOURCE_GROUP")
@click.option("--show-secret", is_flag=True, help="Print the new secret")
@click.pass_context
def rotate_credential(
    ctx: click.Context,
    cluster_name: str,
    kind: str,
    resource_group: str | None,
    show_secret: bool,
) -> None:
    """Issue a new secret for a cluster application and apply it."""
    service = get_service(ctx)
    cluster = service.get_cluster(cluster_name, resource_group)
    secret = service.rotate_credential(cluster, CredentialKind(kind))

    if secret is None:
        click.echo(f"Cluster {cluster_name} uses a managed identity; nothing to rotate")
    elif show_secret:
        click.echo(secret)
    else:
        click.echo(f"Rotated {kind} credential for cluster {cluster_name}")
