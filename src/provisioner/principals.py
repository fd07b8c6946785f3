"""Security principals and their resolution for role assignments.

A role assignment needs a directory object id. Callers can hand us either
that id directly or a cluster, in which case the id depends on how the
cluster manages its infrastructure:

- managed identity: the object id of the first identity in its
  ``identityProfile`` (the kubelet identity), no lookup needed
- service principal: the service principal object behind the cluster's
  client id, which requires one directory lookup
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from .resources import ClusterResource, IdentityMode
from .security import mask_identifier

logger = logging.getLogger(__name__)


class PrincipalResolutionError(Exception):
    """Raised when a cluster's identity state cannot yield a principal."""

    pass


@dataclass(frozen=True)
class ManagedIdentityPrincipal:
    object_id: str

    @property
    def principal_id(self) -> str:
        return self.object_id


@dataclass(frozen=True)
class ApplicationPrincipal:
    """A directory application together with its service principal.

    ``object_id`` is the service principal's object id, which is what
    role assignments refer to. ``secret`` is only known right after the
    application was created or a password was added.
    """

    app_id: str
    object_id: str
    application_object_id: str | None = None
    display_name: str | None = None
    secret: str | None = field(default=None, repr=False)

    @property
    def principal_id(self) -> str:
        return self.object_id


SecurityPrincipal = ManagedIdentityPrincipal | ApplicationPrincipal


@dataclass(frozen=True)
class PrincipalId:
    """A principal given directly by its object id."""

    value: str

    @property
    def principal_id(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClusterPrincipal:
    """The identity a cluster uses to manage its subsidiary infrastructure."""

    cluster: ClusterResource


PrincipalRef = PrincipalId | ClusterPrincipal


def as_principal_ref(value: str | ClusterResource | PrincipalRef) -> PrincipalRef:
    """Coerce caller input into a principal reference.

    Raises:
        TypeError: For anything other than a string, cluster or reference.
    """
    match value:
        case PrincipalId() | ClusterPrincipal():
            return value
        case ClusterResource():
            return ClusterPrincipal(value)
        case str() if value:
            return PrincipalId(value)
        case _:
            raise TypeError(
                f"Principal must be an object id or a cluster, got {type(value).__name__}"
            )


class ApplicationLookup(Protocol):
    def lookup_application(self, app_id: str) -> ApplicationPrincipal: ...


class PrincipalResolver:
    """Turn a principal reference into something carrying a concrete object id."""

    def __init__(self, directory: ApplicationLookup) -> None:
        self._directory = directory

    def resolve(self, ref: PrincipalRef) -> PrincipalId | SecurityPrincipal:
        match ref:
            case PrincipalId():
                return ref
            case ClusterPrincipal(cluster=cluster):
                return self._resolve_cluster(cluster)
            case _:
                raise TypeError(f"Unsupported principal reference: {type(ref).__name__}")

    def _resolve_cluster(self, cluster: ClusterResource) -> SecurityPrincipal:
        match cluster.identity_mode:
            case IdentityMode.MANAGED:
                if not cluster.identity_profile:
                    raise PrincipalResolutionError(
                        f"Cluster '{cluster.name}' uses a managed identity but exposes no "
                        "identity profile"
                    )
                first = next(iter(cluster.identity_profile.values()))
                object_id = first.get("objectId") if isinstance(first, dict) else None
                if not object_id:
                    raise PrincipalResolutionError(
                        f"Identity profile of cluster '{cluster.name}' has no objectId"
                    )
                logger.debug(
                    "Resolved managed identity principal",
                    extra={"cluster": cluster.name, "object_id": mask_identifier(object_id)},
                )
                return ManagedIdentityPrincipal(object_id=object_id)

            case IdentityMode.SERVICE_PRINCIPAL:
                profile = cluster.service_principal_profile
                if profile is None or not profile.client_id:
                    raise PrincipalResolutionError(
                        f"Cluster '{cluster.name}' exposes neither an identity profile nor a "
                        "service principal profile"
                    )
                principal = self._directory.lookup_application(profile.client_id)
                logger.debug(
                    "Resolved service principal",
                    extra={"cluster": cluster.name, "app_id": mask_identifier(principal.app_id)},
                )
                return principal

            case _:
                raise PrincipalResolutionError(
                    f"Cluster '{cluster.name}' has unknown identity mode {cluster.identity_mode!r}"
                )
