"""Secret rotation for the applications attached to a cluster.

Two applications can carry secrets:

- the cluster management service principal (clusters not using a managed
  identity), re-applied with ``resetServicePrincipalProfile``
- the legacy AAD integration server application, re-applied with
  ``resetAADProfile``

Rotation is not coordinated with other mutations of the same cluster.
Callers must serialize rotate and role-assignment calls per cluster.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timedelta
from enum import Enum

from .arm import ArmClient, resource_path
from .config import ProvisionerConfig
from .directory import DirectoryCredentialBroker
from .provisioning import wait_for_terminal_state
from .resources import (
    MANAGED_CLUSTER_PROVIDER,
    MANAGED_CLUSTER_TYPE,
    ClusterResource,
    IdentityMode,
)
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class CredentialKind(str, Enum):
    AAD = "aad"
    CLUSTER_MANAGEMENT = "cluster-management"


class RotationError(Exception):
    """Raised when a cluster has no application of the requested kind."""

    pass


class CredentialRotator:
    """Regenerate a cluster application's secret and apply it to the cluster."""

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

    def rotate(
        self,
        cluster: ClusterResource,
        kind: CredentialKind,
        name: str | None = None,
        duration: timedelta | None = None,
        wait: bool = True,
    ) -> str | None:
        """Issue a new secret and apply it to the cluster.

        Returns:
            The new secret, or None when the cluster uses a managed identity
            and there is nothing to rotate.

        Raises:
            RotationError: If the cluster has no profile for ``kind``.
        """
        match kind:
            case CredentialKind.CLUSTER_MANAGEMENT:
                if cluster.identity_mode is IdentityMode.MANAGED:
                    logger.info(
                        "Cluster uses a managed identity, nothing to rotate",
                        extra={"cluster": cluster.name},
                    )
                    return None
                profile = cluster.service_principal_profile
                if profile is None:
                    raise RotationError(
                        f"Cluster '{cluster.name}' has no service principal profile"
                    )
                secret = self._broker.rotate_secret(profile.client_id, name, duration)
                self._post(
                    cluster,
                    "resetServicePrincipalProfile",
                    {"clientId": profile.client_id, "secret": secret},
                    wait,
                )

            case CredentialKind.AAD:
                aad = cluster.aad_profile
                if aad is None or aad.managed or not aad.server_app_id:
                    raise RotationError(
                        f"No Azure Active Directory application profile associated with "
                        f"cluster '{cluster.name}'"
                    )
                secret = self._broker.rotate_secret(aad.server_app_id, name, duration)
                body = {
                    "clientAppID": aad.client_app_id,
                    "serverAppID": aad.server_app_id,
                    "serverAppSecret": secret,
                }
                if aad.tenant_id:
                    body["tenantID"] = aad.tenant_id
                self._post(cluster, "resetAADProfile", body, wait)

            case _:
                raise RotationError(f"Unsupported credential kind: {kind!r}")

        log_security_audit_event(
            "secret_rotated",
            target_resource=cluster.id or cluster.name,
            action=kind.value,
            result="success",
        )
        return secret

    def _post(self, cluster: ClusterResource, operation: str, body: dict, wait: bool) -> None:
        path = resource_path(
            self._arm.subscription_id,
            cluster.resource_group,
            MANAGED_CLUSTER_PROVIDER,
            MANAGED_CLUSTER_TYPE,
            cluster.name,
        )
        api_version = self._arm.api_version_for(MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE)
        self._arm.request("POST", f"{path}/{operation}", api_version=api_version, body=body)
        logger.info(
            "Cluster profile reset requested",
            extra={"cluster": cluster.name, "operation": operation},
        )

        if wait:
            wait_for_terminal_state(
                self._arm,
                path,
                api_version,
                timeout_seconds=self._config.provision_timeout_seconds,
                poll_interval_seconds=self._config.provision_poll_interval_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
