"""Cluster creation with tolerance for directory propagation delay.

ProvisioningEngine walks a fixed sequence of stages:

    Normalizing -> IdentityResolving -> Submitting -> (RetryWait <-> Submitting)
        -> Succeeded | Failed

When a cluster runs as a service principal that was created moments ago,
Resource Manager may reject the create request because it cannot see the
principal yet. That one condition is retried on a fixed interval; every
other failure is raised to the caller on first occurrence, unmodified.

KNOWN FRAGILITY: the propagation condition is recognised by matching text
in the server's error message. The match lives in a single predicate,
is_principal_propagation_error(), so it can be swapped for an error-code
check if the API starts exposing a dedicated one.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .arm import ArmClient, resource_path
from .config import (
    MAX_SUBMIT_ATTEMPTS,
    SUBMIT_RETRY_BUDGET_SECONDS,
    SUBMIT_RETRY_INTERVAL_SECONDS,
    ProvisionerConfig,
)
from .directory import AppCredentials, DirectoryCredentialBroker
from .models import ClusterSpec
from .resources import (
    MANAGED_CLUSTER_PROVIDER,
    MANAGED_CLUSTER_TYPE,
    TERMINAL_PROVISIONING_STATES,
    ClusterResource,
)
from .topology import normalize_topology

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROPAGATION_MARKERS: tuple[str, ...] = ("service principal", "serviceprincipal")


class ProvisioningStage(str, Enum):
    NORMALIZING = "Normalizing"
    IDENTITY_RESOLVING = "IdentityResolving"
    SUBMITTING = "Submitting"
    RETRY_WAIT = "RetryWait"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class TransientProvisioningError(Exception):
    """A create request rejected because the service principal is not yet visible."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


class ProvisioningExhausted(Exception):
    """Raised when the propagation condition outlasts the retry budget.

    The message is the last server diagnostic, unaltered, and the original
    error is chained as ``__cause__``.
    """

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


class ProvisioningFailed(Exception):
    """Raised when Resource Manager reports a terminal failure for a resource."""

    def __init__(self, message: str, provisioning_state: str | None = None) -> None:
        super().__init__(message)
        self.provisioning_state = provisioning_state


class ProvisioningTimeout(ProvisioningFailed):
    """Raised when a resource does not reach a terminal state in time."""

    pass


def is_principal_propagation_error(error: BaseException) -> bool:
    """Whether an error means the service principal is not yet known to ARM."""
    message = str(error).lower()
    return any(marker in message for marker in PROPAGATION_MARKERS)


def submit_with_retry(
    submit: Callable[[], T],
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    max_attempts: int = MAX_SUBMIT_ATTEMPTS,
    interval_seconds: float = SUBMIT_RETRY_INTERVAL_SECONDS,
    budget_seconds: float = SUBMIT_RETRY_BUDGET_SECONDS,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call ``submit`` until it succeeds or fails for a non-propagation reason.

    Raises:
        ProvisioningExhausted: If every attempt hit the propagation condition,
            or the wall-clock budget ran out first.
        Exception: Any other error from ``submit``, unchanged.
    """
    deadline = clock() + budget_seconds
    last_error: BaseException | None = None
    attempt = 0

    while attempt < max_attempts:
        attempt += 1
        try:
            return submit()
        except AzureError as e:
            if not is_principal_propagation_error(e):
                raise
            last_error = e

        if attempt >= max_attempts or clock() + interval_seconds > deadline:
            break

        logger.warning(
            "Service principal not yet visible to Resource Manager, retrying",
            extra={
                "attempt": attempt,
                "max_attempts": max_attempts,
                "wait_seconds": interval_seconds,
            },
        )
        if on_retry is not None:
            on_retry(attempt, TransientProvisioningError(last_error))
        sleep(interval_seconds)

    # SAFETY: the loop only exits without returning after recording an error
    assert last_error is not None, "Retry loop completed without setting last_error"
    logger.error(
        "Service principal never became visible",
        extra={"attempts": attempt, "error": str(last_error)},
    )
    raise ProvisioningExhausted(last_error, attempt) from last_error


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overrides`` into a copy of ``base``; overrides win.

    Nested mappings are merged recursively. An override of ``None`` removes
    the key.
    """
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _describe_failure(body: dict[str, Any]) -> str:
    props = body.get("properties") or {}
    details = props.get("status") or props.get("error") or body.get("error")
    state = props.get("provisioningState")
    name = body.get("name", "resource")
    if details:
        return f"Provisioning of '{name}' ended in state {state}: {details}"
    return f"Provisioning of '{name}' ended in state {state}"


def wait_for_terminal_state(
    arm: ArmClient,
    path: str,
    api_version: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """Poll a resource until its provisioning state is terminal.

    Raises:
        ProvisioningFailed: If the state ends as Failed or Canceled.
        ProvisioningTimeout: If no terminal state is seen within the timeout.
    """
    deadline = clock() + timeout_seconds

    while True:
        body = arm.request("GET", path, api_version=api_version)
        state = (body.get("properties") or {}).get("provisioningState")

        if state in TERMINAL_PROVISIONING_STATES:
            if state != "Succeeded":
                raise ProvisioningFailed(_describe_failure(body), provisioning_state=state)
            return body

        if clock() + poll_interval_seconds > deadline:
            raise ProvisioningTimeout(
                f"Resource {path} still in state {state} after {timeout_seconds}s",
                provisioning_state=state,
            )

        logger.debug("Waiting for provisioning", extra={"path": path, "state": state})
        sleep(poll_interval_seconds)


def wait_for_deletion(
    arm: ArmClient,
    path: str,
    api_version: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll a resource until Resource Manager no longer returns it.

    Raises:
        ProvisioningTimeout: If the resource still exists after the timeout.
    """
    deadline = clock() + timeout_seconds

    while True:
        try:
            arm.request("GET", path, api_version=api_version)
        except ResourceNotFoundError:
            return

        if clock() + poll_interval_seconds > deadline:
            raise ProvisioningTimeout(f"Resource {path} still exists after {timeout_seconds}s")
        sleep(poll_interval_seconds)


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) if part.isdigit() else 0 for part in version.split("."))


class ProvisioningEngine:
    """Create managed clusters.

    Args:
        arm: Resource Manager client.
        broker: Used only for clusters that run as a service principal.
        config: Provisioner configuration (timeouts, defaults).
        sleep: Injected for tests; used for retry waits and status polls.
        clock: Injected for tests; monotonic seconds.
    """

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
        self.stage: ProvisioningStage | None = None
        self.attempts = 0

    def _enter(self, stage: ProvisioningStage, cluster: str) -> None:
        self.stage = stage
        logger.info(f"Provisioning stage: {stage.value}", extra={"cluster": cluster})

    def list_kubernetes_versions(self, location: str) -> list[str]:
        """Kubernetes versions offered in a region, oldest first."""
        path = (
            f"/subscriptions/{self._arm.subscription_id}/providers/{MANAGED_CLUSTER_PROVIDER}"
            f"/locations/{location}/orchestrators"
        )
        api_version = self._arm.api_version_for(MANAGED_CLUSTER_PROVIDER, "locations/orchestrators")
        body = self._arm.request(
            "GET", path, api_version=api_version, params={"resource-type": MANAGED_CLUSTER_TYPE}
        )
        orchestrators = (body.get("properties") or {}).get("orchestrators") or []
        versions = {o["orchestratorVersion"] for o in orchestrators if o.get("orchestratorVersion")}
        return sorted(versions, key=_version_key)

    def build_request(
        self,
        spec: ClusterSpec,
        location: str,
        pool_profiles: list[dict[str, Any]],
        kubernetes_version: str,
        credentials: AppCredentials | None,
    ) -> dict[str, Any]:
        """Assemble the managedClusters PUT body."""
        props: dict[str, Any] = {
            "kubernetesVersion": kubernetes_version,
            "dnsPrefix": spec.dns_prefix or spec.name,
            "agentPoolProfiles": pool_profiles,
            "enableRBAC": spec.enable_rbac,
        }

        if spec.private_cluster:
            props["apiServerAccessProfile"] = {"enablePrivateCluster": True}
            props["networkProfile"] = {"loadBalancerSku": "standard"}

        if credentials is not None:
            props["servicePrincipalProfile"] = {
                "clientId": credentials.app_id,
                "secret": credentials.secret,
            }

        if spec.login_user and spec.login_passkey:
            props["linuxProfile"] = {
                "adminUsername": spec.login_user,
                "ssh": {"publicKeys": [{"keyData": spec.login_passkey}]},
            }

        body: dict[str, Any] = {
            "location": location,
            "properties": deep_merge(props, spec.properties),
        }
        if credentials is None:
            body["identity"] = {"type": "SystemAssigned"}
        if spec.tags:
            body["tags"] = dict(spec.tags)
        return body

    def provision(self, spec: ClusterSpec, resource_group: str, location: str) -> ClusterResource:
        """Create a cluster and return its handle.

        Raises:
            EmptyTopology: If the spec lists no agent pools.
            MissingSecretError: If a service principal has no usable secret.
            ProvisioningExhausted: If the principal never became visible.
            ProvisioningFailed: If waiting and the deployment failed.
            HttpResponseError: Any other create failure, unchanged.
        """
        self.attempts = 0
        try:
            return self._provision(spec, resource_group, location)
        except Exception:
            self._enter(ProvisioningStage.FAILED, spec.name)
            raise

    def _provision(self, spec: ClusterSpec, resource_group: str, location: str) -> ClusterResource:
        self._enter(ProvisioningStage.NORMALIZING, spec.name)
        pool_profiles = normalize_topology(spec.agent_pools)

        self._enter(ProvisioningStage.IDENTITY_RESOLVING, spec.name)
        credentials: AppCredentials | None = None
        if not spec.managed_identity:
            candidate = None
            if spec.service_principal is not None:
                secret = spec.service_principal.secret
                candidate = AppCredentials(
                    app_id=spec.service_principal.client_id,
                    secret=secret.get_secret_value() if secret else None,
                )
            credentials = self._broker.find_or_create_application(candidate, spec.name, location)

        kubernetes_version = spec.kubernetes_version
        if not kubernetes_version:
            versions = self.list_kubernetes_versions(location)
            if not versions:
                raise ProvisioningFailed(f"No Kubernetes versions offered in {location}")
            kubernetes_version = versions[-1]

        body = self.build_request(spec, location, pool_profiles, kubernetes_version, credentials)
        path = resource_path(
            self._arm.subscription_id,
            resource_group,
            MANAGED_CLUSTER_PROVIDER,
            MANAGED_CLUSTER_TYPE,
            spec.name,
        )
        api_version = self._arm.api_version_for(MANAGED_CLUSTER_PROVIDER, MANAGED_CLUSTER_TYPE)

        def submit() -> dict[str, Any]:
            self._enter(ProvisioningStage.SUBMITTING, spec.name)
            self.attempts += 1
            return self._arm.request("PUT", path, api_version=api_version, body=body)

        result = submit_with_retry(
            submit,
            sleep=self._sleep,
            clock=self._clock,
            on_retry=lambda attempt, err: self._enter(ProvisioningStage.RETRY_WAIT, spec.name),
        )

        if spec.wait_for_completion:
            result = wait_for_terminal_state(
                self._arm,
                path,
                api_version,
                timeout_seconds=self._config.provision_timeout_seconds,
                poll_interval_seconds=self._config.provision_poll_interval_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )

        self._enter(ProvisioningStage.SUCCEEDED, spec.name)
        logger.info(
            "Cluster created",
            extra={
                "cluster": spec.name,
                "resource_group": resource_group,
                "attempts": self.attempts,
                "identity": "managed" if credentials is None else "service_principal",
            },
        )
        return ClusterResource.from_arm(result)
