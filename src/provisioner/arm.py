"""Authenticated request/response exchange with Azure Resource Manager.

Every operation in this package is a plain REST call keyed by
subscription, resource group, provider, resource type, resource name and
api-version. ArmClient owns that exchange: it builds paths, attaches the
api-version, enforces the transport timeout, and turns error responses into
azure-core exceptions whose message is the server's diagnostic text.

Listing responses are returned as-is (``value`` + ``nextLink``); following
the cursor is PaginatedLister's job, not the transport's.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.core.pipeline import policies
from azure.core.rest import HttpRequest
from azure.mgmt.core import ARMPipelineClient
from azure.mgmt.core.exceptions import ARMErrorFormat
from azure.mgmt.core.policies import ARMChallengeAuthenticationPolicy, ARMHttpLoggingPolicy
from azure.mgmt.resource import ResourceManagementClient

from .config import ProvisionerConfig

logger = logging.getLogger(__name__)

USER_AGENT = "azure-container-provisioner"

# Used when provider metadata cannot be read or lists no stable version
FALLBACK_API_VERSIONS: dict[tuple[str, str], str] = {
    ("Microsoft.ContainerService", "managedClusters"): "2024-05-01",
    ("Microsoft.ContainerService", "managedClusters/agentPools"): "2024-05-01",
    ("Microsoft.ContainerService", "locations/orchestrators"): "2019-08-01",
    ("Microsoft.ContainerRegistry", "registries"): "2023-07-01",
    ("Microsoft.ContainerInstance", "containerGroups"): "2023-05-01",
    ("Microsoft.Authorization", "roleAssignments"): "2022-04-01",
    ("Microsoft.Authorization", "roleDefinitions"): "2022-04-01",
}

_ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}


def resource_group_path(subscription_id: str, resource_group: str) -> str:
    """Path of a resource group."""
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def resource_path(
    subscription_id: str,
    resource_group: str,
    provider: str,
    resource_type: str,
    name: str,
) -> str:
    """Path of a resource in a resource group.

    ``resource_type`` may be nested, e.g. ``managedClusters/agentPools``,
    in which case ``name`` carries the matching ``parent/child`` segments.
    """
    base = resource_group_path(subscription_id, resource_group)
    if "/" not in resource_type:
        return f"{base}/providers/{provider}/{resource_type}/{name}"

    types = resource_type.split("/")
    names = name.split("/")
    if len(types) != len(names):
        raise ValueError(
            f"Resource type '{resource_type}' needs {len(types)} name segments, got '{name}'"
        )
    segments = "/".join(f"{t}/{n}" for t, n in zip(types, names, strict=True))
    return f"{base}/providers/{provider}/{segments}"


def parse_resource_id(resource_id: str) -> dict[str, str]:
    """Split an ARM resource ID into its named parts.

    Returns a dict with ``subscription``, ``resource_group``, ``provider``,
    ``resource_type`` and ``name`` where present.
    """
    parts = [p for p in resource_id.split("/") if p]
    result: dict[str, str] = {}
    lowered = [p.lower() for p in parts]

    try:
        result["subscription"] = parts[lowered.index("subscriptions") + 1]
    except (ValueError, IndexError):
        pass
    try:
        result["resource_group"] = parts[lowered.index("resourcegroups") + 1]
    except (ValueError, IndexError):
        pass
    try:
        provider_idx = lowered.index("providers")
        result["provider"] = parts[provider_idx + 1]
        rest = parts[provider_idx + 2 :]
        result["resource_type"] = "/".join(rest[0::2])
        result["name"] = "/".join(rest[1::2])
    except (ValueError, IndexError):
        pass

    return result


class ArmClient:
    """Thin ARM REST client over an azure-mgmt-core pipeline."""

    def __init__(
        self,
        credential: TokenCredential,
        config: ProvisionerConfig,
        *,
        pipeline_client: ARMPipelineClient | None = None,
        resource_client: ResourceManagementClient | None = None,
    ) -> None:
        self._config = config
        self._base_url = config.arm_endpoint.rstrip("/")
        self._client = pipeline_client or ARMPipelineClient(
            base_url=self._base_url,
            policies=[
                policies.RequestIdPolicy(),
                policies.HeadersPolicy(),
                policies.UserAgentPolicy(sdk_moniker=USER_AGENT),
                policies.RetryPolicy(),
                ARMChallengeAuthenticationPolicy(credential, config.arm_scope),
                policies.CustomHookPolicy(),
                ARMHttpLoggingPolicy(),
            ],
        )
        self._resource_client = resource_client or ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
            base_url=self._base_url,
        )
        self._api_versions: dict[tuple[str, str], str] = {}

    @property
    def subscription_id(self) -> str:
        return self._config.subscription_id

    def request(
        self,
        method: str,
        path: str,
        *,
        api_version: str | None = None,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Issue one request and return the decoded JSON body.

        ``path`` is either relative to the ARM endpoint or an absolute URL
        (a ``nextLink``), in which case it is used unchanged and no
        api-version is added since the link already carries one.

        Raises:
            HttpResponseError: On any non-2xx response. 401, 404 and 409 are
                raised as their azure-core subclasses.
        """
        query = dict(params or {})
        if path.startswith("https://"):
            url = path
        else:
            url = f"{self._base_url}{path}"
            if api_version:
                query["api-version"] = api_version

        request = HttpRequest(method, url, params=query or None, json=body)
        response = self._client.send_request(
            request,
            connection_timeout=self._config.request_timeout_seconds,
            read_timeout=self._config.request_timeout_seconds,
        )

        if response.status_code >= 400:
            error_type = _ERROR_MAP.get(response.status_code, HttpResponseError)
            raise error_type(response=response, error_format=ARMErrorFormat)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def api_version_for(self, provider: str, resource_type: str) -> str:
        """Return the newest stable api-version the provider offers for a type.

        Results are cached for the lifetime of the client.
        """
        key = (provider, resource_type)
        if key in self._api_versions:
            return self._api_versions[key]

        version: str | None = None
        try:
            metadata = self._resource_client.providers.get(provider)
            for rt in metadata.resource_types or []:
                if (rt.resource_type or "").lower() == resource_type.lower():
                    stable = [v for v in rt.api_versions or [] if "preview" not in v.lower()]
                    if stable:
                        version = max(stable)
                    break
        except HttpResponseError as e:
            logger.warning(
                "Could not read provider metadata, using fallback api-version",
                extra={"provider": provider, "resource_type": resource_type, "error": str(e)},
            )

        if version is None:
            version = FALLBACK_API_VERSIONS.get(key)
        if version is None:
            raise ValueError(f"No api-version known for {provider}/{resource_type}")

        self._api_versions[key] = version
        return version
