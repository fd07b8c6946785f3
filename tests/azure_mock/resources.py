"""Mock Azure Resource Manager state and operations.

MockResourceManager stands in for provisioner.arm.ArmClient: it answers
``request()`` from an in-memory resource store keyed by path, records every
call, and can be told to fail specific calls.

Behaviour modelled after the real service:
- PUT stores the resource and answers with provisioningState ``Creating``;
  later GETs walk through ``states_after_put`` (last state sticks)
- managed clusters created with a system-assigned identity get an
  ``identityProfile`` with a kubelet identity and ``clientId: msi``
- secrets sent in ``servicePrincipalProfile`` are never returned
- collection GETs list matching children, optionally split into pages
  linked by ``nextLink``
- re-creating a role assignment for the same principal and role conflicts
- container groups get a public IP and fqdn; secure environment values and
  registry passwords are never returned
- registries answer listPolicies and listUsages
"""

from __future__ import annotations

import base64
import copy
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
TENANT_ID = "00000000-0000-0000-0000-0000000000aa"
DEFAULT_API_VERSION = "2024-01-01"
NEXT_LINK_BASE = "https://management.azure.com/mock-next/"
DEFAULT_KUBERNETES_VERSIONS = ("1.28.9", "1.29.4", "1.30.0")

ROLE_ASSIGNMENTS_SEGMENT = "/providers/microsoft.authorization/roleassignments/"
_FILTER_PATTERN = re.compile(r"(\w+) eq '([^']*)'")


def propagation_error(client_id: str = "11111111-2222-3333-4444-555555555555") -> HttpResponseError:
    """The error ARM returns while a new service principal is not yet visible."""
    return HttpResponseError(
        message=(
            "Operation failed with status: 'Bad Request'. Details: Service principal "
            f"clientID: {client_id} not found in Active Directory tenant {TENANT_ID}, "
            "Please see https://aka.ms/aks-sp-help for more details."
        )
    )


def quota_error() -> HttpResponseError:
    return HttpResponseError(
        message="Operation could not be completed as it results in exceeding approved "
        "standardDSv2Family Cores quota."
    )


@dataclass
class MockCall:
    """One recorded ``request()`` call."""

    method: str
    path: str
    api_version: str | None = None
    body: dict[str, Any] | None = None
    params: dict[str, str] | None = None


@dataclass
class _Failure:
    method: str
    fragment: str
    make_error: Callable[[], Exception]
    remaining: int


@dataclass
class _StoredResource:
    body: dict[str, Any]
    pending_states: list[str] = field(default_factory=list)


class MockResourceManager:
    """In-memory replacement for ArmClient.

    Args:
        subscription_id: Subscription the fake answers for.
        page_size: When set, collection listings are split into pages.
    """

    def __init__(
        self,
        subscription_id: str = SUBSCRIPTION_ID,
        *,
        page_size: int | None = None,
    ) -> None:
        self.subscription_id = subscription_id
        self.page_size = page_size
        self.states_after_put: list[str] = ["Succeeded"]
        self.kubernetes_versions: list[str] = list(DEFAULT_KUBERNETES_VERSIONS)
        self.calls: list[MockCall] = []
        self.api_version_requests: list[tuple[str, str]] = []
        self._resources: dict[str, _StoredResource] = {}
        self._failures: list[_Failure] = []
        self._responses: dict[tuple[str, str], dict[str, Any]] = {}
        self._links: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # test configuration
    # ------------------------------------------------------------------

    def fail(
        self,
        method: str,
        path_fragment: str,
        make_error: Callable[[], Exception],
        times: int = 1,
    ) -> None:
        """Make the next ``times`` matching calls raise ``make_error()``."""
        self._failures.append(_Failure(method.upper(), path_fragment.lower(), make_error, times))

    def set_response(self, method: str, path: str, body: dict[str, Any]) -> None:
        """Answer ``method path`` with a fixed body."""
        self._responses[(method.upper(), path.lower())] = copy.deepcopy(body)

    def put_resource(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Seed a resource directly, without recording a call."""
        stored = copy.deepcopy(body)
        stored.setdefault("id", path)
        stored.setdefault("name", path.rsplit("/", 1)[-1])
        stored.setdefault("properties", {}).setdefault("provisioningState", "Succeeded")
        self._resources[path.lower()] = _StoredResource(stored)
        return copy.deepcopy(stored)

    # ------------------------------------------------------------------
    # assertions
    # ------------------------------------------------------------------

    def resource(self, path: str) -> dict[str, Any] | None:
        stored = self._resources.get(path.lower())
        return copy.deepcopy(stored.body) if stored else None

    @property
    def resource_count(self) -> int:
        return len(self._resources)

    def calls_to(self, method: str, path_fragment: str = "") -> list[MockCall]:
        return [
            c
            for c in self.calls
            if c.method == method.upper() and path_fragment.lower() in c.path.lower()
        ]

    # ------------------------------------------------------------------
    # ArmClient surface
    # ------------------------------------------------------------------

    def api_version_for(self, provider: str, resource_type: str) -> str:
        self.api_version_requests.append((provider, resource_type))
        return DEFAULT_API_VERSION

    def request(
        self,
        method: str,
        path: str,
        *,
        api_version: str | None = None,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        method = method.upper()
        self.calls.append(
            MockCall(method, path, api_version, copy.deepcopy(body), dict(params) if params else None)
        )

        for failure in self._failures:
            if (
                failure.remaining > 0
                and failure.method == method
                and failure.fragment in path.lower()
            ):
                failure.remaining -= 1
                raise failure.make_error()

        if path.startswith(NEXT_LINK_BASE):
            page = self._links.get(path)
            if page is None:
                raise ResourceNotFoundError(message=f"Unknown continuation link {path}")
            return copy.deepcopy(page)

        key = path.lower()
        if (method, key) in self._responses:
            return copy.deepcopy(self._responses[(method, key)])

        match method:
            case "GET":
                return self._get(path, key, params)
            case "PUT":
                return self._put(path, key, body or {})
            case "DELETE":
                for existing in [k for k in self._resources if k == key or k.startswith(key + "/")]:
                    del self._resources[existing]
                return {}
            case "POST":
                return self._post(path, key)
            case _:
                raise HttpResponseError(message=f"Unsupported method {method}")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _get(self, path: str, key: str, params: dict[str, str] | None) -> dict[str, Any]:
        stored = self._resources.get(key)
        if stored is not None:
            if stored.pending_states:
                state = (
                    stored.pending_states.pop(0)
                    if len(stored.pending_states) > 1
                    else stored.pending_states[0]
                )
                stored.body.setdefault("properties", {})["provisioningState"] = state
            return copy.deepcopy(stored.body)

        if key.endswith("/orchestrators"):
            return {
                "properties": {
                    "orchestrators": [
                        {"orchestratorType": "Kubernetes", "orchestratorVersion": v}
                        for v in self.kubernetes_versions
                    ]
                }
            }

        target, _, operation = key.rpartition("/")
        if operation in ("listpolicies", "listusages") and target in self._resources:
            return self._registry_read(operation)

        if _is_collection(key):
            items = [
                copy.deepcopy(r.body)
                for k, r in self._resources.items()
                if _in_collection(k, key) and _matches_filter(r.body, params)
            ]
            return self._paginate(items)

        raise ResourceNotFoundError(message=f"The Resource '{path}' was not found.")

    def _paginate(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        if not self.page_size or len(items) <= self.page_size:
            return {"value": items}

        chunks = [items[i : i + self.page_size] for i in range(0, len(items), self.page_size)]
        links = [f"{NEXT_LINK_BASE}{uuid.uuid4()}" for _ in chunks[1:]]
        for index, chunk in enumerate(chunks[1:]):
            page: dict[str, Any] = {"value": chunk}
            if index + 1 < len(links):
                page["nextLink"] = links[index + 1]
            self._links[links[index]] = page
        return {"value": chunks[0], "nextLink": links[0]}

    def _put(self, path: str, key: str, body: dict[str, Any]) -> dict[str, Any]:
        if ROLE_ASSIGNMENTS_SEGMENT in key:
            return self._put_role_assignment(path, key, body)

        stored = copy.deepcopy(body)
        stored["id"] = path
        stored["name"] = path.rsplit("/", 1)[-1]
        props = stored.setdefault("properties", {})
        props["provisioningState"] = "Creating"

        if "/providers/microsoft.containerservice/managedclusters/" in key and "/agentpools/" not in key:
            self._complete_cluster(path, stored)
        if "/providers/microsoft.containerregistry/registries/" in key:
            props["loginServer"] = f"{stored['name'].lower()}.azurecr.io"
        if "/providers/microsoft.containerinstance/containergroups/" in key:
            self._complete_container_group(stored)

        self._resources[key] = _StoredResource(stored, list(self.states_after_put))
        return copy.deepcopy(stored)

    def _complete_cluster(self, path: str, stored: dict[str, Any]) -> None:
        props = stored["properties"]
        sp = props.get("servicePrincipalProfile")
        if sp is not None:
            props["servicePrincipalProfile"] = {"clientId": sp.get("clientId")}

        if stored.get("identity", {}).get("type") == "SystemAssigned":
            stored["identity"] = {
                "type": "SystemAssigned",
                "principalId": str(uuid.uuid4()),
                "tenantId": TENANT_ID,
            }
            props["servicePrincipalProfile"] = {"clientId": "msi"}
            props["identityProfile"] = {
                "kubeletidentity": {
                    "clientId": str(uuid.uuid4()),
                    "objectId": str(uuid.uuid4()),
                    "resourceId": f"{path}-agentpool",
                }
            }

        props["fqdn"] = f"{props.get('dnsPrefix', stored['name'])}.hcp.mock.azmk8s.io"
        for profile in props.get("agentPoolProfiles") or []:
            pool = {k: v for k, v in profile.items() if k != "name"}
            pool["provisioningState"] = "Succeeded"
            pool_path = f"{path}/agentPools/{profile['name']}"
            self._resources[pool_path.lower()] = _StoredResource(
                {"id": pool_path, "name": profile["name"], "properties": pool}
            )

    def _complete_container_group(self, stored: dict[str, Any]) -> None:
        props = stored["properties"]
        for container in props.get("containers") or []:
            for variable in (container.get("properties") or {}).get("environmentVariables") or []:
                variable.pop("secureValue", None)
        for credential in props.get("imageRegistryCredentials") or []:
            credential.pop("password", None)

        ip = props.get("ipAddress")
        if ip is not None:
            ip["ip"] = "20.0.0.1"
            if ip.get("dnsNameLabel"):
                ip["fqdn"] = f"{ip['dnsNameLabel']}.{stored.get('location', '')}.azurecontainer.io"

        if (stored.get("identity") or {}).get("type", "").lower() == "systemassigned":
            stored["identity"] = {
                "type": "SystemAssigned",
                "principalId": str(uuid.uuid4()),
                "tenantId": TENANT_ID,
            }

    def _registry_read(self, operation: str) -> dict[str, Any]:
        if operation == "listpolicies":
            return {
                "quarantinePolicy": {"status": "disabled"},
                "trustPolicy": {"type": "Notary", "status": "disabled"},
                "retentionPolicy": {"days": 7, "status": "disabled"},
            }
        return {
            "value": [
                {"name": "Size", "limit": 107374182400, "currentValue": 0, "unit": "Bytes"},
                {"name": "Webhooks", "limit": 10, "currentValue": 0, "unit": "Count"},
            ]
        }

    def _put_role_assignment(self, path: str, key: str, body: dict[str, Any]) -> dict[str, Any]:
        props = dict(body.get("properties") or {})
        collection = key.rsplit("/", 1)[0]
        for existing_key, existing in self._resources.items():
            existing_props = existing.body.get("properties") or {}
            if existing_key == key or (
                existing_key.rsplit("/", 1)[0] == collection
                and existing_props.get("principalId") == props.get("principalId")
                and existing_props.get("roleDefinitionId", "").lower()
                == props.get("roleDefinitionId", "").lower()
            ):
                raise ResourceExistsError(
                    message="(RoleAssignmentExists) The role assignment already exists."
                )

        props["scope"] = path[: key.index(ROLE_ASSIGNMENTS_SEGMENT)]
        stored = {"id": path, "name": path.rsplit("/", 1)[-1], "properties": props}
        self._resources[key] = _StoredResource(stored)
        return copy.deepcopy(stored)

    def _post(self, path: str, key: str) -> dict[str, Any]:
        target, _, operation = path.rpartition("/")
        stored = self._resources.get(target.lower())
        if stored is None:
            raise ResourceNotFoundError(message=f"The Resource '{target}' was not found.")

        match operation:
            case "listClusterUserCredential" | "listClusterAdminCredential":
                user = "clusterAdmin" if operation == "listClusterAdminCredential" else "clusterUser"
                text = kubeconfig_text(stored.body["name"], user)
                return {
                    "kubeconfigs": [
                        {"name": user, "value": base64.b64encode(text.encode()).decode()}
                    ]
                }
            case "listCredentials":
                return {
                    "username": stored.body["name"],
                    "passwords": [
                        {"name": "password", "value": "mock-password-1"},
                        {"name": "password2", "value": "mock-password-2"},
                    ],
                }
            case _:
                stored.pending_states = list(self.states_after_put)
                return {}


def kubeconfig_text(cluster_name: str, user: str) -> str:
    return (
        "apiVersion: v1\n"
        "kind: Config\n"
        f"current-context: {cluster_name}\n"
        f"users:\n- name: {user}_{cluster_name}\n"
    )


def _is_collection(key: str) -> bool:
    _, sep, rest = key.rpartition("/providers/")
    if not sep:
        return False
    return (len(rest.split("/")) - 1) % 2 == 1


def _in_collection(resource_key: str, collection_key: str) -> bool:
    parent = resource_key.rsplit("/", 1)[0]
    if parent == collection_key:
        return True
    prefix, _, suffix = collection_key.rpartition("/providers/")
    return parent.startswith(prefix + "/") and parent.endswith("/providers/" + suffix)


def _matches_filter(body: dict[str, Any], params: dict[str, str] | None) -> bool:
    expression = (params or {}).get("$filter")
    if not expression:
        return True
    props = body.get("properties") or {}
    for field_name, value in _FILTER_PATTERN.findall(expression):
        if str(props.get(field_name, "")).lower() != value.lower():
            return False
    return True
