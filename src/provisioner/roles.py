"""Role assignments, including grants to a cluster's own identity.

The usual case is granting a cluster pull access on a registry:

    orchestrator.grant(registry.id, "AcrPull", cluster)

For a cluster the principal is resolved first (see principals.py); a plain
object id is passed straight through. Authorization failures are raised as
AuthorizationError on first occurrence, carrying the server's message.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from .arm import ArmClient
from .paging import PaginationError, list_resources
from .principals import (
    ApplicationPrincipal,
    ManagedIdentityPrincipal,
    PrincipalId,
    PrincipalRef,
    PrincipalResolver,
    as_principal_ref,
)
from .resources import ClusterResource, RoleAssignment
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

AUTHORIZATION_PROVIDER = "Microsoft.Authorization"
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# Well-known built-in role GUIDs; the same in every tenant
BUILTIN_ROLES: dict[str, str] = {
    "owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "user access administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "network contributor": "4d97b98b-1d4f-4787-a291-c67834d212e7",
    "acrpull": "7f951dda-4ed3-4680-a7ca-43fe172d538d",
    "acrpush": "8311e382-0749-4cb8-b61a-304f252e45ec",
    "acrdelete": "c2f4ef07-c644-48eb-af81-4b1b4947fb11",
    "acrimagesigner": "6cef56e8-d556-48e5-a04f-b8e64114680f",
    "azure kubernetes service cluster user role": "4abbcc35-e782-43d8-92c5-2d3f1bd2253f",
    "azure kubernetes service cluster admin role": "0ab0b1a8-8aac-4efd-b8c2-3ee1fb270be8",
    "azure kubernetes service contributor role": "ed7f3fbd-7b88-4dd4-9017-9adb7ce333f8",
    "managed identity operator": "f1a07417-d97a-45cb-824c-7a7467783830",
}


class AuthorizationError(Exception):
    """Raised when the authorization API refuses a role assignment request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# Error code ARM uses when the principal already holds the role at the scope
ROLE_ASSIGNMENT_EXISTS_CODE = "RoleAssignmentExists"


def is_existing_assignment_conflict(error: HttpResponseError) -> bool:
    """Whether a 409 means the assignment exists, rather than e.g. a locked scope."""
    code = getattr(getattr(error, "error", None), "code", None)
    if code:
        return code == ROLE_ASSIGNMENT_EXISTS_CODE
    return ROLE_ASSIGNMENT_EXISTS_CODE.lower() in str(error).lower()


def assignment_name(principal_id: str, role_definition_id: str, scope: str) -> str:
    """Deterministic assignment name, so granting twice targets one assignment."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{principal_id}:{role_definition_id}:{scope}"))


class RoleAssignmentClient:
    """The base role-assignment calls against Microsoft.Authorization."""

    def __init__(self, arm: ArmClient) -> None:
        self._arm = arm

    def _api_version(self, resource_type: str) -> str:
        return self._arm.api_version_for(AUTHORIZATION_PROVIDER, resource_type)

    def role_definition_id(self, scope: str, role_name: str) -> str:
        """Resolve a role name (or GUID) to a full role definition ID.

        Raises:
            AuthorizationError: If no role with that name is visible at the scope.
        """
        guid = BUILTIN_ROLES.get(role_name.lower())
        if guid is None and re.match(VALID_GUID_PATTERN, role_name.lower()):
            guid = role_name.lower()
        if guid is not None:
            return (
                f"/subscriptions/{self._arm.subscription_id}/providers/{AUTHORIZATION_PROVIDER}"
                f"/roleDefinitions/{guid}"
            )

        try:
            definitions = list_resources(
                self._arm,
                f"{scope}/providers/{AUTHORIZATION_PROVIDER}/roleDefinitions",
                self._api_version("roleDefinitions"),
                params={"$filter": f"roleName eq '{role_name}'"},
            )
        except PaginationError as e:
            raise AuthorizationError(f"Failed to look up role '{role_name}': {e}") from e

        if not definitions:
            raise AuthorizationError(f"Unknown role '{role_name}' at scope {scope}")
        logger.info("Role resolved by name", extra={"role": role_name, "scope": scope})
        return definitions[0]["id"]

    def create(
        self,
        scope: str,
        role_name: str,
        principal_id: str,
        principal_type: str | None = None,
    ) -> RoleAssignment:
        """Assign a role to a principal at a scope.

        Raises:
            AuthorizationError: If the authorization API rejects the request.
        """
        role_definition_id = self.role_definition_id(scope, role_name)
        name = assignment_name(principal_id, role_definition_id, scope)
        path = f"{scope}/providers/{AUTHORIZATION_PROVIDER}/roleAssignments/{name}"
        api_version = self._api_version("roleAssignments")

        properties: dict[str, Any] = {
            "roleDefinitionId": role_definition_id,
            "principalId": principal_id,
        }
        if principal_type:
            properties["principalType"] = principal_type

        try:
            body = self._arm.request(
                "PUT", path, api_version=api_version, body={"properties": properties}
            )
        except ResourceExistsError as e:
            if not is_existing_assignment_conflict(e):
                raise AuthorizationError(str(e), status_code=409) from e
            logger.info("Role assignment already exists", extra={"role": role_name, "scope": scope})
            return self._find_existing(scope, role_name, role_definition_id, principal_id, path, e)
        except HttpResponseError as e:
            raise AuthorizationError(str(e), status_code=e.status_code) from e

        return RoleAssignment.from_arm(body, role_name=role_name)

    def _find_existing(
        self,
        scope: str,
        role_name: str,
        role_definition_id: str,
        principal_id: str,
        path: str,
        conflict: ResourceExistsError,
    ) -> RoleAssignment:
        api_version = self._api_version("roleAssignments")
        try:
            return RoleAssignment.from_arm(
                self._arm.request("GET", path, api_version=api_version), role_name=role_name
            )
        except ResourceNotFoundError:
            pass
        except HttpResponseError as e:
            raise AuthorizationError(str(e), status_code=e.status_code) from e

        # Assigned earlier under a different name
        guid = role_definition_id.rsplit("/", 1)[-1].lower()
        for item in self.list_assignments(scope, principal_id=principal_id):
            if item.role_definition_id.lower().endswith(guid):
                return RoleAssignment(
                    id=item.id,
                    name=item.name,
                    scope=item.scope,
                    principal_id=item.principal_id,
                    role_definition_id=item.role_definition_id,
                    role_name=role_name,
                )
        raise AuthorizationError(
            f"Role assignment for '{role_name}' reported as existing but not found at {scope}: "
            f"{conflict}",
            status_code=409,
        ) from conflict

    def list_assignments(self, scope: str, principal_id: str | None = None) -> list[RoleAssignment]:
        """Role assignments at a scope, optionally for one principal."""
        flt = f"principalId eq '{principal_id}'" if principal_id else "atScope()"
        try:
            items = list_resources(
                self._arm,
                f"{scope}/providers/{AUTHORIZATION_PROVIDER}/roleAssignments",
                self._api_version("roleAssignments"),
                params={"$filter": flt},
            )
        except PaginationError as e:
            raise AuthorizationError(f"Failed to list role assignments at {scope}: {e}") from e
        return [RoleAssignment.from_arm(item) for item in items]


class RoleAssignmentOrchestrator:
    """Grant role R on scope X to principal P, where P may be a cluster."""

    def __init__(self, resolver: PrincipalResolver, client: RoleAssignmentClient) -> None:
        self._resolver = resolver
        self._client = client

    def grant(
        self,
        scope: str,
        role_name: str,
        principal: str | ClusterResource | PrincipalRef,
    ) -> RoleAssignment:
        """Create a role assignment, resolving cluster principals first.

        Raises:
            PrincipalResolutionError: If a cluster's identity state is inconsistent.
            AuthorizationError: If the authorization API rejects the request.
        """
        ref = as_principal_ref(principal)
        principal_type: str | None = None

        match ref:
            case PrincipalId(value=principal_id):
                pass
            case _:
                resolved = self._resolver.resolve(ref)
                match resolved:
                    case ManagedIdentityPrincipal() | ApplicationPrincipal():
                        principal_type = "ServicePrincipal"
                principal_id = resolved.principal_id

        try:
            assignment = self._client.create(scope, role_name, principal_id, principal_type)
        except AuthorizationError:
            log_security_audit_event(
                "role_assignment",
                target_resource=scope,
                action=role_name,
                principal_id=principal_id,
                result="denied",
            )
            raise

        log_security_audit_event(
            "role_assignment",
            target_resource=scope,
            action=role_name,
            principal_id=principal_id,
            result="success",
        )
        return assignment
