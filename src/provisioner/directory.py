"""Directory applications and their secrets.

Clusters that do not use a managed identity need a directory application
(with a service principal) and a client secret. DirectoryCredentialBroker
finds, creates and re-keys those applications through Microsoft Graph.

A freshly created application is not immediately visible to Resource
Manager. The broker waits a short propagation interval after creating one,
but cluster creation must still tolerate the rest of that window; see
provisioning.is_principal_propagation_error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.core.pipeline import policies
from azure.core.rest import HttpRequest

from .config import DEFAULT_SECRET_DURATION_DAYS, ProvisionerConfig
from .principals import ApplicationPrincipal
from .security import log_security_audit_event, mask_identifier

logger = logging.getLogger(__name__)

GRAPH_API_VERSION = "v1.0"
APP_NAME_PREFIX = "provisioner"

_ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    404: ResourceNotFoundError,
}


class DirectoryError(Exception):
    """Raised when the directory returns an unusable application."""

    pass


class MissingSecretError(Exception):
    """Raised when an application is supplied without a retrievable secret."""

    pass


@dataclass(frozen=True)
class AppCredentials:
    """Client id and secret a cluster uses as its service principal."""

    app_id: str
    secret: str | None = field(default=None, repr=False)


class GraphDirectory:
    """Minimal Microsoft Graph client for applications and service principals."""

    def __init__(
        self,
        credential: TokenCredential,
        config: ProvisionerConfig,
        *,
        pipeline_client: PipelineClient | None = None,
    ) -> None:
        self._config = config
        self._base_url = f"{config.graph_endpoint.rstrip('/')}/{GRAPH_API_VERSION}"
        self._client = pipeline_client or PipelineClient(
            base_url=self._base_url,
            policies=[
                policies.RequestIdPolicy(),
                policies.HeadersPolicy(),
                policies.UserAgentPolicy(sdk_moniker="azure-container-provisioner"),
                policies.RetryPolicy(),
                policies.BearerTokenCredentialPolicy(credential, config.graph_scope),
                policies.HttpLoggingPolicy(),
            ],
        )

    def _call(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        request = HttpRequest(method, f"{self._base_url}{path}", json=body)
        response = self._client.send_request(
            request,
            connection_timeout=self._config.request_timeout_seconds,
            read_timeout=self._config.request_timeout_seconds,
        )
        if response.status_code >= 400:
            error_type = _ERROR_MAP.get(response.status_code, HttpResponseError)
            raise error_type(response=response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def get_application(self, app_id: str) -> ApplicationPrincipal:
        """Look up an application and its service principal by client id."""
        app = self._call("GET", f"/applications(appId='{app_id}')")
        sp = self._call("GET", f"/servicePrincipals(appId='{app_id}')")
        return ApplicationPrincipal(
            app_id=app["appId"],
            object_id=sp["id"],
            application_object_id=app["id"],
            display_name=app.get("displayName"),
        )

    def create_application(self, display_name: str) -> ApplicationPrincipal:
        """Register a new application and create its service principal."""
        app = self._call("POST", "/applications", {"displayName": display_name})
        sp = self._call("POST", "/servicePrincipals", {"appId": app["appId"]})
        return ApplicationPrincipal(
            app_id=app["appId"],
            object_id=sp["id"],
            application_object_id=app["id"],
            display_name=app.get("displayName"),
        )

    def add_password(self, application_object_id: str, display_name: str, end: datetime) -> str:
        """Issue a new client secret on an application and return its text."""
        result = self._call(
            "POST",
            f"/applications/{application_object_id}/addPassword",
            {
                "passwordCredential": {
                    "displayName": display_name,
                    "endDateTime": end.isoformat().replace("+00:00", "Z"),
                }
            },
        )
        secret = result.get("secretText")
        if not secret:
            raise DirectoryError(
                f"Directory returned no secret for application {application_object_id}"
            )
        return secret


AppCandidate = ApplicationPrincipal | AppCredentials | None


class DirectoryCredentialBroker:
    """Find, create and re-key the applications clusters run as.

    Args:
        directory: Graph client (or anything with the same three methods).
        secret_duration: Default validity for issued secrets.
        propagation_wait_seconds: Pause after creating an application.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        directory: GraphDirectory,
        *,
        secret_duration: timedelta = timedelta(days=DEFAULT_SECRET_DURATION_DAYS),
        propagation_wait_seconds: float = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._directory = directory
        self._secret_duration = secret_duration
        self._propagation_wait_seconds = propagation_wait_seconds
        self._sleep = sleep

    def lookup_application(self, app_id: str) -> ApplicationPrincipal:
        """Return the application registered under ``app_id``."""
        return self._directory.get_application(app_id)

    def find_or_create_application(
        self,
        candidate: AppCandidate,
        name: str,
        location: str,
    ) -> AppCredentials:
        """Return usable service principal credentials for a cluster.

        Args:
            candidate: None to create a new application, an application
                returned by the directory, or explicit credentials.
            name: Cluster name, used to name a new application.
            location: Cluster region, used to name a new application.

        Raises:
            MissingSecretError: If the resulting credentials carry no secret.
        """
        match candidate:
            case None:
                creds = self._create_for_cluster(name, location)
            case ApplicationPrincipal(app_id=app_id, secret=secret):
                creds = AppCredentials(app_id=app_id, secret=secret)
            case AppCredentials():
                creds = candidate
            case _:
                raise TypeError(
                    f"Unsupported service principal candidate: {type(candidate).__name__}"
                )

        if not creds.app_id:
            raise MissingSecretError("Service principal credentials have no application id")
        if not creds.secret:
            raise MissingSecretError(
                "Invalid service principal credentials: must supply app ID and secret "
                f"(app {mask_identifier(creds.app_id)} has no secret)"
            )
        return creds

    def _create_for_cluster(self, name: str, location: str) -> AppCredentials:
        display_name = f"{APP_NAME_PREFIX}-{name}-{location}"
        logger.info("Creating cluster service principal", extra={"app_name": display_name})

        app = self._directory.create_application(display_name)
        secret = self._issue_secret(app, f"{display_name}-secret", self._secret_duration)

        if self._propagation_wait_seconds > 0:
            logger.info(
                "Waiting for Resource Manager to sync with the directory",
                extra={"wait_seconds": self._propagation_wait_seconds},
            )
            self._sleep(self._propagation_wait_seconds)

        return AppCredentials(app_id=app.app_id, secret=secret)

    def rotate_secret(
        self,
        app_id: str,
        name: str | None = None,
        duration: timedelta | None = None,
    ) -> str:
        """Issue a new secret for an existing application.

        Applying the secret to whatever uses the application is the
        caller's job.
        """
        app = self._directory.get_application(app_id)
        if name is None:
            name = f"{APP_NAME_PREFIX}-rotated-{datetime.now(UTC):%Y%m%d%H%M%S}"
        return self._issue_secret(app, name, duration or self._secret_duration)

    def _issue_secret(self, app: ApplicationPrincipal, name: str, duration: timedelta) -> str:
        if not app.application_object_id:
            raise DirectoryError(f"Application {mask_identifier(app.app_id)} has no object id")

        end = datetime.now(UTC) + duration
        secret = self._directory.add_password(app.application_object_id, name, end)
        log_security_audit_event(
            "secret_issued",
            action="addPassword",
            principal_id=app.app_id,
            result="success",
        )
        return secret
