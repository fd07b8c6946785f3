"""Configuration management with validation.

Inputs are validated at load time so a misconfigured provisioner fails
before it makes a single Azure call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Cluster creation retry policy. The directory needs time to replicate a new
# application to Resource Manager; these bound how long we keep resubmitting.
MAX_SUBMIT_ATTEMPTS = 20
SUBMIT_RETRY_INTERVAL_SECONDS = 5
SUBMIT_RETRY_BUDGET_SECONDS = MAX_SUBMIT_ATTEMPTS * SUBMIT_RETRY_INTERVAL_SECONDS

# Completion polling for long-running cluster operations
DEFAULT_PROVISION_TIMEOUT_SECONDS = 1800
DEFAULT_PROVISION_POLL_INTERVAL_SECONDS = 10
MIN_PROVISION_POLL_INTERVAL_SECONDS = 1

# Transport timeout applied to every HTTP call
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Directory applications
DEFAULT_SECRET_DURATION_DAYS = 730  # ~2 years
MAX_SECRET_DURATION_DAYS = 3650
DEFAULT_DIRECTORY_PROPAGATION_WAIT_SECONDS = 10

DEFAULT_ARM_ENDPOINT = "https://management.azure.com"
DEFAULT_GRAPH_ENDPOINT = "https://graph.microsoft.com"

MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


@dataclass(frozen=True)
class ProvisionerConfig:
    """Provisioner configuration, usually loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-provisioning.
    """

    subscription_id: str
    location: str | None = None
    resource_group: str | None = None
    tenant_id: str | None = None
    managed_identity_client_id: str | None = None

    arm_endpoint: str = DEFAULT_ARM_ENDPOINT
    graph_endpoint: str = DEFAULT_GRAPH_ENDPOINT

    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    provision_timeout_seconds: int = DEFAULT_PROVISION_TIMEOUT_SECONDS
    provision_poll_interval_seconds: int = DEFAULT_PROVISION_POLL_INTERVAL_SECONDS
    directory_propagation_wait_seconds: int = DEFAULT_DIRECTORY_PROPAGATION_WAIT_SECONDS
    secret_duration_days: int = DEFAULT_SECRET_DURATION_DAYS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.tenant_id and not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if self.resource_group and len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"AZURE_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        for endpoint_name, endpoint in (
            ("ARM_ENDPOINT", self.arm_endpoint),
            ("GRAPH_ENDPOINT", self.graph_endpoint),
        ):
            if not endpoint.startswith("https://"):
                errors.append(f"{endpoint_name} must be an https URL: {endpoint}")

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if self.provision_poll_interval_seconds < MIN_PROVISION_POLL_INTERVAL_SECONDS:
            errors.append(
                f"PROVISION_POLL_INTERVAL must be at least {MIN_PROVISION_POLL_INTERVAL_SECONDS}s"
            )
        elif self.provision_timeout_seconds < self.provision_poll_interval_seconds:
            errors.append("PROVISION_TIMEOUT must not be shorter than PROVISION_POLL_INTERVAL")

        if self.directory_propagation_wait_seconds < 0:
            errors.append("DIRECTORY_PROPAGATION_WAIT cannot be negative")

        if not (1 <= self.secret_duration_days <= MAX_SECRET_DURATION_DAYS):
            errors.append(
                f"SECRET_DURATION_DAYS must be between 1 and {MAX_SECRET_DURATION_DAYS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def arm_scope(self) -> str:
        """Token scope for Azure Resource Manager."""
        return f"{self.arm_endpoint.rstrip('/')}/.default"

    @property
    def graph_scope(self) -> str:
        """Token scope for Microsoft Graph."""
        return f"{self.graph_endpoint.rstrip('/')}/.default"

    @classmethod
    def from_env(cls) -> ProvisionerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription (required)
            AZURE_TENANT_ID: Directory tenant
            AZURE_LOCATION: Default region for new resources
            AZURE_RESOURCE_GROUP: Default resource group
            AZURE_MANAGED_IDENTITY_CLIENT_ID: User-assigned identity to run as
            ARM_ENDPOINT: Resource Manager endpoint (default: public cloud)
            GRAPH_ENDPOINT: Microsoft Graph endpoint (default: public cloud)
            REQUEST_TIMEOUT: Per-request transport timeout in seconds (default: 60)
            PROVISION_TIMEOUT: Max seconds to wait for provisioning (default: 1800)
            PROVISION_POLL_INTERVAL: Seconds between status polls (default: 10)
            DIRECTORY_PROPAGATION_WAIT: Seconds to wait after creating an app (default: 10)
            SECRET_DURATION_DAYS: Validity of issued secrets (default: 730)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION") or None,
            resource_group=os.environ.get("AZURE_RESOURCE_GROUP") or None,
            tenant_id=os.environ.get("AZURE_TENANT_ID") or None,
            managed_identity_client_id=os.environ.get("AZURE_MANAGED_IDENTITY_CLIENT_ID") or None,
            arm_endpoint=os.environ.get("ARM_ENDPOINT", DEFAULT_ARM_ENDPOINT),
            graph_endpoint=os.environ.get("GRAPH_ENDPOINT", DEFAULT_GRAPH_ENDPOINT),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            provision_timeout_seconds=get_int(
                "PROVISION_TIMEOUT", DEFAULT_PROVISION_TIMEOUT_SECONDS
            ),
            provision_poll_interval_seconds=get_int(
                "PROVISION_POLL_INTERVAL", DEFAULT_PROVISION_POLL_INTERVAL_SECONDS
            ),
            directory_propagation_wait_seconds=get_int(
                "DIRECTORY_PROPAGATION_WAIT", DEFAULT_DIRECTORY_PROPAGATION_WAIT_SECONDS
            ),
            secret_duration_days=get_int("SECRET_DURATION_DAYS", DEFAULT_SECRET_DURATION_DAYS),
        )
