"""Credential handling for the provisioner's own Azure identity.

The provisioner brokers service principal secrets for the clusters it
creates, but it never authenticates with one itself:

SECURITY INVARIANTS:
1. The provisioner's own credential is a managed identity
2. Client secrets and passwords must never be present in its environment
3. Brokered secrets and directory identifiers never appear in log records
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate the provisioner itself runs with a secret
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Detected {env_var} in the environment. The provisioner authenticates with a "
    "managed identity only; remove secret-based credential variables and assign a "
    "managed identity with rights on the target subscription instead."
)

MASK_VISIBLE_CHARS = 8


class SecretlessViolationError(Exception):
    """Raised when the provisioner's environment carries secret-based credentials."""

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to start when secret-based credential variables are set.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug("Secretless architecture verified")


def get_management_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get the provisioner's ManagedIdentityCredential.

    Args:
        client_id: Client ID of a user-assigned managed identity.
                   If None, the system-assigned identity is used.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": mask_identifier(client_id)},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def mask_identifier(value: str | None) -> str | None:
    """Shorten a directory identifier for log output."""
    if value is None:
        return None
    if len(value) <= MASK_VISIBLE_CHARS:
        return value
    return value[:MASK_VISIBLE_CHARS] + "..."


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    principal_id: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (role_assignment, secret_issued, secret_rotated).
        target_resource: Azure resource ID the event applies to.
        action: Action being performed.
        principal_id: Principal involved; masked before logging.
        result: Outcome (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "principal_id": mask_identifier(principal_id),
            "result": result,
        },
    )
