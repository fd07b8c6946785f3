"""Container instance groups: request assembly and registry credentials.

A group runs one container. Images held in a private registry need the
registry's login server and an admin password in the request:

    credential = service.get_registry_credential(registry)
    service.create_container_group(spec, registries=[credential])

Passwords are sent once and never returned by the service.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import ContainerGroupSpec
from .provisioning import deep_merge


@dataclass(frozen=True)
class ImageRegistryCredential:
    """Login for a private image registry."""

    server: str
    username: str
    password: str = field(repr=False)

    def to_arm(self) -> dict[str, str]:
        return {"server": self.server, "username": self.username, "password": self.password}


def environment_variables(spec: ContainerGroupSpec) -> list[dict[str, str]]:
    """Plain variables first, then secure ones as ``secureValue``."""
    variables = [{"name": name, "value": value} for name, value in spec.env_vars.items()]
    variables.extend(
        {"name": name, "secureValue": value.get_secret_value()}
        for name, value in spec.secure_env_vars.items()
    )
    return variables


def build_container_group_request(
    spec: ContainerGroupSpec,
    location: str,
    credentials: Sequence[ImageRegistryCredential] = (),
) -> dict[str, Any]:
    """Assemble the containerGroups PUT body."""
    ports = [port.to_arm() for port in spec.ports]
    container = {
        "name": spec.container or spec.name,
        "properties": {
            "image": spec.image,
            "command": list(spec.command),
            "environmentVariables": environment_variables(spec),
            "resources": {"requests": {"cpu": spec.cores, "memoryInGB": spec.memory_gb}},
            "ports": ports,
        },
    }

    props: dict[str, Any] = {
        "containers": [container],
        "restartPolicy": spec.restart_policy.value,
        "osType": spec.os_type.value,
    }
    if credentials:
        props["imageRegistryCredentials"] = [c.to_arm() for c in credentials]
    if spec.public_ip:
        props["ipAddress"] = {
            "type": "Public",
            "dnsNameLabel": spec.dns_name or spec.name,
            "ports": ports,
        }

    body: dict[str, Any] = {
        "location": location,
        "properties": deep_merge(props, spec.properties),
    }
    if spec.managed_identity:
        body["identity"] = {"type": "SystemAssigned"}
    if spec.tags:
        body["tags"] = dict(spec.tags)
    return body
