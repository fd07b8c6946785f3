"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ClusterSpec, ContainerGroupSpec, RegistrySpec

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_mapping(spec_path: Path) -> dict:
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
        name = (raw_data.get("metadata") or {}).get("name")
        if name and "name" not in spec_data:
            spec_data = {**spec_data, "name": name}
        return spec_data

    return raw_data


def _validate(model: type[M], data: dict, spec_path: Path) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e


def load_cluster_spec(spec_path: Path) -> ClusterSpec:
    """Load and validate a cluster spec from YAML.

    Args:
        spec_path: Path to the spec file, flat or wrapped in apiVersion/kind/spec.

    Returns:
        Validated cluster spec.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    spec = _validate(ClusterSpec, _read_mapping(Path(spec_path)), spec_path)
    logger.info("Loaded cluster spec '%s' from %s", spec.name, spec_path)
    return spec


def load_registry_spec(spec_path: Path) -> RegistrySpec:
    """Load and validate a registry spec from YAML."""
    spec = _validate(RegistrySpec, _read_mapping(Path(spec_path)), spec_path)
    logger.info("Loaded registry spec '%s' from %s", spec.name, spec_path)
    return spec


def load_container_group_spec(spec_path: Path) -> ContainerGroupSpec:
    """Load and validate a container group spec from YAML."""
    spec = _validate(ContainerGroupSpec, _read_mapping(Path(spec_path)), spec_path)
    logger.info("Loaded container group spec '%s' from %s", spec.name, spec_path)
    return spec
