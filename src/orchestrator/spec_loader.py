"""Deployment manifest loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary: a manifest that loads is a manifest whose records are
well-formed (graph-level checks happen in build_plan).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import DeploymentManifest

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def parse_manifest(raw_data: Any, source: str = "<memory>") -> DeploymentManifest:
    """Validate already-deserialized manifest data.

    Supports both a flat document and a Kubernetes-style wrapper with
    apiVersion/kind/spec, in which case the spec section is used.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeploymentManifest.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_manifest(manifest_path: Path) -> DeploymentManifest:
    """Load and validate a deployment manifest from YAML.

    Args:
        manifest_path: Path to the manifest file.

    Returns:
        Validated manifest.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not manifest_path.exists():
        raise SpecLoadError(f"Manifest file not found: {manifest_path}")

    try:
        file_size = manifest_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {manifest_path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: "
            f"{manifest_path}"
        )

    try:
        content = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read manifest file {manifest_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {manifest_path}: {e}") from e

    manifest = parse_manifest(raw_data, str(manifest_path))

    logger.info(
        "Loaded manifest from %s",
        manifest_path,
        extra={
            "resource_count": len(manifest.resources),
            "secret_binding_count": len(manifest.secret_bindings),
            "has_recovery_plan": manifest.recovery_plan is not None,
        },
    )
    return manifest
