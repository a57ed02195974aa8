"""Desired-state document loading with validation.

SECURITY: File sizes are checked before reading. Input validation is
performed at the boundary: a document either parses into a DesiredState or
raises SpecLoadError, which is a ValidationError so callers handle both the
same way.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_DESIRED_STATE_FILE_SIZE_BYTES
from .dependency import ValidationError
from .models import DesiredState

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(ValidationError):
    """Raised when a desired-state document cannot be loaded or parsed."""

    pass


def parse_desired_state(data: Any, source: str = "<document>") -> DesiredState:
    """Build a DesiredState from parsed YAML/JSON data.

    Accepts a flat mapping or a Kubernetes-style wrapper with a ``spec`` key.

    Raises:
        SpecLoadError: If the data does not describe a desired state.
    """
    if not isinstance(data, dict):
        raise SpecLoadError(f"Desired state must be a mapping: {source}")

    if "apiVersion" in data and "spec" in data:
        spec_data = data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = data.get("metadata") or {}
        if "deploymentName" not in spec_data and isinstance(metadata, dict) and "name" in metadata:
            spec_data = {**spec_data, "deploymentName": metadata["name"]}
    else:
        spec_data = data

    try:
        return DesiredState.model_validate(spec_data)
    except PydanticValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{source}: {loc}: {error['msg']}")
        raise SpecLoadError(errors) from e


def load_desired_state(path: Path) -> DesiredState:
    """Load and parse one desired-state YAML file.

    Raises:
        SpecLoadError: If the file is missing, too large, or invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Desired state file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat desired state file {path}: {e}") from e

    if file_size > MAX_DESIRED_STATE_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired state file exceeds maximum size of "
            f"{MAX_DESIRED_STATE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read desired state file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Desired state file is not valid UTF-8: {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    desired = parse_desired_state(raw_data, source=str(path))
    logger.info(
        "Loaded desired state '%s' from %s", desired.deployment_name, path
    )
    return desired


def discover_documents(directory: Path) -> list[Path]:
    """Desired-state files in a directory, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix in DOCUMENT_SUFFIXES
    )
