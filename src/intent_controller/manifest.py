"""AppIntent manifest loading with validation.

Used by the CLI to render desired resources offline. File size is checked
before reading and the parsed document is validated with the same models the
reconciler uses.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import KIND, AppIntent

logger = logging.getLogger(__name__)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB

DEFAULT_MANIFEST_NAMESPACE = "default"


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


def load_intent(path: Path) -> AppIntent:
    """Load and validate an AppIntent manifest from YAML.

    Args:
        path: Path to a single-document YAML manifest.

    Returns:
        Validated intent. A manifest without a namespace is placed in
        ``default``.

    Raises:
        ManifestLoadError: If the file cannot be read or is not a valid AppIntent.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {path}")

    kind = raw_data.get("kind")
    if kind != KIND:
        raise ManifestLoadError(f"Expected kind {KIND}, got {kind!r}: {path}")

    metadata = raw_data.get("metadata")
    if not isinstance(metadata, dict):
        raise ManifestLoadError(f"Manifest has no metadata mapping: {path}")
    raw_data["metadata"] = {"namespace": DEFAULT_MANIFEST_NAMESPACE, **metadata}

    try:
        intent = AppIntent.from_object(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded AppIntent manifest", extra={"intent": intent.key, "path": str(path)})
    return intent
