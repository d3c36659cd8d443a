"""Descriptor loading from YAML files with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

A spec file holds one or more YAML documents, each describing one
descriptor. Both a flat form and a Kubernetes-style form are accepted:

```yaml
name: data-volume-0
labels:
  web-dv-ri: "0"
spec:
  kind: Volume
  datacenterId: dc-1
  size: 10
---
apiVersion: convergence/v1
kind: Server
metadata:
  name: web-0
spec:
  datacenterId: dc-1
  cores: 2
  ram: 2048
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DESCRIPTORS_PER_FILE, MAX_SPEC_FILE_SIZE_BYTES
from .models import DescriptorStore, ResourceDescriptor

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _format_validation_error(source: str, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def _normalize(document: dict[str, Any], source: str) -> dict[str, Any]:
    """Turn a Kubernetes-style document into the flat descriptor form."""
    if "apiVersion" not in document:
        return document

    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    status = document.get("status") or {}
    if not isinstance(metadata, dict) or not isinstance(spec, dict) or not isinstance(status, dict):
        raise SpecLoadError(f"metadata, spec and status must be mappings: {source}")

    flat: dict[str, Any] = {
        "name": metadata.get("name"),
        "labels": metadata.get("labels") or {},
        "spec": {"kind": document.get("kind"), **spec},
    }
    if "externalId" in status:
        flat["externalId"] = status["externalId"]
    if "deletionRequested" in document:
        flat["deletionRequested"] = document["deletionRequested"]
    return flat


def parse_descriptors(content: str, source: str = "<string>") -> list[ResourceDescriptor]:
    """Parse and validate every descriptor document in content.

    Raises:
        SpecLoadError: If the YAML is invalid or a descriptor fails validation.
    """
    try:
        documents = [d for d in yaml.safe_load_all(content) if d is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    if len(documents) > MAX_DESCRIPTORS_PER_FILE:
        raise SpecLoadError(
            f"{source} holds {len(documents)} documents, "
            f"maximum is {MAX_DESCRIPTORS_PER_FILE}"
        )

    descriptors = []
    for index, document in enumerate(documents):
        location = f"{source} (document {index})"
        if not isinstance(document, dict):
            raise SpecLoadError(f"Descriptor must be a YAML mapping: {location}")
        try:
            descriptors.append(ResourceDescriptor.model_validate(_normalize(document, location)))
        except ValidationError as e:
            raise SpecLoadError(_format_validation_error(location, e)) from e
    return descriptors


def load_file(path: Path) -> list[ResourceDescriptor]:
    """Load the descriptors of one spec file.

    Raises:
        SpecLoadError: If the file is missing, too large, or invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Spec file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {path}: {e}") from e

    return parse_descriptors(content, str(path))


def spec_files(specs_dir: Path) -> list[Path]:
    """YAML files directly under specs_dir, sorted by name."""
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")
    return sorted(p for p in specs_dir.iterdir() if p.is_file() and p.suffix in SPEC_FILE_SUFFIXES)


def build_store(descriptors: Iterable[ResourceDescriptor]) -> DescriptorStore:
    """Collect descriptors into a store.

    Raises:
        SpecLoadError: If two descriptors share a name.
    """
    store = DescriptorStore()
    for descriptor in descriptors:
        try:
            store.add(descriptor)
        except ValueError as e:
            raise SpecLoadError(str(e)) from e
    return store


def load_specs(paths: Path | Iterable[Path]) -> DescriptorStore:
    """Load every descriptor from a specs directory or a list of files.

    Raises:
        SpecLoadError: If any file fails to load or names collide.
    """
    files = spec_files(paths) if isinstance(paths, Path) else list(paths)
    descriptors: list[ResourceDescriptor] = []
    for path in files:
        loaded = load_file(path)
        logger.info("Loaded %d descriptors from %s", len(loaded), path)
        descriptors.extend(loaded)
    return build_store(descriptors)
