"""Cloud-init user-data patching.

Volumes carry base64 encoded cloud-config documents. Before a replica's
volume is created, allocated per-replica values are substituted into the
document and individual keys may be patched.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterable
from typing import Any

import yaml

from .allocator import (
    AllocatorRegistry,
    GlobalAllocationState,
    Substitution,
    build_state,
    replace_by_state,
)

logger = logging.getLogger(__name__)

CLOUD_CONFIG_HEADER = "#cloud-config"
ENVIRONMENT_KEY = "environment"


class UserDataError(Exception):
    """Base error for user-data handling."""

    pass


class UserDataDecodeError(UserDataError):
    """Raised when user data is not valid base64."""

    pass


class NoCloudConfigError(UserDataError):
    """Raised when decoded user data does not start with the cloud-config header."""

    pass


class MalformedUserDataError(UserDataError):
    """Raised when the cloud-config document is not a YAML mapping."""

    pass


def is_cloud_config(userdata: str) -> bool:
    """Check the first non-blank line is the cloud-config header."""
    first_line = userdata.lstrip().split("\n", 1)[0]
    return first_line.rstrip() == CLOUD_CONFIG_HEADER


def _parse(document: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise MalformedUserDataError(f"malformed cloud-init data: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MalformedUserDataError(
            f"malformed cloud-init data: expected a mapping, got {type(data).__name__}"
        )
    return data


class CloudInitPatcher:
    """Edits a cloud-config document."""

    def __init__(self, decoded: str, data: dict[str, Any]) -> None:
        self.decoded = decoded
        self._data = data

    @classmethod
    def from_encoded(
        cls,
        raw: str,
        identifier: str | None = None,
        substitutions: Iterable[Substitution] = (),
        state: GlobalAllocationState | None = None,
        registry: AllocatorRegistry | None = None,
    ) -> CloudInitPatcher:
        """Decode base64 user data and apply allocator substitutions.

        Args:
            raw: Base64 encoded cloud-config. Empty input yields an empty document.
            identifier: Replica identifier the substitutions are allocated for.
            substitutions: Substitutions to allocate and apply.
            state: Allocation state shared between replicas.
            registry: Handlers for substitution types.

        Raises:
            UserDataDecodeError: If raw is not valid base64.
            NoCloudConfigError: If the header is missing.
            MalformedUserDataError: If the document is not a YAML mapping.
            AllocationError: If a substitution cannot be allocated.
        """
        try:
            decoded = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise UserDataDecodeError(f"failed to decode base64: {e}") from e

        if not decoded:
            return cls("", {})

        if not is_cloud_config(decoded):
            raise NoCloudConfigError("no cloud-config header found")

        patcher = cls(decoded, _parse(decoded))

        substitutions = list(substitutions)
        if identifier is not None and substitutions:
            state = state if state is not None else GlobalAllocationState()
            registry = registry if registry is not None else AllocatorRegistry.default()
            build_state(identifier, substitutions, state, registry)
            patcher.decoded = replace_by_state(identifier, state, patcher.decoded)
            patcher._data = _parse(patcher.decoded)
            logger.debug(
                "Applied substitutions",
                extra={"identifier": identifier, "count": len(substitutions)},
            )

        return patcher

    def patch(self, key: str, value: Any) -> CloudInitPatcher:
        self._data[key] = value
        return self

    def set_env(self, key: str, value: str) -> CloudInitPatcher:
        """Set a variable under the "environment" key."""
        environment = self._data.get(ENVIRONMENT_KEY)
        if not isinstance(environment, dict):
            environment = {}
            self._data[ENVIRONMENT_KEY] = environment
        environment[key] = value
        return self

    def get_env(self, key: str) -> str:
        environment = self._data.get(ENVIRONMENT_KEY)
        if not isinstance(environment, dict):
            return ""
        return str(environment.get(key, ""))

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def render(self) -> str:
        """Serialize the document with the cloud-config header."""
        body = yaml.safe_dump(self._data, default_flow_style=False, sort_keys=False)
        return f"{CLOUD_CONFIG_HEADER}\n{body}"

    def encode(self) -> str:
        return base64.b64encode(self.render().encode("utf-8")).decode("ascii")

    def __str__(self) -> str:
        return self.render()
