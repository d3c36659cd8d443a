"""Identity resolution for import-or-create.

With unique names enabled, a resource that already exists remotely under
the desired name is adopted instead of created a second time. Properties
that cannot change after creation must agree, otherwise adopting the
resource would silently ignore part of the desired spec.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .diff import is_empty
from .provider import RemoteResource

logger = logging.getLogger(__name__)


class IdentityResolutionError(Exception):
    """Raised when an existing resource cannot be safely adopted."""

    pass


class AmbiguousDuplicateError(IdentityResolutionError):
    """Raised when more than one remote resource carries the desired name."""

    def __init__(self, name: str, count: int) -> None:
        super().__init__(f"found multiple resources with the name {name!r} ({count})")
        self.name = name
        self.count = count


class ImmutablePropertyConflictError(IdentityResolutionError):
    """Raised when a name match differs in a property fixed at creation."""

    def __init__(self, name: str, property_name: str, expected: Any, actual: Any) -> None:
        super().__init__(
            f"resource {name!r} already exists with {property_name}={actual!r}, "
            f"expected {expected!r}; {property_name} cannot be changed"
        )
        self.name = name
        self.property_name = property_name
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class NaturalKey:
    """Name plus immutable discriminators identifying a resource.

    Attributes:
        name: Desired resource name.
        name_property: Observed property holding the name.
        discriminators: Observed property -> desired value. Empty desired
            values are not checked.
    """

    name: str
    name_property: str = "name"
    discriminators: Mapping[str, Any] = field(default_factory=dict)


class IdentityResolver:
    """Finds the remote resource a descriptor should adopt."""

    def resolve(
        self, key: NaturalKey, candidates: Iterable[RemoteResource]
    ) -> RemoteResource | None:
        """Pick the single remote resource matching the natural key.

        Args:
            key: Natural key of the desired resource.
            candidates: Remote resources of the same kind and scope.

        Returns:
            The matching resource, or None when nothing matches.

        Raises:
            AmbiguousDuplicateError: If several resources carry the name.
            ImmutablePropertyConflictError: If the match differs in a
                discriminator.
        """
        if not key.name:
            return None

        matches = [c for c in candidates if c.lookup(key.name_property) == key.name]
        if not matches:
            return None

        for candidate in matches:
            for property_name, expected in key.discriminators.items():
                actual = candidate.lookup(property_name)
                if is_empty(expected) or actual is None:
                    continue
                if actual != expected:
                    raise ImmutablePropertyConflictError(
                        key.name, property_name, expected, actual
                    )

        if len(matches) > 1:
            raise AmbiguousDuplicateError(key.name, len(matches))

        match = matches[0]

        logger.info(
            "Found existing resource to adopt",
            extra={"resource_name": key.name, "external_id": match.id},
        )
        return match
