"""Deterministic per-replica value allocation.

Replicas of a server set are templated from one cloud-init document. Each
replica needs its own values for some keys (a static address, for example).
Handlers allocate those values into a shared GlobalAllocationState so that
the same replica always gets the same value and, for unique substitutions,
no two replicas share one.

EXAMPLE:
```yaml
substitutions:
  - type: ipv4Address
    key: $ipv4Address
    unique: true
    additionalProperties:
      cidr: 10.0.0.0/24
```
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import ClassVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CIDR_PROPERTY = "cidr"


class AllocationError(Exception):
    """Base error for value allocation."""

    pass


class MissingCIDRError(AllocationError):
    """Raised when an address substitution has no cidr property."""

    pass


class InvalidCIDRError(AllocationError):
    """Raised when the cidr property is not a network of the right family."""

    pass


class AddressSpaceExhaustedError(AllocationError):
    """Raised when every usable address of a CIDR is taken."""

    def __init__(self, cidr: str, key: str) -> None:
        super().__init__(f"no unused address left in {cidr} for {key}")
        self.cidr = cidr
        self.key = key


class Substitution(BaseModel):
    """A templated key and the handler that produces its per-replica value."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    key: str
    unique: bool = False
    additional_properties: dict[str, str] = Field(
        default_factory=dict, alias="additionalProperties"
    )


@dataclass(frozen=True)
class AllocationEntry:
    key: str
    value: str


class GlobalAllocationState:
    """Replica identifier -> allocated (key, value) entries.

    Guarded by a lock so allocations from concurrent reconciles never hand
    out the same unique value twice. Hold `lock` for check-then-set
    sequences.
    """

    def __init__(self, entries: Mapping[str, Iterable[tuple[str, str]]] | None = None) -> None:
        self.lock = threading.RLock()
        self._entries: dict[str, list[AllocationEntry]] = {}
        for identifier, pairs in (entries or {}).items():
            for key, value in pairs:
                self.set(identifier, key, value)

    def get(self, identifier: str, key: str) -> str | None:
        with self.lock:
            for entry in self._entries.get(identifier, []):
                if entry.key == key:
                    return entry.value
            return None

    def set(self, identifier: str, key: str, value: str) -> None:
        with self.lock:
            entries = self._entries.setdefault(identifier, [])
            entries[:] = [e for e in entries if e.key != key]
            entries.append(AllocationEntry(key, value))

    def entries(self, identifier: str) -> list[AllocationEntry]:
        with self.lock:
            return list(self._entries.get(identifier, []))

    def values_for_key(self, key: str) -> list[str]:
        """All values recorded for key across every identifier."""
        with self.lock:
            return [e.value for entries in self._entries.values() for e in entries if e.key == key]

    def identifiers(self) -> Iterator[str]:
        with self.lock:
            return iter(list(self._entries))

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        """Serializable form, used to persist the state between runs."""
        with self.lock:
            return {
                identifier: [{"key": e.key, "value": e.value} for e in entries]
                for identifier, entries in self._entries.items()
            }

    @classmethod
    def from_dict(cls, data: Mapping[str, Iterable[Mapping[str, str]]]) -> GlobalAllocationState:
        return cls(
            {identifier: [(e["key"], e["value"]) for e in entries] for identifier, entries in data.items()}
        )


class AllocationHandler(ABC):
    """Produces values for one substitution type."""

    type: ClassVar[str]

    def write_state(
        self, identifier: str, state: GlobalAllocationState, substitution: Substitution
    ) -> str:
        """Allocate a value for identifier unless it already has one.

        Returns:
            The value recorded for identifier and the substitution key.
        """
        self.validate(substitution)

        with state.lock:
            existing = state.get(identifier, substitution.key)
            if existing is not None:
                return existing

            used = state.values_for_key(substitution.key) if substitution.unique else []
            value = self.allocate(substitution, used)
            state.set(identifier, substitution.key, value)

        logger.info(
            "Allocated value",
            extra={"identifier": identifier, "key": substitution.key, "value": value},
        )
        return value

    def validate(self, substitution: Substitution) -> None:
        """Raise AllocationError if substitution cannot be served."""
        pass

    @abstractmethod
    def allocate(self, substitution: Substitution, used: list[str]) -> str:
        """Return the first value not in used."""
        ...


class NetworkAddressHandler(AllocationHandler):
    """Hands out addresses of a CIDR in ascending order.

    The network address is never handed out; the broadcast address is.
    """

    version: ClassVar[int]

    def validate(self, substitution: Substitution) -> None:
        self.network(substitution)

    def network(self, substitution: Substitution) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        cidr = substitution.additional_properties.get(CIDR_PROPERTY)
        if not cidr:
            raise MissingCIDRError(f"substitution {substitution.key} is missing {CIDR_PROPERTY}")

        try:
            network = ipaddress.ip_network(cidr, strict=False)
        except ValueError as e:
            raise InvalidCIDRError(f"invalid CIDR {cidr!r}: {e}") from e
        if network.version != self.version:
            raise InvalidCIDRError(f"{cidr} is not an IPv{self.version} network")
        return network

    def allocate(self, substitution: Substitution, used: list[str]) -> str:
        network = self.network(substitution)

        taken = set()
        for value in used:
            try:
                taken.add(int(ipaddress.ip_address(value)))
            except ValueError:
                logger.warning(
                    "Ignoring unparseable allocated value",
                    extra={"key": substitution.key, "value": value},
                )

        base = int(network.network_address)
        for offset in range(1, network.num_addresses):
            if base + offset not in taken:
                return str(network.network_address + offset)

        raise AddressSpaceExhaustedError(
            substitution.additional_properties[CIDR_PROPERTY], substitution.key
        )


class IPv4AddressHandler(NetworkAddressHandler):
    type = "ipv4Address"
    version = 4


class IPv6AddressHandler(NetworkAddressHandler):
    type = "ipv6Address"
    version = 6


class AllocatorRegistry:
    """Substitution type -> handler."""

    def __init__(self, handlers: Iterable[AllocationHandler] = ()) -> None:
        self._handlers: dict[str, AllocationHandler] = {}
        for handler in handlers:
            self.register(handler)

    @classmethod
    def default(cls) -> AllocatorRegistry:
        return cls([IPv4AddressHandler(), IPv6AddressHandler()])

    def register(self, handler: AllocationHandler) -> None:
        if not getattr(handler, "type", ""):
            raise ValueError("handler must declare a substitution type")
        self._handlers[handler.type] = handler

    def get(self, substitution_type: str) -> AllocationHandler | None:
        return self._handlers.get(substitution_type)

    def __contains__(self, substitution_type: object) -> bool:
        return substitution_type in self._handlers


def build_state(
    identifier: str,
    substitutions: Iterable[Substitution],
    state: GlobalAllocationState,
    registry: AllocatorRegistry,
) -> None:
    """Allocate every substitution for identifier. Unknown types are skipped."""
    for substitution in substitutions:
        handler = registry.get(substitution.type)
        if handler is None:
            logger.warning(
                "Skipping substitution with unknown type",
                extra={"type": substitution.type, "key": substitution.key},
            )
            continue
        handler.write_state(identifier, state, substitution)


def replace_by_state(identifier: str, state: GlobalAllocationState, text: str) -> str:
    """Replace every allocated key for identifier in text with its value."""
    # Longest keys first so "$ip10" is not clobbered by "$ip1"
    for entry in sorted(state.entries(identifier), key=lambda e: len(e.key), reverse=True):
        text = text.replace(entry.key, entry.value)
    return text
