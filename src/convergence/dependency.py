"""Resource dependency ordering, reference resolution and gating.

This module implements dependency management between resource kinds:
1. Dependency graph construction from descriptor references
2. Topological sorting so parents are reconciled first and deleted last
3. Cycle detection to prevent deadlocks
4. Parent readiness gating before any mutating call on a child

DESIGN PHILOSOPHY:
- Children reference parents by id, or by descriptor name via a *Ref field
- A referenced descriptor's external id is copied into the child before
  each reconcile; an uncreated parent blocks the child
- A child is only created, updated or deleted while its parent is ACTIVE

EXAMPLE SPEC:
```yaml
name: workers
spec:
  kind: K8sNodePool
  clusterRef: main-cluster   # K8sNodePool needs its K8sCluster first
```
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from .models import DescriptorStore, ProviderState, ResourceDescriptor, ResourceKind
from .provider import APIResponse, ProviderError, RemoteResource

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class DependencyUnknownError(DependencyError):
    """Raised when the parent could not be fetched. Retryable."""

    pass


class DependencyMissingError(DependencyError):
    """Raised when the parent does not exist."""

    pass


class DependencyNotReadyError(DependencyError):
    """Raised when the parent exists but is not ACTIVE."""

    def __init__(self, message: str, state: ProviderState) -> None:
        super().__init__(message)
        self.state = state


class DependencyExistsError(DependencyError):
    """Raised when deleting a resource that still has live dependents."""

    pass


# Child kind -> parent kinds it needs before it can be mutated
KNOWN_DEPENDENCIES: dict[ResourceKind, list[ResourceKind]] = {
    ResourceKind.SERVER: [ResourceKind.VOLUME],
    ResourceKind.VOLUME: [],
    ResourceKind.NIC: [ResourceKind.SERVER],
    ResourceKind.K8S_CLUSTER: [],
    ResourceKind.K8S_NODE_POOL: [ResourceKind.K8S_CLUSTER],
    ResourceKind.POSTGRES_CLUSTER: [],
    ResourceKind.MONGO_CLUSTER: [],
    ResourceKind.BACKUP_UNIT: [],
    ResourceKind.DATAPLATFORM_CLUSTER: [],
    ResourceKind.DATAPLATFORM_NODE_POOL: [ResourceKind.DATAPLATFORM_CLUSTER],
    # Fan-in: every replica needs its volumes and its server
    ResourceKind.VOLUMESELECTOR: [ResourceKind.VOLUME, ResourceKind.SERVER],
}


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of descriptor dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Descriptor name.
            depends_on: Descriptor names this descriptor depends on.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = depends_on
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=depends_on or [])

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ResourceDescriptor]) -> DependencyGraph:
        """Build the graph for a set of descriptors.

        Explicit references produce exact edges. A descriptor whose kind has
        parents but which declares no reference depends on every descriptor
        of its parent kinds.
        """
        descriptors = list(descriptors)
        graph = cls()
        for descriptor in descriptors:
            parents = list(references_of(descriptor).values())
            if not parents:
                parent_kinds = KNOWN_DEPENDENCIES.get(descriptor.kind, [])
                parents = [d.name for d in descriptors if d.kind in parent_kinds]
            graph.add_node(descriptor.name, parents)
        return graph

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return names in dependency order (dependencies first).

        Returns:
            List of descriptor names in execution order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
                in_degree[node.name] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        return result

    def deletion_order(self) -> list[str]:
        """Return names with dependents first, so parents are deleted last."""
        return list(reversed(self.topological_sort()))


def references_of(descriptor: ResourceDescriptor) -> dict[str, str]:
    """Map id field -> referenced descriptor name for every set reference."""
    spec = descriptor.desired
    refs: dict[str, str] = {}
    for ref_field, id_field in spec.references.items():
        target = getattr(spec, ref_field)
        if target:
            refs[id_field] = target
    return refs


def resolve_references(descriptor: ResourceDescriptor, store: DescriptorStore) -> None:
    """Copy referenced descriptors' external ids into the descriptor's id fields.

    Raises:
        DependencyMissingError: If a referenced descriptor is not in the store.
        DependencyNotReadyError: If a referenced descriptor was not created yet.
    """
    for id_field, target_name in references_of(descriptor).items():
        target = store.get(target_name)
        if target is None:
            raise DependencyMissingError(
                f"{descriptor.name} references unknown descriptor {target_name}"
            )
        if not target.external_id:
            raise DependencyNotReadyError(
                f"{descriptor.name} waits for {target_name} to be created",
                target.observed.state,
            )
        current = getattr(descriptor.desired, id_field)
        if current != target.external_id:
            logger.debug(
                "Resolved reference",
                extra={
                    "descriptor": descriptor.name,
                    "field": id_field,
                    "target": target_name,
                },
            )
            setattr(descriptor.desired, id_field, target.external_id)


ParentFetch = Callable[[], Awaitable[tuple[RemoteResource, APIResponse]]]


class DependencyGate:
    """Checks that a parent resource is ACTIVE before a child is mutated.

    Compute resources report AVAILABLE where managed services report
    ACTIVE; both count as ready.
    """

    async def check(
        self, parent_kind: ResourceKind, parent_id: str, fetch: ParentFetch
    ) -> RemoteResource:
        """Fetch the parent and verify it is ready.

        Args:
            parent_kind: Kind of the parent resource.
            parent_id: Provider id of the parent.
            fetch: Coroutine function returning the parent resource.

        Returns:
            The parent resource.

        Raises:
            DependencyMissingError: If the parent is absent.
            DependencyUnknownError: If the parent could not be fetched.
            DependencyNotReadyError: If the parent is not ACTIVE.
        """
        if not parent_id:
            raise DependencyMissingError(f"{parent_kind.value} id is not set")

        try:
            parent, _ = await fetch()
        except ProviderError as e:
            if e.not_found:
                raise DependencyMissingError(
                    f"{parent_kind.value} {parent_id} does not exist"
                ) from e
            raise DependencyUnknownError(
                f"Could not determine state of {parent_kind.value} {parent_id}: {e}"
            ) from e

        if not parent.state.is_ready:
            raise DependencyNotReadyError(
                f"{parent_kind.value} must be in ACTIVE state, current state: {parent.state.value}",
                parent.state,
            )
        return parent


def replica_ready(volume_ids: Iterable[str], datacenter_id: str, server_id: str) -> bool:
    """A replica is ready when it has volumes, each with an id, and its server is located."""
    volume_ids = list(volume_ids)
    if not volume_ids or any(not volume_id for volume_id in volume_ids):
        return False
    return bool(datacenter_id) and bool(server_id)
