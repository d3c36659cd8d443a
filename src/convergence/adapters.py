"""Per-kind resource adapters and controller wiring.

Each adapter declares how its kind is diffed, late-initialized, scoped,
gated on a parent and identified for import. Request bodies come from the
spec models themselves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .allocator import AllocatorRegistry, GlobalAllocationState
from .cloudinit import CloudInitPatcher
from .config import Config
from .diff import ComparisonType, FieldRule
from .engine import ConvergenceController, ParentReference, ResourceAdapter
from .models import (
    DataplatformNodePoolSpec,
    DescriptorStore,
    K8sNodePoolSpec,
    NicSpec,
    ResourceDescriptor,
    ResourceKind,
    ServerSpec,
    VolumeSpec,
)
from .provider import ProviderClient
from .volumeselector import VolumeselectorController
from .waiter import CompletionWaiter

logger = logging.getLogger(__name__)

# Label carrying the replica identifier used for per-replica allocation
REPLICA_IDENTIFIER_LABEL = "convergence/replica"

NAME = FieldRule("name", "name", ComparisonType.NIL_SAFE)
MAINTENANCE_WINDOW = FieldRule(
    "maintenance_window", "maintenanceWindow", ComparisonType.MAINTENANCE_WINDOW
)


# =============================================================================
# Compute
# =============================================================================


class NicAdapter(ResourceAdapter):
    kind = ResourceKind.NIC
    diff_fields = (
        NAME,
        FieldRule("dhcp", "dhcp", ComparisonType.IF_OBSERVED),
        FieldRule("dhcpv6", "dhcpv6", ComparisonType.OPTIONAL),
        FieldRule("firewall_active", "firewallActive", ComparisonType.IF_OBSERVED),
        FieldRule("firewall_type", "firewallType", ComparisonType.IF_OBSERVED),
        FieldRule("ips", "ips", ComparisonType.UNORDERED, reason="IP order is not significant"),
    )
    late_init_fields = {"ips": "ips", "firewall_type": "firewallType"}

    def scope(self, spec: NicSpec) -> tuple[str, ...]:
        return (spec.datacenter_id, spec.server_id)

    def parent_of(self, spec: NicSpec) -> ParentReference:
        return ParentReference(ResourceKind.SERVER, spec.server_id, (spec.datacenter_id,))


class ServerAdapter(ResourceAdapter):
    kind = ResourceKind.SERVER
    diff_fields = (
        NAME,
        FieldRule("cores", "cores", ComparisonType.IF_OBSERVED),
        FieldRule("ram", "ram", ComparisonType.IF_OBSERVED),
        FieldRule("volume_id", "bootVolume.id", ComparisonType.OPTIONAL),
    )
    late_init_fields = {"cpu_family": "cpuFamily", "boot_cdrom_id": "bootCdrom.id"}
    immutable_discriminators = {"cpuFamily": "cpu_family"}

    def scope(self, spec: ServerSpec) -> tuple[str, ...]:
        return (spec.datacenter_id,)


class VolumeAdapter(ResourceAdapter):
    """Volumes render their cloud-init user data per replica before creation."""

    kind = ResourceKind.VOLUME
    diff_fields = (
        NAME,
        FieldRule("size", "size", ComparisonType.IF_OBSERVED),
        FieldRule("bus", "bus", ComparisonType.IF_OBSERVED),
    )
    late_init_fields = {"availability_zone": "availabilityZone"}
    immutable_discriminators = {
        "type": "storage_type",
        "availabilityZone": "availability_zone",
        "licenceType": "licence_type",
        "image": "image",
    }

    def __init__(
        self,
        allocation_state: GlobalAllocationState | None = None,
        registry: AllocatorRegistry | None = None,
    ) -> None:
        self._allocation_state = allocation_state or GlobalAllocationState()
        self._registry = registry or AllocatorRegistry.default()

    def scope(self, spec: VolumeSpec) -> tuple[str, ...]:
        return (spec.datacenter_id,)

    def to_create_request(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec: VolumeSpec = descriptor.desired
        body = spec.to_create_body()
        if spec.user_data and spec.substitutions:
            identifier = descriptor.labels.get(REPLICA_IDENTIFIER_LABEL, descriptor.name)
            patcher = CloudInitPatcher.from_encoded(
                spec.user_data,
                identifier=identifier,
                substitutions=spec.substitutions,
                state=self._allocation_state,
                registry=self._registry,
            )
            body["userData"] = patcher.encode()
            logger.debug(
                "Rendered user data",
                extra={"descriptor": descriptor.name, "identifier": identifier},
            )
        return body


# =============================================================================
# Managed Kubernetes
# =============================================================================


class K8sClusterAdapter(ResourceAdapter):
    kind = ResourceKind.K8S_CLUSTER
    diff_fields = (
        NAME,
        FieldRule("k8s_version", "k8sVersion", ComparisonType.OPTIONAL),
        FieldRule(
            "api_subnet_allow_list",
            "apiSubnetAllowList",
            ComparisonType.UNORDERED,
            reason="Allow-list order is not significant",
        ),
        FieldRule(
            "s3_buckets",
            "s3Buckets",
            ComparisonType.UNORDERED,
            reason="Bucket order is not significant",
        ),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {
        "k8s_version": "k8sVersion",
        "maintenance_window": "maintenanceWindow",
    }
    immutable_discriminators = {"location": "location"}

    def has_dependents(self, client: ProviderClient, descriptor: ResourceDescriptor) -> bool:
        pools = client.list(ResourceKind.K8S_NODE_POOL, scope=(descriptor.external_id,))
        return any(not pool.state.is_deleting for pool in pools)


class K8sNodePoolAdapter(ResourceAdapter):
    kind = ResourceKind.K8S_NODE_POOL
    diff_fields = (
        NAME,
        FieldRule("k8s_version", "k8sVersion", ComparisonType.OPTIONAL),
        FieldRule("node_count", "nodeCount", ComparisonType.IF_OBSERVED),
        FieldRule("public_ips", "publicIps", ComparisonType.UNORDERED),
        FieldRule("labels", "labels", ComparisonType.IF_OBSERVED),
        FieldRule("annotations", "annotations", ComparisonType.IF_OBSERVED),
        FieldRule("auto_scaling", "autoScaling", ComparisonType.OPTIONAL),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {
        "k8s_version": "k8sVersion",
        "cpu_family": "cpuFamily",
        "maintenance_window": "maintenanceWindow",
    }

    def scope(self, spec: K8sNodePoolSpec) -> tuple[str, ...]:
        return (spec.cluster_id,)

    def parent_of(self, spec: K8sNodePoolSpec) -> ParentReference:
        return ParentReference(ResourceKind.K8S_CLUSTER, spec.cluster_id)


# =============================================================================
# Managed Databases
# =============================================================================


class PostgresClusterAdapter(ResourceAdapter):
    kind = ResourceKind.POSTGRES_CLUSTER
    name_attribute = "display_name"
    name_property = "displayName"
    diff_fields = (
        FieldRule("display_name", "displayName", ComparisonType.NIL_SAFE),
        FieldRule("postgres_version", "postgresVersion", ComparisonType.IF_OBSERVED),
        FieldRule("instances", "instances", ComparisonType.IF_OBSERVED),
        FieldRule("cores", "cores", ComparisonType.IF_OBSERVED),
        FieldRule("ram", "ram", ComparisonType.IF_OBSERVED),
        FieldRule("storage_size", "storageSize", ComparisonType.IF_OBSERVED),
        FieldRule("connections", "connections", ComparisonType.IF_OBSERVED),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {"maintenance_window": "maintenanceWindow"}
    immutable_discriminators = {
        "location": "location",
        "storageType": "storage_type",
        "backupLocation": "backup_location",
        "synchronizationMode": "synchronization_mode",
    }


class MongoClusterAdapter(ResourceAdapter):
    kind = ResourceKind.MONGO_CLUSTER
    name_attribute = "display_name"
    name_property = "displayName"
    diff_fields = (
        FieldRule("display_name", "displayName", ComparisonType.NIL_SAFE),
        FieldRule("mongodb_version", "mongoDBVersion", ComparisonType.IF_OBSERVED),
        FieldRule("instances", "instances", ComparisonType.IF_OBSERVED),
        FieldRule("edition", "edition", ComparisonType.CASE_INSENSITIVE),
        FieldRule("connections", "connections", ComparisonType.IF_OBSERVED),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {"maintenance_window": "maintenanceWindow"}
    immutable_discriminators = {"location": "location"}


# =============================================================================
# Backup
# =============================================================================


class BackupUnitAdapter(ResourceAdapter):
    # The password is write-only and never compared
    kind = ResourceKind.BACKUP_UNIT
    diff_fields = (
        NAME,
        FieldRule("email", "email", ComparisonType.IF_OBSERVED),
    )


# =============================================================================
# Data Platform
# =============================================================================


class DataplatformClusterAdapter(ResourceAdapter):
    kind = ResourceKind.DATAPLATFORM_CLUSTER
    diff_fields = (
        NAME,
        FieldRule("version", "dataPlatformVersion", ComparisonType.OPTIONAL),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {
        "version": "dataPlatformVersion",
        "maintenance_window": "maintenanceWindow",
    }

    def has_dependents(self, client: ProviderClient, descriptor: ResourceDescriptor) -> bool:
        pools = client.list(ResourceKind.DATAPLATFORM_NODE_POOL, scope=(descriptor.external_id,))
        return any(not pool.state.is_deleting for pool in pools)


class DataplatformNodePoolAdapter(ResourceAdapter):
    kind = ResourceKind.DATAPLATFORM_NODE_POOL
    diff_fields = (
        NAME,
        FieldRule("node_count", "nodeCount", ComparisonType.IF_OBSERVED),
        FieldRule("labels", "labels", ComparisonType.IF_OBSERVED),
        FieldRule("annotations", "annotations", ComparisonType.IF_OBSERVED),
        MAINTENANCE_WINDOW,
    )
    late_init_fields = {"cpu_family": "cpuFamily", "maintenance_window": "maintenanceWindow"}

    def scope(self, spec: DataplatformNodePoolSpec) -> tuple[str, ...]:
        return (spec.cluster_id,)

    def parent_of(self, spec: DataplatformNodePoolSpec) -> ParentReference:
        return ParentReference(ResourceKind.DATAPLATFORM_CLUSTER, spec.cluster_id)


def build_adapters(
    allocation_state: GlobalAllocationState | None = None,
    registry: AllocatorRegistry | None = None,
) -> dict[ResourceKind, ResourceAdapter]:
    """One adapter per kind handled by the generic controller."""
    adapters: list[ResourceAdapter] = [
        NicAdapter(),
        ServerAdapter(),
        VolumeAdapter(allocation_state, registry),
        K8sClusterAdapter(),
        K8sNodePoolAdapter(),
        PostgresClusterAdapter(),
        MongoClusterAdapter(),
        BackupUnitAdapter(),
        DataplatformClusterAdapter(),
        DataplatformNodePoolAdapter(),
    ]
    return {adapter.kind: adapter for adapter in adapters}


def build_controllers(
    client: ProviderClient,
    config: Config,
    store: DescriptorStore,
    *,
    allocation_state: GlobalAllocationState | None = None,
    registry: AllocatorRegistry | None = None,
    cancel_event: asyncio.Event | None = None,
) -> dict[ResourceKind, ConvergenceController | VolumeselectorController]:
    """Wire one controller per kind around a shared client and waiter."""
    waiter = CompletionWaiter(client, config.request_poll_interval_seconds)
    controllers: dict[ResourceKind, ConvergenceController | VolumeselectorController] = {
        kind: ConvergenceController(
            adapter, client, config, waiter=waiter, cancel_event=cancel_event
        )
        for kind, adapter in build_adapters(allocation_state, registry).items()
    }
    controllers[ResourceKind.VOLUMESELECTOR] = VolumeselectorController(
        client, config, store, waiter=waiter, cancel_event=cancel_event
    )
    return controllers
