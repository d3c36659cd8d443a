"""Pydantic models for resource descriptors with validation.

These models provide:
1. Type-safe YAML parsing of resource descriptors
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to provider request bodies
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, field_validator

from .allocator import Substitution

# =============================================================================
# Provider State and Conditions
# =============================================================================


class ProviderState(str, Enum):
    """Lifecycle state reported by the provider for a resource."""

    BUSY = "BUSY"
    DEPLOYING = "DEPLOYING"
    ACTIVE = "ACTIVE"
    AVAILABLE = "AVAILABLE"
    UPDATING = "UPDATING"
    DESTROYING = "DESTROYING"
    TERMINATED = "TERMINATED"
    FAILED = "FAILED"
    FAILED_DESTROYING = "FAILED_DESTROYING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | ProviderState | None) -> ProviderState:
        """Map a raw provider string to a state, UNKNOWN when unrecognized."""
        if isinstance(value, ProviderState):
            return value
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_transitional(self) -> bool:
        return self in TRANSITIONAL_STATES

    @property
    def is_ready(self) -> bool:
        return self in READY_STATES

    @property
    def is_deleting(self) -> bool:
        return self in DELETING_STATES


# Resources in these states are vacuously up to date and must not be mutated
TRANSITIONAL_STATES = frozenset(
    {ProviderState.BUSY, ProviderState.DEPLOYING, ProviderState.UPDATING}
)
READY_STATES = frozenset({ProviderState.ACTIVE, ProviderState.AVAILABLE})
DELETING_STATES = frozenset({ProviderState.DESTROYING, ProviderState.TERMINATED})


class Condition(str, Enum):
    """Externally visible readiness condition of a descriptor."""

    CREATING = "Creating"
    AVAILABLE = "Available"
    UPDATING = "Updating"
    DELETING = "Deleting"
    UNAVAILABLE = "Unavailable"


def condition_for_state(state: ProviderState) -> Condition:
    """Derive the condition from a provider state."""
    match state:
        case ProviderState.ACTIVE | ProviderState.AVAILABLE:
            return Condition.AVAILABLE
        case ProviderState.DESTROYING | ProviderState.TERMINATED:
            return Condition.DELETING
        case ProviderState.BUSY | ProviderState.DEPLOYING:
            return Condition.CREATING
        case ProviderState.UPDATING:
            return Condition.UPDATING
        case _:
            return Condition.UNAVAILABLE


class ResourceKind(str, Enum):
    """Closed set of managed resource kinds."""

    NIC = "Nic"
    SERVER = "Server"
    VOLUME = "Volume"
    K8S_CLUSTER = "K8sCluster"
    K8S_NODE_POOL = "K8sNodePool"
    POSTGRES_CLUSTER = "PostgresCluster"
    MONGO_CLUSTER = "MongoCluster"
    BACKUP_UNIT = "BackupUnit"
    DATAPLATFORM_CLUSTER = "DataplatformCluster"
    DATAPLATFORM_NODE_POOL = "DataplatformNodePool"
    VOLUMESELECTOR = "Volumeselector"


# =============================================================================
# Shared Building Blocks
# =============================================================================


class MaintenanceWindow(BaseModel):
    """Weekly maintenance window. Time is HH:MM:SS, optionally suffixed with Z."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    time: str = ""
    day_of_the_week: str = Field("", alias="dayOfTheWeek")

    @property
    def is_empty(self) -> bool:
        return not self.time and not self.day_of_the_week

    def to_body(self) -> dict[str, str] | None:
        # The API rejects partial windows
        if not self.time or not self.day_of_the_week:
            return None
        return {"time": self.time, "dayOfTheWeek": self.day_of_the_week}


class S3Bucket(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class DatabaseConnection(BaseModel):
    """Private LAN a database cluster is attached to."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    datacenter_id: str = Field(alias="datacenterId")
    lan_id: str = Field(alias="lanId")
    cidr: str

    def to_body(self) -> dict[str, str]:
        return {"datacenterId": self.datacenter_id, "lanId": self.lan_id, "cidr": self.cidr}


class DatabaseCredentials(BaseModel):
    model_config = {"extra": "ignore"}

    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1)]


class AutoScaling(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    min_node_count: Annotated[int, Field(ge=1, alias="minNodeCount")]
    max_node_count: Annotated[int, Field(ge=1, alias="maxNodeCount")]


# =============================================================================
# Base Spec
# =============================================================================


class BaseResourceSpec(BaseModel):
    """Base specification with common fields.

    References name another descriptor in the same store. When a reference
    is set, the referenced descriptor's external id is copied into the
    corresponding id field before each reconcile.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    # reference field -> id field
    references: ClassVar[dict[str, str]] = {}

    def to_create_body(self) -> dict[str, Any]:
        """Convert spec to the provider create request body."""
        raise NotImplementedError("Subclasses must implement to_create_body")

    def to_update_body(self) -> dict[str, Any]:
        """Convert the mutable part of the spec to a provider patch body."""
        raise NotImplementedError("Subclasses must implement to_update_body")


# =============================================================================
# Compute
# =============================================================================


class NicSpec(BaseResourceSpec):
    kind: Literal["Nic"] = "Nic"

    name: str = ""
    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterId")]
    server_id: str = Field("", alias="serverId")
    server_ref: str | None = Field(None, alias="serverRef")
    lan_id: Annotated[int, Field(ge=1, alias="lanId")]
    dhcp: bool = True
    dhcpv6: bool | None = None
    firewall_active: bool = Field(False, alias="firewallActive")
    firewall_type: str = Field("", alias="firewallType")
    ips: list[str] = Field(default_factory=list)

    references: ClassVar[dict[str, str]] = {"server_ref": "server_id"}

    def to_create_body(self) -> dict[str, Any]:
        return self.to_update_body()

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "lan": self.lan_id,
            "dhcp": self.dhcp,
            "firewallActive": self.firewall_active,
        }
        if self.dhcpv6 is not None:
            body["dhcpv6"] = self.dhcpv6
        if self.firewall_type:
            body["firewallType"] = self.firewall_type
        if self.ips:
            body["ips"] = list(self.ips)
        return body


class ServerSpec(BaseResourceSpec):
    kind: Literal["Server"] = "Server"

    name: str = ""
    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterId")]
    cores: Annotated[int, Field(ge=1)]
    ram: Annotated[int, Field(ge=256)]  # MB
    cpu_family: str = Field("", alias="cpuFamily")
    availability_zone: str = Field("AUTO", alias="availabilityZone")
    boot_cdrom_id: str = Field("", alias="bootCdromId")
    volume_id: str = Field("", alias="volumeId")
    volume_ref: str | None = Field(None, alias="volumeRef")

    references: ClassVar[dict[str, str]] = {"volume_ref": "volume_id"}

    @field_validator("ram")
    @classmethod
    def validate_ram(cls, v: int) -> int:
        if v % 256 != 0:
            raise ValueError("ram must be a multiple of 256 MB")
        return v

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        # Immutable after creation
        body["availabilityZone"] = self.availability_zone
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"name": self.name, "cores": self.cores, "ram": self.ram}
        if self.cpu_family:
            body["cpuFamily"] = self.cpu_family
        if self.boot_cdrom_id:
            body["bootCdrom"] = {"id": self.boot_cdrom_id}
        if self.volume_id:
            body["bootVolume"] = {"id": self.volume_id}
        return body


class VolumeSpec(BaseResourceSpec):
    kind: Literal["Volume"] = "Volume"

    name: str = ""
    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterId")]
    size: Annotated[float, Field(gt=0)]  # GB
    storage_type: str = Field("HDD", alias="type")
    bus: str = "VIRTIO"
    availability_zone: str = Field("", alias="availabilityZone")
    image: str = ""
    image_alias: str = Field("", alias="imageAlias")
    licence_type: str = Field("", alias="licenceType")
    # base64 encoded cloud-init document
    user_data: str = Field("", alias="userData")
    substitutions: list[Substitution] = Field(default_factory=list)

    @field_validator("storage_type")
    @classmethod
    def validate_storage_type(cls, v: str) -> str:
        valid_types = {"HDD", "SSD", "SSD Standard", "SSD Premium", "DAS", "ISO"}
        if v not in valid_types:
            raise ValueError(f"type must be one of {valid_types}")
        return v

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body["type"] = self.storage_type
        for key, value in (
            ("availabilityZone", self.availability_zone),
            ("image", self.image),
            ("imageAlias", self.image_alias),
            ("licenceType", self.licence_type),
            ("userData", self.user_data),
        ):
            if value:
                body[key] = value
        return body

    def to_update_body(self) -> dict[str, Any]:
        return {"name": self.name, "size": self.size, "bus": self.bus}


# =============================================================================
# Managed Kubernetes
# =============================================================================


class K8sClusterSpec(BaseResourceSpec):
    kind: Literal["K8sCluster"] = "K8sCluster"

    name: Annotated[str, Field(min_length=1, max_length=63)]
    k8s_version: str = Field("", alias="k8sVersion")
    public: bool = True
    location: str = ""
    api_subnet_allow_list: list[str] = Field(default_factory=list, alias="apiSubnetAllowList")
    s3_buckets: list[S3Bucket] = Field(default_factory=list, alias="s3Buckets")
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body["public"] = self.public
        if self.location:
            body["location"] = self.location
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "apiSubnetAllowList": list(self.api_subnet_allow_list),
            "s3Buckets": [bucket.model_dump() for bucket in self.s3_buckets],
        }
        if self.k8s_version:
            body["k8sVersion"] = self.k8s_version
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        return body


class K8sNodePoolSpec(BaseResourceSpec):
    kind: Literal["K8sNodePool"] = "K8sNodePool"

    name: Annotated[str, Field(min_length=1, max_length=63)]
    cluster_id: str = Field("", alias="clusterId")
    cluster_ref: str | None = Field(None, alias="clusterRef")
    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterId")]
    k8s_version: str = Field("", alias="k8sVersion")
    node_count: Annotated[int, Field(ge=1, alias="nodeCount")]
    cpu_family: str = Field("", alias="cpuFamily")
    cores_count: Annotated[int, Field(ge=1, alias="coresCount")]
    ram_size: Annotated[int, Field(ge=2048, alias="ramSize")]
    availability_zone: str = Field("AUTO", alias="availabilityZone")
    storage_type: str = Field("HDD", alias="storageType")
    storage_size: Annotated[int, Field(ge=10, alias="storageSize")]
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )
    auto_scaling: AutoScaling | None = Field(None, alias="autoScaling")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    public_ips: list[str] = Field(default_factory=list, alias="publicIps")

    references: ClassVar[dict[str, str]] = {"cluster_ref": "cluster_id"}

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body.update(
            {
                "name": self.name,
                "datacenterId": self.datacenter_id,
                "coresCount": self.cores_count,
                "ramSize": self.ram_size,
                "availabilityZone": self.availability_zone,
                "storageType": self.storage_type,
                "storageSize": self.storage_size,
            }
        )
        if self.cpu_family:
            body["cpuFamily"] = self.cpu_family
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "nodeCount": self.node_count,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "publicIps": list(self.public_ips),
        }
        if self.k8s_version:
            body["k8sVersion"] = self.k8s_version
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        if self.auto_scaling is not None:
            body["autoScaling"] = {
                "minNodeCount": self.auto_scaling.min_node_count,
                "maxNodeCount": self.auto_scaling.max_node_count,
            }
        return body


# =============================================================================
# Managed Databases
# =============================================================================


class PostgresClusterSpec(BaseResourceSpec):
    kind: Literal["PostgresCluster"] = "PostgresCluster"

    display_name: Annotated[str, Field(min_length=1, alias="displayName")]
    postgres_version: str = Field(alias="postgresVersion")
    instances: Annotated[int, Field(ge=1, le=5)] = 1
    cores: Annotated[int, Field(ge=1)] = 1
    ram: Annotated[int, Field(ge=2048)] = 2048  # MB
    storage_size: Annotated[int, Field(ge=2048, alias="storageSize")] = 2048  # MB
    storage_type: str = Field("HDD", alias="storageType")
    location: Annotated[str, Field(min_length=1)]
    backup_location: str = Field("", alias="backupLocation")
    synchronization_mode: str = Field("ASYNCHRONOUS", alias="synchronizationMode")
    connections: list[DatabaseConnection] = Field(default_factory=list)
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )
    credentials: DatabaseCredentials

    @field_validator("synchronization_mode")
    @classmethod
    def validate_synchronization_mode(cls, v: str) -> str:
        valid_modes = {"ASYNCHRONOUS", "SYNCHRONOUS", "STRICTLY_SYNCHRONOUS"}
        if v not in valid_modes:
            raise ValueError(f"synchronizationMode must be one of {valid_modes}")
        return v

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body.update(
            {
                "storageType": self.storage_type,
                "location": self.location,
                "synchronizationMode": self.synchronization_mode,
                "credentials": self.credentials.model_dump(),
            }
        )
        if self.backup_location:
            body["backupLocation"] = self.backup_location
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "displayName": self.display_name,
            "postgresVersion": self.postgres_version,
            "instances": self.instances,
            "cores": self.cores,
            "ram": self.ram,
            "storageSize": self.storage_size,
            "connections": [c.to_body() for c in self.connections],
        }
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        return body


class MongoClusterSpec(BaseResourceSpec):
    kind: Literal["MongoCluster"] = "MongoCluster"

    display_name: Annotated[str, Field(min_length=1, alias="displayName")]
    mongodb_version: str = Field(alias="mongoDBVersion")
    instances: Annotated[int, Field(ge=1)] = 1
    edition: str = "playground"
    location: Annotated[str, Field(min_length=1)]
    connections: list[DatabaseConnection] = Field(default_factory=list)
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body["location"] = self.location
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "displayName": self.display_name,
            "mongoDBVersion": self.mongodb_version,
            "instances": self.instances,
            "edition": self.edition,
            "connections": [c.to_body() for c in self.connections],
        }
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        return body


# =============================================================================
# Backup
# =============================================================================


class BackupUnitSpec(BaseResourceSpec):
    kind: Literal["BackupUnit"] = "BackupUnit"

    name: Annotated[str, Field(min_length=1)]
    email: Annotated[str, Field(min_length=3)]
    password: Annotated[str, Field(min_length=1)]

    def to_create_body(self) -> dict[str, Any]:
        return {"name": self.name, "email": self.email, "password": self.password}

    def to_update_body(self) -> dict[str, Any]:
        # name is immutable once created
        return {"email": self.email, "password": self.password}


# =============================================================================
# Data Platform
# =============================================================================


class DataplatformClusterSpec(BaseResourceSpec):
    kind: Literal["DataplatformCluster"] = "DataplatformCluster"

    name: Annotated[str, Field(min_length=1, max_length=63)]
    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterId")]
    version: str = ""
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body["datacenterId"] = self.datacenter_id
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"name": self.name}
        if self.version:
            body["dataPlatformVersion"] = self.version
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        return body


class DataplatformNodePoolSpec(BaseResourceSpec):
    kind: Literal["DataplatformNodePool"] = "DataplatformNodePool"

    name: Annotated[str, Field(min_length=1, max_length=63)]
    cluster_id: str = Field("", alias="clusterId")
    cluster_ref: str | None = Field(None, alias="clusterRef")
    node_count: Annotated[int, Field(ge=1, alias="nodeCount")]
    cpu_family: str = Field("", alias="cpuFamily")
    cores_count: Annotated[int, Field(ge=1, alias="coresCount")] = 4
    ram_size: Annotated[int, Field(ge=4096, alias="ramSize")] = 4096
    availability_zone: str = Field("AUTO", alias="availabilityZone")
    storage_type: str = Field("SSD", alias="storageType")
    storage_size: Annotated[int, Field(ge=20, alias="storageSize")] = 20
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    references: ClassVar[dict[str, str]] = {"cluster_ref": "cluster_id"}

    def to_create_body(self) -> dict[str, Any]:
        body = self.to_update_body()
        body.update(
            {
                "name": self.name,
                "coresCount": self.cores_count,
                "ramSize": self.ram_size,
                "availabilityZone": self.availability_zone,
                "storageType": self.storage_type,
                "storageSize": self.storage_size,
            }
        )
        if self.cpu_family:
            body["cpuFamily"] = self.cpu_family
        return body

    def to_update_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "nodeCount": self.node_count,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
        }
        window = self.maintenance_window.to_body()
        if window is not None:
            body["maintenanceWindow"] = window
        return body


# =============================================================================
# Volume Selector
# =============================================================================


class VolumeselectorSpec(BaseResourceSpec):
    """Attaches the volumes of each replica of a server set to its server."""

    kind: Literal["Volumeselector"] = "Volumeselector"

    serverset_name: Annotated[str, Field(min_length=1, alias="serversetName")]
    replicas: Annotated[int, Field(ge=0)]

    def to_create_body(self) -> dict[str, Any]:
        return {}

    def to_update_body(self) -> dict[str, Any]:
        return {}


# =============================================================================
# Descriptor
# =============================================================================

ResourceSpec = Annotated[
    Union[
        NicSpec,
        ServerSpec,
        VolumeSpec,
        K8sClusterSpec,
        K8sNodePoolSpec,
        PostgresClusterSpec,
        MongoClusterSpec,
        BackupUnitSpec,
        DataplatformClusterSpec,
        DataplatformNodePoolSpec,
        VolumeselectorSpec,
    ],
    Field(discriminator="kind"),
]


class ObservedStatus(BaseModel):
    """Last fetched remote attributes of a resource."""

    model_config = {"extra": "ignore"}

    state: ProviderState = ProviderState.UNKNOWN
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("state", mode="before")
    @classmethod
    def parse_state(cls, v: Any) -> ProviderState:
        return ProviderState.parse(v)


class ResourceDescriptor(BaseModel):
    """One managed resource instance: desired spec plus observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    labels: dict[str, str] = Field(default_factory=dict)
    desired: ResourceSpec = Field(alias="spec")
    external_id: str = Field("", alias="externalId")
    observed: ObservedStatus = Field(default_factory=ObservedStatus)
    condition: Condition | None = None
    reason: str = ""
    deletion_requested: bool = Field(False, alias="deletionRequested")
    created_at: datetime | None = Field(None, alias="createdAt")

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind(self.desired.kind)

    def set_external_id(self, external_id: str) -> None:
        """Record the provider id. An id, once recorded, never changes."""
        if not external_id:
            raise ValueError(f"{self.name}: external id must not be empty")
        if self.external_id and self.external_id != external_id:
            raise ValueError(
                f"{self.name}: external id already set to {self.external_id}, "
                f"refusing to replace it with {external_id}"
            )
        self.external_id = external_id

    def set_condition(self, condition: Condition, reason: str = "") -> None:
        self.condition = condition
        self.reason = reason

    def record_observation(self, state: ProviderState, attributes: dict[str, Any]) -> None:
        """Store observed attributes and recompute the condition."""
        self.observed = ObservedStatus(state=state, attributes=dict(attributes))
        self.set_condition(condition_for_state(state))


class DescriptorStore:
    """In-memory collection of descriptors keyed by unique name."""

    def __init__(self, descriptors: Iterable[ResourceDescriptor] = ()) -> None:
        self._descriptors: dict[str, ResourceDescriptor] = {}
        for descriptor in descriptors:
            self.add(descriptor)

    def add(self, descriptor: ResourceDescriptor) -> None:
        if descriptor.name in self._descriptors:
            raise ValueError(f"Duplicate descriptor name: {descriptor.name}")
        self._descriptors[descriptor.name] = descriptor

    def get(self, name: str) -> ResourceDescriptor | None:
        return self._descriptors.get(name)

    def __getitem__(self, name: str) -> ResourceDescriptor:
        return self._descriptors[name]

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def by_kind(self, kind: ResourceKind) -> list[ResourceDescriptor]:
        return [d for d in self._descriptors.values() if d.kind == kind]

    def with_label(self, key: str, value: str) -> list[ResourceDescriptor]:
        return [d for d in self._descriptors.values() if d.labels.get(key) == value]

