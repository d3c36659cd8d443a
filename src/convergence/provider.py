"""Provider client boundary.

The vendor SDK is an external collaborator. The engine only relies on the
ProviderClient protocol below; concrete clients are loaded by main via the
PROVIDER_CLIENT factory setting. Calls are synchronous, like the vendor SDKs,
and the controller runs them in an executor.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .diff import lookup_path
from .models import ProviderState, ResourceKind

NOT_FOUND_STATUS = 404

# Ancestor ids forming the resource path, e.g. (datacenter_id, server_id)
Scope = Sequence[str]


class ProviderError(Exception):
    """Raised by provider clients for failed API calls.

    A status code of 404 means the resource does not exist. Any other code,
    or no code at all (connection errors, timeouts), is transient.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == NOT_FOUND_STATUS


class RequestStatus(str, Enum):
    """Status of an asynchronous provider request."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class RequestState:
    status: RequestStatus
    message: str = ""


@dataclass
class APIResponse:
    """Transport-level result of a call.

    request_handle is the location of the asynchronous request the call
    started, or None when the call completed synchronously.
    """

    status_code: int = 200
    request_handle: str | None = None


@dataclass
class RemoteResource:
    """A resource as reported by the provider."""

    id: str
    state: ProviderState = ProviderState.UNKNOWN
    properties: dict[str, Any] | None = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.state = ProviderState.parse(self.state)

    def lookup(self, path: str) -> Any:
        return lookup_path(self.properties, path)


@runtime_checkable
class ProviderClient(Protocol):
    """Operations the engine needs from a vendor SDK."""

    def get(
        self, kind: ResourceKind, resource_id: str, scope: Scope = ()
    ) -> tuple[RemoteResource, APIResponse]: ...

    def list(self, kind: ResourceKind, scope: Scope = ()) -> list[RemoteResource]: ...

    def create(
        self, kind: ResourceKind, body: dict[str, Any], scope: Scope = ()
    ) -> tuple[RemoteResource, APIResponse]: ...

    def update(
        self, kind: ResourceKind, resource_id: str, patch: dict[str, Any], scope: Scope = ()
    ) -> tuple[RemoteResource, APIResponse]: ...

    def delete(self, kind: ResourceKind, resource_id: str, scope: Scope = ()) -> APIResponse: ...

    def get_request_status(self, handle: str) -> RequestState: ...

    def is_volume_attached(self, datacenter_id: str, server_id: str, volume_id: str) -> bool: ...

    def attach_volume(self, datacenter_id: str, server_id: str, volume_id: str) -> APIResponse: ...
