"""Volume selector: attaches each replica's data volumes to its server.

A server set runs N replicas. Replica i owns the Volume descriptors labelled
"<serverset>-dv-ri" = i and the Server descriptor labelled
"<serverset>-server-ri" = i. The selector has no remote representation of
its own; its external id is its descriptor name.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .config import Config
from .dependency import replica_ready
from .engine import (
    Creation,
    Observation,
    ReconcileAction,
    ReconcileResult,
    TransientError,
)
from .models import (
    Condition,
    DescriptorStore,
    ProviderState,
    ResourceDescriptor,
    ResourceKind,
    VolumeselectorSpec,
)
from .provider import ProviderClient, ProviderError
from .waiter import AsyncOperationError, CompletionWaiter

logger = logging.getLogger(__name__)

# <serverset>-<resource type>-ri
INDEX_LABEL = "{serverset}-{resource_type}-ri"
RESOURCE_DATA_VOLUME = "dv"
RESOURCE_SERVER = "server"


def index_label(serverset: str, resource_type: str) -> str:
    return INDEX_LABEL.format(serverset=serverset, resource_type=resource_type)


@dataclass(frozen=True)
class Replica:
    index: int
    datacenter_id: str
    server_id: str
    volume_ids: tuple[str, ...]

    @property
    def ready(self) -> bool:
        return replica_ready(self.volume_ids, self.datacenter_id, self.server_id)


class VolumeselectorController:
    """Fan-in controller over the volumes and servers of a server set."""

    kind = ResourceKind.VOLUMESELECTOR

    def __init__(
        self,
        client: ProviderClient,
        config: Config,
        store: DescriptorStore,
        *,
        waiter: CompletionWaiter | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._store = store
        self._waiter = waiter or CompletionWaiter(client, config.request_poll_interval_seconds)
        self._cancel_event = cancel_event

    def replicas(self, spec: VolumeselectorSpec) -> list[Replica]:
        """Resolve the volumes and server of every replica from the store."""
        volume_label = index_label(spec.serverset_name, RESOURCE_DATA_VOLUME)
        server_label = index_label(spec.serverset_name, RESOURCE_SERVER)
        replicas = []
        for index in range(spec.replicas):
            volumes = [
                d for d in self._store.with_label(volume_label, str(index))
                if d.kind == ResourceKind.VOLUME
            ]
            servers = [
                d for d in self._store.with_label(server_label, str(index))
                if d.kind == ResourceKind.SERVER
            ]
            server = servers[0] if servers else None
            replicas.append(
                Replica(
                    index=index,
                    datacenter_id=server.desired.datacenter_id if server else "",
                    server_id=server.external_id if server else "",
                    volume_ids=tuple(v.external_id for v in volumes),
                )
            )
        return replicas

    async def _call(self, method: str, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        operation = functools.partial(getattr(self._client, method), *args)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation), timeout=self._config.timeout_seconds
            )
        except TimeoutError as e:
            raise ProviderError(f"{method} timed out after {self._config.timeout_seconds}s") from e

    async def _is_attached(self, replica: Replica, volume_id: str) -> bool:
        try:
            return await self._call(
                "is_volume_attached", replica.datacenter_id, replica.server_id, volume_id
            )
        except ProviderError as e:
            raise TransientError(
                f"failed to check attachment of volume {volume_id} to server {replica.server_id}: {e}"
            ) from e

    async def observe(self, descriptor: ResourceDescriptor) -> Observation:
        """Up to date when every volume of every ready replica is attached."""
        if not descriptor.external_id or descriptor.deletion_requested:
            return Observation(exists=False)

        for replica in self.replicas(descriptor.desired):
            if not replica.ready:
                logger.info(
                    "Replica not ready, skipped",
                    extra={"descriptor": descriptor.name, "replica": replica.index},
                )
                continue
            for volume_id in replica.volume_ids:
                if not await self._is_attached(replica, volume_id):
                    return Observation(
                        exists=True,
                        up_to_date=False,
                        diff=f"volume {volume_id} not attached to server {replica.server_id}",
                    )

        descriptor.record_observation(ProviderState.AVAILABLE, {})
        return Observation(exists=True, up_to_date=True)

    async def create(self, descriptor: ResourceDescriptor) -> Creation:
        if descriptor.external_id:
            return Creation(external_id=descriptor.external_id, skipped=True)
        descriptor.set_condition(Condition.CREATING)
        descriptor.set_external_id(descriptor.name)
        return Creation(external_id=descriptor.name)

    async def update(self, descriptor: ResourceDescriptor) -> bool:
        """Attach missing volumes of all ready replicas concurrently."""
        if not descriptor.external_id:
            return False

        attachments = [
            self._attach(replica, volume_id)
            for replica in self.replicas(descriptor.desired)
            if replica.ready
            for volume_id in replica.volume_ids
        ]
        results = await asyncio.gather(*attachments, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return any(results)

    async def _attach(self, replica: Replica, volume_id: str) -> bool:
        if await self._is_attached(replica, volume_id):
            return False

        logger.debug(
            "Attaching volume",
            extra={
                "volume_id": volume_id,
                "server_id": replica.server_id,
                "datacenter_id": replica.datacenter_id,
            },
        )
        try:
            response = await self._call(
                "attach_volume", replica.datacenter_id, replica.server_id, volume_id
            )
        except ProviderError as e:
            raise TransientError(f"failed to attach volume {volume_id}: {e}") from e

        await self._waiter.wait(
            response.request_handle, self._config.timeout_seconds, cancel_event=self._cancel_event
        )
        logger.info(
            "Attached volume",
            extra={"volume_id": volume_id, "server_id": replica.server_id},
        )
        return True

    async def delete(self, descriptor: ResourceDescriptor) -> bool:
        """Forget the selector. Attached volumes stay attached."""
        if not descriptor.external_id or descriptor.observed.state.is_deleting:
            return False
        descriptor.set_condition(Condition.DELETING)
        descriptor.observed.state = ProviderState.TERMINATED
        return True

    async def reconcile(self, descriptor: ResourceDescriptor) -> ReconcileResult:
        result = ReconcileResult(descriptor=descriptor.name, kind=self.kind)
        try:
            if descriptor.deletion_requested:
                if await self.delete(descriptor):
                    result.action = ReconcileAction.DELETE
            else:
                observation = await self.observe(descriptor)
                result.exists = observation.exists
                result.up_to_date = observation.up_to_date
                result.diff = observation.diff
                if not observation.exists:
                    if not (await self.create(descriptor)).skipped:
                        result.action = ReconcileAction.CREATE
                elif not observation.up_to_date and await self.update(descriptor):
                    result.action = ReconcileAction.UPDATE
        except TransientError as e:
            logger.error("Provider API error", extra={"error": str(e)})
            result.error = e
        except AsyncOperationError as e:
            logger.error("Volume attachment failed", extra={"error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e

        if result.error is not None:
            descriptor.set_condition(Condition.UNAVAILABLE, reason=str(result.error))

        result.end_time = datetime.now(UTC)
        logger.info(
            "Reconciliation result",
            extra={
                "descriptor": result.descriptor,
                "kind": result.kind.value,
                "action": result.action.value,
                "up_to_date": result.up_to_date,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result
