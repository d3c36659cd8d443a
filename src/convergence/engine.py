"""Generic convergence controller.

One controller drives every resource kind through the same state machine:

    Absent -> Creating -> (Active <-> Updating) -> Deleting -> Terminated

Kind-specific knowledge (request bodies, diff rules, late initialization,
parents, natural keys) lives in a small ResourceAdapter per kind.

ERROR POLICY:
- NotFound during observe means the resource does not exist
- A transitional provider state suppresses create, update and delete
- Every other failure is surfaced on the ReconcileResult and the
  descriptor's condition, never swallowed
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, ClassVar

from pydantic import TypeAdapter, ValidationError

from .allocator import AllocationError
from .cloudinit import UserDataError
from .config import Config
from .dependency import DependencyError, DependencyExistsError, DependencyGate
from .diff import DiffResult, FieldRule, compare, is_empty
from .identity import IdentityResolutionError, IdentityResolver, NaturalKey
from .models import (
    BaseResourceSpec,
    Condition,
    ProviderState,
    ResourceDescriptor,
    ResourceKind,
)
from .provider import APIResponse, ProviderClient, ProviderError, RemoteResource
from .waiter import (
    AsyncOperationError,
    AsyncOperationTimeoutError,
    CompletionWaiter,
    OperationCancelledError,
)

logger = logging.getLogger(__name__)


class TransientError(Exception):
    """Raised when a provider call fails for a reason other than NotFound."""

    pass


class DeletionTimeoutError(Exception):
    """Raised when a deletion does not finish within the deletion timeout."""

    pass


class ExternalResourceMissingError(Exception):
    """Raised when a created resource vanished remotely outside of a deletion."""

    pass


class ReconcileAction(str, Enum):
    """Mutation performed during a reconcile tick."""

    NONE = "none"
    CREATE = "create"
    IMPORT = "import"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Observation:
    exists: bool = False
    up_to_date: bool = False
    late_initialized: bool = False
    diff: str = ""


@dataclass
class Creation:
    external_id: str = ""
    imported: bool = False
    skipped: bool = False


@dataclass
class ReconcileResult:
    """Result of a single reconcile tick for one descriptor."""

    descriptor: str
    kind: ResourceKind
    action: ReconcileAction = ReconcileAction.NONE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    exists: bool = False
    up_to_date: bool = False
    diff: str = ""
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the tick succeeded."""
        return self.error is None


@dataclass(frozen=True)
class ParentReference:
    """Parent resource that must be ACTIVE before a child is mutated."""

    kind: ResourceKind
    id: str
    scope: tuple[str, ...] = ()


class ResourceAdapter:
    """Kind-specific knowledge used by the generic controller.

    Class attributes:
        kind: Resource kind handled by the adapter.
        name_attribute: Spec attribute holding the resource name.
        name_property: Observed property holding the resource name.
        diff_fields: Rules deciding whether a resource is up to date.
        late_init_fields: Spec attribute -> observed path, filled from the
            provider when left unset.
        immutable_discriminators: Observed path -> spec attribute that must
            agree before an existing resource is adopted.
    """

    kind: ClassVar[ResourceKind]
    name_attribute: ClassVar[str] = "name"
    name_property: ClassVar[str] = "name"
    diff_fields: ClassVar[tuple[FieldRule, ...]] = ()
    late_init_fields: ClassVar[dict[str, str]] = {}
    immutable_discriminators: ClassVar[dict[str, str]] = {}

    def scope(self, spec: Any) -> tuple[str, ...]:
        """Ancestor ids forming the resource path."""
        return ()

    def parent_of(self, spec: Any) -> ParentReference | None:
        return None

    def natural_key(self, spec: Any) -> NaturalKey:
        return NaturalKey(
            name=getattr(spec, self.name_attribute),
            name_property=self.name_property,
            discriminators={
                path: getattr(spec, attr) for path, attr in self.immutable_discriminators.items()
            },
        )

    def to_create_request(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return descriptor.desired.to_create_body()

    def to_update_request(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return descriptor.desired.to_update_body()

    def diff(self, spec: Any, resource: RemoteResource) -> DiffResult:
        return compare(spec, resource.properties, resource.state, self.diff_fields)

    def late_initialize(self, spec: BaseResourceSpec, resource: RemoteResource) -> bool:
        """Fill unset spec fields from observed values.

        Returns:
            True if any field was filled.
        """
        changed = False
        for attr, path in self.late_init_fields.items():
            if not is_empty(getattr(spec, attr)):
                continue
            observed = resource.lookup(path)
            if is_empty(observed):
                continue
            annotation = type(spec).model_fields[attr].annotation
            try:
                value = TypeAdapter(annotation).validate_python(observed)
            except ValidationError as e:
                logger.warning(
                    "Observed value cannot be late-initialized",
                    extra={"kind": self.kind.value, "field": attr, "error": str(e)},
                )
                continue
            setattr(spec, attr, value)
            changed = True
        return changed

    def has_dependents(self, client: ProviderClient, descriptor: ResourceDescriptor) -> bool:
        """Whether live child resources still exist. Runs in an executor."""
        return False


class ConvergenceController:
    """Drives descriptors of one kind toward their desired state.

    Operations are coroutines. The scheduler guarantees a single writer per
    descriptor; the controller itself keeps no per-descriptor state.
    """

    def __init__(
        self,
        adapter: ResourceAdapter,
        client: ProviderClient,
        config: Config,
        *,
        waiter: CompletionWaiter | None = None,
        gate: DependencyGate | None = None,
        resolver: IdentityResolver | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._adapter = adapter
        self._client = client
        self._config = config
        self._waiter = waiter or CompletionWaiter(client, config.request_poll_interval_seconds)
        self._gate = gate or DependencyGate()
        self._resolver = resolver or IdentityResolver()
        self._cancel_event = cancel_event

    @property
    def adapter(self) -> ResourceAdapter:
        return self._adapter

    @property
    def kind(self) -> ResourceKind:
        return self._adapter.kind

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous provider call in the executor, bounded by the timeout.

        Raises:
            ProviderError: If the call fails or times out.
        """
        loop = asyncio.get_running_loop()
        operation = functools.partial(getattr(self._client, method), *args, **kwargs)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=self._config.timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                f"{method} timed out",
                extra={"kind": self.kind.value, "timeout_seconds": self._config.timeout_seconds},
            )
            raise ProviderError(
                f"{method} {self.kind.value} timed out after {self._config.timeout_seconds}s"
            ) from e

    async def wait(self, response: APIResponse, timeout_seconds: float) -> None:
        try:
            await self._waiter.wait(
                response.request_handle, timeout_seconds, cancel_event=self._cancel_event
            )
        except ProviderError as e:
            raise TransientError(
                f"failed to poll request {response.request_handle}: {e}"
            ) from e

    # -------------------------------------------------------------------------
    # Observe
    # -------------------------------------------------------------------------

    async def observe(self, descriptor: ResourceDescriptor) -> Observation:
        """Fetch remote state and decide whether it matches the desired spec.

        Raises:
            TransientError: If the provider fails with anything but NotFound.
        """
        if not descriptor.external_id:
            return Observation(exists=False)

        spec = descriptor.desired
        try:
            resource, _ = await self.call(
                "get", self.kind, descriptor.external_id, scope=self._adapter.scope(spec)
            )
        except ProviderError as e:
            if not e.not_found:
                raise TransientError(
                    f"failed to get {self.kind.value} {descriptor.external_id}: {e}"
                ) from e
            if self._within_creation_grace_period(descriptor):
                logger.info(
                    "Resource not visible yet, within creation grace period",
                    extra={"descriptor": descriptor.name, "external_id": descriptor.external_id},
                )
                return Observation(exists=True, up_to_date=True)
            logger.info(
                "Resource not found",
                extra={"descriptor": descriptor.name, "external_id": descriptor.external_id},
            )
            descriptor.record_observation(ProviderState.TERMINATED, {})
            return Observation(exists=False)

        late_initialized = self._adapter.late_initialize(spec, resource)
        descriptor.record_observation(resource.state, resource.properties or {})
        result = self._adapter.diff(spec, resource)

        return Observation(
            exists=True,
            up_to_date=result.up_to_date,
            late_initialized=late_initialized,
            diff=result.diff,
        )

    def _within_creation_grace_period(self, descriptor: ResourceDescriptor) -> bool:
        created_at = descriptor.created_at
        if created_at is None:
            return False
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        grace = timedelta(seconds=self._config.creation_grace_period_seconds)
        return datetime.now(UTC) - created_at < grace

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(self, descriptor: ResourceDescriptor) -> Creation:
        """Adopt or create the remote resource and record its id.

        Raises:
            DependencyError: If the parent is missing or not ACTIVE.
            IdentityResolutionError: If an existing resource cannot be adopted.
            TransientError: If a provider call fails.
            AsyncOperationError: If the creation request fails or times out.
        """
        if descriptor.external_id:
            logger.debug(
                "External id already recorded, skipping create",
                extra={"descriptor": descriptor.name, "external_id": descriptor.external_id},
            )
            return Creation(external_id=descriptor.external_id, skipped=True)
        if descriptor.observed.state.is_transitional:
            return Creation(skipped=True)

        spec = descriptor.desired
        await self._check_parent(spec)

        if self._config.unique_names_enabled:
            existing = await self._find_existing(spec)
            if existing is not None:
                descriptor.set_external_id(existing.id)
                descriptor.record_observation(existing.state, existing.properties or {})
                logger.info(
                    "Adopted existing resource",
                    extra={"descriptor": descriptor.name, "external_id": existing.id},
                )
                return Creation(external_id=existing.id, imported=True)

        body = self._adapter.to_create_request(descriptor)
        descriptor.set_condition(Condition.CREATING)
        try:
            resource, response = await self.call(
                "create", self.kind, body, scope=self._adapter.scope(spec)
            )
        except ProviderError as e:
            raise TransientError(f"failed to create {self.kind.value}: {e}") from e

        await self.wait(response, self._config.timeout_seconds)

        descriptor.set_external_id(resource.id)
        descriptor.created_at = datetime.now(UTC)
        logger.info(
            "Created resource",
            extra={"descriptor": descriptor.name, "kind": self.kind.value, "external_id": resource.id},
        )
        return Creation(external_id=resource.id)

    async def _find_existing(self, spec: Any) -> RemoteResource | None:
        try:
            candidates = await self.call("list", self.kind, scope=self._adapter.scope(spec))
        except ProviderError as e:
            raise TransientError(f"failed to list {self.kind.value}: {e}") from e
        return self._resolver.resolve(self._adapter.natural_key(spec), candidates)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(self, descriptor: ResourceDescriptor) -> bool:
        """Send the mutable fields to the provider.

        Returns:
            True if an update was issued.
        """
        if not descriptor.external_id or descriptor.observed.state.is_transitional:
            return False

        spec = descriptor.desired
        await self._check_parent(spec)

        patch = self._adapter.to_update_request(descriptor)
        try:
            _, response = await self.call(
                "update",
                self.kind,
                descriptor.external_id,
                patch,
                scope=self._adapter.scope(spec),
            )
        except ProviderError as e:
            raise TransientError(
                f"failed to update {self.kind.value} {descriptor.external_id}: {e}"
            ) from e

        descriptor.set_condition(Condition.UPDATING)
        if response.request_handle is None:
            descriptor.observed.state = ProviderState.UPDATING
        else:
            await self.wait(response, self._config.timeout_seconds)

        logger.info(
            "Updated resource",
            extra={"descriptor": descriptor.name, "external_id": descriptor.external_id},
        )
        return True

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(self, descriptor: ResourceDescriptor) -> bool:
        """Delete the remote resource.

        Returns:
            True if a deletion was issued or the resource was already gone.

        Raises:
            DependencyExistsError: If live dependents remain.
            DeletionTimeoutError: If the deletion does not finish in time.
        """
        state = descriptor.observed.state
        if not descriptor.external_id:
            return False
        if state.is_deleting:
            descriptor.set_condition(Condition.DELETING)
            return False
        if state.is_transitional:
            return False

        spec = descriptor.desired
        await self._check_parent(spec)

        try:
            has_dependents = await self._has_dependents(descriptor)
        except ProviderError as e:
            raise TransientError(f"failed to list dependents of {descriptor.name}: {e}") from e
        if has_dependents:
            raise DependencyExistsError(
                f"{self.kind.value} {descriptor.external_id} still has dependents"
            )

        descriptor.set_condition(Condition.DELETING)
        try:
            response = await self.call(
                "delete", self.kind, descriptor.external_id, scope=self._adapter.scope(spec)
            )
        except ProviderError as e:
            if e.not_found:
                descriptor.observed.state = ProviderState.TERMINATED
                return True
            raise TransientError(
                f"failed to delete {self.kind.value} {descriptor.external_id}: {e}"
            ) from e

        try:
            await self.wait(response, self._config.deletion_timeout_seconds)
        except AsyncOperationTimeoutError as e:
            raise DeletionTimeoutError(
                f"deletion of {descriptor.name} did not finish within "
                f"{self._config.deletion_timeout_seconds}s"
            ) from e

        descriptor.observed.state = ProviderState.DESTROYING
        logger.info(
            "Deleted resource",
            extra={"descriptor": descriptor.name, "external_id": descriptor.external_id},
        )
        return True

    async def _has_dependents(self, descriptor: ResourceDescriptor) -> bool:
        loop = asyncio.get_running_loop()
        operation = functools.partial(self._adapter.has_dependents, self._client, descriptor)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation), timeout=self._config.timeout_seconds
            )
        except TimeoutError as e:
            raise ProviderError(f"listing dependents of {descriptor.name} timed out") from e

    async def _check_parent(self, spec: Any) -> None:
        parent = self._adapter.parent_of(spec)
        if parent is None:
            return
        await self._gate.check(
            parent.kind,
            parent.id,
            lambda: self.call("get", parent.kind, parent.id, scope=parent.scope),
        )

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    async def reconcile(self, descriptor: ResourceDescriptor) -> ReconcileResult:
        """Run one tick: observe, then delete, create or update as needed."""
        result = ReconcileResult(descriptor=descriptor.name, kind=self.kind)

        try:
            observation = await self.observe(descriptor)
            result.exists = observation.exists
            result.up_to_date = observation.up_to_date
            result.diff = observation.diff

            if descriptor.deletion_requested:
                if observation.exists and await self.delete(descriptor):
                    result.action = ReconcileAction.DELETE
            elif not observation.exists:
                if descriptor.external_id:
                    raise ExternalResourceMissingError(
                        f"{self.kind.value} {descriptor.external_id} no longer exists; "
                        "clear externalId to recreate it"
                    )
                creation = await self.create(descriptor)
                if creation.imported:
                    result.action = ReconcileAction.IMPORT
                elif not creation.skipped:
                    result.action = ReconcileAction.CREATE
            elif not observation.up_to_date:
                logger.info(
                    "Drift detected",
                    extra={"descriptor": descriptor.name, "diff": observation.diff},
                )
                if await self.update(descriptor):
                    result.action = ReconcileAction.UPDATE

        except DependencyError as e:
            logger.warning(
                "Dependency not satisfied, tick skipped",
                extra={"descriptor": descriptor.name, "reason": str(e)},
            )
            result.error = e
        except IdentityResolutionError as e:
            logger.error("Cannot adopt existing resource", extra={"error": str(e)})
            result.error = e
        except OperationCancelledError as e:
            logger.warning("Operation cancelled", extra={"descriptor": descriptor.name})
            result.error = e
        except AsyncOperationError as e:
            logger.error("Asynchronous request failed", extra={"error": str(e)})
            result.error = e
        except DeletionTimeoutError as e:
            logger.error("Deletion timed out", extra={"error": str(e)})
            result.error = e
        except TransientError as e:
            logger.error("Provider API error", extra={"error": str(e)})
            result.error = e
        except (AllocationError, UserDataError) as e:
            logger.error("Cannot render user data", extra={"error": str(e)})
            result.error = e
        except ExternalResourceMissingError as e:
            logger.error("External resource missing", extra={"error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e

        if result.error is not None:
            descriptor.set_condition(Condition.UNAVAILABLE, reason=str(result.error))

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "descriptor": result.descriptor,
            "kind": result.kind.value,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "exists": result.exists,
            "up_to_date": result.up_to_date,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
