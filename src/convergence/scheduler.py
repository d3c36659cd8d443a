"""Poll scheduler driving every descriptor through its controller.

Each descriptor gets one asyncio task, so a descriptor never has two
reconciles in flight. Tasks start in dependency order and then tick on
their own every poll interval, optionally jittered.

CIRCUIT BREAKER:
After MAX_CONSECUTIVE_FAILURES failed ticks a descriptor pauses for
CIRCUIT_BREAKER_RESET_SECONDS. Other descriptors keep running.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Protocol

from .config import CIRCUIT_BREAKER_RESET_SECONDS, MAX_CONSECUTIVE_FAILURES, Config
from .dependency import DependencyError, DependencyGraph, resolve_references
from .engine import ReconcileResult
from .models import Condition, DescriptorStore, ResourceDescriptor, ResourceKind

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    async def reconcile(self, descriptor: ResourceDescriptor) -> ReconcileResult: ...


class CircuitBreaker:
    """Consecutive failure counter for one descriptor."""

    def __init__(
        self,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        reset_seconds: float = CIRCUIT_BREAKER_RESET_SECONDS,
    ) -> None:
        self.max_failures = max_failures
        self.reset_seconds = reset_seconds
        self.consecutive_failures = 0
        self.open_until: datetime | None = None

    def remaining_seconds(self, now: datetime | None = None) -> float:
        """Seconds until the breaker closes again, 0 when closed."""
        if self.open_until is None:
            return 0.0
        now = now or datetime.now(UTC)
        if now >= self.open_until:
            self.open_until = None
            self.consecutive_failures = 0
            return 0.0
        return (self.open_until - now).total_seconds()

    def record(self, result: ReconcileResult) -> bool:
        """Count a tick. Returns True if this tick opened the breaker."""
        if result.success:
            self.consecutive_failures = 0
            return False
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_failures and self.open_until is None:
            self.open_until = datetime.now(UTC) + timedelta(seconds=self.reset_seconds)
            return True
        return False


class PollScheduler:
    """Runs one reconcile loop per descriptor until shutdown."""

    def __init__(
        self,
        store: DescriptorStore,
        controllers: Mapping[ResourceKind, Reconciler],
        config: Config,
        *,
        rng: random.Random | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self._store = store
        self._controllers = controllers
        self._config = config
        self._rng = rng or random.Random()
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def shutdown_event(self) -> asyncio.Event:
        """Set on shutdown. Pass it to controllers as their cancel event."""
        return self._shutdown_event

    def next_delay(self) -> float:
        """Poll interval with uniform jitter applied, never negative."""
        jitter = self._config.poll_jitter_seconds
        delay = float(self._config.poll_interval_seconds)
        if jitter:
            delay += self._rng.uniform(-jitter, jitter)
        return max(delay, 0.0)

    def order(self) -> list[ResourceDescriptor]:
        """Descriptors with parents first and teardowns in reverse.

        Raises:
            CyclicDependencyError: If descriptors depend on each other in a cycle.
        """
        graph = DependencyGraph.from_descriptors(self._store)
        names = [n for n in graph.topological_sort() if n in self._store]
        live = [self._store[n] for n in names if not self._store[n].deletion_requested]
        doomed = [self._store[n] for n in reversed(names) if self._store[n].deletion_requested]
        return live + doomed

    def breaker(self, name: str) -> CircuitBreaker:
        return self._breakers.setdefault(name, CircuitBreaker())

    async def reconcile(self, descriptor: ResourceDescriptor) -> ReconcileResult:
        """Resolve references, then hand the descriptor to its controller."""
        controller = self._controllers.get(descriptor.kind)
        if controller is None:
            result = ReconcileResult(descriptor=descriptor.name, kind=descriptor.kind)
            result.error = LookupError(f"no controller registered for {descriptor.kind.value}")
            result.end_time = result.start_time
            logger.error(
                "No controller for kind",
                extra={"descriptor": descriptor.name, "kind": descriptor.kind.value},
            )
            return result

        try:
            resolve_references(descriptor, self._store)
        except DependencyError as e:
            result = ReconcileResult(descriptor=descriptor.name, kind=descriptor.kind)
            result.error = e
            result.end_time = datetime.now(UTC)
            descriptor.set_condition(Condition.UNAVAILABLE, reason=str(e))
            logger.warning(
                "Reference not resolvable, tick skipped",
                extra={"descriptor": descriptor.name, "reason": str(e)},
            )
            return result

        return await controller.reconcile(descriptor)

    async def tick(self) -> list[ReconcileResult]:
        """Reconcile every descriptor once, sequentially, in dependency order."""
        return [await self.reconcile(descriptor) for descriptor in self.order()]

    async def run(self) -> None:
        """Run every descriptor's loop until shutdown.

        Raises:
            CyclicDependencyError: If the descriptors cannot be ordered.
        """
        ordered = self.order()
        logger.info(
            "Starting scheduler",
            extra={
                "descriptors": len(ordered),
                "interval_seconds": self._config.poll_interval_seconds,
                "jitter_seconds": self._config.poll_jitter_seconds,
            },
        )

        # First ticks run in dependency order so parents exist before children
        for descriptor in ordered:
            if self._shutdown_event.is_set():
                break
            self._record(descriptor, await self.reconcile(descriptor))

        tasks = [
            asyncio.create_task(self._worker(descriptor), name=f"reconcile-{descriptor.name}")
            for descriptor in ordered
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Scheduler shutdown complete")

    def shutdown(self) -> None:
        """Signal every loop to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _worker(self, descriptor: ResourceDescriptor) -> None:
        breaker = self.breaker(descriptor.name)
        while not await self._sleep(self.next_delay()):
            remaining = breaker.remaining_seconds()
            if remaining > 0:
                logger.warning(
                    "Circuit breaker open, skipping reconciliation",
                    extra={
                        "descriptor": descriptor.name,
                        "remaining_seconds": remaining,
                        "consecutive_failures": breaker.consecutive_failures,
                    },
                )
                continue
            self._record(descriptor, await self.reconcile(descriptor))

    def _record(self, descriptor: ResourceDescriptor, result: ReconcileResult) -> None:
        breaker = self.breaker(descriptor.name)
        if breaker.record(result):
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "descriptor": descriptor.name,
                    "consecutive_failures": breaker.consecutive_failures,
                    "reset_seconds": breaker.reset_seconds,
                },
            )

    async def _sleep(self, seconds: float) -> bool:
        """Wait for the next cycle. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            return False
        return True
