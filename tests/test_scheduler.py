"""Tests for the poll scheduler and circuit breaker."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from convergence.config import Config
from convergence.dependency import CyclicDependencyError, DependencyNotReadyError
from convergence.engine import ReconcileResult
from convergence.models import Condition, DescriptorStore, ResourceDescriptor, ResourceKind
from convergence.scheduler import CircuitBreaker, PollScheduler


class RecordingReconciler:
    """Reconciler that records descriptor names and optionally fails."""

    def __init__(
        self, fail: bool = False, on_call: Callable[[int], None] | None = None
    ) -> None:
        self.fail = fail
        self.on_call = on_call
        self.calls: list[str] = []

    async def reconcile(self, descriptor: ResourceDescriptor) -> ReconcileResult:
        self.calls.append(descriptor.name)
        result = ReconcileResult(descriptor=descriptor.name, kind=descriptor.kind)
        if self.fail:
            result.error = RuntimeError("boom")
        result.end_time = datetime.now(UTC)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        return result


def cluster(name: str, **extra: object) -> ResourceDescriptor:
    return ResourceDescriptor.model_validate(
        {"name": name, "spec": {"kind": "K8sCluster", "name": name}, **extra}
    )


def nodepool(name: str, cluster_ref: str, **extra: object) -> ResourceDescriptor:
    return ResourceDescriptor.model_validate(
        {
            "name": name,
            "spec": {
                "kind": "K8sNodePool",
                "name": name,
                "clusterRef": cluster_ref,
                "datacenterId": "dc-1",
                "nodeCount": 1,
                "coresCount": 2,
                "ramSize": 4096,
                "storageSize": 20,
            },
            **extra,
        }
    )


def scheduler_for(
    store: DescriptorStore, reconciler: RecordingReconciler, config: Config
) -> PollScheduler:
    controllers = {
        ResourceKind.K8S_CLUSTER: reconciler,
        ResourceKind.K8S_NODE_POOL: reconciler,
    }
    return PollScheduler(store, controllers, config)


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def failed(self) -> ReconcileResult:
        return ReconcileResult(
            descriptor="a", kind=ResourceKind.K8S_CLUSTER, error=RuntimeError("boom")
        )

    def test_opens_after_max_failures(self) -> None:
        breaker = CircuitBreaker(max_failures=3, reset_seconds=60)

        opened = [breaker.record(self.failed()) for _ in range(3)]

        assert opened == [False, False, True]
        assert breaker.remaining_seconds() > 0

    def test_success_resets(self) -> None:
        breaker = CircuitBreaker(max_failures=2)
        breaker.record(self.failed())

        breaker.record(ReconcileResult(descriptor="a", kind=ResourceKind.K8S_CLUSTER))

        assert breaker.consecutive_failures == 0

    def test_closes_after_reset_period(self) -> None:
        breaker = CircuitBreaker(max_failures=1, reset_seconds=60)
        breaker.record(self.failed())

        later = datetime.now(UTC) + timedelta(seconds=61)

        assert breaker.remaining_seconds(later) == 0.0
        assert breaker.open_until is None
        assert breaker.consecutive_failures == 0


class TestPollScheduler:
    """Tests for PollScheduler."""

    def test_next_delay_without_jitter(self) -> None:
        scheduler = PollScheduler(DescriptorStore(), {}, Config(poll_interval_seconds=10))

        assert scheduler.next_delay() == 10.0

    def test_next_delay_jitter_bounds(self) -> None:
        """Test jittered delays stay within interval +/- jitter."""
        config = Config(poll_interval_seconds=10, poll_jitter_seconds=3)
        scheduler = PollScheduler(DescriptorStore(), {}, config, rng=random.Random(42))

        delays = [scheduler.next_delay() for _ in range(200)]

        assert all(7.0 <= d <= 13.0 for d in delays)
        assert len(set(delays)) > 1

    def test_order(self, config: Config) -> None:
        """Test parents come first and deletions run children first."""
        store = DescriptorStore(
            [
                nodepool("pool", "cluster"),
                cluster("cluster"),
                nodepool("old-pool", "old", deletionRequested=True),
                cluster("old", deletionRequested=True),
            ]
        )
        scheduler = scheduler_for(store, RecordingReconciler(), config)

        names = [d.name for d in scheduler.order()]

        assert names == ["cluster", "pool", "old-pool", "old"]

    def test_order_cycle(self, config: Config) -> None:
        store = DescriptorStore([nodepool("a", "b"), nodepool("b", "a")])
        scheduler = scheduler_for(store, RecordingReconciler(), config)

        with pytest.raises(CyclicDependencyError):
            scheduler.order()

    @pytest.mark.asyncio
    async def test_tick(self, config: Config) -> None:
        cluster_descriptor = cluster("cluster", externalId="k8s-1")
        store = DescriptorStore([nodepool("pool", "cluster"), cluster_descriptor])
        reconciler = RecordingReconciler()
        scheduler = scheduler_for(store, reconciler, config)

        results = await scheduler.tick()

        assert reconciler.calls == ["cluster", "pool"]
        assert all(r.success for r in results)
        assert store["pool"].desired.cluster_id == "k8s-1"

    @pytest.mark.asyncio
    async def test_unresolved_reference(self, config: Config) -> None:
        """Test a child whose parent has no id yet is skipped."""
        store = DescriptorStore([nodepool("pool", "cluster"), cluster("cluster")])
        reconciler = RecordingReconciler()
        scheduler = scheduler_for(store, reconciler, config)

        result = await scheduler.reconcile(store["pool"])

        assert isinstance(result.error, DependencyNotReadyError)
        assert store["pool"].condition == Condition.UNAVAILABLE
        assert reconciler.calls == []

    @pytest.mark.asyncio
    async def test_missing_controller(self, config: Config) -> None:
        store = DescriptorStore([cluster("cluster")])
        scheduler = PollScheduler(store, {}, config)

        result = await scheduler.reconcile(store["cluster"])

        assert isinstance(result.error, LookupError)

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(self, config: Config) -> None:
        """Test shutdown during the first pass stops the run."""
        store = DescriptorStore([cluster("a"), cluster("b")])
        scheduler: PollScheduler

        def stop(_: int) -> None:
            scheduler.shutdown()

        reconciler = RecordingReconciler(on_call=stop)
        scheduler = scheduler_for(store, reconciler, config)

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert reconciler.calls == ["a"]
        assert scheduler.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_run_ticks_each_interval(self, config: Config) -> None:
        """Test a descriptor is reconciled again after the poll interval."""
        store = DescriptorStore([cluster("a")])
        scheduler: PollScheduler

        def stop_after_second(count: int) -> None:
            if count >= 2:
                scheduler.shutdown()

        reconciler = RecordingReconciler(on_call=stop_after_second)
        scheduler = scheduler_for(store, reconciler, config)

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert reconciler.calls == ["a", "a"]

    @pytest.mark.asyncio
    async def test_failures_open_breaker(self, config: Config) -> None:
        store = DescriptorStore([cluster("a")])
        scheduler: PollScheduler

        def stop_after_second(count: int) -> None:
            if count >= 2:
                scheduler.shutdown()

        reconciler = RecordingReconciler(fail=True, on_call=stop_after_second)
        scheduler = scheduler_for(store, reconciler, config)

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert scheduler.breaker("a").consecutive_failures == 2
