"""
Operator Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles desired state with
actual state: every GpuDevicePlugin (or other registered kind) resource is
driven towards exactly one DaemonSet in the operator namespace, and the
outcome is written back onto the resource's status.

Passes for one resource are strictly serialized; distinct resources
reconcile concurrently up to max_concurrent_reconciles.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from builder import WorkloadBuilder
from config import ControllerConfig
from diff import DiffAction, DiffEngine
from errors import (
    ConflictError,
    NotFoundError,
    OwnershipError,
    SpecValidationError,
    StoreError,
    TransientStoreError,
)
from events import (
    EventBus,
    EventType,
    ReconcileEvent,
    ResourceDeleted,
    WatchEvent,
    parse_watch_event,
)
from garbage_collector import controller_of, is_controlled_by
from migrate import UpgradeMigrator
from models import (
    DEFAULT_NAMESPACE,
    Condition,
    DevicePluginResource,
    ObservedWorkload,
    ReconcileState,
    ResourceKey,
)
from normalizer import SpecNormalizer
from plugins.base import DevicePluginKind
from plugins.registry import PluginRegistry
from retry import backoff_delay
from status import StatusReporter
from store import OrchestrationStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a single reconcile pass."""

    success: bool
    state: ReconcileState
    message: str = ""
    requeue_after: Optional[float] = None
    action: str = ""


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Watches resources of every enabled device plugin kind and the workloads
    they own, and runs a reconcile pass for a resource whenever either
    changes. A periodic resync catches anything a watch missed.
    """

    def __init__(
        self,
        store: OrchestrationStore,
        registry: PluginRegistry,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ):
        self.store = store
        self.registry = registry
        self.config = config or ControllerConfig()
        self.namespace = namespace
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus

        self.diff_engine = DiffEngine()
        self.migrator = UpgradeMigrator()
        self.reporter = StatusReporter(store, self.config)
        self._normalizers: Dict[str, SpecNormalizer] = {}
        self._builders: Dict[str, WorkloadBuilder] = {}

        self._states: Dict[ResourceKey, ReconcileState] = {}
        self._last_results: Dict[ResourceKey, ReconcileResult] = {}
        self._locks: Dict[ResourceKey, asyncio.Lock] = {}
        self._pending: Set[ResourceKey] = set()
        self._failures: Dict[ResourceKey, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._requeue_tasks: Dict[ResourceKey, asyncio.Task] = {}

        self._shutdown_event = asyncio.Event()
        self._loop_tasks: List[asyncio.Task] = []

    # ==================== Kinds ====================

    def enabled_kinds(self) -> List[DevicePluginKind]:
        """Registered kinds this controller reconciles."""
        enabled = self.config.enabled_kinds
        return [k for k in self.registry.list_kinds() if not enabled or k.name in enabled]

    def _normalizer(self, plugin: DevicePluginKind) -> SpecNormalizer:
        if plugin.kind not in self._normalizers:
            self._normalizers[plugin.kind] = SpecNormalizer(plugin)
        return self._normalizers[plugin.kind]

    def _builder(self, plugin: DevicePluginKind) -> WorkloadBuilder:
        if plugin.kind not in self._builders:
            self._builders[plugin.kind] = WorkloadBuilder(plugin, self.namespace)
        return self._builders[plugin.kind]

    # ==================== State Table ====================

    def get_state(self, key: ResourceKey) -> Optional[ReconcileState]:
        return self._states.get(key)

    def states(self) -> Dict[ResourceKey, ReconcileState]:
        return dict(self._states)

    def last_result(self, key: ResourceKey) -> Optional[ReconcileResult]:
        return self._last_results.get(key)

    def _set_state(self, key: ResourceKey, state: ReconcileState) -> None:
        previous = self._states.get(key)
        if previous != state:
            logger.debug(f"{key}: {previous.value if previous else '-'} -> {state.value}")
        self._states[key] = state

    # ==================== Lifecycle ====================

    async def start(self):
        """
        Start the controller and run until stop() is called.

        Raises:
            StoreError: If the initial listing of resources fails
        """
        logger.info("Starting device plugin controller")
        self.running = True
        self._shutdown_event.clear()

        kinds = self.enabled_kinds()
        try:
            listings = [await self.store.list_resources(p.kind) for p in kinds]
        except StoreError:
            self.running = False
            raise

        for plugin, resources in zip(kinds, listings):
            logger.info(f"Found {len(resources)} {plugin.kind} resource(s)")
            for obj in resources:
                key = ResourceKey(plugin.kind, obj["metadata"]["name"])
                self._states.setdefault(key, ReconcileState.PENDING)
                self.enqueue(key)

        self._loop_tasks = [
            asyncio.create_task(self._watch_resources(plugin.kind)) for plugin in kinds
        ]
        self._loop_tasks.append(asyncio.create_task(self._watch_workloads()))
        self._loop_tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await self._shutdown_event.wait()
        finally:
            await self._shutdown()

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping device plugin controller")
        self.running = False
        self._shutdown_event.set()

    async def _shutdown(self) -> None:
        background = self._loop_tasks + list(self._requeue_tasks.values())
        for task in background:
            if not task.done():
                task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._loop_tasks.clear()
        self._requeue_tasks.clear()

        # Let passes already in flight finish
        await self.wait_idle()
        logger.info("Device plugin controller stopped")

    async def wait_idle(self) -> None:
        """Wait until no reconcile pass is queued or running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _sleep(self, delay: float) -> None:
        """Sleep for delay seconds, returning early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ==================== Queue ====================

    def enqueue(self, key: ResourceKey, delay: Optional[float] = None) -> None:
        """
        Queue a reconcile pass for a resource.

        A key that is already waiting for a pass is not queued twice. With
        a delay the pass is scheduled for later, replacing any earlier
        scheduled retry of the same key.
        """
        if delay:
            existing = self._requeue_tasks.pop(key, None)
            if existing and not existing.done():
                existing.cancel()
            self._requeue_tasks[key] = asyncio.create_task(self._delayed_enqueue(key, delay))
            return

        if key in self._pending:
            return
        self._pending.add(key)
        task = asyncio.create_task(self._process(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _delayed_enqueue(self, key: ResourceKey, delay: float) -> None:
        await asyncio.sleep(delay)
        self._requeue_tasks.pop(key, None)
        if self.running:
            self.enqueue(key)

    async def _process(self, key: ResourceKey) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Events arriving from here on queue a fresh pass behind this one
            self._pending.discard(key)
            async with self.semaphore:
                try:
                    result = await self.reconcile(key)
                except Exception as e:
                    logger.error(f"Error reconciling {key}: {e}", exc_info=True)
                    result = ReconcileResult(
                        success=False,
                        state=self._states.get(key, ReconcileState.PENDING),
                        message=f"Reconciliation error: {e}",
                        requeue_after=self._next_backoff(key),
                    )
                    self._set_state(key, result.state)

        self._last_results[key] = result
        if (
            result.state == ReconcileState.GONE
            and key not in self._pending
            and not lock.locked()
        ):
            self._locks.pop(key, None)
        if result.requeue_after is not None and self.running:
            self.enqueue(key, delay=result.requeue_after)

    def _next_backoff(self, key: ResourceKey) -> float:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        return backoff_delay(
            attempt,
            self.config.backoff_base_delay,
            self.config.backoff_max_delay,
            self.config.backoff_jitter_factor,
        )

    # ==================== Watches ====================

    async def _watch_resources(self, kind: str) -> None:
        """Turn resource watch notifications into reconcile passes."""
        attempt = 0
        while self.running:
            try:
                async for event_type, obj in self.store.watch_resources(kind):
                    attempt = 0
                    obj.setdefault("kind", kind)
                    self._handle_watch_event(parse_watch_event(event_type, obj))
                if self.running:
                    logger.info(f"Watch of {kind} ended, re-establishing")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Watch of {kind} failed: {e}")

            if self.running:
                await self._sleep(
                    backoff_delay(
                        attempt,
                        self.config.backoff_base_delay,
                        self.config.backoff_max_delay,
                        self.config.backoff_jitter_factor,
                    )
                )
                attempt += 1

    def _handle_watch_event(self, event: WatchEvent) -> None:
        key = event.resource.key
        if not isinstance(event, ResourceDeleted):
            self._states.setdefault(key, ReconcileState.PENDING)
        self.enqueue(key)

    async def _watch_workloads(self) -> None:
        """Reconcile the owner of any workload that changes or disappears."""
        attempt = 0
        while self.running:
            try:
                async for _, obj in self.store.watch_workloads(self.namespace):
                    attempt = 0
                    owner = controller_of(obj)
                    if owner and self.registry.has_kind(owner.kind):
                        self.enqueue(ResourceKey(owner.kind, owner.name))
                if self.running:
                    logger.info("Workload watch ended, re-establishing")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Workload watch failed: {e}")

            if self.running:
                await self._sleep(
                    backoff_delay(
                        attempt,
                        self.config.backoff_base_delay,
                        self.config.backoff_max_delay,
                        self.config.backoff_jitter_factor,
                    )
                )
                attempt += 1

    async def _resync_loop(self) -> None:
        """Periodically queue every resource, catching missed events."""
        while self.running:
            await self._sleep(self.config.resync_interval)
            if not self.running:
                break
            for plugin in self.enabled_kinds():
                try:
                    resources = await self.store.list_resources(plugin.kind)
                except StoreError as e:
                    logger.warning(f"Resync of {plugin.kind} failed: {e}")
                    continue
                for obj in resources:
                    self.enqueue(ResourceKey(plugin.kind, obj["metadata"]["name"]))

    # ==================== Reconciliation ====================

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """
        Run one reconcile pass for a resource.

        Errors are turned into the result: validation and ownership failures
        are reported as conditions and not retried, conflicts and transient
        store errors ask to be requeued with backoff.

        Args:
            key: Kind and name of the resource

        Returns:
            ReconcileResult describing the pass
        """
        try:
            return await self._reconcile(key)
        except SpecValidationError as e:
            logger.warning(f"Invalid spec for {key}: {e.message}")
            self._failures.pop(key, None)
            self._set_state(key, ReconcileState.PENDING)
            await self._report_failure(key, "Ready", "ValidationFailed", e.message)
            await self._publish(EventType.FAILED, key, message=e.message)
            return ReconcileResult(
                success=False, state=ReconcileState.PENDING, message=e.message
            )
        except OwnershipError as e:
            logger.error(f"Ownership conflict for {key}: {e.message}")
            self._failures.pop(key, None)
            self._set_state(key, ReconcileState.PENDING)
            await self._report_failure(key, "Ready", "OwnershipConflict", e.message)
            await self._publish(EventType.FAILED, key, message=e.message)
            return ReconcileResult(
                success=False, state=ReconcileState.PENDING, message=e.message
            )
        except NotFoundError as e:
            if not await self._resource_exists(key):
                return await self._gone(key)
            logger.info(f"Workload of {key} vanished mid-pass, retrying: {e.message}")
            self._set_state(key, ReconcileState.PENDING)
            return ReconcileResult(
                success=False,
                state=ReconcileState.PENDING,
                message=e.message,
                requeue_after=0,
            )
        except ConflictError as e:
            logger.info(f"Conflict reconciling {key}, retrying: {e.message}")
            self._set_state(key, ReconcileState.PENDING)
            return ReconcileResult(
                success=False,
                state=ReconcileState.PENDING,
                message=e.message,
                requeue_after=self._next_backoff(key),
            )
        except TransientStoreError as e:
            delay = self._next_backoff(key)
            attempts = self._failures[key]
            logger.warning(
                f"Store unavailable reconciling {key} "
                f"(attempt {attempts}), retrying in {delay:.2f}s: {e.message}"
            )
            if attempts > self.config.max_transient_retries:
                await self._report_failure(key, "Degraded", "StoreUnavailable", e.message)
            state = self._states.get(key, ReconcileState.PENDING)
            if state == ReconcileState.RECONCILING:
                state = ReconcileState.PENDING
                self._set_state(key, state)
            return ReconcileResult(
                success=False, state=state, message=e.message, requeue_after=delay
            )

    async def _reconcile(self, key: ResourceKey) -> ReconcileResult:
        plugin = self.registry.get_kind(key.kind)

        obj = await self.store.get_resource(key.kind, key.name)
        obj.setdefault("kind", key.kind)
        resource = DevicePluginResource.from_object(obj)

        if resource.is_deleting:
            return await self._deleting(key, resource)

        self._states.setdefault(key, ReconcileState.PENDING)

        if self.migrator.needs_migration(obj):
            migrated = self.migrator.migrate(obj)
            obj = await self.store.replace_resource(key.kind, migrated)
            obj.setdefault("kind", key.kind)
            resource = DevicePluginResource.from_object(obj)
            logger.info(f"Migrated {key} to the current schema generation")

        normalized = self._normalizer(plugin).normalize(resource.spec)
        desired = self._builder(plugin).build(normalized, resource.owner_reference())

        observed: Optional[ObservedWorkload] = None
        try:
            observed = ObservedWorkload(
                await self.store.get_workload(self.namespace, desired.name)
            )
        except NotFoundError:
            pass

        if observed is not None and not is_controlled_by(observed.raw, resource.uid):
            owner = controller_of(observed.raw)
            held_by = f"{owner.kind}/{owner.name}" if owner else "no controller"
            raise OwnershipError(
                f"Workload {self.namespace}/{desired.name} already exists and is "
                f"controlled by {held_by}"
            )

        result = self.diff_engine.diff(desired, observed)
        if result.has_changes:
            self._set_state(key, ReconcileState.RECONCILING)

            aborted = await self._check_live(key, resource)
            if aborted is not None:
                return aborted

            if result.action == DiffAction.CREATE:
                logger.info(f"Creating workload {desired.name} for {key}")
                observed = ObservedWorkload(
                    await self.store.create_workload(
                        self.namespace, desired.to_manifest()
                    )
                )
            else:
                logger.info(
                    f"Patching workload {desired.name} for {key}: "
                    f"{', '.join(result.changed_fields)}"
                )
                observed = ObservedWorkload(
                    await self.store.patch_workload(
                        self.namespace,
                        desired.name,
                        result.patch,
                        owner_uid=resource.uid,
                    )
                )

        conditions = [
            Condition(
                type="Ready",
                status="True",
                reason="Reconciled",
                message=f"Workload {desired.name} matches the spec",
                observed_generation=resource.generation,
            ),
            Condition(
                type="Degraded",
                status="False",
                reason="AsExpected",
                observed_generation=resource.generation,
            ),
        ]
        await self.reporter.report(
            key.kind,
            key.name,
            observed.ref(),
            conditions,
            desired_number_scheduled=observed.desired_number_scheduled,
            number_ready=observed.number_ready,
        )

        self._failures.pop(key, None)
        self._set_state(key, ReconcileState.SYNCED)
        await self._publish(
            EventType.SYNCED,
            key,
            generation=resource.generation,
            action=result.action.value,
            workload_uid=observed.uid,
        )
        return ReconcileResult(
            success=True,
            state=ReconcileState.SYNCED,
            message=f"Workload {desired.name} in sync",
            action=result.action.value,
        )

    async def _resource_exists(self, key: ResourceKey) -> bool:
        try:
            await self.store.get_resource(key.kind, key.name)
        except NotFoundError:
            return False
        except StoreError as e:
            # Unknown; retrying is safe, declaring it gone is not
            logger.warning(f"Could not confirm {key} still exists: {e}")
        return True

    async def _check_live(
        self, key: ResourceKey, resource: DevicePluginResource
    ) -> Optional[ReconcileResult]:
        """
        Re-read a resource right before a write.

        Returns:
            None if the write may go ahead, otherwise the result that ends
            the pass without writing
        """
        try:
            current = await self.store.get_resource(key.kind, key.name)
        except NotFoundError:
            logger.info(f"{key} was deleted during reconciliation, not writing")
            return await self._gone(key)

        metadata = current.get("metadata", {})
        if metadata.get("uid") != resource.uid:
            logger.info(f"{key} was replaced during reconciliation, starting over")
            self._set_state(key, ReconcileState.PENDING)
            return ReconcileResult(
                success=False,
                state=ReconcileState.PENDING,
                message="Resource was replaced",
                requeue_after=0,
            )
        if metadata.get("deletionTimestamp"):
            logger.info(f"{key} is being deleted, not writing")
            current.setdefault("kind", key.kind)
            return await self._deleting(key, DevicePluginResource.from_object(current))
        return None

    async def _deleting(
        self, key: ResourceKey, resource: DevicePluginResource
    ) -> ReconcileResult:
        # Owned workloads go with the resource through their owner reference
        self._failures.pop(key, None)
        self._set_state(key, ReconcileState.DELETING)
        await self._publish(EventType.DELETING, key, generation=resource.generation)
        return ReconcileResult(
            success=True,
            state=ReconcileState.DELETING,
            message="Resource is being deleted",
        )

    async def _gone(self, key: ResourceKey) -> ReconcileResult:
        self._failures.pop(key, None)
        if self._states.get(key) != ReconcileState.GONE:
            logger.info(f"{key} no longer exists")
        self._set_state(key, ReconcileState.GONE)
        await self._publish(EventType.GONE, key)
        return ReconcileResult(
            success=True, state=ReconcileState.GONE, message="Resource is gone"
        )

    async def _report_failure(
        self, key: ResourceKey, condition_type: str, reason: str, message: str
    ) -> None:
        """Surface a failure as a condition; losing this write is only logged."""
        try:
            obj = await self.store.get_resource(key.kind, key.name)
            generation = obj.get("metadata", {}).get("generation", 0)
            await self.reporter.report(
                key.kind,
                key.name,
                None,
                [
                    Condition(
                        type=condition_type,
                        status="True" if condition_type == "Degraded" else "False",
                        reason=reason,
                        message=message,
                        observed_generation=generation,
                    )
                ],
            )
        except StoreError as e:
            logger.warning(f"Could not report {reason} on {key}: {e}")

    async def _publish(
        self,
        event_type: EventType,
        key: ResourceKey,
        generation: int = 0,
        action: str = "",
        message: str = "",
        workload_uid: str = "",
    ) -> None:
        if not self._event_bus:
            return
        await self._event_bus.publish(
            ReconcileEvent(
                event_type=event_type,
                kind=key.kind,
                name=key.name,
                state=self._states.get(key, ReconcileState.PENDING),
                generation=generation,
                action=action,
                message=message,
                workload_uid=workload_uid,
            )
        )
