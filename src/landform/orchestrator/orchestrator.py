"""Main orchestrator that coordinates planning and execution under the state lock."""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from landform.config.parser import Config
from landform.orchestrator.builder import ResourceGraph, ResourceGraphBuilder
from landform.orchestrator.executor import ApplyResult, ExecutionStatus, Executor, ProgressCallback
from landform.orchestrator.expressions import values_equal
from landform.orchestrator.planner import ChangeSet, Planner
from landform.providers.base import ResourceObject
from landform.providers.registry import ProviderRegistry
from landform.state.models import ResourceState, StateSnapshot
from landform.state.store import StateStore
from landform.utils.errors import ErrorContext, error_handler
from landform.utils.logging import get_logger
from landform.utils.retry import RetryStrategy

logger = get_logger(__name__)

ConfirmCallback = Callable[[ChangeSet], bool]


class Orchestrator:
    """Coordinates graph building, planning and execution for one project."""

    def __init__(
        self,
        config: Config,
        store: Optional[StateStore] = None,
        registry: Optional[ProviderRegistry] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize orchestrator.

        Args:
            config: Loaded project configuration
            store: State store; defaults to the configured backend
            registry: Provider registry; defaults to built-ins plus plugins
            cancel_event: Shared cancellation flag for running applies
        """
        self.config = config
        self.registry = registry or ProviderRegistry.default(base_dir=str(config.base_dir))
        self.store = store or StateStore.from_config(config.backend, config.engine, config.base_dir)
        self.cancel_event = cancel_event or threading.Event()
        self.builder = ResourceGraphBuilder(self.registry)
        self.planner = Planner()
        self.logger = get_logger(__name__)

    @property
    def state_id(self) -> str:
        return self.config.state_id

    def build_graph(self) -> ResourceGraph:
        """Build the resource graph from the loaded declarations."""
        return self.builder.build(self.config.get_resources(), self.config.variables)

    def read_state(self) -> StateSnapshot:
        """Read the stored snapshot without locking."""
        return self.store.read_snapshot(self.state_id)

    def plan(
        self,
        targets: Optional[List[str]] = None,
        destroy: bool = False,
        refresh: bool = True
    ) -> ChangeSet:
        """Create a change-set without applying it.

        Refreshed values are used for planning but not stored.

        Args:
            targets: Optional addresses to limit the plan to
            destroy: Plan deleting every recorded resource
            refresh: Read recorded objects from their providers first

        Returns:
            ChangeSet
        """
        self.logger.info(f"Planning changes for state '{self.state_id}'...")
        with self.store.locked(self.state_id, operation="plan"):
            snapshot = self.store.read_snapshot(self.state_id)
            if refresh:
                self._refresh(snapshot)
            return self._plan(snapshot, targets, destroy)

    def apply(
        self,
        targets: Optional[List[str]] = None,
        destroy: bool = False,
        refresh: bool = True,
        confirm: Optional[ConfirmCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
        max_workers: Optional[int] = None,
        halt_on_failure: Optional[bool] = None
    ) -> ApplyResult:
        """Plan and apply while holding the state lock for the whole window.

        Args:
            targets: Optional addresses to limit the change-set to
            destroy: Delete every recorded resource instead
            refresh: Read recorded objects from their providers first
            confirm: Called with the change-set; returning False declines it
                and nothing is written
            progress_callback: Optional callback for progress updates
            max_workers: Override engine.max_workers
            halt_on_failure: Override engine.halt_on_failure

        Returns:
            ApplyResult; call ``raise_for_status()`` to turn partial failure
            into PartialApplyError
        """
        operation = "destroy" if destroy else "apply"
        with self.store.locked(self.state_id, operation=operation) as token:
            snapshot = self.store.read_snapshot(self.state_id)
            refreshed = self._refresh(snapshot) if refresh else False
            change_set = self._plan(snapshot, targets, destroy)
            executor = self._executor(max_workers, halt_on_failure)

            if not change_set.has_changes():
                if refreshed or change_set.dependency_updates:
                    return executor.apply(change_set, snapshot, token)
                self.logger.info("No changes. Infrastructure matches the declarations.")
                return ApplyResult(status=ExecutionStatus.SUCCESS, change_set=change_set, snapshot=snapshot)

            if confirm is not None and not confirm(change_set):
                self.logger.info("Apply declined; nothing was changed")
                return ApplyResult(
                    status=ExecutionStatus.CANCELLED,
                    change_set=change_set,
                    snapshot=snapshot,
                    declined=True,
                )

            return executor.apply(change_set, snapshot, token, progress_callback)

    def destroy(self, targets: Optional[List[str]] = None, **kwargs: Any) -> ApplyResult:
        """Delete every recorded resource (or the targets and their dependents)."""
        return self.apply(targets=targets, destroy=True, **kwargs)

    def refresh(self) -> StateSnapshot:
        """Update recorded outputs from the providers and store the result."""
        with self.store.locked(self.state_id, operation="refresh") as token:
            snapshot = self.store.read_snapshot(self.state_id)
            if self._refresh(snapshot):
                self.store.write_snapshot(self.state_id, snapshot, token)
            return snapshot

    def _plan(self, snapshot: StateSnapshot, targets: Optional[List[str]], destroy: bool) -> ChangeSet:
        graph = self.build_graph()
        return self.planner.plan(graph, snapshot, targets=targets, destroy=destroy)

    def _executor(self, max_workers: Optional[int] = None, halt_on_failure: Optional[bool] = None) -> Executor:
        engine = self.config.engine
        overrides: Dict[str, Any] = {}
        if max_workers is not None:
            overrides['max_workers'] = max_workers
        if halt_on_failure is not None:
            overrides['halt_on_failure'] = halt_on_failure
        if overrides:
            engine = engine.model_copy(update=overrides)
        return Executor.from_config(engine, self.registry, self.store, self.cancel_event)

    def _refresh(self, snapshot: StateSnapshot) -> bool:
        """Read every recorded object from its provider.

        Objects that no longer exist are dropped from the snapshot.

        Returns:
            True if the snapshot changed
        """
        if not snapshot.resources:
            return False

        self.logger.info(f"Refreshing {len(snapshot.resources)} recorded resource(s)...")
        changed = False
        resources = list(snapshot.resources.values())

        with ThreadPoolExecutor(max_workers=self.config.engine.max_workers) as pool:
            futures = {pool.submit(self._read_resource, resource): resource for resource in resources}
            for future in as_completed(futures):
                resource = futures[future]
                outputs = future.result()

                if outputs is None:
                    self.logger.warning(
                        f"{resource.address} no longer exists; removing it from the state",
                        extra={'address': resource.address}
                    )
                    snapshot.remove_resource(resource.address)
                    changed = True
                elif not values_equal(outputs, resource.outputs):
                    self.logger.info(f"Refreshed {resource.address}", extra={'address': resource.address})
                    snapshot.set_resource(resource.model_copy(update={'outputs': outputs}))
                    changed = True

        return changed

    def _read_resource(self, resource: ResourceState) -> Optional[Dict[str, Any]]:
        engine = self.config.engine
        provider = self.registry.get(resource.type)
        strategy = RetryStrategy(
            max_retries=engine.retry.max_retries,
            base_delay=engine.retry.base_delay,
            max_delay=engine.retry.max_delay,
            cancel_event=self.cancel_event,
        )
        target = ResourceObject(resource.type, resource.name, dict(resource.attributes), dict(resource.outputs))

        try:
            outputs = strategy.execute_with_retry(provider.read, target, engine.provider_timeout)
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(address=resource.address, resource_type=resource.type,
                                operation="read", provider=provider.name)
            )
            if error is e:
                raise
            raise error from e

        if outputs is None:
            return None
        outputs = dict(outputs)
        outputs.setdefault('id', resource.id)
        return outputs
