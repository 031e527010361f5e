"""Change-set executor with bounded parallelism and incremental state writes."""

import heapq
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from landform.config.models import EngineConfig, RetryConfig
from landform.orchestrator.expressions import Reference, evaluate_value
from landform.orchestrator.planner import ChangeAction, ChangeSet, ChangeSetEntry
from landform.providers.base import BaseProvider, ResourceObject
from landform.providers.registry import ProviderRegistry
from landform.state.models import LockToken, ResourceState, StateSnapshot
from landform.state.store import StateStore
from landform.utils.errors import (
    ErrorContext,
    FatalProviderError,
    LandformError,
    PartialApplyError,
    ProviderTimeoutError,
    UnresolvedReferenceError,
    error_handler,
)
from landform.utils.logging import get_logger
from landform.utils.retry import RetryStrategy

logger = get_logger(__name__)


class ExecutionStatus(Enum):
    """Status of execution."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class EntryResult:
    """Result of executing a single change-set entry."""

    key: str
    address: str
    action: ChangeAction
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: Optional[LandformError] = None
    reason: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    attempts: int = 0

    def is_success(self) -> bool:
        """Check if execution was successful."""
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self.status == ExecutionStatus.FAILED

    def is_skipped(self) -> bool:
        return self.status == ExecutionStatus.SKIPPED


def _unique(addresses: List[str]) -> List[str]:
    return list(dict.fromkeys(addresses))


@dataclass
class ApplyResult:
    """Complete apply result."""

    status: ExecutionStatus
    change_set: ChangeSet
    results: Dict[str, EntryResult] = field(default_factory=dict)
    snapshot: Optional[StateSnapshot] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    cancelled: bool = False
    declined: bool = False

    @property
    def applied(self) -> List[str]:
        """Addresses with at least one successful operation."""
        return _unique([r.address for r in self.results.values() if r.is_success()])

    @property
    def failed(self) -> List[str]:
        return _unique([r.address for r in self.results.values() if r.is_failed()])

    @property
    def skipped(self) -> List[str]:
        return _unique([r.address for r in self.results.values() if r.is_skipped()])

    def is_success(self) -> bool:
        """Check if every entry was applied."""
        return self.status == ExecutionStatus.SUCCESS

    def raise_for_status(self) -> None:
        """Raise PartialApplyError if anything failed or was skipped."""
        if self.failed or self.skipped:
            raise PartialApplyError(self.failed, self.skipped)

    def summary(self) -> Dict[str, int]:
        counts = defaultdict(int)
        for result in self.results.values():
            counts[result.status.value] += 1
        return dict(counts)


# Type alias for progress callback
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]


class Executor:
    """Applies change-sets through providers.

    The calling thread owns the scheduling loop and is the only thread that
    mutates the snapshot. Provider calls run in a bounded thread pool; an
    entry is submitted once all of its predecessors have succeeded.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: Optional[StateStore] = None,
        max_workers: int = 10,
        halt_on_failure: bool = False,
        provider_timeout: float = 300.0,
        retry: Optional[RetryConfig] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize executor.

        Args:
            registry: Providers by resource type
            store: State store for incremental snapshot writes; without one
                the snapshot is only updated in memory
            max_workers: Maximum number of concurrent provider calls
            halt_on_failure: Stop scheduling new entries after the first failure
            provider_timeout: Seconds allowed per provider call
            retry: Backoff settings for transient errors
            cancel_event: When set, no new entries are started
        """
        self.registry = registry
        self.store = store
        self.max_workers = max_workers
        self.halt_on_failure = halt_on_failure
        self.provider_timeout = provider_timeout
        self.retry = retry or RetryConfig()
        self.cancel_event = cancel_event or threading.Event()
        self.logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        engine: EngineConfig,
        registry: ProviderRegistry,
        store: Optional[StateStore] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> "Executor":
        return cls(
            registry,
            store=store,
            max_workers=engine.max_workers,
            halt_on_failure=engine.halt_on_failure,
            provider_timeout=engine.provider_timeout,
            retry=engine.retry,
            cancel_event=cancel_event,
        )

    def apply(
        self,
        change_set: ChangeSet,
        snapshot: StateSnapshot,
        token: Optional[LockToken] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Apply a change-set.

        Args:
            change_set: Ordered change-set from the planner
            snapshot: Working snapshot; updated in place
            token: Lock token used for snapshot writes
            progress_callback: Optional callback for progress updates

        Returns:
            ApplyResult with per-entry outcomes

        Raises:
            StateError: If a snapshot write fails (e.g. the lock was lost);
                scheduling stops, in-flight calls finish first and the
                working snapshot is saved to the store's recovery file
        """
        self.logger.info(
            f"Applying {len(change_set)} change(s) with up to {self.max_workers} worker(s)"
        )
        start_time = datetime.utcnow()
        started = time.monotonic()

        entries = {entry.key: entry for entry in change_set.entries}
        position = {entry.key: index for index, entry in enumerate(change_set.entries)}
        waiting = {entry.key: set(entry.predecessors) for entry in change_set.entries}
        dependents: Dict[str, List[str]] = defaultdict(list)
        for entry in change_set.entries:
            for predecessor in entry.predecessors:
                dependents[predecessor].append(entry.key)

        results: Dict[str, EntryResult] = {}
        attributes: Dict[str, Optional[Dict[str, Any]]] = {}
        deposed_keys: Dict[str, str] = {}
        running: Dict[Future, str] = {}
        ready = [(position[key], key) for key, preds in waiting.items() if not preds]
        heapq.heapify(ready)
        state_error: Optional[LandformError] = None
        any_failed = False

        self._sync_dependencies(change_set, snapshot)

        def notify(key: str) -> None:
            if progress_callback:
                result = results[key]
                progress_callback(result.address, result.status, str(result.error) if result.error else result.reason)

        def fail(key: str, error: LandformError) -> None:
            result = results.setdefault(key, self._new_result(entries[key]))
            result.status = ExecutionStatus.FAILED
            result.error = error
            self._finish(result)
            self.logger.error(
                f"Failed to {result.action.value} {result.address}: {error.message}",
                extra={'address': result.address, 'action': result.action.value}
            )
            notify(key)
            self._skip_dependents(key, entries, dependents, results, notify)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="landform-apply") as pool:
            while ready or running:
                while ready and len(running) < self.max_workers:
                    if self.cancel_event.is_set() or state_error or (self.halt_on_failure and any_failed):
                        break
                    _, key = heapq.heappop(ready)
                    entry = entries[key]
                    try:
                        provider = self.registry.get(entry.resource_type)
                        attributes[key] = self._resolve_attributes(entry, snapshot, change_set.variables)
                    except LandformError as e:
                        any_failed = True
                        fail(key, e)
                        continue

                    result = results[key] = self._new_result(entry)
                    result.status = ExecutionStatus.IN_PROGRESS
                    result.start_time = datetime.utcnow()
                    notify(key)
                    future = pool.submit(self._execute_entry, entry, provider, attributes[key], result)
                    running[future] = key

                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    entry = entries[key]
                    try:
                        outputs = future.result()
                    except LandformError as e:
                        any_failed = True
                        fail(key, e)
                        continue

                    self._record(entry, attributes[key], outputs, snapshot, deposed_keys)
                    result = results[key]
                    result.status = ExecutionStatus.SUCCESS
                    self._finish(result)
                    self.logger.info(
                        f"{self._past_tense(entry)} {entry.address} in {result.duration:.1f}s",
                        extra={'address': entry.address, 'action': entry.action.value,
                               'duration': result.duration}
                    )
                    notify(key)

                    if state_error is None:
                        try:
                            self._write(snapshot, token)
                        except LandformError as e:
                            state_error = e
                            self.logger.error(f"Stopping apply: {e.message}")

                    for dependent in dependents[key]:
                        waiting[dependent].discard(key)
                        if not waiting[dependent] and dependent not in results:
                            heapq.heappush(ready, (position[dependent], dependent))

        cancelled = self.cancel_event.is_set()
        for entry in change_set.entries:
            if entry.key not in results:
                result = results[entry.key] = self._new_result(entry)
                result.status = ExecutionStatus.SKIPPED
                result.reason = "cancelled" if cancelled else "not started after an earlier failure"
                notify(entry.key)

        end_time = datetime.utcnow()
        apply_result = ApplyResult(
            status=ExecutionStatus.SUCCESS,
            change_set=change_set,
            results={entry.key: results[entry.key] for entry in change_set.entries},
            snapshot=snapshot,
            start_time=start_time,
            end_time=end_time,
            duration=time.monotonic() - started,
            cancelled=cancelled,
        )
        if apply_result.failed or apply_result.skipped:
            apply_result.status = ExecutionStatus.CANCELLED if cancelled else ExecutionStatus.FAILED

        if state_error is not None:
            if self.store is not None:
                self.store.save_recovery(snapshot.state_id, snapshot, state_error)
            raise state_error

        snapshot.metadata['last_apply'] = {
            'timestamp': end_time.isoformat(),
            'status': apply_result.status.value,
            'destroy': change_set.destroy,
            'applied': apply_result.applied,
            'failed': apply_result.failed,
            'skipped': apply_result.skipped,
        }
        self._write(snapshot, token)

        if apply_result.is_success():
            self.logger.info(
                f"Apply complete: {len(apply_result.applied)} resource(s) in {apply_result.duration:.1f}s"
            )
        else:
            self.logger.error(
                f"Apply finished with {len(apply_result.failed)} failed and "
                f"{len(apply_result.skipped)} skipped resource(s)"
            )
        return apply_result

    @staticmethod
    def _new_result(entry: ChangeSetEntry) -> EntryResult:
        return EntryResult(key=entry.key, address=entry.address, action=entry.action)

    @staticmethod
    def _finish(result: EntryResult) -> None:
        result.end_time = datetime.utcnow()
        if result.start_time:
            result.duration = (result.end_time - result.start_time).total_seconds()

    @staticmethod
    def _past_tense(entry: ChangeSetEntry) -> str:
        return {
            ChangeAction.CREATE: "Created",
            ChangeAction.UPDATE: "Updated",
            ChangeAction.DELETE: "Deleted",
        }.get(entry.action, "Applied")

    def _skip_dependents(
        self,
        key: str,
        entries: Dict[str, ChangeSetEntry],
        dependents: Dict[str, List[str]],
        results: Dict[str, EntryResult],
        notify: Callable[[str], None]
    ) -> None:
        failed_address = entries[key].address
        queue = deque(dependents[key])
        while queue:
            current = queue.popleft()
            if current in results:
                continue
            result = results[current] = self._new_result(entries[current])
            result.status = ExecutionStatus.SKIPPED
            result.reason = f"depends on failed {failed_address}"
            self.logger.warning(
                f"Skipping {result.action.value} of {result.address}: {result.reason}",
                extra={'address': result.address, 'action': result.action.value}
            )
            notify(current)
            queue.extend(dependents[current])

    def _sync_dependencies(self, change_set: ChangeSet, snapshot: StateSnapshot) -> None:
        for address, dependencies in change_set.dependency_updates.items():
            record = snapshot.get_resource(address)
            if record is not None:
                snapshot.set_resource(record.model_copy(update={'dependencies': list(dependencies)}))

    def _resolve_attributes(
        self,
        entry: ChangeSetEntry,
        snapshot: StateSnapshot,
        variables: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Final attribute values, read from the working snapshot."""
        if entry.action == ChangeAction.DELETE:
            return None

        def resolve(ref: Reference) -> Any:
            if ref.is_variable:
                if ref.variable not in variables:
                    raise UnresolvedReferenceError(f"Undefined variable '{ref.variable}'", reference=str(ref))
                return variables[ref.variable]
            record = snapshot.get_resource(ref.address)
            if record is None or not record.has_value(ref.attribute):
                raise UnresolvedReferenceError(
                    f"'{ref}' has no value: {ref.address} is not in the state",
                    reference=str(ref)
                )
            return record.get_value(ref.attribute)

        try:
            resolved = evaluate_value(dict(entry.declaration.attributes), resolve)
        except LandformError as e:
            e.context.address = entry.address
            raise

        if entry.action == ChangeAction.UPDATE:
            for name in entry.declaration.lifecycle.ignore_changes:
                if name in entry.prior.attributes:
                    resolved[name] = entry.prior.attributes[name]
        return resolved

    def _execute_entry(
        self,
        entry: ChangeSetEntry,
        provider: BaseProvider,
        attributes: Optional[Dict[str, Any]],
        result: EntryResult
    ) -> Optional[Dict[str, Any]]:
        """Run one entry's provider call with retries (worker thread)."""
        address = entry.address
        action = entry.action.value
        self.logger.info(f"{action.capitalize()} {address}...", extra={'address': address, 'action': action})

        if entry.action == ChangeAction.CREATE:
            target = ResourceObject(entry.resource_type, entry.resource_name, attributes)
            operation = partial(provider.create, target, self.provider_timeout)
        elif entry.action == ChangeAction.UPDATE:
            current = self._resource_object(entry.prior)
            operation = partial(provider.update, current, attributes, self.provider_timeout)
        else:
            current = self._resource_object(entry.prior)
            operation = partial(provider.delete, current, self.provider_timeout)

        strategy = RetryStrategy(
            max_retries=self.retry.max_retries,
            base_delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
            cancel_event=self.cancel_event,
        )

        def attempt():
            result.attempts += 1
            return self._call_with_timeout(operation, entry)

        context = ErrorContext(
            address=address,
            resource_type=entry.resource_type,
            operation=action,
            provider=provider.name,
        )
        try:
            outputs = strategy.execute_with_retry(attempt)
        except Exception as e:
            error = error_handler.handle_exception(e, context)
            if error.context.address is None:
                error.context.address = address
                error.context.operation = action
            if error is e:
                raise
            raise error from e

        if entry.action == ChangeAction.DELETE:
            return None
        outputs = dict(outputs or {})
        if entry.action == ChangeAction.UPDATE:
            outputs.setdefault('id', entry.prior.id)
        if outputs.get('id') is None:
            raise FatalProviderError(
                f"Provider '{provider.name}' returned no id for {address}",
                context=context
            )
        return outputs

    def _call_with_timeout(self, operation: Callable[[], Any], entry: ChangeSetEntry) -> Any:
        """Run one provider call in its own thread, bounded by provider_timeout.

        The budget starts when the call starts. A call that overruns keeps
        running in its daemon thread; it never holds up other entries.
        """
        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome['value'] = operation()
            except Exception as e:
                outcome['error'] = e

        thread = threading.Thread(target=run, name=f"landform-call-{entry.address}", daemon=True)
        thread.start()
        thread.join(self.provider_timeout)

        if thread.is_alive():
            raise ProviderTimeoutError(
                f"{entry.action.value} of {entry.address} did not finish within "
                f"{self.provider_timeout:g}s; its outcome is unknown",
                context=ErrorContext(address=entry.address, operation=entry.action.value),
                suggestions=[
                    "Run 'landform plan' with refresh to see the object's actual state",
                    "Raise engine.provider_timeout if the operation is legitimately slow",
                ]
            )
        if 'error' in outcome:
            raise outcome['error']
        return outcome.get('value')

    @staticmethod
    def _resource_object(state: ResourceState) -> ResourceObject:
        return ResourceObject(state.type, state.name, dict(state.attributes), dict(state.outputs))

    def _record(
        self,
        entry: ChangeSetEntry,
        attributes: Optional[Dict[str, Any]],
        outputs: Optional[Dict[str, Any]],
        snapshot: StateSnapshot,
        deposed_keys: Dict[str, str]
    ) -> None:
        """Apply a successful entry to the working snapshot (main thread)."""
        address = entry.address

        if entry.action == ChangeAction.DELETE:
            if entry.deposed:
                snapshot.remove_deposed(entry.deposed_key)
            elif entry.replace and entry.create_before_destroy:
                if address in deposed_keys:
                    snapshot.remove_deposed(deposed_keys.pop(address))
            else:
                snapshot.remove_resource(address)
            return

        if entry.action == ChangeAction.CREATE and entry.replace and entry.create_before_destroy:
            deposed = snapshot.depose(address)
            if deposed is not None:
                deposed_keys[address] = deposed.key

        snapshot.set_resource(ResourceState(
            type=entry.resource_type,
            name=entry.resource_name,
            attributes=attributes,
            outputs=outputs,
            dependencies=list(entry.dependencies),
            create_before_destroy=entry.declaration.lifecycle.create_before_destroy,
        ))

    def _write(self, snapshot: StateSnapshot, token: Optional[LockToken]) -> None:
        if self.store is None or token is None:
            return
        self.store.write_snapshot(snapshot.state_id, snapshot, token)
