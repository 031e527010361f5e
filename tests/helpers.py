"""Shared test doubles and builders."""

import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from landform.config.models import LifecycleConfig, ResourceDeclaration, RetryConfig
from landform.orchestrator.builder import ResourceGraph, ResourceGraphBuilder
from landform.orchestrator.executor import ApplyResult, Executor
from landform.orchestrator.planner import ChangeSet, Planner
from landform.providers.base import BaseProvider, ResourceObject, ResourceSchema
from landform.state.models import StateSnapshot

FAST_RETRY = RetryConfig(max_retries=2, base_delay=0.01, max_delay=0.02)


class FakeProvider(BaseProvider):
    """In-memory provider with scripted failures, delays and hooks.

    ``fake_thing`` has an immutable ``zone`` and a computed ``arn``;
    ``fake_item`` has neither.
    """

    name = "fake"
    schemas = {
        "fake_thing": ResourceSchema(immutable=frozenset({"zone"}), computed=frozenset({"arn"})),
        "fake_item": ResourceSchema(),
    }

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[Tuple[str, str], list] = {}
        self.delays: Dict[Tuple[str, str], float] = {}
        self.hooks: Dict[Tuple[str, str], Callable[[], None]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, operation: str, address: str, error: Exception, times: Optional[int] = None) -> None:
        """Raise ``error`` from the next ``times`` calls (every call if None)."""
        self.failures[(operation, address)] = [error, times]

    def delay(self, operation: str, address: str, seconds: float) -> None:
        self.delays[(operation, address)] = seconds

    def on_call(self, operation: str, address: str, hook: Callable[[], None]) -> None:
        self.hooks[(operation, address)] = hook

    def calls_for(self, operation: str) -> List[str]:
        return [address for op, address in self.calls if op == operation]

    def _call(self, operation: str, resource: ResourceObject) -> None:
        key = (operation, resource.address)
        error = None
        with self._lock:
            self.calls.append(key)
            script = self.failures.get(key)
            if script is not None:
                error, remaining = script
                if remaining is not None:
                    if remaining <= 1:
                        del self.failures[key]
                    else:
                        script[1] = remaining - 1

        hook = self.hooks.get(key)
        if hook is not None:
            hook()
        seconds = self.delays.get(key)
        if seconds:
            time.sleep(seconds)
        if error is not None:
            raise error

    def create(self, resource: ResourceObject, timeout: float) -> Dict[str, Any]:
        self._call("create", resource)
        object_id = f"{resource.name}-{next(self._ids)}"
        with self._lock:
            self.objects[object_id] = dict(resource.attributes)
        return {"id": object_id, "arn": f"arn:fake:{resource.type}/{object_id}"}

    def read(self, resource: ResourceObject, timeout: float) -> Optional[Dict[str, Any]]:
        self._call("read", resource)
        if resource.id not in self.objects:
            return None
        return dict(resource.outputs)

    def update(self, current: ResourceObject, attributes: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self._call("update", current)
        with self._lock:
            self.objects[current.id] = dict(attributes)
        return dict(current.outputs)

    def delete(self, resource: ResourceObject, timeout: float) -> None:
        self._call("delete", resource)
        with self._lock:
            self.objects.pop(resource.id, None)


def declare(
    resource_type: str,
    name: str,
    /,
    depends_on: Optional[List[str]] = None,
    lifecycle: Optional[Dict[str, Any]] = None,
    **attributes: Any
) -> ResourceDeclaration:
    return ResourceDeclaration(
        type=resource_type,
        name=name,
        attributes=attributes,
        depends_on=depends_on or [],
        lifecycle=LifecycleConfig(**(lifecycle or {})),
    )


def make_graph(registry, declarations, variables=None) -> ResourceGraph:
    return ResourceGraphBuilder(registry).build(declarations, variables or {})


def plan_changes(registry, declarations, snapshot: StateSnapshot, variables=None, **kwargs) -> ChangeSet:
    graph = make_graph(registry, declarations, variables)
    return Planner().plan(graph, snapshot, **kwargs)


def apply_changes(
    registry,
    declarations,
    snapshot: Optional[StateSnapshot] = None,
    variables=None,
    **executor_kwargs: Any
) -> ApplyResult:
    snapshot = snapshot if snapshot is not None else StateSnapshot(state_id="test")
    change_set = plan_changes(registry, declarations, snapshot, variables)
    executor_kwargs.setdefault("retry", FAST_RETRY)
    return Executor(registry, **executor_kwargs).apply(change_set, snapshot)


def keys(change_set: ChangeSet) -> List[str]:
    return [entry.key for entry in change_set.entries]
