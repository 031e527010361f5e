"""Change-set planner: diffs declarations against the state snapshot."""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set

from landform.config.models import ResourceDeclaration
from landform.orchestrator.builder import ResourceGraph
from landform.orchestrator.dependency_graph import DependencyGraph
from landform.orchestrator.expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    evaluate_value,
    values_equal,
)
from landform.state.models import ResourceState, StateSnapshot
from landform.utils.errors import (
    ErrorContext,
    ExpressionError,
    PlanError,
    UnresolvedReferenceError,
)
from landform.utils.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


class ChangeAction(Enum):
    """Kind of change planned for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


def display_value(value: Any) -> Any:
    """JSON-friendly copy of a planned value; unknowns become a marker string."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: display_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [display_value(v) for v in value]
    return value


@dataclass
class ChangeSetEntry:
    """One provider operation in a change-set."""

    key: str
    address: str
    action: ChangeAction
    declaration: Optional[ResourceDeclaration] = None
    prior: Optional[ResourceState] = None
    predecessors: List[str] = field(default_factory=list)
    replace: bool = False
    deposed: bool = False
    deposed_key: Optional[str] = None
    create_before_destroy: bool = False
    changed: List[str] = field(default_factory=list)
    planned: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    reason: str = ""
    order: int = 0

    @property
    def resource_type(self) -> str:
        if self.declaration is not None:
            return self.declaration.type
        return self.prior.type

    @property
    def resource_name(self) -> str:
        if self.declaration is not None:
            return self.declaration.name
        return self.prior.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'address': self.address,
            'action': self.action.value,
            'replace': self.replace,
            'deposed': self.deposed,
            'create_before_destroy': self.create_before_destroy,
            'changed': list(self.changed),
            'reason': self.reason,
            'predecessors': list(self.predecessors),
            'before': dict(self.prior.attributes) if self.prior else None,
            'after': display_value(self.planned) if self.action != ChangeAction.DELETE else None,
        }


@dataclass
class ChangeSet:
    """Ordered change-set: every entry comes after all of its predecessors."""

    state_id: str
    entries: List[ChangeSetEntry] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    # Recorded dependency lists to rewrite for resources with no other change
    dependency_updates: Dict[str, List[str]] = field(default_factory=dict)
    destroy: bool = False
    targets: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __iter__(self) -> Iterator[ChangeSetEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, key: str) -> Optional[ChangeSetEntry]:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def has_changes(self) -> bool:
        return len(self.entries) > 0

    def summary(self) -> Dict[str, int]:
        """Count of changes by kind; a replacement counts once as ``replace``."""
        summary = {'create': 0, 'update': 0, 'replace': 0, 'delete': 0, 'unchanged': len(self.unchanged)}
        for entry in self.entries:
            if entry.replace:
                if entry.action == ChangeAction.CREATE:
                    summary['replace'] += 1
            elif entry.action == ChangeAction.CREATE:
                summary['create'] += 1
            elif entry.action == ChangeAction.UPDATE:
                summary['update'] += 1
            elif entry.action == ChangeAction.DELETE:
                summary['delete'] += 1
        return summary

    def graph(self) -> DependencyGraph:
        graph = DependencyGraph()
        for position, entry in enumerate(self.entries):
            graph.add_node(entry.key, entry, order=position)
        for entry in self.entries:
            for predecessor in entry.predecessors:
                graph.add_edge(entry.key, predecessor)
        return graph

    def waves(self) -> List[List[str]]:
        """Entry keys grouped into levels that could run in parallel."""
        return self.graph().get_waves()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state_id': self.state_id,
            'destroy': self.destroy,
            'targets': list(self.targets),
            'created_at': self.created_at.isoformat(),
            'summary': self.summary(),
            'entries': [entry.to_dict() for entry in self.entries],
            'unchanged': list(self.unchanged),
        }


@dataclass
class _Decision:
    action: ChangeAction
    planned: Dict[str, Any]
    changed: List[str] = field(default_factory=list)
    replace: bool = False
    reason: str = ""


class Planner:
    """Produces ordered change-sets.

    Ordering rules, for A depending on B:
      - B's create/update precedes A's create/update
      - A's delete precedes B's delete
      - a replacement without create_before_destroy deletes first; with it,
        the new object and every dependent's create/update come before the
        old object is deleted
    """

    def __init__(self):
        """Initialize planner."""
        self.logger = get_logger(__name__)

    def plan(
        self,
        graph: Optional[ResourceGraph],
        snapshot: StateSnapshot,
        targets: Optional[List[str]] = None,
        destroy: bool = False
    ) -> ChangeSet:
        """Plan the changes that make the snapshot match the declarations.

        Args:
            graph: Declared resources; may be None in destroy mode
            snapshot: Last-known state
            targets: Limit the plan to these addresses plus their transitive
                dependencies (dependents when destroying)
            destroy: Plan deleting every resource in the snapshot

        Returns:
            ChangeSet in execution order

        Raises:
            PlanError: On unknown targets or when a protected resource would
                be destroyed
            CycleError: If the ordering constraints form a cycle
        """
        if graph is None:
            if not destroy:
                raise PlanError("A resource graph is required unless destroying")
            graph = ResourceGraph(DependencyGraph(), {}, {}, {})

        state_graph = self._state_graph(graph, snapshot)
        scope = self._scope(graph, state_graph, snapshot, targets, destroy)

        def in_scope(address: str) -> bool:
            return scope is None or address in scope

        change_set = ChangeSet(
            state_id=snapshot.state_id,
            variables=dict(graph.variables),
            destroy=destroy,
            targets=list(targets or []),
        )
        entries: List[ChangeSetEntry] = []

        if destroy:
            for address, prior in snapshot.resources.items():
                if not in_scope(address):
                    continue
                declaration = graph.get(address)
                if declaration is not None and declaration.lifecycle.prevent_destroy:
                    raise self._protected(address, "destroy")
                entries.append(ChangeSetEntry(
                    key=f"delete:{address}",
                    address=address,
                    action=ChangeAction.DELETE,
                    declaration=declaration,
                    prior=prior,
                    order=state_graph.get_node(address).order,
                    reason="destroying",
                ))
        else:
            decisions = self._diff(graph, snapshot)
            replaced = {a for a, d in decisions.items() if d.replace and in_scope(a)}
            cbd = self._create_before_destroy(graph, replaced)

            for address in graph.addresses():
                decision = decisions[address]
                if not in_scope(address):
                    continue
                declaration = graph.get(address)
                prior = snapshot.get_resource(address)
                common = dict(
                    address=address,
                    declaration=declaration,
                    prior=prior,
                    changed=decision.changed,
                    planned=decision.planned,
                    dependencies=graph.dependencies(address),
                    reason=decision.reason,
                    order=graph.order_of(address),
                )

                if decision.action == ChangeAction.NO_OP:
                    change_set.unchanged.append(address)
                    recorded = prior.dependencies
                    if set(recorded) != set(common['dependencies']):
                        change_set.dependency_updates[address] = common['dependencies']
                    continue

                if decision.replace:
                    if declaration.lifecycle.prevent_destroy:
                        raise self._protected(address, "replace")
                    create_first = address in cbd
                    delete = ChangeSetEntry(
                        key=f"delete:{address}", action=ChangeAction.DELETE,
                        replace=True, create_before_destroy=create_first, **common
                    )
                    create = ChangeSetEntry(
                        key=f"create:{address}", action=ChangeAction.CREATE,
                        replace=True, create_before_destroy=create_first, **common
                    )
                    entries.extend([create, delete] if create_first else [delete, create])
                else:
                    entries.append(ChangeSetEntry(
                        key=f"{decision.action.value}:{address}", action=decision.action, **common
                    ))

            for address, prior in snapshot.resources.items():
                if address not in graph and in_scope(address):
                    entries.append(ChangeSetEntry(
                        key=f"delete:{address}",
                        address=address,
                        action=ChangeAction.DELETE,
                        prior=prior,
                        order=state_graph.get_node(address).order,
                        reason="no longer declared",
                    ))

        base_order = len(graph) + len(snapshot.resources)
        for position, deposed in enumerate(snapshot.deposed):
            if not in_scope(deposed.address):
                continue
            if deposed.address in graph or deposed.address in state_graph:
                order = self._order(graph, state_graph, deposed.address)
            else:
                order = base_order + position
            entries.append(ChangeSetEntry(
                key=f"delete:{deposed.address}#{deposed.key}",
                address=deposed.address,
                action=ChangeAction.DELETE,
                prior=deposed.resource,
                deposed=True,
                deposed_key=deposed.key,
                order=order,
                reason="deposed object left by an earlier replacement",
            ))

        if destroy:
            change_set.unchanged = [a for a in snapshot.resources if not in_scope(a)]

        change_set.entries = self._order_entries(graph, entries)

        summary = change_set.summary()
        self.logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['delete']} to delete"
        )
        return change_set

    def _state_graph(self, graph: ResourceGraph, snapshot: StateSnapshot) -> DependencyGraph:
        """Dependencies as recorded in the snapshot."""
        state_graph = DependencyGraph()
        for position, (address, resource) in enumerate(snapshot.resources.items()):
            order = graph.order_of(address) if address in graph else len(graph) + position
            state_graph.add_node(address, resource, order=order)
        for address, resource in snapshot.resources.items():
            for dependency in resource.dependencies:
                if dependency in state_graph and dependency != address:
                    state_graph.add_edge(address, dependency)
        return state_graph

    @staticmethod
    def _order(graph: ResourceGraph, state_graph: DependencyGraph, address: str) -> int:
        if address in graph:
            return graph.order_of(address)
        if address in state_graph:
            return state_graph.get_node(address).order
        return len(graph) + len(state_graph)

    def _scope(
        self,
        graph: ResourceGraph,
        state_graph: DependencyGraph,
        snapshot: StateSnapshot,
        targets: Optional[List[str]],
        destroy: bool
    ) -> Optional[Set[str]]:
        if not targets:
            return None

        deposed_addresses = {d.address for d in snapshot.deposed}
        scope: Set[str] = set()
        for target in targets:
            if target not in graph and target not in state_graph and target not in deposed_addresses:
                raise PlanError(
                    f"Target '{target}' matches no declared or recorded resource",
                    context=ErrorContext(address=target)
                )
            scope.add(target)
            if destroy:
                scope |= state_graph.get_all_dependents(target)
                scope |= graph.graph.get_all_dependents(target)
            else:
                scope |= graph.graph.get_all_dependencies(target)
        return scope

    def _diff(self, graph: ResourceGraph, snapshot: StateSnapshot) -> Dict[str, _Decision]:
        """Decide create/update/replace/no-op for every declared resource."""
        decisions: Dict[str, _Decision] = {}

        def resolve(ref: Reference) -> Any:
            if ref.is_variable:
                return graph.variables[ref.variable]

            target = graph.get(ref.address)
            if ref.attribute in target.attributes:
                return decisions[ref.address].planned[ref.attribute]

            decision = decisions[ref.address]
            if decision.action == ChangeAction.CREATE or decision.replace:
                return UNKNOWN
            # In-place updates keep the id; other computed values may change
            if decision.action == ChangeAction.UPDATE and ref.attribute != "id":
                return UNKNOWN

            prior = snapshot.get_resource(ref.address)
            if not prior.has_value(ref.attribute):
                raise UnresolvedReferenceError(
                    f"'{ref}' has no recorded value in the state snapshot",
                    reference=str(ref)
                )
            return prior.get_value(ref.attribute)

        for address in graph.topological_order():
            declaration = graph.get(address)
            schema = graph.schema_for(address)
            prior = snapshot.get_resource(address)

            try:
                planned = evaluate_value(dict(declaration.attributes), resolve)
            except (ExpressionError, UnresolvedReferenceError) as e:
                e.context.address = address
                raise

            if prior is None:
                decisions[address] = _Decision(
                    ChangeAction.CREATE, planned, changed=list(planned), reason="not in state"
                )
                continue

            ignored = set(declaration.lifecycle.ignore_changes)
            for name in ignored:
                if name in prior.attributes:
                    planned[name] = prior.attributes[name]

            changed = []
            for name in list(planned) + [k for k in prior.attributes if k not in planned]:
                if name in ignored:
                    continue
                value = planned.get(name, _MISSING)
                if contains_unknown(value) or not values_equal(value, prior.attributes.get(name, _MISSING)):
                    changed.append(name)

            if not changed:
                decisions[address] = _Decision(ChangeAction.NO_OP, planned, reason="up to date")
                continue

            forces = [name for name in changed if name in schema.immutable]
            if prior.type != declaration.type:
                forces.append("type")
            if forces:
                decisions[address] = _Decision(
                    ChangeAction.UPDATE, planned, changed=changed, replace=True,
                    reason=f"{', '.join(forces)} cannot be changed in place"
                )
            else:
                decisions[address] = _Decision(
                    ChangeAction.UPDATE, planned, changed=changed,
                    reason=f"{', '.join(changed)} changed"
                )

        return decisions

    @staticmethod
    def _create_before_destroy(graph: ResourceGraph, replaced: Set[str]) -> Set[str]:
        """Replaced resources that create first.

        A resource replaced with create_before_destroy forces the same on the
        replaced resources it depends on; otherwise the orderings conflict.
        """
        cbd = {a for a in replaced if graph.get(a).lifecycle.create_before_destroy}
        for address in reversed(graph.topological_order()):
            if address in cbd:
                cbd.update(d for d in graph.dependencies(address) if d in replaced)
        return cbd

    def _order_entries(self, graph: ResourceGraph, entries: List[ChangeSetEntry]) -> List[ChangeSetEntry]:
        ordering = DependencyGraph()
        for entry in entries:
            ordering.add_node(entry.key, entry, order=entry.order)

        apply_key: Dict[str, str] = {}
        current_delete: Dict[str, ChangeSetEntry] = {}
        recorded_dependents: Dict[str, Set[str]] = defaultdict(set)
        for entry in entries:
            if entry.action in (ChangeAction.CREATE, ChangeAction.UPDATE):
                apply_key[entry.address] = entry.key
            elif not entry.deposed:
                current_delete[entry.address] = entry
            if entry.prior is not None and not entry.deposed:
                for dependency in entry.prior.dependencies:
                    recorded_dependents[dependency].add(entry.address)

        def must_precede(first: str, then: str) -> None:
            if first != then:
                ordering.add_edge(then, first)

        # Creates and updates follow their dependencies
        for address, key in apply_key.items():
            for dependency in graph.dependencies(address):
                if dependency in apply_key:
                    must_precede(apply_key[dependency], key)

        for entry in entries:
            if entry.action != ChangeAction.DELETE:
                continue

            # Dependents are deleted before what they depended on
            for dependency in entry.prior.dependencies:
                if dependency in current_delete:
                    must_precede(entry.key, current_delete[dependency].key)

            address = entry.address
            if entry.replace and not entry.create_before_destroy:
                must_precede(entry.key, apply_key[address])
                continue

            if entry.replace:
                must_precede(apply_key[address], entry.key)

            # The old object goes only after everything that used it moved on
            dependents = recorded_dependents[address]
            if address in graph:
                dependents = dependents | set(graph.dependents(address))
            for dependent in dependents:
                if dependent in apply_key and dependent != address:
                    must_precede(apply_key[dependent], entry.key)

        ordering.validate()
        ordered = []
        position = {}
        for key in ordering.topological_sort():
            position[key] = len(ordered)
            ordered.append(ordering.get_payload(key))
        for entry in ordered:
            entry.predecessors = sorted(ordering.get_dependencies(entry.key), key=position.get)
        return ordered

    @staticmethod
    def _protected(address: str, verb: str) -> PlanError:
        return PlanError(
            f"Plan would {verb} '{address}', which has lifecycle.prevent_destroy set",
            context=ErrorContext(address=address, operation=verb),
            suggestions=[
                "Remove prevent_destroy from the resource's lifecycle to allow this",
                "Or revert the change that forces the replacement",
            ]
        )
