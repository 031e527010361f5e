"""Dependency graph used for resource and change-set ordering."""

import heapq
from typing import Any, Dict, Iterator, List, Optional, Set
from dataclasses import dataclass
from collections import deque

from landform.utils.errors import CycleError, DependencyError


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    index: int
    key: str
    payload: Any = None
    order: int = 0  # tie-break among independent nodes


class DependencyGraph:
    """Directed acyclic graph (DAG) keyed by string, stored by integer index.

    An edge ``A -> B`` means A depends on B: B must be handled before A when
    creating and after A when destroying. Nodes and edges live in index-based
    lists and sets rather than object links.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: List[DependencyNode] = []
        self._index: Dict[str, int] = {}
        self._dependencies: List[Set[int]] = []
        self._dependents: List[Set[int]] = []

    def add_node(self, key: str, payload: Any = None, order: Optional[int] = None) -> int:
        """Add a node, or replace the payload of an existing one.

        Args:
            key: Unique node key (e.g. resource address)
            payload: Arbitrary object attached to the node
            order: Tie-break position; defaults to insertion order

        Returns:
            Index of the node
        """
        if key in self._index:
            node = self.nodes[self._index[key]]
            node.payload = payload
            if order is not None:
                node.order = order
            return node.index

        index = len(self.nodes)
        self.nodes.append(DependencyNode(
            index=index,
            key=key,
            payload=payload,
            order=index if order is None else order
        ))
        self._index[key] = index
        self._dependencies.append(set())
        self._dependents.append(set())
        return index

    def add_edge(self, dependent: str, dependency: str) -> None:
        """Record that ``dependent`` depends on ``dependency``.

        Raises:
            DependencyError: If either node does not exist
        """
        for key in (dependent, dependency):
            if key not in self._index:
                raise DependencyError(f"Cannot add edge: unknown node '{key}'")

        a = self._index[dependent]
        b = self._index[dependency]
        self._dependencies[a].add(b)
        self._dependents[b].add(a)

    def has_node(self, key: str) -> bool:
        return key in self._index

    __contains__ = has_node

    def get_node(self, key: str) -> Optional[DependencyNode]:
        index = self._index.get(key)
        return self.nodes[index] if index is not None else None

    def get_payload(self, key: str) -> Any:
        node = self.get_node(key)
        return node.payload if node else None

    def keys(self) -> List[str]:
        """Node keys in insertion order."""
        return [node.key for node in self.nodes]

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self.nodes)

    def size(self) -> int:
        return len(self.nodes)

    __len__ = size

    def is_empty(self) -> bool:
        return len(self.nodes) == 0

    def edges(self) -> List[tuple]:
        """All (dependent, dependency) key pairs."""
        return [
            (self.nodes[a].key, self.nodes[b].key)
            for a in range(len(self.nodes))
            for b in sorted(self._dependencies[a])
        ]

    def get_dependencies(self, key: str) -> Set[str]:
        """Direct dependencies of a node."""
        index = self._index.get(key)
        if index is None:
            return set()
        return {self.nodes[i].key for i in self._dependencies[index]}

    def get_dependents(self, key: str) -> Set[str]:
        """Direct dependents of a node."""
        index = self._index.get(key)
        if index is None:
            return set()
        return {self.nodes[i].key for i in self._dependents[index]}

    def get_all_dependencies(self, key: str) -> Set[str]:
        """All transitive dependencies of a node."""
        return self._reachable(key, self._dependencies)

    def get_all_dependents(self, key: str) -> Set[str]:
        """All transitive dependents of a node."""
        return self._reachable(key, self._dependents)

    def _reachable(self, key: str, adjacency: List[Set[int]]) -> Set[str]:
        start = self._index.get(key)
        if start is None:
            return set()

        visited = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in adjacency[current]:
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append(neighbor)

        visited.discard(start)
        return {self.nodes[i].key for i in visited}

    def get_roots(self) -> List[str]:
        """Nodes without dependencies, in tie-break order."""
        return [
            node.key for node in sorted(self.nodes, key=lambda n: (n.order, n.index))
            if not self._dependencies[node.index]
        ]

    def detect_cycle(self) -> Optional[List[str]]:
        """Find a dependency cycle.

        Iterative DFS along dependency edges with recursion-stack marking.

        Returns:
            Keys forming the cycle (first key repeated at the end), or None
        """
        # 0: unvisited, 1: on the current DFS path, 2: finished
        state = [0] * len(self.nodes)

        for root in sorted(range(len(self.nodes)), key=lambda i: (self.nodes[i].order, i)):
            if state[root]:
                continue

            path = [root]
            iterators = [iter(sorted(self._dependencies[root]))]
            state[root] = 1

            while path:
                neighbor = next(iterators[-1], None)
                if neighbor is None:
                    state[path.pop()] = 2
                    iterators.pop()
                    continue

                if state[neighbor] == 1:
                    start = path.index(neighbor)
                    cycle = [self.nodes[i].key for i in path[start:]]
                    return cycle + [self.nodes[neighbor].key]

                if state[neighbor] == 0:
                    state[neighbor] = 1
                    path.append(neighbor)
                    iterators.append(iter(sorted(self._dependencies[neighbor])))

        return None

    def validate(self) -> None:
        """Validate the graph.

        Raises:
            CycleError: If the graph contains a cycle
        """
        cycle = self.detect_cycle()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Order nodes so that every dependency precedes its dependents.

        Kahn's algorithm; among nodes that are ready at the same time the one
        with the lowest ``order`` goes first.

        Raises:
            CycleError: If graph contains cycles
        """
        return self._kahn(self._dependencies, self._dependents)

    def get_destruction_order(self) -> List[str]:
        """Order nodes so that every dependent precedes its dependencies.

        Raises:
            CycleError: If graph contains cycles
        """
        return self._kahn(self._dependents, self._dependencies)

    def _kahn(self, incoming: List[Set[int]], outgoing: List[Set[int]]) -> List[str]:
        in_degree = [len(edges) for edges in incoming]
        heap = [
            (self.nodes[i].order, i) for i in range(len(self.nodes)) if in_degree[i] == 0
        ]
        heapq.heapify(heap)
        result = []

        while heap:
            _, index = heapq.heappop(heap)
            result.append(self.nodes[index].key)

            for neighbor in outgoing[index]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    heapq.heappush(heap, (self.nodes[neighbor].order, neighbor))

        if len(result) != len(self.nodes):
            self.validate()
            raise CycleError([key for key in self.keys() if key not in set(result)])

        return result

    def get_waves(self) -> List[List[str]]:
        """Group nodes into levels that can be handled in parallel.

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()

        in_degree = [len(edges) for edges in self._dependencies]
        current_wave = [i for i in range(len(self.nodes)) if in_degree[i] == 0]
        waves = []

        while current_wave:
            current_wave.sort(key=lambda i: (self.nodes[i].order, i))
            waves.append([self.nodes[i].key for i in current_wave])
            next_wave = []

            for index in current_wave:
                for dependent in self._dependents[index]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)

            current_wave = next_wave

        return waves

    def subgraph(self, keys: Set[str]) -> "DependencyGraph":
        """Graph restricted to ``keys`` with the edges among them."""
        graph = DependencyGraph()
        for node in self.nodes:
            if node.key in keys:
                graph.add_node(node.key, node.payload, order=node.order)
        for dependent, dependency in self.edges():
            if dependent in keys and dependency in keys:
                graph.add_edge(dependent, dependency)
        return graph
