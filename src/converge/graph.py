"""Resource dependency graph: construction, cycle detection and ordering.

This module implements dependency management for a desired state:
1. Graph construction from resolved reference fields
2. Cycle detection (depth-first, three-colour marking)
3. Deterministic topological ordering, ties broken by kind priority

Edges point from a resource to the resources it depends on. Forward
(create/update) work runs dependencies first; deletes run in reverse.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .models import KIND_PRIORITY, DesiredState, ResourceKind

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class _Mark(Enum):
    WHITE = 0
    GREY = 1
    BLACK = 2


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    resource_id: str
    kind: ResourceKind
    name: str
    depends_on: list[str] = field(default_factory=list)

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (KIND_PRIORITY[self.kind], self.name, self.resource_id)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(
        self,
        resource_id: str,
        kind: ResourceKind,
        name: str,
        depends_on: Iterable[str] | None = None,
    ) -> None:
        """Add or replace a node.

        Args:
            resource_id: Resource id.
            kind: Resource kind, used for tie-breaking.
            name: Resource name, used for tie-breaking.
            depends_on: Ids this resource depends on.
        """
        self.nodes[resource_id] = DependencyNode(
            resource_id=resource_id,
            kind=kind,
            name=name,
            depends_on=sorted(set(depends_on or [])),
        )

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies(self, resource_id: str) -> list[str]:
        """Direct dependencies of a node that are themselves in the graph."""
        return [dep for dep in self.nodes[resource_id].depends_on if dep in self.nodes]

    def dependents(self, resource_id: str) -> list[str]:
        """Nodes that depend directly on the given node."""
        return sorted(
            (node.resource_id for node in self.nodes.values() if resource_id in node.depends_on),
            key=lambda rid: self.nodes[rid].sort_key,
        )

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: Naming the resource ids on the cycle.
        """
        marks = dict.fromkeys(self.nodes, _Mark.WHITE)

        for root in sorted(self.nodes, key=lambda rid: self.nodes[rid].sort_key):
            if marks[root] is not _Mark.WHITE:
                continue
            # Iterative DFS; the stack holds (node, remaining dependencies)
            path = [root]
            stack = [(root, iter(self.dependencies(root)))]
            marks[root] = _Mark.GREY
            while stack:
                node_id, pending = stack[-1]
                dep = next(pending, None)
                if dep is None:
                    marks[node_id] = _Mark.BLACK
                    stack.pop()
                    path.pop()
                    continue
                if marks[dep] is _Mark.GREY:
                    raise CyclicDependencyError(path[path.index(dep) :] + [dep])
                if marks[dep] is _Mark.WHITE:
                    marks[dep] = _Mark.GREY
                    path.append(dep)
                    stack.append((dep, iter(self.dependencies(dep))))

    def topological_sort(self) -> list[str]:
        """Return resource ids in dependency order (dependencies first).

        Among nodes that are ready at the same time, order follows
        (kind priority, name), so foundational kinds always come first.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        reverse = self._reverse_edges()
        in_degree = {rid: len(self.dependencies(rid)) for rid in self.nodes}

        # Kahn's algorithm
        result: list[str] = []
        queue = [rid for rid, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort(key=lambda rid: self.nodes[rid].sort_key)
            current = queue.pop(0)
            result.append(current)

            for dependent in reverse.get(current, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def reverse_topological_sort(self) -> list[str]:
        """Return resource ids dependents first, the order deletes run in."""
        return list(reversed(self.topological_sort()))

    def _reverse_edges(self) -> dict[str, list[str]]:
        reverse: dict[str, list[str]] = {rid: [] for rid in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in reverse:
                    reverse[dep].append(node.resource_id)
        return reverse


def build_graph(desired: DesiredState) -> DependencyGraph:
    """Build and validate the dependency graph of a desired state.

    Args:
        desired: Validated desired state.

    Returns:
        Acyclic DependencyGraph over every desired resource.

    Raises:
        CyclicDependencyError: If references form a cycle.
    """
    graph = DependencyGraph()
    for resource in desired:
        graph.add_node(resource.id, resource.kind, resource.name, resource.depends_on)

    graph.validate()
    logger.debug(
        "Dependency graph built",
        extra={
            "node_count": len(graph),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
