"""Dependency graph for stack resources.

Builds a DAG from each resource's dependencies (depends_on plus ${ref}
targets) and computes traversal orderings for apply (dependencies first)
and destroy (dependents first).
"""

import heapq
import logging
from dataclasses import dataclass, field

from stack import Stack, StackResource

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        resource: The underlying StackResource definition
        dependencies: Nodes this resource depends on
        dependents: Nodes that depend on this resource
        depth: Longest dependency chain below this node (0 for roots)
        index: Declaration position, used to break ordering ties
    """
    resource: StackResource
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0
    index: int = 0

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def type(self) -> str:
        return self.resource.type

    @property
    def is_root(self) -> bool:
        return len(self.dependencies) == 0

    @property
    def is_leaf(self) -> bool:
        return len(self.dependents) == 0

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, type={self.type}, depth={self.depth})"


def order_by_dependencies(entries: dict[str, set[str]]) -> list[str]:
    """Topologically order names so dependencies come first.

    Kahn's algorithm with ties broken by insertion order of `entries`.
    Dependencies on names not present in `entries` are ignored.

    Raises:
        ValueError: If the dependencies contain a cycle
    """
    position = {name: i for i, name in enumerate(entries)}
    remaining = {name: {d for d in deps if d in position and d != name}
                 for name, deps in entries.items()}
    dependents: dict[str, list[str]] = {name: [] for name in entries}
    for name, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [(position[name], name) for name, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    ordered: list[str] = []

    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(name)
        for dependent in dependents[name]:
            remaining[dependent].discard(name)
            if not remaining[dependent]:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(ordered) != len(entries):
        stuck = sorted(n for n in entries if n not in ordered)
        raise ValueError(f"Dependency cycle among: {', '.join(stuck)}")
    return ordered


class ResourceGraph:
    """Dependency graph built from a Stack.

    Provides ordered traversal for lifecycle operations:
    - apply_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, stack: Stack):
        """Build the graph.

        Raises:
            ValueError: If the stack has no resources or contains a cycle
        """
        if not stack.resources:
            raise ValueError("ResourceGraph requires a stack with resources")

        self.stack = stack
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph(stack.resources)
        self._order = order_by_dependencies(
            {r.name: r.dependencies for r in stack.resources}
        )
        self._compute_depths()

    def _build_graph(self, resources: list[StackResource]) -> None:
        for i, resource in enumerate(resources):
            self._nodes[resource.name] = GraphNode(resource=resource, index=i)

        for resource in resources:
            node = self._nodes[resource.name]
            for dep_name in sorted(resource.dependencies, key=lambda n: self._nodes[n].index):
                dep = self._nodes[dep_name]
                node.dependencies.append(dep)
                dep.dependents.append(node)

    def _compute_depths(self) -> None:
        for name in self._order:
            node = self._nodes[name]
            if node.dependencies:
                node.depth = max(d.depth for d in node.dependencies) + 1

    @property
    def roots(self) -> list[GraphNode]:
        """Resources with no dependencies."""
        return [self._nodes[n] for n in self._order if self._nodes[n].is_root]

    @property
    def max_depth(self) -> int:
        return max((n.depth for n in self._nodes.values()), default=0)

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> GraphNode:
        """Get a node by resource name.

        Raises:
            KeyError: If name not found
        """
        return self._nodes[name]

    def apply_order(self) -> list[GraphNode]:
        """Return nodes with every dependency before its dependents."""
        return [self._nodes[n] for n in self._order]

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (reverse of apply_order)."""
        return list(reversed(self.apply_order()))

    def dependents_of(self, name: str) -> list[GraphNode]:
        """Return all transitive dependents of a resource, in apply order."""
        found: set[str] = set()
        pending = list(self._nodes[name].dependents)
        while pending:
            node = pending.pop()
            if node.name in found:
                continue
            found.add(node.name)
            pending.extend(node.dependents)
        return [self._nodes[n] for n in self._order if n in found]
