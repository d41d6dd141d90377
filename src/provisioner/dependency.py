"""Resource dependency graph construction and validation.

This module derives the dependency graph of a run from the inputs each node
registered at construction:
1. Edge A -> B exists iff B reads a DeferredValue whose lineage contains A
   (or B declares A in depends_on)
2. Cycle detection before any realization begins
3. Topological ordering, ties broken by declaration order for determinism

The graph is built once per run and is read-only during realization.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .config import ConfigurationError
from .resources import ResourceNode

logger = logging.getLogger(__name__)


class CyclicDependencyError(ConfigurationError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


@dataclass
class GraphNode:
    """A node in the dependency graph."""

    name: str
    index: int
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed graph of resource dependencies, keyed by logical name."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the graph in declaration order.

        Raises:
            ConfigurationError: If the name is already declared.
        """
        if name in self.nodes:
            raise ConfigurationError(f"Duplicate resource name '{name}'")
        self.nodes[name] = GraphNode(name=name, index=len(self.nodes), depends_on=depends_on or [])

    @classmethod
    def from_nodes(cls, resources: Sequence[ResourceNode]) -> DependencyGraph:
        """Build and validate the graph for a run.

        Edges come from input lineage, so a pending input with no lineage
        would never resolve during the run and is rejected up front.

        Raises:
            ConfigurationError: On duplicate names, dependencies outside the
                run, or pending inputs that no node produces.
            CyclicDependencyError: If the graph contains a cycle.
        """
        graph = cls()
        members = {id(resource) for resource in resources}

        for resource in resources:
            for value in resource.input_values:
                if not value.done() and not value.lineage:
                    raise ConfigurationError(
                        f"'{resource.logical_name}' has a pending input "
                        f"{value.label or '<unnamed>'} that no node in this run produces"
                    )
            depends_on: list[str] = []
            for dependency in resource.dependencies():
                if id(dependency) not in members:
                    raise ConfigurationError(
                        f"'{resource.logical_name}' depends on '{dependency.logical_name}' "
                        f"which is not part of this run"
                    )
                depends_on.append(dependency.logical_name)
            graph.add_node(resource.logical_name, depends_on)

        graph.validate()

        logger.debug(
            "Dependency graph built",
            extra={
                "node_count": len(graph.nodes),
                "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
            },
        )
        return graph

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            ConfigurationError: If a node depends on an undeclared name.
            CyclicDependencyError: Naming the nodes of the first cycle found.
        """
        for node in self.nodes.values():
            unknown = [dep for dep in node.depends_on if dep not in self.nodes]
            if unknown:
                raise ConfigurationError(f"'{node.name}' depends on undeclared {unknown}")

        cycle = self._find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

    def _find_cycle(self) -> list[str] | None:
        # Iterative DFS with colouring; the path stack names the cycle
        white, grey, black = 0, 1, 2
        colour = dict.fromkeys(self.nodes, white)

        for start in self.nodes:
            if colour[start] != white:
                continue
            path: list[str] = [start]
            iterators = [iter(self.nodes[start].depends_on)]
            colour[start] = grey

            while iterators:
                dep = next(iterators[-1], None)
                if dep is None:
                    colour[path.pop()] = black
                    iterators.pop()
                    continue
                if colour[dep] == grey:
                    return [*path[path.index(dep):], dep]
                if colour[dep] == white:
                    colour[dep] = grey
                    path.append(dep)
                    iterators.append(iter(self.nodes[dep].depends_on))

        return None

    def topological_sort(self) -> list[str]:
        """Return names in realization order (dependencies first).

        Among nodes that are ready at the same time, declaration order wins.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents = self._dependents()
        in_degree: dict[str, int] = {name: len(set(n.depends_on)) for name, n in self.nodes.items()}

        # Kahn's algorithm with a heap on declaration index
        queue = [(n.index, name) for name, n in self.nodes.items() if in_degree[name] == 0]
        heapq.heapify(queue)
        result: list[str] = []

        while queue:
            _, current = heapq.heappop(queue)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, (self.nodes[dependent].index, dependent))

        return result

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in set(node.depends_on):
                dependents[dep].append(node.name)
        return dependents
