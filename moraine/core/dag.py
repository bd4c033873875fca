"""
Dependency graph over stacks.
"""

import heapq
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from moraine.errors import ConfigurationError


@dataclass
class DAGNode:
    """A stack in the dependency graph."""

    name: str
    index: int
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class DAG:
    """
    Directed Acyclic Graph of stack dependencies.

    An edge ``producer -> consumer`` means the consumer needs at least one
    output of the producer. Nodes remember the order they were declared in,
    which is used to break ties when ordering.

    Provides:
    1. Dependency resolution
    2. Topological sorting (stable with respect to declaration order)
    3. Cycle detection
    4. Transitive dependent lookup
    """

    def __init__(self):
        self.nodes: dict[str, DAGNode] = {}
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)

    def add_node(self, name: str, metadata: dict[str, Any] | None = None) -> None:
        """Add a node to the DAG. Re-adding a node is a no-op."""
        if name not in self.nodes:
            self.nodes[name] = DAGNode(name=name, index=len(self.nodes), metadata=metadata or {})

    def add_edge(self, from_node: str, to_node: str) -> None:
        """
        Add a directed edge from one node to another.

        Args:
            from_node: The node that 'to_node' depends on
            to_node: The dependent node
        """
        missing = [name for name in (from_node, to_node) if name not in self.nodes]
        if missing:
            raise ConfigurationError(f"Unknown stack(s) in dependency edge: {', '.join(missing)}")

        # Several edges between the same pair collapse to one dependency
        if to_node in self._adjacency_list[from_node]:
            return

        self._adjacency_list[from_node].append(to_node)
        self.nodes[to_node].dependencies.append(from_node)
        self.nodes[from_node].dependents.append(to_node)

    def get_dependencies(self, node_name: str) -> list[str]:
        """Get all nodes that this node depends on."""
        return self.nodes[node_name].dependencies if node_name in self.nodes else []

    def get_dependents(self, node_name: str) -> list[str]:
        """Get all nodes that depend on this node."""
        return self.nodes[node_name].dependents if node_name in self.nodes else []

    def descendants(self, node_name: str) -> set[str]:
        """Get every node that depends on this node, directly or transitively."""
        seen: set[str] = set()
        stack = list(self.get_dependents(node_name))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.get_dependents(current))
        return seen

    def ancestors(self, node_name: str) -> set[str]:
        """Get every node this node depends on, directly or transitively."""
        seen: set[str] = set()
        stack = list(self.get_dependencies(node_name))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.get_dependencies(current))
        return seen

    def topological_sort(self) -> list[str]:
        """
        Return a topological ordering of the DAG.

        Among nodes whose dependencies are all satisfied, the one declared
        first comes first.

        Raises:
            ConfigurationError: If the graph contains cycles
        """
        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}

        ready = [(node.index, name) for name, node in self.nodes.items() if in_degree[name] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)

            for dependent in self._adjacency_list[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.nodes[dependent].index, dependent))

        if len(result) != len(self.nodes):
            cycle = self.detect_cycles() or sorted(set(self.nodes) - set(result))
            raise ConfigurationError(
                f"Dependency graph contains a cycle: {' -> '.join(cycle)}", step="plan"
            )

        return result

    def detect_cycles(self) -> list[str] | None:
        """
        Detect if there are any cycles in the DAG.

        Returns:
            A cycle path if one exists, None otherwise
        """
        visited = set()
        rec_stack = set()
        path = []

        def dfs(node: str) -> list[str] | None:
            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in self._adjacency_list[node]:
                if neighbor not in visited:
                    cycle = dfs(neighbor)
                    if cycle:
                        return cycle
                elif neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]

            path.pop()
            rec_stack.remove(node)
            return None

        for node in self.nodes:
            if node not in visited:
                cycle = dfs(node)
                if cycle:
                    return cycle

        return None

    def get_execution_levels(self) -> list[list[str]]:
        """
        Group nodes into levels with no dependencies between members.

        Stacks in one level could be deployed side by side; the orchestrator
        uses this only for reporting.
        """
        levels: list[list[str]] = []
        level_of: dict[str, int] = {}

        for node in self.topological_sort():
            dependencies = self.get_dependencies(node)
            level_idx = max((level_of[dep] + 1 for dep in dependencies), default=0)
            while len(levels) <= level_idx:
                levels.append([])
            levels[level_idx].append(node)
            level_of[node] = level_idx

        return levels

    def __repr__(self) -> str:
        return f"DAG(nodes={len(self.nodes)}, edges={sum(len(deps) for deps in self._adjacency_list.values())})"
