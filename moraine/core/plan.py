"""
DeploymentPlan: the fixed set of stacks to deploy and how they connect.
"""

from typing import Any, Iterable

from moraine.config import DeploymentConfig
from moraine.core.dag import DAG
from moraine.core.stack import DependencyEdge, Stack, StackDescriptor
from moraine.errors import ConfigurationError


class DeploymentPlan:
    """
    A validated set of stack descriptors with their dependency graph.

    Construction checks that stack names are unique, that every input
    refers to a declared stack and declared output, and that the graph is
    acyclic. Regions are resolved against the configuration here, so every
    stack in a plan has a concrete region.

    Example:
        plan = DeploymentPlan(descriptors, config)
        for stack in plan.deploy_order():
            print(stack.name, stack.region)
    """

    def __init__(self, descriptors: Iterable[StackDescriptor], config: DeploymentConfig):
        self.config = config
        self.stacks: dict[str, Stack] = {}
        self.dag = DAG()

        naming = config.naming()
        for raw in descriptors:
            descriptor = raw.render(naming)
            if descriptor.name in self.stacks:
                raise ConfigurationError(f"Duplicate stack name '{descriptor.name}'", step="plan")
            region = descriptor.region or config.default_region
            if not region:
                raise ConfigurationError(
                    "No region for stack and no default region configured",
                    stack=descriptor.name,
                    step="plan",
                )
            self.stacks[descriptor.name] = Stack(descriptor=descriptor, region=region)
            self.dag.add_node(descriptor.name, metadata={"region": region})

        for edge in self.edges():
            producer = self.stacks.get(edge.producer)
            if producer is None:
                raise ConfigurationError(
                    f"Input '{edge.parameter_key}' refers to unknown stack '{edge.producer}'",
                    stack=edge.consumer,
                    step="plan",
                )
            declared = producer.descriptor.outputs
            if declared and edge.output_key not in declared:
                raise ConfigurationError(
                    f"Input '{edge.parameter_key}' refers to undeclared output "
                    f"'{edge.producer}.{edge.output_key}'",
                    stack=edge.consumer,
                    step="plan",
                )
            self.dag.add_edge(edge.producer, edge.consumer)

        self._order = self.dag.topological_sort()

    def __len__(self) -> int:
        return len(self.stacks)

    def __contains__(self, name: str) -> bool:
        return name in self.stacks

    def get(self, name: str) -> Stack:
        """Get a stack by name."""
        try:
            return self.stacks[name]
        except KeyError:
            raise ConfigurationError(f"Unknown stack '{name}'", step="plan") from None

    def edges(self) -> list[DependencyEdge]:
        """All dependency edges, in declaration order."""
        return [edge for stack in self.stacks.values() for edge in stack.descriptor.edges()]

    def deploy_order(self) -> list[Stack]:
        """Producers before consumers; ties broken by declaration order."""
        return [self.stacks[name] for name in self._order]

    def teardown_order(self, recorded: list[str] | None = None) -> list[Stack]:
        """
        Consumers before producers.

        Args:
            recorded: A previously recorded successful deploy order. When it
                covers stacks of this plan, its exact reverse is used; plan
                stacks it does not mention are destroyed first, in reverse
                topological order.
        """
        if not recorded:
            return [self.stacks[name] for name in reversed(self._order)]

        known = [name for name in recorded if name in self.stacks]
        unrecorded = [name for name in reversed(self._order) if name not in known]
        return [self.stacks[name] for name in unrecorded + list(reversed(known))]

    def regions(self) -> list[str]:
        """Distinct regions touched by the plan, in deploy order of first use."""
        regions: list[str] = []
        for stack in self.deploy_order():
            if stack.region not in regions:
                regions.append(stack.region)
        return regions

    def dependents_of(self, name: str) -> set[str]:
        """Stacks that depend on ``name`` directly or transitively."""
        return self.dag.descendants(name)

    def producers_of(self, name: str) -> set[str]:
        """Stacks ``name`` depends on directly or transitively."""
        return self.dag.ancestors(name)

    def describe(self) -> dict[str, Any]:
        """Serializable summary used by ``moraine plan``."""
        return {
            "account": self.config.account_id,
            "regions": self.regions(),
            "order": self._order,
            "levels": self.dag.get_execution_levels(),
            "stacks": [
                {
                    "name": stack.name,
                    "region": stack.region,
                    "depends_on": self.dag.get_dependencies(stack.name),
                    "outputs": list(stack.descriptor.outputs),
                    "artifacts": dict(stack.descriptor.artifacts),
                }
                for stack in self.deploy_order()
            ],
            "edges": [str(edge) for edge in self.edges()],
        }
