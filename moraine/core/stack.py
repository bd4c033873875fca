"""
Stack: an independently deployable unit of cloud resources.

A StackDescriptor is the static metadata for a stack (where it goes, what
it needs, what it produces). A Stack is the runtime view the orchestrator
works on: resolved region, parameters, outputs and status.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from moraine.errors import ConfigurationError


class StackStatus(str, Enum):
    """Lifecycle status of a stack."""

    NOT_DEPLOYED = "NotDeployed"
    DEPLOYING = "Deploying"
    DEPLOYED = "Deployed"
    FAILED = "Failed"
    DESTROYING = "Destroying"
    DELETE_FAILED = "DeleteFailed"
    DESTROYED = "Destroyed"

    @property
    def is_terminal(self) -> bool:
        """No further automatic transition happens from a terminal status."""
        return self not in (StackStatus.DEPLOYING, StackStatus.DESTROYING)


@dataclass(frozen=True)
class DependencyEdge:
    """``(producer, output_key) -> (consumer, parameter_key)``"""

    producer: str
    output_key: str
    consumer: str
    parameter_key: str

    def __str__(self) -> str:
        return f"{self.producer}.{self.output_key} -> {self.consumer}.{self.parameter_key}"


class BuildStep(BaseModel):
    """
    External build run just before a stack deploys.

    Example:
        BuildStep(
            command=["npm", "run", "build"],
            cwd="../frontend",
            env={"VITE_API_URL": "ApiEndpoint"},  # env var -> stack parameter
            artifact_dir="dist",
        )
    """

    model_config = ConfigDict(frozen=True)

    command: list[str] = Field(..., min_length=1)
    cwd: str = "."
    env: dict[str, str] = Field(default_factory=dict)
    artifact_dir: str | None = None


def _render(value: str, values: Mapping[str, str], stack: str | None) -> str:
    try:
        return value.format_map(values)
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown placeholder {e} in '{value}'", stack=stack, step="plan"
        ) from e


class StackDescriptor(BaseModel):
    """
    Static metadata for one stack.

    Attributes:
        name: Unique stack name
        region: Pinned region, or None for the configured default region
        template: Path to the stack's resource declaration
        outputs: Output keys the stack declares
        parameters: Static parameter values
        inputs: Parameters fed from other stacks, as ``producer.OutputKey``
        artifacts: Parameters fed from a container registry (param -> repository)
        secrets: Parameters fed from secret values (param -> secret name)
        build: Build step run with resolved parameters before deploy
        drain: Empty owned storage before destroying the stack
        retain_on_force: Resources skipped by a forced delete
    """

    model_config = ConfigDict(frozen=True)

    name: str
    region: str | None = None
    template: str | None = None
    description: str | None = None
    outputs: list[str] = Field(default_factory=list)
    parameters: dict[str, str] = Field(default_factory=dict)
    inputs: dict[str, str] = Field(default_factory=dict)
    artifacts: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)
    build: BuildStep | None = None
    drain: bool = False
    retain_on_force: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("stack name must not be blank")
        return value

    @field_validator("inputs")
    @classmethod
    def _inputs_are_bindings(cls, value: dict[str, str]) -> dict[str, str]:
        for param, binding in value.items():
            producer, _, output_key = binding.partition(".")
            if not producer or not output_key:
                raise ValueError(
                    f"input '{param}' must be bound as 'producer.OutputKey', got '{binding}'"
                )
        return value

    def edges(self) -> list[DependencyEdge]:
        """Dependency edges into this stack."""
        edges = []
        for param, binding in self.inputs.items():
            producer, _, output_key = binding.partition(".")
            edges.append(DependencyEdge(producer, output_key, self.name, param))
        return edges

    @property
    def producers(self) -> list[str]:
        """Stacks this stack depends on, in binding order."""
        seen: list[str] = []
        for edge in self.edges():
            if edge.producer not in seen:
                seen.append(edge.producer)
        return seen

    def required_parameters(self) -> set[str]:
        """Every parameter that must be resolved before deploy."""
        return (
            set(self.parameters)
            | set(self.inputs)
            | set(self.artifacts)
            | set(self.secrets)
        )

    def render(self, values: Mapping[str, str]) -> "StackDescriptor":
        """
        Substitute ``{placeholder}`` values into names and static values.

        Raises:
            ConfigurationError: If a placeholder has no value
        """
        name = _render(self.name, values, self.name)
        inputs = {}
        for param, binding in self.inputs.items():
            producer, _, output_key = binding.partition(".")
            inputs[param] = f"{_render(producer, values, name)}.{output_key}"

        build = self.build
        if build is not None:
            build = build.model_copy(
                update={
                    "cwd": _render(build.cwd, values, name),
                    "artifact_dir": _render(build.artifact_dir, values, name) if build.artifact_dir else None,
                }
            )

        return self.model_copy(
            update={
                "name": name,
                "region": _render(self.region, values, name) if self.region else None,
                "template": _render(self.template, values, name) if self.template else None,
                "parameters": {k: _render(v, values, name) for k, v in self.parameters.items()},
                "inputs": inputs,
                "artifacts": {k: _render(v, values, name) for k, v in self.artifacts.items()},
                "build": build,
            }
        )


@dataclass
class Stack:
    """
    Runtime view of a stack within a deployment plan.

    Outputs are replaced wholesale on each successful deploy and are
    read-only in between.
    """

    descriptor: StackDescriptor
    region: str
    parameters: dict[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    status: StackStatus = StackStatus.NOT_DEPLOYED

    @property
    def name(self) -> str:
        return self.descriptor.name

    def record_outputs(self, outputs: Mapping[str, Any]) -> None:
        """Replace outputs after a successful deploy."""
        self.outputs = MappingProxyType(dict(outputs))

    def __repr__(self) -> str:
        return f"Stack(name={self.name}, region={self.region}, status={self.status.value})"
