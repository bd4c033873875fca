"""
DeploymentOrchestrator: deploy a whole plan in dependency order.

The run is a sequence of named steps, each returning a typed result:

1. validate     configuration and secrets, before any cloud call
2. bootstrap    every region in the plan (fatal on failure)
3. artifacts    resolve the newest immutable image per repository
4. deploy       each stack in topological order, feeding producer
                outputs into consumer parameters

A failed stack blocks its direct and transitive dependents; stacks that do
not depend on it are still attempted.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from moraine.artifacts.resolver import ArtifactReference, ArtifactResolver
from moraine.core.ledger import DeployLedger
from moraine.core.plan import DeploymentPlan
from moraine.core.stack import Stack, StackStatus
from moraine.errors import (
    BootstrapFailed,
    DependencyUnresolved,
    MoraineError,
    OperationTimedOut,
    RegistryResolutionFailed,
)
from moraine.operations.bootstrap import BootstrapRecord, RegionBootstrapper
from moraine.operations.build import BuildRunner
from moraine.operations.operator import StackOperator
from moraine.providers.base import Provider

logger = logging.getLogger(__name__)


class PlanStatus(str, Enum):
    """Aggregate status of a deployment run."""

    PENDING = "PlanPending"
    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"
    PARTIALLY_FAILED = "PartiallyFailed"


@dataclass
class StackResult:
    """Outcome of one stack in a run."""

    name: str
    region: str
    status: StackStatus
    step: str | None = None
    error: MoraineError | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    skipped_because: str | None = None
    unchanged: bool = False
    """Outputs match the ones recorded by the previous run."""

    @property
    def succeeded(self) -> bool:
        return self.status == StackStatus.DEPLOYED

    @property
    def skipped(self) -> bool:
        return self.skipped_because is not None


@dataclass
class DeploymentReport:
    """Outcome of a deployment run."""

    status: PlanStatus = PlanStatus.PENDING
    order: list[str] = field(default_factory=list)
    results: dict[str, StackResult] = field(default_factory=dict)
    bootstrap: list[BootstrapRecord] = field(default_factory=list)
    error: MoraineError | None = None
    """Plan-level failure (e.g. a region could not be bootstrapped)."""

    @property
    def succeeded(self) -> list[StackResult]:
        return [result for result in self.results.values() if result.succeeded]

    @property
    def failed(self) -> list[StackResult]:
        return [
            result for result in self.results.values()
            if not result.succeeded and not result.skipped
        ]

    @property
    def skipped(self) -> list[StackResult]:
        return [result for result in self.results.values() if result.skipped]

    def outputs(self, name: str) -> dict[str, Any]:
        result = self.results.get(name)
        return dict(result.outputs) if result else {}


class DeploymentOrchestrator:
    """
    Top-level deploy controller.

    Example:
        orchestrator = DeploymentOrchestrator.from_provider(plan, provider)
        report = orchestrator.run()
        if report.status is PlanStatus.PARTIALLY_FAILED:
            for result in report.failed:
                print(result.name, result.step, result.error)
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        operator: StackOperator,
        bootstrapper: RegionBootstrapper,
        resolver: ArtifactResolver,
        builder: BuildRunner | None = None,
        ledger: DeployLedger | None = None,
        verify: Callable[[], str] | None = None,
    ):
        self.plan = plan
        self.config = plan.config
        self.operator = operator
        self.bootstrapper = bootstrapper
        self.resolver = resolver
        self.builder = builder or BuildRunner()
        self.ledger = ledger
        self.verify = verify

    @classmethod
    def from_provider(cls, plan: DeploymentPlan, provider: Provider,
                      builder: BuildRunner | None = None,
                      ledger: DeployLedger | None = None) -> "DeploymentOrchestrator":
        """Wire an orchestrator to one provider's services."""
        return cls(
            plan,
            operator=StackOperator(provider.platform, plan.config),
            bootstrapper=RegionBootstrapper(provider.platform, provider.toolkit, plan.config),
            resolver=ArtifactResolver(provider.registry),
            builder=builder,
            ledger=ledger,
            verify=provider.verify_credentials,
        )

    # Steps

    def validate(self) -> None:
        """
        Check configuration, secrets and credentials.

        Raises:
            ConfigurationError: Naming the first missing input
        """
        self.config.require()
        for stack in self.plan.deploy_order():
            for secret_name in stack.descriptor.secrets.values():
                self.config.secret(secret_name, stack=stack.name)
        if self.verify is not None:
            account = self.verify()
            logger.info("Credentials verified for account %s", account)

    def bootstrap_regions(self) -> list[BootstrapRecord]:
        """Bootstrap every region of the plan. Raises BootstrapFailed."""
        return self.bootstrapper.ensure_all(self.config.account_id, self.plan.regions())

    def resolve_artifacts(self) -> tuple[dict[str, ArtifactReference], dict[str, RegistryResolutionFailed]]:
        """
        Resolve every repository the plan references, once each.

        Returns:
            (references by repository, failures by repository)
        """
        references: dict[str, ArtifactReference] = {}
        failures: dict[str, RegistryResolutionFailed] = {}
        for stack in self.plan.deploy_order():
            for repository in stack.descriptor.artifacts.values():
                if repository in references or repository in failures:
                    continue
                try:
                    references[repository] = self.resolver.resolve_latest(repository)
                except RegistryResolutionFailed as e:
                    logger.error("Could not resolve an image for %s: %s", repository, e.message)
                    failures[repository] = e
        return references, failures

    def artifact_parameters(self, stack: Stack, references: dict[str, ArtifactReference],
                            failures: dict[str, RegistryResolutionFailed]) -> dict[str, str]:
        """Image URIs for the stack's artifact parameters."""
        values = {}
        for param, repository in stack.descriptor.artifacts.items():
            if repository in failures:
                failure = failures[repository]
                raise type(failure)(failure.message, repository=repository, stack=stack.name)
            values[param] = references[repository].uri
        return values

    def input_parameters(self, stack: Stack) -> dict[str, Any]:
        """
        Values fed from producer outputs.

        Raises:
            DependencyUnresolved: If a producer is not deployed or did not
                report the output
        """
        values = {}
        for edge in stack.descriptor.edges():
            producer = self.plan.get(edge.producer)
            if producer.status != StackStatus.DEPLOYED:
                raise DependencyUnresolved(
                    f"Producer '{edge.producer}' is {producer.status.value}, "
                    f"so '{edge.output_key}' is not available for '{edge.parameter_key}'",
                    stack=stack.name,
                    producer=edge.producer,
                    output_key=edge.output_key,
                )
            if edge.output_key not in producer.outputs:
                raise DependencyUnresolved(
                    f"Producer '{edge.producer}' did not report output '{edge.output_key}'",
                    stack=stack.name,
                    producer=edge.producer,
                    output_key=edge.output_key,
                )
            values[edge.parameter_key] = producer.outputs[edge.output_key]
        return values

    def resolve_parameters(self, stack: Stack, references: dict[str, ArtifactReference],
                           failures: dict[str, RegistryResolutionFailed]) -> dict[str, Any]:
        """Full parameter set: static, secrets, artifacts, then producer outputs."""
        parameters: dict[str, Any] = dict(stack.descriptor.parameters)
        for param, secret_name in stack.descriptor.secrets.items():
            parameters[param] = self.config.secret(secret_name, stack=stack.name)
        parameters.update(self.artifact_parameters(stack, references, failures))
        parameters.update(self.input_parameters(stack))
        return parameters

    def deploy_stack(self, stack: Stack, references: dict[str, ArtifactReference],
                     failures: dict[str, RegistryResolutionFailed]) -> StackResult:
        """Resolve, build and deploy one stack. Errors are captured in the result."""
        try:
            parameters = self.resolve_parameters(stack, references, failures)
            self.builder.run(stack, parameters)
            outputs = self.operator.deploy(stack, parameters)
        except MoraineError as e:
            if not isinstance(e, OperationTimedOut) and stack.status != StackStatus.DELETE_FAILED:
                stack.status = StackStatus.FAILED
            logger.error("Stack %s failed in %s: %s", stack.name, stack.region, e)
            return StackResult(stack.name, stack.region, stack.status, step=e.step, error=e)

        unchanged = False
        if self.ledger is not None:
            unchanged = self.ledger.outputs.get(stack.name) == outputs
            self.ledger.record_deploy(stack.name, stack.region, outputs)
            self.ledger.save()
        return StackResult(stack.name, stack.region, stack.status, step="deploy",
                           outputs=outputs, unchanged=unchanged)

    # Run

    def run(self) -> DeploymentReport:
        """
        Deploy the plan.

        Returns:
            DeploymentReport; its status is COMPLETE only if every stack
            deployed

        Raises:
            ConfigurationError: Before any cloud call, if an input is missing
        """
        order = self.plan.deploy_order()
        report = DeploymentReport(order=[stack.name for stack in order])

        self.validate()
        report.status = PlanStatus.IN_PROGRESS
        logger.info("Deploying %d stack(s): %s", len(order), " -> ".join(report.order))

        try:
            report.bootstrap = self.bootstrap_regions()
        except BootstrapFailed as e:
            logger.error("Bootstrap failed, no stack will be deployed: %s", e)
            report.error = e
            report.status = PlanStatus.PARTIALLY_FAILED
            for stack in order:
                report.results[stack.name] = StackResult(
                    stack.name, stack.region, stack.status,
                    skipped_because=f"region {e.region} could not be bootstrapped",
                )
            return report

        references, failures = self.resolve_artifacts()

        blocked: dict[str, str] = {}
        for stack in order:
            if stack.name in blocked:
                reason = f"depends on failed stack '{blocked[stack.name]}'"
                logger.warning("Skipping %s: %s", stack.name, reason)
                report.results[stack.name] = StackResult(
                    stack.name, stack.region, stack.status, skipped_because=reason
                )
                continue

            result = self.deploy_stack(stack, references, failures)
            report.results[stack.name] = result
            if not result.succeeded:
                for dependent in self.plan.dependents_of(stack.name):
                    blocked.setdefault(dependent, stack.name)

        report.status = (
            PlanStatus.COMPLETE
            if all(result.succeeded for result in report.results.values())
            else PlanStatus.PARTIALLY_FAILED
        )
        logger.info("Deployment %s", report.status.value)
        return report
