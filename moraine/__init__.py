"""
Moraine: multi-region stack deployment orchestrator.

Moraine sequences a small, fixed set of cloud stacks that depend on each
other's outputs, across more than one region.

Core concepts:
- StackDescriptor: where a stack goes, what it needs and what it produces
- DeploymentPlan: the descriptors plus their dependency graph
- DeploymentOrchestrator: bootstrap, resolve artifacts, deploy in order
- TeardownCoordinator: drain storage, destroy in reverse order

Example:
    import os
    from moraine import DeploymentConfig, DeploymentPlan, DeploymentOrchestrator, standard_plan
    from moraine.providers import AWSProvider

    config = DeploymentConfig.from_env(os.environ)
    plan = DeploymentPlan(standard_plan(), config)
    report = DeploymentOrchestrator.from_provider(plan, AWSProvider(config)).run()
"""

from moraine.artifacts import ArtifactReference, ArtifactResolver
from moraine.config import DeploymentConfig, RetryPolicy
from moraine.core import (
    DeployLedger,
    DeploymentPlan,
    Stack,
    StackDescriptor,
    StackStatus,
    load_plan_file,
    standard_plan,
)
from moraine.errors import (
    ArtifactNotFound,
    BootstrapFailed,
    BuildFailed,
    ConfigurationError,
    DependencyUnresolved,
    MoraineError,
    NoDeployableTag,
    OperationTimedOut,
    PlatformOperationFailed,
    RegistryResolutionFailed,
    ResourceBlockedDeletion,
)
from moraine.operations import (
    DeploymentOrchestrator,
    DeploymentReport,
    PlanStatus,
    RegionBootstrapper,
    StackOperator,
    TeardownCoordinator,
    TeardownReport,
)

__version__ = "0.1.0"
__all__ = [
    "ArtifactReference",
    "ArtifactResolver",
    "DeploymentConfig",
    "RetryPolicy",
    "DeployLedger",
    "DeploymentPlan",
    "Stack",
    "StackDescriptor",
    "StackStatus",
    "load_plan_file",
    "standard_plan",
    # Orchestration
    "DeploymentOrchestrator",
    "DeploymentReport",
    "PlanStatus",
    "RegionBootstrapper",
    "StackOperator",
    "TeardownCoordinator",
    "TeardownReport",
    # Errors
    "MoraineError",
    "ConfigurationError",
    "DependencyUnresolved",
    "PlatformOperationFailed",
    "OperationTimedOut",
    "ResourceBlockedDeletion",
    "RegistryResolutionFailed",
    "ArtifactNotFound",
    "NoDeployableTag",
    "BootstrapFailed",
    "BuildFailed",
]
