"""
Operations: the steps that drive a plan against a provider.
"""

from moraine.operations.bootstrap import BootstrapRecord, RegionBootstrapper
from moraine.operations.build import BuildRunner
from moraine.operations.operator import StackOperator
from moraine.operations.orchestrator import (
    DeploymentOrchestrator,
    DeploymentReport,
    PlanStatus,
    StackResult,
)
from moraine.operations.polling import PollResult, poll
from moraine.operations.teardown import TeardownCoordinator, TeardownReport, TeardownResult

__all__ = [
    "BootstrapRecord",
    "BuildRunner",
    "DeploymentOrchestrator",
    "DeploymentReport",
    "PlanStatus",
    "PollResult",
    "RegionBootstrapper",
    "StackOperator",
    "StackResult",
    "TeardownCoordinator",
    "TeardownReport",
    "TeardownResult",
    "poll",
]
