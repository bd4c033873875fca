"""
Core deployment model: stacks, dependency graph, plans and the ledger.
"""

from moraine.core.catalog import standard_plan
from moraine.core.dag import DAG, DAGNode
from moraine.core.ledger import DeployLedger
from moraine.core.loader import load_plan_file, parse_plan
from moraine.core.plan import DeploymentPlan
from moraine.core.stack import (
    BuildStep,
    DependencyEdge,
    Stack,
    StackDescriptor,
    StackStatus,
)

__all__ = [
    "DAG",
    "DAGNode",
    "BuildStep",
    "DependencyEdge",
    "DeployLedger",
    "DeploymentPlan",
    "Stack",
    "StackDescriptor",
    "StackStatus",
    "load_plan_file",
    "parse_plan",
    "standard_plan",
]
