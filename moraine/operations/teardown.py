"""
TeardownCoordinator: destroy a plan's stacks, consumers before producers.

Storage a stack owns is drained before the stack is destroyed. A stack
stuck in DeleteFailed is only touched when ``force`` is set; the forced
path is best effort:

1. retain the resources that blocked the last delete (plus any the stack
   lists in ``retain_on_force``) and resume the delete
2. clean the retained storage up out-of-band
3. as a last resort, delete the offending resources out-of-band and retry
"""

import logging
from dataclasses import dataclass, field

from moraine.core.ledger import DeployLedger
from moraine.core.plan import DeploymentPlan
from moraine.core.stack import Stack, StackStatus
from moraine.errors import MoraineError, PlatformOperationFailed, ResourceBlockedDeletion
from moraine.operations.operator import StackOperator
from moraine.providers.base import (
    STORAGE_POLICY_TYPES,
    ObjectStore,
    Provider,
    StackPlatform,
    StackResource,
)

logger = logging.getLogger(__name__)


@dataclass
class TeardownResult:
    """Outcome of destroying one stack."""

    name: str
    region: str
    status: StackStatus
    error: MoraineError | None = None
    drained: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    forced: bool = False
    skipped_because: str | None = None
    needs_manual_pass: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == StackStatus.DESTROYED


@dataclass
class TeardownReport:
    """Outcome of a teardown run."""

    order: list[str] = field(default_factory=list)
    results: dict[str, TeardownResult] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return all(result.succeeded for result in self.results.values())

    @property
    def remaining(self) -> list[TeardownResult]:
        return [result for result in self.results.values() if not result.succeeded]


class TeardownCoordinator:
    """
    Destroys stacks in reverse dependency order.

    When a deploy ledger is given, the exact reverse of its recorded deploy
    order is used and destroyed stacks are removed from it.

    Example:
        coordinator = TeardownCoordinator.from_provider(plan, provider, force=True)
        report = coordinator.run()
        for result in report.remaining:
            print(result.name, result.error)
    """

    def __init__(self, plan: DeploymentPlan, operator: StackOperator, platform: StackPlatform,
                 object_store: ObjectStore, ledger: DeployLedger | None = None,
                 force: bool = False):
        self.plan = plan
        self.operator = operator
        self.platform = platform
        self.object_store = object_store
        self.ledger = ledger
        self.force = force

    @classmethod
    def from_provider(cls, plan: DeploymentPlan, provider: Provider,
                      ledger: DeployLedger | None = None,
                      force: bool = False) -> "TeardownCoordinator":
        """Wire a coordinator to one provider's services."""
        return cls(
            plan,
            operator=StackOperator(provider.platform, plan.config),
            platform=provider.platform,
            object_store=provider.object_store,
            ledger=ledger,
            force=force,
        )

    def _buckets(self, stack: Stack, logical_ids: list[str] | None = None) -> list[StackResource]:
        return [
            resource
            for resource in self.platform.resources(stack.name, stack.region)
            if resource.is_storage and resource.physical_id
            and (logical_ids is None or resource.logical_id in logical_ids)
        ]

    def drain(self, stack: Stack, logical_ids: list[str] | None = None) -> list[str]:
        """
        Empty the stack's storage resources.

        Returns:
            Names of the buckets that held objects

        Raises:
            ResourceBlockedDeletion: If a bucket is still not empty afterwards
        """
        drained = []
        for resource in self._buckets(stack, logical_ids):
            bucket = resource.physical_id
            if not self.object_store.exists(bucket, stack.region):
                continue
            if self.object_store.is_empty(bucket, stack.region):
                continue
            removed = self.object_store.drain(bucket, stack.region)
            logger.info("Drained %d object(s) from %s before destroying %s", removed, bucket, stack.name)
            if not self.object_store.is_empty(bucket, stack.region):
                raise ResourceBlockedDeletion(
                    f"Bucket {bucket} still holds objects after draining",
                    stack=stack.name,
                    resources=[resource.logical_id],
                )
            drained.append(bucket)
        return drained

    def remove_out_of_band(self, stack: Stack, resources: list[StackResource],
                           buckets: list[StackResource]) -> None:
        """Delete storage and storage policies directly, outside the stack."""
        for resource in resources:
            if resource.resource_type in STORAGE_POLICY_TYPES:
                for bucket in buckets:
                    if self.object_store.exists(bucket.physical_id, stack.region):
                        logger.info("Removing bucket policy from %s", bucket.physical_id)
                        self.object_store.remove_policy(bucket.physical_id, stack.region)
            elif resource.is_storage and resource.physical_id:
                bucket = resource.physical_id
                if not self.object_store.exists(bucket, stack.region):
                    continue
                logger.info("Deleting bucket %s out-of-band", bucket)
                self.object_store.remove_policy(bucket, stack.region)
                self.object_store.drain(bucket, stack.region)
                self.object_store.delete(bucket, stack.region)
            else:
                logger.warning(
                    "Resource %s (%s) of %s cannot be removed automatically",
                    resource.logical_id, resource.resource_type, stack.name,
                )

    def force_destroy(self, stack: Stack, result: TeardownResult) -> TeardownResult:
        """Best-effort recovery of a stack stuck in DeleteFailed."""
        result.forced = True
        resources = self.platform.resources(stack.name, stack.region)
        buckets = [r for r in resources if r.is_storage and r.physical_id]
        blocking = [r for r in resources if r.delete_failed]
        present = {r.logical_id for r in resources if r.status != "DELETE_COMPLETE"}
        retain = [r.logical_id for r in blocking]
        retain += [
            logical_id for logical_id in stack.descriptor.retain_on_force
            if logical_id in present and logical_id not in retain
        ]
        result.retained = retain
        logger.warning(
            "Forcing delete of %s, retaining: %s", stack.name, ", ".join(retain) or "nothing"
        )

        try:
            self.operator.destroy(stack, retain=retain or None)
        except MoraineError as e:
            logger.warning("Forced delete of %s failed (%s); deleting blockers out-of-band", stack.name, e)
        else:
            retained = [r for r in resources if r.logical_id in retain]
            try:
                self.remove_out_of_band(stack, retained, buckets)
            except MoraineError as e:
                logger.error("Stack %s is gone but retained resources remain: %s", stack.name, e)
                result.error = e
                result.needs_manual_pass = True
            result.status = stack.status
            return result

        blocking = [r for r in self.platform.resources(stack.name, stack.region) if r.delete_failed]
        try:
            self.remove_out_of_band(stack, blocking, buckets)
            self.operator.destroy(stack)
        except MoraineError as e:
            logger.error("Stack %s still could not be deleted; a manual pass is needed", stack.name)
            result.error = e
            result.needs_manual_pass = True
        result.status = stack.status
        return result

    def destroy_stack(self, stack: Stack) -> TeardownResult:
        """Drain, destroy, and recover from a blocked delete. Errors are captured."""
        result = TeardownResult(stack.name, stack.region, stack.status)

        try:
            snapshot = self.operator.status(stack)
            if snapshot is not None and snapshot.status == StackStatus.DELETE_FAILED:
                stack.status = StackStatus.DELETE_FAILED
                if self.force:
                    return self.force_destroy(stack, result)
                raise PlatformOperationFailed(
                    "Stack is stuck after a failed delete; re-run with --force",
                    stack=stack.name,
                    step="destroy",
                    status=snapshot.raw_status,
                    reason=snapshot.reason,
                )

            if stack.descriptor.drain:
                result.drained += self.drain(stack)
            try:
                self.operator.destroy(stack)
            except ResourceBlockedDeletion as e:
                logger.warning("Delete of %s was blocked by %s; draining and retrying",
                               stack.name, ", ".join(e.resources))
                result.drained += self.drain(stack, e.resources)
                self.operator.destroy(stack)
        except MoraineError as e:
            if self.force and stack.status == StackStatus.DELETE_FAILED:
                return self.force_destroy(stack, result)
            logger.error("Could not destroy %s: %s", stack.name, e)
            result.error = e

        result.status = stack.status
        return result

    def run(self) -> TeardownReport:
        """Destroy every stack of the plan."""
        recorded = self.ledger.deploy_order if self.ledger is not None else None
        order = self.plan.teardown_order(recorded)
        report = TeardownReport(order=[stack.name for stack in order])
        logger.info("Destroying %d stack(s): %s", len(order), " -> ".join(report.order))

        blocked: dict[str, str] = {}
        for stack in order:
            if stack.name in blocked:
                reason = f"still used by '{blocked[stack.name]}'"
                logger.warning("Keeping %s: %s", stack.name, reason)
                report.results[stack.name] = TeardownResult(
                    stack.name, stack.region, stack.status, skipped_because=reason
                )
                continue

            result = self.destroy_stack(stack)
            report.results[stack.name] = result
            if result.succeeded:
                if self.ledger is not None:
                    self.ledger.record_destroy(stack.name)
                    self.ledger.save()
            else:
                for producer in self.plan.producers_of(stack.name):
                    blocked.setdefault(producer, stack.name)

        return report
