"""
StackOperator: deploy and destroy one stack, blocking until done.
"""

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Mapping

from moraine.config import DeploymentConfig
from moraine.core.stack import Stack, StackStatus
from moraine.errors import (
    ConfigurationError,
    OperationTimedOut,
    PlatformOperationFailed,
    ResourceBlockedDeletion,
)
from moraine.operations.polling import poll
from moraine.providers.base import StackPlatform, StackResource, StackSnapshot

logger = logging.getLogger(__name__)

BLOCKED_DELETION_HINTS = ("not empty", "BucketNotEmpty")


def _settled(snapshot: StackSnapshot | None) -> bool:
    return snapshot is None or snapshot.status.is_terminal


def _holds_content(resource: StackResource) -> bool:
    if not resource.is_storage:
        return False
    return resource.reason is None or any(hint in resource.reason for hint in BLOCKED_DELETION_HINTS)


class StackOperator:
    """
    Issues deploy/destroy operations for a single stack in a single region.

    Every call blocks until the platform reports a terminal state or the
    retry policy runs out, in which case OperationTimedOut is raised and the
    stack is left to finish on its own.

    Example:
        operator = StackOperator(provider.platform, config)
        outputs = operator.deploy(stack, {"DomainName": "example.com"})
        operator.destroy(stack)
    """

    def __init__(self, platform: StackPlatform, config: DeploymentConfig,
                 sleep: Callable[[float], None] = time.sleep):
        self.platform = platform
        self.config = config
        self.sleep = sleep

    def template_for(self, stack: Stack) -> str | Path:
        """Template location; defaults to ``<template_dir>/<name>.template.json``."""
        template = stack.descriptor.template
        if template:
            return template
        return self.config.template_dir / f"{stack.name}.template.json"

    def status(self, stack: Stack) -> StackSnapshot | None:
        """Current platform state of a stack."""
        return self.platform.describe(stack.name, stack.region)

    def _wait(self, stack: Stack, step: str) -> StackSnapshot | None:
        result = poll(
            lambda: self.platform.describe(stack.name, stack.region),
            _settled,
            self.config.retry,
            sleep=self.sleep,
            label=f"{step} of {stack.name} in {stack.region}",
        )
        if result.timed_out:
            status = result.value.raw_status if result.value else None
            raise OperationTimedOut(
                f"Still in progress after {result.attempts} status checks (last status {status}); "
                "check the final status out-of-band",
                stack=stack.name,
                step=step,
                status=status,
            )
        return result.value

    def deploy(self, stack: Stack, parameters: Mapping[str, Any]) -> dict[str, Any]:
        """
        Create or update a stack and return its outputs.

        Re-deploying a stack with unchanged parameters is a no-op that
        returns the existing outputs.

        Args:
            stack: Stack to deploy
            parameters: Fully resolved parameter set

        Returns:
            The stack's outputs

        Raises:
            ConfigurationError: If a required parameter is missing
            PlatformOperationFailed: If the platform reports a failure
            OperationTimedOut: If the deploy is still running at the ceiling
        """
        values = {key: str(value) for key, value in parameters.items()}
        missing = sorted(stack.descriptor.required_parameters() - set(values))
        if missing:
            raise ConfigurationError(
                f"Unresolved parameters: {', '.join(missing)}", stack=stack.name, step="deploy"
            )
        stack.parameters = dict(values)
        template = self.template_for(stack)

        # Let an interrupted operation from an earlier run finish first
        snapshot = self._wait(stack, "deploy")

        if snapshot is not None and snapshot.status == StackStatus.DELETE_FAILED:
            stack.status = StackStatus.DELETE_FAILED
            raise PlatformOperationFailed(
                "Stack is stuck after a failed delete; run 'moraine destroy --force' first",
                stack=stack.name,
                step="deploy",
                status=snapshot.raw_status,
                reason=snapshot.reason,
            )

        if snapshot is not None and snapshot.needs_recreate:
            logger.info("Stack %s failed its first create; deleting before re-creating", stack.name)
            self.platform.delete(stack.name, stack.region)
            snapshot = self._wait(stack, "deploy")
            if snapshot is not None and snapshot.status not in (StackStatus.DESTROYED, StackStatus.NOT_DEPLOYED):
                stack.status = snapshot.status
                raise PlatformOperationFailed(
                    f"Could not remove failed stack before re-creating (status {snapshot.raw_status})",
                    stack=stack.name,
                    step="deploy",
                    status=snapshot.raw_status,
                    reason=self.platform.failure_reason(stack.name, stack.region),
                )
            snapshot = None

        stack.status = StackStatus.DEPLOYING
        if snapshot is None or snapshot.status == StackStatus.DESTROYED:
            logger.info("Creating stack %s in %s", stack.name, stack.region)
            self.platform.create(stack.name, stack.region, template, values)
        else:
            logger.info("Updating stack %s in %s", stack.name, stack.region)
            changed = self.platform.update(stack.name, stack.region, template, values)
            if not changed:
                logger.info("Stack %s is already up to date", stack.name)

        final = self._wait(stack, "deploy")
        if final is None or final.status != StackStatus.DEPLOYED:
            status = final.raw_status if final else "MISSING"
            stack.status = final.status if final else StackStatus.FAILED
            reason = self.platform.failure_reason(stack.name, stack.region) or (final.reason if final else None)
            raise PlatformOperationFailed(
                f"Deploy ended in {status}" + (f": {reason}" if reason else ""),
                stack=stack.name,
                step="deploy",
                status=status,
                reason=reason,
            )

        stack.status = StackStatus.DEPLOYED
        stack.record_outputs(final.outputs)
        undeclared = [key for key in stack.descriptor.outputs if key not in final.outputs]
        if undeclared:
            logger.warning("Stack %s did not report declared output(s): %s", stack.name, ", ".join(undeclared))
        logger.info("Stack %s deployed in %s", stack.name, stack.region)
        return dict(final.outputs)

    def destroy(self, stack: Stack, retain: list[str] | None = None) -> StackSnapshot | None:
        """
        Delete a stack. Destroying a stack that does not exist succeeds.

        Args:
            stack: Stack to destroy
            retain: Resources to skip (only for a stack in DeleteFailed)

        Returns:
            The final snapshot (None once the stack is gone)

        Raises:
            ResourceBlockedDeletion: If a non-empty resource blocked the delete
            PlatformOperationFailed: If the delete failed for another reason
            OperationTimedOut: If the delete is still running at the ceiling
        """
        snapshot = self._wait(stack, "destroy")
        if snapshot is None or snapshot.status in (StackStatus.DESTROYED, StackStatus.NOT_DEPLOYED):
            stack.status = StackStatus.DESTROYED
            logger.info("Stack %s is not present in %s", stack.name, stack.region)
            return None

        logger.info("Deleting stack %s in %s", stack.name, stack.region)
        stack.status = StackStatus.DESTROYING
        self.platform.delete(stack.name, stack.region, retain=retain)

        final = self._wait(stack, "destroy")
        if final is None or final.status == StackStatus.DESTROYED:
            stack.status = StackStatus.DESTROYED
            stack.record_outputs({})
            logger.info("Stack %s destroyed", stack.name)
            return None

        stack.status = final.status
        reason = self.platform.failure_reason(stack.name, stack.region) or final.reason
        blocking = [
            resource for resource in self.platform.resources(stack.name, stack.region)
            if resource.delete_failed
        ]
        storage_blocked = [resource for resource in blocking if _holds_content(resource)]
        if storage_blocked or (reason and any(hint in reason for hint in BLOCKED_DELETION_HINTS)):
            raise ResourceBlockedDeletion(
                "Delete blocked by non-empty resource(s): "
                + ", ".join(r.physical_id or r.logical_id for r in (storage_blocked or blocking)),
                stack=stack.name,
                resources=[r.logical_id for r in (storage_blocked or blocking)],
            )

        raise PlatformOperationFailed(
            f"Delete ended in {final.raw_status}" + (f": {reason}" if reason else ""),
            stack=stack.name,
            step="destroy",
            status=final.raw_status,
            reason=reason,
        )
