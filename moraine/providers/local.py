"""
Local provider: an in-memory cloud for tests and offline rehearsals.

Operations settle after a configurable number of status polls, which lets
the polling, failure and recovery paths run without touching a real cloud.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from moraine.artifacts.resolver import ImageRecord
from moraine.config import DeploymentConfig
from moraine.core.stack import StackStatus
from moraine.errors import BootstrapFailed, ConfigurationError, PlatformOperationFailed
from moraine.providers.base import (
    DELETE_FAILED,
    STORAGE_POLICY_TYPES,
    BootstrapToolkit,
    ContainerRegistry,
    ObjectStore,
    Provider,
    StackPlatform,
    StackResource,
    StackSnapshot,
)

OutputFactory = Callable[[Mapping[str, str]], Mapping[str, Any]]


@dataclass
class _LocalStack:
    name: str
    region: str
    template: str
    parameters: dict[str, str]
    status: StackStatus
    raw_status: str
    outputs: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    resources: dict[str, StackResource] = field(default_factory=dict)
    pending: int = 0
    settle: Callable[[], None] | None = None
    created: bool = False


class LocalObjectStore(ObjectStore):
    """Buckets as sets of keys."""

    def __init__(self):
        self.buckets: dict[str, set[str]] = {}
        self.policies: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def create_bucket(self, bucket: str, keys: list[str] | None = None, policy: bool = False) -> None:
        self.buckets.setdefault(bucket, set()).update(keys or [])
        if policy:
            self.policies.add(bucket)

    def exists(self, bucket: str, region: str) -> bool:
        return bucket in self.buckets

    def is_empty(self, bucket: str, region: str) -> bool:
        return not self.buckets.get(bucket)

    def drain(self, bucket: str, region: str) -> int:
        self.calls.append(("drain", bucket))
        removed = len(self.buckets.get(bucket, ()))
        self.buckets[bucket] = set()
        return removed

    def remove_policy(self, bucket: str, region: str) -> None:
        self.calls.append(("remove_policy", bucket))
        self.policies.discard(bucket)

    def delete(self, bucket: str, region: str) -> None:
        self.calls.append(("delete", bucket))
        if self.buckets.get(bucket):
            raise ConfigurationError(f"Bucket {bucket} is not empty")
        self.buckets.pop(bucket, None)
        self.policies.discard(bucket)


class LocalPlatform(StackPlatform):
    """
    In-memory stack platform.

    Example:
        platform = LocalPlatform(latency=2)
        platform.set_outputs("backend", {"APIEndpoint": "https://api.local/"})
        platform.fail_deploy["frontend"] = "certificate not found"
        platform.unavailable["backend"] = "Rate exceeded"
    """

    def __init__(self, object_store: LocalObjectStore | None = None, latency: int = 0):
        self.object_store = object_store or LocalObjectStore()
        self.latency = latency
        self.stacks: dict[tuple[str, str], _LocalStack] = {}
        self.fail_deploy: dict[str, str] = {}
        self.stuck_resources: dict[str, set[str]] = {}
        self.reject_retain = False
        self.unavailable: dict[str, str] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._outputs: dict[str, OutputFactory] = {}
        self._resource_specs: dict[str, list[tuple[str, str, str | None]]] = {}

    def set_outputs(self, name: str, outputs: Mapping[str, Any] | OutputFactory) -> None:
        """Outputs a stack reports once deployed; a callable receives the parameters."""
        if callable(outputs):
            self._outputs[name] = outputs
        else:
            static = dict(outputs)
            self._outputs[name] = lambda parameters: static

    def add_resource(self, name: str, logical_id: str, resource_type: str,
                     physical_id: str | None = None) -> None:
        """Declare a resource the stack owns once deployed."""
        self._resource_specs.setdefault(name, []).append((logical_id, resource_type, physical_id))

    def put_stack(self, name: str, region: str, status: StackStatus, raw_status: str,
                  outputs: Mapping[str, Any] | None = None,
                  parameters: Mapping[str, str] | None = None) -> None:
        """Place a stack directly in a given state."""
        self.stacks[(name, region)] = _LocalStack(
            name=name,
            region=region,
            template="",
            parameters=dict(parameters or {}),
            status=status,
            raw_status=raw_status,
            outputs=dict(outputs or {}),
        )

    def calls_for(self, operation: str) -> list[str]:
        """Stack names an operation was submitted for, in order."""
        return [name for op, name, _ in self.calls if op == operation]

    def _snapshot(self, record: _LocalStack) -> StackSnapshot:
        return StackSnapshot(
            name=record.name,
            region=record.region,
            status=record.status,
            raw_status=record.raw_status,
            parameters=dict(record.parameters),
            outputs=dict(record.outputs),
            reason=record.reason,
            needs_recreate=record.raw_status == "ROLLBACK_COMPLETE",
        )

    def describe(self, name: str, region: str) -> StackSnapshot | None:
        if name in self.unavailable:
            raise PlatformOperationFailed(
                f"DescribeStacks failed: {self.unavailable[name]}",
                stack=name,
                step="status",
                status="Throttling",
                reason=self.unavailable[name],
            )
        record = self.stacks.get((name, region))
        if record is None:
            return None
        if record.settle is not None:
            if record.pending > 0:
                record.pending -= 1
            else:
                settle, record.settle = record.settle, None
                settle()
                record = self.stacks.get((name, region))
                if record is None:
                    return None
        return self._snapshot(record)

    def _start(self, record: _LocalStack, status: StackStatus, raw_status: str,
               settle: Callable[[], None]) -> None:
        record.status = status
        record.raw_status = raw_status
        record.reason = None
        record.pending = self.latency
        record.settle = settle

    def create(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> None:
        if (name, region) in self.stacks:
            raise ConfigurationError(f"Stack {name} already exists in {region}")
        self.calls.append(("create", name, region))
        record = _LocalStack(
            name=name,
            region=region,
            template=str(template),
            parameters=dict(parameters),
            status=StackStatus.DEPLOYING,
            raw_status="CREATE_IN_PROGRESS",
            created=True,
        )
        self.stacks[(name, region)] = record
        self._start(record, StackStatus.DEPLOYING, "CREATE_IN_PROGRESS",
                    lambda: self._finish_deploy(record, first=True))

    def update(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> bool:
        record = self.stacks[(name, region)]
        self.calls.append(("update", name, region))
        if dict(parameters) == record.parameters and str(template) == record.template \
                and record.status == StackStatus.DEPLOYED:
            return False
        previous = dict(record.parameters)
        record.parameters = dict(parameters)
        record.template = str(template)
        self._start(record, StackStatus.DEPLOYING, "UPDATE_IN_PROGRESS",
                    lambda: self._finish_deploy(record, first=False, previous=previous))
        return True

    def _finish_deploy(self, record: _LocalStack, first: bool,
                       previous: dict[str, str] | None = None) -> None:
        reason = self.fail_deploy.get(record.name)
        if reason:
            record.status = StackStatus.FAILED
            record.raw_status = "ROLLBACK_COMPLETE" if first else "UPDATE_ROLLBACK_COMPLETE"
            record.reason = reason
            if previous is not None:
                record.parameters = previous
            return

        factory = self._outputs.get(record.name)
        record.outputs = dict(factory(record.parameters)) if factory else {}
        for logical_id, resource_type, physical_id in self._resource_specs.get(record.name, []):
            record.resources[logical_id] = StackResource(
                logical_id=logical_id,
                physical_id=physical_id,
                resource_type=resource_type,
                status="CREATE_COMPLETE",
            )
        record.status = StackStatus.DEPLOYED
        record.raw_status = "CREATE_COMPLETE" if first else "UPDATE_COMPLETE"

    def delete(self, name: str, region: str, retain: list[str] | None = None) -> None:
        record = self.stacks.get((name, region))
        if record is None:
            return
        if retain and (self.reject_retain or record.status != StackStatus.DELETE_FAILED):
            raise PlatformOperationFailed(
                "Resources can only be retained for a stack in DELETE_FAILED",
                stack=name,
                step="destroy",
                status=record.raw_status,
            )
        self.calls.append(("delete", name, region))
        self._start(record, StackStatus.DESTROYING, "DELETE_IN_PROGRESS",
                    lambda: self._finish_delete(record, set(retain or [])))

    def _released(self, resource: StackResource) -> bool:
        """A stuck resource whose backing storage was removed out-of-band."""
        bucket = resource.physical_id
        if resource.resource_type in STORAGE_POLICY_TYPES:
            return bucket not in self.object_store.policies
        return resource.is_storage and bucket not in self.object_store.buckets

    def _finish_delete(self, record: _LocalStack, retain: set[str]) -> None:
        stuck = self.stuck_resources.get(record.name, set())
        failed = []
        for logical_id, resource in list(record.resources.items()):
            if logical_id in retain:
                del record.resources[logical_id]
                continue
            bucket = resource.physical_id
            if logical_id in stuck and not self._released(resource):
                resource.status = DELETE_FAILED
                resource.reason = "Access denied while deleting resource"
                failed.append(logical_id)
            elif resource.is_storage and bucket and not self.object_store.is_empty(bucket, record.region):
                resource.status = DELETE_FAILED
                resource.reason = "The bucket you tried to delete is not empty"
                failed.append(logical_id)
            else:
                if resource.is_storage and bucket:
                    self.object_store.buckets.pop(bucket, None)
                del record.resources[logical_id]

        if failed:
            record.status = StackStatus.DELETE_FAILED
            record.raw_status = "DELETE_FAILED"
            first = record.resources[failed[0]]
            record.reason = f"{first.logical_id}: {first.reason}"
        else:
            del self.stacks[(record.name, record.region)]

    def resources(self, name: str, region: str) -> list[StackResource]:
        record = self.stacks.get((name, region))
        return list(record.resources.values()) if record else []

    def failure_reason(self, name: str, region: str) -> str | None:
        record = self.stacks.get((name, region))
        return record.reason if record else None


class LocalRegistry(ContainerRegistry):
    """Repositories as lists of image records."""

    def __init__(self, host: str = "registry.local"):
        self.host = host
        self.repositories: dict[str, list[ImageRecord]] = {}

    def push(self, repository: str, tags: list[str], pushed_at: datetime | None = None,
             digest: str | None = None) -> ImageRecord:
        image = ImageRecord(
            tags=tuple(tags),
            pushed_at=pushed_at or datetime.now(timezone.utc),
            digest=digest,
        )
        self.repositories.setdefault(repository, []).append(image)
        return image

    def list_images(self, repository: str) -> list[ImageRecord]:
        return list(self.repositories.get(repository, []))

    def registry_host(self, repository: str) -> str:
        return self.host


class LocalToolkit(BootstrapToolkit):
    """Creates the marker stack directly on a LocalPlatform."""

    def __init__(self, platform: LocalPlatform, version: int = 21):
        self.platform = platform
        self.version = version
        self.fail_regions: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def bootstrap(self, account: str, region: str) -> None:
        self.calls.append((account, region))
        if region in self.fail_regions:
            raise BootstrapFailed(f"Could not bootstrap aws://{account}/{region}", region=region)
        self.platform.put_stack(
            self.marker_stack,
            region,
            StackStatus.DEPLOYED,
            "CREATE_COMPLETE",
            outputs={self.version_output: str(self.version)},
        )


class LocalProvider(Provider):
    """
    In-memory provider.

    Example:
        provider = LocalProvider(config)
        provider.registry.push("svc-backend", ["v1"])
    """

    def __init__(self, config: DeploymentConfig, latency: int = 0, account: str | None = None):
        super().__init__(config)
        self._object_store = LocalObjectStore()
        self._platform = LocalPlatform(self._object_store, latency=latency)
        self._registry = LocalRegistry()
        self._toolkit = LocalToolkit(self._platform)
        self.account = account or config.account_id or "000000000000"

    @property
    def platform(self) -> LocalPlatform:
        return self._platform

    @property
    def object_store(self) -> LocalObjectStore:
        return self._object_store

    @property
    def registry(self) -> LocalRegistry:
        return self._registry

    @property
    def toolkit(self) -> LocalToolkit:
        return self._toolkit

    def verify_credentials(self) -> str:
        if self.config.account_id and self.account != self.config.account_id:
            raise ConfigurationError(
                f"Credentials belong to account {self.account}, "
                f"but the target account is {self.config.account_id}",
                step="verify-credentials",
            )
        return self.account

    def get_provider_type(self) -> str:
        return "local"
