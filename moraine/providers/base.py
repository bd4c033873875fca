"""
Base provider abstraction: the cloud services the orchestrator drives.

Resource declarations, image builds and the bootstrap toolkit itself are
external; a provider only exposes the narrow operations the orchestrator
sequences.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from moraine.artifacts.resolver import ImageRecord
from moraine.config import DeploymentConfig
from moraine.core.stack import StackStatus

STORAGE_RESOURCE_TYPES = frozenset({"AWS::S3::Bucket"})
STORAGE_POLICY_TYPES = frozenset({"AWS::S3::BucketPolicy"})
DELETE_FAILED = "DELETE_FAILED"


@dataclass
class StackSnapshot:
    """Platform view of a stack at one point in time."""

    name: str
    region: str
    status: StackStatus
    raw_status: str
    parameters: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    needs_recreate: bool = False
    """The stack exists but can only be deleted (a failed first create)."""


@dataclass
class StackResource:
    """One resource owned by a stack."""

    logical_id: str
    physical_id: str | None
    resource_type: str
    status: str
    reason: str | None = None

    @property
    def is_storage(self) -> bool:
        return self.resource_type in STORAGE_RESOURCE_TYPES

    @property
    def delete_failed(self) -> bool:
        return self.status == DELETE_FAILED


class StackPlatform(ABC):
    """Stack provisioning platform: submit operations and read state."""

    @abstractmethod
    def describe(self, name: str, region: str) -> StackSnapshot | None:
        """Current state of a stack, or None if it does not exist."""
        pass

    @abstractmethod
    def create(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> None:
        """Submit creation of a new stack."""
        pass

    @abstractmethod
    def update(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> bool:
        """
        Submit an update of an existing stack.

        Returns:
            False if the platform reports there is nothing to change
        """
        pass

    @abstractmethod
    def delete(self, name: str, region: str, retain: list[str] | None = None) -> None:
        """
        Submit deletion of a stack.

        Args:
            retain: Logical ids to skip; only valid for a stack whose
                previous delete failed
        """
        pass

    @abstractmethod
    def resources(self, name: str, region: str) -> list[StackResource]:
        """Resources owned by a stack."""
        pass

    @abstractmethod
    def failure_reason(self, name: str, region: str) -> str | None:
        """Most recent failure reported for a stack, if any."""
        pass


class ObjectStore(ABC):
    """Storage containers that can block stack deletion while non-empty."""

    @abstractmethod
    def exists(self, bucket: str, region: str) -> bool:
        pass

    @abstractmethod
    def is_empty(self, bucket: str, region: str) -> bool:
        pass

    @abstractmethod
    def drain(self, bucket: str, region: str) -> int:
        """Delete every object (and version). Returns the number removed."""
        pass

    @abstractmethod
    def remove_policy(self, bucket: str, region: str) -> None:
        pass

    @abstractmethod
    def delete(self, bucket: str, region: str) -> None:
        pass


class ContainerRegistry(ABC):
    """Read interface over a versioned container registry."""

    @abstractmethod
    def list_images(self, repository: str) -> list[ImageRecord]:
        pass

    @abstractmethod
    def registry_host(self, repository: str) -> str:
        pass


class BootstrapToolkit(ABC):
    """Creates the per-region provisioning prerequisites."""

    marker_stack: str = "CDKToolkit"
    version_output: str = "BootstrapVersion"

    @abstractmethod
    def bootstrap(self, account: str, region: str) -> None:
        """
        Create or upgrade the region's prerequisites.

        Raises:
            BootstrapFailed: If the prerequisites cannot be established
        """
        pass


class Provider(ABC):
    """
    Base class for cloud providers.

    A provider bundles the services one cloud offers to the orchestrator:

    1. Stack provisioning (deploy, destroy, status, outputs)
    2. Object storage (drain before destroy)
    3. Container registry (artifact resolution)
    4. Region bootstrap toolkit

    Example:
        provider = AWSProvider(config)
        provider.verify_credentials()
        operator = StackOperator(provider.platform, config)
    """

    def __init__(self, config: DeploymentConfig):
        self.config = config

    @property
    @abstractmethod
    def platform(self) -> StackPlatform:
        pass

    @property
    @abstractmethod
    def object_store(self) -> ObjectStore:
        pass

    @property
    @abstractmethod
    def registry(self) -> ContainerRegistry:
        pass

    @property
    @abstractmethod
    def toolkit(self) -> BootstrapToolkit:
        pass

    @abstractmethod
    def verify_credentials(self) -> str:
        """
        Check credentials before any cloud mutation.

        Returns:
            The account the credentials belong to

        Raises:
            ConfigurationError: If credentials are invalid or belong to
                another account than the configured one
        """
        pass

    @abstractmethod
    def get_provider_type(self) -> str:
        """Return the provider type (aws, local)."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type='{self.get_provider_type()}', region='{self.config.default_region}')"
