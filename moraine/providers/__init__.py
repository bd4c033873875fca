"""
Providers: the cloud services a deployment runs against.

Example:
    from moraine.providers import AWSProvider, LocalProvider

    provider = AWSProvider(config)            # boto3 + cdk CLI
    rehearsal = LocalProvider(config)         # in-memory, for tests
"""

from moraine.providers.aws import AWSProvider
from moraine.providers.base import (
    BootstrapToolkit,
    ContainerRegistry,
    ObjectStore,
    Provider,
    StackPlatform,
    StackResource,
    StackSnapshot,
)
from moraine.providers.local import LocalProvider

__all__ = [
    "AWSProvider",
    "BootstrapToolkit",
    "ContainerRegistry",
    "LocalProvider",
    "ObjectStore",
    "Provider",
    "StackPlatform",
    "StackResource",
    "StackSnapshot",
]
