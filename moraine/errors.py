"""
Error taxonomy for moraine deployments.

Every error names the stack and the step it happened in, so a failed run
can always point at what broke.
"""


class MoraineError(Exception):
    """Base class for deployment errors."""

    def __init__(self, message: str, stack: str | None = None, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.stack = stack
        self.step = step

    def __str__(self) -> str:
        location = []
        if self.stack:
            location.append(f"stack '{self.stack}'")
        if self.step:
            location.append(f"step '{self.step}'")
        if location:
            return f"{self.message} ({', '.join(location)})"
        return self.message


class ConfigurationError(MoraineError):
    """Raised when a required input is missing or invalid. Aborts before any cloud call."""
    pass


class DependencyUnresolved(MoraineError):
    """Raised when a producer stack's output needed by a consumer is missing."""

    def __init__(self, message: str, stack: str | None = None, producer: str | None = None,
                 output_key: str | None = None):
        super().__init__(message, stack=stack, step="resolve-inputs")
        self.producer = producer
        self.output_key = output_key


class PlatformOperationFailed(MoraineError):
    """Raised when a deploy or destroy reaches a failure terminal state."""

    def __init__(self, message: str, stack: str | None = None, step: str | None = None,
                 status: str | None = None, reason: str | None = None):
        super().__init__(message, stack=stack, step=step)
        self.status = status
        self.reason = reason


class OperationTimedOut(MoraineError):
    """
    Raised when polling hits its ceiling before a terminal state.

    The operation is still in progress on the platform; its final status
    has to be checked out-of-band.
    """

    def __init__(self, message: str, stack: str | None = None, step: str | None = None,
                 status: str | None = None):
        super().__init__(message, stack=stack, step=step)
        self.status = status


class ResourceBlockedDeletion(MoraineError):
    """Raised when a destroy is rejected because a resource is not empty."""

    def __init__(self, message: str, stack: str | None = None,
                 resources: list[str] | None = None):
        super().__init__(message, stack=stack, step="destroy")
        self.resources = list(resources or [])


class RegistryResolutionFailed(MoraineError):
    """Raised when no deployable artifact can be found in a registry."""

    def __init__(self, message: str, repository: str | None = None, stack: str | None = None):
        super().__init__(message, stack=stack, step="resolve-artifact")
        self.repository = repository


class ArtifactNotFound(RegistryResolutionFailed):
    """The repository holds no images."""
    pass


class NoDeployableTag(RegistryResolutionFailed):
    """The newest image carries only the floating alias."""
    pass


class BootstrapFailed(MoraineError):
    """Raised when region prerequisites cannot be established."""

    def __init__(self, message: str, region: str | None = None):
        super().__init__(message, step="bootstrap")
        self.region = region


class BuildFailed(MoraineError):
    """Raised when an external build step fails or produces no artifact."""

    def __init__(self, message: str, stack: str | None = None):
        super().__init__(message, stack=stack, step="build")
