"""
Artifact resolution: find the newest deployable image in a registry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from moraine.errors import ArtifactNotFound, NoDeployableTag

if TYPE_CHECKING:
    from moraine.providers.base import ContainerRegistry

logger = logging.getLogger(__name__)

FLOATING_ALIAS = "latest"


@dataclass(frozen=True)
class ImageRecord:
    """One image in a repository, as listed by the registry."""

    tags: tuple[str, ...]
    pushed_at: datetime
    digest: str | None = None


@dataclass(frozen=True)
class ArtifactReference:
    """
    Fully-qualified pointer to one immutable image.

    Only the resolver builds these; everything else reads ``uri``.
    """

    registry_host: str
    repository: str
    tag: str
    digest: str | None = None

    @property
    def uri(self) -> str:
        """``host/repository:tag``"""
        return f"{self.registry_host}/{self.repository}:{self.tag}"

    @property
    def pinned_uri(self) -> str:
        """``host/repository@digest``, falling back to the tag form."""
        if self.digest:
            return f"{self.registry_host}/{self.repository}@{self.digest}"
        return self.uri

    def __str__(self) -> str:
        return self.uri


class ArtifactResolver:
    """
    Resolves the most recently pushed immutable tag of a repository.

    The floating alias ("latest") is never selected: it can move between
    the time a plan resolves it and the time the platform pulls it.

    Example:
        resolver = ArtifactResolver(registry)
        ref = resolver.resolve_latest("resume-bot-backend")
        ref.uri  # "123.dkr.ecr.ca-central-1.amazonaws.com/resume-bot-backend:v3"
    """

    def __init__(self, registry: "ContainerRegistry", floating_alias: str = FLOATING_ALIAS):
        self.registry = registry
        self.floating_alias = floating_alias

    def resolve_latest(self, repository: str) -> ArtifactReference:
        """
        Pick the newest image and one of its immutable tags.

        Args:
            repository: Repository name in the registry

        Returns:
            ArtifactReference for the selected tag

        Raises:
            ArtifactNotFound: If the repository has no images
            NoDeployableTag: If the newest image only carries the floating alias
        """
        images = self.registry.list_images(repository)
        if not images:
            raise ArtifactNotFound(
                f"Repository '{repository}' has no images", repository=repository
            )

        newest = max(images, key=lambda image: image.pushed_at)
        tags = [tag for tag in newest.tags if tag != self.floating_alias]
        if not tags:
            raise NoDeployableTag(
                f"Newest image in '{repository}' (pushed {newest.pushed_at.isoformat()}) "
                f"has no tag other than '{self.floating_alias}'",
                repository=repository,
            )

        reference = ArtifactReference(
            registry_host=self.registry.registry_host(repository),
            repository=repository,
            tag=tags[0],
            digest=newest.digest,
        )
        logger.info("Resolved %s to %s", repository, reference.uri)
        return reference
