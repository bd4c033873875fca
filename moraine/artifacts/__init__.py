"""
Container artifact resolution.
"""

from moraine.artifacts.resolver import (
    FLOATING_ALIAS,
    ArtifactReference,
    ArtifactResolver,
    ImageRecord,
)

__all__ = ["FLOATING_ALIAS", "ArtifactReference", "ArtifactResolver", "ImageRecord"]
