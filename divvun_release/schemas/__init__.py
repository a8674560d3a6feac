"""Schema definitions for release metadata."""

from .release import ArtifactEntry, Checksum, PackageManifest

__all__ = [
    "ArtifactEntry",
    "Checksum",
    "PackageManifest",
]
