"""Pydantic models describing package metadata."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Checksum(BaseModel):
    sha256: str = Field(..., min_length=64, max_length=64, description="SHA-256 hex digest.")

    model_config = ConfigDict(extra="forbid")


class ArtifactEntry(BaseModel):
    name: str
    path: str = Field(..., description="Archive-relative path, e.g. bin/tool.exe.")
    checksum: Checksum
    signed: bool = False

    model_config = ConfigDict(extra="forbid")


class PackageManifest(BaseModel):
    package_id: str
    version: str
    platform: str
    channel: Optional[str] = None
    built_at: datetime
    package_type: str = Field(default="TarballPackage")
    artifacts: List[ArtifactEntry] = Field(default_factory=list)
    checksum: Optional[Checksum] = Field(
        default=None,
        description="Archive checksum; only set on the manifest written beside the archive.",
    )

    model_config = ConfigDict(extra="forbid")
