from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .schemas.release import PackageManifest


@dataclass(frozen=True, slots=True)
class Artifact:
    """A named binary produced by the builder.

    ``origin`` keeps the original build output path after the artifact has
    been moved into a staging directory or signed.
    """

    name: str
    path: Path
    origin: Optional[Path] = None
    signed: bool = False
    signature: Optional[Path] = None

    @property
    def build_output(self) -> Path:
        return self.origin or self.path

    def moved_to(self, path: Path) -> "Artifact":
        return replace(self, path=path, origin=self.build_output)

    def as_signed(self, signature: Optional[Path] = None) -> "Artifact":
        return replace(self, signed=True, signature=signature, origin=self.build_output)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "path": str(self.path),
            "origin": str(self.build_output),
            "signed": self.signed,
            "signature": str(self.signature) if self.signature else None,
        }


@dataclass(frozen=True, slots=True)
class Package:
    """An archive of artifacts plus manifest. ``sha256`` is its content identifier."""

    path: Path
    sha256: str
    manifest: PackageManifest
    manifest_path: Path
    artifacts: Tuple[Artifact, ...] = ()

    @property
    def package_id(self) -> str:
        return self.manifest.package_id

    @property
    def signed_artifacts(self) -> List[Artifact]:
        return [artifact for artifact in self.artifacts if artifact.signed]

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": str(self.path),
            "sha256": self.sha256,
            "manifest_path": str(self.manifest_path),
            "manifest": self.manifest.model_dump(mode="json"),
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
        }


@dataclass(frozen=True, slots=True)
class PublishTarget:
    repository: str
    channel: str

    def to_dict(self) -> Dict[str, object]:
        return {"repository": self.repository, "channel": self.channel}


@dataclass(slots=True)
class PublishReceipt:
    adapter: str
    status: str
    package_id: str
    platform: str
    version: str
    channel: str
    url: Optional[str] = None
    details: Dict[str, object] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "adapter": self.adapter,
            "status": self.status,
            "package_id": self.package_id,
            "platform": self.platform,
            "version": self.version,
            "channel": self.channel,
            "url": self.url,
            "details": self.details,
            "logs": self.logs,
        }


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    name: str = "manual"
    ref: Optional[str] = None
    sha: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TriggerEvent":
        env = os.environ if environ is None else environ
        return cls(
            name=env.get("GITHUB_EVENT_NAME") or "manual",
            ref=env.get("GITHUB_REF") or None,
            sha=env.get("GITHUB_SHA") or None,
        )

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "ref": self.ref, "sha": self.sha}
