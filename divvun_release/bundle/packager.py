"""Tarball package assembly."""

from __future__ import annotations

import io
import logging
import shutil
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..errors import PackagingError
from ..models import Artifact, Package
from ..schemas.release import ArtifactEntry, Checksum, PackageManifest
from .manifest import dump_manifest, render_manifest
from .utils import compute_sha256

logger = logging.getLogger(__name__)

BIN_DIR = "bin"
MANIFEST_NAME = "manifest.json"


@dataclass(slots=True)
class PackageRequest:
    """Inputs describing one package."""

    package_id: str
    version: str
    platform: str
    staging_dir: Path
    artifact_names: Sequence[str]
    output_dir: Path
    channel: Optional[str] = None
    artifacts: Sequence[Artifact] = ()
    built_at: Optional[datetime] = None


class TarballPackager:
    """Arranges artifacts as ``bin/<name>`` and archives them as ``.txz``."""

    suffix = ".txz"

    def stage(self, artifacts: Iterable[Artifact], staging_dir: Path, *, copy: bool = False) -> List[Artifact]:
        """Move (or copy) artifacts into ``staging_dir/bin``.

        Returned artifacts point at their staged path and keep the build
        output path as ``origin``.
        """

        bin_dir = staging_dir / BIN_DIR
        try:
            bin_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PackagingError(f"Cannot create staging directory {bin_dir}: {exc}") from exc
        staged: List[Artifact] = []
        for artifact in artifacts:
            if not artifact.path.is_file():
                raise PackagingError(f"Artifact '{artifact.name}' not found at {artifact.path}")
            destination = bin_dir / artifact.name
            try:
                if copy:
                    shutil.copy2(artifact.path, destination)
                else:
                    shutil.move(str(artifact.path), str(destination))
            except OSError as exc:
                raise PackagingError(f"Failed to stage '{artifact.name}' into {bin_dir}: {exc}") from exc
            logger.info("Staged %s -> %s", artifact.path, destination)
            staged.append(artifact.moved_to(destination))
        return staged

    def package(self, request: PackageRequest) -> Package:
        """Archive the staging directory and return the resulting package."""

        if not request.artifact_names:
            raise PackagingError("No artifacts declared for packaging.")

        staging_root = request.staging_dir
        known = {artifact.name: artifact for artifact in request.artifacts}
        artifacts: List[Artifact] = []
        entries: List[ArtifactEntry] = []
        for name in request.artifact_names:
            staged_path = staging_root / BIN_DIR / name
            if not staged_path.is_file():
                raise PackagingError(f"Expected artifact '{name}' missing from {staging_root / BIN_DIR}")
            record = known.get(name)
            artifact = record.moved_to(staged_path) if record else Artifact(name=name, path=staged_path)
            artifacts.append(artifact)
            entries.append(
                ArtifactEntry(
                    name=name,
                    path=f"{BIN_DIR}/{name}",
                    checksum=Checksum(sha256=compute_sha256(staged_path)),
                    signed=artifact.signed,
                )
            )

        built_at = request.built_at or datetime.now(timezone.utc)
        manifest = PackageManifest(
            package_id=request.package_id,
            version=request.version,
            platform=request.platform,
            channel=request.channel,
            built_at=built_at,
            artifacts=entries,
        )

        try:
            request.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PackagingError(f"Cannot create output directory {request.output_dir}: {exc}") from exc
        stem = f"{request.package_id}-{request.version}-{request.platform}"
        archive_path = request.output_dir / f"{stem}{self.suffix}"
        mtime = int(built_at.timestamp())

        try:
            with tarfile.open(archive_path, "w:xz") as archive:
                for path in sorted(
                    staging_root.rglob("*"),
                    key=lambda item: item.relative_to(staging_root).as_posix(),
                ):
                    arcname = path.relative_to(staging_root).as_posix()
                    if arcname == MANIFEST_NAME:
                        continue
                    archive.add(path, arcname=arcname, recursive=False, filter=_normalize(mtime))
                payload = render_manifest(manifest).encode("utf-8")
                info = _normalize(mtime)(tarfile.TarInfo(MANIFEST_NAME))
                info.size = len(payload)
                archive.addfile(info, io.BytesIO(payload))
        except OSError as exc:
            raise PackagingError(f"Failed to write archive {archive_path}: {exc}") from exc

        manifest_path = request.output_dir / f"{stem}.json"
        try:
            sha = compute_sha256(archive_path)
            final_manifest = manifest.model_copy(update={"checksum": Checksum(sha256=sha)})
            dump_manifest(final_manifest, manifest_path)
        except OSError as exc:
            raise PackagingError(f"Failed to write manifest {manifest_path}: {exc}") from exc
        logger.info("Packaged %s (sha256 %s)", archive_path, sha)

        return Package(
            path=archive_path,
            sha256=sha,
            manifest=final_manifest,
            manifest_path=manifest_path,
            artifacts=tuple(artifacts),
        )


def _normalize(mtime: int):
    def _apply(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.mtime = mtime
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    return _apply
