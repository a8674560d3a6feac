"""Manifest helpers for package assembly."""

from __future__ import annotations

import json
from pathlib import Path

from ..schemas.release import PackageManifest


def load_manifest(path: Path) -> PackageManifest:
    """Load a manifest from JSON."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    return PackageManifest.model_validate(payload)


def render_manifest(manifest: PackageManifest) -> str:
    return manifest.model_dump_json(indent=2, exclude_none=True) + "\n"


def dump_manifest(manifest: PackageManifest, path: Path) -> None:
    """Write a manifest to disk."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_manifest(manifest), encoding="utf-8")
