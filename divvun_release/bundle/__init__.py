"""Staging and archive creation."""

from .manifest import dump_manifest, load_manifest
from .packager import PackageRequest, TarballPackager

__all__ = [
    "PackageRequest",
    "TarballPackager",
    "dump_manifest",
    "load_manifest",
]
