"""Platform identifiers, compiler target triples and repository tags."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Platform:
    name: str
    triple: str
    os_tag: str

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self.os_tag == "windows" else ""


_TRIPLES = {
    "x86-windows": "i686-pc-windows-msvc",
    "i686-windows": "i686-pc-windows-msvc",
    "x86_64-windows": "x86_64-pc-windows-msvc",
    "windows-x86_64": "x86_64-pc-windows-msvc",
    "windows-aarch64": "aarch64-pc-windows-msvc",
    "windows-arm64": "aarch64-pc-windows-msvc",
    "linux-x86_64": "x86_64-unknown-linux-gnu",
    "linux-aarch64": "aarch64-unknown-linux-gnu",
    "linux-arm64": "aarch64-unknown-linux-gnu",
    "macos-x86_64": "x86_64-apple-darwin",
    "macos-aarch64": "aarch64-apple-darwin",
    "macos-arm64": "aarch64-apple-darwin",
}


def _os_tag(triple: str) -> str:
    if "windows" in triple:
        return "windows"
    if "apple" in triple:
        return "macos"
    return "linux"


def resolve_platform(name: str) -> Optional[Platform]:
    """Map a platform name (or a raw target triple) to a :class:`Platform`."""

    normalized = name.strip().lower().replace("-x86-64", "-x86_64")
    triple = _TRIPLES.get(normalized)
    if triple is None and normalized.count("-") >= 2 and normalized in _TRIPLES.values():
        triple = normalized
    if triple is None:
        return None
    return Platform(name=name, triple=triple, os_tag=_os_tag(triple))


def known_platforms() -> list[str]:
    return sorted(_TRIPLES)
