from __future__ import annotations

import datetime as _dt
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_TAG_PREFIX = "refs/tags/"

DEFAULT_NIGHTLY_CHANNEL = "nightly"
DEFAULT_STABLE_CHANNEL = "stable"


@dataclass(slots=True)
class VersionInfo:
    version: str
    channel: str
    base_version: str
    source: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "version": self.version,
            "channel": self.channel,
            "base_version": self.base_version,
            "source": self.source,
        }


def is_semver(version: str) -> bool:
    return bool(_SEMVER_RE.match(version))


def read_version(manifest_path: Path) -> str:
    """Read the version from ``Cargo.toml`` or ``pyproject.toml``."""

    data = tomllib.loads(manifest_path.read_text(encoding="utf-8"))
    if manifest_path.name == "Cargo.toml":
        candidates = [("package", "version"), ("workspace", "package", "version")]
    else:
        candidates = [("project", "version")]
    for keys in candidates:
        node: object = data
        for key in keys:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, str):
            return node
    raise KeyError(f"No version field found in {manifest_path}")


def tag_version(ref: Optional[str]) -> Optional[str]:
    """Return the version named by a ``refs/tags/v1.2.3`` ref, if any."""

    if not ref or not ref.startswith(_TAG_PREFIX):
        return None
    tag = ref[len(_TAG_PREFIX) :]
    return tag[1:] if tag.startswith("v") else tag


def resolve_version(
    base_version: str,
    *,
    ref: Optional[str] = None,
    stable_channel: Optional[str] = None,
    nightly_channel: str = DEFAULT_NIGHTLY_CHANNEL,
    timestamp: Optional[_dt.datetime] = None,
    source: str = "manifest",
) -> VersionInfo:
    """Pick the published version and channel for a build.

    A release tag matching ``base_version`` publishes ``base_version`` to the
    stable channel. Anything else is a nightly build with a timestamped
    pre-release suffix.
    """

    if not is_semver(base_version):
        raise ValueError(f"Version '{base_version}' is not a valid semantic version.")

    tagged = tag_version(ref)
    if tagged is not None:
        if tagged != base_version:
            raise ValueError(f"Tag '{tagged}' does not match version '{base_version}'.")
        return VersionInfo(
            version=base_version,
            channel=stable_channel or DEFAULT_STABLE_CHANNEL,
            base_version=base_version,
            source=source,
        )

    moment = (timestamp or _dt.datetime.now(_dt.timezone.utc)).astimezone(_dt.timezone.utc)
    return VersionInfo(
        version=f"{base_version}-{nightly_channel}.{moment.strftime('%Y%m%dT%H%M%SZ')}",
        channel=nightly_channel,
        base_version=base_version,
        source=source,
    )
