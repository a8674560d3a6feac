from __future__ import annotations

import hashlib
from pathlib import Path


def compute_sha256(path: Path) -> str:
    with path.open("rb") as handle:
        return hashlib.file_digest(handle, "sha256").hexdigest()
