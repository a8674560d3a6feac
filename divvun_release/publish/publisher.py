"""Publish workflow: policy checks in front of an upload adapter."""

from __future__ import annotations

import logging
from typing import Optional

from ..bundle.utils import compute_sha256
from ..errors import PublishError
from ..models import Package, PublishReceipt, PublishTarget
from .adapters import NoOpAdapter, UploadAdapter, UploadRequest

logger = logging.getLogger(__name__)


class Publisher:
    """Upload packages to a repository.

    A package is only accepted when it references at least one signed
    artifact and its archive still matches the recorded checksum. Once the
    adapter reports success the package is treated as durably published;
    there is no rollback.
    """

    def __init__(self, adapter: UploadAdapter, *, dry_run: bool = False) -> None:
        self.adapter = adapter
        self.dry_run = dry_run

    def publish(
        self,
        package: Package,
        target: PublishTarget,
        *,
        platform: str,
        version: str,
        channel: str,
        timeout: Optional[float] = None,
    ) -> PublishReceipt:
        if not package.signed_artifacts:
            raise PublishError(f"Refusing to publish {package.path.name}: package contains no signed artifacts.")
        if not package.path.is_file():
            raise PublishError(f"Package archive not found: {package.path}")
        archive_checksum = compute_sha256(package.path)
        if archive_checksum != package.sha256:
            raise PublishError(
                f"Archive checksum mismatch. Package={package.sha256} Archive={archive_checksum}"
            )
        if not version:
            raise PublishError("Cannot publish without a version.")
        if not channel:
            raise PublishError("Cannot publish without a release channel.")

        request = UploadRequest(
            package=package,
            target=target,
            platform=platform,
            version=version,
            channel=channel,
            timeout=timeout,
        )
        adapter = NoOpAdapter() if self.dry_run else self.adapter
        receipt = adapter.upload(request)
        if self.dry_run:
            receipt.logs.append("Dry run enabled; upload skipped.")
        logger.info(
            "Publish %s %s (%s, %s) via %s: %s",
            package.package_id,
            version,
            platform,
            channel,
            receipt.adapter,
            receipt.status,
        )
        return receipt
