"""Upload adapters used during publish."""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import requests
from requests import Response, Session
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from ..errors import PublishError
from ..models import Package, PublishReceipt, PublishTarget
from ..platforms import resolve_platform
from ..process import CommandNotFound, CommandRunner, CommandTimeout
from ..secrets import SecretHandle

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {502, 503, 504}


@dataclass(frozen=True, slots=True)
class UploadRequest:
    package: Package
    target: PublishTarget
    platform: str
    version: str
    channel: str
    timeout: Optional[float] = None

    def receipt(self, adapter: str, status: str, **kwargs) -> PublishReceipt:
        return PublishReceipt(
            adapter=adapter,
            status=status,
            package_id=self.package.package_id,
            platform=self.platform,
            version=self.version,
            channel=self.channel,
            **kwargs,
        )


class UploadAdapter(ABC):
    name: str

    @abstractmethod
    def upload(self, request: UploadRequest) -> PublishReceipt:
        ...


class NoOpAdapter(UploadAdapter):
    name = "noop"

    def upload(self, request: UploadRequest) -> PublishReceipt:
        return request.receipt(
            self.name,
            "skipped",
            url=request.target.repository,
            logs=[
                "NoOp adapter selected; skipping upload.",
                f"Package ready at {request.package.path}",
            ],
        )


class HttpRegistryAdapter(UploadAdapter):
    """``PUT`` the archive to ``<repository>/packages/<package_id>``.

    Platform, version and channel travel as query parameters. 2xx is
    success, 409 a duplicate version. Failing to connect is transient; a
    timeout after the payload was sent is not, since the registry may
    already have accepted it.
    """

    name = "http"

    def __init__(
        self,
        token: Optional[SecretHandle],
        *,
        session: Optional[Session] = None,
        default_timeout: float = 120.0,
    ) -> None:
        self._token = token
        self.session = session or requests.Session()
        self.default_timeout = default_timeout

    def endpoint(self, request: UploadRequest) -> str:
        return f"{request.target.repository.rstrip('/')}/packages/{request.package.package_id}"

    def upload(self, request: UploadRequest) -> PublishReceipt:
        if self._token is None:
            raise PublishError("Registry access token is not configured.")

        url = self.endpoint(request)
        params = {
            "platform": request.platform,
            "os_tag": _os_tag(request.platform),
            "version": request.version,
            "channel": request.channel,
        }
        headers = {
            "Authorization": f"Bearer {self._token.reveal()}",
            "Content-Type": "application/octet-stream",
            "X-Package-Sha256": request.package.sha256,
        }
        logger.info("Uploading %s to %s (%s)", request.package.path.name, url, params)
        try:
            with request.package.path.open("rb") as payload:
                response: Response = self.session.put(
                    url,
                    params=params,
                    data=payload,
                    headers=headers,
                    timeout=request.timeout or self.default_timeout,
                )
        except RequestsConnectionError as exc:
            raise PublishError(f"Registry unreachable: {exc}", transient=True) from exc
        except Timeout as exc:
            raise PublishError(f"Registry did not confirm upload: {exc}") from exc
        except RequestException as exc:
            raise PublishError(f"Upload failed: {exc}") from exc

        if response.status_code == 409:
            raise PublishError(
                f"{request.package.package_id} {request.version} ({request.platform}, {request.channel}) "
                "already exists in the repository.",
                conflict=True,
            )
        if not 200 <= response.status_code < 300:
            raise PublishError(
                f"Registry returned {response.status_code}: {response.text or response.reason}",
                transient=response.status_code in _RETRYABLE_STATUS,
            )

        return request.receipt(
            self.name,
            "succeeded",
            url=url,
            details={"status_code": response.status_code},
            logs=[f"Uploaded {request.package.path.name} to {url}"],
        )


def _os_tag(platform: str) -> str:
    resolved = resolve_platform(platform)
    return resolved.os_tag if resolved else platform


class CommandUploadAdapter(UploadAdapter):
    """Run an uploader CLI such as ``pahkat-uploader``.

    Placeholders: ``{archive}``, ``{manifest}``, ``{package_id}``,
    ``{platform}``, ``{version}``, ``{channel}``, ``{url}``. The token is
    exported as ``token_env`` for the uploader.
    """

    name = "command"

    def __init__(
        self,
        command: str,
        token: Optional[SecretHandle],
        *,
        token_env: str = "PAHKAT_API_KEY",
        runner: Optional[CommandRunner] = None,
    ) -> None:
        self.command = command
        self._token = token
        self.token_env = token_env
        self.runner = runner or CommandRunner()

    def render(self, request: UploadRequest) -> list[str]:
        replacements = {
            "archive": str(request.package.path),
            "manifest": str(request.package.manifest_path),
            "package_id": request.package.package_id,
            "platform": request.platform,
            "version": request.version,
            "channel": request.channel,
            "url": request.target.repository,
        }
        return shlex.split(self.command.format(**{key: shlex.quote(value) for key, value in replacements.items()}))

    def upload(self, request: UploadRequest) -> PublishReceipt:
        command = self.render(request)
        env: Dict[str, str] = {}
        if self._token is not None:
            env[self.token_env] = self._token.reveal()
        try:
            proc = self.runner.run(command, env=env, timeout=request.timeout)
        except CommandNotFound as exc:
            raise PublishError(str(exc)) from exc
        except CommandTimeout as exc:
            raise PublishError(f"Uploader did not confirm upload: {exc}") from exc
        if not proc.ok:
            raise PublishError(f"Upload command failed ({proc.returncode}): {proc.tail()}")

        logs = [f"Executed upload command: {' '.join(command)}"]
        if proc.stdout:
            logs.append(proc.stdout.strip())
        return request.receipt(
            self.name,
            "succeeded",
            url=request.target.repository,
            details={"returncode": proc.returncode},
            logs=logs,
        )


def build_adapter(
    name: str,
    token: Optional[SecretHandle],
    *,
    command: Optional[str] = None,
    token_env: Optional[str] = None,
    session: Optional[Session] = None,
    runner: Optional[CommandRunner] = None,
) -> UploadAdapter:
    lowered = (name or "noop").lower()
    if lowered in ("noop", "none"):
        return NoOpAdapter()
    if lowered in ("http", "registry"):
        return HttpRegistryAdapter(token, session=session)
    if lowered in ("cmd", "command"):
        if not command:
            raise ValueError("Command adapter requires a command template.")
        return CommandUploadAdapter(command, token, token_env=token_env or "PAHKAT_API_KEY", runner=runner)
    raise ValueError(f"Unknown publish adapter '{name}'")
