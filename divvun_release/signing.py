"""Artifact code signing.

Signers receive their identity as a :class:`~divvun_release.secrets.SecretHandle`
at construction time. The secret is never written to pipeline outputs; the
command signer hands it to the signing tool through the subprocess
environment only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .errors import SigningError
from .models import Artifact
from .process import CommandNotFound, CommandRunner, CommandTimeout
from .secrets import SecretHandle

logger = logging.getLogger(__name__)


class Signer(ABC):
    name: str

    def __init__(self, identity: Optional[SecretHandle]) -> None:
        self._identity = identity

    def sign(
        self,
        artifacts: Iterable[Artifact],
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> List[Artifact]:
        if self._identity is None:
            raise SigningError(f"Signer '{self.name}' has no signing identity configured.")
        signed: List[Artifact] = []
        for artifact in artifacts:
            if not artifact.path.is_file():
                raise SigningError(f"Cannot sign '{artifact.name}': {artifact.path} does not exist.")
            signed.append(self._sign_one(artifact, self._identity, timeout, env or {}))
            logger.info("Signed %s with %s signer", artifact.path, self.name)
        return signed

    @abstractmethod
    def _sign_one(
        self,
        artifact: Artifact,
        identity: SecretHandle,
        timeout: Optional[float],
        env: Mapping[str, str],
    ) -> Artifact:
        ...


class CommandSigner(Signer):
    """Sign in place with an external tool (``signtool``, ``osslsigncode``...).

    ``command`` may use ``{path}`` and ``{name}``. The identity is exported
    as ``key_env`` for the tool to read.
    """

    name = "command"

    def __init__(
        self,
        command: str,
        identity: Optional[SecretHandle],
        *,
        key_env: str = "SIGNING_KEY",
        signature_suffix: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
    ) -> None:
        super().__init__(identity)
        self.command = command
        self.key_env = key_env
        self.signature_suffix = signature_suffix
        self.runner = runner or CommandRunner()

    def _sign_one(
        self,
        artifact: Artifact,
        identity: SecretHandle,
        timeout: Optional[float],
        env: Mapping[str, str],
    ) -> Artifact:
        command = shlex.split(
            self.command.format(path=shlex.quote(str(artifact.path)), name=shlex.quote(artifact.name))
        )
        try:
            proc = self.runner.run(command, env={**env, self.key_env: identity.reveal()}, timeout=timeout)
        except CommandNotFound as exc:
            raise SigningError(str(exc)) from exc
        except CommandTimeout as exc:
            raise SigningError(str(exc)) from exc
        if not proc.ok:
            raise SigningError(f"Signing '{artifact.name}' failed ({proc.returncode}): {proc.tail()}")

        signature = None
        if self.signature_suffix:
            signature = Path(f"{artifact.path}{self.signature_suffix}")
            if not signature.is_file():
                raise SigningError(f"Signing tool did not produce {signature}")
        return artifact.as_signed(signature)


class DigestSigner(Signer):
    """Write a detached HMAC-SHA256 signature next to each artifact as ``<path>.sig``."""

    name = "digest"

    def _sign_one(
        self,
        artifact: Artifact,
        identity: SecretHandle,
        timeout: Optional[float],
        env: Mapping[str, str],
    ) -> Artifact:
        mac = hmac.new(identity.reveal().encode("utf-8"), digestmod=hashlib.sha256)
        with artifact.path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                mac.update(chunk)
        signature = Path(f"{artifact.path}.sig")
        try:
            signature.write_text(mac.hexdigest() + "\n", encoding="utf-8")
        except OSError as exc:
            raise SigningError(f"Unable to write signature {signature}: {exc}") from exc
        return artifact.as_signed(signature)


def verify_digest(artifact_path: Path, identity: SecretHandle) -> bool:
    signature = Path(f"{artifact_path}.sig")
    if not signature.is_file():
        return False
    mac = hmac.new(identity.reveal().encode("utf-8"), artifact_path.read_bytes(), hashlib.sha256)
    return hmac.compare_digest(mac.hexdigest(), signature.read_text(encoding="utf-8").strip())


def build_signer(
    kind: str,
    identity: Optional[SecretHandle],
    *,
    command: Optional[str] = None,
    key_env: str = "SIGNING_KEY",
    signature_suffix: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
) -> Signer:
    lowered = (kind or "digest").lower()
    if lowered in ("digest", "hmac"):
        return DigestSigner(identity)
    if lowered in ("cmd", "command"):
        if not command:
            raise ValueError("Command signer requires a command template.")
        return CommandSigner(
            command,
            identity,
            key_env=key_env,
            signature_suffix=signature_suffix,
            runner=runner,
        )
    raise ValueError(f"Unknown signer '{kind}'")
