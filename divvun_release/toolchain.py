"""Toolchain and build dependency provisioning."""

from __future__ import annotations

import logging
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import ProvisionError
from .process import CommandNotFound, CommandResult, CommandRunner, CommandTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolchainSpec:
    target: str
    toolchain: str = "stable"
    profile: str = "minimal"
    components: Sequence[str] = ()


@dataclass(slots=True)
class ProvisionResult:
    status: str
    installed: List[str] = field(default_factory=list)
    present: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"status": self.status, "installed": self.installed, "present": self.present}


class RustupProvisioner:
    """Install a Rust toolchain, its components and a compile target via rustup.

    Every part is checked first and only missing parts are installed, so
    provisioning an already complete toolchain runs no install command.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, *, executable: str = "rustup") -> None:
        self.runner = runner or CommandRunner()
        self.executable = executable

    def provision(
        self,
        spec: ToolchainSpec,
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProvisionResult:
        result = ProvisionResult(status="present")
        toolchain = spec.toolchain
        call = {"timeout": timeout, "env": dict(env or {})}

        if self._has_toolchain(toolchain, **call):
            result.present.append(f"toolchain:{toolchain}")
        else:
            command = [self.executable, "toolchain", "install", toolchain, "--profile", spec.profile]
            for component in spec.components:
                command.extend(["--component", component])
            self._install(command, f"toolchain '{toolchain}'", **call)
            result.installed.append(f"toolchain:{toolchain}")

        installed_components = self._list(
            [self.executable, "component", "list", "--installed", "--toolchain", toolchain], **call
        )
        for component in spec.components:
            if any(line == component or line.startswith(f"{component}-") for line in installed_components):
                result.present.append(f"component:{component}")
                continue
            self._install(
                [self.executable, "component", "add", "--toolchain", toolchain, component],
                f"component '{component}'",
                **call,
            )
            result.installed.append(f"component:{component}")

        installed_targets = self._list(
            [self.executable, "target", "list", "--installed", "--toolchain", toolchain], **call
        )
        if spec.target in installed_targets:
            result.present.append(f"target:{spec.target}")
        else:
            self._install(
                [self.executable, "target", "add", "--toolchain", toolchain, spec.target],
                f"target '{spec.target}' for toolchain '{toolchain}'",
                **call,
            )
            result.installed.append(f"target:{spec.target}")

        if result.installed:
            result.status = "installed"
        logger.info(
            "Toolchain %s for %s: %s (installed=%s)",
            toolchain,
            spec.target,
            result.status,
            ", ".join(result.installed) or "none",
        )
        return result

    def _has_toolchain(self, toolchain: str, **call) -> bool:
        for line in self._list([self.executable, "toolchain", "list"], **call):
            name = line.split()[0]
            if name == toolchain or name.startswith(f"{toolchain}-"):
                return True
        return False

    def _list(self, command: List[str], **call) -> List[str]:
        proc = self._run(command, **call)
        if not proc.ok:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _install(self, command: List[str], label: str, **call) -> None:
        proc = self._run(command, **call)
        if not proc.ok:
            raise ProvisionError(f"Unable to install {label}: {proc.tail()}")

    def _run(
        self,
        command: List[str],
        *,
        timeout: Optional[float],
        env: Dict[str, str],
    ) -> CommandResult:
        try:
            return self.runner.run(command, env=env, timeout=timeout)
        except CommandNotFound as exc:
            raise ProvisionError(f"{self.executable} is not available: {exc}") from exc
        except CommandTimeout as exc:
            raise ProvisionError(str(exc), transient=True) from exc


class DependencyProvisioner:
    """Make sure build dependency tools are on ``PATH``.

    Tools already present are left alone. Missing tools are installed with
    ``install_command``, a template with ``{package}``, ``{repo}`` and
    ``{channel}`` placeholders.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        install_command: Optional[str] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.install_command = install_command
        self.which = which

    def ensure(
        self,
        packages: Iterable[str],
        *,
        repo: Optional[str] = None,
        channel: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProvisionResult:
        result = ProvisionResult(status="present")
        for package in packages:
            if self.which(package):
                result.present.append(package)
                continue
            if not self.install_command:
                raise ProvisionError(f"Build dependency '{package}' is missing and no install command is configured.")
            command = shlex.split(
                self.install_command.format(
                    package=shlex.quote(package),
                    repo=shlex.quote(repo or ""),
                    channel=shlex.quote(channel or ""),
                )
            )
            try:
                proc = self.runner.run(command, env=env, timeout=timeout)
            except CommandNotFound as exc:
                raise ProvisionError(str(exc)) from exc
            except CommandTimeout as exc:
                raise ProvisionError(str(exc), transient=True) from exc
            if not proc.ok:
                raise ProvisionError(f"Installing '{package}' failed: {proc.tail()}")
            if not self.which(package):
                raise ProvisionError(f"Build dependency '{package}' still missing after install.")
            result.installed.append(package)
            logger.info("Installed build dependency %s", package)

        if result.installed:
            result.status = "installed"
        return result
