"""Cargo release builds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .errors import BuildError
from .models import Artifact
from .platforms import resolve_platform
from .process import CommandNotFound, CommandRunner, CommandTimeout

logger = logging.getLogger(__name__)

BUILD_MODES = ("release", "debug")


@dataclass(slots=True)
class BuildRequest:
    source_dir: Path
    platform: str
    binary: str
    mode: str = "release"
    toolchain: Optional[str] = None
    features: Sequence[str] = ()
    env: Mapping[str, str] = field(default_factory=dict)


class CargoBuilder:
    """Invoke ``cargo build`` and locate the produced binary."""

    def __init__(self, runner: Optional[CommandRunner] = None, *, executable: str = "cargo") -> None:
        self.runner = runner or CommandRunner()
        self.executable = executable

    def command(self, request: BuildRequest, triple: str) -> list[str]:
        command = [self.executable]
        if request.toolchain:
            command.append(f"+{request.toolchain}")
        command.extend(["build", "--target", triple, "--bin", request.binary])
        if request.mode == "release":
            command.append("--release")
        if request.features:
            command.extend(["--features", ",".join(request.features)])
        return command

    def output_path(self, request: BuildRequest, triple: str, suffix: str) -> Path:
        return request.source_dir / "target" / triple / request.mode / f"{request.binary}{suffix}"

    def build(self, request: BuildRequest, *, timeout: Optional[float] = None) -> Artifact:
        if request.mode not in BUILD_MODES:
            raise BuildError(f"Unknown build mode '{request.mode}'. Expected one of: {', '.join(BUILD_MODES)}.")
        platform = resolve_platform(request.platform)
        if platform is None:
            raise BuildError(f"Unknown target platform '{request.platform}'.")
        if not request.source_dir.is_dir():
            raise BuildError(f"Source directory not found: {request.source_dir}")

        command = self.command(request, platform.triple)
        logger.info("Building %s for %s (%s)", request.binary, platform.triple, request.mode)
        try:
            proc = self.runner.run(command, cwd=request.source_dir, env=dict(request.env), timeout=timeout)
        except CommandNotFound as exc:
            raise BuildError(str(exc)) from exc
        except CommandTimeout as exc:
            raise BuildError(str(exc)) from exc
        if not proc.ok:
            raise BuildError(f"cargo build failed ({proc.returncode}): {proc.tail()}")

        output = self.output_path(request, platform.triple, platform.executable_suffix)
        if not output.is_file():
            raise BuildError(f"Build succeeded but no artifact found at {output}")
        logger.info("Built %s", output)
        return Artifact(name=output.name, path=output)

