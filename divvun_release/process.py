"""Subprocess execution shared by the release components."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class CommandTimeout(RuntimeError):
    """Raised when a command exceeds its timeout."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        super().__init__(f"Command timed out after {timeout}s: {' '.join(command)}")
        self.command = list(command)
        self.timeout = timeout


class CommandNotFound(RuntimeError):
    """Raised when the executable of a command does not exist."""


@dataclass(slots=True)
class CommandResult:
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 2000) -> str:
        """Return the end of stderr (or stdout) for error messages."""

        text = self.stderr.strip() or self.stdout.strip()
        return text[-limit:]

    def to_dict(self) -> Dict[str, object]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class CommandRunner:
    """Run commands with captured output.

    ``env`` is layered over the current process environment; per-call ``env``
    is layered over that. Components receive the runner through their
    constructor so tests can substitute a fake.
    """

    env: Mapping[str, str] = field(default_factory=dict)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        args = [str(part) for part in command]
        merged_env = os.environ.copy()
        merged_env.update(self.env)
        if env:
            merged_env.update(env)

        logger.debug("Running %s (cwd=%s)", " ".join(args), cwd or ".")
        try:
            proc = subprocess.run(
                args,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandNotFound(f"Executable not found: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(args, float(timeout or 0)) from exc

        result = CommandResult(
            command=args,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if result.stdout:
            logger.debug("stdout: %s", result.stdout.strip())
        if result.stderr:
            logger.debug("stderr: %s", result.stderr.strip())
        return result
