from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

import divvun_release.secrets as secrets
from divvun_release.process import CommandResult

RUSTUP_TOOLCHAINS = "stable-x86_64-unknown-linux-gnu (default)\n"
RUSTUP_COMPONENTS = "cargo-x86_64-unknown-linux-gnu\nrustfmt-x86_64-unknown-linux-gnu\n"
RUSTUP_TARGETS = "x86_64-unknown-linux-gnu\ni686-pc-windows-msvc\n"


class FakeRunner:
    """Records commands instead of running them.

    ``handler`` may return a :class:`CommandResult` (or raise) for a
    command; anything it does not handle succeeds with empty output.
    """

    def __init__(self, handler: Optional[Callable[..., Optional[CommandResult]]] = None) -> None:
        self.handler = handler
        self.calls: List[Dict[str, object]] = []

    def run(self, command: Sequence[str], *, cwd=None, env=None, timeout=None) -> CommandResult:
        args = [str(part) for part in command]
        self.calls.append({"command": args, "cwd": cwd, "env": dict(env or {}), "timeout": timeout})
        if self.handler is not None:
            result = self.handler(args, cwd=cwd, env=env)
            if result is not None:
                return result
        return CommandResult(command=args, returncode=0)

    @property
    def commands(self) -> List[List[str]]:
        return [call["command"] for call in self.calls]


def rustup_handler(
    *,
    toolchains: str = RUSTUP_TOOLCHAINS,
    components: str = RUSTUP_COMPONENTS,
    targets: str = RUSTUP_TARGETS,
) -> Callable[..., Optional[CommandResult]]:
    def handler(args: List[str], **_) -> Optional[CommandResult]:
        if args[:3] == ["rustup", "toolchain", "list"]:
            return CommandResult(command=args, returncode=0, stdout=toolchains)
        if args[:3] == ["rustup", "component", "list"]:
            return CommandResult(command=args, returncode=0, stdout=components)
        if args[:3] == ["rustup", "target", "list"]:
            return CommandResult(command=args, returncode=0, stdout=targets)
        return None

    return handler


def cargo_handler(binary: str, triple: str = "i686-pc-windows-msvc", suffix: str = ".exe"):
    """Pretend ``cargo build`` succeeded by writing the expected binary."""

    def handler(args: List[str], *, cwd=None, **_) -> Optional[CommandResult]:
        if args and args[0] == "cargo":
            output = Path(cwd) / "target" / triple / "release" / f"{binary}{suffix}"
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"MZ" + binary.encode("utf-8"))
            return CommandResult(command=args, returncode=0, stdout="Finished release")
        return None

    return handler


def chain(*handlers):
    def handler(args, **kwargs):
        for item in handlers:
            result = item(args, **kwargs)
            if result is not None:
                return result
        return None

    return handler


class FakeResponse:
    def __init__(self, status_code: int = 201, text: str = "", reason: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.reason = reason


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response or FakeResponse()
        self.error = error
        self.calls: List[Dict[str, object]] = []

    def put(self, url, *, params=None, data=None, headers=None, timeout=None):
        self.calls.append(
            {
                "url": url,
                "params": dict(params or {}),
                "body": data.read() if data is not None else b"",
                "headers": dict(headers or {}),
                "timeout": timeout,
            }
        )
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture()
def isolated_secrets(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(secrets, "_secret_specs", {})
    monkeypatch.setattr(secrets, "_resolvers", [])
    monkeypatch.setattr(secrets, "_masked_values", set())
    secrets.register_resolver(secrets.EnvResolver(), priority=0)
    return secrets
