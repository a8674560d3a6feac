from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional

from requests import Session

from .config import PipelineDefinition, build_components, build_orchestrator
from .models import TriggerEvent
from .pipeline import PipelineRun
from .process import CommandRunner

_PIPELINES: Dict[str, PipelineDefinition] = {}


def register_pipeline(definition: PipelineDefinition) -> None:
    if definition.slug in _PIPELINES:
        raise ValueError(f"Pipeline '{definition.slug}' already registered.")
    _PIPELINES[definition.slug] = definition


def get_pipeline(slug: str) -> PipelineDefinition:
    try:
        return _PIPELINES[slug]
    except KeyError as exc:
        available = ", ".join(sorted(_PIPELINES))
        raise KeyError(f"Unknown pipeline slug '{slug}'. Available pipelines: {available}.") from exc


def list_pipelines() -> Iterable[PipelineDefinition]:
    return _PIPELINES.values()


def run_pipeline(
    definition: PipelineDefinition,
    *,
    inputs: Optional[Mapping[str, object]] = None,
    workspace_root: Optional[Path] = None,
    dry_run: bool = False,
    trigger: Optional[TriggerEvent] = None,
    runner: Optional[CommandRunner] = None,
    session: Optional[Session] = None,
    which: Optional[Callable[[str], Optional[str]]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> PipelineRun:
    """Wire components for ``definition`` and execute it once."""

    components = build_components(definition, dry_run=dry_run, runner=runner, session=session, which=which)
    orchestrator = build_orchestrator(definition, components, workspace_root=workspace_root, sleep=sleep)
    return orchestrator.run(trigger=trigger, inputs=inputs)


RUST_WINDOWS_TARBALL = PipelineDefinition.model_validate(
    {
        "slug": "rust-windows-tarball",
        "description": "Build a Rust binary for Windows, sign it, package it as .txz and publish it.",
        "env": {
            "CARGO_INCREMENTAL": "0",
            "RUSTUP_MAX_RETRIES": "10",
            "CARGO_NET_RETRY": "10",
            "RUST_BACKTRACE": "full",
        },
        "inputs": {
            "package-id": {"description": "Package identifier in the repository", "required": True},
            "binary": {"description": "Cargo binary target to build", "required": True},
            "platform": {"description": "Target platform", "default": "x86-windows"},
            "version": {"description": "Explicit version; read from Cargo.toml when omitted"},
            "channel": {"description": "Release channel override"},
            "stable-channel": {"description": "Channel for tagged releases", "default": "beta"},
            "repository": {
                "description": "Package repository URL",
                "default": "https://pahkat.thetc.se/devtools/",
            },
            "source-dir": {"description": "Cargo project directory", "default": "."},
            "dependencies": {"description": "Build tools that must be on PATH", "multiple": True},
        },
        "components": {
            "signer": {"kind": "digest", "secret": "DIVVUN_KEY"},
            "publisher": {"adapter": "http", "secret": "PAHKAT_API_KEY"},
        },
        "steps": [
            {
                "name": "version",
                "uses": "version",
                "with": {
                    "version": "${{ inputs.version }}",
                    "channel": "${{ inputs.channel }}",
                    "manifest": "${{ inputs.source-dir }}/Cargo.toml",
                    "stable-channel": "${{ inputs.stable-channel }}",
                },
            },
            {
                "name": "dependencies",
                "uses": "dependencies",
                "with": {"packages": "${{ inputs.dependencies }}"},
                "retries": 2,
                "retry_delay": 5,
            },
            {
                "name": "toolchain",
                "uses": "toolchain",
                "with": {
                    "platform": "${{ inputs.platform }}",
                    "toolchain": "stable",
                    "profile": "minimal",
                    "components": ["rustfmt"],
                },
                "timeout": 900,
                "retries": 2,
                "retry_delay": 10,
            },
            {
                "name": "build",
                "uses": "build",
                "with": {
                    "platform": "${{ inputs.platform }}",
                    "binary": "${{ inputs.binary }}",
                    "source-dir": "${{ inputs.source-dir }}",
                },
                "env": {"RUSTC_BOOTSTRAP": "1"},
            },
            {
                "name": "stage",
                "uses": "stage",
                "with": {"artifacts": "${{ steps.build.outputs.artifact }}", "staging-dir": "dist"},
            },
            {
                "name": "sign",
                "uses": "sign",
                "with": {"artifacts": "${{ steps.stage.outputs.artifacts }}"},
                "timeout": 300,
            },
            {
                "name": "package",
                "uses": "package",
                "with": {
                    "package-id": "${{ inputs.package-id }}",
                    "version": "${{ steps.version.outputs.version }}",
                    "channel": "${{ steps.version.outputs.channel }}",
                    "platform": "${{ inputs.platform }}",
                    "artifacts": "${{ steps.sign.outputs.artifacts }}",
                    "staging-dir": "dist",
                    "output-dir": "releases",
                },
            },
            {
                "name": "publish",
                "uses": "publish",
                "with": {
                    "package": "${{ steps.package.outputs.package }}",
                    "repository": "${{ inputs.repository }}",
                    "platform": "${{ inputs.platform }}",
                    "version": "${{ steps.version.outputs.version }}",
                    "channel": "${{ steps.version.outputs.channel }}",
                },
                "timeout": 300,
                "retries": 2,
                "retry_delay": 10,
            },
        ],
    }
)

register_pipeline(RUST_WINDOWS_TARBALL)
