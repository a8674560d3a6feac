"""Built-in step actions.

Each action is a plain function ``(components, context) -> outputs``
registered under the name a step definition refers to with ``uses``.
Option keys are hyphenated, matching the YAML definitions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .build import CargoBuilder, BuildRequest
from .bundle import PackageRequest, TarballPackager
from .errors import PipelineError, ProvisionError
from .models import Artifact, Package, PublishTarget
from .pipeline import Action, StepContext
from .platforms import resolve_platform
from .publish import Publisher
from .signing import Signer
from .toolchain import DependencyProvisioner, RustupProvisioner, ToolchainSpec
from .versioning import (
    DEFAULT_NIGHTLY_CHANNEL,
    DEFAULT_STABLE_CHANNEL,
    is_semver,
    read_version,
    resolve_version,
    tag_version,
)

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """The collaborators a pipeline's actions work with.

    ``signer`` and ``publisher`` hold the only references to secrets.
    """

    provisioner: RustupProvisioner
    dependencies: DependencyProvisioner
    builder: CargoBuilder
    packager: TarballPackager
    signer: Optional[Signer] = None
    publisher: Optional[Publisher] = None


ActionFunc = Callable[[Components, StepContext], Mapping[str, object]]

_ACTIONS: Dict[str, ActionFunc] = {}


def register_action(name: str) -> Callable[[ActionFunc], ActionFunc]:
    def decorator(func: ActionFunc) -> ActionFunc:
        if name in _ACTIONS:
            raise ValueError(f"Action '{name}' already registered.")
        _ACTIONS[name] = func
        return func

    return decorator


def bind_action(uses: str, components: Components) -> Action:
    try:
        func = _ACTIONS[uses]
    except KeyError as exc:
        available = ", ".join(sorted(_ACTIONS))
        raise PipelineError(f"Unknown action '{uses}'. Available actions: {available}.") from exc
    return partial(func, components)


def list_actions() -> List[str]:
    return sorted(_ACTIONS)


@register_action("version")
def version_action(components: Components, context: StepContext) -> Mapping[str, object]:
    ref = context.get("ref", context.trigger.ref)
    stable_channel = str(context.get("stable-channel", DEFAULT_STABLE_CHANNEL))
    nightly_channel = str(context.get("nightly-channel", DEFAULT_NIGHTLY_CHANNEL))
    explicit = context.get("version")

    if explicit is not None:
        version = str(explicit)
        if not is_semver(version):
            raise PipelineError(f"Version '{version}' is not a valid semantic version.")
        default_channel = stable_channel if tag_version(ref) is not None else nightly_channel
        channel = str(context.get("channel", default_channel))
        return {"version": version, "channel": channel, "base_version": version, "source": "input"}

    manifest = context.path(context.get("manifest", "Cargo.toml"))
    try:
        base_version = read_version(manifest)
        info = resolve_version(
            base_version,
            ref=ref,
            stable_channel=stable_channel,
            nightly_channel=nightly_channel,
            source=manifest.name,
        )
    except (OSError, KeyError, ValueError) as exc:
        raise PipelineError(f"Unable to determine version from {manifest}: {exc}") from exc

    outputs = info.to_dict()
    override = context.get("channel")
    if override is not None:
        outputs["channel"] = str(override)
    logger.info("Resolved version %s (channel %s)", outputs["version"], outputs["channel"])
    return outputs


@register_action("dependencies")
def dependencies_action(components: Components, context: StepContext) -> Mapping[str, object]:
    result = components.dependencies.ensure(
        context.get_list("packages"),
        repo=context.get("repo"),
        channel=context.get("channel"),
        timeout=context.timeout,
        env=context.env,
    )
    return result.to_dict()


@register_action("toolchain")
def toolchain_action(components: Components, context: StepContext) -> Mapping[str, object]:
    target = context.get("target")
    if target is None:
        name = str(context.require("platform"))
        platform = resolve_platform(name)
        if platform is None:
            raise ProvisionError(f"Unknown target platform '{name}'.")
        target = platform.triple
    spec = ToolchainSpec(
        target=str(target),
        toolchain=str(context.get("toolchain", "stable")),
        profile=str(context.get("profile", "minimal")),
        components=tuple(context.get_list("components")),
    )
    result = components.provisioner.provision(spec, timeout=context.timeout, env=context.env)
    return {**result.to_dict(), "target": spec.target, "toolchain": spec.toolchain}


@register_action("build")
def build_action(components: Components, context: StepContext) -> Mapping[str, object]:
    request = BuildRequest(
        source_dir=context.path(context.get("source-dir", ".")),
        platform=str(context.require("platform")),
        binary=str(context.require("binary")),
        mode=str(context.get("mode", "release")),
        toolchain=context.get("toolchain"),
        features=tuple(context.get_list("features")),
        env=context.env,
    )
    artifact = components.builder.build(request, timeout=context.timeout)
    return {"artifact": artifact, "path": str(artifact.path), "name": artifact.name}


@register_action("stage")
def stage_action(components: Components, context: StepContext) -> Mapping[str, object]:
    staging_dir = context.path(context.get("staging-dir", "dist"))
    artifacts = _artifacts(context, context.require("artifacts"))
    staged = components.packager.stage(artifacts, staging_dir, copy=_flag(context.get("copy", False)))
    return {"artifacts": staged, "staging_dir": str(staging_dir)}


@register_action("sign")
def sign_action(components: Components, context: StepContext) -> Mapping[str, object]:
    if components.signer is None:
        raise PipelineError(f"Step '{context.name}' needs a signer but none is configured.")
    artifacts = _artifacts(context, context.require("artifacts"))
    signed = components.signer.sign(artifacts, timeout=context.timeout, env=context.env)
    return {"artifacts": signed}


@register_action("package")
def package_action(components: Components, context: StepContext) -> Mapping[str, object]:
    artifacts = _artifacts(context, context.get("artifacts", []))
    names = context.get_list("artifact-names") or [artifact.name for artifact in artifacts]
    request = PackageRequest(
        package_id=str(context.require("package-id")),
        version=str(context.require("version")),
        platform=str(context.require("platform")),
        channel=context.get("channel"),
        staging_dir=context.path(context.get("staging-dir", "dist")),
        artifact_names=names,
        artifacts=artifacts,
        output_dir=context.path(context.get("output-dir", "releases")),
    )
    package = components.packager.package(request)
    return {
        "package": package,
        "txz_path": str(package.path),
        "manifest_path": str(package.manifest_path),
        "sha256": package.sha256,
    }


@register_action("publish")
def publish_action(components: Components, context: StepContext) -> Mapping[str, object]:
    if components.publisher is None:
        raise PipelineError(f"Step '{context.name}' needs a publisher but none is configured.")
    package = context.require("package")
    if not isinstance(package, Package):
        raise PipelineError(f"Step '{context.name}' expects a package from an earlier step.")
    channel = str(context.get("channel", package.manifest.channel or ""))
    receipt = components.publisher.publish(
        package,
        PublishTarget(repository=str(context.require("repository")), channel=channel),
        platform=str(context.get("platform", package.manifest.platform)),
        version=str(context.get("version", package.manifest.version)),
        channel=channel,
        timeout=context.timeout,
    )
    return {"receipt": receipt, "status": receipt.status, "url": receipt.url}


def _artifacts(context: StepContext, value: object) -> List[Artifact]:
    if isinstance(value, Artifact):
        return [value]
    if isinstance(value, (str, Path)):
        value = [value]
    if not isinstance(value, Iterable):
        raise PipelineError(f"Step '{context.name}' got an invalid artifacts option: {value!r}")
    artifacts: List[Artifact] = []
    for item in value:
        if isinstance(item, Artifact):
            artifacts.append(item)
        else:
            path = context.path(item)
            artifacts.append(Artifact(name=path.name, path=path))
    return artifacts


def _flag(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
