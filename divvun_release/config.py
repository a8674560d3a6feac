"""Pipeline definitions: schema, YAML loading and wiring into an orchestrator."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator
from requests import Session

from .actions import Components, bind_action
from .build import CargoBuilder
from .bundle import TarballPackager
from .errors import PipelineError
from .pipeline import Orchestrator, Step
from .process import CommandRunner
from .publish import NoOpAdapter, Publisher, build_adapter
from .secrets import SecretHandle, SecretSpec, lookup_secret, register_secret
from .signing import build_signer
from .toolchain import DependencyProvisioner, RustupProvisioner

logger = logging.getLogger(__name__)


def _stringify_env(value: object) -> object:
    if isinstance(value, Mapping):
        return {str(key): "" if item is None else str(item) for key, item in value.items()}
    return value


EnvMapping = Annotated[Dict[str, str], BeforeValidator(_stringify_env)]


class InputSpec(BaseModel):
    """Describes a single pipeline input."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    default: Optional[Any] = None
    required: bool = False
    multiple: bool = False


class StepDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1)
    uses: str = Field(min_length=1)
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: EnvMapping = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=0.0, ge=0)


class ToolchainConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rustup: str = "rustup"
    cargo: str = "cargo"
    install_command: Optional[str] = None


class SignerConfig(BaseModel):
    """Signing backend. ``secret`` names the signing key to resolve."""

    model_config = ConfigDict(extra="forbid")

    kind: str = "digest"
    command: Optional[str] = None
    secret: str = "DIVVUN_KEY"
    key_env: str = "SIGNING_KEY"
    signature_suffix: Optional[str] = None

    def model_post_init(self, __context: MutableMapping[str, object]) -> None:  # type: ignore[override]
        register_secret(SecretSpec(name=self.secret, description="Code signing key", scopes=("sign",)))
        super().model_post_init(__context)


class PublisherConfig(BaseModel):
    """Upload adapter. ``secret`` names the repository access token to resolve."""

    model_config = ConfigDict(extra="forbid")

    adapter: str = "http"
    command: Optional[str] = None
    secret: str = "PAHKAT_API_KEY"
    token_env: Optional[str] = None

    def model_post_init(self, __context: MutableMapping[str, object]) -> None:  # type: ignore[override]
        register_secret(SecretSpec(name=self.secret, description="Package repository token", scopes=("publish",)))
        super().model_post_init(__context)


class ComponentsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    signer: Optional[SignerConfig] = None
    publisher: Optional[PublisherConfig] = None


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1)
    description: str = ""
    env: EnvMapping = Field(default_factory=dict)
    inputs: Dict[str, InputSpec] = Field(default_factory=dict)
    components: ComponentsConfig = Field(default_factory=ComponentsConfig)
    steps: List[StepDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_step_names(self) -> "PipelineDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name '{step.name}'")
            seen.add(step.name)
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "slug": self.slug,
            "description": self.description,
            "inputs": {name: spec.model_dump(exclude_none=True) for name, spec in self.inputs.items()},
            "steps": [{"name": step.name, "uses": step.uses} for step in self.steps],
        }


def load_definition(path: Path) -> PipelineDefinition:
    """Load a pipeline definition from a YAML file."""

    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise PipelineError(f"Unable to read pipeline definition {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PipelineError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise PipelineError(f"Pipeline definition {path} must be a mapping.")
    raw.setdefault("slug", Path(path).stem)
    try:
        return PipelineDefinition.model_validate(raw)
    except ValidationError as exc:
        raise PipelineError(f"Invalid pipeline definition {path}: {exc}") from exc


def _as_list(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item not in (None, "")]
    return [str(value)]


def resolve_inputs(definition: PipelineDefinition, provided: Mapping[str, List[str]]) -> Dict[str, object]:
    """Apply declared defaults to ``provided`` (repeated ``--input`` values).

    Single-valued inputs keep the last value given. Undeclared inputs are
    passed through, collapsed to a scalar when given once.
    """

    missing = [
        name
        for name, declared in definition.inputs.items()
        if declared.required and not _as_list(provided.get(name)) and declared.default is None
    ]
    if missing:
        raise ValueError(f"Missing required pipeline input '{missing[0]}' for '{definition.slug}'.")

    resolved: Dict[str, object] = {
        name: values[0] if len(values) == 1 else list(values)
        for name, values in provided.items()
        if name not in definition.inputs
    }
    for name, declared in definition.inputs.items():
        given = _as_list(provided.get(name))
        if declared.multiple:
            resolved[name] = given or _as_list(declared.default)
        else:
            resolved[name] = given[-1] if given else declared.default
    return resolved


def _secret(name: str, purpose: str) -> Optional[SecretHandle]:
    found = lookup_secret(name)
    if found.value is None:
        logger.warning(
            "Secret '%s' for %s not resolved. Checked resolvers: %s", name, purpose, found.summary()
        )
        return None
    return SecretHandle(name, found.value)


def build_components(
    definition: PipelineDefinition,
    *,
    dry_run: bool = False,
    runner: Optional[CommandRunner] = None,
    session: Optional[Session] = None,
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> Components:
    """Construct the pipeline's collaborators.

    Secrets are resolved here and handed only to the signer and the
    publisher. An unresolved secret does not fail construction; the
    component that needs it fails when its step runs.
    """

    runner = runner or CommandRunner()
    config = definition.components
    dependency_kwargs = {"which": which} if which is not None else {}

    signer = None
    if config.signer is not None:
        signer_config = config.signer
        try:
            signer = build_signer(
                signer_config.kind,
                _secret(signer_config.secret, "signing"),
                command=signer_config.command,
                key_env=signer_config.key_env,
                signature_suffix=signer_config.signature_suffix,
                runner=runner,
            )
        except ValueError as exc:
            raise PipelineError(str(exc)) from exc

    publisher = None
    if config.publisher is not None:
        publisher_config = config.publisher
        token = None if dry_run else _secret(publisher_config.secret, "publishing")
        try:
            adapter = build_adapter(
                publisher_config.adapter,
                token,
                command=publisher_config.command,
                token_env=publisher_config.token_env,
                session=session,
                runner=runner,
            )
        except ValueError as exc:
            raise PipelineError(str(exc)) from exc
        publisher = Publisher(adapter, dry_run=dry_run)
    elif dry_run:
        publisher = Publisher(NoOpAdapter(), dry_run=True)

    return Components(
        provisioner=RustupProvisioner(runner, executable=config.toolchain.rustup),
        dependencies=DependencyProvisioner(
            runner, install_command=config.toolchain.install_command, **dependency_kwargs
        ),
        builder=CargoBuilder(runner, executable=config.toolchain.cargo),
        packager=TarballPackager(),
        signer=signer,
        publisher=publisher,
    )


def build_orchestrator(
    definition: PipelineDefinition,
    components: Components,
    *,
    workspace_root: Optional[Path] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Orchestrator:
    steps = [
        Step(
            name=step.name,
            action=bind_action(step.uses, components),
            options=dict(step.with_),
            env=dict(step.env),
            uses=step.uses,
            timeout=step.timeout,
            retries=step.retries,
            retry_delay=step.retry_delay,
        )
        for step in definition.steps
    ]
    extra = {"sleep": sleep} if sleep is not None else {}
    return Orchestrator(
        steps,
        name=definition.slug,
        env=definition.env,
        workspace_root=workspace_root,
        **extra,
    )
