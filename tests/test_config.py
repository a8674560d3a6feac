from __future__ import annotations

from pathlib import Path

import pytest

from divvun_release.actions import Components, bind_action, list_actions
from divvun_release.build import CargoBuilder
from divvun_release.bundle import TarballPackager
from divvun_release.config import (
    PipelineDefinition,
    build_components,
    build_orchestrator,
    load_definition,
    resolve_inputs,
)
from divvun_release.errors import PipelineError, SigningError
from divvun_release.models import Artifact, TriggerEvent
from divvun_release.pipeline import Orchestrator, RunState, Step
from divvun_release.pipelines import get_pipeline, list_pipelines
from divvun_release.publish import HttpRegistryAdapter, NoOpAdapter
from divvun_release.signing import CommandSigner
from divvun_release.toolchain import DependencyProvisioner, RustupProvisioner

from .conftest import FakeRunner

EXAMPLE = Path(__file__).resolve().parents[1] / "pipelines" / "dotnet5-webinst.yaml"


def _definition(**overrides) -> PipelineDefinition:
    payload = {
        "slug": "demo",
        "inputs": {
            "package-id": {"required": True},
            "platform": {"default": "x86-windows"},
            "packages": {"multiple": True, "default": "pahkat-uploader"},
        },
        "steps": [{"name": "version", "uses": "version", "with": {"version": "1.2.3"}}],
    }
    payload.update(overrides)
    return PipelineDefinition.model_validate(payload)


def test_load_example_definition() -> None:
    definition = load_definition(EXAMPLE)

    assert definition.slug == "dotnet5-webinst"
    assert definition.env["CARGO_INCREMENTAL"] == "0"
    assert [step.name for step in definition.steps] == [
        "version",
        "dependencies",
        "toolchain",
        "build",
        "stage",
        "sign",
        "package",
        "deploy",
    ]
    build = definition.steps[3]
    assert build.env == {"RUSTC_BOOTSTRAP": "1"}
    assert definition.steps[2].with_["platform"] == "${{ inputs.platform }}"
    assert definition.components.signer.kind == "command"
    assert definition.components.publisher.adapter == "command"


def test_load_definition_uses_file_stem_as_slug(tmp_path: Path) -> None:
    path = tmp_path / "nightly.yaml"
    path.write_text("steps:\n  - name: version\n    uses: version\n", encoding="utf-8")

    assert load_definition(path).slug == "nightly"


def test_load_definition_rejects_duplicate_steps(tmp_path: Path) -> None:
    path = tmp_path / "dup.yaml"
    path.write_text(
        "steps:\n  - {name: build, uses: build}\n  - {name: build, uses: build}\n",
        encoding="utf-8",
    )

    with pytest.raises(PipelineError, match="Duplicate step name"):
        load_definition(path)


def test_load_definition_rejects_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("steps: [unclosed\n", encoding="utf-8")

    with pytest.raises(PipelineError, match="Invalid YAML"):
        load_definition(path)


def test_load_definition_rejects_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / "extra.yaml"
    path.write_text("runs-on: windows-latest\nsteps:\n  - {name: a, uses: version}\n", encoding="utf-8")

    with pytest.raises(PipelineError, match="Invalid pipeline definition"):
        load_definition(path)


def test_load_definition_missing_file(tmp_path: Path) -> None:
    with pytest.raises(PipelineError, match="Unable to read"):
        load_definition(tmp_path / "missing.yaml")


def test_resolve_inputs_defaults_and_required() -> None:
    definition = _definition()

    resolved = resolve_inputs(definition, {"package-id": ["dotnet5-webinst"], "extra": ["a", "b"]})

    assert resolved == {
        "package-id": "dotnet5-webinst",
        "platform": "x86-windows",
        "packages": ["pahkat-uploader"],
        "extra": ["a", "b"],
    }
    with pytest.raises(ValueError, match="Missing required pipeline input 'package-id'"):
        resolve_inputs(definition, {})


def test_build_orchestrator_rejects_unknown_action() -> None:
    definition = _definition(steps=[{"name": "x", "uses": "teleport"}])

    with pytest.raises(PipelineError, match="Unknown action 'teleport'"):
        build_orchestrator(definition, build_components(definition, runner=FakeRunner()))


def test_build_components_wires_secrets(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("DIVVUN_KEY", "signing-key-material")
    monkeypatch.setenv("PAHKAT_API_KEY", "repository-token-value")
    definition = load_definition(EXAMPLE)

    components = build_components(definition, runner=FakeRunner())

    assert isinstance(components.provisioner, RustupProvisioner)
    assert isinstance(components.dependencies, DependencyProvisioner)
    assert isinstance(components.signer, CommandSigner)
    assert components.signer.key_env == "DIVVUN_KEY"
    assert components.publisher.dry_run is False
    assert "signing-key-material" not in repr(components)
    assert {spec.name for spec in isolated_secrets.list_secrets()} >= {"DIVVUN_KEY", "PAHKAT_API_KEY"}


def test_unresolved_signing_secret_fails_at_sign_time(tmp_path: Path, isolated_secrets, monkeypatch) -> None:
    monkeypatch.delenv("MISSING_SIGNING_KEY", raising=False)
    definition = _definition(components={"signer": {"kind": "digest", "secret": "MISSING_SIGNING_KEY"}})
    components = build_components(definition, runner=FakeRunner())
    binary = tmp_path / "app.exe"
    binary.write_bytes(b"MZ")

    with pytest.raises(SigningError, match="no signing identity"):
        components.signer.sign([Artifact(name=binary.name, path=binary)])


def test_dry_run_uses_noop_publisher() -> None:
    definition = _definition(components={"publisher": {"adapter": "http"}})

    components = build_components(definition, dry_run=True, runner=FakeRunner())

    assert components.publisher.dry_run is True
    assert isinstance(components.publisher.adapter, HttpRegistryAdapter)

    bare = build_components(_definition(), dry_run=True, runner=FakeRunner())
    assert isinstance(bare.publisher.adapter, NoOpAdapter)


def test_invalid_component_config_raises() -> None:
    definition = _definition(components={"publisher": {"adapter": "ftp"}})

    with pytest.raises(PipelineError, match="Unknown publish adapter"):
        build_components(definition, runner=FakeRunner())


def test_builtin_pipeline_registered() -> None:
    slugs = [definition.slug for definition in list_pipelines()]

    assert "rust-windows-tarball" in slugs
    definition = get_pipeline("rust-windows-tarball")
    assert [step.uses for step in definition.steps] == [
        "version",
        "dependencies",
        "toolchain",
        "build",
        "stage",
        "sign",
        "package",
        "publish",
    ]
    with pytest.raises(KeyError, match="Available pipelines"):
        get_pipeline("nope")


def _components(runner: FakeRunner) -> Components:
    return Components(
        provisioner=RustupProvisioner(runner),
        dependencies=DependencyProvisioner(runner, which=lambda _: "/usr/bin/tool"),
        builder=CargoBuilder(runner),
        packager=TarballPackager(),
    )


def test_version_action_reads_manifest(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "x"\nversion = "1.2.3"\n', encoding="utf-8")
    definition = _definition(
        inputs={},
        steps=[{"name": "version", "uses": "version", "with": {"stable-channel": "beta"}}],
    )
    orchestrator = build_orchestrator(definition, _components(FakeRunner()), workspace_root=tmp_path)

    tagged = orchestrator.run(trigger=TriggerEvent(name="push", ref="refs/tags/v1.2.3"))
    branch = orchestrator.run(trigger=TriggerEvent(name="push", ref="refs/heads/main"))

    assert (tagged.version, tagged.channel) == ("1.2.3", "beta")
    assert branch.channel == "nightly"
    assert branch.version.startswith("1.2.3-nightly.")


def test_version_action_rejects_bad_version(tmp_path: Path) -> None:
    definition = _definition(inputs={}, steps=[{"name": "version", "uses": "version", "with": {"version": "v1"}}])
    run = build_orchestrator(definition, _components(FakeRunner()), workspace_root=tmp_path).run(
        trigger=TriggerEvent()
    )

    assert run.state is RunState.FAILED
    assert "semantic version" in run.reason


def test_sign_action_without_signer_fails(tmp_path: Path) -> None:
    action = bind_action("sign", _components(FakeRunner()))
    step = Step("sign", action, options={"artifacts": ["dist/bin/app.exe"]})

    run = Orchestrator([step], workspace_root=tmp_path).run(trigger=TriggerEvent())

    assert run.state is RunState.FAILED
    assert "needs a signer" in run.reason


def test_actions_registered() -> None:
    assert list_actions() == ["build", "dependencies", "package", "publish", "sign", "stage", "toolchain", "version"]
