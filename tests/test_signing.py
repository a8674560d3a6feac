from __future__ import annotations

import logging
from pathlib import Path

import pytest

from divvun_release.errors import SigningError
from divvun_release.models import Artifact
from divvun_release.process import CommandResult, CommandTimeout
from divvun_release.secrets import SecretHandle
from divvun_release.signing import CommandSigner, DigestSigner, build_signer, verify_digest

from .conftest import FakeRunner

KEY = "divvun-signing-key-0123456789"


def _artifact(tmp_path: Path) -> Artifact:
    path = tmp_path / "dist" / "bin" / "dotnet5-webinst.exe"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"MZ binary")
    return Artifact(name=path.name, path=path)


def test_digest_signer_writes_detached_signature(tmp_path: Path, isolated_secrets) -> None:
    identity = SecretHandle("DIVVUN_KEY", KEY)
    artifact = _artifact(tmp_path)

    signed = DigestSigner(identity).sign([artifact])

    assert signed[0].signed is True
    assert signed[0].signature == Path(f"{artifact.path}.sig")
    assert signed[0].origin == artifact.path
    assert verify_digest(artifact.path, identity)
    assert not verify_digest(artifact.path, SecretHandle("OTHER", "another-key-value"))


def test_signer_without_identity_fails(tmp_path: Path) -> None:
    with pytest.raises(SigningError, match="no signing identity"):
        DigestSigner(None).sign([_artifact(tmp_path)])


def test_signer_missing_file_fails(tmp_path: Path, isolated_secrets) -> None:
    signer = DigestSigner(SecretHandle("DIVVUN_KEY", KEY))

    with pytest.raises(SigningError, match="does not exist"):
        signer.sign([Artifact(name="gone.exe", path=tmp_path / "gone.exe")])


def test_command_signer_passes_key_through_env_only(tmp_path: Path, isolated_secrets, caplog) -> None:
    runner = FakeRunner()
    signer = CommandSigner(
        "osslsigncode-sign --in {path}",
        SecretHandle("DIVVUN_KEY", KEY),
        key_env="DIVVUN_KEY",
        runner=runner,
    )
    artifact = _artifact(tmp_path)

    with caplog.at_level(logging.DEBUG):
        signed = signer.sign([artifact], timeout=30, env={"RUST_BACKTRACE": "full"})

    assert signed[0].signed is True
    call = runner.calls[0]
    assert call["command"] == ["osslsigncode-sign", "--in", str(artifact.path)]
    assert call["env"] == {"RUST_BACKTRACE": "full", "DIVVUN_KEY": KEY}
    assert call["timeout"] == 30
    assert KEY not in " ".join(call["command"])
    assert KEY not in caplog.text


def test_command_signer_failure(tmp_path: Path, isolated_secrets) -> None:
    runner = FakeRunner(lambda args, **_: CommandResult(command=args, returncode=1, stderr="certificate expired"))
    signer = CommandSigner("sign {path}", SecretHandle("DIVVUN_KEY", KEY), runner=runner)

    with pytest.raises(SigningError, match="certificate expired"):
        signer.sign([_artifact(tmp_path)])


def test_command_signer_timeout(tmp_path: Path, isolated_secrets) -> None:
    def handler(args, **_):
        raise CommandTimeout(args, 10)

    signer = CommandSigner("sign {path}", SecretHandle("DIVVUN_KEY", KEY), runner=FakeRunner(handler))

    with pytest.raises(SigningError) as excinfo:
        signer.sign([_artifact(tmp_path)], timeout=10)
    assert excinfo.value.transient is False


def test_command_signer_checks_signature_file(tmp_path: Path, isolated_secrets) -> None:
    signer = CommandSigner(
        "sign {path}",
        SecretHandle("DIVVUN_KEY", KEY),
        signature_suffix=".p7s",
        runner=FakeRunner(),
    )

    with pytest.raises(SigningError, match=r"\.p7s"):
        signer.sign([_artifact(tmp_path)])


def test_secret_handle_is_redacted(isolated_secrets) -> None:
    handle = SecretHandle("DIVVUN_KEY", KEY)

    assert KEY not in repr(handle)
    assert KEY not in str(handle)
    assert KEY not in f"{handle}"
    assert handle.reveal() == KEY


def test_build_signer_variants(isolated_secrets) -> None:
    identity = SecretHandle("DIVVUN_KEY", KEY)

    assert isinstance(build_signer("digest", identity), DigestSigner)
    assert isinstance(build_signer("command", identity, command="sign {path}"), CommandSigner)
    with pytest.raises(ValueError):
        build_signer("command", identity)
    with pytest.raises(ValueError, match="Unknown signer"):
        build_signer("gpg", identity)
