from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

import divvun_release.secrets as secrets


def _dotenv(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "release.env"
    path.write_text(content, encoding="utf-8")
    return path


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("DIVVUN_KEY", "from-env")
    isolated_secrets.use_dotenv(_dotenv(tmp_path, "DIVVUN_KEY=from-file\n"))

    lookup = isolated_secrets.lookup_secret("DIVVUN_KEY")

    assert lookup.value == "from-env"
    assert lookup.resolver == "env"
    assert len(lookup.attempts) == 1


def test_dotenv_fallback_records_attempts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("PAHKAT_API_KEY", raising=False)
    path = _dotenv(tmp_path, 'PAHKAT_API_KEY="quoted-token"  # trailing comment\n')
    isolated_secrets.use_dotenv(path)

    lookup = isolated_secrets.lookup_secret("PAHKAT_API_KEY")

    assert lookup.value == "quoted-token"
    assert lookup.source == "dotenv"
    assert lookup.details["path"] == str(path)
    assert [(attempt.source, attempt.success) for attempt in lookup.attempts] == [("env", False), ("dotenv", True)]
    assert lookup.summary() == f"env (missing), dotenv@{path} (resolved)"
    assert "quoted-token" not in repr(lookup)


def test_dotenv_values_stay_out_of_environ(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("SIGNING_ONLY", raising=False)
    isolated_secrets.use_dotenv(_dotenv(tmp_path, "SIGNING_ONLY=kept-private\n"))

    handle = isolated_secrets.resolve_handle("SIGNING_ONLY")

    assert handle is not None and handle.reveal() == "kept-private"
    assert "SIGNING_ONLY" not in os.environ


def test_unresolved_secret(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("NOWHERE", raising=False)
    path = _dotenv(tmp_path, "NOT_A_PAIR\n")
    isolated_secrets.use_dotenv(path)

    assert isolated_secrets.resolve_handle("NOWHERE") is None
    described = isolated_secrets.describe_secret("NOWHERE")
    assert described["present"] is False
    assert described["resolver"] is None
    assert [attempt["source"] for attempt in described["attempts"]] == ["env", "dotenv"]
    assert isolated_secrets.lookup_secret("NOWHERE").summary() == f"env (missing), dotenv@{path} (missing)"


def test_handle_never_prints_value(isolated_secrets) -> None:
    handle = secrets.SecretHandle("DIVVUN_KEY", "s3cr3t-key")

    assert str(handle) == "***"
    assert "s3cr3t-key" not in repr(handle)
    assert f"key={handle}" == "key=***"
    with pytest.raises(ValueError, match="empty"):
        secrets.SecretHandle("DIVVUN_KEY", "")


def test_mask_filter_rewrites_records(isolated_secrets) -> None:
    handle = secrets.SecretHandle("PAHKAT_API_KEY", "tok-1234567890")
    record = logging.LogRecord(
        "divvun_release.publish", logging.INFO, __file__, 1, "Authorization: Bearer %s", (handle.reveal(),), None
    )

    assert secrets.SecretMaskFilter().filter(record) is True
    assert record.getMessage() == "Authorization: Bearer ***"
    assert secrets.mask_text("curl -H 'token: tok-1234567890'") == "curl -H 'token: ***'"


def test_registered_secrets_keep_first_description(isolated_secrets) -> None:
    isolated_secrets.register_secret(secrets.SecretSpec(name="DIVVUN_KEY", description="Code signing key"))
    isolated_secrets.register_secret(secrets.SecretSpec(name="DIVVUN_KEY", description="ignored"))

    assert [(spec.name, spec.description) for spec in isolated_secrets.list_secrets()] == [
        ("DIVVUN_KEY", "Code signing key")
    ]
