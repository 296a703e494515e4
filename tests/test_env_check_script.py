"""Tests for the environment validation and fingerprint drift script."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from scripts import check_env

MANAGED_ENV_KEYS = [
    "PAYMENTS_WEBHOOK_SECRET",
    "MARKETPLACE_CLIENT_ID",
    "MARKETPLACE_CLIENT_SECRET",
    "MARKETPLACE_REDIRECT_URI",
    "MARKETPLACE_AUTH_URL",
    "MARKETPLACE_TOKEN_URL",
    "PAYMENTS_ACCESS_TOKEN",
    "PAYMENTS_OAUTH_ACCOUNT_ID",
    "TOKEN_ENCRYPTION_SECRET",
    "ADMIN_API_TOKEN",
    "WEBHOOK_SIGNATURE_STRATEGIES",
]

COMPLETE_ENV = {
    "PAYMENTS_WEBHOOK_SECRET": "whsec_live",
    "MARKETPLACE_CLIENT_ID": "client-id",
    "MARKETPLACE_CLIENT_SECRET": "client-secret",
    "MARKETPLACE_REDIRECT_URI": "https://bridge.example.com/api/auth/marketplace/callback",
    "MARKETPLACE_AUTH_URL": "https://auth.marketplace.example/authorization",
    "MARKETPLACE_TOKEN_URL": "https://api.marketplace.example/oauth/token",
    "PAYMENTS_ACCESS_TOKEN": "payments-token",
    "TOKEN_ENCRYPTION_SECRET": "encryption-secret",
    "ADMIN_API_TOKEN": "admin-token",
}


def _write_env(env_path: Path, **values: str) -> None:
    contents = "\n".join(f"{key}={value}" for key, value in values.items())
    env_path.write_text(contents + "\n", encoding="utf-8")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so teardown also removes values the script loads into os.environ.
    for key in MANAGED_ENV_KEYS:
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)


def _clear_loaded_env() -> None:
    for key in MANAGED_ENV_KEYS:
        os.environ.pop(key, None)


@pytest.mark.parametrize("command", ["record", "verify", "check"])
def test_main_requires_existing_env_file(tmp_path: Path, command: str) -> None:
    env_file = tmp_path / ".missing-env"
    hash_file = tmp_path / ".env.fingerprint"

    argv = [command, "--env-file", str(env_file)]
    if command != "check":
        argv.extend(["--hash-file", str(hash_file)])

    exit_code = check_env.main(argv)
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_record_and_verify_detects_changed_value(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.fingerprint"
    _write_env(env_file, **COMPLETE_ENV)

    exit_code = check_env.main(
        ["record", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK
    baseline = hash_file.read_text(encoding="utf-8").strip()
    assert baseline

    _clear_loaded_env()
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK

    _clear_loaded_env()
    _write_env(env_file, **{**COMPLETE_ENV, "PAYMENTS_WEBHOOK_SECRET": "rotated"})
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_CHECKSUM_ERROR
    assert hash_file.read_text(encoding="utf-8").strip() == baseline


def test_verify_without_baseline_is_a_runtime_error(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    _write_env(env_file, **COMPLETE_ENV)

    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(tmp_path / "absent")]
    )
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_missing_webhook_secret_fails_validation(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    env_file = tmp_path / ".env"
    values = {k: v for k, v in COMPLETE_ENV.items() if k != "PAYMENTS_WEBHOOK_SECRET"}
    _write_env(env_file, **values)

    exit_code = check_env.main(["check", "--env-file", str(env_file)])

    assert exit_code == check_env.EXIT_VALIDATION_ERROR
    assert "PAYMENTS_WEBHOOK_SECRET" in capsys.readouterr().err


def test_unknown_signature_strategy_fails_validation(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    _write_env(env_file, **COMPLETE_ENV, WEBHOOK_SIGNATURE_STRATEGIES="data_id,guesswork")

    exit_code = check_env.main(["check", "--env-file", str(env_file)])

    assert exit_code == check_env.EXIT_VALIDATION_ERROR


def test_warnings_only_fail_in_strict_mode(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    env_file = tmp_path / ".env"
    values = {k: v for k, v in COMPLETE_ENV.items() if k != "ADMIN_API_TOKEN"}
    _write_env(env_file, **values)

    assert check_env.main(["check", "--env-file", str(env_file)]) == check_env.EXIT_OK
    assert "ADMIN_API_TOKEN is not set" in capsys.readouterr().err

    _clear_loaded_env()
    exit_code = check_env.main(["check", "--env-file", str(env_file), "--strict"])
    assert exit_code == check_env.EXIT_WARNINGS


def test_complete_configuration_has_no_warnings(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    _write_env(env_file, **COMPLETE_ENV)

    settings = check_env._load_settings(env_file)

    assert check_env.collect_warnings(settings) == []


def test_comment_and_ordering_edits_keep_fingerprint(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.fingerprint"
    _write_env(env_file, **COMPLETE_ENV)
    assert check_env.main(
        ["record", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    ) == check_env.EXIT_OK

    reordered = "\n".join(f"{k}={v}" for k, v in reversed(list(COMPLETE_ENV.items())))
    env_file.write_text("# rotated by ops\n" + reordered + "\n\n", encoding="utf-8")

    _clear_loaded_env()
    assert check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    ) == check_env.EXIT_OK


def test_drift_report_names_keys_without_values(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.fingerprint"
    _write_env(env_file, **COMPLETE_ENV)
    check_env.main(["record", "--env-file", str(env_file), "--hash-file", str(hash_file)])
    capsys.readouterr()

    changed = {k: v for k, v in COMPLETE_ENV.items() if k != "ADMIN_API_TOKEN"}
    changed["TOKEN_ENCRYPTION_SECRET"] = "brand-new-secret"
    _write_env(env_file, **changed, PAYMENTS_OAUTH_ACCOUNT_ID="acct-7")

    _clear_loaded_env()
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )

    err = capsys.readouterr().err
    assert exit_code == check_env.EXIT_CHECKSUM_ERROR
    assert "added: PAYMENTS_OAUTH_ACCOUNT_ID" in err
    assert "removed: ADMIN_API_TOKEN" in err
    assert "changed: TOKEN_ENCRYPTION_SECRET" in err
    assert "brand-new-secret" not in err


def test_unreadable_baseline_is_a_runtime_error(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.fingerprint"
    _write_env(env_file, **COMPLETE_ENV)
    hash_file.write_text("3f1c0a\n", encoding="utf-8")

    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )

    assert exit_code == check_env.EXIT_RUNTIME_ERROR
