"""Pre-deploy check of the bridge's ``.env`` file.

``check`` loads ``AppSettings`` from the file and lints values that load but
misbehave at runtime (unknown signature strategies, a quoted webhook secret,
no admin token, no dedicated token encryption secret).

``record`` and ``verify`` additionally keep a fingerprint baseline: one SHA-256
digest per key, stored as JSON. Comment and ordering edits leave the baseline
intact; a changed, added or removed key is reported by name only, so the
output is safe to paste into a deploy log::

    python -m scripts.check_env record --env-file /srv/bridge/.env \
        --hash-file /srv/bridge/.env.fingerprint

    python -m scripts.check_env verify --env-file /srv/bridge/.env \
        --hash-file /srv/bridge/.env.fingerprint --strict
"""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from marketplace_bridge.core.config import AppSettings, _load_env_file
from marketplace_bridge.core.errors import ConfigurationError
from marketplace_bridge.services.signature import SignatureVerifier, normalize_secret

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_WARNINGS = 4
EXIT_RUNTIME_ERROR = 5

FINGERPRINT_VERSION = 1


def _read_pairs(env_file: Path) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for raw in env_file.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def fingerprint(env_file: Path) -> dict[str, str]:
    """Map every key in ``env_file`` to a digest of its assignment."""
    return {
        key: hashlib.sha256(f"{key}={value}".encode("utf-8")).hexdigest()
        for key, value in sorted(_read_pairs(env_file).items())
    }


def diff_fingerprints(baseline: dict[str, str], current: dict[str, str]) -> dict[str, list[str]]:
    return {
        "added": sorted(current.keys() - baseline.keys()),
        "removed": sorted(baseline.keys() - current.keys()),
        "changed": sorted(
            key for key in baseline.keys() & current.keys() if baseline[key] != current[key]
        ),
    }


def _load_settings(env_file: Path) -> AppSettings:
    """Load settings from ``env_file``; raises ``ValidationError`` on missing values."""
    _load_env_file(str(env_file))
    return AppSettings(_env_file=str(env_file))  # type: ignore[call-arg]


def collect_warnings(settings: AppSettings) -> list[str]:
    """Return human-readable problems with settings that loaded successfully."""
    warnings: list[str] = []
    secret = settings.webhook.shared_secret
    if normalize_secret(secret) != secret:
        warnings.append(
            "PAYMENTS_WEBHOOK_SECRET carries surrounding quotes or whitespace; "
            "it is normalized at runtime but should be cleaned up."
        )
    if not settings.security.admin_api_token:
        warnings.append("ADMIN_API_TOKEN is not set; admin webhook endpoints will answer 503.")
    if not settings.security.token_encryption_secret:
        warnings.append(
            "TOKEN_ENCRYPTION_SECRET is not set; stored tokens are encrypted with "
            "a key derived from MARKETPLACE_CLIENT_SECRET."
        )
    if not settings.payments.access_token and not settings.payments.account_id:
        warnings.append(
            "Neither PAYMENTS_ACCESS_TOKEN nor PAYMENTS_OAUTH_ACCOUNT_ID is set; "
            "payment notifications cannot be resolved."
        )
    return warnings


def _validate(env_file: Path) -> AppSettings:
    settings = _load_settings(env_file)
    # Constructing the verifier rejects unknown strategy names.
    SignatureVerifier(
        strategies=settings.webhook.signature_strategies,
        timestamp_tolerance_seconds=settings.webhook.timestamp_tolerance_seconds,
    )
    return settings


def record(env_file: Path, hash_file: Path) -> int:
    keys = fingerprint(env_file)
    document = {"version": FINGERPRINT_VERSION, "keys": keys}
    hash_file.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    print(f"Stored fingerprint of {len(keys)} keys in {hash_file}")
    return EXIT_OK


def verify(env_file: Path, hash_file: Path) -> int:
    if not hash_file.is_file():
        print(f"No fingerprint at {hash_file}; run 'record' first.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR
    try:
        baseline = json.loads(hash_file.read_text(encoding="utf-8"))["keys"]
    except (ValueError, KeyError, TypeError):
        print(f"{hash_file} is not a fingerprint written by 'record'.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    drift = diff_fingerprints(baseline, fingerprint(env_file))
    if not any(drift.values()):
        print(f"{env_file} matches its recorded fingerprint.")
        return EXIT_OK
    print(f"{env_file} drifted from {hash_file}:", file=sys.stderr)
    for kind, keys in drift.items():
        for key in keys:
            print(f"  {kind}: {key}", file=sys.stderr)
    return EXIT_CHECKSUM_ERROR


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", type=Path, default=Path(".env"))
    common.add_argument(
        "--strict", action="store_true", help="treat configuration warnings as failures"
    )
    with_baseline = argparse.ArgumentParser(add_help=False, parents=[common])
    with_baseline.add_argument("--hash-file", type=Path, required=True)

    parser = argparse.ArgumentParser(prog="check_env", description=__doc__.splitlines()[0])
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("check", parents=[common], help="validate settings only")
    commands.add_parser("record", parents=[with_baseline], help="validate and store a fingerprint")
    commands.add_parser("verify", parents=[with_baseline], help="validate and compare fingerprints")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file
    if not env_file.is_file():
        print(f"{env_file}: no such environment file", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    try:
        settings = _validate(env_file)
    except ValidationError as exc:
        print(f"{env_file} failed validation:", file=sys.stderr)
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"])
            print(f"  {location}: {error['msg']}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except ConfigurationError as exc:
        print(f"{env_file} failed validation: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR

    warnings = collect_warnings(settings)
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)

    if args.command == "record":
        result = record(env_file, args.hash_file)
    elif args.command == "verify":
        result = verify(env_file, args.hash_file)
    else:
        result = EXIT_OK

    if result == EXIT_OK and warnings and args.strict:
        return EXIT_WARNINGS
    return result


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
