try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from datetime import timedelta

import pytest

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.models.oauth import ReauthReason, TokenGrant
from marketplace_bridge.services.token_cipher import TokenCipherService
from marketplace_bridge.services.token_store import TokenStore


@pytest.fixture()
def sqlite_store(tmp_path) -> SQLiteStore:
    return SQLiteStore(str(tmp_path / "tokens.db"))


@pytest.fixture()
def token_store(sqlite_store) -> TokenStore:
    return TokenStore(sqlite_store, TokenCipherService(secret="store-secret"))


def _grant(**overrides) -> TokenGrant:
    values = {
        "access_token": "APP_USR-access-0001",
        "refresh_token": "TG-refresh-0001",
        "expires_in": 21600,
        "scope": "offline_access read write",
        "user_id": 123456789,
    }
    values.update(overrides)
    return TokenGrant(**values)


def test_save_grant_encrypts_secrets_at_rest(token_store, sqlite_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())

    record = sqlite_store.get_item(partition_key="account#acct-1", sort_key="oauth#marketplace")
    assert record is not None
    serialized = repr(record)
    assert "APP_USR-access-0001" not in serialized
    assert "TG-refresh-0001" not in serialized
    assert record["access_token_encrypted"]

    token = token_store.get("acct-1")
    assert token is not None
    assert token.access_token == "APP_USR-access-0001"
    assert token.refresh_token == "TG-refresh-0001"
    assert token.access_token_expires_at == clock() + timedelta(seconds=21600)
    assert token.refresh_token_expires_at == clock() + timedelta(days=180)
    assert token.scopes == frozenset({"offline_access", "read", "write"})
    assert token.marketplace_user_id == "123456789"


def test_one_record_per_account_and_platform(token_store, sqlite_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())
    token_store.save_grant("acct-1", _grant(access_token="APP_USR-access-0002"), now=clock())

    records = sqlite_store.list_items_with_prefix(
        partition_key="account#acct-1", sort_key_prefix="oauth#"
    )
    assert len(records) == 1
    assert token_store.get("acct-1").access_token == "APP_USR-access-0002"


def test_refresh_without_rotation_keeps_previous_refresh_token(token_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())
    token_store.save_grant(
        "acct-1", _grant(access_token="APP_USR-access-0002", refresh_token=None), now=clock()
    )

    token = token_store.get("acct-1")
    assert token.access_token == "APP_USR-access-0002"
    assert token.refresh_token == "TG-refresh-0001"


def test_clear_nulls_credentials_but_keeps_record(token_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())

    token_store.clear("acct-1")

    token = token_store.get("acct-1")
    assert token is not None
    assert token.access_token is None
    assert token.refresh_token is None
    assert token.is_connected is False
    assert token.needs_reauth is False


def test_clear_unknown_account_returns_none(token_store) -> None:
    assert token_store.clear("missing") is None


def test_mark_needs_reauth_can_preserve_tokens(token_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())

    token_store.mark_needs_reauth("acct-1", ReauthReason.MANUAL, preserve_tokens=True)

    token = token_store.get("acct-1")
    assert token.needs_reauth is True
    assert token.reauth_reason == ReauthReason.MANUAL
    assert token.access_token == "APP_USR-access-0001"


def test_mark_needs_reauth_without_preserving_clears(token_store, clock) -> None:
    token_store.save_grant("acct-1", _grant(), now=clock())

    token_store.mark_needs_reauth("acct-1", ReauthReason.EXPIRED, preserve_tokens=False)

    token = token_store.get("acct-1")
    assert token.needs_reauth is True
    assert token.reauth_reason == ReauthReason.EXPIRED
    assert token.access_token is None


def test_redacted_view_never_contains_the_token(token_store, clock) -> None:
    token = token_store.save_grant("acct-1", _grant(), now=clock())

    redacted = token.redacted()
    assert "APP_USR-access-0001" not in repr(redacted)
    assert redacted["access_token_preview"] == "APP_…0001"
    assert redacted["has_refresh_token"] is True
