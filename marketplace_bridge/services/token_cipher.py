"""Fernet encryption for tokens at rest and for the sealed PKCE cookie."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Iterable

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from marketplace_bridge.core.errors import ConfigurationError


def _derive_fernet(secret: str) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()))


class TokenCipherService:
    """
    Encrypt with the current secret, decrypt with the current or any retired one.

    Rotating ``TOKEN_ENCRYPTION_SECRET`` therefore only requires moving the old
    value into ``TOKEN_ENCRYPTION_PREVIOUS_SECRETS`` until every stored token
    has been rewritten by a refresh.
    """

    def __init__(self, *, secret: str, previous_secrets: Iterable[str] = ()) -> None:
        if not secret:
            raise ConfigurationError("Token encryption secret must be provided.")
        keys = [_derive_fernet(secret)]
        keys.extend(_derive_fernet(old) for old in previous_secrets if old)
        self._fernet = MultiFernet(keys)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Raise ``ValueError`` for tampered input or input sealed under an unknown key."""
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValueError("Ciphertext could not be decrypted.") from exc
        return plaintext.decode("utf-8")

    def seal(self, payload: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":"), sort_keys=True))

    def unseal(self, sealed: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(sealed))


__all__ = ["TokenCipherService"]
