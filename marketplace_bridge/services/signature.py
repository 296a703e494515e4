"""
HMAC verification for inbound payment notifications.

Two header shapes are understood:

* ``sha256=<digest>`` (or a bare digest): the HMAC covers the raw request body.
* ``ts=<unix>,v1=<digest>``: the HMAC covers
  ``id:<resource id>;request-id:<x-request-id>;ts:<ts>;``.

For the timestamped shape the resource id is not carried in the header, and
upstream notification types place it differently, so an ordered list of
extraction strategies is tried and the first one that produces a matching
signature wins. Digests may be lowercase hex or base64 encoded.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from marketplace_bridge.core.errors import ConfigurationError, SignatureConfigurationError

logger = logging.getLogger(__name__)

_RESOURCE_SUFFIX_RE = re.compile(r"(\d+)/?$")
_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")
_SIMPLE_ALGORITHMS = {"sha256", "hmac-sha256"}

ResourceIdStrategy = Callable[[Optional[Dict[str, Any]], Mapping[str, str]], Optional[str]]


@dataclass(slots=True, frozen=True)
class ParsedSignature:
    scheme: str
    digest: str
    raw: str
    timestamp: str | None = None


@dataclass(slots=True, frozen=True)
class SignatureCheck:
    """Outcome of a verification attempt."""

    valid: bool
    scheme: str | None = None
    strategy: str | None = None
    resource_id: str | None = None
    reason: str | None = None


def parse_signature_header(header: str | None) -> ParsedSignature | None:
    """Parse a signature header; ``None`` means absent or malformed."""
    if not header or not header.strip():
        return None
    raw = header.strip()
    fields: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        key, value = key.strip().lower(), value.strip()
        if not sep or not key or not value:
            return _parse_bare_digest(raw)
        fields[key] = value

    if "ts" in fields or "v1" in fields:
        if not fields.get("ts") or not fields.get("v1"):
            return None
        return ParsedSignature(
            scheme="timestamped", digest=fields["v1"], raw=raw, timestamp=fields["ts"]
        )
    if len(fields) == 1:
        algorithm, digest = next(iter(fields.items()))
        if algorithm in _SIMPLE_ALGORITHMS:
            return ParsedSignature(scheme="simple", digest=digest, raw=raw)
    return _parse_bare_digest(raw)


def _parse_bare_digest(raw: str) -> ParsedSignature | None:
    if _HEX_DIGEST_RE.fullmatch(raw):
        return ParsedSignature(scheme="simple", digest=raw, raw=raw)
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(decoded) == hashlib.sha256().digest_size:
        return ParsedSignature(scheme="simple", digest=raw, raw=raw)
    return None


def normalize_secret(secret: str | None) -> str:
    """Strip whitespace and stray quotes that deployment tooling tends to add."""
    if secret is None:
        return ""
    return secret.strip().strip("\"'").strip()


def _load_payload(raw_body: bytes) -> Dict[str, Any] | None:
    try:
        parsed = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _scalar(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _from_query(payload: Dict[str, Any] | None, query: Mapping[str, str]) -> str | None:
    return _scalar(query.get("data.id")) or _scalar(query.get("id"))


def _from_data_id(payload: Dict[str, Any] | None, query: Mapping[str, str]) -> str | None:
    if not payload or not isinstance(payload.get("data"), dict):
        return None
    return _scalar(payload["data"].get("id"))


def _from_payload_id(payload: Dict[str, Any] | None, query: Mapping[str, str]) -> str | None:
    if not payload:
        return None
    return _scalar(payload.get("id"))


def _from_resource_url(payload: Dict[str, Any] | None, query: Mapping[str, str]) -> str | None:
    resource = _scalar(payload.get("resource")) if payload else None
    if not resource:
        return None
    match = _RESOURCE_SUFFIX_RE.search(resource)
    return match.group(1) if match else None


def _from_topic(payload: Dict[str, Any] | None, query: Mapping[str, str]) -> str | None:
    if payload:
        for key in ("topic", "type", "action"):
            value = _scalar(payload.get(key))
            if value:
                return value
    return _scalar(query.get("topic")) or _scalar(query.get("type"))


RESOURCE_ID_STRATEGIES: dict[str, ResourceIdStrategy] = {
    "url_query": _from_query,
    "data_id": _from_data_id,
    "payload_id": _from_payload_id,
    "resource_url": _from_resource_url,
    "topic": _from_topic,
}
DEFAULT_STRATEGIES: tuple[str, ...] = ("url_query", "data_id", "payload_id", "resource_url")
DIAGNOSTIC_STRATEGIES: tuple[str, ...] = ("topic",)


def build_timestamped_message(*, resource_id: str, request_id: str, timestamp: str) -> str:
    return f"id:{resource_id};request-id:{request_id};ts:{timestamp};"


def _computed_representations(secret: str, message: bytes) -> list[bytes]:
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    hex_digest = digest.hex()
    b64_digest = base64.b64encode(digest).decode("ascii")
    return [
        candidate.encode("utf-8")
        for candidate in (hex_digest, b64_digest)
    ]


def _received_representations(parsed: ParsedSignature) -> list[bytes]:
    values = {parsed.digest, f"sha256={parsed.digest}", parsed.raw}
    return [value.encode("utf-8") for value in values]


def _matches(computed: Sequence[bytes], received: Sequence[bytes]) -> bool:
    matched = False
    for expected in computed:
        for candidate in received:
            matched |= hmac.compare_digest(expected, candidate)
            if candidate.startswith(b"sha256="):
                matched |= hmac.compare_digest(b"sha256=" + expected, candidate)
    return matched


class SignatureVerifier:
    """Validate webhook signatures against the shared secret."""

    def __init__(
        self,
        *,
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
        timestamp_tolerance_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        unknown = [name for name in strategies if name not in RESOURCE_ID_STRATEGIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown signature strategies configured: {', '.join(unknown)}"
            )
        if not strategies:
            raise ConfigurationError("At least one signature strategy is required.")
        self._strategies = tuple(strategies)
        self._tolerance = timestamp_tolerance_seconds
        self._clock = clock

    @property
    def strategies(self) -> tuple[str, ...]:
        return self._strategies

    def verify(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str | None,
        *,
        request_id: str | None = None,
        query: Mapping[str, str] | None = None,
        diagnostic: bool = False,
    ) -> bool:
        return self.verify_detailed(
            raw_body,
            signature_header,
            secret,
            request_id=request_id,
            query=query,
            diagnostic=diagnostic,
        ).valid

    def verify_detailed(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str | None,
        *,
        request_id: str | None = None,
        query: Mapping[str, str] | None = None,
        diagnostic: bool = False,
    ) -> SignatureCheck:
        """
        Verify ``raw_body`` against ``signature_header``.

        Never raises for request problems; raises ``SignatureConfigurationError``
        only when no secret is configured. ``diagnostic`` additionally tries
        strategies that are too loose for production use.
        """
        normalized_secret = normalize_secret(secret)
        if not normalized_secret:
            raise SignatureConfigurationError("Webhook shared secret is not configured.")

        parsed = parse_signature_header(signature_header)
        if parsed is None:
            reason = "missing signature" if not signature_header else "malformed signature"
            return SignatureCheck(valid=False, reason=reason)

        if parsed.scheme == "simple":
            computed = _computed_representations(normalized_secret, raw_body)
            if _matches(computed, _received_representations(parsed)):
                return SignatureCheck(valid=True, scheme="simple", strategy="raw_body")
            return SignatureCheck(valid=False, scheme="simple", reason="digest mismatch")

        return self._verify_timestamped(
            parsed,
            raw_body=raw_body,
            secret=normalized_secret,
            request_id=request_id,
            query=query or {},
            diagnostic=diagnostic,
        )

    def _verify_timestamped(
        self,
        parsed: ParsedSignature,
        *,
        raw_body: bytes,
        secret: str,
        request_id: str | None,
        query: Mapping[str, str],
        diagnostic: bool,
    ) -> SignatureCheck:
        if not request_id or not request_id.strip():
            return SignatureCheck(valid=False, scheme="timestamped", reason="missing request id")
        if self._is_stale(parsed.timestamp):
            return SignatureCheck(valid=False, scheme="timestamped", reason="stale timestamp")

        payload = _load_payload(raw_body)
        received = _received_representations(parsed)
        names = self._strategies + (DIAGNOSTIC_STRATEGIES if diagnostic else ())
        tried: set[str] = set()
        for name in names:
            resource_id = RESOURCE_ID_STRATEGIES[name](payload, query)
            if not resource_id or resource_id in tried:
                continue
            tried.add(resource_id)
            message = build_timestamped_message(
                resource_id=resource_id,
                request_id=request_id.strip(),
                timestamp=parsed.timestamp or "",
            )
            computed = _computed_representations(secret, message.encode("utf-8"))
            if _matches(computed, received):
                logger.info(
                    "Webhook signature matched",
                    extra={"strategy": name, "resource_id": resource_id},
                )
                return SignatureCheck(
                    valid=True,
                    scheme="timestamped",
                    strategy=name,
                    resource_id=resource_id,
                )

        logger.warning(
            "Webhook signature did not match any canonicalization",
            extra={"strategies": list(names), "candidates": len(tried)},
        )
        reason = "digest mismatch" if tried else "no resource id"
        return SignatureCheck(valid=False, scheme="timestamped", reason=reason)

    def _is_stale(self, timestamp: str | None) -> bool:
        if not self._tolerance:
            return False
        try:
            value = float(timestamp or "")
        except ValueError:
            return True
        # Some senders use milliseconds.
        if value > 10**11:
            value /= 1000.0
        return abs(self._clock() - value) > self._tolerance


_default_verifier = SignatureVerifier()


def verify(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    request_id: str | None = None,
    query: Mapping[str, str] | None = None,
) -> bool:
    """
    Verify with the default strategies.

    A ``ts=...,v1=...`` header also signs the ``x-request-id`` value, so it only
    verifies when ``request_id`` is given; without it the check fails closed.
    ``query`` supplies the ``data.id`` hint some notifications carry in the URL.
    """
    return _default_verifier.verify(
        raw_body, signature_header, secret, request_id=request_id, query=query
    )


__all__ = [
    "DEFAULT_STRATEGIES",
    "DIAGNOSTIC_STRATEGIES",
    "ParsedSignature",
    "RESOURCE_ID_STRATEGIES",
    "SignatureCheck",
    "SignatureVerifier",
    "build_timestamped_message",
    "normalize_secret",
    "parse_signature_header",
    "verify",
]
