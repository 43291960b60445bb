"""Provider signed requests: ``base64url(signature).base64url(json_payload)``.

The signature is HMAC-SHA256 over the decoded JSON payload bytes, keyed with
the app secret. Payloads must carry ``algorithm`` (``HMAC-SHA256``) and a
numeric ``issued_at`` in unix seconds.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from src.domain.errors import (
    InvalidSignature,
    MalformedInput,
    SignedRequestError,
    TimestampOutOfRange,
    UnsupportedAlgorithm,
)
from src.domain.signatures import digests_match
from src.observability import incr_metric, log_event


ALGORITHM = "HMAC-SHA256"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass
class ParsedSignedRequest:
    signature: bytes
    payload: dict[str, Any]
    raw_payload: bytes


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def parse_signed_request(signed_request: Any) -> ParsedSignedRequest:
    if not isinstance(signed_request, str) or not signed_request:
        raise MalformedInput("Signed request must be a non-empty string")
    parts = signed_request.split(".")
    if len(parts) != 2:
        raise MalformedInput("Invalid signed request format")
    encoded_signature, encoded_payload = parts
    if not encoded_signature or not encoded_payload:
        raise MalformedInput("Signature or payload is empty")

    try:
        signature = _b64url_decode(encoded_signature)
        raw_payload = _b64url_decode(encoded_payload)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise MalformedInput("Signed request is not valid base64url") from exc

    try:
        payload = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedInput("Failed to parse payload JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedInput("Payload must be a JSON object")

    algorithm = payload.get("algorithm")
    if not algorithm:
        raise MalformedInput("Missing algorithm in payload")
    if str(algorithm).upper() != ALGORITHM:
        raise UnsupportedAlgorithm(f"Unsupported algorithm: {algorithm}")

    issued_at = payload.get("issued_at")
    if isinstance(issued_at, bool) or not isinstance(issued_at, (int, float)):
        raise MalformedInput("Missing or invalid issued_at in payload")

    return ParsedSignedRequest(signature=signature, payload=payload, raw_payload=raw_payload)


def decode_signed_request(signed_request: Any) -> dict[str, Any]:
    """Decode without verifying the signature or freshness."""
    return parse_signed_request(signed_request).payload


def encode_signed_request(payload: dict[str, Any], secret: str) -> str:
    raw_payload = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).digest()
    return f"{_b64url_encode(signature)}.{_b64url_encode(raw_payload)}"


def is_timestamp_fresh(
    issued_at: float,
    *,
    now: float | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    if issued_at <= 0:
        return False
    current = int(time.time()) if now is None else now
    return abs(current - issued_at) <= tolerance_seconds


def validate_signed_request(
    signed_request: Any,
    secret: str | None,
    *,
    now: float | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict[str, Any]:
    """Decode, authenticate and freshness-check a signed request.

    Raises a ``SignedRequestError`` subclass; the HTTP layer must not echo
    which one.
    """
    parsed = parse_signed_request(signed_request)
    if not secret:
        raise InvalidSignature("App secret is not configured", reason="secret_not_configured")

    expected = hmac.new(secret.encode("utf-8"), parsed.raw_payload, hashlib.sha256).digest()
    if not digests_match(expected, parsed.signature):
        raise InvalidSignature("Signature verification failed")

    if not is_timestamp_fresh(parsed.payload["issued_at"], now=now, tolerance_seconds=tolerance_seconds):
        raise TimestampOutOfRange("Timestamp out of valid range")
    return parsed.payload


def try_validate_signed_request(
    signed_request: Any,
    secret: str | None,
    *,
    request_id: str | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict[str, Any] | None:
    """Uniform outcome wrapper: the payload, or ``None`` with the reason logged."""
    try:
        payload = validate_signed_request(signed_request, secret, tolerance_seconds=tolerance_seconds)
    except SignedRequestError as exc:
        incr_metric("signed_request.rejected", reason=exc.reason)
        log_event(
            "signed_request_rejected",
            level=logging.WARNING,
            request_id=request_id,
            reason=exc.reason,
            error=str(exc),
        )
        return None
    incr_metric("signed_request.verified")
    return payload
