from __future__ import annotations

import hashlib
import hmac
import logging

from src.observability import log_event


SIGNATURE_PREFIX = "sha256="

# Indirection so tests can observe how often the constant-time primitive runs.
_constant_time_equals = hmac.compare_digest


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request bytes."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def format_signature_header(raw_body: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{compute_signature(raw_body, secret)}"


def digests_match(expected: bytes, received: bytes) -> bool:
    if len(expected) != len(received):
        return False
    return _constant_time_equals(expected, received)


def verify_signature(signature_header: str | None, raw_body: bytes, secret: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` value against the raw body.

    ``raw_body`` must be the bytes as received on the wire. Hashing a
    re-serialized copy of the parsed JSON yields a different digest.
    Never raises; every failure is logged and reported as ``False``.
    """
    if not signature_header:
        log_event("webhook_signature_missing", level=logging.WARNING)
        return False
    if not secret:
        log_event("webhook_signature_secret_not_configured", level=logging.WARNING)
        return False

    received_hex = signature_header.strip()
    if received_hex.startswith(SIGNATURE_PREFIX):
        received_hex = received_hex[len(SIGNATURE_PREFIX):]
    try:
        received = bytes.fromhex(received_hex)
    except ValueError:
        log_event(
            "webhook_signature_undecodable",
            level=logging.WARNING,
            signature_length=len(received_hex),
        )
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    if not digests_match(expected, received):
        log_event(
            "webhook_signature_mismatch",
            level=logging.WARNING,
            body_length=len(raw_body),
            signature_length=len(received),
        )
        return False
    return True
