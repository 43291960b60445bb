from __future__ import annotations

import hmac
import logging

from src.observability import incr_metric, log_event


SUBSCRIBE_MODE = "subscribe"


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
    *,
    request_id: str | None = None,
) -> str | None:
    """Answer the provider's ``hub.*`` verification GET.

    Returns the challenge unchanged on success and ``None`` on any mismatch.
    """
    if mode != SUBSCRIBE_MODE:
        reason = "invalid_mode"
    elif not expected_token or token is None:
        reason = "token_missing"
    elif not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        reason = "token_mismatch"
    elif challenge is None:
        reason = "challenge_missing"
    else:
        incr_metric("webhook.handshake.verified")
        log_event("webhook_handshake_verified", request_id=request_id)
        return challenge

    incr_metric("webhook.handshake.rejected", reason=reason)
    log_event("webhook_handshake_rejected", level=logging.WARNING, request_id=request_id, reason=reason)
    return None
