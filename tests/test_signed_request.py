import base64
import hashlib
import hmac
import json

import pytest

from src.domain.errors import InvalidSignature, MalformedInput, TimestampOutOfRange, UnsupportedAlgorithm
from src.domain.signed_request import (
    decode_signed_request,
    encode_signed_request,
    is_timestamp_fresh,
    try_validate_signed_request,
    validate_signed_request,
)
from src.observability import metrics_snapshot


SECRET = "app-secret"
NOW = 1_700_000_000


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _signed(payload: dict, secret: str = SECRET) -> str:
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).digest()
    return f"{_b64(sig)}.{_b64(raw)}"


def test_decode_returns_payload_without_checking_signature():
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW, "user_id": "42"}
    assert decode_signed_request(_signed(payload, "irrelevant")) == payload


@pytest.mark.parametrize(
    "value",
    [None, "", 123, "onlyonepart", "a.b.c", ".payload", "sig.", "!!!.@@@"],
)
def test_decode_rejects_malformed_input(value):
    with pytest.raises(MalformedInput):
        decode_signed_request(value)


def test_decode_rejects_non_json_payload():
    with pytest.raises(MalformedInput):
        decode_signed_request(f"{_b64(b'sig')}.{_b64(b'not json')}")


def test_decode_rejects_non_object_payload():
    with pytest.raises(MalformedInput):
        decode_signed_request(f"{_b64(b'sig')}.{_b64(b'[1, 2]')}")


def test_decode_requires_algorithm_and_issued_at():
    with pytest.raises(MalformedInput):
        decode_signed_request(_signed({"issued_at": NOW}))
    with pytest.raises(MalformedInput):
        decode_signed_request(_signed({"algorithm": "HMAC-SHA256"}))
    with pytest.raises(MalformedInput):
        decode_signed_request(_signed({"algorithm": "HMAC-SHA256", "issued_at": "yesterday"}))


def test_decode_rejects_unsupported_algorithm():
    with pytest.raises(UnsupportedAlgorithm):
        decode_signed_request(_signed({"algorithm": "HMAC-SHA1", "issued_at": NOW}))


def test_algorithm_match_is_case_insensitive():
    payload = {"algorithm": "hmac-sha256", "issued_at": NOW}
    assert validate_signed_request(_signed(payload), SECRET, now=NOW) == payload


def test_validate_accepts_fresh_signed_request():
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW, "user_id": "42"}
    assert validate_signed_request(_signed(payload), SECRET, now=NOW) == payload


@pytest.mark.parametrize("offset", [-299, 0, 299, 300, -300])
def test_validate_accepts_timestamps_inside_window(offset):
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW + offset}
    assert validate_signed_request(_signed(payload), SECRET, now=NOW) == payload


@pytest.mark.parametrize("offset", [-301, 301, -86400])
def test_validate_rejects_timestamps_outside_window(offset):
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW + offset}
    with pytest.raises(TimestampOutOfRange):
        validate_signed_request(_signed(payload), SECRET, now=NOW)


def test_validate_rejects_wrong_secret():
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW}
    with pytest.raises(InvalidSignature):
        validate_signed_request(_signed(payload, "other-secret"), SECRET, now=NOW)


def test_validate_rejects_missing_secret():
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW}
    with pytest.raises(InvalidSignature) as excinfo:
        validate_signed_request(_signed(payload), None, now=NOW)
    assert excinfo.value.reason == "secret_not_configured"


def test_tampered_payload_fails_signature_check():
    signature, _payload = _signed({"algorithm": "HMAC-SHA256", "issued_at": NOW}).split(".")
    forged = _b64(json.dumps({"algorithm": "HMAC-SHA256", "issued_at": NOW, "user_id": "1"}).encode())
    with pytest.raises(InvalidSignature):
        validate_signed_request(f"{signature}.{forged}", SECRET, now=NOW)


def test_is_timestamp_fresh_rejects_non_positive():
    assert is_timestamp_fresh(0, now=100) is False
    assert is_timestamp_fresh(-5, now=0, tolerance_seconds=10) is False


def test_encode_produces_verifiable_request():
    payload = {"algorithm": "HMAC-SHA256", "issued_at": NOW, "user_id": "7"}
    token = encode_signed_request(payload, SECRET)
    assert "=" not in token
    assert validate_signed_request(token, SECRET, now=NOW) == payload


def test_try_validate_collapses_failures_to_none():
    stale = {"algorithm": "HMAC-SHA256", "issued_at": 1000}
    assert try_validate_signed_request(_signed(stale), SECRET) is None
    assert try_validate_signed_request("garbage", SECRET) is None

    snapshot = metrics_snapshot()
    assert snapshot["signed_request.rejected|reason=timestamp_out_of_range"] == 1
    assert snapshot["signed_request.rejected|reason=malformed_input"] == 1
