import json

from fastapi.testclient import TestClient

from src.auth import create_access_token
from src.domain.signatures import format_signature_header
from src.main import app
from src.routers import instagram_webhooks as webhooks_router
from src.services.dispatch import register_event_handler
from tests.fake_supabase import install_fake_db


APP_SECRET = "ig-app-secret"
VERIFY_TOKEN = "global-verify-token"


def _tables():
    return {
        "client_accounts": [
            {
                "id": "acct-1",
                "user_id": "user-1",
                "platform": "instagram",
                "platform_account_id": "page-1",
                "deleted_at": None,
            },
            {
                "id": "acct-2",
                "user_id": "user-2",
                "platform": "instagram",
                "platform_account_id": "page-2",
                "deleted_at": None,
            },
        ],
        "instagram_webhook_subscriptions": [
            {
                "id": "sub-1",
                "instagram_account_id": "acct-1",
                "verify_token": "per-account-token",
                "is_active": True,
                "events_received_count": 0,
                "subscription_errors": 0,
            }
        ],
        "instagram_webhook_events": [],
        "instagram_webhook_logs": [],
        "webhook_metric_snapshots": [],
    }


def _configure(monkeypatch, tables=None):
    fake_db = install_fake_db(monkeypatch, tables if tables is not None else _tables())
    monkeypatch.setattr(webhooks_router.settings, "instagram_app_secret", APP_SECRET)
    monkeypatch.setattr(webhooks_router.settings, "instagram_webhook_verify_token", VERIFY_TOKEN)
    return fake_db


def _auth_headers(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def _comment_body(comment_id: str = "c-1") -> bytes:
    payload = {
        "object": "instagram",
        "entry": [
            {
                "id": "page-1",
                "time": 1700000000,
                "changes": [{"field": "comments", "value": {"comment_id": comment_id, "from": {"id": "u-1"}}}],
            }
        ],
    }
    return json.dumps(payload).encode()


def _post_delivery(client: TestClient, body: bytes, secret: str = APP_SECRET):
    return client.post(
        "/api/instagram/webhooks",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": format_signature_header(body, secret)},
    )


def test_handshake_echoes_challenge(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"},
    )

    assert response.status_code == 200
    assert response.text == "1158201444"


def test_handshake_with_wrong_token_is_forbidden(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "123"},
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "Webhook verification failed"


def test_handshake_with_wrong_mode_is_forbidden(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "123"},
    )

    assert response.status_code == 403


def test_handshake_accepts_per_account_token(monkeypatch):
    fake_db = _configure(monkeypatch)
    client = TestClient(app)

    response = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "subscribe", "hub.verify_token": "per-account-token", "hub.challenge": "abc"},
    )

    assert response.status_code == 200
    assert response.text == "abc"
    assert fake_db.tables["instagram_webhook_subscriptions"][0]["last_verified_at"]


def test_failed_handshake_with_per_account_token_does_not_stamp_verification(monkeypatch):
    fake_db = _configure(monkeypatch)
    client = TestClient(app)

    missing_challenge = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "subscribe", "hub.verify_token": "per-account-token"},
    )
    wrong_mode = client.get(
        "/api/instagram/webhooks",
        params={"hub.mode": "unsubscribe", "hub.verify_token": "per-account-token", "hub.challenge": "abc"},
    )

    assert missing_challenge.status_code == 403
    assert wrong_mode.status_code == 403
    assert not fake_db.tables["instagram_webhook_subscriptions"][0].get("last_verified_at")
    assert ("instagram_webhook_subscriptions", "update") not in fake_db.calls


def test_delivery_with_invalid_signature_is_rejected(monkeypatch):
    fake_db = _configure(monkeypatch)
    client = TestClient(app)

    response = _post_delivery(client, _comment_body(), secret="wrong-secret")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid webhook signature"
    assert fake_db.tables["instagram_webhook_events"] == []


def test_delivery_with_only_legacy_signature_is_rejected(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/api/instagram/webhooks",
        content=_comment_body(),
        headers={"Content-Type": "application/json", "X-Hub-Signature": "sha1=deadbeef"},
    )

    assert response.status_code == 401


def test_delivery_without_configured_secret_is_rejected(monkeypatch):
    _configure(monkeypatch)
    monkeypatch.setattr(webhooks_router.settings, "instagram_app_secret", None)
    client = TestClient(app)

    response = _post_delivery(client, _comment_body())

    assert response.status_code == 401


def test_signed_non_json_body_is_bad_request(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = _post_delivery(client, b"not-json")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"


def test_valid_delivery_is_stored_then_dispatched(monkeypatch):
    fake_db = _configure(monkeypatch)
    handled = []
    register_event_handler(handled.append)
    client = TestClient(app)

    response = _post_delivery(client, _comment_body())

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    rows = fake_db.tables["instagram_webhook_events"]
    assert len(rows) == 1
    assert handled == [rows[0]["id"]]
    assert rows[0]["processed"] is True


def test_redelivery_is_acknowledged_and_not_dispatched_again(monkeypatch):
    fake_db = _configure(monkeypatch)
    handled = []
    register_event_handler(handled.append)
    client = TestClient(app)

    first = _post_delivery(client, _comment_body())
    second = _post_delivery(client, _comment_body())

    assert first.status_code == 200
    assert second.status_code == 200
    assert len(handled) == 1
    duplicates = [r for r in fake_db.tables["instagram_webhook_events"] if r["is_duplicate"]]
    assert len(duplicates) == 1


def test_handler_failure_does_not_change_acknowledgement(monkeypatch):
    fake_db = _configure(monkeypatch)

    def _handler(_event_id):
        raise RuntimeError("handler exploded")

    register_event_handler(_handler)
    client = TestClient(app)

    response = _post_delivery(client, _comment_body())

    assert response.status_code == 200
    row = fake_db.tables["instagram_webhook_events"][0]
    assert row["processed"] is False
    assert row["processing_attempts"] == 1


def test_persistence_failure_still_acknowledges(monkeypatch):
    fake_db = _configure(monkeypatch)

    def _boom(_query):
        raise RuntimeError("db unavailable")

    fake_db.hooks[("instagram_webhook_events", "select")] = _boom
    client = TestClient(app)

    response = _post_delivery(client, _comment_body())

    assert response.status_code == 200
    assert fake_db.tables["instagram_webhook_events"] == []


def test_create_subscription_generates_token(monkeypatch):
    fake_db = _configure(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/api/instagram/webhooks/subscriptions",
        json={"account_id": "acct-1", "subscription_fields": ["comments", "messages", "comments"]},
        headers=_auth_headers(),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["account_id"] == "acct-1"
    assert body["fields"] == ["comments", "messages"]
    assert body["callback_url"].endswith("/api/instagram/webhooks")
    assert len(body["verify_token"]) == 64
    subscriptions = fake_db.tables["instagram_webhook_subscriptions"]
    assert len(subscriptions) == 1
    assert subscriptions[0]["verify_token"] == body["verify_token"]
    assert subscriptions[0]["subscription_fields"] == ["comments", "messages"]


def test_create_subscription_keeps_supplied_token(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/api/instagram/webhooks/subscriptions",
        json={"account_id": "acct-1", "subscription_fields": ["mentions"], "verify_token": "my-own-token"},
        headers=_auth_headers(),
    )

    assert response.status_code == 201
    assert response.json()["verify_token"] == "my-own-token"


def test_create_subscription_rejects_unknown_fields(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/api/instagram/webhooks/subscriptions",
        json={"account_id": "acct-1", "subscription_fields": ["feed"]},
        headers=_auth_headers(),
    )

    assert response.status_code == 422


def test_foreign_account_is_not_found(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    for method, path in (
        ("get", "/api/instagram/webhooks/events/acct-2"),
        ("get", "/api/instagram/webhooks/stats/acct-2"),
        ("post", "/api/instagram/webhooks/retry/acct-2"),
        ("get", "/api/instagram/webhooks/events/missing"),
    ):
        response = getattr(client, method)(path, headers=_auth_headers())
        assert response.status_code == 404
        assert response.json()["detail"] == "Instagram account not found"

    response = client.post(
        "/api/instagram/webhooks/subscriptions",
        json={"account_id": "acct-2", "subscription_fields": ["comments"]},
        headers=_auth_headers(),
    )
    assert response.status_code == 404


def test_list_events_paginates(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    for comment_id in ("c-1", "c-2", "c-3"):
        assert _post_delivery(client, _comment_body(comment_id)).status_code == 200

    response = client.get(
        "/api/instagram/webhooks/events/acct-1",
        params={"page": 2, "limit": 2},
        headers=_auth_headers(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert body["page"] == 2
    assert body["limit"] == 2
    assert len(body["events"]) == 1


def test_list_events_validates_paging(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    assert client.get(
        "/api/instagram/webhooks/events/acct-1", params={"page": 0}, headers=_auth_headers()
    ).status_code == 422
    assert client.get(
        "/api/instagram/webhooks/events/acct-1", params={"limit": 201}, headers=_auth_headers()
    ).status_code == 422


def test_stats_reflect_ingested_events(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    _post_delivery(client, _comment_body("c-1"))
    _post_delivery(client, _comment_body("c-1"))

    response = client.get("/api/instagram/webhooks/stats/acct-1", headers=_auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["total_events"] == 2
    assert body["processed_events"] == 1
    assert body["duplicate_events"] == 1
    assert body["events_by_type"] == {"comment": 2}


def test_retry_endpoint_reports_count(monkeypatch):
    tables = _tables()
    tables["instagram_webhook_events"] = [
        {
            "id": "evt-1",
            "event_type": "comment",
            "instagram_account_id": "acct-1",
            "processed": False,
            "processing_attempts": 2,
            "is_duplicate": False,
            "created_at": "2026-01-01T00:00:00+00:00",
        }
    ]
    fake_db = _configure(monkeypatch, tables)
    client = TestClient(app)

    response = client.post("/api/instagram/webhooks/retry/acct-1", headers=_auth_headers())

    assert response.status_code == 200
    assert response.json() == {"retried_count": 1}
    assert fake_db.tables["instagram_webhook_events"][0]["processing_attempts"] == 0


def test_metrics_endpoint_persists_snapshot(monkeypatch):
    fake_db = _configure(monkeypatch)
    monkeypatch.setattr(webhooks_router.settings, "metrics_admin_user_ids", "ops-1, user-1")
    client = TestClient(app)
    _post_delivery(client, _comment_body())

    response = client.get("/api/instagram/webhooks/metrics", params={"persist": "true"}, headers=_auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["persisted"] is True
    assert body["counters"]["webhook.deliveries.received"] == 1
    assert len(fake_db.tables["webhook_metric_snapshots"]) == 1


def test_metrics_endpoint_rejects_account_owners_without_admin_role(monkeypatch):
    fake_db = _configure(monkeypatch)
    monkeypatch.setattr(webhooks_router.settings, "metrics_admin_user_ids", "ops-1")
    client = TestClient(app)

    response = client.get("/api/instagram/webhooks/metrics", params={"persist": "true"}, headers=_auth_headers())

    assert response.status_code == 403
    assert response.json()["detail"] == "Admin role required"
    assert fake_db.tables["webhook_metric_snapshots"] == []


def test_list_events_filters_by_type(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    _post_delivery(client, _comment_body("c-1"))

    comments = client.get(
        "/api/instagram/webhooks/events/acct-1", params={"event_type": "comment"}, headers=_auth_headers()
    )
    messages = client.get(
        "/api/instagram/webhooks/events/acct-1", params={"event_type": "message"}, headers=_auth_headers()
    )
    unknown = client.get(
        "/api/instagram/webhooks/events/acct-1", params={"event_type": "feed"}, headers=_auth_headers()
    )

    assert comments.json()["total"] == 1
    assert messages.json()["total"] == 0
    assert unknown.status_code == 422
