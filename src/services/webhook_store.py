from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.observability import log_event


EVENTS_TABLE = "instagram_webhook_events"
SUBSCRIPTIONS_TABLE = "instagram_webhook_subscriptions"
LOGS_TABLE = "instagram_webhook_logs"
DATA_DELETION_TABLE = "data_deletion_requests"

LOG_LEVELS = {"debug", "info", "warning", "error"}

_EVENT_COLUMNS = (
    "id, event_type, event_id, instagram_account_id, object_type, object_id, sender_ig_id, "
    "sender_username, payload, processed, processed_at, processing_attempts, last_processing_error, "
    "is_duplicate, duplicate_of, created_at, updated_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def find_event_by_key(event_key: str) -> dict[str, Any] | None:
    result = supabase.table(EVENTS_TABLE).select("id, event_id").eq("event_id", event_key).limit(1).execute()
    if not result.data:
        return None
    return result.data[0]


def insert_event(
    *,
    event_type: str,
    event_key: str,
    account_id: str | None,
    object_type: str | None,
    object_id: str | None,
    sender_id: str | None,
    sender_username: str | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    now_iso = _now_iso()
    result = supabase.table(EVENTS_TABLE).insert(
        {
            "event_type": event_type,
            "event_id": event_key,
            "instagram_account_id": account_id,
            "object_type": object_type,
            "object_id": object_id,
            "sender_ig_id": sender_id,
            "sender_username": sender_username,
            "payload": payload,
            "processed": False,
            "processing_attempts": 0,
            "is_duplicate": False,
            "duplicate_of": None,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
    ).execute()
    if not result.data:
        raise RuntimeError("insert returned no row")
    return result.data[0]


def insert_duplicate_event(
    *,
    event_type: str,
    event_key: str,
    duplicate_of: str,
    account_id: str | None,
    object_type: str | None,
    object_id: str | None,
    sender_id: str | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    now_iso = _now_iso()
    result = supabase.table(EVENTS_TABLE).insert(
        {
            "event_type": event_type,
            "event_id": event_key,
            "instagram_account_id": account_id,
            "object_type": object_type,
            "object_id": object_id,
            "sender_ig_id": sender_id,
            "payload": payload,
            "processed": False,
            "processing_attempts": 0,
            "is_duplicate": True,
            "duplicate_of": duplicate_of,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
    ).execute()
    if not result.data:
        raise RuntimeError("insert returned no row")
    return result.data[0]


def mark_event_processed(event_id: str) -> None:
    now_iso = _now_iso()
    supabase.table(EVENTS_TABLE).update(
        {"processed": True, "processed_at": now_iso, "updated_at": now_iso}
    ).eq("id", event_id).eq("is_duplicate", False).execute()


def mark_event_failed(event_id: str, error: str) -> None:
    # processing_attempts is incremented server-side.
    supabase.rpc("mark_webhook_event_failed", {"p_event_id": event_id, "p_error": error}).execute()


def reset_events_for_retry(event_ids: list[str]) -> None:
    if not event_ids:
        return
    supabase.table(EVENTS_TABLE).update(
        {"processing_attempts": 0, "last_processing_error": None, "updated_at": _now_iso()}
    ).in_("id", event_ids).execute()


def list_account_events(
    account_id: str,
    *,
    event_type: str | None = None,
    processed: bool | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[dict[str, Any]], int]:
    query = supabase.table(EVENTS_TABLE).select(_EVENT_COLUMNS, count="exact").eq(
        "instagram_account_id", account_id
    )
    if event_type:
        query = query.eq("event_type", event_type)
    if processed is not None:
        query = query.eq("processed", processed)
    offset = (page - 1) * limit
    result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    rows = result.data or []
    total = result.count if result.count is not None else len(rows)
    return rows, total


def account_event_flags(account_id: str) -> list[dict[str, Any]]:
    result = supabase.table(EVENTS_TABLE).select(
        "id, event_type, processed, is_duplicate, processing_attempts"
    ).eq("instagram_account_id", account_id).execute()
    return result.data or []


def increment_subscription_counters(account_id: str) -> None:
    supabase.rpc("increment_webhook_subscription_counters", {"p_account_id": account_id}).execute()


def record_subscription_error(account_id: str, error: str) -> None:
    supabase.rpc("record_webhook_subscription_error", {"p_account_id": account_id, "p_error": error}).execute()


def find_active_subscription_by_token(verify_token: str) -> dict[str, Any] | None:
    result = supabase.table(SUBSCRIPTIONS_TABLE).select("id, instagram_account_id").eq(
        "verify_token", verify_token
    ).eq("is_active", True).limit(1).execute()
    if not result.data:
        return None
    return result.data[0]


def mark_subscription_verified(subscription_id: str) -> None:
    now_iso = _now_iso()
    supabase.table(SUBSCRIPTIONS_TABLE).update(
        {"last_verified_at": now_iso, "updated_at": now_iso}
    ).eq("id", subscription_id).execute()


def upsert_subscription(
    *,
    account_id: str,
    fields: list[str],
    callback_url: str,
    verify_token: str,
) -> dict[str, Any]:
    now_iso = _now_iso()
    result = supabase.table(SUBSCRIPTIONS_TABLE).upsert(
        {
            "instagram_account_id": account_id,
            "subscription_fields": fields,
            "callback_url": callback_url,
            "verify_token": verify_token,
            "is_active": True,
            "updated_at": now_iso,
        },
        on_conflict="instagram_account_id",
    ).execute()
    return result.data[0] if result.data else {}


def write_log(
    event_id: str | None,
    level: str,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Append to the audit trail. Failures are logged, never raised."""
    if level not in LOG_LEVELS:
        level = "info"
    try:
        supabase.table(LOGS_TABLE).insert(
            {
                "event_id": event_id,
                "log_level": level,
                "message": message,
                "context": context or {},
                "created_at": _now_iso(),
            }
        ).execute()
    except Exception as exc:
        log_event(
            "webhook_log_persist_failed",
            level=logging.ERROR,
            event_id=event_id,
            message=message,
            error=str(exc),
        )


def insert_data_deletion_request(
    *,
    confirmation_code: str,
    provider_user_id: str | None,
    source: str = "meta_callback",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    now_iso = _now_iso()
    result = supabase.table(DATA_DELETION_TABLE).insert(
        {
            "confirmation_code": confirmation_code,
            "provider_user_id": provider_user_id,
            "source": source,
            "status": "pending",
            "requested_at": now_iso,
            "metadata": metadata or {},
            "created_at": now_iso,
            "updated_at": now_iso,
        }
    ).execute()
    if not result.data:
        raise RuntimeError("insert returned no row")
    return result.data[0]


def find_data_deletion_request(confirmation_code: str) -> dict[str, Any] | None:
    result = (
        supabase.table(DATA_DELETION_TABLE)
        .select("id, confirmation_code, status, requested_at, completed_at")
        .eq("confirmation_code", confirmation_code)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]
