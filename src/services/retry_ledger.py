from __future__ import annotations

from src.config import settings
from src.db import supabase
from src.observability import incr_metric, log_event
from src.services import webhook_store


def retry_eligible(account_id: str, limit: int | None = None) -> list[str]:
    """Oldest-first ids of non-duplicate, unprocessed events under the attempt cap."""
    cap = limit if limit is not None else settings.webhook_retry_batch_limit
    if cap <= 0:
        return []
    result = (
        supabase.table(webhook_store.EVENTS_TABLE)
        .select("id")
        .eq("instagram_account_id", account_id)
        .eq("processed", False)
        .eq("is_duplicate", False)
        .lt("processing_attempts", settings.webhook_max_processing_attempts)
        .order("created_at", desc=False)
        .limit(cap)
        .execute()
    )
    return [row["id"] for row in result.data or []]


def reset_for_retry(event_ids: list[str]) -> int:
    webhook_store.reset_events_for_retry(event_ids)
    return len(event_ids)


def retry_failed_events(account_id: str, *, request_id: str | None = None) -> int:
    event_ids = retry_eligible(account_id)
    rearmed = reset_for_retry(event_ids)
    if rearmed:
        incr_metric("webhook.retry.rearmed", rearmed)
    log_event(
        "webhook_retry_rearmed",
        request_id=request_id,
        account_id=account_id,
        rearmed=rearmed,
    )
    return rearmed
