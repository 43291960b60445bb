from __future__ import annotations

from collections import Counter
from typing import Any

from src.config import settings
from src.services import webhook_store


def aggregate_event_stats(rows: list[dict[str, Any]], max_attempts: int) -> dict[str, Any]:
    total = processed = pending = failed = duplicate = 0
    by_type: Counter[str] = Counter()
    for row in rows:
        total += 1
        by_type[str(row.get("event_type") or "unknown")] += 1
        if row.get("is_duplicate"):
            duplicate += 1
            continue
        if row.get("processed"):
            processed += 1
            continue
        pending += 1
        if int(row.get("processing_attempts") or 0) >= max_attempts:
            failed += 1
    return {
        "total_events": total,
        "processed_events": processed,
        "pending_events": pending,
        "failed_events": failed,
        "duplicate_events": duplicate,
        "events_by_type": dict(by_type),
    }


def account_stats(account_id: str) -> dict[str, Any]:
    rows = webhook_store.account_event_flags(account_id)
    return aggregate_event_stats(rows, settings.webhook_max_processing_attempts)
