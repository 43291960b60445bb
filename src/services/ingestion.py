"""Per-delivery ingestion: classify, dedup-check and persist each item.

A delivery is acknowledged once every item has been settled here; dispatch
to the business handler happens afterwards (see ``src.services.dispatch``).
Items are independent: a persistence failure on one does not affect the
others, and there is no transaction spanning the whole payload.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, TypeVar

from src.config import settings
from src.domain.classification import ClassifiedEvent, classify_change, duplicate_event_key, event_key_for
from src.domain.errors import PersistenceFailure
from src.observability import incr_metric, log_event
from src.services import accounts, webhook_store
from src.services.dispatch import DispatchJob


T = TypeVar("T")

OutcomeStatus = Literal["accepted", "duplicate", "skipped", "failed"]

_persistence_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="webhook-persist")


@dataclass
class ItemOutcome:
    status: OutcomeStatus
    page_id: str | None = None
    event_type: str | None = None
    event_key: str | None = None
    event_id: str | None = None
    account_id: str | None = None
    duplicate_of: str | None = None
    error: str | None = None


@dataclass
class DeliveryResult:
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def dispatch_jobs(self) -> list[DispatchJob]:
        return [
            DispatchJob(event_id=o.event_id, event_type=o.event_type or "unknown", account_id=o.account_id)
            for o in self.outcomes
            if o.status == "accepted" and o.event_id and o.account_id
        ]


def _bounded(operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    timeout_seconds = settings.webhook_persistence_timeout_seconds
    future = _persistence_pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeout as exc:
        future.cancel()
        raise PersistenceFailure(operation, f"timed out after {timeout_seconds}s") from exc
    except Exception as exc:
        raise PersistenceFailure(operation, str(exc)) from exc


def _resolve_account(page_id: str | None, request_id: str | None) -> dict[str, Any] | None:
    """Page-id lookup under the persistence timeout; a stalled lookup means no account."""
    if not page_id:
        return None
    try:
        return _bounded("find_account", accounts.find_account_by_page_id, page_id, request_id=request_id)
    except PersistenceFailure as exc:
        incr_metric("webhook.accounts.lookup_failed")
        log_event(
            "webhook_account_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            page_id=page_id,
            error=str(exc),
        )
        return None


def _audit(
    event_id: str | None,
    level: str,
    message: str,
    context: dict[str, Any],
    *,
    request_id: str | None,
) -> None:
    try:
        _bounded("write_log", webhook_store.write_log, event_id, level, message, context)
    except PersistenceFailure as exc:
        log_event(
            "webhook_audit_log_failed",
            level=logging.WARNING,
            request_id=request_id,
            event_id=event_id,
            error=str(exc),
        )


def _iter_items(payload: dict[str, Any]):
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        page_id = entry.get("id")
        items = entry.get("changes") or entry.get("messaging") or []
        if not isinstance(items, list):
            continue
        for item in items:
            yield (str(page_id) if page_id is not None else None), item


def ingest_delivery(payload: dict[str, Any], *, request_id: str | None = None) -> DeliveryResult:
    result = DeliveryResult()
    if not payload.get("object") or not payload.get("entry"):
        log_event("webhook_payload_unrecognised", level=logging.WARNING, request_id=request_id)
        return result

    for page_id, item in _iter_items(payload):
        classified = classify_change(item)
        if classified is None:
            incr_metric("webhook.events.skipped")
            field_name = item.get("field") if isinstance(item, dict) else None
            log_event(
                "webhook_change_unclassified",
                level=logging.DEBUG,
                request_id=request_id,
                page_id=page_id,
                field=field_name,
            )
            result.outcomes.append(ItemOutcome(status="skipped", page_id=page_id))
            continue
        result.outcomes.append(ingest_item(page_id, classified, payload, request_id=request_id))
    return result


def ingest_item(
    page_id: str | None,
    event: ClassifiedEvent,
    payload: dict[str, Any],
    *,
    request_id: str | None = None,
) -> ItemOutcome:
    event_key = event_key_for(event)
    try:
        existing = _bounded("find_event", webhook_store.find_event_by_key, event_key)
        if existing:
            return _record_duplicate(page_id, event, event_key, existing["id"], payload, request_id=request_id)
        return _record_new(page_id, event, event_key, payload, request_id=request_id)
    except PersistenceFailure as exc:
        incr_metric("webhook.events.persist_failed", event_type=event.event_type, operation=exc.operation)
        log_event(
            "webhook_event_persist_failed",
            level=logging.ERROR,
            request_id=request_id,
            page_id=page_id,
            event_type=event.event_type,
            event_key=event_key,
            operation=exc.operation,
            error=str(exc),
        )
        return ItemOutcome(
            status="failed",
            page_id=page_id,
            event_type=event.event_type,
            event_key=event_key,
            error=str(exc),
        )


def _record_duplicate(
    page_id: str | None,
    event: ClassifiedEvent,
    event_key: str,
    original_id: str,
    payload: dict[str, Any],
    *,
    request_id: str | None,
) -> ItemOutcome:
    audit_key = duplicate_event_key(event_key, int(time.time() * 1000))
    account = _resolve_account(page_id, request_id)
    row = _bounded(
        "insert_duplicate",
        webhook_store.insert_duplicate_event,
        event_type=event.event_type,
        event_key=audit_key,
        duplicate_of=original_id,
        account_id=account["id"] if account else None,
        object_type=event.object_type,
        object_id=event.object_id,
        sender_id=event.sender_id,
        payload=payload,
    )
    _audit(row.get("id"), "debug", "Duplicate webhook delivery", {"duplicateOf": original_id}, request_id=request_id)
    incr_metric("webhook.events.duplicate", event_type=event.event_type)
    log_event(
        "webhook_duplicate_recorded",
        request_id=request_id,
        event_type=event.event_type,
        event_key=event_key,
        duplicate_of=original_id,
    )
    return ItemOutcome(
        status="duplicate",
        page_id=page_id,
        event_type=event.event_type,
        event_key=audit_key,
        event_id=row.get("id"),
        account_id=account["id"] if account else None,
        duplicate_of=original_id,
    )


def _record_new(
    page_id: str | None,
    event: ClassifiedEvent,
    event_key: str,
    payload: dict[str, Any],
    *,
    request_id: str | None,
) -> ItemOutcome:
    account = _resolve_account(page_id, request_id)
    account_id = account["id"] if account else None
    row = _bounded(
        "insert_event",
        webhook_store.insert_event,
        event_type=event.event_type,
        event_key=event_key,
        account_id=account_id,
        object_type=event.object_type,
        object_id=event.object_id,
        sender_id=event.sender_id,
        sender_username=event.sender_username,
        payload=payload,
    )
    event_id = row["id"]

    if account_id:
        try:
            _bounded("increment_counters", webhook_store.increment_subscription_counters, account_id)
        except PersistenceFailure as exc:
            log_event(
                "webhook_subscription_counter_failed",
                level=logging.ERROR,
                request_id=request_id,
                account_id=account_id,
                operation=exc.operation,
                error=str(exc),
            )
    else:
        log_event(
            "webhook_event_unowned",
            level=logging.WARNING,
            request_id=request_id,
            event_id=event_id,
            page_id=page_id,
        )

    _audit(
        event_id,
        "info",
        "Webhook event received and stored",
        {"eventType": event.event_type, "objectType": event.object_type, "senderId": event.sender_id},
        request_id=request_id,
    )
    incr_metric("webhook.events.accepted", event_type=event.event_type)
    log_event(
        "webhook_event_stored",
        request_id=request_id,
        event_id=event_id,
        event_type=event.event_type,
        event_key=event_key,
        account_found=bool(account_id),
    )
    return ItemOutcome(
        status="accepted",
        page_id=page_id,
        event_type=event.event_type,
        event_key=event_key,
        event_id=event_id,
        account_id=account_id,
    )
