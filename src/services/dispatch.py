from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from src.config import settings
from src.domain.errors import DispatchFailure
from src.observability import incr_metric, log_event
from src.services import webhook_store


EventHandler = Callable[[str], None]


@dataclass(frozen=True)
class DispatchJob:
    event_id: str
    event_type: str
    account_id: str | None = None


def _log_only_handler(event_id: str) -> None:
    log_event("webhook_event_handler_default", level=logging.DEBUG, event_id=event_id)


_handler: EventHandler = _log_only_handler
_executor: ThreadPoolExecutor | None = None
_executor_lock = Lock()


def register_event_handler(handler: EventHandler) -> None:
    global _handler
    _handler = handler


def reset_event_handler() -> None:
    register_event_handler(_log_only_handler)


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=max(1, settings.webhook_dispatch_max_workers),
                thread_name_prefix="webhook-dispatch",
            )
        return _executor


def _invoke_handler(job: DispatchJob, timeout_seconds: float) -> None:
    future = _get_executor().submit(_handler, job.event_id)
    try:
        future.result(timeout=timeout_seconds)
    except FuturesTimeout as exc:
        # The worker thread cannot be interrupted; it is abandoned.
        future.cancel()
        raise DispatchFailure(job.event_id, f"handler timed out after {timeout_seconds}s") from exc
    except Exception as exc:
        raise DispatchFailure(job.event_id, str(exc) or exc.__class__.__name__) from exc


def dispatch_event(job: DispatchJob, *, request_id: str | None = None) -> bool:
    """Run the business handler for one event and settle it in the ledger.

    Always ends in ``mark_event_processed`` or ``mark_event_failed``; nothing
    escapes this function.
    """
    timeout_seconds = settings.webhook_dispatch_timeout_seconds
    try:
        _invoke_handler(job, timeout_seconds)
    except DispatchFailure as exc:
        incr_metric("webhook.dispatch.failed", event_type=job.event_type)
        log_event(
            "webhook_dispatch_failed",
            level=logging.ERROR,
            request_id=request_id,
            event_id=job.event_id,
            event_type=job.event_type,
            error=str(exc),
        )
        _settle_failure(job, str(exc), request_id=request_id)
        return False

    try:
        webhook_store.mark_event_processed(job.event_id)
    except Exception as exc:
        log_event(
            "webhook_mark_processed_failed",
            level=logging.ERROR,
            request_id=request_id,
            event_id=job.event_id,
            error=str(exc),
        )
        return False
    webhook_store.write_log(job.event_id, "info", "Event processed", {"eventType": job.event_type})
    incr_metric("webhook.dispatch.processed", event_type=job.event_type)
    log_event(
        "webhook_dispatch_processed",
        request_id=request_id,
        event_id=job.event_id,
        event_type=job.event_type,
    )
    return True


def _settle_failure(job: DispatchJob, error: str, *, request_id: str | None) -> None:
    try:
        webhook_store.mark_event_failed(job.event_id, error)
        if job.account_id:
            webhook_store.record_subscription_error(job.account_id, error)
    except Exception as exc:
        log_event(
            "webhook_mark_failed_failed",
            level=logging.ERROR,
            request_id=request_id,
            event_id=job.event_id,
            error=str(exc),
        )
    webhook_store.write_log(job.event_id, "error", "Event processing failed", {"error": error})


def dispatch_events(jobs: list[DispatchJob], request_id: str | None = None) -> None:
    for job in jobs:
        dispatch_event(job, request_id=request_id)
