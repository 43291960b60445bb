from __future__ import annotations

import json
import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from src.auth import (
    AuthContext,
    get_current_user,
    get_owned_account_id,
    require_account_owner,
    require_metrics_admin,
)
from src.config import settings
from src.db import supabase
from src.domain.handshake import verify_subscription
from src.domain.signatures import verify_signature
from src.models.instagram_webhooks import (
    WebhookAckResponse,
    WebhookEventListResponse,
    WebhookEventTypeName,
    WebhookRetryResponse,
    WebhookStatsResponse,
    WebhookSubscriptionCreateRequest,
    WebhookSubscriptionResponse,
)
from src.observability import incr_metric, log_event, metrics_snapshot, persist_metrics_snapshot
from src.services import webhook_store
from src.services.dispatch import dispatch_events
from src.services.ingestion import ingest_delivery
from src.services.retry_ledger import retry_failed_events
from src.services.stats import account_stats


router = APIRouter(prefix="/api/instagram/webhooks", tags=["instagram-webhooks"])

SIGNATURE_HEADER = "X-Hub-Signature-256"
LEGACY_SIGNATURE_HEADER = "X-Hub-Signature"


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _callback_url() -> str:
    return f"{settings.app_base_url.rstrip('/')}/api/instagram/webhooks"


def _expected_verify_token(
    mode: str | None, token: str | None, request_id: str | None
) -> tuple[str | None, str | None]:
    """Return the token to compare against and the matching subscription id, if any."""
    configured = settings.instagram_webhook_verify_token
    if mode != "subscribe" or not token:
        return configured, None
    if configured and secrets.compare_digest(token.encode(), configured.encode()):
        return configured, None
    # Tokens issued per account through subscription management are also honoured.
    try:
        subscription = webhook_store.find_active_subscription_by_token(token)
    except Exception as exc:
        log_event("webhook_subscription_lookup_failed", level=logging.ERROR, request_id=request_id, error=str(exc))
        return configured, None
    if not subscription:
        return configured, None
    return token, subscription["id"]


@router.get("", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    req_id = _request_id(request)
    expected, subscription_id = _expected_verify_token(hub_mode, hub_verify_token, req_id)
    challenge = verify_subscription(hub_mode, hub_verify_token, hub_challenge, expected, request_id=req_id)
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")
    if subscription_id:
        try:
            webhook_store.mark_subscription_verified(subscription_id)
        except Exception as exc:
            log_event("webhook_subscription_verify_stamp_failed", level=logging.WARNING, request_id=req_id, error=str(exc))
    return PlainTextResponse(challenge)


@router.post("", response_model=WebhookAckResponse)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    req_id = _request_id(request)
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    incr_metric("webhook.deliveries.received")
    log_event(
        "webhook_delivery_received",
        request_id=req_id,
        body_length=len(raw_body),
        has_signature=bool(signature),
        has_legacy_signature=bool(request.headers.get(LEGACY_SIGNATURE_HEADER)),
    )

    if not verify_signature(signature, raw_body, settings.instagram_app_secret):
        incr_metric("webhook.deliveries.rejected", reason="invalid_signature")
        log_event("webhook_delivery_rejected", level=logging.WARNING, request_id=req_id, reason="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        incr_metric("webhook.deliveries.rejected", reason="invalid_json")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        incr_metric("webhook.deliveries.rejected", reason="invalid_json")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    result = ingest_delivery(payload, request_id=req_id)
    jobs = result.dispatch_jobs
    if jobs:
        background_tasks.add_task(dispatch_events, jobs, request_id=req_id)

    log_event(
        "webhook_delivery_acknowledged",
        request_id=req_id,
        accepted=result.count("accepted"),
        duplicates=result.count("duplicate"),
        skipped=result.count("skipped"),
        failed=result.count("failed"),
        dispatched=len(jobs),
    )
    return WebhookAckResponse()


@router.post("/subscriptions", response_model=WebhookSubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: WebhookSubscriptionCreateRequest,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    require_account_owner(data.account_id, auth)
    token = data.verify_token or secrets.token_hex(32)
    callback_url = _callback_url()
    webhook_store.upsert_subscription(
        account_id=data.account_id,
        fields=data.subscription_fields,
        callback_url=callback_url,
        verify_token=token,
    )
    log_event(
        "webhook_subscription_saved",
        request_id=_request_id(request),
        account_id=data.account_id,
        fields=data.subscription_fields,
        custom_token=bool(data.verify_token),
    )
    return WebhookSubscriptionResponse(
        account_id=data.account_id,
        callback_url=callback_url,
        verify_token=token,
        fields=data.subscription_fields,
    )


@router.get("/events/{account_id}", response_model=WebhookEventListResponse)
async def list_events(
    account_id: str = Depends(get_owned_account_id),
    event_type: WebhookEventTypeName | None = Query(None),
    processed: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    rows, total = webhook_store.list_account_events(
        account_id,
        event_type=event_type,
        processed=processed,
        page=page,
        limit=limit,
    )
    return WebhookEventListResponse(events=rows, total=total, page=page, limit=limit)


@router.get("/stats/{account_id}", response_model=WebhookStatsResponse)
async def get_stats(account_id: str = Depends(get_owned_account_id)):
    return WebhookStatsResponse(**account_stats(account_id))


@router.post("/retry/{account_id}", response_model=WebhookRetryResponse)
async def retry_events(request: Request, account_id: str = Depends(get_owned_account_id)):
    count = retry_failed_events(account_id, request_id=_request_id(request))
    return WebhookRetryResponse(retried_count=count)


@router.get("/metrics")
async def get_metrics(
    request: Request,
    persist: bool = Query(False),
    auth: AuthContext = Depends(require_metrics_admin),
):
    snapshot = metrics_snapshot()
    persisted = False
    if persist:
        persisted = persist_metrics_snapshot(
            supabase_client=supabase,
            source="instagram_webhooks_metrics_endpoint",
            request_id=_request_id(request),
            export_url=settings.observability_export_url,
            export_bearer_token=settings.observability_export_bearer_token,
            export_timeout_seconds=settings.observability_export_timeout_seconds,
        )
    return {"counters": snapshot, "persisted": persisted}
