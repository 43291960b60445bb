from __future__ import annotations

import json
import logging
import secrets
from typing import Any
from urllib.parse import parse_qs

from fastapi import APIRouter, HTTPException, Query, Request, status

from src.config import settings
from src.domain.signed_request import try_validate_signed_request
from src.models.instagram_webhooks import DataDeletionResponse, DataDeletionStatusResponse, DeauthorizeResponse
from src.observability import log_event
from src.services import webhook_store


router = APIRouter(prefix="/api/instagram/auth", tags=["instagram-auth"])


def _request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


async def _extract_signed_request(request: Request) -> str | None:
    raw_body = await request.body()
    content_type = request.headers.get("Content-Type", "")
    text = raw_body.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            return None
        value = body.get("signed_request") if isinstance(body, dict) else None
        return value if isinstance(value, str) else None
    values = parse_qs(text).get("signed_request")
    return values[0] if values else None


async def _validated_payload(request: Request) -> dict[str, Any]:
    req_id = _request_id(request)
    signed_request = await _extract_signed_request(request)
    payload = try_validate_signed_request(
        signed_request,
        settings.instagram_app_secret,
        request_id=req_id,
        tolerance_seconds=settings.webhook_signed_request_tolerance_seconds,
    )
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signed request")
    return payload


@router.post("/deauthorize", response_model=DeauthorizeResponse)
async def deauthorize_callback(request: Request):
    payload = await _validated_payload(request)
    provider_user_id = payload.get("user_id")
    webhook_store.write_log(None, "info", "Deauthorize callback received", {"providerUserId": provider_user_id})
    log_event("instagram_deauthorize_received", request_id=_request_id(request), provider_user_id=provider_user_id)
    return DeauthorizeResponse()


@router.post("/data-deletion", response_model=DataDeletionResponse)
async def data_deletion_callback(request: Request):
    payload = await _validated_payload(request)
    req_id = _request_id(request)
    provider_user_id = payload.get("user_id")
    confirmation_code = secrets.token_hex(8)
    try:
        webhook_store.insert_data_deletion_request(
            confirmation_code=confirmation_code,
            provider_user_id=str(provider_user_id) if provider_user_id is not None else None,
        )
    except Exception as exc:
        log_event(
            "instagram_data_deletion_persist_failed",
            level=logging.ERROR,
            request_id=req_id,
            provider_user_id=provider_user_id,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Data deletion request could not be recorded",
        ) from exc

    status_url = f"{settings.app_base_url.rstrip('/')}{router.prefix}/data-deletion/status?code={confirmation_code}"
    webhook_store.write_log(
        None,
        "info",
        "Data deletion callback received",
        {"providerUserId": provider_user_id, "confirmationCode": confirmation_code},
    )
    log_event(
        "instagram_data_deletion_requested",
        request_id=req_id,
        provider_user_id=provider_user_id,
        confirmation_code=confirmation_code,
    )
    return DataDeletionResponse(url=status_url, confirmation_code=confirmation_code)


@router.get("/data-deletion/status", response_model=DataDeletionStatusResponse)
async def data_deletion_status(code: str = Query(..., min_length=1, max_length=64)):
    """Public status page the provider links users to with their confirmation code."""
    record = webhook_store.find_data_deletion_request(code)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Data deletion request not found")
    return DataDeletionStatusResponse(
        confirmation_code=record["confirmation_code"],
        status=record["status"],
        requested_at=record.get("requested_at"),
        completed_at=record.get("completed_at"),
    )
