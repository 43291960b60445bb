from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


WebhookEventTypeName = Literal[
    "message",
    "comment",
    "mention",
    "story_mention",
    "live_comment",
    "message_reactions",
    "messaging_postbacks",
    "messaging_seen",
    "story_insights",
]

SUBSCRIPTION_FIELDS = {
    "messages",
    "comments",
    "mentions",
    "story_insights",
    "live_comments",
    "message_reactions",
    "messaging_postbacks",
    "messaging_seen",
}


class WebhookAckResponse(BaseModel):
    status: Literal["ok"] = "ok"


class WebhookEventItem(BaseModel):
    id: str
    event_type: str
    event_id: str
    instagram_account_id: str | None = None
    object_type: str | None = None
    object_id: str | None = None
    sender_ig_id: str | None = None
    sender_username: str | None = None
    payload: dict[str, Any] | None = None
    processed: bool = False
    processed_at: datetime | None = None
    processing_attempts: int = 0
    last_processing_error: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventItem]
    total: int
    page: int
    limit: int


class WebhookStatsResponse(BaseModel):
    total_events: int
    processed_events: int
    pending_events: int
    failed_events: int
    duplicate_events: int
    events_by_type: dict[str, int]


class WebhookSubscriptionCreateRequest(BaseModel):
    account_id: str
    subscription_fields: list[str] = Field(min_length=1)
    verify_token: str | None = Field(default=None, min_length=8, max_length=256)

    @field_validator("subscription_fields")
    @classmethod
    def _known_fields(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - SUBSCRIPTION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported subscription fields: {', '.join(unknown)}")
        # Preserve order, drop repeats.
        return list(dict.fromkeys(value))


class WebhookSubscriptionResponse(BaseModel):
    account_id: str
    callback_url: str
    verify_token: str
    fields: list[str]


class WebhookRetryResponse(BaseModel):
    retried_count: int


class DeauthorizeResponse(BaseModel):
    status: Literal["ok"] = "ok"


class DataDeletionResponse(BaseModel):
    url: str
    confirmation_code: str


DataDeletionStatus = Literal["pending", "in_progress", "completed", "failed"]


class DataDeletionStatusResponse(BaseModel):
    confirmation_code: str
    status: DataDeletionStatus
    requested_at: datetime | None = None
    completed_at: datetime | None = None
