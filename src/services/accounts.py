from __future__ import annotations

import logging
from typing import Any

from src.db import supabase
from src.observability import log_event


PLATFORM = "instagram"


def find_account_by_page_id(page_id: str | None, request_id: str | None = None) -> dict[str, Any] | None:
    """Best-effort lookup; errors resolve to ``None`` so ingestion is never blocked."""
    if not page_id:
        return None
    try:
        result = (
            supabase.table("client_accounts")
            .select("id, user_id")
            .eq("platform_account_id", str(page_id))
            .eq("platform", PLATFORM)
            .is_("deleted_at", "null")
            .limit(1)
            .execute()
        )
    except Exception as exc:
        log_event(
            "account_lookup_failed",
            level=logging.ERROR,
            request_id=request_id,
            page_id=page_id,
            error=str(exc),
        )
        return None
    if not result.data:
        return None
    return result.data[0]


def get_owned_account(account_id: str, user_id: str) -> dict[str, Any] | None:
    result = (
        supabase.table("client_accounts")
        .select("id, user_id, platform_account_id")
        .eq("id", account_id)
        .eq("user_id", user_id)
        .is_("deleted_at", "null")
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]
