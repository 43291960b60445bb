from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Final, Literal


EventType = Literal[
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

# These can recur for the same object and sender, so their identity also
# carries the event timestamp.
REPEATABLE_EVENT_TYPES: Final[frozenset[str]] = frozenset(
    {"message_reactions", "messaging_postbacks", "messaging_seen"}
)

UNKNOWN_PART: Final[str] = "unknown"


@dataclass(frozen=True)
class ClassifiedEvent:
    event_type: EventType
    object_type: str | None = None
    object_id: str | None = None
    sender_id: str | None = None
    sender_username: str | None = None
    occurred_at: str | None = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value:
        return _as_dict(value[0])
    return {}


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _field(change: dict[str, Any]) -> str:
    return str(change.get("field") or "")


def _value(change: dict[str, Any]) -> dict[str, Any]:
    value = change.get("value")
    return value if isinstance(value, dict) else change


def _occurred_at(change: dict[str, Any]) -> str | None:
    return _text(_value(change).get("timestamp") or change.get("timestamp"))


def _sender_id(value: dict[str, Any], *order: str) -> str | None:
    for key in order:
        node_id = _as_dict(value.get(key)).get("id")
        if node_id is not None:
            return _text(node_id)
    return None


# --- predicates -----------------------------------------------------------


def _is_message_reaction(change: dict[str, Any]) -> bool:
    return _field(change) == "message_reactions" or bool(_value(change).get("message_reactions"))


def _is_messaging_postback(change: dict[str, Any]) -> bool:
    return _field(change) == "messaging_postbacks" or bool(_value(change).get("messaging_postbacks"))


def _is_messaging_seen(change: dict[str, Any]) -> bool:
    value = _value(change)
    return _field(change) == "messaging_seen" or bool(
        value.get("messaging_seen") or value.get("read") or value.get("watermark")
    )


def _is_story_insight(change: dict[str, Any]) -> bool:
    return _field(change) == "story_insights" or bool(_value(change).get("story_insights"))


def _is_message(change: dict[str, Any]) -> bool:
    value = _value(change)
    return (
        _field(change) == "messages"
        or "messages" in value
        or isinstance(change.get("message"), dict)
        or isinstance(value.get("message"), dict)
    )


def _is_mention(change: dict[str, Any]) -> bool:
    value = _value(change)
    return _field(change) == "mentions" or (
        isinstance(value.get("media"), dict) and value.get("comment_id") is not None
    )


def _is_comment(change: dict[str, Any]) -> bool:
    return _field(change) == "comments" or _value(change).get("comment_id") is not None


def _is_live_comment(change: dict[str, Any]) -> bool:
    return _field(change) == "live_comments" or "live_comments" in _value(change)


# --- extractors -----------------------------------------------------------


def _extract_message_reaction(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    return ClassifiedEvent(
        event_type="message_reactions",
        object_type="message",
        object_id=_text(_first(value.get("message_reactions")).get("mid")),
        sender_id=_sender_id(value, "from", "sender"),
        occurred_at=_occurred_at(change),
    )


def _extract_messaging_postback(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    return ClassifiedEvent(
        event_type="messaging_postbacks",
        object_type="postback",
        object_id=_text(_first(value.get("messaging_postbacks")).get("mid")),
        sender_id=_sender_id(value, "sender", "from"),
        occurred_at=_occurred_at(change),
    )


def _extract_messaging_seen(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    return ClassifiedEvent(
        event_type="messaging_seen",
        object_type="seen",
        object_id=_text(_as_dict(value.get("messaging_seen") or value.get("read")).get("mid")),
        sender_id=_sender_id(value, "sender", "from"),
        occurred_at=_occurred_at(change),
    )


def _extract_story_insight(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    media_id = _as_dict(value.get("story_insights")).get("media_id") or value.get("media_id")
    return ClassifiedEvent(
        event_type="story_insights",
        object_type="story",
        object_id=_text(media_id),
        sender_id=_sender_id(value, "from"),
        occurred_at=_occurred_at(change),
    )


def _extract_message(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    first_message = _first(value.get("messages"))
    message = _as_dict(value.get("message") or change.get("message"))
    sender_id = _sender_id(value, "sender") or _sender_id(change, "sender") or _sender_id(first_message, "from")
    return ClassifiedEvent(
        event_type="message",
        object_type="message",
        object_id=_text(first_message.get("id") or message.get("mid")),
        sender_id=sender_id,
        occurred_at=_occurred_at(change),
    )


def _extract_mention(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    media = _as_dict(value.get("media"))
    sender = _as_dict(value.get("from"))
    if media.get("media_product_type") == "STORY":
        return ClassifiedEvent(
            event_type="story_mention",
            object_type="story",
            object_id=_text(media.get("id")),
            sender_id=_text(sender.get("id")),
            sender_username=_text(sender.get("username")),
            occurred_at=_occurred_at(change),
        )
    return ClassifiedEvent(
        event_type="mention",
        object_type="comment",
        object_id=_text(value.get("comment_id") or value.get("id")),
        sender_id=_text(sender.get("id")),
        sender_username=_text(sender.get("username")),
        occurred_at=_occurred_at(change),
    )


def _extract_comment(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    sender = _as_dict(value.get("from"))
    return ClassifiedEvent(
        event_type="comment",
        object_type="comment",
        object_id=_text(value.get("comment_id") or value.get("id")),
        sender_id=_text(sender.get("id")),
        sender_username=_text(sender.get("username")),
        occurred_at=_occurred_at(change),
    )


def _extract_live_comment(change: dict[str, Any]) -> ClassifiedEvent:
    value = _value(change)
    sender = _as_dict(value.get("from"))
    return ClassifiedEvent(
        event_type="live_comment",
        object_type="live_video",
        object_id=_text(value.get("video_id")),
        sender_id=_text(sender.get("id")),
        sender_username=_text(sender.get("username")),
        occurred_at=_occurred_at(change),
    )


ClassificationRule = tuple[str, Callable[[dict[str, Any]], bool], Callable[[dict[str, Any]], ClassifiedEvent]]

# First match wins. Payload shapes overlap (a mention also carries a
# comment_id), so order is part of the contract.
CLASSIFICATION_RULES: Final[tuple[ClassificationRule, ...]] = (
    ("message_reactions", _is_message_reaction, _extract_message_reaction),
    ("messaging_postbacks", _is_messaging_postback, _extract_messaging_postback),
    ("messaging_seen", _is_messaging_seen, _extract_messaging_seen),
    ("story_insights", _is_story_insight, _extract_story_insight),
    ("message", _is_message, _extract_message),
    ("mention", _is_mention, _extract_mention),
    ("comment", _is_comment, _extract_comment),
    ("live_comment", _is_live_comment, _extract_live_comment),
)


def classify_change(change: Any) -> ClassifiedEvent | None:
    """Classify one ``changes``/``messaging`` item, or ``None`` when unrecognised."""
    if not isinstance(change, dict):
        return None
    for _name, matches, extract in CLASSIFICATION_RULES:
        if matches(change):
            return extract(change)
    return None


def derive_event_key(
    event_type: str,
    object_id: str | None,
    sender_id: str | None,
    occurred_at: str | None = None,
) -> str:
    parts = [event_type, object_id or UNKNOWN_PART, sender_id or UNKNOWN_PART]
    if event_type in REPEATABLE_EVENT_TYPES:
        parts.append(occurred_at or str(int(time.time() * 1000)))
    return "_".join(parts)


def event_key_for(event: ClassifiedEvent) -> str:
    return derive_event_key(event.event_type, event.object_id, event.sender_id, event.occurred_at)


def duplicate_event_key(event_key: str, received_at_ms: int | None = None) -> str:
    stamp = received_at_ms if received_at_ms is not None else int(time.time() * 1000)
    return f"{event_key}_dup_{stamp}"
