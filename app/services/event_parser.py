"""
Parses device webhook deliveries into a ParsedAccessEvent and classifies the
vendor's free-text event type into the closed set {entry, exit, denied}.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import ValidationError as PydanticValidationError
from app.exceptions import ValidationError
from app.schemas.access_event import WebhookPayload
from app.utils.logger import get_logger

logger = get_logger(__name__)

EVENT_ENTRY = "entry"
EVENT_EXIT = "exit"
EVENT_DENIED = "denied"

# Evaluated in order, first substring match wins (case-insensitive).
# Anything unmatched is classified as denied: the most restrictive outcome.
EVENT_TYPE_RULES: tuple[tuple[str, str], ...] = (
    ("entry", EVENT_ENTRY),
    ("access_granted", EVENT_ENTRY),
    ("exit", EVENT_EXIT),
)
DEFAULT_EVENT_TYPE = EVENT_DENIED


@dataclass
class ParsedAccessEvent:
    event_id: str
    branch_id: str
    event_type: str            # entry | exit | denied
    raw_event_type: str
    event_time: datetime       # naive UTC
    person_id: Optional[str] = None
    person_name: Optional[str] = None
    door_id: Optional[str] = None
    door_name: Optional[str] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    card_no: Optional[str] = None
    face_id: Optional[str] = None
    msg_id: Optional[str] = None
    topic: Optional[str] = None
    raw_payload: Optional[str] = None


def classify_event_type(raw_type: Optional[str]) -> str:
    normalized = (raw_type or "").strip().lower()
    for needle, classification in EVENT_TYPE_RULES:
        if needle in normalized:
            return classification
    return DEFAULT_EVENT_TYPE


def parse_event_time(value: Optional[str]) -> datetime:
    """ISO-8601 (with Z or offset) or epoch seconds/milliseconds → naive UTC. Missing → now."""
    if value is None or not str(value).strip():
        return datetime.utcnow()
    text = str(value).strip()

    if text.isdigit():
        epoch = int(text)
        try:
            if epoch > 100_000_000_000:   # milliseconds
                epoch = epoch / 1000
            return datetime.fromtimestamp(epoch, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"eventTime out of range: {text[:32]!r}")

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid eventTime: {text!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_webhook_payload(body: Any, branch_id: str) -> ParsedAccessEvent:
    """
    Validate a decoded webhook body for `branch_id`.

    Raises ValidationError when the body has no `data` object, when eventId or
    eventType is missing or blank, or when eventTime cannot be parsed.
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    if not isinstance(body.get("data"), dict):
        raise ValidationError("Missing or malformed 'data' object")

    try:
        payload = WebhookPayload.model_validate(body)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Invalid event payload: {fields}")

    data = payload.data
    event_id = data.eventId.strip()
    raw_type = data.eventType.strip()
    if not event_id:
        raise ValidationError("eventId is required")
    if not raw_type:
        raise ValidationError("eventType is required")

    event = ParsedAccessEvent(
        event_id=event_id,
        branch_id=branch_id,
        event_type=classify_event_type(raw_type),
        raw_event_type=raw_type,
        event_time=parse_event_time(data.eventTime),
        person_id=_blank_to_none(data.personId),
        person_name=data.personName,
        door_id=_blank_to_none(data.doorId) or _blank_to_none(data.doorIndexCode),
        door_name=data.doorName,
        device_id=_blank_to_none(data.deviceId),
        device_name=data.deviceName,
        card_no=_blank_to_none(data.cardNo),
        face_id=_blank_to_none(data.faceId),
        msg_id=payload.msgId,
        topic=payload.topic,
        raw_payload=json.dumps(body, default=str),
    )
    logger.debug(f"Parsed event {event.event_id}: {raw_type!r} -> {event.event_type}")
    return event
