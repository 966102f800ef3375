from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend.app.models import (
    Direction,
    InboundEvent,
    InboundMessageEvent,
    InstanceRecord,
    MediaInfo,
    MessageStatus,
    Provider,
    StatusUpdateEvent,
    utc_now,
)

InstanceResolver = Callable[[Provider, str], Optional[InstanceRecord]]

PERSONAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
NO_TEXT = "[no text]"

_MEDIA_LABELS = {
    "image": "Image",
    "video": "Video",
    "audio": "Audio message",
    "voice": "Audio message",
    "ptt": "Audio message",
    "document": "Document",
    "sticker": "Sticker",
}

_GATEWAY_TYPES = {
    "conversation": "text",
    "extendedtext": "text",
    "text": "text",
    "image": "image",
    "video": "video",
    "audio": "audio",
    "ptt": "audio",
    "document": "document",
    "sticker": "sticker",
    "location": "location",
    "contact": "contacts",
    "reaction": "reaction",
}

_GATEWAY_STATUSES = {
    "sent": MessageStatus.sent,
    "serverack": MessageStatus.sent,
    "delivered": MessageStatus.delivered,
    "deliveryack": MessageStatus.delivered,
    "read": MessageStatus.read,
    "played": MessageStatus.read,
    "failed": MessageStatus.failed,
    "error": MessageStatus.failed,
}

_NON_DIGITS = re.compile(r"\D+")


class NormalizationError(Exception):
    pass


@dataclass(frozen=True)
class NormalizationIssue:
    path: str
    reason: str


@dataclass
class NormalizationResult:
    events: list[InboundEvent] = field(default_factory=list)
    issues: list[NormalizationIssue] = field(default_factory=list)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def canonical_identity(value: Any) -> Optional[str]:
    raw = _text(value)
    if not raw:
        return None
    if raw.endswith(GROUP_SUFFIX):
        return raw
    local = raw.split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", local)
    if not digits:
        return None
    return f"{digits}{PERSONAL_SUFFIX}"


def normalize_phone(value: Any) -> Optional[str]:
    raw = _text(value)
    if not raw or raw.endswith(GROUP_SUFFIX):
        return None
    local = raw.split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", local)
    return f"+{digits}" if digits else None


def parse_timestamp(value: Any, fallback: datetime) -> datetime:
    """Epoch seconds, epoch milliseconds or ISO-8601; naive UTC out."""
    if value is None or isinstance(value, bool) or value == "":
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = None
    try:
        if number is not None:
            if number <= 0:
                return fallback
            if number > 1e11:
                number = number / 1000.0
            return datetime.fromtimestamp(number, timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return fallback
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _cloud_media(block: dict) -> Optional[MediaInfo]:
    url = _text(block.get("url"))
    if not url and _text(block.get("id")):
        url = f"meta_id:{_text(block.get('id'))}"
    if not url:
        return None
    return MediaInfo(
        url=url,
        mime_type=_text(block.get("mime_type")),
        size_bytes=_int_or_none(block.get("file_size")),
        duration_seconds=_int_or_none(block.get("duration")),
    )


def _cloud_content(message_type: str, item: dict) -> tuple[str, Optional[MediaInfo]]:
    if message_type == "text":
        return _text(_dict(item.get("text")).get("body")) or NO_TEXT, None
    if message_type in {"image", "video", "audio", "voice", "document", "sticker"}:
        block = _dict(item.get(message_type))
        if message_type == "voice" and not block:
            block = _dict(item.get("audio"))
        caption = _text(block.get("caption"))
        if message_type == "document":
            caption = caption or _text(block.get("filename"))
        return caption or _MEDIA_LABELS[message_type], _cloud_media(block)
    if message_type == "location":
        location = _dict(item.get("location"))
        coordinates = f"({location.get('latitude')}, {location.get('longitude')})"
        name = _text(location.get("name"))
        return (f"Location: {name} {coordinates}" if name else f"Location: {coordinates}"), None
    if message_type == "button":
        return _text(_dict(item.get("button")).get("text")) or "Button response", None
    if message_type == "interactive":
        interactive = _dict(item.get("interactive"))
        kind = interactive.get("type")
        if kind == "button_reply":
            return _text(_dict(interactive.get("button_reply")).get("title")) or "Button reply", None
        if kind == "list_reply":
            return _text(_dict(interactive.get("list_reply")).get("title")) or "List reply", None
        return "Interactive message", None
    if message_type == "reaction":
        reaction = _dict(item.get("reaction"))
        return f"Reacted {reaction.get('emoji') or ''} to message {reaction.get('message_id') or ''}".strip(), None
    if message_type == "contacts":
        names = [
            _text(_dict(contact.get("name")).get("formatted_name"))
            for contact in _list(item.get("contacts"))
            if isinstance(contact, dict)
        ]
        names = [name for name in names if name]
        return (f"Contact: {', '.join(names)}" if names else "Shared contact"), None
    return f"Unsupported message type: {message_type}", None


def _cloud_message(
    item: Any,
    *,
    path: str,
    instance: InstanceRecord,
    direction: Direction,
    contact_names: dict[str, str],
    received_at: datetime,
    issues: list[NormalizationIssue],
) -> Optional[InboundMessageEvent]:
    if not isinstance(item, dict):
        issues.append(NormalizationIssue(path, "message entry is not an object"))
        return None
    message_id = _text(item.get("id"))
    remote_raw = _text(item.get("from") if direction == Direction.inbound else item.get("to"))
    remote = canonical_identity(remote_raw)
    if not message_id:
        issues.append(NormalizationIssue(path, "message id missing"))
        return None
    if not remote:
        issues.append(NormalizationIssue(path, "remote identity missing"))
        return None
    message_type = _text(item.get("type")) or "unknown"
    text, media = _cloud_content(message_type, item)
    return InboundMessageEvent(
        provider=Provider.cloud_api,
        organization_id=instance.organization_id,
        instance_id=instance.id,
        provider_message_id=message_id,
        remote_identity=remote,
        phone=normalize_phone(remote_raw),
        contact_name=contact_names.get(remote_raw or "") if direction == Direction.inbound else None,
        direction=direction,
        content_type=message_type,
        text=text,
        media=media,
        occurred_at=parse_timestamp(item.get("timestamp"), received_at),
    )


def _cloud_status(
    item: Any,
    *,
    path: str,
    instance: InstanceRecord,
    received_at: datetime,
    issues: list[NormalizationIssue],
) -> Optional[StatusUpdateEvent]:
    if not isinstance(item, dict):
        issues.append(NormalizationIssue(path, "status entry is not an object"))
        return None
    message_id = _text(item.get("id"))
    if not message_id:
        issues.append(NormalizationIssue(path, "status message id missing"))
        return None
    try:
        status = MessageStatus(str(item.get("status", "")).strip().lower())
    except ValueError:
        issues.append(NormalizationIssue(path, f"unknown status value: {item.get('status')}"))
        return None
    errors = [error for error in _list(item.get("errors")) if isinstance(error, dict)]
    first_error = errors[0] if errors else {}
    return StatusUpdateEvent(
        provider=Provider.cloud_api,
        organization_id=instance.organization_id,
        instance_id=instance.id,
        provider_message_id=message_id,
        status=status,
        recipient=canonical_identity(item.get("recipient_id")),
        occurred_at=parse_timestamp(item.get("timestamp"), received_at),
        error_code=_text(first_error.get("code")),
        error_title=_text(first_error.get("title")),
    )


def _normalize_cloud(
    payload: Any, resolve_instance: InstanceResolver, received_at: datetime
) -> NormalizationResult:
    if not isinstance(payload, dict):
        raise NormalizationError("cloud api payload must be a json object")
    if payload.get("object") != "whatsapp_business_account":
        raise NormalizationError(f"unsupported cloud api object: {payload.get('object')!r}")

    result = NormalizationResult()
    for entry_index, entry in enumerate(_list(payload.get("entry"))):
        entry_path = f"entry[{entry_index}]"
        if not isinstance(entry, dict):
            result.issues.append(NormalizationIssue(entry_path, "entry is not an object"))
            continue
        for change_index, change in enumerate(_list(entry.get("changes"))):
            change_path = f"{entry_path}.changes[{change_index}]"
            if not isinstance(change, dict):
                result.issues.append(NormalizationIssue(change_path, "change is not an object"))
                continue
            change_field = change.get("field")
            if change_field not in {"messages", "smb_message_echoes"}:
                continue
            value = _dict(change.get("value"))
            phone_number_id = _text(_dict(value.get("metadata")).get("phone_number_id"))
            instance = resolve_instance(Provider.cloud_api, phone_number_id) if phone_number_id else None
            if instance is None:
                result.issues.append(
                    NormalizationIssue(change_path, f"unknown instance: {phone_number_id}")
                )
                continue

            if change_field == "smb_message_echoes":
                for index, item in enumerate(_list(value.get("message_echoes"))):
                    event = _cloud_message(
                        item,
                        path=f"{change_path}.message_echoes[{index}]",
                        instance=instance,
                        direction=Direction.outbound,
                        contact_names={},
                        received_at=received_at,
                        issues=result.issues,
                    )
                    if event is not None:
                        result.events.append(event)
                continue

            contact_names: dict[str, str] = {}
            for contact in _list(value.get("contacts")):
                contact = _dict(contact)
                wa_id = _text(contact.get("wa_id"))
                name = _text(_dict(contact.get("profile")).get("name"))
                if wa_id and name:
                    contact_names[wa_id] = name
            for index, item in enumerate(_list(value.get("messages"))):
                event = _cloud_message(
                    item,
                    path=f"{change_path}.messages[{index}]",
                    instance=instance,
                    direction=Direction.inbound,
                    contact_names=contact_names,
                    received_at=received_at,
                    issues=result.issues,
                )
                if event is not None:
                    result.events.append(event)
            for index, item in enumerate(_list(value.get("statuses"))):
                event = _cloud_status(
                    item,
                    path=f"{change_path}.statuses[{index}]",
                    instance=instance,
                    received_at=received_at,
                    issues=result.issues,
                )
                if event is not None:
                    result.events.append(event)
    return result


def _unwrap_gateway(payload: Any) -> dict:
    if isinstance(payload, list):
        if not payload or not isinstance(payload[0], dict):
            raise NormalizationError("gateway payload list is empty or malformed")
        first = payload[0]
        payload = first["body"] if isinstance(first.get("body"), dict) else first
    if not isinstance(payload, dict):
        raise NormalizationError("gateway payload must be a json object")
    return payload


def _gateway_content_type(message: dict) -> str:
    raw = _text(message.get("messageType")) or _text(message.get("type")) or ""
    key = raw.lower()
    if key.endswith("message"):
        key = key[: -len("message")]
    return _GATEWAY_TYPES.get(key, key or "unknown")


def _gateway_message(
    body: dict, instance: InstanceRecord, received_at: datetime, issues: list[NormalizationIssue]
) -> Optional[InboundMessageEvent]:
    message = body.get("message")
    if not isinstance(message, dict):
        issues.append(NormalizationIssue("message", "message is not an object"))
        return None
    chat = _dict(body.get("chat"))
    message_id = _text(message.get("id")) or _text(message.get("messageid"))
    remote_raw = _text(message.get("chatid")) or _text(chat.get("wa_chatid"))
    remote = canonical_identity(remote_raw)
    if not message_id:
        issues.append(NormalizationIssue("message", "message id missing"))
        return None
    if not remote:
        issues.append(NormalizationIssue("message", "remote identity missing"))
        return None

    direction = Direction.outbound if message.get("fromMe") else Direction.inbound
    name = _text(chat.get("name")) or _text(chat.get("wa_contactName"))
    if not name and direction == Direction.inbound:
        name = _text(message.get("senderName"))

    content = message.get("content")
    text = _text(message.get("text"))
    media = None
    if isinstance(content, str):
        text = text or _text(content)
    elif isinstance(content, dict):
        text = text or _text(content.get("text")) or _text(content.get("caption"))
        if _text(content.get("URL")):
            media = MediaInfo(
                url=_text(content.get("URL")),
                mime_type=_text(content.get("mimetype")),
                size_bytes=_int_or_none(content.get("fileLength")),
                duration_seconds=_int_or_none(content.get("seconds")),
            )
    content_type = _gateway_content_type(message)
    if not text:
        text = _MEDIA_LABELS.get(content_type, NO_TEXT)

    return InboundMessageEvent(
        provider=Provider.gateway,
        organization_id=instance.organization_id,
        instance_id=instance.id,
        provider_message_id=message_id,
        remote_identity=remote,
        phone=normalize_phone(chat.get("phone")) or normalize_phone(remote),
        contact_name=name,
        direction=direction,
        content_type=content_type,
        text=text,
        media=media,
        occurred_at=parse_timestamp(message.get("messageTimestamp"), received_at),
        edited=bool(message.get("edited")),
    )


def _gateway_statuses(
    body: dict, instance: InstanceRecord, received_at: datetime, issues: list[NormalizationIssue]
) -> list[StatusUpdateEvent]:
    event = _dict(body.get("event"))
    raw_status = (_text(event.get("Type")) or _text(event.get("status")) or "").lower()
    status = _GATEWAY_STATUSES.get(raw_status)
    if status is None:
        issues.append(NormalizationIssue("event.Type", f"unknown status value: {raw_status or None}"))
        return []
    occurred_at = parse_timestamp(event.get("Timestamp"), received_at)
    recipient = canonical_identity(event.get("Chat"))
    updates = []
    for index, message_id in enumerate(_list(event.get("MessageIDs"))):
        message_id = _text(message_id)
        if not message_id:
            issues.append(NormalizationIssue(f"event.MessageIDs[{index}]", "message id missing"))
            continue
        updates.append(
            StatusUpdateEvent(
                provider=Provider.gateway,
                organization_id=instance.organization_id,
                instance_id=instance.id,
                provider_message_id=message_id,
                status=status,
                recipient=recipient,
                occurred_at=occurred_at,
            )
        )
    return updates


def _normalize_gateway(
    payload: Any,
    resolve_instance: InstanceResolver,
    instance_ref: Optional[str],
    received_at: datetime,
) -> NormalizationResult:
    body = _unwrap_gateway(payload)
    result = NormalizationResult()
    event_type = _text(body.get("EventType")) or ""
    if event_type not in {"messages", "messages_update"}:
        return result

    ref = instance_ref or _text(_dict(body.get("message")).get("owner")) or _text(body.get("owner"))
    instance = resolve_instance(Provider.gateway, ref) if ref else None
    if instance is None:
        result.issues.append(NormalizationIssue("instance", f"unknown instance: {ref}"))
        return result

    if event_type == "messages":
        event = _gateway_message(body, instance, received_at, result.issues)
        if event is not None:
            result.events.append(event)
    else:
        result.events.extend(_gateway_statuses(body, instance, received_at, result.issues))
    return result


def normalize(
    provider: Provider,
    payload: Any,
    *,
    resolve_instance: InstanceResolver,
    instance_ref: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> NormalizationResult:
    """
    Translate a provider payload into canonical events.

    Raises NormalizationError only when the payload as a whole is unusable;
    defects in individual entries are reported as issues and skipped.
    """
    received = received_at or utc_now()
    if provider == Provider.cloud_api:
        return _normalize_cloud(payload, resolve_instance, received)
    return _normalize_gateway(payload, resolve_instance, instance_ref, received)


def detect_event_type(provider: Provider, payload: Any) -> str:
    if provider == Provider.gateway:
        try:
            body = _unwrap_gateway(payload)
        except NormalizationError:
            return "unknown"
        return _text(body.get("EventType")) or "unknown"

    for entry in _list(_dict(payload).get("entry")):
        for change in _list(_dict(entry).get("changes")):
            change = _dict(change)
            change_field = _text(change.get("field"))
            if not change_field:
                continue
            value = _dict(change.get("value"))
            if change_field == "messages" and not value.get("messages") and value.get("statuses"):
                return "statuses"
            return change_field
    return "unknown"
