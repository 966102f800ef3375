from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Naive UTC, matching the stored column values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Provider(str, Enum):
    cloud_api = "cloud_api"
    gateway = "gateway"


class Direction(str, Enum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(str, Enum):
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


# failed outranks every delivery state, so once applied it never changes
MESSAGE_STATUS_RANK = {
    MessageStatus.sent: 1,
    MessageStatus.delivered: 2,
    MessageStatus.read: 3,
    MessageStatus.failed: 4,
}


class TicketStatus(str, Enum):
    open = "OPEN"
    resolved = "RESOLVED"
    closed_won = "CLOSED_WON"
    closed_lost = "CLOSED_LOST"


class ConversationStatus(str, Enum):
    open = "OPEN"
    pending = "PENDING"
    resolved = "RESOLVED"
    snoozed = "SNOOZED"


class SenderType(str, Enum):
    lead = "LEAD"
    user = "USER"


class WebhookLogState(str, Enum):
    pending = "pending"
    processed = "processed"
    failed = "failed"
    invalid_signature = "invalid_signature"
    errored = "errored"


class MediaInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    duration_seconds: Optional[int] = None


class InboundMessageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["message"] = "message"
    provider: Provider
    organization_id: str
    instance_id: str
    provider_message_id: str
    remote_identity: str
    phone: Optional[str] = None
    contact_name: Optional[str] = None
    direction: Direction
    content_type: str = "unknown"
    text: str
    media: Optional[MediaInfo] = None
    occurred_at: datetime
    edited: bool = False


class StatusUpdateEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["status"] = "status"
    provider: Provider
    organization_id: str
    instance_id: str
    provider_message_id: str
    status: MessageStatus
    recipient: Optional[str] = None
    occurred_at: datetime
    error_code: Optional[str] = None
    error_title: Optional[str] = None


InboundEvent = Union[InboundMessageEvent, StatusUpdateEvent]


class InstanceRecord(BaseModel):
    id: str
    organization_id: str
    provider: Provider
    external_ref: str
    name: Optional[str] = None
    created_at: datetime


class InstanceRegistration(BaseModel):
    id: str = Field(min_length=1, max_length=120)
    organization_id: str = Field(min_length=1, max_length=120)
    provider: Provider
    external_ref: str = Field(min_length=1, max_length=255)
    name: Optional[str] = None


class LeadRecord(BaseModel):
    id: str
    organization_id: str
    remote_jid: str
    phone: Optional[str]
    name: Optional[str]
    first_source: str
    created_at: datetime
    updated_at: datetime


class ConversationRecord(BaseModel):
    id: str
    organization_id: str
    lead_id: str
    instance_id: str
    status: ConversationStatus
    unread_count: int
    last_message_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class TicketRecord(BaseModel):
    id: str
    organization_id: str
    conversation_id: str
    lead_id: str
    status: TicketStatus
    created_at: datetime
    closed_at: Optional[datetime]


class MessageRecord(BaseModel):
    id: str
    organization_id: str
    provider_message_id: str
    instance_id: str
    lead_id: str
    conversation_id: str
    ticket_id: str
    direction: Direction
    sender_type: SenderType
    sender_name: Optional[str]
    content_type: str
    text: str
    media_url: Optional[str]
    media_mime_type: Optional[str]
    media_size_bytes: Optional[int]
    media_duration_seconds: Optional[int]
    status: MessageStatus
    sent_at: datetime
    conversation_counted: bool
    created_at: datetime
    updated_at: datetime


class WebhookLogRecord(BaseModel):
    id: str
    provider: Provider
    instance_ref: Optional[str]
    event_type: str
    payload: Any
    processed: bool
    signature_valid: bool
    retry_count: int
    last_retry_at: Optional[datetime]
    processing_error: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    logId: Optional[str] = None


class RateLimitErrorResponse(BaseModel):
    error: str
    message: str
    limit: int
    current: int
    resetAt: datetime
    retryAfter: int


class RetryBatchResponse(BaseModel):
    selected: int
    succeeded: int
    failed: int
    skipped: int
    exhausted: int


class WebhookLogItem(BaseModel):
    log_id: str
    provider: Provider
    event_type: str
    processed: bool
    signature_valid: bool
    retry_count: int
    processing_error: Optional[str]
    last_retry_at: Optional[datetime]
    processed_at: Optional[datetime]
    created_at: datetime
