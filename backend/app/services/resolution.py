from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.models import (
    ConversationRecord,
    InboundMessageEvent,
    LeadRecord,
    MessageRecord,
    StatusUpdateEvent,
    TicketRecord,
)
from backend.app.store import ChatStore

logger = logging.getLogger("whatsapp_ingest.resolution")


@dataclass(frozen=True)
class ResolutionResult:
    message: MessageRecord
    conversation: ConversationRecord
    lead: Optional[LeadRecord] = None
    ticket: Optional[TicketRecord] = None
    message_created: bool = False
    ticket_created: bool = False
    conversation_counted: bool = False
    replay: bool = False


@dataclass(frozen=True)
class StatusResult:
    message: Optional[MessageRecord]
    changed: bool


class EntityResolver:
    """
    Applies canonical events to the lead -> conversation -> ticket -> message graph.

    Each step is an idempotent insert-or-fetch or conditional update, so a replayed
    or concurrently delivered event converges on the same rows.
    """

    def __init__(self, store: ChatStore) -> None:
        self.store = store

    def apply_message(self, event: InboundMessageEvent) -> ResolutionResult:
        existing = self.store.get_message(event.organization_id, event.provider_message_id)
        if existing is not None:
            message = self.store.edit_message(existing, event) if event.edited else existing
            conversation, counted = self.store.apply_conversation_activity(message)
            logger.info(
                "message_replayed message_id=%s edited=%s counted=%s",
                message.id,
                event.edited,
                counted,
            )
            return ResolutionResult(
                message=message,
                conversation=conversation,
                conversation_counted=counted,
                replay=True,
            )

        lead, _ = self.store.upsert_lead(
            organization_id=event.organization_id,
            remote_jid=event.remote_identity,
            phone=event.phone,
            name=event.contact_name,
            first_source=event.provider.value,
        )
        conversation, _ = self.store.upsert_conversation(
            organization_id=event.organization_id,
            lead_id=lead.id,
            instance_id=event.instance_id,
        )
        ticket, ticket_created = self.store.resolve_ticket(conversation)
        message, message_created = self.store.create_message(
            event=event,
            lead=lead,
            conversation=conversation,
            ticket=ticket,
        )
        conversation, counted = self.store.apply_conversation_activity(message)
        return ResolutionResult(
            message=message,
            conversation=conversation,
            lead=lead,
            ticket=ticket,
            message_created=message_created,
            ticket_created=ticket_created,
            conversation_counted=counted,
            replay=not message_created,
        )

    def apply_status(self, event: StatusUpdateEvent) -> StatusResult:
        message, changed = self.store.update_message_status(
            organization_id=event.organization_id,
            provider_message_id=event.provider_message_id,
            status=event.status,
        )
        if message is None:
            logger.info(
                "status_for_unknown_message provider=%s status=%s",
                event.provider.value,
                event.status.value,
            )
        return StatusResult(message=message, changed=changed)
