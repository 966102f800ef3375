from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import and_, false, or_, select, update
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    MESSAGE_STATUS_RANK,
    ConversationRecord,
    ConversationStatus,
    Direction,
    InboundMessageEvent,
    InstanceRecord,
    InstanceRegistration,
    LeadRecord,
    MessageRecord,
    MessageStatus,
    Provider,
    SenderType,
    TicketRecord,
    TicketStatus,
    WebhookLogRecord,
    WebhookLogState,
    utc_now,
)
from backend.app.persistence import SqlPersistence, TransientPersistenceError, translate_errors

MAX_ERROR_LENGTH = 2000
TICKET_RESOLVE_ATTEMPTS = 3


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


class StoreNotFoundError(Exception):
    pass


def _message_content(event: InboundMessageEvent) -> dict[str, Any]:
    media = event.media
    return {
        "text": event.text,
        "media_url": media.url if media else None,
        "media_mime_type": media.mime_type if media else None,
        "media_size_bytes": media.size_bytes if media else None,
        "media_duration_seconds": media.duration_seconds if media else None,
    }


class ChatStore:
    """
    Lead, conversation, ticket and message graph.

    Every write is either an insert guarded by a unique constraint (the loser of a
    race fetches the winner's row) or a conditional update, so concurrent and
    repeated deliveries converge without in-process locking.
    """

    def __init__(self, persistence: SqlPersistence) -> None:
        self.persistence = persistence
        self.engine = persistence.engine

    def _insert_or_fetch(self, table, values: dict, lookup) -> tuple[Any, bool]:
        created = True
        try:
            with translate_errors(f"insert {table.name}"):
                with self.engine.begin() as conn:
                    conn.execute(table.insert().values(**values))
        except IntegrityError:
            created = False
        with translate_errors(f"fetch {table.name}"):
            with self.engine.connect() as conn:
                row = conn.execute(select(table).where(lookup)).first()
        if row is None:
            raise TransientPersistenceError(f"{table.name} row vanished after conflict")
        return row, created

    def register_instance(self, registration: InstanceRegistration) -> InstanceRecord:
        table = self.persistence.instances
        row, _ = self._insert_or_fetch(
            table,
            {
                "id": registration.id,
                "organization_id": registration.organization_id,
                "provider": registration.provider.value,
                "external_ref": registration.external_ref,
                "name": registration.name,
                "created_at": utc_now(),
            },
            and_(
                table.c.provider == registration.provider.value,
                table.c.external_ref == registration.external_ref,
            ),
        )
        return InstanceRecord.model_validate(dict(row._mapping))

    def get_instance_by_ref(self, provider: Provider, external_ref: str) -> Optional[InstanceRecord]:
        table = self.persistence.instances
        with translate_errors("fetch instance"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(table).where(
                        table.c.provider == provider.value,
                        table.c.external_ref == external_ref,
                    )
                ).first()
        if row is None:
            return None
        return InstanceRecord.model_validate(dict(row._mapping))

    def upsert_lead(
        self,
        *,
        organization_id: str,
        remote_jid: str,
        phone: Optional[str],
        name: Optional[str],
        first_source: str,
    ) -> tuple[LeadRecord, bool]:
        table = self.persistence.leads
        now = utc_now()
        clean_name = name.strip() if name and name.strip() else None
        identity = table.c.remote_jid == remote_jid
        if phone:
            identity = or_(identity, table.c.phone == phone)
        row, created = self._insert_or_fetch(
            table,
            {
                "id": new_id("lead"),
                "organization_id": organization_id,
                "remote_jid": remote_jid,
                "phone": phone,
                "name": clean_name,
                "first_source": first_source,
                "created_at": now,
                "updated_at": now,
            },
            and_(table.c.organization_id == organization_id, identity),
        )
        lead = LeadRecord.model_validate(dict(row._mapping))
        if created or not clean_name or lead.name is not None:
            return lead, created

        # name is only filled in, never overwritten
        with translate_errors("update lead name"):
            with self.engine.begin() as conn:
                conn.execute(
                    update(table)
                    .where(table.c.id == lead.id, table.c.name.is_(None))
                    .values(name=clean_name, updated_at=now)
                )
                refreshed = conn.execute(select(table).where(table.c.id == lead.id)).first()
        return LeadRecord.model_validate(dict(refreshed._mapping)), False

    def get_lead(self, lead_id: str) -> LeadRecord:
        return LeadRecord.model_validate(self._get_row(self.persistence.leads, lead_id, "lead"))

    def list_leads(self, organization_id: str) -> list[LeadRecord]:
        table = self.persistence.leads
        with translate_errors("list leads"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .where(table.c.organization_id == organization_id)
                    .order_by(table.c.created_at)
                ).all()
        return [LeadRecord.model_validate(dict(row._mapping)) for row in rows]

    def upsert_conversation(
        self, *, organization_id: str, lead_id: str, instance_id: str
    ) -> tuple[ConversationRecord, bool]:
        table = self.persistence.conversations
        now = utc_now()
        row, created = self._insert_or_fetch(
            table,
            {
                "id": new_id("conv"),
                "organization_id": organization_id,
                "lead_id": lead_id,
                "instance_id": instance_id,
                "status": ConversationStatus.open.value,
                "unread_count": 0,
                "last_message_at": None,
                "created_at": now,
                "updated_at": now,
            },
            and_(table.c.lead_id == lead_id, table.c.instance_id == instance_id),
        )
        return ConversationRecord.model_validate(dict(row._mapping)), created

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        return ConversationRecord.model_validate(
            self._get_row(self.persistence.conversations, conversation_id, "conversation")
        )

    def list_conversations(self, lead_id: str) -> list[ConversationRecord]:
        table = self.persistence.conversations
        with translate_errors("list conversations"):
            with self.engine.connect() as conn:
                rows = conn.execute(select(table).where(table.c.lead_id == lead_id)).all()
        return [ConversationRecord.model_validate(dict(row._mapping)) for row in rows]

    def resolve_ticket(self, conversation: ConversationRecord) -> tuple[TicketRecord, bool]:
        table = self.persistence.tickets
        open_ticket = and_(
            table.c.conversation_id == conversation.id,
            table.c.status == TicketStatus.open.value,
        )
        for _ in range(TICKET_RESOLVE_ATTEMPTS):
            with translate_errors("fetch open ticket"):
                with self.engine.connect() as conn:
                    row = conn.execute(select(table).where(open_ticket)).first()
            if row is not None:
                return TicketRecord.model_validate(dict(row._mapping)), False

            values = {
                "id": new_id("tkt"),
                "organization_id": conversation.organization_id,
                "conversation_id": conversation.id,
                "lead_id": conversation.lead_id,
                "status": TicketStatus.open.value,
                "created_at": utc_now(),
                "closed_at": None,
            }
            try:
                with translate_errors("insert ticket"):
                    with self.engine.begin() as conn:
                        conn.execute(table.insert().values(**values))
                return TicketRecord.model_validate(values), True
            except IntegrityError:
                # a concurrent resolver opened the ticket first
                continue
        raise TransientPersistenceError(
            f"could not resolve open ticket for conversation {conversation.id}"
        )

    def close_ticket(self, ticket_id: str, status: TicketStatus) -> TicketRecord:
        if status == TicketStatus.open:
            raise ValueError("closing a ticket requires a terminal status")
        table = self.persistence.tickets
        with translate_errors("close ticket"):
            with self.engine.begin() as conn:
                conn.execute(
                    update(table)
                    .where(table.c.id == ticket_id)
                    .values(status=status.value, closed_at=utc_now())
                )
        return TicketRecord.model_validate(self._get_row(table, ticket_id, "ticket"))

    def list_tickets(self, conversation_id: str) -> list[TicketRecord]:
        table = self.persistence.tickets
        with translate_errors("list tickets"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .where(table.c.conversation_id == conversation_id)
                    .order_by(table.c.created_at)
                ).all()
        return [TicketRecord.model_validate(dict(row._mapping)) for row in rows]

    def get_message(
        self, organization_id: str, provider_message_id: str
    ) -> Optional[MessageRecord]:
        table = self.persistence.messages
        with translate_errors("fetch message"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(table).where(
                        table.c.organization_id == organization_id,
                        table.c.provider_message_id == provider_message_id,
                    )
                ).first()
        if row is None:
            return None
        return MessageRecord.model_validate(dict(row._mapping))

    def list_messages(self, organization_id: str) -> list[MessageRecord]:
        table = self.persistence.messages
        with translate_errors("list messages"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .where(table.c.organization_id == organization_id)
                    .order_by(table.c.sent_at)
                ).all()
        return [MessageRecord.model_validate(dict(row._mapping)) for row in rows]

    def create_message(
        self,
        *,
        event: InboundMessageEvent,
        lead: LeadRecord,
        conversation: ConversationRecord,
        ticket: TicketRecord,
    ) -> tuple[MessageRecord, bool]:
        table = self.persistence.messages
        now = utc_now()
        inbound = event.direction == Direction.inbound
        content = _message_content(event)
        row, created = self._insert_or_fetch(
            table,
            {
                "id": new_id("msg"),
                "organization_id": event.organization_id,
                "provider_message_id": event.provider_message_id,
                "instance_id": event.instance_id,
                "lead_id": lead.id,
                "conversation_id": conversation.id,
                "ticket_id": ticket.id,
                "direction": event.direction.value,
                "sender_type": (SenderType.lead if inbound else SenderType.user).value,
                "sender_name": event.contact_name or lead.phone if inbound else None,
                "content_type": event.content_type,
                "status": (MessageStatus.delivered if inbound else MessageStatus.sent).value,
                "sent_at": event.occurred_at,
                "conversation_counted": False,
                "created_at": now,
                "updated_at": now,
                **content,
            },
            and_(
                table.c.organization_id == event.organization_id,
                table.c.provider_message_id == event.provider_message_id,
            ),
        )
        message = MessageRecord.model_validate(dict(row._mapping))
        if created or not event.edited:
            return message, created
        return self.edit_message(message, event), False

    def edit_message(self, message: MessageRecord, event: InboundMessageEvent) -> MessageRecord:
        # edits touch content only; status, direction and timestamps stay as first stored
        table = self.persistence.messages
        with translate_errors("edit message"):
            with self.engine.begin() as conn:
                conn.execute(
                    update(table)
                    .where(table.c.id == message.id)
                    .values(updated_at=utc_now(), **_message_content(event))
                )
        return MessageRecord.model_validate(self._get_row(table, message.id, "message"))

    def apply_conversation_activity(self, message: MessageRecord) -> tuple[ConversationRecord, bool]:
        messages = self.persistence.messages
        conversations = self.persistence.conversations
        now = utc_now()
        with translate_errors("update conversation activity"):
            with self.engine.begin() as conn:
                claimed = conn.execute(
                    update(messages)
                    .where(
                        messages.c.id == message.id,
                        messages.c.conversation_counted == false(),
                    )
                    .values(conversation_counted=True)
                ).rowcount
                if claimed:
                    conn.execute(
                        update(conversations)
                        .where(
                            conversations.c.id == message.conversation_id,
                            or_(
                                conversations.c.last_message_at.is_(None),
                                conversations.c.last_message_at < message.sent_at,
                            ),
                        )
                        .values(last_message_at=message.sent_at)
                    )
                    changes: dict[str, Any] = {"updated_at": now}
                    if message.direction == Direction.inbound:
                        changes["unread_count"] = conversations.c.unread_count + 1
                        changes["status"] = ConversationStatus.open.value
                    conn.execute(
                        update(conversations)
                        .where(conversations.c.id == message.conversation_id)
                        .values(**changes)
                    )
        return self.get_conversation(message.conversation_id), bool(claimed)

    def update_message_status(
        self,
        *,
        organization_id: str,
        provider_message_id: str,
        status: MessageStatus,
    ) -> tuple[Optional[MessageRecord], bool]:
        table = self.persistence.messages
        new_rank = MESSAGE_STATUS_RANK[status]
        lower = [item.value for item, rank in MESSAGE_STATUS_RANK.items() if rank < new_rank]
        changed = 0
        if lower:
            with translate_errors("update message status"):
                with self.engine.begin() as conn:
                    changed = conn.execute(
                        update(table)
                        .where(
                            table.c.organization_id == organization_id,
                            table.c.provider_message_id == provider_message_id,
                            table.c.status.in_(lower),
                        )
                        .values(status=status.value, updated_at=utc_now())
                    ).rowcount
        return self.get_message(organization_id, provider_message_id), bool(changed)

    def _get_row(self, table, row_id: str, label: str) -> dict:
        with translate_errors(f"fetch {label}"):
            with self.engine.connect() as conn:
                row = conn.execute(select(table).where(table.c.id == row_id)).first()
        if row is None:
            raise StoreNotFoundError(f"{label} not found: {row_id}")
        return dict(row._mapping)


class WebhookLogStore:
    """Append-only record of accepted webhook payloads; rows are never deleted."""

    def __init__(self, persistence: SqlPersistence) -> None:
        self.persistence = persistence
        self.engine = persistence.engine
        self.table = persistence.webhook_logs

    def create(
        self,
        payload: Any,
        event_type: str,
        *,
        provider: Provider,
        instance_ref: Optional[str] = None,
    ) -> WebhookLogRecord:
        values = {
            "id": new_id("whl"),
            "provider": provider.value,
            "instance_ref": instance_ref,
            "event_type": event_type[:80],
            "payload_json": json.dumps(payload, separators=(",", ":")),
            "processed": False,
            "signature_valid": False,
            "retry_count": 0,
            "last_retry_at": None,
            "processing_error": None,
            "processed_at": None,
            "created_at": utc_now(),
            "lease_owner": None,
            "lease_expires_at": None,
        }
        with translate_errors("create webhook log"):
            with self.engine.begin() as conn:
                conn.execute(self.table.insert().values(**values))
        return self._to_record(values)

    def get(self, log_id: str) -> WebhookLogRecord:
        with translate_errors("fetch webhook log"):
            with self.engine.connect() as conn:
                row = conn.execute(select(self.table).where(self.table.c.id == log_id)).first()
        if row is None:
            raise StoreNotFoundError(f"webhook log not found: {log_id}")
        return self._to_record(dict(row._mapping))

    def mark_signature(self, log_id: str, valid: bool) -> None:
        self._update(log_id, "mark webhook signature", signature_valid=valid)

    def annotate(self, log_id: str, note: str) -> None:
        self._update(log_id, "annotate webhook log", processing_error=note[:MAX_ERROR_LENGTH])

    def mark_processed(self, log_id: str, note: Optional[str] = None) -> WebhookLogRecord:
        self._update(
            log_id,
            "mark webhook processed",
            processed=True,
            processed_at=utc_now(),
            processing_error=note[:MAX_ERROR_LENGTH] if note else None,
            lease_owner=None,
            lease_expires_at=None,
        )
        return self.get(log_id)

    def mark_failed(
        self, log_id: str, error: str, *, count_attempt: bool = True
    ) -> WebhookLogRecord:
        changes: dict[str, Any] = {
            "processing_error": (error or "unknown webhook processing error")[:MAX_ERROR_LENGTH],
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if count_attempt:
            changes["retry_count"] = self.table.c.retry_count + 1
            changes["last_retry_at"] = utc_now()
        self._update(log_id, "mark webhook failed", **changes)
        return self.get(log_id)

    def list_retry_candidates(self, *, limit: int, max_attempts: int) -> list[WebhookLogRecord]:
        table = self.table
        with translate_errors("list retry candidates"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .where(
                        table.c.processed == false(),
                        table.c.signature_valid == True,  # noqa: E712
                        table.c.retry_count < max_attempts,
                    )
                    .order_by(table.c.created_at, table.c.id)
                    .limit(max(1, limit))
                ).all()
        return [self._to_record(dict(row._mapping)) for row in rows]

    def try_claim(
        self,
        log_id: str,
        *,
        owner: str,
        now: datetime,
        lease_seconds: int,
        expected_retry_count: int,
    ) -> bool:
        """
        Lease a row for one retry attempt.

        The claim only succeeds while the row still has the attempt count the worker
        selected it with, so a worker holding an older batch cannot re-run a row that
        another worker already attempted and released.
        """
        table = self.table
        with translate_errors("claim webhook log"):
            with self.engine.begin() as conn:
                claimed = conn.execute(
                    update(table)
                    .where(
                        table.c.id == log_id,
                        table.c.processed == false(),
                        table.c.signature_valid == True,  # noqa: E712
                        table.c.retry_count == expected_retry_count,
                        or_(
                            table.c.lease_expires_at.is_(None),
                            table.c.lease_expires_at <= now,
                        ),
                    )
                    .values(
                        lease_owner=owner,
                        lease_expires_at=now + timedelta(seconds=lease_seconds),
                    )
                ).rowcount
        return claimed == 1

    def list_logs(
        self,
        *,
        state: Optional[WebhookLogState] = None,
        max_attempts: int = 3,
        limit: int = 100,
    ) -> list[WebhookLogRecord]:
        table = self.table
        query = select(table)
        if state == WebhookLogState.pending:
            query = query.where(
                table.c.processed == false(),
                table.c.signature_valid == True,  # noqa: E712
                table.c.retry_count < max_attempts,
            )
        elif state == WebhookLogState.processed:
            query = query.where(table.c.processed == True)  # noqa: E712
        elif state == WebhookLogState.failed:
            query = query.where(
                table.c.processed == false(),
                table.c.signature_valid == True,  # noqa: E712
                table.c.retry_count >= max_attempts,
            )
        elif state == WebhookLogState.invalid_signature:
            # rows whose verified signature could not be recorded carry a note
            query = query.where(
                table.c.signature_valid == false(),
                table.c.processing_error.is_(None),
            )
        elif state == WebhookLogState.errored:
            query = query.where(table.c.processing_error.is_not(None))
        safe_limit = max(1, min(limit, 500))
        with translate_errors("list webhook logs"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    query.order_by(table.c.created_at.desc()).limit(safe_limit)
                ).all()
        return [self._to_record(dict(row._mapping)) for row in rows]

    def _update(self, log_id: str, operation: str, **values: Any) -> None:
        with translate_errors(operation):
            with self.engine.begin() as conn:
                updated = conn.execute(
                    update(self.table).where(self.table.c.id == log_id).values(**values)
                ).rowcount
        if not updated:
            raise StoreNotFoundError(f"webhook log not found: {log_id}")

    @staticmethod
    def _to_record(values: dict) -> WebhookLogRecord:
        data = dict(values)
        data["payload"] = json.loads(data.pop("payload_json"))
        return WebhookLogRecord.model_validate(data)
