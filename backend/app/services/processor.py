from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from backend.app.models import InboundMessageEvent, Provider, StatusUpdateEvent
from backend.app.persistence import TransientPersistenceError
from backend.app.services.instances import InstanceDirectory
from backend.app.services.normalizer import NormalizationIssue, normalize
from backend.app.services.realtime import (
    FanOutError,
    conversation_channel,
    organization_channel,
)
from backend.app.services.resolution import EntityResolver, ResolutionResult

logger = logging.getLogger("whatsapp_ingest.processor")


@dataclass
class ProcessingSummary:
    events: int = 0
    messages_created: int = 0
    replays: int = 0
    statuses_applied: int = 0
    failed: int = 0
    issues: list[NormalizationIssue] = field(default_factory=list)


class WebhookProcessor:
    def __init__(self, directory: InstanceDirectory, resolver: EntityResolver, publisher) -> None:
        self.directory = directory
        self.resolver = resolver
        self.publisher = publisher

    def process_payload(
        self, provider: Provider, payload: Any, instance_ref: Optional[str] = None
    ) -> ProcessingSummary:
        """
        Normalize a payload and apply every event it carries.

        NormalizationError propagates for unusable payloads. A transient store failure
        on one event does not stop its siblings; it is raised once all were attempted
        so the caller can leave the log row for retry.
        """
        result = normalize(
            provider,
            payload,
            resolve_instance=self.directory.resolve,
            instance_ref=instance_ref,
        )
        summary = ProcessingSummary(events=len(result.events), issues=list(result.issues))
        for issue in result.issues:
            logger.warning(
                "normalization_issue provider=%s path=%s reason=%s",
                provider.value,
                issue.path,
                issue.reason,
            )

        last_error: Optional[TransientPersistenceError] = None
        for event in result.events:
            try:
                if isinstance(event, InboundMessageEvent):
                    resolution = self.resolver.apply_message(event)
                    if resolution.message_created:
                        summary.messages_created += 1
                    else:
                        summary.replays += 1
                    self._announce_message(event, resolution)
                else:
                    self._apply_status(event, summary)
            except TransientPersistenceError as exc:
                summary.failed += 1
                last_error = exc
                logger.warning(
                    "event_apply_failed provider=%s kind=%s error=%s",
                    provider.value,
                    event.kind,
                    exc,
                )

        if last_error is not None:
            raise TransientPersistenceError(
                f"{summary.failed} of {summary.events} events failed: {last_error}"
            ) from last_error
        return summary

    def _apply_status(self, event: StatusUpdateEvent, summary: ProcessingSummary) -> None:
        outcome = self.resolver.apply_status(event)
        if not outcome.changed or outcome.message is None:
            return
        summary.statuses_applied += 1
        message = outcome.message
        self._safe_publish(
            conversation_channel(message.conversation_id),
            {
                "type": "message_status",
                "data": {
                    "messageId": message.id,
                    "providerMessageId": message.provider_message_id,
                    "status": message.status.value,
                    "errorCode": event.error_code,
                    "errorTitle": event.error_title,
                },
            },
        )

    def _announce_message(self, event: InboundMessageEvent, resolution: ResolutionResult) -> None:
        message = resolution.message
        if resolution.message_created or event.edited:
            self._safe_publish(
                conversation_channel(message.conversation_id),
                {
                    "type": "new_message",
                    "data": message.model_dump(mode="json", exclude={"conversation_counted"}),
                },
            )
        if resolution.conversation_counted:
            conversation = resolution.conversation
            self._safe_publish(
                organization_channel(conversation.organization_id),
                {
                    "type": "conversation_updated",
                    "data": conversation.model_dump(mode="json"),
                },
            )

    def _safe_publish(self, channel: str, payload: dict) -> None:
        try:
            self.publisher.publish(channel, payload)
        except FanOutError as exc:
            logger.warning("realtime_publish_failed channel=%s error=%s", channel, exc)
        except Exception:
            # the event is already committed
            logger.exception("realtime_publish_crashed channel=%s", channel)
