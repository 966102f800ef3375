from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from backend.app.models import WebhookLogRecord, utc_now
from backend.app.persistence import TransientPersistenceError
from backend.app.services.normalizer import NormalizationError
from backend.app.services.processor import WebhookProcessor
from backend.app.store import WebhookLogStore

logger = logging.getLogger("whatsapp_ingest.retry")


@dataclass
class RetryBatchResult:
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0


def is_ready_for_retry(
    created_at: datetime, retry_count: int, now: datetime, base_interval_seconds: int
) -> bool:
    """Linear backoff: attempt n+1 waits (n + 1) * base since the row was logged."""
    elapsed = (now - created_at).total_seconds()
    return elapsed >= (retry_count + 1) * base_interval_seconds


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WebhookRetryScheduler:
    def __init__(
        self,
        log_store: WebhookLogStore,
        processor: WebhookProcessor,
        alert_sink,
        *,
        base_interval_seconds: int = 300,
        max_attempts: int = 3,
        batch_size: int = 50,
        lease_seconds: int = 120,
        owner: Optional[str] = None,
        metrics=None,
    ) -> None:
        self.log_store = log_store
        self.processor = processor
        self.alert_sink = alert_sink
        self.base_interval_seconds = base_interval_seconds
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.owner = owner or default_worker_id()
        self.metrics = metrics

    def run_once(self, now: Optional[datetime] = None) -> RetryBatchResult:
        current = now or utc_now()
        candidates = self.log_store.list_retry_candidates(
            limit=self.batch_size, max_attempts=self.max_attempts
        )
        result = RetryBatchResult(selected=len(candidates))
        for log in candidates:
            if not is_ready_for_retry(
                log.created_at, log.retry_count, current, self.base_interval_seconds
            ):
                result.skipped += 1
                continue
            if not self.log_store.try_claim(
                log.id,
                owner=self.owner,
                now=current,
                lease_seconds=self.lease_seconds,
                expected_retry_count=log.retry_count,
            ):
                result.skipped += 1
                continue
            try:
                self._retry(log, result)
            except TransientPersistenceError as exc:
                # lease expiry hands the row to a later run
                result.failed += 1
                logger.error("retry_bookkeeping_failed log_id=%s error=%s", log.id, exc)

        logger.info(
            "retry_batch_complete selected=%s succeeded=%s failed=%s skipped=%s exhausted=%s",
            result.selected,
            result.succeeded,
            result.failed,
            result.skipped,
            result.exhausted,
        )
        return result

    def _retry(self, log: WebhookLogRecord, result: RetryBatchResult) -> None:
        try:
            self.processor.process_payload(log.provider, log.payload, log.instance_ref)
        except NormalizationError as exc:
            self.log_store.mark_processed(log.id, note=f"normalization failed: {exc}")
            result.succeeded += 1
            self._record("retry_succeeded")
            logger.warning("retry_payload_malformed log_id=%s error=%s", log.id, exc)
            return
        except Exception as exc:
            updated = self.log_store.mark_failed(log.id, str(exc) or exc.__class__.__name__)
            result.failed += 1
            self._record("retry_failed")
            logger.warning(
                "retry_attempt_failed log_id=%s attempt=%s error=%s",
                log.id,
                updated.retry_count,
                exc.__class__.__name__,
            )
            if updated.retry_count >= self.max_attempts:
                result.exhausted += 1
                self._record("retry_exhausted")
                self.alert_sink.alert(
                    "critical",
                    "webhook processing permanently failed",
                    {
                        "log_id": log.id,
                        "provider": log.provider.value,
                        "event_type": log.event_type,
                        "retry_count": updated.retry_count,
                        "error": updated.processing_error,
                    },
                )
            return

        self.log_store.mark_processed(log.id)
        result.succeeded += 1
        self._record("retry_succeeded")
        logger.info("retry_succeeded log_id=%s attempt=%s", log.id, log.retry_count + 1)

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_webhook(outcome)
