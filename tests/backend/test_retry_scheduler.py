from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import cloud_text_message

from backend.app.models import Provider, utc_now
from backend.app.persistence import TransientPersistenceError
from backend.app.services.processor import WebhookProcessor
from backend.app.services.retry import WebhookRetryScheduler, is_ready_for_retry
from backend.app.store import ChatStore, WebhookLogStore


class FlakyProcessor:
    def __init__(self, inner: WebhookProcessor, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def process_payload(self, provider, payload, instance_ref=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientPersistenceError("database is locked")
        return self.inner.process_payload(provider, payload, instance_ref)


def _signed_log(log_store: WebhookLogStore, payload, provider: Provider = Provider.cloud_api):
    log = log_store.create(payload, "messages", provider=provider)
    log_store.mark_signature(log.id, True)
    return log_store.get(log.id)


def _scheduler(log_store, processor, alert_sink, **overrides) -> WebhookRetryScheduler:
    options = {
        "base_interval_seconds": 300,
        "max_attempts": 3,
        "batch_size": 50,
        "lease_seconds": 120,
        "owner": "test-worker",
    }
    options.update(overrides)
    return WebhookRetryScheduler(log_store, processor, alert_sink, **options)


def test_backoff_schedule_is_linear() -> None:
    created = utc_now()
    assert is_ready_for_retry(created, 0, created + timedelta(minutes=4, seconds=59), 300) is False
    assert is_ready_for_retry(created, 0, created + timedelta(minutes=5), 300) is True
    assert is_ready_for_retry(created, 1, created + timedelta(minutes=9), 300) is False
    assert is_ready_for_retry(created, 1, created + timedelta(minutes=10), 300) is True
    assert is_ready_for_retry(created, 2, created + timedelta(minutes=15), 300) is True


def test_not_ready_rows_are_skipped_without_counting(log_store, processor, alert_sink) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r0"))
    scheduler = _scheduler(log_store, processor, alert_sink)

    result = scheduler.run_once(now=log.created_at + timedelta(minutes=1))

    assert (result.selected, result.skipped, result.succeeded) == (1, 1, 0)
    assert log_store.get(log.id).retry_count == 0


def test_retry_success_marks_processed(log_store, processor, alert_sink, chat_store: ChatStore) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r1"))
    scheduler = _scheduler(log_store, processor, alert_sink)

    result = scheduler.run_once(now=log.created_at + timedelta(minutes=5))

    assert result.succeeded == 1
    stored = log_store.get(log.id)
    assert stored.processed is True
    assert stored.lease_owner is None
    assert chat_store.get_message("org_1", "wamid.r1") is not None


def test_three_failures_exhaust_and_alert(log_store, processor, alert_sink) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r2"))
    flaky = FlakyProcessor(processor, failures=10)
    scheduler = _scheduler(log_store, flaky, alert_sink)

    first = scheduler.run_once(now=log.created_at + timedelta(minutes=5))
    early = scheduler.run_once(now=log.created_at + timedelta(minutes=6))
    second = scheduler.run_once(now=log.created_at + timedelta(minutes=10))
    third = scheduler.run_once(now=log.created_at + timedelta(minutes=15))
    after = scheduler.run_once(now=log.created_at + timedelta(hours=2))

    assert first.failed == 1 and first.exhausted == 0
    assert early.skipped == 1
    assert second.failed == 1 and second.exhausted == 0
    assert third.failed == 1 and third.exhausted == 1
    assert after.selected == 0
    assert flaky.calls == 3

    stored = log_store.get(log.id)
    assert stored.retry_count == 3
    assert stored.processed is False
    assert stored.processing_error == "database is locked"
    assert len(alert_sink.alerts) == 1
    severity, _, context = alert_sink.alerts[0]
    assert severity == "critical"
    assert context["log_id"] == log.id


def test_transient_failure_then_recovery(log_store, processor, alert_sink) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r3"))
    flaky = FlakyProcessor(processor, failures=1)
    scheduler = _scheduler(log_store, flaky, alert_sink)

    scheduler.run_once(now=log.created_at + timedelta(minutes=5))
    result = scheduler.run_once(now=log.created_at + timedelta(minutes=10))

    assert result.succeeded == 1
    stored = log_store.get(log.id)
    assert stored.processed is True
    assert stored.retry_count == 1
    assert alert_sink.alerts == []


def test_malformed_payload_is_closed_without_retry(log_store, processor, alert_sink) -> None:
    log = _signed_log(log_store, {"object": "page"})
    scheduler = _scheduler(log_store, processor, alert_sink)

    scheduler.run_once(now=log.created_at + timedelta(minutes=5))

    stored = log_store.get(log.id)
    assert stored.processed is True
    assert stored.processing_error.startswith("normalization failed")
    assert stored.retry_count == 0


def test_claimed_rows_are_skipped_by_other_workers(log_store, processor, alert_sink) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r4"))
    now = log.created_at + timedelta(minutes=5)
    assert log_store.try_claim(
        log.id, owner="other-worker", now=now, lease_seconds=120, expected_retry_count=0
    )
    scheduler = _scheduler(log_store, processor, alert_sink)

    result = scheduler.run_once(now=now)

    assert result.skipped == 1
    assert log_store.get(log.id).processed is False


class StaleSelection:
    """Log store view that replays a candidate list selected before other workers ran."""

    def __init__(self, log_store: WebhookLogStore, candidates) -> None:
        self._log_store = log_store
        self._candidates = candidates

    def list_retry_candidates(self, *, limit: int, max_attempts: int):
        return list(self._candidates)

    def __getattr__(self, name):
        return getattr(self._log_store, name)


def test_older_selection_cannot_rerun_a_row_another_worker_attempted(
    log_store, processor, alert_sink
) -> None:
    log = _signed_log(log_store, cloud_text_message("wamid.r6"))
    now = log.created_at + timedelta(minutes=6)
    stale = log_store.list_retry_candidates(limit=50, max_attempts=3)

    failing = FlakyProcessor(processor, failures=10)
    first = _scheduler(log_store, failing, alert_sink, owner="worker-b").run_once(now=now)
    assert first.failed == 1

    late = FlakyProcessor(processor, failures=0)
    scheduler = _scheduler(StaleSelection(log_store, stale), late, alert_sink, owner="worker-a")
    second = scheduler.run_once(now=now)

    assert second.skipped == 1
    assert late.calls == 0
    stored = log_store.get(log.id)
    assert stored.retry_count == 1
    assert stored.processed is False
    assert stored.lease_owner is None



def test_unsigned_rows_are_never_retried(log_store, processor, alert_sink) -> None:
    log_store.create(cloud_text_message("wamid.r5"), "messages", provider=Provider.cloud_api)
    scheduler = _scheduler(log_store, processor, alert_sink)

    result = scheduler.run_once(now=utc_now() + timedelta(hours=1))

    assert result.selected == 0


def test_batch_size_bounds_each_run(log_store, processor, alert_sink) -> None:
    logs = [_signed_log(log_store, cloud_text_message(f"wamid.b{index}")) for index in range(4)]
    scheduler = _scheduler(log_store, processor, alert_sink, batch_size=3)

    result = scheduler.run_once(now=logs[-1].created_at + timedelta(minutes=5))

    assert result.selected == 3
    assert result.succeeded == 3
    assert log_store.get(logs[-1].id).processed is False


@pytest.mark.parametrize("failures", [0, 2])
def test_replayed_retry_does_not_duplicate(log_store, processor, alert_sink, chat_store, failures) -> None:
    payload = cloud_text_message("wamid.dup")
    processor.process_payload(Provider.cloud_api, payload)
    log = _signed_log(log_store, payload)
    scheduler = _scheduler(log_store, FlakyProcessor(processor, failures=failures), alert_sink)

    for minutes in (5, 10, 15):
        scheduler.run_once(now=log.created_at + timedelta(minutes=minutes))

    assert log_store.get(log.id).processed is True
    assert len(chat_store.list_messages("org_1")) == 1
    conversation = chat_store.list_conversations(chat_store.list_leads("org_1")[0].id)[0]
    assert conversation.unread_count == 1
