from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock

from fastapi import Request

logger = logging.getLogger("whatsapp_ingest.http")

WEBHOOK_OUTCOMES = (
    "received",
    "processed",
    "failed",
    "signature_invalid",
    "malformed",
    "rate_limited",
    "retry_succeeded",
    "retry_failed",
    "retry_exhausted",
)


@dataclass
class MetricsSnapshot:
    requests_total: int = 0
    requests_5xx: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    webhook_events: dict[str, int] = field(default_factory=dict)
    route_status: dict[tuple[str, int], int] = field(default_factory=dict)


def _metric(name: str, kind: str, help_text: str) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]


class MetricsRegistry:
    """In-process counters for HTTP traffic and webhook delivery outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._state = MetricsSnapshot(
            webhook_events={outcome: 0 for outcome in WEBHOOK_OUTCOMES}
        )

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            state = self._state
            state.requests_total += 1
            if status_code >= 500:
                state.requests_5xx += 1
            state.total_latency_ms += latency_ms
            state.max_latency_ms = max(state.max_latency_ms, latency_ms)
            key = (route, status_code)
            state.route_status[key] = state.route_status.get(key, 0) + 1

    def record_webhook(self, outcome: str) -> None:
        with self._lock:
            events = self._state.webhook_events
            events[outcome] = events.get(outcome, 0) + 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            state = self._state
            return MetricsSnapshot(
                requests_total=state.requests_total,
                requests_5xx=state.requests_5xx,
                total_latency_ms=state.total_latency_ms,
                max_latency_ms=state.max_latency_ms,
                webhook_events=dict(state.webhook_events),
                route_status=dict(state.route_status),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0

        lines = _metric("whatsapp_ingest_requests_total", "counter", "Total HTTP requests")
        lines.append(f"whatsapp_ingest_requests_total {snap.requests_total}")
        lines += _metric("whatsapp_ingest_requests_5xx_total", "counter", "Total 5xx HTTP requests")
        lines.append(f"whatsapp_ingest_requests_5xx_total {snap.requests_5xx}")
        lines += _metric("whatsapp_ingest_request_avg_latency_ms", "gauge", "Average request latency ms")
        lines.append(f"whatsapp_ingest_request_avg_latency_ms {avg_latency:.2f}")
        lines += _metric("whatsapp_ingest_request_max_latency_ms", "gauge", "Slowest request latency ms")
        lines.append(f"whatsapp_ingest_request_max_latency_ms {snap.max_latency_ms:.2f}")

        lines += _metric(
            "whatsapp_ingest_webhook_events_total", "counter", "Webhook deliveries by outcome"
        )
        for outcome, count in sorted(snap.webhook_events.items()):
            lines.append(f'whatsapp_ingest_webhook_events_total{{outcome="{outcome}"}} {count}')

        lines += _metric(
            "whatsapp_ingest_route_requests_total", "counter", "HTTP requests by route template and status"
        )
        for (route, status_code), count in sorted(snap.route_status.items()):
            lines.append(
                f'whatsapp_ingest_route_requests_total{{route="{route}",status="{status_code}"}} {count}'
            )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def route_label(request: Request) -> str:
    # Route templates keep gateway instance refs and log ids out of metric labels.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(request: Request, call_next, *, metrics: MetricsRegistry):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=route_label(request), status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise

    latency_ms = (time.perf_counter() - start) * 1000.0
    route = route_label(request)
    metrics.record(route=route, status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s route=%s status=%s latency_ms=%.2f",
        request.method,
        route,
        response.status_code,
        latency_ms,
    )
    return response
