from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib import request
from urllib.error import URLError

from backend.app.models import utc_now

logger = logging.getLogger("whatsapp_ingest.alerts")

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class LoggingAlertSink:
    def alert(self, severity: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        details = " ".join(f"{key}={value}" for key, value in sorted((context or {}).items()))
        logger.log(
            _LEVELS.get(severity, logging.ERROR),
            "alert severity=%s message=%s %s",
            severity,
            message,
            details,
        )


class HttpAlertSink:
    def __init__(self, url: str, *, timeout_seconds: float = 3.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def alert(self, severity: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        body = {
            "severity": severity,
            "message": message,
            "context": context or {},
            "sent_at": utc_now().isoformat() + "Z",
        }
        req = request.Request(
            self.url,
            data=json.dumps(body, default=str).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except (URLError, TimeoutError, OSError) as exc:
            logger.warning("alert_delivery_failed severity=%s error=%s", severity, exc)


class CompositeAlertSink:
    def __init__(self, *sinks) -> None:
        self.sinks = list(sinks)

    def alert(self, severity: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        for sink in self.sinks:
            sink.alert(severity, message, context)


def build_alert_sink(alert_webhook_url: str, *, timeout_seconds: float = 3.0):
    if not alert_webhook_url:
        return LoggingAlertSink()
    return CompositeAlertSink(
        LoggingAlertSink(),
        HttpAlertSink(alert_webhook_url, timeout_seconds=timeout_seconds),
    )
