from __future__ import annotations

import json
import logging
from http.client import HTTPException
from typing import Any
from urllib import request
from urllib.error import URLError

logger = logging.getLogger("whatsapp_ingest.realtime")


class FanOutError(Exception):
    pass


def conversation_channel(conversation_id: str) -> str:
    return f"chat:conversation:{conversation_id}"


def organization_channel(organization_id: str) -> str:
    return f"chat:org:{organization_id}"


class NullPublisher:
    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        logger.debug("realtime_publish_skipped channel=%s", channel)


class CentrifugoPublisher:
    def __init__(self, base_url: str, api_key: str, *, timeout_seconds: float = 3.0) -> None:
        self.publish_url = base_url.rstrip("/") + "/api/publish"
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        encoded = json.dumps({"channel": channel, "data": payload}, default=str).encode("utf-8")
        try:
            req = request.Request(
                self.publish_url,
                data=encoded,
                method="POST",
                headers={"Content-Type": "application/json", "X-API-Key": self.api_key},
            )
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except (URLError, HTTPException, TimeoutError, OSError, ValueError) as exc:
            raise FanOutError(f"publish to {channel} failed") from exc

        try:
            decoded = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise FanOutError("publish response was not valid json") from exc
        if isinstance(decoded, dict) and decoded.get("error"):
            raise FanOutError(f"publish to {channel} rejected: {decoded['error']}")


def build_publisher(base_url: str, api_key: str, *, timeout_seconds: float = 3.0):
    if not base_url:
        return NullPublisher()
    return CentrifugoPublisher(base_url, api_key, timeout_seconds=timeout_seconds)
