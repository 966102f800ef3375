from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    Provider,
    RateLimitErrorResponse,
    RetryBatchResponse,
    WebhookAckResponse,
    WebhookLogItem,
    WebhookLogRecord,
    WebhookLogState,
)
from backend.app.container import build_services
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import TransientPersistenceError
from backend.app.services.normalizer import NormalizationError, detect_event_type
from backend.app.services.rate_limit import RateLimiter, RateLimitResult, build_rate_limiter, client_ip
from backend.app.services.webhooks import SignatureVerificationError, verify_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import StoreNotFoundError, WebhookLogStore

logger = logging.getLogger("whatsapp_ingest.webhook")

UNPARSEABLE_EVENT_TYPE = "unparseable"


class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult) -> None:
        super().__init__(f"rate limit exceeded ({result.strategy})")
        self.result = result


def create_app() -> FastAPI:
    app = FastAPI(title="WhatsApp Webhook Ingestion API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    metrics = MetricsRegistry()
    services = build_services(settings, metrics=metrics)
    app.state.settings = settings
    app.state.persistence = services.persistence
    app.state.chat_store = services.chat_store
    app.state.log_store = services.log_store
    app.state.directory = services.directory
    app.state.processor = services.processor
    app.state.scheduler = services.scheduler
    app.state.metrics = metrics
    app.state.rate_limiter = build_rate_limiter(
        enabled=settings.rate_limit_enabled,
        redis_url=settings.rate_limit_redis_url,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return rate_limit_response(exc.result)

    app.include_router(build_router())
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_log_store(request: Request) -> WebhookLogStore:
    return request.app.state.log_store


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def rate_limit_response(result: RateLimitResult) -> JSONResponse:
    body = RateLimitErrorResponse(
        error="Too Many Requests",
        message=f"Rate limit exceeded ({result.strategy}). Try again in {result.retry_after} seconds.",
        limit=result.limit,
        current=result.current,
        resetAt=result.reset_at,
        retryAfter=result.retry_after,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=body.model_dump(mode="json"),
        headers={
            "Retry-After": str(result.retry_after),
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Current": str(result.current),
            "X-RateLimit-Reset": str(result.reset_epoch),
        },
    )


def request_organization(request: Request, fallback: Optional[str] = None) -> Optional[str]:
    org_id = (request.query_params.get("orgId") or "").strip()
    if org_id:
        return org_id
    header_org = (request.headers.get("x-org-id") or "").strip()
    return header_org or fallback


def enforce_rate_limit(request: Request, endpoint: str, org_id: Optional[str] = None) -> None:
    result = get_rate_limiter(request).check(endpoint, client_ip(request), org_id)
    if not result.allowed:
        if endpoint == "webhook":
            get_metrics(request).record_webhook("rate_limited")
        raise RateLimitExceeded(result)


async def enforce_rate_limit_async(
    request: Request, endpoint: str, org_id: Optional[str] = None
) -> None:
    # counter backends do blocking network I/O
    await run_in_threadpool(enforce_rate_limit, request, endpoint, org_id)


async def _gateway_organization(request: Request, instance_ref: str) -> Optional[str]:
    try:
        instance = await run_in_threadpool(
            request.app.state.directory.resolve, Provider.gateway, instance_ref
        )
    except TransientPersistenceError:
        return None
    return instance.organization_id if instance else None


async def _settle(operation, *args, **kwargs) -> None:
    # the row stays unprocessed when bookkeeping fails, so the scheduler picks it up
    try:
        await run_in_threadpool(operation, *args, **kwargs)
    except TransientPersistenceError as exc:
        logger.error("webhook_bookkeeping_failed operation=%s error=%s", operation.__name__, exc)


async def ingest_webhook(
    request: Request, provider: Provider, instance_ref: Optional[str] = None
) -> WebhookAckResponse:
    """
    Log, verify and process one delivery.

    Every outcome after the log row is durable is acknowledged with 200; failures are
    recorded on the row for audit and retry.
    """
    settings = get_settings(request)
    metrics = get_metrics(request)
    log_store = get_log_store(request)
    raw_body = await request.body()
    metrics.record_webhook("received")

    parse_error: Optional[str] = None
    try:
        payload: Any = json.loads(raw_body.decode("utf-8"))
        event_type = detect_event_type(provider, payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        parse_error = exc.__class__.__name__
        payload = {"raw": raw_body.decode("latin-1")}
        event_type = UNPARSEABLE_EVENT_TYPE

    try:
        log = await run_in_threadpool(
            log_store.create, payload, event_type, provider=provider, instance_ref=instance_ref
        )
    except TransientPersistenceError as exc:
        logger.error("webhook_log_unavailable provider=%s error=%s", provider.value, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="webhook log unavailable",
        ) from exc

    secret = (
        settings.whatsapp_app_secret
        if provider == Provider.cloud_api
        else settings.gateway_webhook_secret
    )
    try:
        verify_signature(provider, request.headers, raw_body, secret)
    except SignatureVerificationError as exc:
        metrics.record_webhook("signature_invalid")
        logger.warning(
            "webhook_signature_rejected provider=%s log_id=%s reason=%s",
            provider.value,
            log.id,
            exc,
        )
        return WebhookAckResponse(logId=log.id)

    try:
        await run_in_threadpool(log_store.mark_signature, log.id, True)
    except TransientPersistenceError as exc:
        logger.error("webhook_log_unavailable provider=%s log_id=%s error=%s", provider.value, log.id, exc)
        # keeps the row out of the invalid_signature audit listing
        await _settle(log_store.annotate, log.id, f"signature verified but not recorded: {exc}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="webhook log unavailable",
        ) from exc

    if parse_error is not None:
        metrics.record_webhook("malformed")
        logger.warning(
            "webhook_unparseable provider=%s log_id=%s bytes=%s error=%s",
            provider.value,
            log.id,
            len(raw_body),
            parse_error,
        )
        await _settle(log_store.mark_processed, log.id, note=f"unparseable body: {parse_error}")
        return WebhookAckResponse(logId=log.id)

    try:
        summary = await run_in_threadpool(
            request.app.state.processor.process_payload, provider, payload, instance_ref
        )
    except NormalizationError as exc:
        metrics.record_webhook("malformed")
        logger.warning("webhook_malformed provider=%s log_id=%s error=%s", provider.value, log.id, exc)
        await _settle(log_store.mark_processed, log.id, note=f"normalization failed: {exc}")
        return WebhookAckResponse(logId=log.id)
    except Exception as exc:
        metrics.record_webhook("failed")
        logger.warning(
            "webhook_processing_failed provider=%s log_id=%s error=%s",
            provider.value,
            log.id,
            exc,
        )
        await _settle(
            log_store.mark_failed,
            log.id,
            str(exc) or exc.__class__.__name__,
            count_attempt=False,
        )
        return WebhookAckResponse(logId=log.id)

    await _settle(log_store.mark_processed, log.id)
    metrics.record_webhook("processed")
    logger.info(
        "webhook_processed provider=%s log_id=%s event_type=%s events=%s created=%s statuses=%s",
        provider.value,
        log.id,
        event_type,
        summary.events,
        summary.messages_created,
        summary.statuses_applied,
    )
    return WebhookAckResponse(logId=log.id)


def to_log_item(record: WebhookLogRecord) -> WebhookLogItem:
    return WebhookLogItem(
        log_id=record.id,
        provider=record.provider,
        event_type=record.event_type,
        processed=record.processed,
        signature_valid=record.signature_valid,
        retry_count=record.retry_count,
        processing_error=record.processing_error,
        last_retry_at=record.last_retry_at,
        processed_at=record.processed_at,
        created_at=record.created_at,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not request.app.state.persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/webhook", response_class=PlainTextResponse)
    def verify_subscription(request: Request) -> Response:
        settings = get_settings(request)
        mode = request.query_params.get("hub.mode")
        token = request.query_params.get("hub.verify_token")
        challenge = request.query_params.get("hub.challenge") or ""
        if (
            mode == "subscribe"
            and settings.whatsapp_verify_token
            and token == settings.whatsapp_verify_token
        ):
            logger.info("webhook_subscription_verified")
            return PlainTextResponse(challenge)
        logger.warning("webhook_subscription_rejected mode=%s", mode)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")

    @router.post("/webhook", response_model=WebhookAckResponse)
    async def cloud_webhook(request: Request) -> WebhookAckResponse:
        await enforce_rate_limit_async(request, "webhook", request_organization(request))
        return await ingest_webhook(request, Provider.cloud_api)

    @router.post("/webhook/gateway/{instance_ref}", response_model=WebhookAckResponse)
    async def gateway_webhook(instance_ref: str, request: Request) -> WebhookAckResponse:
        org_id = request_organization(request)
        if not org_id:
            org_id = await _gateway_organization(request, instance_ref)
        await enforce_rate_limit_async(request, "webhook", org_id)
        return await ingest_webhook(request, Provider.gateway, instance_ref)

    @router.post("/jobs/webhook-retry", response_model=RetryBatchResponse)
    async def run_webhook_retry(
        request: Request,
        auth: AuthContext = Depends(require_roles("service", "admin")),
    ) -> RetryBatchResponse:
        await enforce_rate_limit_async(
            request, "webhook_retry_job", request_organization(request, auth.organization_id)
        )
        try:
            result = await run_in_threadpool(request.app.state.scheduler.run_once)
        except TransientPersistenceError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="webhook log unavailable",
            ) from exc
        return RetryBatchResponse(
            selected=result.selected,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            exhausted=result.exhausted,
        )

    @router.get("/webhook-logs", response_model=list[WebhookLogItem])
    def list_webhook_logs(
        request: Request,
        state: Optional[WebhookLogState] = None,
        limit: int = Query(default=100, ge=1, le=500),
        auth: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> list[WebhookLogItem]:
        enforce_rate_limit(request, "admin", request_organization(request, auth.organization_id))
        records = get_log_store(request).list_logs(
            state=state,
            max_attempts=get_settings(request).retry_max_attempts,
            limit=limit,
        )
        return [to_log_item(record) for record in records]

    @router.get("/webhook-logs/{log_id}", response_model=WebhookLogItem)
    def get_webhook_log(
        log_id: str,
        request: Request,
        auth: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> WebhookLogItem:
        enforce_rate_limit(request, "admin", request_organization(request, auth.organization_id))
        try:
            record = get_log_store(request).get(log_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return to_log_item(record)

    return router


app = create_app()
