"""HTTP surface: health probes, the Chatwoot webhook and direct sends."""

from __future__ import annotations

import contextlib
import hmac
import importlib
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .app import Bridge
from .config import Settings
from .errors import Unauthorized, ValidationFailure
from .ledger import FailureLedger
from .models import SendChannelRequest, WebhookPayload

__all__ = ["build_http_app", "configure_logging"]

_LOGGING_CONFIGURED = False

_PUBLIC_PATHS = ("/healthz", "/health/", "/webhooks/chatwoot")


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    _LOGGING_CONFIGURED = True


def _tokens_match(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _bearer_from(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


class BearerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, token: str) -> None:
        super().__init__(app)
        self._token = token

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":  # allow CORS preflight
            return await call_next(request)
        if request.url.path.startswith(_PUBLIC_PATHS):
            return await call_next(request)
        if not _tokens_match(_bearer_from(request), self._token):
            return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.time()
        response = await call_next(request)
        structlog.get_logger("http").info(
            "request",
            method=request.method,
            path=request.url.path,
            status=getattr(response, "status_code", 0),
            duration_ms=int((time.time() - start) * 1000),
            client_ip=request.client.host if request.client else "-",
        )
        return response


async def _parse_body(request: Request, model: type[Any]) -> Any:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise ValidationFailure("Request body is not valid JSON") from exc
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise ValidationFailure(f"Invalid {model.__name__}") from exc


def build_http_app(settings: Settings, bridge: Bridge | None = None) -> FastAPI:
    configure_logging(settings)
    log = structlog.get_logger("http")

    @asynccontextmanager
    async def lifespan_context(app: FastAPI):
        if bridge is not None:
            await bridge.start()
        try:
            yield
        finally:
            if bridge is not None:
                await bridge.stop()

    fastapi_app = FastAPI(title="Telegram-Chatwoot Bridge", lifespan=lifespan_context)
    fastapi_app.state.bridge = bridge
    ledger = bridge.ledger if bridge is not None else FailureLedger()

    if settings.log_rich_enabled:
        with contextlib.suppress(Exception):
            importlib.import_module("rich.traceback").install(show_locals=False)

    if settings.http.request_log_enabled:
        fastapi_app.add_middleware(RequestLoggingMiddleware)

    if settings.http.bearer_token:
        fastapi_app.add_middleware(BearerAuthMiddleware, token=settings.http.bearer_token)

    # Optional CORS (add last so it can handle preflight and attach headers to errors)
    if settings.cors.enabled:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.origins or ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @fastapi_app.exception_handler(Unauthorized)
    async def _unauthorized(request: Request, exc: Unauthorized) -> JSONResponse:
        log.warning("request_unauthorized", path=request.url.path, reason=str(exc))
        return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)

    @fastapi_app.exception_handler(ValidationFailure)
    async def _invalid(request: Request, exc: ValidationFailure) -> JSONResponse:
        log.warning("request_invalid", path=request.url.path, reason=str(exc))
        return JSONResponse({"error": "Invalid payload"}, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)

    @fastapi_app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"ok": True})

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await ledger.ping()
        except Exception as exc:
            log.error("readiness_error", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return JSONResponse({"status": "ready"})

    @fastapi_app.post("/webhooks/chatwoot")
    async def chatwoot_webhook(request: Request) -> JSONResponse:
        expected = settings.chatwoot.webhook_token
        if expected:
            header_token = request.headers.get("x-webhook-token")
            query_token = request.query_params.get("token")
            if not _tokens_match(header_token or query_token, expected):
                log.warning("webhook_token_invalid", header_token=bool(header_token), query_token=bool(query_token))
                raise Unauthorized("Invalid webhook token")
        payload: WebhookPayload = await _parse_body(request, WebhookPayload)
        conversation = payload.conversation_fields()
        log.info(
            "webhook_received",
            webhook_event=payload.event,
            message_type=payload.message_type,
            conversation_id=conversation.get("id"),
            content_preview=(payload.content or "")[:50],
        )
        if bridge is not None and bridge.outbound is not None:
            await bridge.outbound.forward(payload)
        elif payload.message_type == "outgoing":
            log.warning("outbound_transport_unavailable", conversation_id=conversation.get("id"))
        return JSONResponse({"ok": True})

    def _bearer_required(request: Request) -> JSONResponse | None:
        expected = settings.http.bearer_token
        if not expected:
            return JSONResponse(
                {"error": "API_BEARER_TOKEN must be set to use this endpoint"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        if not _tokens_match(_bearer_from(request), expected):
            raise Unauthorized("Invalid bearer token")
        return None

    @fastapi_app.post("/telegram/send-channel")
    async def send_channel(request: Request) -> JSONResponse:
        refused = _bearer_required(request)
        if refused is not None:
            return refused
        transport = bridge.transport if bridge is not None else None
        if transport is None:
            return JSONResponse(
                {"error": "Telegram client not initialized"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        body: SendChannelRequest = await _parse_body(request, SendChannelRequest)
        try:
            peer = await transport.resolve_peer(body.channel)
            await transport.send_text(peer, body.message)
        except Exception as exc:
            log.error("send_channel_failed", channel=body.channel, error=str(exc))
            return JSONResponse(
                {"error": f"Failed to send: {exc or 'unknown error'}"},
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        log.info("send_channel_delivered", channel=body.channel)
        return JSONResponse({"ok": True})

    @fastapi_app.get("/failures")
    async def list_failures(request: Request, limit: int = Query(default=50, ge=1, le=500)) -> JSONResponse:
        refused = _bearer_required(request)
        if refused is not None:
            return refused
        records = await ledger.list_records(limit=limit)
        return JSONResponse(
            {
                "count": await ledger.count(),
                "failures": [record.model_dump(mode="json") for record in records],
            }
        )

    return fastapi_app
