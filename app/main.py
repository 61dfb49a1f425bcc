import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import parse_qs

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from app.config import settings
from app.escalation import EscalationNotifier, process_interaction
from app.llm import LLMGateway
from app.locks import ConversationLockTable
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.pipeline import InboundPipeline
from app.prompt import load_prompt
from app.schemas import (
    ErrorResponse,
    HealthResponse,
    SlackCallbackResponse,
    SlackInteractivePayload,
    WebhookResponse,
)
from app.storage import SessionLocal, init_db, check_db_health, get_db
from app.utils import verify_meta_signature, verify_slack_signature
from app.whatsapp import WhatsAppSender


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_pipeline() -> InboundPipeline:
    """Wire the pipeline and its collaborators from settings."""
    system_prompt = load_prompt(settings.PROMPT_PATH)
    gateway = LLMGateway(
        api_key=settings.DEEPSEEK_API_KEY,
        system_prompt=system_prompt,
        api_url=settings.DEEPSEEK_API_URL,
        model=settings.DEEPSEEK_MODEL,
        timeout_seconds=settings.LLM_CLIENT_TIMEOUT_SECONDS,
    )
    sender = WhatsAppSender(
        access_token=settings.META_ACCESS_TOKEN,
        phone_number_id=settings.META_PHONE_NUMBER_ID,
        base_url=settings.META_API_BASE_URL,
        api_version=settings.META_API_VERSION,
        timeout_seconds=settings.SEND_TIMEOUT_SECONDS,
    )
    notifier = EscalationNotifier(
        webhook_url=settings.SLACK_WEBHOOK_URL,
        timeout_seconds=settings.SEND_TIMEOUT_SECONDS,
    )
    return InboundPipeline(
        session_factory=SessionLocal,
        gateway=gateway,
        sender=sender,
        notifier=notifier,
        locks=ConversationLockTable(),
        max_workers=settings.WORKER_POOL_SIZE,
        history_limit=settings.HISTORY_LIMIT,
        llm_timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        scheduling_link=settings.SCHEDULING_LINK,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, compile the system prompt, start the pipeline
    - Shutdown: wait for in-flight messages, then stop the worker pools
    """
    init_db()
    app.state.pipeline = build_pipeline()
    logger.info("Relay ready")
    yield
    logger.info("Shutting down pipeline")
    app.state.pipeline.shutdown(wait=True)


app = FastAPI(
    title="Conversation Relay",
    description="WhatsApp webhook relay with LLM replies and Slack escalation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> InboundPipeline:
    return request.app.state.pipeline


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="healthy")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# WhatsApp Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(request: Request) -> PlainTextResponse:
    """
    Meta subscription handshake.

    Echoes `challenge` when `mode` is "subscribe" and the verify token
    matches. Accepts both the `hub.`-prefixed names Meta sends and bare names.
    """
    params = request.query_params
    mode = params.get("hub.mode", params.get("mode"))
    challenge = params.get("hub.challenge", params.get("challenge", ""))
    token = params.get("hub.verify_token", params.get("verify_token", ""))

    if mode == "subscribe" and hmac.compare_digest(
        token.encode("utf-8"), settings.META_VERIFY_TOKEN.encode("utf-8")
    ):
        logger.info("Webhook verification succeeded")
        return PlainTextResponse(challenge)

    logger.warning(f"Webhook verification rejected: mode={mode!r}")
    return PlainTextResponse("forbidden", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unreadable body"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    }
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    pipeline: InboundPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Accept an inbound WhatsApp callback.

    - Verifies the HMAC-SHA256 signature over the exact raw body
    - Returns 200 at once; the messages are processed in the background
    """
    # Read raw body first: the signature covers the exact bytes
    try:
        raw_body = await request.body()
    except ClientDisconnect:
        record_webhook_outcome("bad_request")
        log_webhook_data(request, result="bad_request")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad request")

    if not verify_meta_signature(settings.META_APP_SECRET, raw_body, x_hub_signature_256):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature", body_bytes=len(raw_body))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    pipeline.submit(raw_body)

    record_webhook_outcome("accepted")
    log_webhook_data(request, result="accepted", body_bytes=len(raw_body))
    return WebhookResponse(status="ok")


# =============================================================================
# Slack Escalation Callback
# =============================================================================

@app.post(
    "/escalation/callback",
    response_model=SlackCallbackResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing payload or actions"},
        403: {"model": ErrorResponse, "description": "Invalid or stale signature"},
        500: {"model": ErrorResponse, "description": "State change failed"},
    }
)
async def escalation_callback(
    request: Request,
    x_slack_request_timestamp: Annotated[str | None, Header(alias="X-Slack-Request-Timestamp")] = None,
    x_slack_signature: Annotated[str | None, Header(alias="X-Slack-Signature")] = None,
    db: Session = Depends(get_db),
):
    """
    Handle a Slack interactive button press.

    Only `take_over_chat` changes state: it pauses the conversation named
    by the button value. Other actions are acknowledged with no effect.
    """
    try:
        raw_body = await request.body()
    except ClientDisconnect:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad request")

    if not verify_slack_signature(
        settings.SLACK_SIGNING_SECRET, x_slack_request_timestamp, raw_body, x_slack_signature
    ):
        logger.error("Invalid Slack signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    try:
        form = parse_qs(raw_body.decode("utf-8"))
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad request")

    payload_json = (form.get("payload") or [""])[0]
    if not payload_json:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing payload")

    try:
        payload = SlackInteractivePayload.model_validate(json.loads(payload_json))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Unparsable Slack payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad request")

    if not payload.actions:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no actions")

    try:
        result = process_interaction(db, payload)
    except SQLAlchemyError as e:
        logger.error(f"Take over failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")

    if result is None:
        return Response(status_code=status.HTTP_200_OK)
    return result


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
