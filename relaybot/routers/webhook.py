import asyncio

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import ClientDisconnect

from relaybot.config import settings
from relaybot.logging_config import get_logger
from relaybot.schemas.webhook import HANDLED_WEBHOOK_TYPES, FlatTestMessage, GreenApiWebhook, WebhookAck
from relaybot.services.alert_service import alert_error
from relaybot.services.dedup_service import dedup_guard

logger = get_logger("webhook")

router = APIRouter()

_engine = None
_background_tasks: set[asyncio.Task] = set()


def get_engine():
    global _engine
    if _engine is None:
        from relaybot.services.command_engine import build_engine

        _engine = build_engine()
    return _engine


def _get_request_token(request: Request, payload: dict | None) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, _, value = auth_header.partition(" ")
        token = value if scheme.lower() == "bearer" else auth_header
        if token.strip():
            return token.strip()
    query_token = request.query_params.get("token")
    if query_token:
        return query_token.strip()
    if payload and payload.get("token"):
        return str(payload["token"]).strip()
    return None


def _verify_token(request: Request, payload: dict | None) -> None:
    expected = (settings.green_api_webhook_token or "").strip()
    if not expected:
        logger.error("Webhook token is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook token not configured",
        )
    provided = _get_request_token(request, payload)
    if provided != expected:
        logger.warning("Webhook rejected: invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")


async def _read_payload(request: Request) -> dict | None:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return None
    except ValueError as exc:
        raw = await request.body()
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return None
    if not isinstance(payload, dict):
        logger.warning("Webhook payload is not an object")
        return None
    return payload


def _parse_event(payload: dict) -> GreenApiWebhook | None:
    try:
        if "typeWebhook" not in payload and "idMessage" in payload and "senderData" not in payload:
            return FlatTestMessage.model_validate(payload).to_webhook()
        return GreenApiWebhook.model_validate(payload)
    except PydanticValidationError as exc:
        logger.warning(
            "Webhook payload failed validation",
            extra={"context": {"errors": exc.errors(include_url=False)[:5]}},
        )
        return None


async def _process_event(event: GreenApiWebhook) -> None:
    try:
        await get_engine().handle_event(event)
    except Exception as exc:
        logger.error(
            "Background webhook processing failed",
            extra={"context": {"message_id": event.idMessage, "chat_id": event.chat_id}},
            exc_info=True,
        )
        await asyncio.to_thread(
            alert_error, "Webhook processing failed", {"message_id": event.idMessage, "error": str(exc)}
        )


def _schedule(event: GreenApiWebhook) -> asyncio.Task:
    task = asyncio.create_task(_process_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


@router.post("/webhook/whatsapp")
async def handle_whatsapp_webhook(request: Request):
    """Green API notification endpoint. Always answers fast; work runs in the background."""
    payload = await _read_payload(request)
    _verify_token(request, payload)
    if payload is None:
        return WebhookAck(status="ignored")

    type_webhook = payload.get("typeWebhook")
    if type_webhook is not None and type_webhook not in HANDLED_WEBHOOK_TYPES:
        logger.debug(f"Ignoring webhook type {type_webhook}")
        return WebhookAck()

    event = _parse_event(payload)
    if event is None:
        return WebhookAck(status="ignored")

    decision = dedup_guard.accept(event)
    if not decision.accept:
        return WebhookAck()

    logger.info(
        "Webhook accepted",
        extra={"context": {"message_id": decision.id, "chat_id": event.chat_id, "type": event.type_message}},
    )
    _schedule(event)
    return WebhookAck()
