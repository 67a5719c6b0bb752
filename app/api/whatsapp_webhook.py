"""
WhatsApp webhook endpoint for receiving messages from Twilio.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Request, Form, HTTPException
from fastapi.responses import Response
from twilio.request_validator import RequestValidator

from app.config.settings import get_settings
from app.infrastructure.database import async_session_factory
from app.infrastructure.reminder_store import ReminderStore
from app.infrastructure.twilio_whatsapp import send_whatsapp_message, send_error_message
from app.usecases.reminder_service import ReminderService, MSG_ERROR
from app.utils.time import get_timezone

logger = logging.getLogger(__name__)
router = APIRouter()
settings = get_settings()

EMPTY_TWIML = ""


@lru_cache()
def get_reminder_service() -> ReminderService:
    """Get the shared reminder service, backed by the application database."""
    store = ReminderStore(async_session_factory, selection_ttl=settings.selection_ttl)
    return ReminderService(store, settings, get_timezone(settings.timezone))


def normalize_number(number: str) -> str:
    """Strip the channel prefix and spaces, e.g. 'whatsapp:+92 300' -> '+92300'."""
    number = number.strip()
    if number.lower().startswith("whatsapp:"):
        number = number[len("whatsapp:"):]
    return number.replace(" ", "")


def is_allowed(sender: str) -> bool:
    """Only the configured numbers may use the bot."""
    allowed = {normalize_number(n) for n in settings.allowed_whatsapp_numbers}
    return normalize_number(sender) in allowed


async def validate_twilio_signature(request: Request) -> bool:
    """
    Validate the Twilio webhook signature.

    Args:
        request: FastAPI request object (form already parsed)

    Returns:
        True if signature is valid
    """
    if not settings.validate_twilio_signature:
        return True

    validator = RequestValidator(settings.twilio_auth_token)

    # Get the signature from headers
    signature = request.headers.get("X-Twilio-Signature", "")

    form = await request.form()
    params = {key: value for key, value in form.items()}

    return validator.validate(str(request.url), params, signature)


def _twiml() -> Response:
    # Replies are sent via the REST API, not in the webhook response
    return Response(content=EMPTY_TWIML, media_type="text/xml")


@router.post("/webhook/whatsapp")
async def whatsapp_webhook(
    request: Request,
    Body: str = Form(default=""),
    From: str = Form(...),
    MessageSid: str = Form(...),
    ProfileName: Optional[str] = Form(default=None),
):
    """
    Handle incoming WhatsApp messages from Twilio.

    Text is handed to the reminder service and its answer is sent back to the
    sender.
    """
    if not await validate_twilio_signature(request):
        logger.warning(f"Invalid Twilio signature for message {MessageSid}")
        raise HTTPException(status_code=403, detail="Invalid signature")

    if not is_allowed(From):
        logger.debug(f"message not allowed: {From} ({ProfileName})")
        return _twiml()

    logger.info(f"Received message from {From}, SID: {MessageSid}")

    message_text = Body.strip()
    if not message_text:
        logger.info("Empty message received, skipping")
        return _twiml()

    try:
        service = get_reminder_service()
        response = await service.handle_message(
            chat_id=From,
            message_id=MessageSid,
            text=message_text,
            user_id=normalize_number(From),
            username=ProfileName,
        )
        await send_whatsapp_message(response, From)
    except Exception as e:
        logger.exception(f"Error processing message: {e}")
        await send_error_message(MSG_ERROR, From)

    return _twiml()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "whatsapp-reminder-bot"}
