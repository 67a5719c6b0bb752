"""
Twilio WhatsApp messaging: reminder delivery and replies to the user.

Sends are not retried here; the dispatch loop re-attempts undelivered
reminders on its next tick.
"""

import asyncio
import logging
from functools import lru_cache
from typing import Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient

from app.config.settings import get_settings
from app.domain.reminder import DeliveryResult

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30
# Outer bound on a send; must exceed the HTTP timeout so the HTTP call gives up first
SEND_TIMEOUT_SECONDS = REQUEST_TIMEOUT_SECONDS + 5


@lru_cache()
def get_twilio_client() -> Client:
    """Get the shared Twilio client."""
    settings = get_settings()
    return Client(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=TwilioHttpClient(timeout=REQUEST_TIMEOUT_SECONDS),
    )


def _send_message_sync(message: str, from_number: str, to_number: str):
    """
    Synchronous Twilio message send.

    Args:
        message: Text message to send
        from_number: Sender's WhatsApp number
        to_number: Recipient's WhatsApp number

    Returns:
        Twilio message object
    """
    return get_twilio_client().messages.create(
        body=message,
        from_=from_number,
        to=to_number
    )


async def _send(message: str, to_number: str, timeout: float) -> DeliveryResult:
    settings = get_settings()

    try:
        msg = await asyncio.wait_for(
            asyncio.to_thread(
                _send_message_sync,
                message=message,
                from_number=settings.twilio_whatsapp_number,
                to_number=to_number,
            ),
            timeout=timeout,
        )
    except TwilioException as e:
        return DeliveryResult(ok=False, reason=str(e))
    except asyncio.TimeoutError:
        return DeliveryResult(ok=False, reason=f"timed out after {timeout}s")
    except Exception as e:
        logger.exception(f"Error sending WhatsApp message: {e}")
        return DeliveryResult(ok=False, reason=str(e))

    logger.info(f"WhatsApp message sent successfully. SID: {msg.sid}")
    return DeliveryResult(ok=True)


async def send_whatsapp_message(message: str, to_number: str) -> bool:
    """
    Send a WhatsApp text message.

    Args:
        message: Text message to send
        to_number: Recipient WhatsApp number

    Returns:
        True if message sent successfully, False otherwise
    """
    result = await _send(message, to_number, SEND_TIMEOUT_SECONDS)
    if not result.ok:
        logger.error(f"Failed to send WhatsApp message: {result.reason}")
    return result.ok


def format_reminder(message: str) -> str:
    """WhatsApp body of a delivered reminder."""
    return f"⏰ {message}"


async def deliver_reminder(
    chat_id: str,
    origin_message_id: str,
    message: str,
) -> DeliveryResult:
    """
    Deliver a due reminder to its chat.

    Args:
        chat_id: Recipient WhatsApp number
        origin_message_id: SID of the message the reminder was created from
        message: Reminder text

    Returns:
        Delivery outcome; failures carry the reason
    """
    result = await _send(format_reminder(message), chat_id, SEND_TIMEOUT_SECONDS)
    if not result.ok:
        logger.warning(f"Failed to deliver reminder for message {origin_message_id}: {result.reason}")
    return result


async def send_error_message(error: str, to_number: str, detail: Optional[str] = None) -> bool:
    """
    Send an error message to the user.

    Args:
        error: Error description
        to_number: Recipient WhatsApp number
        detail: Optional extra line

    Returns:
        True if message sent successfully
    """
    message = f"❌ {error}"
    if detail:
        message += f"\n\n{detail}"
    return await send_whatsapp_message(message, to_number)
