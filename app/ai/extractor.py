"""
OpenAI-powered extraction of (message, datetime) pairs from free text.

The model answers through the `infer_datetime` function call; each call it
makes becomes one raw candidate. Arguments are validated here so nothing
untyped travels further in.
"""

import json
import logging
from datetime import datetime, tzinfo
from functools import lru_cache
from typing import List

from openai import AsyncOpenAI, APIError, APITimeoutError, RateLimitError
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config.settings import get_settings
from app.domain.errors import ExtractionError
from app.domain.reminder import ExtractionResult, RawCandidate
from app.utils.time import datetime_to_str, parse_inferred_datetime

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30

SYSTEM_INSTRUCTION = (
    "You are a kind and considerate chat bot which is built for understanding user's prompt, "
    "extracting desired datetime and prompt from it, and sending the prompt at the exact datetime. "
    "Current datetime is '{current_time}'."
)

FN_NAME_INFER_DATETIME = "infer_datetime"
FN_DESCRIPTION_INFER_DATETIME = "This function infers a datetime and a message from the original prompt text."
FN_ARG_NAME_INFERRED_DATETIME = "inferred_datetime"
FN_ARG_DESCRIPTION_INFERRED_DATETIME = (
    "Inferred datetime which is formatted as 'yyyy.mm.dd hh:MM TZ'(eg. 2024.12.25 15:00 KST). "
    "If the time cannot be inferred, fallback to {default_hour:02d}:00."
)
FN_ARG_NAME_MESSAGE_TO_SEND = "message_to_send"
FN_ARG_DESCRIPTION_MESSAGE_TO_SEND = (
    "Inferred message to be sent at 'inferred_datetime'. If it cannot be inferred, use the original prompt."
)


class InferDatetimeArguments(BaseModel):
    """Arguments of one `infer_datetime` call."""
    inferred_datetime: str = Field(..., min_length=1)
    message_to_send: str = Field(..., min_length=1)


@lru_cache()
def get_openai_client() -> AsyncOpenAI:
    """Get the shared OpenAI client."""
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.openai_api_key, timeout=REQUEST_TIMEOUT_SECONDS)


def build_tools(default_hour: int) -> List[dict]:
    """Function declaration offered to the model."""
    return [
        {
            "type": "function",
            "function": {
                "name": FN_NAME_INFER_DATETIME,
                "description": FN_DESCRIPTION_INFER_DATETIME,
                "parameters": {
                    "type": "object",
                    "properties": {
                        FN_ARG_NAME_INFERRED_DATETIME: {
                            "type": "string",
                            "description": FN_ARG_DESCRIPTION_INFERRED_DATETIME.format(
                                default_hour=default_hour
                            ),
                        },
                        FN_ARG_NAME_MESSAGE_TO_SEND: {
                            "type": "string",
                            "description": FN_ARG_DESCRIPTION_MESSAGE_TO_SEND,
                        },
                    },
                    "required": [FN_ARG_NAME_INFERRED_DATETIME, FN_ARG_NAME_MESSAGE_TO_SEND],
                },
            },
        }
    ]


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type((APITimeoutError, RateLimitError)),
    reraise=True
)
async def _call_openai_tools(messages: list, tools: list):
    """
    Make an OpenAI chat completion call with function calling and retry logic.

    Args:
        messages: Chat messages
        tools: Function declarations

    Returns:
        The chat completion
    """
    settings = get_settings()
    return await get_openai_client().chat.completions.create(
        model=settings.openai_model,
        messages=messages,
        tools=tools,
        tool_choice="required",
        temperature=0.1,
        max_tokens=500
    )


def parse_tool_calls(response, tz: tzinfo) -> List[RawCandidate]:
    """
    Convert the `infer_datetime` calls of a completion into raw candidates.

    Malformed calls are skipped. If there were calls and none of them was
    usable, the whole response is rejected.

    Raises:
        ExtractionError: if no call could be validated
    """
    if not response.choices:
        raise ExtractionError("no choices in model response")

    tool_calls = response.choices[0].message.tool_calls or []
    candidates = []
    errors = []

    for call in tool_calls:
        if call.function.name != FN_NAME_INFER_DATETIME:
            errors.append(f"unexpected function: {call.function.name}")
            continue

        try:
            args = InferDatetimeArguments.model_validate(json.loads(call.function.arguments))
            when = parse_inferred_datetime(args.inferred_datetime, tz)
        except (json.JSONDecodeError, ValidationError, ValueError) as e:
            errors.append(f"malformed arguments {call.function.arguments!r}: {e}")
            continue

        candidates.append(RawCandidate(message=args.message_to_send.strip(), when=when))

    for error in errors:
        logger.warning(f"Skipping function call: {error}")

    if not candidates and errors:
        raise ExtractionError("; ".join(errors))

    return candidates


async def extract_reminders(
    text: str,
    now: datetime,
    tz: tzinfo,
    default_hour: int,
) -> ExtractionResult:
    """
    Ask the model for the message(s) and datetime(s) in `text`.

    Args:
        text: The user's message text
        now: Current time, given to the model as reference
        tz: Configured timezone
        default_hour: Hour the model should fall back to

    Returns:
        Validated candidates (possibly none) and token usage

    Raises:
        ExtractionError: on API failure or an unusable response
    """
    messages = [
        {
            "role": "system",
            "content": SYSTEM_INSTRUCTION.format(current_time=datetime_to_str(now, tz)),
        },
        {
            "role": "user",
            "content": text,
        },
    ]

    try:
        response = await _call_openai_tools(messages=messages, tools=build_tools(default_hour))
    except (APIError, APITimeoutError, RateLimitError) as e:
        logger.error(f"OpenAI API error after retries: {e}")
        raise ExtractionError(f"model call failed: {e}") from e

    prompt_tokens = 0
    completion_tokens = 0
    if response.usage is not None:
        prompt_tokens = response.usage.prompt_tokens or 0
        completion_tokens = response.usage.completion_tokens or 0

    candidates = parse_tool_calls(response, tz)
    logger.info(f"Extracted {len(candidates)} candidate(s)")

    return ExtractionResult(
        candidates=candidates,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )
