"""
Selection flow for messages whose datetime is ambiguous.

The message is parked as a pending selection, the user is shown the
candidate datetimes as numbered choices, and their pick turns it into exactly
one queue item.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import List, Optional

from app.domain.errors import NotFoundError
from app.domain.reminder import PendingSelection, ReminderCandidate, ReminderItem
from app.infrastructure.reminder_store import ReminderStore
from app.utils.time import datetime_to_str

logger = logging.getLogger(__name__)

CANCEL_CHOICE = 0
CANCEL_WORDS = ("cancel",)

MSG_SELECT_WHAT = "Which time do you want for message: '{message}'?"
MSG_CHOICE_HINT = "Reply with the number of your choice."
MSG_CANCEL = "Cancel"


class SelectionFlow:
    """Parks ambiguous messages and finalizes the user's choice."""

    def __init__(self, store: ReminderStore, tz: tzinfo):
        self.store = store
        self.tz = tz

    async def begin(
        self,
        chat_id: str,
        origin_message_id: str,
        candidates: List[ReminderCandidate],
    ) -> str:
        """
        Save the pending selection and build the question for the user.

        The message of the first candidate is used for every choice.

        Returns:
            Text listing the numbered choices and the cancel option
        """
        message = candidates[0].message
        # UTC ISO strings keep the exact instant, even inside a repeated DST hour
        choices = [c.when.astimezone(timezone.utc).isoformat() for c in candidates]

        await self.store.save_pending_selection(chat_id, origin_message_id, message, choices)
        logger.info(f"Waiting for a selection among {len(choices)} datetimes in chat {chat_id}")

        lines = [MSG_SELECT_WHAT.format(message=message), ""]
        for number, candidate in enumerate(candidates, 1):
            lines.append(f"{number}. {datetime_to_str(candidate.when, self.tz)}")
        lines.append(f"{CANCEL_CHOICE}. {MSG_CANCEL}")
        lines.append("")
        lines.append(MSG_CHOICE_HINT)

        return "\n".join(lines)

    async def confirm(
        self,
        chat_id: str,
        origin_message_id: str,
        chosen: datetime,
    ) -> ReminderItem:
        """
        Finalize a pending selection: load it, enqueue it, delete it.

        Raises:
            NotFoundError: if the selection is missing, expired, or consumed
        """
        pending = await self.store.load_pending_selection(chat_id, origin_message_id)
        item = await self.store.enqueue(chat_id, origin_message_id, pending.message, chosen)

        if not await self.store.delete_pending_selection(chat_id, origin_message_id):
            logger.warning(
                f"Pending selection for chat {chat_id}, message {origin_message_id} was already gone"
            )

        return item

    async def cancel(self, chat_id: str, origin_message_id: Optional[str] = None) -> None:
        """Acknowledge a cancel; the pending selection is left for later messages to replace."""
        logger.info(f"Selection canceled in chat {chat_id} (message {origin_message_id})")

    async def pending_for_reply(self, chat_id: str) -> Optional[PendingSelection]:
        """The selection a bare numeric reply in this chat refers to."""
        return await self.store.latest_pending_selection(chat_id)

    def chosen_datetime(self, pending: PendingSelection, number: int) -> datetime:
        """
        Map a 1-based choice number to its datetime.

        Raises:
            NotFoundError: if the number is not one of the offered choices
        """
        if number < 1 or number > len(pending.choices):
            raise NotFoundError(f"choice {number} is not one of {len(pending.choices)} options")
        return datetime.fromisoformat(pending.choices[number - 1]).astimezone(self.tz)


def parse_selection_reply(text: str) -> Optional[int]:
    """
    Read a reply to a selection question.

    Returns:
        The chosen number, CANCEL_CHOICE for a cancel, or None if the text is
        not a selection reply
    """
    value = text.strip().lower()
    if value in CANCEL_WORDS:
        return CANCEL_CHOICE
    if value.isdecimal():
        return int(value)
    return None
