"""
Reminder service: turns incoming chat messages into queue operations and replies.
"""

import logging
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Optional

from app.ai.extractor import extract_reminders
from app.config.settings import Settings
from app.domain.errors import ExtractionError, NotFoundError, PersistenceError
from app.domain.reminder import ExtractionResult, PendingSelection
from app.infrastructure.reminder_store import ReminderStore
from app.usecases.candidate_resolver import resolve_candidates
from app.usecases.selection_flow import CANCEL_CHOICE, SelectionFlow, parse_selection_reply
from app.utils.time import datetime_to_str, get_relative_time_description, now_in, shorten

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

CMD_START = "/start"
CMD_STATS = "/stats"
CMD_HELP = "/help"
CMD_CANCEL = "/cancel"
CMD_LIST_REMINDERS = "/list"
CMD_PRIVACY = "/privacy"

MSG_START = "This bot will reserve your messages and notify you at desired times :-)"
MSG_CMD_NOT_SUPPORTED = "Not a supported bot command: {command}"
MSG_HELP = """Help message here:

*/list*: list all the active reminders.
*/cancel*: cancel a reminder.
*/stats*: show stats of this bot.
*/privacy*: show privacy policy of this bot.
*/help*: show this help message.

_model: {model}_
_version: {version}_"""
MSG_COMMAND_CANCELED = "Command was canceled."
MSG_REMINDER_CANCELED = "Reminder '{message}' was canceled."
MSG_ERROR = "An error has occurred."
MSG_RESPONSE = "Will notify '{message}' on {when} ({relative})."
MSG_SAVE_FAILED = "Failed to save reminder '{message}': {error}"
MSG_CANCEL_WHAT = "Which one do you want to cancel?"
MSG_CANCEL_HINT = "Reply '/cancel <number>' to cancel it."
MSG_PARSE_FAILED = "Failed to understand message: {error}"
MSG_LIST_ITEM = "☑ {when}; {message}"
MSG_NO_REMINDERS = "There is no registered reminder."
MSG_NO_CLUE = "There was no clue for the desired datetime in your message."
MSG_INVALID_CHOICE = "Please reply with a number between 1 and {count}, or 0 to cancel."
MSG_PRIVACY = "Privacy Policy:\n\n{url}"
MSG_NO_PRIVACY_POLICY = "No privacy policy has been published for this bot."

Extractor = Callable[..., Awaitable[ExtractionResult]]


class ReminderService:
    """Service class for chat-facing reminder operations."""

    def __init__(
        self,
        store: ReminderStore,
        settings: Settings,
        tz: tzinfo,
        extractor: Optional[Extractor] = None,
    ):
        self.store = store
        self.settings = settings
        self.tz = tz
        self.extractor = extractor or extract_reminders
        self.selection = SelectionFlow(store, tz)

    async def handle_message(
        self,
        chat_id: str,
        message_id: str,
        text: str,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> str:
        """
        Handle an incoming text message and return the reply.

        Commands start with '/'. A bare number (or 'cancel') answers the
        latest pending selection of the chat, if there is one. Anything else
        is a new reminder request.
        """
        text = text.strip()

        try:
            if text.startswith("/"):
                return await self.handle_command(chat_id, text)

            number = parse_selection_reply(text)
            if number is not None:
                pending = await self.selection.pending_for_reply(chat_id)
                if pending is not None:
                    return await self.handle_selection_reply(pending, number)

            return await self.handle_reminder_request(chat_id, message_id, text, user_id, username)
        except PersistenceError as e:
            await self.store.log_error(f"failed to handle message {message_id}: {e}")
            return MSG_ERROR

    async def handle_reminder_request(
        self,
        chat_id: str,
        message_id: str,
        text: str,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> str:
        """Extract, resolve, and either enqueue or ask the user to pick a datetime."""
        now = now_in(self.tz)

        try:
            extracted = await self.extractor(
                text,
                now=now,
                tz=self.tz,
                default_hour=self.settings.default_hour,
            )
        except ExtractionError as e:
            await self.store.log_error(f"failed to parse message {message_id}: {e}")
            await self._save_prompt(chat_id, text, 0, False, 0, user_id, username)
            return MSG_PARSE_FAILED.format(error=e)

        await self._save_prompt(
            chat_id,
            text,
            extracted.prompt_tokens,
            True,
            extracted.completion_tokens,
            user_id,
            username,
        )

        candidates = resolve_candidates(
            extracted.candidates,
            default_hour=self.settings.default_hour,
            tz=self.tz,
            now=now,
        )

        if not candidates:
            return MSG_NO_CLUE

        if len(candidates) == 1:
            what = candidates[0].message
            when = candidates[0].when
            try:
                await self.store.enqueue(chat_id, message_id, what, when)
            except PersistenceError as e:
                await self.store.log_error(f"failed to enqueue message {message_id}: {e}")
                return MSG_SAVE_FAILED.format(message=shorten(what, 100), error=e)
            return self._response(what, when, now)

        return await self.selection.begin(chat_id, message_id, candidates)

    async def handle_selection_reply(self, pending: PendingSelection, number: int) -> str:
        """Apply a numbered answer to a pending selection."""
        if number == CANCEL_CHOICE:
            await self.selection.cancel(pending.chat_id, pending.origin_message_id)
            return MSG_COMMAND_CANCELED

        try:
            chosen = self.selection.chosen_datetime(pending, number)
        except NotFoundError:
            return MSG_INVALID_CHOICE.format(count=len(pending.choices))

        try:
            item = await self.selection.confirm(pending.chat_id, pending.origin_message_id, chosen)
        except NotFoundError as e:
            await self.store.log(f"stale selection: {e}")
            return MSG_ERROR
        except PersistenceError as e:
            await self.store.log_error(f"failed to save selection: {e}")
            return MSG_SAVE_FAILED.format(message=shorten(pending.message, 160), error=e)

        return self._response(shorten(item.message, 160), chosen, now_in(self.tz))

    async def handle_command(self, chat_id: str, text: str) -> str:
        """
        Handle a bot command and return the reply.

        Args:
            chat_id: Chat the command came from
            text: Full command text, e.g. '/cancel 12'
        """
        command, _, args = text.partition(" ")
        command = command.lower()

        command_handlers = {
            CMD_START: self._handle_start,
            CMD_LIST_REMINDERS: self._handle_list,
            CMD_CANCEL: self._handle_cancel,
            CMD_STATS: self._handle_stats,
            CMD_HELP: self._handle_help,
            CMD_PRIVACY: self._handle_privacy,
        }

        handler = command_handlers.get(command)
        if handler is None:
            return MSG_CMD_NOT_SUPPORTED.format(command=command)

        return await handler(chat_id, args.strip())

    async def _handle_start(self, chat_id: str, args: str) -> str:
        return MSG_START

    async def _handle_help(self, chat_id: str, args: str) -> str:
        return MSG_HELP.format(model=self.settings.openai_model, version=VERSION)

    async def _handle_privacy(self, chat_id: str, args: str) -> str:
        if not self.settings.privacy_policy_url:
            return MSG_NO_PRIVACY_POLICY
        return MSG_PRIVACY.format(url=self.settings.privacy_policy_url)

    async def _handle_stats(self, chat_id: str, args: str) -> str:
        return await self.store.stats(self.tz)

    async def _handle_list(self, chat_id: str, args: str) -> str:
        """List undelivered reminders, soonest first."""
        reminders = await self.store.undelivered_items(chat_id)
        if not reminders:
            return MSG_NO_REMINDERS

        return "\n".join(
            MSG_LIST_ITEM.format(
                when=datetime_to_str(r.fire_on, self.tz),
                message=shorten(r.message, 100),
            )
            for r in reminders
        )

    async def _handle_cancel(self, chat_id: str, args: str) -> str:
        """Without arguments list cancelable reminders; with a queue id delete it."""
        if args:
            return await self._cancel_reminder(chat_id, args)

        reminders = await self.store.undelivered_items(chat_id)
        if not reminders:
            return MSG_NO_REMINDERS

        lines = [MSG_CANCEL_WHAT, ""]
        for r in reminders:
            lines.append(f"{r.id}. " + MSG_LIST_ITEM.format(
                when=datetime_to_str(r.fire_on, self.tz),
                message=shorten(r.message, 100),
            ))
        lines.append("")
        lines.append(MSG_CANCEL_HINT)
        return "\n".join(lines)

    async def _cancel_reminder(self, chat_id: str, args: str) -> str:
        try:
            queue_id = int(args)
        except ValueError:
            await self.store.log_error(f"unprocessable cancel parameter: {args}")
            return MSG_ERROR

        try:
            item = await self.store.get_item(chat_id, queue_id)
        except NotFoundError as e:
            await self.store.log_error(f"failed to get reminder: {e}")
            return MSG_ERROR

        if not await self.store.delete_item(chat_id, queue_id):
            await self.store.log(f"reminder {queue_id} was already removed")

        return MSG_REMINDER_CANCELED.format(message=item.message)

    async def _save_prompt(
        self,
        chat_id: str,
        text: str,
        tokens: int,
        successful: bool,
        completion_tokens: int,
        user_id: Optional[str],
        username: Optional[str],
    ) -> None:
        try:
            await self.store.save_prompt(
                chat_id,
                text,
                tokens,
                successful,
                completion_tokens=completion_tokens,
                user_id=user_id,
                username=username,
            )
        except PersistenceError as e:
            await self.store.log_error(f"failed to save prompt: {e}")

    def _response(self, message: str, when: datetime, now: datetime) -> str:
        return MSG_RESPONSE.format(
            message=message,
            when=datetime_to_str(when, self.tz),
            relative=get_relative_time_description(when, now),
        )
