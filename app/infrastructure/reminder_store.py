"""
Durable reminder queue, pending selections, and usage/log tables.

Every operation opens its own session and touches one row (or one key), so
the dispatch loop's concurrent tasks never share a transaction.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, tzinfo
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import DEFAULT_MAX_NUM_TRIES
from app.domain.errors import NotFoundError, PersistenceError
from app.domain.reminder import ReminderItem, PendingSelection, utcnow
from app.domain.usage import Prompt, ParsedItem, LogEntry
from app.utils.time import to_timezone

logger = logging.getLogger(__name__)

LOG_TYPE_LOG = "log"
LOG_TYPE_ERROR = "err"

MSG_DATABASE_EMPTY = "Database is empty."


class ReminderStore:
    """Repository for queue items and everything persisted around them."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        selection_ttl: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.selection_ttl = selection_ttl

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session; database errors are rolled back and re-raised as PersistenceError."""
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(str(e)) from e

    # Queue items

    async def enqueue(
        self,
        chat_id: str,
        origin_message_id: str,
        message: str,
        fire_on: datetime,
    ) -> ReminderItem:
        """Add a reminder to the queue. Duplicates are not checked."""
        item = ReminderItem(
            chat_id=chat_id,
            origin_message_id=origin_message_id,
            message=message,
            enqueued_on=utcnow(),
            fire_on=fire_on,
            delivered_on=None,
            num_tries=0,
        )

        async with self._session() as session:
            session.add(item)
            await session.commit()

        logger.info(f"Enqueued reminder {item.id} for chat {chat_id} at {fire_on}")
        return item

    async def deliverable_items(
        self,
        max_num_tries: int,
        now: Optional[datetime] = None,
    ) -> List[ReminderItem]:
        """
        Fetch items that should be delivered right now.

        An item is deliverable when it was never delivered, has tries left,
        and its fire time has passed. Most recently enqueued come first.

        Args:
            max_num_tries: Try budget per item (non-positive means the default)
            now: Reference time, defaults to the current time
        """
        if max_num_tries <= 0:
            max_num_tries = DEFAULT_MAX_NUM_TRIES
        if now is None:
            now = utcnow()

        async with self._session() as session:
            result = await session.execute(
                select(ReminderItem)
                .where(
                    ReminderItem.delivered_on.is_(None),
                    ReminderItem.num_tries < max_num_tries,
                    ReminderItem.fire_on <= now,
                )
                .order_by(ReminderItem.enqueued_on.desc(), ReminderItem.id.desc())
            )
            return list(result.scalars().all())

    async def undelivered_items(self, chat_id: str) -> List[ReminderItem]:
        """Fetch all undelivered items of a chat, soonest first, including exhausted ones."""
        async with self._session() as session:
            result = await session.execute(
                select(ReminderItem)
                .where(
                    ReminderItem.chat_id == chat_id,
                    ReminderItem.delivered_on.is_(None),
                )
                .order_by(ReminderItem.fire_on.asc(), ReminderItem.id.asc())
            )
            return list(result.scalars().all())

    async def get_item(self, chat_id: str, item_id: int) -> ReminderItem:
        """
        Fetch a queue item by its addressing key.

        Raises:
            NotFoundError: if no item has this id in this chat
        """
        async with self._session() as session:
            result = await session.execute(
                select(ReminderItem).where(
                    ReminderItem.id == item_id,
                    ReminderItem.chat_id == chat_id,
                )
            )
            item = result.scalar_one_or_none()

        if item is None:
            raise NotFoundError(f"no queue item {item_id} in chat {chat_id}")
        return item

    async def delete_item(self, chat_id: str, item_id: int) -> bool:
        """Delete a queue item. Returns whether a row was removed."""
        async with self._session() as session:
            result = await session.execute(
                delete(ReminderItem).where(
                    ReminderItem.id == item_id,
                    ReminderItem.chat_id == chat_id,
                )
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_delivered(self, chat_id: str, item_id: int) -> bool:
        """
        Set the delivery time of an item, once.

        Returns False when the item is already delivered, was deleted, or
        belongs to another chat. None of those are errors.
        """
        async with self._session() as session:
            result = await session.execute(
                update(ReminderItem)
                .where(
                    ReminderItem.id == item_id,
                    ReminderItem.chat_id == chat_id,
                    ReminderItem.delivered_on.is_(None),
                )
                .values(delivered_on=utcnow())
            )
            await session.commit()
        return result.rowcount > 0

    async def increase_num_tries(self, chat_id: str, item_id: int) -> bool:
        """Increment the try counter of an item. Returns False if it no longer exists."""
        async with self._session() as session:
            result = await session.execute(
                update(ReminderItem)
                .where(
                    ReminderItem.id == item_id,
                    ReminderItem.chat_id == chat_id,
                )
                .values(num_tries=ReminderItem.num_tries + 1)
            )
            await session.commit()
        return result.rowcount > 0

    # Pending selections

    async def save_pending_selection(
        self,
        chat_id: str,
        origin_message_id: str,
        message: str,
        choices: Optional[List[str]] = None,
    ) -> PendingSelection:
        """Save a message awaiting a datetime choice, replacing any previous one for the key."""
        pending = PendingSelection(
            chat_id=chat_id,
            origin_message_id=origin_message_id,
            message=message,
            choices=list(choices or []),
            saved_on=utcnow(),
        )

        async with self._session() as session:
            await session.execute(
                delete(PendingSelection).where(
                    PendingSelection.chat_id == chat_id,
                    PendingSelection.origin_message_id == origin_message_id,
                )
            )
            session.add(pending)
            await session.commit()

        return pending

    def _is_expired(self, pending: PendingSelection) -> bool:
        if self.selection_ttl is None:
            return False
        return pending.saved_on + self.selection_ttl < utcnow()

    async def load_pending_selection(self, chat_id: str, origin_message_id: str) -> PendingSelection:
        """
        Read a pending selection without consuming it.

        Raises:
            NotFoundError: if it is missing, already consumed, or expired
        """
        async with self._session() as session:
            result = await session.execute(
                select(PendingSelection).where(
                    PendingSelection.chat_id == chat_id,
                    PendingSelection.origin_message_id == origin_message_id,
                )
            )
            pending = result.scalar_one_or_none()

        if pending is None or self._is_expired(pending):
            raise NotFoundError(
                f"no pending selection for chat {chat_id}, message {origin_message_id}"
            )
        return pending

    async def latest_pending_selection(self, chat_id: str) -> Optional[PendingSelection]:
        """The most recently saved, unexpired pending selection of a chat."""
        async with self._session() as session:
            result = await session.execute(
                select(PendingSelection)
                .where(PendingSelection.chat_id == chat_id)
                .order_by(PendingSelection.saved_on.desc(), PendingSelection.id.desc())
                .limit(1)
            )
            pending = result.scalar_one_or_none()

        if pending is None or self._is_expired(pending):
            return None
        return pending

    async def delete_pending_selection(self, chat_id: str, origin_message_id: str) -> bool:
        """Delete a pending selection. Returns whether a row was removed."""
        async with self._session() as session:
            result = await session.execute(
                delete(PendingSelection).where(
                    PendingSelection.chat_id == chat_id,
                    PendingSelection.origin_message_id == origin_message_id,
                )
            )
            await session.commit()
        return result.rowcount > 0

    # Prompts and logs

    async def save_prompt(
        self,
        chat_id: str,
        text: str,
        tokens: int,
        successful: bool,
        completion_tokens: int = 0,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Prompt:
        """Record a prompt sent to the extractor together with its outcome."""
        prompt = Prompt(
            chat_id=chat_id,
            user_id=user_id,
            username=username,
            text=text,
            tokens=tokens,
            created_at=utcnow(),
            result=ParsedItem(
                successful=successful,
                tokens=completion_tokens,
                created_at=utcnow(),
            ),
        )

        async with self._session() as session:
            session.add(prompt)
            await session.commit()

        return prompt

    async def _save_log(self, log_type: str, message: str) -> None:
        try:
            async with self._session() as session:
                session.add(LogEntry(type=log_type, message=message, created_at=utcnow()))
                await session.commit()
        except PersistenceError as e:
            logger.error(f"Failed to save {log_type} message: {e}")

    async def log(self, message: str) -> None:
        """Log an informational message and persist it."""
        logger.info(message)
        await self._save_log(LOG_TYPE_LOG, message)

    async def log_error(self, message: str) -> None:
        """Log an error message and persist it."""
        logger.error(message)
        await self._save_log(LOG_TYPE_ERROR, message)

    async def get_logs(self, latest_n: int) -> List[LogEntry]:
        """Fetch the `latest_n` most recent log entries, newest first."""
        async with self._session() as session:
            result = await session.execute(
                select(LogEntry).order_by(LogEntry.id.desc()).limit(latest_n)
            )
            return list(result.scalars().all())

    async def stats(self, tz: tzinfo) -> str:
        """Aggregate usage statistics as a WhatsApp-formatted string."""
        async with self._session() as session:
            first = (await session.execute(
                select(Prompt.created_at).order_by(Prompt.id.asc()).limit(1)
            )).scalar_one_or_none()

            if first is None:
                return MSG_DATABASE_EMPTY

            chats = (await session.execute(
                select(func.count(func.distinct(Prompt.chat_id)))
            )).scalar_one()

            prompts_count, prompts_tokens = (await session.execute(
                select(func.count(Prompt.id), func.coalesce(func.sum(Prompt.tokens), 0))
                .where(Prompt.tokens > 0)
            )).one()

            completions_count, completions_tokens = (await session.execute(
                select(func.count(ParsedItem.id), func.coalesce(func.sum(ParsedItem.tokens), 0))
                .where(ParsedItem.successful == True)  # noqa: E712
            )).one()

            errors_count = (await session.execute(
                select(func.count(ParsedItem.id)).where(ParsedItem.successful == False)  # noqa: E712
            )).scalar_one()

        lines = [
            f"Since _{to_timezone(first, tz).strftime('%Y-%m-%d %H:%M:%S')}_",
            "",
            f"* Chats: *{chats}*",
            f"* Prompts: *{prompts_count}* (Total tokens: *{prompts_tokens}*)",
            f"* Completions: *{completions_count}* (Total tokens: *{completions_tokens}*)",
            f"* Errors: *{errors_count}*",
        ]
        return "\n".join(lines)
