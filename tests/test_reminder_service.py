"""
Unit tests for ReminderService business logic.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.domain.errors import ExtractionError, PersistenceError
from app.usecases.reminder_service import (
    MSG_COMMAND_CANCELED,
    MSG_ERROR,
    MSG_INVALID_CHOICE,
    MSG_NO_CLUE,
    MSG_NO_PRIVACY_POLICY,
    MSG_NO_REMINDERS,
    MSG_START,
    ReminderService,
)
from app.infrastructure.reminder_store import MSG_DATABASE_EMPTY

from conftest import CHAT_ID, FakeExtractor


def tomorrow_at(tz, hour, minute=0):
    return (datetime.now(tz) + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def make_service(store, settings, tz, extractor):
    return ReminderService(store, settings, tz, extractor=extractor)


class TestHandleReminderRequest:
    """Tests for turning a free-text message into a reminder."""

    @pytest.mark.asyncio
    async def test_single_candidate_is_enqueued(self, store, mock_settings, tz):
        """An afternoon time resolves to one candidate and goes straight to the queue."""
        when = tomorrow_at(tz, 15)
        service = make_service(store, mock_settings, tz, FakeExtractor([("call mom", when)]))

        response = await service.handle_message(CHAT_ID, "SM1", "call mom tomorrow at 3pm")

        assert "Will notify 'call mom'" in response
        items = await store.undelivered_items(CHAT_ID)
        assert len(items) == 1
        assert items[0].fire_on == when
        assert items[0].origin_message_id == "SM1"
        assert await store.latest_pending_selection(CHAT_ID) is None

    @pytest.mark.asyncio
    async def test_ambiguous_candidates_start_selection(self, store, mock_settings, tz):
        """A midnight time offers midnight and the default hour."""
        when = tomorrow_at(tz, 0)
        service = make_service(store, mock_settings, tz, FakeExtractor([("turn off the light", when)]))

        response = await service.handle_message(CHAT_ID, "SM1", "turn off the light tomorrow")

        assert "1. " in response
        assert "2. " in response
        assert "0. Cancel" in response
        assert await store.undelivered_items(CHAT_ID) == []

        pending = await store.load_pending_selection(CHAT_ID, "SM1")
        assert len(pending.choices) == 2

    @pytest.mark.asyncio
    async def test_no_candidates(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor([]))

        response = await service.handle_message(CHAT_ID, "SM1", "hello there")

        assert response == MSG_NO_CLUE

    @pytest.mark.asyncio
    async def test_only_past_candidates(self, store, mock_settings, tz):
        when = (datetime.now(tz) - timedelta(days=1)).replace(hour=15, minute=0, second=0, microsecond=0)
        service = make_service(store, mock_settings, tz, FakeExtractor([("too late", when)]))

        response = await service.handle_message(CHAT_ID, "SM1", "yesterday at 3pm")

        assert response == MSG_NO_CLUE
        assert await store.undelivered_items(CHAT_ID) == []

    @pytest.mark.asyncio
    async def test_extraction_failure(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor(error=ExtractionError("quota exceeded")))

        response = await service.handle_message(CHAT_ID, "SM1", "call mom")

        assert "Failed to understand message" in response
        assert "quota exceeded" in response
        assert "Errors: *1*" in await store.stats(tz)

    @pytest.mark.asyncio
    async def test_prompt_tokens_are_recorded(self, store, mock_settings, tz):
        extractor = FakeExtractor([("call mom", tomorrow_at(tz, 15))], prompt_tokens=30, completion_tokens=9)
        service = make_service(store, mock_settings, tz, extractor)

        await service.handle_message(CHAT_ID, "SM1", "call mom tomorrow at 3pm", user_id="+923001234567", username="Ali")

        stats = await store.stats(tz)
        assert "Prompts: *1* (Total tokens: *30*)" in stats
        assert "Completions: *1* (Total tokens: *9*)" in stats

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_reported(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor([("call mom", tomorrow_at(tz, 15))]))

        with patch.object(store, "enqueue", new=AsyncMock(side_effect=PersistenceError("disk full"))):
            response = await service.handle_message(CHAT_ID, "SM1", "call mom tomorrow at 3pm")

        assert "Failed to save reminder 'call mom'" in response


class TestHandleSelectionReply:
    """Tests for numbered replies to a pending selection."""

    @pytest.mark.asyncio
    async def test_reply_enqueues_chosen_datetime(self, store, mock_settings, tz):
        when = tomorrow_at(tz, 0)
        service = make_service(store, mock_settings, tz, FakeExtractor([("turn off the light", when)]))
        await service.handle_message(CHAT_ID, "SM1", "turn off the light tomorrow")

        response = await service.handle_message(CHAT_ID, "SM2", "2")

        assert "Will notify 'turn off the light'" in response
        items = await store.undelivered_items(CHAT_ID)
        assert len(items) == 1
        assert items[0].fire_on == when.replace(hour=mock_settings.default_hour)
        assert items[0].origin_message_id == "SM1"
        assert await store.latest_pending_selection(CHAT_ID) is None

    @pytest.mark.asyncio
    async def test_cancel_reply(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor([("turn off the light", tomorrow_at(tz, 0))]))
        await service.handle_message(CHAT_ID, "SM1", "turn off the light tomorrow")

        response = await service.handle_message(CHAT_ID, "SM2", "0")

        assert response == MSG_COMMAND_CANCELED
        assert await store.undelivered_items(CHAT_ID) == []

    @pytest.mark.asyncio
    async def test_invalid_choice(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor([("turn off the light", tomorrow_at(tz, 0))]))
        await service.handle_message(CHAT_ID, "SM1", "turn off the light tomorrow")

        response = await service.handle_message(CHAT_ID, "SM2", "7")

        assert response == MSG_INVALID_CHOICE.format(count=2)

    @pytest.mark.asyncio
    async def test_superscript_digit_is_not_a_choice(self, store, mock_settings, tz):
        extractor = FakeExtractor([("turn off the light", tomorrow_at(tz, 0))])
        service = make_service(store, mock_settings, tz, extractor)
        await service.handle_message(CHAT_ID, "SM1", "turn off the light tomorrow")
        extractor.pairs = []

        response = await service.handle_message(CHAT_ID, "SM2", "²")

        assert response == MSG_NO_CLUE
        assert extractor.calls[-1] == "²"
        assert await store.undelivered_items(CHAT_ID) == []

    @pytest.mark.asyncio
    async def test_number_without_pending_selection_is_a_request(self, store, mock_settings, tz):
        extractor = FakeExtractor([])
        service = make_service(store, mock_settings, tz, extractor)

        response = await service.handle_message(CHAT_ID, "SM1", "5")

        assert response == MSG_NO_CLUE
        assert extractor.calls == ["5"]


class TestHandleCommand:
    """Tests for bot commands."""

    @pytest.mark.asyncio
    async def test_start(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        assert await service.handle_message(CHAT_ID, "SM1", "/start") == MSG_START

    @pytest.mark.asyncio
    async def test_unknown_command(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        response = await service.handle_message(CHAT_ID, "SM1", "/dance")

        assert "Not a supported bot command: /dance" == response

    @pytest.mark.asyncio
    async def test_help_shows_model(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        response = await service.handle_message(CHAT_ID, "SM1", "/help")

        assert "gpt-4o-mini" in response
        assert "/list" in response

    @pytest.mark.asyncio
    async def test_privacy(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        assert await service.handle_message(CHAT_ID, "SM1", "/privacy") == MSG_NO_PRIVACY_POLICY

        mock_settings.privacy_policy_url = "https://example.com/privacy"
        assert "https://example.com/privacy" in await service.handle_message(CHAT_ID, "SM2", "/privacy")

    @pytest.mark.asyncio
    async def test_stats_on_empty_database(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        assert await service.handle_message(CHAT_ID, "SM1", "/stats") == MSG_DATABASE_EMPTY

    @pytest.mark.asyncio
    async def test_list(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        assert await service.handle_message(CHAT_ID, "SM1", "/list") == MSG_NO_REMINDERS

        await store.enqueue(CHAT_ID, "SM2", "pay bills", tomorrow_at(tz, 15))
        response = await service.handle_message(CHAT_ID, "SM3", "/list")

        assert "☑" in response
        assert "pay bills" in response

    @pytest.mark.asyncio
    async def test_cancel_lists_ids(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())
        item = await store.enqueue(CHAT_ID, "SM1", "pay bills", tomorrow_at(tz, 15))

        response = await service.handle_message(CHAT_ID, "SM2", "/cancel")

        assert f"{item.id}. ☑" in response
        assert "/cancel <number>" in response

    @pytest.mark.asyncio
    async def test_cancel_by_id(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())
        item = await store.enqueue(CHAT_ID, "SM1", "pay bills", tomorrow_at(tz, 15))

        response = await service.handle_message(CHAT_ID, "SM2", f"/cancel {item.id}")

        assert response == "Reminder 'pay bills' was canceled."
        assert await store.undelivered_items(CHAT_ID) == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_id(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        assert await service.handle_message(CHAT_ID, "SM1", "/cancel 999") == MSG_ERROR
        assert await service.handle_message(CHAT_ID, "SM2", "/cancel abc") == MSG_ERROR

        messages = [entry.message for entry in await store.get_logs(2)]
        assert any("unprocessable cancel parameter: abc" in m for m in messages)
        assert any("failed to get reminder" in m for m in messages)

    @pytest.mark.asyncio
    async def test_persistence_failure_becomes_generic_error(self, store, mock_settings, tz):
        service = make_service(store, mock_settings, tz, FakeExtractor())

        with patch.object(store, "undelivered_items", new=AsyncMock(side_effect=PersistenceError("locked"))):
            response = await service.handle_message(CHAT_ID, "SM1", "/list")

        assert response == MSG_ERROR
