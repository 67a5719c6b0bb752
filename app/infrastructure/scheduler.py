"""
APScheduler setup for the queue dispatch loop.

One interval job scans the queue; every deliverable item is handed to the
delivery sink in its own asyncio task, so a slow send never holds up the
others or the next tick.

Two overlapping ticks can both see an item before the first one marks it
delivered, in which case it is sent twice.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.domain.errors import PersistenceError
from app.domain.reminder import DeliveryResult, ReminderItem
from app.infrastructure.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

PROCESS_QUEUE_JOB_ID = "process_queue"

DeliverySink = Callable[[str, str, str], Awaitable[DeliveryResult]]

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

# Deliveries started by past ticks that have not finished yet
_in_flight: Set[asyncio.Task] = set()


def get_scheduler(timezone: str = "UTC") -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone=timezone)

    return scheduler


async def start_scheduler(
    store: ReminderStore,
    sink: DeliverySink,
    interval_seconds: int,
    max_num_tries: int,
    timezone: str = "UTC",
) -> None:
    """Register the queue job and start the scheduler."""
    sched = get_scheduler(timezone)

    sched.add_job(
        process_queue,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=PROCESS_QUEUE_JOB_ID,
        name="Dispatch deliverable reminders",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        kwargs={
            "store": store,
            "sink": sink,
            "max_num_tries": max_num_tries,
        },
    )

    if not sched.running:
        sched.start()
        logger.info(f"Scheduler started, checking queue every {interval_seconds}s")


async def stop_scheduler() -> None:
    """Stop the scheduler and wait for deliveries that are still running."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None

    await drain_in_flight()


async def drain_in_flight() -> None:
    """Wait for every delivery task started so far."""
    if _in_flight:
        logger.info(f"Waiting for {len(_in_flight)} in-flight deliveries")
        await asyncio.gather(*list(_in_flight), return_exceptions=True)


async def process_queue(
    store: ReminderStore,
    sink: DeliverySink,
    max_num_tries: int,
) -> List[asyncio.Task]:
    """
    Run one dispatch tick.

    A failed scan is logged and treated as an empty queue; the next tick
    tries again.

    Returns:
        The delivery tasks started by this tick
    """
    try:
        queue = await store.deliverable_items(max_num_tries)
    except PersistenceError as e:
        await store.log_error(f"failed to process queue: {e}")
        return []

    logger.debug(f"checking queue: {len(queue)} items...")

    tasks = []
    for item in queue:
        task = asyncio.create_task(deliver_item(store, sink, item))
        _in_flight.add(task)
        task.add_done_callback(_in_flight.discard)
        tasks.append(task)

    return tasks


async def deliver_item(store: ReminderStore, sink: DeliverySink, item: ReminderItem) -> bool:
    """
    Attempt one delivery of a queue item.

    The try counter is increased whatever the outcome. Updates on an item
    that was canceled in the meantime change nothing.

    Returns:
        Whether the sink reported success
    """
    try:
        result = await sink(item.chat_id, item.origin_message_id, item.message)
    except Exception as e:
        logger.exception(f"Delivery sink raised for queue id {item.id}: {e}")
        result = DeliveryResult(ok=False, reason=str(e))

    if result.ok:
        try:
            if not await store.mark_delivered(item.chat_id, item.id):
                logger.info(f"queue id {item.id} was already delivered or removed")
        except PersistenceError as e:
            await store.log_error(f"failed to mark chat id: {item.chat_id}, queue id: {item.id} ({e})")
    else:
        await store.log_error(f"failed to send reminder (queue id: {item.id}): {result.reason}")

    try:
        await store.increase_num_tries(item.chat_id, item.id)
    except PersistenceError as e:
        await store.log_error(
            f"failed to increase num tries for chat id: {item.chat_id}, queue id: {item.id} ({e})"
        )

    return result.ok
