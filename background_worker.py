"""Background Worker for the Reminder Assistant.

This module implements the notification dispatch loop: it polls the database
for due reminders and delivers them.

The worker:
- Runs continuously, checking for due reminders every 60 seconds (configurable)
- Sends a WhatsApp message for whatsapp/both reminders (voice calls belong to the voice gateway)
- Marks each delivered reminder as sent
- Creates the next pending instance of recurring reminders
- Leaves undeliverable reminders pending so the next iteration retries them
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

import crud
import database
from config import settings
from database import NotificationMethodEnum, RecurrenceEnum, Reminder, StatusEnum
from date_parser import format_for_display, to_user_timezone
from errors import ReminderAssistantError
from logger_config import setup_logger
from messaging import WhatsAppSender
from recurrence import next_occurrence

# Configure logging
logger = setup_logger(__name__, 'worker.log')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def compute_next_time(reminder: Reminder) -> Optional[datetime]:
    """Next occurrence of a recurring reminder, computed in the owner's timezone."""
    if reminder.recurrence == RecurrenceEnum.NONE or not reminder.recurrence_pattern:
        return None
    local = to_user_timezone(reminder.scheduled_for, reminder.user.timezone)
    return next_occurrence(local, reminder.recurrence_pattern, reminder.end_date)


def build_notification(reminder: Reminder, next_time: Optional[datetime]) -> str:
    message = f"⏰ Reminder: {reminder.content}"
    if next_time is not None:
        message += f"\n\nNext reminder: {format_for_display(next_time)}"
    return message


async def deliver(reminder: Reminder, sender, message: str) -> bool:
    """Deliver over the reminder's channel, retrying with exponential backoff.

    Returns:
        bool: True once a channel accepted the notification
    """
    method = reminder.notification_method
    if method == NotificationMethodEnum.VOICE:
        logger.info(f"Reminder {reminder.id} uses voice delivery; the call is placed by the voice gateway")
        return True

    phone = reminder.user.phone_number
    max_retries = max(1, settings.WORKER_SEND_RETRIES)
    for attempt in range(1, max_retries + 1):
        logger.info(f"Attempt {attempt}/{max_retries} for reminder {reminder.id}")
        if await sender.send(phone, message):
            if method == NotificationMethodEnum.BOTH:
                logger.info(f"Reminder {reminder.id} also queued for a voice call")
            return True

        logger.warning(f"Attempt {attempt} failed for reminder {reminder.id}")
        if attempt < max_retries:
            delay = settings.WORKER_RETRY_BACKOFF ** attempt
            logger.info(f"Waiting {delay}s before next retry...")
            await asyncio.sleep(delay)

    logger.error(f"All {max_retries} attempts failed for reminder {reminder.id}; it stays pending")
    return False


async def process_due_reminders(db: Session, sender, now: Optional[datetime] = None) -> int:
    """Deliver every due pending reminder.

    This function:
    1. Queries the database for pending reminders whose time has come
    2. Delivers each one over its channel
    3. Marks it sent
    4. Creates the next instance when the reminder recurs

    Returns:
        int: Number of reminders marked sent
    """
    now = now or datetime.now(timezone.utc)
    due = crud.get_due_reminders(db, now)

    if not due:
        logger.debug("No due reminders at this time")
        return 0

    logger.info(f"Found {len(due)} due reminder(s)")

    sent = 0
    for reminder in due:
        logger.info(
            f"Processing reminder {reminder.id}: '{reminder.content}' "
            f"for user {reminder.user.phone_number} via {reminder.notification_method.value}"
        )
        try:
            next_time = compute_next_time(reminder)
            if not await deliver(reminder, sender, build_notification(reminder, next_time)):
                continue

            crud.update_reminder_status(db, reminder.id, StatusEnum.SENT)
            sent += 1

            if next_time is not None:
                follow_up = crud.create_next_instance(db, reminder, next_time)
                logger.info(f"Scheduled next instance {follow_up.id} of reminder {reminder.id} for {next_time}")
            elif reminder.recurrence != RecurrenceEnum.NONE:
                logger.info(f"Recurring reminder {reminder.id} has reached its end date")

        except ReminderAssistantError as e:
            logger.error(f"Could not process reminder {reminder.id}: {e.message}")

    return sent


async def run_iteration(sender) -> int:
    """One pass over the due reminders with a fresh session."""
    db = database.SessionLocal()
    try:
        return await process_due_reminders(db, sender)
    finally:
        db.close()


async def idle(seconds: int) -> None:
    """Wait between passes, waking early when shutdown is requested."""
    for _ in range(seconds):
        if shutdown_requested:
            return
        await asyncio.sleep(1)


async def worker_loop():
    """Poll for due reminders every WORKER_CHECK_INTERVAL seconds until told to stop."""
    if not settings.WORKER_ENABLED:
        logger.warning("Dispatch worker disabled by configuration, not starting")
        return

    logger.info(f"Dispatch worker started, polling every {settings.WORKER_CHECK_INTERVAL}s")
    sender = WhatsAppSender()
    iteration = 0
    while not shutdown_requested:
        iteration += 1
        try:
            sent = await run_iteration(sender)
            if sent:
                logger.info(f"Iteration {iteration}: {sent} reminder(s) sent")
        except Exception as e:
            # keep polling
            logger.error(f"Iteration {iteration} failed: {str(e)}", exc_info=True)
        await idle(settings.WORKER_CHECK_INTERVAL)

    logger.info("Dispatch worker stopping")


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    exit_code = 0
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Dispatch worker crashed: {str(e)}", exc_info=True)
        exit_code = 1

    logger.info("Dispatch worker stopped")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
