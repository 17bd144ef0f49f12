"""
Notification service for booking outcomes.

Formats an attempt outcome into a short operator message and hands it to the
configured channel. Delivery is fire-and-forget: `notify` schedules the send
and returns immediately, and delivery errors are logged and dropped.
"""

import asyncio
import logging
from datetime import date, time

from slotbooker.config import settings
from slotbooker.models.schemas import AttemptStatus, NotificationEvent
from slotbooker.providers.notifier_base import NotificationResult, Notifier
from slotbooker.providers.telegram_notifier import TelegramNotifier
from slotbooker.providers.twilio_notifier import TwilioNotifier

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    AttemptStatus.SUCCESS: "Booking confirmed",
    AttemptStatus.FAILED: "Booking failed",
    AttemptStatus.NO_SLOTS: "No slot available",
    AttemptStatus.SKIPPED: "Booking skipped",
    AttemptStatus.PAYMENT_FAILED: "Payment failed",
    AttemptStatus.CANCELLED: "Booking cancelled",
    AttemptStatus.BOOKING_CREATED: "Booking created",
}

TEST_MESSAGE = "<b>Test</b>\n\nThe notification channel works."


def _format_date(value: date) -> str:
    return value.strftime("%A %d/%m/%Y")


def _format_time(value: time) -> str:
    return value.strftime("%Hh%M")


def build_message(event: NotificationEvent) -> str:
    """
    Build the operator message for an attempt outcome.

    The booked time is shown next to the target time when the engine had to
    fall back to another start time.
    """
    lines = [f"<b>{STATUS_LABELS.get(event.status, event.status.value)}</b>", ""]

    if event.resource_name:
        lines.append(f"Resource: {event.resource_name}")
    lines.append(f"Date: {_format_date(event.target_date)}")

    if event.booked_time and event.target_time and event.booked_time != event.target_time:
        lines.append(
            f"Time: {_format_time(event.booked_time)} (target: {_format_time(event.target_time)})"
        )
    elif event.booked_time:
        lines.append(f"Time: {_format_time(event.booked_time)}")
    elif event.target_time:
        lines.append(f"Target time: {_format_time(event.target_time)}")

    if event.duration_minutes:
        lines.append(f"Duration: {event.duration_minutes} min")
    if event.error_message:
        lines.append(f"Error: {event.error_message}")

    return "\n".join(lines)


class LoggingNotifier(Notifier):
    """Writes messages to the log when no delivery channel is configured."""

    async def send_message(self, text: str) -> NotificationResult:
        logger.info(f"[Notification] {text}")
        return NotificationResult(success=True, message_id="logged")


def create_notifier(
    telegram_bot_token: str | None = None,
    telegram_chat_id: str | None = None,
) -> Notifier:
    """Pick the delivery channel from the available credentials."""
    bot_token = telegram_bot_token or settings.telegram_bot_token
    chat_id = telegram_chat_id or settings.telegram_chat_id
    if bot_token and chat_id:
        return TelegramNotifier(bot_token=bot_token, chat_id=chat_id)

    if (
        settings.twilio_account_sid
        and settings.twilio_auth_token
        and settings.twilio_phone_number
        and settings.user_phone_number
    ):
        return TwilioNotifier()

    return LoggingNotifier()


class NotificationService:
    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier or LoggingNotifier()
        self._pending: set[asyncio.Task] = set()

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def set_notifier(self, notifier: Notifier) -> None:
        self._notifier = notifier

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify(self, event: NotificationEvent) -> None:
        """Schedule delivery of an outcome message. Never raises."""
        try:
            text = build_message(event)
            task = asyncio.get_running_loop().create_task(self._deliver(text))
        except Exception:
            logger.exception("Could not schedule notification")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, text: str) -> None:
        try:
            result = await self._notifier.send_message(text)
        except Exception:
            logger.exception(f"Notification via {self._notifier.channel} failed")
            return
        if not result.success:
            logger.warning(
                f"Notification via {self._notifier.channel} rejected: {result.error_message}"
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for queued deliveries, cancelling those still running after `timeout`."""
        if not self._pending:
            return
        pending = list(self._pending)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Dropped {len(still_running)} undelivered notification(s)")

    async def send_test_message(self) -> NotificationResult:
        """Send a test message synchronously so the caller sees the outcome."""
        return await self._notifier.send_message(TEST_MESSAGE)


notification_service = NotificationService()
