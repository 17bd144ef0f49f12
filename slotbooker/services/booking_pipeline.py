"""
Booking pipeline: duplicate guard, slot search, slot selection, booking
creation, payment confirmation, logging and notification.

Scheduled and manual attempts go through the same `BookingPipeline.execute`,
which holds a process-wide execution slot for its whole run. Attempts never
overlap, so the duplicate guard's read and the final log insert behave as one
critical section.
"""

import asyncio
import logging
from datetime import date, datetime, time

import pytz

from slotbooker.config import settings
from slotbooker.models.schemas import (
    AttemptLog,
    AttemptRequest,
    AttemptResult,
    AttemptStatus,
    BookingRule,
    ManualBookingRequest,
    NotificationEvent,
    Schedule,
    TimeWindow,
)
from slotbooker.providers.base import (
    BookingCreation,
    ProviderBooking,
    ProviderError,
    Slot,
    SlotProvider,
)
from slotbooker.providers.payment_bridge import PaymentBridge, PaymentOutcome
from slotbooker.services.database_service import DatabaseService, database_service
from slotbooker.services.execution_slot import ExecutionSlot
from slotbooker.services.notification_service import NotificationService, notification_service
from slotbooker.services.trigger_calculator import compute_schedule

logger = logging.getLogger(__name__)


def select_slot(
    slots: list[Slot],
    target_time: time,
    duration_minutes: int,
    playground_order: list[str] | None = None,
) -> Slot | None:
    """
    Pick the slot to book.

    Resources are tried in preference order (or in the order the provider
    returned them when there is no preference). Within a resource the exact
    start time wins, then the earliest start after the target, then the
    latest start before it. The first resource with a long enough slot wins.
    """
    eligible = [s for s in slots if s.duration_seconds >= duration_minutes * 60]
    order = playground_order or list(dict.fromkeys(s.resource_name for s in eligible))

    for resource_name in order:
        candidates = [s for s in eligible if s.resource_name == resource_name]
        if not candidates:
            continue

        for slot in candidates:
            if slot.start_time == target_time:
                return slot

        later = [s for s in candidates if s.start_time > target_time]
        if later:
            return min(later, key=lambda s: s.start_time)
        return max(candidates, key=lambda s: s.start_time)

    return None


def window_around(target_time: time, minutes: int) -> TimeWindow:
    """A search window of +/- `minutes` around a time, clamped to the same day."""
    anchor = target_time.hour * 60 + target_time.minute
    start = max(anchor - minutes, 0)
    end = min(anchor + minutes, 23 * 60 + 59)
    return TimeWindow(start=time(*divmod(start, 60)), end=time(*divmod(end, 60)))


def manual_window() -> TimeWindow:
    return TimeWindow(
        start=time.fromisoformat(settings.manual_window_start),
        end=time.fromisoformat(settings.manual_window_end),
    )


class BookingPipeline:
    """
    Runs booking attempts one at a time.

    `execute` never raises: every step converts its own failure into a
    terminal AttemptResult, which is logged and sent to the notification
    channel before being returned.

    Attributes:
        advance_days: Days ahead the platform opens a date, fixed for the process.
        timezone: Zone in which rule times are wall-clock times.
    """

    def __init__(
        self,
        provider: SlotProvider,
        payment_bridge: PaymentBridge,
        repository: DatabaseService | None = None,
        notifications: NotificationService | None = None,
        advance_days: int = settings.advance_days,
        timezone: str = settings.timezone,
        execution_slot: ExecutionSlot | None = None,
    ) -> None:
        self.provider = provider
        self.payment_bridge = payment_bridge
        self.repository = repository or database_service
        self.notifications = notifications or notification_service
        self.advance_days = advance_days
        self.timezone = pytz.timezone(timezone)
        self.execution_slot = execution_slot or ExecutionSlot("booking")

    def now(self) -> datetime:
        return datetime.now(self.timezone)

    def _logged_at(self) -> datetime:
        """Current instant as stored in `created_at` (naive UTC)."""
        return self.now().astimezone(pytz.utc).replace(tzinfo=None)

    def schedule_for(self, rule: BookingRule, now: datetime | None = None) -> Schedule:
        return compute_schedule(rule, now or self.now(), self.advance_days)

    # --- Entry points ---

    async def run_scheduled_attempt(
        self, rule: BookingRule, target_date: date | None = None
    ) -> AttemptResult:
        """Attempt the booking of a rule, for its next target date by default."""
        if target_date is None:
            target_date = self.schedule_for(rule).target_date

        request = AttemptRequest(
            rule_id=rule.id,
            target_date=target_date,
            target_time=rule.target_time,
            duration_minutes=rule.duration_minutes,
            playground_order=rule.playground_order,
            activity=rule.activity,
        )
        return await self.execute(request)

    async def run_manual_attempt(self, manual: ManualBookingRequest) -> AttemptResult:
        """Book a slot the user picked. Manual attempts skip the duplicate guard."""
        request = AttemptRequest(
            rule_id=None,
            target_date=manual.date,
            target_time=manual.start_time,
            duration_minutes=manual.duration,
            playground_order=[manual.playground_name] if manual.playground_name else None,
            activity=manual.activity or settings.default_activity,
        )
        return await self.execute(request)

    async def search_slots(
        self,
        target_date: date,
        window: TimeWindow | None = None,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        """Search the provider directly, outside any attempt."""
        return await asyncio.wait_for(
            self.provider.search_slots(target_date, window or manual_window(), duration_minutes),
            timeout=settings.provider_timeout_seconds,
        )

    async def execute(self, request: AttemptRequest) -> AttemptResult:
        async with self.execution_slot.hold():
            try:
                return await self._execute(request)
            except Exception as e:
                logger.exception(f"Unexpected error in booking attempt for {request.target_date}")
                return await self._finish(
                    request, AttemptStatus.FAILED, error_message=f"Unexpected error: {e}"
                )

    # --- Steps ---

    async def _execute(self, request: AttemptRequest) -> AttemptResult:
        label = "manual" if request.is_manual else f"rule {request.rule_id}"
        logger.info(
            f"Booking attempt ({label}) for {request.target_date} at {request.target_time:%H:%M}"
        )

        if not request.is_manual:
            try:
                existing = await self.repository.find_blocking_log(
                    request.rule_id, request.target_date
                )
            except Exception as e:
                logger.exception("Duplicate check failed")
                return await self._finish(
                    request, AttemptStatus.FAILED, error_message=f"Duplicate check failed: {e}"
                )
            if existing:
                logger.info(f"Rule {request.rule_id} already has a {existing.status.value} log")
                return await self._finish(
                    request,
                    AttemptStatus.SKIPPED,
                    error_message=f"Booking already exists for {request.target_date}",
                    booking_reference=existing.booking_reference,
                )

        window = request.window or (
            manual_window()
            if request.is_manual
            else window_around(request.target_time, settings.search_window_minutes)
        )
        try:
            slots = await asyncio.wait_for(
                self.provider.search_slots(request.target_date, window, request.duration_minutes),
                timeout=settings.provider_timeout_seconds,
            )
        except TimeoutError:
            return await self._finish(
                request,
                AttemptStatus.FAILED,
                error_message=(
                    f"Slot search timed out after {settings.provider_timeout_seconds:g}s"
                ),
            )
        except ProviderError as e:
            return await self._finish(
                request, AttemptStatus.FAILED, error_message=f"Slot search failed: {e}"
            )

        if not slots:
            return await self._finish(
                request, AttemptStatus.NO_SLOTS, error_message="No slot available"
            )

        slot = select_slot(
            slots, request.target_time, request.duration_minutes, request.playground_order
        )
        if slot is None:
            return await self._finish(
                request,
                AttemptStatus.NO_SLOTS,
                error_message="No slot matches the duration and resource preferences",
            )

        try:
            creation = await asyncio.wait_for(
                self.provider.create_booking(slot, request.activity),
                timeout=settings.provider_timeout_seconds,
            )
        except TimeoutError:
            return await self._finish(
                request,
                AttemptStatus.FAILED,
                slot=slot,
                error_message=(
                    f"Booking creation timed out after {settings.provider_timeout_seconds:g}s"
                ),
            )
        except ProviderError as e:
            return await self._finish(
                request, AttemptStatus.FAILED, slot=slot, error_message=f"Booking failed: {e}"
            )

        logger.info(
            f"Booking {creation.booking_id} created: {slot.resource_name} "
            f"at {slot.start_time:%H:%M} on {slot.booking_date}"
        )
        await self._record(
            self._make_log(request, AttemptStatus.BOOKING_CREATED, slot, creation.booking_id)
        )

        if not creation.payment_reference:
            return await self._finish(request, AttemptStatus.SUCCESS, slot=slot, creation=creation)

        outcome = await self._confirm_payment(creation.payment_reference)
        if outcome.succeeded:
            return await self._finish(request, AttemptStatus.SUCCESS, slot=slot, creation=creation)
        return await self._finish(
            request,
            AttemptStatus.PAYMENT_FAILED,
            slot=slot,
            creation=creation,
            error_message=outcome.detail,
        )

    async def _confirm_payment(self, payment_reference: str) -> PaymentOutcome:
        try:
            return await self.payment_bridge.confirm(payment_reference)
        except Exception as e:
            logger.exception("Payment bridge raised")
            return PaymentOutcome.failed(f"Payment bridge error: {e}")

    async def cancel(
        self, booking_reference: str, booking: ProviderBooking | None = None
    ) -> AttemptResult:
        """
        Cancel a booking on the provider and record a `cancelled` log.

        The log of the original booking is left untouched. When the provider
        refuses the cancellation nothing is logged and a `failed` result is
        returned.
        """
        async with self.execution_slot.hold():
            original = await self._find_original(booking_reference)

            target_date = self.now().date()
            target_time = None
            resource_name = None
            rule_id = None
            if original:
                rule_id = original.rule_id
                target_date = original.target_date
                target_time = original.booked_time or original.target_time
                resource_name = original.resource_name
            elif booking:
                target_date = booking.booking_date
                target_time = booking.start_time
                resource_name = booking.resource_name

            result = AttemptResult(
                status=AttemptStatus.CANCELLED,
                rule_id=rule_id,
                target_date=target_date,
                target_time=target_time,
                booked_time=target_time,
                resource_name=resource_name,
                booking_reference=booking_reference,
            )

            try:
                cancelled = await asyncio.wait_for(
                    self.provider.cancel_booking(booking_reference),
                    timeout=settings.provider_timeout_seconds,
                )
            except (ProviderError, TimeoutError) as e:
                logger.error(f"Cancellation of {booking_reference} failed: {e}")
                return result.model_copy(
                    update={"status": AttemptStatus.FAILED, "error_message": f"Cancel failed: {e}"}
                )

            if not cancelled:
                return result.model_copy(
                    update={
                        "status": AttemptStatus.FAILED,
                        "error_message": "Provider refused the cancellation",
                    }
                )

            logger.info(f"Booking {booking_reference} cancelled")
            await self._record(
                AttemptLog(
                    rule_id=rule_id,
                    target_date=target_date,
                    target_time=target_time,
                    booked_time=target_time,
                    resource_name=resource_name,
                    status=AttemptStatus.CANCELLED,
                    booking_reference=booking_reference,
                    created_at=self._logged_at(),
                )
            )
            self._notify(result)
            return result

    async def _find_original(self, booking_reference: str) -> AttemptLog | None:
        try:
            return await self.repository.find_booking_log(booking_reference)
        except Exception:
            logger.exception(f"Could not look up booking {booking_reference}")
            return None

    # --- Logging ---

    def _make_log(
        self,
        request: AttemptRequest,
        status: AttemptStatus,
        slot: Slot | None = None,
        booking_reference: str | None = None,
        error_message: str | None = None,
    ) -> AttemptLog:
        return AttemptLog(
            rule_id=request.rule_id,
            target_date=request.target_date,
            target_time=request.target_time,
            booked_time=slot.start_time if slot else None,
            resource_name=slot.resource_name if slot else None,
            status=status,
            booking_reference=booking_reference,
            error_message=error_message,
            created_at=self._logged_at(),
        )

    async def _record(self, log: AttemptLog) -> None:
        try:
            await self.repository.insert_log(log)
        except Exception:
            logger.exception(f"Could not store {log.status.value} log for {log.target_date}")

    async def _finish(
        self,
        request: AttemptRequest,
        status: AttemptStatus,
        slot: Slot | None = None,
        creation: BookingCreation | None = None,
        error_message: str | None = None,
        booking_reference: str | None = None,
    ) -> AttemptResult:
        """Store the terminal log, emit the notification and build the result."""
        if creation:
            booking_reference = creation.booking_id

        log = self._make_log(request, status, slot, booking_reference, error_message)
        await self._record(log)

        price = slot.price if slot else None
        if creation and creation.price is not None:
            price = creation.price

        result = AttemptResult(
            status=status,
            rule_id=request.rule_id,
            target_date=request.target_date,
            target_time=request.target_time,
            booked_time=log.booked_time,
            resource_name=log.resource_name,
            booking_reference=booking_reference,
            error_message=error_message,
            price=price,
            duration_minutes=request.duration_minutes,
        )
        if status in (AttemptStatus.FAILED, AttemptStatus.PAYMENT_FAILED):
            logger.warning(f"Booking attempt ended {status.value}: {error_message}")
        else:
            logger.info(f"Booking attempt ended {status.value}")

        self._notify(result)
        return result

    def _notify(self, result: AttemptResult) -> None:
        try:
            self.notifications.notify(
                NotificationEvent(
                    target_date=result.target_date,
                    target_time=result.target_time,
                    booked_time=result.booked_time,
                    resource_name=result.resource_name,
                    status=result.status,
                    error_message=result.error_message,
                    duration_minutes=result.duration_minutes,
                )
            )
        except Exception:
            logger.exception("Notification dispatch failed")
