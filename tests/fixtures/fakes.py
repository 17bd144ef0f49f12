"""
Scripted collaborators for booking pipeline and scheduler tests.
"""

import asyncio
from datetime import date, time

from slotbooker.models.schemas import TimeWindow
from slotbooker.providers.base import (
    BookingCreation,
    ProviderBooking,
    ProviderError,
    Slot,
    SlotProvider,
)
from slotbooker.providers.notifier_base import NotificationResult, Notifier


def make_slot(
    start: time,
    resource_name: str = "Foot 1",
    duration_minutes: int = 60,
    booking_date: date = date(2025, 3, 17),
    price: int | None = 1200,
) -> Slot:
    return Slot(
        booking_date=booking_date,
        start_time=start,
        duration_seconds=duration_minutes * 60,
        resource_name=resource_name,
        resource_id=f"pg-{resource_name}",
        price=price,
        price_id="price-1",
    )


class FakeProvider(SlotProvider):
    """Provider returning fixed slots and counting calls."""

    def __init__(
        self,
        slots: list[Slot] | None = None,
        search_delay: float = 0.0,
        search_error: Exception | None = None,
        create_error: Exception | None = None,
        with_payment: bool = True,
        cancel_result: bool | Exception = True,
    ) -> None:
        self.slots = slots if slots is not None else [make_slot(time(19, 0))]
        self.search_delay = search_delay
        self.search_error = search_error
        self.create_error = create_error
        self.with_payment = with_payment
        self.cancel_result = cancel_result
        self.search_calls: list[tuple[date, TimeWindow, int | None]] = []
        self.created: list[Slot] = []
        self.cancelled: list[str] = []

    async def authenticate(self) -> bool:
        return True

    async def search_slots(
        self,
        target_date: date,
        window: TimeWindow,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        self.search_calls.append((target_date, window, duration_minutes))
        if self.search_delay:
            await asyncio.sleep(self.search_delay)
        if self.search_error:
            raise self.search_error
        return list(self.slots)

    async def create_booking(self, slot: Slot, activity: str) -> BookingCreation:
        if self.create_error:
            raise self.create_error
        self.created.append(slot)
        n = len(self.created)
        return BookingCreation(
            booking_id=f"bk-{n}",
            payment_reference=f"pi_{n}_secret_{n}" if self.with_payment else None,
            price=slot.price,
        )

    async def cancel_booking(self, booking_id: str) -> bool:
        if isinstance(self.cancel_result, Exception):
            raise self.cancel_result
        self.cancelled.append(booking_id)
        return self.cancel_result

    async def list_upcoming(self) -> list[ProviderBooking]:
        return []

    async def close(self) -> None:
        pass


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.messages: list[str] = []
        self.fail = fail

    async def send_message(self, text: str) -> NotificationResult:
        if self.fail:
            raise ProviderError("channel down")
        self.messages.append(text)
        return NotificationResult(success=True, message_id=str(len(self.messages)))
