from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, time

from slotbooker.models.schemas import TimeWindow


class ProviderError(Exception):
    """Raised when the booking platform rejects or fails a request."""


@dataclass
class Slot:
    booking_date: date
    start_time: time
    duration_seconds: int
    resource_name: str
    resource_id: str | None = None
    price: int | None = None
    price_id: str | None = None

    @property
    def duration_minutes(self) -> int:
        return self.duration_seconds // 60


@dataclass
class BookingCreation:
    booking_id: str
    payment_reference: str | None = None
    price: int | None = None


@dataclass
class ProviderBooking:
    booking_id: str
    booking_date: date
    start_time: time | None = None
    end_time: time | None = None
    resource_name: str | None = None
    price: int | None = None
    status: str | None = None


class SlotProvider(ABC):
    """Abstract base class for sports-facility booking platforms."""

    @abstractmethod
    async def authenticate(self) -> bool:
        """Authenticate with the booking platform."""
        pass

    @abstractmethod
    async def search_slots(
        self,
        target_date: date,
        window: TimeWindow,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        """Get bookable slots for a date whose start falls inside the window."""
        pass

    @abstractmethod
    async def create_booking(self, slot: Slot, activity: str) -> BookingCreation:
        """Create a booking for a slot. The booking may still need payment."""
        pass

    @abstractmethod
    async def cancel_booking(self, booking_id: str) -> bool:
        pass

    @abstractmethod
    async def list_upcoming(self) -> list[ProviderBooking]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
