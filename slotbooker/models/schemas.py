from datetime import UTC, date, datetime, time
from enum import Enum

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PAYMENT_FAILED = "payment_failed"
    NO_SLOTS = "no_slots"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    # Interim marker written right after the provider accepted the booking,
    # before payment. Never returned as a final result.
    BOOKING_CREATED = "booking_created"


# Log statuses that block a new automatic attempt for the same rule and date.
BLOCKING_STATUSES = (AttemptStatus.SUCCESS, AttemptStatus.BOOKING_CREATED)

# Log statuses whose booking reference points at a booking held on the provider.
BOOKED_STATUSES = (
    AttemptStatus.SUCCESS,
    AttemptStatus.PAYMENT_FAILED,
    AttemptStatus.BOOKING_CREATED,
)


class TimeWindow(BaseModel):
    start: time
    end: time

    @model_validator(mode="after")
    def check_order(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError("Window end must not be before window start")
        return self


class BookingRule(BaseModel):
    id: int | None = None
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    target_time: time = Field(..., description="Wall-clock time the user wants to play")
    trigger_time: time = Field(
        default=time(0, 0), description="Wall-clock time on the attempt date to start booking"
    )
    duration_minutes: int = Field(default=60, gt=0)
    activity: str = "football_5v5"
    playground_order: list[str] | None = Field(
        default=None, description="Preferred resources in order, None for no preference"
    )
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class AttemptLog(BaseModel):
    id: int | None = None
    rule_id: int | None = None
    target_date: date
    target_time: time | None = None
    booked_time: time | None = None
    resource_name: str | None = None
    status: AttemptStatus
    booking_reference: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Schedule(BaseModel):
    target_date: date
    attempt_date: date
    days_until_attempt: int


class AttemptRequest(BaseModel):
    rule_id: int | None = None
    target_date: date
    target_time: time
    duration_minutes: int = Field(default=60, gt=0)
    playground_order: list[str] | None = None
    activity: str = "football_5v5"
    window: TimeWindow | None = None

    @property
    def is_manual(self) -> bool:
        return self.rule_id is None


class AttemptResult(BaseModel):
    status: AttemptStatus
    rule_id: int | None = None
    target_date: date
    target_time: time | None = None
    booked_time: time | None = None
    resource_name: str | None = None
    booking_reference: str | None = None
    error_message: str | None = None
    price: int | None = None
    duration_minutes: int | None = None


class ManualBookingRequest(BaseModel):
    date: date
    start_time: time
    duration: int = Field(default=60, gt=0)
    playground_name: str | None = None
    activity: str | None = None


class NotificationEvent(BaseModel):
    target_date: date
    target_time: time | None = None
    booked_time: time | None = None
    resource_name: str | None = None
    status: AttemptStatus
    error_message: str | None = None
    duration_minutes: int | None = None
