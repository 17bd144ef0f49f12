import logging
from datetime import date, time

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from slotbooker.api.deps import get_pipeline
from slotbooker.models.schemas import AttemptResult, ManualBookingRequest, TimeWindow
from slotbooker.providers.base import ProviderError
from slotbooker.services.booking_pipeline import BookingPipeline
from slotbooker.services.database_service import database_service
from slotbooker.services.trigger_calculator import day_of_week

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["bookings"])


class BookNowRequest(BaseModel):
    rule_id: int
    target_date: date | None = Field(default=None, alias="date")


class SlotResponse(BaseModel):
    date: date
    start_time: time
    duration_minutes: int
    resource_name: str
    price: int | None = None


class BookingResponse(BaseModel):
    booking_id: str
    date: date
    start_time: time | None = None
    end_time: time | None = None
    resource_name: str | None = None
    price: int | None = None
    status: str | None = None


@router.post("/book-now", response_model=AttemptResult)
async def book_now(
    request: BookNowRequest, pipeline: BookingPipeline = Depends(get_pipeline)
) -> AttemptResult:
    """
    Run a rule's attempt immediately.

    Without a date the rule's next target date is used. The duplicate guard
    applies, so a date that is already booked comes back as `skipped`.
    """
    rule = await database_service.get_rule(request.rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    if request.target_date and day_of_week(request.target_date) != rule.day_of_week:
        raise HTTPException(
            status_code=422,
            detail=f"{request.target_date} does not fall on the rule's weekday",
        )
    return await pipeline.run_scheduled_attempt(rule, request.target_date)


@router.post("/book-manual", response_model=AttemptResult)
async def book_manual(
    request: ManualBookingRequest, pipeline: BookingPipeline = Depends(get_pipeline)
) -> AttemptResult:
    return await pipeline.run_manual_attempt(request)


@router.get("/slots", response_model=list[SlotResponse])
async def search_slots(
    slot_date: date = Query(..., alias="date"),
    start: time | None = Query(default=None, alias="from"),
    end: time | None = Query(default=None, alias="to"),
    duration: int | None = Query(default=None, gt=0),
    pipeline: BookingPipeline = Depends(get_pipeline),
) -> list[SlotResponse]:
    window = None
    if start or end:
        try:
            window = TimeWindow(start=start or time(0, 0), end=end or time(23, 59))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

    try:
        slots = await pipeline.search_slots(slot_date, window, duration)
    except TimeoutError as e:
        raise HTTPException(status_code=504, detail="Booking platform timed out") from e
    except ProviderError as e:
        logger.error(f"Slot search failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e

    return [
        SlotResponse(
            date=s.booking_date,
            start_time=s.start_time,
            duration_minutes=s.duration_minutes,
            resource_name=s.resource_name,
            price=s.price,
        )
        for s in sorted(slots, key=lambda s: (s.start_time, s.resource_name))
    ]


@router.get("/bookings", response_model=list[BookingResponse])
async def list_bookings(pipeline: BookingPipeline = Depends(get_pipeline)) -> list[BookingResponse]:
    """List the upcoming bookings held on the booking platform."""
    try:
        bookings = await pipeline.provider.list_upcoming()
    except ProviderError as e:
        logger.error(f"Listing bookings failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e

    return [
        BookingResponse(
            booking_id=b.booking_id,
            date=b.booking_date,
            start_time=b.start_time,
            end_time=b.end_time,
            resource_name=b.resource_name,
            price=b.price,
            status=b.status,
        )
        for b in bookings
    ]


@router.delete("/bookings/{booking_id}", response_model=AttemptResult)
async def cancel_booking(
    booking_id: str, pipeline: BookingPipeline = Depends(get_pipeline)
) -> AttemptResult:
    return await pipeline.cancel(booking_id)
