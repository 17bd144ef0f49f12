from fastapi import HTTPException, Request

from slotbooker.services.booking_pipeline import BookingPipeline
from slotbooker.services.tick_scheduler import TickScheduler


def get_pipeline(request: Request) -> BookingPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Booking engine not started")
    return pipeline


def get_scheduler(request: Request) -> TickScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Tick scheduler not started")
    return scheduler
