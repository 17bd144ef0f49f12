from datetime import date, datetime, time

import pytz
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from slotbooker.api.deps import get_pipeline
from slotbooker.config import settings
from slotbooker.models.schemas import AttemptLog, BookingRule
from slotbooker.services.booking_pipeline import BookingPipeline
from slotbooker.services.database_service import (
    ADVANCE_DAYS_KEY,
    TELEGRAM_BOT_TOKEN_KEY,
    TELEGRAM_CHAT_ID_KEY,
    TIMEZONE_KEY,
    database_service,
)
from slotbooker.services.notification_service import create_notifier, notification_service

router = APIRouter(prefix="/api", tags=["dashboard"])


class RuleOverview(BaseModel):
    rule: BookingRule
    next_target_date: date
    next_attempt_date: date
    next_attempt_time: time
    days_until_attempt: int


class SchedulerState(BaseModel):
    running: bool
    last_tick_at: datetime | None = None


class DashboardResponse(BaseModel):
    server_time: datetime
    timezone: str
    advance_days: int
    playground_names: list[str]
    rules: list[RuleOverview]
    upcoming: list[AttemptLog]
    scheduler: SchedulerState


@router.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    request: Request, pipeline: BookingPipeline = Depends(get_pipeline)
) -> DashboardResponse:
    now = pipeline.now()
    rules = await database_service.get_rules()

    overview = []
    for rule in rules:
        schedule = pipeline.schedule_for(rule, now)
        overview.append(
            RuleOverview(
                rule=rule,
                next_target_date=schedule.target_date,
                next_attempt_date=schedule.attempt_date,
                next_attempt_time=rule.trigger_time,
                days_until_attempt=schedule.days_until_attempt,
            )
        )

    scheduler = getattr(request.app.state, "scheduler", None)
    return DashboardResponse(
        server_time=now,
        timezone=pipeline.timezone.zone,
        advance_days=pipeline.advance_days,
        playground_names=settings.playground_names,
        rules=overview,
        upcoming=await database_service.get_upcoming_bookings(now.date()),
        scheduler=SchedulerState(
            running=scheduler.running if scheduler else False,
            last_tick_at=scheduler.last_tick_at if scheduler else None,
        ),
    )


@router.get("/time")
async def server_time(pipeline: BookingPipeline = Depends(get_pipeline)) -> dict[str, str]:
    now = pipeline.now()
    return {"now": now.isoformat(), "timezone": pipeline.timezone.zone}


@router.post("/notifications/test")
async def test_notification() -> dict[str, str | bool | None]:
    result = await notification_service.send_test_message()
    if not result.success:
        raise HTTPException(status_code=502, detail=result.error_message or "Delivery failed")
    return {
        "success": True,
        "channel": notification_service.notifier.channel,
        "message_id": result.message_id,
    }


class SettingsResponse(BaseModel):
    advance_days: int
    timezone: str
    telegram_configured: bool


class SettingsUpdateRequest(BaseModel):
    advance_days: int | None = Field(default=None, ge=0, le=365)
    timezone: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None


async def _read_settings() -> SettingsResponse:
    advance_days = await database_service.get_setting(ADVANCE_DAYS_KEY, str(settings.advance_days))
    timezone = await database_service.get_setting(TIMEZONE_KEY, settings.timezone)
    return SettingsResponse(
        advance_days=int(advance_days),  # type: ignore[arg-type]
        timezone=timezone,  # type: ignore[arg-type]
        telegram_configured=notification_service.notifier.channel == "telegram",
    )


@router.get("/settings", response_model=SettingsResponse)
async def get_settings() -> SettingsResponse:
    return await _read_settings()


@router.put("/settings", response_model=SettingsResponse)
async def update_settings(request: SettingsUpdateRequest) -> SettingsResponse:
    """
    Store runtime settings.

    Telegram credentials apply immediately. The advance window and timezone
    are read when the engine starts, so they apply after a restart.
    """
    if request.timezone is not None:
        if request.timezone not in pytz.all_timezones_set:
            raise HTTPException(status_code=422, detail=f"Unknown timezone: {request.timezone}")
        await database_service.set_setting(TIMEZONE_KEY, request.timezone)
    if request.advance_days is not None:
        await database_service.set_setting(ADVANCE_DAYS_KEY, request.advance_days)

    if request.telegram_bot_token is not None or request.telegram_chat_id is not None:
        if request.telegram_bot_token is not None:
            await database_service.set_setting(TELEGRAM_BOT_TOKEN_KEY, request.telegram_bot_token)
        if request.telegram_chat_id is not None:
            await database_service.set_setting(TELEGRAM_CHAT_ID_KEY, request.telegram_chat_id)
        notification_service.set_notifier(
            create_notifier(
                telegram_bot_token=await database_service.get_setting(TELEGRAM_BOT_TOKEN_KEY),
                telegram_chat_id=await database_service.get_setting(TELEGRAM_CHAT_ID_KEY),
            )
        )

    return await _read_settings()
