import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from slotbooker.api import bookings, dashboard, health, jobs, logs, payment, rules
from slotbooker.config import settings
from slotbooker.models.database import init_db
from slotbooker.providers.base import SlotProvider
from slotbooker.providers.doinsport_provider import DoInSportProvider, MockSlotProvider
from slotbooker.providers.payment_bridge import MockPaymentBridge, SeleniumPaymentBridge
from slotbooker.services.booking_pipeline import BookingPipeline
from slotbooker.services.database_service import (
    ADVANCE_DAYS_KEY,
    TELEGRAM_BOT_TOKEN_KEY,
    TELEGRAM_CHAT_ID_KEY,
    TIMEZONE_KEY,
    database_service,
)
from slotbooker.services.notification_service import create_notifier, notification_service
from slotbooker.services.tick_scheduler import TickScheduler

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    await init_db()
    await database_service.seed_default_settings()

    # Read once: changing these in the settings table takes effect on restart.
    stored_advance_days = await database_service.get_setting(
        ADVANCE_DAYS_KEY, str(settings.advance_days)
    )
    advance_days = int(stored_advance_days or settings.advance_days)
    timezone = await database_service.get_setting(TIMEZONE_KEY, settings.timezone)

    notifier = create_notifier(
        telegram_bot_token=await database_service.get_setting(TELEGRAM_BOT_TOKEN_KEY),
        telegram_chat_id=await database_service.get_setting(TELEGRAM_CHAT_ID_KEY),
    )
    notification_service.set_notifier(notifier)
    logger.info(f"Notifications via {notifier.channel}")

    if not settings.scheduler_api_key:
        logger.warning(
            "SCHEDULER_API_KEY is not configured. "
            "The /jobs/run-tick endpoint only accepts OIDC tokens. "
            "Set SCHEDULER_API_KEY environment variable to allow API key access."
        )

    if settings.doinsport_email and settings.doinsport_password and settings.doinsport_club_id:
        logger.info("DoInSport credentials configured - using real DoInSportProvider")
        provider = DoInSportProvider()
        payment_bridge = SeleniumPaymentBridge()
    else:
        logger.warning(
            "DoInSport credentials not configured - using MockSlotProvider. "
            "Set DOINSPORT_EMAIL, DOINSPORT_PASSWORD and DOINSPORT_CLUB_ID for real bookings."
        )
        provider = MockSlotProvider()
        payment_bridge = MockPaymentBridge()

    pipeline = BookingPipeline(
        provider=provider,
        payment_bridge=payment_bridge,
        advance_days=advance_days,
        timezone=timezone or settings.timezone,
    )
    scheduler = TickScheduler(pipeline)
    app.state.pipeline = pipeline
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    await shutdown(scheduler, provider)


async def shutdown(scheduler: TickScheduler, provider: SlotProvider) -> None:
    """
    Stop the scheduler and release clients.

    When a booking outlives the shutdown deadline its browser thread would
    keep the interpreter alive, so the process exits immediately instead.
    """
    clean = await scheduler.stop()
    await provider.close()
    await notification_service.drain()
    if not clean:
        logger.critical("Booking still running after the shutdown deadline, forcing exit")
        os._exit(1)


app = FastAPI(
    title="SlotBooker",
    description="Automated booking of recurring weekly sports-facility slots",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(dashboard.router)
app.include_router(rules.router)
app.include_router(bookings.router)
app.include_router(logs.router)
app.include_router(payment.router)
app.include_router(jobs.router)
