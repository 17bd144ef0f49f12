"""
Tick scheduler for booking rules.

Once per interval the scheduler loads the enabled rules, works out which
attempts are due and runs them one after another through the booking
pipeline. The same `tick` also backs the `/jobs/run-tick` endpoint, so an
external cron can drive it instead of the in-process loop.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date, datetime

import pytz

from slotbooker.config import settings
from slotbooker.models.schemas import AttemptResult, BookingRule
from slotbooker.services.booking_pipeline import BookingPipeline
from slotbooker.services.database_service import DatabaseService, database_service
from slotbooker.services.execution_slot import ExecutionSlot
from slotbooker.services.trigger_calculator import attempt_opens_at, due_target_dates

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    skipped: bool = False
    rules_evaluated: int = 0
    attempts: list[AttemptResult] = field(default_factory=list)
    failed_rule_ids: list[int] = field(default_factory=list)
    error: str | None = None


class TickScheduler:
    """
    Drives the booking pipeline on a fixed cadence.

    A tick that starts while another one is still running returns at once
    with `skipped=True`. Due attempts run sequentially, and a rule that fails
    is logged without stopping the rules after it.

    Attributes:
        interval: Seconds between the end of one tick and the start of the next.
        shutdown_deadline: Seconds `stop()` waits for an in-flight tick.
        catch_up_days: How far back a missed attempt is still made.
    """

    def __init__(
        self,
        pipeline: BookingPipeline,
        repository: DatabaseService | None = None,
        interval: float = settings.tick_interval_seconds,
        shutdown_deadline: float = settings.shutdown_deadline_seconds,
        catch_up_days: int = 6,
    ) -> None:
        self.pipeline = pipeline
        self.repository = repository or database_service
        self.interval = interval
        self.shutdown_deadline = shutdown_deadline
        self.catch_up_days = catch_up_days
        self.guard = ExecutionSlot("tick")
        self.last_tick_at: datetime | None = None
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: datetime | None = None) -> TickReport:
        if not self.guard.try_acquire():
            logger.info("Previous tick still running, skipping this one")
            return TickReport(skipped=True)

        try:
            return await self._tick(now or self.pipeline.now())
        finally:
            self.guard.release()

    async def _tick(self, now: datetime) -> TickReport:
        self.last_tick_at = now
        report = TickReport()

        try:
            rules = await self.repository.get_enabled_rules()
        except Exception as e:
            logger.exception("Could not load booking rules")
            report.error = f"Could not load rules: {e}"
            return report

        report.rules_evaluated = len(rules)
        for rule in rules:
            try:
                for target_date in await self._pending_targets(rule, now):
                    logger.info(f"Rule {rule.id} is due for {target_date}")
                    result = await self.pipeline.run_scheduled_attempt(rule, target_date)
                    report.attempts.append(result)
            except Exception:
                logger.exception(f"Rule {rule.id} failed during tick")
                report.failed_rule_ids.append(rule.id)  # type: ignore[arg-type]

        return report

    async def _pending_targets(self, rule: BookingRule, now: datetime) -> list[date]:
        """
        Due target dates of a rule that still need their attempt.

        A date is done once it is booked (or a booking is in flight), or once
        any attempt was made for it after its trigger instant. Attempts made
        before the date opened, such as an early book-now, do not count.
        """
        pending = []
        for target_date in due_target_dates(
            rule, now, self.pipeline.advance_days, self.catch_up_days
        ):
            if await self.repository.find_blocking_log(rule.id, target_date):
                continue
            opens_at = attempt_opens_at(
                rule, target_date, self.pipeline.advance_days, self.pipeline.timezone
            )
            since = opens_at.astimezone(pytz.utc).replace(tzinfo=None)
            if await self.repository.find_attempt_log(rule.id, target_date, since=since):
                continue
            pending.append(target_date)
        return pending

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Tick scheduler started (every {self.interval:g}s)")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Tick failed")

            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)

    async def stop(self) -> bool:
        """
        Stop the loop, letting an in-flight tick finish.

        A tick still running after `shutdown_deadline` seconds is cancelled.
        Work it handed to a worker thread (the payment browser) cannot be
        interrupted that way, so the caller must not wait on it.

        Returns:
            False when the deadline was hit, True on a clean stop.
        """
        if self._task is None:
            return True

        self._stopping.set()
        clean = True
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self.shutdown_deadline)
        except TimeoutError:
            logger.error(
                f"Tick still running after {self.shutdown_deadline:g}s shutdown deadline, "
                "cancelling it"
            )
            clean = False
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        finally:
            self._task = None
        logger.info("Tick scheduler stopped")
        return clean
