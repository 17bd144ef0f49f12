"""
Tests for BookingPipeline in slotbooker/services/booking_pipeline.py.

The pipeline runs against an in-memory SQLite repository, a scripted provider
and a mock payment bridge, so the duplicate guard and the log sequence are
checked against real SQL.
"""

import asyncio
from datetime import date, time
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from slotbooker.config import settings
from slotbooker.models.database import Base
from slotbooker.models.schemas import (
    AttemptLog,
    AttemptRequest,
    AttemptStatus,
    BookingRule,
    ManualBookingRequest,
    TimeWindow,
)
from slotbooker.providers.base import ProviderError
from slotbooker.providers.payment_bridge import MockPaymentBridge, PaymentOutcome
from slotbooker.services.booking_pipeline import BookingPipeline, select_slot, window_around
from slotbooker.services.database_service import DatabaseService
from tests.fixtures.fakes import FakeProvider, make_slot

TARGET_DATE = date(2025, 3, 17)


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def repository(test_engine, monkeypatch):
    """Create a DatabaseService that uses the test database."""
    session_local = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr("slotbooker.services.database_service.AsyncSessionLocal", session_local)
    return DatabaseService()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def bridge() -> MockPaymentBridge:
    return MockPaymentBridge()


@pytest.fixture
def notifications() -> MagicMock:
    return MagicMock()


@pytest.fixture
def pipeline(provider, bridge, repository, notifications) -> BookingPipeline:
    return BookingPipeline(
        provider=provider,
        payment_bridge=bridge,
        repository=repository,
        notifications=notifications,
        advance_days=45,
        timezone="Europe/Paris",
    )


@pytest.fixture
def rule() -> BookingRule:
    return BookingRule(id=5, day_of_week=1, target_time=time(19, 0), duration_minutes=60)


def rule_request(**kwargs) -> AttemptRequest:
    values = {
        "rule_id": 5,
        "target_date": TARGET_DATE,
        "target_time": time(19, 0),
        "duration_minutes": 60,
    }
    values.update(kwargs)
    return AttemptRequest(**values)


class TestSelectSlot:
    def test_exact_match_wins(self) -> None:
        slots = [make_slot(time(18, 30)), make_slot(time(19, 0)), make_slot(time(19, 30))]

        assert select_slot(slots, time(19, 0), 60).start_time == time(19, 0)

    def test_earliest_after_before_latest_before(self) -> None:
        slots = [make_slot(time(18, 30)), make_slot(time(20, 0)), make_slot(time(19, 30))]

        assert select_slot(slots, time(19, 0), 60).start_time == time(19, 30)

    def test_latest_before_when_nothing_after(self) -> None:
        slots = [make_slot(time(17, 0)), make_slot(time(18, 30))]

        assert select_slot(slots, time(19, 0), 60).start_time == time(18, 30)

    def test_preference_order_beats_closeness(self) -> None:
        slots = [make_slot(time(19, 0), "Foot 1"), make_slot(time(20, 0), "Foot 3")]

        selected = select_slot(slots, time(19, 0), 60, ["Foot 3", "Foot 1"])

        assert selected.resource_name == "Foot 3"
        assert selected.start_time == time(20, 0)

    def test_preference_falls_through_to_next_resource(self) -> None:
        slots = [make_slot(time(19, 0), "Foot 1")]

        selected = select_slot(slots, time(19, 0), 60, ["Foot 3", "Foot 1"])

        assert selected.resource_name == "Foot 1"

    def test_resources_outside_preference_are_ignored(self) -> None:
        slots = [make_slot(time(19, 0), "Foot 1")]

        assert select_slot(slots, time(19, 0), 60, ["Foot 3"]) is None

    def test_no_preference_uses_provider_order(self) -> None:
        slots = [make_slot(time(20, 0), "Foot 2"), make_slot(time(19, 0), "Foot 1")]

        assert select_slot(slots, time(19, 0), 60).resource_name == "Foot 2"

    def test_too_short_slots_are_skipped(self) -> None:
        slots = [
            make_slot(time(19, 0), duration_minutes=30),
            make_slot(time(19, 30), duration_minutes=90),
        ]

        assert select_slot(slots, time(19, 0), 60).start_time == time(19, 30)
        assert select_slot(slots, time(19, 0), 120) is None


class TestWindowAround:
    def test_symmetric_window(self) -> None:
        assert window_around(time(19, 0), 120) == TimeWindow(start=time(17, 0), end=time(21, 0))

    def test_clamped_to_day(self) -> None:
        assert window_around(time(1, 0), 120).start == time(0, 0)
        assert window_around(time(23, 0), 120).end == time(23, 59)

    def test_keeps_minutes(self) -> None:
        assert window_around(time(0, 45), 30) == TimeWindow(start=time(0, 15), end=time(1, 15))


class TestEarlyMorningRule:
    @pytest.mark.asyncio
    async def test_target_before_search_window_still_books(self, pipeline, provider) -> None:
        provider.slots = [make_slot(time(1, 0), booking_date=TARGET_DATE)]

        result = await pipeline.execute(rule_request(target_time=time(1, 0)))

        assert result.status == AttemptStatus.SUCCESS
        _, window, _ = provider.search_calls[0]
        assert window == TimeWindow(start=time(0, 0), end=time(3, 0))


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_logs_marker_then_success(
        self, pipeline, provider, bridge, repository, notifications
    ) -> None:
        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SUCCESS
        assert result.booking_reference == "bk-1"
        assert result.booked_time == time(19, 0)
        assert result.resource_name == "Foot 1"
        assert bridge.confirmed_references == ["pi_1_secret_1"]

        logs = await repository.get_logs_for_rule(5)
        assert [log.status for log in logs] == [
            AttemptStatus.BOOKING_CREATED,
            AttemptStatus.SUCCESS,
        ]
        assert all(log.booking_reference == "bk-1" for log in logs)

        notifications.notify.assert_called_once()
        event = notifications.notify.call_args.args[0]
        assert event.status == AttemptStatus.SUCCESS
        assert event.resource_name == "Foot 1"

    @pytest.mark.asyncio
    async def test_search_uses_window_around_target(self, pipeline, provider) -> None:
        await pipeline.execute(rule_request())

        target_date, window, duration = provider.search_calls[0]
        assert target_date == TARGET_DATE
        assert window == TimeWindow(start=time(17, 0), end=time(21, 0))
        assert duration == 60

    @pytest.mark.asyncio
    async def test_no_slots_never_creates_booking(
        self, pipeline, provider, bridge, repository
    ) -> None:
        provider.slots = []

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.NO_SLOTS
        assert provider.created == []
        assert bridge.confirmed_references == []
        logs = await repository.get_logs_for_rule(5)
        assert [log.status for log in logs] == [AttemptStatus.NO_SLOTS]

    @pytest.mark.asyncio
    async def test_no_matching_slot_is_no_slots(self, pipeline, provider) -> None:
        provider.slots = [make_slot(time(19, 0), duration_minutes=30)]

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.NO_SLOTS
        assert provider.created == []

    @pytest.mark.asyncio
    async def test_payment_timeout_is_payment_failed(self, provider, repository) -> None:
        bridge = MockPaymentBridge([PaymentOutcome.failed("Payment page not ready after 10s")])
        pipeline = BookingPipeline(
            provider=provider,
            payment_bridge=bridge,
            repository=repository,
            notifications=MagicMock(),
        )

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.PAYMENT_FAILED
        assert result.booking_reference == "bk-1"
        assert result.error_message == "Payment page not ready after 10s"
        logs = await repository.get_logs_for_rule(5)
        assert logs[-1].status == AttemptStatus.PAYMENT_FAILED
        assert logs[-1].booking_reference == "bk-1"

    @pytest.mark.asyncio
    async def test_bridge_exception_is_payment_failed(self, provider, repository) -> None:
        bridge = MockPaymentBridge()
        bridge.confirm = AsyncMock(side_effect=RuntimeError("driver crashed"))
        pipeline = BookingPipeline(
            provider=provider,
            payment_bridge=bridge,
            repository=repository,
            notifications=MagicMock(),
        )

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.PAYMENT_FAILED
        assert "driver crashed" in result.error_message

    @pytest.mark.asyncio
    async def test_booking_without_payment_is_success(self, pipeline, provider, bridge) -> None:
        provider.with_payment = False

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SUCCESS
        assert bridge.confirmed_references == []

    @pytest.mark.asyncio
    async def test_create_booking_error_is_failed(self, pipeline, provider, repository) -> None:
        provider.create_error = ProviderError("Slot already taken")

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.FAILED
        assert result.error_message == "Booking failed: Slot already taken"
        assert result.resource_name == "Foot 1"
        logs = await repository.get_logs_for_rule(5)
        assert [log.status for log in logs] == [AttemptStatus.FAILED]

    @pytest.mark.asyncio
    async def test_search_error_is_failed(self, pipeline, provider) -> None:
        provider.search_error = ProviderError("API 500")

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.FAILED
        assert result.error_message == "Slot search failed: API 500"
        assert provider.created == []

    @pytest.mark.asyncio
    async def test_search_timeout_is_failed(self, pipeline, provider, monkeypatch) -> None:
        monkeypatch.setattr(settings, "provider_timeout_seconds", 0.01)
        provider.search_delay = 0.5

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.FAILED
        assert "timed out" in result.error_message

    @pytest.mark.asyncio
    async def test_notification_error_does_not_change_result(
        self, pipeline, notifications
    ) -> None:
        notifications.notify.side_effect = RuntimeError("notifier broken")

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SUCCESS


class TestDuplicateGuard:
    @pytest.mark.asyncio
    async def test_existing_success_is_skipped(self, pipeline, provider, repository) -> None:
        await repository.insert_log(
            AttemptLog(
                rule_id=5,
                target_date=TARGET_DATE,
                status=AttemptStatus.SUCCESS,
                booking_reference="bk-0",
            )
        )

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SKIPPED
        assert provider.search_calls == []

    @pytest.mark.asyncio
    async def test_booking_created_marker_blocks(self, pipeline, provider, repository) -> None:
        await repository.insert_log(
            AttemptLog(rule_id=5, target_date=TARGET_DATE, status=AttemptStatus.BOOKING_CREATED)
        )

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SKIPPED
        assert provider.created == []

    @pytest.mark.asyncio
    async def test_failed_attempt_does_not_block(self, pipeline, provider, repository) -> None:
        await repository.insert_log(
            AttemptLog(rule_id=5, target_date=TARGET_DATE, status=AttemptStatus.PAYMENT_FAILED)
        )

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_two_invocations_50ms_apart(self, pipeline, provider, repository) -> None:
        provider.search_delay = 0.1

        first = asyncio.create_task(pipeline.execute(rule_request()))
        await asyncio.sleep(0.05)
        second = asyncio.create_task(pipeline.execute(rule_request()))
        results = await asyncio.gather(first, second)

        assert sorted(r.status.value for r in results) == ["skipped", "success"]
        assert len(provider.created) == 1
        logs = await repository.get_logs_for_rule(5)
        assert sum(1 for log in logs if log.status == AttemptStatus.SUCCESS) == 1

    @pytest.mark.asyncio
    async def test_concurrent_scheduled_attempts_book_once(
        self, pipeline, provider, repository, rule
    ) -> None:
        results = await asyncio.gather(
            *(pipeline.run_scheduled_attempt(rule, TARGET_DATE) for _ in range(4))
        )

        assert [r.status for r in results].count(AttemptStatus.SUCCESS) == 1
        assert len(provider.created) == 1

    @pytest.mark.asyncio
    async def test_store_failure_fails_without_booking(
        self, pipeline, provider, repository
    ) -> None:
        repository.find_blocking_log = AsyncMock(side_effect=RuntimeError("database is locked"))

        result = await pipeline.execute(rule_request())

        assert result.status == AttemptStatus.FAILED
        assert result.error_message == "Duplicate check failed: database is locked"
        assert provider.search_calls == []
        assert provider.created == []

    @pytest.mark.asyncio
    async def test_manual_attempt_bypasses_guard(self, pipeline, provider, repository) -> None:
        await repository.insert_log(
            AttemptLog(rule_id=None, target_date=TARGET_DATE, status=AttemptStatus.SUCCESS)
        )

        result = await pipeline.execute(rule_request(rule_id=None))

        assert result.status == AttemptStatus.SUCCESS
        assert len(provider.created) == 1


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_run_scheduled_attempt_uses_rule(self, pipeline, provider, rule) -> None:
        rule.playground_order = ["Foot 2"]
        provider.slots = [make_slot(time(19, 0), "Foot 1"), make_slot(time(19, 0), "Foot 2")]

        result = await pipeline.run_scheduled_attempt(rule, TARGET_DATE)

        assert result.rule_id == 5
        assert result.resource_name == "Foot 2"

    @pytest.mark.asyncio
    async def test_run_manual_attempt(self, pipeline, provider) -> None:
        provider.slots = [make_slot(time(10, 0), "Foot 4"), make_slot(time(10, 0), "Foot 5")]

        result = await pipeline.run_manual_attempt(
            ManualBookingRequest(
                date=TARGET_DATE, start_time=time(10, 0), duration=60, playground_name="Foot 5"
            )
        )

        assert result.status == AttemptStatus.SUCCESS
        assert result.rule_id is None
        assert result.resource_name == "Foot 5"
        _, window, _ = provider.search_calls[0]
        assert window == TimeWindow(start=time(8, 0), end=time(23, 0))


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_logs_new_row(self, pipeline, provider, repository, notifications) -> None:
        original = await repository.insert_log(
            AttemptLog(
                rule_id=5,
                target_date=TARGET_DATE,
                target_time=time(19, 0),
                booked_time=time(19, 30),
                resource_name="Foot 2",
                status=AttemptStatus.SUCCESS,
                booking_reference="bk-9",
            )
        )

        result = await pipeline.cancel("bk-9")

        assert result.status == AttemptStatus.CANCELLED
        assert result.rule_id == 5
        assert result.booked_time == time(19, 30)
        assert provider.cancelled == ["bk-9"]

        logs = await repository.get_logs_for_rule(5)
        assert [log.status for log in logs] == [AttemptStatus.SUCCESS, AttemptStatus.CANCELLED]
        assert logs[0].id == original.id
        notifications.notify.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_unpaid_booking_keeps_its_details(
        self, pipeline, provider, repository, notifications
    ) -> None:
        await repository.insert_log(
            AttemptLog(
                rule_id=5,
                target_date=TARGET_DATE,
                target_time=time(19, 0),
                booked_time=time(19, 0),
                resource_name="Foot 3",
                status=AttemptStatus.PAYMENT_FAILED,
                booking_reference="bk-7",
                error_message="Card declined",
            )
        )

        result = await pipeline.cancel("bk-7")

        assert result.status == AttemptStatus.CANCELLED
        assert result.rule_id == 5
        assert result.target_date == TARGET_DATE
        assert result.booked_time == time(19, 0)
        assert result.resource_name == "Foot 3"
        assert provider.cancelled == ["bk-7"]

        logs = await repository.get_logs_for_rule(5)
        assert [log.status for log in logs] == [
            AttemptStatus.PAYMENT_FAILED,
            AttemptStatus.CANCELLED,
        ]
        event = notifications.notify.call_args.args[0]
        assert event.target_date == TARGET_DATE

    @pytest.mark.asyncio
    async def test_cancel_refused_logs_nothing(self, pipeline, provider, repository) -> None:
        provider.cancel_result = ProviderError("Too late to cancel")

        result = await pipeline.cancel("bk-9")

        assert result.status == AttemptStatus.FAILED
        assert "Too late to cancel" in result.error_message
        assert await repository.get_logs() == []
