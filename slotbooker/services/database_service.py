"""
Database service for persistent storage of rules, attempt logs and settings.

This module provides the repository used by the booking engine: async CRUD
operations for RuleRecord, insert-only access to AttemptLogRecord and a small
key/value settings store. It handles conversion between Pydantic schemas and
SQLAlchemy models.
"""

import json
from datetime import date, datetime

from sqlalchemy import delete, select, update

from slotbooker.config import settings
from slotbooker.models.database import (
    AsyncSessionLocal,
    AttemptLogRecord,
    RuleRecord,
    SettingRecord,
)
from slotbooker.models.schemas import (
    BLOCKING_STATUSES,
    BOOKED_STATUSES,
    AttemptLog,
    AttemptStatus,
    BookingRule,
)

ADVANCE_DAYS_KEY = "booking_advance_days"
TIMEZONE_KEY = "timezone"
TELEGRAM_BOT_TOKEN_KEY = "telegram_bot_token"
TELEGRAM_CHAT_ID_KEY = "telegram_chat_id"

RULE_UPDATABLE_FIELDS = (
    "day_of_week",
    "target_time",
    "trigger_time",
    "duration_minutes",
    "activity",
    "playground_order",
    "enabled",
)


class DatabaseService:
    """
    Provides database operations for rules, logs and settings.

    Every method opens its own session, so callers never share transactional
    state. The booking pipeline serializes its check-then-insert sequence
    itself; this service does not lock rows.
    """

    def _rule_to_record(self, rule: BookingRule) -> RuleRecord:
        """Convert a BookingRule Pydantic model to a RuleRecord SQLAlchemy model."""
        return RuleRecord(
            day_of_week=rule.day_of_week,
            target_time=rule.target_time,
            trigger_time=rule.trigger_time,
            duration_minutes=rule.duration_minutes,
            activity=rule.activity,
            playground_order_json=self._dump_order(rule.playground_order),
            enabled=rule.enabled,
            created_at=rule.created_at,
        )

    def _record_to_rule(self, record: RuleRecord) -> BookingRule:
        """Convert a RuleRecord SQLAlchemy model to a BookingRule Pydantic model."""
        playground_order = None
        if record.playground_order_json:
            playground_order = json.loads(record.playground_order_json)  # type: ignore[arg-type]
        return BookingRule(
            id=record.id,  # type: ignore[arg-type]
            day_of_week=record.day_of_week,  # type: ignore[arg-type]
            target_time=record.target_time,  # type: ignore[arg-type]
            trigger_time=record.trigger_time,  # type: ignore[arg-type]
            duration_minutes=record.duration_minutes,  # type: ignore[arg-type]
            activity=record.activity,  # type: ignore[arg-type]
            playground_order=playground_order,
            enabled=record.enabled,  # type: ignore[arg-type]
            created_at=record.created_at,  # type: ignore[arg-type]
        )

    def _log_to_record(self, log: AttemptLog) -> AttemptLogRecord:
        """Convert an AttemptLog Pydantic model to an AttemptLogRecord SQLAlchemy model."""
        return AttemptLogRecord(
            rule_id=log.rule_id,
            target_date=log.target_date,
            target_time=log.target_time,
            booked_time=log.booked_time,
            resource_name=log.resource_name,
            status=log.status,
            booking_reference=log.booking_reference,
            error_message=log.error_message,
            created_at=log.created_at,
        )

    def _record_to_log(self, record: AttemptLogRecord) -> AttemptLog:
        """Convert an AttemptLogRecord SQLAlchemy model to an AttemptLog Pydantic model."""
        return AttemptLog(
            id=record.id,  # type: ignore[arg-type]
            rule_id=record.rule_id,  # type: ignore[arg-type]
            target_date=record.target_date,  # type: ignore[arg-type]
            target_time=record.target_time,  # type: ignore[arg-type]
            booked_time=record.booked_time,  # type: ignore[arg-type]
            resource_name=record.resource_name,  # type: ignore[arg-type]
            status=record.status,  # type: ignore[arg-type]
            booking_reference=record.booking_reference,  # type: ignore[arg-type]
            error_message=record.error_message,  # type: ignore[arg-type]
            created_at=record.created_at,  # type: ignore[arg-type]
        )

    @staticmethod
    def _dump_order(playground_order: list[str] | None) -> str | None:
        return json.dumps(playground_order) if playground_order else None

    # --- Rules ---

    async def get_rules(self) -> list[BookingRule]:
        """Get all rules ordered by weekday and target time."""
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(RuleRecord).order_by(RuleRecord.day_of_week, RuleRecord.target_time)
            )
            return [self._record_to_rule(r) for r in result.scalars().all()]

    async def get_enabled_rules(self) -> list[BookingRule]:
        """Get the rules the scheduler should evaluate."""
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(RuleRecord)
                .where(RuleRecord.enabled.is_(True))
                .order_by(RuleRecord.day_of_week, RuleRecord.target_time)
            )
            return [self._record_to_rule(r) for r in result.scalars().all()]

    async def get_rule(self, rule_id: int) -> BookingRule | None:
        """Get a rule by its ID."""
        async with AsyncSessionLocal() as db:
            record = await db.get(RuleRecord, rule_id)
            if record:
                return self._record_to_rule(record)
            return None

    async def create_rule(self, rule: BookingRule) -> BookingRule:
        """Create a new rule record in the database."""
        async with AsyncSessionLocal() as db:
            record = self._rule_to_record(rule)
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return self._record_to_rule(record)

    async def update_rule(self, rule_id: int, **changes: object) -> BookingRule | None:
        """
        Apply a partial update to a rule.

        Only keys listed in RULE_UPDATABLE_FIELDS are applied; unknown keys are
        rejected so a typo cannot silently leave a rule unchanged.

        Returns:
            The updated rule, or None if no rule has this ID.
        """
        unknown = set(changes) - set(RULE_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")

        async with AsyncSessionLocal() as db:
            record = await db.get(RuleRecord, rule_id)
            if not record:
                return None

            for field, value in changes.items():
                if field == "playground_order":
                    order = value if isinstance(value, list) else None
                    record.playground_order_json = self._dump_order(order)  # type: ignore[assignment]
                else:
                    setattr(record, field, value)

            await db.commit()
            await db.refresh(record)
            return self._record_to_rule(record)

    async def delete_rule(self, rule_id: int) -> bool:
        """
        Delete a rule, keeping its history.

        Logs that referenced the rule are detached (rule_id set to NULL) so the
        audit trail survives the deletion.
        """
        async with AsyncSessionLocal() as db:
            record = await db.get(RuleRecord, rule_id)
            if not record:
                return False
            await db.execute(
                update(AttemptLogRecord)
                .where(AttemptLogRecord.rule_id == rule_id)
                .values(rule_id=None)
            )
            await db.delete(record)
            await db.commit()
            return True

    # --- Attempt logs ---

    async def find_success_log(self, rule_id: int | None, target_date: date) -> AttemptLog | None:
        """Get the successful attempt for a rule and target date, if any."""
        return await self._find_log(rule_id, target_date, (AttemptStatus.SUCCESS,))

    async def find_blocking_log(self, rule_id: int | None, target_date: date) -> AttemptLog | None:
        """
        Get a log that forbids a new automatic attempt for a rule and date.

        A row blocks when the booking succeeded or when a booking was created
        and its payment outcome was never recorded (e.g. the process died
        mid-payment).
        """
        return await self._find_log(rule_id, target_date, BLOCKING_STATUSES)

    async def find_attempt_log(
        self, rule_id: int, target_date: date, since: datetime | None = None
    ) -> AttemptLog | None:
        """
        Get any log for a rule and target date, whatever its status.

        Args:
            since: Only match logs created at or after this naive UTC instant.
        """
        return await self._find_log(rule_id, target_date, since=since)

    async def _find_log(
        self,
        rule_id: int | None,
        target_date: date,
        statuses: tuple[AttemptStatus, ...] | None = None,
        since: datetime | None = None,
    ) -> AttemptLog | None:
        async with AsyncSessionLocal() as db:
            query = select(AttemptLogRecord).where(AttemptLogRecord.target_date == target_date)
            if statuses is not None:
                query = query.where(AttemptLogRecord.status.in_(statuses))
            if since is not None:
                query = query.where(AttemptLogRecord.created_at >= since)
            if rule_id is None:
                query = query.where(AttemptLogRecord.rule_id.is_(None))
            else:
                query = query.where(AttemptLogRecord.rule_id == rule_id)
            result = await db.execute(query.order_by(AttemptLogRecord.id).limit(1))
            record = result.scalar_one_or_none()
            if record:
                return self._record_to_log(record)
            return None

    async def find_booking_log(self, booking_reference: str) -> AttemptLog | None:
        """
        Get the latest log of the booking behind a provider reference.

        Besides confirmed bookings this matches bookings whose payment failed or
        was never recorded, since those still hold the slot on the provider.
        """
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(AttemptLogRecord)
                .where(
                    AttemptLogRecord.booking_reference == booking_reference,
                    AttemptLogRecord.status.in_(BOOKED_STATUSES),
                )
                .order_by(AttemptLogRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            if record:
                return self._record_to_log(record)
            return None

    async def insert_log(self, log: AttemptLog) -> AttemptLog:
        """Insert an attempt log. Logs are never updated afterwards."""
        async with AsyncSessionLocal() as db:
            record = self._log_to_record(log)
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return self._record_to_log(record)

    async def get_logs(self, limit: int = 50) -> list[AttemptLog]:
        """Get the most recent logs, newest first."""
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(AttemptLogRecord)
                .order_by(AttemptLogRecord.created_at.desc(), AttemptLogRecord.id.desc())
                .limit(limit)
            )
            return [self._record_to_log(r) for r in result.scalars().all()]

    async def get_logs_for_rule(self, rule_id: int) -> list[AttemptLog]:
        """Get all logs of a rule in insertion order."""
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(AttemptLogRecord)
                .where(AttemptLogRecord.rule_id == rule_id)
                .order_by(AttemptLogRecord.created_at, AttemptLogRecord.id)
            )
            return [self._record_to_log(r) for r in result.scalars().all()]

    async def delete_logs(self, log_ids: list[int]) -> int:
        """Purge logs by ID. Returns the number of deleted rows."""
        if not log_ids:
            return 0
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                delete(AttemptLogRecord).where(AttemptLogRecord.id.in_(log_ids))
            )
            await db.commit()
            return result.rowcount or 0

    async def get_upcoming_bookings(self, today: date) -> list[AttemptLog]:
        """Get successful bookings whose target date is today or later."""
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(AttemptLogRecord)
                .where(
                    AttemptLogRecord.target_date >= today,
                    AttemptLogRecord.status == AttemptStatus.SUCCESS,
                )
                .order_by(AttemptLogRecord.target_date, AttemptLogRecord.booked_time)
            )
            return [self._record_to_log(r) for r in result.scalars().all()]

    # --- Settings ---

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value, or `default` when it was never stored."""
        async with AsyncSessionLocal() as db:
            record = await db.get(SettingRecord, key)
            if record:
                return record.value  # type: ignore[return-value]
            return default

    async def set_setting(self, key: str, value: object) -> None:
        """Insert or replace a setting value."""
        async with AsyncSessionLocal() as db:
            record = await db.get(SettingRecord, key)
            if record:
                record.value = str(value)  # type: ignore[assignment]
            else:
                db.add(SettingRecord(key=key, value=str(value)))
            await db.commit()

    async def seed_default_settings(self) -> None:
        """Store the default advance window and timezone on first start."""
        if await self.get_setting(ADVANCE_DAYS_KEY) is None:
            await self.set_setting(ADVANCE_DAYS_KEY, settings.advance_days)
        if await self.get_setting(TIMEZONE_KEY) is None:
            await self.set_setting(TIMEZONE_KEY, settings.timezone)


database_service = DatabaseService()
