"""
SQLAlchemy database models for persistent storage.

This module defines the schema for booking rules, the insert-only attempt
log and the key/value settings table. These models mirror the Pydantic
schemas but are designed for database persistence.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from slotbooker.config import settings
from slotbooker.models.schemas import AttemptStatus, utc_now


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class RuleRecord(Base):
    """
    Database model for weekly booking rules.

    Columns:
        id: Auto-incrementing primary key, also the stable rule identifier.
        day_of_week: Weekday of the target date, 0 = Sunday ... 6 = Saturday.
        target_time: Wall-clock time the user wants to play.
        trigger_time: Wall-clock time on the attempt date when booking starts.
        duration_minutes: Length of the slot to book.
        activity: Activity tag passed to the provider.
        playground_order_json: JSON list of preferred resource names, NULL for
            no preference.
        enabled: Disabled rules are ignored by the scheduler.
        created_at: When this rule was created.
    """

    __tablename__ = "booking_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    day_of_week = Column(Integer, nullable=False)
    target_time = Column(Time, nullable=False)
    trigger_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    activity = Column(String(50), nullable=False, default="football_5v5")
    playground_order_json = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)


class AttemptLogRecord(Base):
    """
    Database model for booking attempt outcomes.

    Rows are inserted once per outcome and never updated. The pair
    (rule_id, target_date) with status SUCCESS is the de-duplication key.

    Columns:
        id: Auto-incrementing primary key.
        rule_id: Rule that triggered the attempt, NULL for manual attempts or
            once the rule has been deleted.
        target_date: The date the slot was wanted for.
        target_time: The wanted start time (NULL for some cancellations).
        booked_time: Start time actually booked.
        resource_name: Booked playground name.
        status: Outcome (see AttemptStatus).
        booking_reference: Provider booking id, when one was created.
        error_message: Human-readable failure reason.
        created_at: Insertion time (UTC).
    """

    __tablename__ = "booking_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("booking_rules.id"), nullable=True, index=True)
    target_date = Column(Date, nullable=False, index=True)
    target_time = Column(Time, nullable=True)
    booked_time = Column(Time, nullable=True)
    resource_name = Column(String(100), nullable=True)
    status = Column(Enum(AttemptStatus), nullable=False)
    booking_reference = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, index=True)


class SettingRecord(Base):
    """Key/value settings editable at runtime (advance days, timezone, ...)."""

    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)


engine = create_async_engine(
    settings.database_url.replace("sqlite://", "sqlite+aiosqlite://")
    if settings.database_url.startswith("sqlite://")
    else settings.database_url,
    echo=False,
)

AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
