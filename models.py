from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


class RuleStatus(str, Enum):
    active = "active"
    paused = "paused"
    ended = "ended"


class WeekdayPattern(str, Enum):
    weekdays = "weekdays"
    weekends = "weekends"
    all_days = "all_days"
    custom = "custom"


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def amount_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    # Plain column: deleting a rule leaves its generated expenses alone.
    source_rule_id: Mapped[Optional[int]] = mapped_column(Integer)

    @property
    def amount(self) -> Decimal:
        return cents_to_amount(self.amount_cents)

    __table_args__ = (
        UniqueConstraint("source_rule_id", "date", name="uq_expense_rule_occurrence"),
        Index("ix_expenses_user_date", "user_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    frequency_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[RuleStatus] = mapped_column(
        SAEnum(RuleStatus), nullable=False, default=RuleStatus.active
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_occurrence_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)
    generation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_generations: Mapped[Optional[int]] = mapped_column(Integer)

    @property
    def amount(self) -> Decimal:
        return cents_to_amount(self.amount_cents)

    def set_status(self, status: RuleStatus) -> None:
        self.status = status
        self.is_active = status == RuleStatus.active

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        CheckConstraint("generation_count >= 0", name="ck_rule_generation_count"),
        CheckConstraint(
            "max_generations IS NULL OR generation_count <= max_generations",
            name="ck_rule_generation_limit",
        ),
        Index(
            "ix_recurring_rules_due",
            "user_id",
            "status",
            "next_occurrence_date",
        ),
    )
