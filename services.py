from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from ledger import ExpenseSink
from models import (
    Category,
    Frequency,
    RecurringRule,
    RuleStatus,
    WeekdayPattern,
    amount_to_cents,
    cents_to_amount,
)
from projection import ProjectionEngine, UpcomingOccurrence
from recurrence import (
    RecurringEngine,
    RunSummary,
    first_occurrence,
    local_today,
    occurrence_after,
    reaches_end,
)
from schemas import CategoryIn, parse_frequency_config
from validation import FieldError, RuleValidationError, parse_rule_payload


logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("frequency", "frequency_config", "start_date")

RULE_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "Daily Coffee",
        "description": "Morning coffee expense",
        "category": "Food & Drink",
        "frequency": Frequency.weekly.value,
        "frequency_config": {
            "interval": 1,
            "days": [1, 2, 3, 4, 5],
            "pattern": WeekdayPattern.weekdays.value,
        },
        "suggested_amount": Decimal("2.50"),
    },
    {
        "name": "Monthly Gym Membership",
        "description": "Gym membership fee",
        "category": "Health & Fitness",
        "frequency": Frequency.monthly.value,
        "frequency_config": {"interval": 1, "day_of_month": 1},
        "suggested_amount": Decimal("30.00"),
    },
    {
        "name": "Weekly Grocery Shopping",
        "description": "Weekly grocery expenses",
        "category": "Groceries",
        "frequency": Frequency.weekly.value,
        "frequency_config": {
            "interval": 1,
            "days": [6],
            "pattern": WeekdayPattern.custom.value,
        },
        "suggested_amount": Decimal("75.00"),
    },
    {
        "name": "Monthly Netflix Subscription",
        "description": "Streaming service subscription",
        "category": "Entertainment",
        "frequency": Frequency.monthly.value,
        "frequency_config": {"interval": 1, "day_of_month": 15},
        "suggested_amount": Decimal("11.99"),
    },
]


class RuleNotFound(ValueError):
    pass


def get_current_user_id() -> int:
    return get_settings().user_id


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return list(self.session.scalars(stmt).all())

    def category_names(self) -> list[str]:
        return [category.name for category in self.list_all()]

    def is_valid_category(self, name: str) -> bool:
        if not name or not name.strip():
            return False
        found = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.archived_at.is_(None),
                func.lower(Category.name) == name.strip().lower(),
            )
        )
        return found is not None

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name.strip())
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        category.archived_at = datetime.utcnow()
        self.session.commit()


@dataclass
class RuleFilters:
    status: Optional[RuleStatus] = None
    is_active: Optional[bool] = None
    frequency: Optional[Frequency] = None
    category: Optional[str] = None


def monthly_equivalent_cents(rule: RecurringRule) -> int:
    config = parse_frequency_config(rule.frequency, rule.frequency_config)
    amount = rule.amount_cents
    if rule.frequency == Frequency.daily:
        return int(amount * 30.44 / config.interval)
    if rule.frequency == Frequency.weekly:
        return int(amount * 4.35 * len(config.days) / config.interval)
    if rule.frequency == Frequency.monthly:
        return int(amount / config.interval)
    if rule.frequency == Frequency.yearly:
        return int(amount / 12)
    return int(amount * 30.44 / config.interval_days)


class RecurringRuleService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        categories: Optional[CategoryService] = None,
        sink: Optional[ExpenseSink] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.categories = categories or CategoryService(session, self.user_id)
        self.sink = sink
        self.today = today or local_today

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise RuleNotFound("Rule not found")
        return rule

    def list(self, filters: Optional[RuleFilters] = None) -> list[RecurringRule]:
        filters = filters or RuleFilters()
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.user_id == self.user_id)
            .order_by(RecurringRule.created_at.desc(), RecurringRule.id.desc())
        )
        if filters.status is not None:
            stmt = stmt.where(RecurringRule.status == filters.status)
        if filters.is_active is not None:
            stmt = stmt.where(RecurringRule.is_active.is_(filters.is_active))
        if filters.frequency is not None:
            stmt = stmt.where(RecurringRule.frequency == filters.frequency)
        if filters.category:
            stmt = stmt.where(
                func.lower(RecurringRule.category) == filters.category.strip().lower()
            )
        return list(self.session.scalars(stmt).all())

    def create(self, payload: Mapping[str, Any]) -> RecurringRule:
        data = parse_rule_payload(payload, self.categories)
        next_date = first_occurrence(data)
        rule = RecurringRule(
            user_id=self.user_id,
            name=data.name,
            description=data.description,
            amount_cents=amount_to_cents(data.amount),
            category=data.category,
            frequency=data.frequency,
            frequency_config=data.frequency_config,
            start_date=data.start_date,
            end_date=data.end_date,
            next_occurrence_date=next_date,
            last_generated_date=None,
            generation_count=0,
            max_generations=data.max_generations,
        )
        if data.end_date is not None and next_date > data.end_date:
            rule.set_status(RuleStatus.ended)
        else:
            rule.set_status(RuleStatus.active)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"recurring_rule_created: rule_id={rule.id} frequency={rule.frequency.value} "
            f"next={rule.next_occurrence_date.isoformat()}"
        )
        return rule

    def update(self, rule_id: int, patch: Mapping[str, Any]) -> RecurringRule:
        rule = self.get(rule_id)
        current = self._payload(rule)
        merged = {**current, **dict(patch)}
        category_changed = (
            str(merged.get("category") or "").strip().lower()
            != rule.category.strip().lower()
        )
        data = parse_rule_payload(
            merged, self.categories if category_changed else None
        )
        if (
            data.max_generations is not None
            and data.max_generations < rule.generation_count
        ):
            raise RuleValidationError(
                [
                    FieldError(
                        "max_generations",
                        f"Rule already generated {rule.generation_count} occurrences",
                    )
                ]
            )
        schedule_changed = (
            data.frequency != rule.frequency
            or data.frequency_config != rule.frequency_config
            or data.start_date != rule.start_date
        )

        rule.name = data.name
        rule.description = data.description
        rule.amount_cents = amount_to_cents(data.amount)
        rule.category = data.category
        rule.frequency = data.frequency
        rule.frequency_config = data.frequency_config
        rule.start_date = data.start_date
        rule.end_date = data.end_date
        rule.max_generations = data.max_generations

        if schedule_changed:
            if rule.last_generated_date:
                next_date = occurrence_after(rule, rule.last_generated_date)
            else:
                next_date = first_occurrence(rule)
            rule.next_occurrence_date = next_date

        if rule.status != RuleStatus.ended and reaches_end(
            rule.next_occurrence_date,
            rule.generation_count,
            rule.end_date,
            rule.max_generations,
        ):
            rule.set_status(RuleStatus.ended)

        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()
        logger.info(f"recurring_rule_deleted: rule_id={rule_id}")

    def toggle_active(self, rule_id: int, active: bool) -> RecurringRule:
        rule = self.get(rule_id)
        if rule.status == RuleStatus.ended:
            raise ValueError("Rule has ended and cannot be toggled")
        rule.set_status(RuleStatus.active if active else RuleStatus.paused)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def generate_due_occurrences(self, as_of: Optional[date] = None) -> RunSummary:
        engine = RecurringEngine(self.session, sink=self.sink, today=self.today)
        return engine.generate_due_occurrences(self.user_id, as_of)

    def upcoming(self, horizon_days: int = 30) -> list[UpcomingOccurrence]:
        engine = ProjectionEngine(self.session, today=self.today)
        return engine.get_upcoming_occurrences(self.user_id, horizon_days)

    def templates(self) -> list[dict[str, Any]]:
        return [dict(template) for template in RULE_TEMPLATES]

    def get_statistics(self) -> dict[str, object]:
        rules = self.list(RuleFilters(status=RuleStatus.active))
        total = 0
        by_category: dict[str, int] = {}
        for rule in rules:
            try:
                monthly = monthly_equivalent_cents(rule)
            except ValidationError as exc:
                logger.warning(
                    f"recurring_rule_invalid_config: rule_id={rule.id} "
                    f"errors={exc.error_count()}"
                )
                continue
            total += monthly
            by_category[rule.category] = by_category.get(rule.category, 0) + monthly

        status_counts = {status.value: 0 for status in RuleStatus}
        counts_stmt = (
            select(RecurringRule.status, func.count(RecurringRule.id))
            .where(RecurringRule.user_id == self.user_id)
            .group_by(RecurringRule.status)
        )
        for status, count in self.session.execute(counts_stmt):
            status_counts[RuleStatus(status).value] = count

        breakdown = [
            {
                "category": name,
                "monthly_amount": cents_to_amount(amount),
                "percent": (amount / total * 100) if total > 0 else 0,
            }
            for name, amount in sorted(
                by_category.items(), key=lambda item: item[1], reverse=True
            )
        ]
        return {
            "total_monthly_expenses": cents_to_amount(total),
            "expense_breakdown": breakdown,
            "rule_counts": status_counts,
        }

    @staticmethod
    def _payload(rule: RecurringRule) -> dict[str, Any]:
        return {
            "name": rule.name,
            "description": rule.description,
            "amount": rule.amount,
            "category": rule.category,
            "frequency": rule.frequency,
            "frequency_config": dict(rule.frequency_config),
            "start_date": rule.start_date,
            "end_date": rule.end_date,
            "max_generations": rule.max_generations,
        }
