import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, RecurringRule, RuleStatus
from recurrence import compute_next_occurrence, local_today


logger = logging.getLogger(__name__)

MAX_HORIZON_DAYS = 3660


@dataclass(frozen=True)
class UpcomingOccurrence:
    rule_id: int
    name: str
    amount: Decimal
    category: str
    frequency: Frequency
    description: str
    projected_date: date


class ProjectionEngine:
    """Read-only preview of occurrences a rule set will produce."""

    def __init__(
        self,
        session: Session,
        today: Optional[Callable[[], date]] = None,
        iteration_cap: Optional[int] = None,
    ) -> None:
        self.session = session
        self.today = today or local_today
        self.iteration_cap = iteration_cap or get_settings().projection_cap

    def project_rule(self, rule: RecurringRule, until: date) -> list[date]:
        dates: list[date] = []
        remaining = None
        if rule.max_generations is not None:
            remaining = max(rule.max_generations - rule.generation_count, 0)
        current = rule.next_occurrence_date
        while current <= until:
            if rule.end_date is not None and current > rule.end_date:
                break
            if remaining is not None and len(dates) >= remaining:
                break
            if len(dates) >= self.iteration_cap:
                logger.warning(
                    f"projection_cap_reached: rule_id={rule.id} cap={self.iteration_cap}"
                )
                break
            dates.append(current)
            current = compute_next_occurrence(rule, current)
        return dates

    def get_upcoming_occurrences(
        self, user_id: int, horizon_days: int
    ) -> list[UpcomingOccurrence]:
        if horizon_days < 0 or horizon_days > MAX_HORIZON_DAYS:
            raise ValueError(f"Horizon must be between 0 and {MAX_HORIZON_DAYS} days")
        until = self.today() + timedelta(days=horizon_days)
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.user_id == user_id,
                RecurringRule.status == RuleStatus.active,
                RecurringRule.next_occurrence_date <= until,
            )
            .order_by(RecurringRule.id)
        )
        upcoming: list[UpcomingOccurrence] = []
        for rule in self.session.scalars(stmt):
            try:
                projected_dates = self.project_rule(rule, until)
            except ValidationError as exc:
                logger.warning(
                    f"projection_rule_skipped: rule_id={rule.id} "
                    f"errors={exc.error_count()}"
                )
                continue
            for projected in projected_dates:
                upcoming.append(
                    UpcomingOccurrence(
                        rule_id=rule.id,
                        name=rule.name,
                        amount=rule.amount,
                        category=rule.category,
                        frequency=rule.frequency,
                        description=rule.description or "",
                        projected_date=projected,
                    )
                )
        upcoming.sort(key=lambda item: (item.projected_date, item.rule_id))
        return upcoming
