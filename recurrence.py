import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import get_settings
from ledger import ExpenseSink, ExpenseSinkError, LedgerExpenseSink
from models import Expense, Frequency, RecurringRule, RuleStatus, cents_to_amount
from schemas import (
    CustomConfig,
    DailyConfig,
    MonthlyConfig,
    WeeklyConfig,
    YearlyConfig,
    parse_frequency_config,
)


logger = logging.getLogger(__name__)

RESCHEDULE_STEP_LIMIT = 10000


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamped_date(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return clamped_date(year, month, desired_day)


def weekday_index(value: date) -> int:
    """Weekday with Sunday as 0 and Saturday as 6."""
    return (value.weekday() + 1) % 7


def week_start(value: date) -> date:
    return value - timedelta(days=weekday_index(value))


def _next_weekly(config: WeeklyConfig, anchor: date, from_date: date) -> date:
    # Strict every-Nth-week: on-weeks are counted from the week holding the
    # anchor (the rule's start date), both for in-week and rollover searches.
    anchor_week = week_start(anchor)
    current_week = week_start(from_date)
    offset = (current_week - anchor_week).days // 7
    if offset % config.interval == 0:
        current_day = weekday_index(from_date)
        for day in config.days:
            if day > current_day:
                return current_week + timedelta(days=day)
    next_on_week = anchor_week + timedelta(
        weeks=(offset // config.interval + 1) * config.interval
    )
    return next_on_week + timedelta(days=config.days[0])


def compute_next_occurrence(rule: Any, from_date: date) -> date:
    """Return the first occurrence of ``rule`` strictly after ``from_date``.

    ``rule`` is anything exposing ``frequency``, ``frequency_config`` and
    ``start_date``: a stored rule, a validated payload or a snapshot.
    Day-of-month overflow clamps to the last day of the target month.
    """
    config = parse_frequency_config(rule.frequency, rule.frequency_config)
    if isinstance(config, DailyConfig):
        return from_date + timedelta(days=config.interval)
    if isinstance(config, WeeklyConfig):
        return _next_weekly(config, rule.start_date, from_date)
    if isinstance(config, MonthlyConfig):
        return _add_months(from_date, config.interval, desired_day=config.day_of_month)
    if isinstance(config, YearlyConfig):
        return clamped_date(from_date.year + 1, config.month, config.day)
    if isinstance(config, CustomConfig):
        return from_date + timedelta(days=config.interval_days)
    raise ValueError(f"Unsupported frequency: {rule.frequency}")


def first_occurrence(rule: Any) -> date:
    """First occurrence on or after the rule's start date."""
    start = rule.start_date
    config = parse_frequency_config(rule.frequency, rule.frequency_config)
    if isinstance(config, WeeklyConfig):
        if weekday_index(start) in config.days:
            return start
        return compute_next_occurrence(rule, start)
    if isinstance(config, MonthlyConfig):
        candidate = clamped_date(start.year, start.month, config.day_of_month)
    elif isinstance(config, YearlyConfig):
        candidate = clamped_date(start.year, config.month, config.day)
    else:
        return start
    if candidate >= start:
        return candidate
    return compute_next_occurrence(rule, start)


def occurrence_after(rule: Any, after: date, max_steps: int = RESCHEDULE_STEP_LIMIT) -> date:
    """First occurrence of the rule's schedule strictly after ``after``.

    Walks the schedule from its first occurrence so that a date between
    ``after`` and a single resolver step from it is not skipped.
    """
    current = first_occurrence(rule)
    steps = 0
    while current <= after:
        if steps >= max_steps:
            logger.warning(
                f"reschedule_step_limit: after={after.isoformat()} limit={max_steps}"
            )
            return compute_next_occurrence(rule, after)
        current = compute_next_occurrence(rule, current)
        steps += 1
    return current


@dataclass(frozen=True)
class RuleSnapshot:
    """Rule values as read at scan time; the claim compares against them."""

    id: int
    user_id: int
    name: str
    description: str
    amount_cents: int
    category: str
    frequency: Frequency
    frequency_config: dict[str, Any]
    start_date: date
    end_date: Optional[date]
    next_occurrence_date: date
    generation_count: int
    max_generations: Optional[int]

    @classmethod
    def from_rule(cls, rule: RecurringRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            user_id=rule.user_id,
            name=rule.name,
            description=rule.description or "",
            amount_cents=rule.amount_cents,
            category=rule.category,
            frequency=rule.frequency,
            frequency_config=dict(rule.frequency_config),
            start_date=rule.start_date,
            end_date=rule.end_date,
            next_occurrence_date=rule.next_occurrence_date,
            generation_count=rule.generation_count,
            max_generations=rule.max_generations,
        )


def occurrence_note(name: str, description: str) -> str:
    suffix = f'(Auto-generated from "{name}")'
    return f"{description} {suffix}" if description else suffix


def reaches_end(
    next_date: date,
    generation_count: int,
    end_date: Optional[date],
    max_generations: Optional[int],
) -> bool:
    if max_generations is not None and generation_count >= max_generations:
        return True
    return end_date is not None and next_date > end_date


@dataclass
class GenerationError:
    rule_id: int
    occurrence_date: Optional[date]
    error: str


@dataclass
class RunSummary:
    as_of: date
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    generated: list[Expense] = field(default_factory=list)
    errors: list[GenerationError] = field(default_factory=list)


class RecurringEngine:
    """Generates due occurrences through a session it owns.

    The engine commits after the due scan and after every occurrence, and
    expires the identity map at the end of a run. Callers must not keep
    uncommitted work in the session they hand over.
    """

    def __init__(
        self,
        session: Session,
        sink: Optional[ExpenseSink] = None,
        today: Optional[Callable[[], date]] = None,
        catch_up_limit: Optional[int] = None,
    ) -> None:
        self.session = session
        self.sink = sink
        self.today = today or local_today
        self.catch_up_limit = catch_up_limit or get_settings().catch_up_limit

    def due_rules(self, user_id: int, as_of: date) -> list[RuleSnapshot]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.user_id == user_id,
                RecurringRule.status == RuleStatus.active,
                RecurringRule.next_occurrence_date <= as_of,
            )
            .order_by(RecurringRule.next_occurrence_date, RecurringRule.id)
        )
        snapshots = [RuleSnapshot.from_rule(rule) for rule in self.session.scalars(stmt)]
        # End the read transaction so claims start from fresh data.
        self.session.commit()
        return snapshots

    def due_user_ids(self, as_of: date) -> list[int]:
        stmt = (
            select(RecurringRule.user_id)
            .where(
                RecurringRule.status == RuleStatus.active,
                RecurringRule.next_occurrence_date <= as_of,
            )
            .distinct()
            .order_by(RecurringRule.user_id)
        )
        return list(self.session.scalars(stmt).all())

    def generate_due_occurrences(
        self, user_id: int, as_of: Optional[date] = None
    ) -> RunSummary:
        as_of = as_of or self.today()
        summary = RunSummary(as_of=as_of)
        sink = self.sink or LedgerExpenseSink(self.session, user_id)
        for snapshot in self.due_rules(user_id, as_of):
            self.catch_up_rule(snapshot, as_of, sink, summary)
        # Claims bypass the identity map.
        self.session.expire_all()
        logger.info(
            f"recurring_run: user_id={user_id} as_of={as_of.isoformat()} "
            f"successful={summary.successful} failed={summary.failed} "
            f"skipped={summary.skipped}"
        )
        return summary

    def generate_all_due(self, as_of: Optional[date] = None) -> dict[int, RunSummary]:
        as_of = as_of or self.today()
        return {
            user_id: self.generate_due_occurrences(user_id, as_of)
            for user_id in self.due_user_ids(as_of)
        }

    def catch_up_rule(
        self,
        snapshot: RuleSnapshot,
        as_of: date,
        sink: ExpenseSink,
        summary: RunSummary,
    ) -> None:
        current: Optional[RuleSnapshot] = snapshot
        iterations = 0
        while current is not None and current.next_occurrence_date <= as_of:
            if iterations >= self.catch_up_limit:
                logger.warning(
                    f"recurring_catch_up_limit: rule_id={snapshot.id} "
                    f"limit={self.catch_up_limit} next={current.next_occurrence_date}"
                )
                break
            current = self.generate_occurrence(current, sink, summary)
            iterations += 1

    def generate_occurrence(
        self,
        snapshot: RuleSnapshot,
        sink: ExpenseSink,
        summary: RunSummary,
    ) -> Optional[RuleSnapshot]:
        """Generate the snapshot's due occurrence.

        Returns the advanced snapshot, or None once this rule needs no more
        work in the current run (ended, failed, or advanced by another run).
        """
        occurrence = snapshot.next_occurrence_date
        try:
            if snapshot.end_date is not None and occurrence > snapshot.end_date:
                self._end_rule(snapshot)
                return None

            next_date = compute_next_occurrence(snapshot, occurrence)
            count = snapshot.generation_count + 1
            ended = reaches_end(
                next_date, count, snapshot.end_date, snapshot.max_generations
            )
            expense = None
            with self.session.begin_nested():
                claimed = self._claim(snapshot, next_date, ended)
                if claimed:
                    expense = sink.create_expense(
                        amount=cents_to_amount(snapshot.amount_cents),
                        category=snapshot.category,
                        date=occurrence,
                        note=occurrence_note(snapshot.name, snapshot.description),
                        source_rule_id=snapshot.id,
                    )
            self.session.commit()
        except ExpenseSinkError as exc:
            self.session.rollback()
            logger.warning(
                f"recurring_generation_failed: rule_id={snapshot.id} "
                f"date={occurrence.isoformat()} error={exc}"
            )
            summary.failed += 1
            summary.errors.append(GenerationError(snapshot.id, occurrence, str(exc)))
            return None
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                f"recurring_generation_error: rule_id={snapshot.id} "
                f"date={occurrence.isoformat()}"
            )
            summary.failed += 1
            summary.errors.append(
                GenerationError(snapshot.id, occurrence, f"Unexpected error: {exc}")
            )
            return None

        if not claimed:
            summary.skipped += 1
            logger.info(
                f"recurring_claim_lost: rule_id={snapshot.id} "
                f"date={occurrence.isoformat()}"
            )
            return None

        summary.successful += 1
        summary.generated.append(expense)
        if ended:
            logger.info(f"recurring_rule_ended: rule_id={snapshot.id} count={count}")
            return None
        return dataclasses.replace(
            snapshot, next_occurrence_date=next_date, generation_count=count
        )

    def _claim(self, snapshot: RuleSnapshot, next_date: date, ended: bool) -> bool:
        values: dict[str, Any] = {
            "last_generated_date": snapshot.next_occurrence_date,
            "next_occurrence_date": next_date,
            "generation_count": RecurringRule.generation_count + 1,
        }
        if ended:
            values["status"] = RuleStatus.ended
            values["is_active"] = False
        stmt = (
            update(RecurringRule)
            .where(
                RecurringRule.id == snapshot.id,
                RecurringRule.status == RuleStatus.active,
                RecurringRule.next_occurrence_date == snapshot.next_occurrence_date,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def _end_rule(self, snapshot: RuleSnapshot) -> None:
        stmt = (
            update(RecurringRule)
            .where(
                RecurringRule.id == snapshot.id,
                RecurringRule.status == RuleStatus.active,
                RecurringRule.next_occurrence_date == snapshot.next_occurrence_date,
            )
            .values(status=RuleStatus.ended, is_active=False)
            .execution_options(synchronize_session=False)
        )
        ended = self.session.execute(stmt).rowcount == 1
        self.session.commit()
        if ended:
            logger.info(
                f"recurring_rule_ended: rule_id={snapshot.id} "
                f"reason=past_end_date next={snapshot.next_occurrence_date}"
            )
