from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from database import Base, create_db_engine
from models import Expense, RecurringRule
from projection import ProjectionEngine
from schemas import CategoryIn
from services import CategoryService, RecurringRuleService


def _service(session: Session, today: date) -> RecurringRuleService:
    categories = CategoryService(session, user_id=1)
    for name in ("Coffee", "Entertainment", "Snacks"):
        categories.create(CategoryIn(name=name))
    return RecurringRuleService(session, user_id=1, today=lambda: today)


def _session() -> Session:
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    return Session(engine)


COFFEE = {
    "name": "Coffee",
    "amount": "2.50",
    "category": "Coffee",
    "frequency": "weekly",
    "frequency_config": {"interval": 1, "days": [1, 2, 3, 4, 5]},
    "start_date": "2024-01-01",
}


def test_upcoming_lists_weekday_coffee_within_horizon():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        rule = service.create(COFFEE)

        upcoming = service.upcoming(13)

        assert [item.projected_date for item in upcoming] == [
            date(2024, 1, 1),
            date(2024, 1, 2),
            date(2024, 1, 3),
            date(2024, 1, 4),
            date(2024, 1, 5),
            date(2024, 1, 8),
            date(2024, 1, 9),
            date(2024, 1, 10),
            date(2024, 1, 11),
            date(2024, 1, 12),
        ]
        assert all(item.rule_id == rule.id for item in upcoming)
        assert upcoming[0].amount == Decimal("2.50")
        assert upcoming[0].category == "Coffee"


def test_upcoming_merges_rules_in_date_order():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        coffee = service.create(
            {**COFFEE, "frequency_config": {"interval": 1, "days": [1]}}
        )
        netflix = service.create(
            {
                "name": "Netflix",
                "amount": "11.99",
                "category": "Entertainment",
                "frequency": "monthly",
                "frequency_config": {"interval": 1, "day_of_month": 10},
                "start_date": "2024-01-01",
            }
        )

        upcoming = service.upcoming(20)

        assert [(i.projected_date, i.rule_id) for i in upcoming] == [
            (date(2024, 1, 1), coffee.id),
            (date(2024, 1, 8), coffee.id),
            (date(2024, 1, 10), netflix.id),
            (date(2024, 1, 15), coffee.id),
        ]


def test_upcoming_respects_end_date_and_max_generations():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        service.create(
            {
                "name": "Snacks",
                "amount": "1.00",
                "category": "Snacks",
                "frequency": "daily",
                "frequency_config": {"interval": 1},
                "start_date": "2024-01-01",
                "end_date": "2024-01-05",
            }
        )
        service.create(
            {
                "name": "Trial",
                "amount": "5.00",
                "category": "Entertainment",
                "frequency": "custom",
                "frequency_config": {"interval_days": 2},
                "start_date": "2024-01-01",
                "max_generations": 3,
            }
        )

        upcoming = service.upcoming(30)
        snacks = [i.projected_date for i in upcoming if i.name == "Snacks"]
        trial = [i.projected_date for i in upcoming if i.name == "Trial"]

        assert snacks == [date(2024, 1, d) for d in range(1, 6)]
        assert trial == [date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 5)]


def test_upcoming_skips_paused_rules_and_writes_nothing():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        rule = service.create(COFFEE)
        paused = service.create({**COFFEE, "name": "Paused coffee"})
        service.toggle_active(paused.id, False)

        upcoming = service.upcoming(7)

        assert {item.rule_id for item in upcoming} == {rule.id}
        assert session.scalar(select(func.count(Expense.id))) == 0
        assert service.get(rule.id).next_occurrence_date == date(2024, 1, 1)
        assert service.get(rule.id).generation_count == 0


def test_projection_stops_at_iteration_cap():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        service.create(
            {
                "name": "Snacks",
                "amount": "1.00",
                "category": "Snacks",
                "frequency": "daily",
                "frequency_config": {"interval": 1},
                "start_date": "2024-01-01",
            }
        )
        engine = ProjectionEngine(session, today=lambda: date(2024, 1, 1), iteration_cap=50)

        upcoming = engine.get_upcoming_occurrences(1, 3000)

        assert len(upcoming) == 50
        assert upcoming[-1].projected_date == date(2024, 2, 19)


def test_negative_horizon_is_rejected():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        with pytest.raises(ValueError):
            service.upcoming(-1)


def _store_broken_rule(session: Session, service: RecurringRuleService) -> int:
    broken = service.create(
        {
            "name": "Broken",
            "amount": "9.00",
            "category": "Snacks",
            "frequency": "monthly",
            "frequency_config": {"interval": 1, "day_of_month": 3},
            "start_date": "2024-01-01",
        }
    )
    session.execute(
        update(RecurringRule)
        .where(RecurringRule.id == broken.id)
        .values(frequency_config={"interval": 0, "day_of_month": 3})
    )
    session.commit()
    session.expire_all()
    return broken.id


def test_rule_with_unparseable_config_is_skipped():
    with _session() as session:
        service = _service(session, date(2024, 1, 1))
        netflix = service.create(
            {
                "name": "Netflix",
                "amount": "11.99",
                "category": "Entertainment",
                "frequency": "monthly",
                "frequency_config": {"interval": 1, "day_of_month": 10},
                "start_date": "2024-01-01",
            }
        )
        broken_id = _store_broken_rule(session, service)

        upcoming = service.upcoming(30)
        assert [(i.rule_id, i.projected_date) for i in upcoming] == [
            (netflix.id, date(2024, 1, 10))
        ]
        assert broken_id not in {i.rule_id for i in upcoming}

        stats = service.get_statistics()
        assert stats["total_monthly_expenses"] == Decimal("11.99")
        assert stats["rule_counts"]["active"] == 2
