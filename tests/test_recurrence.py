from datetime import date, timedelta

import pytest

from models import Frequency, RecurringRule
from recurrence import (
    compute_next_occurrence,
    days_in_month,
    first_occurrence,
    weekday_index,
)


def _rule(frequency: Frequency, config: dict, start: date = date(2024, 1, 1)) -> RecurringRule:
    return RecurringRule(
        id=1,
        user_id=1,
        name="Test",
        description="",
        amount_cents=1000,
        category="Misc",
        frequency=frequency,
        frequency_config=config,
        start_date=start,
        next_occurrence_date=start,
        generation_count=0,
    )


def test_weekday_index_is_sunday_based():
    assert weekday_index(date(2024, 1, 7)) == 0  # Sunday
    assert weekday_index(date(2024, 1, 1)) == 1  # Monday
    assert weekday_index(date(2024, 1, 6)) == 6  # Saturday


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2023, 2) == 28
    assert days_in_month(2024, 12) == 31


def test_daily_adds_interval():
    rule = _rule(Frequency.daily, {"interval": 3})
    assert compute_next_occurrence(rule, date(2024, 1, 30)) == date(2024, 2, 2)


def test_custom_adds_interval_days():
    rule = _rule(Frequency.custom, {"interval_days": 14})
    assert compute_next_occurrence(rule, date(2024, 12, 25)) == date(2025, 1, 8)


def test_weekly_walks_configured_days_then_rolls_to_next_week():
    rule = _rule(Frequency.weekly, {"interval": 1, "days": [1, 3, 5]})
    assert compute_next_occurrence(rule, date(2024, 1, 1)) == date(2024, 1, 3)
    assert compute_next_occurrence(rule, date(2024, 1, 3)) == date(2024, 1, 5)
    assert compute_next_occurrence(rule, date(2024, 1, 5)) == date(2024, 1, 8)


def test_weekly_interval_skips_off_weeks_on_rollover():
    rule = _rule(Frequency.weekly, {"interval": 2, "days": [1, 5]})
    assert compute_next_occurrence(rule, date(2024, 1, 1)) == date(2024, 1, 5)
    assert compute_next_occurrence(rule, date(2024, 1, 5)) == date(2024, 1, 15)


def test_weekly_interval_from_off_week_jumps_to_next_on_week():
    rule = _rule(Frequency.weekly, {"interval": 2, "days": [1, 5]})
    # 2024-01-09 sits in the off-week following the start week.
    assert compute_next_occurrence(rule, date(2024, 1, 9)) == date(2024, 1, 15)


def test_monthly_clamps_to_last_day_of_short_month():
    rule = _rule(Frequency.monthly, {"interval": 1, "day_of_month": 31}, date(2024, 1, 31))
    assert compute_next_occurrence(rule, date(2024, 1, 31)) == date(2024, 2, 29)
    assert compute_next_occurrence(rule, date(2024, 2, 29)) == date(2024, 3, 31)
    assert compute_next_occurrence(rule, date(2023, 1, 31)) == date(2023, 2, 28)


def test_monthly_interval_crosses_year_boundary():
    rule = _rule(Frequency.monthly, {"interval": 3, "day_of_month": 15})
    assert compute_next_occurrence(rule, date(2024, 11, 15)) == date(2025, 2, 15)


def test_yearly_clamps_leap_day():
    rule = _rule(Frequency.yearly, {"month": 2, "day": 29}, date(2024, 2, 29))
    assert compute_next_occurrence(rule, date(2024, 2, 29)) == date(2025, 2, 28)


def test_first_occurrence_uses_start_when_it_matches():
    weekly = _rule(Frequency.weekly, {"interval": 1, "days": [1, 2, 3, 4, 5]})
    assert first_occurrence(weekly) == date(2024, 1, 1)
    daily = _rule(Frequency.daily, {"interval": 2})
    assert first_occurrence(daily) == date(2024, 1, 1)


def test_first_occurrence_moves_to_first_matching_date():
    saturday = _rule(Frequency.weekly, {"interval": 1, "days": [6]})
    assert first_occurrence(saturday) == date(2024, 1, 6)

    before_day = _rule(Frequency.monthly, {"interval": 1, "day_of_month": 15}, date(2024, 1, 10))
    assert first_occurrence(before_day) == date(2024, 1, 15)
    after_day = _rule(Frequency.monthly, {"interval": 1, "day_of_month": 15}, date(2024, 1, 20))
    assert first_occurrence(after_day) == date(2024, 2, 15)

    yearly = _rule(Frequency.yearly, {"month": 3, "day": 15}, date(2024, 5, 1))
    assert first_occurrence(yearly) == date(2025, 3, 15)


@pytest.mark.parametrize(
    "frequency,config",
    [
        (Frequency.daily, {"interval": 1}),
        (Frequency.weekly, {"interval": 1, "days": [0]}),
        (Frequency.weekly, {"interval": 3, "days": [0, 6]}),
        (Frequency.monthly, {"interval": 1, "day_of_month": 1}),
        (Frequency.monthly, {"interval": 2, "day_of_month": 31}),
        (Frequency.yearly, {"month": 1, "day": 1}),
        (Frequency.yearly, {"month": 12, "day": 31}),
        (Frequency.custom, {"interval_days": 1}),
    ],
)
def test_next_occurrence_is_strictly_later(frequency, config):
    rule = _rule(frequency, config, date(2024, 3, 10))
    current = date(2023, 12, 1)
    while current < date(2025, 3, 1):
        assert compute_next_occurrence(rule, current) > current
        current += timedelta(days=1)
