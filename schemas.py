from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Frequency, RuleStatus, WeekdayPattern


Weekday = Annotated[int, Field(ge=0, le=6)]

WEEKDAY_PATTERN_DAYS: dict[WeekdayPattern, list[int]] = {
    WeekdayPattern.weekdays: [1, 2, 3, 4, 5],
    WeekdayPattern.weekends: [0, 6],
    WeekdayPattern.all_days: [0, 1, 2, 3, 4, 5, 6],
}


class DailyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: int = Field(..., ge=1)


class WeeklyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: int = Field(..., ge=1)
    days: list[Weekday] = Field(..., min_length=1)
    pattern: Optional[WeekdayPattern] = None

    @model_validator(mode="before")
    @classmethod
    def expand_pattern(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "days" in data:
            return data
        try:
            pattern = WeekdayPattern(data.get("pattern"))
        except ValueError:
            return data
        if pattern in WEEKDAY_PATTERN_DAYS:
            return {**data, "days": list(WEEKDAY_PATTERN_DAYS[pattern])}
        return data

    @field_validator("days")
    @classmethod
    def normalize_days(cls, days: list[int]) -> list[int]:
        return sorted(set(days))

    @model_validator(mode="after")
    def match_pattern(self) -> "WeeklyConfig":
        # Explicit days win; a named pattern must describe them.
        expected = WEEKDAY_PATTERN_DAYS.get(self.pattern) if self.pattern else None
        if expected is not None and self.days != expected:
            self.pattern = WeekdayPattern.custom
        return self


class MonthlyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: int = Field(..., ge=1)
    day_of_month: int = Field(..., ge=1, le=31)


class YearlyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: int = Field(..., ge=1, le=12)
    day: int = Field(..., ge=1, le=31)


class CustomConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_days: int = Field(..., ge=1)


FrequencyConfig = Union[DailyConfig, WeeklyConfig, MonthlyConfig, YearlyConfig, CustomConfig]

CONFIG_MODELS: dict[Frequency, type[BaseModel]] = {
    Frequency.daily: DailyConfig,
    Frequency.weekly: WeeklyConfig,
    Frequency.monthly: MonthlyConfig,
    Frequency.yearly: YearlyConfig,
    Frequency.custom: CustomConfig,
}


def parse_frequency_config(frequency: Frequency, raw: Any) -> FrequencyConfig:
    """Validate ``raw`` against the config shape of ``frequency``.

    Raises ``pydantic.ValidationError`` when the payload belongs to a different
    frequency or violates its constraints.
    """
    return CONFIG_MODELS[Frequency(frequency)].model_validate(raw)


class RecurringRuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=100)
    description: str = Field(default="", max_length=500)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    frequency: Frequency
    frequency_config: dict[str, Any]
    start_date: date
    end_date: Optional[date] = None
    max_generations: Optional[int] = Field(default=None, ge=1)

    @field_validator("name", "category")
    @classmethod
    def strip_and_require(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value


class RecurringRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    description: str
    amount: Decimal
    category: str
    frequency: Frequency
    frequency_config: dict[str, Any]
    start_date: date
    end_date: Optional[date]
    status: RuleStatus
    is_active: bool
    next_occurrence_date: date
    last_generated_date: Optional[date]
    generation_count: int
    max_generations: Optional[int]
    created_at: datetime
    updated_at: datetime


class ToggleIn(BaseModel):
    active: bool


class GenerateIn(BaseModel):
    as_of: Optional[date] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    amount: Decimal
    category: str
    note: Optional[str]
    source_rule_id: Optional[int]


class GenerationErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: int
    occurrence_date: Optional[date]
    error: str


class RunSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    as_of: date
    successful: int
    failed: int
    skipped: int
    generated: list[ExpenseOut]
    errors: list[GenerationErrorOut]


class UpcomingOccurrenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: int
    name: str
    amount: Decimal
    category: str
    frequency: Frequency
    description: str
    projected_date: date


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
