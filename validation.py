from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein

from schemas import RecurringRuleIn, parse_frequency_config


class CategoryProvider(Protocol):
    def is_valid_category(self, name: str) -> bool: ...


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class RuleValidationError(ValueError):
    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = errors
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors))


def _pydantic_errors(exc: ValidationError, prefix: str = "") -> list[FieldError]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        field = f"{prefix}.{loc}" if prefix and loc else (prefix or loc)
        errors.append(FieldError(field=field, message=err["msg"]))
    return errors


def _suggest_category(name: str, candidates: list[str]) -> Optional[str]:
    name_lower = name.strip().lower()
    best_distance: Optional[int] = None
    best: list[str] = []
    for candidate in candidates:
        dist = int(Levenshtein.distance(name_lower, candidate.strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


def check_rule_payload(
    payload: Mapping[str, Any],
    categories: Optional[CategoryProvider] = None,
) -> tuple[Optional[RecurringRuleIn], list[FieldError]]:
    """Validate a rule payload and collect every field-level problem.

    Returns the parsed rule (with ``frequency_config`` normalized for its
    frequency) only when no error was found.
    """
    errors: list[FieldError] = []
    try:
        data = RecurringRuleIn.model_validate(dict(payload))
    except ValidationError as exc:
        errors.extend(_pydantic_errors(exc))
        data = None

    if data is not None:
        try:
            config = parse_frequency_config(data.frequency, data.frequency_config)
        except ValidationError as exc:
            errors.extend(_pydantic_errors(exc, prefix="frequency_config"))
        else:
            data.frequency_config = config.model_dump(mode="json", exclude_none=True)

        if data.end_date is not None and data.end_date <= data.start_date:
            errors.append(
                FieldError("end_date", "End date must be after start date")
            )

        if categories is not None and not categories.is_valid_category(data.category):
            message = f"Unknown category '{data.category}'"
            names = getattr(categories, "category_names", None)
            if callable(names):
                suggestion = _suggest_category(data.category, names())
                if suggestion:
                    message += f"; did you mean '{suggestion}'?"
            errors.append(FieldError("category", message))

    if errors:
        return None, errors
    return data, []


def validate_rule_payload(
    payload: Mapping[str, Any],
    categories: Optional[CategoryProvider] = None,
) -> list[FieldError]:
    return check_rule_payload(payload, categories)[1]


def parse_rule_payload(
    payload: Mapping[str, Any],
    categories: Optional[CategoryProvider] = None,
) -> RecurringRuleIn:
    data, errors = check_rule_payload(payload, categories)
    if errors:
        raise RuleValidationError(errors)
    return data
