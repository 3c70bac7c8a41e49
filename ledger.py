from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from models import Expense, amount_to_cents


class ExpenseSinkError(Exception):
    pass


class ExpenseValidationFailed(ExpenseSinkError):
    pass


class ExpenseStoreUnavailable(ExpenseSinkError):
    pass


class ExpenseSink(Protocol):
    def create_expense(
        self,
        amount: Decimal,
        category: str,
        date: date,
        note: Optional[str],
        source_rule_id: Optional[int] = None,
    ) -> Expense: ...


class LedgerExpenseSink:
    """Writes expenses through the caller's session.

    The row is only flushed; committing (or rolling back the surrounding
    savepoint) stays with the caller so a generated expense and the rule
    advancement land together.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create_expense(
        self,
        amount: Decimal,
        category: str,
        date: date,
        note: Optional[str],
        source_rule_id: Optional[int] = None,
    ) -> Expense:
        if amount is None or Decimal(amount) <= 0:
            raise ExpenseValidationFailed("Amount must be greater than 0")
        if not category or not category.strip():
            raise ExpenseValidationFailed("Category is required")
        expense = Expense(
            user_id=self.user_id,
            date=date,
            amount_cents=amount_to_cents(amount),
            category=category.strip(),
            note=note,
            source_rule_id=source_rule_id,
        )
        self.session.add(expense)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ExpenseValidationFailed(
                f"Expense for rule {source_rule_id} on {date.isoformat()} already exists"
            ) from exc
        except OperationalError as exc:
            raise ExpenseStoreUnavailable(str(exc.orig or exc)) from exc
        return expense


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        source_rule_id: Optional[int] = None,
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date, Expense.id)
        )
        if start is not None:
            stmt = stmt.where(Expense.date >= start)
        if end is not None:
            stmt = stmt.where(Expense.date <= end)
        if source_rule_id is not None:
            stmt = stmt.where(Expense.source_rule_id == source_rule_id)
        return list(self.session.scalars(stmt).all())
