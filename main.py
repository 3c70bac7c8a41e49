import logging
from datetime import date
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, init_db
from ledger import ExpenseService
from models import Frequency, RuleStatus
from projection import MAX_HORIZON_DAYS
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryOut,
    ExpenseOut,
    GenerateIn,
    RecurringRuleOut,
    RunSummaryOut,
    ToggleIn,
    UpcomingOccurrenceOut,
)
from services import (
    CategoryService,
    RecurringRuleService,
    RuleFilters,
    RuleNotFound,
    get_current_user_id,
)
from validation import RuleValidationError


app = FastAPI(title="Recurring Expenses")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id() -> int:
    return get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def validation_error(exc: RuleValidationError) -> HTTPException:
    return HTTPException(
        status_code=422, detail={"errors": [e.as_dict() for e in exc.errors]}
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    return CategoryService(db, user_id).list_all()


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/expenses", response_model=list[ExpenseOut])
def list_expenses(
    start: Optional[date] = None,
    end: Optional[date] = None,
    rule_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return ExpenseService(db, user_id).list(start, end, source_rule_id=rule_id)


@app.get("/recurring", response_model=list[RecurringRuleOut])
def list_recurring(
    status: Optional[RuleStatus] = None,
    is_active: Optional[bool] = None,
    frequency: Optional[Frequency] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    filters = RuleFilters(
        status=status, is_active=is_active, frequency=frequency, category=category
    )
    return RecurringRuleService(db, user_id).list(filters)


@app.get("/recurring/templates")
def recurring_templates(
    db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    return RecurringRuleService(db, user_id).templates()


@app.get("/recurring/statistics")
def recurring_statistics(
    db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    return RecurringRuleService(db, user_id).get_statistics()


@app.get("/recurring/upcoming", response_model=list[UpcomingOccurrenceOut])
def recurring_upcoming(
    days: int = Query(30, ge=0, le=MAX_HORIZON_DAYS),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return RecurringRuleService(db, user_id).upcoming(days)


@app.post("/recurring/generate", response_model=RunSummaryOut)
def generate_recurring(
    data: Optional[GenerateIn] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    as_of = data.as_of if data else None
    summary = RecurringRuleService(db, user_id).generate_due_occurrences(as_of)
    logging.info(
        f"recurring_generate_request: user_id={user_id} "
        f"successful={summary.successful} failed={summary.failed}"
    )
    return RunSummaryOut.model_validate(summary)


@app.post("/recurring", response_model=RecurringRuleOut, status_code=201)
def create_recurring(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringRuleService(db, user_id).create(payload)
    except RuleValidationError as exc:
        raise validation_error(exc) from exc


@app.get("/recurring/{rule_id}", response_model=RecurringRuleOut)
def get_recurring(
    rule_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return RecurringRuleService(db, user_id).get(rule_id)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/recurring/{rule_id}", response_model=RecurringRuleOut)
def update_recurring(
    rule_id: int,
    patch: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringRuleService(db, user_id).update(rule_id, patch)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RuleValidationError as exc:
        raise validation_error(exc) from exc


@app.delete("/recurring/{rule_id}", status_code=204)
def delete_recurring(
    rule_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        RecurringRuleService(db, user_id).delete(rule_id)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/recurring/{rule_id}/toggle", response_model=RecurringRuleOut)
def toggle_recurring(
    rule_id: int,
    data: ToggleIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return RecurringRuleService(db, user_id).toggle_active(rule_id, data.active)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/recurring/{rule_id}/occurrences", response_model=list[ExpenseOut])
def recurring_occurrences(
    rule_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        rule = RecurringRuleService(db, user_id).get(rule_id)
    except RuleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ExpenseService(db, user_id).list(source_rule_id=rule.id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
