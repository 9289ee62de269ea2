import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import (
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
    SynchronizationError,
    TransactionFailure,
)
from models import SourceKind
from scheduler import SchedulerManager
from schemas import (
    BalanceOut,
    BalanceUpdateIn,
    BalanceEntryOut,
    ContributionReceipt,
    GenerateIn,
    GoalContributionIn,
    GoalContributionOut,
    GoalDetail,
    GoalIn,
    GoalOut,
    LedgerEntryOut,
    RecurringSourceDetail,
    RecurringSourceIn,
    RecurringSourceOut,
    ToggleIn,
)
from services import (
    BalanceService,
    GoalContributionService,
    GoalService,
    RecurringSourceService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Savings Ledger")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, InsufficientBalanceError):
        status = 409
    elif isinstance(exc, (TransactionFailure, SynchronizationError)):
        status = 500
    else:
        status = 400
    return HTTPException(status_code=status, detail=exc.to_dict())


@app.get("/api/sources", response_model=list[RecurringSourceOut])
def list_sources(kind: Optional[SourceKind] = None, db: Session = Depends(get_db)):
    return RecurringSourceService(db).list(kind)


@app.post("/api/sources", response_model=RecurringSourceOut, status_code=201)
def create_source(data: RecurringSourceIn, db: Session = Depends(get_db)):
    try:
        return RecurringSourceService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/sources/{source_id}", response_model=RecurringSourceDetail)
def get_source(source_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringSourceService(db).get(source_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/sources/{source_id}", response_model=RecurringSourceOut)
def update_source(
    source_id: int, data: RecurringSourceIn, db: Session = Depends(get_db)
):
    try:
        return RecurringSourceService(db).update(source_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/sources/{source_id}/toggle", response_model=RecurringSourceOut)
def toggle_source(source_id: int, data: ToggleIn, db: Session = Depends(get_db)):
    try:
        return RecurringSourceService(db).set_active(source_id, data.is_active)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/sources/{source_id}", status_code=204)
def delete_source(source_id: int, db: Session = Depends(get_db)):
    try:
        RecurringSourceService(db).delete(source_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/sources/{source_id}/entries", response_model=list[LedgerEntryOut])
def list_source_entries(source_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringSourceService(db).list_entries(source_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/entries/generate")
def generate_entries(data: GenerateIn, db: Session = Depends(get_db)):
    counts = RecurringSourceService(db).generate_missing(data.kind)
    return {"generated": counts}


@app.get("/api/summary")
def monthly_summary(db: Session = Depends(get_db)):
    return RecurringSourceService(db).monthly_summary()


@app.get("/api/balance", response_model=BalanceOut)
def get_balance(db: Session = Depends(get_db)):
    return BalanceService(db).overview()


@app.post("/api/balance", response_model=BalanceEntryOut, status_code=201)
def update_balance(data: BalanceUpdateIn, db: Session = Depends(get_db)):
    try:
        return BalanceService(db).update_starting_balance(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(db: Session = Depends(get_db)):
    return GoalService(db).list()


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(data: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db).create(data)


@app.get("/api/goals/{goal_id}", response_model=GoalDetail)
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        return GoalService(db).get_detail(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(goal_id: int, data: GoalIn, db: Session = Depends(get_db)):
    try:
        return GoalService(db).update(goal_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        GoalService(db).delete(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get(
    "/api/goals/{goal_id}/contributions", response_model=list[GoalContributionOut]
)
def list_contributions(goal_id: int, db: Session = Depends(get_db)):
    try:
        return GoalService(db).list_contributions(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/goals/{goal_id}/contributions",
    response_model=ContributionReceipt,
    status_code=201,
)
def create_contribution(
    goal_id: int, data: GoalContributionIn, db: Session = Depends(get_db)
):
    try:
        writes = GoalContributionService(db).contribute(goal_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return ContributionReceipt(
        contribution=GoalContributionOut.model_validate(writes.contribution),
        goal=GoalOut.model_validate(writes.goal),
        balance_entry=BalanceEntryOut.model_validate(writes.balance_entry),
    )


@app.delete(
    "/api/goals/{goal_id}/contributions/{contribution_id}",
    response_model=ContributionReceipt,
)
def delete_contribution(
    goal_id: int, contribution_id: int, db: Session = Depends(get_db)
):
    try:
        writes = GoalContributionService(db).reverse(goal_id, contribution_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return ContributionReceipt(
        contribution=GoalContributionOut.model_validate(writes.contribution),
        goal=GoalOut.model_validate(writes.goal),
        balance_entry=BalanceEntryOut.model_validate(writes.balance_entry),
    )
