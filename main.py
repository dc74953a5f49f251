import logging
from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session, sessionmaker

from aggregator import AggregatorClient, PlaidAggregatorClient
from aggregates import AggregateMaintainer
from auth import current_user_id
from config import get_settings
from database import SessionLocal, session_scope
from errors import ExternalServiceError, FinanceError
from ledger import TransactionFilters
from models import Direction, Origin
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ContributionIn,
    GoalIn,
    GoalOut,
    GoalUpdate,
    ImportIn,
    ImportResultOut,
    LinkExchangeIn,
    LinkOut,
    ScoreOut,
    SyncResultOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from scoring import ScoreEngine
from services import CategoryService, GoalService, TransactionService
from sync import ExternalSyncReconciler

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


@lru_cache(maxsize=1)
def _plaid_client() -> PlaidAggregatorClient:
    return PlaidAggregatorClient()


def get_aggregator() -> AggregatorClient:
    return _plaid_client()


@app.exception_handler(FinanceError)
def finance_error_handler(request: Request, exc: FinanceError):
    return JSONResponse(
        status_code=exc.status_code, content={"code": exc.code, "message": exc.message}
    )


@app.exception_handler(ExternalServiceError)
def external_error_handler(request: Request, exc: ExternalServiceError):
    logger.warning(
        f"external_service_error: operation={exc.operation} "
        f"code={exc.aggregator_code} request_id={exc.request_id}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": exc.code,
            "message": exc.message,
            "aggregator_code": exc.aggregator_code,
            "request_id": exc.request_id,
        },
    )


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=400, content={"code": "VALIDATION_ERROR", "message": details}
    )


# Categories


@app.get("/api/categories")
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [
        CategoryOut.model_validate(c) for c in CategoryService(db, user_id).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryOut.model_validate(CategoryService(db, user_id).create(data))


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryOut.model_validate(CategoryService(db, user_id).get(category_id))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).update(category_id, data)
    return CategoryOut.model_validate(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    direction: Optional[Direction] = None,
    category: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    q: Optional[str] = None,
    duplicates: Optional[bool] = None,
    origin: Optional[Origin] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        direction=direction,
        category=category,
        start=start,
        end=end,
        query=q,
        possible_duplicate=duplicates,
        origin=origin,
    )
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    return {
        "items": [TransactionOut.model_validate(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).create(data)
    return {
        "transaction": TransactionOut.model_validate(result.record),
        "warnings": result.warnings,
    }


@app.post("/api/transactions/import")
def import_transactions(
    data: ImportIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    summary = TransactionService(db, user_id).import_rows(data.rows)
    return ImportResultOut(**summary)


@app.delete("/api/transactions/all")
def clear_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    removed = TransactionService(db, user_id).clear()
    return {"removed": removed}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionOut.model_validate(
        TransactionService(db, user_id).get(transaction_id)
    )


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).update(transaction_id, data)
    return {
        "transaction": TransactionOut.model_validate(result.record),
        "warnings": result.warnings,
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    warnings = TransactionService(db, user_id).delete(transaction_id)
    return {"deleted": transaction_id, "warnings": warnings}


@app.put("/api/transactions/{transaction_id}/not-duplicate")
def mark_transaction_not_duplicate(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).mark_not_duplicate(transaction_id)
    return TransactionOut.model_validate(txn)


# Goals


@app.get("/api/goals")
def list_goals(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return [GoalOut.model_validate(goal) for goal in GoalService(db, user_id).list_all()]


@app.post("/api/goals", status_code=201)
def create_goal(
    data: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return GoalOut.model_validate(GoalService(db, user_id).create(data))


@app.get("/api/goals/{goal_id}")
def get_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return GoalOut.model_validate(GoalService(db, user_id).get(goal_id))


@app.patch("/api/goals/{goal_id}")
def update_goal(
    goal_id: int,
    data: GoalUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return GoalOut.model_validate(GoalService(db, user_id).update(goal_id, data))


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    GoalService(db, user_id).delete(goal_id)
    return Response(status_code=204)


@app.post("/api/goals/{goal_id}/contribute")
def contribute_to_goal(
    goal_id: int,
    data: ContributionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user_id).contribute(goal_id, data.amount_cents)
    return GoalOut.model_validate(goal)


# Score


@app.get("/api/score")
def get_score(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ScoreOut.model_validate(ScoreEngine(db, user_id).get_score())


@app.post("/api/score/recompute")
def recompute_score(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return ScoreOut.model_validate(ScoreEngine(db, user_id).recompute())


# Bank links


@app.post("/api/links/link-handle")
def create_link_handle(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    handle = ExternalSyncReconciler(db, client).create_link_handle(user_id)
    return {"link_token": handle.link_token, "expiration": handle.expiration}


@app.post("/api/links/exchange", status_code=201)
def exchange_public_token(
    data: LinkExchangeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    link = ExternalSyncReconciler(db, client).exchange_token(
        user_id,
        data.public_token,
        institution_id=data.institution_id,
        institution_name=data.institution_name,
    )
    return LinkOut.model_validate(link)


@app.get("/api/links")
def list_links(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    links = ExternalSyncReconciler(db, client).list_links(user_id)
    return [LinkOut.model_validate(link) for link in links]


@app.post("/api/links/{item_id}/refresh")
def refresh_link(
    item_id: str,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    result = ExternalSyncReconciler(db, client).refresh_link(user_id, item_id)
    return SyncResultOut(**vars(result))


@app.post("/api/links/{item_id}/remove")
def remove_link(
    item_id: str,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    link = ExternalSyncReconciler(db, client).remove_link(user_id, item_id)
    return {"item_id": link.item_id, "status": link.status.value}


# Aggregator callbacks


def process_webhook_event(
    event_id: int, factory: sessionmaker, client: AggregatorClient
) -> None:
    with session_scope(factory) as session:
        ExternalSyncReconciler(session, client).process_event(event_id)


@app.post("/webhooks/aggregator")
async def aggregator_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: sessionmaker = Depends(get_session_factory),
    client: AggregatorClient = Depends(get_aggregator),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook_rejected: reason=invalid_json")
        return {"status": "ignored"}
    try:
        event = ExternalSyncReconciler(db, client).record_webhook(payload)
    except FinanceError as exc:
        logger.warning(f"webhook_rejected: reason={exc.message}")
        return {"status": "ignored"}
    if not event.processed:
        background_tasks.add_task(process_webhook_event, event.id, factory, client)
    return {"status": "received", "event_id": event.id}


# Maintenance


@app.post("/admin/reconcile")
def admin_reconcile(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    corrected = AggregateMaintainer(db, user_id).reconcile()
    if corrected:
        ScoreEngine(db, user_id).invalidate()
    db.commit()
    return {"corrected": corrected}


@app.post("/admin/replay-webhooks")
def admin_replay_webhooks(
    limit: int = Query(default=100, ge=1, le=1000),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
):
    logger.info(f"webhook_replay_requested: user={user_id} limit={limit}")
    reconciler = ExternalSyncReconciler(db, client)
    return reconciler.replay_pending(limit=limit, user_id=user_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
