import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import CSVParseResult
from database import SessionLocal
from models import Tag, TagBudget, Transaction, TransactionType
from periods import Period, resolve_period
from reconciliation import BudgetReport, TagSummary
from schemas import (
    BudgetReorderIn,
    BulkDeleteIn,
    BulkDeleteResult,
    BulkImportResult,
    CSVRowTags,
    TagBudgetIn,
    TagColorIn,
    TagIn,
    TransactionIn,
)
from services import (
    BudgetService,
    BulkTransactionService,
    CSVService,
    RecordNotFound,
    TagService,
    TagSummaryService,
    TransactionService,
    cents_to_units,
    get_current_user_id,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Tag Budgets")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _validation_detail(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


def _parse(model, payload: Any):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc


def serialize_transaction(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "occurredAt": txn.occurred_at.isoformat(),
        "type": txn.type.value,
        "amount": cents_to_units(txn.amount_cents),
        "amountCents": txn.amount_cents,
        "currency": txn.currency.value,
        "description": txn.description,
        "tags": list(txn.tags or []),
    }


def serialize_tag(tag: Tag, colors: Optional[dict[str, str]] = None) -> dict:
    color = (colors or {}).get(tag.name, tag.color)
    return {"id": tag.id, "name": tag.name, "color": color}


def serialize_budget(budget: TagBudget) -> dict:
    return {
        "id": budget.id,
        "name": budget.name,
        "order": budget.order,
        "items": [
            {"tag": item.tag, "amount": cents_to_units(item.amount_cents)}
            for item in budget.items
        ],
    }


def serialize_report(report: BudgetReport, period: Period) -> dict:
    return {
        "period": {
            "slug": period.slug,
            "start": period.start.isoformat(),
            "end": period.end.isoformat(),
        },
        "lines": [
            {
                "tag": line.tag,
                "limit": cents_to_units(line.limit_cents),
                "spent": cents_to_units(line.expense_cents),
                "income": cents_to_units(line.income_cents),
                "outstanding": cents_to_units(line.outstanding_cents),
                "percentage": line.percentage,
                "status": line.status.value,
            }
            for line in report.lines
        ],
        "totalLimit": cents_to_units(report.total_limit_cents),
        "totalOutstanding": cents_to_units(report.total_outstanding_cents),
        "percentage": report.overall_percentage,
        "status": report.status.value,
    }


def serialize_tag_summary(summary: TagSummary) -> dict:
    return {
        "tagGroups": [
            {
                "tag": group.tag,
                "totalSpent": cents_to_units(group.total_spent_cents),
                "totalIncome": cents_to_units(group.total_income_cents),
                "transactionCount": group.transaction_count,
                "transactions": [serialize_transaction(t) for t in group.transactions],
            }
            for group in summary.groups
        ],
        "totalSpent": cents_to_units(summary.total_spent_cents),
        "totalIncome": cents_to_units(summary.total_income_cents),
    }


def serialize_preview(parsed: CSVParseResult) -> dict:
    return {
        "delimiter": parsed.delimiter,
        "headers": parsed.headers,
        "mapping": parsed.mapping.as_dict(),
        "rows": [
            {"rowNumber": candidate.row_number, **candidate.to_payload()}
            for candidate in parsed.candidates
        ],
        "errors": parsed.errors,
        "warnings": parsed.warnings,
    }


@app.get("/api/csrf-token")
def csrf_token():
    return {"csrfToken": generate_csrf_token(get_current_user_id())}


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    type: Optional[str] = None,
    tag: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    period = period_from_request(request) if request.query_params.get("period") else None
    try:
        txn_type = TransactionType(type.upper()) if type else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid transaction type") from exc
    service = TransactionService(db)
    items = service.list(
        period,
        txn_type=txn_type,
        tag=tag,
        limit=max(1, min(limit, 500)),
        offset=max(0, offset),
    )
    return {
        "transactions": [serialize_transaction(t) for t in items],
        "total": service.count(),
    }


@app.post("/api/transactions", status_code=201)
async def create_transaction(request: Request, db: Session = Depends(get_db)):
    data = _parse(TransactionIn, await _json_body(request))
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.post("/api/transactions/bulk")
async def bulk_create_transactions(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    items = payload.get("transactions") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise HTTPException(
            status_code=400, detail="Invalid request: transactions must be an array"
        )
    try:
        result: BulkImportResult = BulkTransactionService(db).import_transactions(items)
    except Exception as exc:
        logger.exception("bulk_import_error")
        raise HTTPException(
            status_code=500, detail="Failed to import transactions"
        ) from exc
    return result.model_dump()


@app.delete("/api/transactions/bulk")
async def bulk_delete_transactions(request: Request, db: Session = Depends(get_db)):
    data = _parse(BulkDeleteIn, await _json_body(request))
    try:
        result: BulkDeleteResult = BulkTransactionService(db).delete_transactions(
            data.transaction_ids
        )
    except Exception as exc:
        logger.exception("bulk_delete_error")
        raise HTTPException(
            status_code=500, detail="Failed to delete transactions"
        ) from exc
    return result.model_dump()


@app.post("/api/transactions/import/preview")
async def import_preview(
    csrf_token: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    raw = await file.read()
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 text") from exc
    try:
        parsed = CSVService(db).preview(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(
        f"csv_preview: filename={file.filename!r} rows={len(parsed.candidates)} "
        f"errors={len(parsed.errors)} warnings={len(parsed.warnings)}"
    )
    return serialize_preview(parsed)


@app.post("/api/transactions/import/commit")
async def import_commit(
    csrf_token: str = Form(...),
    tags: str = Form(""),
    row_tags: str = Form(""),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 text") from exc
    shared_tags = [t.strip() for t in tags.split(",") if t.strip()]
    try:
        per_row = CSVRowTags.validate_json(row_tags) if row_tags.strip() else {}
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc
    try:
        result = CSVService(db).commit(content, tags=shared_tags, row_tags=per_row)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.model_dump()


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.put("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: int, request: Request, db: Session = Depends(get_db)
):
    data = _parse(TransactionIn, await _json_body(request))
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/tags")
def list_tags(q: Optional[str] = None, db: Session = Depends(get_db)):
    service = TagService(db)
    colors = service.display_colors()
    return {"tags": [serialize_tag(tag, colors) for tag in service.list_all(q)]}


@app.post("/api/tags", status_code=201)
async def create_tag(request: Request, db: Session = Depends(get_db)):
    data = _parse(TagIn, await _json_body(request))
    try:
        tag = TagService(db).create(data.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_tag(tag)


@app.get("/api/tags/colors")
def tag_colors(db: Session = Depends(get_db)):
    return {"colors": TagService(db).display_colors()}


@app.put("/api/tags/colors/{name}")
async def set_tag_color(name: str, request: Request, db: Session = Depends(get_db)):
    data = _parse(TagColorIn, await _json_body(request))
    try:
        override = TagService(db).set_color(name, data.color)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"name": override.tag_name, "color": override.color}


@app.delete("/api/tags/colors/{name}")
def clear_tag_color(name: str, db: Session = Depends(get_db)):
    service = TagService(db)
    service.clear_color(name)
    return {"name": name, "color": service.display_color(name)}


@app.put("/api/tags/{tag_id}")
async def rename_tag(tag_id: int, request: Request, db: Session = Depends(get_db)):
    data = _parse(TagIn, await _json_body(request))
    try:
        tag = TagService(db).rename(tag_id, data.name)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_tag(tag)


@app.delete("/api/tags/{tag_id}")
def delete_tag(tag_id: int, db: Session = Depends(get_db)):
    try:
        swept = TagService(db).delete(tag_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "updatedTransactions": swept}


@app.get("/api/budget/tags")
def budget_tags(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    summary = TagSummaryService(db).for_period(period)
    return serialize_tag_summary(summary)


@app.get("/api/budgets")
def list_budgets(db: Session = Depends(get_db)):
    return {"budgets": [serialize_budget(b) for b in BudgetService(db).list_all()]}


@app.post("/api/budgets", status_code=201)
async def create_budget(request: Request, db: Session = Depends(get_db)):
    data = _parse(TagBudgetIn, await _json_body(request))
    budget = BudgetService(db).create(data)
    return serialize_budget(budget)


@app.get("/api/budgets/active")
def active_budget(db: Session = Depends(get_db)):
    budget = BudgetService(db).active()
    return {"budget": serialize_budget(budget) if budget else None}


@app.put("/api/budgets/reorder")
async def reorder_budgets(request: Request, db: Session = Depends(get_db)):
    data = _parse(BudgetReorderIn, await _json_body(request))
    BudgetService(db).reorder(data.budget_ids)
    return {"success": True}


@app.get("/api/budgets/suggestions")
def budget_suggestions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    values = BudgetService(db).suggestions(period)
    return {"suggestions": {tag: cents_to_units(cents) for tag, cents in values.items()}}


@app.get("/api/budgets/{budget_id}")
def get_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).get(budget_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_budget(budget)


@app.put("/api/budgets/{budget_id}")
async def update_budget(budget_id: int, request: Request, db: Session = Depends(get_db)):
    data = _parse(TagBudgetIn, await _json_body(request))
    try:
        budget = BudgetService(db).update(budget_id, data)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_budget(budget)


@app.delete("/api/budgets/{budget_id}")
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True}


@app.post("/api/budgets/{budget_id}/activate")
def activate_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).set_active(budget_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_budget(budget)


@app.get("/api/budgets/{budget_id}/progress")
def budget_progress(budget_id: int, request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    try:
        report = BudgetService(db).progress(budget_id, period)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_report(report, period)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
