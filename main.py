import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from fastapi.responses import StreamingResponse

from categories import resolve_category
from client import ClientRegistry, LedgerClient
from csv_utils import export_expenses, export_one_time_investments
from database import SessionLocal
from errors import (
    LedgerError,
    LedgerValidationError,
    NotFound,
    TransientStoreError,
    Unauthorized,
)
from models import RecurringKind
from months import current_month, parse_month
from records import RecordFilters
from scheduler import SchedulerManager
from schemas import (
    ActivityOut,
    ExpenseIn,
    ExpenseIngestIn,
    ExpensePatch,
    InstancePatch,
    MonthlyStats,
    OneTimeInvestmentIn,
    OneTimeInvestmentPatch,
    SalaryIn,
    TemplateIn,
    TemplatePatch,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Monthly Ledger")

registry = ClientRegistry(SessionLocal)
scheduler_manager = SchedulerManager(registry)


@app.on_event("startup")
async def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_manager.stop()
    registry.close()


def get_registry() -> ClientRegistry:
    return registry


def owner_from_request(x_owner_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return (x_owner_id or "").strip() or None


def get_client(
    owner_id: Optional[str] = Depends(owner_from_request),
    clients: ClientRegistry = Depends(get_registry),
) -> LedgerClient:
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return clients.get(owner_id)


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Unauthorized):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, LedgerValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        logger.warning(f"store_unavailable: error={exc}")
        return HTTPException(status_code=503, detail="Store temporarily unavailable")
    return HTTPException(status_code=500, detail=str(exc))


def month_from_query(month: Optional[str] = None) -> str:
    if not month:
        return current_month()
    try:
        return parse_month(month)
    except LedgerValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/stats")
async def api_stats(
    month: str = Depends(month_from_query),
    owner_id: Optional[str] = Depends(owner_from_request),
    clients: ClientRegistry = Depends(get_registry),
):
    if not owner_id:
        return MonthlyStats.empty(month)
    try:
        return await clients.get(owner_id).monthly_stats(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/overview")
async def api_overview(
    month: str = Depends(month_from_query),
    owner_id: Optional[str] = Depends(owner_from_request),
    clients: ClientRegistry = Depends(get_registry),
):
    try:
        return await clients.get(owner_id).monthly_overview(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/months")
async def api_months(client: LedgerClient = Depends(get_client)):
    try:
        return {"months": await client.available_months()}
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/expenses")
async def api_expenses(
    month: str = Depends(month_from_query),
    category: Optional[str] = None,
    q: Optional[str] = None,
    client: LedgerClient = Depends(get_client),
):
    try:
        filters = RecordFilters(
            category=resolve_category(category) if category else None,
            query=(q or "").strip() or None,
        )
        items = await client.expenses(month, filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"month": month, "items": items}


@app.post("/api/expenses", status_code=201)
async def api_create_expense(
    data: ExpenseIn, client: LedgerClient = Depends(get_client)
):
    try:
        return await client.add_expense(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/expenses/ingest", status_code=201)
async def api_ingest_expense(
    data: ExpenseIngestIn, client: LedgerClient = Depends(get_client)
):
    try:
        return await client.ingest_expense(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/expenses/{expense_id}")
async def api_update_expense(
    expense_id: int, data: ExpensePatch, client: LedgerClient = Depends(get_client)
):
    try:
        expense = await client.update_expense(expense_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if expense is None:
        raise HTTPException(status_code=404, detail="Expense not found")
    return expense


@app.delete("/api/expenses/{expense_id}", status_code=204)
async def api_delete_expense(
    expense_id: int, client: LedgerClient = Depends(get_client)
):
    try:
        deleted = await client.delete_expense(expense_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if deleted is None:
        raise HTTPException(status_code=404, detail="Expense not found")
    return Response(status_code=204)


@app.get("/api/expenses/export.csv")
async def api_export_expenses(client: LedgerClient = Depends(get_client)):
    try:
        expenses = await client.all_expenses()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    csv_text = export_expenses(expenses)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"expenses_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/one-time-investments")
async def api_one_time_investments(
    month: str = Depends(month_from_query), client: LedgerClient = Depends(get_client)
):
    try:
        items = await client.one_time_investments(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"month": month, "items": items}


@app.post("/api/one-time-investments", status_code=201)
async def api_create_one_time_investment(
    data: OneTimeInvestmentIn, client: LedgerClient = Depends(get_client)
):
    try:
        return await client.add_one_time_investment(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/one-time-investments/{investment_id}")
async def api_update_one_time_investment(
    investment_id: int,
    data: OneTimeInvestmentPatch,
    client: LedgerClient = Depends(get_client),
):
    try:
        investment = await client.update_one_time_investment(investment_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if investment is None:
        raise HTTPException(status_code=404, detail="Investment not found")
    return investment


@app.delete("/api/one-time-investments/{investment_id}", status_code=204)
async def api_delete_one_time_investment(
    investment_id: int, client: LedgerClient = Depends(get_client)
):
    try:
        deleted = await client.delete_one_time_investment(investment_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if deleted is None:
        raise HTTPException(status_code=404, detail="Investment not found")
    return Response(status_code=204)


@app.get("/api/one-time-investments/export.csv")
async def api_export_one_time_investments(client: LedgerClient = Depends(get_client)):
    try:
        investments = await client.all_one_time_investments()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    csv_text = export_one_time_investments(investments)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"one_time_investments_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/recurring/{kind}/templates")
async def api_templates(kind: RecurringKind, client: LedgerClient = Depends(get_client)):
    try:
        return {"items": await client.templates(kind)}
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/recurring/{kind}/templates", status_code=201)
async def api_create_template(
    kind: RecurringKind,
    data: TemplateIn,
    month: Optional[str] = None,
    client: LedgerClient = Depends(get_client),
):
    try:
        return await client.create_template(kind, data, month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/recurring/{kind}/templates/{template_id}")
async def api_update_template(
    kind: RecurringKind,
    template_id: int,
    data: TemplatePatch,
    month: Optional[str] = None,
    client: LedgerClient = Depends(get_client),
):
    try:
        template = await client.update_template(kind, template_id, data, month)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@app.delete("/api/recurring/{kind}/templates/{template_id}", status_code=204)
async def api_delete_template(
    kind: RecurringKind,
    template_id: int,
    month: Optional[str] = None,
    client: LedgerClient = Depends(get_client),
):
    try:
        deleted = await client.delete_template(kind, template_id, month)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Template not found")
    return Response(status_code=204)


@app.get("/api/recurring/{kind}/instances")
async def api_instances(
    kind: RecurringKind,
    month: str = Depends(month_from_query),
    client: LedgerClient = Depends(get_client),
):
    try:
        if kind == RecurringKind.fixed_cost:
            items = await client.fixed_cost_instances(month)
        elif kind == RecurringKind.investment:
            items = await client.investment_instances(month)
        else:
            instance = await client.salary_instance(month)
            items = [instance] if instance else []
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"month": month, "items": items}


@app.patch("/api/recurring/{kind}/instances/{instance_id}")
async def api_update_instance(
    kind: RecurringKind,
    instance_id: int,
    data: InstancePatch,
    client: LedgerClient = Depends(get_client),
):
    try:
        instance = await client.update_instance(kind, instance_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if instance is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance


@app.get("/api/salary")
async def api_salary(
    month: str = Depends(month_from_query), client: LedgerClient = Depends(get_client)
):
    try:
        template = await client.salary_template()
        instance = await client.salary_instance(month) if template else None
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"month": month, "template": template, "instance": instance}


@app.put("/api/salary")
async def api_set_salary(
    data: SalaryIn,
    month: Optional[str] = None,
    client: LedgerClient = Depends(get_client),
):
    try:
        return await client.set_salary(data.default_amount_cents, month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/activity")
async def api_activity(limit: int = 50, client: LedgerClient = Depends(get_client)):
    limit = min(max(limit, 1), 200)
    try:
        entries = await client.recent_activity(limit)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"items": [ActivityOut.model_validate(e) for e in entries]}


@app.delete("/api/session", status_code=204)
async def api_sign_out(
    owner_id: Optional[str] = Depends(owner_from_request),
    clients: ClientRegistry = Depends(get_registry),
):
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    clients.release(owner_id)
    return Response(status_code=204)
