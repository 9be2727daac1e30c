import asyncio
import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .errors import (
    AuthorizationStartError,
    AuthorizationStateError,
    ConnectionExistsError,
    ConnectionUnavailableError,
    ProviderError,
    StorageError,
)
from .models import Budget, BudgetAlert, BudgetProgress, Category, Connection, StoredBankAccount, Transaction
from .persistence import get_persistence
from .providers.registry import get_provider
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    BankAccountResponse,
    BankCallbackResponse,
    BankConnectRequest,
    BankConnectResponse,
    BudgetAlertResponse,
    BudgetCreate,
    BudgetProgressResponse,
    BudgetResponse,
    BudgetUpdate,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    ConnectionResponse,
    HealthResponse,
    SyncRequest,
    SyncResponse,
    TransactionCreate,
    TransactionResponse,
)
from .services.budgets import budgets_for_period, list_alerts, month_start, period_bounds, progress_for_period
from .services.connections import ConnectionManager, status_message
from .services.sync import TransactionSyncService
from .store import InMemoryStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Slim Minder API",
    version="0.1.0",
    description="Bank connections, transaction sync and budget tracking.",
)

persistence = get_persistence()
provider = get_provider(settings)
connections = ConnectionManager(
    persistence,
    {provider.name: provider},
    refresh_skew=timedelta(seconds=settings.token_refresh_skew_seconds),
    call_timeout=settings.ob_timeout_secs,
    pending_ttl=timedelta(minutes=settings.pending_connection_ttl_minutes),
)
sync_service = TransactionSyncService(connections, persistence, timeout=settings.ob_timeout_secs)
cleanup_task: asyncio.Task | None = None


def build_error_response(
    details: list[ApiErrorDetail],
    message: str = "Invalid request payload",
    code: str = "VALIDATION_ERROR",
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(ConnectionExistsError)
async def connection_exists_handler(request: Request, exc: ConnectionExistsError) -> JSONResponse:
    return build_error_response([], message=str(exc), code="CONNECTION_EXISTS", status_code=409)


@app.exception_handler(AuthorizationStateError)
async def authorization_state_handler(request: Request, exc: AuthorizationStateError) -> JSONResponse:
    return build_error_response([], message=str(exc), code="STATE_ALREADY_USED", status_code=409)


@app.exception_handler(ConnectionUnavailableError)
async def connection_unavailable_handler(request: Request, exc: ConnectionUnavailableError) -> JSONResponse:
    return build_error_response(
        [ApiErrorDetail(field="connectionId", message=exc.connection_id)],
        message=str(exc),
        code="CONNECTION_UNAVAILABLE",
        status_code=409,
    )


@app.exception_handler(AuthorizationStartError)
async def authorization_start_handler(request: Request, exc: AuthorizationStartError) -> JSONResponse:
    return build_error_response([], message=str(exc), code="PROVIDER_ERROR", status_code=502)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    logger.warning("provider_error: path=%s error=%s", request.url.path, exc)
    return build_error_response([], message="Bank provider request failed", code="PROVIDER_ERROR", status_code=502)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error: path=%s error=%s", request.url.path, exc)
    return build_error_response([], message="Storage unavailable", code="STORAGE_ERROR", status_code=503)


def _require_user(x_sm_user_id: str | None) -> str:
    if not x_sm_user_id or not x_sm_user_id.strip():
        raise HTTPException(status_code=401, detail="missing X-SM-User-Id header")
    return x_sm_user_id.strip()


async def _owned_connection(user_id: str, connection_id: str) -> Connection:
    connection = await connections.get_connection(connection_id)
    if connection is None or connection.user_id != user_id:
        raise HTTPException(status_code=404, detail="connection not found")
    return connection


def _connection_response(connection: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        provider=connection.provider,
        status=connection.status,
        statusMessage=status_message(connection.status),
        permissions=connection.permissions,
        expiresAt=connection.expires_at,
        createdAt=connection.created_at,
        updatedAt=connection.updated_at,
    )


def _bank_account_response(account: StoredBankAccount) -> BankAccountResponse:
    return BankAccountResponse(
        id=account.id,
        connectionId=account.connection_id,
        provider=account.provider,
        providerAccountId=account.provider_account_id,
        displayName=account.display_name,
        currency=account.currency,
        iban=account.iban,
    )


def _category_response(category: Category) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        name=category.name,
        icon=category.icon,
        archived=category.archived,
        createdAt=category.created_at,
    )


def _budget_response(budget: Budget) -> BudgetResponse:
    return BudgetResponse(
        id=budget.id,
        categoryId=budget.category_id,
        limit=budget.limit,
        currency=budget.currency,
        startsOn=budget.starts_on,
        period=budget.period,
        active=budget.active,
    )


def _progress_response(progress: BudgetProgress) -> BudgetProgressResponse:
    return BudgetProgressResponse(
        budgetId=progress.budget_id,
        categoryId=progress.category_id,
        categoryName=progress.category_name,
        limit=progress.limit,
        currency=progress.currency,
        spent=progress.spent,
        remaining=progress.remaining,
        ratio=float(progress.ratio),
        percentage=round(float(progress.ratio) * 100, 1),
        alertType=progress.alert_type,
    )


def _alert_response(alert: BudgetAlert) -> BudgetAlertResponse:
    return BudgetAlertResponse(
        budgetId=alert.progress.budget_id,
        categoryId=alert.progress.category_id,
        categoryName=alert.progress.category_name,
        alertType=alert.alert_type,
        message=alert.message,
        spent=alert.progress.spent,
        limit=alert.progress.limit,
        ratio=float(alert.progress.ratio),
    )


def _transaction_response(tx: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        amount=tx.amount,
        currency=tx.currency,
        date=tx.date,
        categoryId=tx.category_id,
        description=tx.description,
        merchant=tx.merchant,
        bankAccountId=tx.bank_account_id,
    )


async def _cleanup_loop() -> None:
    interval = settings.cleanup_interval_minutes * 60
    while True:
        await asyncio.sleep(interval)
        try:
            await connections.cleanup_expired()
        except Exception:
            # Keep the sweep alive even if one run fails.
            logger.exception("connection_cleanup_failed")


@app.on_event("startup")
async def on_startup() -> None:
    global cleanup_task
    logger.info("startup: storage=%s provider=%s", settings.storage_backend, provider.name.value)
    if cleanup_task is None and settings.cleanup_interval_minutes > 0:
        cleanup_task = asyncio.create_task(_cleanup_loop())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global cleanup_task
    if cleanup_task is not None:
        cleanup_task.cancel()
        cleanup_task = None
    await provider.aclose()


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", provider=provider.name.value)


@app.post("/api/v1/bank/connect", response_model=BankConnectResponse, status_code=201)
async def connect_bank(
    payload: BankConnectRequest,
    x_sm_user_id: str | None = Header(default=None),
) -> BankConnectResponse:
    user_id = _require_user(x_sm_user_id)
    pending = await connections.create_connection(user_id, payload.provider or provider.name, payload.permissions)
    return BankConnectResponse(
        connectionId=pending.connection.id,
        authUrl=pending.auth_url,
        provider=pending.connection.provider,
        status=pending.connection.status,
    )


@app.get("/api/v1/bank/callback", response_model=BankCallbackResponse)
async def bank_callback(
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
) -> BankCallbackResponse:
    if not state:
        raise HTTPException(status_code=400, detail="missing state")
    if error:
        connection = await connections.fail_authorization(state, error)
    elif code:
        connection = await connections.complete_authorization(state, code)
    else:
        raise HTTPException(status_code=400, detail="missing code")
    if connection is None:
        raise HTTPException(status_code=404, detail="unknown authorization state")
    return BankCallbackResponse(
        connectionId=connection.id,
        status=connection.status,
        statusMessage=status_message(connection.status),
    )


@app.get("/api/v1/bank/connections", response_model=list[ConnectionResponse])
async def list_bank_connections(x_sm_user_id: str | None = Header(default=None)) -> list[ConnectionResponse]:
    user_id = _require_user(x_sm_user_id)
    return [_connection_response(c) for c in await connections.list_connections_by_user(user_id)]


@app.get("/api/v1/bank/connections/{connection_id}", response_model=ConnectionResponse)
async def get_bank_connection(connection_id: str, x_sm_user_id: str | None = Header(default=None)) -> ConnectionResponse:
    user_id = _require_user(x_sm_user_id)
    return _connection_response(await _owned_connection(user_id, connection_id))


@app.delete("/api/v1/bank/connections/{connection_id}", status_code=204)
async def delete_bank_connection(connection_id: str, x_sm_user_id: str | None = Header(default=None)) -> Response:
    user_id = _require_user(x_sm_user_id)
    await _owned_connection(user_id, connection_id)
    await connections.revoke(connection_id)
    await persistence.delete_bank_accounts_for_connection(connection_id)
    return Response(status_code=204)


@app.post("/api/v1/bank/connections/{connection_id}/accounts", response_model=list[BankAccountResponse])
async def import_bank_accounts(connection_id: str, x_sm_user_id: str | None = Header(default=None)) -> list[BankAccountResponse]:
    user_id = _require_user(x_sm_user_id)
    connection = await _owned_connection(user_id, connection_id)
    return [_bank_account_response(a) for a in await sync_service.import_accounts(connection)]


@app.get("/api/v1/bank/accounts", response_model=list[BankAccountResponse])
async def list_bank_accounts(x_sm_user_id: str | None = Header(default=None)) -> list[BankAccountResponse]:
    user_id = _require_user(x_sm_user_id)
    return [_bank_account_response(a) for a in await persistence.list_bank_accounts(user_id)]


@app.post("/api/v1/bank/sync", response_model=SyncResponse)
async def sync_bank(payload: SyncRequest, x_sm_user_id: str | None = Header(default=None)) -> SyncResponse:
    user_id = _require_user(x_sm_user_id)
    connection = await _owned_connection(user_id, payload.connectionId)
    if payload.accountId is None:
        stats = await sync_service.sync_connection(connection, payload.fromDate, payload.toDate)
    else:
        account = next(
            (
                a
                for a in await persistence.list_bank_accounts(user_id)
                if a.id == payload.accountId and a.connection_id == connection.id
            ),
            None,
        )
        if account is None:
            raise HTTPException(status_code=404, detail="bank account not found")
        stats = await sync_service.sync_account(connection, account, payload.fromDate, payload.toDate)
    return SyncResponse(created=stats.created, updated=stats.updated, unchanged=stats.unchanged)


@app.get("/api/v1/categories", response_model=list[CategoryResponse])
async def list_categories(
    includeArchived: bool = False,
    x_sm_user_id: str | None = Header(default=None),
) -> list[CategoryResponse]:
    user_id = _require_user(x_sm_user_id)
    return [_category_response(c) for c in await persistence.list_categories(user_id, include_archived=includeArchived)]


@app.post("/api/v1/categories", response_model=CategoryResponse, status_code=201)
async def create_category(payload: CategoryCreate, x_sm_user_id: str | None = Header(default=None)) -> CategoryResponse:
    user_id = _require_user(x_sm_user_id)
    category = await persistence.create_category(
        Category(
            id=InMemoryStore.make_id(),
            user_id=user_id,
            name=payload.name,
            icon=payload.icon,
            created_at=InMemoryStore.now(),
        )
    )
    return _category_response(category)


@app.put("/api/v1/categories/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: str,
    payload: CategoryUpdate,
    x_sm_user_id: str | None = Header(default=None),
) -> CategoryResponse:
    user_id = _require_user(x_sm_user_id)
    changes = {"name": payload.name, "icon": payload.icon, "archived": payload.archived}
    category = await persistence.update_category(user_id, category_id, changes)
    if category is None:
        raise HTTPException(status_code=404, detail="category not found")
    return _category_response(category)


@app.delete("/api/v1/categories/{category_id}", status_code=204)
async def archive_category(category_id: str, x_sm_user_id: str | None = Header(default=None)) -> Response:
    # soft delete: the row stays so progress can still show its name
    user_id = _require_user(x_sm_user_id)
    if await persistence.update_category(user_id, category_id, {"archived": True}) is None:
        raise HTTPException(status_code=404, detail="category not found")
    return Response(status_code=204)


@app.post("/api/v1/budgets", response_model=BudgetResponse, status_code=201)
async def create_budget(payload: BudgetCreate, x_sm_user_id: str | None = Header(default=None)) -> BudgetResponse:
    user_id = _require_user(x_sm_user_id)
    budget = await persistence.create_budget(
        Budget(
            id=InMemoryStore.make_id(),
            user_id=user_id,
            category_id=payload.categoryId,
            limit=payload.limit,
            currency=payload.currency,
            starts_on=payload.startsOn,
            period=payload.period,
            active=payload.active,
        )
    )
    return _budget_response(budget)


@app.get("/api/v1/budgets", response_model=list[BudgetResponse])
async def list_budgets(x_sm_user_id: str | None = Header(default=None)) -> list[BudgetResponse]:
    user_id = _require_user(x_sm_user_id)
    return [_budget_response(b) for b in await persistence.list_budgets(user_id)]


async def _period_inputs(
    user_id: str, period_start: Optional[date]
) -> tuple[date, list[Budget], list[Transaction], dict[str, str]]:
    anchor = month_start(period_start or date.today())
    budgets = budgets_for_period(await persistence.list_budgets(user_id), anchor)
    start, end = period_bounds(anchor)
    transactions = await persistence.list_transactions(
        user_id,
        from_date=start,
        to_date=end - timedelta(days=1),
        category_ids={b.category_id for b in budgets},
    )
    names = {c.id: c.name for c in await persistence.list_categories(user_id, include_archived=True)}
    return anchor, budgets, transactions, names


@app.get("/api/v1/budgets/progress", response_model=list[BudgetProgressResponse])
async def budget_progress(
    periodStart: Optional[date] = None,
    threshold: float = Query(default=settings.budget_alert_threshold, gt=0, le=1),
    x_sm_user_id: str | None = Header(default=None),
) -> list[BudgetProgressResponse]:
    user_id = _require_user(x_sm_user_id)
    anchor, budgets, transactions, names = await _period_inputs(user_id, periodStart)
    return [_progress_response(p) for p in progress_for_period(budgets, transactions, anchor, threshold, names)]


@app.get("/api/v1/budgets/alerts", response_model=list[BudgetAlertResponse])
async def budget_alerts(
    periodStart: Optional[date] = None,
    threshold: float = Query(default=settings.budget_alert_threshold, gt=0, le=1),
    x_sm_user_id: str | None = Header(default=None),
) -> list[BudgetAlertResponse]:
    user_id = _require_user(x_sm_user_id)
    _, budgets, transactions, names = await _period_inputs(user_id, periodStart)
    return [_alert_response(a) for a in list_alerts(budgets, transactions, threshold, names)]


@app.get("/api/v1/budgets/{budget_id}", response_model=BudgetResponse)
async def get_budget(budget_id: str, x_sm_user_id: str | None = Header(default=None)) -> BudgetResponse:
    user_id = _require_user(x_sm_user_id)
    budget = await persistence.get_budget(user_id, budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="budget not found")
    return _budget_response(budget)


@app.put("/api/v1/budgets/{budget_id}", response_model=BudgetResponse)
async def update_budget(
    budget_id: str,
    payload: BudgetUpdate,
    x_sm_user_id: str | None = Header(default=None),
) -> BudgetResponse:
    user_id = _require_user(x_sm_user_id)
    changes = {
        "limit": payload.limit,
        "currency": payload.currency,
        "starts_on": payload.startsOn,
        "period": payload.period,
        "active": payload.active,
    }
    budget = await persistence.update_budget(user_id, budget_id, changes)
    if budget is None:
        raise HTTPException(status_code=404, detail="budget not found")
    return _budget_response(budget)


@app.delete("/api/v1/budgets/{budget_id}", status_code=204)
async def delete_budget(
    budget_id: str,
    soft: bool = False,
    x_sm_user_id: str | None = Header(default=None),
) -> Response:
    user_id = _require_user(x_sm_user_id)
    if soft:
        found = await persistence.update_budget(user_id, budget_id, {"active": False}) is not None
    else:
        found = await persistence.delete_budget(user_id, budget_id)
    if not found:
        raise HTTPException(status_code=404, detail="budget not found")
    return Response(status_code=204)


@app.post("/api/v1/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(payload: TransactionCreate, x_sm_user_id: str | None = Header(default=None)) -> TransactionResponse:
    user_id = _require_user(x_sm_user_id)
    tx = await persistence.save_transaction(
        Transaction(
            id=InMemoryStore.make_id(),
            user_id=user_id,
            amount=payload.amount,
            currency=payload.currency,
            date=payload.date,
            category_id=payload.categoryId,
            description=payload.description,
            merchant=payload.merchant,
        )
    )
    return _transaction_response(tx)


@app.get("/api/v1/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    fromDate: Optional[date] = None,
    toDate: Optional[date] = None,
    categoryId: Optional[str] = None,
    x_sm_user_id: str | None = Header(default=None),
) -> list[TransactionResponse]:
    user_id = _require_user(x_sm_user_id)
    rows = await persistence.list_transactions(
        user_id,
        from_date=fromDate,
        to_date=toDate,
        category_ids=[categoryId] if categoryId else None,
    )
    return [_transaction_response(t) for t in rows]
