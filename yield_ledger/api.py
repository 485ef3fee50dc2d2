from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from advisory import InsightService

from .config import get_settings
from .exceptions import (
    InsufficientFundsError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PermissionDeniedError,
)
from .log import setup_logging
from .models import (
    Account,
    AccountSummary,
    AccrualRequest,
    AccrualResult,
    Actor,
    AdminOverview,
    DashboardResponse,
    DepositRequest,
    ManualEntryRequest,
    Network,
    OpenAccountRequest,
    PlanCreateRequest,
    PlanDefinition,
    PlanHolding,
    PlanUpdateRequest,
    PurchaseRequest,
    PurchaseResponse,
    Reconciliation,
    ReferralCommission,
    ReferralConfig,
    RejectRequest,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatus,
    TransactionType,
    UserRole,
    WithdrawalRequest,
)
from .service import LedgerService

settings = get_settings()
setup_logging(settings.log_level)

app = FastAPI(
    title="USDT Yield Ledger API",
    description="Balances, plan purchases, referral commissions and admin settlement for a USDT yield platform",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)
insight_service = InsightService.from_settings(settings)


def get_actor(
    x_actor_id: str = Header(..., description="Calling account id"),
    x_actor_role: UserRole = Header(default=UserRole.USER),
) -> Actor:
    return Actor(id=x_actor_id, role=x_actor_role)


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, PermissionDeniedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, InsufficientFundsError):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(e, InvalidStateTransitionError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"error": type(e).__name__, "message": str(e)})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "yield-ledger"}


# Accounts

@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(request: OpenAccountRequest, actor: Actor = Depends(get_actor)) -> Account:
    try:
        return ledger_service.open_account(actor, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
def get_account(account_id: str, actor: Actor = Depends(get_actor)) -> Account:
    try:
        return ledger_service.get_account(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/summary", response_model=AccountSummary, tags=["Accounts"])
def get_summary(account_id: str, actor: Actor = Depends(get_actor)) -> AccountSummary:
    try:
        return ledger_service.account_summary(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/dashboard", response_model=DashboardResponse, tags=["Accounts"])
def get_dashboard(account_id: str, actor: Actor = Depends(get_actor)) -> DashboardResponse:
    try:
        summary = ledger_service.account_summary(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)
    insight = insight_service.cached_insight(account_id, summary, ledger_service.catalog.list_plans())
    return DashboardResponse(summary=summary, insight=insight)


@app.get("/accounts/{account_id}/transactions", response_model=TransactionListResponse, tags=["Accounts"])
def list_account_transactions(
    account_id: str,
    tx_status: Optional[TransactionStatus] = None,
    tx_type: Optional[TransactionType] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
) -> TransactionListResponse:
    try:
        return ledger_service.list_transactions(actor, account_id, tx_status, tx_type, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/holdings", response_model=list[PlanHolding], tags=["Accounts"])
def list_holdings(account_id: str, actor: Actor = Depends(get_actor)) -> list[PlanHolding]:
    try:
        return ledger_service.list_holdings(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/commissions", response_model=list[ReferralCommission], tags=["Accounts"])
def list_commissions(account_id: str, actor: Actor = Depends(get_actor)) -> list[ReferralCommission]:
    try:
        return ledger_service.list_commissions(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/reconciliation", response_model=Reconciliation, tags=["Accounts"])
def reconcile(account_id: str, actor: Actor = Depends(get_actor)) -> Reconciliation:
    try:
        return ledger_service.reconcile(actor, account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/accounts/{account_id}/deposits",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def request_deposit(
    account_id: str, request: DepositRequest, actor: Actor = Depends(get_actor)
) -> TransactionResponse:
    try:
        return ledger_service.request_deposit(actor, account_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/accounts/{account_id}/withdrawals",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def request_withdrawal(
    account_id: str, request: WithdrawalRequest, actor: Actor = Depends(get_actor)
) -> TransactionResponse:
    try:
        return ledger_service.request_withdrawal(actor, account_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/accounts/{account_id}/purchases",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Plans"],
)
def purchase_plan(
    account_id: str, request: PurchaseRequest, actor: Actor = Depends(get_actor)
) -> PurchaseResponse:
    try:
        return ledger_service.purchase_plan(actor, account_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/deposit-address/{network}", tags=["Transactions"])
def get_deposit_address(network: Network):
    return {"network": network.value, "address": ledger_service.get_deposit_address(network)}


# Plan catalog

@app.get("/plans", response_model=list[PlanDefinition], tags=["Plans"])
def list_plans(include_inactive: bool = False) -> list[PlanDefinition]:
    return ledger_service.catalog.list_plans(include_inactive)


@app.post("/plans", response_model=PlanDefinition, status_code=status.HTTP_201_CREATED, tags=["Plans"])
def create_plan(request: PlanCreateRequest, actor: Actor = Depends(get_actor)) -> PlanDefinition:
    try:
        return ledger_service.catalog.create_plan(actor, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch("/plans/{plan_id}", response_model=PlanDefinition, tags=["Plans"])
def update_plan(plan_id: str, request: PlanUpdateRequest, actor: Actor = Depends(get_actor)) -> PlanDefinition:
    try:
        return ledger_service.catalog.update_plan(actor, plan_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.delete("/plans/{plan_id}", response_model=PlanDefinition, tags=["Plans"])
def delete_plan(plan_id: str, actor: Actor = Depends(get_actor)) -> PlanDefinition:
    try:
        return ledger_service.catalog.delete_plan(actor, plan_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/plans/{plan_id}/toggle", response_model=PlanDefinition, tags=["Plans"])
def toggle_plan(plan_id: str, actor: Actor = Depends(get_actor)) -> PlanDefinition:
    try:
        return ledger_service.catalog.toggle_active(actor, plan_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Admin

@app.get("/admin/transactions/pending", response_model=TransactionListResponse, tags=["Admin"])
def list_pending(limit: int = 50, offset: int = 0, actor: Actor = Depends(get_actor)) -> TransactionListResponse:
    try:
        return ledger_service.list_pending(actor, limit, offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/transactions/manual", response_model=TransactionResponse, tags=["Admin"])
def manual_entry(request: ManualEntryRequest, actor: Actor = Depends(get_actor)) -> TransactionResponse:
    try:
        return ledger_service.manual_entry(actor, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/transactions/{tx_id}/approve", response_model=TransactionResponse, tags=["Admin"])
def approve_transaction(tx_id: str, actor: Actor = Depends(get_actor)) -> TransactionResponse:
    try:
        return ledger_service.approve_transaction(actor, tx_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/transactions/{tx_id}/reject", response_model=TransactionResponse, tags=["Admin"])
def reject_transaction(
    tx_id: str, request: Optional[RejectRequest] = None, actor: Actor = Depends(get_actor)
) -> TransactionResponse:
    try:
        return ledger_service.reject_transaction(actor, tx_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/admin/referral-config", response_model=ReferralConfig, tags=["Admin"])
def get_referral_config() -> ReferralConfig:
    return ledger_service.referrals.config


@app.put("/admin/referral-config", response_model=ReferralConfig, tags=["Admin"])
def update_referral_config(config: ReferralConfig, actor: Actor = Depends(get_actor)) -> ReferralConfig:
    try:
        return ledger_service.referrals.update_config(actor, config)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/accrual", response_model=AccrualResult, tags=["Admin"])
def run_accrual(request: Optional[AccrualRequest] = None, actor: Actor = Depends(get_actor)) -> AccrualResult:
    try:
        return ledger_service.run_accrual(actor, request.as_of if request else None)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/admin/overview", response_model=AdminOverview, tags=["Admin"])
def admin_overview(actor: Actor = Depends(get_actor)) -> AdminOverview:
    try:
        return ledger_service.admin_overview(actor)
    except LedgerServiceError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
