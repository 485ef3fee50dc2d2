from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

CENT = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    INTEREST = "INTEREST"
    REFERRAL_COMMISSION = "REFERRAL_COMMISSION"
    PLAN_PURCHASE = "PLAN_PURCHASE"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"

    @property
    def is_settled(self) -> bool:
        return self in (TransactionStatus.APPROVED, TransactionStatus.COMPLETED)


class Network(str, Enum):
    TRC20 = "TRC20"
    BEP20 = "BEP20"


class HoldingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MATURED = "MATURED"


class Actor(BaseModel):
    """Who is calling. Passed explicitly to every ledger operation."""

    id: str
    role: UserRole = UserRole.USER

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Account(BaseModel):
    id: str
    username: str
    role: UserRole = UserRole.USER
    available: Decimal = Decimal("0.00")
    locked: Decimal = Decimal("0.00")
    referral_code: str
    upliner_id: Optional[str] = None
    opening_available: Decimal = Decimal("0.00")
    opening_locked: Decimal = Decimal("0.00")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


class PlanDefinition(BaseModel):
    id: str
    name: str
    price: Decimal = Field(..., gt=0)
    daily_interest_rate: Decimal = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    total_profit: Decimal
    active: bool = True

    model_config = ConfigDict(from_attributes=True)

    @property
    def daily_earning(self) -> Decimal:
        return quantize(self.price * self.daily_interest_rate / Decimal(100))

    @staticmethod
    def compute_total_profit(price: Decimal, rate: Decimal, duration_days: int) -> Decimal:
        return quantize(price + price * rate / Decimal(100) * duration_days)


class PlanHolding(BaseModel):
    id: str
    account_id: str
    plan: PlanDefinition
    invested_amount: Decimal
    daily_earning: Decimal
    start_date: datetime
    end_date: datetime
    days_paid: int = 0
    status: HoldingStatus = HoldingStatus.ACTIVE

    model_config = ConfigDict(from_attributes=True)


# Per-type transaction details, discriminated on ``kind``.

class DepositDetails(BaseModel):
    kind: Literal[TransactionType.DEPOSIT] = TransactionType.DEPOSIT
    network: Network
    external_ref: Optional[str] = None


class WithdrawalDetails(BaseModel):
    kind: Literal[TransactionType.WITHDRAWAL] = TransactionType.WITHDRAWAL
    destination_address: str
    fee: Decimal = Decimal("0.00")
    network: Optional[Network] = None


class PlanPurchaseDetails(BaseModel):
    kind: Literal[TransactionType.PLAN_PURCHASE] = TransactionType.PLAN_PURCHASE
    holding_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None


class ReferralCommissionDetails(BaseModel):
    kind: Literal[TransactionType.REFERRAL_COMMISSION] = TransactionType.REFERRAL_COMMISSION
    commission_id: Optional[str] = None
    source_account_id: Optional[str] = None
    level: Optional[int] = None


class InterestDetails(BaseModel):
    kind: Literal[TransactionType.INTEREST] = TransactionType.INTEREST
    holding_id: Optional[str] = None
    day: Optional[int] = None


TransactionDetails = Annotated[
    Union[
        DepositDetails,
        WithdrawalDetails,
        PlanPurchaseDetails,
        ReferralCommissionDetails,
        InterestDetails,
    ],
    Field(discriminator="kind"),
]


class Transaction(BaseModel):
    id: str
    account_id: str
    created_at: datetime
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    status: TransactionStatus
    details: TransactionDetails
    notes: Optional[str] = None
    balance_applied: bool = False
    funds_reserved: bool = False
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @model_validator(mode="after")
    def details_match_type(self) -> "Transaction":
        if self.details.kind != self.type:
            raise ValueError(f"{self.details.kind} details attached to {self.type} transaction")
        return self

    def can_settle(self) -> bool:
        return self.status == TransactionStatus.PENDING


class ReferralCommission(BaseModel):
    id: str
    source_account_id: str
    beneficiary_account_id: str
    level: int = Field(..., ge=1)
    plan_name: str
    base_amount: Decimal
    percentage: Decimal
    commission_amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    transaction_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralConfig(BaseModel):
    max_levels: int = Field(..., ge=1)
    level_percentages: list[Decimal]
    active: bool = True

    @field_validator("level_percentages")
    @classmethod
    def non_negative(cls, v: list[Decimal]) -> list[Decimal]:
        if any(p < 0 for p in v):
            raise ValueError("Level percentages must be non-negative")
        return v


# Requests

class OpenAccountRequest(BaseModel):
    username: str = Field(..., min_length=1)
    account_id: Optional[str] = None
    referral_code: Optional[str] = None
    referred_by_code: Optional[str] = None
    opening_available: Decimal = Field(default=Decimal("0.00"), ge=0)
    opening_locked: Decimal = Field(default=Decimal("0.00"), ge=0)
    role: UserRole = UserRole.USER


class DepositRequest(BaseModel):
    amount: Decimal
    network: Network = Network.TRC20
    external_ref: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 250.00, "network": "TRC20", "external_ref": "TNVX...p7r2"}
    })


class WithdrawalRequest(BaseModel):
    amount: Decimal
    destination_address: str = ""
    network: Optional[Network] = None


class PurchaseRequest(BaseModel):
    plan_id: str


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class ManualTransactionDraft(BaseModel):
    id: Optional[str] = None
    account_id: Optional[str] = None
    amount: Optional[Decimal] = None
    type: TransactionType = TransactionType.DEPOSIT
    status: TransactionStatus = TransactionStatus.COMPLETED
    network: Optional[Network] = None
    external_ref: Optional[str] = None
    destination_address: Optional[str] = None
    fee: Optional[Decimal] = None
    notes: Optional[str] = None


class ManualEntryRequest(BaseModel):
    draft: ManualTransactionDraft
    apply_balance_change: bool = False


class PlanCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., gt=0)
    daily_interest_rate: Decimal = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    active: bool = True
    # Ignored; recomputed from price, rate and duration.
    total_profit: Optional[Decimal] = None


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    price: Optional[Decimal] = Field(default=None, gt=0)
    daily_interest_rate: Optional[Decimal] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, gt=0)
    active: Optional[bool] = None
    total_profit: Optional[Decimal] = None


class AccrualRequest(BaseModel):
    as_of: Optional[datetime] = None


# Responses

class BalanceSnapshot(BaseModel):
    account_id: str
    available: Decimal
    locked: Decimal
    total: Decimal


class TransactionResponse(BaseModel):
    transaction: Transaction
    balance: Optional[BalanceSnapshot] = None
    message: str


class PurchaseResponse(BaseModel):
    transaction: Transaction
    holding: PlanHolding
    commissions: list[ReferralCommission]
    balance: BalanceSnapshot
    message: str


class TransactionListResponse(BaseModel):
    transactions: list[Transaction]
    total_count: int


class AccountSummary(BaseModel):
    account_id: str
    username: str
    available: Decimal
    locked: Decimal
    total_invested: Decimal
    total_earnings: Decimal
    daily_interest: Decimal
    pending_withdrawals: Decimal
    active_holdings: int


class DashboardResponse(BaseModel):
    summary: AccountSummary
    insight: str


class AdminOverview(BaseModel):
    total_accounts: int
    total_deposits: Decimal
    pending_withdrawals: int
    system_balance: Decimal


class Reconciliation(BaseModel):
    account_id: str
    actual_total: Decimal
    expected_total: Decimal
    credits: Decimal
    debits: Decimal
    balanced: bool


class AccrualResult(BaseModel):
    as_of: datetime
    interest_transactions: int
    interest_credited: Decimal
    matured_holdings: int
